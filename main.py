#!/usr/bin/env python3
import asyncio
import contextlib
import json
import logging
import sys
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

import aiohttp
from telegram import Bot

import constants
from config import AppConfig, load_config
from services.aggregator_client import AggregatorClient
from services.chain_gateway import ChainGateway
from services.errors import ConfigError, StrategyValidationError
from services.gas_estimator import GasEstimator
from services.models import SwapIntent
from services.notifications import CompositeProgressSink, LoggingProgressSink, TelegramProgressSink
from services.request_signer import RequestSigner
from services.retry_executor import RetryExecutor
from services.swap_executor import SwapExecutor
from storage import SQLiteRepository
from strategy import Stage, StrategyConfig, StrategyStateMachine
from strategy.models import StrategyInstance
from strategy.state_machine import delete_instance_record, load_instances

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


def configure_logging(level: str = 'INFO', log_file: str | None = None) -> None:
    """Console logging plus, when ``log_file`` is set, a size-rotated file."""
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def build_gateway(config: AppConfig, session: aiohttp.ClientSession) -> ChainGateway:
    gateway = ChainGateway(
        session,
        config.rpc_nodes,
        private_key=config.private_key,
        chain_id=config.chain_id,
    )
    if config.wallet_address and config.wallet_address.lower() != gateway.wallet_address.lower():
        raise ConfigError(
            f"{constants.EVM_WALLET_ADDRESS_ENV_VAR} ({config.wallet_address}) does not match the private key ({gateway.wallet_address})"
        )
    return gateway


def build_aggregator(config: AppConfig, session: aiohttp.ClientSession) -> AggregatorClient:
    signer = RequestSigner(
        config.aggregator_api_key,
        config.aggregator_secret_key,
        config.aggregator_passphrase,
        config.aggregator_project_id,
    )
    return AggregatorClient(session, signer, base_url=config.aggregator_base_url, chain_id=config.chain_id)


def build_swap_executor(config: AppConfig, aggregator: AggregatorClient, gateway: ChainGateway) -> SwapExecutor:
    retry = RetryExecutor(health_reporter=gateway.report_transient_failure)
    return SwapExecutor(
        aggregator,
        GasEstimator(aggregator),
        gateway,
        retry,
        chain_id=config.chain_id,
        approve_spender=config.approve_spender,
    )


def _deadline(timeout: float | None) -> float | None:
    return time.time() + timeout if timeout else None


async def _run_quote(config: AppConfig, session: aiohttp.ClientSession) -> int:
    aggregator = build_aggregator(config, session)
    intent = SwapIntent(
        from_token=config.from_token,
        to_token=config.to_token,
        amount=config.amount,
        wallet_address=config.wallet_address or '',
        slippage_bps=config.slippage_bps,
        chain_id=config.chain_id,
    )
    retry = RetryExecutor()
    quote = await retry.run(lambda: aggregator.get_quote(intent), 'quote', constants.QUOTE_MAX_ATTEMPTS)
    print(f"{constants.C_GREEN}Expected output: {quote.expected_output}{constants.C_RESET}")
    print(f"{constants.C_BLUE}Route: {quote.route_description}{constants.C_RESET}")
    print(f"Price impact: {quote.price_impact_bps / 100:.2f}%  Risk: {quote.risk_level}")
    return 0


async def _run_swap(config: AppConfig, session: aiohttp.ClientSession) -> int:
    gateway = build_gateway(config, session)
    executor = build_swap_executor(config, build_aggregator(config, session), gateway)
    intent = SwapIntent(
        from_token=config.from_token,
        to_token=config.to_token,
        amount=config.amount,
        wallet_address=gateway.wallet_address,
        slippage_bps=config.slippage_bps,
        chain_id=config.chain_id,
    )
    result = await executor.execute_swap(intent, deadline=_deadline(config.confirm_timeout))
    colour = constants.C_GREEN if result.success else constants.C_RED
    print(f"{colour}Swap {result.outcome.status.value}: {result.tx_hash}{constants.C_RESET}")
    if result.approval_tx_hash:
        print(f"Approval: {result.approval_tx_hash}")
    if result.outcome.fail_reason:
        print(f"{constants.C_YELLOW}{result.outcome.fail_reason}{constants.C_RESET}")
    return 0 if result.success else 1


def _print_instance(instance: StrategyInstance) -> None:
    colour = {
        Stage.DONE: constants.C_GREEN,
        Stage.ERROR: constants.C_RED,
    }.get(instance.stage, constants.C_YELLOW)
    updated = datetime.fromtimestamp(instance.checkpoint.timestamp, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
    print(
        f"{colour}{instance.instance_id}  {instance.stage.value:<8}{constants.C_RESET}"
        f"  {instance.checkpoint.substep:<22} {updated}  restarts={instance.restart_count}"
    )
    if instance.swap_tx_hash:
        print(f"    swap tx: {instance.swap_tx_hash}")
    if instance.range_status:
        status = instance.range_status
        state = 'in range' if status['in_range'] else 'OUT OF RANGE'
        print(f"    pool tick {status['current_tick']} ({status['tick_lower']}..{status['tick_upper']}) {state}")
    if instance.error_info:
        print(f"    {constants.C_RED}{instance.error_info.get('reason')}{constants.C_RESET}")


async def _run_strategy_command(config: AppConfig, session: aiohttp.ClientSession, store: SQLiteRepository, notifier) -> int:
    gateway = build_gateway(config, session)
    executor = build_swap_executor(config, build_aggregator(config, session), gateway)
    machine = StrategyStateMachine(
        executor,
        store,
        wallet_address=gateway.wallet_address,
        notifier=notifier,
        tick_reader=gateway.get_pool_tick,
        confirm_timeout=config.confirm_timeout,
    )

    if config.command == 'strategy':
        with open(config.strategy_file, 'r', encoding='utf-8') as handle:
            raw = json.load(handle)
        raw.setdefault('chain_id', config.chain_id)
        try:
            instance = await machine.start(StrategyConfig.from_dict(raw))
        except StrategyValidationError as exc:
            print(f"{constants.C_RED}Strategy rejected: {exc}{constants.C_RESET}")
            return 1
        _print_instance(instance)
        return 1 if instance.stage is Stage.ERROR else 0

    if config.instance_id:
        try:
            instances = [await machine.resume(config.instance_id)]
        except KeyError as exc:
            print(f"{constants.C_RED}{exc.args[0]}{constants.C_RESET}")
            return 1
    else:
        instances = await machine.recover()
    if not instances:
        print("No stale strategy instances to recover.")
    for instance in instances:
        _print_instance(instance)
    return 0


async def _run_nodes(config: AppConfig, session: aiohttp.ClientSession) -> int:
    gateway = build_gateway(config, session)
    await gateway.health_check()
    report = gateway.node_status_report()
    print(f"Current node: {report['current_node']} ({report['healthy_nodes']}/{report['total_nodes']} healthy)")
    for node in report['nodes']:
        colour = constants.C_GREEN if node['health'] == 'healthy' else constants.C_RED
        latency = f"{node['response_time'] * 1000:.0f}ms" if node['response_time'] is not None else '-'
        print(
            f"{colour}{node['name']:<28} {node['health']:<12}{constants.C_RESET}"
            f" block={node['block_number'] or '-'} latency={latency} {node['last_error'] or ''}"
        )
    return 0 if report['healthy_nodes'] else 1


async def run_command(config: AppConfig) -> int:
    if config.command in ('status', 'delete'):
        store = SQLiteRepository(config.db_path)
        try:
            if config.command == 'status':
                instances = await load_instances(store)
                if not instances:
                    print("No strategy instances recorded.")
                for instance in instances:
                    _print_instance(instance)
                return 0
            if await delete_instance_record(store, config.instance_id):
                print(f"{constants.C_GREEN}Deleted {config.instance_id}{constants.C_RESET}")
                return 0
            print(f"{constants.C_YELLOW}No record for {config.instance_id}{constants.C_RESET}")
            return 1
        finally:
            await store.close()

    async with contextlib.AsyncExitStack() as stack:
        session = await stack.enter_async_context(
            aiohttp.ClientSession(headers={'User-Agent': 'DexStrategy/1.0'})
        )
        if config.command == 'quote':
            return await _run_quote(config, session)
        if config.command == 'swap':
            return await _run_swap(config, session)
        if config.command == 'nodes':
            return await _run_nodes(config, session)

        store = SQLiteRepository(config.db_path)
        stack.push_async_callback(store.close)
        sinks = [LoggingProgressSink()]
        if config.telegram_enabled:
            bot = await stack.enter_async_context(Bot(config.telegram_bot_token))
            sinks.append(TelegramProgressSink(bot, config.telegram_chat_id))
        return await _run_strategy_command(config, session, store, CompositeProgressSink(sinks))


def main(argv: list[str] | None = None) -> None:
    """The main synchronous entry point for the application."""
    try:
        config = load_config(argv)
    except ConfigError as exc:
        print(f"{constants.C_RED}{exc}{constants.C_RESET}")
        sys.exit(1)

    configure_logging(config.log_level, config.log_file)

    try:
        exit_code = asyncio.run(run_command(config))
    except ConfigError as exc:
        print(f"{constants.C_RED}Configuration error: {exc}{constants.C_RESET}")
        sys.exit(1)
    except KeyboardInterrupt:
        print(f"{constants.C_YELLOW}Interrupted; in-flight strategies can be resumed with 'recover'.{constants.C_RESET}")
        sys.exit(130)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
