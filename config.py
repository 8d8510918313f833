#!/usr/bin/env python3
import os
import argparse
from decimal import Decimal, InvalidOperation
from typing import NamedTuple
from urllib.parse import urlparse

import constants
from services.errors import ConfigError

COMMANDS_NEEDING_AGGREGATOR = {'swap', 'quote', 'strategy', 'recover'}
COMMANDS_NEEDING_WALLET = {'swap', 'strategy', 'recover', 'nodes'}


class AppConfig(NamedTuple):
    """Typed configuration object."""
    command: str
    chain_id: int
    rpc_nodes: tuple[tuple[str, str], ...]
    aggregator_api_key: str | None
    aggregator_secret_key: str | None
    aggregator_passphrase: str | None
    aggregator_project_id: str | None
    aggregator_base_url: str
    private_key: str | None
    wallet_address: str | None
    approve_spender: str | None
    db_path: str
    log_file: str | None
    log_level: str
    telegram_enabled: bool
    telegram_bot_token: str | None
    telegram_chat_id: str | None
    from_token: str | None
    to_token: str | None
    amount: int | None
    slippage_bps: int
    confirm_timeout: float | None
    strategy_file: str | None
    instance_id: str | None


def _parse_amount(value: str) -> int:
    """Base-unit amounts are integers; reject anything that would need rounding."""
    try:
        amount = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"amount must be an integer number of base units, got {value!r}")
    if amount <= 0:
        raise argparse.ArgumentTypeError("amount must be greater than 0")
    return amount


def _parse_slippage_bps(value: str) -> int:
    """'0.5' (percent) -> 50 basis points."""
    try:
        percent = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"slippage must be a percentage, got {value!r}")
    if not Decimal(0) < percent <= Decimal(str(constants.MAX_AGGREGATOR_SLIPPAGE_PCT)):
        raise argparse.ArgumentTypeError(
            f"slippage must be in (0, {constants.MAX_AGGREGATOR_SLIPPAGE_PCT:g}] percent, got {value}"
        )
    bps = int((percent * 100).to_integral_value())
    if bps < 1:
        raise argparse.ArgumentTypeError(f"slippage {value} rounds to zero basis points")
    return bps


def _node_name(url: str, index: int) -> str:
    host = urlparse(url).hostname
    return host or f"rpc-{index + 1}"


def resolve_rpc_nodes(chain_id: int, cli_urls: list[str] | None, env_urls: str | None) -> tuple[tuple[str, str], ...]:
    """CLI URLs win over ``RPC_URLS``, which wins over the chain's built-in list."""
    urls = list(cli_urls or [])
    if not urls and env_urls:
        urls = [url.strip() for url in env_urls.split(',') if url.strip()]
    if urls:
        return tuple((_node_name(url, index), url) for index, url in enumerate(urls))
    return constants.DEFAULT_RPC_NODES.get(chain_id, ())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Execute DEX aggregator swaps and resumable liquidity strategies with RPC failover.",
        epilog="Example: ./main.py swap --from-token 0xeeee...eeee --to-token 0x55d3...7955 --amount 100000000000000000 --slippage 0.5",
    )
    parser.add_argument('--chain-id', type=int, help=f'Chain id (default: ${constants.CHAIN_ID_ENV_VAR} or {constants.DEFAULT_CHAIN_ID}).')
    parser.add_argument('--rpc-url', action='append', help='RPC endpoint, repeat in priority order (overrides $RPC_URLS).')
    parser.add_argument('--approve-spender', type=str, help='Router address that receives token approvals.')
    parser.add_argument('--db-path', type=str, default=constants.DEFAULT_DB_PATH, help=f'Checkpoint database (default: {constants.DEFAULT_DB_PATH}).')
    parser.add_argument('--log-file', type=str, default=constants.DEFAULT_LOG_FILE, help='Rotating log file; pass an empty string to disable.')
    parser.add_argument('--log-level', type=str, default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Log level (default: INFO).')
    parser.add_argument('--telegram-enabled', action='store_true', help='Send strategy progress to Telegram.')

    subparsers = parser.add_subparsers(dest='command', required=True)

    swap = subparsers.add_parser('swap', help='Quote, approve and execute a single swap.')
    quote = subparsers.add_parser('quote', help='Fetch a quote without sending anything.')
    for sub in (swap, quote):
        sub.add_argument('--from-token', required=True, help='Token to sell (native sentinel for the chain currency).')
        sub.add_argument('--to-token', required=True, help='Token to buy.')
        sub.add_argument('--amount', type=_parse_amount, required=True, help='Amount to sell in base units.')
        sub.add_argument('--slippage', type=_parse_slippage_bps, default=50, help='Slippage percent, at most 1 (default: 0.5).')
    swap.add_argument('--confirm-timeout', type=float, help='Seconds to wait for the receipt before reporting PENDING.')

    strategy = subparsers.add_parser('strategy', help='Submit and run a strategy described by a JSON file.')
    strategy.add_argument('--config', dest='strategy_file', required=True, help='Path to the strategy JSON file.')
    strategy.add_argument('--confirm-timeout', type=float, help='Seconds to wait for the swap receipt.')

    recover = subparsers.add_parser('recover', help='Resume stale in-flight strategy instances.')
    recover.add_argument('--instance-id', help='Resume this instance regardless of checkpoint age.')
    recover.add_argument('--confirm-timeout', type=float, help='Seconds to wait for the swap receipt.')

    subparsers.add_parser('status', help='List persisted strategy instances.')
    subparsers.add_parser('nodes', help='Health-check the RPC pool and print its state.')

    delete = subparsers.add_parser('delete', help='Delete a retained strategy record.')
    delete.add_argument('instance_id', help='Instance to delete.')
    return parser


def load_config(argv: list[str] | None = None) -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    Raises ConfigError for anything the selected command cannot run without.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command

    chain_id = args.chain_id
    if chain_id is None:
        env_chain = os.environ.get(constants.CHAIN_ID_ENV_VAR)
        try:
            chain_id = int(env_chain) if env_chain else constants.DEFAULT_CHAIN_ID
        except ValueError:
            raise ConfigError(f"{constants.CHAIN_ID_ENV_VAR} must be an integer, got {env_chain!r}")

    aggregator_api_key = os.environ.get(constants.AGGREGATOR_API_KEY_ENV_VAR)
    aggregator_secret_key = os.environ.get(constants.AGGREGATOR_SECRET_KEY_ENV_VAR)
    aggregator_passphrase = os.environ.get(constants.AGGREGATOR_PASSPHRASE_ENV_VAR)
    aggregator_project_id = os.environ.get(constants.AGGREGATOR_PROJECT_ID_ENV_VAR)
    aggregator_base_url = os.environ.get(constants.AGGREGATOR_BASE_URL_ENV_VAR) or constants.AGGREGATOR_API_BASE_URL
    private_key = os.environ.get(constants.EVM_PRIVATE_KEY_ENV_VAR)
    wallet_address = os.environ.get(constants.EVM_WALLET_ADDRESS_ENV_VAR)
    telegram_bot_token = os.environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    telegram_chat_id = os.environ.get(constants.TELEGRAM_CHAT_ID_ENV_VAR)

    if command in COMMANDS_NEEDING_AGGREGATOR:
        missing = [
            name
            for name, value in (
                (constants.AGGREGATOR_API_KEY_ENV_VAR, aggregator_api_key),
                (constants.AGGREGATOR_SECRET_KEY_ENV_VAR, aggregator_secret_key),
                (constants.AGGREGATOR_PASSPHRASE_ENV_VAR, aggregator_passphrase),
                (constants.AGGREGATOR_PROJECT_ID_ENV_VAR, aggregator_project_id),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Aggregator credentials not set: {', '.join(missing)}")

    rpc_nodes = resolve_rpc_nodes(chain_id, args.rpc_url, os.environ.get(constants.RPC_URLS_ENV_VAR))
    if command in COMMANDS_NEEDING_WALLET:
        if not private_key:
            raise ConfigError(f"{constants.EVM_PRIVATE_KEY_ENV_VAR} environment variable not set.")
        if not rpc_nodes:
            raise ConfigError(f"No RPC endpoints for chain {chain_id}; set {constants.RPC_URLS_ENV_VAR} or --rpc-url.")

    if args.telegram_enabled and not (telegram_bot_token and telegram_chat_id):
        raise ConfigError(
            f"Telegram is enabled, but {constants.TELEGRAM_BOT_TOKEN_ENV_VAR} or {constants.TELEGRAM_CHAT_ID_ENV_VAR} are not set."
        )

    approve_spender = args.approve_spender or constants.CHAIN_CONFIG.get(chain_id, {}).get('approveSpender')

    return AppConfig(
        command=command,
        chain_id=chain_id,
        rpc_nodes=rpc_nodes,
        aggregator_api_key=aggregator_api_key,
        aggregator_secret_key=aggregator_secret_key,
        aggregator_passphrase=aggregator_passphrase,
        aggregator_project_id=aggregator_project_id,
        aggregator_base_url=aggregator_base_url,
        private_key=private_key,
        wallet_address=wallet_address,
        approve_spender=approve_spender,
        db_path=args.db_path,
        log_file=args.log_file or None,
        log_level=args.log_level,
        telegram_enabled=args.telegram_enabled,
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        from_token=getattr(args, 'from_token', None),
        to_token=getattr(args, 'to_token', None),
        amount=getattr(args, 'amount', None),
        slippage_bps=getattr(args, 'slippage', 50),
        confirm_timeout=getattr(args, 'confirm_timeout', None),
        strategy_file=getattr(args, 'strategy_file', None),
        instance_id=getattr(args, 'instance_id', None),
    )
