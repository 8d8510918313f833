"""Resumable strategy lifecycle: INIT -> QUOTE -> APPROVE -> SWAP -> MONITOR -> DONE."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from constants import CHECKPOINT_KEY_PREFIX, RECOVERY_STALENESS_SECONDS
from services.errors import ConfigError, OnChainRevertError, RpcError, TransientNetworkError
from services.models import PendingTransaction, SwapIntent, TransactionStatus
from services.notifications import LoggingProgressSink, ProgressSink
from services.swap_executor import SwapExecutor
from storage.checkpoint_store import CheckpointStore
from strategy.config_validator import TickReader, validate_strategy_config
from strategy.models import (
    RECOVERABLE_STAGES,
    Checkpoint,
    Stage,
    StrategyConfig,
    StrategyInstance,
    new_instance_id,
)

StageResult = Tuple[Stage, str, str]


async def load_instances(store: CheckpointStore, logger: Optional[logging.Logger] = None) -> List[StrategyInstance]:
    """Every readable instance record; unreadable ones are logged and skipped."""
    logger = logger or logging.getLogger(__name__)
    instances = []
    for record in await store.list_by_prefix(CHECKPOINT_KEY_PREFIX):
        try:
            instances.append(StrategyInstance.from_record(record.payload))
        except (KeyError, ValueError, TypeError) as exc:
            logger.warning("Skipping unreadable checkpoint %s: %s", record.key, exc)
    return instances


async def delete_instance_record(store: CheckpointStore, instance_id: str, logger: Optional[logging.Logger] = None) -> bool:
    deleted = await store.delete(f"{CHECKPOINT_KEY_PREFIX}{instance_id}")
    if deleted:
        (logger or logging.getLogger(__name__)).info("Deleted strategy record %s", instance_id)
    return deleted


class StrategyStateMachine:
    """Drives strategy instances and is the only writer of their records.

    Every stage change mutates the instance, persists it, then notifies the
    progress sink once. ``ConfigError`` is the only error that escapes
    ``run``; everything else moves the instance to ``ERROR`` with a reason.
    """

    def __init__(
        self,
        swap_executor: SwapExecutor,
        store: CheckpointStore,
        *,
        wallet_address: str,
        notifier: Optional[ProgressSink] = None,
        tick_reader: Optional[TickReader] = None,
        confirm_timeout: Optional[float] = None,
        staleness_seconds: float = RECOVERY_STALENESS_SECONDS,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.swap_executor = swap_executor
        self.store = store
        self.wallet_address = wallet_address
        self.notifier = notifier or LoggingProgressSink()
        self.tick_reader = tick_reader
        self.confirm_timeout = confirm_timeout
        self.staleness_seconds = staleness_seconds
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: Dict[Stage, Callable[[StrategyInstance], Awaitable[Optional[StageResult]]]] = {
            Stage.INIT: self._handle_init,
            Stage.QUOTE: self._handle_quote,
            Stage.APPROVE: self._handle_approve,
            Stage.SWAP: self._handle_swap,
            Stage.MONITOR: self._handle_monitor,
        }

    # --- Persistence ----------------------------------------------------

    async def _save(self, instance: StrategyInstance) -> None:
        await self.store.set(instance.storage_key, instance.to_record())

    async def get_instance(self, instance_id: str) -> Optional[StrategyInstance]:
        record = await self.store.get(f"{CHECKPOINT_KEY_PREFIX}{instance_id}")
        return StrategyInstance.from_record(record) if record else None

    async def list_instances(self) -> List[StrategyInstance]:
        return await load_instances(self.store, self.logger)

    async def delete_instance(self, instance_id: str) -> bool:
        return await delete_instance_record(self.store, instance_id, self.logger)

    async def _transition(self, instance: StrategyInstance, stage: Stage, substep: str, description: str) -> None:
        now = self._clock()
        previous = instance.stage, instance.checkpoint
        instance.stage = stage
        instance.checkpoint = Checkpoint(stage=stage, timestamp=now, substep=substep)
        try:
            await self._save(instance)
        except Exception:
            # memory must not run ahead of the stored record
            instance.stage, instance.checkpoint = previous
            raise
        await self.notifier.on_transition(instance.instance_id, stage.value, now, description)

    async def _fail(self, instance: StrategyInstance, error: BaseException) -> None:
        now = self._clock()
        failed_stage = instance.stage
        reason = str(error) or type(error).__name__
        instance.error_info = {
            "stage": failed_stage.value,
            "reason": reason,
            "error_type": type(error).__name__,
            "timestamp": now,
        }
        instance.stage = Stage.ERROR
        instance.checkpoint = Checkpoint(stage=Stage.ERROR, timestamp=now, substep=f"{failed_stage.value.lower()}_failed")
        await self._save(instance)
        self.logger.error("Strategy %s failed during %s: %s", instance.instance_id, failed_stage.value, reason)
        await self.notifier.on_error(instance.instance_id, reason)

    # --- Lifecycle ------------------------------------------------------

    async def submit(self, config: StrategyConfig) -> StrategyInstance:
        """Validate ``config`` and persist a new instance at ``INIT``."""
        config = await validate_strategy_config(config, self.tick_reader)
        now = self._clock()
        instance = StrategyInstance(
            instance_id=new_instance_id(now),
            config=config,
            stage=Stage.INIT,
            created_at=now,
            checkpoint=Checkpoint(stage=Stage.INIT, timestamp=now, substep="validated"),
        )
        await self._save(instance)
        await self.notifier.on_transition(
            instance.instance_id,
            Stage.INIT.value,
            now,
            f"Ticks {config.tick_lower}..{config.tick_upper} on pool {config.pool_address}",
        )
        return instance

    async def run(self, instance: StrategyInstance) -> StrategyInstance:
        """Advance ``instance`` until it is terminal or parked in ``MONITOR``."""
        while not instance.stage.is_terminal:
            handler = self._handlers[instance.stage]
            try:
                result = await handler(instance)
                if result is None:
                    return instance
                await self._transition(instance, *result)
            except ConfigError as exc:
                await self._fail(instance, exc)
                raise
            except Exception as exc:
                await self._fail(instance, exc)
                return instance
        return instance

    async def start(self, config: StrategyConfig) -> StrategyInstance:
        return await self.run(await self.submit(config))

    async def resume(self, instance_id: str) -> StrategyInstance:
        instance = await self.get_instance(instance_id)
        if instance is None:
            raise KeyError(f"No strategy instance {instance_id}")
        if instance.stage.is_terminal:
            return instance
        instance.restart_count += 1
        await self._save(instance)
        return await self.run(instance)

    def is_recoverable(self, instance: StrategyInstance, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return (
            instance.stage in RECOVERABLE_STAGES
            and now - instance.checkpoint.timestamp > self.staleness_seconds
        )

    async def recover(self, now: Optional[float] = None) -> List[StrategyInstance]:
        """Re-enter the recorded stage of every stale in-flight instance."""
        stale = [instance for instance in await self.list_instances() if self.is_recoverable(instance, now)]
        for instance in stale:
            instance.restart_count += 1
            self.logger.info(
                "Recovering %s at %s (restart #%d, last substep %s)",
                instance.instance_id,
                instance.stage.value,
                instance.restart_count,
                instance.checkpoint.substep,
            )
            await self._save(instance)
        return list(await asyncio.gather(*(self.run(instance) for instance in stale)))

    # --- Stage handlers -------------------------------------------------

    def _intent(self, instance: StrategyInstance) -> SwapIntent:
        config = instance.config
        return SwapIntent(
            from_token=config.swap_from_token,
            to_token=config.swap_to_token,
            amount=config.amount,
            wallet_address=self.wallet_address,
            slippage_bps=config.slippage_bps,
            chain_id=config.chain_id,
        )

    async def _handle_init(self, instance: StrategyInstance) -> StageResult:
        return Stage.QUOTE, "ready", "Fetching aggregator quote"

    async def _handle_quote(self, instance: StrategyInstance) -> StageResult:
        intent = self._intent(instance)
        quote = await self.swap_executor.get_quote(intent)
        instance.quote = quote.as_dict()
        await self.swap_executor.ensure_balance(intent)
        return (
            Stage.APPROVE,
            "quote_received",
            f"Quote {quote.expected_output} via {quote.route_description} ({quote.risk_level} risk)",
        )

    async def _handle_approve(self, instance: StrategyInstance) -> StageResult:
        config = instance.config
        approval = await self.swap_executor.force_unlimited_approval(config.swap_from_token, config.amount)
        if approval.need_approval:
            instance.approval_tx_hash = approval.tx_hash
            return Stage.SWAP, "approval_sent", f"Approval sent: {approval.tx_hash}"
        return Stage.SWAP, "allowance_sufficient", "Allowance already sufficient"

    async def _record_signed_swap(self, instance: StrategyInstance, tx: PendingTransaction) -> None:
        instance.signed_swap = tx.to_record()
        instance.swap_tx_hash = tx.tx_hash
        instance.checkpoint = Checkpoint(
            stage=Stage.SWAP,
            timestamp=self._clock(),
            substep="swap_signed",
            detail=f"nonce {tx.nonce}",
        )
        await self._save(instance)

    async def _handle_swap(self, instance: StrategyInstance) -> StageResult:
        recorded = None
        if instance.signed_swap:
            recorded = PendingTransaction.from_record(instance.signed_swap)
            self.logger.info(
                "Strategy %s re-entering SWAP with signed transaction %s (nonce %d)",
                instance.instance_id,
                recorded.tx_hash,
                recorded.nonce,
            )
        submission = await self.swap_executor.send_swap(
            self._intent(instance),
            on_signed=lambda tx: self._record_signed_swap(instance, tx),
            signed=recorded,
        )
        instance.swap_tx_hash = submission.tx_hash
        return Stage.MONITOR, "swap_broadcast", f"Swap broadcast: {submission.tx_hash}"

    async def _check_range(self, instance: StrategyInstance) -> Optional[dict]:
        """Where the pool's current tick sits relative to the configured range."""
        if self.tick_reader is None:
            return None
        config = instance.config
        try:
            current_tick = await self.tick_reader(config.pool_address)
        except (TransientNetworkError, RpcError) as exc:
            self.logger.warning("Could not read pool tick for %s: %s", instance.instance_id, exc)
            return None
        in_range = config.tick_lower <= current_tick < config.tick_upper
        if not in_range:
            self.logger.warning(
                "Pool %s tick %d is outside %d..%d",
                config.pool_address,
                current_tick,
                config.tick_lower,
                config.tick_upper,
            )
        return {
            "current_tick": current_tick,
            "tick_lower": config.tick_lower,
            "tick_upper": config.tick_upper,
            "in_range": in_range,
        }

    async def _handle_monitor(self, instance: StrategyInstance) -> Optional[StageResult]:
        if not instance.swap_tx_hash:
            raise RuntimeError("MONITOR reached without a recorded swap transaction")
        timeout = instance.config.exit_timeout_seconds or self.confirm_timeout
        deadline = self._clock() + timeout if timeout else None
        outcome = await self.swap_executor.confirm(instance.swap_tx_hash, deadline)
        instance.block_number = outcome.block_number

        if outcome.status is TransactionStatus.SUCCESS:
            instance.range_status = await self._check_range(instance)
            description = f"Swap confirmed in block {outcome.block_number}"
            if instance.range_status is not None:
                state = "in range" if instance.range_status["in_range"] else "out of range"
                description += f"; pool tick {instance.range_status['current_tick']} {state}"
            return Stage.DONE, "confirmed", description
        if outcome.status is TransactionStatus.FAILED:
            raise OnChainRevertError(instance.swap_tx_hash, outcome.fail_reason or "transaction reverted")

        instance.checkpoint = Checkpoint(
            stage=Stage.MONITOR,
            timestamp=self._clock(),
            substep="confirmation_pending",
            detail=outcome.fail_reason,
        )
        await self._save(instance)
        self.logger.warning(
            "Strategy %s still waiting on %s: %s",
            instance.instance_id,
            instance.swap_tx_hash,
            outcome.fail_reason,
        )
        return None
