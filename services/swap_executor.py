"""Quote -> approval -> swap -> confirmation for a single swap intent."""
from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
from typing import Any, Awaitable, Callable, Optional

from constants import (
    APPROVAL_MAX_ATTEMPTS,
    APPROVAL_SETTLE_DELAY,
    CONFIRM_MAX_ATTEMPTS,
    CONFIRM_POLL_INTERVAL,
    MAX_UINT256,
    NATIVE_TOKEN_ADDRESS,
    QUOTE_MAX_ATTEMPTS,
    SWAP_MAX_ATTEMPTS,
)
from services.aggregator_client import AggregatorClient, validate_token_address
from services.chain_gateway import ChainGateway
from services.errors import ConfigError, InsufficientBalanceError
from services.gas_estimator import GasEstimator
from services.models import (
    ApprovalResult,
    PendingTransaction,
    Quote,
    SwapIntent,
    SwapResult,
    SwapSubmission,
    SwapTransactionData,
    TransactionOutcome,
)
from services.retry_executor import RetryExecutor

SignedCallback = Callable[[PendingTransaction], Awaitable[Any]]


def is_native_token(address: str) -> bool:
    return address.lower() == NATIVE_TOKEN_ADDRESS


@dataclasses.dataclass(slots=True)
class _SendState:
    """The signed transaction one retried send carries between attempts."""
    tx: Optional[PendingTransaction] = None
    swap_tx: Optional[SwapTransactionData] = None
    recorded: bool = False
    sent: bool = False

    @property
    def reusable(self) -> bool:
        return self.tx is not None and self.tx.signed_payload is not None and not self.tx.abandoned

    def start(self, tx: PendingTransaction, swap_tx: Optional[SwapTransactionData] = None) -> None:
        self.tx = tx
        self.swap_tx = swap_tx
        self.recorded = False
        self.sent = False


class SwapExecutor:
    """Turns a ``SwapIntent`` into a confirmed transaction.

    Approval and swap broadcast run under separate retry budgets so that
    trouble during approval never eats into the swap's attempts. Within one
    budget, a retry re-sends the transaction already signed for its nonce; a
    new one is built only once the gateway has marked the old one abandoned.
    """

    def __init__(
        self,
        aggregator: AggregatorClient,
        gas_estimator: GasEstimator,
        gateway: ChainGateway,
        retry: RetryExecutor,
        *,
        chain_id: int,
        approve_spender: Optional[str],
        settle_delay: float = APPROVAL_SETTLE_DELAY,
        confirm_poll_interval: float = CONFIRM_POLL_INTERVAL,
        confirm_max_attempts: int = CONFIRM_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.aggregator = aggregator
        self.gas_estimator = gas_estimator
        self.gateway = gateway
        self.retry = retry
        self.chain_id = chain_id
        self.approve_spender = approve_spender
        self.settle_delay = settle_delay
        self.confirm_poll_interval = confirm_poll_interval
        self.confirm_max_attempts = confirm_max_attempts
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def _spender(self) -> str:
        if not self.approve_spender:
            raise ConfigError(f"No approval spender configured for chain {self.chain_id}")
        return validate_token_address(self.approve_spender, "approveSpender")

    def normalize_intent(self, intent: SwapIntent) -> SwapIntent:
        wallet = validate_token_address(intent.wallet_address, "walletAddress")
        if wallet != self.gateway.wallet_address.lower():
            raise ConfigError(f"Wallet {intent.wallet_address} does not match the configured signing key")
        return dataclasses.replace(
            intent,
            from_token=validate_token_address(intent.from_token, "fromTokenAddress"),
            to_token=validate_token_address(intent.to_token, "toTokenAddress"),
            wallet_address=wallet,
        )

    async def get_quote(self, intent: SwapIntent) -> Quote:
        validate_token_address(intent.from_token, "fromTokenAddress")
        validate_token_address(intent.to_token, "toTokenAddress")
        return await self.retry.run(lambda: self.aggregator.get_quote(intent), "quote", QUOTE_MAX_ATTEMPTS)

    # --- Sending --------------------------------------------------------

    def _sign(self, tx: PendingTransaction) -> PendingTransaction:
        try:
            return self.gateway.sign_transaction(tx)
        except Exception:
            self.gateway.release_nonce(tx.sender, tx.nonce)
            raise

    async def _dispatch(self, send: _SendState, on_signed: Optional[SignedCallback] = None) -> str:
        """Broadcasts ``send.tx``; a payload that may already be out is looked up before it is re-sent."""
        tx = send.tx
        if on_signed is not None and not send.recorded:
            await on_signed(tx)
            send.recorded = True
        if send.sent:
            if await self.gateway.get_transaction_receipt(tx.tx_hash):
                self.logger.info("Transaction %s is already mined; not re-sending", tx.tx_hash)
                return tx.tx_hash
            self.logger.info("Re-sending %s with nonce %d", tx.tx_hash, tx.nonce)
        send.sent = True
        return await self.gateway.sign_and_send_transaction(tx)

    # --- Approval -------------------------------------------------------

    async def _approve_once(self, token: str, required_amount: int, approve_amount: int, send: _SendState) -> ApprovalResult:
        if not send.reusable:
            spender = self._spender()
            owner = self.gateway.wallet_address
            allowance = await self.gateway.check_allowance(token, spender, owner)
            if allowance >= required_amount:
                self.logger.info("Allowance for %s already covers %s (current %s)", token, required_amount, allowance)
                return ApprovalResult(need_approval=False)

            approval = await self.aggregator.get_approval_transaction(token, approve_amount, self.chain_id)
            call_data = approval["data"]
            gas_plan, nonce = await asyncio.gather(
                self.gas_estimator.plan(call_data, self.chain_id),
                self.gateway.allocate_nonce(owner),
            )
            send.start(self._sign(PendingTransaction(
                nonce=nonce,
                sender=owner,
                to=token,
                data=call_data,
                value=0,
                gas_plan=gas_plan,
                chain_id=self.chain_id,
            )))
        tx_hash = await self._dispatch(send)
        self.logger.info("Approval for %s sent: %s", token, tx_hash)
        return ApprovalResult(need_approval=True, tx_hash=tx_hash)

    async def approve_token(self, token_address: str, amount: int) -> ApprovalResult:
        """Approve exactly ``amount``; no transaction when the allowance already covers it."""
        token = validate_token_address(token_address, "tokenAddress")
        if is_native_token(token):
            return ApprovalResult(need_approval=False)
        send = _SendState()
        return await self.retry.run(
            lambda: self._approve_once(token, amount, amount, send),
            "token approval",
            APPROVAL_MAX_ATTEMPTS,
        )

    async def force_unlimited_approval(self, token_address: str, required_amount: int) -> ApprovalResult:
        token = validate_token_address(token_address, "tokenAddress")
        if is_native_token(token):
            return ApprovalResult(need_approval=False)
        send = _SendState()
        result = await self.retry.run(
            lambda: self._approve_once(token, required_amount, MAX_UINT256, send),
            "unlimited approval",
            APPROVAL_MAX_ATTEMPTS,
        )
        if result.need_approval:
            await self._sleep(self.settle_delay)
        return result

    # --- Swap -----------------------------------------------------------

    async def ensure_balance(self, intent: SwapIntent) -> int:
        """Raises ``InsufficientBalanceError`` when the wallet cannot cover ``intent.amount``."""
        if is_native_token(intent.from_token):
            read = functools.partial(self.gateway.get_balance, intent.wallet_address)
        else:
            read = functools.partial(self.gateway.get_token_balance, intent.from_token, intent.wallet_address)
        available = await self.retry.run(read, "balance check", QUOTE_MAX_ATTEMPTS)
        if available < intent.amount:
            raise InsufficientBalanceError(intent.from_token, intent.amount, available)
        return available

    async def _swap_once(self, intent: SwapIntent, send: _SendState, on_signed: Optional[SignedCallback]) -> SwapSubmission:
        if not send.reusable:
            swap_tx = await self.aggregator.get_swap_transaction(intent)
            gas_plan, nonce = await asyncio.gather(
                self.gas_estimator.plan(swap_tx.data, intent.chain_id),
                self.gateway.allocate_nonce(intent.wallet_address),
            )
            send.start(self._sign(PendingTransaction(
                nonce=nonce,
                sender=intent.wallet_address,
                to=swap_tx.to,
                data=swap_tx.data,
                value=swap_tx.value,
                gas_plan=gas_plan,
                chain_id=intent.chain_id,
            )), swap_tx)
        tx = send.tx
        tx_hash = await self._dispatch(send, on_signed)
        self.logger.info(
            "Swap sent: %s (nonce %d, gas %d @ %d wei%s)",
            tx_hash,
            tx.nonce,
            tx.gas_plan.limit_units,
            tx.gas_plan.price_wei,
            ", fallback price" if tx.gas_plan.degraded else "",
        )
        swap_tx = send.swap_tx
        return SwapSubmission(
            tx_hash=tx_hash,
            nonce=tx.nonce,
            gas_plan=tx.gas_plan,
            quote=swap_tx.quote if swap_tx else None,
            transaction=swap_tx,
        )

    async def send_swap(
        self,
        intent: SwapIntent,
        on_signed: Optional[SignedCallback] = None,
        signed: Optional[PendingTransaction] = None,
    ) -> SwapSubmission:
        """Build, sign and broadcast the swap under its own retry budget.

        ``on_signed`` is awaited with each newly signed transaction before its
        first broadcast. ``signed`` is a transaction recorded by an earlier run;
        it is looked up and re-sent instead of building a new swap, unless the
        gateway finds it was never broadcast.
        """
        send = _SendState()
        if signed is not None:
            send.start(signed)
            send.recorded = send.sent = True
        return await self.retry.run(lambda: self._swap_once(intent, send, on_signed), "swap", SWAP_MAX_ATTEMPTS)

    async def confirm(self, tx_hash: str, deadline: Optional[float] = None) -> TransactionOutcome:
        return await self.gateway.wait_for_transaction(
            tx_hash,
            poll_interval=self.confirm_poll_interval,
            max_attempts=self.confirm_max_attempts,
            deadline=deadline,
        )

    async def execute_swap(self, intent: SwapIntent, deadline: Optional[float] = None) -> SwapResult:
        intent = self.normalize_intent(intent)
        await self.ensure_balance(intent)
        approval = ApprovalResult(need_approval=False)
        if not is_native_token(intent.from_token):
            approval = await self.force_unlimited_approval(intent.from_token, intent.amount)

        submission = await self.send_swap(intent)
        outcome = await self.confirm(submission.tx_hash, deadline)
        if outcome.success:
            self.logger.info("Swap %s confirmed in block %s", submission.tx_hash, outcome.block_number)
        else:
            self.logger.warning("Swap %s not confirmed: %s", submission.tx_hash, outcome.fail_reason)
        return SwapResult(
            success=outcome.success,
            tx_hash=submission.tx_hash,
            quote=submission.quote,
            outcome=outcome,
            approval_tx_hash=approval.tx_hash,
        )
