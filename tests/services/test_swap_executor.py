import asyncio

import pytest

from services.chain_gateway import ChainGateway
from services.errors import (
    AggregatorError,
    ConfigError,
    InsufficientBalanceError,
    OperationFailed,
    RpcError,
    TransientNetworkError,
)
from services.gas_estimator import GasEstimator
from services.models import (
    GasPlan,
    GasPriceEstimate,
    PendingTransaction,
    Quote,
    SwapIntent,
    SwapTransactionData,
    TransactionOutcome,
    TransactionStatus,
)
from services.retry_executor import RetryExecutor
from services.swap_executor import SwapExecutor

PRIVATE_KEY = '0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318'

WALLET = '0x2C7536E3605D9C16a7a3D7b1898e529396a65c23'
NATIVE = '0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee'
USDT = '0x55d398326f99059ff775485246999027b3197955'
WBNB = '0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c'
SPENDER = '0x2c34a2fb1d0b4f55de51e1d0bdefaddce6b7cdd6'
ROUTER = '0x9b9efa5efa731ea9bbb0369e91fa17abf249cfd4'
MAX_UINT256 = 2 ** 256 - 1


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeAggregator:
    def __init__(self):
        self.swap_failures = []
        self.approval_requests = []
        self.swap_requests = 0

    async def get_quote(self, intent):
        return Quote(expected_output=612, route_description='PancakeSwap V3', price_impact_bps=12)

    async def get_gas_price(self, chain_id=None):
        return GasPriceEstimate(min=1, normal=2, max=3)

    async def get_approval_transaction(self, token, amount, chain_id=None):
        self.approval_requests.append((token, amount))
        return {'data': '0x095ea7b3' + '00' * 64}

    async def get_swap_transaction(self, intent):
        self.swap_requests += 1
        if self.swap_failures:
            raise self.swap_failures.pop(0)
        quote = Quote(expected_output=612, route_description='PancakeSwap V3', price_impact_bps=12)
        return SwapTransactionData(to=ROUTER, data='0x' + 'ab' * 150, value=intent.amount if intent.from_token == NATIVE else 0, quote=quote)


class FakeGateway:
    def __init__(self, allowance=0, outcome_status=TransactionStatus.SUCCESS, balance=10 ** 30):
        self.wallet_address = WALLET
        self.allowance = allowance
        self.outcome_status = outcome_status
        self.balance = balance
        self.sent = []
        self.attempts = []
        self.next_nonce = 11
        self.signed = 0
        self.send_failures = []
        self.abandon_failed = False
        self.receipts = {}
        self.released = []
        self.waits = []

    async def check_allowance(self, token, spender, owner):
        return self.allowance

    async def get_balance(self, address):
        return self.balance

    async def get_token_balance(self, token, owner):
        return self.balance

    async def allocate_nonce(self, address):
        nonce = self.next_nonce
        self.next_nonce += 1
        return nonce

    def release_nonce(self, address, nonce):
        self.released.append(nonce)

    def sign_transaction(self, tx):
        if tx.signed_payload is None:
            self.signed += 1
            tx.tx_hash = f"0x{self.signed:064x}"
            tx.signed_payload = f"0xf8{self.signed:04x}"
        return tx

    async def sign_and_send_transaction(self, tx):
        self.sign_transaction(tx)
        self.attempts.append(tx.tx_hash)
        if self.send_failures:
            if self.abandon_failed:
                tx.abandoned = True
            raise self.send_failures.pop(0)
        self.sent.append(tx)
        return tx.tx_hash

    async def get_transaction_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    async def wait_for_transaction(self, tx_hash, poll_interval, max_attempts, deadline=None):
        self.waits.append((tx_hash, deadline))
        reason = None if self.outcome_status is TransactionStatus.SUCCESS else 'timeout: no receipt after 30 polls'
        return TransactionOutcome(tx_hash, self.outcome_status, 100 if reason is None else None, reason)


def make_executor(gateway=None, aggregator=None, approve_spender=SPENDER):
    gateway = gateway or FakeGateway()
    aggregator = aggregator or FakeAggregator()
    sleep = RecordingSleep()
    executor = SwapExecutor(
        aggregator,
        GasEstimator(aggregator),
        gateway,
        RetryExecutor(sleep=sleep),
        chain_id=56,
        approve_spender=approve_spender,
        sleep=sleep,
    )
    return executor, gateway, aggregator, sleep


def intent(from_token=USDT, to_token=WBNB, amount=5_000_000, wallet=WALLET):
    return SwapIntent(
        from_token=from_token,
        to_token=to_token,
        amount=amount,
        wallet_address=wallet,
        slippage_bps=50,
        chain_id=56,
    )


@pytest.mark.asyncio
async def test_approve_token_skips_when_allowance_covers_amount():
    executor, gateway, aggregator, _ = make_executor(FakeGateway(allowance=5_000_000))

    result = await executor.approve_token(USDT, 5_000_000)

    assert result.need_approval is False
    assert result.tx_hash is None
    assert gateway.sent == []
    assert aggregator.approval_requests == []


@pytest.mark.asyncio
async def test_approve_token_sends_exact_amount_to_token_contract():
    executor, gateway, aggregator, _ = make_executor(FakeGateway(allowance=10))

    result = await executor.approve_token(USDT, 5_000_000)

    assert result.need_approval is True
    assert result.tx_hash == f"0x{1:064x}"
    assert aggregator.approval_requests == [(USDT, 5_000_000)]
    tx = gateway.sent[0]
    assert tx.to == USDT
    assert tx.value == 0
    assert tx.nonce == 11
    assert tx.gas_plan.price_wei == 3
    assert tx.gas_plan.limit_units == 250_000


@pytest.mark.asyncio
async def test_force_unlimited_approval_waits_to_settle():
    executor, gateway, aggregator, sleep = make_executor()

    result = await executor.force_unlimited_approval(USDT, 5_000_000)

    assert result.need_approval is True
    assert aggregator.approval_requests == [(USDT, MAX_UINT256)]
    assert sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_missing_spender_is_config_error():
    executor, _, _, _ = make_executor(approve_spender=None)

    with pytest.raises(ConfigError):
        await executor.approve_token(USDT, 1)


@pytest.mark.asyncio
async def test_execute_swap_native_input_skips_approval():
    executor, gateway, aggregator, sleep = make_executor()

    result = await executor.execute_swap(intent(from_token=NATIVE, to_token=USDT, amount=10 ** 17))

    assert result.success is True
    assert result.approval_tx_hash is None
    assert aggregator.approval_requests == []
    assert len(gateway.sent) == 1
    swap_tx = gateway.sent[0]
    assert swap_tx.to == ROUTER
    assert swap_tx.value == 10 ** 17
    assert swap_tx.gas_plan.limit_units == 500_000
    assert result.outcome.block_number == 100
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_execute_swap_token_input_approves_then_swaps():
    executor, gateway, _, _ = make_executor()

    result = await executor.execute_swap(intent(), deadline=2_000.0)

    assert result.success is True
    assert result.approval_tx_hash == f"0x{1:064x}"
    assert result.tx_hash == f"0x{2:064x}"
    assert [tx.nonce for tx in gateway.sent] == [11, 12]
    assert gateway.waits == [(result.tx_hash, 2_000.0)]


@pytest.mark.asyncio
async def test_swap_retries_on_own_budget_after_transient_failure():
    aggregator = FakeAggregator()
    aggregator.swap_failures = [TransientNetworkError('socket hang up')]
    executor, gateway, _, sleep = make_executor(aggregator=aggregator)

    result = await executor.execute_swap(intent(from_token=NATIVE, to_token=USDT))

    assert result.success is True
    assert aggregator.swap_requests == 2
    assert sleep.delays == [15.0]


@pytest.mark.asyncio
async def test_swap_budget_exhausted_raises_operation_failed():
    aggregator = FakeAggregator()
    aggregator.swap_failures = [AggregatorError('82000', 'Insufficient liquidity')] * 2
    executor, gateway, _, _ = make_executor(aggregator=aggregator)

    with pytest.raises(OperationFailed) as excinfo:
        await executor.execute_swap(intent(from_token=NATIVE, to_token=USDT))

    assert excinfo.value.label == 'swap'
    assert aggregator.swap_requests == 2
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_pending_confirmation_is_reported_not_raised():
    executor, _, _, _ = make_executor(FakeGateway(outcome_status=TransactionStatus.PENDING))

    result = await executor.execute_swap(intent(from_token=NATIVE, to_token=USDT))

    assert result.success is False
    assert result.outcome.status is TransactionStatus.PENDING
    assert result.outcome.fail_reason.startswith('timeout')


@pytest.mark.asyncio
async def test_wallet_mismatch_is_rejected_before_any_call():
    executor, gateway, aggregator, _ = make_executor()

    with pytest.raises(ConfigError):
        await executor.execute_swap(intent(wallet='0x0000000000000000000000000000000000000001'))

    assert gateway.sent == []
    assert aggregator.swap_requests == 0


@pytest.mark.asyncio
async def test_get_quote_validates_addresses():
    executor, _, _, _ = make_executor()

    with pytest.raises(ConfigError):
        await executor.get_quote(intent(to_token='0x123'))

    quote = await executor.get_quote(intent())
    assert quote.expected_output == 612


@pytest.mark.asyncio
async def test_swap_retry_resends_same_signed_transaction():
    gateway = FakeGateway()
    gateway.send_failures = [TransientNetworkError('Broadcast failed on all 1 RPC nodes: timed out')]
    executor, _, aggregator, sleep = make_executor(gateway)

    submission = await executor.send_swap(intent(from_token=NATIVE, to_token=USDT))

    assert aggregator.swap_requests == 1
    assert gateway.attempts == [submission.tx_hash, submission.tx_hash]
    assert [tx.nonce for tx in gateway.sent] == [11]
    assert gateway.next_nonce == 12
    assert sleep.delays == [15.0]


@pytest.mark.asyncio
async def test_swap_retry_stops_when_first_broadcast_was_mined():
    gateway = FakeGateway()
    gateway.send_failures = [TransientNetworkError('timed out')]
    gateway.receipts[f"0x{1:064x}"] = {'status': '0x1', 'blockNumber': '0x64'}
    executor, _, aggregator, _ = make_executor(gateway)

    submission = await executor.send_swap(intent(from_token=NATIVE, to_token=USDT))

    assert submission.tx_hash == f"0x{1:064x}"
    assert gateway.attempts == [submission.tx_hash]
    assert aggregator.swap_requests == 1


@pytest.mark.asyncio
async def test_swap_rebuilt_only_after_definite_non_broadcast():
    gateway = FakeGateway()
    gateway.send_failures = [RpcError(-32000, 'insufficient funds for gas')]
    gateway.abandon_failed = True
    executor, _, aggregator, _ = make_executor(gateway)

    submission = await executor.send_swap(intent(from_token=NATIVE, to_token=USDT))

    assert aggregator.swap_requests == 2
    assert gateway.attempts == [f"0x{1:064x}", f"0x{2:064x}"]
    assert submission.tx_hash == f"0x{2:064x}"


@pytest.mark.asyncio
async def test_approval_retry_resends_same_transaction():
    gateway = FakeGateway()
    gateway.send_failures = [TransientNetworkError('timed out')]
    executor, _, aggregator, sleep = make_executor(gateway)

    result = await executor.force_unlimited_approval(USDT, 5_000_000)

    assert result.tx_hash == f"0x{1:064x}"
    assert aggregator.approval_requests == [(USDT, MAX_UINT256)]
    assert gateway.attempts == [result.tx_hash, result.tx_hash]
    assert sleep.delays == [15.0, 2.0]


@pytest.mark.asyncio
async def test_on_signed_runs_before_first_broadcast():
    gateway = FakeGateway()
    executor, _, _, _ = make_executor(gateway)
    recorded = []

    async def on_signed(tx):
        recorded.append((tx.tx_hash, tx.nonce, list(gateway.attempts)))

    submission = await executor.send_swap(intent(from_token=NATIVE, to_token=USDT), on_signed=on_signed)

    assert recorded == [(submission.tx_hash, 11, [])]


@pytest.mark.asyncio
async def test_send_swap_with_recorded_transaction_does_not_build_a_new_one():
    gateway = FakeGateway()
    executor, _, aggregator, _ = make_executor(gateway)
    recorded = PendingTransaction(
        nonce=4,
        sender=WALLET,
        to=ROUTER,
        data='0x' + 'ab' * 150,
        value=0,
        gas_plan=GasPlan(price_wei=3, limit_units=500_000),
        chain_id=56,
        signed_payload='0xf8aa',
        tx_hash='0x' + 'cd' * 32,
    )
    gateway.receipts[recorded.tx_hash] = {'status': '0x1', 'blockNumber': '0x64'}

    submission = await executor.send_swap(intent(from_token=NATIVE, to_token=USDT), signed=recorded)

    assert submission.tx_hash == recorded.tx_hash
    assert submission.nonce == 4
    assert submission.quote is None
    assert aggregator.swap_requests == 0
    assert gateway.attempts == []


@pytest.mark.asyncio
async def test_insufficient_balance_stops_before_approval():
    executor, gateway, aggregator, _ = make_executor(FakeGateway(balance=4_999_999))

    with pytest.raises(InsufficientBalanceError) as excinfo:
        await executor.execute_swap(intent())

    assert excinfo.value.required == 5_000_000
    assert excinfo.value.available == 4_999_999
    assert aggregator.approval_requests == []
    assert gateway.attempts == []


class RpcResponse:
    def __init__(self, payload):
        self._payload = payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def raise_for_status(self):
        return None

    async def json(self):
        return self._payload


class MempoolNode:
    """One RPC node whose first raw-transaction broadcast times out."""

    def __init__(self, delivered):
        self.delivered = delivered
        self.mempool = set()
        self.raw_sent = []

    def post(self, url, json, timeout):
        method, params = json['method'], json['params']
        if method == 'eth_getTransactionCount':
            return RpcResponse({'jsonrpc': '2.0', 'id': json['id'], 'result': '0x7'})
        if method == 'eth_getTransactionReceipt':
            return RpcResponse({'jsonrpc': '2.0', 'id': json['id'], 'result': None})
        raw = params[0]
        self.raw_sent.append(raw)
        if len(self.raw_sent) == 1:
            if self.delivered:
                self.mempool.add(raw)
            raise asyncio.TimeoutError()
        if raw in self.mempool:
            return RpcResponse({'jsonrpc': '2.0', 'id': json['id'], 'error': {'code': -32000, 'message': 'already known'}})
        self.mempool.add(raw)
        return RpcResponse({'jsonrpc': '2.0', 'id': json['id'], 'result': None})


@pytest.mark.asyncio
@pytest.mark.parametrize('delivered', [True, False])
async def test_timed_out_broadcast_is_resent_with_same_nonce(delivered):
    node = MempoolNode(delivered)
    gateway = ChainGateway(node, [('node-a', 'https://node-a.test')], private_key=PRIVATE_KEY, chain_id=56)
    aggregator = FakeAggregator()
    sleep = RecordingSleep()
    executor = SwapExecutor(
        aggregator,
        GasEstimator(aggregator),
        gateway,
        RetryExecutor(health_reporter=gateway.report_transient_failure, sleep=sleep),
        chain_id=56,
        approve_spender=SPENDER,
        sleep=sleep,
    )

    submission = await executor.send_swap(intent(from_token=NATIVE, to_token=USDT, wallet=gateway.wallet_address))

    assert len(node.raw_sent) == 2
    assert len(set(node.raw_sent)) == 1
    assert len(node.mempool) == 1
    assert submission.nonce == 7
    assert aggregator.swap_requests == 1
    assert await gateway.allocate_nonce(gateway.wallet_address) == 8
