import asyncio

import pytest

from services.errors import AggregatorError, ConfigError, OnChainRevertError, OperationFailed, TransientNetworkError
from services.retry_executor import RetryExecutor, is_transient_network_error


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FlakyOperation:
    def __init__(self, errors, result='ok'):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures_using_schedule():
    sleep = RecordingSleep()
    reported = []
    executor = RetryExecutor(health_reporter=reported.append, sleep=sleep)
    operation = FlakyOperation([TransientNetworkError('connection refused'), asyncio.TimeoutError()])

    result = await executor.run(operation, 'swap', 3)

    assert result == 'ok'
    assert operation.calls == 3
    assert sleep.delays == [15.0, 25.0]
    assert len(reported) == 2


@pytest.mark.asyncio
async def test_no_wait_after_final_attempt_and_zero_past_schedule():
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep)
    failures = [AggregatorError('50011', 'busy')] * 4
    operation = FlakyOperation(failures)

    with pytest.raises(OperationFailed) as excinfo:
        await executor.run(operation, 'quote', 4)

    assert operation.calls == 4
    # third retry has no scheduled delay; nothing follows the last attempt
    assert sleep.delays == [15.0, 25.0]
    assert excinfo.value.label == 'quote'
    assert isinstance(excinfo.value.last_error, AggregatorError)


@pytest.mark.asyncio
async def test_non_transient_error_is_retried_without_health_report():
    sleep = RecordingSleep()
    reported = []
    executor = RetryExecutor(health_reporter=reported.append, sleep=sleep)
    operation = FlakyOperation([AggregatorError('82000', 'Insufficient liquidity')])

    assert await executor.run(operation, 'quote', 3) == 'ok'
    assert reported == []
    assert sleep.delays == [15.0]


@pytest.mark.asyncio
@pytest.mark.parametrize('error', [ConfigError('missing key'), OnChainRevertError('0xabc')])
async def test_permanent_errors_are_not_retried(error):
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep)
    operation = FlakyOperation([error])

    with pytest.raises(type(error)):
        await executor.run(operation, 'token approval', 3)

    assert operation.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_single_attempt_budget():
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep)

    with pytest.raises(OperationFailed):
        await executor.run(FlakyOperation([RuntimeError('boom')]), 'swap', 1)

    assert sleep.delays == []


@pytest.mark.asyncio
async def test_rejects_empty_budget():
    executor = RetryExecutor(sleep=RecordingSleep())
    with pytest.raises(ValueError):
        await executor.run(FlakyOperation([]), 'swap', 0)


@pytest.mark.asyncio
async def test_custom_schedule_override():
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep)
    operation = FlakyOperation([RuntimeError('a'), RuntimeError('b')])

    await executor.run(operation, 'swap', 3, schedule=[1.0, 2.0])

    assert sleep.delays == [1.0, 2.0]


@pytest.mark.parametrize(
    'error, expected',
    [
        (RuntimeError('connect ECONNREFUSED 127.0.0.1:8545'), True),
        (RuntimeError('request timed out'), True),
        (RuntimeError('getaddrinfo ENOTFOUND bsc-dataseed.bnbchain.org'), True),
        (ConnectionResetError(), True),
        (RuntimeError('execution reverted'), False),
        (AggregatorError('82000', 'Insufficient liquidity'), False),
    ],
)
def test_is_transient_network_error(error, expected):
    assert is_transient_network_error(error) is expected
