"""Error taxonomy shared by the swap pipeline and the strategy state machine."""
from __future__ import annotations

from typing import Optional


class ConfigError(Exception):
    """Missing credentials, bad keys or malformed addresses. Never retried."""


class StrategyValidationError(ValueError):
    """A submitted strategy configuration was rejected before any work started."""


class AggregatorError(Exception):
    """The aggregator answered with a non-zero response code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"Aggregator error {code}: {message}")
        self.code = code
        self.message = message


class TransientNetworkError(Exception):
    """Connection, timeout, DNS or TLS failure talking to a remote endpoint."""


class RpcError(Exception):
    """A reachable RPC node returned a JSON-RPC error object."""

    def __init__(self, code: Optional[int], message: str) -> None:
        super().__init__(f"RPC error {code}: {message}" if code is not None else f"RPC error: {message}")
        self.code = code
        self.message = message


class OnChainRevertError(Exception):
    """A transaction was mined but its receipt status is not 1."""

    def __init__(self, tx_hash: str, reason: str = "transaction reverted") -> None:
        super().__init__(f"{reason}: {tx_hash}")
        self.tx_hash = tx_hash
        self.reason = reason


class InsufficientBalanceError(Exception):
    """The wallet holds less of the input token than the swap spends."""

    def __init__(self, token: str, required: int, available: int) -> None:
        super().__init__(f"Insufficient balance of {token}: need {required}, have {available}")
        self.token = token
        self.required = required
        self.available = available


class OperationFailed(Exception):
    """Retry budget exhausted for a labelled operation."""

    def __init__(self, label: str, last_error: BaseException) -> None:
        super().__init__(f"{label} failed: {last_error}")
        self.label = label
        self.last_error = last_error


__all__ = [
    "AggregatorError",
    "ConfigError",
    "InsufficientBalanceError",
    "OnChainRevertError",
    "OperationFailed",
    "RpcError",
    "StrategyValidationError",
    "TransientNetworkError",
]
