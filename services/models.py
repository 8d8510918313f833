"""Dataclasses passed between the aggregator, gas, chain and swap services."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from web3 import Web3


class NodeHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class TransactionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


@dataclass(slots=True)
class SwapIntent:
    from_token: str
    to_token: str
    amount: int
    wallet_address: str
    slippage_bps: int
    chain_id: int

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValueError(f"amount must be an integer number of base units, got {self.amount!r}")
        if self.amount <= 0:
            raise ValueError("amount must be greater than 0")
        if not 0 < self.slippage_bps <= 100:
            raise ValueError("slippage_bps must be in (0, 100]")

    @property
    def slippage_percent(self) -> str:
        """Slippage as the percent string the aggregator expects, e.g. 50 bps -> '0.5'."""
        return f"{self.slippage_bps / 100:g}"


@dataclass(frozen=True, slots=True)
class Quote:
    expected_output: int
    route_description: str
    price_impact_bps: int
    route_count: int = 1
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def risk_level(self) -> str:
        if self.price_impact_bps > 500:
            level = 2
        elif self.price_impact_bps > 100:
            level = 1
        else:
            level = 0
        if self.route_count > 2:
            level = min(level + 1, 2)
        return ("low", "medium", "high")[level]

    def as_dict(self) -> dict:
        return {
            "expected_output": str(self.expected_output),
            "route_description": self.route_description,
            "price_impact_bps": self.price_impact_bps,
            "route_count": self.route_count,
            "risk_level": self.risk_level,
        }


@dataclass(frozen=True, slots=True)
class SwapTransactionData:
    """Unsigned call returned by the aggregator's swap endpoint."""
    to: str
    data: str
    value: int
    quote: Quote
    router_result: dict = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class GasPriceEstimate:
    min: int
    normal: int
    max: int
    degraded: bool = False


@dataclass(frozen=True, slots=True)
class GasPlan:
    price_wei: int
    limit_units: int
    degraded: bool = False


@dataclass(slots=True)
class PendingTransaction:
    """A transaction bound to one nonce.

    Once signed, ``signed_payload`` and ``tx_hash`` never change; re-sends
    reuse them. ``abandoned`` is set by the gateway when the payload is known
    never to have reached a node and its nonce was given back.
    """
    nonce: int
    sender: str
    to: str
    data: str
    value: int
    gas_plan: GasPlan
    chain_id: int
    signed_payload: Optional[str] = None
    tx_hash: Optional[str] = None
    abandoned: bool = False

    def to_record(self) -> dict[str, Any]:
        return {
            "nonce": self.nonce,
            "sender": self.sender,
            "to": self.to,
            "data": self.data,
            "value": str(self.value),
            "gas_price_wei": self.gas_plan.price_wei,
            "gas_limit_units": self.gas_plan.limit_units,
            "chain_id": self.chain_id,
            "signed_payload": self.signed_payload,
            "tx_hash": self.tx_hash,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "PendingTransaction":
        return cls(
            nonce=int(record["nonce"]),
            sender=record["sender"],
            to=record["to"],
            data=record["data"],
            value=int(record["value"]),
            gas_plan=GasPlan(price_wei=int(record["gas_price_wei"]), limit_units=int(record["gas_limit_units"])),
            chain_id=int(record["chain_id"]),
            signed_payload=record.get("signed_payload"),
            tx_hash=record.get("tx_hash"),
        )

    def to_signable(self) -> dict[str, Any]:
        return {
            "nonce": self.nonce,
            "to": Web3.to_checksum_address(self.to),
            "value": int(self.value),
            "data": self.data or "0x",
            "gas": self.gas_plan.limit_units,
            "gasPrice": self.gas_plan.price_wei,
            "chainId": self.chain_id,
        }


@dataclass(frozen=True, slots=True)
class TransactionOutcome:
    hash: str
    status: TransactionStatus
    block_number: Optional[int] = None
    fail_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is TransactionStatus.SUCCESS


@dataclass(slots=True)
class RpcNode:
    url: str
    name: str
    health: NodeHealth = NodeHealth.HEALTHY
    last_failure_time: Optional[float] = None
    failure_count: int = 0
    last_error: Optional[str] = None
    response_time: Optional[float] = None
    block_number: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "url": self.url,
            "health": self.health.value,
            "last_failure_time": self.last_failure_time,
            "failure_count": self.failure_count,
            "last_error": self.last_error,
            "response_time": self.response_time,
            "block_number": self.block_number,
        }


@dataclass(frozen=True, slots=True)
class ApprovalResult:
    need_approval: bool
    tx_hash: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SwapSubmission:
    """A broadcast swap. ``quote`` and ``transaction`` are unset when a recorded transaction was re-sent."""
    tx_hash: str
    nonce: int
    gas_plan: GasPlan
    quote: Optional[Quote] = None
    transaction: Optional[SwapTransactionData] = None


@dataclass(frozen=True, slots=True)
class SwapResult:
    success: bool
    tx_hash: str
    quote: Optional[Quote]
    outcome: TransactionOutcome
    approval_tx_hash: Optional[str] = None
