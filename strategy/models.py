"""Strategy instance records and their persisted schema."""
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from constants import CHECKPOINT_KEY_PREFIX, DEFAULT_CHAIN_ID, DEFAULT_FEE_TIER
from services.errors import StrategyValidationError

RECORD_SCHEMA_VERSION = 1


class Stage(str, Enum):
    INIT = "INIT"
    QUOTE = "QUOTE"
    APPROVE = "APPROVE"
    SWAP = "SWAP"
    MONITOR = "MONITOR"
    DONE = "DONE"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.DONE, Stage.ERROR)


RECOVERABLE_STAGES = frozenset({Stage.APPROVE, Stage.SWAP, Stage.MONITOR})


def new_instance_id(now: Optional[float] = None) -> str:
    millis = int((time.time() if now is None else now) * 1000)
    return f"strategy_{millis}_{uuid.uuid4().hex[:9]}"


def _optional_int(data: dict, key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise StrategyValidationError(f"{key} must be an integer, got {value!r}") from exc


def _optional_float(data: dict, key: str) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise StrategyValidationError(f"{key} must be a number, got {value!r}") from exc


@dataclass(slots=True)
class StrategyConfig:
    pool_address: str
    token0: str
    token1: str
    amount: int
    aggregator_slippage_pct: float
    liquidity_slippage_pct: float
    main_token: str = "token0"
    chain_id: int = DEFAULT_CHAIN_ID
    fee_tier: int = DEFAULT_FEE_TIER
    tick_lower: Optional[int] = None
    tick_upper: Optional[int] = None
    lower_percent: Optional[float] = None
    upper_percent: Optional[float] = None
    exit_timeout_seconds: Optional[float] = None

    @property
    def swap_from_token(self) -> str:
        return self.token0 if self.main_token == "token0" else self.token1

    @property
    def swap_to_token(self) -> str:
        return self.token1 if self.main_token == "token0" else self.token0

    @property
    def slippage_bps(self) -> int:
        return int(round(self.aggregator_slippage_pct * 100))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StrategyConfig":
        missing = [
            key
            for key in ("pool_address", "token0", "token1", "amount", "aggregator_slippage_pct", "liquidity_slippage_pct")
            if data.get(key) in (None, "")
        ]
        if missing:
            raise StrategyValidationError(f"Missing strategy fields: {', '.join(missing)}")
        amount = data["amount"]
        if isinstance(amount, float) or isinstance(amount, bool):
            raise StrategyValidationError("amount must be given in integer base units")
        try:
            amount = int(str(amount))
        except ValueError as exc:
            raise StrategyValidationError(f"amount must be an integer, got {data['amount']!r}") from exc
        return cls(
            pool_address=str(data["pool_address"]),
            token0=str(data["token0"]),
            token1=str(data["token1"]),
            amount=amount,
            aggregator_slippage_pct=_optional_float(data, "aggregator_slippage_pct"),
            liquidity_slippage_pct=_optional_float(data, "liquidity_slippage_pct"),
            main_token=str(data.get("main_token") or "token0"),
            chain_id=_optional_int(data, "chain_id") or DEFAULT_CHAIN_ID,
            fee_tier=_optional_int(data, "fee_tier") or DEFAULT_FEE_TIER,
            tick_lower=_optional_int(data, "tick_lower"),
            tick_upper=_optional_int(data, "tick_upper"),
            lower_percent=_optional_float(data, "lower_percent"),
            upper_percent=_optional_float(data, "upper_percent"),
            exit_timeout_seconds=_optional_float(data, "exit_timeout_seconds"),
        )


@dataclass(slots=True)
class Checkpoint:
    stage: Stage
    timestamp: float
    substep: str
    detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "timestamp": self.timestamp,
            "substep": self.substep,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        return cls(
            stage=Stage(data["stage"]),
            timestamp=float(data["timestamp"]),
            substep=data.get("substep", ""),
            detail=data.get("detail"),
        )


@dataclass(slots=True)
class StrategyInstance:
    instance_id: str
    config: StrategyConfig
    stage: Stage
    created_at: float
    checkpoint: Checkpoint
    quote: Optional[dict] = None
    approval_tx_hash: Optional[str] = None
    swap_tx_hash: Optional[str] = None
    signed_swap: Optional[dict] = None
    block_number: Optional[int] = None
    range_status: Optional[dict] = None
    restart_count: int = 0
    error_info: Optional[dict] = field(default=None)

    @property
    def storage_key(self) -> str:
        return f"{CHECKPOINT_KEY_PREFIX}{self.instance_id}"

    def to_record(self) -> dict[str, Any]:
        return {
            "schema_version": RECORD_SCHEMA_VERSION,
            "instance_id": self.instance_id,
            "config": self.config.to_dict(),
            "stage": self.stage.value,
            "created_at": self.created_at,
            "checkpoint": self.checkpoint.to_dict(),
            "quote": self.quote,
            "approval_tx_hash": self.approval_tx_hash,
            "swap_tx_hash": self.swap_tx_hash,
            "signed_swap": self.signed_swap,
            "block_number": self.block_number,
            "range_status": self.range_status,
            "restart_count": self.restart_count,
            "error_info": self.error_info,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "StrategyInstance":
        return cls(
            instance_id=record["instance_id"],
            config=StrategyConfig.from_dict(record["config"]),
            stage=Stage(record["stage"]),
            created_at=float(record["created_at"]),
            checkpoint=Checkpoint.from_dict(record["checkpoint"]),
            quote=record.get("quote"),
            approval_tx_hash=record.get("approval_tx_hash"),
            swap_tx_hash=record.get("swap_tx_hash"),
            signed_swap=record.get("signed_swap"),
            block_number=record.get("block_number"),
            range_status=record.get("range_status"),
            restart_count=int(record.get("restart_count", 0)),
            error_info=record.get("error_info"),
        )
