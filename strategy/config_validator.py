#!/usr/bin/env python3
import dataclasses
import logging
import re
from typing import Awaitable, Callable, Optional

from constants import (
    HIGH_LIQUIDITY_SLIPPAGE_PCT,
    MAX_AGGREGATOR_SLIPPAGE_PCT,
    MAX_TICK_WIDTH,
    MIN_TICK_WIDTH,
)
from services.errors import StrategyValidationError
from services.tick_calculator import calculate_tick_range
from strategy.models import StrategyConfig

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

TickReader = Callable[[str], Awaitable[int]]

logger = logging.getLogger(__name__)


def _check_address(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not _ADDRESS_RE.match(value):
        raise StrategyValidationError(f"Invalid {field_name} format: {value!r}")
    return value.lower()


def _check_tick_width(tick_lower: int, tick_upper: int) -> None:
    if tick_lower >= tick_upper:
        raise StrategyValidationError(
            f"tick_lower ({tick_lower}) must be below tick_upper ({tick_upper})"
        )
    width = tick_upper - tick_lower
    if width < MIN_TICK_WIDTH:
        raise StrategyValidationError(f"Tick range too narrow: {width} < {MIN_TICK_WIDTH}")
    if width > MAX_TICK_WIDTH:
        raise StrategyValidationError(f"Tick range too wide: {width} > {MAX_TICK_WIDTH}")


def validate_static(config: StrategyConfig) -> StrategyConfig:
    """All checks that need no network access. Returns a normalized copy."""
    pool_address = _check_address(config.pool_address, "pool address")
    token0 = _check_address(config.token0, "token0 address")
    token1 = _check_address(config.token1, "token1 address")
    if token0 == token1:
        raise StrategyValidationError("token0 and token1 must differ")

    if isinstance(config.amount, bool) or not isinstance(config.amount, int) or config.amount <= 0:
        raise StrategyValidationError(f"amount must be a positive integer, got {config.amount!r}")

    if config.main_token not in ("token0", "token1"):
        raise StrategyValidationError(f"main_token must be 'token0' or 'token1', got {config.main_token!r}")

    if not 0 < config.aggregator_slippage_pct <= MAX_AGGREGATOR_SLIPPAGE_PCT:
        raise StrategyValidationError(
            f"aggregator_slippage_pct must be in (0, {MAX_AGGREGATOR_SLIPPAGE_PCT:g}], got {config.aggregator_slippage_pct}"
        )
    if config.slippage_bps < 1:
        raise StrategyValidationError(
            f"aggregator_slippage_pct {config.aggregator_slippage_pct} rounds to zero basis points"
        )
    if config.liquidity_slippage_pct <= 0:
        raise StrategyValidationError("liquidity_slippage_pct must be greater than 0")
    if config.liquidity_slippage_pct > HIGH_LIQUIDITY_SLIPPAGE_PCT:
        logger.warning(
            "Liquidity slippage %.2f%% is above %.0f%%; the position may fill at a poor price",
            config.liquidity_slippage_pct,
            HIGH_LIQUIDITY_SLIPPAGE_PCT,
        )

    if config.exit_timeout_seconds is not None and config.exit_timeout_seconds <= 0:
        raise StrategyValidationError("exit_timeout_seconds must be greater than 0 when set")

    explicit = config.tick_lower is not None or config.tick_upper is not None
    percent = config.lower_percent is not None or config.upper_percent is not None
    if explicit:
        if config.tick_lower is None or config.tick_upper is None:
            raise StrategyValidationError("Both tick_lower and tick_upper are required")
        _check_tick_width(config.tick_lower, config.tick_upper)
    elif percent:
        if config.lower_percent is None or config.upper_percent is None:
            raise StrategyValidationError("Both lower_percent and upper_percent are required")
        if config.lower_percent >= config.upper_percent:
            raise StrategyValidationError(
                f"lower_percent ({config.lower_percent}) must be below upper_percent ({config.upper_percent})"
            )
    else:
        raise StrategyValidationError("Provide either tick_lower/tick_upper or lower_percent/upper_percent")

    return dataclasses.replace(config, pool_address=pool_address, token0=token0, token1=token1)


async def validate_strategy_config(config: StrategyConfig, tick_reader: Optional[TickReader] = None) -> StrategyConfig:
    """Validate ``config`` and resolve percentage bounds into a concrete tick range.

    Explicit tick ranges are checked without touching the network. Percentage
    bounds read the pool's current tick through ``tick_reader`` and are then
    held to the same width limits.
    """
    config = validate_static(config)
    if config.tick_lower is not None:
        return config

    if tick_reader is None:
        raise StrategyValidationError("Percentage bounds need a pool tick reader")
    current_tick = await tick_reader(config.pool_address)
    tick_range = calculate_tick_range(current_tick, config.lower_percent, config.upper_percent, config.fee_tier)
    _check_tick_width(tick_range.tick_lower, tick_range.tick_upper)
    logger.info(
        "Pool %s at tick %d: %+.2f%%..%+.2f%% -> ticks %d..%d (spacing %d)",
        config.pool_address,
        current_tick,
        config.lower_percent,
        config.upper_percent,
        tick_range.tick_lower,
        tick_range.tick_upper,
        tick_range.tick_spacing,
    )
    return dataclasses.replace(config, tick_lower=tick_range.tick_lower, tick_upper=tick_range.tick_upper)
