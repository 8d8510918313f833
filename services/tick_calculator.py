#!/usr/bin/env python3
import math
from dataclasses import dataclass

from constants import DEFAULT_TICK_SPACING, TICK_SPACING_BY_FEE, TICKS_PER_PERCENT


@dataclass(frozen=True, slots=True)
class TickRange:
    tick_lower: int
    tick_upper: int
    tick_spacing: int

    @property
    def width(self) -> int:
        return self.tick_upper - self.tick_lower

    @property
    def percent_width(self) -> float:
        return self.width / TICKS_PER_PERCENT


def tick_spacing_for_fee(fee_tier: int) -> int:
    return TICK_SPACING_BY_FEE.get(fee_tier, DEFAULT_TICK_SPACING)


def calculate_tick_range(current_tick: int, lower_percent: float, upper_percent: float, fee_tier: int) -> TickRange:
    """Convert signed percentage offsets around ``current_tick`` into an aligned range.

    One percent is treated as 100 ticks. Both bounds are floored onto the
    fee tier's spacing, and a range that collapses to zero width is widened
    by one spacing.
    """
    spacing = tick_spacing_for_fee(fee_tier)
    tick_lower = current_tick + math.floor(lower_percent * TICKS_PER_PERCENT)
    tick_upper = current_tick + math.floor(upper_percent * TICKS_PER_PERCENT)
    tick_lower = (tick_lower // spacing) * spacing
    tick_upper = (tick_upper // spacing) * spacing
    if tick_lower >= tick_upper:
        tick_upper = tick_lower + spacing
    return TickRange(tick_lower=tick_lower, tick_upper=tick_upper, tick_spacing=spacing)
