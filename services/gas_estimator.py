#!/usr/bin/env python3
import logging
from typing import Optional

from constants import (
    GAS_LIMIT_COMPLEX,
    GAS_LIMIT_COMPLEX_THRESHOLD,
    GAS_LIMIT_CONTRACT_CALL,
    GAS_LIMIT_CONTRACT_THRESHOLD,
    GAS_LIMIT_SIMPLE,
    GAS_PRICE_FALLBACK_MAX,
    GAS_PRICE_FALLBACK_MIN,
    GAS_PRICE_FALLBACK_NORMAL,
)
from services.aggregator_client import AggregatorClient
from services.errors import ConfigError
from services.models import GasPlan, GasPriceEstimate

FALLBACK_GAS_PRICE = GasPriceEstimate(
    min=GAS_PRICE_FALLBACK_MIN,
    normal=GAS_PRICE_FALLBACK_NORMAL,
    max=GAS_PRICE_FALLBACK_MAX,
    degraded=True,
)


def estimate_gas_limit(call_data: Optional[str]) -> int:
    """Gas limit from the length of the hex call data. No network access."""
    length = len(call_data or "")
    if length > GAS_LIMIT_COMPLEX_THRESHOLD:
        return GAS_LIMIT_COMPLEX
    if length > GAS_LIMIT_CONTRACT_THRESHOLD:
        return GAS_LIMIT_CONTRACT_CALL
    return GAS_LIMIT_SIMPLE


class GasEstimator:
    def __init__(self, aggregator: AggregatorClient, *, logger: Optional[logging.Logger] = None) -> None:
        self.aggregator = aggregator
        self.logger = logger or logging.getLogger(__name__)

    async def estimate_gas_price(self, chain_id: Optional[int] = None) -> GasPriceEstimate:
        """One lookup; any failure other than bad configuration yields the fallback triple."""
        try:
            return await self.aggregator.get_gas_price(chain_id)
        except ConfigError:
            raise
        except Exception as exc:
            self.logger.warning("Gas price lookup failed (%s); using fallback %s wei", exc, GAS_PRICE_FALLBACK_MAX)
            return FALLBACK_GAS_PRICE

    async def plan(self, call_data: Optional[str], chain_id: Optional[int] = None) -> GasPlan:
        """Uses the ``max`` price of the estimate."""
        price = await self.estimate_gas_price(chain_id)
        return GasPlan(price_wei=price.max, limit_units=estimate_gas_limit(call_data), degraded=price.degraded)
