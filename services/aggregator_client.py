#!/usr/bin/env python3
import asyncio
import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from constants import (
    ADDRESS_COERCION_LENGTH,
    ADDRESS_LENGTH,
    AGGREGATOR_API_PREFIX,
    AGGREGATOR_GAS_PRICE_PATH,
    AGGREGATOR_REQUEST_TIMEOUT,
)
from services.errors import AggregatorError, ConfigError, TransientNetworkError
from services.models import GasPriceEstimate, Quote, SwapIntent, SwapTransactionData
from services.request_signer import RequestSigner

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def validate_token_address(address: Any, param_name: str = "tokenAddress") -> str:
    """Return the lower-cased address or raise ``ConfigError``.

    Addresses are strings and are never converted to numbers. The length check
    runs before the format check so that an address mangled into a long decimal
    string gets a message pointing at the coercion.
    """
    if not address or not isinstance(address, str):
        raise ConfigError(f"{param_name} is empty or not a string")
    if len(address) > ADDRESS_COERCION_LENGTH:
        raise ConfigError(
            f"{param_name} is {len(address)} characters long; the address appears to have been converted to a number"
        )
    if len(address) != ADDRESS_LENGTH or not _ADDRESS_RE.match(address):
        raise ConfigError(f"{param_name} must be 0x followed by 40 hex characters, got {address!r}")
    return address.lower()


def _to_int(value: Any, default: int = 0) -> int:
    if value in (None, ""):
        return default
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return default


def _percent_to_bps(value: Any) -> int:
    if value in (None, ""):
        return 0
    try:
        return int((abs(Decimal(str(value))) * 100).to_integral_value())
    except (InvalidOperation, ValueError):
        return 0


def describe_route(router_result: Dict[str, Any]) -> str:
    """Flattens ``dexRouterList`` into ``"PancakeSwap V3 -> Uniswap V3"``."""
    names: List[str] = []
    for route in router_result.get("dexRouterList") or []:
        sub_routes = route.get("subRouterList") or [route]
        for sub_route in sub_routes:
            protocols = sub_route.get("dexProtocol") or []
            if isinstance(protocols, dict):
                protocols = [protocols]
            for protocol in protocols:
                name = protocol.get("dexName")
                if name and name not in names:
                    names.append(name)
    return " -> ".join(names) if names else "direct"


def parse_quote(router_result: Dict[str, Any]) -> Quote:
    return Quote(
        expected_output=_to_int(router_result.get("toTokenAmount")),
        route_description=describe_route(router_result),
        price_impact_bps=_percent_to_bps(router_result.get("priceImpactPercentage")),
        route_count=max(len(router_result.get("dexRouterList") or []), 1),
        raw=router_result,
    )


class AggregatorClient:
    """Signed REST client for the DEX aggregator.

    Every call is a single request. Non-zero response codes become
    ``AggregatorError`` and transport failures become ``TransientNetworkError``;
    retrying is left to the caller.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        signer: RequestSigner,
        *,
        base_url: str,
        chain_id: int,
        timeout: float = AGGREGATOR_REQUEST_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self.signer = signer
        self.base_url = base_url.rstrip("/")
        self.chain_id = chain_id
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    async def get_quote(self, intent: SwapIntent) -> Quote:
        from_token = validate_token_address(intent.from_token, "fromTokenAddress")
        to_token = validate_token_address(intent.to_token, "toTokenAddress")
        data = await self._get(
            f"{AGGREGATOR_API_PREFIX}/quote",
            {
                "chainId": str(intent.chain_id),
                "amount": str(intent.amount),
                "fromTokenAddress": from_token,
                "toTokenAddress": to_token,
            },
        )
        if not data:
            raise AggregatorError("-1", "Empty quote response")
        quote = parse_quote(data[0])
        self.logger.info(
            "Quote %s -> %s: out=%s route=%s impact=%sbps",
            from_token,
            to_token,
            quote.expected_output,
            quote.route_description,
            quote.price_impact_bps,
        )
        return quote

    async def get_approval_transaction(self, token_address: str, amount: int, chain_id: Optional[int] = None) -> Dict[str, Any]:
        token = validate_token_address(token_address, "tokenContractAddress")
        data = await self._get(
            f"{AGGREGATOR_API_PREFIX}/approve-transaction",
            {
                "chainId": str(chain_id or self.chain_id),
                "tokenContractAddress": token,
                "approveAmount": str(amount),
            },
        )
        if not data or not data[0].get("data"):
            raise AggregatorError("-1", "Approval response did not include call data")
        return data[0]

    async def get_swap_transaction(self, intent: SwapIntent) -> SwapTransactionData:
        from_token = validate_token_address(intent.from_token, "fromTokenAddress")
        to_token = validate_token_address(intent.to_token, "toTokenAddress")
        wallet = validate_token_address(intent.wallet_address, "userWalletAddress")
        data = await self._get(
            f"{AGGREGATOR_API_PREFIX}/swap",
            {
                "chainId": str(intent.chain_id),
                "amount": str(intent.amount),
                "fromTokenAddress": from_token,
                "toTokenAddress": to_token,
                "userWalletAddress": wallet,
                "slippage": intent.slippage_percent,
            },
        )
        if not data:
            raise AggregatorError("-1", "Empty swap response")
        entry = data[0]
        tx = entry.get("tx") or {}
        if not tx.get("to") or not tx.get("data"):
            raise AggregatorError("-1", "Swap response did not include transaction fields")
        router_result = entry.get("routerResult") or {}
        return SwapTransactionData(
            to=tx["to"],
            data=tx["data"],
            value=_to_int(tx.get("value")),
            quote=parse_quote(router_result),
            router_result=router_result,
        )

    async def get_tokens(self, chain_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self._get(f"{AGGREGATOR_API_PREFIX}/all-tokens", {"chainId": str(chain_id or self.chain_id)})

    async def get_supported_chains(self) -> List[Dict[str, Any]]:
        return await self._get(f"{AGGREGATOR_API_PREFIX}/supported/chain", {})

    async def get_gas_price(self, chain_id: Optional[int] = None) -> GasPriceEstimate:
        data = await self._get(AGGREGATOR_GAS_PRICE_PATH, {"chainIndex": str(chain_id or self.chain_id)})
        if not data:
            raise AggregatorError("-1", "Empty gas price response")
        entry = data[0]
        normal = _to_int(entry.get("normal"))
        if normal <= 0:
            raise AggregatorError("-1", f"Gas price response missing 'normal': {entry}")
        return GasPriceEstimate(
            min=_to_int(entry.get("min"), normal),
            normal=normal,
            max=_to_int(entry.get("max"), normal),
        )

    async def _get(self, path: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        query = urlencode(params)
        full_path = f"{path}?{query}" if query else path
        headers = self.signer.sign(self.signer.timestamp(), "GET", full_path)
        url = f"{self.base_url}{full_path}"
        try:
            async with self.session.get(url, headers=headers, timeout=self.timeout) as response:
                response.raise_for_status()
                payload = await response.json()
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as exc:
            raise TransientNetworkError(f"GET {path}: {exc or type(exc).__name__}") from exc
        except (aiohttp.ContentTypeError, json.JSONDecodeError) as exc:
            raise AggregatorError("-1", f"Malformed response from {path}") from exc
        except aiohttp.ClientResponseError as exc:
            raise AggregatorError(str(exc.status), f"HTTP {exc.status} from {path}: {exc.message}") from exc
        return self._unwrap(path, payload)

    def _unwrap(self, path: str, payload: Any) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict):
            raise AggregatorError("-1", f"Unexpected response shape from {path}")
        code = str(payload.get("code", "-1"))
        if code != "0":
            message = payload.get("msg") or "unknown error"
            self.logger.warning("Aggregator %s answered code=%s msg=%s", path, code, message)
            raise AggregatorError(code, message)
        data = payload.get("data")
        if data is None:
            return []
        return data if isinstance(data, list) else [data]
