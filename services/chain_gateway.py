"""JSON-RPC access to a pool of redundant nodes with failover and nonce bookkeeping."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp
from eth_account import Account
from web3 import Web3

from constants import (
    CONFIRM_MAX_ATTEMPTS,
    CONFIRM_POLL_INTERVAL,
    NODE_UNBAN_BASE_SECONDS,
    NODE_UNBAN_MAX_SECONDS,
    NODE_UNREACHABLE_AFTER_FAILURES,
    RPC_REQUEST_TIMEOUT,
)
from services.errors import ConfigError, RpcError, TransientNetworkError
from services.models import NodeHealth, PendingTransaction, RpcNode, TransactionOutcome, TransactionStatus

_ALLOWANCE_SIG = "0xdd62ed3e"
_BALANCE_OF_SIG = "0x70a08231"
_SLOT0_SIG = "0x3850c7bd"


def _encode_address(address: str) -> str:
    return address.lower().replace("0x", "").rjust(64, "0")


def _decode_uint(value: Optional[str]) -> int:
    if not value or value == "0x":
        return 0
    return int(value, 16)


def _decode_int_word(value: str, index: int) -> int:
    """Reads the ``index``-th 32-byte word of ABI output as a signed integer."""
    body = value[2:] if value.startswith("0x") else value
    word = body[index * 64:(index + 1) * 64]
    if len(word) < 64:
        raise ValueError(f"ABI output too short for word {index}")
    number = int(word, 16)
    if number >= 2 ** 255:
        number -= 2 ** 256
    return number


def _connection_refused(error: BaseException) -> bool:
    cause = error.__cause__
    if isinstance(cause, aiohttp.ClientConnectorError):
        cause = cause.os_error
    return isinstance(cause, ConnectionRefusedError)


class ChainGateway:
    """Holds the RPC node pool and the signing account.

    Reads fail over node by node on transport errors. Broadcasts sign once and
    re-send the same raw payload to the next node, so a retried broadcast never
    changes hash or nonce.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        nodes: Sequence[Tuple[str, str]],
        *,
        private_key: str,
        chain_id: int,
        timeout: float = RPC_REQUEST_TIMEOUT,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not nodes:
            raise ConfigError("At least one RPC node URL is required")
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError) as exc:
            raise ConfigError("EVM private key is invalid") from exc
        self.session = session
        self.nodes: List[RpcNode] = [RpcNode(url=url, name=name) for name, url in nodes]
        self.chain_id = chain_id
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self._current_index = 0
        self._id_lock = asyncio.Lock()
        self._next_request_id = 1
        self._nonce_locks: Dict[str, asyncio.Lock] = {}
        self._next_nonce: Dict[str, int] = {}

    @property
    def wallet_address(self) -> str:
        return self._account.address

    @property
    def current_node(self) -> RpcNode:
        return self.nodes[self._current_index]

    # --- Node selection -------------------------------------------------

    def _ban_duration(self, node: RpcNode) -> float:
        if node.failure_count <= 0:
            return 0.0
        return min(NODE_UNBAN_BASE_SECONDS * 2 ** (node.failure_count - 1), NODE_UNBAN_MAX_SECONDS)

    def _is_eligible(self, node: RpcNode) -> bool:
        if node.health is NodeHealth.HEALTHY or node.last_failure_time is None:
            return True
        return self._clock() - node.last_failure_time >= self._ban_duration(node)

    def _candidate_nodes(self) -> List[RpcNode]:
        """Every node once, starting at the preferred one; banned nodes go last."""
        count = len(self.nodes)
        ordered = [self.nodes[(self._current_index + offset) % count] for offset in range(count)]
        eligible = [node for node in ordered if self._is_eligible(node)]
        banned = [node for node in ordered if not self._is_eligible(node)]
        return eligible + banned

    def _prefer(self, node: RpcNode) -> None:
        self._current_index = self.nodes.index(node)

    def _mark_success(self, node: RpcNode) -> None:
        if node.health is not NodeHealth.HEALTHY:
            self.logger.info("RPC node %s recovered", node.name)
        node.health = NodeHealth.HEALTHY
        node.failure_count = 0

    def _mark_failure(self, node: RpcNode, error: BaseException) -> None:
        node.failure_count += 1
        node.last_failure_time = self._clock()
        node.last_error = str(error)
        node.health = (
            NodeHealth.UNREACHABLE
            if node.failure_count >= NODE_UNREACHABLE_AFTER_FAILURES
            else NodeHealth.DEGRADED
        )
        self.logger.warning(
            "RPC node %s marked %s after %d failure(s): %s",
            node.name,
            node.health.value,
            node.failure_count,
            error,
        )
        if node is self.current_node:
            self._current_index = (self._current_index + 1) % len(self.nodes)

    def report_transient_failure(self, error: BaseException) -> None:
        """Soft signal from callers outside the gateway: degrade the preferred node and rotate."""
        node = self.current_node
        node.last_error = str(error)
        if node.health is NodeHealth.HEALTHY:
            node.health = NodeHealth.DEGRADED
        if len(self.nodes) > 1:
            self._current_index = (self._current_index + 1) % len(self.nodes)
            self.logger.info("Transient failure reported (%s); switching to RPC node %s", error, self.current_node.name)

    # --- Transport ------------------------------------------------------

    async def _get_request_id(self) -> int:
        async with self._id_lock:
            request_id = self._next_request_id
            self._next_request_id += 1
        return request_id

    async def _post(self, node: RpcNode, method: str, params: list) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": await self._get_request_id(),
        }
        started = time.monotonic()
        try:
            async with self.session.post(node.url, json=payload, timeout=self.timeout) as response:
                response.raise_for_status()
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, json.JSONDecodeError) as exc:
            raise TransientNetworkError(f"{node.name}: {exc or type(exc).__name__}") from exc
        node.response_time = time.monotonic() - started
        error = data.get("error") if isinstance(data, dict) else None
        if error:
            if isinstance(error, dict):
                raise RpcError(error.get("code"), str(error.get("message", error)))
            raise RpcError(None, str(error))
        return data.get("result") if isinstance(data, dict) else None

    async def _rpc_call(self, method: str, params: list) -> Any:
        errors: List[TransientNetworkError] = []
        for node in self._candidate_nodes():
            try:
                result = await self._post(node, method, params)
            except TransientNetworkError as exc:
                self._mark_failure(node, exc)
                errors.append(exc)
                continue
            except RpcError:
                self._mark_success(node)
                raise
            self._mark_success(node)
            self._prefer(node)
            return result
        raise TransientNetworkError(
            f"All {len(self.nodes)} RPC nodes failed for {method}: {errors[-1] if errors else 'no nodes'}"
        )

    # --- Reads ----------------------------------------------------------

    async def get_nonce(self, address: str) -> int:
        result = await self._rpc_call("eth_getTransactionCount", [address, "pending"])
        return _decode_uint(result)

    async def get_balance(self, address: str) -> int:
        return _decode_uint(await self._rpc_call("eth_getBalance", [address, "latest"]))

    async def eth_call(self, to: str, data: str, block: str = "latest") -> Optional[str]:
        return await self._rpc_call("eth_call", [{"to": to, "data": data}, block])

    async def check_allowance(self, token: str, spender: str, owner: str) -> int:
        data = _ALLOWANCE_SIG + _encode_address(owner) + _encode_address(spender)
        return _decode_uint(await self.eth_call(token, data))

    async def get_token_balance(self, token: str, owner: str) -> int:
        return _decode_uint(await self.eth_call(token, _BALANCE_OF_SIG + _encode_address(owner)))

    async def get_pool_tick(self, pool_address: str) -> int:
        """Current tick from ``slot0()`` of a concentrated-liquidity pool."""
        result = await self.eth_call(pool_address, _SLOT0_SIG)
        if not result or result == "0x":
            raise RpcError(None, f"slot0 returned no data for pool {pool_address}")
        return _decode_int_word(result, 1)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._rpc_call("eth_getTransactionReceipt", [tx_hash])

    # --- Nonces ---------------------------------------------------------

    async def allocate_nonce(self, address: str) -> int:
        """Next nonce for ``address``; allocations for one wallet are serialized."""
        key = address.lower()
        lock = self._nonce_locks.setdefault(key, asyncio.Lock())
        async with lock:
            onchain = await self.get_nonce(address)
            nonce = max(onchain, self._next_nonce.get(key, 0))
            self._next_nonce[key] = nonce + 1
        self.logger.debug("Allocated nonce %d for %s (pending count %d)", nonce, address, onchain)
        return nonce

    def release_nonce(self, address: str, nonce: int) -> None:
        """Gives back a nonce whose transaction never reached any node."""
        key = address.lower()
        if self._next_nonce.get(key) == nonce + 1:
            self._next_nonce[key] = nonce
            self.logger.info("Released unused nonce %d for %s", nonce, address)

    def _abandon(self, tx: PendingTransaction) -> None:
        """Marks ``tx`` as never broadcast and gives its nonce back."""
        tx.abandoned = True
        self.release_nonce(tx.sender, tx.nonce)

    # --- Writes ---------------------------------------------------------

    def sign_transaction(self, tx: PendingTransaction) -> PendingTransaction:
        if tx.signed_payload is None:
            signed = self._account.sign_transaction(tx.to_signable())
            tx.signed_payload = Web3.to_hex(signed.raw_transaction)
            tx.tx_hash = Web3.to_hex(signed.hash)
        return tx

    async def sign_and_send_transaction(self, tx: PendingTransaction) -> str:
        self.sign_transaction(tx)
        errors: List[TransientNetworkError] = []
        for node in self._candidate_nodes():
            try:
                result = await self._post(node, "eth_sendRawTransaction", [tx.signed_payload])
            except TransientNetworkError as exc:
                self._mark_failure(node, exc)
                errors.append(exc)
                continue
            except RpcError as exc:
                self._mark_success(node)
                message = exc.message.lower()
                if "already known" in message or "known transaction" in message:
                    self.logger.info("Node %s already has transaction %s", node.name, tx.tx_hash)
                    return tx.tx_hash
                if "nonce too low" in message:
                    if await self.get_transaction_receipt(tx.tx_hash):
                        self.logger.info("Transaction %s was already mined", tx.tx_hash)
                        return tx.tx_hash
                    # the nonce is spent; our payload may still be the one that used it
                    raise
                if not errors:
                    self._abandon(tx)
                raise
            self._mark_success(node)
            self._prefer(node)
            if result and str(result).lower() != tx.tx_hash.lower():
                self.logger.warning("Node %s returned hash %s, expected %s", node.name, result, tx.tx_hash)
            self.logger.info("Broadcast %s via %s (nonce %d)", tx.tx_hash, node.name, tx.nonce)
            return tx.tx_hash

        if errors and all(_connection_refused(exc) for exc in errors):
            self._abandon(tx)
        raise TransientNetworkError(
            f"Broadcast of {tx.tx_hash} failed on all {len(self.nodes)} RPC nodes: {errors[-1] if errors else 'no nodes'}"
        )

    async def wait_for_transaction(
        self,
        tx_hash: str,
        poll_interval: float = CONFIRM_POLL_INTERVAL,
        max_attempts: int = CONFIRM_MAX_ATTEMPTS,
        deadline: Optional[float] = None,
    ) -> TransactionOutcome:
        """Poll for a receipt until found, the attempt budget runs out or ``deadline`` passes.

        ``deadline`` is an absolute timestamp on the gateway clock. A missing
        receipt yields a ``PENDING`` outcome rather than an exception.
        """
        for attempt in range(1, max_attempts + 1):
            if deadline is not None and self._clock() >= deadline:
                return TransactionOutcome(
                    hash=tx_hash,
                    status=TransactionStatus.PENDING,
                    fail_reason="timeout: confirmation deadline exceeded",
                )
            try:
                receipt = await self.get_transaction_receipt(tx_hash)
            except TransientNetworkError as exc:
                self.logger.warning("Receipt poll %d/%d for %s failed: %s", attempt, max_attempts, tx_hash, exc)
                receipt = None
            if receipt:
                block_number = _decode_uint(receipt.get("blockNumber"))
                if _decode_uint(receipt.get("status")) == 1:
                    return TransactionOutcome(tx_hash, TransactionStatus.SUCCESS, block_number)
                return TransactionOutcome(
                    tx_hash,
                    TransactionStatus.FAILED,
                    block_number,
                    fail_reason="transaction reverted (status 0)",
                )
            if attempt < max_attempts:
                delay = poll_interval
                if deadline is not None:
                    delay = max(0.0, min(delay, deadline - self._clock()))
                await self._sleep(delay)
        return TransactionOutcome(
            hash=tx_hash,
            status=TransactionStatus.PENDING,
            fail_reason=f"timeout: no receipt after {max_attempts} polls",
        )

    # --- Pool health ----------------------------------------------------

    async def _check_node(self, node: RpcNode) -> None:
        try:
            block_hex = await self._post(node, "eth_blockNumber", [])
            chain_hex = await self._post(node, "eth_chainId", [])
        except (TransientNetworkError, RpcError) as exc:
            self._mark_failure(node, exc)
            return
        chain_id = _decode_uint(chain_hex)
        if chain_id and chain_id != self.chain_id:
            self._mark_failure(node, RpcError(None, f"wrong chain id {chain_id}, expected {self.chain_id}"))
            return
        node.block_number = _decode_uint(block_hex)
        self._mark_success(node)

    async def health_check(self) -> List[Dict[str, Any]]:
        """Check every node concurrently and return the refreshed pool state."""
        await asyncio.gather(*(self._check_node(node) for node in self.nodes))
        if self.current_node.health is not NodeHealth.HEALTHY:
            for index, node in enumerate(self.nodes):
                if node.health is NodeHealth.HEALTHY:
                    self._current_index = index
                    break
        return [node.as_dict() for node in self.nodes]

    def node_status_report(self) -> Dict[str, Any]:
        healthy = sum(1 for node in self.nodes if node.health is NodeHealth.HEALTHY)
        return {
            "current_node": self.current_node.name,
            "current_url": self.current_node.url,
            "total_nodes": len(self.nodes),
            "healthy_nodes": healthy,
            "nodes": [node.as_dict() for node in self.nodes],
        }
