"""Ethereum RPC client and watcher.

The client wraps ``web3.AsyncWeb3`` with:
- Retry logic with exponential backoff
- Failover to a secondary RPC URL

The watcher turns chain head, operator balance and bridge contract logs
into watchtower events.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import aiohttp
from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

from fuel_watchtower.watcher.base import ChainWatcher, EventSink, WatcherError
from fuel_watchtower.watcher.models import (
    BalanceSample,
    BlockProduced,
    ChainSide,
    Connectivity,
    ContractKind,
    Direction,
    Event,
    EventDecodeError,
    StateCommit,
    Token,
    ValueTransfer,
    normalize_address,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_LOGS_CHUNK_SIZE_BLOCKS = 1_000
ETHEREUM_BLOCK_TIME_SECONDS = 12
ETH_DECIMALS = 18
# Portal amounts are denominated in Fuel base units whatever a rule's token_decimals says
PORTAL_AMOUNT_DECIMALS = 9
DEFAULT_TOKEN_DECIMALS = 18

MESSAGE_SENT_TOPIC = Web3.to_hex(Web3.keccak(text="MessageSent(bytes32,bytes32,uint256,uint64,bytes)"))
MESSAGE_RELAYED_TOPIC = Web3.to_hex(Web3.keccak(text="MessageRelayed(bytes32,bytes32,bytes32,uint64)"))
GATEWAY_DEPOSIT_TOPIC = Web3.to_hex(Web3.keccak(text="Deposit(bytes32,address,bytes32,uint256)"))
GATEWAY_WITHDRAWAL_TOPIC = Web3.to_hex(Web3.keccak(text="Withdrawal(bytes32,address,bytes32,uint256)"))
COMMIT_SUBMITTED_TOPIC = Web3.to_hex(Web3.keccak(text="CommitSubmitted(uint256,bytes32)"))

_RETRYABLE_ERRORS = (Web3Exception, aiohttp.ClientError, OSError)

CommitVerifier = Callable[[str], Awaitable[bool]]


class EthereumClientError(Exception):
    """Base exception for Ethereum client errors."""


class RPCError(EthereumClientError):
    """Raised when an RPC call fails on every endpoint."""


class EthereumClient:
    """Ethereum JSON-RPC client with retry and failover.

    Example:
        ```python
        client = EthereumClient(
            "https://eth.example.org",
            fallback_rpc_url="https://eth-backup.example.org",
        )
        height = await client.get_block_number()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            max_retries: Attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
        """
        self._rpc_url = rpc_url
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3: AsyncWeb3[AsyncHTTPProvider] = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = AsyncWeb3(AsyncHTTPProvider(fallback_rpc_url))

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

    @property
    def web3(self) -> AsyncWeb3[AsyncHTTPProvider]:
        """Primary web3 instance, for callers that send transactions."""
        return self._w3

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _attempt(
        self, w3: AsyncWeb3[AsyncHTTPProvider], label: str, func_name: str, *args: Any
    ) -> tuple[bool, Any, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                # block_number and chain_id are awaitable properties, not methods
                target = getattr(w3.eth, func_name)
                pending = target(*args) if callable(target) else target
                return True, await pending, None
            except _RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        return False, None, last_error

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Raises:
            RPCError: If all retries and failover fail.
        """
        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._attempt(self._w3, "Primary", func_name, *args)
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, error = await self._attempt(self._w3_fallback, "Fallback", func_name, *args)
            if ok:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = error

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_chain_id(self) -> int:
        return int(await self._execute_with_retry("chain_id"))

    async def get_block_number(self) -> int:
        return int(await self._execute_with_retry("block_number"))

    async def get_block(self, block_identifier: int | str) -> dict[str, Any]:
        block = await self._execute_with_retry("get_block", block_identifier)
        block_dict = dict(block)
        block_dict["timestamp"] = int(block_dict["timestamp"])
        return block_dict

    async def get_balance(self, address: str) -> int:
        """Latest balance in wei."""
        balance = await self._execute_with_retry("get_balance", AsyncWeb3.to_checksum_address(address))
        return int(balance)

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def aclose(self) -> None:
        """Close async HTTP provider sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(bytes(value)).lower()
    return normalize_address(str(value))


def _data_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    return bytes.fromhex(text[2:] if text.startswith("0x") else text)


def _word(data: bytes, index: int) -> bytes:
    start = index * 32
    if len(data) < start + 32:
        raise EventDecodeError(f"Log data too short: {len(data)} bytes, need {start + 32}")
    return data[start : start + 32]


def _scale(raw: int, decimals: int) -> Decimal:
    return Decimal(raw).scaleb(-decimals)


class EthereumWatcher(ChainWatcher):
    """Watches Ethereum for head progress, operator funds and bridge activity.

    Each poll emits, in order:
    1. ``Connectivity`` for the RPC check
    2. ``BlockProduced`` when the head advanced
    3. ``BalanceSample`` for the operator account, when one is configured
    4. ``ValueTransfer`` / ``StateCommit`` for new bridge contract logs

    ``token_decimals`` scales gateway token amounts only. Portal messages carry
    the base asset in Fuel units, so portal amounts always use 9 decimals.
    """

    chain = ChainSide.ETHEREUM

    def __init__(
        self,
        client: EthereumClient,
        *,
        portal_address: str,
        gateway_address: str,
        state_address: str,
        account_address: str | None = None,
        commit_verifier: CommitVerifier | None = None,
        token_decimals: Mapping[str, int] | None = None,
        backfill_seconds: int = 0,
        logs_chunk_size_blocks: int = DEFAULT_LOGS_CHUNK_SIZE_BLOCKS,
        sink: EventSink | None = None,
        poll_interval_seconds: float = 6.0,
    ) -> None:
        super().__init__(sink=sink, poll_interval_seconds=poll_interval_seconds)
        self._client = client
        self._portal = normalize_address(portal_address)
        self._gateway = normalize_address(gateway_address)
        self._state = normalize_address(state_address)
        self._account = account_address
        self._commit_verifier = commit_verifier
        self._token_decimals = {int(normalize_address(k), 16): v for k, v in (token_decimals or {}).items()}
        self._backfill_blocks = max(0, backfill_seconds // ETHEREUM_BLOCK_TIME_SECONDS)
        self._chunk_size = logs_chunk_size_blocks
        self._last_height: int | None = None
        self._next_log_block: int | None = None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def poll(self) -> list[Event]:
        try:
            height = await self._client.get_block_number()
        except RPCError as e:
            raise WatcherError(f"Failed to check ethereum connection: {e}") from e

        now = datetime.now(UTC)
        events: list[Event] = []
        if self._last_height is None or height > self._last_height:
            self._last_height = height
            events.append(BlockProduced(chain=self.chain, height=height, observed_at=now))

        try:
            if self._account:
                try:
                    wei = await self._client.get_balance(self._account)
                except RPCError as e:
                    raise WatcherError(f"Failed to check ethereum account funds: {e}") from e
                events.append(
                    BalanceSample(
                        chain=self.chain,
                        account=self._account,
                        balance=_scale(wei, ETH_DECIMALS),
                        observed_at=now,
                    )
                )

            events.extend(await self._scan_logs(height))
        except WatcherError as e:
            # Whatever was observed before the failure is still delivered
            raise WatcherError(str(e), events=events) from e

        return [Connectivity(chain=self.chain, connected=True, observed_at=now), *events]

    async def _scan_logs(self, head: int) -> list[Event]:
        if self._next_log_block is None:
            self._next_log_block = max(0, head - self._backfill_blocks)

        events: list[Event] = []
        block_times: dict[int, datetime] = {}
        start = self._next_log_block
        while start <= head:
            end = min(head, start + self._chunk_size - 1)
            try:
                logs = await self._client.get_logs(
                    {
                        "fromBlock": start,
                        "toBlock": end,
                        "address": [
                            AsyncWeb3.to_checksum_address(self._portal),
                            AsyncWeb3.to_checksum_address(self._gateway),
                            AsyncWeb3.to_checksum_address(self._state),
                        ],
                    }
                )
            except RPCError as e:
                raise WatcherError(f"Failed to scan bridge contract logs: {e}") from e

            for log in logs:
                try:
                    block_number = int(log["blockNumber"])
                    if block_number not in block_times:
                        block = await self._client.get_block(block_number)
                        block_times[block_number] = datetime.fromtimestamp(block["timestamp"], tz=UTC)
                    event = await self._decode_log(log, block_times[block_number])
                except (EventDecodeError, KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping undecodable log %s: %s", log.get("transactionHash"), e)
                    continue
                except RPCError as e:
                    raise WatcherError(f"Failed to fetch block for log: {e}") from e
                if event is not None:
                    events.append(event)

            start = end + 1

        # Advance only after the whole range decoded, so a failed poll rescans it
        self._next_log_block = start
        return events

    def _decimals_for(self, token_address: str) -> int:
        return self._token_decimals.get(int(token_address, 16), DEFAULT_TOKEN_DECIMALS)

    async def _decode_log(self, log: Mapping[str, Any], occurred_at: datetime) -> Event | None:
        topics = [_hex(t) for t in log.get("topics") or []]
        if not topics:
            return None
        address = _hex(log.get("address", ""))
        data = _data_bytes(log.get("data", b""))
        topic = topics[0]

        if address == self._portal and topic in (MESSAGE_SENT_TOPIC, MESSAGE_RELAYED_TOPIC):
            amount = int.from_bytes(_word(data, 0), "big")
            direction = Direction.DEPOSIT if topic == MESSAGE_SENT_TOPIC else Direction.WITHDRAW
            return ValueTransfer(
                chain=self.chain,
                direction=direction,
                contract=ContractKind.PORTAL,
                amount=_scale(amount, PORTAL_AMOUNT_DECIMALS),
                occurred_at=occurred_at,
            )

        if address == self._gateway and topic in (GATEWAY_DEPOSIT_TOPIC, GATEWAY_WITHDRAWAL_TOPIC):
            if len(topics) < 3:
                raise EventDecodeError("Gateway log is missing the token topic")
            token_address = "0x" + topics[2][-40:]
            amount = int.from_bytes(_word(data, 1), "big")
            direction = Direction.DEPOSIT if topic == GATEWAY_DEPOSIT_TOPIC else Direction.WITHDRAW
            return ValueTransfer(
                chain=self.chain,
                direction=direction,
                contract=ContractKind.GATEWAY,
                amount=_scale(amount, self._decimals_for(token_address)),
                occurred_at=occurred_at,
                token=Token(address=token_address, name="ERC20"),
            )

        if address == self._state and topic == COMMIT_SUBMITTED_TOPIC:
            block_hash = Web3.to_hex(_word(data, 0))
            if self._commit_verifier is None:
                logger.debug("No commit verifier configured; skipping commit %s", block_hash)
                return None
            try:
                valid = await self._commit_verifier(block_hash)
            except WatcherError as e:
                raise WatcherError(f"Failed to check fuel chain state commit: {e}") from e
            return StateCommit(valid=valid, commit_hash=block_hash, observed_at=datetime.now(UTC))

        return None
