"""Fuel GraphQL client and watcher."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import aiohttp

from fuel_watchtower.watcher.base import ChainWatcher, EventSink, WatcherError
from fuel_watchtower.watcher.models import (
    BlockProduced,
    ChainSide,
    Connectivity,
    ContractKind,
    Direction,
    Event,
    EventDecodeError,
    ValueTransfer,
)

logger = logging.getLogger(__name__)

FUEL_CONNECTION_RETRIES = 2
FUEL_BLOCK_TIME_SECONDS = 1
FUEL_BASE_ASSET_DECIMALS = 9
DEFAULT_RETRY_DELAY_SECONDS = 0.5
# Upper bound of blocks fetched per poll
DEFAULT_MAX_BLOCKS_PER_POLL = 100

# TAI64 labels count from 2**62, with a 10 second TAI/UTC offset at the epoch
TAI64_UNIX_OFFSET = 2**62 + 10

CHAIN_QUERY = """
query {
  chain {
    latestBlock {
      height
      header { time }
    }
  }
}
"""

BLOCKS_QUERY = """
query BlocksAfter($first: Int!, $after: String) {
  blocks(first: $first, after: $after) {
    nodes {
      height
      header { time }
      transactions {
        id
        status {
          __typename
          ... on SuccessStatus {
            receipts { receiptType amount }
          }
        }
      }
    }
  }
}
"""

BLOCK_BY_ID_QUERY = """
query BlockById($id: BlockId!) {
  block(id: $id) { id }
}
"""


class FuelClientError(WatcherError):
    """Raised when the Fuel node cannot be queried."""


class GraphQLError(FuelClientError):
    """Raised when the node answers with GraphQL errors."""


def tai64_to_datetime(value: str | int) -> datetime:
    """Convert a TAI64 label to an aware UTC datetime."""
    try:
        label = int(value)
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"Invalid TAI64 timestamp: {value!r}") from e
    return datetime.fromtimestamp(label - TAI64_UNIX_OFFSET, tz=UTC)


class FuelClient:
    """Minimal Fuel GraphQL client.

    Example:
        ```python
        client = FuelClient("https://testnet.fuel.network/v1/graphql")
        height, block_time = await client.get_latest_block()
        ```
    """

    def __init__(
        self,
        graphql_url: str,
        *,
        max_retries: int = FUEL_CONNECTION_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        self._url = graphql_url
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=15)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a GraphQL query with retries.

        Raises:
            GraphQLError: If the node reports errors.
            FuelClientError: If the node is unreachable after all retries.
        """
        session = self._get_session()
        payload = {"query": query, "variables": variables or {}}
        last_error: Exception | None = None
        delay = self._retry_delay

        for attempt in range(self._max_retries):
            try:
                async with session.post(self._url, json=payload) as resp:
                    resp.raise_for_status()
                    body = await resp.json()
            except (aiohttp.ClientError, TimeoutError) as e:
                last_error = e
                logger.warning(
                    "Fuel GraphQL request failed (attempt %d/%d): %s",
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
                continue
            except ValueError as e:
                raise GraphQLError(f"Fuel GraphQL response is not JSON: {e}") from e

            if not isinstance(body, dict):
                raise GraphQLError(f"Fuel GraphQL response is not an object: {type(body).__name__}")
            if body.get("errors"):
                errors = body["errors"] if isinstance(body["errors"], list) else [body["errors"]]
                messages = "; ".join(
                    str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors
                )
                raise GraphQLError(f"Fuel GraphQL error: {messages}")
            data = body.get("data")
            if not isinstance(data, dict):
                raise GraphQLError("Fuel GraphQL response has no data")
            return data

        raise FuelClientError(
            f"Failed to establish connection after {self._max_retries} retries: {last_error}"
        )

    async def get_latest_block(self) -> tuple[int, datetime]:
        """Height and timestamp of the chain head."""
        data = await self.query(CHAIN_QUERY)
        try:
            latest = data["chain"]["latestBlock"]
            return int(latest["height"]), tai64_to_datetime(latest["header"]["time"])
        except (KeyError, TypeError, ValueError) as e:
            raise EventDecodeError(f"Malformed chain info: {e}") from e

    async def get_blocks_after(self, height: int | None, first: int) -> list[dict[str, Any]]:
        """Up to ``first`` blocks above ``height``, oldest first.

        The blocks connection uses the block height as its cursor;
        ``height=None`` starts at genesis.
        """
        after = None if height is None else str(height)
        data = await self.query(BLOCKS_QUERY, {"first": first, "after": after})
        try:
            nodes = data["blocks"]["nodes"]
            return sorted(nodes, key=lambda node: int(node["height"]))
        except (KeyError, TypeError, ValueError) as e:
            raise EventDecodeError(f"Malformed blocks response: {e}") from e

    async def block_exists(self, block_id: str) -> bool:
        """Whether a block with this id is part of the chain."""
        data = await self.query(BLOCK_BY_ID_QUERY, {"id": block_id})
        return data.get("block") is not None

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None


def withdrawn_amount(block: dict[str, Any]) -> int:
    """Sum of MESSAGE_OUT receipts of successful transactions, in base units."""
    total = 0
    for tx in block.get("transactions") or []:
        status = tx.get("status") or {}
        if status.get("__typename") != "SuccessStatus":
            continue
        for receipt in status.get("receipts") or []:
            if receipt.get("receiptType") != "MESSAGE_OUT":
                continue
            try:
                total += int(receipt.get("amount") or 0)
            except (TypeError, ValueError) as e:
                raise EventDecodeError(f"Bad receipt amount in tx {tx.get('id')}: {e}") from e
    return total


class FuelWatcher(ChainWatcher):
    """Watches Fuel for head progress and base asset withdrawals.

    Gateway token withdrawals are not decoded; gateway rules on the Fuel
    side are accepted but never fed.
    """

    chain = ChainSide.FUEL

    def __init__(
        self,
        client: FuelClient,
        *,
        backfill_seconds: int = 0,
        max_blocks_per_poll: int = DEFAULT_MAX_BLOCKS_PER_POLL,
        sink: EventSink | None = None,
        poll_interval_seconds: float = 6.0,
    ) -> None:
        super().__init__(sink=sink, poll_interval_seconds=poll_interval_seconds)
        self._client = client
        self._backfill_blocks = max(0, backfill_seconds // FUEL_BLOCK_TIME_SECONDS)
        self._max_blocks = max_blocks_per_poll
        self._last_height: int | None = None
        self._scanned_height: int | None = None

    @property
    def client(self) -> FuelClient:
        return self._client

    async def aclose(self) -> None:
        await self._client.close()

    async def poll(self) -> list[Event]:
        try:
            height, _ = await self._client.get_latest_block()
        except FuelClientError as e:
            raise WatcherError(f"Failed to check fuel connection: {e}") from e

        now = datetime.now(UTC)
        head_events: list[Event] = []
        if self._last_height is None or height > self._last_height:
            self._last_height = height
            head_events.append(BlockProduced(chain=self.chain, height=height, observed_at=now))

        try:
            transfers = await self._scan_withdrawals(height)
        except WatcherError as e:
            # The head was observed; report it along with the failure
            raise WatcherError(str(e), events=head_events) from e

        return [Connectivity(chain=self.chain, connected=True, observed_at=now), *head_events, *transfers]

    async def _scan_withdrawals(self, head: int) -> list[Event]:
        if self._scanned_height is None:
            self._scanned_height = max(-1, head - self._backfill_blocks - 1)

        pending = head - self._scanned_height
        if pending <= 0:
            return []
        if pending > self._max_blocks:
            logger.warning(
                "Fuel watcher is %d blocks behind; scanning only the latest %d",
                pending,
                self._max_blocks,
            )
            self._scanned_height = head - self._max_blocks
            pending = self._max_blocks

        after = self._scanned_height if self._scanned_height >= 0 else None
        try:
            blocks = await self._client.get_blocks_after(after, pending)
        except (FuelClientError, EventDecodeError) as e:
            raise WatcherError(f"Failed to check base asset withdrawals: {e}") from e

        events: list[Event] = []
        for block in blocks:
            block_height = int(block["height"])
            if block_height <= self._scanned_height:
                continue
            try:
                amount = withdrawn_amount(block)
                if amount:
                    events.append(
                        ValueTransfer(
                            chain=self.chain,
                            direction=Direction.WITHDRAW,
                            contract=ContractKind.PORTAL,
                            amount=Decimal(amount).scaleb(-FUEL_BASE_ASSET_DECIMALS),
                            occurred_at=tai64_to_datetime(block["header"]["time"]),
                        )
                    )
            except (EventDecodeError, KeyError, TypeError) as e:
                logger.warning("Skipping undecodable fuel block %d: %s", block_height, e)
            self._scanned_height = block_height

        return events
