"""Pausing of the bridge contracts on Ethereum."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from fuel_watchtower.engine.models import AlertAction

logger = logging.getLogger(__name__)

# Subset of the OpenZeppelin Pausable interface shared by all three contracts
PAUSABLE_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "pause",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "paused",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

DEFAULT_RECEIPT_TIMEOUT_SECONDS = 120.0

# Failures of a pause transaction; OSError covers timeouts and refused connections
_TRANSACTION_ERRORS = (Web3Exception, aiohttp.ClientError, OSError, ValueError)


class ActionError(Exception):
    """Raised when a protective action fails."""


class PauseTarget(str, Enum):
    """Bridge contracts that can be paused."""

    STATE = "state"
    GATEWAY = "gateway"
    PORTAL = "portal"

    @classmethod
    def for_action(cls, action: AlertAction) -> PauseTarget:
        """Map a single-contract pause action to its target."""
        targets = {
            AlertAction.PAUSE_STATE: cls.STATE,
            AlertAction.PAUSE_GATEWAY: cls.GATEWAY,
            AlertAction.PAUSE_PORTAL: cls.PORTAL,
        }
        try:
            return targets[action]
        except KeyError as e:
            raise ValueError(f"{action.value} does not name a single contract") from e


# Order PauseAll walks the contracts in
PAUSE_ALL_ORDER = (PauseTarget.STATE, PauseTarget.GATEWAY, PauseTarget.PORTAL)


class EthereumPauser:
    """Sends ``pause()`` transactions to the bridge contracts.

    Without a private key the pauser is read-only and every pause raises
    ``ActionError``.

    Example:
        ```python
        pauser = EthereumPauser(
            client.web3,
            private_key=key,
            state_address=state,
            portal_address=portal,
            gateway_address=gateway,
        )
        await pauser.pause_all()
        ```
    """

    def __init__(
        self,
        web3: AsyncWeb3[Any],
        *,
        private_key: str | None,
        state_address: str,
        portal_address: str,
        gateway_address: str,
        receipt_timeout_seconds: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
    ) -> None:
        self._w3 = web3
        self._account = web3.eth.account.from_key(private_key) if private_key else None
        self._addresses = {
            PauseTarget.STATE: AsyncWeb3.to_checksum_address(state_address),
            PauseTarget.PORTAL: AsyncWeb3.to_checksum_address(portal_address),
            PauseTarget.GATEWAY: AsyncWeb3.to_checksum_address(gateway_address),
        }
        self._receipt_timeout = receipt_timeout_seconds

    @property
    def read_only(self) -> bool:
        return self._account is None

    @property
    def address(self) -> str | None:
        """Signer address, or None in read-only mode."""
        return self._account.address if self._account is not None else None

    def _contract(self, target: PauseTarget) -> Any:
        return self._w3.eth.contract(address=self._addresses[target], abi=PAUSABLE_ABI)

    async def is_paused(self, target: PauseTarget) -> bool:
        try:
            return bool(await self._contract(target).functions.paused().call())
        except _TRANSACTION_ERRORS as e:
            raise ActionError(f"Failed to read {target.value} contract state: {e}") from e

    async def pause(self, target: PauseTarget) -> str:
        """Pause one contract and wait for the transaction to be mined.

        Returns:
            The transaction hash.

        Raises:
            ActionError: In read-only mode, or if the transaction fails.
        """
        if self._account is None:
            raise ActionError("Ethereum account not configured.")

        contract = self._contract(target)
        try:
            nonce = await self._w3.eth.get_transaction_count(self._account.address, "pending")
            tx = await contract.functions.pause().build_transaction(
                {"from": self._account.address, "nonce": nonce}
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout
            )
        except _TRANSACTION_ERRORS as e:
            raise ActionError(f"Failed to pause {target.value} contract: {e}") from e

        tx_hex = AsyncWeb3.to_hex(tx_hash)
        if receipt.get("status") != 1:
            raise ActionError(f"Pause transaction {tx_hex} for {target.value} contract reverted")

        logger.info("Successfully paused %s contract (tx %s).", target.value, tx_hex)
        return tx_hex

    async def pause_all(self) -> dict[PauseTarget, str]:
        """Pause state, gateway and portal contracts in turn.

        Every contract is attempted even if an earlier one fails.

        Raises:
            ActionError: If any contract could not be paused.
        """
        if self._account is None:
            raise ActionError("Ethereum account not configured.")

        paused: dict[PauseTarget, str] = {}
        failures: list[str] = []
        for target in PAUSE_ALL_ORDER:
            try:
                paused[target] = await self.pause(target)
            except ActionError as e:
                logger.error("%s", e)
                failures.append(str(e))
            except Exception as e:
                logger.exception("Unexpected error pausing %s contract", target.value)
                failures.append(f"Failed to pause {target.value} contract: {e}")

        if failures:
            raise ActionError("; ".join(failures))
        return paused
