"""Token transfer clients used to pay out rewards.

This module provides the TransferClient protocol and an ERC20 (USDC)
implementation on web3's AsyncWeb3. Transfers are split into
prepare (sign, so the tx hash is known), broadcast and confirmation
steps so the caller can persist the hash before any funds move.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, Protocol

from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

DEFAULT_CONFIRMATION_TIMEOUT = 90.0  # seconds

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"name": "_to", "type": "address"}, {"name": "_value", "type": "uint256"}],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]


class TransferError(Exception):
    """Base exception for reward transfer errors."""


class InsufficientFundsError(TransferError):
    """Raised when the treasury cannot cover a transfer."""


class InvalidDestinationError(TransferError):
    """Raised when the destination wallet is not a valid address."""


class TransferRejectedError(TransferError):
    """Raised when the node rejects a signed transfer."""


class ConfirmationTimeoutError(TransferError):
    """Raised when a broadcast transfer is not confirmed within the timeout."""


class ChainTxStatus(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class PreparedTransfer:
    """A signed, not yet broadcast, transfer."""

    tx_signature: str
    raw_transaction: bytes
    destination: str
    amount: Decimal


@dataclass(frozen=True)
class TransferResult:
    tx_signature: str
    confirmed: bool


class TransferClient(Protocol):
    async def get_balance(self) -> Decimal: ...

    async def prepare_transfer(self, destination: str, amount: Decimal) -> PreparedTransfer: ...

    async def broadcast(self, prepared: PreparedTransfer) -> str: ...

    async def wait_for_confirmation(self, tx_signature: str, *, timeout: float) -> bool: ...

    async def lookup(self, tx_signature: str) -> ChainTxStatus: ...


async def transfer(
    client: TransferClient,
    destination: str,
    amount: Decimal,
    *,
    timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
) -> TransferResult:
    """Prepare, broadcast and await one transfer in a single call."""
    prepared = await client.prepare_transfer(destination, amount)
    await client.broadcast(prepared)
    try:
        confirmed = await client.wait_for_confirmation(prepared.tx_signature, timeout=timeout)
    except ConfirmationTimeoutError:
        confirmed = False
    return TransferResult(tx_signature=prepared.tx_signature, confirmed=confirmed)


class Erc20TransferClient:
    """Pays rewards in an ERC20 token (USDC) from a treasury key.

    Example:
        ```python
        client = Erc20TransferClient(
            rpc_url="https://bsc-dataseed.binance.org",
            token_address=USDC,
            private_key=key,
            chain_id=56,
            token_decimals=18,
        )
        prepared = await client.prepare_transfer(wallet, Decimal("150.00"))
        await client.broadcast(prepared)
        ok = await client.wait_for_confirmation(prepared.tx_signature, timeout=90)
        ```
    """

    def __init__(
        self,
        *,
        rpc_url: str,
        token_address: str,
        private_key: str,
        chain_id: int,
        token_decimals: int = 18,
        w3: AsyncWeb3[Any] | None = None,
    ) -> None:
        self._w3 = w3 or self._new_web3_client(rpc_url)
        self._account = self._w3.eth.account.from_key(private_key)
        self._chain_id = chain_id
        self._decimals = token_decimals
        self._token = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token_address),
            abi=ERC20_ABI,
        )

    @staticmethod
    def _new_web3_client(rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    @property
    def treasury_address(self) -> str:
        return str(self._account.address)

    def to_units(self, amount: Decimal) -> int:
        return int((Decimal(amount) * (Decimal(10) ** self._decimals)).to_integral_value(rounding=ROUND_DOWN))

    def from_units(self, units: int) -> Decimal:
        return Decimal(units) / (Decimal(10) ** self._decimals)

    async def get_balance(self) -> Decimal:
        try:
            units = await self._token.functions.balanceOf(self._account.address).call()
        except Web3Exception as e:
            raise TransferError(f"Failed to read treasury balance: {e}") from e
        return self.from_units(int(units))

    async def prepare_transfer(self, destination: str, amount: Decimal) -> PreparedTransfer:
        if not AsyncWeb3.is_address(destination):
            raise InvalidDestinationError(f"invalid destination wallet: {destination!r}")
        units = self.to_units(amount)
        if units <= 0:
            raise TransferError(f"transfer amount must be positive (got {amount})")
        try:
            nonce = await self._w3.eth.get_transaction_count(self._account.address, "pending")
            gas_price = await self._w3.eth.gas_price
            tx = await self._token.functions.transfer(
                AsyncWeb3.to_checksum_address(destination), units
            ).build_transaction(
                {
                    "from": self._account.address,
                    "nonce": nonce,
                    "chainId": self._chain_id,
                    "gasPrice": gas_price,
                }
            )
        except Web3Exception as e:
            message = str(e)
            if "insufficient" in message.lower() or "exceeds balance" in message.lower():
                raise InsufficientFundsError(message) from e
            raise TransferRejectedError(f"Failed to build transfer: {e}") from e
        signed = self._account.sign_transaction(tx)
        return PreparedTransfer(
            tx_signature=AsyncWeb3.to_hex(signed.hash),
            raw_transaction=bytes(signed.raw_transaction),
            destination=destination,
            amount=Decimal(amount),
        )

    async def broadcast(self, prepared: PreparedTransfer) -> str:
        try:
            await self._w3.eth.send_raw_transaction(prepared.raw_transaction)
        except Web3Exception as e:
            if "already known" in str(e).lower():
                logger.info("Transfer %s already in mempool", prepared.tx_signature)
                return prepared.tx_signature
            raise TransferRejectedError(f"Broadcast rejected: {e}") from e
        logger.info(
            "Broadcast transfer %s: %s to %s",
            prepared.tx_signature,
            prepared.amount,
            prepared.destination[:10] + "...",
        )
        return prepared.tx_signature

    async def wait_for_confirmation(self, tx_signature: str, *, timeout: float) -> bool:
        """Wait for the receipt. Returns False if the transaction reverted."""
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(tx_signature, timeout=timeout)
        except TimeExhausted as e:
            raise ConfirmationTimeoutError(f"{tx_signature} not confirmed within {timeout}s") from e
        except Web3Exception as e:
            raise TransferError(f"Failed to fetch receipt for {tx_signature}: {e}") from e
        return int(receipt["status"]) == 1

    async def lookup(self, tx_signature: str) -> ChainTxStatus:
        try:
            receipt = await self._w3.eth.get_transaction_receipt(tx_signature)
        except TransactionNotFound:
            receipt = None
        except Web3Exception as e:
            raise TransferError(f"Failed to look up {tx_signature}: {e}") from e
        if receipt is not None:
            return ChainTxStatus.CONFIRMED if int(receipt["status"]) == 1 else ChainTxStatus.FAILED
        try:
            await self._w3.eth.get_transaction(tx_signature)
        except TransactionNotFound:
            return ChainTxStatus.NOT_FOUND
        except Web3Exception as e:
            raise TransferError(f"Failed to look up {tx_signature}: {e}") from e
        return ChainTxStatus.PENDING

    async def aclose(self) -> None:
        """Close the async HTTP provider session."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)
