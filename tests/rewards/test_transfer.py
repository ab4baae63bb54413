"""Tests for the ERC20 transfer client."""

from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from supermolt_arena.rewards.transfer import (
    ChainTxStatus,
    ConfirmationTimeoutError,
    Erc20TransferClient,
    InsufficientFundsError,
    InvalidDestinationError,
    PreparedTransfer,
    TransferError,
    TransferRejectedError,
    transfer,
)

USDC = "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d"
TREASURY = "0x1111111111111111111111111111111111111111"
DESTINATION = "0x2222222222222222222222222222222222222222"


@pytest.fixture
def w3() -> MagicMock:
    mock = MagicMock()
    account = MagicMock()
    account.address = TREASURY
    account.sign_transaction.return_value = SimpleNamespace(hash=b"\x12" * 32, raw_transaction=b"\x01\x02")
    mock.eth.account.from_key.return_value = account
    return mock


@pytest.fixture
def client(w3: MagicMock) -> Erc20TransferClient:
    return Erc20TransferClient(
        rpc_url="http://localhost:8545",
        token_address=USDC,
        private_key="0x" + "ab" * 32,
        chain_id=56,
        token_decimals=18,
        w3=w3,
    )


def token(w3: MagicMock) -> MagicMock:
    return w3.eth.contract.return_value


async def _gas_price() -> int:
    return 3_000_000_000


# ============================================================================
# Units and balance
# ============================================================================


class TestUnits:
    """Tests for token unit conversion."""

    def test_to_and_from_units(self, client: Erc20TransferClient) -> None:
        assert client.to_units(Decimal("150.25")) == 150_250_000_000_000_000_000
        assert client.from_units(5 * 10**18) == Decimal(5)

    def test_six_decimal_token(self, w3: MagicMock) -> None:
        six = Erc20TransferClient(
            rpc_url="http://localhost:8545",
            token_address=USDC,
            private_key="0x" + "ab" * 32,
            chain_id=1,
            token_decimals=6,
            w3=w3,
        )
        assert six.to_units(Decimal("0.1234567")) == 123456
        assert six.treasury_address == TREASURY


class TestBalance:
    """Tests for get_balance."""

    @pytest.mark.asyncio
    async def test_reads_token_balance(self, client: Erc20TransferClient, w3: MagicMock) -> None:
        token(w3).functions.balanceOf.return_value.call = AsyncMock(return_value=2500 * 10**18)

        assert await client.get_balance() == Decimal(2500)
        token(w3).functions.balanceOf.assert_called_with(TREASURY)

    @pytest.mark.asyncio
    async def test_rpc_failure(self, client: Erc20TransferClient, w3: MagicMock) -> None:
        token(w3).functions.balanceOf.return_value.call = AsyncMock(side_effect=Web3Exception("rpc down"))

        with pytest.raises(TransferError):
            await client.get_balance()


# ============================================================================
# Prepare and broadcast
# ============================================================================


class TestPrepare:
    """Tests for prepare_transfer."""

    @pytest.mark.asyncio
    async def test_signs_transfer(self, client: Erc20TransferClient, w3: MagicMock) -> None:
        w3.eth.get_transaction_count = AsyncMock(return_value=7)
        w3.eth.gas_price = _gas_price()
        build = AsyncMock(return_value={"to": USDC, "data": "0x"})
        token(w3).functions.transfer.return_value.build_transaction = build

        prepared = await client.prepare_transfer(DESTINATION, Decimal("400.00"))

        assert prepared.tx_signature == "0x" + "12" * 32
        assert prepared.raw_transaction == b"\x01\x02"
        assert prepared.amount == Decimal("400.00")
        w3.eth.get_transaction_count.assert_awaited_once_with(TREASURY, "pending")
        token(w3).functions.transfer.assert_called_once_with(DESTINATION, 400 * 10**18)
        params = build.await_args.args[0]
        assert params["nonce"] == 7
        assert params["chainId"] == 56

    @pytest.mark.asyncio
    async def test_invalid_destination(self, client: Erc20TransferClient) -> None:
        with pytest.raises(InvalidDestinationError):
            await client.prepare_transfer("not-a-wallet", Decimal("10"))

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, client: Erc20TransferClient) -> None:
        with pytest.raises(TransferError):
            await client.prepare_transfer(DESTINATION, Decimal("0"))

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, client: Erc20TransferClient, w3: MagicMock) -> None:
        w3.eth.get_transaction_count = AsyncMock(side_effect=Web3Exception("insufficient funds for gas"))

        with pytest.raises(InsufficientFundsError):
            await client.prepare_transfer(DESTINATION, Decimal("10"))


class TestBroadcast:
    """Tests for broadcast."""

    @pytest.mark.asyncio
    async def test_already_known_is_success(self, client: Erc20TransferClient, w3: MagicMock) -> None:
        w3.eth.send_raw_transaction = AsyncMock(side_effect=Web3Exception("already known"))
        prepared = PreparedTransfer("0xabc", b"\x01", DESTINATION, Decimal("1"))

        assert await client.broadcast(prepared) == "0xabc"

    @pytest.mark.asyncio
    async def test_rejected(self, client: Erc20TransferClient, w3: MagicMock) -> None:
        w3.eth.send_raw_transaction = AsyncMock(side_effect=Web3Exception("nonce too low"))
        prepared = PreparedTransfer("0xabc", b"\x01", DESTINATION, Decimal("1"))

        with pytest.raises(TransferRejectedError):
            await client.broadcast(prepared)


# ============================================================================
# Confirmation and lookup
# ============================================================================


class TestConfirmation:
    """Tests for wait_for_confirmation and lookup."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("status", "expected"), [(1, True), (0, False)])
    async def test_receipt_status(
        self, client: Erc20TransferClient, w3: MagicMock, status: int, expected: bool
    ) -> None:
        w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": status})

        assert await client.wait_for_confirmation("0xabc", timeout=5) is expected

    @pytest.mark.asyncio
    async def test_timeout(self, client: Erc20TransferClient, w3: MagicMock) -> None:
        w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeExhausted("too slow"))

        with pytest.raises(ConfirmationTimeoutError):
            await client.wait_for_confirmation("0xabc", timeout=5)

    @pytest.mark.asyncio
    async def test_lookup_confirmed_and_failed(self, client: Erc20TransferClient, w3: MagicMock) -> None:
        w3.eth.get_transaction_receipt = AsyncMock(return_value={"status": 1})
        assert await client.lookup("0xabc") is ChainTxStatus.CONFIRMED

        w3.eth.get_transaction_receipt = AsyncMock(return_value={"status": 0})
        assert await client.lookup("0xabc") is ChainTxStatus.FAILED

    @pytest.mark.asyncio
    async def test_lookup_pending_and_missing(self, client: Erc20TransferClient, w3: MagicMock) -> None:
        w3.eth.get_transaction_receipt = AsyncMock(side_effect=TransactionNotFound("no receipt"))
        w3.eth.get_transaction = AsyncMock(return_value={"hash": "0xabc"})
        assert await client.lookup("0xabc") is ChainTxStatus.PENDING

        w3.eth.get_transaction = AsyncMock(side_effect=TransactionNotFound("unknown"))
        assert await client.lookup("0xabc") is ChainTxStatus.NOT_FOUND


class TestTransferHelper:
    """Tests for the one-shot transfer helper."""

    @pytest.mark.asyncio
    async def test_timeout_reports_unconfirmed(self) -> None:
        prepared = PreparedTransfer("0xabc", b"\x01", DESTINATION, Decimal("1"))
        fake = MagicMock()
        fake.prepare_transfer = AsyncMock(return_value=prepared)
        fake.broadcast = AsyncMock(return_value="0xabc")
        fake.wait_for_confirmation = AsyncMock(side_effect=ConfirmationTimeoutError("slow"))

        result = await transfer(fake, DESTINATION, Decimal("1"), timeout=1)

        assert result.tx_signature == "0xabc"
        assert not result.confirmed


class TestClose:
    """Tests for aclose."""

    @pytest.mark.asyncio
    async def test_disconnects_provider(self, client: Erc20TransferClient, w3: MagicMock) -> None:
        w3.provider.disconnect = AsyncMock()

        await client.aclose()

        w3.provider.disconnect.assert_awaited_once()
