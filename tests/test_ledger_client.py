from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted

from ticketledger.core.config import Settings
from ticketledger.ledger import (
    InsufficientBalanceError,
    LedgerClient,
    LedgerConfigurationError,
    LedgerTimeoutError,
    LedgerTransactionError,
)
from ticketledger.ledger.client import describe_connection_error, mask_rpc_url

CONTRACT = "0x" + "ab" * 20
WALLET = "0x" + "cd" * 20
TX_HASH = bytes.fromhex("ef" * 32)


async def _resolved(value):
    return value


class FakeEth:
    """Subset of ``AsyncEth`` whose awaitable properties are backed by plain values."""

    def __init__(self, contract, *, balance_wei=10**18):
        self.contract = MagicMock(return_value=contract)
        self.get_balance = AsyncMock(return_value=balance_wei)
        self.get_transaction_count = AsyncMock(return_value=7)
        self.send_raw_transaction = AsyncMock(return_value=TX_HASH)
        self.wait_for_transaction_receipt = AsyncMock(
            return_value={"status": 1, "blockNumber": 100, "gasUsed": 52000}
        )
        self.current_block = 101
        self.current_gas_price = 2 * 10**9
        self.current_chain_id = 11155111

    @property
    def block_number(self):
        return _resolved(self.current_block)

    @property
    def gas_price(self):
        return _resolved(self.current_gas_price)

    @property
    def chain_id(self):
        return _resolved(self.current_chain_id)


def _contract(*, status=2, revoked=False, owner=WALLET):
    contract = MagicMock()
    contract.functions.getTicketStatus.return_value.call = AsyncMock(return_value=status)
    contract.functions.isRevoked.return_value.call = AsyncMock(return_value=revoked)
    contract.functions.owner.return_value.call = AsyncMock(return_value=owner)
    for name in ("revokeTicket", "batchRevokeTickets"):
        call = getattr(contract.functions, name).return_value
        call.estimate_gas = AsyncMock(return_value=100_000)
        call.build_transaction = AsyncMock(side_effect=lambda tx: {**tx, "to": CONTRACT, "data": "0x"})
    return contract


def _account():
    account = MagicMock()
    account.address = WALLET
    account.sign_transaction.return_value = MagicMock(raw_transaction=b"signed")
    return account


def _client(contract=None, *, balance_wei=10**18, account="default", **kwargs):
    contract = contract or _contract()
    web3 = MagicMock()
    web3.eth = FakeEth(contract, balance_wei=balance_wei)
    client = LedgerClient(
        web3,
        contract_address=CONTRACT,
        account=_account() if account == "default" else account,
        rpc_url="https://sepolia.infura.io/v3/secret-key",
        poll_interval=0,
        **kwargs,
    )
    return client, web3, contract


@pytest.mark.asyncio
async def test_reads_status_and_revocation_flag():
    client, _, contract = _client(_contract(status=1, revoked=False))

    assert await client.get_status(42) == 1
    assert await client.is_revoked(42) is False
    contract.functions.getTicketStatus.assert_called_with(42)


@pytest.mark.asyncio
async def test_revoke_submits_signed_transaction_with_gas_buffer():
    client, web3, contract = _client()

    receipt = await client.revoke(42)

    assert receipt.tx_hash == "0x" + "ef" * 32
    assert receipt.block_number == 100
    assert receipt.gas_used == 52000
    assert receipt.token_ids == [42]
    assert receipt.verified is True
    transaction = contract.functions.revokeTicket.return_value.build_transaction.await_args.args[0]
    assert transaction["gas"] == 120_000
    assert transaction["nonce"] == 7
    assert transaction["chainId"] == 11155111
    web3.eth.get_transaction_count.assert_awaited_once_with(WALLET, "pending")
    web3.eth.send_raw_transaction.assert_awaited_once_with(b"signed")


@pytest.mark.asyncio
async def test_low_balance_blocks_submission():
    client, web3, _ = _client(balance_wei=10**14)

    with pytest.raises(InsufficientBalanceError, match="Insufficient gas: 0.0001 ETH"):
        await client.revoke(42)

    web3.eth.send_raw_transaction.assert_not_awaited()


@pytest.mark.asyncio
async def test_reverting_estimate_is_a_transaction_error():
    contract = _contract()
    contract.functions.revokeTicket.return_value.estimate_gas = AsyncMock(
        side_effect=ContractLogicError("execution reverted: already revoked")
    )
    client, web3, _ = _client(contract)

    with pytest.raises(LedgerTransactionError, match="would revert"):
        await client.revoke(42)
    web3.eth.send_raw_transaction.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_receipt_raises_with_hash():
    client, web3, _ = _client()
    web3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 100, "gasUsed": 1}

    with pytest.raises(LedgerTransactionError) as exc_info:
        await client.revoke(42)

    assert exc_info.value.tx_hash == "0x" + "ef" * 32


@pytest.mark.asyncio
async def test_unconfirmed_transaction_times_out():
    client, web3, _ = _client()
    web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not mined")

    with pytest.raises(LedgerTimeoutError) as exc_info:
        await client.revoke(42)

    assert exc_info.value.tx_hash is not None


@pytest.mark.asyncio
async def test_read_back_mismatch_is_reported_not_raised(caplog):
    client, _, _ = _client(_contract(status=1))

    with caplog.at_level("WARNING"):
        receipt = await client.revoke(42)

    assert receipt.verified is False
    assert "mismatch" in caplog.text


@pytest.mark.asyncio
async def test_revoke_tokens_picks_single_or_batch_call():
    client, _, contract = _client()

    await client.revoke_tokens([5])
    contract.functions.revokeTicket.assert_called_once_with(5)

    receipt = await client.revoke_tokens([5, 6, 7])
    contract.functions.batchRevokeTickets.assert_called_once_with([5, 6, 7])
    assert receipt.token_ids == [5, 6, 7]


@pytest.mark.asyncio
async def test_batch_revoke_requires_ids():
    client, _, _ = _client()

    with pytest.raises(ValueError):
        await client.batch_revoke([])


@pytest.mark.asyncio
async def test_write_without_key_is_a_configuration_error():
    client, _, _ = _client(account=None)

    with pytest.raises(LedgerConfigurationError, match="Private key not configured"):
        await client.revoke(1)


@pytest.mark.asyncio
async def test_check_connection_reports_wallet_and_owner():
    client, _, _ = _client()

    report = await client.check_connection()

    assert report["connection_status"] == "connected"
    assert report["chain_id"] == 11155111
    assert report["current_block"] == 101
    assert report["wallet_balance_eth"] == "1"
    assert report["low_balance"] is False
    assert report["wallet_is_owner"] is True
    assert report["rpc_url"] == "https://sepolia.infura.io/[HIDDEN]"


@pytest.mark.asyncio
async def test_check_connection_failure_is_classified():
    client, _, _ = _client(account=None)

    report = await client.check_connection()

    assert report["connection_status"] == "failed"
    assert report["details"].startswith("Invalid configuration")


def test_describe_connection_error():
    assert describe_connection_error(ConnectionError("refused")).startswith("Network connection failed")
    assert describe_connection_error(RuntimeError("insufficient funds")) == "Insufficient gas or wallet balance"
    assert describe_connection_error(RuntimeError("boom")) == "Unknown connection error"


def test_mask_rpc_url_keeps_bare_hosts():
    assert mask_rpc_url("http://localhost:8545") == "http://localhost:8545"
    assert mask_rpc_url(None) is None


def test_from_settings_requires_rpc_and_contract():
    with pytest.raises(LedgerConfigurationError, match="RPC URL"):
        LedgerClient.from_settings(Settings(ethereum_rpc_url=None, revocation_contract_address=CONTRACT))
    with pytest.raises(LedgerConfigurationError, match="Contract address"):
        LedgerClient.from_settings(
            Settings(ethereum_rpc_url="http://localhost:8545", revocation_contract_address=None)
        )


def test_from_settings_rejects_bad_key():
    settings = Settings(
        ethereum_rpc_url="http://localhost:8545",
        revocation_contract_address=CONTRACT,
        admin_private_key="not-a-key",
    )

    with pytest.raises(LedgerConfigurationError, match="Invalid private key format"):
        LedgerClient.from_settings(settings)


def test_from_settings_builds_client():
    settings = Settings(
        ethereum_rpc_url="http://localhost:8545",
        revocation_contract_address=CONTRACT,
        admin_private_key="0x" + "11" * 32,
        ledger_min_balance_eth=Decimal("0.5"),
    )

    client = LedgerClient.from_settings(settings)

    assert client.contract_address.lower() == CONTRACT
    assert client.wallet_address is not None
