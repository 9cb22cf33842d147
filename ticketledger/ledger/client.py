from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from time import perf_counter
from typing import Any, Protocol, Sequence
from urllib.parse import urlsplit, urlunsplit

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from ticketledger.core.config import Settings
from ticketledger.tickets.state import LedgerStatusCode

from .abi import REVOCATION_CONTRACT_ABI
from .errors import (
    InsufficientBalanceError,
    LedgerConfigurationError,
    LedgerTimeoutError,
    LedgerTransactionError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LedgerReceipt:
    """Outcome of a confirmed revocation transaction."""

    tx_hash: str
    block_number: int | None
    gas_used: int | None
    token_ids: list[int] = field(default_factory=list)
    verified: bool = True


class LedgerGateway(Protocol):
    """Operations the reconciliation components need from the ledger."""

    async def get_status(self, token_id: int) -> int: ...

    async def is_revoked(self, token_id: int) -> bool: ...

    async def revoke(self, token_id: int) -> LedgerReceipt: ...

    async def batch_revoke(self, token_ids: Sequence[int]) -> LedgerReceipt: ...

    async def contract_info(self) -> dict[str, Any]: ...


class LedgerClient:
    """Reads and writes ticket revocation state on the revocation contract."""

    def __init__(
        self,
        web3: AsyncWeb3,
        *,
        contract_address: str,
        account: LocalAccount | None = None,
        network: str = "sepolia",
        rpc_url: str | None = None,
        confirmations: int = 2,
        confirmation_timeout: float = 180.0,
        poll_interval: float = 2.0,
        min_balance_eth: Decimal = Decimal("0.001"),
        gas_buffer: Decimal = Decimal("1.2"),
    ) -> None:
        self._web3 = web3
        self._contract_address = Web3.to_checksum_address(contract_address)
        self._contract = web3.eth.contract(address=self._contract_address, abi=REVOCATION_CONTRACT_ABI)
        self._account = account
        self.network = network
        self._rpc_url = rpc_url
        self._confirmations = max(confirmations, 1)
        self._confirmation_timeout = confirmation_timeout
        self._poll_interval = poll_interval
        self._min_balance_eth = Decimal(min_balance_eth)
        self._gas_buffer = Decimal(gas_buffer)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerClient":
        if not settings.ethereum_rpc_url:
            raise LedgerConfigurationError("RPC URL not configured")
        if not settings.revocation_contract_address:
            raise LedgerConfigurationError("Contract address not configured")

        account: LocalAccount | None = None
        if settings.admin_private_key:
            try:
                account = Account.from_key(settings.admin_private_key)
            except (ValueError, TypeError) as exc:
                raise LedgerConfigurationError("Invalid private key format") from exc

        web3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                settings.ethereum_rpc_url,
                request_kwargs={"timeout": settings.ethereum_rpc_timeout_seconds},
            )
        )
        try:
            return cls(
                web3,
                contract_address=settings.revocation_contract_address,
                account=account,
                network=settings.ethereum_network,
                rpc_url=settings.ethereum_rpc_url,
                confirmations=settings.ledger_confirmations,
                confirmation_timeout=settings.ledger_confirmation_timeout_seconds,
                poll_interval=settings.ledger_poll_interval_seconds,
                min_balance_eth=settings.ledger_min_balance_eth,
                gas_buffer=settings.ledger_gas_buffer,
            )
        except ValueError as exc:
            raise LedgerConfigurationError(
                f"Invalid contract address: {settings.revocation_contract_address}"
            ) from exc

    @property
    def contract_address(self) -> str:
        return self._contract_address

    @property
    def wallet_address(self) -> str | None:
        return None if self._account is None else self._account.address

    # Reads

    async def get_status(self, token_id: int) -> int:
        return int(await self._contract.functions.getTicketStatus(token_id).call())

    async def is_revoked(self, token_id: int) -> bool:
        return bool(await self._contract.functions.isRevoked(token_id).call())

    async def get_owner(self) -> str:
        return str(await self._contract.functions.owner().call())

    async def get_block_number(self) -> int:
        return int(await self._web3.eth.block_number)

    async def get_gas_price(self) -> Decimal:
        """Current gas price in gwei."""

        return Decimal(Web3.from_wei(await self._web3.eth.gas_price, "gwei"))

    async def get_wallet_balance(self) -> Decimal:
        account = self._require_account()
        balance = await self._web3.eth.get_balance(account.address)
        return Decimal(Web3.from_wei(balance, "ether"))

    async def contract_info(self) -> dict[str, Any]:
        owner, block_number, gas_price = await asyncio.gather(
            self.get_owner(), self.get_block_number(), self.get_gas_price()
        )
        return {
            "contract_address": self._contract_address,
            "network": self.network,
            "owner": owner,
            "current_block": block_number,
            "gas_price_gwei": str(gas_price),
        }

    # Writes

    async def revoke(self, token_id: int) -> LedgerReceipt:
        return await self._submit(self._contract.functions.revokeTicket(token_id), [token_id])

    async def batch_revoke(self, token_ids: Sequence[int]) -> LedgerReceipt:
        ids = list(token_ids)
        if not ids:
            raise ValueError("batch_revoke requires at least one token id")
        return await self._submit(self._contract.functions.batchRevokeTickets(ids), ids)

    async def revoke_tokens(self, token_ids: Sequence[int]) -> LedgerReceipt:
        """Use the single-token call for one id and the batch call otherwise."""

        ids = list(token_ids)
        if len(ids) == 1:
            return await self.revoke(ids[0])
        return await self.batch_revoke(ids)

    async def _submit(self, call: Any, token_ids: list[int]) -> LedgerReceipt:
        account = self._require_account()
        await self._ensure_balance()

        try:
            estimated_gas = await call.estimate_gas({"from": account.address})
        except ContractLogicError as exc:
            raise LedgerTransactionError(f"Revocation would revert for tokens {token_ids}: {exc}") from exc
        gas_limit = int(Decimal(estimated_gas) * self._gas_buffer)

        gas_price = await self._web3.eth.gas_price
        nonce = await self._web3.eth.get_transaction_count(account.address, "pending")
        chain_id = await self._web3.eth.chain_id
        transaction = await call.build_transaction(
            {
                "from": account.address,
                "nonce": nonce,
                "gas": gas_limit,
                "gasPrice": gas_price,
                "chainId": chain_id,
            }
        )
        signed = account.sign_transaction(transaction)
        tx_hash = Web3.to_hex(await self._web3.eth.send_raw_transaction(signed.raw_transaction))
        logger.info(
            "Submitted revocation transaction",
            extra={"tx_hash": tx_hash, "token_ids": token_ids, "gas_limit": gas_limit},
        )

        try:
            receipt = await asyncio.wait_for(
                self._wait_for_confirmations(tx_hash), timeout=self._confirmation_timeout
            )
        except (asyncio.TimeoutError, TimeExhausted) as exc:
            raise LedgerTimeoutError(
                f"Transaction {tx_hash} not confirmed within {self._confirmation_timeout:g}s",
                tx_hash=tx_hash,
            ) from exc

        if receipt["status"] != 1:
            raise LedgerTransactionError(f"Transaction {tx_hash} failed on chain", tx_hash=tx_hash)

        result = LedgerReceipt(
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
            token_ids=list(token_ids),
        )
        result.verified = await self._verify_revoked(token_ids[0], tx_hash)
        return result

    async def _wait_for_confirmations(self, tx_hash: str) -> Any:
        receipt = await self._web3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self._confirmation_timeout, poll_latency=self._poll_interval
        )
        target_block = receipt["blockNumber"] + self._confirmations - 1
        while await self._web3.eth.block_number < target_block:
            await asyncio.sleep(self._poll_interval)
        return receipt

    async def _verify_revoked(self, token_id: int, tx_hash: str) -> bool:
        # The confirmed write is authoritative; a disagreeing read is only reported.
        try:
            status = await self.get_status(token_id)
        except Exception:
            logger.warning(
                "Could not read back ledger status after revocation",
                exc_info=True,
                extra={"token_id": token_id, "tx_hash": tx_hash},
            )
            return False
        if status != LedgerStatusCode.REVOKED:
            logger.warning(
                "Ledger status mismatch after revocation",
                extra={"token_id": token_id, "tx_hash": tx_hash, "status_code": status},
            )
            return False
        return True

    async def _ensure_balance(self) -> None:
        balance = await self.get_wallet_balance()
        if balance < self._min_balance_eth:
            raise InsufficientBalanceError(
                f"Insufficient gas: {balance} ETH (minimum {self._min_balance_eth} ETH required)"
            )

    def _require_account(self) -> LocalAccount:
        if self._account is None:
            raise LedgerConfigurationError("Private key not configured")
        return self._account

    # Diagnostics

    async def check_connection(self) -> dict[str, Any]:
        """Probe RPC, wallet and contract and report what was reachable."""

        base = {
            "network": self.network,
            "contract_address": self._contract_address,
            "rpc_url": mask_rpc_url(self._rpc_url),
        }
        started = perf_counter()
        try:
            account = self._require_account()
            chain_id = await self._web3.eth.chain_id
            current_block = await self.get_block_number()
            latency_ms = round((perf_counter() - started) * 1000)
            balance = await self.get_wallet_balance()
            gas_price = await self.get_gas_price()
        except Exception as exc:
            logger.exception("Ledger connection check failed")
            return {
                **base,
                "connection_status": "failed",
                "error": str(exc),
                "details": describe_connection_error(exc),
            }

        owner: str | None = None
        try:
            owner = await self.get_owner()
        except Exception:
            logger.warning("Could not read contract owner", exc_info=True)

        if balance < self._min_balance_eth:
            logger.warning("Low wallet balance", extra={"balance_eth": str(balance)})

        return {
            **base,
            "connection_status": "connected",
            "chain_id": chain_id,
            "current_block": current_block,
            "connection_latency_ms": latency_ms,
            "wallet_address": account.address,
            "wallet_balance_eth": str(balance),
            "low_balance": balance < self._min_balance_eth,
            "gas_price_gwei": str(gas_price),
            "contract_owner": owner,
            "contract_accessible": owner is not None,
            "wallet_is_owner": owner is not None and owner.lower() == account.address.lower(),
        }


def describe_connection_error(exc: BaseException) -> str:
    message = str(exc).lower()
    if isinstance(exc, LedgerConfigurationError):
        return "Invalid configuration - check RPC URL, contract address and private key"
    if isinstance(exc, InsufficientBalanceError) or "insufficient" in message or "gas" in message:
        return "Insufficient gas or wallet balance"
    if isinstance(exc, (ConnectionError, asyncio.TimeoutError)) or "network" in message or "connect" in message:
        return "Network connection failed - check RPC URL and internet connection"
    if "private key" in message or "invalid key" in message:
        return "Invalid private key format"
    if "contract" in message:
        return "Contract interaction failed - check contract address and deployment"
    return "Unknown connection error"


def mask_rpc_url(url: str | None) -> str | None:
    """Hide the path and query of an RPC URL, which usually carry an API key."""

    if not url:
        return url
    parts = urlsplit(url)
    if not parts.path.strip("/") and not parts.query:
        return url
    return urlunsplit((parts.scheme, parts.netloc, "/[HIDDEN]", "", ""))
