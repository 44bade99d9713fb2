"""
Chain Client

Capability interface for the blockchain RPC, plus a web3.py implementation
for EVM chains (Monad).

Design:
- Sync web3 calls wrapped in run_in_executor so the event loop keeps serving
  other chats while a transfer is in flight
- Plain value transfers: fixed 21000 gas at the pinned or current gas price
- Nonce comes from the caller; the client never picks one itself
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from loguru import logger
from web3 import Web3
from web3.exceptions import TransactionNotFound

from .errors import is_already_known
from .wallets import Wallet


VALUE_TRANSFER_GAS = 21000


@dataclass(frozen=True)
class TransferTx:
    """A single value transfer intent, never persisted"""
    wallet: Wallet
    to_address: str
    amount: Decimal
    nonce: Optional[int] = None
    gas_price: Optional[int] = None  # wei; chain's current price when None


class ChainClient(ABC):
    """Everything the settlement engine needs from the chain"""

    @abstractmethod
    async def get_balance(self, address: str) -> Decimal:
        ...

    @abstractmethod
    async def get_nonce(self, address: str) -> int:
        ...

    async def get_gas_price(self) -> Optional[int]:
        """Current gas price in wei, None when the chain has no such notion"""
        return None

    @abstractmethod
    async def estimate_fee(self, tx: TransferTx) -> Decimal:
        ...

    @abstractmethod
    async def submit(self, tx: TransferTx) -> str:
        """Sign and broadcast; returns the transaction reference"""

    @abstractmethod
    async def wait_for_confirmation(self, tx_reference: str) -> bool:
        """True when mined successfully, False when reverted; raises on timeout"""

    @abstractmethod
    async def get_transaction_status(self, tx_reference: str) -> Optional[bool]:
        """True/False once mined, None while unknown"""

    @abstractmethod
    def is_valid_address(self, address: str) -> bool:
        ...

    async def close(self):
        pass


def tx_link(explorer_tx_url: str, tx_reference: str) -> str:
    return f"{explorer_tx_url.rstrip('/')}/{tx_reference}"


class Web3ChainClient(ChainClient):
    """
    web3.py chain client

    Usage:
        client = Web3ChainClient("https://testnet-rpc.monad.xyz/", chain_id=10143)
        balance = await client.get_balance(address)
    """

    def __init__(self, rpc_url: str, chain_id: int, confirmation_timeout: float = 30.0):
        """
        Initialize RPC connection

        Args:
            rpc_url: JSON-RPC endpoint
            chain_id: EIP-155 chain id
            confirmation_timeout: Seconds to wait for a receipt
        """
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.confirmation_timeout = confirmation_timeout
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))

        logger.info(f"Chain client initialized: {rpc_url} (chain {chain_id})")

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def get_balance(self, address: str) -> Decimal:
        balance_wei = await self._run(self.w3.eth.get_balance, Web3.to_checksum_address(address))
        return Decimal(Web3.from_wei(balance_wei, 'ether'))

    async def get_nonce(self, address: str) -> int:
        return await self._run(
            self.w3.eth.get_transaction_count,
            Web3.to_checksum_address(address),
            'latest',
        )

    async def get_gas_price(self) -> int:
        return await self._run(lambda: self.w3.eth.gas_price)

    async def estimate_fee(self, tx: TransferTx) -> Decimal:
        gas_price = tx.gas_price if tx.gas_price is not None else await self.get_gas_price()
        return Decimal(Web3.from_wei(gas_price * VALUE_TRANSFER_GAS, 'ether'))

    async def submit(self, tx: TransferTx) -> str:
        if tx.nonce is None:
            raise ValueError("TransferTx.nonce must be resolved before submission")

        def _execute():
            raw_tx = {
                "to": Web3.to_checksum_address(tx.to_address),
                "value": Web3.to_wei(tx.amount, 'ether'),
                "nonce": tx.nonce,
                "gas": VALUE_TRANSFER_GAS,
                "gasPrice": tx.gas_price if tx.gas_price is not None else self.w3.eth.gas_price,
                "chainId": self.chain_id,
            }
            signed = self.w3.eth.account.sign_transaction(raw_tx, tx.wallet.private_key)
            try:
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as e:
                # Identical bytes already in the mempool: same hash, nothing new broadcast
                if not is_already_known(e):
                    raise
                logger.warning(f"Transaction {Web3.to_hex(signed.hash)} already known to the node")
                tx_hash = signed.hash
            return Web3.to_hex(tx_hash)

        return await self._run(_execute)

    async def wait_for_confirmation(self, tx_reference: str) -> bool:
        receipt = await self._run(
            lambda: self.w3.eth.wait_for_transaction_receipt(
                tx_reference, timeout=self.confirmation_timeout
            )
        )
        return receipt["status"] == 1

    async def get_transaction_status(self, tx_reference: str) -> Optional[bool]:
        try:
            receipt = await self._run(self.w3.eth.get_transaction_receipt, tx_reference)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return receipt["status"] == 1

    def is_valid_address(self, address: str) -> bool:
        return bool(address) and Web3.is_address(address.strip())
