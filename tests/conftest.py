"""
Pytest fixtures for tip settlement tests. Uses a temporary SQLite DB and an
in-memory chain.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from tip_settlement.chain_client import ChainClient, TransferTx
from tip_settlement.claim_ledger import ClaimLedger
from tip_settlement.config import TipConfig
from tip_settlement.settlement import SettlementOrchestrator
from tip_settlement.transaction_history import TipHistoryDB
from tip_settlement.transfer_engine import RateGovernor, TransferExecutor
from tip_settlement.wallet_store import SQLiteWalletStore
from tip_settlement.wallets import Wallet

FEE_ADDRESS = "0x" + "fe" * 20
SENDER_ADDRESS = "0x" + "11" * 20


class FakeChain(ChainClient):
    """
    In-memory chain

    - submit_errors: exceptions raised by the next submit calls, in order
      (None lets that submit succeed). A raised error whose message mentions
      "nonce" also advances the sender's nonce, like a competing transaction.
    - confirm_errors / statuses: per tx reference confirmation behaviour
    - balance_error: raised by get_balance when set
    """

    def __init__(self):
        self.balances: Dict[str, Decimal] = {}
        self.nonces: Dict[str, int] = {}
        self.submit_errors: List[Optional[Exception]] = []
        self.confirm_errors: Dict[str, Exception] = {}
        self.reverted: set = set()
        self.statuses: Dict[str, Optional[bool]] = {}
        self.submitted: List[TransferTx] = []
        self.calls: List[str] = []
        self.fee_estimate = Decimal("0.000021")
        self.balance_error: Optional[Exception] = None
        self.gas_price: Optional[int] = None
        self.estimated: List[TransferTx] = []
        self._counter = 0

    async def get_balance(self, address: str) -> Decimal:
        self.calls.append("get_balance")
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(address, Decimal("0"))

    async def get_nonce(self, address: str) -> int:
        self.calls.append("get_nonce")
        return self.nonces.get(address, 0)

    async def get_gas_price(self) -> Optional[int]:
        self.calls.append("get_gas_price")
        return self.gas_price

    async def estimate_fee(self, tx: TransferTx) -> Decimal:
        self.calls.append("estimate_fee")
        self.estimated.append(tx)
        return self.fee_estimate

    async def submit(self, tx: TransferTx) -> str:
        self.calls.append("submit")
        if self.submit_errors:
            error = self.submit_errors.pop(0)
            if error is not None:
                if "nonce" in str(error).lower():
                    self.nonces[tx.wallet.address] = self.nonces.get(tx.wallet.address, 0) + 1
                raise error

        self._counter += 1
        tx_reference = f"0xtx{self._counter}"
        self.submitted.append(tx)
        self.nonces[tx.wallet.address] = tx.nonce + 1
        self.balances[tx.wallet.address] = self.balances.get(tx.wallet.address, Decimal("0")) - tx.amount
        self.balances[tx.to_address] = self.balances.get(tx.to_address, Decimal("0")) + tx.amount
        return tx_reference

    async def wait_for_confirmation(self, tx_reference: str) -> bool:
        self.calls.append("wait_for_confirmation")
        if tx_reference in self.confirm_errors:
            raise self.confirm_errors[tx_reference]
        return tx_reference not in self.reverted

    async def get_transaction_status(self, tx_reference: str) -> Optional[bool]:
        self.calls.append("get_transaction_status")
        return self.statuses.get(tx_reference)

    def is_valid_address(self, address: str) -> bool:
        return bool(address) and address.startswith("0x") and len(address) == 42


class CountingWalletStore(SQLiteWalletStore):
    """SQLite store that counts writes and can be told to fail them"""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.claim_writes = 0
        self.funding_writes = 0
        self.fail_claim_writes = False

    def upsert_claim_wallet(self, username_key, wallet):
        self.claim_writes += 1
        if self.fail_claim_writes:
            return False
        return super().upsert_claim_wallet(username_key, wallet)

    def upsert_funding_wallet(self, user_key, wallet):
        self.funding_writes += 1
        return super().upsert_funding_wallet(user_key, wallet)


@pytest.fixture
def config(tmp_path):
    return TipConfig(
        fee_address=FEE_ADDRESS,
        fee_rate=Decimal("0.10"),
        network_fee_buffer=Decimal("0.000005"),
        min_call_interval_seconds=0,
        retry_delay_seconds=0,
        status_poll_interval_seconds=0,
        giveaway_duration_seconds=0.05,
        db_path=str(tmp_path / "tips.db"),
    )


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def executor(chain):
    return TransferExecutor(chain, governor=RateGovernor(0), retry_delay=0, status_poll_interval=0)


@pytest.fixture
def store(config):
    store = CountingWalletStore(config.db_path)
    yield store
    store.close()


@pytest.fixture
def history(config):
    history = TipHistoryDB(config.db_path)
    yield history
    history.close()


@pytest.fixture
def ledger(store):
    return ClaimLedger(store)


@pytest.fixture
def orchestrator(chain, executor, ledger, history, config):
    return SettlementOrchestrator(chain, executor, ledger, history, config)


@pytest.fixture
def sender(chain):
    wallet = Wallet(identity="1001", address=SENDER_ADDRESS, private_key="0x" + "ab" * 32)
    chain.balances[wallet.address] = Decimal("10.0")
    chain.nonces[wallet.address] = 5
    return wallet
