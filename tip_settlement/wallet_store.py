"""
Wallet Store

SQLite persistence for custodial wallets, bulk-loaded into memory at startup.

Tables:
- user_wallets: funding wallets keyed by platform user id
- claim_wallets: claim wallets keyed by lowercased username
"""

import asyncio
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

from loguru import logger

from .errors import LedgerPersistError
from .wallets import ClaimWallet, Wallet, generate_wallet


class WalletStore(ABC):
    """Persistence capability consumed by the ledger and registries"""

    @abstractmethod
    def upsert_funding_wallet(self, user_key: str, wallet: Wallet) -> bool:
        ...

    @abstractmethod
    def upsert_claim_wallet(self, username_key: str, wallet: ClaimWallet) -> bool:
        ...

    @abstractmethod
    def load_funding_wallets(self) -> Dict[str, Wallet]:
        ...

    @abstractmethod
    def load_claim_wallets(self) -> Dict[str, ClaimWallet]:
        ...

    @abstractmethod
    def count_funding_wallets(self) -> int:
        ...

    def close(self):
        pass


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class SQLiteWalletStore(WalletStore):
    """
    SQLite wallet store

    Upserts return a success flag and log failures instead of raising;
    callers decide whether a failed write is fatal.
    """

    def __init__(self, db_path: str = "tip_bot.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"Wallet store initialized: {self.db_path}")

    def _initialize_db(self):
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS user_wallets (
                user_id TEXT PRIMARY KEY,
                private_key TEXT NOT NULL,
                public_key TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS claim_wallets (
                username TEXT PRIMARY KEY,
                private_key TEXT NOT NULL,
                public_key TEXT NOT NULL,
                from_user_id TEXT,
                amount TEXT NOT NULL DEFAULT '0',
                created_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.commit()
        logger.debug("Wallet tables created successfully")

    def upsert_funding_wallet(self, user_key: str, wallet: Wallet) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO user_wallets (user_id, private_key, public_key, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    private_key = excluded.private_key,
                    public_key = excluded.public_key
            """, (user_key, wallet.private_key, wallet.address, wallet.created_at.isoformat()))

            self.conn.commit()
            logger.debug(f"Funding wallet saved: {user_key}")
            return True

        except Exception as e:
            logger.error(f"✗ Error saving funding wallet {user_key}: {e}")
            self.conn.rollback()
            return False

    def upsert_claim_wallet(self, username_key: str, wallet: ClaimWallet) -> bool:
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO claim_wallets (
                    username, private_key, public_key, from_user_id, amount, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (username) DO UPDATE SET
                    private_key = excluded.private_key,
                    public_key = excluded.public_key,
                    from_user_id = excluded.from_user_id,
                    amount = excluded.amount
            """, (
                username_key,
                wallet.private_key,
                wallet.address,
                wallet.from_identity,
                str(wallet.accrued_amount),
                wallet.created_at.isoformat(),
            ))

            self.conn.commit()
            logger.debug(f"Claim wallet saved: {username_key} (accrued {wallet.accrued_amount})")
            return True

        except Exception as e:
            logger.error(f"✗ Error saving claim wallet {username_key}: {e}")
            self.conn.rollback()
            return False

    def load_funding_wallets(self) -> Dict[str, Wallet]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM user_wallets")

        wallets = {}
        for row in cursor.fetchall():
            wallets[row['user_id']] = Wallet(
                identity=row['user_id'],
                address=row['public_key'],
                private_key=row['private_key'],
                created_at=_parse_timestamp(row['created_at']),
            )
        return wallets

    def load_claim_wallets(self) -> Dict[str, ClaimWallet]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM claim_wallets")

        wallets = {}
        for row in cursor.fetchall():
            wallets[row['username']] = ClaimWallet(
                identity=row['username'],
                address=row['public_key'],
                private_key=row['private_key'],
                created_at=_parse_timestamp(row['created_at']),
                from_identity=row['from_user_id'],
                accrued_amount=Decimal(row['amount'] or '0'),
            )
        return wallets

    def count_funding_wallets(self) -> int:
        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM user_wallets")
        return cursor.fetchone()[0]

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Wallet store connection closed")


class FundingWalletRegistry:
    """
    In-memory funding wallets, keyed by platform user id

    Creation is idempotent: the first caller for a key generates and persists
    the wallet, concurrent callers for the same key wait and reuse it.
    """

    def __init__(self, store: WalletStore):
        self.store = store
        self._wallets: Dict[str, Wallet] = store.load_funding_wallets()
        self._locks: Dict[str, asyncio.Lock] = {}
        logger.info(f"Loaded {len(self._wallets)} funding wallets")

    def _lock_for(self, user_key: str) -> asyncio.Lock:
        lock = self._locks.get(user_key)
        if lock is None:
            lock = self._locks[user_key] = asyncio.Lock()
        return lock

    def get(self, user_key) -> Optional[Wallet]:
        return self._wallets.get(str(user_key))

    async def get_or_create(self, user_key) -> Wallet:
        user_key = str(user_key)
        wallet = self._wallets.get(user_key)
        if wallet:
            return wallet

        async with self._lock_for(user_key):
            wallet = self._wallets.get(user_key)
            if wallet:
                return wallet

            wallet = generate_wallet(user_key)
            if not self.store.upsert_funding_wallet(user_key, wallet):
                raise LedgerPersistError(f"Could not persist funding wallet for {user_key}")

            self._wallets[user_key] = wallet
            logger.info(f"✓ Created funding wallet for {user_key}: {wallet.short_address}")
            return wallet

    def __len__(self):
        return len(self._wallets)
