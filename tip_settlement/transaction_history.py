"""
Tip History Database

Append-only SQLite record of settled tips with reconciliation support.

Tables:
- tips: one row per successful principal transfer
- errors: settlement errors that need operator attention (uncollected fees,
  bookkeeping failures)
"""

import sqlite3
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger


@dataclass(frozen=True)
class TipRecord:
    """Immutable tip record"""
    from_identity: str
    to_username: str
    amount: Decimal
    fee_amount: Decimal
    tx_reference: str
    fee_tx_reference: Optional[str] = None
    fee_collected: bool = False
    created_at: datetime = None

    def __post_init__(self):
        if self.created_at is None:
            object.__setattr__(self, 'created_at', datetime.now(timezone.utc))

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['amount'] = str(self.amount)
        data['fee_amount'] = str(self.fee_amount)
        data['created_at'] = self.created_at.isoformat()
        return data


def _sum_decimal(values) -> Decimal:
    return sum((Decimal(v) for v in values if v is not None), Decimal("0"))


class TipHistoryDB:
    """
    SQLite database for tip history

    Features:
    - Append-only tip logging
    - Error logging for manual reconciliation
    - Per-user queries
    - Fee statistics
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
        logger.info(f"Tip history database initialized: {self.db_path}")

    def _initialize_db(self):
        """Initialize database and create tables"""
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        """Create database tables"""
        cursor = self.conn.cursor()

        # Amounts are TEXT so Decimal values survive untouched
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tips (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_user_id TEXT NOT NULL,
                to_username TEXT NOT NULL,
                amount TEXT NOT NULL,
                fee_amount TEXT NOT NULL,
                transaction_signature TEXT NOT NULL,
                fee_transaction_signature TEXT,
                fee_collected BOOLEAN DEFAULT 0,
                created_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS errors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_signature TEXT,
                error_type TEXT NOT NULL,
                error_message TEXT NOT NULL,
                occurred_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tips_to ON tips(to_username)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tips_from ON tips(from_user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tips_created ON tips(created_at)")

        self.conn.commit()
        logger.debug("Tip history tables created successfully")

    def record_tip(self, record: TipRecord) -> bool:
        """
        Append a tip record

        Args:
            record: Tip record

        Returns:
            Success status
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO tips (
                    from_user_id, to_username, amount, fee_amount,
                    transaction_signature, fee_transaction_signature,
                    fee_collected, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.from_identity,
                record.to_username,
                str(record.amount),
                str(record.fee_amount),
                record.tx_reference,
                record.fee_tx_reference,
                record.fee_collected,
                record.created_at.isoformat(),
            ))

            self.conn.commit()
            logger.info(f"✓ Tip recorded: {record.from_identity} -> @{record.to_username} ({record.amount})")
            return True

        except Exception as e:
            logger.error(f"✗ Error recording tip {record.tx_reference}: {e}")
            self.conn.rollback()
            return False

    def record_error(
        self,
        tx_reference: Optional[str],
        error_type: str,
        error_message: str
    ) -> bool:
        """
        Record an error

        Args:
            tx_reference: Related transaction (if applicable)
            error_type: Type of error
            error_message: Error message

        Returns:
            Success status
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO errors (
                    transaction_signature, error_type, error_message, occurred_at
                ) VALUES (?, ?, ?, ?)
            """, (tx_reference, error_type, error_message, datetime.now(timezone.utc).isoformat()))

            self.conn.commit()
            return True

        except Exception as e:
            logger.error(f"Error recording error: {e}")
            return False

    def _row_to_record(self, row: sqlite3.Row) -> TipRecord:
        return TipRecord(
            from_identity=row['from_user_id'],
            to_username=row['to_username'],
            amount=Decimal(row['amount']),
            fee_amount=Decimal(row['fee_amount']),
            tx_reference=row['transaction_signature'],
            fee_tx_reference=row['fee_transaction_signature'],
            fee_collected=bool(row['fee_collected']),
            created_at=datetime.fromisoformat(row['created_at']),
        )

    def get_tips_for_user(self, username: str) -> List[TipRecord]:
        """Tips received by a username, newest first"""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM tips WHERE to_username = ? ORDER BY created_at DESC, id DESC",
            (username,)
        )
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def get_tips_from(self, identity: str) -> List[TipRecord]:
        """Tips sent by a funding-wallet owner, newest first"""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM tips WHERE from_user_id = ? ORDER BY created_at DESC, id DESC",
            (identity,)
        )
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def get_errors(self, error_type: Optional[str] = None) -> List[Dict]:
        cursor = self.conn.cursor()
        if error_type:
            cursor.execute(
                "SELECT * FROM errors WHERE error_type = ? ORDER BY occurred_at DESC",
                (error_type,)
            )
        else:
            cursor.execute("SELECT * FROM errors ORDER BY occurred_at DESC")
        return [dict(row) for row in cursor.fetchall()]

    def total_fees(self) -> Decimal:
        """Fees actually collected"""
        cursor = self.conn.cursor()
        cursor.execute("SELECT fee_amount FROM tips WHERE fee_collected = 1")
        return _sum_decimal(row[0] for row in cursor.fetchall())

    def get_uncollected_fees(self) -> List[TipRecord]:
        """Tips whose fee transfer failed, for reconciliation"""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM tips WHERE fee_collected = 0 ORDER BY created_at DESC")
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get tip statistics

        Returns:
            Statistics dictionary
        """
        cursor = self.conn.cursor()
        cursor.execute("SELECT amount, fee_amount, fee_collected FROM tips")
        rows = cursor.fetchall()

        total_volume = _sum_decimal(row['amount'] for row in rows)
        fees_collected = _sum_decimal(row['fee_amount'] for row in rows if row['fee_collected'])
        fees_uncollected = _sum_decimal(row['fee_amount'] for row in rows if not row['fee_collected'])

        return {
            'total_tips': len(rows),
            'total_volume': total_volume,
            'fees_collected': fees_collected,
            'fees_uncollected': fees_uncollected,
            'tips_missing_fee': sum(1 for row in rows if not row['fee_collected']),
        }

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Tip history connection closed")
