import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from core.config import get_settings
from core.exceptions import PersistenceError
from core.logger import setup_logger
from core.schema import RuleMatchResult, Transaction

logger = setup_logger(__name__)


class Database:
    """SQLite store for imported transactions and their categorizations."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or get_settings().database_path

    def get_connection(self) -> sqlite3.Connection:
        """Create a database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Initialize database tables."""
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    session_id TEXT NOT NULL,
                    row_number INTEGER NOT NULL,
                    transaction_index INTEGER NOT NULL,
                    date TEXT,
                    description TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    counterparty TEXT,
                    reference TEXT,
                    balance TEXT,
                    needs_review INTEGER NOT NULL DEFAULT 0,
                    category_code TEXT,
                    category_type TEXT,
                    confidence REAL,
                    source TEXT,
                    reasoning TEXT,
                    affects_pnl INTEGER,
                    balance_impact TEXT,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (session_id, row_number)
                )
            """)
            conn.commit()
            logger.info("Database initialized successfully")
        except sqlite3.Error as e:
            logger.error(f"Database initialization failed: {e}")
            raise PersistenceError("Database initialization failed", details={"error": str(e)})
        finally:
            conn.close()

    def upsert_transactions(self, session_id: str, transactions: Sequence[Transaction]) -> int:
        """
        Insert or update parsed transactions, one row per statement row.

        Returns:
            Number of rows written
        """
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (
                session_id, t.row_number, t.index, t.date, t.description, str(t.amount),
                t.counterparty, t.reference,
                str(t.balance) if t.balance is not None else None,
                int(t.needs_review), now,
            )
            for t in transactions
        ]
        self._write("""
            INSERT INTO transactions (
                session_id, row_number, transaction_index, date, description, amount,
                counterparty, reference, balance, needs_review, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id, row_number) DO UPDATE SET
                transaction_index = excluded.transaction_index,
                date = excluded.date,
                description = excluded.description,
                amount = excluded.amount,
                counterparty = excluded.counterparty,
                reference = excluded.reference,
                balance = excluded.balance,
                needs_review = excluded.needs_review,
                updated_at = excluded.updated_at
        """, rows)
        logger.info(f"Upserted {len(rows)} transactions for session {session_id}")
        return len(rows)

    def upsert_categorizations(
        self,
        session_id: str,
        results: Sequence[RuleMatchResult],
        transactions: Sequence[Transaction],
    ) -> int:
        """
        Attach categorizations to already stored transactions.

        Results are mapped to statement rows through the transactions' indices.

        Returns:
            Number of rows updated
        """
        row_by_index = {t.index: t.row_number for t in transactions}
        now = datetime.now(timezone.utc).isoformat()
        rows = []
        for r in results:
            if r.transaction_index not in row_by_index:
                logger.warning(f"No stored row for transaction {r.transaction_index}, skipping")
                continue
            rows.append((
                r.category_code, r.category_type, r.confidence, r.source, r.reasoning,
                int(r.affects_pnl), r.balance_impact, now,
                session_id, row_by_index[r.transaction_index],
            ))

        self._write("""
            UPDATE transactions SET
                category_code = ?, category_type = ?, confidence = ?, source = ?,
                reasoning = ?, affects_pnl = ?, balance_impact = ?, updated_at = ?
            WHERE session_id = ? AND row_number = ?
        """, rows)
        logger.info(f"Stored {len(rows)} categorizations for session {session_id}")
        return len(rows)

    def get_transactions(self, session_id: str) -> List[Dict[str, Any]]:
        """Get stored rows of a session ordered by statement row."""
        conn = self.get_connection()
        try:
            cursor = conn.execute(
                "SELECT * FROM transactions WHERE session_id = ? ORDER BY row_number",
                (session_id,),
            )
            return [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logger.error(f"Failed to read transactions for {session_id}: {e}")
            raise PersistenceError("Failed to read transactions", details={"error": str(e)})
        finally:
            conn.close()

    def count_transactions(self, session_id: str) -> int:
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM transactions WHERE session_id = ?", (session_id,)
            ).fetchone()
            return row["n"]
        except sqlite3.Error as e:
            logger.error(f"Failed to count transactions for {session_id}: {e}")
            raise PersistenceError("Failed to count transactions", details={"error": str(e)})
        finally:
            conn.close()

    def _write(self, sql: str, rows: List[tuple]) -> None:
        if not rows:
            return
        conn = self.get_connection()
        try:
            conn.executemany(sql, rows)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Database write failed: {e}")
            raise PersistenceError("Database write failed", details={"error": str(e)})
        finally:
            conn.close()


# Global DB instance
_db: Optional[Database] = None


def get_db() -> Database:
    global _db
    if _db is None:
        _db = Database()
        _db.init_db()
    return _db
