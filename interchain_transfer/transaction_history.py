"""
Transfer History Database

SQLite checkpoint store for interchain transfers. Every phase transition and
every transaction ID is written as it happens, so a transfer interrupted
after its export can be resumed from the recorded export TxID instead of
exporting again.

Tables:
- transfers: One row per transfer request, with current phase and TxIDs
- transactions: Individual export/import/base transactions and their status
- errors: Error log
"""

import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import FINAL_REASONS


@dataclass
class TransferRecord:
    """Persisted transfer request and progress"""
    request_id: str
    source_chain: str
    destination_chain: str
    asset: str
    amount: int
    to_address: Optional[str]
    phase: str
    export_tx_id: Optional[str] = None
    import_tx_id: Optional[str] = None
    export_fee: int = 0
    import_fee: int = 0
    received_amount: int = 0
    failure_reason: Optional[str] = None
    error_message: Optional[str] = None
    memo: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        data = asdict(self)
        for key in ('created_at', 'updated_at', 'completed_at'):
            if data[key]:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TransferRecord":
        def parse(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            request_id=row['request_id'],
            source_chain=row['source_chain'],
            destination_chain=row['destination_chain'],
            asset=row['asset'],
            amount=int(row['amount']),
            to_address=row['to_address'],
            phase=row['phase'],
            export_tx_id=row['export_tx_id'],
            import_tx_id=row['import_tx_id'],
            export_fee=int(row['export_fee'] or 0),
            import_fee=int(row['import_fee'] or 0),
            received_amount=int(row['received_amount'] or 0),
            failure_reason=row['failure_reason'],
            error_message=row['error_message'],
            memo=row['memo'],
            created_at=parse(row['created_at']),
            updated_at=parse(row['updated_at']),
            completed_at=parse(row['completed_at']),
        )


@dataclass
class TransactionDetail:
    """Individual transaction detail"""
    tx_id: str
    transfer_request_id: str
    leg: str  # 'export', 'import' or 'base'
    chain: str
    status: str  # TransactionStatus value
    created_at: datetime
    confirmed_at: Optional[datetime] = None


class TransferHistoryDB:
    """
    SQLite database for transfer checkpoints and history

    Features:
    - Phase checkpoint per transfer
    - Transaction tracking
    - Error logging
    - Resumable transfer queries
    - Statistics
    """

    def __init__(self, db_path: str = "transfer_history.db"):
        """
        Initialize database

        Args:
            db_path: Path to SQLite database (":memory:" for a throwaway one)
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self._initialize_db()
        logger.info(f"Transfer history database initialized: {self.db_path}")

    def _initialize_db(self):
        """Initialize database and create tables"""
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        """Create database tables"""
        cursor = self.conn.cursor()

        # Amounts are TEXT: they can exceed SQLite's 64-bit INTEGER range
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transfers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                request_id TEXT UNIQUE NOT NULL,
                source_chain TEXT NOT NULL,
                destination_chain TEXT NOT NULL,
                asset TEXT NOT NULL,
                amount TEXT NOT NULL,
                to_address TEXT,
                memo TEXT,
                phase TEXT NOT NULL,
                export_tx_id TEXT,
                import_tx_id TEXT,
                export_fee TEXT,
                import_fee TEXT,
                received_amount TEXT,
                failure_reason TEXT,
                error_message TEXT,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_id TEXT NOT NULL,
                transfer_request_id TEXT NOT NULL,
                leg TEXT NOT NULL,
                chain TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                confirmed_at TIMESTAMP,
                FOREIGN KEY (transfer_request_id) REFERENCES transfers(request_id),
                CONSTRAINT valid_leg CHECK (leg IN ('export', 'import', 'base'))
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS errors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                transfer_request_id TEXT,
                error_type TEXT NOT NULL,
                error_message TEXT NOT NULL,
                occurred_at TIMESTAMP NOT NULL,
                FOREIGN KEY (transfer_request_id) REFERENCES transfers(request_id)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transfers_phase ON transfers(phase)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_txid ON transactions(tx_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_request ON transactions(transfer_request_id)")

        self.conn.commit()
        logger.debug("Database tables created successfully")

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def record_transfer(self, record: TransferRecord) -> bool:
        """
        Record a new transfer

        Returns:
            False if the request_id already exists
        """
        now = self._now()
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO transfers (
                    request_id, source_chain, destination_chain, asset, amount,
                    to_address, memo, phase, export_tx_id, import_tx_id,
                    failure_reason, error_message, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.request_id,
                record.source_chain,
                record.destination_chain,
                record.asset,
                str(record.amount),
                record.to_address,
                record.memo,
                record.phase,
                record.export_tx_id,
                record.import_tx_id,
                record.failure_reason,
                record.error_message,
                record.created_at.isoformat() if record.created_at else now,
                now,
            ))

            self.conn.commit()
            logger.info(f"✓ Transfer recorded: {record.request_id}")
            return True

        except sqlite3.IntegrityError:
            logger.debug(f"Transfer {record.request_id} already recorded")
            return False

    def update_phase(
        self,
        request_id: str,
        phase: str,
        export_tx_id: Optional[str] = None,
        import_tx_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        error_message: Optional[str] = None,
        completed: bool = False,
        export_fee: Optional[int] = None,
        import_fee: Optional[int] = None,
        received_amount: Optional[int] = None,
    ):
        """
        Checkpoint a phase transition

        TxIDs, fees and the received amount are only ever filled in, never
        cleared, so a later failure cannot erase a recorded export.
        """
        def text(value):
            return str(value) if value is not None else None

        now = self._now()
        cursor = self.conn.cursor()
        cursor.execute("""
            UPDATE transfers
            SET phase = ?,
                export_tx_id = COALESCE(?, export_tx_id),
                import_tx_id = COALESCE(?, import_tx_id),
                export_fee = COALESCE(?, export_fee),
                import_fee = COALESCE(?, import_fee),
                received_amount = COALESCE(?, received_amount),
                failure_reason = ?,
                error_message = ?,
                updated_at = ?,
                completed_at = COALESCE(?, completed_at)
            WHERE request_id = ?
        """, (phase, export_tx_id, import_tx_id, text(export_fee), text(import_fee),
              text(received_amount), failure_reason, error_message,
              now, now if completed else None, request_id))
        self.conn.commit()
        logger.debug(f"Checkpoint {request_id}: {phase}")

    def record_transaction(self, detail: TransactionDetail):
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO transactions (
                tx_id, transfer_request_id, leg, chain, status, created_at, confirmed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            detail.tx_id,
            detail.transfer_request_id,
            detail.leg,
            detail.chain,
            detail.status,
            detail.created_at.isoformat(),
            detail.confirmed_at.isoformat() if detail.confirmed_at else None,
        ))
        self.conn.commit()
        logger.debug(f"Transaction recorded: {detail.tx_id}")

    def update_transaction_status(self, tx_id: str, status: str,
                                  confirmed_at: Optional[datetime] = None):
        cursor = self.conn.cursor()
        cursor.execute("""
            UPDATE transactions
            SET status = ?, confirmed_at = ?
            WHERE tx_id = ?
        """, (status, confirmed_at.isoformat() if confirmed_at else None, tx_id))
        self.conn.commit()

    def record_error(self, request_id: Optional[str], error_type: str, error_message: str):
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO errors (
                transfer_request_id, error_type, error_message, occurred_at
            ) VALUES (?, ?, ?, ?)
        """, (request_id, error_type, error_message, self._now()))
        self.conn.commit()

    def get_transfer(self, request_id: str) -> Optional[TransferRecord]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM transfers WHERE request_id = ?", (request_id,))
        row = cursor.fetchone()
        return TransferRecord.from_row(row) if row else None

    def get_transactions(self, request_id: str) -> List[Dict]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM transactions WHERE transfer_request_id = ? ORDER BY id",
            (request_id,),
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_resumable_transfers(self) -> List[TransferRecord]:
        """Transfers with a recorded export that never completed their import"""
        placeholders = ", ".join("?" for _ in FINAL_REASONS)
        cursor = self.conn.cursor()
        cursor.execute(f"""
            SELECT * FROM transfers
            WHERE export_tx_id IS NOT NULL
              AND phase != 'done'
              AND COALESCE(failure_reason, '') NOT IN ({placeholders})
            ORDER BY created_at
        """, FINAL_REASONS)
        return [TransferRecord.from_row(row) for row in cursor.fetchall()]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get transfer statistics

        Returns:
            Statistics dictionary
        """
        cursor = self.conn.cursor()

        cursor.execute("SELECT COUNT(*) FROM transfers")
        total_transfers = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM transfers WHERE phase = 'done'")
        successful_transfers = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM transfers WHERE phase IN ('export_failed', 'import_failed')")
        failed_transfers = cursor.fetchone()[0]

        cursor.execute("SELECT amount FROM transfers WHERE phase = 'done'")
        total_volume = sum(int(row[0]) for row in cursor.fetchall())

        success_rate = (successful_transfers / total_transfers * 100) if total_transfers > 0 else 0

        return {
            'total_transfers': total_transfers,
            'successful_transfers': successful_transfers,
            'failed_transfers': failed_transfers,
            'resumable_transfers': len(self.get_resumable_transfers()),
            'success_rate': success_rate,
            'total_volume': total_volume,
        }

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed")
