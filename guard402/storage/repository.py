"""
SQLite-backed usage ledger.

Persists usage records in an append-only table. Rows are inserted and read,
never updated; the only delete is the bulk ``reset``.
"""

import math
import sqlite3
from datetime import datetime
from typing import List, Optional

from ..core.errors import StorageError
from .db import DEFAULT_DB_PATH, get_connection
from .ledger import UsageLedger, new_record_id
from .models import PaymentMeta, UsageEvent, UsageRecord

_COLUMNS = (
    "id, timestamp, service_id, agent_id, subscription_id, usd_amount, "
    "facilitator_id, network, asset, transaction_ref, payer"
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_record table if it doesn't exist.

    This creates an append-only ledger for immutable usage records.
    No UPDATE statements should ever be issued against this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                timestamp TEXT NOT NULL,
                service_id TEXT NOT NULL,
                agent_id TEXT,
                subscription_id TEXT,
                usd_amount REAL NOT NULL,
                facilitator_id TEXT,
                network TEXT,
                asset TEXT,
                transaction_ref TEXT,
                payer TEXT
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_usage_record_timestamp ON usage_record (timestamp)"
        )
        conn.commit()
    finally:
        conn.close()


def _format_ts(ts: datetime) -> str:
    # Fixed precision keeps lexical order equal to chronological order.
    return ts.isoformat(timespec="microseconds")


def _row_to_record(row) -> UsageRecord:
    payment = None
    if any(value is not None for value in row[6:11]):
        payment = PaymentMeta(
            facilitator_id=row[6],
            network=row[7],
            asset=row[8],
            transaction=row[9],
            payer=row[10],
        )
    return UsageRecord(
        id=row[0],
        timestamp=datetime.fromisoformat(row[1]),
        service_id=row[2],
        agent_id=row[3],
        subscription_id=row[4],
        usd_amount=row[5],
        payment=payment,
    )


class SqliteUsageLedger(UsageLedger):
    """Usage ledger persisted to a SQLite file.

    The schema is created on construction. Each operation opens its own
    connection, so the ledger can be shared between threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        try:
            initialize_schema(db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Could not initialise ledger at {db_path}: {e}") from e

    def record_usage(self, event: UsageEvent) -> UsageRecord:
        record = UsageRecord.from_event(event, new_record_id())
        payment = record.payment or PaymentMeta()
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute(f"""
                    INSERT INTO usage_record ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.id,
                    _format_ts(record.timestamp),
                    record.service_id,
                    record.agent_id,
                    record.subscription_id,
                    record.usd_amount,
                    payment.facilitator_id,
                    payment.network,
                    payment.asset,
                    payment.transaction,
                    payment.payer,
                ))
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to record usage for {record.service_id}: {e}") from e
        return record

    def get_records(self) -> List[UsageRecord]:
        rows = self._query(f"SELECT {_COLUMNS} FROM usage_record ORDER BY seq", [])
        return [_row_to_record(row) for row in rows]

    def get_spend_usd(
        self,
        start: datetime,
        end: datetime,
        service_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> float:
        query = "SELECT usd_amount FROM usage_record WHERE timestamp >= ? AND timestamp <= ?"
        params = [_format_ts(start), _format_ts(end)]

        if service_id is not None:
            query += " AND service_id = ?"
            params.append(service_id)
        if agent_id is not None:
            query += " AND agent_id = ?"
            params.append(agent_id)
        if subscription_id is not None:
            query += " AND subscription_id = ?"
            params.append(subscription_id)

        query += " ORDER BY seq"
        return math.fsum(row[0] for row in self._query(query, params))

    def reset(self) -> None:
        try:
            conn = get_connection(self.db_path)
            try:
                with conn:
                    conn.execute("DELETE FROM usage_record")
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to reset ledger: {e}") from e

    def _query(self, query: str, params: list) -> list:
        try:
            conn = get_connection(self.db_path)
            try:
                return conn.execute(query, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read ledger: {e}") from e
