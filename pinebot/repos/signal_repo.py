"""Signal repository — webhook-ingested signals, processed at most once."""

import sqlite3
from datetime import datetime, timezone
from typing import Optional

from pinebot.repos.db import get_connection


class SignalRepo:
    """Data access layer for raw ingress signals.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def insert(
        self,
        script_id: str,
        signal_type: str,
        symbol: str,
        timeframe: str,
        price: float,
        stop_loss: float,
        take_profit: float,
        candle_open_time: int,
    ) -> Optional[int]:
        """Store a signal.  Returns ``None`` if this candle was already seen."""
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO signals
                    (script_id, signal_type, symbol, timeframe, price,
                     stop_loss, take_profit, candle_open_time, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (script_id, signal_type, symbol, timeframe, price,
                 stop_loss, take_profit, candle_open_time, now),
            )
            return cur.lastrowid
        except sqlite3.IntegrityError:
            return None
        finally:
            conn.close()

    def get(self, signal_id: int) -> Optional[dict]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM signals WHERE id = ?", (signal_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def mark_processed(self, signal_id: int) -> bool:
        """Flip ``processed``.  Returns False if it was already set."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                UPDATE signals SET processed = 1, processed_at = ?
                WHERE id = ? AND processed = 0
                """,
                (datetime.now(timezone.utc).isoformat(), signal_id),
            )
            return cur.rowcount == 1
        finally:
            conn.close()

    def is_processed(self, script_id: str, timeframe: str, candle_open_time: int) -> bool:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                """
                SELECT processed FROM signals
                WHERE script_id = ? AND timeframe = ? AND candle_open_time = ?
                """,
                (script_id, timeframe, candle_open_time),
            ).fetchone()
            return bool(row and row["processed"])
        finally:
            conn.close()

    def list_unprocessed(self, limit: int = 100) -> list[dict]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM signals WHERE processed = 0 ORDER BY id LIMIT ?",
                (limit,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()
