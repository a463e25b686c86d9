"""Trade repository — SQLite CRUD for the trades table."""

import sqlite3
from datetime import datetime, timezone
from typing import Optional

from pinebot.errors import DuplicateTrade, InsufficientBudget
from pinebot.repos.db import get_connection


class TradeRepo:
    """Data access layer for trade records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def reserve_trade(
        self,
        user_id: str,
        script_id: str,
        symbol: str,
        timeframe: str,
        signal_type: str,
        candle_open_time: int,
        entry_price: float,
        stop_loss: float,
        take_profit: float,
        reason: str = "",
        quantity: Optional[str] = None,
    ) -> int:
        """Insert a PENDING trade and debit one coin in one transaction.

        The unique index on ``(user_id, script_id, timeframe,
        candle_open_time)`` rejects a second reservation for the same
        candle.  The debit is a single conditional decrement; if the user
        has no coins the whole transaction rolls back.

        Returns:
            The new trade ``id``.

        Raises:
            DuplicateTrade: a trade for this candle already exists.
            InsufficientBudget: the user has no coins left.
        """
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cur = conn.execute(
                    """
                    INSERT INTO trades
                        (user_id, script_id, symbol, timeframe, signal_type,
                         candle_open_time, entry_price, stop_loss, take_profit,
                         quantity, status, reason, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'PENDING', ?, ?)
                    """,
                    (
                        user_id, script_id, symbol, timeframe, signal_type,
                        candle_open_time, entry_price, stop_loss, take_profit,
                        quantity, reason, now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE constraint failed" not in str(exc):
                    raise
                raise DuplicateTrade(
                    f"Trade exists for {user_id}/{script_id}/{timeframe}@{candle_open_time}"
                ) from exc
            trade_id = cur.lastrowid

            # fetchall() finishes the statement so COMMIT is not blocked by it
            rows = conn.execute(
                """
                UPDATE profiles SET coins = coins - 1
                WHERE user_id = ? AND coins > 0
                RETURNING coins
                """,
                (user_id,),
            ).fetchall()
            if not rows:
                raise InsufficientBudget(user_id)
            row = rows[0]

            conn.execute(
                """
                INSERT INTO coin_ledger
                    (user_id, coins_before, coins_after, action, reason,
                     performed_by, trade_id, created_at)
                VALUES (?, ?, ?, 'trade_debit', ?, 'engine', ?, ?)
                """,
                (
                    user_id, row["coins"] + 1, row["coins"],
                    f"{signal_type} {symbol} {timeframe}", trade_id, now,
                ),
            )
            conn.execute("COMMIT")
            return trade_id
        finally:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            conn.close()

    def mark_open(
        self,
        trade_id: int,
        order_id: str,
        fill_price: Optional[float] = None,
        quantity: Optional[str] = None,
    ) -> None:
        """PENDING → OPEN on order acknowledgement."""
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                UPDATE trades
                SET status = 'OPEN', order_id = ?, opened_at = ?,
                    entry_price = COALESCE(?, entry_price),
                    quantity = COALESCE(?, quantity)
                WHERE id = ? AND status = 'PENDING'
                """,
                (order_id, now, fill_price or None, quantity, trade_id),
            )
        finally:
            conn.close()

    def mark_failed(self, trade_id: int, error_message: str) -> None:
        """PENDING → FAILED, keeping the provider message verbatim."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                UPDATE trades SET status = 'FAILED', error_message = ?
                WHERE id = ? AND status = 'PENDING'
                """,
                (error_message, trade_id),
            )
        finally:
            conn.close()

    def mark_cancelled(self, trade_id: int, error_message: str) -> None:
        """PENDING → CANCELLED.  Used when the exchange asked us to back off."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                UPDATE trades SET status = 'CANCELLED', error_message = ?
                WHERE id = ? AND status = 'PENDING'
                """,
                (error_message, trade_id),
            )
        finally:
            conn.close()

    def close_trade(
        self,
        trade_id: int,
        exit_price: float,
        user_id: Optional[str] = None,
    ) -> bool:
        """OPEN → CLOSED.  Returns False when no open trade matched."""
        closed_at = datetime.now(timezone.utc).isoformat()
        conditions = ["id = ?", "status = 'OPEN'"]
        params: list = [trade_id]
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                f"""
                UPDATE trades
                SET exit_price = ?, status = 'CLOSED', closed_at = ?
                WHERE {" AND ".join(conditions)}
                """,
                (exit_price, closed_at, *params),
            )
            return cur.rowcount == 1
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_trade(self, trade_id: int) -> Optional[dict]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM trades WHERE id = ?", (trade_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def exists_for_candle(
        self,
        user_id: str,
        script_id: str,
        timeframe: str,
        candle_open_time: int,
    ) -> bool:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                """
                SELECT 1 FROM trades
                WHERE user_id = ? AND script_id = ? AND timeframe = ?
                  AND candle_open_time = ?
                """,
                (user_id, script_id, timeframe, candle_open_time),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def get_trades(
        self,
        limit: int = 20,
        status_filter: Optional[str] = None,
        user_id: Optional[str] = None,
        script_id: Optional[str] = None,
    ) -> dict:
        """Return recent trades, newest first.

        Returns:
            ``{"trades": [...], "total": int}``
        """
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []

            if status_filter:
                conditions.append("status = ?")
                params.append(status_filter)
            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if script_id:
                conditions.append("script_id = ?")
                params.append(script_id)

            where_clause = ""
            if conditions:
                where_clause = "WHERE " + " AND ".join(conditions)

            rows = conn.execute(
                f"SELECT * FROM trades {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM trades {where_clause}",
                params,
            ).fetchone()[0]

            trades = [dict(row) for row in rows]
            return {"trades": trades, "total": total}
        finally:
            conn.close()

    def recent_for_user(self, user_id: str, limit: int = 3) -> list[dict]:
        return self.get_trades(limit=limit, user_id=user_id)["trades"]

    def count(self) -> int:
        conn = get_connection(self._db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM trades").fetchone()[0]
        finally:
            conn.close()
