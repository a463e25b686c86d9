"""Coin repository — profiles and the append-only coin ledger.

Balances are only ever changed by single ``UPDATE ... RETURNING``
statements.  Nothing reads a balance and writes it back.
"""

from datetime import datetime, timezone
from typing import Optional

from pinebot.repos.db import get_connection


class CoinRepo:
    """Data access layer for user coin balances.

    Args:
        db_path: Path to the SQLite database file.
        default_coins: Starting balance for profiles created without one.
    """

    def __init__(self, db_path: str, default_coins: int = 0) -> None:
        self._db_path = db_path
        self._default_coins = default_coins

    def ensure_profile(
        self,
        user_id: str,
        coins: Optional[int] = None,
        subscription_active: bool = False,
    ) -> None:
        """Create the profile if missing.  Existing balances are untouched."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT OR IGNORE INTO profiles
                    (user_id, coins, subscription_active, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, self._default_coins if coins is None else coins,
                 int(subscription_active),
                 datetime.now(timezone.utc).isoformat()),
            )
        finally:
            conn.close()

    def set_subscription(self, user_id: str, active: bool) -> None:
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                "UPDATE profiles SET subscription_active = ? WHERE user_id = ?",
                (int(active), user_id),
            )
        finally:
            conn.close()

    def get_profile(self, user_id: str) -> Optional[dict]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM profiles WHERE user_id = ?", (user_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def get_balance(self, user_id: str) -> int:
        profile = self.get_profile(user_id)
        return profile["coins"] if profile else 0

    def adjust(
        self,
        user_id: str,
        delta: int,
        reason: str,
        performed_by: str,
        action: str = "admin_adjust",
    ) -> dict:
        """Add *delta* coins (negative to remove), flooring at zero.

        Returns:
            ``{"coins_before": int, "coins_after": int}``

        Raises:
            KeyError: when the user has no profile.
        """
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            # The write lock is held from here, so the read below cannot go stale.
            conn.execute("BEGIN IMMEDIATE")
            current = conn.execute(
                "SELECT coins FROM profiles WHERE user_id = ?", (user_id,)
            ).fetchone()
            if current is None:
                raise KeyError(user_id)
            before = current["coins"]
            after = conn.execute(
                """
                UPDATE profiles SET coins = MAX(coins + ?, 0)
                WHERE user_id = ?
                RETURNING coins
                """,
                (delta, user_id),
            ).fetchall()[0]["coins"]
            conn.execute(
                """
                INSERT INTO coin_ledger
                    (user_id, coins_before, coins_after, action, reason,
                     performed_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, before, after, action, reason, performed_by, now),
            )
            conn.execute("COMMIT")
            return {"coins_before": before, "coins_after": after}
        finally:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            conn.close()

    def get_ledger(self, user_id: str, limit: int = 50) -> list[dict]:
        """Return ledger entries for *user_id*, newest first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                """
                SELECT * FROM coin_ledger WHERE user_id = ?
                ORDER BY id DESC LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()
