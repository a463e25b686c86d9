"""Settings repository — feature flags, exchange keys and API tokens."""

import hashlib
from datetime import datetime, timezone
from typing import Optional

from pinebot.broker.models import ExchangeCredentials
from pinebot.models.execution import FeatureFlags
from pinebot.repos.db import get_connection


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SettingsRepo:
    """Data access layer for global switches and per-user secrets.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Feature flags ────────────────────────────────────────────────────

    def get_feature_flags(self) -> FeatureFlags:
        """Read all flags in one query and return a frozen snapshot."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute("SELECT name, enabled FROM feature_flags").fetchall()
        finally:
            conn.close()
        flags = {row["name"]: bool(row["enabled"]) for row in rows}
        return FeatureFlags(
            trading_enabled=flags.get("trading_enabled", True),
            paid_mode=flags.get("paid_mode", False),
        )

    def set_feature_flag(self, name: str, enabled: bool) -> None:
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO feature_flags (name, enabled) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET enabled = excluded.enabled
                """,
                (name, int(enabled)),
            )
        finally:
            conn.close()

    # ── Exchange keys ────────────────────────────────────────────────────

    def save_exchange_keys(
        self,
        user_id: str,
        api_key: str,
        api_secret: str,
        exchange: str = "binance",
    ) -> None:
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO exchange_keys (user_id, exchange, api_key, api_secret, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, exchange) DO UPDATE SET
                    api_key = excluded.api_key,
                    api_secret = excluded.api_secret
                """,
                (user_id, exchange, api_key, api_secret,
                 datetime.now(timezone.utc).isoformat()),
            )
        finally:
            conn.close()

    def get_exchange_credentials(
        self, user_id: str, exchange: str = "binance",
    ) -> Optional[ExchangeCredentials]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                """
                SELECT user_id, exchange, api_key, api_secret
                FROM exchange_keys WHERE user_id = ? AND exchange = ?
                """,
                (user_id, exchange),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return ExchangeCredentials(
            user_id=row["user_id"],
            exchange=row["exchange"],
            api_key=row["api_key"],
            api_secret=row["api_secret"],
        )

    # ── API tokens ───────────────────────────────────────────────────────

    def create_api_token(self, token: str, user_id: str, role: str = "user") -> None:
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO api_tokens (token_hash, user_id, role, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (hash_token(token), user_id, role,
                 datetime.now(timezone.utc).isoformat()),
            )
        finally:
            conn.close()

    def resolve_token(self, token: str) -> Optional[tuple[str, str]]:
        """Return ``(user_id, role)`` for *token*, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT user_id, role FROM api_tokens WHERE token_hash = ?",
                (hash_token(token),),
            ).fetchone()
        finally:
            conn.close()
        return (row["user_id"], row["role"]) if row else None
