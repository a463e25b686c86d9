"""Script repository — scripts, activations and bot gates."""

import json
from datetime import datetime, timezone
from typing import Optional

from pinebot.models.execution import Activation, BotGate
from pinebot.models.module_settings import ExecutionSettings
from pinebot.repos.db import get_connection


class ScriptRepo:
    """Data access layer for scripts and the per-user state around them.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Scripts ──────────────────────────────────────────────────────────

    def upsert_script(
        self,
        script_id: str,
        owner_id: str,
        name: str,
        script_content: str,
        symbol: str,
        allowed_timeframes: Optional[list[str]] = None,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        timeframes = json.dumps(allowed_timeframes or ["1h"])
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO scripts
                    (id, owner_id, name, script_content, symbol,
                     allowed_timeframes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    script_content = excluded.script_content,
                    symbol = excluded.symbol,
                    allowed_timeframes = excluded.allowed_timeframes,
                    updated_at = excluded.updated_at
                """,
                (script_id, owner_id, name, script_content, symbol.upper(),
                 timeframes, now, now),
            )
        finally:
            conn.close()

    def get_script(self, script_id: str) -> Optional[dict]:
        """Return the script row as a dict, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM scripts WHERE id = ?", (script_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        script = dict(row)
        script["allowed_timeframes"] = json.loads(script["allowed_timeframes"])
        return script

    # ── Activations ──────────────────────────────────────────────────────

    def activate(
        self,
        user_id: str,
        script_id: str,
        timeframe: str,
        settings: Optional[dict] = None,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO activations
                    (user_id, script_id, timeframe, is_active, settings_json, created_at)
                VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT(user_id, script_id, timeframe) DO UPDATE SET
                    is_active = 1,
                    settings_json = excluded.settings_json
                """,
                (user_id, script_id, timeframe, json.dumps(settings or {}), now),
            )
        finally:
            conn.close()

    def deactivate(self, user_id: str, script_id: str, timeframe: str) -> None:
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                UPDATE activations SET is_active = 0
                WHERE user_id = ? AND script_id = ? AND timeframe = ?
                """,
                (user_id, script_id, timeframe),
            )
        finally:
            conn.close()

    def list_active_activations(
        self,
        script_id: Optional[str] = None,
        timeframe: Optional[str] = None,
    ) -> list[Activation]:
        """Return every active tuple joined with its script, oldest first."""
        conditions = ["a.is_active = 1"]
        params: list = []
        if script_id:
            conditions.append("a.script_id = ?")
            params.append(script_id)
        if timeframe:
            conditions.append("a.timeframe = ?")
            params.append(timeframe)

        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                f"""
                SELECT a.user_id, a.script_id, a.timeframe, a.settings_json,
                       s.symbol, s.script_content
                FROM activations a
                JOIN scripts s ON s.id = a.script_id
                WHERE {" AND ".join(conditions)}
                ORDER BY a.id
                """,
                params,
            ).fetchall()
        finally:
            conn.close()

        return [
            Activation(
                user_id=row["user_id"],
                script_id=row["script_id"],
                timeframe=row["timeframe"],
                symbol=row["symbol"],
                script_content=row["script_content"],
                settings=ExecutionSettings.from_json(row["settings_json"]),
            )
            for row in rows
        ]

    def get_activation(
        self, user_id: str, script_id: str, timeframe: str,
    ) -> Optional[Activation]:
        for activation in self.list_active_activations(script_id, timeframe):
            if activation.user_id == user_id:
                return activation
        return None

    def can_access(self, user_id: str, script_id: str) -> bool:
        """True when *user_id* owns the script or has activated it."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                """
                SELECT 1 FROM scripts WHERE id = ? AND owner_id = ?
                UNION
                SELECT 1 FROM activations WHERE script_id = ? AND user_id = ?
                """,
                (script_id, user_id, script_id, user_id),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    # ── Bot gates ────────────────────────────────────────────────────────

    def get_gate(self, user_id: str, script_id: str) -> Optional[BotGate]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                """
                SELECT user_id, script_id, enabled, bot_started_at
                FROM bot_gates WHERE user_id = ? AND script_id = ?
                """,
                (user_id, script_id),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return BotGate(
            user_id=row["user_id"],
            script_id=row["script_id"],
            enabled=bool(row["enabled"]),
            bot_started_at=row["bot_started_at"],
        )

    def set_bot_enabled(
        self,
        user_id: str,
        script_id: str,
        enabled: bool,
        now: Optional[datetime] = None,
    ) -> BotGate:
        """Flip the gate.  Enabling stamps ``bot_started_at`` with *now*.

        Disabling keeps the previous stamp; the next enable replaces it.
        """
        stamp = (now or datetime.now(timezone.utc)).isoformat()
        conn = get_connection(self._db_path)
        try:
            if enabled:
                conn.execute(
                    """
                    INSERT INTO bot_gates (user_id, script_id, enabled, bot_started_at, updated_at)
                    VALUES (?, ?, 1, ?, ?)
                    ON CONFLICT(user_id, script_id) DO UPDATE SET
                        enabled = 1,
                        bot_started_at = excluded.bot_started_at,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, script_id, stamp, stamp),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO bot_gates (user_id, script_id, enabled, updated_at)
                    VALUES (?, ?, 0, ?)
                    ON CONFLICT(user_id, script_id) DO UPDATE SET
                        enabled = 0,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, script_id, stamp),
                )
        finally:
            conn.close()
        return self.get_gate(user_id, script_id)
