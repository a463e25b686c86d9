"""Per-activation module settings.

Activations carry a free-form JSON blob written by the dashboard.  Only the
execution fields the engine consumes are typed and validated here; every
other key is kept untouched in ``extras`` so writers that own them can
round-trip the blob.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger("pinebot")

_MAX_CANDLE_LIMIT = 1000


@dataclass(frozen=True)
class ExecutionSettings:
    """Typed execution overrides for one activation.

    ``None`` means "use the application default".
    """

    order_quote_amount: Optional[float] = None
    candle_limit: Optional[int] = None
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, blob: Optional[str]) -> "ExecutionSettings":
        """Parse and validate *blob*; invalid fields fall back to defaults."""
        if not blob:
            return cls()
        try:
            data = json.loads(blob)
        except ValueError:
            logger.warning("Ignoring malformed activation settings: %r", blob[:80])
            return cls()
        if not isinstance(data, dict):
            return cls()
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: dict) -> "ExecutionSettings":
        extras = dict(data)
        quote = _positive_float(extras.pop("order_quote_amount", None), "order_quote_amount")
        limit = _positive_int(extras.pop("candle_limit", None), "candle_limit")
        if limit is not None:
            limit = min(limit, _MAX_CANDLE_LIMIT)
        return cls(order_quote_amount=quote, candle_limit=limit, extras=extras)

    def quote_amount_or(self, default: float) -> float:
        return self.order_quote_amount if self.order_quote_amount is not None else default

    def candle_limit_or(self, default: int) -> int:
        return self.candle_limit if self.candle_limit is not None else default

    def to_dict(self) -> dict:
        data = dict(self.extras)
        if self.order_quote_amount is not None:
            data["order_quote_amount"] = self.order_quote_amount
        if self.candle_limit is not None:
            data["candle_limit"] = self.candle_limit
        return data


def _positive_float(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric %s: %r", name, value)
        return None
    if number <= 0:
        logger.warning("Ignoring non-positive %s: %r", name, value)
        return None
    return number


def _positive_int(value: Any, name: str) -> Optional[int]:
    if isinstance(value, bool):
        return None
    number = _positive_float(value, name)
    if number is None:
        return None
    return int(number)
