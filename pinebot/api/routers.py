"""Internal API routers — /execute, /signals, /bots, /trades, /coins endpoints.

No business logic, no SQL. Delegates to repos, the coordinator and the
scheduler, which are injected at startup via ``configure_routers()``.
"""

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from pinebot.coordinator import api_key_warning
from pinebot.errors import MarketDataUnavailable, RateLimited, StrategySyntaxError
from pinebot.models.execution import Activation
from pinebot.strategy.models import SignalType
from pinebot.strategy.parser import parse

logger = logging.getLogger("pinebot")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_script_repo = None   # Set via configure_routers()
_trade_repo = None    # Set via configure_routers()
_coin_repo = None     # Set via configure_routers()
_settings_repo = None  # Set via configure_routers()
_signal_repo = None   # Set via configure_routers()
_coordinator = None   # Set via configure_routers()
_scheduler = None     # Set via configure_routers()


def configure_routers(
    script_repo=None,
    trade_repo=None,
    coin_repo=None,
    settings_repo=None,
    signal_repo=None,
    coordinator=None,
    scheduler=None,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        script_repo: A ``ScriptRepo`` instance (or duck-type for tests).
        trade_repo: A ``TradeRepo`` instance.
        coin_repo: A ``CoinRepo`` instance.
        settings_repo: A ``SettingsRepo``; also resolves bearer tokens.
        signal_repo: A ``SignalRepo`` for webhook ingestion.
        coordinator: An ``ExecutionCoordinator``.
        scheduler: A ``SweepScheduler``.
    """
    global _script_repo, _trade_repo, _coin_repo, _settings_repo  # noqa: PLW0603
    global _signal_repo, _coordinator, _scheduler  # noqa: PLW0603
    _script_repo = script_repo
    _trade_repo = trade_repo
    _coin_repo = coin_repo
    _settings_repo = settings_repo
    _signal_repo = signal_repo
    _coordinator = coordinator
    _scheduler = scheduler


# ── Auth ─────────────────────────────────────────────────────────────────


async def current_user(
    authorization: Optional[str] = Header(default=None),
) -> tuple[str, str]:
    """Resolve ``Authorization: Bearer <token>`` to ``(user_id, role)``."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization[len("Bearer "):].strip()
    resolved = _settings_repo.resolve_token(token) if _settings_repo else None
    if resolved is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return resolved


async def admin_user(user: tuple[str, str] = Depends(current_user)) -> tuple[str, str]:
    if user[1] != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


# ── Script execution ─────────────────────────────────────────────────────


@router.post("/execute")
async def execute(
    action: str = Query(...),
    body: Optional[dict] = None,
    symbol: Optional[str] = Query(default=None),
    timeframe: Optional[str] = Query(default=None),
    user: tuple[str, str] = Depends(current_user),
):
    """Dispatch ``parse``, ``evaluate``, ``evaluate-script``, ``evaluate-all``
    or ``indicators``.
    """
    body = body or {}
    if action == "parse":
        return _action_parse(body)
    if action == "evaluate":
        return await _action_evaluate(body)
    if action == "indicators":
        return await _action_indicators(symbol or body.get("symbol"),
                                        timeframe or body.get("timeframe") or "1h")
    if action == "evaluate-script":
        return await _action_evaluate_script(body, user)
    if action == "evaluate-all":
        if user[1] != "admin":
            raise HTTPException(status_code=403, detail="Admin only")
        return await _action_evaluate_all()
    return _error(400, f"Unknown action: {action}")


def _action_parse(body: dict):
    try:
        strategy = parse(body.get("scriptContent") or "")
    except StrategySyntaxError as exc:
        return _error(400, exc.message, field=exc.field)
    return {"strategy": strategy.to_dict()}


async def _action_evaluate(body: dict):
    """Dry run of unsaved script text; nothing is written."""
    script_content = body.get("scriptContent")
    symbol = body.get("symbol")
    if not script_content or not symbol:
        return _error(400, "Missing scriptContent or symbol",
                      field="scriptContent" if not script_content else "symbol")
    try:
        result = await _coordinator.evaluate_content(
            script_content, symbol, body.get("timeframe") or "1h",
        )
    except StrategySyntaxError as exc:
        return _error(400, exc.message, field=exc.field)
    except RateLimited as exc:
        return _error(429, str(exc))
    except MarketDataUnavailable as exc:
        return _error(502, str(exc))
    result["dryRun"] = True
    return result


async def _action_indicators(symbol: Optional[str], timeframe: str):
    if not symbol:
        return _error(400, "symbol is required", field="symbol")
    try:
        return await _coordinator.indicator_snapshot(symbol, timeframe)
    except RateLimited as exc:
        return _error(429, str(exc))
    except MarketDataUnavailable as exc:
        return _error(502, str(exc))


async def _action_evaluate_script(body: dict, user: tuple[str, str]):
    user_id, role = user
    script_id = body.get("scriptId")
    timeframe = body.get("timeframe") or "1h"
    dry_run = body.get("dryRun", True) is not False
    if not script_id:
        return _error(400, "scriptId is required", field="scriptId")

    script = _script_repo.get_script(script_id)
    if script is None:
        return _error(404, f"Script {script_id} not found")
    if role != "admin" and not _script_repo.can_access(user_id, script_id):
        return _error(403, "Script not owned or activated by caller")

    try:
        result = await _coordinator.evaluate_script(script_id, timeframe, user_id=user_id)
    except StrategySyntaxError as exc:
        return _error(400, exc.message, field=exc.field)
    except RateLimited as exc:
        return _error(429, str(exc))
    except MarketDataUnavailable as exc:
        return _error(502, str(exc))

    data = result.to_dict()
    data["dryRun"] = dry_run
    if not dry_run:
        activation = _script_repo.get_activation(user_id, script_id, timeframe) or Activation(
            user_id=user_id,
            script_id=script_id,
            timeframe=timeframe,
            symbol=script["symbol"],
            script_content=script["script_content"],
        )
        execution = await _coordinator.run_tuple(activation)
        data["execution"] = execution.to_dict()
    return data


async def _action_evaluate_all():
    report = await _scheduler.run_sweep()
    counts = report.counts()
    return {
        "message": f"Evaluated {counts['total']} activation(s)",
        "results": [r.to_dict() for r in report.results],
        "counts": counts,
    }


# ── Webhook signals ──────────────────────────────────────────────────────


@router.post("/signals/webhook")
async def ingest_signal(body: dict, user: tuple[str, str] = Depends(admin_user)):
    """Store an externally generated signal and dispatch it once."""
    required = ("scriptId", "signalType", "symbol", "timeframe", "price", "candleOpenTime")
    missing = [k for k in required if body.get(k) in (None, "")]
    if missing:
        return _error(400, f"Missing field(s): {', '.join(missing)}", field=missing[0])
    try:
        signal_type = SignalType(str(body["signalType"]).upper())
        price = float(body["price"])
        stop_loss = float(body.get("stopLoss") or 0.0)
        take_profit = float(body.get("takeProfit") or 0.0)
        candle_open_time = int(body["candleOpenTime"])
    except (TypeError, ValueError) as exc:
        return _error(400, f"Invalid signal: {exc}")
    if not all(math.isfinite(v) for v in (price, stop_loss, take_profit)):
        return _error(400, "price, stopLoss and takeProfit must be finite numbers",
                      field="price")
    if signal_type is SignalType.NONE:
        return _error(400, "signalType must be BUY or SELL", field="signalType")

    signal_id = _signal_repo.insert(
        script_id=body["scriptId"],
        signal_type=signal_type.value,
        symbol=str(body["symbol"]).upper(),
        timeframe=body["timeframe"],
        price=price,
        stop_loss=stop_loss,
        take_profit=take_profit,
        candle_open_time=candle_open_time,
    )
    if signal_id is None:
        return {"status": "duplicate", "results": []}

    results = await _scheduler.dispatch_signal(signal_id)
    return {
        "status": "dispatched",
        "signalId": signal_id,
        "results": [r.to_dict() for r in results],
    }


# ── Bot gates ────────────────────────────────────────────────────────────


def _set_gate(script_id: str, user: tuple[str, str], enabled: bool):
    user_id, _ = user
    if not _script_repo.can_access(user_id, script_id):
        return _error(403, "Script not owned or activated by caller")
    if enabled and _coin_repo is not None:
        _coin_repo.ensure_profile(user_id)
    gate = _script_repo.set_bot_enabled(user_id, script_id, enabled)
    logger.info("Bot %s for %s/%s.", "enabled" if enabled else "disabled",
                user_id, script_id)
    return {
        "scriptId": script_id,
        "enabled": gate.enabled,
        "botStartedAt": gate.bot_started_at,
    }


@router.post("/bots/{script_id}/enable")
async def enable_bot(script_id: str, user: tuple[str, str] = Depends(current_user)):
    """Enable trading for a script; signals before now are ignored."""
    return _set_gate(script_id, user, True)


@router.post("/bots/{script_id}/disable")
async def disable_bot(script_id: str, user: tuple[str, str] = Depends(current_user)):
    return _set_gate(script_id, user, False)


# ── Trades ───────────────────────────────────────────────────────────────


@router.get("/trades")
async def get_trades(
    limit: int = Query(default=20, ge=1, le=100),
    status: Optional[str] = Query(default=None),
    script: Optional[str] = Query(default=None),
    user: tuple[str, str] = Depends(current_user),
):
    """Return the caller's recent trades."""
    return _trade_repo.get_trades(
        limit=limit, status_filter=status, user_id=user[0], script_id=script,
    )


@router.post("/trades/{trade_id}/close")
async def close_trade(
    trade_id: int,
    body: dict,
    user: tuple[str, str] = Depends(current_user),
):
    """Manually close an open trade at ``exitPrice``."""
    try:
        exit_price = float(body["exitPrice"])
    except (KeyError, TypeError, ValueError):
        return _error(400, "exitPrice is required", field="exitPrice")
    if not _trade_repo.close_trade(trade_id, exit_price, user_id=user[0]):
        return _error(404, f"No open trade {trade_id}")
    return _trade_repo.get_trade(trade_id)


@router.get("/api-key-status")
async def api_key_status(user: tuple[str, str] = Depends(current_user)):
    warning = api_key_warning(_trade_repo.recent_for_user(user[0], limit=3))
    return {"needsReconnect": warning is not None, "warning": warning}


# ── Coins ────────────────────────────────────────────────────────────────


@router.get("/coins")
async def get_coins(user: tuple[str, str] = Depends(current_user)):
    return {
        "coins": _coin_repo.get_balance(user[0]),
        "ledger": _coin_repo.get_ledger(user[0], limit=20),
    }


@router.post("/admin/coins/{user_id}")
async def adjust_coins(
    user_id: str,
    body: dict,
    admin: tuple[str, str] = Depends(admin_user),
):
    """Add or remove coins for a user.  Balances never go below zero."""
    try:
        delta = int(body["delta"])
    except (KeyError, TypeError, ValueError):
        return _error(400, "delta must be an integer", field="delta")
    try:
        result = _coin_repo.adjust(
            user_id, delta,
            reason=body.get("reason") or "manual adjustment",
            performed_by=admin[0],
        )
    except KeyError:
        return _error(404, f"Unknown user {user_id}")
    logger.info("Coins for %s: %d → %d by %s.", user_id,
                result["coins_before"], result["coins_after"], admin[0])
    return {"userId": user_id, "coinsBefore": result["coins_before"],
            "coinsAfter": result["coins_after"]}


# ── Status ───────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Return scheduler state and the last sweep's counts."""
    if _scheduler is None:
        return {"running": False, "sweepCount": 0, "lastSweep": None}
    report = _scheduler.last_report
    return {
        "running": _scheduler.running,
        "sweepCount": _scheduler.sweep_count,
        "lastSweep": {
            "startedAt": report.started_at,
            "finishedAt": report.finished_at,
            "counts": report.counts(),
        } if report else None,
    }
