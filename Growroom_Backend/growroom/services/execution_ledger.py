"""
Read side of the execution history: per-automation listings, aggregate
counts, effectiveness statistics and dispatch-failure alerts.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from growroom.core import config
from growroom.core.clock import as_utc, utcnow
from growroom.models.automation import AutomationExecution, EffectivenessCheck, ExecutionStatus

# executions scanned when looking for failing devices
ALERT_SCAN_LIMIT = 200


def _status_counts(db: Session, automation_id: int, since: Optional[datetime] = None, until: Optional[datetime] = None) -> Dict[str, int]:
    q = db.query(AutomationExecution.status, func.count(AutomationExecution.id)).filter(
        AutomationExecution.automation_id == automation_id
    )
    if since is not None:
        q = q.filter(AutomationExecution.started_at >= since)
    if until is not None:
        q = q.filter(AutomationExecution.started_at <= until)
    counts = {s.value.lower(): 0 for s in ExecutionStatus}
    for status, n in q.group_by(AutomationExecution.status).all():
        counts[str(status).lower()] = int(n)
    counts["total"] = sum(counts.values())
    return counts


def _check_counts(db: Session, automation_id: int, since: datetime) -> Tuple[int, int]:
    rows = (
        db.query(EffectivenessCheck.condition_met, func.count(EffectivenessCheck.id))
        .join(AutomationExecution, AutomationExecution.id == EffectivenessCheck.execution_id)
        .filter(AutomationExecution.automation_id == automation_id, AutomationExecution.started_at >= since)
        .group_by(EffectivenessCheck.condition_met)
        .all()
    )
    total = sum(int(n) for _, n in rows)
    met = sum(int(n) for flag, n in rows if flag)
    return total, met


def execution_history(
    db: Session,
    automation_id: int,
    status: Optional[str] = None,
    limit: int = 20,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> Dict[str, Any]:
    since = as_utc(since)
    until = as_utc(until)
    q = db.query(AutomationExecution).filter(AutomationExecution.automation_id == automation_id)
    if status:
        q = q.filter(AutomationExecution.status == status)
    if since is not None:
        q = q.filter(AutomationExecution.started_at >= since)
    if until is not None:
        q = q.filter(AutomationExecution.started_at <= until)
    rows = (
        q.order_by(AutomationExecution.started_at.desc(), AutomationExecution.id.desc())
        .limit(max(1, min(int(limit), 100)))
        .all()
    )
    return {"executions": rows, "stats": _status_counts(db, automation_id, since, until)}


def effectiveness_stats(db: Session, automation_id: int, days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_utc(now or utcnow())
    days = max(1, int(days))
    since = now - timedelta(days=days)
    counts = _status_counts(db, automation_id, since=since)
    total_checks, met_checks = _check_counts(db, automation_id, since)

    rate = round(met_checks / total_checks * 100.0, 2) if total_checks else 0
    return {
        "period": f"{days} days",
        "totalExecutions": counts["total"],
        "completedExecutions": counts["completed"],
        "failedExecutions": counts["failed"],
        "cancelledExecutions": counts["cancelled"],
        "totalEffectivenessChecks": total_checks,
        "checksWithGoalMet": met_checks,
        "effectivenessRate": rate,
    }


def device_dispatch_alerts(db: Session, automation_id: int, threshold: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Devices whose most recent `threshold` dispatches from this automation all
    failed. Reported only; the automation keeps running.
    """
    threshold = max(1, int(threshold or config.DISPATCH_FAILURE_ALERT_THRESHOLD))
    executions = (
        db.query(AutomationExecution)
        .filter(AutomationExecution.automation_id == automation_id)
        .order_by(AutomationExecution.started_at.desc(), AutomationExecution.id.desc())
        .limit(ALERT_SCAN_LIMIT)
        .all()
    )

    attempts: List[Tuple[str, int, Dict[str, Any]]] = []
    for execution in executions:
        for entry in execution.executed_actions or []:
            if entry.get("success") is None or entry.get("device_id") is None:
                continue
            stamp = entry.get("dispatched_at") or as_utc(execution.started_at).isoformat()
            attempts.append((stamp, execution.id, entry))
    attempts.sort(key=lambda t: (t[0], t[1]), reverse=True)

    streaks: Dict[int, Dict[str, Any]] = {}
    closed = set()
    for stamp, _, entry in attempts:
        device_id = int(entry["device_id"])
        if device_id in closed:
            continue
        if entry.get("success"):
            closed.add(device_id)
            continue
        s = streaks.setdefault(
            device_id,
            {"device_id": device_id, "consecutive_failures": 0, "last_error": entry.get("error"), "last_failed_at": stamp},
        )
        s["consecutive_failures"] += 1

    return [s for s in streaks.values() if s["consecutive_failures"] >= threshold]
