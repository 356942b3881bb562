"""
Incremental goal-distribution tracking.

Each completed exercise adds its goal and muscle shares to a per-owner
running total, so distribution against the owner's goal weights is read in
constant time instead of being recomputed from workout history. Totals
cover only exercises folded in since tracking_started_at; changing goal
weights starts a new tracking period.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import IntegrityError

from core.context import RequestContext, resolve_owner_id
from core.db import DB
from core.errors import StorageError, ValidationIssue
from core.models import DistributionTracking, GoalWeight, GoalWeightKind
from core.services.shared import (
    _iso,
    _utc_naive,
    _validate_list,
    MAX_LIST_ITEMS,
    MAX_SHORT_TEXT_LENGTH,
    logger,
    service_tool,
)
import core.config as config

DISTRIBUTION_BAND = config.DISTRIBUTION_BAND


def _normalize_shares(items: Optional[Iterable], key: str, field: str) -> dict[str, float]:
    """Collapse share entries into {name: share}.

    A bare name counts as a full share of 1.0; objects carry "<key>" (or
    "name") and "share".
    """
    if items is None:
        return {}
    if isinstance(items, dict):
        items = [{key: name, "share": share} for name, share in items.items()]
    shares: dict[str, float] = {}
    for item in items:
        if isinstance(item, str):
            name, share = item, 1.0
        elif isinstance(item, dict):
            name = item.get(key) or item.get("name")
            share = item.get("share") or 0.0
        else:
            raise ValidationIssue(f"{field} entries must be names or objects", field=field, error_type="invalid_type")
        if not isinstance(name, str) or not name.strip():
            continue
        if isinstance(share, bool) or not isinstance(share, (int, float)) or share < 0:
            raise ValidationIssue(f"{field} share must be a non-negative number", field=field, error_type="invalid_value")
        name = name.strip()
        shares[name] = shares.get(name, 0.0) + float(share)
    return shares


def _serialize_tracking(row: DistributionTracking) -> dict:
    return {
        "categories": dict(row.category_totals or {}),
        "muscles": dict(row.muscle_totals or {}),
        "exercise_count": row.exercise_count or 0,
        "tracking_started_at": _iso(row.tracking_started_at),
        "last_updated_at": _iso(row.last_updated_at),
    }


def _lock_tracking(db, owner_id: str) -> DistributionTracking:
    """Return the owner's tracking row with a write lock held, creating it if needed.

    Touching the row first takes the row lock on postgres and the database
    write lock on sqlite before the totals are read.
    """
    now = datetime.utcnow()
    query = db.query(DistributionTracking).filter(DistributionTracking.owner_id == owner_id)
    touched = query.update({"last_updated_at": now}, synchronize_session=False)
    if touched:
        return query.with_for_update().populate_existing().one()
    row = DistributionTracking(
        owner_id=owner_id,
        category_totals={},
        muscle_totals={},
        exercise_count=0,
        tracking_started_at=now,
        last_updated_at=now,
    )
    db.add(row)
    db.flush()
    return row


def fold_in(db, owner_id: str, goals_addressed, muscles_utilized) -> DistributionTracking:
    """Add one exercise's shares inside the caller's transaction."""
    categories = _normalize_shares(goals_addressed, "goal", "goals_addressed")
    muscles = _normalize_shares(muscles_utilized, "muscle", "muscles_utilized")
    row = _lock_tracking(db, owner_id)
    category_totals = dict(row.category_totals or {})
    muscle_totals = dict(row.muscle_totals or {})
    for name, share in categories.items():
        category_totals[name] = category_totals.get(name, 0.0) + share
    for name, share in muscles.items():
        muscle_totals[name] = muscle_totals.get(name, 0.0) + share
    row.category_totals = category_totals
    row.muscle_totals = muscle_totals
    row.exercise_count = (row.exercise_count or 0) + 1
    return row


def unfold_in(
    db,
    owner_id: str,
    goals_addressed,
    muscles_utilized,
    completed_at: Optional[datetime] = None,
) -> DistributionTracking:
    """Remove one exercise's shares; totals clamp at zero and empty keys are dropped.

    An exercise completed before the current tracking period was never
    folded into it, so it is left alone.
    """
    categories = _normalize_shares(goals_addressed, "goal", "goals_addressed")
    muscles = _normalize_shares(muscles_utilized, "muscle", "muscles_utilized")
    row = _lock_tracking(db, owner_id)
    completed_at = _utc_naive(completed_at)
    started_at = _utc_naive(row.tracking_started_at)
    if completed_at is not None and started_at is not None and completed_at < started_at:
        logger.info(f"Skipping unfold for {owner_id}: exercise predates tracking period")
        return row

    def subtract(totals: dict, shares: dict) -> dict:
        result = dict(totals or {})
        for name, share in shares.items():
            if name not in result:
                continue
            remaining = max(0.0, result[name] - share)
            if remaining <= 0:
                del result[name]
            else:
                result[name] = remaining
        return result

    row.category_totals = subtract(row.category_totals, categories)
    row.muscle_totals = subtract(row.muscle_totals, muscles)
    row.exercise_count = max(0, (row.exercise_count or 0) - 1)
    return row


def reset_in(db, owner_id: str) -> DistributionTracking:
    row = _lock_tracking(db, owner_id)
    previous = _utc_naive(row.tracking_started_at)
    now = datetime.utcnow()
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    row.category_totals = {}
    row.muscle_totals = {}
    row.exercise_count = 0
    row.tracking_started_at = now
    row.last_updated_at = now
    return row


def _apply_with_retry(apply: Callable) -> dict:
    """Run one tracking update in its own transaction.

    Two first-ever updates for an owner can race to create the row; the
    loser retries against the winner's row.
    """
    for attempt in range(2):
        db = DB.SessionLocal()
        try:
            row = apply(db)
            db.commit()
            db.refresh(row)
            return _serialize_tracking(row)
        except IntegrityError as exc:
            db.rollback()
            if attempt:
                raise StorageError("distribution tracking row could not be created") from exc
        finally:
            db.close()


@service_tool
def fold(
    goals_addressed: Optional[list] = None,
    muscles_utilized: Optional[list] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    _validate_list(goals_addressed, "goals_addressed", MAX_LIST_ITEMS)
    _validate_list(muscles_utilized, "muscles_utilized", MAX_LIST_ITEMS)
    owner_id = resolve_owner_id(context)

    tracking = _apply_with_retry(lambda db: fold_in(db, owner_id, goals_addressed, muscles_utilized))
    return {"status": "folded", "tracking": tracking}


@service_tool
def unfold(
    goals_addressed: Optional[list] = None,
    muscles_utilized: Optional[list] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    _validate_list(goals_addressed, "goals_addressed", MAX_LIST_ITEMS)
    _validate_list(muscles_utilized, "muscles_utilized", MAX_LIST_ITEMS)
    owner_id = resolve_owner_id(context)

    tracking = _apply_with_retry(lambda db: unfold_in(db, owner_id, goals_addressed, muscles_utilized))
    return {"status": "unfolded", "tracking": tracking}


@service_tool
def reset(context: Optional[RequestContext] = None) -> dict:
    owner_id = resolve_owner_id(context)

    tracking = _apply_with_retry(lambda db: reset_in(db, owner_id))
    logger.info(f"Reset distribution tracking for {owner_id}")
    return {"status": "reset", "tracking": tracking}


@service_tool
def read(context: Optional[RequestContext] = None) -> dict:
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        row = db.query(DistributionTracking).filter(DistributionTracking.owner_id == owner_id).first()
        if row is None:
            return {
                "status": "ok",
                "tracking": {
                    "categories": {},
                    "muscles": {},
                    "exercise_count": 0,
                    "tracking_started_at": None,
                    "last_updated_at": None,
                },
            }
        return {"status": "ok", "tracking": _serialize_tracking(row)}
    finally:
        db.close()


def _normalize_weights(weights, field: str) -> dict[str, float]:
    if weights is None:
        return {}
    if isinstance(weights, list):
        pairs = []
        for item in weights:
            if not isinstance(item, dict):
                raise ValidationIssue(f"{field} entries must be objects", field=field, error_type="invalid_type")
            pairs.append((item.get("name"), item.get("weight")))
    elif isinstance(weights, dict):
        pairs = list(weights.items())
    else:
        raise ValidationIssue(f"{field} must be an object or a list", field=field, error_type="invalid_type")
    _validate_list(pairs, field, MAX_LIST_ITEMS)

    normalized: dict[str, float] = {}
    for name, weight in pairs:
        if not isinstance(name, str) or not name.strip() or len(name) > MAX_SHORT_TEXT_LENGTH:
            raise ValidationIssue(f"{field} names must be non-empty strings", field=field, error_type="invalid_value")
        if isinstance(weight, bool) or not isinstance(weight, (int, float)) or not 0.0 <= weight <= 1.0:
            raise ValidationIssue(
                f"{field} weight for {name!r} must be between 0 and 1",
                field=field,
                error_type="out_of_range",
            )
        normalized[name.strip()] = float(weight)
    return normalized


@service_tool
def set_goal_weights(
    categories=None,
    muscles=None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Replace the owner's goal weights and restart distribution tracking.

    Both happen in one transaction, so no totals from the old weighting
    survive the change.
    """
    category_weights = _normalize_weights(categories, "categories")
    muscle_weights = _normalize_weights(muscles, "muscles")
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        # Lock tracking first so concurrent folds queue behind the reset.
        row = reset_in(db, owner_id)
        db.query(GoalWeight).filter(GoalWeight.owner_id == owner_id).delete(synchronize_session=False)
        now = datetime.utcnow()
        for kind, weights in ((GoalWeightKind.category, category_weights), (GoalWeightKind.muscle, muscle_weights)):
            for name, weight in weights.items():
                db.add(GoalWeight(owner_id=owner_id, kind=kind, name=name, weight=weight, created_at=now))
        db.commit()
        db.refresh(row)
        logger.info(
            f"Goal weights replaced for {owner_id}: {len(category_weights)} categories, {len(muscle_weights)} muscles"
        )
        return {
            "status": "updated",
            "categories": category_weights,
            "muscles": muscle_weights,
            "tracking": _serialize_tracking(row),
        }
    finally:
        db.close()


@service_tool
def get_goal_weights(context: Optional[RequestContext] = None) -> dict:
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        rows = (
            db.query(GoalWeight)
            .filter(GoalWeight.owner_id == owner_id)
            .order_by(GoalWeight.created_at.asc(), GoalWeight.id.asc())
            .all()
        )
        return {
            "status": "ok",
            "categories": {r.name: r.weight for r in rows if r.kind == GoalWeightKind.category},
            "muscles": {r.name: r.weight for r in rows if r.kind == GoalWeightKind.muscle},
        }
    finally:
        db.close()


def _metrics_for(weights: dict[str, float], totals: dict) -> dict:
    total_share = sum(totals.values())
    metrics = {}
    for name, target in weights.items():
        actual_total = totals.get(name, 0.0)
        actual = actual_total / total_share if total_share > 0 else 0.0
        metrics[name] = {
            "target": target,
            "actual": actual,
            "debt": target - actual,
            "total_share": actual_total,
        }
    return metrics


@service_tool
def distribution_metrics(context: Optional[RequestContext] = None) -> dict:
    """Target vs actual share and the resulting debt for every weighted goal."""
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        row = db.query(DistributionTracking).filter(DistributionTracking.owner_id == owner_id).first()
        if row is None:
            return {
                "status": "ok",
                "has_data": False,
                "tracking_since": None,
                "total_exercises": 0,
                "categories": {},
                "muscles": {},
            }
        weights = (
            db.query(GoalWeight)
            .filter(GoalWeight.owner_id == owner_id)
            .order_by(GoalWeight.created_at.asc(), GoalWeight.id.asc())
            .all()
        )
        category_weights = {w.name: w.weight for w in weights if w.kind == GoalWeightKind.category}
        muscle_weights = {w.name: w.weight for w in weights if w.kind == GoalWeightKind.muscle}
        return {
            "status": "ok",
            "has_data": True,
            "tracking_since": _iso(row.tracking_started_at),
            "total_exercises": row.exercise_count or 0,
            "categories": _metrics_for(category_weights, row.category_totals or {}),
            "muscles": _metrics_for(muscle_weights, row.muscle_totals or {}),
        }
    finally:
        db.close()


def _pct(value: float) -> str:
    return f"{value * 100:.0f}"


def _format_section(title: str, metrics: dict, band: float) -> list[str]:
    entries = list(metrics.items())
    if not entries:
        return []
    lines = ["", f"  {title} DISTRIBUTION:"]
    under = sorted((e for e in entries if e[1]["debt"] > band), key=lambda e: e[1]["debt"], reverse=True)
    over = sorted((e for e in entries if e[1]["debt"] < -band), key=lambda e: e[1]["debt"])
    on_target = [e for e in entries if abs(e[1]["debt"]) <= band]
    if under:
        lines.append("    UNDER-REPRESENTED (need more):")
        for name, m in under:
            lines.append(
                f"      - {name}: TARGET {_pct(m['target'])}%, ACTUAL {_pct(m['actual'])}% -> NEEDS +{_pct(m['debt'])}%"
            )
    if over:
        lines.append("    OVER-REPRESENTED (reduce):")
        for name, m in over:
            lines.append(
                f"      - {name}: TARGET {_pct(m['target'])}%, ACTUAL {_pct(m['actual'])}% -> OVER by {_pct(abs(m['debt']))}%"
            )
    if on_target:
        lines.append("    ON TARGET:")
        for name, m in on_target:
            lines.append(f"      - {name}: TARGET {_pct(m['target'])}%, ACTUAL {_pct(m['actual'])}% (ok)")
    return lines


def format_distribution_for_prompt(metrics: dict, band: Optional[float] = None) -> str:
    """Render distribution_metrics output as a prompt section; empty when nothing is tracked."""
    if not metrics or not metrics.get("has_data"):
        return ""
    band = DISTRIBUTION_BAND if band is None else band
    since = metrics.get("tracking_since")
    if since:
        started = datetime.fromisoformat(since)
        since_label = f"{started:%b} {started.day}"
    else:
        since_label = "unknown"

    lines = [
        f"GOAL DISTRIBUTION STATUS (tracking since {since_label}):",
        f"  Total exercises tracked: {metrics.get('total_exercises', 0)}",
    ]
    lines.extend(_format_section("CATEGORY", metrics.get("categories") or {}, band))
    lines.extend(_format_section("MUSCLE", metrics.get("muscles") or {}, band))
    return "\n".join(lines)


__all__ = [
    "fold_in",
    "unfold_in",
    "reset_in",
    "fold",
    "unfold",
    "reset",
    "read",
    "set_goal_weights",
    "get_goal_weights",
    "distribution_metrics",
    "format_distribution_for_prompt",
]
