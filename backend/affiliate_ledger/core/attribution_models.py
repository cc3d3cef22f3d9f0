# backend/affiliate_ledger/core/attribution_models.py
"""
Multi-touch weighting.

Touches come in chronological order (oldest first). Each function returns one
weight per touch; weights sum to 1 for a non-empty input.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
import uuid

from affiliate_ledger.core.dates import as_utc
from affiliate_ledger.core.statuses import AttributionModel

TIME_DECAY_HALF_LIFE_SECONDS = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class WeightedTouch:
    touch_id: uuid.UUID
    affiliate_id: uuid.UUID
    ref_code: str
    created_at: datetime
    weight: float = 0.0


def first_click(n: int) -> list[float]:
    return [1.0 if i == 0 else 0.0 for i in range(n)]


def last_click(n: int) -> list[float]:
    return [1.0 if i == n - 1 else 0.0 for i in range(n)]


def linear(n: int) -> list[float]:
    if n == 0:
        return []
    return [1.0 / n] * n


def position(n: int) -> list[float]:
    # 40 / 20 / 40, middle share split evenly
    if n == 0:
        return []
    if n == 1:
        return [1.0]
    if n == 2:
        return [0.5, 0.5]
    middle = 0.2 / (n - 2)
    return [0.4] + [middle] * (n - 2) + [0.4]


def time_decay(created: list[datetime], now: datetime) -> list[float]:
    if not created:
        return []
    now = as_utc(now)
    raw = []
    for ts in created:
        age = max(0.0, (now - as_utc(ts)).total_seconds())
        raw.append(0.5 ** (age / TIME_DECAY_HALF_LIFE_SECONDS))
    total = sum(raw)
    return [w / total if total > 0 else 0.0 for w in raw]


def apply_model(model: str, touches: list[WeightedTouch], now: datetime) -> list[WeightedTouch]:
    n = len(touches)
    try:
        chosen = AttributionModel(model)
    except ValueError:
        chosen = AttributionModel.LAST_CLICK

    if chosen is AttributionModel.FIRST_CLICK:
        weights = first_click(n)
    elif chosen is AttributionModel.LINEAR:
        weights = linear(n)
    elif chosen is AttributionModel.TIME_DECAY:
        weights = time_decay([t.created_at for t in touches], now)
    elif chosen is AttributionModel.POSITION:
        weights = position(n)
    else:
        weights = last_click(n)

    return [replace(t, weight=w) for t, w in zip(touches, weights)]


def pick_winner(weighted: list[WeightedTouch]) -> WeightedTouch | None:
    """Highest weight; the earliest touch wins a tie."""
    winner = None
    for t in weighted:
        if winner is None or t.weight > winner.weight:
            winner = t
    return winner


def confidence(has_fingerprint: bool, has_cookie: bool) -> str:
    if has_fingerprint and has_cookie:
        return "high"
    if has_fingerprint or has_cookie:
        return "medium"
    return "low"
