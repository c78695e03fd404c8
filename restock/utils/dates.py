"""Datetime helpers."""

from __future__ import annotations

import pendulum


def utcnow() -> pendulum.DateTime:
    return pendulum.now("UTC")


def now_iso() -> str:
    return utcnow().to_iso8601_string()


def parse_timestamp(value: str | None) -> pendulum.DateTime | None:
    if not value:
        return None
    text = str(value).strip()
    if len(text) == 10:
        text = f"{text}T00:00:00Z"
    try:
        parsed = pendulum.parse(text)
    except ValueError:
        return None
    if not isinstance(parsed, pendulum.DateTime):
        return None
    return parsed


def earliest_restock(candidates: list[str], *, now: pendulum.DateTime | None = None) -> str | None:
    """Pick the soonest usable restock date, preferring dates not yet passed."""
    parsed = []
    for raw in candidates:
        ts = parse_timestamp(raw)
        if ts is not None:
            iso = f"{raw}T00:00:00Z" if len(raw) == 10 else raw
            parsed.append((ts, iso))
    if not parsed:
        return None
    current = now or utcnow()
    future = [item for item in parsed if item[0] >= current]
    pool = future or parsed
    pool.sort(key=lambda item: item[0])
    return pool[0][1]
