from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from .storage import read_json_object, write_json_atomic

MAX_FAILURES = 5
LOCKOUT_DURATION = timedelta(minutes=15)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class LockoutState:
    failures: int = 0
    locked_until: datetime | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "failures": self.failures,
            "lockedUntil": _format_ts(self.locked_until) if self.locked_until else None,
        }

    @classmethod
    def from_json(cls, raw: Any) -> "LockoutState":
        if not isinstance(raw, dict):
            return cls()
        failures = raw.get("failures")
        if isinstance(failures, bool) or not isinstance(failures, int) or failures < 0:
            failures = 0
        return cls(failures=failures, locked_until=_parse_ts(raw.get("lockedUntil")))


@dataclass(frozen=True)
class LockoutDecision:
    locked: bool
    error: str | None = None
    locked_until: datetime | None = None


def _locked_message(locked_until: datetime, now: datetime) -> str:
    minutes = max(1, math.ceil((locked_until - now).total_seconds() / 60))
    return f"Too many failed verification attempts. Try again in {minutes} minutes."


def evaluate_lockout(state: LockoutState, now: datetime) -> tuple[LockoutState, LockoutDecision]:
    """
    Decide whether a verification attempt may proceed.

    Returns the state to persist alongside the decision:

    - an active lock stays as it is and blocks;
    - an expired lock resets to a clean state and allows;
    - reaching MAX_FAILURES without a lock starts one for LOCKOUT_DURATION and blocks.
    """
    if state.locked_until is not None:
        if state.locked_until > now:
            return state, LockoutDecision(
                locked=True,
                error=_locked_message(state.locked_until, now),
                locked_until=state.locked_until,
            )
        return LockoutState(), LockoutDecision(locked=False)

    if state.failures >= MAX_FAILURES:
        until = now + LOCKOUT_DURATION
        return replace(state, locked_until=until), LockoutDecision(
            locked=True,
            error=_locked_message(until, now),
            locked_until=until,
        )

    return state, LockoutDecision(locked=False)


class LockoutStore:
    def __init__(self, path: Path, *, now: Callable[[], datetime] | None = None) -> None:
        self.path = path
        self._now = now or _utcnow

    def read(self) -> LockoutState:
        raw = read_json_object(self.path)
        if raw is None:
            return LockoutState()
        return LockoutState.from_json(raw)

    def write(self, state: LockoutState) -> None:
        write_json_atomic(self.path, state.to_json())

    def check_lockout(self) -> LockoutDecision:
        state = self.read()
        new_state, decision = evaluate_lockout(state, self._now())
        if new_state != state:
            self.write(new_state)
        return decision

    def record_failure(self) -> LockoutState:
        state = self.read()
        new_state = replace(state, failures=state.failures + 1)
        self.write(new_state)
        return new_state

    def reset(self) -> None:
        self.write(LockoutState())
