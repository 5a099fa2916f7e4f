from __future__ import annotations

import math
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .errors import InvalidNameError
from .paths import Layout, validate_skill_name
from .storage import read_json_object, write_json_atomic

MS_PER_DAY = 24 * 60 * 60 * 1000
DEFAULT_TIER = "standard"


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_timestamp_ms(value: Any) -> int | None:
    """Accept epoch milliseconds or an ISO-8601 string; anything else means "no timestamp"."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # json.loads accepts Infinity and NaN.
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return int(value)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None


def parse_expiry_ms(value: Any) -> int | None:
    """
    Like ``parse_timestamp_ms`` but only an absent or null expiry means "perpetual".
    Any other value that does not parse raises ``ValueError``.
    """
    if value is None:
        return None
    parsed = parse_timestamp_ms(value)
    if parsed is None:
        raise ValueError(f"Unrecognised license expiry: {value!r}")
    return parsed


@dataclass(frozen=True)
class LicenseRecord:
    skill: str
    code: str
    activated_at: int
    expires_at: int | None
    type: str
    tier: str = DEFAULT_TIER
    download_url: str | None = None

    def is_valid(self, now_ms: int) -> bool:
        return self.expires_at is None or self.expires_at > now_ms

    def days_remaining(self, now_ms: int) -> int | None:
        if self.expires_at is None:
            return None
        return math.floor((self.expires_at - now_ms) / MS_PER_DAY)

    def to_json(self) -> dict[str, Any]:
        return {
            "skill": self.skill,
            "code": self.code,
            "activatedAt": self.activated_at,
            "expiresAt": self.expires_at,
            "type": self.type,
            "tier": self.tier,
            "downloadUrl": self.download_url,
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> "LicenseRecord | None":
        skill = raw.get("skill")
        if not isinstance(skill, str) or not skill:
            return None
        try:
            expires_at = parse_expiry_ms(raw.get("expiresAt"))
        except ValueError:
            return None
        code = raw.get("code")
        download_url = raw.get("downloadUrl")
        return cls(
            skill=skill,
            code=code if isinstance(code, str) else "",
            activated_at=parse_timestamp_ms(raw.get("activatedAt")) or 0,
            expires_at=expires_at,
            type=str(raw.get("type") or "unknown"),
            tier=str(raw.get("tier") or DEFAULT_TIER),
            download_url=download_url if isinstance(download_url, str) and download_url else None,
        )


@dataclass(frozen=True)
class LicenseCheck:
    valid: bool
    license: LicenseRecord | None = None
    error: str | None = None

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"valid": self.valid}
        if self.license is not None:
            payload["license"] = self.license.to_json()
            if self.license.download_url:
                payload["downloadUrl"] = self.license.download_url
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class LicenseSummary:
    skill_name: str
    type: str
    days_remaining: int | None
    status: str

    def to_json(self) -> dict[str, Any]:
        return {
            "skillName": self.skill_name,
            "type": self.type,
            "daysRemaining": self.days_remaining,
            "status": self.status,
        }


class LicenseCache:
    def __init__(self, layout: Layout) -> None:
        self.layout = layout

    def save(
        self,
        skill: str,
        license: dict[str, Any] | None,
        *,
        download_url: str | None = None,
        now_ms: int | None = None,
    ) -> LicenseRecord:
        path = self.layout.license_path(skill)
        data = license if isinstance(license, dict) else {}
        code = data.get("code")
        activated_at = _now_ms() if now_ms is None else now_ms
        try:
            expires_at = parse_expiry_ms(data.get("expiresAt"))
        except ValueError as e:
            # Cached as already expired rather than perpetual.
            print(f"warning: {e}; caching the license as expired", file=sys.stderr)
            expires_at = activated_at
        record = LicenseRecord(
            skill=skill,
            code=code if isinstance(code, str) else "",
            activated_at=activated_at,
            expires_at=expires_at,
            type=str(data.get("type") or "unknown"),
            tier=str(data.get("tier") or DEFAULT_TIER),
            download_url=download_url,
        )
        write_json_atomic(path, record.to_json())
        print(f"License cached: {path}", file=sys.stderr)
        return record

    def load(self, skill: str) -> LicenseRecord | None:
        raw = read_json_object(self.layout.license_path(skill))
        if raw is None:
            return None
        return LicenseRecord.from_json(raw)

    def check(self, skill: str, *, now_ms: int | None = None) -> LicenseCheck:
        record = self.load(skill)
        if record is None:
            return LicenseCheck(valid=False, error="license not found")
        now = _now_ms() if now_ms is None else now_ms
        if not record.is_valid(now):
            return LicenseCheck(valid=False, license=record, error="license expired")
        return LicenseCheck(valid=True, license=record)

    def summaries(self, *, now_ms: int | None = None) -> list[LicenseSummary]:
        licenses_dir = self.layout.licenses_dir
        if not licenses_dir.is_dir():
            return []
        now = _now_ms() if now_ms is None else now_ms

        out: list[LicenseSummary] = []
        for path in sorted(licenses_dir.glob("*.json")):
            # The lockout record lives in the same directory as a dotfile.
            if path.name.startswith("."):
                continue
            try:
                validate_skill_name(path.stem)
            except InvalidNameError:
                continue
            raw = read_json_object(path)
            record = LicenseRecord.from_json(raw) if raw is not None else None
            if record is None:
                print(f"warning: skipping unreadable license file {path}", file=sys.stderr)
                continue
            out.append(
                LicenseSummary(
                    skill_name=record.skill,
                    type=record.type,
                    days_remaining=record.days_remaining(now),
                    status="active" if record.is_valid(now) else "expired",
                )
            )
        return out