from __future__ import annotations

import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from .client import SkillGateClient
from .errors import (
    ConfigError,
    DownloadError,
    LockedOutError,
    NotInstalledError,
    VerificationDeniedError,
)
from .installer import RemoveResult, SkillInstaller
from .integrity import validate_package
from .licenses import LicenseCache, LicenseCheck, LicenseRecord, LicenseSummary
from .lockout import LockoutStore
from .paths import Layout, validate_skill_name


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    license: LicenseRecord | None = None
    download_url: str | None = None
    error: str | None = None
    message: str | None = None
    locked_out: bool = False

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"valid": self.valid}
        if self.license is not None:
            payload["license"] = self.license.to_json()
        if self.download_url:
            payload["downloadUrl"] = self.download_url
        if self.error:
            payload["error"] = self.error
        if self.message:
            payload["message"] = self.message
        return payload


@dataclass(frozen=True)
class InstallResult:
    install_dir: Path
    warnings: tuple[str, ...] = ()
    license: LicenseRecord | None = None

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "installDir": str(self.install_dir),
            "warnings": list(self.warnings),
        }
        if self.license is not None:
            payload["license"] = self.license.to_json()
        return payload


class SkillManager:
    """
    Runs the verify -> download -> integrity check -> extract pipeline against one
    state root. Only ``verify``, ``install``, ``learn`` and ``update`` need a client.
    """

    def __init__(
        self,
        *,
        layout: Layout,
        client: SkillGateClient | None = None,
        installer: SkillInstaller | None = None,
        now: Callable[[], datetime] | None = None,
        tmp_dir: Path | None = None,
    ) -> None:
        self.layout = layout
        self.tmp_dir = tmp_dir
        self.client = client
        self.installer = installer or SkillInstaller(layout)
        self.lockout = LockoutStore(layout.lockout_path, now=now)
        self.licenses = LicenseCache(layout)

    def _require_client(self) -> SkillGateClient:
        if self.client is None:
            raise ConfigError("This operation needs the license and download services to be configured.")
        return self.client

    def verify(self, skill_name: str, code: str) -> VerifyResult:
        skill = validate_skill_name(skill_name)
        client = self._require_client()

        decision = self.lockout.check_lockout()
        if decision.locked:
            print(f"error: {decision.error}", file=sys.stderr)
            return VerifyResult(valid=False, error=decision.error, locked_out=True)

        verdict = client.verify(skill, code)
        if not verdict.valid:
            state = self.lockout.record_failure()
            print(f"Verification failed ({state.failures} consecutive failures).", file=sys.stderr)
            return VerifyResult(valid=False, error=verdict.error, message=verdict.message)

        self.lockout.reset()
        record = self.licenses.save(skill, verdict.license, download_url=verdict.download_url)
        print(f"License verified for {skill}.", file=sys.stderr)
        return VerifyResult(valid=True, license=record, download_url=verdict.download_url)

    def install(self, skill_name: str, download_token: str) -> InstallResult:
        skill = validate_skill_name(skill_name)
        # Containment is checked before anything is fetched.
        self.layout.skill_dir(skill)
        artifact = self._require_client().download(download_token)

        fd, tmp = tempfile.mkstemp(prefix=f"skill-{skill}-", suffix=".tar.gz", dir=self.tmp_dir)
        tmp_path = Path(tmp)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(artifact.content)
            validate_package(artifact.content, artifact.expected_hash, artifact=tmp_path)
            print(f"Package downloaded ({len(artifact.content)} bytes).", file=sys.stderr)
            outcome = self.installer.install(tmp_path, skill)
        finally:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError as e:
                print(f"warning: could not delete temporary file {tmp_path}: {e}", file=sys.stderr)
        return InstallResult(install_dir=outcome.target_dir, warnings=outcome.warnings)

    def learn(self, skill_name: str, code: str) -> InstallResult:
        result = self.verify(skill_name, code)
        if result.locked_out:
            raise LockedOutError(result.error or "Verification is temporarily locked.")
        if not result.valid:
            detail = f"{result.error}: {result.message}" if result.message else (result.error or "")
            raise VerificationDeniedError(f"License verification failed: {detail}")
        if not result.download_url:
            raise DownloadError("The license server did not provide a download URL.")
        installed = self.install(skill_name, result.download_url)
        return InstallResult(install_dir=installed.install_dir, warnings=installed.warnings, license=result.license)

    def update(self, skill_name: str, code: str) -> InstallResult:
        skill = validate_skill_name(skill_name)
        if not self.installer.is_installed(skill):
            raise NotInstalledError(f"{skill} is not installed; install it before updating.")
        return self.learn(skill, code)

    def remove(self, skill_name: str) -> RemoveResult:
        return self.installer.remove(skill_name)

    def check(self, skill_name: str) -> LicenseCheck:
        return self.licenses.check(skill_name)

    def list_licenses(self) -> list[LicenseSummary]:
        return self.licenses.summaries()
