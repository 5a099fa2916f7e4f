import io
import json
import os
import tarfile
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from skillgate.client import CONNECTION_FAILED, DownloadArtifact, Verdict
from skillgate.errors import (
    ConfigError,
    DownloadError,
    ErrorPayloadError,
    HashMismatchError,
    InvalidNameError,
    LockedOutError,
    NotInstalledError,
    VerificationDeniedError,
)
from skillgate.installer import SkillInstaller
from skillgate.integrity import compute_package_hash
from skillgate.lockout import LOCKOUT_DURATION, MAX_FAILURES
from skillgate.manager import SkillManager
from skillgate.paths import Layout

EXPIRES_AT = 4_102_444_800_000


def _package(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        # Random padding keeps the compressed archive above the minimum package size.
        files = {**files, "package/assets/blob.bin": os.urandom(4096)}
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class _FakeClient:
    def __init__(self) -> None:
        self.verdict = Verdict(valid=False, error="invalid code")
        self.artifact: DownloadArtifact | None = None
        self.verify_calls: list[tuple[str, str]] = []
        self.download_calls: list[str] = []

    def grant(self, package: bytes, *, expected_hash: str | None = "auto") -> None:
        self.verdict = Verdict(
            valid=True,
            license={"code": "ABCD-1234", "expiresAt": EXPIRES_AT, "type": "annual"},
            download_url="/api/download?token=t1",
        )
        if expected_hash == "auto":
            expected_hash = compute_package_hash(package)
        self.artifact = DownloadArtifact(content=package, expected_hash=expected_hash, url="https://dl/x")

    def verify(self, skill_name: str, code: str) -> Verdict:
        self.verify_calls.append((skill_name, code))
        return self.verdict

    def download(self, download_token: str) -> DownloadArtifact:
        self.download_calls.append(download_token)
        assert self.artifact is not None
        return self.artifact


class TestSkillManager(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name)
        self.layout = Layout(root / "home")
        self.tmp_dir = root / "downloads"
        self.tmp_dir.mkdir()
        self.clock = _Clock()
        self.client = _FakeClient()
        self.dep_calls: list[Path] = []
        self.manager = SkillManager(
            layout=self.layout,
            client=self.client,  # type: ignore[arg-type]
            installer=SkillInstaller(self.layout, dependency_installer=self.dep_calls.append),
            now=self.clock,
            tmp_dir=self.tmp_dir,
        )
        self._stderr = patch("sys.stderr", new=io.StringIO())
        self._stderr.start()

    def tearDown(self) -> None:
        self._stderr.stop()
        self._td.cleanup()

    def _failures(self) -> int:
        path = self.layout.lockout_path
        if not path.exists():
            return 0
        return json.loads(path.read_text(encoding="utf-8"))["failures"]

    def test_learn_replaces_stale_install(self) -> None:
        stale = self.layout.skill_dir("lark")
        stale.mkdir(parents=True)
        (stale / "stale.txt").write_text("old", encoding="utf-8")
        self.client.grant(_package({"package/SKILL.md": b"# Lark\n"}))

        result = self.manager.learn("lark", "ABCD-1234")

        self.assertEqual(result.install_dir, stale)
        self.assertFalse((stale / "stale.txt").exists())
        self.assertEqual((stale / "SKILL.md").read_bytes(), b"# Lark\n")
        self.assertEqual(self.client.download_calls, ["/api/download?token=t1"])
        self.assertEqual(self.manager.licenses.load("lark").expires_at, EXPIRES_AT)
        self.assertEqual(result.license.code, "ABCD-1234")
        self.assertEqual(self._failures(), 0)
        self.assertEqual(list(self.tmp_dir.iterdir()), [])

        payload = result.to_json()
        self.assertTrue(payload["success"])
        self.assertEqual(payload["installDir"], str(stale))
        self.assertEqual(payload["license"]["expiresAt"], EXPIRES_AT)

    def test_lockout_after_repeated_failures(self) -> None:
        for _ in range(MAX_FAILURES):
            result = self.manager.verify("lark", "WRONG")
            self.assertFalse(result.valid)
            self.assertFalse(result.locked_out)
        self.assertEqual(self._failures(), MAX_FAILURES)

        blocked = self.manager.verify("lark", "WRONG")
        self.assertTrue(blocked.locked_out)
        self.assertIn("15 minutes", blocked.error or "")
        self.assertEqual(len(self.client.verify_calls), MAX_FAILURES)

        with self.assertRaises(LockedOutError):
            self.manager.learn("lark", "ABCD-1234")
        self.assertEqual(len(self.client.verify_calls), MAX_FAILURES)

    def test_lockout_expires(self) -> None:
        for _ in range(MAX_FAILURES + 1):
            self.manager.verify("lark", "WRONG")
        self.clock.now += LOCKOUT_DURATION + timedelta(seconds=1)
        self.client.grant(_package({"package/SKILL.md": b"ok"}))

        result = self.manager.verify("lark", "ABCD-1234")
        self.assertTrue(result.valid)
        self.assertEqual(len(self.client.verify_calls), MAX_FAILURES + 1)
        self.assertEqual(self._failures(), 0)

    def test_success_resets_failure_count(self) -> None:
        self.manager.verify("lark", "WRONG")
        self.manager.verify("lark", "WRONG")
        self.assertEqual(self._failures(), 2)
        self.client.grant(_package({"package/SKILL.md": b"ok"}))
        result = self.manager.verify("lark", "ABCD-1234")
        self.assertTrue(result.valid)
        self.assertEqual(result.download_url, "/api/download?token=t1")
        self.assertEqual(self._failures(), 0)

    def test_non_finite_server_expiry_is_cached_as_expired(self) -> None:
        self.client.verdict = Verdict(
            valid=True,
            license={"code": "ABCD", "expiresAt": float("inf"), "type": "annual"},
            download_url="/api/download?token=t1",
        )
        result = self.manager.verify("lark", "ABCD")
        self.assertTrue(result.valid)
        self.assertEqual(self._failures(), 0)
        check = self.manager.check("lark")
        self.assertFalse(check.valid)
        self.assertEqual(check.error, "license expired")

    def test_network_failure_counts_as_failure(self) -> None:
        self.client.verdict = Verdict(valid=False, error=CONNECTION_FAILED, message="refused")
        result = self.manager.verify("lark", "ABCD")
        self.assertEqual(result.error, CONNECTION_FAILED)
        self.assertEqual(self._failures(), 1)

    def test_hash_mismatch_installs_nothing(self) -> None:
        package = _package({"package/SKILL.md": b"ok"})
        self.client.grant(package, expected_hash="sha256:" + "0" * 64)

        with self.assertRaises(HashMismatchError):
            self.manager.install("lark", "/api/download?token=t1")

        self.assertFalse(self.layout.skill_dir("lark").exists())
        self.assertEqual(list(self.tmp_dir.iterdir()), [])

    def test_error_payload_download(self) -> None:
        body = json.dumps({"error": "token expired"}).encode()
        self.client.artifact = DownloadArtifact(content=body, expected_hash=None, url="https://dl/x")
        with self.assertRaises(ErrorPayloadError) as ctx:
            self.manager.install("lark", "t1")
        self.assertIn("token expired", str(ctx.exception))
        self.assertEqual(list(self.tmp_dir.iterdir()), [])

    def test_install_without_hash_still_installs(self) -> None:
        self.client.grant(_package({"package/SKILL.md": b"ok"}), expected_hash=None)
        result = self.manager.install("lark", "t1")
        self.assertTrue((result.install_dir / "SKILL.md").is_file())

    def test_invalid_name_makes_no_request(self) -> None:
        for name in ("../etc", "Lark", "skill-installer"):
            with self.subTest(name=name):
                with self.assertRaises(InvalidNameError):
                    self.manager.verify(name, "ABCD")
                with self.assertRaises(InvalidNameError):
                    self.manager.install(name, "t1")
        self.assertEqual(self.client.verify_calls, [])
        self.assertEqual(self.client.download_calls, [])

    def test_learn_denied(self) -> None:
        self.client.verdict = Verdict(valid=False, error="invalid code", message="check the code")
        with self.assertRaises(VerificationDeniedError) as ctx:
            self.manager.learn("lark", "WRONG")
        self.assertIn("invalid code", str(ctx.exception))
        self.assertEqual(self.client.download_calls, [])

    def test_learn_without_download_url(self) -> None:
        self.client.verdict = Verdict(valid=True, license={"code": "X"}, download_url=None)
        with self.assertRaises(DownloadError):
            self.manager.learn("lark", "X")

    def test_update_requires_existing_install(self) -> None:
        with self.assertRaises(NotInstalledError):
            self.manager.update("lark", "ABCD")
        self.assertEqual(self.client.verify_calls, [])

        self.client.grant(_package({"package/v1.txt": b"1"}))
        self.manager.learn("lark", "ABCD")
        self.client.grant(_package({"package/v2.txt": b"2"}))
        result = self.manager.update("lark", "ABCD")
        self.assertTrue((result.install_dir / "v2.txt").is_file())
        self.assertFalse((result.install_dir / "v1.txt").exists())

    def test_remote_operations_need_a_client(self) -> None:
        manager = SkillManager(layout=self.layout)
        with self.assertRaises(ConfigError):
            manager.verify("lark", "ABCD")
        self.assertEqual(manager.list_licenses(), [])
        self.assertFalse(manager.check("lark").valid)

    def test_remove_keeps_license(self) -> None:
        self.client.grant(_package({"package/SKILL.md": b"ok"}))
        self.manager.learn("lark", "ABCD")
        result = self.manager.remove("lark")
        self.assertTrue(result.success)
        self.assertTrue(self.manager.check("lark").valid)
        self.assertEqual([s.skill_name for s in self.manager.list_licenses()], ["lark"])


if __name__ == "__main__":
    unittest.main()
