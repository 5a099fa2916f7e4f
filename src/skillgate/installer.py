from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tarfile
import tempfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator

from .errors import DependencyInstallFailedError, ExtractionFailedError, PathEscapeError
from .paths import Layout, assert_contained

STAGING_DIRNAME = ".tmp"
BACKUP_SUFFIX = ".skillgate-backup"
DEPENDENCY_MANIFEST = "package.json"
DEPENDENCY_TIMEOUT_S = 600.0


@dataclass(frozen=True)
class InstallOutcome:
    target_dir: Path
    skipped_entries: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class RemoveResult:
    success: bool
    message: str | None = None
    error: str | None = None

    def to_json(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "message": self.message}
        return {"success": False, "error": self.error}


@dataclass
class NpmDependencyInstaller:
    """
    Runs ``npm install`` in a freshly extracted skill. Package lifecycle scripts are
    disabled; npm's output is relayed to stderr so stdout stays machine-readable.
    """

    registry: str | None = None
    command: str = "npm"
    timeout_s: float = DEPENDENCY_TIMEOUT_S
    extra_args: list[str] = field(default_factory=lambda: ["--no-audit", "--no-fund"])

    def build_args(self) -> list[str]:
        args = [self.command, "install", "--ignore-scripts", *self.extra_args]
        if self.registry:
            args += ["--registry", self.registry]
        return args

    def __call__(self, target_dir: Path) -> None:
        args = self.build_args()
        try:
            proc = subprocess.run(
                args,
                cwd=target_dir,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired as e:
            raise DependencyInstallFailedError(f"{self.command} install timed out after {self.timeout_s:.0f}s") from e
        except OSError as e:
            raise DependencyInstallFailedError(f"Could not run {self.command}: {e}") from e

        for stream in (proc.stdout, proc.stderr):
            if stream:
                sys.stderr.write(stream)
        if proc.returncode != 0:
            raise DependencyInstallFailedError(f"{self.command} install exited with status {proc.returncode}")


def strip_components(name: str, count: int = 1) -> str | None:
    parts = [p for p in name.replace("\\", "/").split("/") if p and p != "."]
    if len(parts) <= count:
        return None
    return "/".join(parts[count:])


def extract_archive(archive_path: Path, dest: Path, *, strip: int = 1) -> list[str]:
    """
    Extract a (optionally compressed) tar archive into ``dest``, dropping ``strip``
    leading path components from every entry.

    Symbolic links, hard links and special files are skipped and returned by name.
    An entry that would land outside ``dest`` aborts the extraction.
    """
    dest.mkdir(parents=True, exist_ok=True)
    skipped: list[str] = []
    try:
        with tarfile.open(archive_path, "r:*") as tf:
            for member in tf:
                rel = strip_components(member.name, strip)
                if rel is None:
                    continue
                if member.issym() or member.islnk():
                    skipped.append(member.name)
                    print(f"warning: skipping link entry {member.name!r}", file=sys.stderr)
                    continue
                if not (member.isdir() or member.isfile()):
                    skipped.append(member.name)
                    print(f"warning: skipping special entry {member.name!r}", file=sys.stderr)
                    continue

                try:
                    target = assert_contained(dest / rel, dest)
                except PathEscapeError as e:
                    raise ExtractionFailedError(f"Archive contains an invalid path entry: {member.name!r}") from e

                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                src = tf.extractfile(member)
                if src is None:
                    skipped.append(member.name)
                    continue
                with src, target.open("wb") as out:
                    shutil.copyfileobj(src, out)
                if member.mode & 0o111:
                    os.chmod(target, 0o755)
    except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
        raise ExtractionFailedError(f"Could not extract skill package: {e}") from e
    return skipped


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif os.path.lexists(path):
        path.unlink()


@contextmanager
def _swapped_out(dest: Path) -> Iterator[None]:
    """
    Park an existing ``dest`` under a backup name while the block puts a new one in
    place. The backup is dropped when the block succeeds and put back when it fails.
    """
    backup = dest.with_name(dest.name + BACKUP_SUFFIX)
    _remove_path(backup)
    parked = os.path.lexists(dest)
    if parked:
        print(f"Replacing existing install at {dest}", file=sys.stderr)
        dest.rename(backup)
    try:
        yield
    except BaseException:
        _remove_path(dest)
        if parked:
            backup.rename(dest)
        raise
    if parked:
        _remove_path(backup)


class SkillInstaller:
    def __init__(
        self,
        layout: Layout,
        *,
        dependency_installer: Callable[[Path], None] | None = None,
    ) -> None:
        self.layout = layout
        self.dependency_installer = dependency_installer or NpmDependencyInstaller()

    def is_installed(self, skill_name: str) -> bool:
        return self.layout.skill_dir(skill_name).is_dir()

    def install(self, archive_path: Path, skill_name: str) -> InstallOutcome:
        warnings: list[str] = []
        try:
            dest = self.layout.skill_dir(skill_name)
            print(f"Installing {skill_name} into {dest}", file=sys.stderr)
            skipped = self._extract_into_place(archive_path, dest)
            warnings.extend(f"skipped link or special entry: {name}" for name in skipped)
            warning = self._install_dependencies(dest)
            if warning:
                warnings.append(warning)
        finally:
            warning = self._discard_archive(archive_path)
            if warning:
                warnings.append(warning)
        return InstallOutcome(target_dir=dest, skipped_entries=tuple(skipped), warnings=tuple(warnings))

    def remove(self, skill_name: str) -> RemoveResult:
        dest = self.layout.skill_dir(skill_name)
        if not dest.exists():
            return RemoveResult(success=False, error=f"{skill_name} is not installed")
        _remove_path(dest)
        return RemoveResult(
            success=True,
            message=f"{skill_name} removed. The license is kept and the skill can be reinstalled at any time.",
        )

    def _ensure_skills_dir(self) -> Path:
        skills_dir = self.layout.skills_dir
        try:
            skills_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExtractionFailedError(f"Could not create skills directory: {skills_dir}") from e
        if not skills_dir.is_dir():
            raise ExtractionFailedError(f"Skills path is not a directory: {skills_dir}")
        return skills_dir

    def _extract_into_place(self, archive_path: Path, dest: Path) -> list[str]:
        staging_root = self._ensure_skills_dir() / STAGING_DIRNAME
        staging_root.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix=f"{dest.name}-", dir=staging_root) as td:
            staged = Path(td) / "unpacked"
            skipped = extract_archive(archive_path, staged)
            with _swapped_out(dest):
                shutil.move(str(staged), str(dest))
        return skipped

    def _install_dependencies(self, dest: Path) -> str | None:
        if not (dest / DEPENDENCY_MANIFEST).is_file():
            return None
        print(f"Installing dependencies from {DEPENDENCY_MANIFEST} ...", file=sys.stderr)
        try:
            self.dependency_installer(dest)
        except DependencyInstallFailedError as e:
            # Extracted files are kept.
            print(f"warning: dependency install failed: {e}", file=sys.stderr)
            return f"dependency install failed: {e}"
        return None

    def _discard_archive(self, archive_path: Path) -> str | None:
        try:
            archive_path.unlink(missing_ok=True)
        except OSError as e:
            print(f"warning: could not delete temporary file {archive_path}: {e}", file=sys.stderr)
            return f"could not delete temporary file {archive_path}: {e}"
        return None
