from __future__ import annotations

import os
import re
from pathlib import Path

from .errors import InvalidNameError, PathEscapeError

RESERVED_SKILL_NAMES = frozenset({"skill-installer"})
SKILL_NAME_RE = re.compile(r"[a-z][a-z0-9-]{1,30}")

SKILLS_DIRNAME = "skills"
LICENSES_DIRNAME = "licenses"
LOCKOUT_FILENAME = ".rate-limit-lockout.json"


def validate_skill_name(name: object) -> str:
    """
    Check a skill name before it is used to build any path or request.

    Accepts exactly ``[a-z][a-z0-9-]{1,30}`` (2 to 31 characters) and refuses the
    installer's own name. No filesystem access happens here.
    """
    if not isinstance(name, str) or not SKILL_NAME_RE.fullmatch(name):
        raise InvalidNameError(
            f"Invalid skill name {name!r}. Expected 2-31 characters: a lowercase letter "
            "followed by lowercase letters, digits or '-'."
        )
    if name in RESERVED_SKILL_NAMES:
        raise InvalidNameError(f"Skill name {name!r} is reserved.")
    return name


def assert_contained(path: str | Path, base_dir: str | Path) -> Path:
    resolved = Path(os.path.abspath(path)).resolve()
    base = Path(os.path.abspath(base_dir)).resolve()
    if resolved == base:
        return resolved
    base_s = str(base)
    prefix = base_s if base_s.endswith(os.sep) else base_s + os.sep
    if not str(resolved).startswith(prefix):
        raise PathEscapeError(f"Path escapes {base}: {resolved}")
    return resolved


class Layout:
    """Per-user state tree: ``<root>/skills/<name>`` and ``<root>/licenses/<name>.json``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()
        self.skills_dir = self.root / SKILLS_DIRNAME
        self.licenses_dir = self.root / LICENSES_DIRNAME
        self.lockout_path = self.licenses_dir / LOCKOUT_FILENAME

    def skill_dir(self, name: str) -> Path:
        skill = validate_skill_name(name)
        return assert_contained(self.skills_dir / skill, self.skills_dir)

    def license_path(self, name: str) -> Path:
        skill = validate_skill_name(name)
        return assert_contained(self.licenses_dir / f"{skill}.json", self.licenses_dir)
