from ._version import __version__
from .client import DownloadArtifact, SkillGateClient, Verdict
from .config import Config, load_config
from .errors import SkillGateError
from .installer import SkillInstaller
from .integrity import compute_package_hash, validate_package
from .licenses import LicenseCache, LicenseRecord
from .lockout import LOCKOUT_DURATION, MAX_FAILURES, LockoutState, LockoutStore, evaluate_lockout
from .manager import SkillManager
from .paths import Layout, assert_contained, validate_skill_name

__all__ = [
    "Config",
    "DownloadArtifact",
    "LOCKOUT_DURATION",
    "Layout",
    "LicenseCache",
    "LicenseRecord",
    "LockoutState",
    "LockoutStore",
    "MAX_FAILURES",
    "SkillGateClient",
    "SkillGateError",
    "SkillInstaller",
    "SkillManager",
    "Verdict",
    "__version__",
    "assert_contained",
    "compute_package_hash",
    "evaluate_lockout",
    "load_config",
    "validate_package",
    "validate_skill_name",
]
