from __future__ import annotations


class SkillGateError(RuntimeError):
    """Base class for every failure raised by skillgate."""

    code = "error"


class ConfigError(SkillGateError):
    code = "config"


class InvalidNameError(SkillGateError):
    code = "invalid_name"


class PathEscapeError(SkillGateError):
    code = "path_escape"


class LockedOutError(SkillGateError):
    code = "locked_out"


class ConnectionFailedError(SkillGateError):
    code = "connection_failed"


class VerificationDeniedError(SkillGateError):
    code = "verification_denied"


class DownloadError(SkillGateError):
    code = "download_failed"


class HostMismatchError(DownloadError):
    code = "host_mismatch"


class InsecureProtocolError(DownloadError):
    code = "insecure_protocol"


class TooManyRedirectsError(DownloadError):
    code = "too_many_redirects"


class IntegrityError(SkillGateError):
    code = "integrity"


class EmptyPackageError(IntegrityError):
    code = "empty_package"


class TooSmallError(IntegrityError):
    code = "too_small"


class ErrorPayloadError(IntegrityError):
    code = "error_payload"


class HashMismatchError(IntegrityError):
    code = "hash_mismatch"


class ExtractionFailedError(SkillGateError):
    code = "extraction_failed"


class DependencyInstallFailedError(SkillGateError):
    code = "dependency_install_failed"


class NotInstalledError(SkillGateError):
    code = "not_installed"
