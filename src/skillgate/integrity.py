from __future__ import annotations

import hashlib
import json
import re
import sys
from pathlib import Path

from .errors import EmptyPackageError, ErrorPayloadError, HashMismatchError, TooSmallError

MIN_VALID_PACKAGE_SIZE = 1000  # bytes; anything smaller is most likely an error response
DEFAULT_HASH_ALGORITHM = "sha256"
SUPPORTED_HASH_ALGORITHMS = frozenset({"sha256", "sha384", "sha512"})

_HEX_RE = re.compile(r"[0-9a-fA-F]+")


def compute_package_hash(content: bytes, algorithm: str = DEFAULT_HASH_ALGORITHM) -> str:
    h = hashlib.new(algorithm)
    h.update(content)
    return f"{algorithm}:{h.hexdigest()}"


def _error_message(content: bytes) -> str | None:
    try:
        obj = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(obj, dict) or "error" not in obj:
        return None
    err = obj["error"]
    if isinstance(err, dict):
        err = err.get("message") or err.get("code") or json.dumps(err, sort_keys=True)
    if err is None or err is False or err == "":
        return None
    return str(err)


def _split_hash(expected_hash: str) -> tuple[str, str]:
    value = expected_hash.strip()
    if ":" in value:
        algorithm, digest = value.split(":", 1)
    else:
        algorithm, digest = DEFAULT_HASH_ALGORITHM, value
    return algorithm.strip().lower(), digest.strip().lower()


def _discard(artifact: Path | None) -> None:
    if artifact is None:
        return
    try:
        artifact.unlink(missing_ok=True)
    except OSError as e:
        print(f"warning: could not delete {artifact}: {e}", file=sys.stderr)


def validate_package(
    content: bytes,
    expected_hash: str | None = None,
    *,
    artifact: Path | None = None,
) -> None:
    """
    Check downloaded package bytes before anything is extracted.

    Small payloads are inspected for a JSON ``{"error": ...}`` body so the server's own
    message reaches the user instead of a generic size complaint. When ``expected_hash``
    is given (``sha256:<hex>``; bare hex is read as sha256) the digest must match. On a
    mismatch ``artifact`` is deleted before the error is raised.
    """
    if not content:
        raise EmptyPackageError("Downloaded package is empty.")

    if len(content) < MIN_VALID_PACKAGE_SIZE:
        message = _error_message(content)
        if message is not None:
            raise ErrorPayloadError(f"Download failed: {message}")
        raise TooSmallError(
            f"Downloaded package is only {len(content)} bytes (minimum {MIN_VALID_PACKAGE_SIZE})."
        )

    if expected_hash is None:
        return

    algorithm, digest = _split_hash(expected_hash)
    if algorithm not in SUPPORTED_HASH_ALGORITHMS or not _HEX_RE.fullmatch(digest):
        _discard(artifact)
        raise HashMismatchError(f"Unsupported or malformed package hash: {expected_hash!r}")

    expected = f"{algorithm}:{digest}"
    actual = compute_package_hash(content, algorithm)
    if actual != expected:
        _discard(artifact)
        raise HashMismatchError(f"Integrity check failed. Expected {expected}, got {actual}.")
    print(f"Integrity check passed ({algorithm}).", file=sys.stderr)
