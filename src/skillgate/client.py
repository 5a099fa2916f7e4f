from __future__ import annotations

import getpass
import sys
from dataclasses import dataclass
from typing import Any

import httpx

from .config import DEFAULT_DOWNLOAD_TIMEOUT_S, DEFAULT_TIMEOUT_S
from .errors import (
    ConnectionFailedError,
    DownloadError,
    HostMismatchError,
    InsecureProtocolError,
    TooManyRedirectsError,
)

MAX_REDIRECTS = 5
API_KEY_HEADER = "X-API-Key"
PACKAGE_HASH_HEADER = "x-package-hash"
CONNECTION_FAILED = "connection failed"


@dataclass(frozen=True)
class Verdict:
    valid: bool
    license: dict[str, Any] | None = None
    download_url: str | None = None
    error: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class DownloadArtifact:
    content: bytes
    expected_hash: str | None
    url: str


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _error_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in ("message", "code"):
            inner = value.get(key)
            if isinstance(inner, str) and inner.strip():
                return inner.strip()
    return None


class SkillGateClient:
    """
    Talks to the two remote services: the license API (``verify``) and the download
    host (``download``). Downloads never leave the configured host and never drop to
    plain HTTP, redirects included.
    """

    def __init__(
        self,
        *,
        api_url: str,
        download_url: str,
        api_key: str,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        download_timeout_s: float = DEFAULT_DOWNLOAD_TIMEOUT_S,
        user_id: str | None = None,
    ) -> None:
        self.api_url = api_url
        self.download_url = download_url
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.download_timeout_s = download_timeout_s
        self.user_id = user_id or _current_user()

        # Redirects are followed by hand in download() so every hop can be checked.
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=False)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "SkillGateClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def verify(self, skill_name: str, code: str) -> Verdict:
        payload = {
            "action": "activate",
            "skillName": skill_name,
            "code": code,
            "userId": self.user_id,
        }
        print(f"Contacting license server {self.api_url} ...", file=sys.stderr)
        try:
            resp = self._http.post(self.api_url, json=payload, headers={API_KEY_HEADER: self.api_key})
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            print(f"warning: license request failed: {e}", file=sys.stderr)
            return Verdict(
                valid=False,
                error=CONNECTION_FAILED,
                message=f"Could not reach the license server: {e}",
            )

        if not isinstance(body, dict):
            return Verdict(
                valid=False,
                error=CONNECTION_FAILED,
                message=f"Unexpected response from the license server (HTTP {resp.status_code}).",
            )

        if body.get("valid") is True and body.get("activated") is True:
            license = body.get("license")
            download_url = body.get("downloadUrl")
            return Verdict(
                valid=True,
                license=license if isinstance(license, dict) else {},
                download_url=download_url if isinstance(download_url, str) and download_url else None,
            )

        message = body.get("message")
        return Verdict(
            valid=False,
            error=_error_text(body.get("error")) or "verification failed",
            message=message if isinstance(message, str) else None,
        )

    def resolve_download_url(self, download_token: str) -> httpx.URL:
        token = (download_token or "").strip()
        if not token:
            raise DownloadError("Empty download token.")
        try:
            if "://" in token or token.startswith("//"):
                url = httpx.URL(self.download_url).join(token)
            else:
                if not token.startswith("/"):
                    token = "/" + token
                url = httpx.URL(self.download_url.rstrip("/") + token)
        except httpx.InvalidURL as e:
            raise DownloadError(f"Invalid download URL: {e}") from e
        self._check_hop(url)
        return url

    def _check_hop(self, url: httpx.URL) -> None:
        if url.scheme != "https":
            raise InsecureProtocolError(f"Refusing non-HTTPS download URL: {url}")
        allowed = httpx.URL(self.download_url)
        if (url.host, url.port) != (allowed.host, allowed.port):
            raise HostMismatchError(
                f"Download host {url.host!r} does not match the configured host {allowed.host!r}."
            )

    def download(self, download_token: str) -> DownloadArtifact:
        url = self.resolve_download_url(download_token)
        redirects = 0
        print("Downloading skill package ...", file=sys.stderr)
        while True:
            try:
                resp = self._http.get(url, timeout=self.download_timeout_s)
            except httpx.HTTPError as e:
                raise ConnectionFailedError(f"Download request failed: {e}") from e

            if resp.has_redirect_location:
                redirects += 1
                if redirects > MAX_REDIRECTS:
                    raise TooManyRedirectsError(f"Too many redirects (more than {MAX_REDIRECTS}).")
                try:
                    url = url.join(resp.headers["location"])
                except httpx.InvalidURL as e:
                    raise DownloadError(f"Invalid redirect location: {e}") from e
                self._check_hop(url)
                continue

            if resp.status_code != 200:
                raise DownloadError(f"Download failed: HTTP {resp.status_code}")
            break

        expected_hash = (resp.headers.get(PACKAGE_HASH_HEADER) or "").strip() or None
        if expected_hash is None:
            print("warning: server did not advertise a package hash; skipping integrity check", file=sys.stderr)
        return DownloadArtifact(content=resp.content, expected_hash=expected_hash, url=str(url))
