from __future__ import annotations

import argparse
import json
import sys
import textwrap
from typing import Any, Callable, TypeVar

from ._version import __version__
from .client import SkillGateClient
from .config import Config, load_config, redact_secret, with_overrides
from .errors import SkillGateError
from .installer import NpmDependencyInstaller, SkillInstaller
from .manager import SkillManager
from .paths import Layout

T = TypeVar("T")

COMMANDS = ("verify", "install", "learn", "update", "list", "remove", "check")
# Commands whose JSON result is keyed on "valid" rather than "success".
VALIDITY_COMMANDS = ("verify", "check")
_OPTIONS_WITH_VALUE = ("--home", "--timeout-s")


class CliUsageError(Exception):
    def __init__(self, message: str, usage: str) -> None:
        super().__init__(message)
        self.message = message
        self.usage = usage


class _JsonArgumentParser(argparse.ArgumentParser):
    # Usage problems are reported as JSON on stdout instead of argparse's stderr text.
    def error(self, message: str):  # type: ignore[override]
        raise CliUsageError(message, self.format_usage().strip())


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, sort_keys=True))


def build_parser() -> argparse.ArgumentParser:
    p = _JsonArgumentParser(
        prog="skillgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="License-gated skill installer. Every command prints one JSON line on stdout.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLGATE_API_URL, SKILLGATE_DOWNLOAD_URL, SKILLGATE_API_KEY (required for
              verify/install/learn/update), SKILLGATE_TIMEOUT_S, SKILLGATE_HOME,
              SKILLGATE_NPM_REGISTRY, SKILLGATE_CONFIG_PATH
            """
        ),
    )
    p.add_argument("--home", help="State root holding skills/ and licenses/ (overrides config/env)")
    p.add_argument("--timeout-s", type=float, help="License API timeout in seconds")
    p.add_argument("--version", action="version", version=f"skillgate {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    verify = sub.add_parser("verify", help="Verify a license code and cache the license")
    verify.add_argument("skill_name")
    verify.add_argument("license_code")

    install = sub.add_parser("install", help="Download and install a skill using a download token")
    install.add_argument("skill_name")
    install.add_argument("download_token")

    learn = sub.add_parser("learn", help="Verify a license code, then download and install the skill")
    learn.add_argument("skill_name")
    learn.add_argument("license_code")

    update = sub.add_parser("update", help="Re-verify and reinstall an installed skill")
    update.add_argument("skill_name")
    update.add_argument("license_code")

    sub.add_parser("list", help="List cached licenses")

    remove = sub.add_parser("remove", help="Remove an installed skill (the license is kept)")
    remove.add_argument("skill_name")

    check = sub.add_parser("check", help="Check the cached license for a skill")
    check.add_argument("skill_name")

    return p


def _load_cfg(args: argparse.Namespace) -> Config:
    return with_overrides(load_config(), home=args.home, timeout_s=args.timeout_s)


def _client_from_cfg(cfg: Config) -> SkillGateClient:
    return SkillGateClient(
        api_url=cfg.api_url or "",
        download_url=cfg.download_url or "",
        api_key=cfg.api_key or "",
        timeout_s=cfg.timeout_s,
        download_timeout_s=cfg.download_timeout_s,
    )


def _installer_from_cfg(cfg: Config, layout: Layout) -> SkillInstaller:
    return SkillInstaller(layout, dependency_installer=NpmDependencyInstaller(registry=cfg.npm_registry))


def _run_remote(args: argparse.Namespace, action: Callable[[SkillManager], T]) -> T:
    cfg = _load_cfg(args).require_remote()
    print(f"Using API key {redact_secret(cfg.api_key)}", file=sys.stderr)
    layout = Layout(cfg.home)
    client = _client_from_cfg(cfg)
    try:
        manager = SkillManager(layout=layout, client=client, installer=_installer_from_cfg(cfg, layout))
        return action(manager)
    finally:
        client.close()


def _local_manager(args: argparse.Namespace) -> SkillManager:
    cfg = _load_cfg(args)
    return SkillManager(layout=Layout(cfg.home))


def cmd_verify(args: argparse.Namespace) -> int:
    result = _run_remote(args, lambda m: m.verify(args.skill_name, args.license_code))
    _emit(result.to_json())
    return 0 if result.valid else 1


def cmd_install(args: argparse.Namespace) -> int:
    result = _run_remote(args, lambda m: m.install(args.skill_name, args.download_token))
    _emit(result.to_json())
    return 0


def cmd_learn(args: argparse.Namespace) -> int:
    result = _run_remote(args, lambda m: m.learn(args.skill_name, args.license_code))
    _emit(result.to_json())
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    result = _run_remote(args, lambda m: m.update(args.skill_name, args.license_code))
    _emit(result.to_json())
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    summaries = _local_manager(args).list_licenses()
    _emit({"skills": [s.to_json() for s in summaries]})
    return 0


def cmd_remove(args: argparse.Namespace) -> int:
    result = _local_manager(args).remove(args.skill_name)
    _emit(result.to_json())
    return 0 if result.success else 1


def cmd_check(args: argparse.Namespace) -> int:
    result = _local_manager(args).check(args.skill_name)
    _emit(result.to_json())
    return 0 if result.valid else 1


_HANDLERS: dict[str, Callable[[argparse.Namespace], int]] = {
    "verify": cmd_verify,
    "install": cmd_install,
    "learn": cmd_learn,
    "update": cmd_update,
    "list": cmd_list,
    "remove": cmd_remove,
    "check": cmd_check,
}


def _first_positional(argv: list[str]) -> str | None:
    skip_next = False
    for token in argv:
        if skip_next:
            skip_next = False
            continue
        if token in _OPTIONS_WITH_VALUE:
            skip_next = True
            continue
        if token.startswith("-"):
            continue
        return token
    return None


def _failure(cmd: str, message: str, code: str) -> dict[str, Any]:
    key = "valid" if cmd in VALIDITY_COMMANDS else "success"
    return {key: False, "error": message, "code": code}


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        args = build_parser().parse_args(argv)
    except CliUsageError as e:
        cmd = _first_positional(argv)
        if cmd is not None and cmd not in COMMANDS:
            _emit({"error": f"unknown command: {cmd}"})
        else:
            _emit({"error": e.message, "usage": e.usage})
        return 2

    try:
        return _HANDLERS[args.cmd](args)
    except SkillGateError as e:
        print(f"error: {e}", file=sys.stderr)
        _emit(_failure(args.cmd, str(e), e.code))
        return 1
    except Exception as e:  # noqa: BLE001
        print(f"error: unexpected {type(e).__name__}: {e}", file=sys.stderr)
        _emit(_failure(args.cmd, f"internal error: {e}", "internal"))
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
