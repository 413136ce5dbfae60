"""Command-line tools: connection diagnostics and one-time device registration."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

import httpx

from .adapters.synology import (
    Credentials,
    EndpointResolver,
    NasHttp,
    SynologyPhotosError,
    parse_server_address,
)
from .adapters.synology.session import DEFAULT_DEVICE_NAME
from .diagnostics import config_snippet, run_diagnostics
from .registration import register_device
from .settings import EnvSettings, resolve_project_path


def parse_cli_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="synology-photos",
        description="Connection tools for the Synology Photos slideshow.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_server_arguments(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "server",
            help="QuickConnect address (mynas.quickconnect.to), LAN IP (192.168.1.100:5001) or DDNS hostname.",
        )
        subparser.add_argument("account", help="Synology account name.")
        subparser.add_argument(
            "--password",
            help="Account password (defaults to $SYNOLOGY_PASSWORD, otherwise prompts).",
        )
        subparser.add_argument("--port", type=int, help="Port when the server address has none.")
        subparser.add_argument(
            "--secure",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Force HTTPS on or off (default: HTTP only for port 5000).",
        )
        subparser.add_argument(
            "--token-file",
            type=Path,
            help="Device token path (defaults to $SLIDESHOW_DEVICE_TOKEN_PATH).",
        )
        subparser.add_argument("--device-name", default=DEFAULT_DEVICE_NAME, help="Device name shown in DSM.")

    diagnose = subparsers.add_parser("diagnose", help="Test the NAS connection step by step.")
    add_server_arguments(diagnose)
    diagnose.add_argument("--otp", help="2FA OTP code; registers this device on success.")
    diagnose.add_argument(
        "--save-thumbnail",
        type=Path,
        help="Write the downloaded test thumbnail to this file.",
    )

    register = subparsers.add_parser("register-device", help="Register this device to skip 2FA on later logins.")
    add_server_arguments(register)
    register.add_argument("--otp", required=True, help="2FA OTP code from your authenticator app.")
    register.add_argument("--force", action="store_true", help="Overwrite an existing device token.")
    return parser.parse_args(argv)


def _password(args: argparse.Namespace) -> str:
    if args.password:
        return args.password
    from_env = os.environ.get("SYNOLOGY_PASSWORD")
    if from_env:
        return from_env
    return getpass.getpass("Password: ")


def _token_path(args: argparse.Namespace) -> Path:
    if args.token_file is not None:
        return args.token_file
    return resolve_project_path(EnvSettings().slideshow_device_token_path)


def _build(args: argparse.Namespace) -> tuple[NasHttp, EndpointResolver]:
    target = parse_server_address(args.server, port=args.port)
    http = NasHttp(referer_host=target.host if target.is_relay_address else None)
    return http, EndpointResolver(http, target, secure=args.secure)


async def _diagnose(args: argparse.Namespace) -> int:
    credentials = Credentials(account=args.account, password=_password(args))
    http, resolver = _build(args)
    try:
        report = await run_diagnostics(
            http,
            resolver,
            credentials,
            token_path=_token_path(args),
            otp_code=args.otp,
            device_name=args.device_name,
            save_thumbnail_to=args.save_thumbnail,
        )
    finally:
        await http.aclose()

    for stage in report.stages:
        print(f"  [{'PASS' if stage.passed else 'FAIL'}] {stage.name}: {stage.detail}")
    if not report.passed:
        return 1

    print()
    print("  Add this to your slideshow config:")
    print()
    for line in config_snippet(resolver, report).splitlines():
        print(f"    {line}")
    return 0


async def _register(args: argparse.Namespace) -> int:
    token_path = _token_path(args)
    if token_path.exists() and not args.force:
        print(f"A device token already exists at {token_path}; pass --force to overwrite it.")
        return 1

    credentials = Credentials(account=args.account, password=_password(args))
    http, resolver = _build(args)
    try:
        candidate = await resolver.resolve()
        credential = await register_device(
            http,
            candidate,
            credentials,
            args.otp,
            server_host=resolver.target.host,
            token_path=token_path,
            device_name=args.device_name,
        )
    finally:
        await http.aclose()

    print(f"Device registered successfully ({credential.device_id[:8]}...), saved to {token_path}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_cli_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    handler = _diagnose if args.command == "diagnose" else _register
    try:
        return asyncio.run(handler(args))
    except (SynologyPhotosError, httpx.HTTPError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
