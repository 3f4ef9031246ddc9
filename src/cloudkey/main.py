"""CLI entry point: ties together configuration, services and commands."""

from __future__ import annotations

import argparse
import logging
import sys

from cloudkey.auth.session import SessionKind
from cloudkey.config.settings import DEFAULT_CONFIG_PATH, SettingsError, load_settings


def _add_alias(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("alias", help="Session alias")


def _add_mfa(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--mfa-code", default=None, help="6-digit MFA code (prompted when needed)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloudkey",
        description="CloudKey: short-lived cloud credential sessions",
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to settings.yaml",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List configured sessions")

    add = sub.add_parser("add", help="Configure a new session")
    _add_alias(add)
    add.add_argument(
        "--kind",
        choices=[k.value for k in SessionKind],
        default=SessionKind.ASSUMED_ROLE.value,
    )
    add.add_argument("--role-arn")
    add.add_argument("--source-profile", help="Stored identity the role is assumed from")
    add.add_argument("--mfa-serial", help="MFA device ARN")
    add.add_argument("--profile", help="Provider profile for SSO or direct credentials")
    add.add_argument("--region")
    add.add_argument("--account-id")
    add.add_argument("--group")
    add.add_argument("--no-cache", action="store_true", help="Never cache MFA tokens (federation)")
    add.add_argument("--auto-renew", action="store_true")

    remove = sub.add_parser("remove", help="Delete a session (deactivating it first)")
    _add_alias(remove)

    rename = sub.add_parser("rename", help="Rename an inactive session")
    _add_alias(rename)
    rename.add_argument("new_alias")

    configure = sub.add_parser("configure", help="Change auto-renew / token-cache flags")
    _add_alias(configure)
    configure.add_argument("--auto-renew", action=argparse.BooleanOptionalAction, default=None)
    configure.add_argument("--no-cache", action=argparse.BooleanOptionalAction, default=None)

    activate = sub.add_parser("activate", help="Start a session")
    _add_alias(activate)
    _add_mfa(activate)
    activate.add_argument("--default", action="store_true", help="Also make it the default profile")

    renew = sub.add_parser("renew", help="Stop and restart a session")
    _add_alias(renew)
    _add_mfa(renew)

    deactivate = sub.add_parser("deactivate", help="Stop a session")
    _add_alias(deactivate)

    set_default = sub.add_parser("set-default", help="Make an active session the default profile")
    _add_alias(set_default)

    validate = sub.add_parser("validate", help="Dry-run a session configuration")
    _add_alias(validate)
    _add_mfa(validate)

    logs = sub.add_parser("logs", help="Show a session's activity log")
    _add_alias(logs)
    logs.add_argument("--clear", action="store_true")

    cache = sub.add_parser("cache", help="Inspect or maintain the MFA token cache")
    cache.add_argument("action", choices=["info", "prune", "clear"], nargs="?", default="info")

    export = sub.add_parser("export", help="Export session configuration as JSON")
    export.add_argument("--output", "-o")

    import_ = sub.add_parser("import", help="Import exported session configuration")
    import_.add_argument("file")
    import_.add_argument("--replace", action="store_true", help="Replace all sessions")

    watch = sub.add_parser("watch", help="Run the expiration sweep on a fixed cadence")
    watch.add_argument("--interval", type=int, default=None, help="Seconds between sweeps")
    watch.add_argument("--once", action="store_true", help="Run a single sweep and exit")

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    from cloudkey.factory import build_services
    from cloudkey.prompt import cli

    try:
        settings = load_settings(args.config)
    except SettingsError as exc:
        cli.console.print(f"[red]Invalid settings:[/red] {exc}")
        sys.exit(2)

    services = build_services(settings, notifier=cli.ConsoleNotificationSink())
    handler = getattr(cli, "cmd_" + args.command.replace("-", "_"))
    sys.exit(handler(services, args))


if __name__ == "__main__":
    main()
