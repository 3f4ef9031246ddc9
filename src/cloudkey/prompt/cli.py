"""Command handlers and console rendering for the ``cloudkey`` CLI.

Pattern: Prompt Renderer
-------------------------
The CLI is the human-facing boundary.  Each handler looks a session up in
the ``SessionStore``, delegates the transition to the
``SessionLifecycleManager``, writes the resulting session back and renders
the outcome with Rich.  It also plays two collaborator roles the lifecycle
core only knows by interface: the MFA-code provider (an ``input`` prompt)
and the notification sink (console messages).
"""

from __future__ import annotations

import argparse
import dataclasses
import datetime
import logging
import pathlib
import time

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cloudkey.auth.session import Session, SessionKind, SessionStatus, utcnow
from cloudkey.factory import Services
from cloudkey.lifecycle.manager import LifecycleError
from cloudkey.store.session_store import SessionStoreError, rename
from cloudkey.validation.validator import Severity

logger = logging.getLogger(__name__)
console = Console()

_STATUS_STYLES = {
    SessionStatus.ACTIVE: "green",
    SessionStatus.EXPIRING_SOON: "yellow",
    SessionStatus.INACTIVE: "dim",
}

_SEVERITY_ICONS = {
    Severity.SUCCESS: "[green]✓[/green]",
    Severity.WARNING: "[yellow]![/yellow]",
    Severity.ERROR: "[red]✗[/red]",
}


class ConsoleNotificationSink:
    """Prints sweep notifications to the console."""

    def notify_expiring_soon(self, session: Session, minutes_remaining: int) -> None:
        console.print(
            f"[yellow]⏰ {session.alias} expires in {minutes_remaining} minute(s).[/yellow] "
            f"Run [bold]cloudkey renew {session.alias}[/bold] to extend it."
        )

    def notify_auto_renew_needs_mfa(self, session: Session) -> None:
        console.print(
            f"[yellow]🔐 {session.alias} needs an MFA code to renew.[/yellow] "
            f"Run [bold]cloudkey renew {session.alias}[/bold]."
        )

    def notify_auto_renew_failed(self, session: Session, error: Exception) -> None:
        console.print(f"[red]Auto-renew of {session.alias} failed:[/red] {error}")

    def notify_auto_renew_succeeded(self, session: Session) -> None:
        console.print(f"[green]🔄 {session.alias} renewed automatically.[/green]")


def prompt_mfa_code(session: Session) -> str | None:
    """Ask for a 6-digit code; ``None`` when the user cancels."""
    try:
        code = input(f"  MFA code for {session.alias} ({session.mfa_device_id}): ").strip()
    except (EOFError, KeyboardInterrupt):
        console.print()
        return None
    return code or None


def _fail(message: str) -> int:
    console.print(f"[red]{message}[/red]")
    return 1


def _remaining(session: Session, now: datetime.datetime) -> str:
    remaining = session.remaining_at(now)
    if remaining is None:
        return "-" if not session.active else "no expiry"
    seconds = int(remaining.total_seconds())
    if seconds <= 0:
        return "expired"
    hours, minutes = seconds // 3600, (seconds % 3600) // 60
    return f"{hours}h {minutes}m" if hours else f"{minutes}m"


def _print_logs(session: Session, limit: int = 5) -> None:
    for line in session.activity_log[-limit:]:
        console.print(f"  [dim]{line}[/dim]")


# -- commands ------------------------------------------------------------------


def cmd_list(services: Services, args: argparse.Namespace) -> int:
    now = utcnow()
    window = datetime.timedelta(seconds=services.settings.expiry_warning_threshold)
    sessions = sorted(services.sessions.all(), key=lambda s: ((s.group or ""), s.alias))
    if not sessions:
        console.print("[dim]No sessions configured. Use [bold]cloudkey add[/bold].[/dim]")
        return 0

    table = Table(title="Sessions")
    table.add_column("Alias", style="bold")
    table.add_column("Group", style="cyan")
    table.add_column("Kind")
    table.add_column("Region")
    table.add_column("Status")
    table.add_column("Remaining")
    table.add_column("Flags")
    for session in sessions:
        status = session.status_at(now, window)
        flags = []
        if session.auto_renew:
            flags.append("auto-renew")
        if session.bypass_token_cache:
            flags.append("no-cache")
        if services.manager.is_active_identity(session):
            flags.append(services.settings.active_identity_section)
        table.add_row(
            session.alias,
            session.group or "",
            session.kind.value,
            session.region,
            f"[{_STATUS_STYLES[status]}]{status.value}[/{_STATUS_STYLES[status]}]",
            _remaining(session, now),
            ", ".join(flags),
        )
    console.print(table)
    return 0


def cmd_add(services: Services, args: argparse.Namespace) -> int:
    try:
        session = Session(
            alias=args.alias,
            kind=SessionKind(args.kind),
            region=args.region or "",
            account_id=args.account_id or "",
            role_arn=args.role_arn,
            mfa_device_id=args.mfa_serial,
            source_identity=args.source_profile,
            profile_name=args.profile,
            group=args.group,
            bypass_token_cache=args.no_cache,
            auto_renew=args.auto_renew,
        )
        services.sessions.add(session)
    except (ValueError, SessionStoreError) as exc:
        return _fail(str(exc))
    console.print(f"[green]Added[/green] {session.alias} ({session.kind.value})")
    return 0


def cmd_remove(services: Services, args: argparse.Namespace) -> int:
    try:
        session = services.sessions.find_by_alias(args.alias)
        if session.active:
            session = services.manager.deactivate(session)
        services.sessions.remove(session.id)
    except SessionStoreError as exc:
        return _fail(str(exc))
    console.print(f"Removed {args.alias}")
    return 0


def cmd_rename(services: Services, args: argparse.Namespace) -> int:
    try:
        session = services.sessions.find_by_alias(args.alias)
        services.sessions.update(rename(session, args.new_alias))
    except (ValueError, SessionStoreError) as exc:
        return _fail(str(exc))
    console.print(f"Renamed {args.alias} to {args.new_alias}")
    return 0


def cmd_configure(services: Services, args: argparse.Namespace) -> int:
    """Toggle the per-session auto-renew / token-cache flags."""
    try:
        session = services.sessions.find_by_alias(args.alias)
    except SessionStoreError as exc:
        return _fail(str(exc))
    changes: dict[str, bool] = {}
    if args.auto_renew is not None:
        changes["auto_renew"] = args.auto_renew
    if args.no_cache is not None:
        changes["bypass_token_cache"] = args.no_cache
    session = services.sessions.update(dataclasses.replace(session, **changes))
    console.print(
        f"{session.alias}: auto-renew={'on' if session.auto_renew else 'off'}, "
        f"token cache={'bypassed' if session.bypass_token_cache else 'used'}"
    )
    return 0


def _run_transition(services: Services, args: argparse.Namespace, renew: bool) -> int:
    try:
        session = services.sessions.find_by_alias(args.alias)
    except SessionStoreError as exc:
        return _fail(str(exc))

    mfa_code = args.mfa_code
    if mfa_code is None and services.manager.requires_mfa_code(session):
        mfa_code = prompt_mfa_code(session)
        if mfa_code is None:
            return _fail("Cancelled: an MFA code is required.")

    verb = "Renewing" if renew else "Activating"
    try:
        with console.status(f"{verb} {session.alias}..."):
            if renew:
                session = services.manager.renew(session, mfa_code)
            else:
                session = services.manager.activate(session, mfa_code)
    except LifecycleError as exc:
        services.sessions.update(exc.session)
        _print_logs(exc.session, limit=1)
        return _fail(f"{verb} {session.alias} failed: {exc.cause}")

    if getattr(args, "default", False):
        try:
            session = services.manager.set_active_identity(session)
        except LifecycleError as exc:
            session = exc.session
            console.print(f"[yellow]Could not set as default:[/yellow] {exc.cause}")

    services.sessions.update(session)
    services.sessions.mark_recent(session.id)
    console.print(f"[green]{session.alias} is active[/green] ({_remaining(session, utcnow())} left)")
    _print_logs(session)
    return 0


def cmd_activate(services: Services, args: argparse.Namespace) -> int:
    return _run_transition(services, args, renew=False)


def cmd_renew(services: Services, args: argparse.Namespace) -> int:
    return _run_transition(services, args, renew=True)


def cmd_deactivate(services: Services, args: argparse.Namespace) -> int:
    try:
        session = services.sessions.find_by_alias(args.alias)
    except SessionStoreError as exc:
        return _fail(str(exc))
    session = services.sessions.update(services.manager.deactivate(session))
    console.print(f"{session.alias} is inactive")
    _print_logs(session, limit=2)
    return 0


def cmd_set_default(services: Services, args: argparse.Namespace) -> int:
    try:
        session = services.sessions.find_by_alias(args.alias)
        session = services.manager.set_active_identity(session)
    except SessionStoreError as exc:
        return _fail(str(exc))
    except LifecycleError as exc:
        services.sessions.update(exc.session)
        return _fail(str(exc.cause))
    services.sessions.update(session)
    console.print(
        f"[green]{session.alias} is now the [{services.settings.active_identity_section}] profile[/green]"
    )
    return 0


def cmd_validate(services: Services, args: argparse.Namespace) -> int:
    try:
        session = services.sessions.find_by_alias(args.alias)
    except SessionStoreError as exc:
        return _fail(str(exc))
    with console.status(f"Validating {session.alias}..."):
        report = services.validator.validate_session(session, mfa_code=args.mfa_code)
    for result in report.results:
        console.print(f"  {_SEVERITY_ICONS[result.severity]} {result.message}")
    if report.is_valid:
        console.print("[green]Profile is valid.[/green]")
        return 0
    return _fail("Profile has errors.")


def cmd_logs(services: Services, args: argparse.Namespace) -> int:
    try:
        session = services.sessions.find_by_alias(args.alias)
    except SessionStoreError as exc:
        return _fail(str(exc))
    if args.clear:
        services.sessions.update(services.manager.clear_activity_log(session))
        console.print(f"Cleared activity log of {session.alias}")
        return 0
    if not session.activity_log:
        console.print("[dim]No activity yet.[/dim]")
    for line in session.activity_log:
        console.print(line, markup=False, highlight=False)
    return 0


def cmd_cache(services: Services, args: argparse.Namespace) -> int:
    cache = services.token_cache
    if args.action == "clear":
        cache.clear()
        console.print("MFA session token cache cleared.")
    elif args.action == "prune":
        console.print(f"Pruned {cache.prune_expired()} expired token(s).")
    else:
        console.print(cache.describe(), markup=False, highlight=False)
    return 0


def cmd_export(services: Services, args: argparse.Namespace) -> int:
    payload = services.sessions.export_profiles()
    if args.output:
        pathlib.Path(args.output).write_text(payload + "\n", encoding="utf-8")
        console.print(f"Exported profiles to {args.output}")
    else:
        print(payload)
    return 0


def cmd_import(services: Services, args: argparse.Namespace) -> int:
    try:
        raw = pathlib.Path(args.file).read_text(encoding="utf-8")
        added = services.sessions.import_profiles(raw, replace=args.replace)
    except OSError as exc:
        return _fail(f"Cannot read {args.file}: {exc}")
    except SessionStoreError as exc:
        return _fail(str(exc))
    console.print(f"Imported {added} profile(s).")
    return 0


def cmd_watch(services: Services, args: argparse.Namespace) -> int:
    """Run the expiration sweep on a fixed cadence until interrupted."""
    interval = args.interval or services.settings.sweep_interval
    console.print(
        Panel(
            "[bold]CloudKey[/bold]\n"
            f"Watching sessions every {interval}s.  Press Ctrl+C to stop.",
            border_style="blue",
        )
    )
    try:
        while True:
            sweep_once(services)
            if args.once:
                break
            time.sleep(interval)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped watching.[/dim]")
    return 0


def sweep_once(services: Services) -> list[Session]:
    """One scheduler tick: reload state, sweep, persist what changed."""
    services.sessions.reload()
    services.token_cache.reload()
    before = services.sessions.all()
    after = services.manager.expiration_sweep(before)
    changed = [new for old, new in zip(before, after) if new is not old]
    if changed:
        services.sessions.update_many(changed)
        logger.info("Sweep updated %d session(s)", len(changed))
    return changed
