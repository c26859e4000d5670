# Command-line entry point
#
#   iforgotpassword status              local store summary
#   iforgotpassword sync --email ...    unlock, run one sync pass, lock
#   iforgotpassword audit               recent audit events
#   iforgotpassword generate-password   print a random password
#
# Settings come from IFP_* environment variables or a .env file.

import argparse
import asyncio
import getpass
import logging
import sys

from . import __version__
from .auth import AuthService, SessionHolder
from .core import ClientSettings, EventSeverity, VaultError, get_audit_logger, set_audit_logger
from .core.audit_log import AuditLogger
from .crypto.password_gen import PasswordOptions, calculate_strength, generate_password
from .sync import ApiClient, SyncEngine
from .vault import LocalStore
from .vault.local_store import KV_USER_EMAIL

logger = logging.getLogger(__name__)


def _cmd_status(settings: ClientSettings, args) -> int:
    store = LocalStore(settings.store_path)
    device_id = store.get_device_id()
    meta = store.get_sync_metadata(device_id)

    print(f"Store:            {settings.store_path}")
    print(f"Account:          {store.get_value(KV_USER_EMAIL) or '(not registered)'}")
    print(f"Device:           {device_id}")
    print(f"Items:            {store.count()} ({store.count(include_deleted=True) - store.count()} deleted)")
    print(f"Queued changes:   {store.queue_length()}")
    if meta is not None:
        print(f"Sync version:     {meta.last_sync_version}")
        print(f"Last sync:        {meta.last_sync_timestamp or 'never'}")
    else:
        print("Last sync:        never")
    return 0


async def _run_sync(settings: ClientSettings, email: str, password: str) -> int:
    store = LocalStore(settings.store_path)
    session = SessionHolder(settings.auto_lock_minutes)

    async with ApiClient(
        settings.api_url,
        timeout=settings.request_timeout,
        on_tokens_changed=session.set_tokens,
    ) as api:
        auth = AuthService(store, api, session, settings)
        await auth.unlock(email, password)
        try:
            engine = SyncEngine(store, api, max_retries=settings.max_retries)
            report = await engine.full_sync()
        finally:
            auth.lock()

    print(f"Status:     {report.status.value}")
    print(f"Pulled:     {report.pulled} ({report.deleted} deletions)")
    print(f"Pushed:     {report.pushed}")
    print(f"Conflicts:  {len(report.conflicts)}")
    print(f"Dropped:    {report.dropped}")
    print(f"Version:    {report.current_version}")
    if report.error:
        print(f"Error:      {report.error}")
    return 0 if report.ok else 1


def _cmd_sync(settings: ClientSettings, args) -> int:
    password = getpass.getpass("Master password: ")
    try:
        return asyncio.run(_run_sync(settings, args.email, password))
    except VaultError as e:
        print(f"Sync failed: {e}", file=sys.stderr)
        return 1


def _cmd_audit(settings: ClientSettings, args) -> int:
    severity = EventSeverity(args.severity) if args.severity else None
    events = get_audit_logger().query_events(
        event_types=args.type or None,
        severity=severity,
        limit=args.limit,
    )
    for event in events:
        print(f"{event.get('timestamp', '?'):<32} {event['severity']:<11} {event['event_type']:<24} {event['message']}")
    if not events:
        print("No audit events.")
    return 0


def _cmd_generate(settings: ClientSettings, args) -> int:
    options = PasswordOptions(
        length=args.length,
        lowercase=not args.no_lowercase,
        uppercase=not args.no_uppercase,
        digits=not args.no_digits,
        symbols=not args.no_symbols,
        exclude_similar=args.exclude_similar,
        exclude_ambiguous=args.exclude_ambiguous,
    )
    try:
        password = generate_password(options)
    except VaultError as e:
        print(str(e), file=sys.stderr)
        return 2
    print(password)
    if args.strength:
        score, label = calculate_strength(password)
        print(f"Strength: {label} ({score}/100)", file=sys.stderr)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iforgotpassword",
        description="iForgotPassword - zero-knowledge password manager client",
    )
    parser.add_argument("--env-file", help="Load settings from this .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--version",
        action="version",
        version=f"iforgotpassword {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show local store and sync state")
    status.set_defaults(func=_cmd_status)

    sync = sub.add_parser("sync", help="Unlock and run one sync pass")
    sync.add_argument("--email", required=True, help="Account email")
    sync.set_defaults(func=_cmd_sync)

    audit = sub.add_parser("audit", help="Show recent audit events")
    audit.add_argument("-t", "--type", action="append", help="Only this event type (repeatable)")
    audit.add_argument(
        "-s", "--severity",
        choices=[s.value for s in EventSeverity],
        help="Only this severity",
    )
    audit.add_argument("-n", "--limit", type=int, default=20)
    audit.set_defaults(func=_cmd_audit)

    gen = sub.add_parser("generate-password", help="Generate a random password")
    gen.add_argument("-l", "--length", type=int, default=16)
    gen.add_argument("--no-lowercase", action="store_true")
    gen.add_argument("--no-uppercase", action="store_true")
    gen.add_argument("--no-digits", action="store_true")
    gen.add_argument("--no-symbols", action="store_true")
    gen.add_argument("--exclude-similar", action="store_true", help="Skip 0 O l 1 I")
    gen.add_argument("--exclude-ambiguous", action="store_true", help="Skip brackets, quotes and punctuation")
    gen.add_argument("--strength", action="store_true", help="Also report strength on stderr")
    gen.set_defaults(func=_cmd_generate)

    return parser


def main(argv=None) -> int:
    """Main entry point for the iforgotpassword CLI."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = ClientSettings.from_env(args.env_file)
    if args.func is not _cmd_generate:
        set_audit_logger(AuditLogger(settings.audit_log_dir))

    try:
        return args.func(settings, args)
    finally:
        if args.func is not _cmd_generate:
            get_audit_logger().close()


if __name__ == "__main__":
    sys.exit(main())
