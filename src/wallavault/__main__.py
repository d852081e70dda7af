"""wallavault command line.

Changes:
  - 2026-10-15: Added rotate-key and reset --force.
  - 2026-10-13: configure prompts for secrets instead of requiring flags.
  - 2026-10-10: Initial CLI (status, configure, test, save, migrate).
"""

import argparse
import asyncio
import getpass
import logging
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version

from wallavault.client.session import create_client
from wallavault.config import Settings, TransportPolicy, get_settings
from wallavault.exceptions import WallavaultError
from wallavault.lifecycle import shutdown_all
from wallavault.logging_setup import setup_logging
from wallavault.models import CredentialRecord
from wallavault.service import MessageType, WallabagService, create_service

logger = logging.getLogger(__name__)


def _version() -> str:
    try:
        return get_version("wallavault")
    except PackageNotFoundError:
        return "unknown"


def _line(label: str, value: object) -> None:
    print(f"  {label:<18} {value}")


async def cmd_status(service: WallabagService, args: argparse.Namespace) -> int:
    credentials = service.credentials
    masked = await credentials.debug_config()
    marker = await service.migration.get_status()
    info = await credentials.crypto.encryption_info()

    print("Credentials:")
    if not masked:
        print("  (none stored)")
    for key, value in masked.items():
        _line(key, value)

    validation = credentials.validate_config(await credentials.get_config())
    print("Status:")
    _line("configured", validation.valid)
    _line("token valid", await credentials.is_token_valid())
    _line("migration", f"{marker.status.value} (v{marker.version})")
    _line("encryption", f"{info['algorithm']}-{info['key_bits']} ({info['format']})")
    _line("key co-located", info["key_co_located"])
    for error in validation.errors:
        print(f"  ! {error}")
    for warning in validation.warnings:
        print(f"  ~ {warning}")
    return 0


async def cmd_configure(service: WallabagService, args: argparse.Namespace) -> int:
    credentials = service.credentials
    current = await credentials.get_config()

    if args.permissive_http:
        credentials.transport_policy = TransportPolicy.PERMISSIVE
        service.settings.transport_policy = TransportPolicy.PERMISSIVE
        service.settings.save()

    updates = {
        "server_url": args.server_url or current.server_url or input("Server URL: ").strip(),
        "client_id": args.client_id or current.client_id or input("Client ID: ").strip(),
        "client_secret": args.client_secret or getpass.getpass("Client secret: "),
        "username": args.username or current.username or input("Username: ").strip(),
        "password": args.password or getpass.getpass("Password: "),
    }
    candidate = current.merged(CredentialRecord.from_dict(updates))

    result = credentials.validate_config(candidate)
    for warning in result.warnings:
        print(f"warning: {warning}")
    if not result.valid:
        for error in result.errors:
            print(f"error: {error}", file=sys.stderr)
        return 1

    # New identity invalidates any session from the previous one
    await credentials.set_config(candidate.without_tokens())
    print("Configuration saved. Run 'wallavault test' to check the connection.")
    return 0


async def cmd_test(service: WallabagService, args: argparse.Namespace) -> int:
    async with await create_client(service.credentials, service.settings) as client:
        report = await client.test_connection()
    if report.ok:
        print(report.message)
        return 0
    print(f"Connection failed ({report.reason}): {report.message}", file=sys.stderr)
    return 1


async def cmd_save(service: WallabagService, args: argparse.Namespace) -> int:
    tags = [t.strip() for t in args.tags.split(",")] if args.tags else None
    response = await service.dispatch(
        {
            "type": MessageType.SAVE_PAGE.value,
            "payload": {"url": args.url, "title": args.title, "tags": tags},
        }
    )
    payload = response.payload or {}
    if response.type is MessageType.SAVE_PAGE_RESPONSE and payload.get("success"):
        print(f"Saved as entry {payload.get('entry_id')}")
        return 0
    print(
        f"Save failed ({payload.get('error') or payload.get('type')}): "
        f"{payload.get('message') or payload.get('error')}",
        file=sys.stderr,
    )
    return 1


async def cmd_migrate(service: WallabagService, args: argparse.Namespace) -> int:
    report = await service.migration.migrate()
    if not report.changed:
        print("Nothing to migrate; stored credentials are current.")
        return 0
    if report.migrated:
        print(f"Migrated from legacy encoding: {', '.join(report.migrated)}")
    if report.retagged:
        print(f"Re-tagged: {', '.join(report.retagged)}")
    if report.blanked:
        print(f"Cleared (unreadable, enter again): {', '.join(report.blanked)}")
    return 0


async def cmd_reset(service: WallabagService, args: argparse.Namespace) -> int:
    if not args.force:
        print("This deletes stored credentials and the master key. Re-run with --force.")
        return 1
    await service.migration.force_full_migration()
    print("Credentials and master key removed. Run 'wallavault configure'.")
    return 0


async def cmd_rotate_key(service: WallabagService, args: argparse.Namespace) -> int:
    await service.credentials.rotate_key()
    print("Master key rotated.")
    return 0


COMMANDS = {
    "status": cmd_status,
    "configure": cmd_configure,
    "test": cmd_test,
    "save": cmd_save,
    "migrate": cmd_migrate,
    "reset": cmd_reset,
    "rotate-key": cmd_rotate_key,
}

# Commands that manage migration themselves skip the startup gate
_SKIP_INITIALIZE = {"migrate", "reset"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wallavault",
        description="Encrypted wallabag credentials and session client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  wallavault configure --server-url https://app.wallabag.it
  wallavault test
  wallavault save https://example.com/article --tags python,reading
  wallavault status
""",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {_version()}")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show stored configuration (secrets masked)")

    configure = sub.add_parser("configure", help="Store server URL and credentials")
    configure.add_argument("--server-url")
    configure.add_argument("--client-id")
    configure.add_argument("--client-secret", help="Prompted for when omitted")
    configure.add_argument("--username")
    configure.add_argument("--password", help="Prompted for when omitted")
    configure.add_argument(
        "--permissive-http",
        action="store_true",
        help="Allow a plain-HTTP server URL (warning instead of error)",
    )

    sub.add_parser("test", help="Authenticate and read one entry")

    save = sub.add_parser("save", help="Save a URL to wallabag")
    save.add_argument("url")
    save.add_argument("--title")
    save.add_argument("--tags", help="Comma-separated tags")

    sub.add_parser("migrate", help="Re-encrypt legacy stored secrets")

    reset = sub.add_parser("reset", help="Delete credentials and the master key")
    reset.add_argument("--force", action="store_true")

    sub.add_parser("rotate-key", help="Re-encrypt credentials under a new master key")
    return parser


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    service = create_service(settings)
    if args.command not in _SKIP_INITIALIZE:
        await service.initialize()
    try:
        return await COMMANDS[args.command](service, args)
    except WallavaultError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"error ({e.error_type}): {e}", file=sys.stderr)
        return 1
    finally:
        await shutdown_all()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(level="DEBUG" if args.debug else settings.log_level)

    try:
        return asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
