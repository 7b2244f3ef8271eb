"""
Nalid24 - Command line entry point.

Local account management: create the identity, show the invite payload,
list and remove contacts, and set the unlock PIN. Everything here works on
the local store only; messaging needs a realtime store connection and goes
through MessengerClient.
"""

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config
from .constants import CONFIG_FILENAME, LOG_FILENAME, STORE_FILENAME
from .contact import ContactManager
from .errors import NalidError
from .identity import IdentityManager
from .pin import PinManager
from .qr_code import build_qr_payload
from .storage import LocalStore
from .utils import configure_logging

logger = logging.getLogger(__name__)

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nalid24",
        description="Nalid24 - Ephemeral two-party messenger (local account tools)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  nalid24 init alice              # Create the local identity
  nalid24 invite                  # Print the payload for your QR code
  nalid24 contacts                # List contacts
  nalid24 --data-dir ~/n24 whoami # Use a custom data directory
        """,
    )

    parser.add_argument("--version", action="version", version=f"Nalid24 {__version__}")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Data directory for the local store and logs",
    )
    parser.add_argument("--config", type=str, default=None, help="Path to a TOML configuration file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create the local identity")
    init_parser.add_argument("username", help="Display name shared with contacts")

    subparsers.add_parser("whoami", help="Show the local identity")

    invite_parser = subparsers.add_parser("invite", help="Print the QR invite payload")
    invite_parser.add_argument("--handle", default=None, help="Push notification handle to include")

    subparsers.add_parser("contacts", help="List contacts")

    remove_parser = subparsers.add_parser("remove-contact", help="Remove a contact locally")
    remove_parser.add_argument("contact_id", help="Id of the contact to remove")

    pin_parser = subparsers.add_parser("set-pin", help="Set the unlock PIN")
    pin_parser.add_argument("pin", nargs="?", default=None, help="4-digit PIN (prompted if omitted)")

    subparsers.add_parser("init-config", help="Write an example configuration file")

    return parser


async def run_command(args: argparse.Namespace, config: Config, data_dir: Path) -> int:
    store = LocalStore(data_dir / config.get("storage", "store_filename", STORE_FILENAME))
    identity = IdentityManager(store)
    contacts = ContactManager(store)

    if args.command == "init":
        existing = await identity.get_user()
        if existing is not None:
            console.print(f"[yellow]Identity already exists:[/yellow] {existing.username} ({existing.uid})")
            return 1
        user = await identity.create_user(args.username)
        console.print(f"[green]Created identity[/green] {user.username} ({user.uid})")
        return 0

    if args.command == "init-config":
        path = Path(args.config).expanduser() if args.config else data_dir / CONFIG_FILENAME
        Config.create_example(path)
        console.print(f"Example configuration written to {path}")
        return 0

    user = await identity.require_user()

    if args.command == "whoami":
        console.print(f"[bold]{user.username}[/bold]")
        console.print(f"Id: {user.uid}")
        handle = await identity.get_notification_handle()
        if handle:
            console.print(f"Notification handle: {handle}")
        return 0

    if args.command == "invite":
        handle = args.handle or await identity.get_notification_handle()
        console.print(build_qr_payload(user.uid, user.username, handle), markup=False, soft_wrap=True)
        return 0

    if args.command == "contacts":
        entries = await contacts.list_contacts()
        if not entries:
            console.print("No contacts yet.")
            return 0
        table = Table(title="Contacts")
        table.add_column("Username", style="cyan")
        table.add_column("Id")
        table.add_column("Push", justify="center")
        for contact in entries:
            table.add_row(contact.username, contact.uid, "yes" if contact.notification_handle else "-")
        console.print(table)
        return 0

    if args.command == "remove-contact":
        if await contacts.remove_contact(args.contact_id):
            console.print(f"Removed contact {args.contact_id}")
            return 0
        console.print(f"[yellow]No contact with id {args.contact_id}[/yellow]")
        return 1

    if args.command == "set-pin":
        pin = args.pin or getpass.getpass("New PIN: ")
        await PinManager(store).set_pin(pin)
        console.print("[green]PIN updated[/green]")
        return 0

    return 2


def main(argv=None) -> int:
    """Main entry point for the nalid24 command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except NalidError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        return 1

    data_dir = Path(args.data_dir).expanduser().resolve() if args.data_dir else config.data_dir
    data_dir.mkdir(parents=True, exist_ok=True)

    level = "DEBUG" if args.debug else config.get("logging", "level", "INFO")
    log_file = data_dir / LOG_FILENAME if config.get("logging", "file_logging", True) else None
    configure_logging(level, log_file=log_file, console=args.debug)

    try:
        return asyncio.run(run_command(args, config, data_dir))
    except NalidError as e:
        logger.error(f"{args.command} failed: {e}")
        console.print(f"[red]Error:[/red] {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
