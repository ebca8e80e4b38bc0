"""Command-line interface for the game server panel."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from datetime import datetime, timezone
from getpass import getpass
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

from panel.analytics import AnalyticsCollector
from panel.approvals import ApprovalService
from panel.config import PanelSettings, apply_catalogue, load_catalogue, resolve_catalogue_path
from panel.coupons import expire_coupons
from panel.daemon import DaemonServerRepository
from panel.database import Database
from panel.environment import EnvironmentSetup, SetupOptions

logger = logging.getLogger("panel.main")

PASSWORD_MIN_LENGTH = 8

KNOWN_COMMANDS = {
    "serve",
    "init-db",
    "create-user",
    "create-api-key",
    "create-coupon",
    "import-config",
    "schedule-analytics",
    "schedule-coupons",
    "environment-setup",
    "admin",
}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Game server panel utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the panel database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the service")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to listen on (default: 8000)")
    serve_parser.add_argument("--ssl-certfile", default=None, help="Path to the TLS certificate chain in PEM format")
    serve_parser.add_argument("--ssl-keyfile", default=None, help="Path to the TLS private key in PEM format")
    serve_parser.add_argument(
        "--ssl-keyfile-password",
        default=None,
        help="Password for the TLS private key, if encrypted",
    )

    user_parser = subparsers.add_parser("create-user", help="Create a panel account")
    user_parser.add_argument("username", help="Unique username for the account")
    user_parser.add_argument("email", help="Unique email address for login")
    user_parser.add_argument("--name", default=None, help="Display name (defaults to the username)")
    user_parser.add_argument("--admin", action="store_true", help="Grant root administrator access")
    user_parser.add_argument("--verified", action="store_true", help="Mark the account as verified")

    key_parser = subparsers.add_parser("create-api-key", help="Issue a client API key for an account")
    key_parser.add_argument("email", help="Email address of the user who will own the key")
    key_parser.add_argument("--description", default="Command line", help="Description stored with the key")

    coupon_parser = subparsers.add_parser("create-coupon", help="Create a store credit coupon")
    coupon_parser.add_argument("code", help="Code users redeem")
    coupon_parser.add_argument("--amount", type=int, required=True, help="Credits granted per redemption")
    coupon_parser.add_argument("--uses", type=int, default=1, help="Number of redemptions allowed (default: 1)")
    coupon_parser.add_argument(
        "--expires",
        default=None,
        help="ISO 8601 timestamp after which the coupon expires (UTC when no offset is given)",
    )

    import_parser = subparsers.add_parser("import-config", help="Import nodes, nests and eggs from YAML")
    import_parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Catalogue file (defaults to PANEL_CATALOGUE_PATH or config/catalogue.yaml)",
    )

    subparsers.add_parser("schedule-analytics", help="Collect utilisation samples from every server")
    subparsers.add_parser("schedule-coupons", help="Mark coupons past their expiry as expired")

    env_parser = subparsers.add_parser("environment-setup", help="Configure the basic environment settings")
    env_parser.add_argument("--new-salt", action="store_true", help="Generate a new HASHIDS_SALT")
    env_parser.add_argument("--author", default=None, help="Email address eggs exported by this panel are linked to")
    env_parser.add_argument("--url", default=None, help="Application URL")
    env_parser.add_argument("--timezone", default=None, help="Application timezone")
    env_parser.add_argument("--cache", default=None, help="Cache driver")
    env_parser.add_argument("--session", default=None, help="Session driver")
    env_parser.add_argument("--queue", default=None, help="Queue driver")
    env_parser.add_argument("--redis-host", default=None, help="Redis host")
    env_parser.add_argument("--redis-pass", default=None, help="Redis password")
    env_parser.add_argument("--redis-port", default=None, help="Redis port")
    env_parser.add_argument(
        "--settings-ui",
        choices=("true", "false"),
        default=None,
        help="Enable the UI based settings editor",
    )

    subparsers.add_parser("admin", help="Launch the interactive administration console")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _project_root() -> Path:
    return Path(__file__).resolve().parent


def _env_file() -> Path:
    override = os.getenv("PANEL_ENV_FILE")
    if override:
        return Path(override).expanduser()
    return _project_root() / ".env"


def _initialise_database(settings: PanelSettings) -> Database:
    database = Database(settings.database_path, app_key=settings.app_key)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(
    *,
    settings: PanelSettings,
    database: Database,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
    ssl_keyfile_password: str | None,
) -> None:
    from panel.application import create_application
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting panel on %s://%s:%s", protocol, host, port)

    app = create_application(settings=settings, database=database)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
        ssl_keyfile_password=ssl_keyfile_password,
    )


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass(f"Password (min {PASSWORD_MIN_LENGTH} characters): ")
        if len(password) < PASSWORD_MIN_LENGTH:
            print("Password is too short. Please try again.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _create_user(database: Database, args: argparse.Namespace) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Failed to set password after three attempts.", file=sys.stderr)
        return 1

    try:
        user = database.create_user(
            args.username,
            args.email,
            password,
            name=args.name,
            root_admin=args.admin,
            verified=args.verified,
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created user #{user.id}: {user.username} <{user.email}>")
    return 0


def _create_api_key(database: Database, args: argparse.Namespace) -> int:
    user = database.get_user_by_email(args.email)
    if user is None:
        print(f"No user with email {args.email!r} found in {database.path}", file=sys.stderr)
        return 1

    api_key = database.create_api_key(user.id, args.description)
    print("Generated API key:")
    print(api_key)
    print("\nStore this value securely; it will not be shown again.")
    return 0


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _create_coupon(database: Database, args: argparse.Namespace) -> int:
    try:
        expires = _parse_expiry(args.expires)
        coupon = database.create_coupon(args.code, cr_amount=args.amount, uses=args.uses, expires=expires)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    expiry = coupon.expires.isoformat() if coupon.expires else "never"
    print(f"Created coupon #{coupon.id} '{coupon.code}' worth {coupon.cr_amount} credits (expires: {expiry})")
    return 0


def _import_config(database: Database, path: str | None) -> int:
    catalogue_path = resolve_catalogue_path(path or os.getenv("PANEL_CATALOGUE_PATH"))
    try:
        catalogue = load_catalogue(catalogue_path)
    except FileNotFoundError:
        print(f"Catalogue file {catalogue_path} does not exist.", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"Invalid catalogue {catalogue_path}: {exc}", file=sys.stderr)
        return 1

    summary = apply_catalogue(database, catalogue)
    print(
        "Imported {nodes} node(s), {allocations} allocation(s), {nests} nest(s) and {eggs} egg(s).".format(**summary)
    )
    return 0


def _collect_analytics(settings: PanelSettings, database: Database) -> int:
    collector = AnalyticsCollector(
        database,
        lambda node: DaemonServerRepository(node, timeout=settings.daemon_timeout),
        retention=settings.analytics_retention,
    )
    report = collector.collect()
    logger.info(
        "Analytics collection finished: %s processed, %s skipped, %s failed",
        len(report.processed),
        len(report.skipped),
        len(report.failed),
    )
    return 0


def _environment_setup(args: argparse.Namespace) -> int:
    options = SetupOptions(
        new_salt=args.new_salt,
        author=args.author,
        url=args.url,
        timezone=args.timezone,
        cache=args.cache,
        session=args.session,
        queue=args.queue,
        redis_host=args.redis_host,
        redis_pass=args.redis_pass,
        redis_port=args.redis_port,
        settings_ui=args.settings_ui,
    )
    return EnvironmentSetup(_env_file(), current=os.environ).run(options)


def _run_admin_cli(database: Database) -> None:
    """Provide an interactive management console for administrators."""

    approvals = ApprovalService(database)

    print("Panel Administration Console")
    print("Press Ctrl+C at any time to exit.\n")

    try:
        while True:
            print("Select an option:")
            print("  1) List all users")
            print("  2) Add a new user")
            print("  3) List users awaiting approval")
            print("  4) Approve a user")
            print("  5) List nodes")
            print("  6) Exit")

            choice = input("Enter choice [1-6]: ").strip()

            if choice == "1":
                _list_users(database)
            elif choice == "2":
                _add_user(database)
            elif choice == "3":
                _list_pending(approvals)
            elif choice == "4":
                _approve_user(approvals)
            elif choice == "5":
                _list_nodes(database)
            elif choice == "6":
                print("Goodbye!")
                return
            else:
                print("Invalid selection. Please choose a number from the menu.\n")

            print()
    except KeyboardInterrupt:
        print("\nExiting administration console.")


def _list_users(database: Database) -> None:
    users = database.list_users()
    if not users:
        print("No users are currently registered.")
        return

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':>4}  {'Username':<20}  {'Email':<32}  {'Flags':<16}  Created")
    print("-" * 96)
    for user in users:
        created = user.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        email = user.email or "<no email>"
        flags = ",".join(
            flag
            for flag, enabled in (("admin", user.root_admin), ("verified", user.verified), ("pending", not user.approved))
            if enabled
        )
        print(f"{user.id:>4}  {user.username:<20}  {email:<32}  {flags:<16}  {created}")


def _add_user(database: Database) -> None:
    print("\nCreate a new user (leave the username blank to cancel).")
    username = input("Username: ").strip()
    if not username:
        print("User creation cancelled.")
        return

    email = input("Email address: ").strip() or None
    root_admin = input("Root administrator? [y/N]: ").strip().lower() in {"y", "yes"}

    password = _prompt_for_password()
    if password is None:
        print("Aborted creating user.")
        return

    try:
        user = database.create_user(username, email, password, root_admin=root_admin, verified=True)
    except ValueError as exc:
        print(f"Failed to create user: {exc}")
        return

    print(f"Created user #{user.id}: {user.username} <{user.email or 'no email set'}>")


def _list_pending(approvals: ApprovalService) -> None:
    pending = approvals.pending_users()
    state = "enabled" if approvals.is_enabled() else "disabled"
    print(f"Account approvals are {state}.")
    if not pending:
        print("No users are awaiting approval.")
        return
    for user in pending:
        print(f"- #{user.id} {user.username} <{user.email or 'no email'}>")


def _approve_user(approvals: ApprovalService) -> None:
    raw = input("User ID to approve: ").strip()
    try:
        user_id = int(raw)
    except ValueError:
        print("Please enter a numeric user ID.")
        return

    user = approvals.approve(user_id)
    if user is None:
        print(f"No user with ID {user_id} exists.")
        return
    print(f"{user.username} has been approved.")


def _list_nodes(database: Database) -> None:
    nodes = database.list_nodes()
    if not nodes:
        print("No nodes are configured. Use import-config to add some.")
        return
    for node in nodes:
        free = len(database.list_allocations(node.id, free_only=True))
        deployable = "deployable" if node.deployable else "private"
        print(f"- #{node.id} {node.name} ({node.daemon_base_url}) {deployable}, {free} free allocation(s)")


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    load_dotenv(_env_file())

    args = _parse_args(argv)

    if args.command == "environment-setup":
        return _environment_setup(args)

    settings = PanelSettings.from_env()
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(
            settings=settings,
            database=database,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
            ssl_keyfile_password=args.ssl_keyfile_password,
        )
    elif args.command == "admin":
        _run_admin_cli(database)
    elif args.command == "init-db":
        print("Database initialisation complete.")
    elif args.command == "create-user":
        return _create_user(database, args)
    elif args.command == "create-api-key":
        return _create_api_key(database, args)
    elif args.command == "create-coupon":
        return _create_coupon(database, args)
    elif args.command == "import-config":
        return _import_config(database, args.path)
    elif args.command == "schedule-analytics":
        return _collect_analytics(settings, database)
    elif args.command == "schedule-coupons":
        expire_coupons(database)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
