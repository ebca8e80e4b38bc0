"""SQLite-backed persistence for panel accounts, nodes, servers and the store."""
from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from cryptography.fernet import Fernet, InvalidToken
from passlib.context import CryptContext

from .models import AnalyticsData, Allocation, Coupon, Egg, Nest, Node, Server, Ticket, User

API_KEY_PREFIX = "ptlc_"

_API_KEY_IDENTIFIER_LENGTH = len(API_KEY_PREFIX) + 8
_API_KEY_ROUNDS = 100_000

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

STORE_FIELDS = (
    "store_balance",
    "store_cpu",
    "store_memory",
    "store_disk",
    "store_slots",
    "store_ports",
    "store_backups",
    "store_databases",
)


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the panel database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "panel.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _hash_api_key(api_key: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", api_key.encode("utf-8"), salt, _API_KEY_ROUNDS)


def _hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def _verify_password(password: str, hashed: str) -> bool:
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


class Database:
    """Simple wrapper around SQLite for persisting panel state."""

    def __init__(self, path: Path, *, app_key: Optional[str] = None) -> None:
        _ensure_directory(path)
        self._path = path
        if app_key is None:
            app_key = os.getenv("APP_KEY")
        self._token_cipher = self._build_token_cipher(app_key)

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT UNIQUE,
                    name TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    root_admin INTEGER NOT NULL DEFAULT 0,
                    verified INTEGER NOT NULL DEFAULT 0,
                    approved INTEGER NOT NULL DEFAULT 1,
                    store_balance INTEGER NOT NULL DEFAULT 0,
                    store_cpu INTEGER NOT NULL DEFAULT 0,
                    store_memory INTEGER NOT NULL DEFAULT 0,
                    store_disk INTEGER NOT NULL DEFAULT 0,
                    store_slots INTEGER NOT NULL DEFAULT 0,
                    store_ports INTEGER NOT NULL DEFAULT 0,
                    store_backups INTEGER NOT NULL DEFAULT 0,
                    store_databases INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS api_keys (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    identifier TEXT NOT NULL,
                    key_hash TEXT NOT NULL,
                    key_salt TEXT NOT NULL,
                    description TEXT NOT NULL,
                    last_used_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );

                CREATE TABLE IF NOT EXISTS nodes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uuid TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL UNIQUE,
                    fqdn TEXT NOT NULL,
                    scheme TEXT NOT NULL DEFAULT 'https',
                    daemon_listen INTEGER NOT NULL DEFAULT 8080,
                    daemon_token TEXT NOT NULL,
                    memory INTEGER NOT NULL DEFAULT 0,
                    disk INTEGER NOT NULL DEFAULT 0,
                    deployable INTEGER NOT NULL DEFAULT 1,
                    deploy_fee INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS nests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uuid TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT,
                    private INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS eggs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uuid TEXT NOT NULL UNIQUE,
                    nest_id INTEGER NOT NULL REFERENCES nests(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    description TEXT,
                    docker_image TEXT NOT NULL,
                    startup TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS servers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uuid TEXT NOT NULL UNIQUE,
                    uuid_short TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    description TEXT,
                    owner_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    node_id INTEGER NOT NULL REFERENCES nodes(id),
                    nest_id INTEGER NOT NULL REFERENCES nests(id),
                    egg_id INTEGER NOT NULL REFERENCES eggs(id),
                    allocation_id INTEGER,
                    memory INTEGER NOT NULL,
                    disk INTEGER NOT NULL,
                    cpu INTEGER NOT NULL,
                    allocation_limit INTEGER NOT NULL DEFAULT 0,
                    backup_limit INTEGER NOT NULL DEFAULT 0,
                    database_limit INTEGER NOT NULL DEFAULT 0,
                    status TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS allocations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    node_id INTEGER NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
                    ip TEXT NOT NULL,
                    port INTEGER NOT NULL,
                    server_id INTEGER REFERENCES servers(id) ON DELETE SET NULL,
                    UNIQUE (node_id, ip, port)
                );

                CREATE TABLE IF NOT EXISTS coupons (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    code TEXT NOT NULL UNIQUE,
                    cr_amount INTEGER NOT NULL,
                    uses INTEGER NOT NULL DEFAULT 1,
                    expires TEXT,
                    expired INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS coupon_redemptions (
                    coupon_id INTEGER NOT NULL REFERENCES coupons(id) ON DELETE CASCADE,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (coupon_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS analytics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    server_id INTEGER NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
                    cpu REAL NOT NULL,
                    memory REAL NOT NULL,
                    disk REAL NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tickets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_api_keys_identifier ON api_keys(identifier);
                CREATE INDEX IF NOT EXISTS idx_servers_owner_id ON servers(owner_id);
                CREATE INDEX IF NOT EXISTS idx_allocations_node_id ON allocations(node_id);
                CREATE INDEX IF NOT EXISTS idx_analytics_server_id ON analytics(server_id);
                CREATE INDEX IF NOT EXISTS idx_tickets_user_id ON tickets(user_id);
                """
            )

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(
        self,
        username: str,
        email: Optional[str],
        password: str,
        *,
        name: Optional[str] = None,
        root_admin: bool = False,
        verified: bool = False,
        approved: bool = True,
    ) -> User:
        if not password:
            raise ValueError("Password must not be empty")

        normalized_username = username.strip()
        if not normalized_username:
            raise ValueError("Username must not be empty")
        normalized_email = email.strip().lower() if email else None
        created_at = _current_timestamp()

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (
                        username, email, name, password_hash, root_admin, verified, approved, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        normalized_username,
                        normalized_email,
                        (name or normalized_username).strip(),
                        _hash_password(password),
                        int(bool(root_admin)),
                        int(bool(verified)),
                        int(bool(approved)),
                        _serialize_datetime(created_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("A user with that username or email already exists") from exc
            user_id = cursor.lastrowid

        user = self.get_user(user_id)
        if user is None:
            raise RuntimeError("Failed to load user after creation")
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(row) for row in rows]

    def list_unapproved_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users WHERE approved = 0 ORDER BY id").fetchall()
        return [self._row_to_user(row) for row in rows]

    def authenticate_user(self, login: str, password: str) -> Optional[User]:
        """Return the user matching the email or username when the password is valid."""

        cleaned = login.strip()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ? OR username = ?",
                (cleaned.lower(), cleaned),
            ).fetchone()
        if row is None:
            return None
        if not _verify_password(password, row["password_hash"]):
            return None
        return self._row_to_user(row)

    def verify_user_password(self, user_id: int, password: str) -> bool:
        """Return ``True`` if the supplied password matches the stored hash."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()

        if row is None:
            return False
        return _verify_password(password, row["password_hash"])

    def set_user_password(self, user_id: int, password: str) -> None:
        if not password:
            raise ValueError("Password must not be empty")
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?",
                (_hash_password(password), user_id),
            )

    def set_user_flags(
        self,
        user_id: int,
        *,
        root_admin: Optional[bool] = None,
        verified: Optional[bool] = None,
        approved: Optional[bool] = None,
    ) -> Optional[User]:
        updates: List[str] = []
        values: List[object] = []
        for column, value in (("root_admin", root_admin), ("verified", verified), ("approved", approved)):
            if value is None:
                continue
            updates.append(f"{column} = ?")
            values.append(int(bool(value)))

        if updates:
            values.append(user_id)
            with self._connect() as conn:
                conn.execute(f"UPDATE users SET {', '.join(updates)} WHERE id = ?", values)
        return self.get_user(user_id)

    def approve_pending_users(self) -> int:
        with self._connect() as conn:
            cursor = conn.execute("UPDATE users SET approved = 1 WHERE approved = 0")
            return cursor.rowcount

    def delete_pending_users(self) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM users WHERE approved = 0")
            return cursor.rowcount

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    def set_store_resources(self, user_id: int, **fields: int) -> Optional[User]:
        """Overwrite store quota columns for a user."""

        return self._update_store(user_id, fields, relative=False)

    def adjust_store_resources(self, user_id: int, **deltas: int) -> Optional[User]:
        """Add (or with negative values, subtract) amounts to store quota columns."""

        return self._update_store(user_id, deltas, relative=True)

    def reserve_store_resources(self, user_id: int, **amounts: int) -> bool:
        """Debit every amount at once, only if no column would drop below zero.

        Returns ``False`` and leaves the row untouched when the user cannot
        cover all of them.
        """

        updates: List[str] = []
        guards: List[str] = []
        update_values: List[object] = []
        guard_values: List[object] = []
        for key, value in amounts.items():
            column = key if key.startswith("store_") else f"store_{key}"
            if column not in STORE_FIELDS:
                raise ValueError(f"Unknown store resource '{key}'")
            amount = int(value)
            if amount < 0:
                raise ValueError(f"Reserved amount for '{key}' must not be negative")
            updates.append(f"{column} = {column} - ?")
            update_values.append(amount)
            guards.append(f"{column} >= ?")
            guard_values.append(amount)

        if not updates:
            return self.get_user(user_id) is not None

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE users SET {', '.join(updates)} WHERE id = ? AND {' AND '.join(guards)}",
                [*update_values, user_id, *guard_values],
            )
            return cursor.rowcount == 1

    def _update_store(self, user_id: int, fields: Dict[str, int], *, relative: bool) -> Optional[User]:
        updates: List[str] = []
        values: List[object] = []
        for key, value in fields.items():
            column = key if key.startswith("store_") else f"store_{key}"
            if column not in STORE_FIELDS:
                raise ValueError(f"Unknown store resource '{key}'")
            if value is None:
                continue
            updates.append(f"{column} = {column} + ?" if relative else f"{column} = ?")
            values.append(int(value))

        if updates:
            values.append(user_id)
            with self._connect() as conn:
                conn.execute(f"UPDATE users SET {', '.join(updates)} WHERE id = ?", values)
        return self.get_user(user_id)

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------
    def create_api_key(self, user_id: int, description: str) -> str:
        """Issue a client API key for the user and return the plaintext secret."""

        cleaned = description.strip()
        if not cleaned:
            raise ValueError("API key description must not be empty")

        api_key = API_KEY_PREFIX + secrets.token_urlsafe(32)
        salt = secrets.token_bytes(16)
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO api_keys (user_id, identifier, key_hash, key_salt, description, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        api_key[:_API_KEY_IDENTIFIER_LENGTH],
                        base64.b64encode(_hash_api_key(api_key, salt)).decode("ascii"),
                        base64.b64encode(salt).decode("ascii"),
                        cleaned,
                        _serialize_datetime(_current_timestamp()),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("User not found") from exc
        return api_key

    def authenticate_api_key(self, api_key: str) -> Optional[User]:
        if not api_key.startswith(API_KEY_PREFIX):
            return None

        identifier = api_key[:_API_KEY_IDENTIFIER_LENGTH]
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_keys WHERE identifier = ?",
                (identifier,),
            ).fetchall()

            for row in rows:
                salt = base64.b64decode(row["key_salt"])
                expected_hash = base64.b64decode(row["key_hash"])
                if hmac.compare_digest(expected_hash, _hash_api_key(api_key, salt)):
                    conn.execute(
                        "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
                        (_serialize_datetime(_current_timestamp()), row["id"]),
                    )
                    user_row = conn.execute(
                        "SELECT * FROM users WHERE id = ?", (row["user_id"],)
                    ).fetchone()
                    return self._row_to_user(user_row) if user_row is not None else None
        return None

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None or row["value"] is None:
            return default
        return str(row["value"])

    def set_setting(self, key: str, value: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )

    # ------------------------------------------------------------------
    # Nodes and allocations
    # ------------------------------------------------------------------
    def create_node(
        self,
        *,
        name: str,
        fqdn: str,
        daemon_token: str,
        scheme: str = "https",
        daemon_listen: int = 8080,
        memory: int = 0,
        disk: int = 0,
        deployable: bool = True,
        deploy_fee: int = 0,
    ) -> Node:
        if scheme not in {"http", "https"}:
            raise ValueError("Node scheme must be either 'http' or 'https'")

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO nodes (
                        uuid, name, fqdn, scheme, daemon_listen, daemon_token, memory, disk,
                        deployable, deploy_fee, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(uuid.uuid4()),
                        name.strip(),
                        fqdn.strip(),
                        scheme,
                        int(daemon_listen),
                        self._encrypt_token(daemon_token),
                        int(memory),
                        int(disk),
                        int(bool(deployable)),
                        int(deploy_fee),
                        _serialize_datetime(_current_timestamp()),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"A node named '{name}' already exists") from exc
            node_id = cursor.lastrowid

        node = self.get_node(node_id)
        if node is None:
            raise RuntimeError("Failed to load node after creation")
        return node

    def get_node(self, node_id: int) -> Optional[Node]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_node(row)

    def get_node_by_name(self, name: str) -> Optional[Node]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM nodes WHERE name = ?", (name.strip(),)).fetchone()
        if row is None:
            return None
        return self._row_to_node(row)

    def list_nodes(self, *, deployable: Optional[bool] = None) -> List[Node]:
        query = "SELECT * FROM nodes"
        params: Tuple[object, ...] = ()
        if deployable is not None:
            query += " WHERE deployable = ?"
            params = (int(deployable),)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_node(row) for row in rows]

    def create_allocations(self, node_id: int, ip: str, ports: Iterable[int]) -> int:
        """Register allocations on a node, ignoring ones that already exist."""

        created = 0
        with self._connect() as conn:
            for port in ports:
                port_number = int(port)
                if port_number < 1 or port_number > 65535:
                    raise ValueError("Allocation ports must be between 1 and 65535")
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO allocations (node_id, ip, port) VALUES (?, ?, ?)",
                    (node_id, ip.strip(), port_number),
                )
                created += cursor.rowcount
        return created

    def list_allocations(self, node_id: int, *, free_only: bool = False) -> List[Allocation]:
        query = "SELECT * FROM allocations WHERE node_id = ?"
        if free_only:
            query += " AND server_id IS NULL"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY port, id", (node_id,)).fetchall()
        return [self._row_to_allocation(row) for row in rows]

    # ------------------------------------------------------------------
    # Nests and eggs
    # ------------------------------------------------------------------
    def create_nest(self, name: str, *, description: Optional[str] = None, private: bool = False) -> Nest:
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO nests (uuid, name, description, private) VALUES (?, ?, ?, ?)",
                    (str(uuid.uuid4()), name.strip(), description, int(bool(private))),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"A nest named '{name}' already exists") from exc
            nest_id = cursor.lastrowid

        nest = self.get_nest(nest_id)
        if nest is None:
            raise RuntimeError("Failed to load nest after creation")
        return nest

    def get_nest(self, nest_id: int) -> Optional[Nest]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM nests WHERE id = ?", (nest_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_nest(row)

    def get_nest_by_name(self, name: str) -> Optional[Nest]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM nests WHERE name = ?", (name.strip(),)).fetchone()
        if row is None:
            return None
        return self._row_to_nest(row)

    def list_nests(self, *, private: Optional[bool] = None) -> List[Nest]:
        query = "SELECT * FROM nests"
        params: Tuple[object, ...] = ()
        if private is not None:
            query += " WHERE private = ?"
            params = (int(private),)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_nest(row) for row in rows]

    def create_egg(
        self,
        nest_id: int,
        *,
        name: str,
        docker_image: str,
        startup: str,
        description: Optional[str] = None,
    ) -> Egg:
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO eggs (uuid, nest_id, name, description, docker_image, startup)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (str(uuid.uuid4()), nest_id, name.strip(), description, docker_image, startup),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("Nest not found") from exc
            egg_id = cursor.lastrowid

        egg = self.get_egg(egg_id)
        if egg is None:
            raise RuntimeError("Failed to load egg after creation")
        return egg

    def get_egg(self, egg_id: int) -> Optional[Egg]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM eggs WHERE id = ?", (egg_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_egg(row)

    def list_eggs(self, nest_id: int) -> List[Egg]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM eggs WHERE nest_id = ? ORDER BY id",
                (nest_id,),
            ).fetchall()
        return [self._row_to_egg(row) for row in rows]

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------
    def create_server(
        self,
        *,
        name: str,
        description: Optional[str],
        owner_id: int,
        node_id: int,
        nest_id: int,
        egg_id: int,
        memory: int,
        disk: int,
        cpu: int,
        allocation_ids: Sequence[int],
        allocation_limit: int,
        backup_limit: int,
        database_limit: int,
        status: Optional[str] = "installing",
    ) -> Server:
        """Insert a server and claim its allocations in a single transaction."""

        server_uuid = str(uuid.uuid4())
        primary_allocation = allocation_ids[0] if allocation_ids else None

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO servers (
                    uuid, uuid_short, name, description, owner_id, node_id, nest_id, egg_id,
                    allocation_id, memory, disk, cpu, allocation_limit, backup_limit,
                    database_limit, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    server_uuid,
                    server_uuid[:8],
                    name,
                    description,
                    owner_id,
                    node_id,
                    nest_id,
                    egg_id,
                    primary_allocation,
                    int(memory),
                    int(disk),
                    int(cpu),
                    int(allocation_limit),
                    int(backup_limit),
                    int(database_limit),
                    status,
                    _serialize_datetime(_current_timestamp()),
                ),
            )
            server_id = cursor.lastrowid

            for allocation_id in allocation_ids:
                claimed = conn.execute(
                    """
                    UPDATE allocations SET server_id = ?
                     WHERE id = ? AND node_id = ? AND server_id IS NULL
                    """,
                    (server_id, allocation_id, node_id),
                )
                if claimed.rowcount != 1:
                    # Raising inside the context manager rolls the insert back.
                    raise ValueError(f"Allocation {allocation_id} is no longer available")

        server = self.get_server(server_id)
        if server is None:
            raise RuntimeError("Failed to load server after creation")
        return server

    def get_server(self, server_id: int) -> Optional[Server]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM servers WHERE id = ?", (server_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_server(row)

    def get_server_by_identifier(self, identifier: str) -> Optional[Server]:
        """Look a server up by its short identifier or full uuid."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM servers WHERE uuid_short = ? OR uuid = ?",
                (identifier, identifier),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_server(row)

    def list_servers(self) -> List[Server]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM servers ORDER BY id").fetchall()
        return [self._row_to_server(row) for row in rows]

    def list_servers_for_user(self, user_id: int) -> List[Server]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM servers WHERE owner_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
        return [self._row_to_server(row) for row in rows]

    def delete_server(self, server_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM servers WHERE id = ?", (server_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------
    def create_coupon(
        self,
        code: str,
        *,
        cr_amount: int,
        uses: int = 1,
        expires: Optional[datetime] = None,
    ) -> Coupon:
        cleaned = code.strip()
        if not cleaned:
            raise ValueError("Coupon code must not be empty")

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO coupons (code, cr_amount, uses, expires, expired, created_at)
                    VALUES (?, ?, ?, ?, 0, ?)
                    """,
                    (
                        cleaned,
                        int(cr_amount),
                        int(uses),
                        _serialize_datetime(expires) if expires is not None else None,
                        _serialize_datetime(_current_timestamp()),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"A coupon with code '{cleaned}' already exists") from exc
            coupon_id = cursor.lastrowid

        coupon = self.get_coupon(coupon_id)
        if coupon is None:
            raise RuntimeError("Failed to load coupon after creation")
        return coupon

    def get_coupon(self, coupon_id: int) -> Optional[Coupon]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM coupons WHERE id = ?", (coupon_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_coupon(row)

    def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM coupons WHERE code = ?", (code.strip(),)).fetchone()
        if row is None:
            return None
        return self._row_to_coupon(row)

    def list_coupons(self) -> List[Coupon]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM coupons ORDER BY id").fetchall()
        return [self._row_to_coupon(row) for row in rows]

    def mark_coupon_expired(self, coupon_id: int) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE coupons SET expired = 1 WHERE id = ?", (coupon_id,))

    def redeem_coupon(self, coupon_id: int, user_id: int) -> int:
        """Consume one use of a coupon for a user and credit their balance.

        Returns the credited amount. Raises ``ValueError`` when the coupon was
        already used by this user or has no uses left.
        """

        with self._connect() as conn:
            row = conn.execute("SELECT cr_amount FROM coupons WHERE id = ?", (coupon_id,)).fetchone()
            if row is None:
                raise ValueError("Coupon not found")
            amount = int(row["cr_amount"])

            try:
                conn.execute(
                    "INSERT INTO coupon_redemptions (coupon_id, user_id, created_at) VALUES (?, ?, ?)",
                    (coupon_id, user_id, _serialize_datetime(_current_timestamp())),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("Coupon has already been redeemed") from exc

            consumed = conn.execute(
                "UPDATE coupons SET uses = uses - 1 WHERE id = ? AND uses > 0 AND expired = 0",
                (coupon_id,),
            )
            if consumed.rowcount != 1:
                raise ValueError("Coupon has no uses remaining")

            conn.execute(
                "UPDATE users SET store_balance = store_balance + ? WHERE id = ?",
                (amount, user_id),
            )
        return amount

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------
    def count_analytics(self, server_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM analytics WHERE server_id = ?",
                (server_id,),
            ).fetchone()
        return int(row["total"])

    def list_analytics(self, server_id: int) -> List[AnalyticsData]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM analytics WHERE server_id = ? ORDER BY id",
                (server_id,),
            ).fetchall()
        return [self._row_to_analytics(row) for row in rows]

    def record_analytics(
        self,
        server_id: int,
        *,
        cpu: float,
        memory: float,
        disk: float,
        retain: int,
    ) -> Tuple[AnalyticsData, int]:
        """Insert a sample, pruning the oldest rows so at most ``retain`` remain.

        Returns the new row and the number of rows deleted.
        """

        if retain < 1:
            raise ValueError("Analytics retention must keep at least one entry")

        created_at = _current_timestamp()
        with self._connect() as conn:
            stale = conn.execute(
                """
                SELECT id FROM analytics WHERE server_id = ?
                 ORDER BY id DESC LIMIT -1 OFFSET ?
                """,
                (server_id, retain - 1),
            ).fetchall()
            for row in stale:
                conn.execute("DELETE FROM analytics WHERE id = ?", (row["id"],))

            cursor = conn.execute(
                "INSERT INTO analytics (server_id, cpu, memory, disk, created_at) VALUES (?, ?, ?, ?, ?)",
                (server_id, float(cpu), float(memory), float(disk), _serialize_datetime(created_at)),
            )
            entry = AnalyticsData(
                id=int(cursor.lastrowid),
                server_id=server_id,
                cpu=float(cpu),
                memory=float(memory),
                disk=float(disk),
                created_at=created_at,
            )
        return entry, len(stale)

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------
    def create_ticket(self, user_id: int, *, title: str, content: str, status: str = "pending") -> Ticket:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO tickets (user_id, title, content, status, created_at) VALUES (?, ?, ?, ?, ?)",
                (user_id, title.strip(), content.strip(), status, _serialize_datetime(_current_timestamp())),
            )
            ticket_id = cursor.lastrowid

        ticket = self.get_ticket_for_user(user_id, ticket_id)
        if ticket is None:
            raise RuntimeError("Failed to load ticket after creation")
        return ticket

    def list_tickets_for_user(self, user_id: int) -> List[Ticket]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tickets WHERE user_id = ? ORDER BY id DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_ticket(row) for row in rows]

    def get_ticket_for_user(self, user_id: int, ticket_id: int) -> Optional[Ticket]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tickets WHERE user_id = ? AND id = ?",
                (user_id, ticket_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_ticket(row)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            username=str(row["username"]),
            email=row["email"],
            name=str(row["name"]),
            root_admin=bool(row["root_admin"]),
            verified=bool(row["verified"]),
            approved=bool(row["approved"]),
            store_balance=int(row["store_balance"]),
            store_cpu=int(row["store_cpu"]),
            store_memory=int(row["store_memory"]),
            store_disk=int(row["store_disk"]),
            store_slots=int(row["store_slots"]),
            store_ports=int(row["store_ports"]),
            store_backups=int(row["store_backups"]),
            store_databases=int(row["store_databases"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_node(self, row: sqlite3.Row) -> Node:
        return Node(
            id=int(row["id"]),
            uuid=str(row["uuid"]),
            name=str(row["name"]),
            fqdn=str(row["fqdn"]),
            scheme=str(row["scheme"]),
            daemon_listen=int(row["daemon_listen"]),
            daemon_token=self._decrypt_token(str(row["daemon_token"])),
            memory=int(row["memory"]),
            disk=int(row["disk"]),
            deployable=bool(row["deployable"]),
            deploy_fee=int(row["deploy_fee"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_allocation(self, row: sqlite3.Row) -> Allocation:
        return Allocation(
            id=int(row["id"]),
            node_id=int(row["node_id"]),
            ip=str(row["ip"]),
            port=int(row["port"]),
            server_id=int(row["server_id"]) if row["server_id"] is not None else None,
        )

    def _row_to_nest(self, row: sqlite3.Row) -> Nest:
        return Nest(
            id=int(row["id"]),
            uuid=str(row["uuid"]),
            name=str(row["name"]),
            description=row["description"],
            private=bool(row["private"]),
        )

    def _row_to_egg(self, row: sqlite3.Row) -> Egg:
        return Egg(
            id=int(row["id"]),
            uuid=str(row["uuid"]),
            nest_id=int(row["nest_id"]),
            name=str(row["name"]),
            description=row["description"],
            docker_image=str(row["docker_image"]),
            startup=str(row["startup"]),
        )

    def _row_to_server(self, row: sqlite3.Row) -> Server:
        return Server(
            id=int(row["id"]),
            uuid=str(row["uuid"]),
            uuid_short=str(row["uuid_short"]),
            name=str(row["name"]),
            description=row["description"],
            owner_id=int(row["owner_id"]),
            node_id=int(row["node_id"]),
            nest_id=int(row["nest_id"]),
            egg_id=int(row["egg_id"]),
            allocation_id=int(row["allocation_id"]) if row["allocation_id"] is not None else None,
            memory=int(row["memory"]),
            disk=int(row["disk"]),
            cpu=int(row["cpu"]),
            allocation_limit=int(row["allocation_limit"]),
            backup_limit=int(row["backup_limit"]),
            database_limit=int(row["database_limit"]),
            status=row["status"],
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_coupon(self, row: sqlite3.Row) -> Coupon:
        return Coupon(
            id=int(row["id"]),
            code=str(row["code"]),
            cr_amount=int(row["cr_amount"]),
            uses=int(row["uses"]),
            expires=_parse_datetime(str(row["expires"])) if row["expires"] else None,
            expired=bool(row["expired"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_analytics(self, row: sqlite3.Row) -> AnalyticsData:
        return AnalyticsData(
            id=int(row["id"]),
            server_id=int(row["server_id"]),
            cpu=float(row["cpu"]),
            memory=float(row["memory"]),
            disk=float(row["disk"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_ticket(self, row: sqlite3.Row) -> Ticket:
        return Ticket(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            title=str(row["title"]),
            content=str(row["content"]),
            status=str(row["status"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _build_token_cipher(self, secret: Optional[str]) -> Optional[Fernet]:
        if not secret:
            return None
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        key = base64.urlsafe_b64encode(digest)
        return Fernet(key)

    def _require_token_cipher(self) -> Fernet:
        if self._token_cipher is None:
            raise RuntimeError(
                "Daemon token encryption key is not configured. Set APP_KEY to manage nodes."
            )
        return self._token_cipher

    def _encrypt_token(self, token: str) -> str:
        cipher = self._require_token_cipher()
        return cipher.encrypt(token.encode("utf-8")).decode("utf-8")

    def _decrypt_token(self, encrypted: str) -> str:
        cipher = self._require_token_cipher()
        try:
            plaintext = cipher.decrypt(encrypted.encode("utf-8"))
        except InvalidToken as exc:
            raise ValueError("Stored daemon token could not be decrypted. Check APP_KEY.") from exc
        return plaintext.decode("utf-8")


__all__ = ["API_KEY_PREFIX", "Database", "STORE_FIELDS", "resolve_database_path"]
