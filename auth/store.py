"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. IdentityStore is the repository; the
_row_to_* functions are the mappers. Route, dependency and reconciliation
code never touches SQL directly.

Outcomes every caller can tell apart:
  not found             -> None / False return value
  constraint violation  -> ConstraintViolation (unique or foreign key)
  transport error       -> StoreUnavailable (driver / connection failure)

The unique constraints declared here are the real enforcement of identity
invariants (one user per email, one link per provider per user, one local
user per external identity). Application-level existence checks only exist
to produce friendlier errors in the common case.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.pool import SingletonThreadPool

from auth.models import ProviderLink, Role, User

_DEFAULT_DB_URL = "sqlite:///forge.db"

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """Base class for identity store failures."""


class ConstraintViolation(StoreError):
    """A uniqueness or foreign key constraint rejected the write."""


class StoreUnavailable(StoreError):
    """The database could not be reached or the driver failed."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(255), nullable=False),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),  # soft delete marker
)

_roles = Table(
    "roles",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(50), nullable=False),
    Column("created_at", String(32), nullable=False),
)

# Role names are unique regardless of case ("Admin" collides with "admin").
Index("ix_roles_name_lower", func.lower(_roles.c.name), unique=True)

_user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False),
    Column("role_id", String(32), ForeignKey("roles.id"), nullable=False),
    Column("assigned_at", String(32), nullable=False),
    PrimaryKeyConstraint("user_id", "role_id"),
)

_user_providers = Table(
    "user_providers",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False),
    Column("provider_name", String(30), nullable=False),
    Column("provider_id", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider_name", "provider_id", name="uq_provider_identity"),
    UniqueConstraint("user_id", "provider_name", name="uq_user_provider"),
)

_USER_FIELDS = {"email", "username", "hashed_password"}


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Foreign keys are off by default in SQLite.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def normalize_email(email: str) -> str:
    return email.strip().lower()


@contextmanager
def _translate_errors() -> Iterator[None]:
    # IntegrityError is a DBAPIError subclass; it must be matched first.
    try:
        yield
    except IntegrityError as exc:
        raise ConstraintViolation(str(exc.orig)) from exc
    except DBAPIError as exc:
        raise StoreUnavailable(str(exc.orig)) from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for User, Role, role assignments and provider links.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        role = store.create_role("user")
        user_id = store.create_user(User(email="a@ex.com", username="alice1",
                                         hashed_password=hash_password("...")),
                                    role_ids=[role.id])
        user = store.find_user_by_id(user_id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        engine_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if "mode=memory" in db_url or ":memory:" in db_url:
                # One connection per thread; shared-cache URIs see one database across them.
                engine_args["poolclass"] = SingletonThreadPool
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        with _translate_errors():
            metadata.create_all(self.engine)

    @contextmanager
    def _read(self) -> Iterator[Connection]:
        with _translate_errors(), self.engine.connect() as conn:
            yield conn

    @contextmanager
    def _write(self) -> Iterator[Connection]:
        """Open a transaction that commits on success and rolls back on error."""
        with _translate_errors(), self.engine.begin() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def find_user_by_email(self, email: str) -> User | None:
        """Look up a user (soft-deleted included) by email, with roles and providers."""
        with self._read() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
            return self._load_user(conn, row)

    def find_user_by_id(self, user_id: str, include_deleted: bool = False) -> User | None:
        """Look up a user by primary key, with roles and providers.

        Soft-deleted users are invisible unless include_deleted is True.
        """
        query = _users.select().where(_users.c.id == user_id)
        if not include_deleted:
            query = query.where(_users.c.deleted_at.is_(None))
        with self._read() as conn:
            row = conn.execute(query).fetchone()
            return self._load_user(conn, row)

    def list_users(self, include_deleted: bool = False) -> list[User]:
        query = _users.select().order_by(_users.c.created_at)
        if not include_deleted:
            query = query.where(_users.c.deleted_at.is_(None))
        with self._read() as conn:
            rows = conn.execute(query).fetchall()
            return [self._load_user(conn, r) for r in rows]

    def create_user(
        self,
        user: User,
        role_ids: Sequence[str] = (),
        provider: tuple[str, str] | None = None,
    ) -> str:
        """Insert a user, its initial role assignments and optional provider link.

        All rows are written in one transaction, so a failure on any of them
        leaves nothing behind. provider is a (provider_name, provider_id) pair.

        Raises ValueError if the user would have neither a password nor a
        provider link -- such an account could never log in.
        Raises ConstraintViolation if the email or the external identity is
        already taken.
        """
        if user.hashed_password is None and provider is None:
            raise ValueError("A user needs a password or a linked provider.")
        user_id = _new_id()
        now = _now_iso()
        with self._write() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=normalize_email(user.email),
                    username=user.username,
                    hashed_password=user.hashed_password,
                    created_at=now,
                    updated_at=now,
                )
            )
            for role_id in role_ids:
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id, assigned_at=now))
            if provider is not None:
                provider_name, provider_id = provider
                conn.execute(
                    _user_providers.insert().values(
                        id=_new_id(),
                        user_id=user_id,
                        provider_name=provider_name,
                        provider_id=provider_id,
                        created_at=now,
                    )
                )
        return user_id

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: email, username, hashed_password. Unknown keys raise
        ValueError. Returns True if a row was updated, False if not found.
        """
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        with self._write() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **fields)
            )
        return result.rowcount > 0

    def soft_delete_user(self, user_id: str) -> bool:
        """Stamp deleted_at. Returns False if the user is missing or already deleted."""
        with self._write() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
                .values(deleted_at=_now_iso())
            )
        return result.rowcount > 0

    def restore_user(self, user_id: str) -> bool:
        """Clear deleted_at. Returns False if the user is missing or not deleted."""
        with self._write() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.deleted_at.is_not(None))
                .values(deleted_at=None, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def hard_delete_user(self, user_id: str) -> bool:
        """Permanently delete a user along with its provider links and role assignments."""
        with self._write() as conn:
            conn.execute(_user_providers.delete().where(_user_providers.c.user_id == user_id))
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def find_role_by_name(self, name: str) -> Role | None:
        """Case-insensitive role lookup."""
        with self._read() as conn:
            row = conn.execute(_roles.select().where(func.lower(_roles.c.name) == name.lower())).fetchone()
        return _row_to_role(row) if row is not None else None

    def find_role_by_id(self, role_id: str) -> Role | None:
        with self._read() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        with self._read() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def create_role(self, name: str) -> Role:
        """Insert a role. Raises ConstraintViolation if the name exists in any case."""
        role = Role(id=_new_id(), name=name, created_at=_now_iso())
        with self._write() as conn:
            conn.execute(_roles.insert().values(id=role.id, name=role.name, created_at=role.created_at))
        return role

    def update_role(self, role_id: str, name: str) -> Role | None:
        with self._write() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(name=name))
        if result.rowcount == 0:
            return None
        return self.find_role_by_id(role_id)

    def delete_role(self, role_id: str) -> int | None:
        """Delete a role, detaching it from every user first.

        Returns the number of users that lost the role, or None if the role
        does not exist.
        """
        with self._write() as conn:
            detached = conn.execute(_user_roles.delete().where(_user_roles.c.role_id == role_id))
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
            if result.rowcount == 0:
                return None
        return detached.rowcount

    def list_role_members(self, role_id: str) -> list[User]:
        """Users (without relations) holding the given role."""
        query = (
            select(_users)
            .join(_user_roles, _user_roles.c.user_id == _users.c.id)
            .where(_user_roles.c.role_id == role_id)
            .order_by(_users.c.username)
        )
        with self._read() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # Role assignments
    # ------------------------------------------------------------------

    def create_user_role(self, user_id: str, role_id: str) -> None:
        """Assign a role. Raises ConstraintViolation if already assigned or ids are unknown."""
        with self._write() as conn:
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id, assigned_at=_now_iso()))

    def find_user_role(self, user_id: str, role_id: str) -> str | None:
        """Return the assignment timestamp, or None if the user lacks the role."""
        with self._read() as conn:
            return conn.execute(
                select(_user_roles.c.assigned_at).where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id)
                )
            ).scalar()

    def get_user_roles(self, user_id: str) -> list[Role]:
        with self._read() as conn:
            return self._roles_for(conn, user_id)

    # ------------------------------------------------------------------
    # Provider links
    # ------------------------------------------------------------------

    def find_provider_link(self, user_id: str, provider_name: str) -> ProviderLink | None:
        with self._read() as conn:
            row = conn.execute(
                _user_providers.select().where(
                    (_user_providers.c.user_id == user_id) & (_user_providers.c.provider_name == provider_name)
                )
            ).fetchone()
        return _row_to_link(row) if row is not None else None

    def list_provider_links(self, user_id: str) -> list[ProviderLink]:
        with self._read() as conn:
            return self._links_for(conn, user_id)

    def create_provider_link(self, link: ProviderLink) -> str:
        """Insert a provider link and return its ID.

        Raises ConstraintViolation when the user already has a link for this
        provider or the external identity belongs to another user.
        """
        link_id = _new_id()
        with self._write() as conn:
            conn.execute(
                _user_providers.insert().values(
                    id=link_id,
                    user_id=link.user_id,
                    provider_name=link.provider_name,
                    provider_id=link.provider_id,
                    created_at=_now_iso(),
                )
            )
        return link_id

    def delete_provider_link(self, link_id: str) -> bool:
        with self._write() as conn:
            result = conn.execute(_user_providers.delete().where(_user_providers.c.id == link_id))
        return result.rowcount > 0

    def count_provider_links(self, user_id: str, excluding_provider: str | None = None) -> int:
        query = select(func.count()).select_from(_user_providers).where(_user_providers.c.user_id == user_id)
        if excluding_provider is not None:
            query = query.where(_user_providers.c.provider_name != excluding_provider)
        with self._read() as conn:
            return conn.execute(query).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Relation loading
    # ------------------------------------------------------------------

    def _load_user(self, conn: Connection, row) -> User | None:
        if row is None:
            return None
        user = _row_to_user(row)
        user.roles = self._roles_for(conn, user.id)
        user.providers = self._links_for(conn, user.id)
        return user

    @staticmethod
    def _roles_for(conn: Connection, user_id: str) -> list[Role]:
        rows = conn.execute(
            select(_roles)
            .join(_user_roles, _user_roles.c.role_id == _roles.c.id)
            .where(_user_roles.c.user_id == user_id)
            .order_by(_roles.c.name)
        ).fetchall()
        return [_row_to_role(r) for r in rows]

    @staticmethod
    def _links_for(conn: Connection, user_id: str) -> list[ProviderLink]:
        rows = conn.execute(
            _user_providers.select()
            .where(_user_providers.c.user_id == user_id)
            .order_by(_user_providers.c.provider_name)
        ).fetchall()
        return [_row_to_link(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


def _row_to_role(row) -> Role:
    return Role(id=row.id, name=row.name, created_at=row.created_at)


def _row_to_link(row) -> ProviderLink:
    return ProviderLink(
        id=row.id,
        user_id=row.user_id,
        provider_name=row.provider_name,
        provider_id=row.provider_id,
        created_at=row.created_at,
    )
