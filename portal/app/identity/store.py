"""
Identity store.

Persists local users, their external logins and saved tokens in any database
SQLAlchemy supports. The database URL is the ``DefaultConnection`` connection
string. Every public method runs in its own transaction and touches only the
rows of one user.
"""

import logging
import os
import secrets
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from ..models import LocalUser, Principal

logger = logging.getLogger(__name__)

NAME_LEN = 256
KEY_LEN = 128

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_name", String(NAME_LEN), nullable=False),
    Column("email", String(NAME_LEN)),
    Column("email_confirmed", Boolean, nullable=False, default=False),
    Column("confirmation_code", String(KEY_LEN)),
    Column("roles", JSON, nullable=False, default=list),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

user_logins = Table(
    "user_logins",
    metadata,
    Column("provider", String(KEY_LEN), primary_key=True),
    Column("provider_key", String(NAME_LEN), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
)

user_tokens = Table(
    "user_tokens",
    metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("provider", String(KEY_LEN), primary_key=True),
    Column("name", String(KEY_LEN), primary_key=True),
    Column("value", Text, nullable=False),
)


def create_store_engine(db_uri: str, verbose: bool = False) -> Engine:
    """
    Create an engine for the identity store.

    In-memory SQLite needs a single shared connection to be visible across
    threads; file-based SQLite gets its directory created.
    """
    if db_uri.startswith("sqlite"):
        if db_uri in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                db_uri,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=verbose,
            )
        if db_uri.startswith("sqlite:///"):
            db_path = os.path.dirname(db_uri.split("sqlite:///", 1)[1])
            if db_path and not os.path.exists(db_path):
                os.makedirs(db_path)
        return create_engine(db_uri, connect_args={"check_same_thread": False}, echo=verbose)
    return create_engine(db_uri, echo=verbose, pool_pre_ping=True)


class IdentityStore:
    """
    SQLAlchemy-backed user store.

    Usage:
        store = IdentityStore("sqlite:///./data/identity.db")
        store.create()
        user = store.find_or_create("oidc", "subject-123", principal)
    """

    def __init__(self, db_uri: str, verbose: bool = False):
        self.db_uri = db_uri
        self.engine = create_store_engine(db_uri, verbose=verbose)

    def create(self) -> None:
        """Create the tables if they do not exist."""
        with self.engine.begin() as conn:
            metadata.create_all(conn)

    def close(self) -> None:
        self.engine.dispose()

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def get(self, user_id: str) -> Optional[LocalUser]:
        with self.engine.connect() as conn:
            row = conn.execute(select(users).where(users.c.id == user_id)).fetchone()
        return _to_user(row) if row is not None else None

    def find_by_login(self, provider: str, provider_key: str) -> Optional[LocalUser]:
        with self.engine.connect() as conn:
            user_id = _login_user_id(conn, provider, provider_key)
            if user_id is None:
                return None
            row = conn.execute(select(users).where(users.c.id == user_id)).fetchone()
        return _to_user(row) if row is not None else None

    def delete(self, user_id: str) -> bool:
        """Remove a user with its logins and saved tokens. Returns False if unknown."""
        # SQLite does not enforce ON DELETE CASCADE unless asked to
        with self.engine.begin() as conn:
            conn.execute(delete(user_tokens).where(user_tokens.c.user_id == user_id))
            conn.execute(delete(user_logins).where(user_logins.c.user_id == user_id))
            result = conn.execute(delete(users).where(users.c.id == user_id))
        return result.rowcount > 0

    def find_or_create(self, provider: str, provider_key: str, principal: Principal) -> LocalUser:
        """
        Return the local user linked to an external login, creating it on first use.

        Name, email and roles are refreshed from the principal on every login.
        A changed email address must be confirmed again. New users start
        unconfirmed.

        Args:
            provider: Authentication scheme name of the external login
            provider_key: Subject identifier at the authority
            principal: Mapped external identity

        Returns:
            The local user
        """
        try:
            return self._find_or_create(provider, provider_key, principal)
        except IntegrityError:
            # A concurrent first login for the same subject won the insert
            logger.info("Concurrent user creation detected, re-reading", extra={"provider": provider})
            return self._find_or_create(provider, provider_key, principal)

    def _find_or_create(self, provider: str, provider_key: str, principal: Principal) -> LocalUser:
        user_name = principal.email or principal.name or principal.subject

        with self.engine.begin() as conn:
            user_id = _login_user_id(conn, provider, provider_key)

            if user_id is None:
                user_id = str(uuid.uuid4())
                conn.execute(
                    users.insert().values(
                        id=user_id,
                        user_name=user_name,
                        email=principal.email,
                        email_confirmed=False,
                        roles=list(principal.roles),
                        created_at=datetime.now(timezone.utc),
                    )
                )
                conn.execute(
                    user_logins.insert().values(
                        provider=provider,
                        provider_key=provider_key,
                        user_id=user_id,
                    )
                )
                logger.info("Created local user for external login", extra={"user_id": user_id, "provider": provider})
            else:
                current = conn.execute(select(users.c.email).where(users.c.id == user_id)).fetchone()
                values = {"user_name": user_name, "email": principal.email, "roles": list(principal.roles)}
                if current is not None and current[0] != principal.email:
                    values["email_confirmed"] = False
                conn.execute(update(users).where(users.c.id == user_id).values(**values))

            row = conn.execute(select(users).where(users.c.id == user_id)).fetchone()

        return _to_user(row)

    # -------------------------------------------------------------------------
    # Account Confirmation
    # -------------------------------------------------------------------------

    def generate_confirmation_code(self, user_id: str) -> str:
        code = secrets.token_urlsafe(32)
        with self.engine.begin() as conn:
            conn.execute(update(users).where(users.c.id == user_id).values(confirmation_code=code))
        return code

    def confirm_email(self, user_id: str, code: str) -> bool:
        """
        Mark the user's email as confirmed if the code matches.

        Returns:
            True if the account is confirmed
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                select(users.c.confirmation_code, users.c.email_confirmed).where(users.c.id == user_id)
            ).fetchone()
            if row is None:
                return False
            expected, confirmed = row
            if confirmed:
                return True
            if not expected or not code or not secrets.compare_digest(expected, code):
                return False
            conn.execute(
                update(users).where(users.c.id == user_id).values(email_confirmed=True, confirmation_code=None)
            )
        logger.info("Confirmed account email", extra={"user_id": user_id})
        return True

    # -------------------------------------------------------------------------
    # Saved Tokens
    # -------------------------------------------------------------------------

    def set_tokens(self, user_id: str, provider: str, tokens: Dict[str, str]) -> None:
        """Replace the saved tokens of one external login."""
        with self.engine.begin() as conn:
            conn.execute(
                delete(user_tokens).where(user_tokens.c.user_id == user_id, user_tokens.c.provider == provider)
            )
            if tokens:
                conn.execute(
                    user_tokens.insert(),
                    [
                        {"user_id": user_id, "provider": provider, "name": name, "value": value}
                        for name, value in tokens.items()
                    ],
                )

    def get_tokens(self, user_id: str, provider: str) -> Dict[str, str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(user_tokens.c.name, user_tokens.c.value).where(
                    user_tokens.c.user_id == user_id, user_tokens.c.provider == provider
                )
            )
            return {name: value for name, value in rows}

    def remove_tokens(self, user_id: str, provider: Optional[str] = None) -> None:
        conditions = [user_tokens.c.user_id == user_id]
        if provider is not None:
            conditions.append(user_tokens.c.provider == provider)
        with self.engine.begin() as conn:
            conn.execute(delete(user_tokens).where(*conditions))


def _login_user_id(conn: Connection, provider: str, provider_key: str) -> Optional[str]:
    row = conn.execute(
        select(user_logins.c.user_id).where(
            user_logins.c.provider == provider, user_logins.c.provider_key == provider_key
        )
    ).fetchone()
    return row[0] if row is not None else None


def _to_user(row) -> LocalUser:
    return LocalUser(
        id=row.id,
        user_name=row.user_name,
        email=row.email,
        email_confirmed=bool(row.email_confirmed),
        roles=list(row.roles or []),
        created_at=row.created_at,
    )
