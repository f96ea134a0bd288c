"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_license are the mappers. Route, guard and verifier code
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are stored lower-cased. License lookups still compare on LOWER(email)
  because license rows are written by the payment webhook, which this service
  does not control.

  session_version changes only through bump_session_version(), a single
  UPDATE ... SET session_version = COALESCE(session_version, 1) + 1. Two
  concurrent sign-outs both increment; neither can lose the other's bump.

Datastore errors propagate out of this module. The fail-closed decision
belongs to the callers (TokenVerifier, AuthorizationGuard).

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.codec import normalize_email
from auth.models import ProLicense, User
from core.config import get_settings
from core.db import create_store_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("hashed_password", Text),  # NULL: no password set, cannot log in
    # NULL is read as 1. Rows created before the column existed have NULL.
    Column("session_version", Integer, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_licenses = Table(
    "pro_licenses",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("plan", String(50), nullable=False),
    Column("customer_id", String(255)),
    Column("purchased_at", String(32)),
    Column("cancelled_at", String(32)),
)

# One row per email, ever. A lapsed trial is never restarted, and the row
# outlives account deletion so re-registering does not grant a second trial.
_trials = Table(
    "trials",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("trial_start", Integer, nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_user_id(user_id: str | int) -> int | None:
    """Token user ids arrive as strings. Anything non-numeric matches no row."""
    if isinstance(user_id, int):
        return user_id
    if isinstance(user_id, str) and user_id.isascii() and user_id.isdigit():
        return int(user_id)
    return None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, ProLicense and trial rows.

    Also serves as the SessionVersionLookup for TokenVerifier and the
    LicenseLookup for AuthorizationGuard.

    Usage:
        store = UserStore("sqlite:///pcompass.db")
        uid = store.create_user(User(email="a@b.com", hashed_password=hash_password("secret")))
        store.bump_session_version(uid)
        store.close()
    """

    def __init__(self, db_url: str | None = None, timeout: float | None = None) -> None:
        if db_url is None or timeout is None:
            settings = get_settings()
            db_url = db_url or settings.database_url
            timeout = settings.db_timeout_seconds if timeout is None else timeout
        self.engine: Engine = create_store_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    name=user.name,
                    hashed_password=user.hashed_password,
                    session_version=user.session_version,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str | int) -> User | None:
        uid = _parse_user_id(user_id)
        if uid is None:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == uid)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Returns True if deleted."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Session version
    # ------------------------------------------------------------------

    def get_session_version(self, user_id: str | int) -> int | None:
        """Return the live session version, or None if the user does not exist."""
        uid = _parse_user_id(user_id)
        if uid is None:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(
                select(func.coalesce(_users.c.session_version, 1)).where(_users.c.id == uid)
            ).fetchone()
        return int(row[0]) if row is not None else None

    def bump_session_version(self, user_id: str | int) -> None:
        """Atomically increment the user's session version (NULL counts as 1)."""
        uid = _parse_user_id(user_id)
        if uid is None:
            return
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == uid)
                .values(session_version=func.coalesce(_users.c.session_version, 1) + 1)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Pro licenses
    # ------------------------------------------------------------------

    def has_active_license(self, email: str) -> bool:
        """True if an active license row exists for the lower-cased email."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_licenses.c.id)
                .where((func.lower(_licenses.c.email) == normalize_email(email)) & (_licenses.c.active == 1))
                .limit(1)
            ).fetchone()
        return row is not None

    def get_license(self, email: str) -> ProLicense | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _licenses.select().where(func.lower(_licenses.c.email) == normalize_email(email)).limit(1)
            ).fetchone()
        return _row_to_license(row) if row is not None else None

    def upsert_license(self, lic: ProLicense) -> None:
        """Create or replace the license row for lic.email.

        Stand-in for the payment webhook's write path, which lives outside
        this service; only tests and seeding scripts call it. Runs as one
        transaction so a concurrent reader sees either the old row or the new
        one.
        """
        email = normalize_email(lic.email)
        values = {
            "active": 1 if lic.active else 0,
            "plan": lic.plan,
            "customer_id": lic.customer_id,
            "purchased_at": lic.purchased_at or _now_iso(),
            "cancelled_at": lic.cancelled_at,
        }
        with self.engine.begin() as conn:
            result = conn.execute(
                _licenses.update().where(func.lower(_licenses.c.email) == email).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(_licenses.insert().values(email=email, **values))

    def set_license_active(self, email: str, active: bool) -> bool:
        """Flip the active flag; stamps cancelled_at on deactivation.

        Stand-in for the payment webhook's cancel and renew events. Returns
        False when no license row exists for email.
        """
        values: dict = {"active": 1 if active else 0}
        if not active:
            values["cancelled_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _licenses.update().where(func.lower(_licenses.c.email) == normalize_email(email)).values(**values)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_license(self, email: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_licenses.delete().where(func.lower(_licenses.c.email) == normalize_email(email)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Trials
    # ------------------------------------------------------------------

    def get_trial_start(self, email: str) -> int | None:
        """Unix seconds the email's trial began, or None if it never had one."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_trials.c.trial_start).where(_trials.c.email == normalize_email(email))
            ).fetchone()
        return int(row[0]) if row is not None else None

    def start_trial(self, email: str, now: int) -> int:
        """Record a trial starting at now unless one exists; return its start.

        Two concurrent first starts race on the unique email. The loser reads
        the winner's row instead of raising.
        """
        email = normalize_email(email)
        try:
            with self.engine.begin() as conn:
                conn.execute(_trials.insert().values(email=email, trial_start=int(now)))
            return int(now)
        except IntegrityError:
            existing = self.get_trial_start(email)
            if existing is None:
                raise
            return existing

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        session_version=row.session_version if row.session_version is not None else 1,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_license(row) -> ProLicense:
    return ProLicense(
        id=row.id,
        email=row.email,
        plan=row.plan,
        active=bool(row.active),
        customer_id=row.customer_id,
        purchased_at=row.purchased_at,
        cancelled_at=row.cancelled_at,
    )
