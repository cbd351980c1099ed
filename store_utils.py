"""User storage for PlexyScrobble.

A :class:`Store` keeps one record per Trakt-authorized Plex user. Three
backends share the same behaviour:

* :class:`DiskStore` – one JSON document per user below a data directory.
* :class:`RedisStore` – a hash per user plus a username index.
* :class:`SqlStore` – a single ``users`` table (PostgreSQL in production).

Exactly one backend is chosen by :func:`create_store` when the process starts.
"""

import json
import logging
import os
import re
import tempfile
import threading
import uuid
from contextlib import contextmanager
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import ContextManager, Dict, Iterator, Mapping, Optional, Union
from urllib.parse import urlsplit, urlunsplit

import redis
import sqlalchemy as sa

from utils import normalize_username

logger = logging.getLogger(__name__)

DATA_DIR = os.environ.get("PLEXYSCROBBLE_DATA_DIR", ".")
HEALTH_CHECK_TIMEOUT = 5.0
REDIS_PREFIX = "plexyscrobble"

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Return ``value`` as an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _redact_url(url: str) -> str:
    """Hide the password part of a connection URL before logging it."""
    parts = urlsplit(url)
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


class User:
    """A Plex account linked to Trakt tokens."""

    def __init__(
        self,
        id: str,
        username: str,
        access_token: str,
        refresh_token: str,
        updated_at: Optional[datetime] = None,
    ) -> None:
        self.id = id
        self.username = normalize_username(username)
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.updated_at = _parse_timestamp(updated_at) if updated_at else _utcnow()

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "username": self.username,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "User":
        return cls(
            data["id"],
            data["username"],
            data.get("access_token") or "",
            data.get("refresh_token") or "",
            _parse_timestamp(data["updated_at"]),
        )

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username}>"


class Store:
    """Common behaviour of every storage backend.

    Subclasses implement ``_load``, ``_find_id``, ``_save``, ``_remove`` and
    ``ping``. Writes for a single user are serialized with a per-user lock;
    writes for different users never wait on each other.
    """

    name = "store"

    def __init__(self) -> None:
        # key -> [lock, number of threads holding or waiting for it]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()
        self._ping_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.name}-ping")
        self._ping_future: Optional[Future] = None
        self._ping_guard = threading.Lock()

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def user_lock(self, user_id: str) -> ContextManager[None]:
        """Hold the write lock of one user across several store calls.

        The lock is reentrant, so ``update_tokens`` and ``delete`` may be
        called while holding it.
        """
        return self._locked(user_id)

    # -- backend hooks ---------------------------------------------------- #
    def _load(self, user_id: str) -> Optional[User]:
        raise NotImplementedError

    def _find_id(self, username: str) -> Optional[str]:
        raise NotImplementedError

    def _save(self, user: User) -> None:
        raise NotImplementedError

    def _remove(self, user_id: str, username: str) -> None:
        raise NotImplementedError

    def ping(self) -> None:
        """Raise if the backend cannot be reached. Never writes."""
        raise NotImplementedError

    # -- public API ------------------------------------------------------- #
    def get_by_id(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        return self._load(user_id)

    def get_by_username(self, username: Optional[str]) -> Optional[User]:
        username = normalize_username(username)
        if not username:
            return None
        user_id = self._find_id(username)
        if not user_id:
            return None
        user = self._load(user_id)
        if user is None or user.username != username:
            return None
        return user

    def create(self, username: str, access_token: str, refresh_token: str) -> User:
        """Store tokens for ``username``.

        A username that is already stored keeps its id so the webhook URL
        configured in Plex keeps working after re-authorization.
        """
        username = normalize_username(username)
        with self._locked(f"username:{username}"):
            existing = self.get_by_username(username)
            user_id = existing.id if existing else uuid.uuid4().hex
            with self._locked(user_id):
                user = User(user_id, username, access_token, refresh_token, _utcnow())
                self._save(user)
        if existing:
            logger.info("Re-authorized user %s (%s)", username, user_id)
        else:
            logger.info("Created user %s (%s)", username, user_id)
        return user

    def update_tokens(self, user: User, access_token: str, refresh_token: str) -> User:
        with self._locked(user.id):
            user.access_token = access_token
            user.refresh_token = refresh_token
            user.updated_at = _utcnow()
            self._save(user)
        logger.info("Updated tokens for %s", user.username)
        return user

    def delete(self, user_id: str, username: str) -> None:
        """Remove a user. Unknown ids are ignored."""
        if not user_id:
            return
        with self._locked(user_id):
            self._remove(user_id, normalize_username(username))
        logger.info("Deleted user %s (%s)", username, user_id)

    def health_check(self, timeout: float = HEALTH_CHECK_TIMEOUT) -> Optional[str]:
        """Run :meth:`ping` with a deadline.

        Returns ``None`` when the backend answered in time, otherwise a short
        description of the problem. A ping still running from an earlier
        check is waited on instead of starting another one.
        """
        with self._ping_guard:
            future = self._ping_future
            if future is None or future.done():
                future = self._ping_future = self._ping_executor.submit(self.ping)
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            return f"{self.name} did not answer within {timeout:g}s"
        except Exception as exc:  # noqa: BLE001
            return f"{self.name}: {exc or exc.__class__.__name__}"
        return None


# --------------------------------------------------------------------------- #
# DISK
# --------------------------------------------------------------------------- #
class DiskStore(Store):
    name = "disk"

    def __init__(self, directory: str) -> None:
        super().__init__()
        self.directory = os.path.join(directory, "users")
        os.makedirs(self.directory, exist_ok=True)

    def _path(self, user_id: str) -> Optional[str]:
        # ids arrive from query strings; never let them escape the directory
        if not _SAFE_ID.match(user_id):
            return None
        return os.path.join(self.directory, f"{user_id}.json")

    def _read(self, path: str) -> Optional[User]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return User.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (ValueError, KeyError) as exc:
            logger.error("Failed to read user file %s: %s", path, exc)
            return None

    def _load(self, user_id: str) -> Optional[User]:
        path = self._path(user_id)
        return self._read(path) if path else None

    def _find_id(self, username: str) -> Optional[str]:
        with os.scandir(self.directory) as entries:
            for entry in entries:
                if not entry.name.endswith(".json"):
                    continue
                user = self._read(entry.path)
                if user is not None and user.username == username:
                    return user.id
        return None

    def _save(self, user: User) -> None:
        path = self._path(user.id)
        if path is None:
            raise ValueError(f"invalid user id {user.id!r}")
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(user.to_dict(), f, indent=2)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _remove(self, user_id: str, username: str) -> None:
        path = self._path(user_id)
        if path is None:
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def ping(self) -> None:
        if not os.path.isdir(self.directory):
            raise OSError(f"{self.directory} is missing")
        if not os.access(self.directory, os.W_OK):
            raise OSError(f"{self.directory} is not writable")


# --------------------------------------------------------------------------- #
# REDIS
# --------------------------------------------------------------------------- #
def _text(value: Union[bytes, str, None]) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


def redis_client_from_url(url: str) -> redis.Redis:
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=HEALTH_CHECK_TIMEOUT,
        socket_timeout=HEALTH_CHECK_TIMEOUT,
    )


def redis_client(uri: str, password: Optional[str] = None) -> redis.Redis:
    """Build a client from a ``host:port`` pair."""
    host, _, port = uri.partition(":")
    return redis.Redis(
        host=host or "localhost",
        port=int(port or 6379),
        password=password or None,
        decode_responses=True,
        socket_connect_timeout=HEALTH_CHECK_TIMEOUT,
        socket_timeout=HEALTH_CHECK_TIMEOUT,
    )


class RedisStore(Store):
    name = "redis"

    def __init__(self, client: redis.Redis, prefix: str = REDIS_PREFIX) -> None:
        super().__init__()
        self.client = client
        self.prefix = prefix

    def _user_key(self, user_id: str) -> str:
        return f"{self.prefix}:user:{user_id}"

    def _username_key(self, username: str) -> str:
        return f"{self.prefix}:username:{username}"

    def _load(self, user_id: str) -> Optional[User]:
        data = self.client.hgetall(self._user_key(user_id))
        if not data:
            return None
        return User.from_dict({_text(k): _text(v) for k, v in data.items()})

    def _find_id(self, username: str) -> Optional[str]:
        return _text(self.client.get(self._username_key(username)))

    def _save(self, user: User) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(self._user_key(user.id), mapping=user.to_dict())
        pipe.set(self._username_key(user.username), user.id)
        pipe.execute()

    def _remove(self, user_id: str, username: str) -> None:
        if not username:
            username = _text(self.client.hget(self._user_key(user_id), "username")) or ""
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(self._user_key(user_id))
        if username and self._find_id(username) == user_id:
            pipe.delete(self._username_key(username))
        pipe.execute()

    def ping(self) -> None:
        self.client.ping()


# --------------------------------------------------------------------------- #
# SQL
# --------------------------------------------------------------------------- #
metadata = sa.MetaData()

users_table = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("username", sa.String(255), nullable=False, unique=True),
    sa.Column("access_token", sa.Text, nullable=False),
    sa.Column("refresh_token", sa.Text, nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)


def create_sql_engine(url: str) -> sa.engine.Engine:
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    connect_args = {}
    if url.startswith("postgresql"):
        connect_args["connect_timeout"] = int(HEALTH_CHECK_TIMEOUT)
    return sa.create_engine(url, pool_pre_ping=True, connect_args=connect_args)


class SqlStore(Store):
    name = "postgresql"

    def __init__(self, engine: sa.engine.Engine) -> None:
        super().__init__()
        self.engine = engine
        metadata.create_all(engine)

    def _load(self, user_id: str) -> Optional[User]:
        query = sa.select(users_table).where(users_table.c.id == user_id)
        with self.engine.connect() as conn:
            row = conn.execute(query).mappings().first()
        return User.from_dict(row) if row else None

    def _find_id(self, username: str) -> Optional[str]:
        query = sa.select(users_table.c.id).where(users_table.c.username == username)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar()

    def _save(self, user: User) -> None:
        values = {
            "username": user.username,
            "access_token": user.access_token,
            "refresh_token": user.refresh_token,
            "updated_at": user.updated_at,
        }
        with self.engine.begin() as conn:
            result = conn.execute(
                users_table.update().where(users_table.c.id == user.id).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(users_table.insert().values(id=user.id, **values))

    def _remove(self, user_id: str, username: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(users_table.delete().where(users_table.c.id == user_id))

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(sa.text("SELECT 1"))


# --------------------------------------------------------------------------- #
# SELECTION
# --------------------------------------------------------------------------- #
def create_store(environ: Optional[Mapping[str, str]] = None) -> Store:
    """Build the backend configured in ``environ`` (defaults to ``os.environ``)."""
    env = os.environ if environ is None else environ
    if env.get("POSTGRESQL_URL"):
        url = env["POSTGRESQL_URL"]
        logger.info("Using postgresql storage: %s", _redact_url(url))
        return SqlStore(create_sql_engine(url))
    if env.get("REDIS_URL"):
        url = env["REDIS_URL"]
        logger.info("Using redis storage: %s", _redact_url(url))
        return RedisStore(redis_client_from_url(url))
    if env.get("REDIS_URI"):
        logger.info("Using redis storage: %s", env["REDIS_URI"])
        return RedisStore(redis_client(env["REDIS_URI"], env.get("REDIS_PASSWORD")))
    directory = os.path.join(env.get("PLEXYSCROBBLE_DATA_DIR", DATA_DIR), "keystore")
    logger.info("Using disk storage: %s", directory)
    return DiskStore(directory)
