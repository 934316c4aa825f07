"""Browser-session storage and the per-flow session facade.

:class:`SessionStore` is a narrow persistence contract keyed by an opaque
browser session key. Two implementations are provided:

* :class:`MemorySessionStore` – process-local, backed by a
  :class:`cachetools.TTLCache` so idle sessions expire on their own.
* :class:`DiskSessionStore` – one JSON document per session, written with
  *temp-file + os.replace* under an advisory file lock.

Both give last-writer-wins semantics per ``(session, name)``, an atomic
:meth:`SessionStore.take` used to read-and-clear flow state, and
:meth:`SessionStore.rename` used to move a session to a new key at login.
Only writes create a session.

:class:`FlowSession` wraps a store and one session key and exposes the
operations the authorization flow needs (destination, operation, tokens,
flash messages). Reads clear by default; callers that need a peek pass
``clear=False``.
"""

from __future__ import annotations

import json
import os
import secrets
import threading
from hashlib import sha256
from pathlib import Path
from typing import Any, Iterable, Protocol, runtime_checkable

from cachetools import TTLCache

from oidc_connect.flow.clock import Clock, default_clock
from oidc_connect.flow.models import FlowContext, Message, MessageLevel, Operation
from oidc_connect.flow.store import _atomic_write, _file_lock

# Session value names
DESTINATION_KEY = "openid_connect_destination"
OP_KEY = "openid_connect_op"
STATE_KEY = "openid_connect_state"
ID_TOKEN_KEY = "openid_connect_id_token"
ACCESS_TOKEN_KEY = "openid_connect_access_token"
MESSAGES_KEY = "messages"
USER_KEY = "uid"

DEFAULT_LOGIN_PATH = "user/login"
DEFAULT_ACCOUNT_PATH = "user"

_KEY_BYTES = 32


def new_session_key() -> str:
    """Return an unguessable browser session key."""
    return secrets.token_urlsafe(_KEY_BYTES)


# --------------------------------------------------------------------------- #
# public interface                                                            #
# --------------------------------------------------------------------------- #


@runtime_checkable
class SessionStore(Protocol):
    """Key/value storage scoped to one browser session."""

    def get(self, session_key: str, name: str, default: Any = None) -> Any: ...
    def set(self, session_key: str, name: str, value: Any) -> None: ...
    def pop(self, session_key: str, name: str, default: Any = None) -> Any: ...
    def take(self, session_key: str, names: Iterable[str]) -> dict[str, Any]: ...
    def exists(self, session_key: str) -> bool: ...
    def rename(self, session_key: str, new_key: str) -> None: ...
    def clear(self, session_key: str) -> None: ...


# --------------------------------------------------------------------------- #
# In-memory implementation                                                    #
# --------------------------------------------------------------------------- #


class MemorySessionStore(SessionStore):
    """Process-local store; every session expires after *ttl* idle seconds.

    Reads never create a session; only writes do.
    """

    def __init__(self, *, maxsize: int = 10_000, ttl: float = 3600) -> None:
        self._sessions: TTLCache[str, dict[str, Any]] = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()

    def _existing(self, session_key: str) -> dict[str, Any] | None:
        data = self._sessions.get(session_key)
        if data is not None:
            # re-insert to refresh the idle timer
            self._sessions[session_key] = data
        return data

    def exists(self, session_key: str) -> bool:
        with self._lock:
            return self._existing(session_key) is not None

    def get(self, session_key: str, name: str, default: Any = None) -> Any:
        with self._lock:
            data = self._existing(session_key)
            return default if data is None else data.get(name, default)

    def set(self, session_key: str, name: str, value: Any) -> None:
        with self._lock:
            data = self._existing(session_key)
            if data is None:
                data = self._sessions[session_key] = {}
            data[name] = value

    def pop(self, session_key: str, name: str, default: Any = None) -> Any:
        with self._lock:
            data = self._existing(session_key)
            return default if data is None else data.pop(name, default)

    def take(self, session_key: str, names: Iterable[str]) -> dict[str, Any]:
        with self._lock:
            data = self._existing(session_key)
            if data is None:
                return {}
            return {n: data.pop(n) for n in list(names) if n in data}

    def rename(self, session_key: str, new_key: str) -> None:
        with self._lock:
            data = self._sessions.pop(session_key, None)
            self._sessions[new_key] = data if data is not None else {}

    def clear(self, session_key: str) -> None:
        with self._lock:
            self._sessions.pop(session_key, None)


# --------------------------------------------------------------------------- #
# Disk implementation                                                         #
# --------------------------------------------------------------------------- #


class DiskSessionStore(SessionStore):
    """JSON-file implementation of :class:`SessionStore`.

    Values must be JSON-serialisable. Session keys are hashed before they
    reach the filesystem. A session file untouched for *ttl* seconds is
    treated as absent and removed; :meth:`sweep` removes all of them.
    """

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        *,
        ttl: float = 3600,
        clock: Clock = default_clock,
    ) -> None:
        self.base_dir = Path(
            base_dir
            or os.getenv("OIDC_STORAGE_DIR")
            or Path.home() / ".oidc-connect"
        ).expanduser() / "sessions"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.ttl = ttl
        self.clock = clock

    def _path(self, session_key: str) -> Path:
        return self.base_dir / f"{sha256(session_key.encode()).hexdigest()[:32]}.json"

    def _lock(self, path: Path):  # noqa: ANN202
        return _file_lock(path.with_suffix(".lock"), retries=25, delay=0.02)

    def _expired(self, path: Path) -> bool:
        try:
            return self.clock() - path.stat().st_mtime > self.ttl
        except FileNotFoundError:
            return False

    def _read(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        if self._expired(path):
            path.unlink(missing_ok=True)
            return None
        with path.open(encoding="utf-8") as fh:
            return json.load(fh)

    def _update(self, session_key: str, fn, *, create: bool = False) -> Any:  # noqa: ANN001
        path = self._path(session_key)
        with self._lock(path):
            data = self._read(path)
            if data is None:
                if not create:
                    return fn({})
                data = {}
            before = dict(data)
            result = fn(data)
            if create or data != before:
                _atomic_write(path, data)
        return result

    def exists(self, session_key: str) -> bool:
        return self._read(self._path(session_key)) is not None

    def get(self, session_key: str, name: str, default: Any = None) -> Any:
        data = self._read(self._path(session_key))
        return default if data is None else data.get(name, default)

    def set(self, session_key: str, name: str, value: Any) -> None:
        self._update(session_key, lambda data: data.__setitem__(name, value), create=True)

    def pop(self, session_key: str, name: str, default: Any = None) -> Any:
        return self._update(session_key, lambda data: data.pop(name, default))

    def take(self, session_key: str, names: Iterable[str]) -> dict[str, Any]:
        wanted = list(names)
        return self._update(
            session_key, lambda data: {n: data.pop(n) for n in wanted if n in data}
        )

    def rename(self, session_key: str, new_key: str) -> None:
        old_path, new_path = self._path(session_key), self._path(new_key)
        with self._lock(old_path):
            data = self._read(old_path) or {}
            with self._lock(new_path):
                _atomic_write(new_path, data)
            old_path.unlink(missing_ok=True)

    def clear(self, session_key: str) -> None:
        path = self._path(session_key)
        with self._lock(path):
            path.unlink(missing_ok=True)

    def sweep(self) -> int:
        """Delete expired session files and return how many were removed."""
        removed = 0
        for path in self.base_dir.glob("*.json"):
            if self._expired(path):
                path.unlink(missing_ok=True)
                removed += 1
        return removed


# --------------------------------------------------------------------------- #
# Flow session facade                                                         #
# --------------------------------------------------------------------------- #


class FlowSession:
    """Flow-scoped view of one browser session."""

    def __init__(
        self,
        store: SessionStore,
        session_key: str,
        *,
        login_path: str = DEFAULT_LOGIN_PATH,
        redirect_login: str | None = None,
        clock: Clock = default_clock,
    ) -> None:
        if not session_key:
            raise ValueError("session_key must not be empty")
        self.store = store
        self.session_key = session_key
        self.login_path = login_path.strip("/")
        self.redirect_login = redirect_login
        self.clock = clock

    # ----- destination ------------------------------------------------- #
    def save_destination(self, destination: str, locale: str | None = None) -> str:
        """Save the path (and query) to return to after authorization.

        The login form itself is never used as a destination; the configured
        post-login path, or the account page, is stored instead.
        """
        path = (destination or "").lstrip("/")
        if self.login_path and path.startswith(self.login_path):
            path = (self.redirect_login or DEFAULT_ACCOUNT_PATH).lstrip("/")
        self.store.set(self.session_key, DESTINATION_KEY, {"path": path, "locale": locale})
        return path

    def retrieve_destination(self, clear: bool = True) -> tuple[str | None, str | None]:
        """Return ``(path, locale)``; the value is cleared unless *clear* is False."""
        if clear:
            value = self.store.pop(self.session_key, DESTINATION_KEY)
        else:
            value = self.store.get(self.session_key, DESTINATION_KEY)
        if not value:
            return None, None
        return value.get("path"), value.get("locale")

    # ----- operation --------------------------------------------------- #
    def save_op(
        self,
        operation: Operation | str,
        user_id: str | None = None,
        *,
        provider_id: str | None = None,
        ttl_seconds: int = 900,
    ) -> None:
        op = Operation(operation)
        if op is Operation.CONNECT and not user_id:
            raise ValueError("connect requires the acting user id")
        self.store.set(
            self.session_key,
            OP_KEY,
            {
                "operation": op.value,
                "user_id": user_id,
                "provider_id": provider_id,
                "created_at": int(self.clock()),
                "ttl_seconds": ttl_seconds,
            },
        )

    def retrieve_op(self, clear: bool = True) -> tuple[Operation | None, str | None]:
        if clear:
            value = self.store.pop(self.session_key, OP_KEY)
        else:
            value = self.store.get(self.session_key, OP_KEY)
        if not value:
            return None, None
        return Operation(value["operation"]), value.get("user_id")

    # ----- whole context ----------------------------------------------- #
    def consume_context(self) -> FlowContext | None:
        """Atomically read and clear the flow context.

        Returns ``None`` when no operation was recorded or it has expired.
        The stored values are gone afterwards in every case.
        """
        values = self.store.take(self.session_key, (OP_KEY, DESTINATION_KEY))
        op = values.get(OP_KEY)
        if not op:
            return None
        dest = values.get(DESTINATION_KEY) or {}
        context = FlowContext(
            operation=Operation(op["operation"]),
            provider_id=op.get("provider_id") or "",
            acting_user_id=op.get("user_id"),
            destination=dest.get("path"),
            locale=dest.get("locale"),
            created_at=int(op.get("created_at", 0)),
            ttl_seconds=int(op.get("ttl_seconds", 900)),
        )
        if context.is_expired(clock=self.clock):
            return None
        return context

    # ----- tokens ------------------------------------------------------ #
    def save_state_token(self, token: str) -> None:
        self.store.set(self.session_key, STATE_KEY, token)

    def retrieve_state_token(self, clear: bool = True) -> str | None:
        if clear:
            return self.store.pop(self.session_key, STATE_KEY)
        return self.store.get(self.session_key, STATE_KEY)

    def save_id_token(self, token: str, provider_id: str | None = None) -> None:
        self.store.set(
            self.session_key, ID_TOKEN_KEY, {"token": token, "provider_id": provider_id}
        )

    def retrieve_id_token(self, clear: bool = False) -> tuple[str | None, str | None]:
        """Return ``(id_token, provider_id)``; peeks unless *clear* is True."""
        if clear:
            value = self.store.pop(self.session_key, ID_TOKEN_KEY)
        else:
            value = self.store.get(self.session_key, ID_TOKEN_KEY)
        if not value:
            return None, None
        return value.get("token"), value.get("provider_id")

    def save_access_token(self, token: str) -> None:
        self.store.set(self.session_key, ACCESS_TOKEN_KEY, token)

    def retrieve_access_token(self, clear: bool = False) -> str | None:
        if clear:
            return self.store.pop(self.session_key, ACCESS_TOKEN_KEY)
        return self.store.get(self.session_key, ACCESS_TOKEN_KEY)

    # ----- messages ---------------------------------------------------- #
    def add_messages(self, messages: Iterable[Message]) -> None:
        new = [m.to_dict() for m in messages]
        if not new:
            return
        queued = self.store.get(self.session_key, MESSAGES_KEY) or []
        self.store.set(self.session_key, MESSAGES_KEY, [*queued, *new])

    def pop_messages(self) -> list[Message]:
        raw = self.store.pop(self.session_key, MESSAGES_KEY) or []
        return [Message(MessageLevel(m["level"]), m["text"]) for m in raw]

    # ----- authenticated principal -------------------------------------- #
    def current_user_id(self) -> str | None:
        return self.store.get(self.session_key, USER_KEY)

    def login(self, user_id: str) -> str:
        """Bind *user_id* to a new session key and return that key.

        Everything stored under the previous key moves to the new one; the
        previous key no longer refers to any session.
        """
        new_key = new_session_key()
        self.store.rename(self.session_key, new_key)
        self.store.set(new_key, USER_KEY, user_id)
        self.session_key = new_key
        return new_key

    def logout(self) -> None:
        self.store.clear(self.session_key)
