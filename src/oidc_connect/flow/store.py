"""Account and identity-link storage for the OpenID Connect flow.

Two narrow persistence interfaces are defined here:

* :class:`AccountStore` – the host application's local accounts. Only the
  operations the flow needs are part of the contract.
* :class:`LinkStore` – the durable ``(user, provider, subject)`` map.

Both are implemented by :class:`MemoryUserStore` (tests, single process)
and :class:`DiskUserStore` (JSON files). The design goals of the disk
store are:

* **Atomicity** – writes use *temp-file + os.replace*.
* **Conditional insert** – usernames and links are claimed by creating an
  index file with ``os.O_EXCL``; a concurrent writer loses and gets
  :class:`~oidc_connect.flow.errors.DuplicateUsernameError` or
  :class:`~oidc_connect.flow.errors.LinkConflictError`.
* **Filename safety** – externally supplied identifiers are hashed or
  slugified before hitting the filesystem.

Environment variables
---------------------
OIDC_STORAGE_DIR
    Base directory for all persisted data.
    Defaults to ``~/.oidc-connect`` when unset.
"""

from __future__ import annotations

import itertools
import json
import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from hashlib import sha256
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from oidc_connect.flow.clock import default_clock as _clock
from oidc_connect.flow.errors import DuplicateUsernameError, LinkConflictError
from oidc_connect.flow.models import Account, IdentityLink

# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #


def _now() -> int:
    return int(_clock())


def _hash(text: str, length: int = 32) -> str:
    return sha256(text.encode()).hexdigest()[:length]


def _slug(text: str, max_len: int = 80) -> str:
    """Filesystem-safe slug."""
    import re

    text = (text or "").strip().lower()
    text = re.sub(r"[^a-z0-9._-]+", "-", text)
    text = re.sub(r"-{2,}", "-", text).strip("-.")
    return text[:max_len] or "unknown"


def _atomic_write(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + f".{uuid.uuid4().hex[:8]}.tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, separators=(",", ":"), sort_keys=True)
    os.replace(tmp, path)  # atomic on POSIX


def _exclusive_write(path: Path, data: dict) -> bool:
    """Create *path* with *data* only if it does not exist yet."""
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        json.dump(data, fh, separators=(",", ":"), sort_keys=True)
    return True


def _read_json(path: Path) -> dict | None:
    try:
        with path.open(encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None


@contextmanager
def _file_lock(lock_path: Path, retries: int = 25, delay: float = 0.2):  # noqa: D401
    """Advisory file lock using ``os.O_EXCL`` temp-file creation."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(retries + 1):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
            os.close(fd)
            break  # acquired!
        except FileExistsError:
            if attempt == retries:
                raise TimeoutError(f"Could not acquire lock {lock_path}") from None
            time.sleep(delay)
    try:
        yield
    finally:
        lock_path.unlink(missing_ok=True)


# --------------------------------------------------------------------------- #
# public interface                                                            #
# --------------------------------------------------------------------------- #


@runtime_checkable
class AccountStore(Protocol):
    """Local account operations needed by the flow."""

    def get(self, uid: str) -> Account | None: ...
    def find_by_name(self, name: str) -> Account | None: ...
    def find_by_mail(self, mail: str) -> Account | None: ...
    def create(
        self,
        *,
        name: str,
        mail: str | None,
        init: str | None = None,
        status: bool = True,
        fields: dict[str, Any] | None = None,
    ) -> Account: ...
    def save(self, account: Account) -> None: ...
    def delete(self, uid: str) -> None: ...


@runtime_checkable
class LinkStore(Protocol):
    """Identity link map: ``(provider, subject) <-> user``, one-to-one."""

    def create_link(self, link: IdentityLink) -> None: ...
    def find_user_id(self, provider_id: str, subject: str) -> str | None: ...
    def links_for_user(self, user_id: str) -> list[IdentityLink]: ...
    def delete_link(self, user_id: str, provider_id: str) -> bool: ...
    def delete_links_for_user(self, user_id: str) -> int: ...


# --------------------------------------------------------------------------- #
# Memory implementation                                                       #
# --------------------------------------------------------------------------- #


class MemoryUserStore(AccountStore, LinkStore):
    """Thread-safe, process-local accounts and links."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._accounts: dict[str, Account] = {}
        self._by_subject: dict[tuple[str, str], IdentityLink] = {}
        self._by_user: dict[tuple[str, str], IdentityLink] = {}

    # ---------------- accounts ------------------------------------------ #
    def get(self, uid: str) -> Account | None:
        with self._lock:
            return self._accounts.get(uid)

    def find_by_name(self, name: str) -> Account | None:
        key = name.lower()
        with self._lock:
            return next((a for a in self._accounts.values() if a.name.lower() == key), None)

    def find_by_mail(self, mail: str) -> Account | None:
        key = mail.lower()
        with self._lock:
            return next(
                (a for a in self._accounts.values() if (a.mail or "").lower() == key), None
            )

    def create(
        self,
        *,
        name: str,
        mail: str | None,
        init: str | None = None,
        status: bool = True,
        fields: dict[str, Any] | None = None,
    ) -> Account:
        with self._lock:
            if self.find_by_name(name) is not None:
                raise DuplicateUsernameError(name)
            account = Account(
                uid=str(next(self._ids)),
                name=name,
                mail=mail,
                init=init,
                status=status,
                fields=dict(fields or {}),
            )
            self._accounts[account.uid] = account
            return account

    def save(self, account: Account) -> None:
        with self._lock:
            account.changed = _now()
            self._accounts[account.uid] = account

    def delete(self, uid: str) -> None:
        with self._lock:
            self._accounts.pop(uid, None)
            self.delete_links_for_user(uid)

    # ---------------- links --------------------------------------------- #
    def create_link(self, link: IdentityLink) -> None:
        with self._lock:
            if (link.provider_id, link.subject) in self._by_subject:
                raise LinkConflictError(
                    provider_id=link.provider_id, reason="subject already linked"
                )
            if (link.user_id, link.provider_id) in self._by_user:
                raise LinkConflictError(
                    provider_id=link.provider_id, reason="user already linked"
                )
            self._by_subject[(link.provider_id, link.subject)] = link
            self._by_user[(link.user_id, link.provider_id)] = link

    def find_user_id(self, provider_id: str, subject: str) -> str | None:
        with self._lock:
            link = self._by_subject.get((provider_id, subject))
            return link.user_id if link else None

    def links_for_user(self, user_id: str) -> list[IdentityLink]:
        with self._lock:
            return [link for (uid, _), link in self._by_user.items() if uid == user_id]

    def delete_link(self, user_id: str, provider_id: str) -> bool:
        with self._lock:
            link = self._by_user.pop((user_id, provider_id), None)
            if link is None:
                return False
            self._by_subject.pop((provider_id, link.subject), None)
            return True

    def delete_links_for_user(self, user_id: str) -> int:
        with self._lock:
            providers = [p for (uid, p) in self._by_user if uid == user_id]
            for provider_id in providers:
                self.delete_link(user_id, provider_id)
            return len(providers)


# --------------------------------------------------------------------------- #
# Disk implementation                                                         #
# --------------------------------------------------------------------------- #


def _account_from_dict(data: dict) -> Account:
    return Account(**data)


class DiskUserStore(AccountStore, LinkStore):
    """JSON-file implementation of :class:`AccountStore` and :class:`LinkStore`."""

    def __init__(self, base_dir: str | os.PathLike | None = None) -> None:
        self.base_dir = Path(
            base_dir
            or os.getenv("OIDC_STORAGE_DIR")
            or Path.home() / ".oidc-connect"
        ).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    # ---------------- paths --------------------------------------------- #
    def _user_path(self, uid: str) -> Path:
        return self.base_dir / "users" / f"{_slug(uid, 64)}.json"

    def _name_path(self, name: str) -> Path:
        return self.base_dir / "names" / f"{_hash(name.lower())}.json"

    def _mail_path(self, mail: str) -> Path:
        return self.base_dir / "mails" / f"{_hash(mail.lower())}.json"

    def _subject_path(self, provider_id: str, subject: str) -> Path:
        return self.base_dir / "links" / "by_subject" / _slug(provider_id, 40) / f"{_hash(subject)}.json"

    def _user_link_path(self, user_id: str, provider_id: str) -> Path:
        return (
            self.base_dir / "links" / "by_user" / _slug(user_id, 64) / f"{_slug(provider_id, 40)}.json"
        )

    # ---------------- accounts ------------------------------------------ #
    def get(self, uid: str) -> Account | None:
        data = _read_json(self._user_path(uid))
        return _account_from_dict(data) if data else None

    def find_by_name(self, name: str) -> Account | None:
        ref = _read_json(self._name_path(name))
        return self.get(ref["uid"]) if ref else None

    def find_by_mail(self, mail: str) -> Account | None:
        ref = _read_json(self._mail_path(mail))
        return self.get(ref["uid"]) if ref else None

    def create(
        self,
        *,
        name: str,
        mail: str | None,
        init: str | None = None,
        status: bool = True,
        fields: dict[str, Any] | None = None,
    ) -> Account:
        uid = uuid.uuid4().hex
        # Claim the username first; losing this race is the caller's problem
        if not _exclusive_write(self._name_path(name), {"uid": uid, "name": name}):
            raise DuplicateUsernameError(name)
        account = Account(
            uid=uid, name=name, mail=mail, init=init, status=status, fields=dict(fields or {})
        )
        _atomic_write(self._user_path(uid), asdict(account))
        if mail:
            _exclusive_write(self._mail_path(mail), {"uid": uid})
        return account

    def save(self, account: Account) -> None:
        account.changed = _now()
        _atomic_write(self._user_path(account.uid), asdict(account))

    def delete(self, uid: str) -> None:
        account = self.get(uid)
        if account is None:
            return
        self.delete_links_for_user(uid)
        self._name_path(account.name).unlink(missing_ok=True)
        if account.mail:
            ref = _read_json(self._mail_path(account.mail))
            if ref and ref.get("uid") == uid:
                self._mail_path(account.mail).unlink(missing_ok=True)
        self._user_path(uid).unlink(missing_ok=True)

    # ---------------- links --------------------------------------------- #
    def create_link(self, link: IdentityLink) -> None:
        data = asdict(link)
        user_path = self._user_link_path(link.user_id, link.provider_id)
        if not _exclusive_write(user_path, data):
            raise LinkConflictError(provider_id=link.provider_id, reason="user already linked")
        if not _exclusive_write(self._subject_path(link.provider_id, link.subject), data):
            user_path.unlink(missing_ok=True)  # roll back the user half
            raise LinkConflictError(
                provider_id=link.provider_id, reason="subject already linked"
            )

    def find_user_id(self, provider_id: str, subject: str) -> str | None:
        data = _read_json(self._subject_path(provider_id, subject))
        return data["user_id"] if data else None

    def links_for_user(self, user_id: str) -> list[IdentityLink]:
        link_dir = self.base_dir / "links" / "by_user" / _slug(user_id, 64)
        if not link_dir.exists():
            return []
        links = []
        for p in sorted(link_dir.glob("*.json")):
            data = _read_json(p)
            if data:
                links.append(IdentityLink(**data))
        return links

    def delete_link(self, user_id: str, provider_id: str) -> bool:
        user_path = self._user_link_path(user_id, provider_id)
        data = _read_json(user_path)
        if data is None:
            return False
        self._subject_path(provider_id, data["subject"]).unlink(missing_ok=True)
        user_path.unlink(missing_ok=True)
        return True

    def delete_links_for_user(self, user_id: str) -> int:
        removed = 0
        for link in self.links_for_user(user_id):
            if self.delete_link(user_id, link.provider_id):
                removed += 1
        return removed

