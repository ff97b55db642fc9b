"""Account database helpers operating on snapshots."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from .snapshot import Entry, Snapshot, normalize_path

ROOT_USER = "root"
PASSWD_PATH = "etc/passwd"
GROUP_PATH = "etc/group"
FIRST_UID = 1000


@dataclass(frozen=True, slots=True)
class PasswdEntry:
    name: str
    uid: int
    gid: int
    home: str
    shell: str

    def format(self) -> str:
        return f"{self.name}:x:{self.uid}:{self.gid}::{self.home}:{self.shell}"


def _numeric_uid(user: str) -> int | None:
    uid = user.split(":", 1)[0]
    return int(uid) if uid.isdigit() else None


def read_passwd(snapshot: Snapshot) -> Dict[str, PasswdEntry]:
    entry = snapshot.get(PASSWD_PATH)
    if entry is None or entry.kind != "file":
        return {}

    users: Dict[str, PasswdEntry] = {}
    for line in entry.data.decode("utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split(":")
        if len(fields) < 7 or not fields[2].isdigit() or not fields[3].isdigit():
            continue
        users[fields[0]] = PasswdEntry(
            name=fields[0],
            uid=int(fields[2]),
            gid=int(fields[3]),
            home=fields[5],
            shell=fields[6],
        )
    return users


def user_names(snapshot: Snapshot) -> set[str]:
    """Return every account name known to ``snapshot`` (always including root)."""

    return {ROOT_USER, *read_passwd(snapshot)}


def user_exists(snapshot: Snapshot, user: str) -> bool:
    if _numeric_uid(user) is not None:
        return True
    name = user.split(":", 1)[0]
    return name == ROOT_USER or name in read_passwd(snapshot)


def is_privileged(snapshot: Snapshot, user: str) -> bool:
    """Return whether ``user`` acts as the superuser inside ``snapshot``."""

    uid = _numeric_uid(user)
    if uid is not None:
        return uid == 0
    name = user.split(":", 1)[0]
    if name == ROOT_USER:
        return True
    entry = read_passwd(snapshot).get(name)
    return entry is not None and entry.uid == 0


def add_user(snapshot: Snapshot, name: str, *, shell: str, create_home: bool) -> Snapshot:
    """Return ``snapshot`` with a new unprivileged account ``name``.

    Raises :class:`ValueError` when the account already exists.
    """

    users = read_passwd(snapshot)
    if name in users or name == ROOT_USER:
        raise ValueError(f"user '{name}' already exists")

    taken = {entry.uid for entry in users.values()} | _group_ids(snapshot)
    uid = FIRST_UID
    while uid in taken:
        uid += 1

    home = f"/home/{name}"
    record = PasswdEntry(name=name, uid=uid, gid=uid, home=home, shell=shell)
    updates: Dict[str, Entry] = {
        PASSWD_PATH: _append_line(snapshot, PASSWD_PATH, record.format(), mode=0o644),
        GROUP_PATH: _append_line(snapshot, GROUP_PATH, f"{name}:x:{uid}:", mode=0o644),
    }
    if create_home:
        updates[normalize_path(home)] = Entry.directory(mode=0o750, owner=name)
    return snapshot.with_entries(updates)


def _group_ids(snapshot: Snapshot) -> set[int]:
    entry = snapshot.get(GROUP_PATH)
    if entry is None or entry.kind != "file":
        return set()
    ids: set[int] = set()
    for line in entry.data.decode("utf-8", errors="replace").splitlines():
        fields = line.split(":")
        if len(fields) >= 3 and fields[2].isdigit():
            ids.add(int(fields[2]))
    return ids


def _append_line(snapshot: Snapshot, path: str, line: str, *, mode: int) -> Entry:
    existing = snapshot.get(path)
    if existing is not None and existing.kind == "file":
        content = existing.data
        if content and not content.endswith(b"\n"):
            content += b"\n"
        return Entry.file(content + line.encode("utf-8") + b"\n", mode=existing.mode, owner=existing.owner)
    return Entry.file(line.encode("utf-8") + b"\n", mode=mode)


__all__ = [
    "FIRST_UID",
    "GROUP_PATH",
    "PASSWD_PATH",
    "PasswdEntry",
    "ROOT_USER",
    "add_user",
    "is_privileged",
    "read_passwd",
    "user_exists",
    "user_names",
]
