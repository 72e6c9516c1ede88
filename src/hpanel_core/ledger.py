"""Append-only ledger of numeric identifiers allocated to projects.

Two flat tables back the ledger, one record per line, ``#`` comments and blank
lines ignored:

    users.map   project:username:uid
    ports.map   project:port:class

Allocation holds an exclusive ``flock`` on ``<table>.lock`` across the
scan-compute-append sequence. Lookups take no lock. A final line without a
trailing newline counts when it parses as a record (hand-edited tables often
lack one); otherwise it is a torn append and is ignored.
"""
from __future__ import annotations

import enum
import fcntl
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import AllocationError

logger = logging.getLogger(__name__)


class Category(str, enum.Enum):
    OS_USER = "os-user"
    PORT = "port"


@dataclass(frozen=True)
class LedgerEntry:
    project: str
    identifier: int
    category: Category
    label: str


def _parse_line(line: str, category: Category) -> Optional[LedgerEntry]:
    parts = line.split(":")
    if len(parts) != 3:
        return None
    if category is Category.OS_USER:
        project, label, raw_id = parts
    else:
        project, raw_id, label = parts
    project = project.strip()
    raw_id = raw_id.strip()
    if not project or not raw_id.isdigit():
        return None
    return LedgerEntry(project=project, identifier=int(raw_id), category=category, label=label.strip())


def _format_entry(entry: LedgerEntry) -> str:
    if entry.category is Category.OS_USER:
        return f"{entry.project}:{entry.label}:{entry.identifier}\n"
    return f"{entry.project}:{entry.identifier}:{entry.label}\n"


class ResourceLedger:
    def __init__(
        self,
        users_path: Path,
        ports_path: Path,
        lock_timeout_seconds: float = 10.0,
        poll_seconds: float = 0.05,
    ) -> None:
        self._paths: Dict[Category, Path] = {
            Category.OS_USER: users_path,
            Category.PORT: ports_path,
        }
        self._lock_timeout_seconds = lock_timeout_seconds
        self._poll_seconds = poll_seconds

    def path_for(self, category: Category) -> Path:
        return self._paths[category]

    def _read_entries(self, category: Category) -> List[LedgerEntry]:
        path = self._paths[category]
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise AllocationError(f"Ledger unreadable: {path}", {"error": str(e)})

        lines = raw.split("\n")
        tail = lines.pop()
        if tail.strip() and _parse_line(tail.strip(), category) is not None:
            lines.append(tail)

        entries: List[LedgerEntry] = []
        for lineno, line in enumerate(lines, start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            entry = _parse_line(stripped, category)
            if entry is None:
                logger.warning("Skipping malformed ledger line %s:%d: %r", path, lineno, line)
                continue
            entries.append(entry)
        return entries

    def entries(self, category: Category) -> List[LedgerEntry]:
        return self._read_entries(category)

    def _find(self, entries: List[LedgerEntry], project: str) -> Optional[LedgerEntry]:
        for entry in entries:
            if entry.project == project:
                return entry
        return None

    def lookup(self, project: str, category: Category) -> Optional[int]:
        entry = self._find(self._read_entries(category), project)
        return entry.identifier if entry else None

    def username(self, project: str) -> Optional[str]:
        entry = self._find(self._read_entries(Category.OS_USER), project)
        return entry.label if entry else None

    @contextmanager
    def _exclusive(self, category: Category) -> Iterator[None]:
        path = self._paths[category]
        lock_path = path.with_name(path.name + ".lock")
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_fh = lock_path.open("a+")
        except OSError as e:
            raise AllocationError(f"Cannot open ledger lock: {lock_path}", {"error": str(e)})
        with lock_fh:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(lock_fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= self._lock_timeout_seconds:
                        raise AllocationError(f"Timeout acquiring ledger lock: {lock_path}")
                    time.sleep(self._poll_seconds)
            try:
                yield
            finally:
                fcntl.flock(lock_fh.fileno(), fcntl.LOCK_UN)

    def _repair_tail(self, path: Path, category: Category) -> None:
        # Only called under the lock. A complete record missing its newline is
        # terminated; anything else after the last newline is a crashed write.
        with path.open("rb+") as fh:
            data = fh.read()
            if not data or data.endswith(b"\n"):
                return
            cut = data.rfind(b"\n") + 1
            tail = data[cut:].decode("utf-8", errors="replace").strip()
            if tail and _parse_line(tail, category) is not None:
                fh.seek(0, os.SEEK_END)
                fh.write(b"\n")
                return
            logger.warning("Discarding torn ledger tail in %s: %r", path, data[cut:])
            fh.truncate(cut)

    def _append(self, entry: LedgerEntry) -> None:
        path = self._paths[entry.category]
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            self._repair_tail(path, entry.category)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(_format_entry(entry))
            fh.flush()
            os.fsync(fh.fileno())

    def allocate(self, project: str, category: Category, floor: int, label: Optional[str] = None) -> int:
        """Return the identifier recorded for ``project``, allocating one if needed.

        New identifiers are ``max(existing, floor - 1) + 1`` across every record
        of the category, so they stay unique and never drop below ``floor``.
        """
        if label is None:
            label = f"{project}_user" if category is Category.OS_USER else "node"

        with self._exclusive(category):
            entries = self._read_entries(category)
            existing = self._find(entries, project)
            if existing is not None:
                return existing.identifier

            highest = max((e.identifier for e in entries), default=floor - 1)
            identifier = max(highest, floor - 1) + 1
            entry = LedgerEntry(project=project, identifier=identifier, category=category, label=label)
            try:
                self._append(entry)
            except OSError as e:
                raise AllocationError(
                    f"Cannot append to ledger: {self._paths[category]}", {"error": str(e)}
                )
            logger.info("Allocated %s %d for %s", category.value, identifier, project)
            return identifier
