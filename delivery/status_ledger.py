"""
Sprint Status Ledger

Reads and updates story statuses in docs/sprint-status.yaml.

Rules:
- READ: the whole file is parsed with PyYAML on every load (never cached).
- WRITE: a single line inside the development_status block is rewritten;
  every other line stays byte-identical. No YAML re-serialization.
- ATOMIC: temp file in the same directory + fsync + os.replace.
- FORWARD-ONLY: a status never moves backwards.
- Unknown story keys are NOT inserted (warning, no-op).
"""

import fcntl
import logging
import os
import re
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .delivery_model import LedgerError, WorkItem, WorkItemStatus

logger = logging.getLogger("status_ledger")

STATUS_SECTION = "development_status"
DEPENDENCY_SECTION = "story_dependencies"
LOAD_ATTEMPTS = 3
LOAD_RETRY_DELAY = 0.05  # seconds

# One lock per ledger path so writers in this process never interleave
_write_locks: Dict[str, threading.Lock] = {}
_write_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _write_locks_guard:
        if key not in _write_locks:
            _write_locks[key] = threading.Lock()
        return _write_locks[key]


@contextmanager
def _locked_file(path: Path):
    """Exclusive advisory lock on a sidecar file, held across processes."""
    lock_path = path.with_suffix(path.suffix + ".lock")
    with open(lock_path, "a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _parse_value(text: str) -> Optional[WorkItemStatus]:
    text = text.strip()
    if not text:
        return None
    try:
        return WorkItemStatus.parse(yaml.safe_load(text))
    except yaml.YAMLError:
        return WorkItemStatus.parse(text)


def _quote_of(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] in "'\"" and text[-1] == text[0]:
        return text[0]
    return ""


@dataclass
class LedgerSnapshot:
    """Work items as read from the ledger at one moment."""
    items: Dict[str, WorkItem] = field(default_factory=dict)

    def get(self, key: str) -> Optional[WorkItem]:
        return self.items.get(key)

    def status_of(self, key: str) -> Optional[WorkItemStatus]:
        item = self.items.get(key)
        return item.status if item else None

    def keys(self) -> List[str]:
        return list(self.items.keys())


class StatusLedger:
    """Line-oriented adapter over sprint-status.yaml."""

    def __init__(self, path: Path):
        self.path = Path(path)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def load(self) -> LedgerSnapshot:
        """
        Parse the ledger into a snapshot.

        A parse error is retried briefly, since a human may be saving the
        file at the same moment.

        Raises:
            LedgerError: file missing or still unparseable after retries
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, LOAD_ATTEMPTS + 1):
            try:
                data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
                return self._build_snapshot(data)
            except FileNotFoundError as e:
                raise LedgerError(f"Sprint status not found: {self.path}") from e
            except yaml.YAMLError as e:
                last_error = e
                logger.warning(f"Sprint status parse failed (attempt {attempt}/{LOAD_ATTEMPTS}): {e}")
                time.sleep(LOAD_RETRY_DELAY)
        raise LedgerError(f"Failed to load sprint status {self.path}: {last_error}")

    def get_status(self, key: str) -> Optional[WorkItemStatus]:
        return self.load().status_of(key)

    def _build_snapshot(self, data: dict) -> LedgerSnapshot:
        if not isinstance(data, dict):
            raise LedgerError(f"Sprint status {self.path} is not a mapping")

        statuses = data.get(STATUS_SECTION) or {}
        dependencies = data.get(DEPENDENCY_SECTION) or {}
        snapshot = LedgerSnapshot()

        for key, value in statuses.items():
            key = str(key)
            prereqs = dependencies.get(key) or []
            if isinstance(prereqs, str):
                prereqs = [prereqs]
            snapshot.items[key] = WorkItem(
                key=key,
                status=WorkItemStatus.parse(value),
                prerequisite_keys=[str(p) for p in prereqs],
            )
        return snapshot

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def update_status(self, key: str, status: WorkItemStatus) -> bool:
        """
        Set the status of one story.

        Returns:
            True if the file now holds the new status, False if the key was
            absent or the change would move the story backwards.
        """
        logger.info(f"[{key}] Updating sprint status: {status.value}")

        if not self.path.exists():
            raise LedgerError(f"Sprint status not found: {self.path}")

        with _lock_for(self.path), _locked_file(self.path):
            try:
                content = self.path.read_text(encoding="utf-8")
            except FileNotFoundError as e:
                raise LedgerError(f"Sprint status not found: {self.path}") from e

            lines = content.splitlines(keepends=True)
            index, match = self._find_status_line(lines, key)
            if match is None:
                logger.warning(f"[{key}] Story not found in sprint status, not inserting")
                return False

            raw = match.group("value")
            current = _parse_value(raw)
            if current is not None and current.rank > status.rank:
                logger.warning(
                    f"[{key}] Refusing to move status backwards: {current.value} -> {status.value}"
                )
                return False

            quote = _quote_of(raw)
            if current == status and raw.strip().strip(quote) == status.value:
                logger.info(f"[{key}] Sprint status already {status.value}")
                return True

            lines[index] = f"{match.group('prefix')}{quote}{status.value}{quote}{match.group('suffix')}"
            self._write_atomic("".join(lines))

        logger.info(f"[{key}] Sprint status updated to {status.value}")
        return True

    def _find_status_line(self, lines: List[str], key: str):
        pattern = re.compile(
            rf"^(?P<prefix>\s+['\"]?{re.escape(key)}['\"]?:[ \t]*)"
            rf"(?P<value>[^#\r\n]*?)"
            rf"(?P<suffix>[ \t]*(?:#[^\r\n]*)?\r?\n?)$"
        )
        in_section = False
        for index, line in enumerate(lines):
            stripped = line.strip()
            if not line[:1].isspace() and stripped and not stripped.startswith("#"):
                in_section = stripped.startswith(f"{STATUS_SECTION}:")
                continue
            if not in_section:
                continue
            match = pattern.match(line)
            if match:
                return index, match
        return -1, None

    def _write_atomic(self, content: str) -> None:
        directory = self.path.parent
        fd, temp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, self.path)
        except OSError as e:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise LedgerError(f"Failed to write sprint status {self.path}: {e}") from e
