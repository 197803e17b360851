"""
Delivery Store

Persistence for the two things a human needs after the pipeline stops:

1. Failure records: one JSON document per fatal failure,
   <errors_dir>/pr-error-<key>.json. A repeated failure for the same story is
   written to pr-error-<key>.2.json, .3, ... Existing records are never
   overwritten.
2. Escalation log: append-only JSONL, fsync'd, one line per escalation.
"""

import json
import logging
import os
import re
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .delivery_model import EscalationEvent

logger = logging.getLogger("delivery_store")


class FailureRecordStore:
    """Writes fatal-failure records for manual recovery."""

    def __init__(self, errors_dir: Path):
        self.errors_dir = Path(errors_dir)

    def record(
        self,
        work_item_key: str,
        error: BaseException,
        workspace: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """
        Persist a failure record.

        Returns:
            Path of the written record
        """
        record = {
            "work_item_key": work_item_key,
            "workspace": workspace or {},
            "error": {
                "type": type(error).__name__,
                "message": str(error),
                "status": getattr(error, "status_code", None),
                "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            },
            "timestamp": datetime.utcnow().isoformat(),
        }

        self.errors_dir.mkdir(parents=True, exist_ok=True)
        path = self._claim_path(work_item_key, json.dumps(record, indent=2, default=str))
        logger.error(f"[{work_item_key}] Failure details saved to: {path}")
        return path

    def list_records(self, work_item_key: str) -> List[Path]:
        """Records for a story, oldest first."""
        if not self.errors_dir.exists():
            return []
        pattern = re.compile(rf"^pr-error-{re.escape(work_item_key)}(?:\.(\d+))?\.json$")
        records = []
        for path in self.errors_dir.iterdir():
            match = pattern.match(path.name)
            if match:
                records.append((int(match.group(1) or 1), path))
        return [path for _, path in sorted(records)]

    def _claim_path(self, work_item_key: str, content: str) -> Path:
        sequence = 1
        while True:
            suffix = "" if sequence == 1 else f".{sequence}"
            path = self.errors_dir / f"pr-error-{work_item_key}{suffix}.json"
            try:
                # "x" mode: fails if another failure already claimed this name
                with open(path, "x", encoding="utf-8") as handle:
                    handle.write(content)
                return path
            except FileExistsError:
                sequence += 1


class EscalationLog:
    """Append-only JSONL log of escalations."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def record(self, event: EscalationEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(event.to_dict(), sort_keys=True)
        with open(self.path, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")
            handle.flush()
            os.fsync(handle.fileno())

    def recent(self, limit: int = 50, work_item_key: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent escalations first."""
        if not self.path.exists():
            return []
        records = []
        with open(self.path, "r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping corrupt escalation line in {self.path}")
                    continue
                if work_item_key and record.get("work_item_key") != work_item_key:
                    continue
                records.append(record)
        records.reverse()
        return records[:limit]
