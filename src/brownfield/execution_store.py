"""ExecutionRecord storage.

Records are the only mutable shared state of an apply run. Each record has
exactly one writer (the executor task running its step). Readers receive
deep copies and never block writers.

The JSON file store flushes the whole record set on every transition:
write to a temp file in the same directory, fsync, then atomically replace.
A crash at any point leaves either the previous or the new document.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import InvalidTransition, PlanArtifactError
from .models import ExecutionRecord

logger = logging.getLogger(__name__)

STATE_FILE_VERSION = 1


class ExecutionStore(ABC):
    """Keeps the records of one plan, identified by its fingerprint."""

    def __init__(self) -> None:
        self._fingerprint = ""
        self._records: dict[str, ExecutionRecord] = {}
        self._owners: dict[str, str] = {}

    @abstractmethod
    def load(self, fingerprint: str) -> dict[str, ExecutionRecord]:
        """Load previously persisted records for a plan (empty if none)."""

    @abstractmethod
    def _flush(self, fingerprint: str) -> None:
        """Persist the current record set."""

    def open(self, fingerprint: str) -> dict[str, ExecutionRecord]:
        self._fingerprint = fingerprint
        self._records = self.load(fingerprint)
        self._owners = {}
        return self.snapshot()

    def put(self, record: ExecutionRecord, *, owner: str | None = None) -> None:
        """Store a copy of ``record`` and flush synchronously.

        ``owner`` identifies the writer; a second writer for the same step is
        rejected.
        """
        if owner is not None:
            current = self._owners.setdefault(record.step_id, owner)
            if current != owner:
                raise InvalidTransition(
                    f"Record '{record.step_id}' is owned by '{current}', not '{owner}'"
                )
        self._records[record.step_id] = record.model_copy(deep=True)
        self._flush(self._fingerprint)

    def release(self, step_id: str) -> None:
        self._owners.pop(step_id, None)

    def get(self, step_id: str) -> ExecutionRecord | None:
        record = self._records.get(step_id)
        return record.model_copy(deep=True) if record else None

    def snapshot(self) -> dict[str, ExecutionRecord]:
        return {k: v.model_copy(deep=True) for k, v in self._records.items()}

    def _document(self, fingerprint: str) -> dict[str, Any]:
        return {
            "version": STATE_FILE_VERSION,
            "planFingerprint": fingerprint,
            "updatedAt": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "records": [
                self._records[k].model_dump(mode="json", by_alias=True)
                for k in sorted(self._records)
            ],
        }


class InMemoryExecutionStore(ExecutionStore):
    """Store without persistence; ``flush_count`` lets tests observe flushes."""

    def __init__(self) -> None:
        super().__init__()
        self._saved: dict[str, dict[str, ExecutionRecord]] = {}
        self.flush_count = 0

    def load(self, fingerprint: str) -> dict[str, ExecutionRecord]:
        saved = self._saved.get(fingerprint, {})
        return {k: v.model_copy(deep=True) for k, v in saved.items()}

    def _flush(self, fingerprint: str) -> None:
        self.flush_count += 1
        self._saved[fingerprint] = {k: v.model_copy(deep=True) for k, v in self._records.items()}


class JsonFileExecutionStore(ExecutionStore):
    """One JSON document per plan under ``state_dir``."""

    def __init__(self, state_dir: Path) -> None:
        super().__init__()
        self._state_dir = state_dir

    def path_for(self, fingerprint: str) -> Path:
        safe = fingerprint.replace(":", "-") or "unfingerprinted"
        return self._state_dir / f"execution-{safe}.json"

    def load(self, fingerprint: str) -> dict[str, ExecutionRecord]:
        path = self.path_for(fingerprint)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            records = [ExecutionRecord.model_validate(r) for r in data.get("records", [])]
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as e:
            raise PlanArtifactError(f"Corrupt execution state {path}: {e}") from e
        if data.get("planFingerprint") != fingerprint:
            raise PlanArtifactError(
                f"Execution state {path} belongs to plan {data.get('planFingerprint')}"
            )
        logger.info(
            "Loaded execution records",
            extra={"path": str(path), "records": len(records)},
        )
        return {r.step_id: r for r in records}

    def _flush(self, fingerprint: str) -> None:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(fingerprint)
        payload = json.dumps(self._document(fingerprint), indent=2, sort_keys=True)

        fd, tmp_name = tempfile.mkstemp(dir=self._state_dir, prefix=".execution-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError:
            logger.exception("Failed to flush execution records", extra={"path": str(path)})
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
