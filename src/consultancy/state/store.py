from __future__ import annotations

import copy
import json
import os
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from consultancy.errors import PersistenceError

PROJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _validate_project_id(project_id: str) -> None:
    if not isinstance(project_id, str) or not PROJECT_ID_PATTERN.match(project_id):
        raise PersistenceError(f"Invalid project id: {project_id!r}")


class ProjectStore(ABC):
    """Persistence port for project records and final reports.

    ``update_project`` merges fields into the stored record, so applying the
    same update twice leaves the record unchanged.
    """

    @abstractmethod
    def create_project(self, record: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_project(self, project_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def save_report(self, project_id: str, report: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_project(self, project_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_projects(self) -> list[str]:
        raise NotImplementedError


class InMemoryProjectStore(ProjectStore):
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    def create_project(self, record: dict[str, Any]) -> None:
        project_id = record.get("id")
        _validate_project_id(project_id)
        if project_id in self._records:
            raise PersistenceError(f"Project already exists: {project_id}")
        self._records[project_id] = copy.deepcopy(record)

    def update_project(self, project_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        if project_id not in self._records:
            raise PersistenceError(f"Unknown project: {project_id}")
        self._records[project_id].update(copy.deepcopy(fields))
        return copy.deepcopy(self._records[project_id])

    def save_report(self, project_id: str, report: dict[str, Any]) -> None:
        self.update_project(project_id, {"report": report})

    def get_project(self, project_id: str) -> dict[str, Any] | None:
        record = self._records.get(project_id)
        return copy.deepcopy(record) if record is not None else None

    def list_projects(self) -> list[str]:
        return sorted(self._records)


class LocalProjectStore(ProjectStore):
    """One JSON envelope per project under ``directory``, guarded by a lock file."""

    SCHEMA_VERSION = 1

    def __init__(self, directory: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.directory = directory.resolve()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.directory / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    def _project_file(self, project_id: str) -> Path:
        _validate_project_id(project_id)
        return self.directory / f"{project_id}.json"

    @contextmanager
    def _state_lock(self):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise PersistenceError("Timed out waiting for project store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def get_envelope(self, project_id: str) -> dict[str, Any] | None:
        path = self._project_file(project_id)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Corrupt project record: {path.name}") from exc
        except OSError as exc:
            raise PersistenceError(f"Could not read project record: {exc}") from exc
        if not isinstance(raw, dict) or "data" not in raw:
            raise PersistenceError(f"Malformed project record: {path.name}")
        return {
            "schema_version": int(raw.get("schema_version") or self.SCHEMA_VERSION),
            "revision": int(raw.get("revision") or 1),
            "updated_at": raw.get("updated_at") or _utcnow_iso(),
            "data": raw["data"],
        }

    def _write_envelope(self, project_id: str, data: dict[str, Any], revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": _utcnow_iso(),
            "data": data,
        }
        path = self._project_file(project_id)
        temp_path = path.with_suffix(".json.tmp")
        try:
            temp_path.write_text(
                json.dumps(envelope, ensure_ascii=False, indent=2, default=str), encoding="utf-8"
            )
            os.replace(temp_path, path)
        except OSError as exc:
            raise PersistenceError(f"Could not write project record: {exc}") from exc

    def create_project(self, record: dict[str, Any]) -> None:
        project_id = record.get("id")
        _validate_project_id(project_id)
        with self._state_lock():
            if self._project_file(project_id).exists():
                raise PersistenceError(f"Project already exists: {project_id}")
            self._write_envelope(project_id, record, revision=1)

    def _set(self, project_id: str, data: dict[str, Any], expected_revision: int) -> None:
        with self._state_lock():
            current = self.get_envelope(project_id)
            if current is None:
                raise PersistenceError(f"Unknown project: {project_id}")
            if current["revision"] != expected_revision:
                raise PersistenceError(
                    f"Concurrent state update detected for project '{project_id}'."
                )
            self._write_envelope(project_id, data, revision=expected_revision + 1)

    def _update(
        self, project_id: str, updater: Callable[[dict[str, Any]], dict[str, Any]]
    ) -> dict[str, Any]:
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(project_id)
            if current is None:
                raise PersistenceError(f"Unknown project: {project_id}")
            updated = updater(dict(current["data"]))
            try:
                self._set(project_id, updated, expected_revision=current["revision"])
                return updated
            except PersistenceError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise PersistenceError(str(last_error) if last_error else "Project update failed.")

    def update_project(self, project_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        def _merge(data: dict[str, Any]) -> dict[str, Any]:
            data.update(fields)
            return data

        return self._update(project_id, _merge)

    def save_report(self, project_id: str, report: dict[str, Any]) -> None:
        self.update_project(project_id, {"report": report})

    def get_project(self, project_id: str) -> dict[str, Any] | None:
        envelope = self.get_envelope(project_id)
        if envelope is None:
            return None
        return envelope["data"]

    def list_projects(self) -> list[str]:
        return sorted(path.stem for path in self.directory.glob("*.json"))
