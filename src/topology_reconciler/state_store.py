from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from .errors import StateLockError, StateStoreError
from .models import ObservedResource

logger = logging.getLogger(__name__)

_NODE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, fsyncs it, then renames
    (``os.replace``) into place, so a crash leaves either the old or the new
    record and never a partial one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, label: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        StateStoreError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise StateStoreError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise StateStoreError(f"{label} at {path} is empty")
    return text


def _check_node_id(node_id: str) -> str:
    if not _NODE_ID_RE.match(node_id):
        raise StateStoreError(f"node id is not filesystem-safe: {node_id!r}")
    return node_id


# ---------------------------------------------------------------------------
# StateStore
# ---------------------------------------------------------------------------

class StateStore(ABC):
    """Persisted mapping from node id to its last observed resource.

    ``save`` and ``remove`` are durable when they return; the executor relies
    on that before it dispatches any dependent action.
    """

    @abstractmethod
    def load(self) -> dict[str, ObservedResource]:
        ...

    @abstractmethod
    def get(self, node_id: str) -> ObservedResource | None:
        ...

    @abstractmethod
    def save(self, record: ObservedResource) -> None:
        ...

    @abstractmethod
    def remove(self, node_id: str) -> None:
        ...

    @abstractmethod
    @contextmanager
    def run_lock(self) -> Iterator[None]:
        """Hold exclusive ownership of the store for one reconciliation run."""
        ...


class InMemoryStateStore(StateStore):
    def __init__(self, records: dict[str, ObservedResource] | None = None) -> None:
        self._records: dict[str, str] = {}
        self._lock = threading.Lock()
        self._run_lock = threading.Lock()
        for record in (records or {}).values():
            self.save(record)

    def load(self) -> dict[str, ObservedResource]:
        with self._lock:
            return {
                node_id: ObservedResource.model_validate_json(text)
                for node_id, text in sorted(self._records.items())
            }

    def get(self, node_id: str) -> ObservedResource | None:
        with self._lock:
            text = self._records.get(node_id)
        return ObservedResource.model_validate_json(text) if text is not None else None

    def save(self, record: ObservedResource) -> None:
        with self._lock:
            self._records[record.node_id] = record.model_dump_json()

    def remove(self, node_id: str) -> None:
        with self._lock:
            self._records.pop(node_id, None)

    @contextmanager
    def run_lock(self) -> Iterator[None]:
        if not self._run_lock.acquire(blocking=False):
            raise StateLockError("state store is locked by another reconciliation run")
        try:
            yield
        finally:
            self._run_lock.release()


class FileStateStore(StateStore):
    """One JSON document per node under ``<root>/resources``.

    Every write is an atomic replace under a per-file ``fcntl`` lock, so
    concurrent actions on different nodes never touch the same file.
    """

    def __init__(self, root: Path, *, project_id: str | None = None) -> None:
        self.base_root = root
        self.project_id = project_id
        self.root = project_scoped_root(root, project_id)
        self.resources_dir = self.root / "resources"
        self.runs_dir = self.root / "runs"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for directory in (self.root, self.resources_dir, self.runs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @property
    def run_lock_path(self) -> Path:
        return self.root / "run.lock"

    def resource_path(self, node_id: str) -> Path:
        return self.resources_dir / f"{_check_node_id(node_id)}.json"

    def load(self) -> dict[str, ObservedResource]:
        records: dict[str, ObservedResource] = {}
        for path in sorted(self.resources_dir.glob("*.json")):
            record = self._read(path)
            if record.node_id != path.stem:
                raise StateStoreError(f"record at {path} belongs to node {record.node_id!r}")
            records[record.node_id] = record
        logger.debug("Loaded %d observed resources from %s", len(records), self.resources_dir)
        return records

    def get(self, node_id: str) -> ObservedResource | None:
        path = self.resource_path(node_id)
        if not path.is_file():
            return None
        with _locked_file(path):
            return self._read(path)

    def save(self, record: ObservedResource) -> None:
        path = self.resource_path(record.node_id)
        with _locked_file(path):
            _atomic_write_text(path, record.model_dump_json(indent=2))

    def remove(self, node_id: str) -> None:
        path = self.resource_path(node_id)
        with _locked_file(path):
            path.unlink(missing_ok=True)
        path.with_suffix(path.suffix + _LOCK_SUFFIX).unlink(missing_ok=True)

    @contextmanager
    def run_lock(self) -> Iterator[None]:
        self.run_lock_path.parent.mkdir(parents=True, exist_ok=True)
        with self.run_lock_path.open("a+", encoding="utf-8") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise StateLockError(f"state store {self.root} is locked by another reconciliation run") from exc
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def write_run_report(self, *, run_id: str, payload: dict[str, Any]) -> Path:
        """Persist the per-node report of one run under ``runs/``."""
        safe_run = re.sub(r"[^A-Za-z0-9_.-]+", "-", run_id.strip()).strip("-")
        if not safe_run:
            raise ValueError("run_id must contain filesystem-safe characters")
        path = self.runs_dir / f"{safe_run}.json"
        _atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=True, default=str))
        return path

    @staticmethod
    def _read(path: Path) -> ObservedResource:
        text = _safe_read_json(path, "observed resource")
        try:
            return ObservedResource.model_validate_json(text)
        except ValidationError as exc:
            raise StateStoreError(f"observed resource at {path} failed validation: {exc}") from exc


def project_scoped_root(root: Path, project_id: str | None) -> Path:
    if project_id is None:
        return root
    safe = re.sub(r"[^A-Za-z0-9_.-]+", "-", project_id.strip()).strip("-")
    if not safe:
        raise ValueError("project_id must contain filesystem-safe characters")
    return root / "projects" / safe
