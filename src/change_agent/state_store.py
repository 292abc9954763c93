from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, Callable, Iterator

from pydantic import ValidationError

from .canonical import digest, hash_text, to_json_value
from .errors import RunLockedError, RunNotFoundError, RunStateSchemaError
from .events import EventEnvelope
from .models import (
    RUN_STATE_VERSION,
    ArtifactEntry,
    LearningRequest,
    RunDocument,
    utc_now,
)

logger = logging.getLogger(__name__)

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
    """Write *content* to *path* via temp file, fsync and ``os.replace``."""
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


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# Run lock
# ---------------------------------------------------------------------------


class RunLock:
    """Exclusive, non-blocking lock held by the live process driving a run."""

    def __init__(self, run_id: str, handle: IO[str]) -> None:
        self.run_id = run_id
        self._handle: IO[str] | None = handle

    @property
    def held(self) -> bool:
        return self._handle is not None

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug("released run lock for %s", self.run_id)


# ---------------------------------------------------------------------------
# RunStateStore
# ---------------------------------------------------------------------------


class RunStateStore:
    """Filesystem store for run documents, artifacts, events and learning requests.

    The run document is rewritten atomically under an ``fcntl`` sidecar lock on
    every mutation. Artifact payload files are content-addressed and written
    once; the run document only carries references to them.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.runs_dir = root / "runs"
        self.artifacts_dir = root / "artifacts"
        self.events_dir = root / "events"
        self.learning_dir = root / "learning"
        self.locks_dir = root / "locks"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for directory in (
            self.root,
            self.runs_dir,
            self.artifacts_dir,
            self.events_dir,
            self.learning_dir,
            self.locks_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def run_path(self, run_id: str) -> Path:
        return self.runs_dir / f"{sanitize_name(run_id)}.json"

    # ------------------------------------------------------------------
    # Run documents
    # ------------------------------------------------------------------

    def create_run(self, run_id: str, **fields: Any) -> RunDocument:
        """Create and persist a fresh run document.

        Raises:
            ValueError: If a run with this id already exists.
        """
        path = self.run_path(run_id)
        with _locked_file(path):
            if path.exists():
                raise ValueError(f"Run already exists: {run_id}")
            document = RunDocument(run_id=run_id, **fields)
            _atomic_write_text(path, document.model_dump_json(indent=2))
        logger.info("created run %s", run_id)
        return document

    def read_run(self, run_id: str) -> RunDocument:
        """Read and validate a run document.

        Raises:
            RunNotFoundError: If no document exists for *run_id*.
            RunStateSchemaError: If the document has an unknown version or shape.
        """
        path = self.run_path(run_id)
        if not path.is_file():
            raise RunNotFoundError(run_id)
        with _locked_file(path):
            return self._load(run_id, path)

    def update_run(self, run_id: str, mutator: Callable[[RunDocument], None]) -> tuple[RunDocument, str]:
        """Apply *mutator* to the run document under an exclusive lock.

        The mutated document is re-validated before it is written, so a
        mutation that breaks an invariant never reaches disk.

        Returns:
            The persisted document and the digest of its content.
        """
        path = self.run_path(run_id)
        if not path.is_file():
            raise RunNotFoundError(run_id)
        with _locked_file(path):
            document = self._load(run_id, path)
            mutator(document)
            document.run.updated_at = utc_now()
            try:
                document = RunDocument.model_validate(document.model_dump())
            except ValidationError as exc:
                raise RunStateSchemaError(
                    f"run {run_id} mutation produced an invalid document: {exc}", run_id=run_id
                ) from exc
            payload = document.model_dump_json(indent=2)
            _atomic_write_text(path, payload)
        return document, hash_text(payload)

    def list_run_ids(self) -> list[str]:
        return sorted(path.stem for path in self.runs_dir.glob("*.json"))

    def _load(self, run_id: str, path: Path) -> RunDocument:
        text = _safe_read_json(path, f"run {run_id}")
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise RunStateSchemaError(f"run {run_id} at {path} is not valid JSON: {exc}", run_id=run_id) from exc
        version = raw.get("version") if isinstance(raw, dict) else None
        if version != RUN_STATE_VERSION:
            raise RunStateSchemaError(
                f"run {run_id} has unsupported state version {version!r} (expected {RUN_STATE_VERSION})",
                run_id=run_id,
            )
        try:
            return RunDocument.model_validate(raw)
        except ValidationError as exc:
            raise RunStateSchemaError(f"run {run_id} at {path} failed validation: {exc}", run_id=run_id) from exc

    # ------------------------------------------------------------------
    # Artifacts (content-addressed, write-once)
    # ------------------------------------------------------------------

    def write_artifact(self, run_id: str, step_id: str, name: str, data: Any) -> ArtifactEntry:
        """Persist an artifact payload and return its index entry.

        Strings are stored verbatim as text; everything else is stored as JSON.
        The file name embeds the content digest, so an existing file is never
        rewritten: the same payload reuses it, a different payload gets a new
        file.
        """
        if isinstance(data, str):
            kind = "text"
            content = data
            content_digest = hash_text(data)
        else:
            kind = "json"
            content = json.dumps(to_json_value(data), indent=2, sort_keys=True)
            content_digest = digest(data)
        suffix = "txt" if kind == "text" else "json"
        relative = (
            Path("artifacts")
            / sanitize_name(run_id)
            / sanitize_name(step_id)
            / f"{sanitize_name(name)}-{content_digest[:12]}.{suffix}"
        )
        path = self.root / relative
        with _locked_file(path):
            if not path.exists():
                _atomic_write_text(path, content)
        return ArtifactEntry(
            step_id=step_id,
            name=name,
            path=relative.as_posix(),
            digest=content_digest,
            updated_at=utc_now(),
            kind=kind,
        )

    def read_artifact(self, entry: ArtifactEntry) -> Any:
        path = self.root / entry.path
        if not path.is_file():
            raise FileNotFoundError(f"artifact {entry.step_id}/{entry.name} not found: {path}")
        text = path.read_text(encoding="utf-8")
        if entry.kind == "text":
            return text
        return json.loads(text)

    # ------------------------------------------------------------------
    # Events (append-only JSONL)
    # ------------------------------------------------------------------

    def events_path(self, run_id: str) -> Path:
        return self.events_dir / f"{sanitize_name(run_id)}.jsonl"

    def append_event(self, envelope: EventEnvelope) -> None:
        path = self.events_path(envelope.run_id)
        with _locked_file(path):
            with path.open("a", encoding="utf-8") as handle:
                handle.write(envelope.model_dump_json() + "\n")

    def read_events(self, run_id: str) -> list[EventEnvelope]:
        path = self.events_path(run_id)
        if not path.is_file():
            return []
        events: list[EventEnvelope] = []
        for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                events.append(EventEnvelope.model_validate_json(line))
            except ValidationError as exc:
                raise ValueError(f"event log {path} line {number} failed validation: {exc}") from exc
        return events

    # ------------------------------------------------------------------
    # Run lock
    # ------------------------------------------------------------------

    def acquire_run_lock(self, run_id: str) -> RunLock:
        """Take the exclusive run lock without waiting.

        Raises:
            RunLockedError: If another live process already holds it.
        """
        path = self.locks_dir / f"{sanitize_name(run_id)}{_LOCK_SUFFIX}"
        handle = path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            handle.close()
            raise RunLockedError(run_id) from exc
        logger.debug("acquired run lock for %s", run_id)
        return RunLock(run_id, handle)

    # ------------------------------------------------------------------
    # Learning requests
    # ------------------------------------------------------------------

    def learning_request_path(self, request_id: str) -> Path:
        return self.learning_dir / f"{sanitize_name(request_id)}.json"

    def write_learning_request(self, request: LearningRequest) -> Path:
        path = self.learning_request_path(request.id)
        with _locked_file(path):
            _atomic_write_text(path, request.model_dump_json(indent=2))
        return path

    def read_learning_request(self, request_id: str) -> LearningRequest | None:
        path = self.learning_request_path(request_id)
        if not path.is_file():
            return None
        text = _safe_read_json(path, f"learning request {request_id}")
        try:
            return LearningRequest.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"learning request {request_id} at {path} failed validation: {exc}") from exc

    def list_learning_requests(self) -> list[LearningRequest]:
        requests = []
        for path in sorted(self.learning_dir.glob("*.json")):
            request = self.read_learning_request(path.stem)
            if request is not None:
                requests.append(request)
        return sorted(requests, key=lambda request: request.created_at)


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------


def sanitize_name(value: str) -> str:
    """Sanitize an identifier for use as a filesystem path component.

    Raises:
        ValueError: If the value is empty or contains no safe characters.
    """
    stripped = value.strip()
    if not stripped:
        raise ValueError("name must be non-empty")
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", stripped).strip("-")
    if not cleaned:
        raise ValueError(f"name {value!r} contains no filesystem-safe characters")
    return cleaned[:128]
