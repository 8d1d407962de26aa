from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Protocol, TypeVar

from pydantic import ValidationError

from .errors import ProjectNotFoundError, StorageFailure
from .models import Phase, ProjectMetadata, Snapshot, ValidationReport, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A mutator receives a private copy of the metadata and returns the copy to
# persist (or None to leave storage untouched) together with its result.
Mutator = Callable[[ProjectMetadata], tuple[ProjectMetadata | None, T]]

# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``flock`` on ``<path>.lock`` while the block runs.

    The sidecar stays put while ``path`` itself is swapped by ``os.replace``.
    """
    sidecar = path.with_name(path.name + _LOCK_SUFFIX)
    sidecar.parent.mkdir(parents=True, exist_ok=True)
    with sidecar.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` in one rename; readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, staging = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staging, path)
    except BaseException:
        Path(staging).unlink(missing_ok=True)
        raise


def _exclusive_write_text(path: Path, content: str) -> None:
    """Create *path* with *content*, failing if it already exists."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("x", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())


def _safe_read_json(path: Path, model_name: str) -> str:
    """Text of a stored JSON record.

    Raises:
        FileNotFoundError: If there is no such record.
        ValueError: If the record is blank or not UTF-8.
    """
    if not path.is_file():
        raise FileNotFoundError(f"no {model_name} at {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} is not UTF-8") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is blank")
    return text


def slugify_name(name: str, *, max_length: int = 48) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-")


def sanitize_slug(value: str) -> str:
    """Sanitize an identifier for use as a filesystem path component.

    Raises:
        ValueError: If the value is empty or contains no safe characters.
    """
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("identifier must be non-empty")
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", cleaned).strip("-.")
    if not cleaned:
        raise ValueError("identifier contains no filesystem-safe characters")
    return cleaned[:128]


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------

class StateStore(Protocol):
    """Durable project metadata, append-only snapshots and validation reports."""

    def create(self, metadata: ProjectMetadata) -> ProjectMetadata:
        ...

    def load(self, slug: str) -> ProjectMetadata | None:
        ...

    def save(self, slug: str, metadata: ProjectMetadata) -> None:
        ...

    def update(self, slug: str, mutator: Mutator[T]) -> T:
        ...

    def list_projects(self) -> list[str]:
        ...

    def append_snapshot(self, project_id: str, phase: Phase, build: Callable[[int], Snapshot]) -> Snapshot:
        ...

    def list_snapshots(self, project_id: str, phase: Phase) -> list[Snapshot]:
        ...

    def write_validation_report(self, report: ValidationReport) -> None:
        ...

    def read_validation_report(self, project_id: str, report_id: str) -> ValidationReport:
        ...


def _stamp(metadata: ProjectMetadata) -> ProjectMetadata:
    metadata.updated_at = utc_now()
    return ProjectMetadata.model_validate(metadata.model_dump())


# ---------------------------------------------------------------------------
# FilesystemStateStore
# ---------------------------------------------------------------------------

class FilesystemStateStore:
    """JSON-on-disk state store.

    Layout under ``root``::

        projects/<slug>/metadata.json
        snapshots/<project_id>/<PHASE>/<NNNN>.json
        reports/<project_id>/<report_id>.json

    Metadata writes are atomic renames taken under an ``fcntl`` lock so a
    read-modify-write through ``update`` cannot interleave with another one,
    in this process or another. Snapshot and report files are created with
    exclusive mode and are never rewritten.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.projects_dir = root / "projects"
        self.snapshots_dir = root / "snapshots"
        self.reports_dir = root / "reports"
        for directory in (self.root, self.projects_dir, self.snapshots_dir, self.reports_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def metadata_path(self, slug: str) -> Path:
        return self.projects_dir / sanitize_slug(slug) / "metadata.json"

    def _snapshot_dir(self, project_id: str, phase: Phase) -> Path:
        return self.snapshots_dir / sanitize_slug(project_id) / Phase(phase).value

    # ------------------------------------------------------------------
    # Project metadata
    # ------------------------------------------------------------------

    def _read_metadata_unlocked(self, slug: str) -> ProjectMetadata | None:
        path = self.metadata_path(slug)
        if not path.is_file():
            return None
        try:
            text = _safe_read_json(path, "project metadata")
            return ProjectMetadata.model_validate_json(text)
        except (OSError, ValueError) as exc:
            # ValidationError is a ValueError subclass.
            raise StorageFailure("metadata_load", str(exc), context={"slug": slug, "path": str(path)}) from exc

    def _write_metadata_unlocked(self, slug: str, metadata: ProjectMetadata) -> None:
        path = self.metadata_path(slug)
        try:
            _atomic_write_text(path, metadata.model_dump_json(indent=2))
        except OSError as exc:
            raise StorageFailure("metadata_save", str(exc), context={"slug": slug, "path": str(path)}) from exc

    def create(self, metadata: ProjectMetadata) -> ProjectMetadata:
        """Persist a brand-new project.

        Raises:
            ValueError: If a project with the same slug already exists.
        """
        path = self.metadata_path(metadata.slug)
        with _locked_file(path):
            if path.is_file():
                raise ValueError(f"project already exists: {metadata.slug}")
            self._write_metadata_unlocked(metadata.slug, metadata)
        return metadata

    def load(self, slug: str) -> ProjectMetadata | None:
        """Read project metadata, or None when the project does not exist.

        Raises:
            StorageFailure: If the metadata file is unreadable or corrupt.
        """
        return self._read_metadata_unlocked(slug)

    def save(self, slug: str, metadata: ProjectMetadata) -> None:
        with _locked_file(self.metadata_path(slug)):
            self._write_metadata_unlocked(slug, _stamp(metadata))

    def update(self, slug: str, mutator: Mutator[T]) -> T:
        """Atomically read, mutate and write project metadata.

        Args:
            slug: Project slug.
            mutator: Receives the current metadata; returns the metadata to
                persist (or None for no write) and a result value.

        Returns:
            The mutator's result value.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            StorageFailure: If the metadata cannot be read or written.
        """
        with _locked_file(self.metadata_path(slug)):
            current = self._read_metadata_unlocked(slug)
            if current is None:
                raise ProjectNotFoundError(slug)
            updated, result = mutator(current)
            if updated is not None:
                self._write_metadata_unlocked(slug, _stamp(updated))
        return result

    def list_projects(self) -> list[str]:
        return sorted(
            d.name for d in self.projects_dir.iterdir() if d.is_dir() and (d / "metadata.json").is_file()
        )

    # ------------------------------------------------------------------
    # Snapshots (append-only)
    # ------------------------------------------------------------------

    def _read_snapshots_unlocked(self, directory: Path) -> list[Snapshot]:
        snapshots: list[Snapshot] = []
        if not directory.is_dir():
            return snapshots
        for path in sorted(directory.glob("*.json")):
            try:
                snapshots.append(Snapshot.model_validate_json(_safe_read_json(path, "snapshot")))
            except (OSError, ValueError) as exc:
                raise StorageFailure("snapshot_read", str(exc), context={"path": str(path)}) from exc
        snapshots.sort(key=lambda snapshot: snapshot.snapshot_number)
        return snapshots

    def append_snapshot(self, project_id: str, phase: Phase, build: Callable[[int], Snapshot]) -> Snapshot:
        """Assign the next snapshot number and persist the snapshot immutably.

        The number is computed and the file created under one lock, so
        concurrent appends for the same phase never collide.

        Args:
            project_id: Owning project id.
            phase: Phase being captured.
            build: Called with the assigned snapshot number; returns the Snapshot.

        Returns:
            The persisted Snapshot.

        Raises:
            StorageFailure: If the snapshot cannot be written.
        """
        directory = self._snapshot_dir(project_id, phase)
        with _locked_file(directory / "index"):
            existing = self._read_snapshots_unlocked(directory)
            number = (existing[-1].snapshot_number if existing else 0) + 1
            snapshot = build(number)
            if snapshot.snapshot_number != number or snapshot.phase != Phase(phase):
                raise ValueError("snapshot builder must honor the assigned phase and number")
            path = directory / f"{number:04d}.json"
            try:
                _exclusive_write_text(path, snapshot.model_dump_json(indent=2))
            except OSError as exc:
                raise StorageFailure(
                    "snapshot_append",
                    str(exc),
                    context={"project_id": project_id, "phase": Phase(phase).value, "number": number},
                ) from exc
        return snapshot

    def list_snapshots(self, project_id: str, phase: Phase) -> list[Snapshot]:
        """Return every snapshot for a phase ordered by ascending number."""
        return self._read_snapshots_unlocked(self._snapshot_dir(project_id, phase))

    # ------------------------------------------------------------------
    # Validation reports (immutable)
    # ------------------------------------------------------------------

    def write_validation_report(self, report: ValidationReport) -> None:
        path = self.reports_dir / sanitize_slug(report.project_id) / f"{report.report_id}.json"
        try:
            _exclusive_write_text(path, report.model_dump_json(indent=2))
        except OSError as exc:
            raise StorageFailure(
                "report_write", str(exc), context={"project_id": report.project_id, "path": str(path)}
            ) from exc

    def read_validation_report(self, project_id: str, report_id: str) -> ValidationReport:
        """Read a stored validation report.

        Raises:
            FileNotFoundError: If the report does not exist.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self.reports_dir / sanitize_slug(project_id) / f"{sanitize_slug(report_id)}.json"
        text = _safe_read_json(path, "validation report")
        try:
            return ValidationReport.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"validation report at {path} failed validation: {exc}") from exc


# ---------------------------------------------------------------------------
# InMemoryStateStore
# ---------------------------------------------------------------------------

class InMemoryStateStore:
    """Process-local store with the same semantics as FilesystemStateStore.

    Records are kept as JSON text so callers never share mutable model
    instances with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._metadata: dict[str, str] = {}
        self._snapshots: dict[tuple[str, Phase], list[str]] = {}
        self._reports: dict[tuple[str, str], str] = {}

    def create(self, metadata: ProjectMetadata) -> ProjectMetadata:
        with self._lock:
            if metadata.slug in self._metadata:
                raise ValueError(f"project already exists: {metadata.slug}")
            self._metadata[metadata.slug] = metadata.model_dump_json()
        return metadata

    def load(self, slug: str) -> ProjectMetadata | None:
        with self._lock:
            text = self._metadata.get(slug)
        return ProjectMetadata.model_validate_json(text) if text is not None else None

    def save(self, slug: str, metadata: ProjectMetadata) -> None:
        with self._lock:
            self._metadata[slug] = _stamp(metadata).model_dump_json()

    def update(self, slug: str, mutator: Mutator[T]) -> T:
        with self._lock:
            text = self._metadata.get(slug)
            if text is None:
                raise ProjectNotFoundError(slug)
            updated, result = mutator(ProjectMetadata.model_validate_json(text))
            if updated is not None:
                self._metadata[slug] = _stamp(updated).model_dump_json()
        return result

    def list_projects(self) -> list[str]:
        with self._lock:
            return sorted(self._metadata)

    def append_snapshot(self, project_id: str, phase: Phase, build: Callable[[int], Snapshot]) -> Snapshot:
        key = (project_id, Phase(phase))
        with self._lock:
            entries = self._snapshots.setdefault(key, [])
            snapshot = build(len(entries) + 1)
            if snapshot.snapshot_number != len(entries) + 1 or snapshot.phase != Phase(phase):
                raise ValueError("snapshot builder must honor the assigned phase and number")
            entries.append(snapshot.model_dump_json())
        return snapshot

    def list_snapshots(self, project_id: str, phase: Phase) -> list[Snapshot]:
        with self._lock:
            entries = list(self._snapshots.get((project_id, Phase(phase)), []))
        return [Snapshot.model_validate_json(text) for text in entries]

    def write_validation_report(self, report: ValidationReport) -> None:
        key = (report.project_id, report.report_id)
        with self._lock:
            if key in self._reports:
                raise StorageFailure("report_write", "report already exists", context={"report_id": report.report_id})
            self._reports[key] = report.model_dump_json()

    def read_validation_report(self, project_id: str, report_id: str) -> ValidationReport:
        with self._lock:
            text = self._reports.get((project_id, report_id))
        if text is None:
            raise FileNotFoundError(f"validation report not found: {project_id}/{report_id}")
        return ValidationReport.model_validate_json(text)
