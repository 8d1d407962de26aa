from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol, Sequence

from pydantic import BaseModel, Field, ValidationError

from .canonical import content_hash
from .errors import ArtifactNotFoundError, StorageFailure
from .models import PHASE_ORDER, ArtifactEntry, ArtifactRecord, Phase, artifact_key, utc_now
from .state_store import _atomic_write_text, _locked_file, sanitize_slug

logger = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")
_MANIFEST_NAME = ".manifest.json"


def validate_artifact_name(name: str) -> str:
    if not _SAFE_NAME_RE.match(name) or ".." in name:
        raise ValueError(f"artifact name must be a plain file name, got: {name!r}")
    return name


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class BackendLookup:
    status: LookupStatus
    record: ArtifactRecord | None = None
    error: str | None = None


@dataclass(frozen=True)
class StoredArtifact:
    record: ArtifactRecord
    location: str


class ArtifactBackend(Protocol):
    """One storage location for artifacts.

    Lookups never raise for a plain miss; they report ``NOT_FOUND`` and keep
    ``ERROR`` for an unreachable or corrupt backend.
    """

    name: str

    def lookup(self, project: str, phase: Phase, name: str) -> BackendLookup:
        ...

    def write(self, project: str, phase: Phase, name: str, content: str) -> StoredArtifact:
        ...

    def entries(self, project: str, phase: Phase) -> list[ArtifactEntry]:
        ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryArtifactBackend:
    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._records: dict[tuple[str, Phase, str], ArtifactRecord] = {}

    def lookup(self, project: str, phase: Phase, name: str) -> BackendLookup:
        with self._lock:
            record = self._records.get((project, Phase(phase), name))
        if record is None:
            return BackendLookup(status=LookupStatus.NOT_FOUND)
        return BackendLookup(status=LookupStatus.FOUND, record=record)

    def write(self, project: str, phase: Phase, name: str, content: str) -> StoredArtifact:
        key = (project, Phase(phase), validate_artifact_name(name))
        digest = content_hash(content)
        with self._lock:
            previous = self._records.get(key)
            version = 1
            if previous is not None:
                version = previous.version if previous.content_hash == digest else previous.version + 1
            record = ArtifactRecord(
                project=project,
                phase=Phase(phase),
                name=name,
                content=content,
                version=version,
                content_hash=digest,
            )
            self._records[key] = record
        return StoredArtifact(record=record, location=f"{self.name}://{project}/{artifact_key(phase, name)}")

    def entries(self, project: str, phase: Phase) -> list[ArtifactEntry]:
        with self._lock:
            records = [
                record
                for (record_project, record_phase, _), record in self._records.items()
                if record_project == project and record_phase == Phase(phase)
            ]
        return sorted(
            (ArtifactEntry(name=r.name, size=r.size, version=r.version) for r in records),
            key=lambda entry: entry.name,
        )


# ---------------------------------------------------------------------------
# Filesystem backend
# ---------------------------------------------------------------------------

class _ManifestEntry(BaseModel):
    version: int
    content_hash: str
    updated_at: str


class _Manifest(BaseModel):
    artifacts: dict[str, _ManifestEntry] = Field(default_factory=dict)


class FilesystemArtifactBackend:
    """Artifacts stored as plain files under ``<root>/<project>/<PHASE>/``.

    A per-phase ``.manifest.json`` records the version and sha256 of every
    file. Writes hold an ``fcntl`` lock on the manifest and replace both the
    document and the manifest atomically.
    """

    def __init__(self, root: Path, name: str = "filesystem") -> None:
        self.root = root
        self.name = name

    def _phase_dir(self, project: str, phase: Phase) -> Path:
        return self.root / sanitize_slug(project) / Phase(phase).value

    def _read_manifest(self, phase_dir: Path) -> _Manifest:
        path = phase_dir / _MANIFEST_NAME
        if not path.is_file():
            return _Manifest()
        try:
            return _Manifest.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise ValueError(f"artifact manifest at {path} failed validation: {exc}") from exc

    def lookup(self, project: str, phase: Phase, name: str) -> BackendLookup:
        phase_dir = self._phase_dir(project, phase)
        path = phase_dir / validate_artifact_name(name)
        if not path.is_file():
            return BackendLookup(status=LookupStatus.NOT_FOUND)
        try:
            content = path.read_text(encoding="utf-8")
            manifest = self._read_manifest(phase_dir)
        except (OSError, ValueError) as exc:
            return BackendLookup(status=LookupStatus.ERROR, error=f"{path}: {exc}")
        entry = manifest.artifacts.get(name)
        record = ArtifactRecord(
            project=project,
            phase=Phase(phase),
            name=name,
            content=content,
            version=entry.version if entry is not None else 1,
            content_hash=content_hash(content),
        )
        return BackendLookup(status=LookupStatus.FOUND, record=record)

    def write(self, project: str, phase: Phase, name: str, content: str) -> StoredArtifact:
        phase_dir = self._phase_dir(project, phase)
        path = phase_dir / validate_artifact_name(name)
        manifest_path = phase_dir / _MANIFEST_NAME
        digest = content_hash(content)
        with _locked_file(manifest_path):
            manifest = self._read_manifest(phase_dir)
            previous = manifest.artifacts.get(name)
            version = 1
            if previous is not None:
                version = previous.version if previous.content_hash == digest else previous.version + 1
            _atomic_write_text(path, content)
            manifest.artifacts[name] = _ManifestEntry(
                version=version,
                content_hash=digest,
                updated_at=utc_now().isoformat(),
            )
            _atomic_write_text(manifest_path, manifest.model_dump_json(indent=2))
        record = ArtifactRecord(
            project=project,
            phase=Phase(phase),
            name=name,
            content=content,
            version=version,
            content_hash=digest,
        )
        return StoredArtifact(record=record, location=str(path))

    def entries(self, project: str, phase: Phase) -> list[ArtifactEntry]:
        phase_dir = self._phase_dir(project, phase)
        if not phase_dir.is_dir():
            return []
        manifest = self._read_manifest(phase_dir)
        result: list[ArtifactEntry] = []
        for path in sorted(phase_dir.iterdir()):
            if not path.is_file() or path.name.startswith(".") or path.name.endswith(".lock"):
                continue
            entry = manifest.artifacts.get(path.name)
            result.append(
                ArtifactEntry(
                    name=path.name,
                    size=path.stat().st_size,
                    version=entry.version if entry is not None else 1,
                )
            )
        return result


# ---------------------------------------------------------------------------
# ArtifactStore
# ---------------------------------------------------------------------------

class ArtifactStore:
    """Artifact access over an ordered list of backends.

    Reads consult each backend in priority order and return the first hit.
    A miss everywhere is ``None``; a miss where some backend errored is a
    ``StorageFailure``, so callers never mistake an outage for absence.
    Writes go to the primary (first) backend only.
    """

    def __init__(self, backends: Sequence[ArtifactBackend]) -> None:
        if not backends:
            raise ValueError("ArtifactStore requires at least one backend")
        self.backends = list(backends)

    @property
    def primary(self) -> ArtifactBackend:
        return self.backends[0]

    def get(self, project: str, phase: Phase, name: str) -> ArtifactRecord | None:
        """Return the artifact, or None when no backend has it.

        Raises:
            StorageFailure: If no backend found it and at least one errored.
        """
        errors: list[str] = []
        for backend in self.backends:
            found = backend.lookup(project, Phase(phase), name)
            if found.status == LookupStatus.FOUND:
                return found.record
            if found.status == LookupStatus.ERROR:
                logger.warning("artifact backend %s errored for %s: %s", backend.name, name, found.error)
                errors.append(f"{backend.name}: {found.error}")
        if errors:
            raise StorageFailure(
                "artifact_get",
                "; ".join(errors),
                context={"project": project, "phase": Phase(phase).value, "name": name},
            )
        return None

    def require(self, project: str, phase: Phase, name: str) -> ArtifactRecord:
        record = self.get(project, phase, name)
        if record is None:
            raise ArtifactNotFoundError(project, Phase(phase).value, name)
        return record

    def put(self, project: str, phase: Phase, name: str, content: str) -> StoredArtifact:
        """Write an artifact to the primary backend.

        Raises:
            StorageFailure: If the primary backend cannot persist it.
        """
        try:
            stored = self.primary.write(project, Phase(phase), name, content)
        except (OSError, ValueError) as exc:
            raise StorageFailure(
                "artifact_put",
                str(exc),
                context={"project": project, "phase": Phase(phase).value, "name": name},
            ) from exc
        logger.debug(
            "artifact stored project=%s key=%s version=%d", project, stored.record.key, stored.record.version
        )
        return stored

    def list(self, project: str, phase: Phase) -> list[ArtifactEntry]:
        """Union of every backend's entries for a phase, primary first."""
        merged: dict[str, ArtifactEntry] = {}
        for backend in self.backends:
            try:
                entries = backend.entries(project, Phase(phase))
            except (OSError, ValueError) as exc:
                raise StorageFailure(
                    "artifact_list",
                    f"{backend.name}: {exc}",
                    context={"project": project, "phase": Phase(phase).value},
                ) from exc
            for entry in entries:
                merged.setdefault(entry.name, entry)
        return sorted(merged.values(), key=lambda entry: entry.name)

    def missing(self, project: str, phase: Phase, names: Sequence[str]) -> list[str]:
        return [name for name in names if self.get(project, phase, name) is None]

    def collect(self, project: str, phases: Sequence[Phase] = PHASE_ORDER) -> dict[str, str]:
        """Return every artifact body keyed ``PHASE/name`` in phase order."""
        collected: dict[str, str] = {}
        for phase in phases:
            for entry in self.list(project, phase):
                record = self.get(project, phase, entry.name)
                if record is not None:
                    collected[record.key] = record.content
        return collected

    def read_phase(self, project: str, phase: Phase) -> dict[str, str]:
        """Return ``name -> content`` for every artifact of one phase."""
        contents: dict[str, str] = {}
        for entry in self.list(project, phase):
            record = self.get(project, phase, entry.name)
            if record is not None:
                contents[entry.name] = record.content
        return contents
