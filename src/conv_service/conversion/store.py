"""Job records and the stores that hold them.

The store is the single source of truth for status polling. Terminal
transitions write status together with their result (artifact path or error)
in one locked update, and readers always get a copy, so a poller can never
observe ``completed`` without a download path.
"""

import copy
import json
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from .errors import InvalidTransition, JobNotFound

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConversionJob:
    session_id: str
    original_file_name: str
    original_format: str
    target_format: str
    file_size_bytes: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PROCESSING
    download_path: str | None = None
    warnings: list[str] = field(default_factory=list)
    error_message: str | None = None
    error_kind: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    metadata: dict[str, object] = field(default_factory=dict)
    converted_size_bytes: int | None = None
    strategy: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not JobStatus.PROCESSING

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "ConversionJob":
        values = dict(data)
        values["status"] = JobStatus(values["status"])
        values["created_at"] = datetime.fromisoformat(str(values["created_at"]))
        completed = values.get("completed_at")
        values["completed_at"] = datetime.fromisoformat(str(completed)) if completed else None
        return cls(**values)  # type: ignore[arg-type]


class JobStore(ABC):
    """Keyed job map with per-id updates and guarded terminal transitions.

    Subclasses provide ``_read``/``_write``/``_all``; this class owns the
    locking and the state machine.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abstractmethod
    def _read(self, job_id: str) -> ConversionJob | None:
        ...

    @abstractmethod
    def _write(self, job: ConversionJob) -> None:
        ...

    @abstractmethod
    def _all(self) -> list[ConversionJob]:
        ...

    def _require(self, job_id: str) -> ConversionJob:
        job = self._read(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def create(self, job: ConversionJob) -> ConversionJob:
        with self._lock:
            if self._read(job.id) is not None:
                raise InvalidTransition(f"job {job.id} already exists")
            if job.status is not JobStatus.PROCESSING:
                raise InvalidTransition("jobs are created in processing state")
            self._write(copy.deepcopy(job))
        logger.info("job %s created (%s -> %s)", job.id, job.original_format or "?", job.target_format)
        return copy.deepcopy(job)

    def get(self, job_id: str) -> ConversionJob | None:
        with self._lock:
            job = self._read(job_id)
            return copy.deepcopy(job) if job is not None else None

    def complete(
        self,
        job_id: str,
        download_path: str,
        warnings: list[str],
        *,
        converted_size_bytes: int | None = None,
        strategy: str | None = None,
    ) -> ConversionJob:
        if not download_path:
            raise ValueError("a completed job needs a download path")
        with self._lock:
            job = self._require(job_id)
            self._guard(job, JobStatus.COMPLETED)
            updated = replace(
                job,
                status=JobStatus.COMPLETED,
                download_path=download_path,
                warnings=list(warnings),
                completed_at=_utcnow(),
                converted_size_bytes=converted_size_bytes,
                strategy=strategy,
            )
            self._write(updated)
        logger.info("job %s completed via %s", job_id, strategy or "converter")
        return copy.deepcopy(updated)

    def fail(self, job_id: str, error_message: str, *, error_kind: str = "processing_error") -> ConversionJob:
        with self._lock:
            job = self._require(job_id)
            self._guard(job, JobStatus.FAILED)
            updated = replace(
                job,
                status=JobStatus.FAILED,
                error_message=error_message or "conversion failed",
                error_kind=error_kind,
                download_path=None,
                completed_at=_utcnow(),
            )
            self._write(updated)
        logger.warning("job %s failed (%s): %s", job_id, error_kind, error_message)
        return copy.deepcopy(updated)

    def release_artifact(self, job_id: str) -> ConversionJob | None:
        """Forget the artifact of a completed job; the record itself stays."""
        with self._lock:
            job = self._read(job_id)
            if job is None or job.download_path is None:
                return copy.deepcopy(job) if job is not None else None
            updated = replace(job, download_path=None)
            self._write(updated)
            return copy.deepcopy(updated)

    def list_by_session(self, session_id: str, limit: int = 10) -> list[ConversionJob]:
        with self._lock:
            jobs = [j for j in self._all() if j.session_id == session_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [copy.deepcopy(j) for j in jobs[:limit]]

    @staticmethod
    def _guard(job: ConversionJob, new_status: JobStatus) -> None:
        if job.is_terminal:
            raise InvalidTransition(f"job {job.id} is already {job.status.value}; cannot become {new_status.value}")


class InMemoryJobStore(JobStore):
    """Process-lifetime store."""

    def __init__(self) -> None:
        super().__init__()
        self._jobs: dict[str, ConversionJob] = {}

    def _read(self, job_id: str) -> ConversionJob | None:
        return self._jobs.get(job_id)

    def _write(self, job: ConversionJob) -> None:
        self._jobs[job.id] = job

    def _all(self) -> list[ConversionJob]:
        return list(self._jobs.values())


class LocalJobStore(JobStore):
    """One ``<id>.json`` file per job under ``base_dir``; survives restarts."""

    def __init__(self, base_dir: str | Path) -> None:
        super().__init__()
        self._base = Path(base_dir).resolve()
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        # ids are uuids; this also keeps ids from escaping base_dir
        return self._base / f"{uuid.UUID(job_id)}.json"

    def _read(self, job_id: str) -> ConversionJob | None:
        try:
            p = self._path(job_id)
        except ValueError:
            return None
        if not p.exists():
            return None
        with p.open("r", encoding="utf-8") as f:
            return ConversionJob.from_dict(json.load(f))

    def _write(self, job: ConversionJob) -> None:
        p = self._path(job.id)
        tmp = p.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(job.to_dict(), f, ensure_ascii=False, indent=2)
        os.replace(tmp, p)

    def _all(self) -> list[ConversionJob]:
        jobs = []
        for p in self._base.glob("*.json"):
            try:
                with p.open("r", encoding="utf-8") as f:
                    jobs.append(ConversionJob.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("skipping unreadable job file %s: %s", p.name, e)
        return jobs
