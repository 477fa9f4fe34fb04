from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from .options import ConversionOptions

if TYPE_CHECKING:
    from .store import ConversionJob


@dataclass(frozen=True)
class ConversionRequest:
    input_path: Path
    target_format: str
    options: ConversionOptions
    work_dir: Path

    @property
    def output_stem(self) -> str:
        return self.input_path.stem or "output"

    def output_path(self, suffix: str | None = None) -> Path:
        """Path inside the scratch dir for this request's output file."""
        ext = suffix or self.target_format
        return self.work_dir / f"{self.output_stem}.{ext}"


@dataclass
class ConversionArtifact:
    path: Path
    format: str
    size_bytes: int
    strategy: str
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_file(cls, path: Path, fmt: str, strategy: str, warnings: list[str] | None = None) -> "ConversionArtifact":
        return cls(path=path, format=fmt, size_bytes=path.stat().st_size, strategy=strategy, warnings=list(warnings or []))


class ConverterGateway(Protocol):
    def convert(
        self,
        input_path: Path,
        target_format: str,
        options: ConversionOptions,
        work_dir: Path,
    ) -> ConversionArtifact:
        """Convert ``input_path`` into ``target_format`` inside ``work_dir``.

        This is a blocking call; callers should offload to threads if needed.
        Raises a ``ConversionError`` subclass on failure.
        """


class StorageGateway(Protocol):
    def upload_path(self, job_id: str, filename: str) -> Path:
        ...

    def work_dir(self, job_id: str) -> Path:
        ...

    def promote(self, job_id: str, artifact: ConversionArtifact, display_name: str) -> Path:
        ...

    def resolve_artifact(self, download_path: str | None) -> Path | None:
        ...

    def discard_upload(self, path: Path) -> None:
        ...

    def discard_work_dir(self, job_id: str) -> None:
        ...

    def delete_artifact(self, path: Path) -> bool:
        ...


class JobStoreGateway(Protocol):
    def create(self, job: "ConversionJob") -> "ConversionJob":
        ...

    def get(self, job_id: str) -> "ConversionJob | None":
        ...

    def complete(
        self,
        job_id: str,
        download_path: str,
        warnings: list[str],
        *,
        converted_size_bytes: int | None = None,
        strategy: str | None = None,
    ) -> "ConversionJob":
        ...

    def fail(self, job_id: str, error_message: str, *, error_kind: str = "processing_error") -> "ConversionJob":
        ...

    def release_artifact(self, job_id: str) -> "ConversionJob | None":
        ...

    def list_by_session(self, session_id: str, limit: int = 10) -> list["ConversionJob"]:
        ...
