import os
from dataclasses import dataclass
from pathlib import Path

# external tools must give up before the job timeout fires
TOOL_TIMEOUT_MARGIN_SEC = 15


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from environment variables."""

    data_dir: Path
    upload_dir: Path
    artifact_dir: Path
    scratch_dir: Path
    max_upload_mb: int = 200
    workers: int = 4
    job_timeout_sec: int = 600
    retention_hours: float = 24
    sweep_interval_sec: int = 3600
    download_grace_sec: float = 60
    job_store: str = "memory"
    scanned_text_min_chars: int = 200
    soffice_bin: str | None = None
    log_level: str = "INFO"

    @property
    def retention_seconds(self) -> float:
        return self.retention_hours * 3600

    @property
    def tool_timeout_sec(self) -> float:
        """Ceiling for one external tool run, kept below the job timeout."""
        return max(self.job_timeout_sec - TOOL_TIMEOUT_MARGIN_SEC, self.job_timeout_sec * 0.5)

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir = Path(os.getenv("DATA_DIR", "./data")).resolve()
        return cls(
            data_dir=data_dir,
            upload_dir=Path(os.getenv("UPLOAD_DIR", str(data_dir / "uploads"))).resolve(),
            artifact_dir=Path(os.getenv("ARTIFACT_DIR", str(data_dir / "downloads"))).resolve(),
            scratch_dir=Path(os.getenv("SCRATCH_DIR", str(data_dir / "scratch"))).resolve(),
            max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "200")),
            workers=int(os.getenv("WORKERS", "4")),
            job_timeout_sec=int(os.getenv("JOB_TIMEOUT_SEC", "600")),
            retention_hours=float(os.getenv("RETENTION_HOURS", "24")),
            sweep_interval_sec=int(os.getenv("SWEEP_INTERVAL_SEC", "3600")),
            download_grace_sec=float(os.getenv("DOWNLOAD_GRACE_SEC", "60")),
            job_store=os.getenv("JOB_STORE", "memory").lower(),
            scanned_text_min_chars=int(os.getenv("SCANNED_TEXT_MIN_CHARS", "200")),
            soffice_bin=os.getenv("SOFFICE_BIN") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @classmethod
    def for_data_dir(cls, data_dir: str | Path, **overrides: object) -> "Settings":
        """Build settings rooted at ``data_dir`` (used by tests and scripts)."""
        base = Path(data_dir).resolve()
        return cls(
            data_dir=base,
            upload_dir=base / "uploads",
            artifact_dir=base / "downloads",
            scratch_dir=base / "scratch",
            **overrides,  # type: ignore[arg-type]
        )


def server_options() -> tuple[str, int, bool]:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = _env_bool("RELOAD", "true")
    return host, port, reload
