import logging
import re
import shutil
from pathlib import Path

from .interfaces import ConversionArtifact, StorageGateway

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(filename: str, default: str = "upload") -> str:
    """Reduce a client supplied file name to a harmless basename."""
    base = Path(filename.replace("\\", "/")).name
    base = _UNSAFE.sub("_", base).strip("._")
    return base[:120] or default


class LocalStorage(StorageGateway):
    """Upload scratch, per-job work dirs and the artifact output dir on local disk.

    Every name is prefixed with the job id so concurrent jobs never collide,
    even when two uploads share a file name.
    """

    def __init__(self, upload_dir: str | Path, artifact_dir: str | Path, scratch_dir: str | Path) -> None:
        self.upload_dir = Path(upload_dir).resolve()
        self.artifact_dir = Path(artifact_dir).resolve()
        self.scratch_dir = Path(scratch_dir).resolve()
        for d in (self.upload_dir, self.artifact_dir, self.scratch_dir):
            d.mkdir(parents=True, exist_ok=True)

    def upload_path(self, job_id: str, filename: str) -> Path:
        return self.upload_dir / f"{job_id}_{safe_name(filename)}"

    def work_dir(self, job_id: str) -> Path:
        d = self.scratch_dir / job_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def promote(self, job_id: str, artifact: ConversionArtifact, display_name: str) -> Path:
        """Move a finished artifact from scratch space into the artifact dir."""
        dest = self.artifact_dir / f"{job_id}_{safe_name(display_name, default='output')}"
        tmp = dest.with_name(dest.name + ".part")
        shutil.move(str(artifact.path), str(tmp))
        # rename within one directory is atomic; downloads never see a half copy
        tmp.replace(dest)
        return dest

    def resolve_artifact(self, download_path: str | None) -> Path | None:
        if not download_path:
            return None
        p = Path(download_path).resolve()
        if p.parent != self.artifact_dir or not p.is_file():
            return None
        return p

    def discard_upload(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("could not remove upload %s: %s", path.name, e)

    def discard_work_dir(self, job_id: str) -> None:
        shutil.rmtree(self.scratch_dir / job_id, ignore_errors=True)

    def delete_artifact(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("could not delete artifact %s: %s", path.name, e)
            return False
