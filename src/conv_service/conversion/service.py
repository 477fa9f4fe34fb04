import asyncio
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Awaitable, Callable

from .dispatcher import Dispatcher
from .errors import ConversionError, RequestValidationError, UploadTooLarge
from .formats import format_of, normalize_format
from .interfaces import JobStoreGateway, StorageGateway
from .options import ConversionOptions
from .store import ConversionJob

logger = logging.getLogger(__name__)

CHUNK = 1024 * 1024

Reader = Callable[[int], Awaitable[bytes]]


def download_name(original_file_name: str, target_format: str) -> str:
    """Name offered to the client: the original stem with the target extension."""
    name = Path(original_file_name.replace("\\", "/")).name
    source = format_of(Path(name))
    if source and name.lower().endswith("." + source):
        name = name[: -(len(source) + 1)]
    return f"{name or 'converted'}.{target_format}"


class ConversionService:
    """Accepts uploads, runs conversions on a bounded worker pool and records outcomes.

    Framework-agnostic: the HTTP layer hands over an async chunk reader and
    polls the job store. Conversions are blocking and run in threads.
    """

    def __init__(
        self,
        store: JobStoreGateway,
        dispatcher: Dispatcher,
        storage: StorageGateway,
        *,
        workers: int = 4,
        job_timeout_sec: float = 600,
        max_upload_mb: int = 200,
        download_grace_sec: float = 60,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._storage = storage
        self._workers = max(1, workers)
        self._timeout = job_timeout_sec
        self._max_bytes = max_upload_mb * 1024 * 1024
        self._max_upload_mb = max_upload_mb
        self._grace = download_grace_sec
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._executor: ThreadPoolExecutor | None = None
        self._releases: dict[str, asyncio.Task] = {}

    @property
    def store(self) -> JobStoreGateway:
        return self._store

    @property
    def queue(self) -> asyncio.Queue[str]:
        return self._queue

    async def start(self) -> None:
        # one thread per worker; a timed-out conversion keeps its slot until it returns
        self._executor = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="conversion")
        for i in range(self._workers):
            task = asyncio.create_task(self._worker_loop(f"worker-{i+1}"))
            self._tasks.append(task)
        logger.info("started %d conversion workers", self._workers)

    async def stop(self) -> None:
        pending = self._tasks + list(self._releases.values())
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._releases.clear()
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    async def join(self) -> None:
        """Wait until every queued job has reached a terminal state."""
        await self._queue.join()

    wait_for_idle = join

    async def submit(
        self,
        filename: str | None,
        target_format: str | None,
        reader: Reader,
        options: ConversionOptions,
        session_id: str,
    ) -> ConversionJob:
        """Persist the upload, create the job in ``processing`` and enqueue it.

        Nothing is created when the request is invalid or the upload is too big.
        """
        original_name = (filename or "").strip()
        if not original_name:
            raise RequestValidationError("no file uploaded")
        if not target_format or not target_format.strip():
            raise RequestValidationError("target format is required")
        target = normalize_format(target_format)

        job_id = str(uuid.uuid4())
        upload_path = self._storage.upload_path(job_id, original_name)
        size_bytes = await self._receive(reader, upload_path)

        metadata = options.to_metadata()
        metadata["upload_path"] = str(upload_path)
        job = ConversionJob(
            id=job_id,
            session_id=session_id,
            original_file_name=Path(original_name.replace("\\", "/")).name,
            original_format=format_of(Path(original_name)),
            target_format=target,
            file_size_bytes=size_bytes,
            metadata=metadata,
        )
        try:
            job = self._store.create(job)
        except Exception:
            self._storage.discard_upload(upload_path)
            raise
        await self._queue.put(job.id)
        return job

    async def _receive(self, reader: Reader, path: Path) -> int:
        size_bytes = 0
        with path.open("wb") as f_out:
            while True:
                chunk = await reader(CHUNK)
                if not chunk:
                    break
                size_bytes += len(chunk)
                if size_bytes > self._max_bytes:
                    break
                f_out.write(chunk)
        if size_bytes > self._max_bytes:
            self._storage.discard_upload(path)
            raise UploadTooLarge(f"upload exceeds {self._max_upload_mb} MB")
        return size_bytes

    def get(self, job_id: str) -> ConversionJob | None:
        return self._store.get(job_id)

    def list_recent(self, session_id: str, limit: int = 10) -> list[ConversionJob]:
        return self._store.list_by_session(session_id, limit)

    def artifact_path(self, job: ConversionJob) -> Path | None:
        return self._storage.resolve_artifact(job.download_path)

    def schedule_artifact_release(self, job_id: str, delay: float | None = None) -> None:
        """Delete the artifact of ``job_id`` once ``delay`` seconds have passed."""
        if job_id in self._releases:
            return
        wait = self._grace if delay is None else delay
        task = asyncio.create_task(self._release_later(job_id, wait))
        self._releases[job_id] = task
        task.add_done_callback(lambda _t: self._releases.pop(job_id, None))

    async def _release_later(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await asyncio.to_thread(self.release_artifact, job_id)

    def release_artifact(self, job_id: str) -> None:
        job = self._store.get(job_id)
        if job is None or not job.download_path:
            return
        self._storage.delete_artifact(Path(job.download_path))
        self._store.release_artifact(job_id)
        logger.info("job %s artifact released", job_id)

    def release_reaped(self, path: Path) -> None:
        """Forget the download path of a job whose artifact the sweeper removed."""
        job_id = path.name.split("_", 1)[0]
        job = self._store.get(job_id)
        if job is not None and job.download_path and Path(job.download_path).name == path.name:
            self._store.release_artifact(job_id)
            logger.debug("job %s artifact reaped", job_id)

    async def _worker_loop(self, name: str) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self._run_job(job_id)
            except Exception:
                logger.exception("%s: unhandled error for job %s", name, job_id)
            finally:
                self._queue.task_done()

    async def _run_job(self, job_id: str) -> None:
        job = self._store.get(job_id)
        if job is None:
            logger.error("job %s vanished before it ran", job_id)
            return
        upload_path = Path(str(job.metadata["upload_path"]))
        options = ConversionOptions.from_metadata(job.metadata)
        running: asyncio.Future | None = None
        try:
            converter = self._dispatcher.dispatch(job.target_format)
            work_dir = self._storage.work_dir(job_id)
            running = asyncio.get_running_loop().run_in_executor(
                self._executor, converter.convert, upload_path, job.target_format, options, work_dir
            )
            artifact = await asyncio.wait_for(asyncio.shield(running), timeout=self._timeout)
            final = await asyncio.to_thread(
                self._storage.promote, job_id, artifact, download_name(job.original_file_name, job.target_format)
            )
            self._store.complete(
                job_id,
                str(final),
                artifact.warnings,
                converted_size_bytes=artifact.size_bytes,
                strategy=artifact.strategy,
            )
        except asyncio.TimeoutError:
            self._store.fail(job_id, f"conversion exceeded {self._timeout:g}s", error_kind="timeout")
        except ConversionError as e:
            self._store.fail(job_id, str(e) or e.kind, error_kind=e.kind)
        except Exception as e:
            logger.exception("job %s crashed", job_id)
            self._store.fail(job_id, f"internal error: {e}", error_kind="internal")
        finally:
            if running is not None and not running.done():
                # the job is already failed; the strategy still owns its work dir
                logger.warning("job %s: waiting for timed-out conversion to return", job_id)
                await asyncio.wait([running])
            if running is not None and running.done() and not running.cancelled():
                running.exception()
            self._storage.discard_upload(upload_path)
            self._storage.discard_work_dir(job_id)
