import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from conv_service import __version__
from conv_service.config import Settings, server_options
from conv_service.conversion import (
    ConversionJob,
    ConversionOptions,
    ConversionService,
    Dispatcher,
    InMemoryJobStore,
    JobStatus,
    LocalJobStore,
    RequestValidationError,
    RetentionSweeper,
    UploadTooLarge,
)
from conv_service.conversion.adapters import LocalStorage
from conv_service.conversion.formats import family_listing
from conv_service.conversion.interfaces import JobStoreGateway
from conv_service.conversion.service import download_name
from conv_service.logging_config import configure_logging

logger = logging.getLogger(__name__)

RECENT_LIMIT = 10


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _build_store(settings: Settings) -> JobStoreGateway:
    if settings.job_store == "file":
        return LocalJobStore(settings.data_dir / "jobs")
    return InMemoryJobStore()


def _job_view(job: ConversionJob) -> dict[str, object]:
    """Client-facing projection of a job record."""
    view: dict[str, object] = {
        "id": job.id,
        "status": job.status.value,
        "originalFileName": job.original_file_name,
        "targetFormat": job.target_format,
    }
    if job.status is JobStatus.COMPLETED and job.download_path:
        view["downloadUrl"] = f"/download/{job.id}"
        view["fileName"] = download_name(job.original_file_name, job.target_format)
    if job.warnings:
        view["warnings"] = list(job.warnings)
    if job.completed_at:
        view["completedAt"] = job.completed_at.isoformat()
    if job.status is JobStatus.FAILED:
        view["errorMessage"] = job.error_message
    return view


def create_app(
    settings: Settings | None = None,
    *,
    dispatcher: Dispatcher | None = None,
    store: JobStoreGateway | None = None,
) -> FastAPI:
    """Build the FastAPI app; collaborators are created when the app starts."""
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        storage = LocalStorage(settings.upload_dir, settings.artifact_dir, settings.scratch_dir)
        service = ConversionService(
            store=store or _build_store(settings),
            dispatcher=dispatcher or Dispatcher.default(
                scanned_text_min_chars=settings.scanned_text_min_chars,
                soffice_bin=settings.soffice_bin,
                tool_timeout=settings.tool_timeout_sec,
            ),
            storage=storage,
            workers=settings.workers,
            job_timeout_sec=settings.job_timeout_sec,
            max_upload_mb=settings.max_upload_mb,
            download_grace_sec=settings.download_grace_sec,
        )
        sweeper = RetentionSweeper(
            [settings.upload_dir, settings.artifact_dir, settings.scratch_dir],
            retention_seconds=settings.retention_seconds,
            interval_seconds=settings.sweep_interval_sec,
            on_removed=service.release_reaped,
        )
        app.state.service = service
        await service.start()
        await sweeper.start()
        logger.info("conversion service ready (data dir %s)", settings.data_dir)
        try:
            yield
        finally:
            await sweeper.stop()
            await service.stop()

    app = FastAPI(
        title="File Conversion Service",
        version=__version__,
        description=(
            "Upload a file with a target format, poll the conversion job and "
            "download the converted artifact."
        ),
        lifespan=lifespan,
    )
    app.state.settings = settings

    def _service(request: Request) -> ConversionService:
        return request.app.state.service

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "ok"}

    @app.get("/formats")
    def formats() -> dict[str, list[str]]:
        return family_listing()

    async def convert(
        request: Request,
        file: UploadFile | None = File(None),
        targetFormat: str | None = Form(None),
        quality: str | None = Form(None),
        compress: str | None = Form(None),
        ocrEnabled: str | None = Form(None),
        tableExtraction: str | None = Form(None),
        x_session_id: str | None = Header(None),
    ) -> JSONResponse:
        """Accept an upload and start converting it in the background.

        Returns as soon as the upload is stored; the conversion itself runs on
        a worker and is polled through ``/conversion/{job_id}``.
        """
        session_id = (x_session_id or "").strip() or str(uuid.uuid4())
        if file is None or not file.filename:
            raise _error(400, "bad_request", "no file uploaded")

        async def read_chunk(n: int) -> bytes:
            return await file.read(n)

        try:
            options = ConversionOptions.parse(quality, compress, ocrEnabled, tableExtraction)
            job = await _service(request).submit(
                filename=file.filename,
                target_format=targetFormat,
                reader=read_chunk,
                options=options,
                session_id=session_id,
            )
        except RequestValidationError as e:
            raise _error(400, "bad_request", str(e))
        except UploadTooLarge as e:
            raise _error(413, "payload_too_large", str(e))
        finally:
            await file.close()

        body = {
            "jobId": job.id,
            "status": job.status.value,
            "sessionId": session_id,
            "message": "File uploaded successfully. Conversion in progress.",
        }
        return JSONResponse(content=body, headers={"X-Session-Id": session_id})

    app.add_api_route("/convert", convert, methods=["POST"])
    app.add_api_route("/api/convert", convert, methods=["POST"], include_in_schema=False)

    @app.get("/conversion/{job_id}")
    def get_conversion(job_id: str, request: Request) -> dict[str, object]:
        job = _service(request).get(job_id)
        if job is None:
            raise _error(404, "not_found", "conversion not found")
        return _job_view(job)

    @app.get("/download/{job_id}")
    async def download(job_id: str, request: Request) -> FileResponse:
        service = _service(request)
        job = service.get(job_id)
        if job is None or job.status is not JobStatus.COMPLETED:
            raise _error(404, "not_found", "file not found")
        path = service.artifact_path(job)
        if path is None:
            raise _error(404, "not_found", "file not found")
        service.schedule_artifact_release(job_id)
        return FileResponse(
            path,
            media_type="application/octet-stream",
            filename=download_name(job.original_file_name, job.target_format),
        )

    @app.get("/conversions")
    def recent_conversions(request: Request, x_session_id: str | None = Header(None)) -> dict[str, object]:
        session_id = (x_session_id or "").strip()
        if not session_id:
            return {"conversions": []}
        jobs = _service(request).list_recent(session_id, RECENT_LIMIT)
        items = []
        for job in jobs:
            item = _job_view(job)
            item["createdAt"] = job.created_at.isoformat()
            if job.converted_size_bytes is not None:
                item["convertedSize"] = job.converted_size_bytes
            items.append(item)
        return {"conversions": items}

    return app


app = create_app()


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host, port, reload = server_options()
    uvicorn.run("conv_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
