"""Audio HLS Transcoder - Transcode API FastAPI application.

Endpoints:
- POST /v1/transcode/upload   multipart upload, 202 once queued
- POST /v1/transcode/local    server-side path, 202 once queued
- GET  /v1/transcode/{job_id} current status record
- GET  /health

Admission endpoints are async and hand the blocking submission (enqueue waits
while another job is in flight) to a dedicated admission executor. Status and
health stay sync on the default threadpool, which blocked producers never
occupy.

Run with:
    uvicorn services.transcode_api.main:app  # single process only
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from functools import partial
from typing import Annotated

from fastapi import Depends, FastAPI, File, Form, UploadFile
from fastapi.responses import JSONResponse

from services.transcode_api.service import (
    TranscodeServices,
    build_services,
    submit_local,
    submit_upload,
)
from transcoder.config import ADMISSION_THREADS
from transcoder.errors import ErrorCode, StoreError, TranscoderError
from transcoder.schemas import (
    StatusRecord,
    TranscodeAcceptedResponse,
    TranscodeErrorResponse,
    TranscodeLocalRequest,
)

logger = logging.getLogger(__name__)

# --- Services Setup ---

# Module-level services (initialized on startup unless overridden)
_services: TranscodeServices | None = None

# Threads for producers waiting in admission (created per lifespan)
_admission_executor: ThreadPoolExecutor | None = None


def get_services() -> TranscodeServices:
    """Dependency that provides the process-wide services.

    Raises:
        RuntimeError: If services not initialized (app lifespan not invoked).
    """
    if _services is None:
        raise RuntimeError("Services not initialized. App lifespan not invoked?")
    return _services


def override_services(services: TranscodeServices | None) -> None:
    """Install pre-built services (testing). Lifespan then starts/stops them."""
    global _services
    _services = services


def get_admission_executor() -> ThreadPoolExecutor:
    """Dependency that provides the admission executor.

    Raises:
        RuntimeError: If the app lifespan has not started.
    """
    if _admission_executor is None:
        raise RuntimeError("Admission executor not initialized. App lifespan not invoked?")
    return _admission_executor


async def run_admission(executor: ThreadPoolExecutor, func, *args, **kwargs):
    """Run a blocking submission on the admission executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, partial(func, *args, **kwargs))


# --- Lifespan ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services (if not overridden), recover, start worker; stop on exit."""
    global _services, _admission_executor
    owned = _services is None
    if owned:
        _services = build_services()
    services = _services
    services.start()
    _admission_executor = ThreadPoolExecutor(
        max_workers=ADMISSION_THREADS, thread_name_prefix="admission"
    )

    yield

    # Closing the queue releases producers still waiting in enqueue
    services.shutdown()
    _admission_executor.shutdown(wait=True)
    _admission_executor = None
    if owned:
        _services = None


# --- FastAPI App ---


app = FastAPI(
    title="Audio HLS Transcoder",
    description="Audio transcode to MP3 + HLS with content-addressed publishing.",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Error Handling ---


_STATUS_BY_CODE = {
    ErrorCode.UNSUPPORTED_CONTENT_TYPE: 415,
    ErrorCode.FILE_NOT_FOUND: 404,
    ErrorCode.JOB_NOT_FOUND: 404,
    ErrorCode.EMPTY_FILE: 400,
    ErrorCode.QUEUE_CLOSED: 503,
    ErrorCode.ADMISSION_TIMEOUT: 503,
    ErrorCode.STORE_UNAVAILABLE: 503,
}


def error_code_to_status(error_code: str) -> int:
    """Map error codes to HTTP status codes (500 for anything unlisted)."""
    return _STATUS_BY_CODE.get(error_code, 500)


def make_error_response(error_code: str, error_message: str) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=error_code_to_status(error_code),
        content=TranscodeErrorResponse(
            error_code=error_code,
            error_message=error_message,
        ).model_dump(),
    )


def _accepted(record: StatusRecord) -> TranscodeAcceptedResponse:
    return TranscodeAcceptedResponse(
        id=record.id,
        stage=record.stage,
        percentage=record.percentage,
        status_url=f"/v1/transcode/{record.id}",
    )


_ERROR_RESPONSES = {
    400: {"model": TranscodeErrorResponse, "description": "Empty file"},
    404: {"model": TranscodeErrorResponse, "description": "Source file not found"},
    415: {"model": TranscodeErrorResponse, "description": "Unsupported content type"},
    503: {"model": TranscodeErrorResponse, "description": "Not admitted, retry later"},
}


# --- Endpoints ---


@app.post(
    "/v1/transcode/upload",
    status_code=202,
    response_model=TranscodeAcceptedResponse,
    responses=_ERROR_RESPONSES,
    summary="Submit an uploaded audio file",
)
async def transcode_upload(
    services: Annotated[TranscodeServices, Depends(get_services)],
    executor: Annotated[ThreadPoolExecutor, Depends(get_admission_executor)],
    file: Annotated[UploadFile, File(description="Audio file to transcode")],
    original_filename: Annotated[str | None, Form(description="Override filename")] = None,
):
    """Store the upload and queue it. Blocks while another job is in flight."""
    try:
        record = await run_admission(
            executor,
            submit_upload,
            services,
            stream=file.file,
            filename=original_filename or file.filename or "upload",
            content_type=file.content_type,
        )
        return _accepted(record)
    except TranscoderError as e:
        return make_error_response(e.error_code, e.message)
    except Exception:
        logger.exception("Unexpected error during upload submission")
        return make_error_response(
            ErrorCode.WORKER_ERROR, "An unexpected error occurred during submission"
        )


@app.post(
    "/v1/transcode/local",
    status_code=202,
    response_model=TranscodeAcceptedResponse,
    responses=_ERROR_RESPONSES,
    summary="Submit a local audio file",
)
async def transcode_local(
    request: TranscodeLocalRequest,
    services: Annotated[TranscodeServices, Depends(get_services)],
    executor: Annotated[ThreadPoolExecutor, Depends(get_admission_executor)],
):
    """Copy a server-side file into scratch and queue it."""
    try:
        record = await run_admission(
            executor,
            submit_local,
            services,
            source_path=request.source_path,
            original_filename=request.original_filename,
        )
        return _accepted(record)
    except TranscoderError as e:
        return make_error_response(e.error_code, e.message)
    except Exception:
        logger.exception("Unexpected error during local submission")
        return make_error_response(
            ErrorCode.WORKER_ERROR, "An unexpected error occurred during submission"
        )


@app.get(
    "/v1/transcode/{job_id}",
    response_model=StatusRecord,
    responses={
        404: {"model": TranscodeErrorResponse, "description": "Unknown job"},
        503: {"model": TranscodeErrorResponse, "description": "Status store unavailable"},
    },
    summary="Get job status",
)
def transcode_status(
    job_id: str,
    services: Annotated[TranscodeServices, Depends(get_services)],
):
    """Return the job's latest persisted checkpoint."""
    try:
        record = services.store.get(job_id)
    except StoreError as e:
        return make_error_response(e.error_code, e.message)
    if record is None:
        return make_error_response(ErrorCode.JOB_NOT_FOUND, f"Unknown job: {job_id}")
    return record


@app.get("/health", summary="Health check")
def health_check(services: Annotated[TranscodeServices, Depends(get_services)]):
    """Liveness plus whether a job currently occupies the slot."""
    return {
        "status": "ok",
        "worker_alive": services.worker.alive,
        "in_flight": services.queue.in_flight,
    }
