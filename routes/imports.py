"""
Catalog import API routes.

Upload -> mapping -> preview -> fixes -> execute, plus status polling, an
issue report and a WebSocket progress channel.

Errors use the standard envelope: {"error": {code, message, details, timestamp}}.
"""

import asyncio
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, File, Query, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool
import structlog

from exceptions import AppError
from models.import_session import (
    AutoFixAllRequest,
    AutoFixRequest,
    AutoFixSummary,
    BulkFixRequest,
    ExecuteResponse,
    FixResponse,
    FixRequest,
    MappingListResponse,
    MappingOverrideRequest,
    PreviewResponse,
    ProgressMessage,
    SessionListResponse,
    SessionStatusResponse,
    TERMINAL_STATUSES,
    TemplateFormat,
    UploadResponse,
)
from services.import_executor_service import get_import_executor_service
from services.import_session_service import get_import_session_service
from services.progress_broadcaster import CLOSED, get_progress_broadcaster
from services.recovery_service import DEFAULT_AUTO_FIX_THRESHOLD, get_recovery_service
from services.template_service import get_template_service

logger = structlog.get_logger(__name__)

router = APIRouter()

LISTENER_POLL_SECONDS = 1.0


# ===================
# EXCEPTION HANDLER
# ===================

def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    # Unexpected error
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )


# ===================
# UPLOAD AND SESSIONS
# ===================

@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_file(
    file: UploadFile = File(..., description="CSV, XLSX or JSON file of catalog records")
):
    """
    Upload a file and start an import session.

    The session is created even when the file cannot be read; it then ends
    in status `failed` with `failure_code` set.
    """
    try:
        content = await file.read()
        service = get_import_session_service()

        session = await run_in_threadpool(
            service.upload,
            content,
            file.filename or "upload",
            file.content_type
        )

        return UploadResponse(
            session_id=session.id,
            status=session.status,
            source_meta=session.source_meta,
            mappings=session.mapping,
            unmapped_required=service.mapper.unmapped_required(session.mapping) if session.mapping else [],
            failure_code=session.failure_code,
            failure_reason=session.failure_reason,
        )

    except Exception as e:
        return handle_error(e)


@router.get("/template")
async def download_template(
    fmt: TemplateFormat = Query(TemplateFormat.CSV, alias="format", description="csv, xlsx or json")
):
    """Starter file with every catalog column and one example row."""
    try:
        template = get_template_service().render(fmt)
        return Response(
            content=template.content,
            media_type=template.media_type,
            headers={"Content-Disposition": f'attachment; filename="{template.filename}"'}
        )
    except Exception as e:
        return handle_error(e)


@router.get("", response_model=SessionListResponse)
async def list_sessions():
    """List live import sessions, newest first."""
    try:
        return await run_in_threadpool(get_import_session_service().list_sessions)
    except Exception as e:
        return handle_error(e)


@router.get("/{session_id}/status", response_model=SessionStatusResponse)
async def get_status(session_id: str):
    """
    Current status and progress.

    Listeners that reconnect use this to catch up; the push channel does
    not replay missed messages.
    """
    try:
        return await run_in_threadpool(get_import_session_service().get_status, session_id)
    except Exception as e:
        return handle_error(e)


# ===================
# MAPPING
# ===================

@router.get("/{session_id}/mappings", response_model=MappingListResponse)
async def get_mappings(session_id: str):
    """Proposed mapping plus the catalog fields a column can map to."""
    try:
        return await run_in_threadpool(get_import_session_service().get_mappings, session_id)
    except Exception as e:
        return handle_error(e)


@router.put("/{session_id}/mappings", response_model=MappingListResponse)
async def override_mappings(session_id: str, data: MappingOverrideRequest):
    """
    Override mappings by hand.

    Raises:
        409: Session is past mapping, or a target is assigned twice
        422: Unknown column or target field
    """
    try:
        service = get_import_session_service()
        await run_in_threadpool(service.override_mappings, session_id, data.mappings)
        return await run_in_threadpool(service.get_mappings, session_id)
    except Exception as e:
        return handle_error(e)


# ===================
# PREVIEW
# ===================

@router.post("/{session_id}/preview", response_model=PreviewResponse)
async def generate_preview(
    session_id: str,
    page_size: int = Query(50, ge=1, le=500, description="Records in the first page")
):
    """
    Validate every record and return the first page of the preview.

    Raises:
        409: Session is not ready for validation
        422: Required fields are not mapped
    """
    try:
        service = get_import_session_service()
        await run_in_threadpool(service.generate_preview, session_id)
        return await run_in_threadpool(service.get_preview, session_id, page=1, page_size=page_size)
    except Exception as e:
        return handle_error(e)


@router.get("/{session_id}/preview", response_model=PreviewResponse)
async def get_preview(
    session_id: str,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Records per page"),
    only_issues: bool = Query(False, description="Only records with issues")
):
    """Page through validated records and their issues."""
    try:
        return await run_in_threadpool(
            get_import_session_service().get_preview,
            session_id,
            page=page,
            page_size=page_size,
            only_issues=only_issues
        )
    except Exception as e:
        return handle_error(e)


# ===================
# RECOVERY
# ===================

@router.post("/{session_id}/fixes", response_model=FixResponse)
async def fix_single(session_id: str, data: FixRequest):
    """
    Set one field of one record.

    Raises:
        404: Session or record not found
        409: Session is not in preview
        422: Field is not mapped
    """
    try:
        return await run_in_threadpool(
            get_recovery_service().fix_single,
            session_id,
            data.record_index,
            data.field,
            data.new_value
        )
    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/fixes/bulk", response_model=FixResponse)
async def fix_bulk(session_id: str, data: BulkFixRequest):
    """Apply several fixes; each action reports its own success."""
    try:
        return await run_in_threadpool(get_recovery_service().fix_bulk, session_id, data.actions)
    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/auto-fix", response_model=FixResponse)
async def apply_auto_fix(session_id: str, data: AutoFixRequest):
    """
    Apply the suggested repair for one field.

    Raises:
        422: No auto-fix available for the field
    """
    try:
        return await run_in_threadpool(
            get_recovery_service().apply_auto_fix,
            session_id,
            data.record_index,
            data.field
        )
    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/auto-fix/all", response_model=FixResponse)
async def auto_fix_all(session_id: str, data: Optional[AutoFixAllRequest] = None):
    """Apply every suggested repair at or above min_confidence."""
    try:
        min_confidence = data.min_confidence if data else DEFAULT_AUTO_FIX_THRESHOLD
        return await run_in_threadpool(get_recovery_service().auto_fix_all, session_id, min_confidence)
    except Exception as e:
        return handle_error(e)


@router.get("/{session_id}/auto-fix/summary", response_model=AutoFixSummary)
async def auto_fix_summary(
    session_id: str,
    threshold: float = Query(DEFAULT_AUTO_FIX_THRESHOLD, ge=0.0, le=1.0, description="Minimum fix confidence")
):
    """How many open issues can be fixed automatically."""
    try:
        return await run_in_threadpool(get_recovery_service().summarize, session_id, threshold=threshold)
    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/records/{record_index}/skip", response_model=FixResponse)
async def skip_record(session_id: str, record_index: int):
    """Exclude a record from the import."""
    try:
        return await run_in_threadpool(get_recovery_service().skip, session_id, record_index)
    except Exception as e:
        return handle_error(e)


# ===================
# EXECUTION
# ===================

@router.post("/{session_id}/execute", response_model=ExecuteResponse, status_code=202)
async def execute_import(session_id: str, background_tasks: BackgroundTasks):
    """
    Commit the approved records in the background.

    Follow progress with GET /status or the WebSocket channel.

    Raises:
        409: Session is not awaiting approval
    """
    try:
        executor = get_import_executor_service()
        session = await run_in_threadpool(executor.start, session_id)
        background_tasks.add_task(executor.run, session_id)

        return ExecuteResponse(
            session_id=session.id,
            status=session.status,
            message="Import started"
        )
    except Exception as e:
        return handle_error(e)


@router.post("/{session_id}/cancel", response_model=SessionStatusResponse)
async def cancel_import(session_id: str):
    """
    Cancel the session.

    Takes effect immediately when idle, otherwise at the running stage's
    next checkpoint.
    """
    try:
        service = get_import_session_service()
        await run_in_threadpool(service.cancel, session_id)
        return await run_in_threadpool(service.get_status, session_id)
    except Exception as e:
        return handle_error(e)


# ===================
# REPORTS
# ===================

@router.get("/{session_id}/errors/export")
async def export_issues(session_id: str):
    """Download every issue as CSV."""
    try:
        csv_text = await run_in_threadpool(get_import_session_service().export_issues_csv, session_id)
        return Response(
            content=csv_text,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="import-{session_id}-issues.csv"'}
        )
    except Exception as e:
        return handle_error(e)


# ===================
# PUSH CHANNEL
# ===================

@router.websocket("/{session_id}/ws")
async def progress_channel(websocket: WebSocket, session_id: str):
    """
    Push status and progress for one session.

    Sends the current state on connect, then every change until the session
    ends. Missed messages are not replayed.
    """
    await websocket.accept()

    service = get_import_session_service()
    broadcaster = get_progress_broadcaster()
    # Subscribe first so a terminal transition cannot slip in unseen
    subscription = broadcaster.subscribe(session_id)
    disconnected = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(websocket, disconnected))

    try:
        try:
            current = await run_in_threadpool(service.get_status, session_id)
        except AppError as e:
            await websocket.send_json(e.to_dict())
            await websocket.close(code=4404)
            return

        await websocket.send_json(ProgressMessage(
            session_id=current.session_id,
            status=current.status,
            progress=current.progress,
        ).model_dump(mode="json"))

        if current.status in TERMINAL_STATUSES:
            await websocket.close()
            return

        while not disconnected.is_set():
            message = await run_in_threadpool(subscription.get, LISTENER_POLL_SECONDS)
            if message is CLOSED:
                await websocket.close()
                break
            if message is None:
                continue
            await websocket.send_json(message.model_dump(mode="json"))

    except WebSocketDisconnect:
        logger.debug("progress_listener_disconnected", session_id=session_id)
    finally:
        watcher.cancel()
        broadcaster.unsubscribe(subscription)


async def _watch_disconnect(websocket: WebSocket, disconnected: asyncio.Event) -> None:
    """Drain client frames until the client goes away."""
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("progress_listener_receive_ended", error=str(e))
    finally:
        disconnected.set()
