import asyncio
import logging
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from slowapi.util import get_remote_address

from checkin.app.collaborators import Coordinates, FixedLocationProvider
from checkin.app.config import Settings
from checkin.app.events import MemoryQueueEventEmitter
from checkin.app.schemas.submission import QueueItem
from checkin.app.service import CheckInResult, CheckInService
from checkin.app.submission.queue import SubmissionQueue

logger = logging.getLogger("checkin.api")

router = APIRouter()


# =============================================================================
# Request bodies
# =============================================================================

class ScanRequest(BaseModel):
    payload: str = Field(..., description="Raw text decoded from the QR code")
    latitude: Optional[float] = Field(None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(None, ge=-180.0, le=180.0)

    def location_provider(self) -> FixedLocationProvider:
        """Coordinates supplied with the scan; absent means denied."""
        if self.latitude is None or self.longitude is None:
            return FixedLocationProvider(None)
        return FixedLocationProvider(
            Coordinates(latitude=self.latitude, longitude=self.longitude)
        )


class ResignRequest(BaseModel):
    signed_transaction: str = Field(..., min_length=1)


class RetryAllResponse(BaseModel):
    retried: List[str]


# =============================================================================
# Dependency providers
# =============================================================================

def get_settings_state(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise RuntimeError("settings not initialized")
    return settings


def get_service(request: Request) -> CheckInService:
    return request.app.state.service


def get_queue(request: Request) -> SubmissionQueue:
    return request.app.state.queue


def get_client_key(request: Request) -> str:
    """Rate limiting key for the calling device."""
    return get_remote_address(request)


def _enforce_payload_limit(scan: ScanRequest, settings: Settings) -> None:
    # Hard resource safety limit (NOT a verification decision)
    size = len(scan.payload.encode("utf-8", errors="surrogatepass"))
    if size > settings.max_payload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=(
                f"Scan payload exceeds {settings.max_payload_bytes} bytes"
            ),
        )


# =============================================================================
# Scans
# =============================================================================

@router.post(
    "/scans",
    response_model=CheckInResult,
    tags=["Scans"],
    summary="Verify a scanned attendance claim",
    responses={
        413: {"description": "Payload too large"},
        429: {"description": "Too many scan attempts"},
    },
)
async def submit_scan(
    scan: ScanRequest,
    service: Annotated[CheckInService, Depends(get_service)],
    settings: Annotated[Settings, Depends(get_settings_state)],
    client: Annotated[str, Depends(get_client_key)],
) -> CheckInResult:
    """
    Run the verification protocol and, when a signer is wired in, queue
    the signed transaction. Verification failures are reported on the
    verdict, not as HTTP errors.
    """
    _enforce_payload_limit(scan, settings)

    return await service.check_in(
        scan.payload,
        client=client,
        location_provider=scan.location_provider(),
    )


@router.post(
    "/scans/stream",
    tags=["Scans"],
    summary="Verify a scanned claim (streaming progress)",
)
async def submit_scan_stream(
    request: Request,
    scan: ScanRequest,
    service: Annotated[CheckInService, Depends(get_service)],
    settings: Annotated[Settings, Depends(get_settings_state)],
    client: Annotated[str, Depends(get_client_key)],
):
    """
    Stream verdict snapshots as each stage resolves.

    Client disconnects do NOT cancel the verification. The final
    SCAN_COMPLETED event carries the complete verdict.
    """
    _enforce_payload_limit(scan, settings)

    # Charged before the stream opens; a limited client gets a plain 429
    service.enforce_rate_limit(client)

    emitter = MemoryQueueEventEmitter()

    async def run_scan_task() -> None:
        try:
            await service.check_in(
                scan.payload,
                client=client,
                location_provider=scan.location_provider(),
                emitter=emitter,
                rate_limited=False,
            )
        except Exception:
            logger.exception("streamed_scan_failed")
            await emitter.close()

    tasks = request.app.state.background_scans
    task = asyncio.create_task(run_scan_task())
    tasks.add(task)
    task.add_done_callback(tasks.discard)

    async def event_stream():
        try:
            async for event in emitter.stream():
                yield event.to_sse_payload()
        except asyncio.CancelledError:
            # Client disconnected; verification continues
            pass

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# =============================================================================
# Submission queue
# =============================================================================

@router.get(
    "/queue",
    response_model=List[QueueItem],
    tags=["Queue"],
    summary="List pending submissions in creation order",
)
async def list_queue(
    queue: Annotated[SubmissionQueue, Depends(get_queue)],
) -> List[QueueItem]:
    return queue.list()


@router.post(
    "/queue/retry-failed",
    response_model=RetryAllResponse,
    tags=["Queue"],
    summary="Manually retry every failed submission",
)
async def retry_all_failed(
    queue: Annotated[SubmissionQueue, Depends(get_queue)],
) -> RetryAllResponse:
    return RetryAllResponse(retried=queue.retry_all_failed())


@router.post(
    "/queue/{item_id}/retry",
    response_model=QueueItem,
    tags=["Queue"],
    summary="Manually retry a failed submission",
    responses={404: {}, 409: {}},
)
async def retry_item(
    item_id: str,
    queue: Annotated[SubmissionQueue, Depends(get_queue)],
) -> QueueItem:
    return queue.retry(item_id)


@router.post(
    "/queue/{item_id}/resign",
    response_model=QueueItem,
    tags=["Queue"],
    summary="Replace an expired transaction with a freshly signed one",
    responses={404: {}, 409: {}},
)
async def resign_item(
    item_id: str,
    body: ResignRequest,
    queue: Annotated[SubmissionQueue, Depends(get_queue)],
) -> QueueItem:
    return queue.resign(item_id, body.signed_transaction)


@router.delete(
    "/queue/{item_id}",
    response_model=QueueItem,
    tags=["Queue"],
    summary="Discard a failed or expired submission",
    responses={404: {}, 409: {}},
)
async def discard_item(
    item_id: str,
    queue: Annotated[SubmissionQueue, Depends(get_queue)],
) -> QueueItem:
    return queue.discard(item_id)
