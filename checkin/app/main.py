"""
FastAPI entrypoint for the check-in verifier.

Wires the verification coordinator, the durable submission queue and
the background submission worker behind a small HTTP surface.
Collaborators that live outside this service (the signing wallet, a
custom ledger relay, the store) can be injected through ``create_app``.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

import anyio
import httpx
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse

from checkin.app.api.routes import router as checkin_router
from checkin.app.collaborators import (
    LedgerRelay,
    StaticIssuerRegistry,
    TransactionSigner,
)
from checkin.app.config import Settings, get_settings
from checkin.app.coordinator.coordinator import VerificationCoordinator
from checkin.app.rate_limit import ScanRateLimited, ScanRateLimiter
from checkin.app.service import CheckInService
from checkin.app.storage.nonce_ledger import NonceLedger
from checkin.app.storage.store import InMemoryStore, JsonFileStore, KeyValueStore
from checkin.app.submission.errors import (
    InvalidQueueTransition,
    QueueItemNotFound,
)
from checkin.app.submission.queue import SubmissionQueue
from checkin.app.submission.relay import HttpLedgerRelay
from checkin.app.submission.worker import SubmissionWorker

logger = logging.getLogger("checkin.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source version when the package is not installed.
    """
    try:
        return version("checkin-verifier")
    except PackageNotFoundError:
        return "0.1.0"


def build_store(settings: Settings) -> KeyValueStore:
    if settings.storage_dir is None:
        logger.warning("storage_in_memory_only")
        return InMemoryStore()
    return JsonFileStore(settings.storage_dir)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[KeyValueStore] = None,
    signer: Optional[TransactionSigner] = None,
    relay: Optional[LedgerRelay] = None,
) -> FastAPI:
    """
    Application factory.

    Without a relay (injected or configured through ``relay_url``) the
    worker does not run and queued items wait until one is available.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Guarantees:
        - Fail-fast startup if configuration is invalid
        - The nonce ledger is open for exactly the lifetime of the app
        - The worker is stopped before its collaborators are closed
        """
        logger.info(
            "checkin_startup_begin",
            extra={"service": "checkin", "version": get_app_version()},
        )

        # ------------------------------------------------------------------
        # Load and validate configuration (FAIL FAST)
        # ------------------------------------------------------------------
        try:
            resolved = settings or get_settings()
        except Exception:
            logger.exception("invalid_checkin_configuration")
            raise

        app.state.settings = resolved

        kv_store = store if store is not None else build_store(resolved)

        ledger = NonceLedger(
            kv_store,
            capacity=resolved.nonce_ledger_capacity,
        ).open()

        coordinator = VerificationCoordinator(
            resolved,
            ledger=ledger,
            issuer_registry=StaticIssuerRegistry(resolved.trusted_issuers),
        )
        queue = SubmissionQueue(kv_store)

        app.state.ledger = ledger
        app.state.queue = queue
        app.state.background_scans = set()
        app.state.service = CheckInService(
            coordinator,
            queue,
            signer=signer,
            rate_limiter=ScanRateLimiter.from_settings(resolved),
        )

        # ------------------------------------------------------------------
        # Ledger relay (persistent HTTP client when configured)
        # ------------------------------------------------------------------
        http_client: Optional[httpx.AsyncClient] = None
        active_relay = relay
        if active_relay is None and resolved.relay_url is not None:
            http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    timeout=resolved.relay_timeout_seconds,
                    connect=10.0,
                ),
                headers={"User-Agent": f"checkin-verifier/{get_app_version()}"},
            )
            active_relay = HttpLedgerRelay(http_client, resolved)

        app.state.worker = None
        if active_relay is not None:
            app.state.worker = SubmissionWorker(queue, active_relay, resolved)
        else:
            logger.warning("submission_worker_disabled_no_relay")

        stop_event = anyio.Event()

        try:
            async with anyio.create_task_group() as tg:
                if app.state.worker is not None:
                    tg.start_soon(app.state.worker.run, stop_event)
                try:
                    yield
                finally:
                    stop_event.set()
        finally:
            logger.info("checkin_shutdown_begin")

            ledger.close()

            if http_client is not None:
                try:
                    await http_client.aclose()
                except Exception:
                    logger.warning("http_client_shutdown_failed")

    app = FastAPI(
        title="Check-in Verifier",
        description=(
            "Attendance claim verification with durable, retrying "
            "ledger submission."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------------
    # Error mapping
    # ----------------------------------------------------------------------

    @app.exception_handler(QueueItemNotFound)
    async def queue_item_not_found(request: Request, exc: QueueItemNotFound):
        return ORJSONResponse(
            status_code=404,
            content={"detail": f"Queue item not found: {exc.args[0]}"},
        )

    @app.exception_handler(InvalidQueueTransition)
    async def invalid_transition(request: Request, exc: InvalidQueueTransition):
        return ORJSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ScanRateLimited)
    async def scan_rate_limited(request: Request, exc: ScanRateLimited):
        return ORJSONResponse(
            status_code=429,
            content={"detail": str(exc), "blocked": exc.blocked},
            headers={"Retry-After": str(max(1, int(exc.retry_after + 0.999)))},
        )

    app.include_router(checkin_router)

    @app.get(
        "/health",
        tags=["Monitoring"],
        summary="Liveness and readiness probe",
    )
    async def health_check():
        """
        Verifies that the runtime is alive and correctly initialized.

        NOTE:
        - Does NOT call the ledger relay
        """
        ledger: NonceLedger = app.state.ledger
        queue: SubmissionQueue = app.state.queue
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "checkin",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
                "nonce_ledger_open": ledger.is_open,
                "queued_submissions": len(queue.list()),
                "worker_enabled": app.state.worker is not None,
            }
        )

    return app


app = create_app()
