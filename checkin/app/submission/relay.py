"""
HTTP ledger relay client.

Submits signed transactions to a ledger relay and polls for their
finalization. The relay's consensus semantics are out of scope; this
client only classifies outcomes:

    timeout / transport failure / 408  -> SubmissionTimeout     (retryable)
    5xx / 429                          -> SubmissionServerError (retryable)
    other 4xx                          -> SubmissionRejected    (terminal)

A rejection whose error code is ``signature_expired`` is flagged so the
worker can route the item to needs_resign.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)
from tenacity.wait import wait_base

from checkin.app.config import Settings
from checkin.app.schemas.submission import SubmissionReceipt
from checkin.app.submission.errors import (
    SubmissionPending,
    SubmissionRejected,
    SubmissionServerError,
    SubmissionTimeout,
)

logger = logging.getLogger(__name__)

SIGNATURE_EXPIRED_CODES = frozenset({"signature_expired", "blockhash_not_found"})

_RETRYABLE_STATUS = frozenset({429})


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None

    if not isinstance(body, dict):
        return None

    error = body.get("error")
    if isinstance(error, dict):
        code = error.get("code")
    else:
        code = body.get("code", error)
    return str(code) if code is not None else None


def classify_response(response: httpx.Response) -> None:
    """
    Raise the submission error matching a non-success response.
    """
    status = response.status_code
    if status < 400:
        return

    if status == 408:
        raise SubmissionTimeout("Relay request timed out (408)")

    if status >= 500 or status in _RETRYABLE_STATUS:
        raise SubmissionServerError(
            f"Relay error {status}",
            status_code=status,
        )

    code = _error_code(response)
    raise SubmissionRejected(
        f"Relay rejected transaction ({status}, {code or 'no code'})",
        signature_expired=code in SIGNATURE_EXPIRED_CODES,
        code=code,
    )


class HttpLedgerRelay:
    """
    Async relay client over a shared ``httpx.AsyncClient``.

    Endpoints (relative to ``relay_url``):
        POST /transactions              {"transaction": <signed>}
        GET  /transactions/{id}         {"status": "pending"|"finalized"|"failed"}
    """

    def __init__(
        self,
        http_client: Annotated[
            httpx.AsyncClient,
            "Persistent HTTP client",
        ],
        settings: Annotated[
            Settings,
            "Application configuration",
        ],
        *,
        poll_wait: Optional[wait_base] = None,
    ) -> None:
        if settings.relay_url is None:
            raise ValueError("relay_url is not configured")

        self.client = http_client
        self.settings = settings
        self.base_url = str(settings.relay_url).rstrip("/")

        self._poll_until_final = retry(
            stop=stop_after_delay(settings.finalization_timeout_seconds),
            wait=poll_wait or wait_exponential(min=1, max=10),
            retry=retry_if_exception_type(
                (httpx.TransportError, SubmissionPending, SubmissionServerError)
            ),
            reraise=True,
        )(self._poll_status)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, signed_transaction: str) -> SubmissionReceipt:
        response = await self._request(
            "POST",
            f"{self.base_url}/transactions",
            json={"transaction": signed_transaction},
        )
        classify_response(response)

        try:
            receipt = SubmissionReceipt.model_validate(response.json())
        except ValueError as exc:
            raise SubmissionServerError(
                "Relay returned an unreadable receipt",
                status_code=response.status_code,
            ) from exc

        logger.info(
            "relay_transaction_submitted",
            extra={
                "transaction_id": receipt.transaction_id,
                "finalized": receipt.finalized,
            },
        )
        return receipt

    async def await_finalization(self, receipt: SubmissionReceipt) -> None:
        if receipt.finalized:
            return

        try:
            await self._poll_until_final(receipt.transaction_id)
        except SubmissionPending as exc:
            raise SubmissionTimeout(
                f"Transaction {receipt.transaction_id} not finalized within "
                f"{self.settings.finalization_timeout_seconds}s"
            ) from exc
        except httpx.TransportError as exc:
            raise SubmissionTimeout(
                f"Relay unreachable while polling: {type(exc).__name__}"
            ) from exc

        logger.info(
            "relay_transaction_finalized",
            extra={"transaction_id": receipt.transaction_id},
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(
                method,
                url,
                timeout=self.settings.relay_timeout_seconds,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise SubmissionTimeout(f"Relay request timed out: {url}") from exc
        except httpx.TransportError as exc:
            logger.warning(
                "relay_unreachable",
                extra={"error_type": type(exc).__name__},
            )
            raise SubmissionTimeout(
                f"Relay unreachable: {type(exc).__name__}"
            ) from exc

    async def _poll_status(self, transaction_id: str) -> None:
        response = await self.client.get(
            f"{self.base_url}/transactions/{transaction_id}",
            timeout=self.settings.relay_timeout_seconds,
        )
        classify_response(response)

        try:
            result = response.json()
        except ValueError as exc:
            raise SubmissionServerError(
                "Relay returned an unreadable transaction status",
                status_code=response.status_code,
            ) from exc

        if not isinstance(result, dict):
            raise SubmissionServerError(
                "Relay transaction status is not an object",
                status_code=response.status_code,
            )

        status = str(result.get("status", "")).lower()

        if status == "finalized":
            return

        if status == "failed":
            code = _error_code(response)
            raise SubmissionRejected(
                f"Transaction {transaction_id} failed on the ledger",
                signature_expired=code in SIGNATURE_EXPIRED_CODES,
                code=code,
            )

        # Expected in-flight state -> retry
        raise SubmissionPending(f"transaction_pending:{status}")
