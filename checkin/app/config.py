"""
Runtime configuration for the check-in verifier.

Pydantic v2 settings management, parsed once from the environment
(prefix ``CHECKIN_``) and frozen for the lifetime of the process.

Configuration bounds verification and submission behavior. It must not
introduce non-deterministic behavior into verification outcomes.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import AnyHttpUrl, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Fails fast at startup if a bound is out of range or two settings
    contradict each other.
    """

    # ---------------------------------------------------------------------
    # Claim verification
    # ---------------------------------------------------------------------

    max_payload_bytes: Annotated[
        int,
        Field(
            default=2048,
            ge=64,
            le=65536,
            description="Upper bound on scanned claim size (UTF-8 bytes)",
        ),
    ]

    claim_max_age_seconds: Annotated[
        int,
        Field(
            default=300,
            ge=1,
            description=(
                "Maximum age of a claim measured from issued_at, enforced "
                "independently of the claim's own expiry window"
            ),
        ),
    ]

    trusted_issuers: Annotated[
        List[str],
        Field(
            default_factory=list,
            description="Base64 Ed25519 public keys of trusted event issuers",
        ),
    ]

    # ---------------------------------------------------------------------
    # Zone matching
    # ---------------------------------------------------------------------

    location_timeout_seconds: Annotated[
        float,
        Field(
            default=10.0,
            gt=0,
            description="Timeout for coarse location acquisition",
        ),
    ]

    # ---------------------------------------------------------------------
    # Persistence
    # ---------------------------------------------------------------------

    storage_dir: Annotated[
        Optional[Path],
        Field(
            default=None,
            description=(
                "Directory for the nonce ledger and submission queue. "
                "In-memory storage is used when unset."
            ),
        ),
    ]

    nonce_ledger_capacity: Annotated[
        int,
        Field(
            default=1000,
            ge=1,
            description="Maximum accepted nonces retained (oldest evicted)",
        ),
    ]

    # ---------------------------------------------------------------------
    # Ledger relay
    # ---------------------------------------------------------------------

    relay_url: Annotated[
        Optional[AnyHttpUrl],
        Field(
            default=None,
            description="Ledger relay base URL. The worker is idle when unset.",
        ),
    ]

    relay_timeout_seconds: Annotated[
        float,
        Field(default=30.0, gt=0, description="Per-request relay timeout"),
    ]

    finalization_timeout_seconds: Annotated[
        float,
        Field(
            default=60.0,
            gt=0,
            description="How long to poll for finalization of a submission",
        ),
    ]

    # ---------------------------------------------------------------------
    # Submission retry policy
    # ---------------------------------------------------------------------

    retry_base_delay_seconds: Annotated[
        float,
        Field(default=1.0, gt=0, description="First backoff delay"),
    ]

    retry_max_delay_seconds: Annotated[
        float,
        Field(default=300.0, gt=0, description="Backoff delay ceiling"),
    ]

    max_submission_attempts: Annotated[
        int,
        Field(
            default=5,
            ge=1,
            description=(
                "Consecutive failed attempts after which an item stays "
                "failed until manually retried or discarded"
            ),
        ),
    ]

    worker_poll_interval_seconds: Annotated[
        float,
        Field(default=5.0, gt=0, description="Idle sleep of the worker loop"),
    ]

    failed_retention_seconds: Annotated[
        Optional[float],
        Field(
            default=None,
            gt=0,
            description=(
                "Retention of capped-out failed items. None keeps them "
                "until discarded."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Scan rate limiting
    # ---------------------------------------------------------------------

    scan_rate_limit_attempts: Annotated[
        int,
        Field(default=5, ge=1, description="Scans allowed per window"),
    ]

    scan_rate_limit_window_seconds: Annotated[
        int,
        Field(default=60, ge=1, description="Moving window length"),
    ]

    scan_rate_limit_block_seconds: Annotated[
        int,
        Field(default=300, ge=0, description="Block after exhaustion"),
    ]

    # ---------------------------------------------------------------------
    # Validators
    # ---------------------------------------------------------------------

    @field_validator("retry_max_delay_seconds")
    @classmethod
    def max_delay_not_below_base(
        cls, v: float, info: ValidationInfo
    ) -> float:
        base = info.data.get("retry_base_delay_seconds")
        if base is not None and v < base:
            raise ValueError(
                "retry_max_delay_seconds must not be lower than "
                "retry_base_delay_seconds"
            )
        return v

    @field_validator("trusted_issuers")
    @classmethod
    def issuers_are_unique(cls, v: List[str]) -> List[str]:
        stripped = [key.strip() for key in v if key.strip()]
        if len(set(stripped)) != len(stripped):
            raise ValueError("trusted_issuers contains duplicate keys")
        return stripped

    model_config = SettingsConfigDict(
        env_prefix="CHECKIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.
    """
    return Settings()
