"""Client configuration for the FHIR offline client.

A `ClientConfig` is an immutable snapshot. Every request captures the snapshot
that is current when it is issued, so `ClientConfig.updated()` (and
`ResourceClient.update_config()`) only affect calls made afterwards.

Environment variables read by `ClientConfig.from_env()`:
 - FHIR_SERVER_URL: base URL of the FHIR server (required).
 - FHIR_ORGANIZATION_ID: organization used to scope patient searches and creates.
 - FHIR_TIMEOUT_MS: per-request deadline in milliseconds (default 30000).
 - FHIR_RETRY_COUNT: attempts per retried call and per retry_connection (default 3).
 - FHIR_RETRY_DELAY_MS: first backoff delay between attempts (default 1000).
"""
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_RETRY_COUNT = 3
DEFAULT_RETRY_DELAY_MS = 1000


class ClientConfig(BaseModel):
    """
    Connection settings shared by the resource client and its executor.

    base_url: FHIR server base (e.g. 'http://localhost:3001/fhir/R4'). A trailing slash is stripped.
    organization_id: currently selected organization, if any.
    headers: extra headers sent with every request (e.g. Authorization).
    timeout_ms: request deadline in milliseconds.
    retry_count / retry_delay_ms: used by the resilience layer only, never for raw transport retries.
    """
    base_url: str = Field(..., description="Base URL of the FHIR server.")
    organization_id: Optional[str] = Field(None, description="Organization used for scoping.")
    headers: Dict[str, str] = Field(default_factory=dict, description="Default request headers.")
    timeout_ms: int = Field(DEFAULT_TIMEOUT_MS, gt=0, description="Request timeout in milliseconds.")
    retry_count: int = Field(DEFAULT_RETRY_COUNT, ge=0, description="Attempts for retried calls and retry_connection.")
    retry_delay_ms: int = Field(DEFAULT_RETRY_DELAY_MS, ge=0, description="Initial delay between attempts.")

    model_config = ConfigDict(frozen=True)

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    def updated(self, **changes: Any) -> "ClientConfig":
        """
        Return a new snapshot with `changes` shallow-merged over this one.

        The `headers` mapping is merged key by key into the existing headers
        instead of replacing them. Unknown keys raise TypeError.
        """
        unknown = set(changes) - set(type(self).model_fields)
        if unknown:
            raise TypeError(f"Unknown configuration field(s): {sorted(unknown)}")
        data = self.model_dump()
        if changes.get("headers") is not None:
            changes = dict(changes, headers={**self.headers, **changes["headers"]})
        data.update(changes)
        return type(self)(**data)

    @classmethod
    def from_env(cls, **overrides: Any) -> "ClientConfig":
        """
        Build a config from the environment (and a local .env file, if present).

        Raises:
            ValueError: if FHIR_SERVER_URL is not set and no base_url override is given.
        """
        load_dotenv()
        values: Dict[str, Any] = {
            "base_url": os.getenv("FHIR_SERVER_URL"),
            "organization_id": os.getenv("FHIR_ORGANIZATION_ID") or None,
            "timeout_ms": int(os.getenv("FHIR_TIMEOUT_MS", DEFAULT_TIMEOUT_MS)),
            "retry_count": int(os.getenv("FHIR_RETRY_COUNT", DEFAULT_RETRY_COUNT)),
            "retry_delay_ms": int(os.getenv("FHIR_RETRY_DELAY_MS", DEFAULT_RETRY_DELAY_MS)),
        }
        values.update(overrides)
        if not values["base_url"]:
            raise ValueError("FHIR_SERVER_URL must be set to the FHIR server base URL.")
        return cls(**values)
