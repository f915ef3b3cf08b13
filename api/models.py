"""
API request and response models for FileGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/, auth/ and
resources/, which own the internal domain representation. Route handlers map
between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.tokens import DOWNLOAD_TOKEN_TTL_SECONDS, DownloadLink
from core.models import ResourceType

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class DownloadLinkCreate(BaseModel):
    """Request body for POST /api/v1/downloads/links.

    ttl_seconds only shapes the advertised expires_at. The token carries its
    issue time alone, so the gateway always enforces DOWNLOAD_TOKEN_TTL_SECONDS.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    resource_type: ResourceType
    resource_id: int = Field(gt=0)
    ttl_seconds: int = Field(default=DOWNLOAD_TOKEN_TTL_SECONDS, ge=1, le=DOWNLOAD_TOKEN_TTL_SECONDS)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class DownloadLinkResponse(BaseModel):
    """A signed, shareable download link."""

    model_config = ConfigDict(frozen=True)

    resource_type: ResourceType
    resource_id: int
    token: str
    url: str
    expires_at: int  # unix seconds

    @classmethod
    def from_link(cls, link: DownloadLink, base_url: str) -> "DownloadLinkResponse":
        """Factory Method -- the mapping lives beside the output model."""
        return cls(
            resource_type=link.resource_type,
            resource_id=link.resource_id,
            token=link.token,
            url=f"{base_url.rstrip('/')}/api/v1/downloads?{link.query}",
            expires_at=link.expires_at,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
