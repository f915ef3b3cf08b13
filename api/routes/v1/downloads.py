"""
api/routes/v1/downloads.py -- File download routes for the FileGate REST API.

Routes:
  GET    /downloads         -- stream a stored file (session or download token)
  POST   /downloads/links   -- mint a signed, shareable download link (session)

GET /downloads is a thin adapter over DownloadGateway.handle(). Query
parameters are read as raw strings on purpose: a missing or malformed
resource_type/resource_id must reach the gateway so the refusal is audited,
instead of being rejected by FastAPI validation before any audit entry exists.

Both handlers are plain `def` so FastAPI runs them in its thread pool; the
gateway does blocking database and file I/O.
"""

from functools import partial
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from api.models import DownloadLinkCreate, DownloadLinkResponse, ErrorDetail, ErrorResponse
from auth.dependencies import get_current_actor, try_get_current_actor
from core.config import get_settings
from core.errors import DownloadError
from core.models import ActorIdentity
from gateway.download import DownloadGateway, DownloadRequest, DownloadResult

router = APIRouter()


def _error_response(result: DownloadResult) -> JSONResponse:
    return JSONResponse(
        status_code=result.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=result.error_code or "internal_error",
                message=result.message or "An unexpected error occurred.",
            )
        ).model_dump(),
        headers={"Cache-Control": "no-store"},
    )


# ---------------------------------------------------------------------------
# GET /downloads -- stream a file
# ---------------------------------------------------------------------------


@router.get(
    "/downloads",
    responses={
        200: {"content": {"application/octet-stream": {}}, "description": "The file body."},
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
def download(
    request: Request,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    token: Optional[str] = None,
):
    """Stream a stored file to a session user or to a download-token holder.

    A valid session always takes precedence; the token is only consulted when
    the request carries no session. Every call produces exactly one audit
    entry, whatever the outcome.
    """
    gateway: DownloadGateway = request.app.state.gateway
    result = gateway.handle(
        DownloadRequest(
            resource_type=resource_type,
            resource_id=resource_id,
            token=token,
            session=partial(try_get_current_actor, request),
            source_ip=request.client.host if request.client else "unknown",
        )
    )
    if not result.ok or result.body is None:
        return _error_response(result)

    return StreamingResponse(
        result.body,
        status_code=result.status_code,
        headers=result.headers,
        background=BackgroundTask(result.close),
    )


# ---------------------------------------------------------------------------
# POST /downloads/links -- issue a download link
# ---------------------------------------------------------------------------


@router.post("/downloads/links", response_model=DownloadLinkResponse, status_code=201)
def create_download_link(
    request: Request,
    body: DownloadLinkCreate,
    actor: ActorIdentity = Depends(get_current_actor),
) -> DownloadLinkResponse:
    """Issue a short-lived link for a file the current user may download.

    The link works without a session until it expires, so it can be handed
    to a browser tab, a mail client or a colleague.
    """
    gateway: DownloadGateway = request.app.state.gateway
    try:
        link = gateway.issue_link(actor, body.resource_type.value, body.resource_id, body.ttl_seconds)
    except DownloadError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail=ErrorDetail(code=exc.code, message=exc.public_message).model_dump(),
        ) from exc
    return DownloadLinkResponse.from_link(link, get_settings().public_base_url)
