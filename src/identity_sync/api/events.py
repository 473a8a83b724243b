from __future__ import annotations
import json
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from identity_sync import pipeline
from identity_sync.config import get_settings
from identity_sync.errors import InvalidEventError
from identity_sync.security.hmac import verify_hmac

router = APIRouter(tags=["events"])


async def signed_json_body(request: Request, x_signature: Optional[str] = Header(None, alias="X-Signature")) -> Any:
    """Raw body, verified against INGEST_SECRET when one is configured, then decoded."""
    body = await request.body()
    settings = get_settings()
    if settings.ingest_secret:
        if not x_signature:
            raise HTTPException(status_code=401, detail="missing signature")
        verify_hmac(x_signature, body=body, secret=settings.ingest_secret)
    try:
        return json.loads(body or b"null")
    except ValueError:
        raise InvalidEventError("invalid_json")


@router.post("/events")
def ingest_event(
    payload: Any = Depends(signed_json_body),
    x_idempotency_key: Optional[str] = Header(None, alias="X-Idempotency-Key"),
):
    # body idempotency key wins over the header
    if isinstance(payload, dict) and not payload.get("idempotency_key") and x_idempotency_key:
        payload["idempotency_key"] = x_idempotency_key
    result = pipeline.ingest(payload)
    return JSONResponse(status_code=202 if result.accepted else 200, content=result.to_dict())


@router.post("/events/bulk")
def ingest_events_bulk(payload: Any = Depends(signed_json_body)):
    if not isinstance(payload, list):
        raise InvalidEventError("payload_not_list")
    results = pipeline.ingest_bulk(payload)
    return {
        "accepted": sum(1 for r in results if r.get("accepted")),
        "duplicates": sum(1 for r in results if r.get("duplicate")),
        "rejected": sum(1 for r in results if not r.get("accepted") and not r.get("duplicate")),
        "results": results,
    }


class IdentifyIn(BaseModel):
    workspace_id: str = Field(min_length=1, max_length=64)
    traits: Dict[str, Any] = Field(default_factory=dict)
    anonymous_id: str | None = None
    source: str = "api"
    idempotency_key: str | None = None


@router.post("/identify")
def identify(body: IdentifyIn):
    result = pipeline.identify(body.workspace_id, body.traits, body.anonymous_id, body.source, body.idempotency_key)
    return JSONResponse(status_code=202 if result.accepted else 200, content=result.to_dict())
