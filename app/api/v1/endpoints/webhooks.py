import json
import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.security import webhook_key_matches
from app.services.webhook_intake import intake_webhook

log = logging.getLogger(__name__)

router = APIRouter()


# Raw request: the courier expects plain-text 400/403 bodies, not FastAPI validation errors.
@router.post("/webhooks/courier")
async def courier_webhook(
    request: Request,
    x_api_key: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    if not webhook_key_matches(x_api_key):
        log.warning("courier webhook: rejected, bad x-api-key from %s", request.client.host if request.client else "?")
        return PlainTextResponse("Forbidden", status_code=403)

    raw = await request.body()
    try:
        body = json.loads(raw or b"")
    except ValueError:
        return PlainTextResponse("Invalid JSON", status_code=400)
    if not isinstance(body, dict):
        return PlainTextResponse("Malformed body", status_code=400)

    result = await intake_webhook(db, body)
    return JSONResponse(result.body, status_code=200)
