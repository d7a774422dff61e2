"""
Router for payment provider webhooks.

No client authentication: every request is verified by the provider's
signature before anything is stored.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from renewal_engine.core.database import get_db
from renewal_engine.models.enums import Provider
from renewal_engine.services.webhook_ingestion import WebhookIngestionService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
)


@router.post(
    "/stripe",
    summary="Stripe webhook endpoint",
    include_in_schema=False,  # hidden from OpenAPI/MCP, called by Stripe only
)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await request.body()
    result = WebhookIngestionService(db).ingest(
        Provider.stripe, payload, request.headers.get("stripe-signature")
    )
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.post(
    "/apple",
    summary="App Store Server Notifications V2 endpoint",
    include_in_schema=False,
)
async def apple_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Body: {"signedPayload": "<JWS>"}. The signature lives inside the payload,
    so there is no header to check.
    """
    payload = await request.body()
    result = WebhookIngestionService(db).ingest(Provider.apple, payload)
    return JSONResponse(status_code=result.status_code, content=result.body)
