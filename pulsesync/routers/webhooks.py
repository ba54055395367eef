"""Provider webhook endpoints (public; authenticated by HMAC signature).

    POST /webhooks/garmin   -> 200 {"received": true, "queued": N}
    GET  /webhooks/fitbit   -> 204 if ?verify matches the subscriber code, else 404
    POST /webhooks/fitbit   -> 204

The raw body is read before anything parses it, so the signature is checked
over the exact bytes the provider signed.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Header, HTTPException, Query, Request, Response

from pulsesync.dependencies import AppSettings, Translator, Verifier
from pulsesync.exceptions import WebhookError
from pulsesync.models.webhooks import GarminWebhookAck
from pulsesync.webhooks.signature import SignatureVerifier

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("pulsesync.webhooks")


async def _raw_body(request: Request) -> bytes | None:
    try:
        return await request.body()
    except RuntimeError:
        # Stream already consumed by something upstream
        return None


async def _verified_body(
    request: Request, verifier: SignatureVerifier, provider: str, signature: str | None
) -> bytes:
    raw = await _raw_body(request)
    try:
        verifier.verify(provider, raw, signature)
    except WebhookError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return raw or b""


@router.post("/garmin", response_model=GarminWebhookAck)
async def garmin_webhook(
    request: Request,
    verifier: Verifier,
    translator: Translator,
    x_garmin_signature: str | None = Header(default=None),
) -> GarminWebhookAck:
    body = await _verified_body(request, verifier, "garmin", x_garmin_signature)
    queued = await translator.handle_garmin(body)
    logger.info("Garmin webhook processed: queued=%d", queued)
    return GarminWebhookAck(received=True, queued=queued)


@router.get("/fitbit", status_code=204)
async def fitbit_verify(settings: AppSettings, verify: str | None = Query(default=None)) -> Response:
    """Fitbit subscriber verification challenge."""
    code = settings.fitbit_subscriber_code
    if verify and code and hmac.compare_digest(verify.encode(), code.encode()):
        return Response(status_code=204)
    return Response(status_code=404)


@router.post("/fitbit", status_code=204)
async def fitbit_webhook(
    request: Request,
    verifier: Verifier,
    translator: Translator,
    x_fitbit_signature: str | None = Header(default=None),
) -> Response:
    body = await _verified_body(request, verifier, "fitbit", x_fitbit_signature)
    queued = await translator.handle_fitbit(body)
    logger.info("Fitbit webhook processed: queued=%d", queued)
    return Response(status_code=204)
