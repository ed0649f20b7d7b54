"""
Agentflow - Webhook Endpoint
============================

POST /webhooks/{provider}

Authenticates the raw body, normalizes the provider payload into a Fact and
hands it to the session orchestrator. Any authenticated, well-formed request
gets a 200 with ``{"status": "processed" | "ignored", ...}``.
"""

import json

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from agentflow.api.deps import ServiceContainer, get_container
from agentflow.core.ingress import SignatureCheck, body_digest, verify_signature

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    services: ServiceContainer = Depends(get_container),
) -> JSONResponse:
    normalizer = services.normalizers.get(provider)
    if normalizer is None:
        return _error(404, f"Unknown webhook provider: {provider}")

    body = await request.body()
    check = verify_signature(
        services.config.effective_webhook_secret,
        body,
        request.headers.get(normalizer.signature_header),
    )
    if check == SignatureCheck.MISSING:
        logger.warning("webhook_signature_missing", provider=provider)
        return _error(401, f"Missing {normalizer.signature_header} header")
    if check == SignatureCheck.INVALID:
        logger.warning("webhook_signature_invalid", provider=provider)
        return _error(401, "Invalid signature")

    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return _error(400, "Invalid JSON")

    event = request.headers.get(normalizer.event_header, "")
    normalized = normalizer.normalize(event, payload, body_digest(body))
    if normalized.fact is None:
        logger.info("webhook_ignored", provider=provider, event_type=event, reason=normalized.reason)
        return JSONResponse(content={"status": "ignored", "reason": normalized.reason})

    logger.info(
        "webhook_received",
        provider=provider,
        event_type=event,
        kind=normalized.fact.kind.value,
        branch=normalized.fact.branch,
        fact_id=normalized.fact.id,
    )
    outcome = await services.orchestrator.handle_fact(normalized.fact)
    return JSONResponse(content=outcome.to_response())
