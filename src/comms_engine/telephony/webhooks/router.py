"""
FastAPI router for provider webhook endpoints.

Providers retry aggressively on anything but a quick 2xx, so every route
here acknowledges with 200 whatever happens to the event. Parsing happens
in the adapter; reconciliation in ``WebhookIngestor``.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, Response, status

from comms_engine.shared.exceptions import WebhookValidationError
from comms_engine.shared.logging import get_logger
from comms_engine.telephony.config import TelephonyConfig
from comms_engine.telephony.factory import ProviderAdapters, get_adapters
from comms_engine.telephony.interface import ProviderAdapter, WebhookSource
from comms_engine.telephony.vonage_adapter import build_answer_ncco
from comms_engine.telephony.webhooks.handler import WebhookIngestor

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response/>'


def get_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.ingestor


def get_webhook_config(request: Request) -> TelephonyConfig:
    return request.app.state.telephony_config


async def _read_json(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON", extra={"path": request.url.path})
        return {}
    return body if isinstance(body, dict) else {}


async def _read_form(request: Request) -> dict[str, str]:
    form = await request.form()
    return {key: str(value) for key, value in form.items()}


async def _ingest(
    ingestor: WebhookIngestor,
    adapter: ProviderAdapter,
    payload: dict[str, Any],
    source: WebhookSource,
) -> str:
    try:
        event = adapter.parse_event(payload, source)
    except WebhookValidationError as e:
        logger.warning(
            "Malformed webhook payload",
            extra={"source": source.value, "error": e.message, **e.details},
        )
        return "invalid"

    if event is None:
        return "ignored"

    outcome = await ingestor.handle(event)
    return outcome.value


@router.post("/voice/event", status_code=status.HTTP_200_OK)
async def voice_event(
    request: Request,
    adapters: Annotated[ProviderAdapters, Depends(get_adapters)],
    ingestor: Annotated[WebhookIngestor, Depends(get_ingestor)],
) -> dict[str, Any]:
    payload = await _read_json(request)
    outcome = await _ingest(ingestor, adapters.voice, payload, WebhookSource.VOICE_EVENT)
    return {"ok": True, "outcome": outcome}


@router.post("/voice/recording", status_code=status.HTTP_200_OK)
async def voice_recording(
    request: Request,
    adapters: Annotated[ProviderAdapters, Depends(get_adapters)],
    ingestor: Annotated[WebhookIngestor, Depends(get_ingestor)],
) -> dict[str, Any]:
    payload = await _read_json(request)
    # The call uuid travels in the query string we put on the record action.
    payload.update(dict(request.query_params))
    outcome = await _ingest(ingestor, adapters.voice, payload, WebhookSource.VOICE_RECORDING)
    return {"ok": True, "outcome": outcome}


@router.api_route("/voice/answer", methods=["GET", "POST"])
async def voice_answer(
    request: Request,
    config: Annotated[TelephonyConfig, Depends(get_webhook_config)],
) -> list[dict[str, Any]]:
    record = request.query_params.get("record", "1") != "0"
    call_uuid = request.query_params.get("uuid")
    if call_uuid is None and request.method == "POST":
        call_uuid = (await _read_json(request)).get("uuid")
    return build_answer_ncco(config, record=record, correlation_id=call_uuid)


@router.post("/messaging/status", status_code=status.HTTP_200_OK)
async def messaging_status(
    request: Request,
    adapters: Annotated[ProviderAdapters, Depends(get_adapters)],
    ingestor: Annotated[WebhookIngestor, Depends(get_ingestor)],
    config: Annotated[TelephonyConfig, Depends(get_webhook_config)],
) -> dict[str, Any]:
    payload = await _read_form(request)
    if not _signature_ok(request, adapters.messaging, payload, config):
        return {"ok": True, "outcome": "unauthenticated"}
    outcome = await _ingest(ingestor, adapters.messaging, payload, WebhookSource.MESSAGE_STATUS)
    return {"ok": True, "outcome": outcome}


@router.post("/messaging/incoming", status_code=status.HTTP_200_OK)
async def messaging_incoming(
    request: Request,
    adapters: Annotated[ProviderAdapters, Depends(get_adapters)],
    ingestor: Annotated[WebhookIngestor, Depends(get_ingestor)],
    config: Annotated[TelephonyConfig, Depends(get_webhook_config)],
) -> Response:
    payload = await _read_form(request)
    if _signature_ok(request, adapters.messaging, payload, config):
        outcome = await _ingest(ingestor, adapters.messaging, payload, WebhookSource.MESSAGE_INCOMING)
        logger.info("Incoming message processed", extra={"outcome": outcome})
    return Response(content=EMPTY_TWIML, media_type="application/xml")


def _signature_ok(
    request: Request,
    adapter: ProviderAdapter,
    params: dict[str, str],
    config: TelephonyConfig,
) -> bool:
    if not config.validate_signatures:
        return True
    # Twilio signs the public URL it called, not the one we see behind the proxy.
    url = config.get_webhook_url(request.url.path)
    if request.url.query:
        url = f"{url}?{request.url.query}"
    if adapter.validate_signature(url, params, request.headers.get("X-Twilio-Signature")):
        return True
    logger.warning("Webhook signature check failed", extra={"path": request.url.path})
    return False
