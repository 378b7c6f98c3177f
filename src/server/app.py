"""FastAPI application for the WhatsApp chat relay."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from src.backend.config_lookup import BotConfigLookup
from src.backend.session import BackendSessionManager, ChatChannel, HttpChatChannel
from src.server.config import Settings
from src.webhook.dedup import MessageDeduplicator
from src.webhook.delivery import DeliveryCoordinator
from src.webhook.models import STATUS_NON_TEXT
from src.webhook.relay import WhatsAppWebhookHandler
from src.webhook.whatsapp import WhatsAppRelay

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhook"


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    missing = settings.missing()
    if missing:
        logger.warning("Missing required configuration: %s", ", ".join(missing))
    return create_app(settings)


def create_app(
    settings: Settings,
    sessions: BackendSessionManager | None = None,
    config_lookup: BotConfigLookup | None = None,
    delivery: DeliveryCoordinator | None = None,
    backend_transport: httpx.AsyncBaseTransport | None = None,
    graph_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the relay app; collaborators default to ones built from settings."""
    if sessions is None:
        def channel_factory(bot_id: str) -> ChatChannel:
            return HttpChatChannel(
                settings.chat_backend_url,
                bot_id,
                referrer=settings.referrer,
                timeout=settings.request_timeout,
                transport=backend_transport,
            )

        sessions = BackendSessionManager(
            channel_factory,
            connect_timeout=settings.connect_timeout,
            turn_timeout=settings.request_timeout,
            idle_seconds=settings.session_idle_seconds,
            sweep_seconds=settings.session_sweep_seconds,
        )
    if config_lookup is None:
        config_lookup = BotConfigLookup(
            settings.chat_backend_url,
            timeout=settings.request_timeout,
            cache_seconds=settings.config_cache_seconds,
            transport=backend_transport,
        )
    if delivery is None:
        delivery = DeliveryCoordinator(
            api_base=settings.graph_api_base,
            timeout=settings.request_timeout,
            transport=graph_transport,
        )

    relay = WhatsAppRelay(settings.webhook_verify_token, app_secret=settings.app_secret)
    handler = WhatsAppWebhookHandler(
        relay=relay,
        deduplicator=MessageDeduplicator(settings.dedup_window_seconds),
        config_lookup=config_lookup,
        sessions=sessions,
        delivery=delivery,
        typing_indicator=settings.typing_indicator,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        sessions.start()
        try:
            yield
        finally:
            await sessions.shutdown()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.handler = handler
    app.state.sessions = sessions

    @app.get("/health")
    @app.get("/api")
    async def health() -> JSONResponse:
        missing = settings.missing()
        if missing:
            return JSONResponse({"message": "Error", "missing": missing}, status_code=400)
        return JSONResponse({"message": "Up and running"})

    @app.get(WEBHOOK_PATH)
    async def verify_webhook(request: Request) -> Response:
        result = relay.handle_verification(dict(request.query_params))
        if result["status_code"] == 200:
            return PlainTextResponse(result["content"])
        return JSONResponse({"error": result["error"]}, status_code=result["status_code"])

    @app.post(WEBHOOK_PATH)
    async def receive_webhook(request: Request) -> JSONResponse:
        body = await request.body()
        if not relay.verify_signature(dict(request.headers), body):
            logger.warning("Rejected webhook with invalid signature")
            return JSONResponse({"error": "Invalid webhook signature"}, status_code=401)

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Received webhook with a non-JSON body")
            return JSONResponse({"status": STATUS_NON_TEXT})

        outcome = await handler.handle(payload)
        return JSONResponse(outcome.to_body())

    return app
