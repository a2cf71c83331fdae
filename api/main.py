"""
FastAPI Application — webhook receiver + health endpoint.

Provides:
- Webhook endpoints for the WhatsApp Cloud API (verification + inbound messages)
- /health with session state, subscriber/catalog counts and the last run summary
- Lifespan that starts the orchestrator (scheduler + event loop) and stops it
  on shutdown; uvicorn turns SIGINT/SIGTERM into that shutdown
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import Settings, get_settings
from content.selector import ContentCatalog
from core.orchestrator import Orchestrator
from database.store_base import BaseSubscriberStore
from database.store_factory import create_subscriber_store
from utils.logging import configure_logging

logger = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    client: Optional[WhatsAppAdapter] = None,
    store: Optional[BaseSubscriberStore] = None,
    catalog: Optional[ContentCatalog] = None,
) -> FastAPI:
    settings = settings or get_settings()
    client = client or WhatsAppAdapter(settings.whatsapp)
    store = store or create_subscriber_store(settings.data)
    catalog = catalog or ContentCatalog(settings.data.quotes_file)
    orchestrator = Orchestrator(settings, client, store, catalog)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.logging)
        await orchestrator.start()
        logger.info("quotecast_started", cron=settings.schedule.cron,
                    timezone=settings.schedule.timezone)
        yield
        await orchestrator.stop()
        logger.info("quotecast_stopped")

    app = FastAPI(
        title="quotecast",
        description="Daily quote broadcaster",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    @app.get("/health")
    async def health():
        return {
            "status": "healthy" if orchestrator.session.is_ready else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **(await orchestrator.status()),
        }

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        challenge = client.verify_webhook(dict(request.query_params))
        if challenge is None:
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        body_bytes = await request.body()
        signature = request.headers.get("X-Hub-Signature-256", "")
        if not client.verify_signature(body_bytes, signature):
            logger.warning("whatsapp_webhook_signature_invalid")
            raise HTTPException(403, "Invalid signature")
        try:
            body = json.loads(body_bytes)
        except ValueError:
            raise HTTPException(400, "Invalid JSON")
        if not isinstance(body, dict):
            raise HTTPException(400, "Expected a JSON object")
        count = client.handle_webhook(body)
        return {"status": "ok", "events": count}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    _settings = get_settings()
    uvicorn.run(app, host=_settings.api.host, port=_settings.api.port)
