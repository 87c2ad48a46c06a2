"""
FastAPI Application — WhatsApp webhook surface for the flowbot engine.

Provides:
- GET  /webhook/whatsapp   subscription verification (hub challenge)
- POST /webhook/whatsapp   inbound messages → Orchestrator (background)
- GET  /health
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from backend.connector import HttpApiFetcher
from backend.webhooks import HttpWebhookDispatcher
from channels.base import MessageSender
from channels.whatsapp_adapter import WhatsAppCloudSender, parse_webhook_payload, verify_webhook
from config.settings import Settings, get_settings
from context.session_manager import SessionManager
from core.ai_context import AIContextBuilder
from core.engine import AIResponder
from core.handoff import InMemoryHandoffService
from core.orchestrator import Orchestrator
from core.outbound import Outbox
from database.store_factory import create_store
from models.schemas import utcnow
from rules.engine import KeywordRouter
from templates.executor import FlowExecutor
from templates.registry import FlowRegistry

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def build_orchestrator(settings: Settings, sender: MessageSender) -> Orchestrator:
    """Wire the engine from settings. One store / registry set per application."""
    store = create_store({
        "store_backend": settings.database.store_backend,
        "store_file_dir": settings.database.store_file_dir,
    })
    sessions = SessionManager(
        store, default_timeout_minutes=settings.engine.default_session_timeout_minutes,
    )
    outbox = Outbox(sender, sessions)

    flows = FlowRegistry()
    flows.register_from_config(settings.flows)
    keywords = KeywordRouter()
    keywords.load_rules(settings.keyword_rules)

    api_fetcher = HttpApiFetcher()
    ai_context = AIContextBuilder(api_fetcher)
    ai_context.load_contexts(settings.ai_contexts)

    handoffs = InMemoryHandoffService()
    executor = FlowExecutor(
        sessions=sessions,
        outbox=outbox,
        flows=flows,
        api_fetcher=api_fetcher,
        handoffs=handoffs,
        webhooks=HttpWebhookDispatcher(),
        config=settings.engine,
    )
    orchestrator = Orchestrator(
        sessions=sessions,
        executor=executor,
        flows=flows,
        keywords=keywords,
        outbox=outbox,
        handoffs=handoffs,
        ai=AIResponder(),
        config=settings.engine,
        ai_context=ai_context,
    )
    orchestrator.load_chatbot_settings(settings.chatbots)
    return orchestrator


settings = get_settings()
whatsapp_sender = WhatsAppCloudSender(settings.whatsapp)
orchestrator = build_orchestrator(settings, whatsapp_sender)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("flowbot_started",
                app_name=settings.app_name,
                store_backend=settings.database.store_backend,
                flows=len(orchestrator.flows.list_all()))
    yield

    await orchestrator.executor.drain()
    await whatsapp_sender.shutdown()
    logger.info("flowbot_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Flowbot API",
    description="WhatsApp chatbot flows, keyword rules and AI fallback",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "flows": len(orchestrator.flows.list_all()),
        "keyword_rules": len(orchestrator.keywords.list_rules()),
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — WhatsApp
# ══════════════════════════════════════════════════════════════

@app.get("/webhook/whatsapp")
async def whatsapp_verify(request: Request):
    challenge = verify_webhook(dict(request.query_params), settings.whatsapp.verify_token)
    if challenge is None:
        raise HTTPException(403, "Verification failed")
    return PlainTextResponse(challenge)


@app.post("/webhook/whatsapp")
async def whatsapp_webhook(request: Request, background_tasks: BackgroundTasks) -> dict[str, Any]:
    body = await request.json()
    messages = parse_webhook_payload(
        body, tenant_id=settings.whatsapp.tenant_id, channel=settings.whatsapp.account_name,
    )
    for message in messages:
        background_tasks.add_task(orchestrator.handle_inbound_message, message)

    logger.info("whatsapp_webhook_received", messages=len(messages))
    return {"status": "ok", "messages": len(messages)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
