"""
FastAPI Application — WhatsApp webhook + operational endpoints.

Provides:
- GET/POST /webhooks/whatsapp: subscription handshake and inbound deliveries
- GET /health
- Resilience pipeline status and manual breaker reset
- PATCH order status (staff tools), which also notifies the customer

The HTTP layer only decodes provider payloads; everything else happens in
InboundOrchestrator. Background workers (session watchdog, print consumer,
delayed-job promoter) are started and stopped by the lifespan.
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from channels.base import OutboundTransport
from channels.dedup import InboundGate, create_inbound_gate
from channels.messenger import ResilientMessenger
from channels.resilience import ResiliencePipeline
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.whatsapp_client import WhatsAppClient
from config.settings import Settings, get_settings
from core.locks import KeyedLock
from core.orchestrator import InboundOrchestrator
from core.orders import update_order_status
from core.runtime_config import RuntimeConfig
from core.watchdog import SessionWatchdog
from database.store_base import BaseBotStore
from database.store_factory import create_store
from job_queue.consumer import DelayedJobPromoter, PrintJobConsumer, TicketPrinter
from job_queue.message_queue import JobQueue, Queues, RedisJobQueue, create_job_queue

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Wiring
# ──────────────────────────────────────────────────────────────

@dataclass
class BotServices:
    settings: Settings
    store: BaseBotStore
    transport: OutboundTransport
    pipeline: ResiliencePipeline
    messenger: ResilientMessenger
    gate: InboundGate
    job_queue: JobQueue
    adapter: WhatsAppAdapter
    orchestrator: InboundOrchestrator
    watchdog: SessionWatchdog
    consumer: PrintJobConsumer
    promoter: Optional[DelayedJobPromoter] = None
    background: bool = True
    _started: list[str] = field(default_factory=list)


def build_services(
    settings: Optional[Settings] = None,
    store: Optional[BaseBotStore] = None,
    transport: Optional[OutboundTransport] = None,
    job_queue: Optional[JobQueue] = None,
    gate: Optional[InboundGate] = None,
    printer: Optional[TicketPrinter] = None,
    background: bool = True,
) -> BotServices:
    settings = settings or get_settings()
    store = store or create_store(settings.database)
    transport = transport or WhatsAppClient(settings.whatsapp)
    pipeline = ResiliencePipeline(settings.resilience)
    messenger = ResilientMessenger(transport, store, pipeline)
    gate = gate or create_inbound_gate(settings.dedup)
    job_queue = job_queue or create_job_queue(settings.queue)
    locks = KeyedLock()

    orchestrator = InboundOrchestrator(
        store, messenger, gate, job_queue=job_queue, settings=settings, locks=locks,
    )
    watchdog = SessionWatchdog(
        store, messenger, RuntimeConfig(store, settings), locks=locks,
        interval_s=settings.session.watchdog_interval_seconds,
    )
    consumer = PrintJobConsumer(
        store, job_queue, printer=printer, messenger=messenger,
        tz_name=settings.business.timezone,
        consumer_group=settings.queue.consumer_group,
        concurrency=settings.queue.consumer_concurrency,
    )
    promoter = None
    if isinstance(job_queue, RedisJobQueue):
        promoter = DelayedJobPromoter(job_queue, settings.queue.delayed_promote_interval)

    return BotServices(
        settings=settings, store=store, transport=transport, pipeline=pipeline,
        messenger=messenger, gate=gate, job_queue=job_queue,
        adapter=WhatsAppAdapter(settings.whatsapp), orchestrator=orchestrator,
        watchdog=watchdog, consumer=consumer, promoter=promoter, background=background,
    )


async def start_services(services: BotServices) -> None:
    await services.store.init()
    await services.job_queue.connect()
    if services.background:
        await services.consumer.start_background()
        await services.watchdog.start()
        if services.promoter:
            await services.promoter.start_background()
    logger.info("carniceria_bot_started",
                store=type(services.store).__name__,
                queue_backend=type(services.job_queue).__name__,
                background=services.background)


async def stop_services(services: BotServices) -> None:
    if services.background:
        await services.watchdog.stop()
        await services.consumer.stop()
        if services.promoter:
            await services.promoter.stop()
    await services.job_queue.close()
    await services.gate.cache.close()
    await services.transport.close()
    await services.store.close()
    logger.info("carniceria_bot_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

class OrderStatusUpdate(BaseModel):
    status: str


def create_app(services: Optional[BotServices] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            app.state.services = build_services()
        await start_services(app.state.services)
        yield
        await stop_services(app.state.services)

    app = FastAPI(
        title="Carniceria Bot API",
        description="WhatsApp ordering bot for Carnicería La Blanquita",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    def svc(request: Request) -> BotServices:
        return request.app.state.services

    @app.get("/health")
    async def health(request: Request):
        s = svc(request)
        return {
            "status": "ok",
            "app": s.settings.app_name,
            "circuit": s.pipeline.breaker.state.value,
            "watchdog_running": s.watchdog.running,
        }

    # ── WhatsApp webhook ──────────────────────────────────────

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        challenge = svc(request).adapter.verify_webhook(dict(request.query_params))
        if challenge is None:
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        s = svc(request)
        body_bytes = await request.body()

        signature = request.headers.get("X-Hub-Signature-256")
        if not s.adapter.verify_signature(body_bytes, signature):
            logger.warning("whatsapp_webhook_signature_invalid")
            raise HTTPException(403, "Invalid signature")

        try:
            payload = json.loads(body_bytes or b"{}")
        except ValueError:
            raise HTTPException(400, "Invalid JSON")

        messages = s.adapter.parse_webhook(payload)
        results: list[dict[str, Any]] = []
        for message in messages:
            results.append(await s.orchestrator.handle_inbound(message))
        return {"status": "ok", "received": len(messages), "results": results}

    # ── Resilience ────────────────────────────────────────────

    @app.get("/api/v1/resilience/status")
    async def resilience_status(request: Request):
        pipeline = svc(request).pipeline
        return {"circuit": pipeline.breaker.stats, "metrics": pipeline.metrics.snapshot()}

    @app.post("/api/v1/resilience/reset")
    async def resilience_reset(request: Request):
        pipeline = svc(request).pipeline
        pipeline.breaker.reset()
        pipeline.metrics.reset()
        logger.info("resilience_reset_by_operator")
        return {"status": "reset", "circuit": pipeline.breaker.state.value}

    # ── Orders ────────────────────────────────────────────────

    @app.patch("/api/v1/orders/{folio}/status")
    async def patch_order_status(folio: str, body: OrderStatusUpdate, request: Request):
        s = svc(request)
        result = await update_order_status(s.store, s.messenger, folio, body.status)
        if not result.success:
            code = 404 if result.order is None else 422
            raise HTTPException(code, result.message)
        return {
            "folio": folio,
            "status": result.order.status.value,
            "notified": result.notified,
        }

    @app.get("/api/v1/print-queue/stats")
    async def print_queue_stats(request: Request):
        queue = svc(request).job_queue
        return {name: await queue.queue_length(name)
                for name in (Queues.DISPATCH, Queues.DELAYED, Queues.DLQ)}

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
