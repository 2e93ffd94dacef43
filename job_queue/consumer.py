"""
Print Consumer — Pulls print jobs from the queue and prints order tickets.

Runs as one or more async tasks inside the application process.
For horizontal scaling, deploy multiple processes with the same consumer_group;
Redis Streams delivers each job to exactly one consumer.

Topology:
  ┌───────────────┐       ┌─────────────────┐       ┌────────────┐
  │ SELECT_PAYMENT│──pub──▶│ print:dispatch   │──────▶│  Consumer  │
  │ handler       │       │ (Redis Stream)   │       │  Worker(s) │
  └───────────────┘       └─────────────────┘       └─────┬──────┘
                                   ▲                      │ failure
                                   │ promote              ▼
                          ┌────────┴────────┐     ┌─────────────┐
                          │ print:delayed    │◀────│ nack        │
                          └─────────────────┘     └──────┬──────┘
                                                         │ exhausted
                                                  ┌──────▼──────┐
                                                  │ print:dlq   │
                                                  └─────────────┘
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from core.clock import to_local
from database.store_base import BaseBotStore
from job_queue.message_queue import JobQueue, QueueJob
from models.schemas import Customer, Order, StaffRole

logger = structlog.get_logger()

SEPARATOR = "=" * 32


class PrintError(Exception):
    """The printer did not accept the ticket; the job should be retried."""


# ──────────────────────────────────────────────────────────────
#  Ticket rendering & printers
# ──────────────────────────────────────────────────────────────

def render_ticket(order: Order, customer: Optional[Customer], tz_name: Optional[str] = None,
                  copy: bool = False) -> str:
    folio = f"{order.folio} (COPIA)" if copy else order.folio
    name = customer.name if customer else "N/A"
    address = (customer.address if customer else "") or "N/A"
    lines = [
        "BOT CARNICERIA",
        SEPARATOR,
        f"Folio: {folio}",
        f"Fecha: {to_local(order.created_at, tz_name):%d/%m/%Y %H:%M}",
        SEPARATOR,
        f"CLIENTE: {name}",
        f"TEL:     {order.customer_id}",
        f"DIR:     {address}",
        SEPARATOR,
        "PEDIDO:",
        order.content or "Sin detalles",
        SEPARATOR,
    ]
    if order.notes and order.notes.strip():
        lines += ["NOTAS:", order.notes, SEPARATOR]
    lines.append("Gracias por su compra")
    return "\n".join(lines)


class TicketPrinter(ABC):
    @abstractmethod
    async def print_ticket(self, printer_name: str, ticket: str) -> bool:
        ...


class LoggingPrinter(TicketPrinter):
    """Writes tickets to the log. Default when no physical printer is wired in."""

    def __init__(self):
        self.printed: list[tuple[str, str]] = []

    async def print_ticket(self, printer_name: str, ticket: str) -> bool:
        self.printed.append((printer_name, ticket))
        logger.info("ticket_printed", printer=printer_name, lines=ticket.count("\n") + 1)
        return True


# ──────────────────────────────────────────────────────────────
#  Consumer
# ──────────────────────────────────────────────────────────────

class PrintJobConsumer:
    """
    Consumes print jobs and marks orders printed.

    Usage:
        consumer = PrintJobConsumer(store, queue)
        await consumer.start_background()
        await consumer.stop()
    """

    def __init__(
        self,
        store: BaseBotStore,
        queue: JobQueue,
        printer: Optional[TicketPrinter] = None,
        messenger=None,  # channels.messenger.ResilientMessenger, for admin alerts
        tz_name: Optional[str] = None,
        consumer_group: str = "print-workers",
        concurrency: int = 2,
    ):
        self.store = store
        self.queue = queue
        self.printer = printer or LoggingPrinter()
        self.messenger = messenger
        self.tz_name = tz_name
        self.consumer_group = consumer_group
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        logger.info("print_consumer_starting", group=self.consumer_group,
                    concurrency=self.concurrency)
        await self.queue.consume(self.handle_job, consumer_group=self.consumer_group)

    async def start_background(self) -> asyncio.Task:
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self) -> None:
        self.queue.stop()
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("print_consumer_stopped")

    async def handle_job(self, job: QueueJob) -> None:
        """Print one ticket. Raises so the queue routes the job to retry or DLQ."""
        async with self._semaphore:
            logger.info("processing_print_job", job_id=job.job_id, order_id=job.order_id,
                        attempt=job.attempt)

            order = await self.store.get_order(job.order_id)
            if order is None:
                logger.warning("print_order_not_found", job_id=job.job_id, order_id=job.order_id)
                return
            customer = await self.store.get_customer(order.customer_id)

            try:
                ticket = render_ticket(order, customer, self.tz_name)
                if not await self.printer.print_ticket(job.printer_name, ticket):
                    raise PrintError(f"Printer {job.printer_name} rejected ticket {order.folio}")
                if job.duplicate:
                    await self.printer.print_ticket(
                        job.printer_name, render_ticket(order, customer, self.tz_name, copy=True),
                    )
            except Exception:
                await self._alert_admins(order, customer, job)
                raise

            order.mark_printed()
            await self.store.update_order(order)
            logger.info("print_job_completed", job_id=job.job_id, folio=order.folio)

    async def _alert_admins(self, order: Order, customer: Optional[Customer], job: QueueJob) -> None:
        if self.messenger is None:
            return
        attempt_number = job.attempt + 1
        attempt_text = "en el primer intento" if attempt_number == 1 else f"en el intento #{attempt_number}"
        action_text = (
            "⛔ Se han agotado los reintentos. Revise la impresora MANUALMENTE."
            if job.exhausted else "🔄 El sistema reintentará automáticamente."
        )
        text = (
            "🚨 *ALERTA DE IMPRESIÓN*\n\n"
            f"❌ Error al imprimir el ticket del pedido *{order.folio}* {attempt_text}.\n"
            f"{action_text}\n\n"
            f"📋 Cliente: {customer.name if customer else 'N/A'}\n"
            f"📞 Teléfono: {order.customer_id}\n\n"
            "⚠️ Por favor verifique el estado de la impresora."
        )
        try:
            phones = await self.store.staff_phones([StaffRole.ADMIN, StaffRole.SUPERVISOR])
            for phone in phones:
                await self.messenger.send_text(phone, text)
        except Exception as e:
            logger.error("print_failure_alert_failed", folio=order.folio, error=str(e))


class DelayedJobPromoter:
    """
    Moves retry jobs whose scheduled time has arrived back onto print:dispatch.

    Only needed for Redis; InMemoryJobQueue promotes on its own.
    """

    def __init__(self, queue: JobQueue, interval_seconds: float = 5):
        self.queue = queue
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
