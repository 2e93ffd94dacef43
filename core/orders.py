"""
Order status updates coming from staff (dashboard, ERP, API).

Expected business outcomes (unknown folio, unknown status, illegal change)
come back as a StatusUpdateResult instead of an exception. On success the
customer is told about the new status through the messenger.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from channels.messenger import ResilientMessenger
from database.store_base import BaseBotStore
from models.errors import InvalidDomainOperationError
from models.schemas import Order, OrderStatus

logger = structlog.get_logger()

# Labels older clients still send, normalised to lowercase
_STATUS_ALIASES = {
    "en espera de surtir": OrderStatus.EN_ESPERA,
    "en espera": OrderStatus.EN_ESPERA,
    "en ruta": OrderStatus.EN_RUTA,
    "entregado": OrderStatus.ENTREGADO,
    "cancelado": OrderStatus.CANCELADO,
}

_STATUS_MESSAGES = {
    OrderStatus.EN_ESPERA: (
        "📦 Tu pedido ha sido recibido y está siendo preparado.\n\n"
        "Pronto comenzaremos a surtir tu orden."
    ),
    OrderStatus.EN_RUTA: (
        "🚚 ¡Tu pedido está en camino!\n\n"
        "Nuestro repartidor está en ruta hacia tu dirección.\n"
        "📍 Dirección de entrega: {address}"
    ),
    OrderStatus.ENTREGADO: (
        "✅ ¡Tu pedido ha sido entregado!\n\n"
        "Gracias por tu preferencia. Esperamos que disfrutes tus productos.\n\n"
        "¿Necesitas algo más? Escríbenos 'Hola' para hacer un nuevo pedido."
    ),
    OrderStatus.CANCELADO: (
        "❌ Tu pedido ha sido cancelado.\n\n"
        "Lamentamos los inconvenientes. Si tienes alguna duda, no dudes en contactarnos.\n\n"
        "Escríbenos 'Hola' si deseas hacer un nuevo pedido."
    ),
}


@dataclass
class StatusUpdateResult:
    success: bool
    message: str = ""
    order: Optional[Order] = None
    notified: bool = False


def parse_status(value: str) -> Optional[OrderStatus]:
    """Accept enum values ("EnRuta"), enum names ("EN_RUTA") and the legacy labels."""
    text = (value or "").strip()
    if not text:
        return None
    for status in OrderStatus:
        if text.lower() in (status.value.lower(), status.name.lower()):
            return status
    return _STATUS_ALIASES.get(text.lower())


def status_notification(order: Order, address: Optional[str] = None) -> str:
    body = _STATUS_MESSAGES[order.status].format(address=address or "Tu dirección")
    return f"🔔 *Actualización de tu pedido #{order.folio}*\n\n{body}"


async def update_order_status(store: BaseBotStore, messenger: Optional[ResilientMessenger],
                              folio: str, status_text: str) -> StatusUpdateResult:
    order = await store.get_order_by_folio(folio)
    if order is None:
        return StatusUpdateResult(False, f"Pedido {folio} no encontrado")

    new_status = parse_status(status_text)
    if new_status is None:
        return StatusUpdateResult(False, f"Estado inválido: {status_text}", order=order)

    previous = order.status
    try:
        order.change_status(new_status)
    except InvalidDomainOperationError as e:
        logger.info("order_status_change_rejected", folio=folio, status=previous.value,
                    requested=new_status.value)
        return StatusUpdateResult(False, str(e), order=order)

    await store.update_order(order)
    logger.info("order_status_updated", folio=folio, previous=previous.value,
                status=new_status.value)

    notified = False
    if messenger is not None:
        customer = await store.get_customer(order.customer_id)
        notified = await messenger.send_text(
            order.customer_id, status_notification(order, customer.address if customer else None),
        )
    return StatusUpdateResult(True, "Estado actualizado", order=order, notified=notified)
