"""
Core data models for the ordering bot.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import random
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from models.errors import InvalidDomainOperationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ConversationState(str, Enum):
    START = "START"
    MENU = "MENU"
    ASK_NAME = "ASK_NAME"
    ASK_ADDRESS = "ASK_ADDRESS"
    TAKING_ORDER = "TAKING_ORDER"
    AWAITING_CONFIRM = "AWAITING_CONFIRM"
    ADDING_MORE = "ADDING_MORE"
    CONFIRM_ADDRESS = "CONFIRM_ADDRESS"
    SELECT_PAYMENT = "SELECT_PAYMENT"
    CONFIRM_LATE_ORDER = "CONFIRM_LATE_ORDER"
    BILLING_WARNING = "BILLING_WARNING"
    BILLING_ASK_RAZON_SOCIAL = "BILLING_ASK_RAZON_SOCIAL"
    BILLING_ASK_CALLE = "BILLING_ASK_CALLE"
    BILLING_ASK_NUMERO = "BILLING_ASK_NUMERO"
    BILLING_ASK_COLONIA = "BILLING_ASK_COLONIA"
    BILLING_ASK_CP = "BILLING_ASK_CP"
    BILLING_ASK_CORREO = "BILLING_ASK_CORREO"
    BILLING_ASK_REGIMEN = "BILLING_ASK_REGIMEN"
    BILLING_CONFIRM_DATA = "BILLING_CONFIRM_DATA"
    BILLING_ASK_NOTE_FOLIO = "BILLING_ASK_NOTE_FOLIO"
    BILLING_ASK_NOTE_TOTAL = "BILLING_ASK_NOTE_TOTAL"
    BILLING_ASK_CFDI = "BILLING_ASK_CFDI"


class MessageType(str, Enum):
    TEXT = "text"
    INTERACTIVE = "interactive"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VOICE = "voice"
    VIDEO = "video"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACTS = "contacts"
    UNKNOWN = "unknown"


class PayloadKind(str, Enum):
    TEXT = "text"
    INTERACTIVE_BUTTONS = "interactive_buttons"
    INTERACTIVE_LIST = "interactive_list"
    RESEND = "resend"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class OrderStatus(str, Enum):
    EN_ESPERA = "EnEspera"
    EN_RUTA = "EnRuta"
    ENTREGADO = "Entregado"
    CANCELADO = "Cancelado"


class PaymentMethod(str, Enum):
    CASH = "Efectivo"
    CARD = "Tarjeta"


class StaffRole(str, Enum):
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    OPERATOR = "operator"


# ──────────────────────────────────────────────────────────────
#  Session — per-customer conversational context
# ──────────────────────────────────────────────────────────────

class TempFields(BaseModel):
    """Transient slots carried across states."""
    name: Optional[str] = None
    note_folio: Optional[str] = None
    note_total: Optional[str] = None
    cfdi_use: Optional[str] = None


class Session(BaseModel):
    """
    Conversation state for one customer, keyed by phone number.

    Every mutating helper except clear_buffer() touches the activity clock,
    and touching clears both inactivity flags so a warning fires at most
    once per inactivity episode.
    """
    customer_id: str
    state: ConversationState = ConversationState.START
    scratch_buffer: Optional[str] = None
    temp_fields: TempFields = Field(default_factory=TempFields)
    last_activity_at: datetime = Field(default_factory=utcnow)
    timeout_minutes: int = 30
    warning_sent: bool = False
    closing_warning_sent: bool = False
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def expires_at(self) -> datetime:
        return self.last_activity_at + timedelta(minutes=self.timeout_minutes)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def inactivity(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.last_activity_at

    def touch(self, now: Optional[datetime] = None) -> None:
        self.last_activity_at = now or utcnow()
        self.warning_sent = False
        self.closing_warning_sent = False

    def change_state(self, state: ConversationState) -> None:
        self.state = state
        self.touch()

    def save_buffer(self, text: str) -> None:
        self.scratch_buffer = text
        self.touch()

    def clear_buffer(self) -> None:
        self.scratch_buffer = None

    def set_temp_name(self, name: str) -> None:
        self.temp_fields.name = name
        self.touch()

    def set_temp_note_folio(self, folio: str) -> None:
        self.temp_fields.note_folio = folio
        self.touch()

    def set_temp_note_total(self, total: str) -> None:
        self.temp_fields.note_total = total
        self.touch()

    def set_temp_cfdi_use(self, code: str) -> None:
        self.temp_fields.cfdi_use = code
        self.touch()

    def reset(self) -> None:
        """Back to START with an empty buffer; the row itself is kept."""
        self.state = ConversationState.START
        self.scratch_buffer = None
        self.temp_fields = TempFields()
        self.warning_sent = False
        self.closing_warning_sent = False


# ──────────────────────────────────────────────────────────────
#  Outbound message — one row per attempted send
# ──────────────────────────────────────────────────────────────

class OutboundMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    recipient: str
    payload_kind: PayloadKind
    rendered_body: str = ""
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    provider_message_id: Optional[str] = None
    failure_reason: Optional[str] = None
    raw_payload: str = ""                     # JSON snapshot, replayable verbatim
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def mark_sent(self, provider_message_id: Optional[str] = None) -> None:
        self._leave_pending(DeliveryStatus.SENT)
        self.provider_message_id = provider_message_id

    def mark_failed(self, reason: str) -> None:
        self._leave_pending(DeliveryStatus.FAILED)
        self.failure_reason = reason

    def _leave_pending(self, status: DeliveryStatus) -> None:
        if self.delivery_status != DeliveryStatus.PENDING:
            raise InvalidDomainOperationError(
                f"Message {self.id} already {self.delivery_status.value}"
            )
        self.delivery_status = status
        self.updated_at = utcnow()


# ──────────────────────────────────────────────────────────────
#  Customer & billing data
# ──────────────────────────────────────────────────────────────

class BillingData(BaseModel):
    razon_social: str = ""
    calle: str = ""
    numero: str = ""
    colonia: str = ""
    codigo_postal: str = ""
    correo: str = ""
    regimen_fiscal: str = ""


class Customer(BaseModel):
    customer_id: str                          # WhatsApp phone number
    name: str = ""
    address: str = ""
    billing: Optional[BillingData] = None
    created_at: datetime = Field(default_factory=utcnow)

    def update_billing(self, **changes: str) -> BillingData:
        """Merge the given fields into the billing aggregate."""
        current = self.billing or BillingData()
        self.billing = current.model_copy(update=changes)
        return self.billing


# ──────────────────────────────────────────────────────────────
#  Orders
# ──────────────────────────────────────────────────────────────

def generate_folio(now: Optional[datetime] = None) -> str:
    """Human-readable order id: CAR-yyyyMMdd-NNNN."""
    now = now or utcnow()
    return f"CAR-{now:%Y%m%d}-{random.randint(1, 9998):04d}"


class Order(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    folio: str = Field(default_factory=generate_folio)
    customer_id: str
    content: str
    status: OrderStatus = OrderStatus.EN_ESPERA
    notes: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    printed: bool = False
    printed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def change_status(self, new_status: OrderStatus) -> None:
        if self.status == OrderStatus.ENTREGADO and new_status != OrderStatus.ENTREGADO:
            raise InvalidDomainOperationError(
                "No se puede modificar un pedido que ya ha sido entregado."
            )
        self.status = new_status

    def mark_printed(self) -> None:
        self.printed = True
        self.printed_at = utcnow()


# ──────────────────────────────────────────────────────────────
#  Staff directory
# ──────────────────────────────────────────────────────────────

class StaffMember(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    name: str
    phone: str = ""
    role: StaffRole = StaffRole.OPERATOR


# ──────────────────────────────────────────────────────────────
#  Inbound message — decoded provider event
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    provider_message_id: str
    sender: str
    message_type: MessageType = MessageType.TEXT
    content: str = ""                         # text body or interactive reply id
    sender_name: str = ""
    media_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = {}
