"""Tests for data models, catalogs, order status updates and configuration."""
import re
from datetime import timedelta

import pytest

from config.settings import load_settings, reset_settings
from conversation.prompts import format_hour
from core.orders import parse_status, status_notification, update_order_status
from core.runtime_config import ConfigKeys, RuntimeConfig
from models.catalogs import describe_cfdi, describe_regime, find_cfdi_use, find_regime
from models.errors import InvalidDomainOperationError
from models.schemas import (
    ConversationState, Customer, DeliveryStatus, Order, OrderStatus, OutboundMessage,
    PayloadKind, Session, generate_folio, utcnow,
)

CUSTOMER = "5215512345678"


class TestSession:
    def test_defaults(self):
        session = Session(customer_id=CUSTOMER)
        assert session.state == ConversationState.START
        assert session.version == 0
        assert not session.warning_sent

    def test_touch_clears_inactivity_flags(self):
        session = Session(customer_id=CUSTOMER, warning_sent=True, closing_warning_sent=True,
                          last_activity_at=utcnow() - timedelta(hours=1))
        session.change_state(ConversationState.MENU)
        assert session.inactivity() < timedelta(seconds=5)
        assert not session.warning_sent
        assert not session.closing_warning_sent

    def test_clear_buffer_does_not_touch(self):
        earlier = utcnow() - timedelta(minutes=10)
        session = Session(customer_id=CUSTOMER, scratch_buffer="x", last_activity_at=earlier)
        session.clear_buffer()
        assert session.scratch_buffer is None
        assert session.last_activity_at == earlier

    def test_expiry_uses_timeout(self):
        session = Session(customer_id=CUSTOMER, timeout_minutes=30,
                          last_activity_at=utcnow() - timedelta(minutes=31))
        assert session.is_expired()
        assert not session.is_expired(session.last_activity_at + timedelta(minutes=29))

    def test_reset_keeps_identity(self):
        session = Session(customer_id=CUSTOMER, state=ConversationState.BILLING_ASK_CFDI,
                          scratch_buffer="pedido", version=7)
        session.set_temp_note_folio("N-1")
        session.reset()
        assert session.state == ConversationState.START
        assert session.scratch_buffer is None
        assert session.temp_fields.note_folio is None
        assert session.version == 7


class TestOutboundMessage:
    def test_pending_to_sent(self):
        message = OutboundMessage(recipient=CUSTOMER, payload_kind=PayloadKind.TEXT)
        message.mark_sent("wamid.1")
        assert message.delivery_status == DeliveryStatus.SENT
        assert message.provider_message_id == "wamid.1"

    def test_terminal_states_are_final(self):
        message = OutboundMessage(recipient=CUSTOMER, payload_kind=PayloadKind.TEXT)
        message.mark_failed("Timeout")
        with pytest.raises(InvalidDomainOperationError):
            message.mark_sent("wamid.1")
        with pytest.raises(InvalidDomainOperationError):
            message.mark_failed("again")
        assert message.failure_reason == "Timeout"


class TestOrder:
    def test_folio_format(self):
        assert re.fullmatch(r"CAR-\d{8}-\d{4}", generate_folio())

    def test_delivered_is_final(self):
        order = Order(customer_id=CUSTOMER, content="x", status=OrderStatus.ENTREGADO)
        order.change_status(OrderStatus.ENTREGADO)
        with pytest.raises(InvalidDomainOperationError):
            order.change_status(OrderStatus.CANCELADO)

    def test_cancelled_can_be_reopened(self):
        order = Order(customer_id=CUSTOMER, content="x", status=OrderStatus.CANCELADO)
        order.change_status(OrderStatus.EN_RUTA)
        assert order.status == OrderStatus.EN_RUTA


class TestCustomer:
    def test_update_billing_merges(self):
        customer = Customer(customer_id=CUSTOMER)
        customer.update_billing(razon_social="Ana SA")
        customer.update_billing(correo="a@b.mx")
        assert customer.billing.razon_social == "Ana SA"
        assert customer.billing.correo == "a@b.mx"


class TestCatalogs:
    def test_regime_lookup(self):
        assert find_regime(" 601 ") == "601"
        assert find_regime("999") is None
        assert describe_regime("626") == "626 - Régimen Simplificado de Confianza"
        assert describe_regime("") == ""

    def test_cfdi_lookup_is_case_insensitive(self):
        assert find_cfdi_use("g03") == "G03"
        assert find_cfdi_use(None) is None
        assert describe_cfdi("XX") == "XX"

    @pytest.mark.parametrize("hour, text", [(0, "12:00 AM"), (9, "9:00 AM"), (12, "12:00 PM"),
                                            (16, "4:00 PM"), (23, "11:00 PM")])
    def test_hour_formatting(self, hour, text):
        assert format_hour(hour) == text


# ══════════════════════════════════════════════════════════════
#  Order status updates
# ══════════════════════════════════════════════════════════════

class TestOrderStatusUpdate:
    @pytest.mark.parametrize("text, expected", [
        ("EnRuta", OrderStatus.EN_RUTA),
        ("en_ruta", OrderStatus.EN_RUTA),
        ("En Ruta", OrderStatus.EN_RUTA),
        ("En espera de surtir", OrderStatus.EN_ESPERA),
        (" ENTREGADO ", OrderStatus.ENTREGADO),
        ("perdido", None),
        ("", None),
    ])
    def test_parse_status(self, text, expected):
        assert parse_status(text) == expected

    def test_notification_mentions_address(self):
        order = Order(customer_id=CUSTOMER, content="x", folio="CAR-20240101-0001",
                      status=OrderStatus.EN_RUTA)
        text = status_notification(order, "Av. Juárez 10")
        assert text.startswith("🔔 *Actualización de tu pedido #CAR-20240101-0001*")
        assert "Av. Juárez 10" in text

    @pytest.mark.asyncio
    async def test_update_notifies_customer(self, store, messenger, transport):
        await store.upsert_customer(Customer(customer_id=CUSTOMER, name="Ana", address="Centro"))
        order = await store.create_order(Order(customer_id=CUSTOMER, content="x"))

        result = await update_order_status(store, messenger, order.folio, "En Ruta")
        assert result.success and result.notified
        assert (await store.get_order(order.id)).status == OrderStatus.EN_RUTA
        assert "Centro" in transport.bodies(CUSTOMER)[0]

    @pytest.mark.asyncio
    async def test_update_failures(self, store, messenger, transport):
        order = await store.create_order(Order(customer_id=CUSTOMER, content="x",
                                               status=OrderStatus.ENTREGADO))
        missing = await update_order_status(store, messenger, "CAR-00000000-0000", "EnRuta")
        assert not missing.success and "no encontrado" in missing.message

        invalid = await update_order_status(store, messenger, order.folio, "perdido")
        assert invalid.message == "Estado inválido: perdido"

        locked = await update_order_status(store, messenger, order.folio, "Cancelado")
        assert not locked.success
        assert "entregado" in locked.message
        assert transport.sent == []


# ══════════════════════════════════════════════════════════════
#  Configuration
# ══════════════════════════════════════════════════════════════

class TestSettings:
    def teardown_method(self):
        reset_settings()

    def test_yaml_with_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WA_TOKEN", "abc123")
        monkeypatch.delenv("WA_VERIFY", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text(
            "whatsapp:\n"
            "  access_token: \"${WA_TOKEN}\"\n"
            "  verify_token: \"${WA_VERIFY:-fallback}\"\n"
            "session:\n"
            "  timeout_minutes: 45\n"
            "  not_a_field: 1\n"
            "business:\n"
            "  late_order_start_hour: 15\n",
            encoding="utf-8",
        )
        settings = load_settings(str(path))
        assert settings.whatsapp.access_token == "abc123"
        assert settings.whatsapp.verify_token == "fallback"
        assert settings.session.timeout_minutes == 45
        assert settings.business.late_order_start_hour == 15
        assert settings.resilience.max_retries == 3

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "missing.yaml"))
        assert settings.business.timezone == "America/Mexico_City"
        assert settings.session.warning_minutes == 2


class TestRuntimeConfig:
    @pytest.mark.asyncio
    async def test_store_overrides_settings(self, store, settings):
        config = RuntimeConfig(store, settings)
        assert await config.late_order_start_hour() == 16
        await store.set_config_value(ConfigKeys.LATE_ORDER_START_HOUR, " 18 ")
        assert await config.late_order_start_hour() == 18

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["", "   ", "tarde"])
    async def test_unusable_values_fall_back(self, store, settings, raw):
        await store.set_config_value(ConfigKeys.SESSION_TIMEOUT_MINUTES, raw)
        assert await RuntimeConfig(store, settings).session_timeout_minutes() == 30

    @pytest.mark.asyncio
    async def test_business_info(self, store, settings):
        await store.set_config_value(ConfigKeys.BUSINESS_PHONE, "55 1234 5678")
        info = await RuntimeConfig(store, settings).business_info()
        assert info["phone"] == "55 1234 5678"
        assert info["address"] == "No disponible"
        assert set(info) == {"hours", "address", "phone", "delivery_time"}
