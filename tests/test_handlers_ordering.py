"""
Tests for the entry and ordering states.

Covers:
  - START greeting and main menu
  - Menu options (new order, order status, info, invalid input)
  - Late-order warning
  - Name → address → order → summary → add more → address check → payment
  - Transactional address step and order creation
"""
from datetime import datetime, timezone

import pytest

from conversation import prompts
from core.orchestrator import InboundOrchestrator
from core.runtime_config import ConfigKeys
from job_queue.message_queue import Queues
from models.schemas import ConversationState, Customer, MessageType, Order, OrderStatus, PaymentMethod

CUSTOMER = "5215512345678"


async def _state(store) -> ConversationState:
    return (await store.get_session(CUSTOMER)).state


async def _known_customer(store, name="Ana López", address="Av. Juárez 10"):
    await store.upsert_customer(Customer(customer_id=CUSTOMER, name=name, address=address))


# ──────────────────────────────────────────────────────────────
#  START / MENU
# ──────────────────────────────────────────────────────────────

class TestStartAndMenu:
    @pytest.mark.asyncio
    async def test_first_message_greets_and_shows_menu(self, chat, store, transport):
        await chat("Hola")
        assert await _state(store) == ConversationState.MENU
        menu = transport.last(CUSTOMER)
        assert menu["interactive"]["type"] == "list"
        assert transport.reply_ids(menu) == [
            prompts.MENU_NEW_ORDER, prompts.MENU_ORDER_STATUS,
            prompts.MENU_INVOICE, prompts.MENU_INFO,
        ]
        assert "Bienvenido/a a Carnicería La Blanquita" in transport.bodies()[-1]

    @pytest.mark.asyncio
    async def test_known_customer_is_welcomed_back(self, chat, store, transport):
        await _known_customer(store)
        await chat("Hola")
        assert transport.bodies()[-1] == "¡Hola Ana López! 👋 Es un gusto tenerte de vuelta."

    @pytest.mark.asyncio
    async def test_invalid_menu_option_reprompts(self, chat, store, transport):
        await chat("Hola", "quiero carne")
        assert await _state(store) == ConversationState.MENU
        assert transport.bodies()[-1] == prompts.CHOOSE_MENU_OPTION

    @pytest.mark.asyncio
    async def test_info_uses_runtime_config(self, chat, store, transport):
        await store.set_config_value("Negocio_Telefono", "555-123-4567")
        await chat("Hola", prompts.MENU_INFO)
        body = transport.bodies()[-1]
        assert "ℹ️ *Información de la Carnicería*" in body
        assert "555-123-4567" in body
        assert await _state(store) == ConversationState.MENU

    @pytest.mark.asyncio
    async def test_order_status_lists_recent_orders(self, chat, store, transport):
        await _known_customer(store)
        for folio in ("CAR-20250101-0001", "CAR-20250102-0002"):
            await store.create_order(Order(folio=folio, customer_id=CUSTOMER, content="1 kg bistec"))
        await chat("Hola", prompts.MENU_ORDER_STATUS)

        status_text = transport.bodies()[-2]
        assert status_text.startswith("📦 *Tus últimos pedidos:*")
        assert "CAR-20250101-0001" in status_text and "CAR-20250102-0002" in status_text
        assert transport.bodies()[-1] == prompts.ANYTHING_ELSE
        assert await _state(store) == ConversationState.MENU

    @pytest.mark.asyncio
    async def test_order_status_without_orders(self, chat, transport):
        await chat("Hola", prompts.MENU_ORDER_STATUS)
        assert transport.bodies()[-1] == prompts.NO_ORDERS


class TestLateOrder:
    @pytest.mark.asyncio
    async def test_after_hours_shows_warning(self, chat, store, transport, after_hours):
        await chat("Hola", prompts.MENU_NEW_ORDER)
        assert await _state(store) == ConversationState.CONFIRM_LATE_ORDER
        warning = transport.last(CUSTOMER)
        assert "Los pedidos son únicamente hasta las 12:00 AM" in transport.bodies()[-1]
        assert transport.reply_ids(warning) == [prompts.LATE_ORDER_CONTINUE, prompts.LATE_ORDER_CANCEL]

    @pytest.mark.asyncio
    async def test_continue_starts_order(self, chat, store, after_hours):
        await chat("Hola", prompts.MENU_NEW_ORDER, prompts.LATE_ORDER_CONTINUE)
        assert await _state(store) == ConversationState.ASK_NAME

    @pytest.mark.asyncio
    async def test_cancel_returns_to_menu(self, chat, store, transport, after_hours):
        await chat("Hola", prompts.MENU_NEW_ORDER, prompts.LATE_ORDER_CANCEL)
        assert await _state(store) == ConversationState.MENU
        assert prompts.OPERATION_CANCELLED in transport.bodies()

    def _pinned(self, store, messenger, gate, job_queue, settings, hour_utc):
        # Mexico City is UTC-6 all year
        pinned = datetime(2024, 3, 5, hour_utc, 0, tzinfo=timezone.utc)
        return InboundOrchestrator(store, messenger, gate, job_queue=job_queue,
                                   settings=settings, clock=lambda: pinned)

    @pytest.mark.asyncio
    async def test_five_pm_past_four_pm_threshold_warns(self, store, messenger, gate, job_queue,
                                                         settings, make_inbound, transport):
        await store.set_config_value(ConfigKeys.LATE_ORDER_START_HOUR, "16")
        orchestrator = self._pinned(store, messenger, gate, job_queue, settings, hour_utc=23)

        for content in ("Hola", prompts.MENU_NEW_ORDER):
            await orchestrator.handle_inbound(make_inbound(content))

        assert await _state(store) == ConversationState.CONFIRM_LATE_ORDER
        assert "Los pedidos son únicamente hasta las 4:00 PM" in transport.bodies()[-1]

    @pytest.mark.asyncio
    async def test_three_pm_before_four_pm_threshold_orders(self, store, messenger, gate, job_queue,
                                                             settings, make_inbound, transport):
        await store.set_config_value(ConfigKeys.LATE_ORDER_START_HOUR, "16")
        orchestrator = self._pinned(store, messenger, gate, job_queue, settings, hour_utc=21)

        for content in ("Hola", prompts.MENU_NEW_ORDER):
            await orchestrator.handle_inbound(make_inbound(content))

        assert await _state(store) == ConversationState.ASK_NAME
        assert not any("únicamente hasta" in body for body in transport.bodies())

    def test_hour_formatting(self):
        assert prompts.format_hour(16) == "4:00 PM"
        assert prompts.format_hour(9) == "9:00 AM"
        assert prompts.format_hour(12) == "12:00 PM"


# ──────────────────────────────────────────────────────────────
#  Ordering flow
# ──────────────────────────────────────────────────────────────

class TestOrderingFlow:
    @pytest.mark.asyncio
    async def test_new_customer_full_order(self, chat, store, transport, job_queue, daytime):
        await chat("Hola", prompts.MENU_NEW_ORDER)
        assert await _state(store) == ConversationState.ASK_NAME

        await chat("Juan Pérez")
        assert await _state(store) == ConversationState.ASK_ADDRESS
        assert transport.bodies()[-1].startswith("Gracias Juan Pérez!")

        await chat("Calle Morelos 45")
        assert await _state(store) == ConversationState.TAKING_ORDER
        customer = await store.get_customer(CUSTOMER)
        assert customer.name == "Juan Pérez"
        assert customer.address == "Calle Morelos 45"

        await chat("2 kg de bistec")
        assert await _state(store) == ConversationState.AWAITING_CONFIRM
        summary = transport.last(CUSTOMER)
        assert "2 kg de bistec" in transport.bodies()[-1]
        assert transport.reply_ids(summary) == [prompts.ORDER_CONFIRM, prompts.ORDER_ADD_MORE]

        await chat(prompts.ORDER_ADD_MORE, "1 kg de chorizo")
        assert await _state(store) == ConversationState.AWAITING_CONFIRM
        assert (await store.get_session(CUSTOMER)).scratch_buffer == "2 kg de bistec\n1 kg de chorizo"
        assert transport.bodies()[-1].startswith("📋 *Resumen actualizado de tu pedido:*")

        await chat(prompts.ORDER_CONFIRM)
        assert await _state(store) == ConversationState.CONFIRM_ADDRESS
        assert "Calle Morelos 45" in transport.bodies()[-1]

        await chat(prompts.ADDRESS_CORRECT)
        assert await _state(store) == ConversationState.SELECT_PAYMENT

        await chat(prompts.PAYMENT_CARD)
        session = await store.get_session(CUSTOMER)
        assert session.state == ConversationState.START
        assert session.scratch_buffer is None

        orders = await store.recent_orders(CUSTOMER)
        assert len(orders) == 1
        order = orders[0]
        assert order.content == "2 kg de bistec\n1 kg de chorizo"
        assert order.notes == "Forma de pago: Tarjeta"
        assert order.payment_method == PaymentMethod.CARD
        assert order.status == OrderStatus.EN_ESPERA
        assert order.folio.startswith("CAR-")

        confirmation = transport.bodies()[-1]
        assert confirmation.startswith("✅ *¡Pedido confirmado!*")
        assert order.folio in confirmation
        assert "Forma de pago: *Tarjeta*" in confirmation

        assert await job_queue.queue_length(Queues.DISPATCH) == 1
        job = (await job_queue.peek(Queues.DISPATCH))[0]
        assert job.order_id == order.id
        assert job.printer_name == "default"
        assert job.duplicate is False

    @pytest.mark.asyncio
    async def test_known_customer_goes_straight_to_order(self, chat, store, transport, daytime):
        await _known_customer(store)
        await chat("Hola", prompts.MENU_NEW_ORDER)
        assert await _state(store) == ConversationState.TAKING_ORDER
        assert transport.bodies()[-1].startswith("Perfecto Ana López! 📝")

    @pytest.mark.asyncio
    async def test_customer_without_address_is_asked_for_it(self, chat, store, daytime):
        await _known_customer(store, address="")
        await chat("Hola", prompts.MENU_NEW_ORDER)
        assert await _state(store) == ConversationState.ASK_ADDRESS

    @pytest.mark.asyncio
    async def test_non_text_name_is_rejected(self, chat, store, transport, daytime):
        await chat("Hola", prompts.MENU_NEW_ORDER)
        await chat("btn_x", message_type=MessageType.INTERACTIVE)
        assert await _state(store) == ConversationState.ASK_NAME
        assert transport.bodies()[-1] == prompts.NAME_NOT_TEXT

    @pytest.mark.asyncio
    async def test_wrong_address_changes_it_and_goes_to_payment(self, chat, store, transport, daytime):
        await _known_customer(store)
        await chat("Hola", prompts.MENU_NEW_ORDER, "1 kg de arrachera",
                   prompts.ORDER_CONFIRM, prompts.ADDRESS_WRONG)
        assert await _state(store) == ConversationState.ASK_ADDRESS
        assert (await store.get_session(CUSTOMER)).scratch_buffer == "1 kg de arrachera"

        await chat("Reforma 200")
        assert await _state(store) == ConversationState.SELECT_PAYMENT
        assert (await store.get_customer(CUSTOMER)).address == "Reforma 200"
        payment = transport.last(CUSTOMER)
        assert transport.bodies()[-1].startswith("✅ Dirección actualizada correctamente.")
        assert transport.reply_ids(payment) == [prompts.PAYMENT_CASH, prompts.PAYMENT_CARD]

    @pytest.mark.asyncio
    async def test_unknown_payment_reprompts(self, chat, store, transport, daytime):
        await _known_customer(store)
        await chat("Hola", prompts.MENU_NEW_ORDER, "1 kg de costilla",
                   prompts.ORDER_CONFIRM, prompts.ADDRESS_CORRECT, "bitcoin")
        assert await _state(store) == ConversationState.SELECT_PAYMENT
        assert transport.bodies()[-1] == prompts.PAYMENT_QUESTION
        assert await store.recent_orders(CUSTOMER) == []

    @pytest.mark.asyncio
    async def test_unknown_summary_reply_reprompts(self, chat, store, transport, daytime):
        await _known_customer(store)
        await chat("Hola", prompts.MENU_NEW_ORDER, "1 kg de costilla", "???")
        assert await _state(store) == ConversationState.AWAITING_CONFIRM
        assert "1 kg de costilla" in transport.bodies()[-1]

    @pytest.mark.asyncio
    async def test_configured_printer_name(self, chat, store, job_queue, daytime):
        await store.set_config_value("Printers.Name", "cocina")
        await _known_customer(store)
        await chat("Hola", prompts.MENU_NEW_ORDER, "1 kg de costilla",
                   prompts.ORDER_CONFIRM, prompts.ADDRESS_CORRECT, prompts.PAYMENT_CASH)
        job = (await job_queue.peek(Queues.DISPATCH))[0]
        assert job.printer_name == "cocina"


class TestTransactionalSteps:
    @pytest.mark.asyncio
    async def test_address_failure_rolls_back_customer(self, chat, store, transport,
                                                        monkeypatch, daytime):
        await chat("Hola", prompts.MENU_NEW_ORDER, "Juan Pérez")

        async def broken_save(session):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(store, "save_session", broken_save)
        with pytest.raises(RuntimeError):
            await chat("Calle Morelos 45")
        monkeypatch.undo()

        assert await store.get_customer(CUSTOMER) is None
        assert await _state(store) == ConversationState.ASK_ADDRESS
        assert transport.bodies()[-1] == prompts.GENERIC_ERROR

    @pytest.mark.asyncio
    async def test_order_failure_leaves_no_order(self, chat, store, transport,
                                                  job_queue, monkeypatch, daytime):
        await _known_customer(store)
        await chat("Hola", prompts.MENU_NEW_ORDER, "1 kg de costilla",
                   prompts.ORDER_CONFIRM, prompts.ADDRESS_CORRECT)

        async def broken_save(session):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(store, "save_session", broken_save)
        with pytest.raises(RuntimeError):
            await chat(prompts.PAYMENT_CASH)
        monkeypatch.undo()

        assert await store.recent_orders(CUSTOMER) == []
        session = await store.get_session(CUSTOMER)
        assert session.state == ConversationState.SELECT_PAYMENT
        assert session.scratch_buffer == "1 kg de costilla"
        assert await job_queue.queue_length(Queues.DISPATCH) == 0

    @pytest.mark.asyncio
    async def test_print_enqueue_failure_does_not_block_confirmation(
            self, chat, store, transport, job_queue, monkeypatch, daytime):
        await _known_customer(store)

        async def broken_enqueue(job):
            raise ConnectionError("redis down")

        monkeypatch.setattr(job_queue, "enqueue", broken_enqueue)
        await chat("Hola", prompts.MENU_NEW_ORDER, "1 kg de costilla",
                   prompts.ORDER_CONFIRM, prompts.ADDRESS_CORRECT, prompts.PAYMENT_CASH)

        assert len(await store.recent_orders(CUSTOMER)) == 1
        assert transport.bodies()[-1].startswith("✅ *¡Pedido confirmado!*")
        assert await _state(store) == ConversationState.START
