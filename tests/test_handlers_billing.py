"""
Tests for the invoice request flow (BILLING_* states).

Covers:
  - Billing warning continue / cancel / invalid input
  - Field-by-field capture persisted on the customer
  - Regime and CFDI validation against the SAT catalogs
  - Confirmation / correction loop
  - Staff fan-out and return to MENU
"""
import pytest
import pytest_asyncio

from conversation import prompts
from models.schemas import BillingData, ConversationState, Customer, StaffMember, StaffRole

CUSTOMER = "5215512345678"
ADMIN_PHONE = "5215500000001"
SUPERVISOR_PHONE = "5215500000002"


async def _state(store) -> ConversationState:
    return (await store.get_session(CUSTOMER)).state


@pytest.fixture
def full_billing() -> BillingData:
    return BillingData(
        razon_social="Taquería El Güero SA de CV",
        calle="Insurgentes Sur",
        numero="1234",
        colonia="Del Valle",
        codigo_postal="03100",
        correo="facturas@elguero.mx",
        regimen_fiscal="601",
    )


@pytest_asyncio.fixture
async def customer(store):
    c = Customer(customer_id=CUSTOMER, name="Ana López", address="Av. Juárez 10")
    await store.upsert_customer(c)
    return c


@pytest_asyncio.fixture
async def staff(store):
    await store.upsert_staff(StaffMember(name="Admin", phone=ADMIN_PHONE, role=StaffRole.ADMIN))
    await store.upsert_staff(StaffMember(name="Sup", phone=SUPERVISOR_PHONE, role=StaffRole.SUPERVISOR))
    await store.upsert_staff(StaffMember(name="Operador", phone="5215500000003", role=StaffRole.OPERATOR))
    await store.upsert_staff(StaffMember(name="Sin tel", phone="", role=StaffRole.ADMIN))


class TestBillingEntry:
    @pytest.mark.asyncio
    async def test_invoice_without_customer_asks_name(self, chat, store, transport):
        await chat("Hola", prompts.MENU_INVOICE)
        assert await _state(store) == ConversationState.ASK_NAME
        assert transport.bodies()[-1] == prompts.ASK_NAME_FOR_INVOICE

    @pytest.mark.asyncio
    async def test_warning_then_cancel(self, chat, store, transport, customer):
        await chat("Hola", prompts.MENU_INVOICE)
        assert await _state(store) == ConversationState.BILLING_WARNING
        assert transport.reply_ids(transport.last(CUSTOMER)) == [
            prompts.BILLING_WARNING_CONTINUE, prompts.BILLING_WARNING_CANCEL,
        ]
        await chat(prompts.BILLING_WARNING_CANCEL)
        assert await _state(store) == ConversationState.MENU
        assert transport.bodies()[-1] == prompts.INVOICE_CANCELLED

    @pytest.mark.asyncio
    async def test_warning_invalid_input_repeats_warning(self, chat, store, transport, customer):
        await chat("Hola", prompts.MENU_INVOICE, "no sé")
        assert await _state(store) == ConversationState.BILLING_WARNING
        assert transport.bodies()[-2] == prompts.INVALID_OPTION
        assert transport.bodies()[-1].startswith("⚠️ *Aviso Importante*")

    @pytest.mark.asyncio
    async def test_existing_fiscal_data_skips_to_confirmation(self, chat, store, transport,
                                                              customer, full_billing):
        customer.billing = full_billing
        await store.upsert_customer(customer)
        await chat("Hola", prompts.MENU_INVOICE, prompts.BILLING_WARNING_CONTINUE)
        assert await _state(store) == ConversationState.BILLING_CONFIRM_DATA
        body = transport.bodies()[-1]
        assert "Taquería El Güero SA de CV" in body
        assert "601 - General de Ley Personas Morales" in body

    @pytest.mark.asyncio
    async def test_missing_customer_mid_flow(self, chat, store, transport, customer):
        await chat("Hola", prompts.MENU_INVOICE)
        store._customers.clear()
        await chat(prompts.BILLING_WARNING_CONTINUE)
        assert await _state(store) == ConversationState.MENU
        assert transport.bodies()[-1] == prompts.CUSTOMER_NOT_FOUND


class TestBillingCapture:
    @pytest.mark.asyncio
    async def test_full_capture_and_fan_out(self, chat, store, transport, customer, staff):
        await chat("Hola", prompts.MENU_INVOICE, prompts.BILLING_WARNING_CONTINUE)
        assert await _state(store) == ConversationState.BILLING_ASK_RAZON_SOCIAL

        await chat("Taquería El Güero SA de CV")
        assert await _state(store) == ConversationState.BILLING_ASK_CALLE
        assert (await store.get_customer(CUSTOMER)).billing.razon_social == "Taquería El Güero SA de CV"

        await chat("Insurgentes Sur", "1234", "Del Valle", "03100")
        assert await _state(store) == ConversationState.BILLING_ASK_CORREO

        await chat("facturas@elguero.mx")
        assert await _state(store) == ConversationState.BILLING_ASK_REGIMEN
        regime_list = transport.last(CUSTOMER)
        assert regime_list["interactive"]["type"] == "list"
        assert "601" in transport.reply_ids(regime_list)

        await chat("626")
        assert await _state(store) == ConversationState.BILLING_CONFIRM_DATA
        billing = (await store.get_customer(CUSTOMER)).billing
        assert billing == BillingData(
            razon_social="Taquería El Güero SA de CV", calle="Insurgentes Sur", numero="1234",
            colonia="Del Valle", codigo_postal="03100", correo="facturas@elguero.mx",
            regimen_fiscal="626",
        )

        await chat(prompts.BILLING_CONFIRM)
        assert await _state(store) == ConversationState.BILLING_ASK_NOTE_FOLIO
        await chat("N-4455")
        assert await _state(store) == ConversationState.BILLING_ASK_NOTE_TOTAL
        await chat("$1,250.00")
        assert await _state(store) == ConversationState.BILLING_ASK_CFDI
        cfdi_list = transport.last(CUSTOMER)
        assert len(transport.reply_ids(cfdi_list)) == 10

        transport.clear()
        await chat("G03")
        assert await _state(store) == ConversationState.MENU
        session = await store.get_session(CUSTOMER)
        assert session.temp_fields.note_folio == "N-4455"
        assert session.temp_fields.note_total == "$1,250.00"
        assert session.temp_fields.cfdi_use == "G03"

        recipients = sorted(p["to"] for p in transport.sent if p["to"] != CUSTOMER)
        assert recipients == sorted([ADMIN_PHONE, SUPERVISOR_PHONE])
        notification = transport.bodies(ADMIN_PHONE)[0]
        assert notification.startswith("🔔 *Nueva Solicitud de Factura*")
        assert f"Ana López ({CUSTOMER})" in notification
        assert "Folio Nota: N-4455" in notification
        assert "Uso CFDI: G03 - Gastos en general" in notification

        assert transport.bodies(CUSTOMER) == [prompts.INVOICE_RECEIVED, prompts.BACK_TO_MENU_HINT]

    @pytest.mark.asyncio
    async def test_invalid_regime_reprompts_list(self, chat, store, transport, customer):
        await chat("Hola", prompts.MENU_INVOICE, prompts.BILLING_WARNING_CONTINUE,
                   "Mi Empresa", "Calle", "1", "Centro", "01000", "a@b.mx", "999")
        assert await _state(store) == ConversationState.BILLING_ASK_REGIMEN
        assert transport.last(CUSTOMER)["interactive"]["type"] == "list"
        assert (await store.get_customer(CUSTOMER)).billing.regimen_fiscal == ""

    @pytest.mark.asyncio
    async def test_correct_restarts_at_razon_social(self, chat, store, transport,
                                                    customer, full_billing):
        customer.billing = full_billing
        await store.upsert_customer(customer)
        await chat("Hola", prompts.MENU_INVOICE, prompts.BILLING_WARNING_CONTINUE,
                   prompts.BILLING_CORRECT)
        assert await _state(store) == ConversationState.BILLING_ASK_RAZON_SOCIAL
        assert transport.bodies()[-1] == prompts.ASK_RAZON_SOCIAL_AGAIN

    @pytest.mark.asyncio
    async def test_confirmation_invalid_input_keeps_state(self, chat, store, transport,
                                                          customer, full_billing):
        customer.billing = full_billing
        await store.upsert_customer(customer)
        await chat("Hola", prompts.MENU_INVOICE, prompts.BILLING_WARNING_CONTINUE, "tal vez")
        assert await _state(store) == ConversationState.BILLING_CONFIRM_DATA
        assert transport.bodies()[-2] == prompts.INVALID_OPTION
        assert transport.bodies()[-1].startswith("🧾 *Confirma tus Datos de Facturación*")

    @pytest.mark.asyncio
    async def test_invalid_cfdi_reprompts(self, chat, store, transport, customer, full_billing):
        customer.billing = full_billing
        await store.upsert_customer(customer)
        await chat("Hola", prompts.MENU_INVOICE, prompts.BILLING_WARNING_CONTINUE,
                   prompts.BILLING_CONFIRM, "N-1", "100", "XYZ")
        assert await _state(store) == ConversationState.BILLING_ASK_CFDI
        assert transport.bodies()[-1] == "📄 *Uso de CFDI*"

    @pytest.mark.asyncio
    async def test_fan_out_without_staff_still_completes(self, chat, store, transport,
                                                         customer, full_billing):
        customer.billing = full_billing
        await store.upsert_customer(customer)
        await chat("Hola", prompts.MENU_INVOICE, prompts.BILLING_WARNING_CONTINUE,
                   prompts.BILLING_CONFIRM, "N-1", "100", "S01")
        assert await _state(store) == ConversationState.MENU
        assert transport.bodies()[-2] == prompts.INVOICE_RECEIVED
