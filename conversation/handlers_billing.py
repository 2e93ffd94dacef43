"""
Invoice request flow (BILLING_* states).

  BILLING_WARNING → RAZON_SOCIAL → CALLE → NUMERO → COLONIA → CP → CORREO
    → REGIMEN → CONFIRM_DATA → NOTE_FOLIO → NOTE_TOTAL → CFDI → MENU

Fiscal data is saved on the customer as it is collected, so a customer who
comes back later skips straight to the confirmation. Ticket folio, total and
CFDI use are per-request and live in the session's temp fields.
"""
from __future__ import annotations

from typing import Optional

import structlog

from conversation import prompts
from conversation.state_machine import HandlerContext, handles
from models.catalogs import find_cfdi_use, find_regime
from models.schemas import ConversationState, Customer, StaffRole

logger = structlog.get_logger()

S = ConversationState

# state → (billing field, next state, prompt for this state, prompt for the next one)
_FIELD_STEPS: dict[ConversationState, tuple[str, ConversationState, str, Optional[str]]] = {
    S.BILLING_ASK_RAZON_SOCIAL: ("razon_social", S.BILLING_ASK_CALLE, prompts.ASK_RAZON_SOCIAL, prompts.ASK_CALLE),
    S.BILLING_ASK_CALLE: ("calle", S.BILLING_ASK_NUMERO, prompts.ASK_CALLE, prompts.ASK_NUMERO),
    S.BILLING_ASK_NUMERO: ("numero", S.BILLING_ASK_COLONIA, prompts.ASK_NUMERO, prompts.ASK_COLONIA),
    S.BILLING_ASK_COLONIA: ("colonia", S.BILLING_ASK_CP, prompts.ASK_COLONIA, prompts.ASK_CP),
    S.BILLING_ASK_CP: ("codigo_postal", S.BILLING_ASK_CORREO, prompts.ASK_CP, prompts.ASK_CORREO),
    S.BILLING_ASK_CORREO: ("correo", S.BILLING_ASK_REGIMEN, prompts.ASK_CORREO, None),
}

INVOICE_STAFF_ROLES = (StaffRole.ADMIN, StaffRole.SUPERVISOR)


async def _require_customer(ctx: HandlerContext) -> Optional[Customer]:
    customer = await ctx.customer()
    if customer is None:
        logger.warning("billing_customer_missing", customer=ctx.customer_id,
                       state=ctx.session.state.value)
        await ctx.say(prompts.CUSTOMER_NOT_FOUND)
    return customer


async def _save_billing(ctx: HandlerContext, customer: Customer, next_state: ConversationState,
                        **changes: str) -> None:
    async with ctx.store.transaction():
        customer.update_billing(**changes)
        await ctx.store.upsert_customer(customer)
        await ctx.persist_state(next_state)


# ──────────────────────────────────────────────────────────────
#  Warning & fiscal data
# ──────────────────────────────────────────────────────────────

@handles(S.BILLING_WARNING)
async def handle_billing_warning(ctx: HandlerContext) -> Optional[ConversationState]:
    customer = await _require_customer(ctx)
    if customer is None:
        return S.MENU

    if ctx.text == prompts.BILLING_WARNING_CONTINUE:
        if customer.billing and customer.billing.razon_social.strip():
            await prompts.send_billing_confirmation(ctx.messenger, ctx.customer_id, customer.billing)
            return S.BILLING_CONFIRM_DATA
        await ctx.say(prompts.ASK_RAZON_SOCIAL)
        return S.BILLING_ASK_RAZON_SOCIAL

    if ctx.text == prompts.BILLING_WARNING_CANCEL:
        await ctx.say(prompts.INVOICE_CANCELLED)
        return S.MENU

    await ctx.say(prompts.INVALID_OPTION)
    await prompts.send_billing_warning(ctx.messenger, ctx.customer_id)
    return None


@handles(*_FIELD_STEPS)
async def handle_billing_field(ctx: HandlerContext) -> Optional[ConversationState]:
    customer = await _require_customer(ctx)
    if customer is None:
        return S.MENU

    field, next_state, this_prompt, next_prompt = _FIELD_STEPS[ctx.session.state]
    if not ctx.is_text or not ctx.text:
        await ctx.say(this_prompt)
        return None

    await _save_billing(ctx, customer, next_state, **{field: ctx.text})

    if next_prompt is None:
        await prompts.send_regime_list(ctx.messenger, ctx.customer_id)
    else:
        await ctx.say(next_prompt)
    return next_state


@handles(S.BILLING_ASK_REGIMEN)
async def handle_billing_regime(ctx: HandlerContext) -> Optional[ConversationState]:
    customer = await _require_customer(ctx)
    if customer is None:
        return S.MENU

    code = find_regime(ctx.text)
    if code is None:
        logger.info("billing_regime_invalid", customer=ctx.customer_id, value=ctx.text)
        await prompts.send_regime_list(ctx.messenger, ctx.customer_id)
        return None

    await _save_billing(ctx, customer, S.BILLING_CONFIRM_DATA, regimen_fiscal=code)
    await prompts.send_billing_confirmation(ctx.messenger, ctx.customer_id, customer.billing)
    return S.BILLING_CONFIRM_DATA


@handles(S.BILLING_CONFIRM_DATA)
async def handle_billing_confirm(ctx: HandlerContext) -> Optional[ConversationState]:
    customer = await _require_customer(ctx)
    if customer is None:
        return S.MENU

    if ctx.text == prompts.BILLING_CONFIRM:
        await ctx.say(prompts.ASK_NOTE_FOLIO)
        return S.BILLING_ASK_NOTE_FOLIO
    if ctx.text == prompts.BILLING_CORRECT:
        await ctx.say(prompts.ASK_RAZON_SOCIAL_AGAIN)
        return S.BILLING_ASK_RAZON_SOCIAL

    await ctx.say(prompts.INVALID_OPTION)
    if customer.billing:
        await prompts.send_billing_confirmation(ctx.messenger, ctx.customer_id, customer.billing)
    return None


# ──────────────────────────────────────────────────────────────
#  Purchase details
# ──────────────────────────────────────────────────────────────

@handles(S.BILLING_ASK_NOTE_FOLIO)
async def handle_note_folio(ctx: HandlerContext) -> Optional[ConversationState]:
    if await _require_customer(ctx) is None:
        return S.MENU
    if not ctx.is_text or not ctx.text:
        await ctx.say(prompts.ASK_NOTE_FOLIO)
        return None

    ctx.session.set_temp_note_folio(ctx.text)
    await ctx.say(prompts.ASK_NOTE_TOTAL)
    return S.BILLING_ASK_NOTE_TOTAL


@handles(S.BILLING_ASK_NOTE_TOTAL)
async def handle_note_total(ctx: HandlerContext) -> Optional[ConversationState]:
    if await _require_customer(ctx) is None:
        return S.MENU
    if not ctx.is_text or not ctx.text:
        await ctx.say(prompts.ASK_NOTE_TOTAL)
        return None

    ctx.session.set_temp_note_total(ctx.text)
    await prompts.send_cfdi_list(ctx.messenger, ctx.customer_id)
    return S.BILLING_ASK_CFDI


@handles(S.BILLING_ASK_CFDI)
async def handle_cfdi(ctx: HandlerContext) -> Optional[ConversationState]:
    customer = await _require_customer(ctx)
    if customer is None:
        return S.MENU

    code = find_cfdi_use(ctx.text)
    if code is None:
        logger.info("billing_cfdi_invalid", customer=ctx.customer_id, value=ctx.text)
        await prompts.send_cfdi_list(ctx.messenger, ctx.customer_id)
        return None

    ctx.session.set_temp_cfdi_use(code)
    temp = ctx.session.temp_fields
    notification = prompts.invoice_request_notification(
        customer, temp.note_folio or "", temp.note_total or "", code,
    )

    phones = await ctx.store.staff_phones(INVOICE_STAFF_ROLES)
    delivered = 0
    for phone in phones:
        if await ctx.messenger.send_text(phone, notification):
            delivered += 1
    logger.info("invoice_request_fanned_out", customer=ctx.customer_id,
                recipients=len(phones), delivered=delivered)

    await ctx.say(prompts.INVOICE_RECEIVED)
    await ctx.say(prompts.BACK_TO_MENU_HINT)
    return S.MENU
