"""
Ordering flow: name → address → order text → summary → address check → payment.

ASK_ADDRESS and SELECT_PAYMENT write customer/order data. Both run their
writes and the session update in one store transaction, so a failure leaves
neither half behind; the error propagates to the orchestrator.
"""
from __future__ import annotations

from typing import Optional

import structlog

from conversation import prompts
from conversation.state_machine import HandlerContext, handles
from core.clock import to_local
from job_queue.message_queue import PrintJob
from models.schemas import ConversationState, Customer, Order, PaymentMethod

logger = structlog.get_logger()

DEFAULT_CUSTOMER_NAME = "Sin nombre"

_PAYMENT_OPTIONS = {
    prompts.PAYMENT_CASH: PaymentMethod.CASH,
    prompts.PAYMENT_CARD: PaymentMethod.CARD,
}


@handles(ConversationState.ASK_NAME)
async def handle_ask_name(ctx: HandlerContext) -> Optional[ConversationState]:
    if not ctx.is_text or not ctx.text:
        await ctx.say(prompts.NAME_NOT_TEXT)
        return None

    ctx.session.set_temp_name(ctx.text)
    await ctx.say(prompts.thanks_ask_address(ctx.text))
    return ConversationState.ASK_ADDRESS


@handles(ConversationState.ASK_ADDRESS)
async def handle_ask_address(ctx: HandlerContext) -> Optional[ConversationState]:
    if not ctx.is_text or not ctx.text:
        await ctx.say(prompts.ADDRESS_NOT_TEXT)
        return None

    address = ctx.text
    has_pending_order = bool(ctx.session.scratch_buffer)
    next_state = (ConversationState.SELECT_PAYMENT if has_pending_order
                  else ConversationState.TAKING_ORDER)

    async with ctx.store.transaction():
        customer = await ctx.customer()
        temp_name = ctx.session.temp_fields.name
        if customer is None:
            customer = Customer(customer_id=ctx.customer_id,
                                name=temp_name or DEFAULT_CUSTOMER_NAME,
                                address=address)
        else:
            if temp_name:
                customer.name = temp_name
            customer.address = address
        await ctx.store.upsert_customer(customer)
        await ctx.persist_state(next_state)

    logger.info("customer_address_saved", customer=ctx.customer_id, next_state=next_state.value)

    if has_pending_order:
        await prompts.send_payment_options(ctx.messenger, ctx.customer_id,
                                           prompts.address_updated_text(address))
    else:
        await ctx.say(prompts.order_prompt())
    return next_state


@handles(ConversationState.TAKING_ORDER)
async def handle_taking_order(ctx: HandlerContext) -> Optional[ConversationState]:
    if not ctx.is_text or not ctx.text:
        await ctx.say(prompts.ORDER_NOT_TEXT)
        return None

    ctx.session.save_buffer(ctx.content)
    await prompts.send_order_summary(ctx.messenger, ctx.customer_id, ctx.content)
    return ConversationState.AWAITING_CONFIRM


@handles(ConversationState.AWAITING_CONFIRM)
async def handle_awaiting_confirm(ctx: HandlerContext) -> Optional[ConversationState]:
    if ctx.text == prompts.ORDER_CONFIRM:
        customer = await ctx.customer()
        await prompts.send_address_confirmation(ctx.messenger, ctx.customer_id,
                                                customer.address if customer else None)
        return ConversationState.CONFIRM_ADDRESS
    if ctx.text == prompts.ORDER_ADD_MORE:
        await ctx.say(prompts.ASK_ADD_MORE)
        return ConversationState.ADDING_MORE

    await prompts.send_order_summary(ctx.messenger, ctx.customer_id,
                                     ctx.session.scratch_buffer or "")
    return None


@handles(ConversationState.ADDING_MORE)
async def handle_adding_more(ctx: HandlerContext) -> Optional[ConversationState]:
    if not ctx.is_text or not ctx.text:
        await ctx.say(prompts.ADD_MORE_NOT_TEXT)
        return None

    current = ctx.session.scratch_buffer
    combined = f"{current}\n{ctx.content}" if current else ctx.content
    ctx.session.save_buffer(combined)
    await prompts.send_order_summary(ctx.messenger, ctx.customer_id, combined, updated=True)
    return ConversationState.AWAITING_CONFIRM


@handles(ConversationState.CONFIRM_ADDRESS)
async def handle_confirm_address(ctx: HandlerContext) -> Optional[ConversationState]:
    if ctx.text == prompts.ADDRESS_CORRECT:
        await prompts.send_payment_options(ctx.messenger, ctx.customer_id)
        return ConversationState.SELECT_PAYMENT
    if ctx.text == prompts.ADDRESS_WRONG:
        await ctx.say(prompts.ASK_NEW_ADDRESS)
        return ConversationState.ASK_ADDRESS

    customer = await ctx.customer()
    await prompts.send_address_confirmation(ctx.messenger, ctx.customer_id,
                                            customer.address if customer else None)
    return None


@handles(ConversationState.SELECT_PAYMENT)
async def handle_select_payment(ctx: HandlerContext) -> Optional[ConversationState]:
    method = _PAYMENT_OPTIONS.get(ctx.text)
    if method is None:
        await prompts.send_payment_options(ctx.messenger, ctx.customer_id)
        return None

    printer_name = await ctx.config.printer_name()

    async with ctx.store.transaction():
        if await ctx.customer() is None:
            logger.warning("payment_without_customer", customer=ctx.customer_id)
            return None

        order = await ctx.store.create_order(Order(
            customer_id=ctx.customer_id,
            content=ctx.session.scratch_buffer or "",
            notes=f"Forma de pago: {method.value}",
            payment_method=method,
        ))
        ctx.session.clear_buffer()
        await ctx.persist_state(ConversationState.START)

    logger.info("order_confirmed", customer=ctx.customer_id, folio=order.folio,
                payment_method=method.value)

    await _enqueue_print(ctx, order, printer_name)

    created = to_local(order.created_at, ctx.tz_name)
    await ctx.say(prompts.order_confirmed_text(order.folio, f"{created:%d/%m/%Y %H:%M}",
                                               method.value))
    return ConversationState.START


async def _enqueue_print(ctx: HandlerContext, order: Order, printer_name: str) -> None:
    if ctx.job_queue is None:
        logger.warning("print_queue_unavailable", folio=order.folio)
        return
    try:
        await ctx.job_queue.enqueue(PrintJob(order_id=order.id, printer_name=printer_name))
    except Exception as e:
        logger.error("print_enqueue_failed", folio=order.folio, error=str(e))
