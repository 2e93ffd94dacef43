"""Entry states: START, MENU and the late-order confirmation."""
from __future__ import annotations

from typing import Optional

import structlog

from conversation import prompts
from conversation.state_machine import HandlerContext, handles
from core.clock import to_local
from models.schemas import ConversationState

logger = structlog.get_logger()


@handles(ConversationState.START)
async def handle_start(ctx: HandlerContext) -> ConversationState:
    customer = await ctx.customer()
    await prompts.send_main_menu(ctx.messenger, ctx.customer_id, prompts.greeting(customer))
    return ConversationState.MENU


@handles(ConversationState.MENU)
async def handle_menu(ctx: HandlerContext) -> Optional[ConversationState]:
    option = ctx.text

    if option == prompts.MENU_NEW_ORDER:
        start_hour = await ctx.config.late_order_start_hour()
        if ctx.now.hour >= start_hour:
            await prompts.send_late_order_warning(ctx.messenger, ctx.customer_id, start_hour)
            return ConversationState.CONFIRM_LATE_ORDER
        return await begin_order(ctx)

    if option == prompts.MENU_ORDER_STATUS:
        await _send_order_status(ctx)
        return ConversationState.MENU

    if option == prompts.MENU_INVOICE:
        if await ctx.customer() is None:
            await ctx.say(prompts.ASK_NAME_FOR_INVOICE)
            return ConversationState.ASK_NAME
        await prompts.send_billing_warning(ctx.messenger, ctx.customer_id)
        return ConversationState.BILLING_WARNING

    if option == prompts.MENU_INFO:
        info = await ctx.config.business_info()
        await ctx.say(prompts.business_info_text(info))
        return ConversationState.MENU

    await prompts.send_main_menu(ctx.messenger, ctx.customer_id, prompts.CHOOSE_MENU_OPTION)
    return ConversationState.MENU


@handles(ConversationState.CONFIRM_LATE_ORDER)
async def handle_confirm_late_order(ctx: HandlerContext) -> Optional[ConversationState]:
    if ctx.text == prompts.LATE_ORDER_CONTINUE:
        return await begin_order(ctx)
    if ctx.text == prompts.LATE_ORDER_CANCEL:
        await ctx.say(prompts.OPERATION_CANCELLED)
        await prompts.send_main_menu(ctx.messenger, ctx.customer_id)
        return ConversationState.MENU

    start_hour = await ctx.config.late_order_start_hour()
    await prompts.send_late_order_warning(ctx.messenger, ctx.customer_id, start_hour)
    return None


async def begin_order(ctx: HandlerContext) -> ConversationState:
    """Collect whatever customer data is missing, then ask for the order."""
    customer = await ctx.customer()
    if customer is None or not customer.name.strip():
        await ctx.say(prompts.ASK_NAME_FOR_ORDER)
        return ConversationState.ASK_NAME
    if not customer.address.strip():
        await ctx.say(prompts.ASK_DELIVERY_ADDRESS)
        return ConversationState.ASK_ADDRESS
    await ctx.say(prompts.order_prompt(customer.name))
    return ConversationState.TAKING_ORDER


async def _send_order_status(ctx: HandlerContext) -> None:
    orders = await ctx.store.recent_orders(ctx.customer_id, limit=3)
    if not orders:
        await ctx.say(prompts.NO_ORDERS)
        return

    lines = ["📦 *Tus últimos pedidos:*\n\n"]
    for order in orders:
        created = to_local(order.created_at, ctx.tz_name)
        lines.append(
            f"*Folio:* {order.folio}\n"
            f"*Estado:* {order.status.value}\n"
            f"*Fecha:* {created:%d/%m/%Y}\n"
            "-------------------\n"
        )
    await ctx.say("".join(lines))
    await prompts.send_main_menu(ctx.messenger, ctx.customer_id, prompts.ANYTHING_ELSE)
