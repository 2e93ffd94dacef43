"""
Customer-facing texts and the prompt builders shared by the handlers.

Handlers never call each other; when two states need the same prompt
(the main menu, the order summary, the payment buttons) they both call
a builder from here.
"""
from __future__ import annotations

from typing import Optional

from channels.messenger import ResilientMessenger
from models.catalogs import CFDI_USES, TAX_REGIMES, describe_cfdi, describe_regime
from models.schemas import BillingData, Customer

# ──────────────────────────────────────────────────────────────
#  Reply ids
# ──────────────────────────────────────────────────────────────

MENU_NEW_ORDER = "menu_hacer_pedido"
MENU_ORDER_STATUS = "menu_estado_pedido"
MENU_INVOICE = "menu_solicitar_factura"
MENU_INFO = "menu_informacion"

LATE_ORDER_CONTINUE = "late_order_continue"
LATE_ORDER_CANCEL = "late_order_cancel"
ORDER_CONFIRM = "order_confirm"
ORDER_ADD_MORE = "order_add_more"
ADDRESS_CORRECT = "address_correct"
ADDRESS_WRONG = "address_wrong"
PAYMENT_CASH = "payment_cash"
PAYMENT_CARD = "payment_card"
BILLING_WARNING_CONTINUE = "billing_warning_continue"
BILLING_WARNING_CANCEL = "billing_warning_cancel"
BILLING_CONFIRM = "billing_confirm"
BILLING_CORRECT = "billing_correct"

GLOBAL_COMMANDS = frozenset({"menu", "cancelar", "inicio"})

# ──────────────────────────────────────────────────────────────
#  Plain texts
# ──────────────────────────────────────────────────────────────

WELCOME_BACK = "¡Hola {name}! 👋 Es un gusto tenerte de vuelta."
WELCOME = (
    "¡Hola! 👋 Bienvenido/a a Carnicería La Blanquita. \n"
    "Soy Blanqui un bot diseñado para ayudarte a: \n"
    " Hacer pedidos\n"
    " Consultar el estado de tus pedidos \n"
    " Obtener información sobre nuestra sucursal."
)
CHOOSE_MENU_OPTION = "Por favor, selecciona una opción del menú:"
ANYTHING_ELSE = "Necesitas que te ayude con algo mas?"
OPERATION_CANCELLED = "Entendido, operación cancelada."
GENERIC_ERROR = "❌ Ocurrió un error. Escribe 'menu' para reiniciar."
BACK_TO_MENU_HINT = "Escribe 'Hola' para volver al menú principal."

NO_ORDERS = "No tienes pedidos registrados aún. 🛒\n\n¿Te gustaría hacer uno?"

ASK_NAME_FOR_ORDER = (
    "Para hacer un pedido, primero necesito algunos datos.\n\n"
    "📝 Por favor, indícame tu nombre completo:"
)
ASK_NAME_FOR_INVOICE = "Primero necesito registrar tus datos básicos. 📝\n\n¿Cual es tu nombre completo?"
ASK_DELIVERY_ADDRESS = "📍 Por favor, indícame tu dirección de entrega:"
ASK_NEW_ADDRESS = "📍 Por favor, escribe tu nueva dirección de entrega:"
NAME_NOT_TEXT = "❌ Respuesta no válida. Por favor, escribe tu nombre en texto."
ADDRESS_NOT_TEXT = "❌ Respuesta no válida. Por favor, escribe tu dirección en texto."
ORDER_NOT_TEXT = "❌ Por favor, escribe tu pedido en texto."
ADD_MORE_NOT_TEXT = "❌ Por favor, escribe los productos adicionales en texto."
ASK_ADD_MORE = "➕ Perfecto! ¿Qué más deseas agregar a tu pedido?"

ORDER_EXAMPLE = "Ejemplo:\n2 kg de carne molida\n1 kg de bistec\n500g de chorizo"

INVALID_OPTION = "Por favor, selecciona una opción válida."
CUSTOMER_NOT_FOUND = "Error: Cliente no encontrado."
INVOICE_CANCELLED = (
    "De acuerdo, tu solicitud de factura ha sido cancelada. 👍\n\n" + BACK_TO_MENU_HINT
)
ASK_RAZON_SOCIAL = (
    "🧾 *Solicitud de Factura*\n\n"
    "Para generar tu factura, necesito los siguientes datos fiscales.\n\n"
    "Por favor, ingresa tu *Razón Social* (Nombre de la empresa o persona física):"
)
ASK_RAZON_SOCIAL_AGAIN = "📝 Vamos a corregir los datos.\n\nPor favor, ingresa tu *Razón Social*:"
ASK_CALLE = "🏢 *Calle:*\nPor favor, ingresa la calle:"
ASK_NUMERO = "🔢 *Número:*\nPor favor, ingresa el número exterior/interior:"
ASK_COLONIA = "🏘️ *Colonia:*\nPor favor, ingresa la colonia:"
ASK_CP = "📮 *Código Postal:*\nPor favor, ingresa el código postal:"
ASK_CORREO = "📧 *Correo Electrónico:*\nPor favor, ingresa el correo para recibir la factura:"
ASK_NOTE_FOLIO = "🧾 *Detalles de la Compra*\n\nPor favor, ingresa el *Folio de la Nota* (ticket):"
ASK_NOTE_TOTAL = "💲 *Total de la Nota:*\nPor favor, ingresa el monto total del ticket:"
INVOICE_RECEIVED = (
    "✅ *Solicitud Recibida*\n\n"
    "Hemos recibido tu solicitud. Tu factura será enviada en un plazo máximo de 24 hrs. "
    "¡Gracias por tu compra! 🥩"
)

INACTIVITY_WARNING = (
    "⚠️ *Aviso de inactividad*\n\n"
    "Su sesión está por expirar. Si desea continuar con su pedido, "
    "por favor envíe una opción o escriba algo."
)
CLOSING_WINDOW_WARNING = (
    "⚠️ *Aviso de inactividad prolongada*\n\n"
    "Están por pasar 24 horas desde su último mensaje. Después de este tiempo el bot "
    "ya no podrá enviarle notificaciones hasta que usted nos escriba nuevamente."
)
SESSION_EXPIRED = (
    "⏰ *Sesión expirada*\n\n"
    "Su sesión ha expirado por inactividad. Gracias por contactarnos. "
    "Escriba *Hola* cuando desee iniciar un nuevo pedido."
)

UNSUPPORTED_CONTENT = {
    "image": "Lo siento aun no tengo soporte para leer Imágenes",
    "document": "Lo siento aun no tengo soporte para leer Documentos",
    "location": "Lo siento aun no tengo soporte para leer Ubicaciones",
    "contacts": "Lo siento aun no tengo soporte para leer Contactos",
    "sticker": "Lo siento aun no tengo soporte para leer Stickers",
    "audio": "Lo siento aun no tengo soporte para escuchar Audios",
    "voice": "Lo siento aun no tengo soporte para escuchar Audios",
    "video": "Lo siento aun no tengo soporte para ver Videos",
}

# ──────────────────────────────────────────────────────────────
#  Formatting helpers
# ──────────────────────────────────────────────────────────────


def format_hour(hour: int) -> str:
    """16 -> '4:00 PM'."""
    suffix = "AM" if hour % 24 < 12 else "PM"
    return f"{hour % 12 or 12}:00 {suffix}"


def greeting(customer: Optional[Customer]) -> str:
    if customer and customer.name.strip():
        return WELCOME_BACK.format(name=customer.name)
    return WELCOME


def business_info_text(info: dict[str, str]) -> str:
    return (
        "ℹ️ *Información de la Carnicería*\n\n"
        f"📍 *Dirección:*\n{info['address']}\n\n"
        f"📞 *Teléfono:*\n{info['phone']}\n\n"
        f"🕐 *Horarios:*\n{info['hours']}\n\n"
        f"🚚 *Entregas a domicilio*\nTiempo estimado: {info['delivery_time']}\n\n"
        "¿Necesitas algo más?"
    )


def order_prompt(name: Optional[str] = None) -> str:
    if name:
        return (f"Perfecto {name}! 📝\n\nPor favor, escribe tu pedido.\n"
                f"Puedes incluir cantidades y especificaciones.\n\n{ORDER_EXAMPLE}")
    return f"Perfecto! 📝\n\nAhora puedes escribir tu pedido.\nIncluye cantidades y especificaciones.\n\n{ORDER_EXAMPLE}"


def thanks_ask_address(name: str) -> str:
    return f"Gracias {name}! 😊\n\n📍 Ahora, por favor indícame tu dirección de entrega:"


def address_updated_text(address: str) -> str:
    return (f"✅ Dirección actualizada correctamente.\n\n📍 Nueva dirección:\n*{address}*\n\n"
            f"{PAYMENT_QUESTION}")


def order_confirmed_text(folio: str, created_local: str, payment_label: str) -> str:
    return (
        "✅ *¡Pedido confirmado!*\n\n"
        f"📋 Folio: *{folio}*\n"
        f"📅 Fecha: {created_local}\n"
        f"💳 Forma de pago: *{payment_label}*\n\n"
        "Tu pedido está en preparación. Te notificaremos cuando esté en camino.\n\n"
        "¡Gracias por tu preferencia! 🥩"
    )


def billing_summary(billing: BillingData) -> str:
    return (
        f"🏢 *Razón Social:* {billing.razon_social}\n"
        f"📍 *Calle:* {billing.calle}\n"
        f"🔢 *Número:* {billing.numero}\n"
        f"🏘️ *Colonia:* {billing.colonia}\n"
        f"📮 *CP:* {billing.codigo_postal}\n"
        f"📧 *Correo:* {billing.correo}\n"
        f"📑 *Régimen:* {describe_regime(billing.regimen_fiscal)}"
    )


def invoice_request_notification(customer: Customer, note_folio: str, note_total: str,
                                 cfdi_use: str) -> str:
    billing = customer.billing or BillingData()
    return (
        "🔔 *Nueva Solicitud de Factura*\n\n"
        f"👤 *Cliente:* {customer.name} ({customer.customer_id})\n\n"
        "🧾 *Datos de Facturación:*\n"
        f"🏢 Razón Social: {billing.razon_social}\n"
        f"📍 Calle: {billing.calle}\n"
        f"🔢 Número: {billing.numero}\n"
        f"🏘️ Colonia: {billing.colonia}\n"
        f"📮 CP: {billing.codigo_postal}\n"
        f"📧 Correo: {billing.correo}\n"
        f"📑 Régimen: {describe_regime(billing.regimen_fiscal)}\n\n"
        "🛒 *Detalles de la Compra:*\n"
        f"🧾 Folio Nota: {note_folio}\n"
        f"💲 Total: {note_total}\n"
        f"📄 Uso CFDI: {describe_cfdi(cfdi_use)}"
    )


# ──────────────────────────────────────────────────────────────
#  Interactive prompts
# ──────────────────────────────────────────────────────────────

MAIN_MENU_ROWS = [
    (MENU_NEW_ORDER, "🛒 Hacer pedido", "Realiza un nuevo pedido"),
    (MENU_ORDER_STATUS, "📦 Estado de pedido", "Consulta tus pedidos recientes"),
    (MENU_INVOICE, "🧾 Solicitar factura", "Factura tu compra"),
    (MENU_INFO, "ℹ️ Información", "Horarios y ubicación"),
]

PAYMENT_QUESTION = "💳 *Forma de Pago*\n\n¿Cómo deseas pagar tu pedido?"
PAYMENT_BUTTONS = [(PAYMENT_CASH, "💵 Efectivo"), (PAYMENT_CARD, "💳 Tarjeta")]


async def send_main_menu(messenger: ResilientMessenger, to: str,
                         body: Optional[str] = None) -> bool:
    return await messenger.send_list(
        to, body or WELCOME, "Ver Menú", MAIN_MENU_ROWS,
        header="Bienvenido", footer="¿En qué puedo ayudarte hoy?",
    )


async def send_late_order_warning(messenger: ResilientMessenger, to: str, start_hour: int) -> bool:
    body = (
        "⚠️ *Aviso de Horario*\n\n"
        f"Los pedidos son únicamente hasta las {format_hour(start_hour)}.\n"
        "Sin embargo, podemos tomar tu pedido para *surtirlo y entregarlo al día siguiente*.\n\n"
        "¿Deseas continuar?"
    )
    return await messenger.send_buttons(
        to, body, [(LATE_ORDER_CONTINUE, "✅ Continuar"), (LATE_ORDER_CANCEL, "❌ Cancelar")],
    )


async def send_order_summary(messenger: ResilientMessenger, to: str, order_text: str,
                             updated: bool = False) -> bool:
    title = "📋 *Resumen actualizado de tu pedido:*" if updated else "📋 *Resumen de tu pedido:*"
    return await messenger.send_buttons(
        to, f"{title}\n\n{order_text}\n\n¿Qué deseas hacer?",
        [(ORDER_CONFIRM, "✅ Confirmar pedido"), (ORDER_ADD_MORE, "➕ Agregar más")],
    )


async def send_address_confirmation(messenger: ResilientMessenger, to: str,
                                    address: Optional[str]) -> bool:
    body = (
        "📍 *Confirmación de Dirección*\n\n"
        f"Dirección registrada:\n*{address or 'No registrada'}*\n\n"
        "¿Es correcta esta dirección de entrega?"
    )
    return await messenger.send_buttons(
        to, body, [(ADDRESS_CORRECT, "✅ Sí, es correcta"), (ADDRESS_WRONG, "📝 No, cambiar")],
    )


async def send_payment_options(messenger: ResilientMessenger, to: str,
                               body: str = PAYMENT_QUESTION) -> bool:
    return await messenger.send_buttons(to, body, PAYMENT_BUTTONS)


async def send_billing_warning(messenger: ResilientMessenger, to: str) -> bool:
    body = (
        "⚠️ *Aviso Importante*\n\n"
        "Nuestra facturación es diaria, en caso de que tu ticket de compra sea de algún día "
        "pasado no se podrá generar tu factura.\n\n¿Deseas continuar?"
    )
    return await messenger.send_buttons(
        to, body,
        [(BILLING_WARNING_CONTINUE, "✅ Continuar"), (BILLING_WARNING_CANCEL, "❌ Cancelar")],
    )


async def send_regime_list(messenger: ResilientMessenger, to: str) -> bool:
    rows = [(code, code, name) for code, name in TAX_REGIMES.items()]
    return await messenger.send_list(
        to, "📑 *Régimen Fiscal*", "Ver Regímenes", rows,
        header="Selecciona tu régimen fiscal:", footer="Opciones Disponibles",
    )


async def send_cfdi_list(messenger: ResilientMessenger, to: str) -> bool:
    rows = [(code, code, name) for code, name in CFDI_USES.items()]
    return await messenger.send_list(
        to, "📄 *Uso de CFDI*", "Ver Usos", rows,
        header="Selecciona el uso CFDI:", footer="Usos Disponibles",
    )


async def send_billing_confirmation(messenger: ResilientMessenger, to: str,
                                    billing: BillingData) -> bool:
    body = f"🧾 *Confirma tus Datos de Facturación*\n\n{billing_summary(billing)}\n\n¿Son correctos?"
    return await messenger.send_buttons(
        to, body, [(BILLING_CONFIRM, "✅ Confirmar"), (BILLING_CORRECT, "📝 Corregir")],
    )
