"""
Runtime business configuration.

Values live in the store's key/value table so staff can change them without
a redeploy. Anything missing or unparsable falls back to the YAML settings.
"""
from __future__ import annotations

from typing import Optional

import structlog

from config.settings import Settings, get_settings
from database.store_base import BaseBotStore

logger = structlog.get_logger()


class ConfigKeys:
    LATE_ORDER_START_HOUR = "Orders.LateOrderWarningStartHour"
    SESSION_TIMEOUT_MINUTES = "Session.BotTimeoutMinutes"
    SESSION_WARNING_MINUTES = "Session.BotWarningMinutes"
    PRINTER_NAME = "Printers.Name"
    BUSINESS_HOURS = "Negocio_Horarios"
    BUSINESS_ADDRESS = "Negocio_Direccion"
    BUSINESS_PHONE = "Negocio_Telefono"
    DELIVERY_TIME = "Negocio_TiempoEntrega"


class RuntimeConfig:

    def __init__(self, store: BaseBotStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    async def _text(self, key: str, default: str) -> str:
        value = await self.store.get_config_value(key)
        if value is None or not value.strip():
            return default
        return value.strip()

    async def _int(self, key: str, default: int) -> int:
        value = await self.store.get_config_value(key)
        if value is None or not value.strip():
            return default
        try:
            return int(value.strip())
        except ValueError:
            logger.warning("config_value_not_integer", key=key, value=value)
            return default

    async def late_order_start_hour(self) -> int:
        return await self._int(ConfigKeys.LATE_ORDER_START_HOUR,
                               self.settings.business.late_order_start_hour)

    async def session_timeout_minutes(self) -> int:
        return await self._int(ConfigKeys.SESSION_TIMEOUT_MINUTES,
                               self.settings.session.timeout_minutes)

    async def session_warning_minutes(self) -> int:
        return await self._int(ConfigKeys.SESSION_WARNING_MINUTES,
                               self.settings.session.warning_minutes)

    async def printer_name(self) -> str:
        return await self._text(ConfigKeys.PRINTER_NAME, self.settings.business.printer_name)

    async def business_info(self) -> dict[str, str]:
        business = self.settings.business
        return {
            "hours": await self._text(ConfigKeys.BUSINESS_HOURS, business.hours),
            "address": await self._text(ConfigKeys.BUSINESS_ADDRESS, business.address),
            "phone": await self._text(ConfigKeys.BUSINESS_PHONE, business.phone),
            "delivery_time": await self._text(ConfigKeys.DELIVERY_TIME, business.delivery_time),
        }
