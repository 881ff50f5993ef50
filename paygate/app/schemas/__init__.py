# -*- coding: utf-8 -*-
# paygate/app/schemas/__init__.py
# =============================================================================
# Назначение кода:
#   Фасад Pydantic-схем API: единый импорт
#       from paygate.app.schemas import InvoiceCreateIn, DeliveryOut, ...
#
# Запреты:
#   • Нет бизнес-логики, сетевых вызовов и доступа к БД.
# =============================================================================

from __future__ import annotations

from .common_schemas import ApiModel, ErrorResponse, HealthOut, OkResponse
from .invoice_schemas import InvoiceCancelOut, InvoiceCreateIn, InvoiceOut
from .wallet_schemas import WalletCreateIn, WalletOut
from .webhook_schemas import ChainNotificationAck, DeliveryListOut, DeliveryOut, DeliveryStatsOut

__all__ = [
    "ApiModel",
    "ErrorResponse",
    "HealthOut",
    "OkResponse",
    "InvoiceCancelOut",
    "InvoiceCreateIn",
    "InvoiceOut",
    "WalletCreateIn",
    "WalletOut",
    "ChainNotificationAck",
    "DeliveryListOut",
    "DeliveryOut",
    "DeliveryStatsOut",
]
