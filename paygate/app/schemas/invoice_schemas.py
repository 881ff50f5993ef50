# -*- coding: utf-8 -*-
# paygate/app/schemas/invoice_schemas.py
# =============================================================================
# Назначение кода:
#   DTO инвойсов мерчанта: запрос на создание и публичное представление.
#
# Канон / инварианты:
#   • amount принимается строкой или числом и сразу становится Decimal;
#     проверку точности актива выполняет InvoiceService.
#   • notify_url / redirect_url только http(s).
# =============================================================================

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from paygate.app.core.utils_core import decimal_from
from paygate.app.schemas.common_schemas import ApiModel


def _http_url(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if not value.lower().startswith(("http://", "https://")):
        raise ValueError("URL must use http or https")
    return value


class InvoiceCreateIn(ApiModel):
    amount: Decimal = Field(..., description="Сумма в единицах актива")
    currency: str = Field(..., min_length=1, max_length=16)
    network: str = Field(..., min_length=1, max_length=32)
    order_id: Optional[str] = Field(None, max_length=128)
    description: Optional[str] = Field(None, max_length=1024)
    notify_url: Optional[str] = Field(None, max_length=1024)
    redirect_url: Optional[str] = Field(None, max_length=1024)
    custom_data: Optional[Dict[str, Any]] = None
    ttl_sec: Optional[int] = Field(None, gt=0, le=7 * 24 * 3600)

    @field_validator("amount", mode="before")
    @classmethod
    def _v_amount(cls, value: Any) -> Decimal:
        amount = decimal_from(value)
        if amount <= 0:
            raise ValueError("amount must be positive")
        return amount

    @field_validator("notify_url", "redirect_url")
    @classmethod
    def _v_url(cls, value: Optional[str]) -> Optional[str]:
        return _http_url(value)


class InvoiceOut(BaseModel):
    id: str
    merchant_id: str
    order_id: Optional[str] = None
    amount: str
    amount_paid: str
    currency: str
    network: str
    status: str
    deposit_address: Optional[str] = None
    qr_data: Optional[str] = None
    payment_url: Optional[str] = None
    description: Optional[str] = None
    redirect_url: Optional[str] = None
    custom_data: Optional[Dict[str, Any]] = None
    expires_at: Optional[str] = None
    paid_at: Optional[str] = None
    created_at: Optional[str] = None


class InvoiceCancelOut(BaseModel):
    invoice_id: str
    status: str
    applied: bool


__all__ = ["InvoiceCancelOut", "InvoiceCreateIn", "InvoiceOut"]
