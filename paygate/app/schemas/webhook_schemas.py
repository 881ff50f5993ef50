# -*- coding: utf-8 -*-
# paygate/app/schemas/webhook_schemas.py
# =============================================================================
# Назначение кода:
#   DTO вебхуков: ответ провайдеру цепочек на уведомление и представление
#   исходящих доставок мерчанту (статистика, dead-letter, ручной retry).
# =============================================================================

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class ChainNotificationAck(BaseModel):
    status: str = Field(..., description="applied | duplicate | pending | ignored")
    invoice_id: Optional[str] = None
    invoice_status: Optional[str] = None
    applied: bool = False
    detail: Optional[str] = None


class DeliveryOut(BaseModel):
    id: str
    url: str
    event: str
    status: str
    attempt_count: int
    max_attempts: int
    merchant_id: Optional[str] = None
    invoice_id: Optional[str] = None
    next_retry_at: Optional[str] = None
    last_attempt_at: Optional[str] = None
    delivered_at: Optional[str] = None
    last_status_code: Optional[int] = None
    last_error: Optional[str] = None


class DeliveryListOut(BaseModel):
    items: List[DeliveryOut] = Field(default_factory=list)


class DeliveryStatsOut(BaseModel):
    timeframe: str
    total: int
    sent: int
    failed: int
    pending: int
    success_rate: Optional[float] = None
    avg_attempts: float = 0.0


__all__ = ["ChainNotificationAck", "DeliveryListOut", "DeliveryOut", "DeliveryStatsOut"]
