# -*- coding: utf-8 -*-
# paygate/app/schemas/common_schemas.py
# =============================================================================
# Назначение кода:
#   Базовые Pydantic-схемы API: форма ошибки, простой OK-ответ, health.
#
# Канон / инварианты:
#   • Денежные величины наружу отдаются только строкой (без float).
#
# Запреты:
#   • Нет бизнес-логики: только декларативные DTO.
# =============================================================================

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiModel(BaseModel):
    """База входных схем: лишние поля запрещены, пробелы обрезаются."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

class ErrorResponse(BaseModel):
    error: str = Field(..., description="Машинный код ошибки (snake_case)")
    message: str = Field(..., description="Описание для человека")
    details: Optional[Dict[str, Any]] = None

class OkResponse(BaseModel):
    ok: bool = True

class HealthOut(BaseModel):
    status: str
    version: str
    env: str
    db: bool
    unmonitored_active_invoices: Optional[int] = None
    webhook_queue_depth: Optional[int] = None
    webhook_worker_running: Optional[bool] = None
    notifications: Optional[Dict[str, Any]] = None
    scheduler: List[Dict[str, Any]] = Field(default_factory=list)

__all__ = ["ApiModel", "ErrorResponse", "HealthOut", "OkResponse"]
