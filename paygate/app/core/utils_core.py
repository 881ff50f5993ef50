# -*- coding: utf-8 -*-
# paygate/app/core/utils_core.py
# =============================================================================
# Назначение:
#   Чистые утилиты без FastAPI/SQLAlchemy: суммы в Decimal с точностью
#   актива, время в UTC, HMAC, канонический JSON для подписи вебхуков и
#   идентификаторы сущностей.
#
# Канон Paygate:
#   • Денежные суммы только Decimal. float принимается на входе и сразу
#     приводится через str().
#   • Точность суммы ограничена decimals актива; лишние знаки не
#     округляются молча, это решает вызывающий код.
#   • Время хранится и отдаётся в UTC.
# =============================================================================

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Optional, Union

NumberLike = Union[str, int, float, Decimal]


# -----------------------------------------------------------------------------
# Суммы
# -----------------------------------------------------------------------------
def decimal_from(value: NumberLike) -> Decimal:
    """
    Приводит значение к конечному Decimal.
    Мусорные строки, NaN и бесконечности дают ValueError.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"not a number: {value!r}") from None
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def smallest_unit(decimals: int) -> Decimal:
    """Наименьшая единица актива: 10^-decimals."""
    return Decimal(1).scaleb(-int(decimals))


def quantize_decimal(value: NumberLike, decimals: int = 8) -> Decimal:
    """Обрезает сумму до decimals знаков (ROUND_DOWN, никогда вверх)."""
    return decimal_from(value).quantize(smallest_unit(decimals), rounding=ROUND_DOWN)


def format_decimal_str(value: NumberLike, decimals: int = 18) -> str:
    """
    Сумма для JSON: без экспоненты и без хвостовых нулей.
        format_decimal_str("100.000") -> "100"
        format_decimal_str("0.00000001") -> "0.00000001"
    """
    text = f"{quantize_decimal(value, decimals):f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


# -----------------------------------------------------------------------------
# Время
# -----------------------------------------------------------------------------
def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """
    Naive datetime считаем UTC. SQLite отдаёт даты без tzinfo даже для
    DateTime(timezone=True), PostgreSQL отдаёт aware.
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def iso_utc(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 в UTC с суффиксом Z или None."""
    aware = ensure_aware(value)
    if aware is None:
        return None
    return aware.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# -----------------------------------------------------------------------------
# Хэши и сериализация
# -----------------------------------------------------------------------------
def _as_bytes(data: Union[str, bytes]) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def sha256_hex(data: Union[str, bytes]) -> str:
    return hashlib.sha256(_as_bytes(data)).hexdigest()


def hmac_sha256_hex(secret: Union[str, bytes], message: Union[str, bytes]) -> str:
    return hmac.new(_as_bytes(secret), _as_bytes(message), hashlib.sha256).hexdigest()


def canonical_json(payload: Any) -> str:
    """
    Детерминированная сериализация: sort_keys и компактные разделители.
    Подписываются ровно эти байты, формат не менять.
    """
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


def new_id() -> str:
    """Публичный идентификатор сущности (uuid4 hex, 32 символа)."""
    return uuid.uuid4().hex


__all__ = [
    "NumberLike",
    "decimal_from",
    "smallest_unit",
    "quantize_decimal",
    "format_decimal_str",
    "utcnow",
    "ensure_aware",
    "iso_utc",
    "sha256_hex",
    "hmac_sha256_hex",
    "canonical_json",
    "new_id",
]
