# -*- coding: utf-8 -*-
# paygate/app/core/errors_core.py
# =============================================================================
# Назначение кода:
#   • Единый слой доменных исключений Paygate.
#   • Канонические коды ошибок для мерчантов/логов.
#   • Унифицированные JSON-ответы для FastAPI.
#
# Канон / инварианты Paygate:
#   • Сервисы бросают ТОЛЬКО доменные исключения из этого модуля.
#   • Таксономия:
#       - конфигурация (ConfigurationError) фатальна на старте;
#       - валидация (ValidationError, UnsupportedAsset, InvalidExtendedKey)
#         отклоняется синхронно и никогда не ретраится;
#       - конфликты уникальности (tx_hash, индекс деривации) обрабатываются
#         сервисами как идемпотентный no-op и сюда не доходят;
#       - внешние сбои (DownstreamError) логируются и ретраятся по политике
#         компонента, не откатывая уже зафиксированный ledger;
#       - порча секрета (CorruptedSecret) выводит из строя только свой кошелёк.
#   • Клиенту никогда не утекают технические детали (stack trace, DSN, ключи).
#
# ИИ-защита:
#   • Любая неизвестная ошибка логируется как INTERNAL, наружу уходит
#     безопасное "internal_error" без деталей.
#   • HTTPException пропускается, но приводится к стандартному JSON-формату.
#
# Запреты:
#   • Не включать сюда бизнес-логику.
#   • Не логировать здесь секреты/ключевой материал.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, cast

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from paygate.app.core.logging_core import get_logger

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Базовая доменная ошибка
# -----------------------------------------------------------------------------
@dataclass
class PaygateError(Exception):
    """
    Базовое доменное исключение Paygate.

    Поля:
      • code: стабильный машинный код ошибки (snake_case).
      • message: короткое безопасное сообщение для клиента.
      • http_status: HTTP код по умолчанию.
      • details: безопасные детали (без секретов), опционально.
    """

    code: str
    message: str
    http_status: int = status.HTTP_400_BAD_REQUEST
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """Готовит JSON-ответ для клиента."""
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# -----------------------------------------------------------------------------
# Конфигурация / запуск
# -----------------------------------------------------------------------------
class ConfigurationError(PaygateError):
    """Фатальная ошибка конфигурации (короткий ключ vault, нет стратегии цепочки)."""

    def __init__(
        self,
        message: str = "Service is misconfigured.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="configuration_error",
            message=message,
            http_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details or {},
        )


# -----------------------------------------------------------------------------
# Валидация / поиск / состояние
# -----------------------------------------------------------------------------
class ValidationError(PaygateError):
    """Некорректные входные данные/состояние."""

    def __init__(
        self,
        message: str = "Invalid data.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="validation_error",
            message=message,
            http_status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details or {},
        )


class UnsupportedAsset(ValidationError):
    """Пара (актив, сеть) не поддерживается реестром."""

    def __init__(
        self,
        message: str = "Unsupported currency/network combination.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.code = "unsupported_asset"


class NotFoundError(PaygateError):
    """Ресурс не найден (инвойс, доставка, кошелёк по id)."""

    def __init__(
        self,
        message: str = "Resource not found.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="not_found",
            message=message,
            http_status=status.HTTP_404_NOT_FOUND,
            details=details or {},
        )


class InvalidStateError(PaygateError):
    """Переход запрещён машиной состояний (отмена оплаченного, ретрай не-FAILED)."""

    def __init__(
        self,
        message: str = "Operation is not allowed in the current state.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="invalid_state",
            message=message,
            http_status=status.HTTP_409_CONFLICT,
            details=details or {},
        )


class IdempotencyConflictError(PaygateError):
    """Повтор Idempotency-Key с другим содержимым запроса."""

    def __init__(
        self,
        message: str = "Idempotency conflict.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="idempotency_conflict",
            message=message,
            http_status=status.HTTP_409_CONFLICT,
            details=details or {},
        )


class SignatureError(PaygateError):
    """Подпись входящего уведомления не совпала."""

    def __init__(
        self,
        message: str = "Invalid signature.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="invalid_signature",
            message=message,
            http_status=status.HTTP_401_UNAUTHORIZED,
            details=details or {},
        )


# -----------------------------------------------------------------------------
# Кошельки / деривация / vault
# -----------------------------------------------------------------------------
class WalletNotFound(PaygateError):
    """Нет мастер-кошелька для пары (актив, сеть) или по id."""

    def __init__(
        self,
        message: str = "No active wallet/KMS key for this asset and network.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="wallet_not_found",
            message=message,
            http_status=status.HTTP_409_CONFLICT,
            details=details or {},
        )


class WalletNotActive(PaygateError):
    """Мастер-кошелёк не в статусе ACTIVE."""

    def __init__(
        self,
        message: str = "Wallet is not active.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="wallet_not_active",
            message=message,
            http_status=status.HTTP_409_CONFLICT,
            details=details or {},
        )


class InvalidExtendedKey(PaygateError):
    """xpub не прошёл проверку checksum/формата/версии."""

    def __init__(
        self,
        message: str = "Extended public key is invalid.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="invalid_extended_key",
            message=message,
            http_status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details or {},
        )


class UnsupportedChainFamily(PaygateError):
    """Для семейства цепочек нет стратегии деривации."""

    def __init__(
        self,
        message: str = "Unsupported chain family.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="unsupported_chain_family",
            message=message,
            http_status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details or {},
        )


class HardenedDerivationRequired(PaygateError):
    """Полностью hardened-деривация недоступна по xpub: адрес выдаёт custody."""

    def __init__(
        self,
        message: str = "This chain family requires custody-side derivation.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="hardened_derivation_required",
            message=message,
            http_status=status.HTTP_409_CONFLICT,
            details=details or {},
        )


class CorruptedSecret(PaygateError):
    """Шифротекст vault повреждён, обрезан или зашифрован другим ключом."""

    def __init__(
        self,
        message: str = "Stored secret cannot be decrypted.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="corrupted_secret",
            message=message,
            http_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details or {},
        )


# -----------------------------------------------------------------------------
# Нотификации / внешние сервисы
# -----------------------------------------------------------------------------
class UnrecognizedAddress(PaygateError):
    """Уведомление по чужому адресу: логируем и игнорируем, без ретраев."""

    def __init__(
        self,
        message: str = "Address is not managed by this gateway.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="unrecognized_address",
            message=message,
            http_status=status.HTTP_200_OK,
            details=details or {},
        )


class DownstreamError(PaygateError):
    """Сбой KMS, провайдера подписок или эндпоинта мерчанта."""

    def __init__(
        self,
        message: str = "Upstream service is unavailable.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            code="downstream_error",
            message=message,
            http_status=status.HTTP_502_BAD_GATEWAY,
            details=details or {},
        )


# -----------------------------------------------------------------------------
# Нормализация исключений → (status_code, payload)
# -----------------------------------------------------------------------------
def normalize_exception(exc: BaseException) -> Tuple[int, Dict[str, Any]]:
    """
    Приводит произвольное исключение к каноническому HTTP-ответу.

    Правила:
      • PaygateError: свой http_status + to_payload().
      • HTTPException: status_code + {"error": "http_error", "message", ...}.
      • Любая другая: 500 + {"error": "internal_error"} (без деталей).
    """
    if isinstance(exc, PaygateError):
        return exc.http_status, exc.to_payload()

    if isinstance(exc, HTTPException):
        details: Dict[str, Any] = {}
        if isinstance(exc.detail, str):
            msg = exc.detail
        elif isinstance(exc.detail, dict):
            details = cast(Dict[str, Any], exc.detail)
            msg = details.get("message") or details.get("detail") or "HTTP error."
        else:
            msg = "HTTP error."

        payload: Dict[str, Any] = {"error": "http_error", "message": msg}
        if details:
            payload["details"] = details
        return exc.status_code, payload

    logger.exception("Unhandled exception", extra={"error_type": type(exc).__name__})
    return (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"error": "internal_error", "message": "Internal server error."},
    )


# -----------------------------------------------------------------------------
# FastAPI-хендлеры исключений
# -----------------------------------------------------------------------------
async def paygate_error_handler(request: Request, exc: PaygateError) -> JSONResponse:
    """Обработчик PaygateError: структурированный JSON с кодом ошибки."""
    status_code, payload = normalize_exception(exc)
    logger.warning(
        "PaygateError handled",
        extra={"path": request.url.path, "error": exc.code, "status": status_code},
    )
    return JSONResponse(status_code=status_code, content=payload)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Обработчик «на всё остальное».
    Логируем тип исключения, клиенту отдаём только internal_error.
    """
    status_code, payload = normalize_exception(exc)
    logger.error(
        "Unhandled exception handled by generic handler",
        extra={"path": request.url.path, "status": status_code, "exc_type": type(exc).__name__},
    )
    return JSONResponse(status_code=status_code, content=payload)


def setup_exception_handlers(app: FastAPI) -> None:
    """
    Подключает обработчики исключений. Вызывать один раз в create_app().
    """
    app.add_exception_handler(PaygateError, paygate_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
    logger.info("Exception handlers registered for PaygateError/Exception")


# =============================================================================
# Пояснения «для чайника»:
#   • Если в сервисе что-то пошло не так по бизнес-логике, бросайте
#     наследника PaygateError, а не голый HTTPException: мерчант увидит
#     стабильный error-код и message.
#   • UnrecognizedAddress не является ошибкой для провайдера: ингестор
#     превращает его в ответ {"status": "ignored"} c кодом 200.
# =============================================================================

__all__ = [
    "PaygateError",
    "ConfigurationError",
    "ValidationError",
    "UnsupportedAsset",
    "NotFoundError",
    "InvalidStateError",
    "IdempotencyConflictError",
    "SignatureError",
    "WalletNotFound",
    "WalletNotActive",
    "InvalidExtendedKey",
    "UnsupportedChainFamily",
    "HardenedDerivationRequired",
    "CorruptedSecret",
    "UnrecognizedAddress",
    "DownstreamError",
    "normalize_exception",
    "setup_exception_handlers",
]
