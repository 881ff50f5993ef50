# -*- coding: utf-8 -*-
# paygate/app/core/security_core.py
# =============================================================================
# Назначение кода:
#   Слой безопасности Paygate:
#   • серверный X-Admin-Api-Key для админ-ручек (кошельки);
#   • проверка HMAC-подписи входящих уведомлений провайдера цепочек;
#   • подпись исходящих вебхуков мерчантам (X-Signature: sha256=<hex>).
#
# Канон / инварианты:
#   • Сравнение секретов только через hmac.compare_digest.
#   • Подпись считается по сырым байтам тела, ровно тем, что ушли в сеть.
#   • Если CHAIN_WEBHOOK_HMAC_SECRET не задан, входящие уведомления не
#     проверяются (провайдер без подписи); в prod об этом пишет WARN.
#
# Запреты:
#   • Никаких денег и балансов, только «кто ты» и «подлинно ли сообщение».
#   • Секреты не логируются.
# =============================================================================

from __future__ import annotations

import hmac
from typing import Optional, Union

from fastapi import Header, HTTPException, status

from paygate.app.core.config_core import get_settings
from paygate.app.core.errors_core import SignatureError
from paygate.app.core.logging_core import get_logger
from paygate.app.core.utils_core import hmac_sha256_hex

logger = get_logger(__name__)
settings = get_settings()

SIGNATURE_SCHEME = "sha256"
CHAIN_SIGNATURE_HEADER = "x-webhook-signature"


def sign_payload(secret: Union[str, bytes], body: bytes) -> str:
    """Значение заголовка X-Signature для исходящего вебхука."""
    return f"{SIGNATURE_SCHEME}={hmac_sha256_hex(secret, body)}"


def verify_signature(secret: Union[str, bytes], body: bytes, header_value: Optional[str]) -> bool:
    """
    Проверка подписи. Принимаем «sha256=<hex>» и голый hex: разные
    провайдеры присылают оба варианта.
    """
    if not header_value:
        return False
    provided = header_value.strip()
    if provided.lower().startswith(f"{SIGNATURE_SCHEME}="):
        provided = provided.split("=", 1)[1]
    expected = hmac_sha256_hex(secret, body)
    return hmac.compare_digest(expected, provided.lower())


def verify_chain_webhook(body: bytes, header_value: Optional[str], secret: Optional[str] = None) -> None:
    """
    Проверка входящего уведомления провайдера цепочек.
    Бросает SignatureError (401), если секрет настроен и подпись не сошлась.
    """
    key = secret if secret is not None else settings.CHAIN_WEBHOOK_HMAC_SECRET
    if not key:
        return
    if not verify_signature(key, body, header_value):
        logger.warning("Chain webhook signature mismatch")
        raise SignatureError("Invalid webhook signature.")


async def get_admin_api_key_guard(
    x_admin_api_key: Optional[str] = Header(
        default=None,
        convert_underscores=False,
        alias="X-Admin-Api-Key",
    ),
) -> str:
    """
    Серверный допуск к админ-ручкам: валидный X-Admin-Api-Key.
    Ключ не настроен или не совпал → 401.
    """
    admin_key = get_settings().ADMIN_API_KEY
    if admin_key and x_admin_api_key:
        if hmac.compare_digest(admin_key, x_admin_api_key):
            return x_admin_api_key

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Admin API key required",
    )


__all__ = [
    "SIGNATURE_SCHEME",
    "CHAIN_SIGNATURE_HEADER",
    "sign_payload",
    "verify_signature",
    "verify_chain_webhook",
    "get_admin_api_key_guard",
]
