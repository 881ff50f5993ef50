# -*- coding: utf-8 -*-
# paygate/app/core/logging_core.py
# =============================================================================
# Назначение кода:
#   Логирование Paygate: хэндлеры и форматы, поля корреляции (запрос,
#   инвойс, доставка вебхука, задача планировщика) и маскирование секретов.
#
# Канон/инварианты:
#   • prod: JSON (python-json-logger), local/dev: читаемая строка.
#   • Поля корреляции живут в одном contextvar; log_context() ставит их на
#     время блока и возвращает прежние значения на выходе.
#   • Сид-фразы, хэндлы custody и секреты вебхуков в лог не попадают:
#     одноимённые extra-поля заменяются маской, значения секретов из
#     настроек вырезаются из текста сообщения.
#
# Запреты:
#   • Никаких сетевых/блокирующих операций в форматерах и фильтрах.
# =============================================================================

from __future__ import annotations

import contextvars
import logging
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from pythonjsonlogger.json import JsonFormatter
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from paygate.app.core.config_core import Settings, get_settings

MASK = "****"

# Имя аргумента → короткое имя поля записи.
CONTEXT_FIELDS: Dict[str, str] = {
    "request_id": "rid",
    "idempotency_key": "idk",
    "invoice_id": "iid",
    "delivery_id": "did",
    "job": "job",
}

# extra-поля, которые никогда не пишутся как есть.
SENSITIVE_EXTRA_KEYS = frozenset(
    {"mnemonic", "seed", "secret", "signing_secret", "webhook_secret", "custody_handle", "api_key"}
)

# Настройки, значения которых маскируются в тексте сообщений.
SECRET_SETTINGS = (
    "VAULT_ENCRYPTION_KEY",
    "DATABASE_URL",
    "CHAIN_SOURCE_API_KEY",
    "CHAIN_QUERY_API_KEY",
    "KMS_API_KEY",
    "ADMIN_API_KEY",
    "CHAIN_WEBHOOK_HMAC_SECRET",
)

_context: contextvars.ContextVar[Dict[str, str]] = contextvars.ContextVar("paygate_log_context", default={})


# -----------------------------------------------------------------------------
# Контекст корреляции
# -----------------------------------------------------------------------------
def _merged(**fields: Optional[str]) -> Dict[str, str]:
    current = dict(_context.get())
    for name, value in fields.items():
        short = CONTEXT_FIELDS.get(name)
        if short is None:
            raise TypeError(f"unknown log context field: {name}")
        if value is not None:
            current[short] = str(value)
    return current


def set_request_context(
    *,
    request_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    invoice_id: Optional[str] = None,
    delivery_id: Optional[str] = None,
    job: Optional[str] = None,
) -> None:
    """Дописать поля корреляции в контекст текущей задачи (None не трогает поле)."""
    _context.set(
        _merged(
            request_id=request_id,
            idempotency_key=idempotency_key,
            invoice_id=invoice_id,
            delivery_id=delivery_id,
            job=job,
        )
    )


def clear_request_context() -> None:
    _context.set({})


@contextmanager
def log_context(**fields: Optional[str]) -> Iterator[None]:
    """
    Поля корреляции на время блока:
        with log_context(delivery_id=delivery.id):
            ...
    """
    token = _context.set(_merged(**fields))
    try:
        yield
    finally:
        _context.reset(token)


def current_context() -> Dict[str, str]:
    return dict(_context.get())


# -----------------------------------------------------------------------------
# Фильтры
# -----------------------------------------------------------------------------
class ContextFilter(logging.Filter):
    """Поля env/svc и поля корреляции; отсутствующие заполняются "-"."""

    def __init__(self, env: str, service: str) -> None:
        super().__init__()
        self._env = env
        self._svc = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.env = getattr(record, "env", self._env)
        record.svc = getattr(record, "svc", self._svc)
        ctx = _context.get()
        for short in CONTEXT_FIELDS.values():
            if not hasattr(record, short):
                setattr(record, short, ctx.get(short, "-"))
        return True


class RedactingFilter(logging.Filter):
    """Маскирует чувствительные extra-поля и значения секретов из настроек."""

    def __init__(self, secrets: List[str]) -> None:
        super().__init__()
        # Длинные первыми: DSN может содержать пароль как подстроку.
        self._secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedactingFilter":
        values = [getattr(settings, key, None) for key in SECRET_SETTINGS]
        return cls([v for v in values if isinstance(v, str)])

    def _scrub(self, text: str) -> str:
        for secret in self._secrets:
            if secret in text:
                text = text.replace(secret, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        for key in SENSITIVE_EXTRA_KEYS.intersection(record.__dict__):
            if record.__dict__[key] is not None:
                record.__dict__[key] = MASK
        if isinstance(record.msg, str):
            record.msg = self._scrub(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(self._scrub(a) if isinstance(a, str) else a for a in record.args)
        return True


# -----------------------------------------------------------------------------
# Форматеры
# -----------------------------------------------------------------------------
class DevFormatter(logging.Formatter):
    """
    12:00:00 INFO  paygate.app.services.ledger_service [rid=ab12 iid=01H...] invoice paid
    Пустые поля корреляции не печатаются.
    """

    def __init__(self) -> None:
        super().__init__(fmt="%(asctime)s %(levelname)-5s %(name)s%(ctx)s %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        pairs = [
            f"{short}={getattr(record, short)}"
            for short in CONTEXT_FIELDS.values()
            if getattr(record, short, "-") != "-"
        ]
        record.ctx = f" [{' '.join(pairs)}]" if pairs else ""
        return super().format(record)


class PaygateJsonFormatter(JsonFormatter):
    """JSON для агрегатора: короткие имена ключей, пустые поля корреляции опущены."""

    _RENAMES = {"asctime": "time", "levelname": "level", "svc": "service", "name": "logger", "message": "msg"}

    def process_log_record(self, log_record: Dict[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, value in super().process_log_record(log_record).items():
            if key in CONTEXT_FIELDS.values() and value == "-":
                continue
            out[self._RENAMES.get(key, key)] = value
        return out


def _json_formatter() -> logging.Formatter:
    fields = " ".join(f"%({name})s" for name in ("asctime", "levelname", "svc", "name", "env", *CONTEXT_FIELDS.values()))
    return PaygateJsonFormatter(fmt=f"{fields} %(message)s")


# -----------------------------------------------------------------------------
# Настройка
# -----------------------------------------------------------------------------
def _level(settings: Settings) -> int:
    if settings.DEBUG:
        return logging.DEBUG
    level = logging.getLevelName((settings.LOG_LEVEL or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Корневой логгер: консоль всегда, файл .local_artifacts/logs/paygate.log
    только в local. uvicorn/fastapi пишут через корень, httpx только WARNING.
    """
    cfg = settings or get_settings()
    env = cfg.env_normalized
    level = _level(cfg)
    filters: List[logging.Filter] = [ContextFilter(env, cfg.PROJECT_NAME), RedactingFilter.from_settings(cfg)]

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    handlers[0].setFormatter(DevFormatter() if env in ("local", "dev") else _json_formatter())
    if env == "local":
        logs_dir = Path(".local_artifacts") / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logs_dir / "paygate.log", encoding="utf-8")
        file_handler.setFormatter(DevFormatter())
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    for handler in handlers:
        for flt in filters:
            handler.addFilter(flt)
        root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        lib_logger = logging.getLogger(name)
        lib_logger.handlers.clear()
        lib_logger.setLevel(level)
        lib_logger.propagate = True
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if cfg.DEBUG else logging.WARNING)

    logging.getLogger(__name__).info(
        "logging initialized", extra={"level": logging.getLevelName(level), "handlers": len(handlers)}
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


# -----------------------------------------------------------------------------
# ASGI-middleware корреляции
# -----------------------------------------------------------------------------
class CorrelationIdMiddleware:
    """
    X-Request-ID (или новый uuid4 hex) и Idempotency-Key запроса попадают в
    контекст логов; X-Request-ID возвращается в ответе.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        rid = headers.get("x-request-id") or uuid.uuid4().hex

        async def send_with_rid(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).append("x-request-id", rid)
            await send(message)

        with log_context(request_id=rid, idempotency_key=headers.get("idempotency-key")):
            await self.app(scope, receive, send_with_rid)


setup_logging()

__all__ = [
    "CONTEXT_FIELDS",
    "SENSITIVE_EXTRA_KEYS",
    "ContextFilter",
    "CorrelationIdMiddleware",
    "RedactingFilter",
    "clear_request_context",
    "current_context",
    "get_logger",
    "log_context",
    "set_request_context",
    "setup_logging",
]
