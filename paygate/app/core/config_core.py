# -*- coding: utf-8 -*-
# paygate/app/core/config_core.py
# =============================================================================
# Назначение:
#   • Единый конфигурационный модуль Paygate (FastAPI + SQLAlchemy async).
#   • Канонический источник всех настроек (БД, vault, цепочки, вебхуки,
#     подтверждения, внешние провайдеры).
#
# Канон / инварианты Paygate:
#   1) Секрет хранилища ключей (VAULT_ENCRYPTION_KEY) задаётся только через ENV
#      и обязан содержать не менее 32 байт. Без него процесс не стартует
#      (проверка в system_locks.init_system_locks).
#   2) Пороги подтверждений задаются по семейству цепочек, а не одной
#      глобальной константой.
#   3) Допуск сравнения сумм: per-asset (10^-decimals), переопределяется
#      через ASSET_TOLERANCE_OVERRIDES ("USDT=0.000001,BTC=0.00000001").
#   4) Расписание ретраев вебхуков мерчантам: фиксированная таблица задержек.
#
# ИИ-защита / самодиагностика:
#   • configure_decimal_context() настраивает Decimal (ROUND_DOWN + запас
#     точности под 18 знаков EVM-активов).
#   • initialize_runtime() проверяет DSN, создаёт локальные артефакты, выводит
#     предупреждения по отсутствующим ключам провайдеров.
#
# Запреты:
#   • Никаких сетевых вызовов при загрузке настроек.
#   • Секреты не попадают в debug_dump().
# =============================================================================

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_DOWN, getcontext
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Вспомогательные утилиты (локальные, без сетевых вызовов)
# =============================================================================


def _parse_csv(value: object) -> List[str]:
    """Преобразует CSV-строку 'a,b,c' в ['a', 'b', 'c'] (пробелы обрезаются)."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(x).strip() for x in value if str(x).strip()]
    s = str(value).strip()
    if not s:
        return []
    return [item.strip() for item in s.split(",") if item.strip()]


def _parse_kv_decimals(value: object) -> Dict[str, Decimal]:
    """
    'USDT=0.000001,BTC=0.00000001' → {'USDT': Decimal('0.000001'), ...}.
    Ключи приводятся к верхнему регистру. Мусорные элементы: ValueError.
    """
    if isinstance(value, dict):
        return {str(k).upper(): Decimal(str(v)) for k, v in value.items()}
    out: Dict[str, Decimal] = {}
    for chunk in _parse_csv(value):
        if "=" not in chunk:
            raise ValueError(f"ожидается KEY=VALUE, получено {chunk!r}")
        key, raw = chunk.split("=", 1)
        try:
            out[key.strip().upper()] = Decimal(raw.strip())
        except InvalidOperation:
            raise ValueError(f"некорректное число в {chunk!r}") from None
    return out


# =============================================================================
# Док-описания полей (используются в Swagger и как подсказки «для чайника»)
# =============================================================================


class _Doc:
    # Приложение
    PROJECT_NAME = "Имя проекта (отображается в Swagger/health)."
    ENV = "Окружение: production/dev/local (нормализуется в prod/dev/local)."
    DEBUG = "Расширенные логи и трассировки (только для dev/local)."
    APP_VERSION = "Версия приложения (попадает в /health)."

    APP_HOST = "Адрес для uvicorn (обычно 0.0.0.0)."
    APP_PORT = "Порт для uvicorn (например, 8000)."
    APP_RELOAD = "Горячая перезагрузка (для разработки)."
    API_PREFIX = "Префикс REST API, например /api."
    PUBLIC_BASE_URL = (
        "Публичный базовый URL сервиса (для callback-адресов подписок и "
        "ссылок на оплату)."
    )
    PAYMENT_PAGE_URL = "Базовый URL страницы оплаты (paymentUrl = <base>/<id>)."

    # БД
    DATABASE_URL = (
        "DSN PostgreSQL. Будет автоматически приведён к async "
        "(postgresql+asyncpg://). Другие async-драйверы передаются как есть."
    )
    DB_POOL_SIZE = "Размер пула соединений SQLAlchemy."
    DB_MAX_OVERFLOW = "Дополнительные соединения в пике."
    DB_SCHEMA_CORE = "Схема с ядром (кошельки, инвойсы, доставки). Пусто = без схемы."

    # Vault
    VAULT_ENCRYPTION_KEY = "Секрет хранилища ключевого материала (≥ 32 байт)."

    # Внешние провайдеры
    CHAIN_SOURCE_API_URL = "Базовый URL провайдера подписок на адреса (Tatum-like)."
    CHAIN_SOURCE_API_KEY = "API-ключ провайдера подписок (x-api-key)."
    CHAIN_QUERY_API_URL = "Базовый URL read-only сервиса запросов к цепочкам."
    CHAIN_QUERY_API_KEY = "API-ключ сервиса запросов к цепочкам."
    KMS_API_URL = "Базовый URL custody/KMS-сервиса."
    KMS_API_KEY = "API-ключ custody/KMS-сервиса."
    CHAIN_WEBHOOK_HMAC_SECRET = (
        "HMAC-секрет входящих уведомлений провайдера (x-webhook-signature). "
        "Пусто: проверка выключена."
    )
    NETWORK_REQUEST_TIMEOUT_SEC = "Таймаут сетевых запросов к провайдерам (сек)."

    # Инвойсы / сверка
    INVOICE_DEFAULT_TTL_SEC = "Срок жизни инвойса по умолчанию (сек)."
    CONFIRMATIONS_UTXO = "Необходимое число подтверждений для UTXO-цепочек."
    CONFIRMATIONS_EVM = "Необходимое число подтверждений для EVM-цепочек."
    CONFIRMATIONS_TRON = "Необходимое число подтверждений для TRON."
    CONFIRMATIONS_HARDENED = "Необходимое число подтверждений для Solana-подобных."
    ASSET_TOLERANCE_OVERRIDES = "Переопределения допуска сумм: 'USDT=0.000001,...'."

    # Вебхуки мерчантам
    WEBHOOK_MAX_ATTEMPTS = "Максимум попыток доставки вебхука мерчанту."
    WEBHOOK_TIMEOUT_SEC = "Таймаут одной попытки доставки (сек)."
    WEBHOOK_RETRY_DELAYS_SEC = "Таблица задержек ретраев (CSV, сек)."
    WEBHOOK_JITTER_RATIO = "Доля случайного джиттера к задержке (0..1)."
    WEBHOOK_POLL_INTERVAL_SEC = "Интервал опроса очереди доставок (сек)."
    WEBHOOK_BATCH_SIZE = "Сколько доставок забирать за один проход."
    WEBHOOK_LEASE_SEC = "Аренда строки доставки воркером (сек)."
    WEBHOOK_RETENTION_DAYS = "Сколько дней хранить доставленные вебхуки."
    WEBHOOK_USER_AGENT = "User-Agent исходящих вебхуков."
    WEBHOOK_RESPONSE_BODY_LIMIT = "Сколько символов тела ответа сохранять."

    # Безопасность
    ADMIN_API_KEY = "Серверный ключ админ-ручек (X-Admin-Api-Key)."

    # Logging
    LOG_LEVEL = "Уровень логирования (INFO/DEBUG/WARNING/ERROR)."


# =============================================================================
# Настройки приложения (единственный источник истины)
# =============================================================================


class Settings(BaseSettings):
    """
    Контейнер переменных окружения Paygate.

    Важное:
      • Секреты берём только из ENV: в код не шьём.
      • Decimal настроен на ROUND_DOWN и достаточный precision.
      • Все фоновые задачи живут в планировщике (SCHED_*), здесь: только
        бизнес-параметры.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # --------------------------- БАЗОВЫЕ НАСТРОЙКИ ---------------------------
    PROJECT_NAME: str = Field("Paygate", description=_Doc.PROJECT_NAME)
    ENV: str = Field("production", description=_Doc.ENV)
    DEBUG: bool = Field(False, description=_Doc.DEBUG)
    APP_VERSION: str = Field("1.0.0", description=_Doc.APP_VERSION)

    APP_HOST: str = Field("0.0.0.0", description=_Doc.APP_HOST)
    APP_PORT: int = Field(8000, description=_Doc.APP_PORT)
    APP_RELOAD: bool = Field(False, description=_Doc.APP_RELOAD)
    API_PREFIX: str = Field("/api", description=_Doc.API_PREFIX)

    PUBLIC_BASE_URL: str = Field(
        "http://localhost:8000",
        description=_Doc.PUBLIC_BASE_URL,
    )
    PAYMENT_PAGE_URL: Optional[str] = Field(None, description=_Doc.PAYMENT_PAGE_URL)

    # --------------------------------- БАЗА ----------------------------------
    DATABASE_URL: Optional[str] = Field(None, description=_Doc.DATABASE_URL)
    DB_POOL_SIZE: int = Field(10, description=_Doc.DB_POOL_SIZE)
    DB_MAX_OVERFLOW: int = Field(10, description=_Doc.DB_MAX_OVERFLOW)
    DB_SCHEMA_CORE: str = Field("paygate_core", description=_Doc.DB_SCHEMA_CORE)

    # --------------------------------- VAULT ---------------------------------
    VAULT_ENCRYPTION_KEY: Optional[str] = Field(
        None,
        description=_Doc.VAULT_ENCRYPTION_KEY,
    )

    # ------------------------------ ПРОВАЙДЕРЫ -------------------------------
    CHAIN_SOURCE_API_URL: str = Field(
        "https://api.tatum.io",
        description=_Doc.CHAIN_SOURCE_API_URL,
    )
    CHAIN_SOURCE_API_KEY: Optional[str] = Field(
        None,
        description=_Doc.CHAIN_SOURCE_API_KEY,
    )
    CHAIN_QUERY_API_URL: str = Field(
        "https://api.tatum.io",
        description=_Doc.CHAIN_QUERY_API_URL,
    )
    CHAIN_QUERY_API_KEY: Optional[str] = Field(
        None,
        description=_Doc.CHAIN_QUERY_API_KEY,
    )
    KMS_API_URL: Optional[str] = Field(None, description=_Doc.KMS_API_URL)
    KMS_API_KEY: Optional[str] = Field(None, description=_Doc.KMS_API_KEY)
    CHAIN_WEBHOOK_HMAC_SECRET: Optional[str] = Field(
        None,
        description=_Doc.CHAIN_WEBHOOK_HMAC_SECRET,
    )
    NETWORK_REQUEST_TIMEOUT_SEC: int = Field(
        20,
        description=_Doc.NETWORK_REQUEST_TIMEOUT_SEC,
    )

    # ----------------------------- ИНВОЙСЫ/СВЕРКА ----------------------------
    INVOICE_DEFAULT_TTL_SEC: int = Field(
        3600,
        description=_Doc.INVOICE_DEFAULT_TTL_SEC,
    )
    CONFIRMATIONS_UTXO: int = Field(2, description=_Doc.CONFIRMATIONS_UTXO)
    CONFIRMATIONS_EVM: int = Field(1, description=_Doc.CONFIRMATIONS_EVM)
    CONFIRMATIONS_TRON: int = Field(1, description=_Doc.CONFIRMATIONS_TRON)
    CONFIRMATIONS_HARDENED: int = Field(1, description=_Doc.CONFIRMATIONS_HARDENED)
    ASSET_TOLERANCE_OVERRIDES: str = Field(
        "",
        description=_Doc.ASSET_TOLERANCE_OVERRIDES,
    )

    # ---------------------------- ВЕБХУКИ МЕРЧАНТАМ --------------------------
    WEBHOOK_MAX_ATTEMPTS: int = Field(3, description=_Doc.WEBHOOK_MAX_ATTEMPTS)
    WEBHOOK_TIMEOUT_SEC: int = Field(30, description=_Doc.WEBHOOK_TIMEOUT_SEC)
    WEBHOOK_RETRY_DELAYS_SEC: str = Field(
        "1,5,15,60",
        description=_Doc.WEBHOOK_RETRY_DELAYS_SEC,
    )
    WEBHOOK_JITTER_RATIO: float = Field(0.1, description=_Doc.WEBHOOK_JITTER_RATIO)
    WEBHOOK_POLL_INTERVAL_SEC: float = Field(
        1.0,
        description=_Doc.WEBHOOK_POLL_INTERVAL_SEC,
    )
    WEBHOOK_BATCH_SIZE: int = Field(20, description=_Doc.WEBHOOK_BATCH_SIZE)
    WEBHOOK_LEASE_SEC: int = Field(120, description=_Doc.WEBHOOK_LEASE_SEC)
    WEBHOOK_RETENTION_DAYS: int = Field(30, description=_Doc.WEBHOOK_RETENTION_DAYS)
    WEBHOOK_USER_AGENT: str = Field(
        "Paygate-Webhook/1.0",
        description=_Doc.WEBHOOK_USER_AGENT,
    )
    WEBHOOK_RESPONSE_BODY_LIMIT: int = Field(
        2000,
        description=_Doc.WEBHOOK_RESPONSE_BODY_LIMIT,
    )

    # --------------------------------- SECURITY ------------------------------
    ADMIN_API_KEY: Optional[str] = Field(None, description=_Doc.ADMIN_API_KEY)

    # ---------------------------------- LOGS ---------------------------------
    LOG_LEVEL: str = Field("INFO", description=_Doc.LOG_LEVEL)

    # =========================== ВАЛИДАТОРЫ (ИИ-защита) ======================

    @field_validator("ASSET_TOLERANCE_OVERRIDES")
    @classmethod
    def _v_tolerances(cls, value: str) -> str:
        for key, tol in _parse_kv_decimals(value).items():
            if tol < 0:
                raise ValueError(f"допуск для {key} не может быть отрицательным")
        return value

    @field_validator("WEBHOOK_RETRY_DELAYS_SEC")
    @classmethod
    def _v_retry_delays(cls, value: str) -> str:
        try:
            parsed = [int(x) for x in _parse_csv(value)]
        except ValueError:
            raise ValueError("WEBHOOK_RETRY_DELAYS_SEC: ожидается CSV целых") from None
        if any(x <= 0 for x in parsed):
            raise ValueError("задержки ретраев должны быть > 0")
        return value

    @field_validator(
        "CONFIRMATIONS_UTXO",
        "CONFIRMATIONS_EVM",
        "CONFIRMATIONS_TRON",
        "CONFIRMATIONS_HARDENED",
    )
    @classmethod
    def _v_confirmations(cls, value: int) -> int:
        if value < 0:
            raise ValueError("CONFIRMATIONS_* должны быть ≥ 0")
        return value

    @field_validator("WEBHOOK_MAX_ATTEMPTS", "WEBHOOK_TIMEOUT_SEC", "WEBHOOK_BATCH_SIZE")
    @classmethod
    def _v_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("значение должно быть > 0")
        return value

    @field_validator("WEBHOOK_JITTER_RATIO")
    @classmethod
    def _v_jitter(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("WEBHOOK_JITTER_RATIO должен быть в диапазоне 0..1")
        return value

    # =========================== Удобные свойства/методы =====================

    # ---- ENV флаги ----
    @property
    def env_normalized(self) -> str:
        """Нормализует ENV к одному из: prod/dev/local."""
        value = (self.ENV or "").strip().lower()
        if value.startswith("prod") or value == "production":
            return "prod"
        if value.startswith("dev"):
            return "dev"
        if value.startswith("loc") or value == "local":
            return "local"
        if value.startswith("test"):
            return "dev"
        return "prod"

    @property
    def is_prod(self) -> bool:
        return self.env_normalized == "prod"

    @property
    def is_local(self) -> bool:
        return self.env_normalized == "local"

    # ---- Разобранные CSV-параметры ----
    @property
    def asset_tolerance_overrides(self) -> Dict[str, Decimal]:
        return _parse_kv_decimals(self.ASSET_TOLERANCE_OVERRIDES)

    @property
    def webhook_retry_delays(self) -> List[int]:
        return [int(x) for x in _parse_csv(self.WEBHOOK_RETRY_DELAYS_SEC)] or [1, 5, 15, 60]

    # ---- Публичные URL ----
    def chain_callback_url(self) -> str:
        """
        URL, на который провайдер присылает уведомления о поступлениях.
        Вне local-окружения всегда https.
        """
        base = (self.PUBLIC_BASE_URL or "").rstrip("/")
        if not self.is_local and base.startswith("http://"):
            base = "https://" + base[len("http://"):]
        prefix = (self.API_PREFIX or "").rstrip("/")
        return f"{base}{prefix}/webhooks/chain"

    def payment_url(self, invoice_id: str) -> str:
        """Ссылка на страницу оплаты инвойса."""
        base = (self.PAYMENT_PAGE_URL or f"{self.PUBLIC_BASE_URL.rstrip('/')}/pay")
        return f"{base.rstrip('/')}/{invoice_id}"

    # ---- База данных / DSN ----
    def database_url_asyncpg(self) -> str:
        """
        Возвращает DSN для SQLAlchemy async:
          postgres://   → postgresql+asyncpg://
          postgresql:// → postgresql+asyncpg:// при отсутствии драйвера.
        Прочие DSN (например, sqlite+aiosqlite:// для тестов) не трогаем.
        """
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL не задан (нужен DSN PostgreSQL).")
        url = self.DATABASE_URL
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://") and "asyncpg" not in url:
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    @property
    def db_schema(self) -> Optional[str]:
        """Схема ядра или None (SQLite/тесты)."""
        return (self.DB_SCHEMA_CORE or "").strip() or None

    # ---- Decimal / точности ----
    def configure_decimal_context(self) -> None:
        """
        Настраивает глобальный Decimal:
          • precision с запасом под 18 знаков EVM-активов,
          • округление по умолчанию: ROUND_DOWN.
        """
        ctx = getcontext()
        ctx.prec = 48
        ctx.rounding = ROUND_DOWN

    def confirmations_for(self, family: str) -> int:
        """Порог подтверждений для семейства цепочек (EVM/UTXO/TRON/HARDENED_ACCOUNT)."""
        mapping = {
            "UTXO": self.CONFIRMATIONS_UTXO,
            "EVM": self.CONFIRMATIONS_EVM,
            "TRON": self.CONFIRMATIONS_TRON,
            "HARDENED_ACCOUNT": self.CONFIRMATIONS_HARDENED,
        }
        return int(mapping.get(str(family).upper(), self.CONFIRMATIONS_EVM))

    # ---- Health/диагностика ----
    def assert_required_secrets(self) -> None:
        """
        Мягкая самодиагностика внешних ключей.
        Печатает WARN, но не падает: без провайдеров сервис работает
        в деградированном режиме (ручная/poll-сверка).
        Жёсткие проверки (ключ vault): в system_locks.
        """
        if not self.DATABASE_URL:
            print("[WARN] DATABASE_URL не задан: БД будет недоступна.")
        if not self.CHAIN_SOURCE_API_KEY:
            print(
                "[WARN] CHAIN_SOURCE_API_KEY не задан: подписки на адреса "
                "создаваться не будут.",
            )
        if not self.KMS_API_URL:
            print("[WARN] KMS_API_URL не задан: инициализация кошельков недоступна.")
        if self.is_prod and not self.CHAIN_WEBHOOK_HMAC_SECRET:
            print(
                "[WARN] CHAIN_WEBHOOK_HMAC_SECRET не задан: входящие уведомления "
                "не проверяются по подписи.",
            )

    def debug_dump(self) -> Dict[str, str]:
        """Безопасный дамп ключевых настроек (без секретов) для /health и логов."""
        return {
            "env": self.env_normalized,
            "projectName": self.PROJECT_NAME,
            "version": self.APP_VERSION,
            "apiPrefix": self.API_PREFIX,
            "dbUrlSet": "yes" if bool(self.DATABASE_URL) else "no",
            "dbSchema": self.db_schema or "-",
            "isProd": str(self.is_prod),
            "vaultKeySet": "yes" if bool(self.VAULT_ENCRYPTION_KEY) else "no",
            "chainSourceKeySet": "yes" if bool(self.CHAIN_SOURCE_API_KEY) else "no",
            "kmsUrlSet": "yes" if bool(self.KMS_API_URL) else "no",
            "webhookMaxAttempts": str(self.WEBHOOK_MAX_ATTEMPTS),
            "webhookRetryDelays": ",".join(str(x) for x in self.webhook_retry_delays),
        }

    # ---- Инициализация рантайма ----
    def ensure_local_artifacts(self) -> None:
        """Создаёт каталог .local_artifacts для local-режима (логи/кеш)."""
        if self.env_normalized == "local":
            Path(".local_artifacts").mkdir(exist_ok=True)

    def initialize_runtime(self) -> None:
        """
        Единая точка инициализации конфигурации при старте приложения:
          • Приведение DSN БД к async-формату.
          • Настройка Decimal контекста (ROUND_DOWN).
          • Создание локальных артефактов для local.
          • Мягкая самодиагностика секретов.
        """
        if self.DATABASE_URL:
            _ = self.database_url_asyncpg()

        self.configure_decimal_context()
        self.ensure_local_artifacts()
        self.assert_required_secrets()


# =============================================================================
# Синглтон настроек для всего приложения
# =============================================================================


@lru_cache()
def get_settings() -> Settings:
    """Создаёт и кэширует объект Settings, выполняя initialize_runtime()."""
    settings_obj = Settings()
    settings_obj.initialize_runtime()
    return settings_obj


# Удобный глобальный экспорт:
# from paygate.app.core.config_core import settings
settings: Settings = get_settings()

__all__ = ["Settings", "get_settings", "settings"]
