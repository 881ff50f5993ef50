# -*- coding: utf-8 -*-
# paygate/app/services/allocator_service.py
# =============================================================================
# Назначение кода:
#   AddressAllocator: единственный писатель MasterWallet.next_index.
#   Выдаёт инвойсу депозитный адрес ровно один раз.
#
# Канон/инварианты:
#   • Одна транзакция: SELECT … FOR UPDATE строки кошелька → вывод адреса на
#     next_index → next_index + 1 → INSERT PaymentAddress с привязкой к инвойсу.
#   • Ошибка вывода (или KMS) откатывает транзакцию: индекс не расходуется.
#   • UNIQUE(wallet_id, derivation_index) страхует блокировку строки.
#   • allocate() ведёт собственную единицу работы; allocate_in() работает в
#     транзакции вызывающего (создание инвойса).
#
# ИИ-защита/самовосстановление:
#   • Мягкие ретраи (3 попытки, backoff 0.15·attempt) на deadlock/serialization.
#
# Запреты:
#   • Никаких коммитов внутри allocate_in(): транзакцией владеет вызывающий.
#   • Никаких прямых UPDATE next_index вне этого модуля.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.app.core.chains_core import ChainFamily, normalize_address
from paygate.app.core.database_core import is_transient_db_error, lifespan_session
from paygate.app.core.errors_core import (
    DownstreamError,
    InvalidExtendedKey,
    WalletNotActive,
    WalletNotFound,
)
from paygate.app.core.logging_core import get_logger
from paygate.app.core.vault_core import KeyMaterialVault
from paygate.app.integrations.kms_api import KmsAPIError, KmsClient
from paygate.app.models import MasterWallet, PaymentAddress, WalletStatus
from paygate.app.services.derivation_service import derivation_path, derive_address

logger = get_logger(__name__)

MAX_TRIES = 3
BACKOFF_SEC = 0.15


class AddressAllocator:
    """Атомарная выдача адресов из мастер-кошельков."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        vault: KeyMaterialVault,
        kms: Optional[KmsClient] = None,
    ) -> None:
        self._session_factory = session_factory
        self._vault = vault
        self._kms = kms

    async def allocate(self, wallet_id: int, invoice_id: Optional[str]) -> PaymentAddress:
        """Выдать адрес в собственной транзакции (commit внутри)."""
        last_exc: Optional[Exception] = None
        for attempt in range(1, MAX_TRIES + 1):
            try:
                async with lifespan_session(self._session_factory) as session:
                    async with session.begin():
                        address = await self.allocate_in(session, wallet_id, invoice_id)
                    return address
            except IntegrityError as exc:
                # Конфликт (wallet_id, derivation_index) возможен лишь без
                # строковой блокировки; повтор читает свежий next_index.
                last_exc = exc
                logger.warning(
                    "allocation index conflict, retrying",
                    extra={"wallet_id": wallet_id, "attempt": attempt},
                )
                await asyncio.sleep(BACKOFF_SEC * attempt)
            except DBAPIError as exc:
                if not is_transient_db_error(exc):
                    raise
                last_exc = exc
                await asyncio.sleep(BACKOFF_SEC * attempt)
        raise DownstreamError(
            "Address allocation failed after retries.",
            details={"wallet_id": wallet_id, "error": type(last_exc).__name__},
        )

    async def allocate_in(
        self, session: AsyncSession, wallet_id: int, invoice_id: Optional[str]
    ) -> PaymentAddress:
        """
        Выдать адрес в транзакции вызывающего. Бросает WalletNotFound,
        WalletNotActive, ошибки вывода адреса и DownstreamError (KMS).
        """
        stmt = (
            select(MasterWallet)
            .where(MasterWallet.id == int(wallet_id))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = (await session.execute(stmt)).scalar_one_or_none()
        if wallet is None or wallet.status == WalletStatus.DELETED.value or wallet.deleted_at is not None:
            raise WalletNotFound(
                "Master wallet not found.", details={"wallet_id": wallet_id}
            )
        if wallet.status != WalletStatus.ACTIVE.value:
            raise WalletNotActive(details={"wallet_id": wallet.id, "status": wallet.status})

        index = int(wallet.next_index)
        family = ChainFamily(wallet.family)
        address = await self._address_at(wallet, family, index)

        wallet.next_index = index + 1
        row = PaymentAddress(
            wallet_id=wallet.id,
            invoice_id=invoice_id,
            address=address,
            address_key=normalize_address(address, family),
            network=wallet.network,
            family=family.value,
            derivation_index=index,
            derivation_path=derivation_path(wallet.derivation_path, index),
        )
        session.add(row)
        await session.flush()

        logger.info(
            "address allocated",
            extra={"wallet_id": wallet.id, "index": index, "invoice_id": invoice_id, "network": wallet.network},
        )
        return row

    async def _address_at(self, wallet: MasterWallet, family: ChainFamily, index: int) -> str:
        if wallet.custody_derived:
            return await self._request_custody_address(wallet, index)
        if not wallet.extended_public_key:
            raise InvalidExtendedKey(
                "Wallet has no extended public key.", details={"wallet_id": wallet.id}
            )
        return derive_address(wallet.extended_public_key, family, index, network=wallet.network)

    async def _request_custody_address(self, wallet: MasterWallet, index: int) -> str:
        if self._kms is None or not wallet.custody_handle:
            raise DownstreamError(
                "Custody service is not configured for this wallet.",
                details={"wallet_id": wallet.id},
            )
        handle = self._vault.decrypt_text(wallet.custody_handle)
        try:
            return await self._kms.request_address(handle, index)
        except KmsAPIError as exc:
            logger.error("KMS address request failed", extra={"wallet_id": wallet.id, "error": str(exc)})
            raise DownstreamError(
                "Custody service failed to provide an address.",
                details={"wallet_id": wallet.id},
            ) from exc


__all__ = ["AddressAllocator"]

# =============================================================================
# Пояснения «для чайника»:
#   • Два параллельных allocate() на одном кошельке выстраиваются в очередь
#     на блокировке строки master_wallets: второй увидит уже увеличенный
#     next_index, поэтому адреса никогда не совпадут.
#   • Если процесс упал посреди выдачи, транзакция откатится целиком:
#     ни «дыры» в индексах, ни двойной выдачи.
# =============================================================================
