# -*- coding: utf-8 -*-
# paygate/app/services/wallet_service.py
# =============================================================================
# Назначение кода:
#   Жизненный цикл мастер-кошельков:
#   • initialize_wallet(): ключ генерирует KMS, ядро хранит только xpub и
#     зашифрованный хэндл custody;
#   • import_wallet(): импорт внешнего xpub (опционально с мнемоникой,
#     которая сразу шифруется vault);
#   • soft_delete(): мягкое удаление (адреса продолжают ссылаться);
#   • check_secrets(): проверка расшифровки секретов; испорченный секрет
#     выводит из строя только свой кошелёк (INACTIVE, corrupted_secret).
#
# Канон/инварианты:
#   • Харденные семейства (Solana-подобные) помечаются custody_derived уже
#     при инициализации: адреса для них выдаёт KMS по одному.
#   • Один неудалённый кошелёк на wallet_key (актив:сеть:контракт).
#   • next_index здесь не меняется никогда (только AddressAllocator).
#
# Запреты:
#   • Не логировать мнемонику, сид и хэндл custody.
#   • Не удалять строки master_wallets физически.
# =============================================================================

from __future__ import annotations

from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.app.core.chains_core import ChainFamily, NetworkInfo, get_asset, get_network
from paygate.app.core.database_core import lifespan_session
from paygate.app.core.errors_core import (
    CorruptedSecret,
    DownstreamError,
    HardenedDerivationRequired,
    InvalidExtendedKey,
    InvalidStateError,
    NotFoundError,
)
from paygate.app.core.logging_core import get_logger
from paygate.app.core.utils_core import utcnow
from paygate.app.core.vault_core import KeyMaterialVault
from paygate.app.integrations.kms_api import KmsAPIError, KmsClient
from paygate.app.models import MasterWallet, WalletStatus
from paygate.app.services.derivation_service import parse_extended_public_key

logger = get_logger(__name__)

CORRUPTED_SECRET_REASON = "corrupted_secret"


def wallet_key(symbol: str, network: str, contract: Optional[str]) -> str:
    return f"{symbol}:{network}:{(contract or '').lower()}"


class WalletService:
    """Администрирование мастер-кошельков."""

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

    # ------------------------------------------------------------------
    # Создание
    # ------------------------------------------------------------------
    async def initialize_wallet(self, asset: str, network: str) -> MasterWallet:
        """Создать кошелёк с ключом, сгенерированным KMS."""
        info = get_asset(asset, network)
        net = get_network(info.network)
        if self._kms is None or not self._kms.configured:
            raise DownstreamError("Custody service is not configured.")
        try:
            generated = await self._kms.generate_wallet(net.provider_chain)
        except KmsAPIError as exc:
            logger.error("KMS wallet generation failed", extra={"network": net.network, "error": str(exc)})
            raise DownstreamError("Custody service failed to generate a wallet.") from exc

        custody_derived = net.family is ChainFamily.HARDENED_ACCOUNT
        xpub = generated.extended_public_key
        if not custody_derived:
            if not xpub:
                raise InvalidExtendedKey("Custody service returned no extended public key.")
            parse_extended_public_key(xpub)

        return await self._insert(
            symbol=info.symbol,
            net=net,
            contract=info.contract,
            xpub=xpub if not custody_derived else None,
            encrypted_seed=None,
            custody_handle=self._vault.encrypt_text(generated.custody_handle),
            custody_derived=custody_derived,
        )

    async def import_wallet(
        self,
        asset: str,
        network: str,
        *,
        extended_public_key: str,
        mnemonic: Optional[str] = None,
    ) -> MasterWallet:
        """Импортировать watch-only кошелёк по xpub аккаунта m/44'/coin'/0'."""
        info = get_asset(asset, network)
        net = get_network(info.network)
        if net.family is ChainFamily.HARDENED_ACCOUNT:
            raise HardenedDerivationRequired(
                "Hardened chains cannot be imported from an extended public key.",
                details={"network": net.network},
            )
        parse_extended_public_key(extended_public_key)
        return await self._insert(
            symbol=info.symbol,
            net=net,
            contract=info.contract,
            xpub=extended_public_key.strip(),
            encrypted_seed=self._vault.encrypt_optional(mnemonic),
            custody_handle=None,
            custody_derived=False,
        )

    async def _insert(
        self,
        *,
        symbol: str,
        net: NetworkInfo,
        contract: Optional[str],
        xpub: Optional[str],
        encrypted_seed: Optional[str],
        custody_handle: Optional[str],
        custody_derived: bool,
    ) -> MasterWallet:
        key = wallet_key(symbol, net.network, contract)
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                clash = (
                    await session.execute(
                        select(MasterWallet.id).where(
                            MasterWallet.wallet_key == key,
                            MasterWallet.deleted_at.is_(None),
                        )
                    )
                ).first()
                if clash is not None:
                    raise InvalidStateError(
                        "A wallet for this asset and network already exists.",
                        details={"wallet_key": key, "wallet_id": clash[0]},
                    )
                now = utcnow()
                wallet = MasterWallet(
                    asset=symbol,
                    network=net.network,
                    contract=contract,
                    wallet_key=key,
                    family=net.family.value,
                    extended_public_key=xpub,
                    derivation_path=net.path_template,
                    encrypted_seed=encrypted_seed,
                    custody_handle=custody_handle,
                    custody_derived=custody_derived,
                    next_index=0,
                    status=WalletStatus.ACTIVE.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(wallet)
                await session.flush()
        logger.info(
            "master wallet created",
            extra={
                "wallet_id": wallet.id,
                "wallet_key": key,
                "family": net.family.value,
                "custody_derived": custody_derived,
            },
        )
        return wallet

    # ------------------------------------------------------------------
    # Чтение / удаление
    # ------------------------------------------------------------------
    async def get_wallet(self, wallet_id: int) -> MasterWallet:
        async with lifespan_session(self._session_factory) as session:
            wallet = await session.get(MasterWallet, int(wallet_id))
        if wallet is None:
            raise NotFoundError("Wallet not found.", details={"wallet_id": wallet_id})
        return wallet

    async def list_wallets(self, *, include_deleted: bool = False) -> List[MasterWallet]:
        stmt = select(MasterWallet).order_by(MasterWallet.id.asc())
        if not include_deleted:
            stmt = stmt.where(MasterWallet.deleted_at.is_(None))
        async with lifespan_session(self._session_factory) as session:
            return list((await session.execute(stmt)).scalars().all())

    async def soft_delete(self, wallet_id: int) -> MasterWallet:
        """Мягкое удаление: статус DELETED и deleted_at; повтор идемпотентен."""
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                wallet = await session.get(MasterWallet, int(wallet_id), with_for_update=True)
                if wallet is None:
                    raise NotFoundError("Wallet not found.", details={"wallet_id": wallet_id})
                if wallet.deleted_at is None:
                    wallet.status = WalletStatus.DELETED.value
                    wallet.deleted_at = utcnow()
        logger.info("master wallet soft-deleted", extra={"wallet_id": wallet_id})
        return wallet

    # ------------------------------------------------------------------
    # Целостность секретов
    # ------------------------------------------------------------------
    async def check_secrets(self) -> Dict[str, int]:
        """
        Пробует расшифровать секреты всех неудалённых кошельков. Испорченный
        секрет переводит кошелёк в INACTIVE (status_reason=corrupted_secret),
        остальные кошельки продолжают работать.
        """
        checked = 0
        corrupted = 0
        async with lifespan_session(self._session_factory) as session:
            async with session.begin():
                stmt = select(MasterWallet).where(
                    MasterWallet.deleted_at.is_(None),
                    MasterWallet.status == WalletStatus.ACTIVE.value,
                )
                for wallet in (await session.execute(stmt)).scalars().all():
                    checked += 1
                    try:
                        self._vault.decrypt_optional(wallet.encrypted_seed)
                        self._vault.decrypt_optional(wallet.custody_handle)
                    except CorruptedSecret:
                        corrupted += 1
                        wallet.status = WalletStatus.INACTIVE.value
                        wallet.status_reason = CORRUPTED_SECRET_REASON
                        logger.error(
                            "wallet secret is corrupted, wallet disabled",
                            extra={"wallet_id": wallet.id, "wallet_key": wallet.wallet_key},
                        )
        return {"checked": checked, "corrupted": corrupted}


def wallet_to_dict(wallet: MasterWallet) -> Dict[str, object]:
    """Публичное представление (без шифротекстов)."""
    return {
        "id": wallet.id,
        "asset": wallet.asset,
        "network": wallet.network,
        "contract": wallet.contract,
        "family": wallet.family,
        "extended_public_key": wallet.extended_public_key,
        "derivation_path": wallet.derivation_path,
        "custody_derived": bool(wallet.custody_derived),
        "next_index": int(wallet.next_index or 0),
        "status": wallet.status,
        "status_reason": wallet.status_reason,
        "has_seed": wallet.encrypted_seed is not None,
    }


__all__ = ["CORRUPTED_SECRET_REASON", "WalletService", "wallet_key", "wallet_to_dict"]
