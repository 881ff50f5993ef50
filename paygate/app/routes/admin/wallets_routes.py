# -*- coding: utf-8 -*-
# paygate/app/routes/admin/wallets_routes.py
# =============================================================================
# Назначение кода:
#   Администрирование мастер-кошельков: список, создание (KMS generate или
#   импорт xpub), мягкое удаление.
#
# Канон/инварианты:
#   • Доступ только с валидным X-Admin-Api-Key (get_admin_api_key_guard).
#   • Ответы не содержат шифротекстов, хэндлов custody и мнемоник.
# =============================================================================

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, status

from paygate.app.core.logging_core import get_logger
from paygate.app.core.security_core import get_admin_api_key_guard
from paygate.app.deps import get_services
from paygate.app.schemas import WalletCreateIn, WalletOut
from paygate.app.services import ServiceContainer
from paygate.app.services.wallet_service import wallet_to_dict

logger = get_logger(__name__)

router = APIRouter(
    prefix="/admin/wallets",
    tags=["admin-wallets"],
    dependencies=[Depends(get_admin_api_key_guard)],
)


@router.get("", response_model=List[WalletOut])
async def list_wallets(
    include_deleted: bool = Query(False),
    services: ServiceContainer = Depends(get_services),
) -> List[WalletOut]:
    wallets = await services.wallets.list_wallets(include_deleted=include_deleted)
    return [WalletOut(**wallet_to_dict(w)) for w in wallets]


@router.post("", response_model=WalletOut, status_code=status.HTTP_201_CREATED)
async def create_wallet(
    body: WalletCreateIn,
    services: ServiceContainer = Depends(get_services),
) -> WalletOut:
    if body.mode == "import":
        wallet = await services.wallets.import_wallet(
            body.asset,
            body.network,
            extended_public_key=body.extended_public_key or "",
            mnemonic=body.mnemonic,
        )
    else:
        wallet = await services.wallets.initialize_wallet(body.asset, body.network)
    logger.info("admin created wallet", extra={"wallet_id": wallet.id, "mode": body.mode})
    return WalletOut(**wallet_to_dict(wallet))


@router.delete("/{wallet_id}", response_model=WalletOut)
async def delete_wallet(
    wallet_id: int,
    services: ServiceContainer = Depends(get_services),
) -> WalletOut:
    wallet = await services.wallets.soft_delete(wallet_id)
    return WalletOut(**wallet_to_dict(wallet))


__all__ = ["router"]
