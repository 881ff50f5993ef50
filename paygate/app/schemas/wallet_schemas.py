# -*- coding: utf-8 -*-
# paygate/app/schemas/wallet_schemas.py
# =============================================================================
# Назначение кода:
#   DTO администрирования мастер-кошельков.
#
# Запреты:
#   • Наружу не отдаются шифротексты, хэндлы custody и мнемоники.
# =============================================================================

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from paygate.app.schemas.common_schemas import ApiModel


class WalletCreateIn(ApiModel):
    """
    mode=generate: ключ создаёт KMS; mode=import: watch-only по xpub
    (мнемоника опциональна и сразу шифруется).
    """

    asset: str = Field(..., min_length=1, max_length=16)
    network: str = Field(..., min_length=1, max_length=32)
    mode: Literal["generate", "import"] = "generate"
    extended_public_key: Optional[str] = Field(None, max_length=256)
    mnemonic: Optional[str] = Field(None, max_length=1024, repr=False)

    @model_validator(mode="after")
    def _v_import(self) -> "WalletCreateIn":
        if self.mode == "import" and not self.extended_public_key:
            raise ValueError("extended_public_key is required for import")
        return self


class WalletOut(BaseModel):
    id: int
    asset: str
    network: str
    contract: Optional[str] = None
    family: str
    extended_public_key: Optional[str] = None
    derivation_path: Optional[str] = None
    custody_derived: bool
    next_index: int
    status: str
    status_reason: Optional[str] = None
    has_seed: bool


__all__ = ["WalletCreateIn", "WalletOut"]
