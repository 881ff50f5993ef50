# -*- coding: utf-8 -*-
# paygate/app/routes/invoices_routes.py
# =============================================================================
# Назначение кода:
#   Ручки мерчанта для инвойсов: создание (с опциональным Idempotency-Key),
#   чтение (ETag/If-None-Match) и отмена.
#
# Канон/инварианты:
#   • Повтор с тем же Idempotency-Key возвращает тот же инвойс (200 вместо 201).
#   • Мерчант видит только свои инвойсы: чужой id отдаётся как 404.
#
# Запреты:
#   • Роуты не меняют денежные поля: всё через InvoiceService/InvoiceLedger.
# =============================================================================

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Response, status

from paygate.app.deps import get_services, make_etag, optional_idempotency_key, require_merchant_id
from paygate.app.schemas import InvoiceCancelOut, InvoiceCreateIn, InvoiceOut
from paygate.app.services import ServiceContainer
from paygate.app.services.invoice_service import invoice_to_dict

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    body: InvoiceCreateIn,
    response: Response,
    merchant_id: str = Depends(require_merchant_id),
    idempotency_key: Optional[str] = Depends(optional_idempotency_key),
    services: ServiceContainer = Depends(get_services),
) -> InvoiceOut:
    creation = await services.invoices.create_invoice(
        merchant_id,
        amount=body.amount,
        currency=body.currency,
        network=body.network,
        order_id=body.order_id,
        description=body.description,
        notify_url=body.notify_url,
        redirect_url=body.redirect_url,
        custom_data=body.custom_data,
        ttl_sec=body.ttl_sec,
        idempotency_key=idempotency_key,
    )
    if not creation.created:
        response.status_code = status.HTTP_200_OK
    invoice = creation.invoice
    return InvoiceOut(**invoice_to_dict(invoice, payment_url=services.invoices.payment_url(invoice.id)))


@router.get("/{invoice_id}", response_model=InvoiceOut)
async def get_invoice(
    invoice_id: str,
    response: Response,
    merchant_id: str = Depends(require_merchant_id),
    if_none_match: Optional[str] = Header(default=None, convert_underscores=False, alias="If-None-Match"),
    services: ServiceContainer = Depends(get_services),
):
    invoice = await services.invoices.get_invoice(invoice_id, merchant_id=merchant_id)
    payload = invoice_to_dict(invoice, payment_url=services.invoices.payment_url(invoice.id))
    etag = make_etag(payload)
    if if_none_match and if_none_match.strip('"') == etag:
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers={"ETag": f'"{etag}"'})
    response.headers["ETag"] = f'"{etag}"'
    return InvoiceOut(**payload)


@router.post("/{invoice_id}/cancel", response_model=InvoiceCancelOut)
async def cancel_invoice(
    invoice_id: str,
    merchant_id: str = Depends(require_merchant_id),
    services: ServiceContainer = Depends(get_services),
) -> InvoiceCancelOut:
    result = await services.invoices.cancel_invoice(invoice_id, merchant_id=merchant_id)
    return InvoiceCancelOut(invoice_id=result.invoice_id, status=result.status, applied=result.applied)


__all__ = ["router"]
