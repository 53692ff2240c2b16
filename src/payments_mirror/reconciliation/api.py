"""API endpoints for operator actions on the payment mirror."""

import logging
from typing import Any, Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..auth import verify_api_key
from ..database import PaymentRecord, RefundRecord, RefundReason
from ..mode import ActiveModeInfo, ModeName
from .models import CreatedPayment, PaymentDetails, SyncResult
from .service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


def get_service(request: Request) -> ReconciliationService:
    """Dependency returning the app's reconciliation service."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


class SwitchModeBody(BaseModel):
    """Request body for switching the active mode."""
    mode: str = Field(..., description="'test' or 'live'")


class CreatePaymentBody(BaseModel):
    """Request body for creating a payment intent.

    ``amount`` is left untyped so non-integer amounts reach the engine's
    minor-unit check instead of being coerced.
    """
    amount: Any = Field(..., description="Amount in minor units, e.g. 150 for 1.50 GBP")
    currency: str = Field(default="gbp", description="Three-letter currency code")
    description: Optional[str] = None
    customer_email: Optional[str] = None


class CreateRefundBody(BaseModel):
    """Request body for refunding a payment. Omit amount to refund the full balance."""
    amount: Any = Field(default=None, description="Amount in minor units")
    reason: str = Field(default=RefundReason.REQUESTED_BY_CUSTOMER.value)
    notes: Optional[str] = None


@router.get("/mode", response_model=ActiveModeInfo)
async def get_mode(
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return service.modes.get_active_mode()


@router.post("/mode", response_model=ActiveModeInfo)
async def switch_mode(
    body: SwitchModeBody,
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Switch between test and live credentials. Existing records are untouched."""
    service.modes.switch_mode(body.mode)
    return service.modes.get_active_mode()


@router.get("/mode/publishable-key")
async def get_publishable_key(
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    context = service.modes.active
    if not context.credentials.publishable_key:
        raise HTTPException(
            status_code=400,
            detail=f"No publishable key configured for {context.name.value} mode",
        )
    return {"mode": context.name.value, "publishable_key": context.credentials.publishable_key}


@router.post("/payments", response_model=CreatedPayment, status_code=201)
async def create_payment(
    body: CreatePaymentBody,
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Create a payment intent in the active mode.

    Each call creates a new intent. The response carries the client secret
    and publishable key the checkout widget needs.
    """
    return await service.create_payment(
        amount=body.amount,
        currency=body.currency,
        description=body.description,
        customer_email=body.customer_email,
    )


@router.get("/payments", response_model=List[PaymentRecord])
async def list_payments(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    mode: Optional[ModeName] = Query(default=None, description="Only payments of this mode"),
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return await service.list_payments(limit=limit, offset=offset, mode=mode)


@router.delete("/payments/abandoned")
async def clear_abandoned_payments(
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Remove payments of the active mode that never received a payment method."""
    result = await service.clear_abandoned_payments()
    return result.to_dict()


@router.get("/payments/{external_id}", response_model=PaymentDetails)
async def get_payment(
    external_id: str,
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return await service.get_payment_details(external_id)


@router.post("/payments/{external_id}/reconcile", response_model=PaymentRecord)
async def reconcile_payment(
    external_id: str,
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Refresh a payment's status from the provider."""
    return await service.reconcile_payment_status(external_id)


@router.post("/payments/{external_id}/refunds", response_model=RefundRecord, status_code=201)
async def create_refund(
    external_id: str,
    body: CreateRefundBody,
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return await service.create_refund(
        external_id,
        amount=body.amount,
        reason=body.reason,
        notes=body.notes,
    )


@router.get("/refunds", response_model=List[RefundRecord])
async def list_refunds(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    mode: Optional[ModeName] = Query(default=None, description="Only refunds of this mode"),
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return await service.list_refunds(limit=limit, offset=offset, mode=mode)


@router.post("/sync", response_model=SyncResult)
async def sync_history(
    service: ReconciliationService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Pull payment and refund history of the active mode from the provider.

    Safe to re-run: only records missing locally are created.
    """
    logger.info(f"Sync requested in {service.modes.active.name.value} mode")
    return await service.sync_historical_data()
