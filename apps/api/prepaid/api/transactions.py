from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from prepaid.api.auth import CurrentUser, require_permission
from prepaid.api.deps_async import get_db_async, get_workflow
from prepaid.core.exceptions import NotFoundError
from prepaid.core.permissions import Permission
from prepaid.repositories.storefront_repository import StorefrontRepository
from prepaid.services.subscriptions_service import SubscriptionsService
from prepaid.services.transaction_workflow import TransactionWorkflow

router = APIRouter(prefix="/api/v1/transactions", tags=["transactions"])


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    org_id: str
    customer_id: Optional[str] = None
    product_sku: str
    product_name: Optional[str] = None
    amount: float
    cost: float
    markup: float
    discount_amount: float
    currency: str
    status: str
    payment_type: str
    payment_gateway: Optional[str] = None
    payment_id: Optional[str] = None
    provider: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    recipient_phone: str
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    operator_name: Optional[str] = None
    operator_country: Optional[str] = None
    metadata: Optional[dict] = Field(default=None, validation_alias="meta")
    created_at: datetime
    paid_at: Optional[datetime] = None
    processing_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class StatusUpdateIn(BaseModel):
    status: Literal["pending", "paid", "processing", "completed", "failed", "refunded"]
    reason: Optional[str] = None


class RefundIn(BaseModel):
    reason: str = Field(min_length=1)


class RetryIn(BaseModel):
    phone_number: Optional[str] = None
    sku_code: Optional[str] = None
    send_value: Optional[Decimal] = Field(default=None, gt=0)
    validate_only: bool = False


class RetryOut(BaseModel):
    success: bool
    provider_status: Optional[str] = None
    error: Optional[str] = None
    transaction: TransactionOut


class CheckoutIn(BaseModel):
    sku_code: str
    phone_number: str
    payment_type: Literal["balance", "admin_assigned"]
    customer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    discount_code: Optional[str] = None
    send_value: Optional[Decimal] = Field(default=None, gt=0)
    fulfil: bool = True


@router.get("", response_model=list[TransactionOut])
async def list_transactions(
    status: Optional[str] = None,
    customer_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    workflow: TransactionWorkflow = Depends(get_workflow),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_TRANSACTIONS)),
):
    rows = await workflow.list_for_org(current_user.org_id, status=status, customer_id=customer_id,
                                       limit=limit, offset=offset)
    return [TransactionOut.model_validate(r) for r in rows]


@router.post("", response_model=TransactionOut, status_code=201)
async def create_transaction(
    body: CheckoutIn,
    request: Request,
    db: AsyncSession = Depends(get_db_async),
    workflow: TransactionWorkflow = Depends(get_workflow),
    current_user: CurrentUser = Depends(require_permission(Permission.PROCESS_TRANSACTIONS)),
):
    org = await SubscriptionsService(db).get_org(current_user.org_id)
    product = await StorefrontRepository(db).get_product_by_sku(org.id, body.sku_code)
    if product is None:
        raise NotFoundError("Product not found")
    tx = await workflow.checkout(
        org,
        product,
        phone_number=body.phone_number,
        payment_type=body.payment_type,
        customer_id=body.customer_id,
        email=body.email,
        name=body.name,
        discount_code=body.discount_code,
        send_value=body.send_value,
        admin_id=current_user.id if body.payment_type == "admin_assigned" else None,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    if body.fulfil:
        tx = await workflow.fulfil(tx)
    return TransactionOut.model_validate(tx)


@router.get("/{transaction_id}", response_model=TransactionOut)
async def get_transaction(
    transaction_id: str,
    workflow: TransactionWorkflow = Depends(get_workflow),
    current_user: CurrentUser = Depends(require_permission(Permission.VIEW_TRANSACTIONS)),
):
    tx = await workflow.get_for_org(transaction_id, current_user.org_id)
    return TransactionOut.model_validate(tx)


@router.patch("/{transaction_id}/status", response_model=TransactionOut)
async def update_status(
    transaction_id: str,
    body: StatusUpdateIn,
    workflow: TransactionWorkflow = Depends(get_workflow),
    current_user: CurrentUser = Depends(require_permission(Permission.UPDATE_TRANSACTION_STATUS)),
):
    tx = await workflow.get_for_org(transaction_id, current_user.org_id)
    tx = await workflow.transition(tx, body.status, reason=body.reason, actor=current_user.id)
    return TransactionOut.model_validate(tx)


@router.post("/{transaction_id}/refund", response_model=TransactionOut)
async def refund_transaction(
    transaction_id: str,
    body: RefundIn,
    workflow: TransactionWorkflow = Depends(get_workflow),
    current_user: CurrentUser = Depends(require_permission(Permission.REFUND_TRANSACTIONS)),
):
    tx = await workflow.get_for_org(transaction_id, current_user.org_id)
    tx = await workflow.refund(tx, reason=body.reason, actor=current_user.id)
    return TransactionOut.model_validate(tx)


@router.post("/{transaction_id}/retry", response_model=RetryOut)
async def retry_transaction(
    transaction_id: str,
    body: RetryIn,
    workflow: TransactionWorkflow = Depends(get_workflow),
    current_user: CurrentUser = Depends(require_permission(Permission.PROCESS_TRANSACTIONS)),
):
    tx = await workflow.get_for_org(transaction_id, current_user.org_id)
    outcome = await workflow.retry(
        tx,
        actor=current_user.id,
        phone_number=body.phone_number,
        sku_code=body.sku_code,
        send_value=body.send_value,
        validate_only=body.validate_only,
    )
    return RetryOut(
        success=outcome.success,
        provider_status=outcome.provider_status,
        error=outcome.error,
        transaction=TransactionOut.model_validate(outcome.transaction),
    )


@router.post("/{transaction_id}/fulfil", response_model=TransactionOut)
async def fulfil_transaction(
    transaction_id: str,
    workflow: TransactionWorkflow = Depends(get_workflow),
    current_user: CurrentUser = Depends(require_permission(Permission.PROCESS_TRANSACTIONS)),
):
    tx = await workflow.get_for_org(transaction_id, current_user.org_id)
    tx = await workflow.fulfil(tx)
    return TransactionOut.model_validate(tx)
