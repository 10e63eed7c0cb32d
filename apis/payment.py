from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from core.app_settings import AppSettings, get_app_settings
from core.auth import get_current_user
from core.db import DB
from core.payment_gateway import GatewayError, build_gateway
from core.payment_service import (
    SETTLE_NOT_FOUND,
    PackageNotFound,
    apply_settlement,
    create_intent,
    list_transactions,
)
from .base import success_response, error_response


router = APIRouter(tags=["支付"])


class CreatePaymentRequest(BaseModel):
    package_type: str = Field(..., min_length=1, max_length=32)
    currency: str = Field(default="USD", max_length=8)


class WebhookRequest(BaseModel):
    order_id: str = Field(default="", max_length=128)
    status: str = Field(default="", max_length=32)


@router.get("/packages", summary="获取次数套餐")
async def get_packages(settings: AppSettings = Depends(get_app_settings)):
    return success_response(settings.catalog.to_list())


@router.post("/payment/create", summary="创建支付订单")
def create_payment(
    payload: CreatePaymentRequest,
    current_user: dict = Depends(get_current_user),
    settings: AppSettings = Depends(get_app_settings),
):
    session = DB.get_session()
    try:
        gateway = build_gateway(settings.payment)
        txn, payment_url = create_intent(
            session,
            current_user["id"],
            payload.package_type,
            payload.currency,
            settings.catalog,
            gateway,
        )
        return success_response(
            {
                "transaction_id": txn.id,
                "payment_url": payment_url,
                "order_id": txn.external_order_id,
            },
            message="订单创建成功",
        )
    except PackageNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response(code=40001, message=str(e)),
        )
    except GatewayError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=error_response(code=50201, message="Failed to create payment order", data={"details": str(e)}),
        )
    finally:
        session.close()


@router.post("/payment/webhook", summary="支付回调")
def payment_webhook(payload: WebhookRequest, settings: AppSettings = Depends(get_app_settings)):
    session = DB.get_session()
    try:
        result = apply_settlement(session, payload.order_id, payload.status, settings.catalog)
    finally:
        session.close()
    if result == SETTLE_NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response(code=40401, message="Transaction not found", data={"status": result}),
        )
    return {"status": "ok"}


@router.get("/payment/transactions", summary="获取购买记录")
def get_transactions(
    status_filter: str = Query("", alias="status", max_length=16),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        return success_response(list_transactions(session, current_user["id"], status=status_filter, limit=limit))
    finally:
        session.close()
