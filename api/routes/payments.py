"""
支付API路由 - FastAPI表现层

Keep this thin: request parsing, caller identity and response envelopes only.
"""
from __future__ import annotations

import ipaddress
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from starlette import status as http_status

from api.dependencies import (
    Principal,
    get_current_principal,
    get_gateway_registry,
    get_payment_service,
    get_refund_service,
    get_webhook_service,
)
from application.dtos.payments import (
    ClientInfo,
    GatewayDescriptor,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentHistoryItem,
    PaymentStatusResponse,
    ProcessPaymentRequest,
    ProcessPaymentResponse,
    RefundDTO,
    RefundPaymentRequest,
    RefundResponse,
    TransactionDTO,
    WebhookAck,
)
from application.services.gateway_registry import GatewayRegistry
from application.services.payment_service import PaymentService
from application.services.refund_service import RefundService
from application.services.webhook_service import PaymentWebhookService
from core.config import settings
from core.logging_config import get_logger
from core.response import success_response, paginated_response, Response as ApiResponse, PaginatedData
from core.settings import payment_settings
from domain.common.exceptions import BusinessException
from domain.payment.entity import PaymentStatus
from domain.payment.repository import PaymentHistoryQuery
from shared.codes import BusinessCode


router = APIRouter(prefix="/payments", tags=["支付"])
logger = get_logger(__name__)


def _client_info(request: Request) -> ClientInfo:
    ip_address = getattr(request.state, "client_ip", None)
    if not ip_address and request.client:
        ip_address = request.client.host
    return ClientInfo(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


def _ip_allowed(remote_ip: Optional[str], allowlist: list[str]) -> bool:
    if not allowlist:
        return True
    if not remote_ip:
        return False
    try:
        address = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


@router.post("/initiate", summary="发起支付", response_model=ApiResponse[InitiatePaymentResponse])
async def initiate_payment(
    body: InitiatePaymentRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    """
    为订单发起支付

    - **order_id**: 订单ID（必须属于当前用户）
    - **payment_method_id**: 支付方式ID
    - **metadata**: 扩展信息（可选）
    """
    result = await service.initiate_payment(body, principal.id, _client_info(request))
    return success_response(data=result, message="Payment initiated")


@router.post("/{payment_id}/process", summary="处理支付", response_model=ApiResponse[ProcessPaymentResponse])
async def process_payment(
    payment_id: int,
    body: Optional[ProcessPaymentRequest] = None,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.process_payment(payment_id, body)
    return success_response(data=result, message="Payment processed")


@router.get("/{payment_id}/status", summary="查询支付状态", response_model=ApiResponse[PaymentStatusResponse])
async def get_payment_status(
    payment_id: int,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    requester = None if principal.is_operator else principal.id
    result = await service.get_payment_status(payment_id, requester)
    return success_response(data=result)


@router.post("/{payment_id}/refunds", summary="申请退款", response_model=ApiResponse[RefundResponse])
async def request_refund(
    payment_id: int,
    body: RefundPaymentRequest,
    principal: Principal = Depends(get_current_principal),
    service: RefundService = Depends(get_refund_service),
):
    """
    对已完成的支付申请退款（支持部分退款）

    - **amount**: 退款金额，不能超过可退余额
    - **reason**: customer_request / duplicate / fraudulent / service_issue
    - **notes**: 备注（可选）
    """
    result = await service.request_refund(payment_id, body, principal.id, is_operator=principal.is_operator)
    return success_response(data=result, message="Refund completed")


@router.get("/{payment_id}/refunds", summary="退款列表", response_model=ApiResponse[list[RefundDTO]])
async def list_refunds(
    payment_id: int,
    principal: Principal = Depends(get_current_principal),
    service: RefundService = Depends(get_refund_service),
):
    result = await service.list_refunds(payment_id, principal.id, is_operator=principal.is_operator)
    return success_response(data=result)


@router.get("/{payment_id}/transactions", summary="交易流水", response_model=ApiResponse[list[TransactionDTO]])
async def list_transactions(
    payment_id: int,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    requester = None if principal.is_operator else principal.id
    result = await service.list_transactions(payment_id, requester)
    return success_response(data=result)


@router.get("/history", summary="支付历史", response_model=ApiResponse[PaginatedData[PaymentHistoryItem]])
async def payment_history(
    status: Optional[PaymentStatus] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    min_amount: Optional[Decimal] = Query(default=None, ge=0),
    max_amount: Optional[Decimal] = Query(default=None, ge=0),
    page: int = Query(1, ge=1, description="页码"),
    size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE, description="每页数量"),
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    """当前用户的支付历史，每条记录附带交易流水与退款"""
    query = PaymentHistoryQuery(
        payer_id=principal.id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    items, total = await service.list_payment_history(query, skip=(page - 1) * size, limit=size)
    return paginated_response(items=items, total=total, page=page, size=size)


@router.get("/gateways", summary="可用支付网关", response_model=ApiResponse[list[GatewayDescriptor]])
async def list_gateways(
    currency: Optional[str] = Query(default=None, min_length=3, max_length=3),
    registry: GatewayRegistry = Depends(get_gateway_registry),
):
    return success_response(data=registry.descriptors(currency))


@router.post("/webhooks/{gateway_id}", summary="网关回调", response_model=ApiResponse[WebhookAck])
async def payments_webhook(
    gateway_id: str,
    request: Request,
    service: PaymentWebhookService = Depends(get_webhook_service),
):
    remote_ip = request.client.host if request.client else None
    if not _ip_allowed(remote_ip, payment_settings.webhook.ip_allowlist or []):
        logger.warning("webhook_ip_rejected", gateway_id=gateway_id, remote_ip=remote_ip)
        raise BusinessException(
            code=BusinessCode.FORBIDDEN,
            message="Webhook source not allowed",
            error_type="Forbidden",
        )

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    ack = await service.handle(gateway_id, headers, raw_body)
    if ack.status == "deferred":
        # 非2xx：提供方稍后重投同一事件
        response = success_response(
            data=ack, message="Webhook deferred", code=BusinessCode.SERVICE_UNAVAILABLE
        )
        return JSONResponse(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )
    # 其余结果返回200，提供方据此停止重投
    return success_response(data=ack, message="Webhook received")
