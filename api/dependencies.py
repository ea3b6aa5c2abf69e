"""
API依赖项 - 认证和应用服务装配
"""
from dataclasses import dataclass, field
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from application.ports.locks import LockProvider
from application.services.gateway_registry import GatewayRegistry
from application.services.payment_service import PaymentService
from application.services.refund_service import RefundService
from application.services.webhook_service import PaymentWebhookService
from core.config import settings
from core.exceptions import TokenExpiredException, TokenInvalidException
from core.settings import payment_settings
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

# HTTP Bearer for direct API calls
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token authentication",
    auto_error=False,
)


@dataclass(frozen=True)
class Principal:
    """当前调用方（JWT ``sub``）"""
    id: str
    roles: frozenset = field(default_factory=frozenset)

    @property
    def is_operator(self) -> bool:
        return settings.OPERATOR_ROLE in self.roles


def decode_token(token: str) -> Principal:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenExpiredException() from None
    except jwt.InvalidTokenError:
        raise TokenInvalidException() from None

    subject = payload.get("sub")
    if not subject:
        raise TokenInvalidException("Token has no subject")
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = roles.split()
    return Principal(id=str(subject), roles=frozenset(roles))


async def get_current_principal(
    bearer_token: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> Principal:
    """从Bearer token中解析调用方"""
    if bearer_token is None or not bearer_token.credentials:
        raise TokenInvalidException("Missing authentication credentials")
    return decode_token(bearer_token.credentials)


def get_gateway_registry(request: Request) -> GatewayRegistry:
    return request.app.state.gateway_registry


def get_lock_provider(request: Request) -> LockProvider:
    return request.app.state.lock_provider


async def get_payment_service(
    registry: GatewayRegistry = Depends(get_gateway_registry),
    locks: LockProvider = Depends(get_lock_provider),
) -> PaymentService:
    return PaymentService(
        uow_factory=SQLAlchemyUnitOfWork,
        gateway_registry=registry,
        lock_provider=locks,
        confirmed_order_status=payment_settings.confirmed_order_status,
    )


async def get_refund_service(
    registry: GatewayRegistry = Depends(get_gateway_registry),
    locks: LockProvider = Depends(get_lock_provider),
) -> RefundService:
    return RefundService(uow_factory=SQLAlchemyUnitOfWork, gateway_registry=registry, lock_provider=locks)


async def get_webhook_service(
    registry: GatewayRegistry = Depends(get_gateway_registry),
    locks: LockProvider = Depends(get_lock_provider),
    payment_service: PaymentService = Depends(get_payment_service),
    refund_service: RefundService = Depends(get_refund_service),
) -> PaymentWebhookService:
    return PaymentWebhookService(
        uow_factory=SQLAlchemyUnitOfWork,
        gateway_registry=registry,
        lock_provider=locks,
        payment_service=payment_service,
        refund_service=refund_service,
    )
