"""
金额工具 - 定点小数与货币精度

所有金额均为 ``Decimal``，按货币的 ISO-4217 小数位校验，禁止浮点运算。
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Union

from domain.common.exceptions import InvalidAmountException


DEFAULT_EXPONENT = 2

# ISO-4217 minor units that differ from the default
CURRENCY_EXPONENTS = {
    "BIF": 0,
    "CLP": 0,
    "DJF": 0,
    "GNF": 0,
    "ISK": 0,
    "JPY": 0,
    "KMF": 0,
    "KRW": 0,
    "PYG": 0,
    "RWF": 0,
    "UGX": 0,
    "VND": 0,
    "VUV": 0,
    "XAF": 0,
    "XOF": 0,
    "XPF": 0,
    "BHD": 3,
    "IQD": 3,
    "JOD": 3,
    "KWD": 3,
    "LYD": 3,
    "OMR": 3,
    "TND": 3,
}

ZERO = Decimal("0")

AmountLike = Union[Decimal, str, int]


def currency_exponent(currency: str) -> int:
    """货币的小数位数"""
    return CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)


def quantum(currency: str) -> Decimal:
    return Decimal(1).scaleb(-currency_exponent(currency))


def to_decimal(value: AmountLike) -> Decimal:
    """转换为 Decimal；拒绝 float 以避免二进制精度误差"""
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountException(f"Amount must be a decimal, got {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            raise InvalidAmountException(f"Invalid amount: {value!r}") from exc
    if not result.is_finite():
        raise InvalidAmountException(f"Invalid amount: {value!r}")
    return result


def normalize_amount(value: AmountLike, currency: str, *, allow_zero: bool = False) -> Decimal:
    """
    校验并规范化金额到货币精度

    业务规则：
    1. 金额必须大于0（或在 allow_zero 时不小于0）
    2. 小数位不能超过货币允许的位数（不做隐式舍入）
    """
    amount = to_decimal(value)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmountException(
            f"Amount must be greater than 0: {amount}", amount=amount, currency=currency
        )
    q = quantum(currency)
    normalized = amount.quantize(q)
    if normalized != amount:
        raise InvalidAmountException(
            f"Amount {amount} exceeds the precision of {currency.upper()}",
            amount=amount,
            currency=currency,
        )
    return normalized


def sum_amounts(amounts) -> Decimal:
    total = ZERO
    for amount in amounts:
        total += amount
    return total
