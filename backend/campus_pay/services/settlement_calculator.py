"""
Settlement Calculator — Pure settlement arithmetic. No I/O.

Amounts are Decimal throughout and totals are rounded to paise
(two places, ROUND_HALF_UP).
"""
import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, List, Optional, Sequence, Union

from pydantic import BaseModel

from campus_pay.errors import BusinessRuleError, GatewayError
from campus_pay.utils.hashing import generate_hash

PAISE = Decimal("0.01")
DEFAULT_GST_RATE = Decimal("18")
DEFAULT_CUSTOM_DAYS = 7

SCHEDULE_DAYS = {"daily": 1, "weekly": 7}


@dataclass(frozen=True)
class SettlementPeriod:
    start: datetime
    end: datetime

    def contains(self, moment: Optional[datetime]) -> bool:
        return moment is not None and self.start <= moment <= self.end


@dataclass
class SettlementAmounts:
    total_transaction_amount: Decimal
    total_gateway_fees: Decimal
    total_platform_fees: Decimal
    total_taxes: Decimal
    net_settlement_amount: Decimal
    transaction_ids: List[str] = field(default_factory=list)

    @property
    def transaction_count(self) -> int:
        return len(self.transaction_ids)


def to_decimal(value: Any, default: str = "0") -> Decimal:
    if value is None:
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def paise(value: Decimal) -> Decimal:
    return value.quantize(PAISE, rounding=ROUND_HALF_UP)


def _month_before(moment: datetime) -> datetime:
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def settlement_period(
    schedule: str,
    as_of: datetime,
    custom_days: Optional[Sequence[int]] = None,
) -> SettlementPeriod:
    """Window ending at ``as_of`` for the given schedule.

    daily 1 day, weekly 7, monthly one calendar month (day clamped to the
    shorter month's end), custom the largest configured day count (7 when
    none). Unknown schedules fall back to daily.
    """
    if schedule == "monthly":
        return SettlementPeriod(start=_month_before(as_of), end=as_of)
    if schedule == "custom":
        days = max(custom_days) if custom_days else DEFAULT_CUSTOM_DAYS
        return SettlementPeriod(start=as_of - timedelta(days=days), end=as_of)
    days = SCHEDULE_DAYS.get(schedule, SCHEDULE_DAYS["daily"])
    return SettlementPeriod(start=as_of - timedelta(days=days), end=as_of)


def _field(txn: Any, name: str, default: Any = None) -> Any:
    if isinstance(txn, dict):
        return txn.get(name, default)
    return getattr(txn, name, default)


def is_eligible(txn: Any, period: Optional[SettlementPeriod] = None) -> bool:
    """Successful, webhook-verified, not yet settled, and inside the window."""
    if _field(txn, "status") != "success" or not _field(txn, "webhook_verified"):
        return False
    if _field(txn, "settlement_id") is not None:
        return False
    return period is None or period.contains(_field(txn, "completed_at"))


def compute_amounts(
    transactions: Iterable[Any],
    fee_structure: Union[dict, BaseModel, None],
    default_tax_rate: Union[Decimal, float, None] = None,
    period: Optional[SettlementPeriod] = None,
) -> SettlementAmounts:
    """Gross, fees, taxes and net over the eligible transactions.

    Per transaction:
        gateway fee  = amount * gateway_fee_percentage / 100 + gateway_fee_fixed
        platform fee = amount * transaction_fee_percentage / 100 + transaction_fee_fixed
    Taxes are the tax rate applied to the sum of both fees. The rate is
    ``fee_structure.tax_rate_percentage`` when set, else ``default_tax_rate``.
    """
    if isinstance(fee_structure, BaseModel):
        fee_structure = fee_structure.model_dump()
    fees = fee_structure or {}

    gateway_pct = to_decimal(fees.get("gateway_fee_percentage"))
    gateway_fixed = to_decimal(fees.get("gateway_fee_fixed"))
    platform_pct = to_decimal(fees.get("transaction_fee_percentage"))
    platform_fixed = to_decimal(fees.get("transaction_fee_fixed"))
    if fees.get("tax_rate_percentage") is not None:
        tax_rate = to_decimal(fees["tax_rate_percentage"])
    else:
        tax_rate = to_decimal(default_tax_rate, str(DEFAULT_GST_RATE))

    gross = gateway_fees = platform_fees = Decimal("0")
    ids: List[str] = []
    for txn in transactions:
        if not is_eligible(txn, period):
            continue
        amount = to_decimal(_field(txn, "amount"))
        gross += amount
        gateway_fees += amount * gateway_pct / 100 + gateway_fixed
        platform_fees += amount * platform_pct / 100 + platform_fixed
        if _field(txn, "id") is not None:
            ids.append(str(_field(txn, "id")))

    gross, gateway_fees, platform_fees = paise(gross), paise(gateway_fees), paise(platform_fees)
    taxes = paise((gateway_fees + platform_fees) * tax_rate / 100)
    net = gross - gateway_fees - platform_fees - taxes

    return SettlementAmounts(
        total_transaction_amount=gross,
        total_gateway_fees=gateway_fees,
        total_platform_fees=platform_fees,
        total_taxes=taxes,
        net_settlement_amount=net,
        transaction_ids=ids,
    )


def check_limits(
    amounts: SettlementAmounts,
    minimum: Union[Decimal, float, str, None],
    maximum: Union[Decimal, float, str, None] = None,
) -> None:
    """Reject settlements outside the configured bounds. Nothing is zeroed.

    Raises:
        BusinessRuleError: BIZ_007 when net is negative or below ``minimum``.
        GatewayError: GATEWAY_004 when net exceeds ``maximum``.
    """
    net = amounts.net_settlement_amount
    minimum = to_decimal(minimum)
    if net < 0 or net < minimum:
        raise BusinessRuleError("BIZ_007", details={
            "net_settlement_amount": str(net),
            "minimum_settlement_amount": str(minimum),
        })
    if maximum is not None and net > to_decimal(maximum):
        raise GatewayError("GATEWAY_004", details={
            "net_settlement_amount": str(net),
            "maximum_settlement_amount": str(maximum),
        })


def settlement_hash(
    campus_id: str,
    gateway_provider: str,
    transaction_ids: Iterable[Any],
    total_amount: Any,
    net_amount: Any,
) -> str:
    """SHA-256 of the settlement's identity. Independent of transaction order."""
    return generate_hash({
        "campus_id": campus_id,
        "gateway_provider": gateway_provider,
        "transaction_ids": sorted(str(txn_id) for txn_id in transaction_ids),
        "total_amount": str(paise(to_decimal(total_amount))),
        "net_amount": str(paise(to_decimal(net_amount))),
    })
