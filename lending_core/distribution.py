"""
Distribution Calculator Module

Pure functions that split a payment amount into late fee, whole installments
and excess for flat-rate loans, and into late fee, accrued interest and
capital for French-amortization loans. Nothing here touches storage.

Flat-rate rules:

1. late fee = overdue installments x installment amount x late fee rate
2. the late fee is taken first; if the payment cannot cover it, the fee
   absorbs the whole payment
3. only whole installments are covered, oldest first, never more than are
   pending
4. whatever is left over after the last whole installment is excess
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Iterable, Optional

from .currency import Money
from .config import LateFeeType
from .errors import InvalidPaymentAmount


DEFAULT_LATE_FEE_RATE = Decimal('0.05')


@dataclass(frozen=True)
class ScheduleState:
    """Snapshot of a flat-rate loan's unpaid schedule at payment time"""
    installment_amount: Money
    pending_installments: int
    overdue_installments: int
    late_fee: Optional[Money] = None   # overrides the computed fee when set


@dataclass(frozen=True)
class FlatRateDistribution:
    """Outcome of distributing one payment over a flat-rate schedule"""
    total_amount: Money
    late_fee_applied: Money
    installments_covered: int
    excess_amount: Money
    is_full_settlement: bool

    @property
    def is_insufficient(self) -> bool:
        """The payment covers no installment and does not settle the loan"""
        return self.installments_covered == 0 and not self.is_full_settlement

    @property
    def installments_amount(self) -> Money:
        return self.total_amount - self.late_fee_applied - self.excess_amount


def calculate_flat_rate_late_fee(overdue_installments: int, installment_amount: Money,
                                 late_fee_rate: Decimal = DEFAULT_LATE_FEE_RATE) -> Money:
    """Late fee owed for ``overdue_installments`` unpaid past-due installments"""
    if overdue_installments <= 0:
        return Money.zero(installment_amount.currency)
    return installment_amount * (Decimal(overdue_installments) * late_fee_rate)


def calculate_distribution(payment_amount: Money, state: ScheduleState,
                           late_fee_rate: Decimal = DEFAULT_LATE_FEE_RATE) -> FlatRateDistribution:
    """
    Distribute a flat-rate payment.

    Args:
        payment_amount: Amount received, strictly positive
        state: Installment amount and pending/overdue counts
        late_fee_rate: Fraction of one installment charged per overdue installment

    Returns:
        FlatRateDistribution; check ``is_insufficient`` before applying it

    Raises:
        InvalidPaymentAmount: payment_amount is zero or negative
    """
    if not payment_amount.is_positive():
        raise InvalidPaymentAmount("Payment amount must be greater than zero",
                                   {"amount": str(payment_amount.amount)})
    currency = payment_amount.currency
    zero = Money.zero(currency)

    late_fee = state.late_fee
    if late_fee is None:
        late_fee = calculate_flat_rate_late_fee(
            state.overdue_installments, state.installment_amount, late_fee_rate
        )

    after_fee = payment_amount - late_fee
    if after_fee.is_negative():
        # Fee consumes the whole payment
        return FlatRateDistribution(
            total_amount=payment_amount,
            late_fee_applied=payment_amount,
            installments_covered=0,
            excess_amount=zero,
            is_full_settlement=state.pending_installments == 0
        )

    affordable = int(after_fee.amount // state.installment_amount.amount)
    covered = min(affordable, state.pending_installments)

    return FlatRateDistribution(
        total_amount=payment_amount,
        late_fee_applied=late_fee,
        installments_covered=covered,
        excess_amount=after_fee - state.installment_amount * covered,
        is_full_settlement=covered == state.pending_installments
    )


@dataclass(frozen=True)
class OverdueInfo:
    overdue_installments: int
    days_overdue: int               # days since the oldest unpaid past-due installment
    overdue_amount: Money
    late_fee: Money
    oldest_due_date: Optional[date] = None


def calculate_overdue_info(unpaid_due_dates: Iterable[date], installment_amount: Money,
                           as_of: date, late_fee_rate: Decimal = DEFAULT_LATE_FEE_RATE) -> OverdueInfo:
    """Overdue count, age and fee for a set of unpaid installment due dates"""
    past_due = sorted(d for d in unpaid_due_dates if d < as_of)
    if not past_due:
        zero = Money.zero(installment_amount.currency)
        return OverdueInfo(0, 0, zero, zero)

    return OverdueInfo(
        overdue_installments=len(past_due),
        days_overdue=(as_of - past_due[0]).days,
        overdue_amount=installment_amount * len(past_due),
        late_fee=calculate_flat_rate_late_fee(len(past_due), installment_amount, late_fee_rate),
        oldest_due_date=past_due[0]
    )


# French amortization

@dataclass(frozen=True)
class FrenchDistribution:
    total_amount: Money
    late_fee_applied: Money
    interest_applied: Money
    capital_applied: Money
    excess_amount: Money


def calculate_pending_interest(remaining_capital: Money, annual_interest_rate: Decimal,
                               since: date, payment_date: date) -> Money:
    """Simple interest accrued on the outstanding capital since ``since``"""
    days = (payment_date - since).days
    if days <= 0 or annual_interest_rate <= 0:
        return Money.zero(remaining_capital.currency)
    daily_rate = annual_interest_rate / Decimal('100') / Decimal('365')
    return remaining_capital * (daily_rate * Decimal(days))


def calculate_french_late_fee(remaining_capital: Money, next_due_date: Optional[date],
                              payment_date: date, fee_type: LateFeeType, fee_value: Decimal,
                              grace_period_days: int = 0) -> Money:
    """
    Late fee for a French loan. Nothing is owed until the grace period after
    the next due date has lapsed.
    """
    zero = Money.zero(remaining_capital.currency)
    if next_due_date is None:
        return zero

    days_late = (payment_date - next_due_date).days
    if days_late <= grace_period_days:
        return zero

    if fee_type == LateFeeType.FIXED:
        return Money(fee_value, remaining_capital.currency)
    return remaining_capital * (fee_value / Decimal('100') * Decimal(days_late))


def calculate_french_distribution(payment_amount: Money, remaining_capital: Money,
                                  pending_interest: Money, late_fee: Money) -> FrenchDistribution:
    """Apply a payment to late fee, then interest, then capital"""
    if not payment_amount.is_positive():
        raise InvalidPaymentAmount("Payment amount must be greater than zero",
                                   {"amount": str(payment_amount.amount)})
    zero = Money.zero(payment_amount.currency)
    available = payment_amount

    late_fee_applied = min(available, late_fee)
    available = available - late_fee_applied

    interest_applied = min(available, pending_interest)
    available = available - interest_applied

    capital_applied = min(available, remaining_capital)
    available = available - capital_applied

    return FrenchDistribution(
        total_amount=payment_amount,
        late_fee_applied=late_fee_applied,
        interest_applied=interest_applied,
        capital_applied=capital_applied,
        excess_amount=available if available.is_positive() else zero
    )
