"""
Schedule Generator Module

Pure functions turning loan terms into a fixed installment schedule at
origination. Two regimes are supported:

* French amortization: interest accrues on the declining balance, each
  installment blends shrinking interest with growing principal, and the final
  installment absorbs the rounding residue so the balance lands on zero.
* Flat rate: a finance charge fixed at origination is spread evenly, so every
  installment is numerically identical for the life of the loan.

Loan terms are modelled as a tagged variant (``FrenchTerms`` or
``FlatRateTerms``); a flat-rate loan has no interest rate to read.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import ClassVar, List, Union
from enum import Enum
import calendar

from .currency import Money
from .errors import InvalidLoanTerms


class LoanStructure(Enum):
    """Amortization regime of a loan"""
    FRENCH_AMORTIZATION = "FRENCH_AMORTIZATION"
    FLAT_RATE = "FLAT_RATE"


class PaymentFrequency(Enum):
    """Payment frequency options"""
    DAILY = "DAILY"        # 365 payments per year
    WEEKLY = "WEEKLY"      # 52 payments per year
    BIWEEKLY = "BIWEEKLY"  # 26 payments per year
    MONTHLY = "MONTHLY"    # 12 payments per year

    @property
    def periods_per_year(self) -> int:
        return {
            PaymentFrequency.DAILY: 365,
            PaymentFrequency.WEEKLY: 52,
            PaymentFrequency.BIWEEKLY: 26,
            PaymentFrequency.MONTHLY: 12,
        }[self]


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_due_date(start_date: date, frequency: PaymentFrequency, installment_number: int) -> date:
    """
    Due date of installment ``installment_number`` (1-based) counted from the
    origination date. Monthly dates are computed from the origination date
    rather than chained, so a loan started on the 31st keeps falling on the
    last day of shorter months without drifting.
    """
    if frequency == PaymentFrequency.DAILY:
        return start_date + timedelta(days=installment_number)
    elif frequency == PaymentFrequency.WEEKLY:
        return start_date + timedelta(days=7 * installment_number)
    elif frequency == PaymentFrequency.BIWEEKLY:
        return start_date + timedelta(days=14 * installment_number)
    elif frequency == PaymentFrequency.MONTHLY:
        return add_months(start_date, installment_number)
    raise ValueError(f"Unsupported payment frequency: {frequency}")


def _validate_common(principal_amount: Money, term_count: int, frequency) -> None:
    if not isinstance(principal_amount, Money) or not principal_amount.is_positive():
        raise InvalidLoanTerms("Principal amount must be greater than zero")
    if not isinstance(term_count, int) or isinstance(term_count, bool) or term_count <= 0:
        raise InvalidLoanTerms("Term count must be a positive integer")
    if not isinstance(frequency, PaymentFrequency):
        raise InvalidLoanTerms(f"Unsupported payment frequency: {frequency}")


@dataclass(frozen=True)
class FrenchTerms:
    """Terms of a French-amortization loan"""
    principal_amount: Money
    annual_interest_rate: Decimal   # percent, e.g. 24 for 24% a year
    term_count: int
    payment_frequency: PaymentFrequency

    structure: ClassVar[LoanStructure] = LoanStructure.FRENCH_AMORTIZATION

    def __post_init__(self):
        _validate_common(self.principal_amount, self.term_count, self.payment_frequency)
        if not isinstance(self.annual_interest_rate, Decimal):
            object.__setattr__(self, 'annual_interest_rate', Decimal(str(self.annual_interest_rate)))
        if self.annual_interest_rate < 0:
            raise InvalidLoanTerms("Annual interest rate cannot be negative")

    @property
    def periodic_rate(self) -> Decimal:
        return self.annual_interest_rate / Decimal('100') / Decimal(self.payment_frequency.periods_per_year)


@dataclass(frozen=True)
class FlatRateTerms:
    """Terms of a flat-rate loan; the finance charge never changes"""
    principal_amount: Money
    total_finance_charge: Money
    term_count: int
    payment_frequency: PaymentFrequency

    structure: ClassVar[LoanStructure] = LoanStructure.FLAT_RATE

    def __post_init__(self):
        _validate_common(self.principal_amount, self.term_count, self.payment_frequency)
        if not isinstance(self.total_finance_charge, Money):
            raise InvalidLoanTerms("Finance charge must be a Money amount")
        if self.total_finance_charge.currency != self.principal_amount.currency:
            raise InvalidLoanTerms("Finance charge currency must match principal currency")
        if self.total_finance_charge.is_negative():
            raise InvalidLoanTerms("Finance charge cannot be negative")

    @property
    def total_payable_amount(self) -> Money:
        return self.principal_amount + self.total_finance_charge


LoanTerms = Union[FrenchTerms, FlatRateTerms]


@dataclass
class AmortizationEntry:
    """Single entry in an amortization schedule"""
    installment_number: int
    due_date: date
    payment_amount: Money
    principal_amount: Money
    interest_amount: Money
    remaining_balance: Money

    def __post_init__(self):
        calculated_payment = self.principal_amount + self.interest_amount
        if abs(calculated_payment.amount - self.payment_amount.amount) > Decimal('0.01'):
            raise ValueError(f"Payment amount {self.payment_amount.to_string()} does not equal "
                             f"principal {self.principal_amount.to_string()} + "
                             f"interest {self.interest_amount.to_string()}")


@dataclass(frozen=True)
class ScheduledInstallment:
    """One flat-rate installment before it is persisted"""
    installment_number: int
    due_date: date
    expected_amount: Money
    principal_expected: Money
    interest_expected: Money


@dataclass
class FrenchLoanQuote:
    terms: FrenchTerms
    installment_amount: Money
    total_payable_amount: Money
    total_interest: Money
    schedule: List[AmortizationEntry] = field(default_factory=list)


@dataclass
class FlatRateLoanQuote:
    terms: FlatRateTerms
    total_payable_amount: Money
    installment_amount: Money
    principal_per_installment: Money
    interest_per_installment: Money
    effective_rate_per_term: Decimal   # finance charge as % of principal
    schedule: List[ScheduledInstallment] = field(default_factory=list)


# French amortization

def calculate_french_installment(terms: FrenchTerms) -> Money:
    """
    Fixed installment ``C = P*r*(1+r)^n / ((1+r)^n - 1)``, or ``P/n`` when
    the periodic rate is zero, rounded to currency precision.
    """
    principal = terms.principal_amount.amount
    rate = terms.periodic_rate
    n = terms.term_count

    if rate == 0:
        return Money(principal / Decimal(n), terms.principal_amount.currency)

    factor = (Decimal('1') + rate) ** n
    return Money(principal * rate * factor / (factor - Decimal('1')), terms.principal_amount.currency)


def generate_french_schedule(terms: FrenchTerms, start_date: date) -> List[AmortizationEntry]:
    """Generate the equal-installment amortization schedule"""
    currency = terms.principal_amount.currency
    zero = Money.zero(currency)
    installment = calculate_french_installment(terms)
    rate = terms.periodic_rate
    balance = terms.principal_amount

    schedule = []
    for number in range(1, terms.term_count + 1):
        interest = balance * rate
        if number == terms.term_count:
            # Final installment pays exactly what is left
            principal = balance
        else:
            principal = installment - interest

        balance = balance - principal
        if balance.is_negative():
            balance = zero

        schedule.append(AmortizationEntry(
            installment_number=number,
            due_date=calculate_due_date(start_date, terms.payment_frequency, number),
            payment_amount=principal + interest,
            principal_amount=principal,
            interest_amount=interest,
            remaining_balance=balance
        ))

    return schedule


def quote_french_loan(terms: FrenchTerms, start_date: date) -> FrenchLoanQuote:
    schedule = generate_french_schedule(terms, start_date)
    currency = terms.principal_amount.currency
    total_payable = Money.sum((e.payment_amount for e in schedule), currency)
    return FrenchLoanQuote(
        terms=terms,
        installment_amount=calculate_french_installment(terms),
        total_payable_amount=total_payable,
        total_interest=Money.sum((e.interest_amount for e in schedule), currency),
        schedule=schedule
    )


# Flat rate

def quote_flat_rate_loan(terms: FlatRateTerms, start_date: date) -> FlatRateLoanQuote:
    """
    Spread the fixed finance charge evenly. The principal/charge split per
    installment is for reporting only and may drift from the true totals by
    rounding.
    """
    n = Decimal(terms.term_count)
    total_payable = terms.total_payable_amount
    installment = total_payable / n
    if not installment.is_positive():
        raise InvalidLoanTerms("Installment amount rounds to zero; reduce the term count")

    principal_per_installment = terms.principal_amount / n
    interest_per_installment = terms.total_finance_charge / n

    schedule = [
        ScheduledInstallment(
            installment_number=number,
            due_date=calculate_due_date(start_date, terms.payment_frequency, number),
            expected_amount=installment,
            principal_expected=principal_per_installment,
            interest_expected=interest_per_installment
        )
        for number in range(1, terms.term_count + 1)
    ]

    return FlatRateLoanQuote(
        terms=terms,
        total_payable_amount=total_payable,
        installment_amount=installment,
        principal_per_installment=principal_per_installment,
        interest_per_installment=interest_per_installment,
        effective_rate_per_term=(
            terms.total_finance_charge.amount / terms.principal_amount.amount * Decimal('100')
        ),
        schedule=schedule
    )


def generate_schedule(terms: LoanTerms, start_date: date):
    """Ordered installments for either regime"""
    if isinstance(terms, FlatRateTerms):
        return quote_flat_rate_loan(terms, start_date).schedule
    if isinstance(terms, FrenchTerms):
        return generate_french_schedule(terms, start_date)
    raise InvalidLoanTerms(f"Unsupported loan terms: {type(terms).__name__}")


def quote_loan(terms: LoanTerms, start_date: date) -> Union[FrenchLoanQuote, FlatRateLoanQuote]:
    if isinstance(terms, FlatRateTerms):
        return quote_flat_rate_loan(terms, start_date)
    if isinstance(terms, FrenchTerms):
        return quote_french_loan(terms, start_date)
    raise InvalidLoanTerms(f"Unsupported loan terms: {type(terms).__name__}")
