"""
Payment Processing Module

Applies payments to loans and reverses them. Each application or reversal is
a single unit of work inside ``storage.atomic()``: the payment row, the
schedule rows and the loan balance commit together or not at all. Domain
events (and therefore audit records) are published only after commit.

Payment rows are append-only. A reversal never edits the original; it inserts
a new row with every amount negated that points back at the original.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .config import LendingConfig, get_config
from .errors import (
    InvalidPaymentAmount, PaymentNotAllowed, PaymentNotFound, CannotReversePayment
)
from .logging_config import get_logger, log_action
from .schedule import generate_french_schedule
from .distribution import (
    ScheduleState, FlatRateDistribution, FrenchDistribution, calculate_distribution,
    calculate_pending_interest, calculate_french_late_fee, calculate_french_distribution
)
from .loans import (
    LoanManager, Loan, LoanStatus, ScheduleStatus, LoanBalanceSnapshot,
    fold_flat_rate_balance, fold_french_balance, PAYMENTS_TABLE
)


class PaymentType(Enum):
    REGULAR = "REGULAR"
    ADVANCE = "ADVANCE"                  # more than one installment at once
    CAPITAL_PAYMENT = "CAPITAL_PAYMENT"  # capital reduced without completing an installment
    FULL_SETTLEMENT = "FULL_SETTLEMENT"


@dataclass
class Payment(StorageRecord):
    """Immutable payment row; negative amounts mark a reversal"""
    loan_id: str
    payment_date: date
    total_amount: Money
    capital_applied: Money
    interest_applied: Money
    late_fee_applied: Money
    excess_amount: Money
    installments_covered: int
    payment_type: PaymentType
    loan_status_before: LoanStatus
    created_by_id: Optional[str] = None
    reversed_payment_id: Optional[str] = None
    reversal_reason: Optional[str] = None

    @property
    def is_reversal(self) -> bool:
        return self.reversed_payment_id is not None


@dataclass
class PaymentResult:
    payment: Payment
    loan: Loan
    previous_balance: Money
    new_balance: Money
    status_changed: bool
    installments_covered: int
    excess_amount: Money


class PaymentProcessor(EventPublisherMixin):
    """
    Registers and reverses loan payments
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.config = config or get_config()
        self.logger = get_logger("lending.payments")
        self.set_event_dispatcher(event_dispatcher)

        self.payments_table = PAYMENTS_TABLE

    def apply_payment(
        self,
        loan_id: str,
        amount: Union[Money, Decimal],
        payment_date: Optional[date] = None,
        actor_id: Optional[str] = None
    ) -> PaymentResult:
        """
        Register a payment against a loan

        Args:
            loan_id: Loan being paid
            amount: Amount received; a bare Decimal is taken in the loan's currency
            payment_date: Value date (defaults to today)
            actor_id: User registering the payment

        Returns:
            PaymentResult with the stored payment and the updated loan

        Raises:
            InvalidPaymentAmount: amount not positive, or too small to cover
                one installment of a flat-rate loan
            LoanNotFound: no such loan
            PaymentNotAllowed: loan is PAID or CANCELED
        """
        payment_date = payment_date or date.today()

        with self.storage.atomic():
            loan = self.loan_manager.get_loan(loan_id)
            amount = self._as_money(amount, loan.currency)
            if not loan.accepts_payments:
                raise PaymentNotAllowed(loan.id, loan.status.value)

            if loan.is_flat_rate:
                payment, before, after = self._apply_flat_rate(loan, amount, payment_date, actor_id)
            else:
                payment, before, after = self._apply_french(loan, amount, payment_date, actor_id)

            after.apply_to(loan)
            loan.status = LoanStatus.PAID if after.is_paid_off else LoanStatus.ACTIVE
            loan.updated_at = payment.created_at
            loan.updated_by_id = actor_id
            self._save_payment(payment)
            self.loan_manager.save_loan(loan)

        result = PaymentResult(
            payment=payment,
            loan=loan,
            previous_balance=before.remaining_capital,
            new_balance=after.remaining_capital,
            status_changed=loan.status != payment.loan_status_before,
            installments_covered=payment.installments_covered,
            excess_amount=payment.excess_amount
        )

        log_action(
            self.logger, "info", f"Payment {payment.id} applied to loan {loan.id}",
            actor_id=actor_id, action="register_payment", resource=f"loan:{loan.id}",
            extra={"amount": str(amount.amount), "type": payment.payment_type.value,
                   "changes": {k: str(v) for k, v in after.changes_from(before).items()}}
        )
        self.publish_event(DomainEvent.PAYMENT_APPLIED, "payment", payment.id,
                           self._event_data(result), actor_id=actor_id)
        if loan.status == LoanStatus.PAID:
            self.publish_event(DomainEvent.LOAN_PAID_OFF, "loan", loan.id,
                               {"payment_id": payment.id}, actor_id=actor_id)
        return result

    def _apply_flat_rate(self, loan: Loan, amount: Money, payment_date: date, actor_id: Optional[str]):
        entries = self.loan_manager.get_loan_schedule(loan.id)
        pending = [e for e in entries if e.is_unpaid]
        if not pending:
            raise PaymentNotAllowed(loan.id, loan.status.value, "no pending installments")

        overdue = sum(
            1 for e in pending
            if e.status == ScheduleStatus.OVERDUE or e.due_date < payment_date
        )
        distribution = calculate_distribution(
            amount,
            ScheduleState(loan.installment_amount, len(pending), overdue),
            late_fee_rate=self.config.flat_rate_late_fee_rate
        )
        if distribution.is_insufficient:
            raise InvalidPaymentAmount(
                f"Payment of {amount.to_string()} does not cover one installment of "
                f"{loan.installment_amount.to_string()}",
                {"late_fee": str(distribution.late_fee_applied.amount),
                 "installment_amount": str(loan.installment_amount.amount)}
            )

        # Oldest installments first
        selected = pending[:distribution.installments_covered]
        now = datetime.now(timezone.utc)
        payment_id = str(uuid.uuid4())

        before = LoanBalanceSnapshot.of(loan)
        for entry in selected:
            entry.mark_paid(payment_id, now)
        after = fold_flat_rate_balance(loan, entries)

        if after.is_paid_off:
            payment_type = PaymentType.FULL_SETTLEMENT
        elif len(selected) > 1:
            payment_type = PaymentType.ADVANCE
        else:
            payment_type = PaymentType.REGULAR

        payment = Payment(
            id=payment_id,
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            payment_date=payment_date,
            total_amount=amount,
            capital_applied=Money.sum((e.principal_expected for e in selected), loan.currency),
            interest_applied=Money.sum((e.interest_expected for e in selected), loan.currency),
            late_fee_applied=distribution.late_fee_applied,
            excess_amount=distribution.excess_amount,
            installments_covered=len(selected),
            payment_type=payment_type,
            loan_status_before=loan.status,
            created_by_id=actor_id
        )

        for entry in selected:
            self.loan_manager.save_schedule_entry(entry)
        return payment, before, after

    def _apply_french(self, loan: Loan, amount: Money, payment_date: date, actor_id: Optional[str]):
        if loan.remaining_capital.is_zero():
            raise PaymentNotAllowed(loan.id, loan.status.value, "no outstanding capital")

        distribution = self._french_distribution(loan, amount, payment_date)
        schedule = generate_french_schedule(loan.terms, loan.origination_date)
        before = LoanBalanceSnapshot.of(loan)
        after = fold_french_balance(schedule, loan.remaining_capital - distribution.capital_applied)
        covered = after.installments_paid - before.installments_paid

        if after.is_paid_off:
            payment_type = PaymentType.FULL_SETTLEMENT
        elif covered > 1:
            payment_type = PaymentType.ADVANCE
        elif covered == 0 and distribution.capital_applied.is_positive():
            payment_type = PaymentType.CAPITAL_PAYMENT
        else:
            payment_type = PaymentType.REGULAR

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            payment_date=payment_date,
            total_amount=amount,
            capital_applied=distribution.capital_applied,
            interest_applied=distribution.interest_applied,
            late_fee_applied=distribution.late_fee_applied,
            excess_amount=distribution.excess_amount,
            installments_covered=covered,
            payment_type=payment_type,
            loan_status_before=loan.status,
            created_by_id=actor_id
        )
        return payment, before, after

    def _french_distribution(self, loan: Loan, amount: Money, payment_date: date) -> FrenchDistribution:
        payments = self.get_loan_payments(loan.id)
        since = max((p.payment_date for p in payments), default=loan.origination_date)

        pending_interest = calculate_pending_interest(
            loan.remaining_capital, loan.terms.annual_interest_rate, since, payment_date
        )
        late_fee = calculate_french_late_fee(
            loan.remaining_capital, loan.next_due_date, payment_date,
            self.config.french_late_fee_type, self.config.french_late_fee_value,
            self.config.grace_period_days
        )
        return calculate_french_distribution(amount, loan.remaining_capital, pending_interest, late_fee)

    def calculate_french_distribution(self, loan_id: str, amount: Union[Money, Decimal],
                                      payment_date: Optional[date] = None) -> FrenchDistribution:
        """Preview how a payment on a French loan would be allocated"""
        loan = self.loan_manager.get_loan(loan_id)
        if loan.is_flat_rate:
            raise PaymentNotAllowed(loan.id, loan.status.value, "not a French-amortization loan")
        return self._french_distribution(loan, self._as_money(amount, loan.currency),
                                         payment_date or date.today())

    def calculate_flat_rate_distribution(self, loan_id: str, amount: Union[Money, Decimal],
                                         payment_date: Optional[date] = None) -> FlatRateDistribution:
        """Preview how a payment on a flat-rate loan would be distributed"""
        payment_date = payment_date or date.today()
        loan = self.loan_manager.get_loan(loan_id)
        if not loan.is_flat_rate:
            raise PaymentNotAllowed(loan.id, loan.status.value, "not a flat-rate loan")

        pending = self.loan_manager.get_pending_schedule_entries(loan_id)
        overdue = sum(1 for e in pending if e.status == ScheduleStatus.OVERDUE or e.due_date < payment_date)
        return calculate_distribution(
            self._as_money(amount, loan.currency),
            ScheduleState(loan.installment_amount, len(pending), overdue),
            late_fee_rate=self.config.flat_rate_late_fee_rate
        )

    def reverse_payment(
        self,
        payment_id: str,
        actor_id: str,
        reason: str,
        reversal_date: Optional[date] = None
    ) -> PaymentResult:
        """
        Reverse a payment by inserting its negation and restoring the loan

        Args:
            payment_id: Payment to reverse
            actor_id: User requesting the reversal
            reason: Free-text reason kept on the reversal row
            reversal_date: Value date of the reversal (defaults to today)

        Raises:
            PaymentNotFound: no such payment
            CannotReversePayment: loan canceled, payment is itself a
                reversal, or payment already reversed
        """
        reversal_date = reversal_date or date.today()

        with self.storage.atomic():
            original = self.get_payment(payment_id)
            loan = self.loan_manager.get_loan(original.loan_id)

            if loan.status == LoanStatus.CANCELED:
                raise CannotReversePayment(payment_id, "loan is canceled")
            if original.is_reversal:
                raise CannotReversePayment(payment_id, "payment is itself a reversal")
            if self.storage.find(self.payments_table, {"reversed_payment_id": payment_id}):
                raise CannotReversePayment(payment_id, "payment was already reversed")

            now = datetime.now(timezone.utc)
            before = LoanBalanceSnapshot.of(loan)

            if loan.is_flat_rate:
                entries = self.loan_manager.get_loan_schedule(loan.id)
                restored = [e for e in entries if e.payment_id == original.id]
                for entry in restored:
                    entry.mark_unpaid(reversal_date, now)
                after = fold_flat_rate_balance(loan, entries)
                for entry in restored:
                    self.loan_manager.save_schedule_entry(entry)
            else:
                schedule = generate_french_schedule(loan.terms, loan.origination_date)
                after = fold_french_balance(schedule, loan.remaining_capital + original.capital_applied)

            reversal = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                payment_date=reversal_date,
                total_amount=-original.total_amount,
                capital_applied=-original.capital_applied,
                interest_applied=-original.interest_applied,
                late_fee_applied=-original.late_fee_applied,
                excess_amount=-original.excess_amount,
                installments_covered=-original.installments_covered,
                payment_type=original.payment_type,
                loan_status_before=loan.status,
                created_by_id=actor_id,
                reversed_payment_id=original.id,
                reversal_reason=reason
            )

            after.apply_to(loan)
            loan.status = self._status_after_reversal(loan.status, original, after, reversal_date)
            loan.updated_at = now
            loan.updated_by_id = actor_id
            self._save_payment(reversal)
            self.loan_manager.save_loan(loan)

        result = PaymentResult(
            payment=reversal,
            loan=loan,
            previous_balance=before.remaining_capital,
            new_balance=after.remaining_capital,
            status_changed=loan.status != reversal.loan_status_before,
            installments_covered=reversal.installments_covered,
            excess_amount=reversal.excess_amount
        )

        log_action(
            self.logger, "info", f"Payment {payment_id} reversed on loan {loan.id}",
            actor_id=actor_id, action="reverse_payment", resource=f"loan:{loan.id}",
            extra={"reason": reason, "reversal_id": reversal.id}
        )
        self.publish_event(DomainEvent.PAYMENT_REVERSED, "payment", reversal.id,
                           dict(self._event_data(result), reason=reason), actor_id=actor_id)
        return result

    @staticmethod
    def _status_after_reversal(current: LoanStatus, original: Payment,
                               after: LoanBalanceSnapshot, today: date) -> LoanStatus:
        if after.is_paid_off:
            return current
        status = LoanStatus.ACTIVE if current == LoanStatus.PAID else current
        if (original.loan_status_before == LoanStatus.OVERDUE and status == LoanStatus.ACTIVE
                and after.next_due_date is not None and after.next_due_date < today):
            status = LoanStatus.OVERDUE
        return status

    # Queries

    def get_payment(self, payment_id: str) -> Payment:
        data = self.storage.load(self.payments_table, payment_id)
        if not data:
            raise PaymentNotFound(payment_id)
        return self._payment_from_dict(data)

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        """All payment rows of a loan, reversals included, in registration order"""
        payments = [self._payment_from_dict(d) for d in self.storage.find(self.payments_table, {"loan_id": loan_id})]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def get_payments_summary(self, loan_id: str) -> Dict[str, Any]:
        """Net totals over every payment row of a loan; reversals cancel out"""
        loan = self.loan_manager.get_loan(loan_id)
        payments = self.get_loan_payments(loan_id)
        currency = loan.currency

        def total(field: str) -> Decimal:
            return Money.sum((getattr(p, field) for p in payments), currency).amount

        regular = [p for p in payments if not p.is_reversal]
        return {
            "loan_id": loan.id,
            "payment_count": len(regular),
            "reversal_count": len(payments) - len(regular),
            "total_paid": total("total_amount"),
            "total_capital": total("capital_applied"),
            "total_interest": total("interest_applied"),
            "total_late_fees": total("late_fee_applied"),
            "total_excess": total("excess_amount"),
            "first_payment_date": min((p.payment_date for p in regular), default=None),
            "last_payment_date": max((p.payment_date for p in regular), default=None),
        }

    # Helpers

    @staticmethod
    def _as_money(amount: Union[Money, Decimal], currency: Currency) -> Money:
        """Amount in the loan's currency, rounded and strictly positive"""
        if isinstance(amount, Money):
            if amount.currency != currency:
                raise InvalidPaymentAmount(
                    f"Payment currency {amount.currency.code} does not match loan currency {currency.code}"
                )
        else:
            amount = Money(Decimal(str(amount)), currency)
        if not amount.is_positive():
            raise InvalidPaymentAmount("Payment amount must be greater than zero",
                                       {"amount": str(amount.amount)})
        return amount

    @staticmethod
    def _event_data(result: PaymentResult) -> Dict[str, Any]:
        payment = result.payment
        return {
            "loan_id": payment.loan_id,
            "payment_type": payment.payment_type.value,
            "total_amount": str(payment.total_amount.amount),
            "capital_applied": str(payment.capital_applied.amount),
            "interest_applied": str(payment.interest_applied.amount),
            "late_fee_applied": str(payment.late_fee_applied.amount),
            "installments_covered": payment.installments_covered,
            "previous_balance": str(result.previous_balance.amount),
            "new_balance": str(result.new_balance.amount),
            "loan_status": result.loan.status.value,
        }

    def _save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def _payment_to_dict(self, payment: Payment) -> Dict[str, Any]:
        result = payment.base_dict()
        result.update({
            'loan_id': payment.loan_id,
            'payment_date': payment.payment_date.isoformat(),
            'currency': payment.total_amount.currency.code,
            'installments_covered': payment.installments_covered,
            'payment_type': payment.payment_type.value,
            'loan_status_before': payment.loan_status_before.value,
            'created_by_id': payment.created_by_id,
            'reversed_payment_id': payment.reversed_payment_id,
            'reversal_reason': payment.reversal_reason,
        })
        for field in ['total_amount', 'capital_applied', 'interest_applied',
                      'late_fee_applied', 'excess_amount']:
            result[field] = str(getattr(payment, field).amount)
        return result

    def _payment_from_dict(self, data: Dict[str, Any]) -> Payment:
        currency = Currency[data['currency']]

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        return Payment(
            id=data['id'],
            **StorageRecord.parse_timestamps(data),
            loan_id=data['loan_id'],
            payment_date=date.fromisoformat(data['payment_date']),
            total_amount=get_money('total_amount'),
            capital_applied=get_money('capital_applied'),
            interest_applied=get_money('interest_applied'),
            late_fee_applied=get_money('late_fee_applied'),
            excess_amount=get_money('excess_amount'),
            installments_covered=data['installments_covered'],
            payment_type=PaymentType(data['payment_type']),
            loan_status_before=LoanStatus(data['loan_status_before']),
            created_by_id=data.get('created_by_id'),
            reversed_payment_id=data.get('reversed_payment_id'),
            reversal_reason=data.get('reversal_reason')
        )
