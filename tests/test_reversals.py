"""
Test suite for payment reversals

A reversal inserts a negated payment row and must restore the loan exactly
as it was before the original payment.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from lending_core.currency import Money, Currency
from lending_core.config import LendingConfig
from lending_core.storage import InMemoryStorage
from lending_core.audit import AuditAction
from lending_core.errors import CannotReversePayment, PaymentNotFound
from lending_core.schedule import PaymentFrequency, FrenchTerms, FlatRateTerms
from lending_core.loans import LoanStatus, ScheduleStatus, LoanBalanceSnapshot
from lending_core.payments import PaymentType
from lending_core.system import LendingSystem


ORIGIN = date(2026, 1, 1)


def dop(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.DOP)


FLAT_TERMS = FlatRateTerms(
    principal_amount=dop('10000'),
    total_finance_charge=dop('3500'),
    term_count=45,
    payment_frequency=PaymentFrequency.DAILY
)

FRENCH_TERMS = FrenchTerms(
    principal_amount=dop('10000'),
    annual_interest_rate=Decimal('24'),
    term_count=12,
    payment_frequency=PaymentFrequency.MONTHLY
)


@pytest.fixture
def system():
    system = LendingSystem(LendingConfig(), storage=InMemoryStorage(), configure_logging=False)
    yield system
    system.close()


def schedule_state(system, loan_id):
    return [(e.status, e.payment_id, e.paid_at) for e in system.loan_manager.get_loan_schedule(loan_id)]


class TestFlatRateReversal:
    """Test reversals on flat-rate loans"""

    def test_reversal_restores_loan(self, system):
        """Reversing a 900 payment puts installments 1-3 back to PENDING"""
        loan = system.loan_manager.create_loan("CLIENT001", FLAT_TERMS, origination_date=ORIGIN)
        original = system.payment_processor.apply_payment(loan.id, dop('900'), payment_date=ORIGIN)

        result = system.payment_processor.reverse_payment(
            original.payment.id, actor_id="SUPERVISOR", reason="Bounced check", reversal_date=ORIGIN
        )

        loan = system.loan_manager.get_loan(loan.id)
        assert loan.installments_paid == 0
        assert loan.remaining_capital == dop('13500.00')
        assert loan.next_due_date == date(2026, 1, 2)
        assert loan.status == LoanStatus.ACTIVE
        assert all(
            e.status == ScheduleStatus.PENDING and e.payment_id is None and e.paid_at is None
            for e in system.loan_manager.get_loan_schedule(loan.id)
        )

        reversal = result.payment
        assert reversal.total_amount == dop('-900')
        assert reversal.capital_applied == dop('-666.66')
        assert reversal.interest_applied == dop('-233.34')
        assert reversal.installments_covered == -3
        assert reversal.reversed_payment_id == original.payment.id
        assert reversal.reversal_reason == "Bounced check"
        assert reversal.created_by_id == "SUPERVISOR"
        assert result.previous_balance == dop('12600.00')
        assert result.new_balance == dop('13500.00')

    def test_original_payment_is_untouched(self, system):
        loan = system.loan_manager.create_loan("CLIENT001", FLAT_TERMS, origination_date=ORIGIN)
        original = system.payment_processor.apply_payment(loan.id, dop('900'), payment_date=ORIGIN).payment
        system.payment_processor.reverse_payment(original.id, "SUPERVISOR", "error", reversal_date=ORIGIN)

        stored = system.payment_processor.get_payment(original.id)
        assert stored == original
        assert len(system.payment_processor.get_loan_payments(loan.id)) == 2

        summary = system.payment_processor.get_payments_summary(loan.id)
        assert summary["total_paid"] == Decimal('0.00')
        assert summary["payment_count"] == 1
        assert summary["reversal_count"] == 1

    def test_apply_then_reverse_is_exact_inverse(self, system):
        """Late fee and excess do not break restoration"""
        loan = system.loan_manager.create_loan("CLIENT001", FLAT_TERMS, origination_date=ORIGIN)
        system.payment_processor.apply_payment(loan.id, dop('600'), payment_date=ORIGIN)
        before = system.loan_manager.get_loan(loan.id)
        rows_before = schedule_state(system, loan.id)

        day = ORIGIN + timedelta(days=2)
        payment = system.payment_processor.apply_payment(loan.id, dop('1234.56'), payment_date=day).payment
        assert payment.late_fee_applied.is_positive() or payment.excess_amount.is_positive()
        system.payment_processor.reverse_payment(payment.id, "SUPERVISOR", "error", reversal_date=day)

        after = system.loan_manager.get_loan(loan.id)
        assert LoanBalanceSnapshot.of(after) == LoanBalanceSnapshot.of(before)
        assert after.status == before.status
        assert schedule_state(system, loan.id) == rows_before

    def test_reversing_full_settlement_reopens_loan(self, system):
        loan = system.loan_manager.create_loan("CLIENT001", FLAT_TERMS, origination_date=ORIGIN)
        payment = system.payment_processor.apply_payment(loan.id, dop('13500'), payment_date=ORIGIN).payment
        assert payment.payment_type == PaymentType.FULL_SETTLEMENT

        result = system.payment_processor.reverse_payment(payment.id, "SUPERVISOR", "error", reversal_date=ORIGIN)

        assert result.status_changed
        assert result.loan.status == LoanStatus.ACTIVE
        assert result.loan.remaining_capital == dop('13500.00')
        assert result.loan.installments_paid == 0
        assert result.loan.next_due_date == date(2026, 1, 2)

    def test_overdue_status_is_restored(self, system):
        """A payment that cured an overdue loan sends it back to OVERDUE on reversal"""
        today = date(2026, 1, 5)
        loan = system.loan_manager.create_loan("CLIENT001", FLAT_TERMS, origination_date=ORIGIN)
        system.loan_manager.process_overdue_loans(today=today)
        rows_before = schedule_state(system, loan.id)
        assert system.loan_manager.get_loan(loan.id).status == LoanStatus.OVERDUE

        # Three overdue installments: 45 fee + 900
        result = system.payment_processor.apply_payment(loan.id, dop('945'), payment_date=today)
        assert result.payment.late_fee_applied == dop('45.00')
        assert result.loan.status == LoanStatus.ACTIVE

        system.payment_processor.reverse_payment(result.payment.id, "SUPERVISOR", "error", reversal_date=today)

        loan = system.loan_manager.get_loan(loan.id)
        assert loan.status == LoanStatus.OVERDUE
        assert loan.next_due_date == date(2026, 1, 2)
        assert schedule_state(system, loan.id) == rows_before

    def test_reversal_is_audited(self, system):
        loan = system.loan_manager.create_loan("CLIENT001", FLAT_TERMS, origination_date=ORIGIN)
        payment = system.payment_processor.apply_payment(loan.id, dop('300'), payment_date=ORIGIN).payment
        result = system.payment_processor.reverse_payment(payment.id, "SUPERVISOR", "error", reversal_date=ORIGIN)

        events = system.audit_trail.get_events_by_action(AuditAction.REVERSE_PAYMENT)
        assert len(events) == 1
        assert events[0].entity_id == result.payment.id
        assert events[0].actor_id == "SUPERVISOR"
        assert events[0].details["reason"] == "error"
        assert system.audit_trail.verify_integrity()["valid"]


class TestReversalRejections:
    """Reversal guard clauses"""

    def test_unknown_payment(self, system):
        with pytest.raises(PaymentNotFound):
            system.payment_processor.reverse_payment("missing", "SUPERVISOR", "error")

    def test_cannot_reverse_twice(self, system):
        loan = system.loan_manager.create_loan("CLIENT001", FLAT_TERMS, origination_date=ORIGIN)
        payment = system.payment_processor.apply_payment(loan.id, dop('300'), payment_date=ORIGIN).payment
        system.payment_processor.reverse_payment(payment.id, "SUPERVISOR", "error", reversal_date=ORIGIN)

        with pytest.raises(CannotReversePayment) as exc_info:
            system.payment_processor.reverse_payment(payment.id, "SUPERVISOR", "again", reversal_date=ORIGIN)
        assert exc_info.value.code == "CANNOT_REVERSE_PAYMENT"

    def test_cannot_reverse_a_reversal(self, system):
        loan = system.loan_manager.create_loan("CLIENT001", FLAT_TERMS, origination_date=ORIGIN)
        payment = system.payment_processor.apply_payment(loan.id, dop('300'), payment_date=ORIGIN).payment
        reversal = system.payment_processor.reverse_payment(payment.id, "SUPERVISOR", "error", reversal_date=ORIGIN)

        with pytest.raises(CannotReversePayment):
            system.payment_processor.reverse_payment(reversal.payment.id, "SUPERVISOR", "undo")

    def test_cannot_reverse_on_canceled_loan(self, system):
        loan = system.loan_manager.create_loan("CLIENT001", FLAT_TERMS, origination_date=ORIGIN)
        payment = system.payment_processor.apply_payment(loan.id, dop('300'), payment_date=ORIGIN).payment
        system.loan_manager.cancel_loan(loan.id)

        with pytest.raises(CannotReversePayment):
            system.payment_processor.reverse_payment(payment.id, "SUPERVISOR", "error")
        assert system.loan_manager.get_loan(loan.id).installments_paid == 1


class TestFrenchReversal:

    def test_reversal_restores_capital(self, system):
        loan = system.loan_manager.create_loan("CLIENT001", FRENCH_TERMS, origination_date=ORIGIN)
        before = LoanBalanceSnapshot.of(loan)
        day = date(2026, 1, 31)

        payment = system.payment_processor.apply_payment(loan.id, dop('2000'), payment_date=day).payment
        assert payment.installments_covered == 2
        result = system.payment_processor.reverse_payment(payment.id, "SUPERVISOR", "error", reversal_date=day)

        assert LoanBalanceSnapshot.of(result.loan) == before
        assert result.loan.status == LoanStatus.ACTIVE
        assert result.payment.capital_applied == -payment.capital_applied
        assert result.installments_covered == -2

    def test_reversing_french_settlement(self, system):
        loan = system.loan_manager.create_loan("CLIENT001", FRENCH_TERMS, origination_date=ORIGIN)
        payment = system.payment_processor.apply_payment(loan.id, dop('20000'), payment_date=date(2026, 1, 31)).payment

        result = system.payment_processor.reverse_payment(payment.id, "SUPERVISOR", "error",
                                                          reversal_date=date(2026, 1, 31))

        assert result.loan.status == LoanStatus.ACTIVE
        assert result.loan.remaining_capital == dop('10000.00')
        assert result.loan.next_due_date == date(2026, 2, 1)
