"""
Loan Management Module

Loan origination, cancellation, overdue processing and queries. Balances are
never adjusted incrementally: they are folded from the schedule into an
immutable ``LoanBalanceSnapshot`` and the loan record takes the snapshot's
values, so applying and then reversing a payment lands on the same numbers.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .config import LendingConfig, get_config
from .errors import InvalidLoanTerms, LoanNotFound, LoanAlreadyCanceled, PaymentNotAllowed
from .logging_config import get_logger, log_action
from .schedule import (
    LoanStructure, PaymentFrequency, FrenchTerms, FlatRateTerms, LoanTerms,
    AmortizationEntry, generate_french_schedule, quote_loan
)
from .distribution import OverdueInfo, calculate_overdue_info


LOANS_TABLE = "loans"
SCHEDULE_TABLE = "payment_schedules"
PAYMENTS_TABLE = "payments"


class LoanStatus(Enum):
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    PAID = "PAID"
    CANCELED = "CANCELED"


class ScheduleStatus(Enum):
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"
    PAID = "PAID"


@dataclass
class ScheduleEntry(StorageRecord):
    """One persisted flat-rate installment"""
    loan_id: str
    installment_number: int
    due_date: date
    expected_amount: Money
    principal_expected: Money
    interest_expected: Money
    status: ScheduleStatus = ScheduleStatus.PENDING
    paid_at: Optional[datetime] = None
    payment_id: Optional[str] = None

    @property
    def is_unpaid(self) -> bool:
        return self.status != ScheduleStatus.PAID

    def mark_paid(self, payment_id: str, paid_at: datetime) -> None:
        self.status = ScheduleStatus.PAID
        self.paid_at = paid_at
        self.payment_id = payment_id
        self.updated_at = paid_at

    def mark_unpaid(self, today: date, now: datetime) -> None:
        """Undo a payment; a row already past due goes straight back to OVERDUE"""
        self.status = ScheduleStatus.OVERDUE if self.due_date < today else ScheduleStatus.PENDING
        self.paid_at = None
        self.payment_id = None
        self.updated_at = now


@dataclass
class Loan(StorageRecord):
    """Loan contract plus its folded balance"""
    client_id: str
    terms: LoanTerms
    installment_amount: Money
    total_payable_amount: Money
    remaining_capital: Money
    origination_date: date
    status: LoanStatus = LoanStatus.ACTIVE
    installments_paid: int = 0
    next_due_date: Optional[date] = None
    created_by_id: Optional[str] = None
    updated_by_id: Optional[str] = None

    @property
    def structure(self) -> LoanStructure:
        return self.terms.structure

    @property
    def is_flat_rate(self) -> bool:
        return self.structure == LoanStructure.FLAT_RATE

    @property
    def currency(self) -> Currency:
        return self.terms.principal_amount.currency

    @property
    def principal_amount(self) -> Money:
        return self.terms.principal_amount

    @property
    def term_count(self) -> int:
        return self.terms.term_count

    @property
    def payment_frequency(self) -> PaymentFrequency:
        return self.terms.payment_frequency

    @property
    def accepts_payments(self) -> bool:
        return self.status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE)


@dataclass(frozen=True)
class LoanBalanceSnapshot:
    """Balance fields of a loan, derived from its schedule"""
    remaining_capital: Money
    installments_paid: int
    next_due_date: Optional[date]
    is_paid_off: bool

    @classmethod
    def of(cls, loan: Loan) -> 'LoanBalanceSnapshot':
        return cls(
            remaining_capital=loan.remaining_capital,
            installments_paid=loan.installments_paid,
            next_due_date=loan.next_due_date,
            is_paid_off=loan.remaining_capital.is_zero()
        )

    def changes_from(self, previous: 'LoanBalanceSnapshot') -> Dict[str, Any]:
        """Fields whose value differs from ``previous``"""
        return {
            name: getattr(self, name)
            for name in ('remaining_capital', 'installments_paid', 'next_due_date')
            if getattr(self, name) != getattr(previous, name)
        }

    def apply_to(self, loan: Loan) -> None:
        loan.remaining_capital = self.remaining_capital
        loan.installments_paid = self.installments_paid
        loan.next_due_date = self.next_due_date


def fold_flat_rate_balance(loan: Loan, entries: Iterable[ScheduleEntry]) -> LoanBalanceSnapshot:
    """Balance of a flat-rate loan from its schedule rows"""
    entries = list(entries)
    paid = sum(1 for e in entries if not e.is_unpaid)
    unpaid_dates = [e.due_date for e in entries if e.is_unpaid]

    remaining = loan.total_payable_amount - loan.installment_amount * paid
    if remaining.is_negative():
        remaining = Money.zero(loan.currency)

    return LoanBalanceSnapshot(
        remaining_capital=remaining,
        installments_paid=paid,
        next_due_date=min(unpaid_dates) if unpaid_dates else None,
        is_paid_off=paid >= loan.term_count
    )


def fold_french_balance(schedule: List[AmortizationEntry], remaining_capital: Money) -> LoanBalanceSnapshot:
    """
    Balance of a French loan: an installment counts as paid once the
    outstanding capital is at or below that row's scheduled remaining balance.
    """
    if remaining_capital.is_zero():
        paid = len(schedule)
    else:
        paid = sum(1 for entry in schedule if remaining_capital <= entry.remaining_balance)

    return LoanBalanceSnapshot(
        remaining_capital=remaining_capital,
        installments_paid=paid,
        next_due_date=schedule[paid].due_date if paid < len(schedule) else None,
        is_paid_off=remaining_capital.is_zero()
    )


class LoanManager(EventPublisherMixin):
    """
    Manages loan lifecycle from origination through payoff or cancellation
    """

    def __init__(
        self,
        storage: StorageInterface,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.logger = get_logger("lending.loans")
        self.set_event_dispatcher(event_dispatcher)

        self.loans_table = LOANS_TABLE
        self.schedule_table = SCHEDULE_TABLE

    def create_loan(
        self,
        client_id: str,
        terms: LoanTerms,
        created_by_id: Optional[str] = None,
        origination_date: Optional[date] = None
    ) -> Loan:
        """
        Originate a new loan

        Args:
            client_id: Borrower ID
            terms: FrenchTerms or FlatRateTerms, validated on construction
            created_by_id: User registering the loan
            origination_date: Start of the schedule (defaults to today)

        Returns:
            Created Loan; flat-rate loans also get their schedule rows
        """
        if not client_id:
            raise InvalidLoanTerms("Client ID is required")

        now = datetime.now(timezone.utc)
        origination_date = origination_date or now.date()
        quote = quote_loan(terms, origination_date)

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            terms=terms,
            installment_amount=quote.installment_amount,
            total_payable_amount=quote.total_payable_amount,
            remaining_capital=(
                quote.total_payable_amount if isinstance(terms, FlatRateTerms)
                else terms.principal_amount
            ),
            origination_date=origination_date,
            next_due_date=quote.schedule[0].due_date,
            created_by_id=created_by_id,
            updated_by_id=created_by_id
        )

        with self.storage.atomic():
            self.save_loan(loan)
            if isinstance(terms, FlatRateTerms):
                for item in quote.schedule:
                    self.save_schedule_entry(ScheduleEntry(
                        id=str(uuid.uuid4()),
                        created_at=now,
                        updated_at=now,
                        loan_id=loan.id,
                        installment_number=item.installment_number,
                        due_date=item.due_date,
                        expected_amount=item.expected_amount,
                        principal_expected=item.principal_expected,
                        interest_expected=item.interest_expected
                    ))

        log_action(
            self.logger, "info", f"Loan {loan.id} originated",
            actor_id=created_by_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={"structure": loan.structure.value, "principal": str(loan.principal_amount.amount)}
        )
        self.publish_event(
            DomainEvent.LOAN_ORIGINATED, "loan", loan.id,
            {
                "client_id": client_id,
                "structure": loan.structure.value,
                "principal_amount": str(loan.principal_amount.amount),
                "total_payable_amount": str(loan.total_payable_amount.amount),
                "installment_amount": str(loan.installment_amount.amount),
                "term_count": loan.term_count,
                "payment_frequency": loan.payment_frequency.value,
            },
            actor_id=created_by_id
        )
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise LoanNotFound(loan_id)
        return self._loan_from_dict(data)

    def get_client_loans(self, client_id: str) -> List[Loan]:
        """All loans of a client, oldest first"""
        loans = [self._loan_from_dict(d) for d in self.storage.find(self.loans_table, {"client_id": client_id})]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def cancel_loan(self, loan_id: str, actor_id: Optional[str] = None) -> Loan:
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.status == LoanStatus.CANCELED:
                raise LoanAlreadyCanceled(loan_id)
            if loan.status == LoanStatus.PAID:
                raise PaymentNotAllowed(loan_id, loan.status.value, "a paid loan cannot be canceled")

            previous_status = loan.status
            loan.status = LoanStatus.CANCELED
            loan.updated_at = datetime.now(timezone.utc)
            loan.updated_by_id = actor_id
            self.save_loan(loan)

        log_action(self.logger, "info", f"Loan {loan_id} canceled",
                   actor_id=actor_id, action="cancel_loan", resource=f"loan:{loan_id}")
        self.publish_event(
            DomainEvent.LOAN_CANCELED, "loan", loan_id,
            {"previous_status": previous_status.value},
            actor_id=actor_id
        )
        return loan

    # Schedule queries

    def get_loan_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        """Stored flat-rate schedule ordered by installment number"""
        entries = [self._entry_from_dict(d) for d in self.storage.find(self.schedule_table, {"loan_id": loan_id})]
        entries.sort(key=lambda e: e.installment_number)
        return entries

    def get_pending_schedule_entries(self, loan_id: str) -> List[ScheduleEntry]:
        """Unpaid rows (PENDING or OVERDUE), oldest first"""
        return [e for e in self.get_loan_schedule(loan_id) if e.is_unpaid]

    def get_amortization_schedule(self, loan_id: str) -> List[AmortizationEntry]:
        """
        Amortization table for either regime. French loans are recomputed from
        their terms; flat-rate loans are reported from their stored rows with
        the payable balance left after each installment.
        """
        loan = self.get_loan(loan_id)
        if isinstance(loan.terms, FrenchTerms):
            return generate_french_schedule(loan.terms, loan.origination_date)

        zero = Money.zero(loan.currency)
        table = []
        for entry in self.get_loan_schedule(loan_id):
            remaining = loan.total_payable_amount - loan.installment_amount * entry.installment_number
            table.append(AmortizationEntry(
                installment_number=entry.installment_number,
                due_date=entry.due_date,
                payment_amount=entry.principal_expected + entry.interest_expected,
                principal_amount=entry.principal_expected,
                interest_amount=entry.interest_expected,
                remaining_balance=remaining if remaining.is_positive() else zero
            ))
        return table

    # Overdue processing

    def mark_overdue_installments(self, today: Optional[date] = None) -> int:
        """Flip PENDING rows whose due date has passed to OVERDUE"""
        today = today or date.today()
        now = datetime.now(timezone.utc)
        marked = 0

        with self.storage.atomic():
            for data in self.storage.find(self.schedule_table, {"status": ScheduleStatus.PENDING.value}):
                entry = self._entry_from_dict(data)
                if entry.due_date < today:
                    entry.status = ScheduleStatus.OVERDUE
                    entry.updated_at = now
                    self.save_schedule_entry(entry)
                    marked += 1

        if marked:
            self.logger.info(f"Marked {marked} installments overdue as of {today.isoformat()}")
        return marked

    def process_overdue_loans(self, actor_id: Optional[str] = None, today: Optional[date] = None) -> Dict[str, int]:
        """
        Batch job: mark overdue installments, then move ACTIVE loans whose
        next due date has passed to OVERDUE.
        """
        today = today or date.today()
        results = {"installments_marked": self.mark_overdue_installments(today), "loans_marked": 0}
        marked_loans = []

        with self.storage.atomic():
            for data in self.storage.find(self.loans_table, {"status": LoanStatus.ACTIVE.value}):
                loan = self._loan_from_dict(data)
                if loan.next_due_date and loan.next_due_date < today:
                    loan.status = LoanStatus.OVERDUE
                    loan.updated_at = datetime.now(timezone.utc)
                    loan.updated_by_id = actor_id
                    self.save_loan(loan)
                    marked_loans.append(loan)

        for loan in marked_loans:
            self.publish_event(
                DomainEvent.LOAN_OVERDUE, "loan", loan.id,
                {"next_due_date": loan.next_due_date.isoformat(), "as_of": today.isoformat()},
                actor_id=actor_id
            )
        results["loans_marked"] = len(marked_loans)

        log_action(self.logger, "info", "Overdue processing finished",
                   actor_id=actor_id, action="process_overdue_loans", extra=results)
        return results

    def get_overdue_loans(self, today: Optional[date] = None) -> List[Loan]:
        """Loans marked OVERDUE or ACTIVE with a past next due date, most overdue first"""
        today = today or date.today()
        overdue = []
        for data in self.storage.load_all(self.loans_table):
            loan = self._loan_from_dict(data)
            if loan.status == LoanStatus.OVERDUE or (
                loan.status == LoanStatus.ACTIVE and loan.next_due_date and loan.next_due_date < today
            ):
                overdue.append(loan)
        overdue.sort(key=lambda loan: loan.next_due_date or today)
        return overdue

    def get_overdue_info(self, loan_id: str, today: Optional[date] = None) -> OverdueInfo:
        today = today or date.today()
        loan = self.get_loan(loan_id)
        if loan.is_flat_rate:
            unpaid_dates = [e.due_date for e in self.get_pending_schedule_entries(loan_id)]
        else:
            schedule = generate_french_schedule(loan.terms, loan.origination_date)
            unpaid_dates = [e.due_date for e in schedule[loan.installments_paid:]]
        return calculate_overdue_info(
            unpaid_dates, loan.installment_amount, today, self.config.flat_rate_late_fee_rate
        )

    def get_loan_summary(self, loan_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """Loan balance and schedule progress for reporting"""
        today = today or date.today()
        loan = self.get_loan(loan_id)
        overdue = self.get_overdue_info(loan_id, today)
        paid_off_amount = loan.total_payable_amount - loan.remaining_capital if loan.is_flat_rate \
            else loan.principal_amount - loan.remaining_capital
        basis = loan.total_payable_amount if loan.is_flat_rate else loan.principal_amount

        return {
            "loan_id": loan.id,
            "client_id": loan.client_id,
            "structure": loan.structure.value,
            "status": loan.status.value,
            "principal_amount": loan.principal_amount.amount,
            "total_payable_amount": loan.total_payable_amount.amount,
            "installment_amount": loan.installment_amount.amount,
            "remaining_capital": loan.remaining_capital.amount,
            "installments_paid": loan.installments_paid,
            "installments_remaining": loan.term_count - loan.installments_paid,
            "next_due_date": loan.next_due_date,
            "overdue_installments": overdue.overdue_installments,
            "days_overdue": overdue.days_overdue,
            "progress_percentage": (
                paid_off_amount.amount / basis.amount * Decimal('100')
            ).quantize(Decimal('0.01'))
        }

    # Persistence

    def save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def save_schedule_entry(self, entry: ScheduleEntry) -> None:
        self.storage.save(self.schedule_table, entry.id, self._entry_to_dict(entry))

    def _terms_to_dict(self, terms: LoanTerms) -> Dict[str, Any]:
        result = {
            'structure': terms.structure.value,
            'principal_amount': str(terms.principal_amount.amount),
            'currency': terms.principal_amount.currency.code,
            'term_count': terms.term_count,
            'payment_frequency': terms.payment_frequency.value,
        }
        if isinstance(terms, FlatRateTerms):
            result['total_finance_charge'] = str(terms.total_finance_charge.amount)
        else:
            result['annual_interest_rate'] = str(terms.annual_interest_rate)
        return result

    def _terms_from_dict(self, data: Dict[str, Any]) -> LoanTerms:
        currency = Currency[data['currency']]
        principal = Money(Decimal(data['principal_amount']), currency)
        frequency = PaymentFrequency(data['payment_frequency'])

        if LoanStructure(data['structure']) == LoanStructure.FLAT_RATE:
            return FlatRateTerms(
                principal_amount=principal,
                total_finance_charge=Money(Decimal(data['total_finance_charge']), currency),
                term_count=data['term_count'],
                payment_frequency=frequency
            )
        return FrenchTerms(
            principal_amount=principal,
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            term_count=data['term_count'],
            payment_frequency=frequency
        )

    def _loan_to_dict(self, loan: Loan) -> Dict[str, Any]:
        result = loan.base_dict()
        result.update({
            'client_id': loan.client_id,
            'structure': loan.structure.value,
            'terms': self._terms_to_dict(loan.terms),
            'status': loan.status.value,
            'installments_paid': loan.installments_paid,
            'origination_date': loan.origination_date.isoformat(),
            'next_due_date': loan.next_due_date.isoformat() if loan.next_due_date else None,
            'created_by_id': loan.created_by_id,
            'updated_by_id': loan.updated_by_id,
        })
        for field in ['installment_amount', 'total_payable_amount', 'remaining_capital']:
            result[field] = str(getattr(loan, field).amount)
        return result

    def _loan_from_dict(self, data: Dict[str, Any]) -> Loan:
        terms = self._terms_from_dict(data['terms'])
        currency = terms.principal_amount.currency

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        return Loan(
            id=data['id'],
            **StorageRecord.parse_timestamps(data),
            client_id=data['client_id'],
            terms=terms,
            installment_amount=get_money('installment_amount'),
            total_payable_amount=get_money('total_payable_amount'),
            remaining_capital=get_money('remaining_capital'),
            origination_date=date.fromisoformat(data['origination_date']),
            status=LoanStatus(data['status']),
            installments_paid=data['installments_paid'],
            next_due_date=date.fromisoformat(data['next_due_date']) if data.get('next_due_date') else None,
            created_by_id=data.get('created_by_id'),
            updated_by_id=data.get('updated_by_id')
        )

    def _entry_to_dict(self, entry: ScheduleEntry) -> Dict[str, Any]:
        result = entry.base_dict()
        result.update({
            'loan_id': entry.loan_id,
            'installment_number': entry.installment_number,
            'due_date': entry.due_date.isoformat(),
            'currency': entry.expected_amount.currency.code,
            'expected_amount': str(entry.expected_amount.amount),
            'principal_expected': str(entry.principal_expected.amount),
            'interest_expected': str(entry.interest_expected.amount),
            'status': entry.status.value,
            'paid_at': entry.paid_at.isoformat() if entry.paid_at else None,
            'payment_id': entry.payment_id,
        })
        return result

    def _entry_from_dict(self, data: Dict[str, Any]) -> ScheduleEntry:
        currency = Currency[data['currency']]
        return ScheduleEntry(
            id=data['id'],
            **StorageRecord.parse_timestamps(data),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            expected_amount=Money(Decimal(data['expected_amount']), currency),
            principal_expected=Money(Decimal(data['principal_expected']), currency),
            interest_expected=Money(Decimal(data['interest_expected']), currency),
            status=ScheduleStatus(data['status']),
            paid_at=datetime.fromisoformat(data['paid_at']) if data.get('paid_at') else None,
            payment_id=data.get('payment_id')
        )
