"""
Test suite for loan ledger

Origination bounds, capped repayment, payoff removal and listings.
"""

import pytest
import tempfile
from decimal import Decimal
from pathlib import Path

from bank_ledger.currency import Money, Currency
from bank_ledger.storage import InMemoryStorage, SQLiteStorage
from bank_ledger.audit import AuditTrail, AuditEventType
from bank_ledger.config import LedgerConfig
from bank_ledger.customers import CustomerRegistry
from bank_ledger.loans import LoanLedger, Loan
from bank_ledger.exceptions import ValidationError, NotFoundError


def usd(value: str) -> Money:
    return Money(Decimal(value), Currency.USD)


class TestLoanLedger:
    """Test loan ledger operations"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.config = LedgerConfig(database_url="memory://")
        self.ledger = LoanLedger(self.storage, self.audit_trail, config=self.config)
        self.customers = CustomerRegistry(self.storage)

        self.borrower = self.customers.register("Jane", "Doe", "jane@example.com")
        self.other = self.customers.register("John", "Roe", "john@example.com")

    def test_originate_loan(self):
        loan = self.ledger.originate(self.borrower, Decimal('1000.00'), 12)

        assert loan.id is not None
        assert loan.borrower_id == self.borrower.id
        assert loan.loan_amount == usd('1000.00')
        assert loan.term_months == 12
        assert self.borrower.loans == [loan]
        assert self.ledger.get_loan(loan.id) == loan

        events = self.audit_trail.get_events_for_entity("loan", loan.id)
        assert events[0].event_type == AuditEventType.LOAN_ORIGINATED

    def test_every_term_in_range_accepted(self):
        for term in range(6, 121):
            self.ledger.originate(self.borrower, "10.00", term)

        assert self.storage.count("loans") == 115

    @pytest.mark.parametrize("term", [3, 5, 121, 0, -12])
    def test_term_out_of_range_rejected(self, term):
        with pytest.raises(ValidationError, match=r"Invalid term Months \(6-120\)\."):
            self.ledger.originate(self.borrower, Decimal('500'), term)

        assert self.storage.count("loans") == 0
        assert self.borrower.loans == []

    @pytest.mark.parametrize("term", ["12", 12.0, True])
    def test_term_must_be_an_integer(self, term):
        with pytest.raises(ValidationError):
            self.ledger.originate(self.borrower, Decimal('500'), term)

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-100'), "abc", 100.0])
    def test_invalid_principal_rejected(self, amount):
        with pytest.raises(ValidationError):
            self.ledger.originate(self.borrower, amount, 12)
        assert self.storage.count("loans") == 0

    def test_custom_term_bounds(self):
        config = LedgerConfig(database_url="memory://", min_term_months=12, max_term_months=24)
        ledger = LoanLedger(self.storage, config=config)

        with pytest.raises(ValidationError, match=r"\(12-24\)"):
            ledger.originate(self.borrower, Decimal('100'), 6)
        assert ledger.originate(self.borrower, Decimal('100'), 24).term_months == 24

    def test_partial_repayment(self):
        loan = self.ledger.originate(self.borrower, Decimal('1000.00'), 12)

        applied = self.ledger.repay(self.borrower, loan, Decimal('300.00'))

        assert applied == usd('300.00')
        assert loan.loan_amount == usd('700.00')
        assert self.ledger.get_loan(loan.id).loan_amount == usd('700.00')

    def test_overpayment_is_capped_and_pays_off(self):
        loan = self.ledger.originate(self.borrower, Decimal('1000.00'), 12)

        applied = self.ledger.repay(self.borrower, loan, Decimal('1200.00'))

        assert applied == usd('1000.00')
        assert loan.is_paid_off
        assert self.ledger.get_loan(loan.id) is None
        assert self.ledger.list_loans(self.borrower) == []

        types = [e.event_type for e in self.audit_trail.get_events_for_entity("loan", loan.id)]
        assert types[-2:] == [AuditEventType.LOAN_PAYMENT_MADE, AuditEventType.LOAN_PAID_OFF]

    def test_exact_payment_pays_off(self):
        keep = self.ledger.originate(self.borrower, Decimal('50'), 6)
        loan = self.ledger.originate(self.borrower, Decimal('250.50'), 6)

        self.ledger.repay(self.borrower, loan, "250.50")

        assert [l.id for l in self.borrower.loans] == [keep.id]
        assert self.ledger.get_loan(loan.id) is None

    @pytest.mark.parametrize("payment", [Decimal('0'), Decimal('-5')])
    def test_non_positive_payment_rejected(self, payment):
        loan = self.ledger.originate(self.borrower, Decimal('100'), 6)

        with pytest.raises(ValidationError):
            self.ledger.repay(self.borrower, loan, payment)
        assert self.ledger.get_loan(loan.id).loan_amount == usd('100.00')

    def test_repay_other_borrowers_loan_fails(self):
        loan = self.ledger.originate(self.borrower, Decimal('100'), 6)

        with pytest.raises(NotFoundError):
            self.ledger.repay(self.other, loan, Decimal('10'))

    def test_repay_paid_off_loan_fails(self):
        loan = self.ledger.originate(self.borrower, Decimal('100'), 6)
        self.ledger.repay(self.borrower, loan, Decimal('100'))

        with pytest.raises(NotFoundError):
            self.ledger.repay(self.borrower, loan, Decimal('10'))

    def test_list_loans_is_per_borrower(self):
        mine = self.ledger.originate(self.borrower, Decimal('100'), 6)
        self.ledger.originate(self.other, Decimal('200'), 6)

        self.borrower.loans = []
        assert self.ledger.list_loans(self.borrower) == [mine]
        assert self.borrower.loans == [mine]

    def test_sorted_by_amount(self):
        for amount in ["500", "100", "300", "100"]:
            self.ledger.originate(self.borrower, Decimal(amount), 12)

        loans = self.ledger.list_loans_sorted_by_amount(self.borrower)
        amounts = [l.loan_amount.amount for l in loans]

        assert amounts == sorted(amounts)
        assert amounts[0] == Decimal('100.00')
        assert len(loans) == 4

    def test_find_by_id(self):
        loan = self.ledger.originate(self.borrower, Decimal('100'), 6)

        assert self.ledger.find_by_id(self.borrower, loan.id) == loan
        assert self.ledger.find_by_id(self.other, loan.id) is None
        assert self.ledger.find_by_id(self.borrower, 999) is None

    def test_void_removes_loan(self):
        loan = self.ledger.originate(self.borrower, Decimal('100'), 6)

        self.ledger.void(self.borrower, loan)

        assert self.ledger.get_loan(loan.id) is None
        assert self.borrower.loans == []
        with pytest.raises(NotFoundError):
            self.ledger.void(self.borrower, loan)

    def test_restore_recreates_paid_off_loan(self):
        loan = self.ledger.originate(self.borrower, Decimal('100'), 6)
        snapshot = Loan.from_dict(self.storage.load("loans", loan.id))
        self.ledger.repay(self.borrower, loan, Decimal('100'))

        self.ledger.restore(self.borrower, snapshot)

        restored = self.ledger.get_loan(loan.id)
        assert restored.loan_amount == usd('100.00')
        assert [l.id for l in self.ledger.list_loans(self.borrower)] == [loan.id]

    def test_lost_audit_record_keeps_loan_writes(self):
        class UnavailableTrail:
            def log_event(self, **kwargs):
                raise OSError("audit store unavailable")

        self.ledger.audit_trail = UnavailableTrail()
        loan = self.ledger.originate(self.borrower, Decimal('100'), 6)

        assert self.ledger.repay(self.borrower, loan, Decimal('40')) == usd('40.00')
        assert self.ledger.get_loan(loan.id).loan_amount == usd('60.00')
        self.ledger.repay(self.borrower, loan, Decimal('60'))
        assert self.ledger.get_loan(loan.id) is None

    def test_loan_round_trip(self):
        loan = self.ledger.originate(self.borrower, Decimal('123.45'), 36)

        data = loan.to_dict()
        assert data["loan_amount_amount"] == "123.45"
        assert data["loan_amount_currency"] == "USD"
        assert Loan.from_dict(data) == loan


class TestLoanLedgerSQLite:
    """Same behaviour on the SQLite backend"""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.storage = SQLiteStorage(Path(self.temp_dir.name) / "loans.db")
        self.config = LedgerConfig(database_url="memory://")
        self.ledger = LoanLedger(self.storage, config=self.config)
        self.customers = CustomerRegistry(self.storage)
        self.borrower = self.customers.register("Jane", "Doe", "jane@example.com")
        self.other = self.customers.register("John", "Roe", "john@example.com")

    def teardown_method(self):
        self.storage.close()
        self.temp_dir.cleanup()

    def test_borrower_listing_and_payoff(self):
        first = self.ledger.originate(self.borrower, Decimal('400'), 12)
        self.ledger.originate(self.other, Decimal('50'), 12)
        second = self.ledger.originate(self.borrower, Decimal('200'), 24)

        assert [l.id for l in self.ledger.list_loans(self.borrower)] == [first.id, second.id]
        assert [l.id for l in self.ledger.list_loans_sorted_by_amount(self.borrower)] == [
            second.id, first.id
        ]

        self.ledger.repay(self.borrower, second, Decimal('250'))
        assert [l.id for l in self.ledger.list_loans(self.borrower)] == [first.id]

        third = self.ledger.originate(self.borrower, Decimal('10'), 6)
        assert third.id > second.id
