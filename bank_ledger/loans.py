"""
Loan Ledger Module

Handles loan origination, principal repayment with payoff detection and
removal, and borrower loan listings. loan_amount is the outstanding
principal; a loan that reaches zero is deleted on the spot and never
persisted with a zero balance.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from .currency import Money, Currency, positive_money
from .storage import StorageInterface, StorageRecord, Repository
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .customers import Customer
from .exceptions import ValidationError, NotFoundError
from .locks import EntityLockManager
from .logging_config import get_logger, log_action

logger = get_logger("bank_ledger.loans")


@dataclass
class Loan(StorageRecord):
    """Outstanding loan held by exactly one borrower"""
    borrower_id: int
    loan_amount: Money                  # Outstanding principal
    term_months: int

    @property
    def is_paid_off(self) -> bool:
        return not self.loan_amount.is_positive()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            borrower_id=data['borrower_id'],
            loan_amount=Money(
                Decimal(data['loan_amount_amount']),
                Currency[data['loan_amount_currency']]
            ),
            term_months=data['term_months']
        )


class LoanLedger:
    """
    Manages a borrower's loans from origination through payoff
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        locks: Optional[EntityLockManager] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.config = config or get_config()
        # Indexed by borrower so listings never scan every loan in the system
        self.repository = Repository(storage, "loans", Loan, indexes=("borrower_id",))
        self.audit_trail = audit_trail
        self.locks = locks or EntityLockManager(self.config.lock_timeout_seconds)
        self.currency = self.config.currency_enum

    def originate(self, borrower: Customer, amount, term_months: int) -> Loan:
        """
        Originate a new loan

        Args:
            borrower: Borrowing customer
            amount: Principal, strictly positive
            term_months: Term in months, between the configured bounds (6-120)

        Returns:
            The persisted Loan, also added to borrower.loans

        Raises:
            ValidationError: Bad term or non-positive principal; nothing is persisted
        """
        low, high = self.config.min_term_months, self.config.max_term_months
        if isinstance(term_months, bool) or not isinstance(term_months, int) \
                or not low <= term_months <= high:
            raise ValidationError(f"Invalid term Months ({low}-{high}).")
        principal = positive_money(amount, self.currency, "Loan amount")

        loan = Loan(
            id=None,
            created_at=datetime.now(timezone.utc),
            borrower_id=borrower.id,
            loan_amount=principal,
            term_months=term_months
        )
        self.repository.create(loan)
        borrower.loans.append(loan)

        self._audit(AuditEventType.LOAN_ORIGINATED, loan.id, {
            "borrower_id": borrower.id,
            "principal": principal.to_string(),
            "term_months": term_months
        })
        log_action(logger, "info", f"Originated loan {loan.id} for customer {borrower.id}",
                   action="originate", resource=f"loan:{loan.id}",
                   extra={"principal": principal.to_string(), "term_months": term_months})
        return loan

    def repay(self, borrower: Customer, loan: Loan, payment, timeout: Optional[float] = None) -> Money:
        """
        Apply a payment to a loan's outstanding principal

        Payments above the outstanding principal are capped. When the
        remaining principal reaches zero the loan is removed from the
        borrower's set and deleted from the repository.

        Returns:
            The amount actually applied to the loan

        Raises:
            ValidationError: If payment is not positive
            NotFoundError: If the loan no longer exists for this borrower
        """
        payment = positive_money(payment, self.currency, "Payment")

        with self.locks.hold(("loan", loan.id), timeout=timeout):
            current = self.repository.get(loan.id)
            if current is None or current.borrower_id != borrower.id:
                raise NotFoundError(f"Loan {loan.id} not found for customer {borrower.id}")

            applied = min(payment, current.loan_amount)
            current.loan_amount = current.loan_amount - applied

            if current.is_paid_off:
                self.repository.delete(current.id)
                borrower.loans = [l for l in borrower.loans if l.id != current.id]
            else:
                self.repository.update(current)
            remaining = loan.loan_amount = current.loan_amount

        self._audit(AuditEventType.LOAN_PAYMENT_MADE, loan.id, {
            "borrower_id": borrower.id,
            "payment": payment.to_string(),
            "applied": applied.to_string(),
            "remaining": remaining.to_string()
        })
        if not loan.is_paid_off:
            log_action(logger, "info",
                       f"Paid {applied.to_string()} on loan {loan.id}, remaining {remaining.to_string()}",
                       action="repay", resource=f"loan:{loan.id}")
        else:
            self._audit(AuditEventType.LOAN_PAID_OFF, loan.id, {"borrower_id": borrower.id})
            log_action(logger, "info", f"Loan {loan.id} fully paid off",
                       action="repay", resource=f"loan:{loan.id}")
        return applied

    def void(self, borrower: Customer, loan: Loan, timeout: Optional[float] = None) -> None:
        """
        Remove a loan whose funds were never disbursed

        Raises:
            NotFoundError: If the loan record is already gone
        """
        with self.locks.hold(("loan", loan.id), timeout=timeout):
            self.repository.delete(loan.id)
            borrower.loans = [l for l in borrower.loans if l.id != loan.id]

        self._audit(AuditEventType.LOAN_VOIDED, loan.id, {
            "borrower_id": borrower.id,
            "principal": loan.loan_amount.to_string()
        })

    def restore(self, borrower: Customer, snapshot: Loan, timeout: Optional[float] = None) -> None:
        """
        Write a loan snapshot back under its original id

        Undoes a repayment, re-creating the loan if the repayment deleted it.
        """
        with self.locks.hold(("loan", snapshot.id), timeout=timeout):
            self.repository.restore(snapshot)
            borrower.loans = [l for l in borrower.loans if l.id != snapshot.id]
            borrower.loans.append(replace(snapshot))

        self._audit(AuditEventType.LOAN_RESTORED, snapshot.id, {
            "borrower_id": borrower.id,
            "loan_amount": snapshot.loan_amount.to_string()
        })

    def list_loans(self, borrower: Customer) -> List[Loan]:
        """Refresh and return the borrower's loans, in creation order"""
        borrower.loans = self.repository.find_by(borrower_id=borrower.id)
        return borrower.loans

    def list_loans_sorted_by_amount(self, borrower: Customer) -> List[Loan]:
        """Borrower's loans ascending by outstanding principal"""
        return sorted(self.list_loans(borrower), key=lambda loan: loan.loan_amount.amount)

    def find_by_id(self, borrower: Customer, loan_id: int) -> Optional[Loan]:
        """Return the borrower's loan with this id, or None"""
        for loan in self.list_loans(borrower):
            if loan.id == loan_id:
                return loan
        return None

    def get_loan(self, loan_id: int) -> Optional[Loan]:
        """Get loan by ID regardless of borrower"""
        return self.repository.get(loan_id)

    def _audit(self, event_type: AuditEventType, loan_id: int, metadata: Dict) -> None:
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan_id,
                metadata=metadata
            )
        except Exception:
            # The loan write has already committed
            logger.exception("Could not record %s for loan %s", event_type.value, loan_id)
