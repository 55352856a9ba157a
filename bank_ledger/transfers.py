"""
Transfer Coordinator Module

Composes the account and loan ledgers into the two money-movement use cases,
loan disbursement and loan repayment, and exposes the account and loan calls
the controller layer needs.

Both use cases are two writes against different record types, and the
repository has no transaction spanning them. Each one therefore runs as a
small saga. Both steps run inside one guarded block. When anything in that
block raises, the stored loan and balance are compared with what they were
before the block: if step one landed and step two did not, step one is undone
by a compensating write. If the undo also fails, the divergence is written to
the audit trail as RECONCILIATION_REQUIRED and ConsistencyError is raised.
"""

from dataclasses import replace
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from .accounts import AccountLedger, AccountType
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .currency import Money, positive_money
from .customers import Customer, CustomerRegistry
from .exceptions import ConsistencyError
from .loans import LoanLedger, Loan
from .locks import EntityLockManager
from .logging_config import get_logger, log_action, setup_logging
from .storage import StorageInterface, create_storage

logger = get_logger("bank_ledger.transfers")


class TransferCoordinator:
    """
    Loan disbursement and repayment as atomic units
    """

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[LedgerConfig] = None,
        audit_trail: Optional[AuditTrail] = None,
        locks: Optional[EntityLockManager] = None
    ):
        self.config = config or get_config()
        self.storage = storage
        self.locks = locks or EntityLockManager(self.config.lock_timeout_seconds)

        # Reconciliation records are written even when routine auditing is off
        self.audit_trail = audit_trail or AuditTrail(storage)
        ledger_audit = self.audit_trail if self.config.enable_audit_logging else None

        self.customers = CustomerRegistry(storage)
        self.accounts = AccountLedger(storage, ledger_audit, self.locks, self.config)
        self.loans = LoanLedger(storage, ledger_audit, self.locks, self.config)

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'TransferCoordinator':
        """Build storage and logging from configuration"""
        config = config or get_config()
        setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
        return cls(create_storage(config.database_url), config=config)

    def disburse(self, borrower_id: int, account_id: int, amount, term_months: int,
                 timeout: Optional[float] = None) -> int:
        """
        Originate a loan and credit its principal to an account

        If the call fails after the loan is stored but before the credit is,
        the loan is voided. If both writes landed before the failure, nothing
        is rolled back and the error still propagates.

        Returns:
            The new loan id

        Raises:
            ValidationError: Bad term or amount; nothing is written
            NotFoundError: Unknown borrower or account; nothing is written
            ConsistencyError: The credit failed and the loan could not be removed
        """
        borrower = self.customers.require(borrower_id)
        account = self.accounts.require_account(account_id)

        with self.locks.hold(("account", account_id), timeout=timeout):
            balance_before = self.accounts.require_account(account_id).balance
            try:
                loan = self.loans.originate(borrower, amount, term_months)
                self.accounts.credit(account, loan.loan_amount, timeout=timeout)
            except BaseException as error:
                # borrower was loaded for this call, so any loan on it was originated here
                if borrower.loans:
                    pending = borrower.loans[-1]
                    self._compensate(
                        operation="disburse",
                        undo=lambda: self._undo_disburse(
                            borrower, pending, account_id, balance_before, timeout
                        ),
                        error=error,
                        snapshot={
                            "loan_id": pending.id,
                            "borrower_id": borrower_id,
                            "account_id": account_id,
                            "amount": pending.loan_amount.to_string(),
                            "balance_before": balance_before.to_string(),
                            "state": "loan persisted, account not credited"
                        }
                    )
                raise

        log_action(logger, "info", f"Disbursed loan {loan.id} into account {account_id}",
                   action="disburse", resource=f"loan:{loan.id}",
                   extra={"amount": loan.loan_amount.to_string()})
        return loan.id

    def settle(self, loan_id: int, borrower_id: int, account_id: int, payment_amount,
               timeout: Optional[float] = None) -> Optional[Money]:
        """
        Apply a payment to a loan and debit it from an account

        The account is debited the applied amount, which is capped at the
        outstanding principal. Setting repayment_debit_policy to "requested"
        debits the full payment instead. If the call fails after the loan is
        reduced but before the debit is stored, the loan is restored.

        Returns:
            The amount applied to the loan, or None when the borrower has no
            such loan (the account is left untouched)

        Raises:
            ValidationError: Non-positive payment; nothing is written
            NotFoundError: Unknown borrower or account; nothing is written
            InsufficientFundsError: The account cannot cover the debit; the
                loan is restored
            ConsistencyError: The debit failed and the loan could not be restored
        """
        borrower = self.customers.require(borrower_id)
        account = self.accounts.require_account(account_id)
        payment = positive_money(payment_amount, self.accounts.currency, "Payment")

        with self.locks.hold(("account", account_id), ("loan", loan_id), timeout=timeout):
            loan = self.loans.find_by_id(borrower, loan_id)
            if loan is None:
                log_action(logger, "warning", f"Loan {loan_id} not found",
                           action="settle", resource=f"loan:{loan_id}",
                           extra={"borrower_id": borrower_id})
                return None

            snapshot = replace(loan)
            balance_before = self.accounts.require_account(account_id).balance
            try:
                applied = self.loans.repay(borrower, loan, payment, timeout=timeout)
                debit_amount = applied if self.config.repayment_debit_policy == "applied" else payment
                self.accounts.debit(account, debit_amount, timeout=timeout)
            except BaseException as error:
                self._compensate(
                    operation="settle",
                    undo=lambda: self._undo_settle(
                        borrower, snapshot, account_id, balance_before, timeout
                    ),
                    error=error,
                    snapshot={
                        "loan_id": loan_id,
                        "borrower_id": borrower_id,
                        "account_id": account_id,
                        "loan_amount_before": snapshot.loan_amount.to_string(),
                        "balance_before": balance_before.to_string(),
                        "payment": payment.to_string(),
                        "state": "loan reduced, account not debited"
                    }
                )
                raise

        log_action(logger, "info", f"Settled {applied.to_string()} on loan {loan_id}",
                   action="settle", resource=f"loan:{loan_id}",
                   extra={"debited": debit_amount.to_string(), "account_id": account_id})
        return applied

    def open_account(self, account_type: AccountType, owner_ids: Iterable[int],
                     initial_deposit=Decimal('0')) -> int:
        """Open an account for existing customers and return its id"""
        owners = [self.customers.require(owner_id) for owner_id in owner_ids]
        return self.accounts.open(account_type, owners, initial_deposit)

    def close_account(self, customer_id: int, account_id: int,
                      timeout: Optional[float] = None) -> None:
        """Close an account owned by customer_id"""
        self.customers.require(customer_id)
        account = self.accounts.get_account(account_id)
        owners = []
        if account is not None:
            owners = [c for c in (self.customers.get(i) for i in account.owner_ids) if c]
        self.accounts.close(customer_id, account_id, owners, timeout=timeout)

    def list_loans(self, borrower_id: int) -> List[Loan]:
        return self.loans.list_loans(self.customers.require(borrower_id))

    def list_loans_sorted_by_amount(self, borrower_id: int) -> List[Loan]:
        return self.loans.list_loans_sorted_by_amount(self.customers.require(borrower_id))


    def _undo_disburse(self, borrower: Customer, loan: Loan, account_id: int,
                       balance_before: Money, timeout: Optional[float]) -> bool:
        """Void the loan unless the credit was stored too; True if anything was undone"""
        if self.accounts.require_account(account_id).balance != balance_before:
            return False
        if self.loans.get_loan(loan.id) is None:
            return False
        self.loans.void(borrower, loan, timeout=timeout)
        return True

    def _undo_settle(self, borrower: Customer, snapshot: Loan, account_id: int,
                     balance_before: Money, timeout: Optional[float]) -> bool:
        """Restore the loan unless the debit was stored too; True if anything was undone"""
        if self.accounts.require_account(account_id).balance != balance_before:
            return False
        current = self.loans.get_loan(snapshot.id)
        if current is not None and current.loan_amount == snapshot.loan_amount:
            return False
        self.loans.restore(borrower, snapshot, timeout=timeout)
        return True

    def _compensate(self, operation: str, undo: Callable[[], bool],
                    error: BaseException, snapshot: Dict) -> None:
        """
        Undo step one of a failed operation if it is the only step stored

        The account and loan locks are still held, so the stored state seen
        by undo is exactly what this call left behind. Returns normally when
        the stored state is consistent; the caller re-raises the original
        error. Raises ConsistencyError when the state cannot be checked or
        the undo fails.
        """
        try:
            undone = undo()
        except Exception as undo_error:
            snapshot = dict(snapshot, error=repr(error), compensation_error=repr(undo_error))
            log_action(logger, "critical",
                       f"Compensation for {operation} failed; manual reconciliation required",
                       action=operation, resource=f"loan:{snapshot.get('loan_id')}",
                       extra=snapshot)
            try:
                self.audit_trail.log_event(
                    event_type=AuditEventType.RECONCILIATION_REQUIRED,
                    entity_type="loan",
                    entity_id=snapshot.get("loan_id"),
                    metadata=dict(snapshot, operation=operation)
                )
            except Exception:
                logger.exception("Could not record reconciliation event for %s", operation)
            raise ConsistencyError(
                f"{operation} partially applied and could not be rolled back: {undo_error}",
                operation=operation,
                snapshot=snapshot
            ) from error

        if not undone:
            log_action(logger, "warning",
                       f"{operation} failed with {error!r}; stored state is consistent, nothing rolled back",
                       action=operation, resource=f"loan:{snapshot.get('loan_id')}")
            return

        log_action(logger, "warning", f"Rolled back {operation} after failure: {error!r}",
                   action=operation, resource=f"loan:{snapshot.get('loan_id')}")
        try:
            self.audit_trail.log_event(
                event_type=AuditEventType.COMPENSATION_APPLIED,
                entity_type="loan",
                entity_id=snapshot.get("loan_id"),
                metadata=dict(snapshot, operation=operation, error=repr(error))
            )
        except Exception:
            # Rollback is already written; only the audit record is missing
            logger.exception("Could not record compensation event for %s", operation)
