"""
Account Ledger Module

Owns balance mutation for a single account (credit, debit, fee application)
and the account lifecycle (open, close) for one or more co-owners. Every
mutation re-reads the account under its entity lock and writes through to
the repository before returning.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Set
from enum import Enum

from .currency import Money, Currency, to_money, positive_money
from .storage import StorageInterface, StorageRecord, Repository
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .customers import Customer
from .exceptions import ValidationError, NotFoundError, InsufficientFundsError
from .locks import EntityLockManager
from .logging_config import get_logger, log_action

logger = get_logger("bank_ledger.accounts")


class AccountType(Enum):
    """Account variants"""
    CHECKING = "checking"
    SAVINGS = "savings"


@dataclass
class Account(StorageRecord):
    """
    Jointly owned bank account

    Use CheckingAccount or SavingsAccount; the base carries what both share.
    """
    owner_ids: Set[int]
    balance: Money

    account_type: ClassVar[AccountType]

    def __post_init__(self):
        self.owner_ids = set(self.owner_ids)
        if not self.owner_ids:
            raise ValidationError("An account needs at least one owner")

    @property
    def currency(self) -> Currency:
        return self.balance.currency

    def is_owned_by(self, customer_id: int) -> bool:
        return customer_id in self.owner_ids

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['account_type'] = self.account_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Rebuild the right variant from a stored record"""
        variant = ACCOUNT_CLASSES[AccountType(data['account_type'])]
        balance = Money(Decimal(data['balance_amount']), Currency[data['balance_currency']])
        kwargs = dict(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            owner_ids=set(data['owner_ids']),
            balance=balance,
        )
        kwargs[variant.rate_field] = Decimal(data[variant.rate_field])
        return variant(**kwargs)


@dataclass
class CheckingAccount(Account):
    """Checking account; each transaction may carry a percentage fee"""
    transaction_fee_rate: Decimal = Decimal('0.005')

    account_type: ClassVar[AccountType] = AccountType.CHECKING
    rate_field: ClassVar[str] = "transaction_fee_rate"


@dataclass
class SavingsAccount(Account):
    """Savings account; the interest rate is stored, never accrued here"""
    interest_rate: Decimal = Decimal('0.045')

    account_type: ClassVar[AccountType] = AccountType.SAVINGS
    rate_field: ClassVar[str] = "interest_rate"


ACCOUNT_CLASSES = {
    AccountType.CHECKING: CheckingAccount,
    AccountType.SAVINGS: SavingsAccount,
}


class AccountLedger:
    """
    Balance mutation and lifecycle for accounts
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        locks: Optional[EntityLockManager] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.config = config or get_config()
        self.repository = Repository(storage, "accounts", Account)
        self.audit_trail = audit_trail
        self.locks = locks or EntityLockManager(self.config.lock_timeout_seconds)
        self.currency = self.config.currency_enum

    def open(
        self,
        account_type: AccountType,
        owners: Iterable[Customer],
        initial_deposit=Decimal('0')
    ) -> int:
        """
        Open a new account for one or more co-owners

        Args:
            account_type: CHECKING or SAVINGS
            owners: Customers who jointly own the account
            initial_deposit: Opening balance, zero or more

        Returns:
            The id assigned by the repository
        """
        owners = list(owners)
        try:
            deposit = to_money(initial_deposit, self.currency)
        except ValueError as e:
            raise ValidationError(f"Initial deposit: {e}") from e
        if deposit.is_negative():
            raise ValidationError("Initial deposit cannot be negative")

        account_type = AccountType(account_type)
        if account_type == AccountType.CHECKING:
            account = CheckingAccount(
                id=None,
                created_at=datetime.now(timezone.utc),
                owner_ids={owner.id for owner in owners},
                balance=deposit,
                transaction_fee_rate=self.config.checking_fee_rate
            )
        else:
            account = SavingsAccount(
                id=None,
                created_at=datetime.now(timezone.utc),
                owner_ids={owner.id for owner in owners},
                balance=deposit,
                interest_rate=self.config.savings_rate
            )

        account_id = self.repository.create(account)
        for owner in owners:
            owner.account_ids.add(account_id)

        self._audit(AuditEventType.ACCOUNT_OPENED, account_id, {
            "account_type": account_type.value,
            "owner_ids": sorted(account.owner_ids),
            "initial_deposit": deposit.to_string()
        })
        log_action(logger, "info", f"Opened {account_type.value} account {account_id}",
                   action="open_account", resource=f"account:{account_id}")
        return account_id

    def credit(self, account: Account, amount, timeout: Optional[float] = None) -> Money:
        """
        Add a positive amount to the balance

        Returns:
            The new balance
        """
        money = positive_money(amount, self.currency, "Credit amount")

        with self.locks.hold(("account", account.id), timeout=timeout):
            current = self.require_account(account.id)
            current.balance = current.balance + money
            self.repository.update(current)
            account.balance = current.balance

        self._audit(AuditEventType.ACCOUNT_CREDITED, account.id, {
            "amount": money.to_string(),
            "balance": account.balance.to_string()
        })
        return account.balance

    def debit(self, account: Account, amount, timeout: Optional[float] = None) -> Money:
        """
        Subtract a positive amount from the balance

        With overdraft_policy "reject" a debit that would leave a negative
        balance raises InsufficientFundsError and writes nothing. With
        "allow" the balance goes negative and an overdraft event is audited.

        Returns:
            The new balance
        """
        money = positive_money(amount, self.currency, "Debit amount")

        with self.locks.hold(("account", account.id), timeout=timeout):
            current = self.require_account(account.id)
            new_balance = current.balance - money
            if new_balance.is_negative():
                if self.config.overdraft_policy == "reject":
                    raise InsufficientFundsError(
                        f"Account {account.id} has {current.balance.to_string()}, "
                        f"cannot debit {money.to_string()}"
                    )
                log_action(logger, "warning", f"Account {account.id} overdrawn",
                           action="debit", resource=f"account:{account.id}",
                           extra={"balance": new_balance.to_string()})
                self._audit(AuditEventType.ACCOUNT_OVERDRAWN, account.id, {
                    "amount": money.to_string(),
                    "balance": new_balance.to_string()
                })
            current.balance = new_balance
            self.repository.update(current)
            account.balance = current.balance

        self._audit(AuditEventType.ACCOUNT_DEBITED, account.id, {
            "amount": money.to_string(),
            "balance": account.balance.to_string()
        })
        return account.balance

    def apply_fee(self, account: Account, transaction_amount, timeout: Optional[float] = None) -> Money:
        """
        Charge the checking transaction fee for a transaction of the given size

        Returns:
            The fee charged; zero when it rounds below the smallest subunit
        """
        if not isinstance(account, CheckingAccount):
            raise ValidationError(f"Account {account.id} does not carry a transaction fee")
        base = positive_money(transaction_amount, self.currency, "Transaction amount")

        fee = base * account.transaction_fee_rate
        if not fee.is_positive():
            return Money.zero(self.currency)

        self.debit(account, fee, timeout=timeout)
        self._audit(AuditEventType.ACCOUNT_FEE_CHARGED, account.id, {
            "transaction_amount": base.to_string(),
            "fee_rate": account.transaction_fee_rate,
            "fee": fee.to_string()
        })
        return fee

    def close(
        self,
        customer_id: int,
        account_id: int,
        owners: Iterable[Customer] = (),
        timeout: Optional[float] = None
    ) -> None:
        """
        Close an account on behalf of one of its owners

        Removes the account from every given owner's in-memory set and
        deletes the record.

        Raises:
            NotFoundError: If the account is unknown or customer_id does not own it
        """
        with self.locks.hold(("account", account_id), timeout=timeout):
            account = self.get_account(account_id)
            if account is None or not account.is_owned_by(customer_id):
                raise NotFoundError(
                    f"Account {account_id} not found for customer {customer_id}"
                )
            self.repository.delete(account_id)

        for owner in owners:
            owner.account_ids.discard(account_id)

        self._audit(AuditEventType.ACCOUNT_CLOSED, account_id, {
            "closed_by": customer_id,
            "final_balance": account.balance.to_string()
        })
        log_action(logger, "info", f"Closed account {account_id}",
                   action="close_account", resource=f"account:{account_id}")

    def get_account(self, account_id: int) -> Optional[Account]:
        """Get account by ID"""
        return self.repository.get(account_id)

    def require_account(self, account_id: int) -> Account:
        account = self.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def get_customer_accounts(self, customer: Customer) -> List[Account]:
        """Get all accounts a customer co-owns and refresh their account id set"""
        accounts = [a for a in self.repository.find_all() if a.is_owned_by(customer.id)]
        customer.account_ids = {a.id for a in accounts}
        return accounts

    def _audit(self, event_type: AuditEventType, account_id: int, metadata: Dict) -> None:
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="account",
                entity_id=account_id,
                metadata=metadata
            )
        except Exception:
            # The account write has already committed
            logger.exception("Could not record %s for account %s", event_type.value, account_id)
