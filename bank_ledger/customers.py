"""
Customer Registry Module

Customers are owned by the identity layer; the ledgers only need to resolve
borrower and owner ids. The in-memory loan list and account id set on a
Customer are caches refreshed by the ledgers on every query and are never
persisted.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
import re

from .storage import StorageInterface, StorageRecord, Repository
from .exceptions import NotFoundError, ValidationError


@dataclass
class Customer(StorageRecord):
    """Customer reference with derived loan and account views"""
    first_name: str
    last_name: str
    email: str
    loans: List[Any] = field(default_factory=list, compare=False, repr=False)
    account_ids: Set[int] = field(default_factory=set, compare=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.pop('loans')
        result.pop('account_ids')
        return result


class CustomerRegistry:
    """Registers and resolves customers by id"""

    def __init__(self, storage: StorageInterface):
        self.repository = Repository(storage, "customers", Customer)

    def register(self, first_name: str, last_name: str, email: str) -> Customer:
        if not first_name or not last_name:
            raise ValidationError("First and last name are required")
        if not re.match(r'^[^@\s]+@[^@\s]+\.[^@\s]+$', email or ""):
            raise ValidationError(f"Invalid email address: {email!r}")

        customer = Customer(
            id=None,
            created_at=datetime.now(timezone.utc),
            first_name=first_name,
            last_name=last_name,
            email=email
        )
        self.repository.create(customer)
        return customer

    def get(self, customer_id: int) -> Optional[Customer]:
        return self.repository.get(customer_id)

    def require(self, customer_id: int) -> Customer:
        customer = self.get(customer_id)
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer
