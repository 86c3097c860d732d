"""
Ledger Data Model

Accounts and ledger entries as stored in the `accounts` and `transactions`
relations. All monetary values are Decimal with two fractional digits.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Union

from .errors import InvalidTransfer


CENT = Decimal("0.01")

# Exclusive bound of a DECIMAL(19,2) column
MAX_AMOUNT = Decimal("1e17")


def to_money(value: Union[Decimal, int, str]) -> Decimal:
    """Normalize a stored amount to two decimal places"""
    return Decimal(value).quantize(CENT)


def _to_cents(value: Union[Decimal, int, float, str], what: str) -> Decimal:
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidTransfer(f"{what} {value!r} is not a valid decimal number")

    if not amount.is_finite():
        raise InvalidTransfer(f"{what} must be a finite number")
    if abs(amount) >= MAX_AMOUNT:
        raise InvalidTransfer(f"{what} must be less than {MAX_AMOUNT:f}")

    try:
        cents = amount.quantize(CENT)
    except InvalidOperation:
        raise InvalidTransfer(f"{what} {value!r} is out of range")
    if amount != cents:
        raise InvalidTransfer(f"{what} cannot have more than two decimal places")
    return cents


def parse_amount(value: Union[Decimal, int, float, str]) -> Decimal:
    """
    Validate a transfer amount and return it as an exact Decimal.
    
    Floats are converted through their repr so 0.1 stays 0.1. Amounts must be
    finite, strictly positive, below MAX_AMOUNT and carry at most two
    fractional digits.
    """
    amount = _to_cents(value, "Amount")
    if amount <= 0:
        raise InvalidTransfer("Amount must be greater than zero")
    return amount


def parse_balance(value: Union[Decimal, int, float, str]) -> Decimal:
    """Validate an opening balance: a non-negative cent amount below MAX_AMOUNT"""
    balance = _to_cents(value, "Opening balance")
    if balance < 0:
        raise InvalidTransfer("Opening balance cannot be negative")
    return balance


@dataclass
class Account:
    """Row of the accounts table"""
    id: int
    balance: Decimal
    
    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "balance": str(self.balance)}


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one committed transfer"""
    id: int
    from_id: int
    to_id: int
    amount: Decimal
    created_at: datetime
    
    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['amount'] = str(self.amount)
        result['created_at'] = self.created_at.isoformat()
        return result


@dataclass
class TransferResult:
    """Outcome of a committed transfer"""
    entry: LedgerEntry
    attempts: int
    from_balance: Decimal
    to_balance: Decimal
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry.to_dict(),
            "attempts": self.attempts,
            "from_balance": str(self.from_balance),
            "to_balance": str(self.to_balance),
        }
