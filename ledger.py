"""How a transaction settles and what it does to a stored bank balance."""

from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import BankAccount, TransactionStatus, TransactionType


def initial_status(
    status: Optional[TransactionStatus],
    is_paid: Optional[bool],
    txn_type: TransactionType,
    credit_card_id: Optional[int],
) -> tuple[TransactionStatus, bool]:
    resolved = status or TransactionStatus.pending
    paid = bool(is_paid) or resolved == TransactionStatus.paid
    # income that does not go through a card is settled on entry
    if txn_type == TransactionType.income and credit_card_id is None:
        return TransactionStatus.paid, True
    if paid and status is None:
        resolved = TransactionStatus.paid
    return resolved, paid


def apply_account_delta(
    session: Session, account_id: int, delta: Decimal, *, guarded: bool = True
) -> bool:
    """Add ``delta`` to a stored balance in one statement.

    A negative guarded delta only applies while the balance covers it, so the
    check and the write cannot be split by a concurrent request.
    """
    stmt = update(BankAccount).where(BankAccount.id == account_id)
    if delta < 0 and guarded:
        stmt = stmt.where(BankAccount.balance >= -delta)
    result = session.execute(stmt.values(balance=BankAccount.balance + delta))
    return result.rowcount == 1


def signed_amount(txn_type: TransactionType, amount: Decimal) -> Decimal:
    return amount if txn_type == TransactionType.income else -amount
