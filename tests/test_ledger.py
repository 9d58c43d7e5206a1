from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from ledger import apply_account_delta, initial_status, signed_amount
from models import BankAccount, TransactionStatus, TransactionType, User


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_account(session, balance: str) -> BankAccount:
    user = User(name="Ana", email="ana@example.com", password_hash="x")
    session.add(user)
    session.flush()
    account = BankAccount(
        user_id=user.id, name="Conta", bank="Banco", balance=Decimal(balance)
    )
    session.add(account)
    session.commit()
    return account


def balance_of(session, account) -> Decimal:
    session.expire_all()
    return session.get(BankAccount, account.id).balance


@pytest.mark.parametrize(
    "status, is_paid, txn_type, card_id, expected",
    [
        (None, None, TransactionType.expense, None, (TransactionStatus.pending, False)),
        (None, True, TransactionType.expense, None, (TransactionStatus.paid, True)),
        (TransactionStatus.paid, None, TransactionType.expense, 1, (TransactionStatus.paid, True)),
        (None, None, TransactionType.income, None, (TransactionStatus.paid, True)),
        (None, None, TransactionType.income, 1, (TransactionStatus.pending, False)),
        (
            TransactionStatus.cancelled,
            None,
            TransactionType.income,
            None,
            (TransactionStatus.paid, True),
        ),
    ],
)
def test_initial_status(status, is_paid, txn_type, card_id, expected) -> None:
    assert initial_status(status, is_paid, txn_type, card_id) == expected


def test_signed_amount() -> None:
    assert signed_amount(TransactionType.income, Decimal("10")) == Decimal("10")
    assert signed_amount(TransactionType.expense, Decimal("10")) == Decimal("-10")


def test_guarded_debit_needs_enough_balance() -> None:
    session = make_session()
    account = make_account(session, "50")

    assert apply_account_delta(session, account.id, Decimal("-80")) is False
    assert balance_of(session, account) == Decimal("50")

    assert apply_account_delta(session, account.id, Decimal("-50")) is True
    assert balance_of(session, account) == Decimal("0")


def test_unguarded_delta_may_go_negative() -> None:
    session = make_session()
    account = make_account(session, "10")

    assert apply_account_delta(session, account.id, Decimal("-30"), guarded=False) is True
    assert apply_account_delta(session, account.id, Decimal("5")) is True
    assert balance_of(session, account) == Decimal("-15")
