from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class TransactionStatus(str, Enum):
    pending = "PENDING"
    paid = "PAID"
    overdue = "OVERDUE"
    cancelled = "CANCELLED"
    partially_paid = "PARTIALLY_PAID"


class GroupType(str, Enum):
    personal = "PERSONAL"
    collaborative = "COLLABORATIVE"


class InvitationStatus(str, Enum):
    pending = "PENDING"
    accepted = "ACCEPTED"
    rejected = "REJECTED"


class CardType(str, Enum):
    credit = "CREDIT"
    debit = "DEBIT"
    both = "BOTH"


class PaymentMethodType(str, Enum):
    pix = "PIX"
    credit_card = "CREDIT_CARD"
    debit_card = "DEBIT_CARD"
    cash = "CASH"
    bank_transfer = "BANK_TRANSFER"
    check = "CHECK"
    other = "OTHER"


class RecurringFrequency(str, Enum):
    daily = "DAILY"
    weekly = "WEEKLY"
    monthly = "MONTHLY"
    yearly = "YEARLY"


TRANSACTION_TYPE_ENUM = _value_enum(TransactionType, "transactiontype")
TRANSACTION_STATUS_ENUM = _value_enum(TransactionStatus, "transactionstatus")
GROUP_TYPE_ENUM = _value_enum(GroupType, "grouptype")
INVITATION_STATUS_ENUM = _value_enum(InvitationStatus, "invitationstatus")
CARD_TYPE_ENUM = _value_enum(CardType, "cardtype")
PAYMENT_METHOD_TYPE_ENUM = _value_enum(PaymentMethodType, "paymentmethodtype")
RECURRING_FREQUENCY_ENUM = _value_enum(RecurringFrequency, "recurringfrequency")

MONEY = Numeric(12, 2, asdecimal=True)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    memberships: Mapped[list["FinancialGroupMember"]] = relationship(
        "FinancialGroupMember", back_populates="user"
    )


class FinancialGroup(Base, TimestampMixin):
    __tablename__ = "financial_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[GroupType] = mapped_column(
        GROUP_TYPE_ENUM, nullable=False, default=GroupType.collaborative
    )
    created_by_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    created_by: Mapped["User"] = relationship("User")
    members: Mapped[list["FinancialGroupMember"]] = relationship(
        "FinancialGroupMember",
        back_populates="financial_group",
        cascade="all, delete-orphan",
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="group", cascade="all, delete-orphan"
    )
    categories: Mapped[list["FinancialCategory"]] = relationship(
        "FinancialCategory", back_populates="group", cascade="all, delete-orphan"
    )
    invitations: Mapped[list["GroupInvitation"]] = relationship(
        "GroupInvitation", back_populates="group", cascade="all, delete-orphan"
    )
    recurring_transactions: Mapped[list["RecurringTransaction"]] = relationship(
        "RecurringTransaction", back_populates="group", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_financial_groups_created_by", "created_by_id"),)


class FinancialGroupMember(Base):
    __tablename__ = "financial_group_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    financial_group_id: Mapped[int] = mapped_column(
        ForeignKey("financial_groups.id"), nullable=False
    )
    is_owner: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="memberships")
    financial_group: Mapped["FinancialGroup"] = relationship(
        "FinancialGroup", back_populates="members"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "financial_group_id", name="uq_member_user_group"),
    )


class GroupInvitation(Base, TimestampMixin):
    __tablename__ = "group_invitations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    receiver_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("financial_groups.id"), nullable=False
    )
    status: Mapped[InvitationStatus] = mapped_column(
        INVITATION_STATUS_ENUM, nullable=False, default=InvitationStatus.pending
    )

    sender: Mapped["User"] = relationship("User", foreign_keys=[sender_id])
    receiver: Mapped["User"] = relationship("User", foreign_keys=[receiver_id])
    group: Mapped["FinancialGroup"] = relationship(
        "FinancialGroup", back_populates="invitations"
    )

    __table_args__ = (
        Index("ix_invitation_receiver_status", "receiver_id", "status"),
    )


class FinancialCategory(Base, TimestampMixin):
    __tablename__ = "financial_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("financial_groups.id"), nullable=False
    )

    group: Mapped["FinancialGroup"] = relationship(
        "FinancialGroup", back_populates="categories"
    )

    __table_args__ = (
        UniqueConstraint("group_id", "name", name="uq_category_group_name"),
    )


class PaymentMethod(Base, TimestampMixin):
    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[PaymentMethodType] = mapped_column(
        PAYMENT_METHOD_TYPE_ENUM, nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class BankAccount(Base, TimestampMixin):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    bank: Mapped[str] = mapped_column(String(100), nullable=False)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="bank_account"
    )

    __table_args__ = (Index("ix_bank_accounts_user_active", "user_id", "is_active"),)


class CreditCard(Base, TimestampMixin):
    __tablename__ = "credit_cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    last4_digits: Mapped[str] = mapped_column(String(4), nullable=False)
    brand: Mapped[str] = mapped_column(String(50), nullable=False)
    type: Mapped[CardType] = mapped_column(CARD_TYPE_ENUM, nullable=False)
    credit_limit: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    due_day: Mapped[Optional[int]] = mapped_column(Integer)
    bank_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bank_accounts.id")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    bank_account: Mapped[Optional["BankAccount"]] = relationship("BankAccount")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="credit_card"
    )

    @property
    def display_name(self) -> str:
        return f"{self.name} (****{self.last4_digits})"

    __table_args__ = (
        Index("ix_credit_cards_user_active", "user_id", "is_active"),
        CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 31)",
            name="ck_card_closing_day",
        ),
        CheckConstraint(
            "due_day IS NULL OR (due_day BETWEEN 1 AND 31)", name="ck_card_due_day"
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    type: Mapped[TransactionType] = mapped_column(TRANSACTION_TYPE_ENUM, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        TRANSACTION_STATUS_ENUM, nullable=False, default=TransactionStatus.pending
    )
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    transaction_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("financial_groups.id"), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_categories.id")
    )
    bank_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bank_accounts.id")
    )
    credit_card_id: Mapped[Optional[int]] = mapped_column(ForeignKey("credit_cards.id"))
    payment_method_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payment_methods.id")
    )
    created_by_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    installment_number: Mapped[Optional[int]] = mapped_column(Integer)
    total_installments: Mapped[Optional[int]] = mapped_column(Integer)
    recurring_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_transactions.id")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)

    group: Mapped["FinancialGroup"] = relationship(
        "FinancialGroup", back_populates="transactions"
    )
    category: Mapped[Optional["FinancialCategory"]] = relationship("FinancialCategory")
    bank_account: Mapped[Optional["BankAccount"]] = relationship(
        "BankAccount", back_populates="transactions"
    )
    credit_card: Mapped[Optional["CreditCard"]] = relationship(
        "CreditCard", back_populates="transactions"
    )
    payment_method: Mapped[Optional["PaymentMethod"]] = relationship("PaymentMethod")
    created_by: Mapped["User"] = relationship("User")
    recurring_transaction: Mapped[Optional["RecurringTransaction"]] = relationship(
        "RecurringTransaction", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_transaction_id",
            "occurrence_date",
            name="uq_txn_recurring_occurrence",
        ),
        Index("ix_transactions_group_date", "group_id", "transaction_date"),
        Index("ix_transactions_bank_paid", "bank_account_id", "is_paid"),
        Index("ix_transactions_card_date", "credit_card_id", "transaction_date"),
        Index("ix_transactions_creator", "created_by_id"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "bank_account_id IS NULL OR credit_card_id IS NULL",
            name="ck_transactions_single_funding_source",
        ),
    )


class RecurringTransaction(Base, TimestampMixin):
    __tablename__ = "recurring_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    type: Mapped[TransactionType] = mapped_column(TRANSACTION_TYPE_ENUM, nullable=False)
    frequency: Mapped[RecurringFrequency] = mapped_column(
        RECURRING_FREQUENCY_ENUM, nullable=False
    )
    total_installments: Mapped[Optional[int]] = mapped_column(Integer)
    executed_installments: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    next_execution_date: Mapped[date] = mapped_column(Date, nullable=False)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("financial_groups.id"), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("financial_categories.id")
    )
    payment_method_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payment_methods.id")
    )
    bank_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bank_accounts.id")
    )
    credit_card_id: Mapped[Optional[int]] = mapped_column(ForeignKey("credit_cards.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    group: Mapped["FinancialGroup"] = relationship(
        "FinancialGroup", back_populates="recurring_transactions"
    )
    category: Mapped[Optional["FinancialCategory"]] = relationship("FinancialCategory")
    payment_method: Mapped[Optional["PaymentMethod"]] = relationship("PaymentMethod")
    bank_account: Mapped[Optional["BankAccount"]] = relationship("BankAccount")
    credit_card: Mapped[Optional["CreditCard"]] = relationship("CreditCard")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="recurring_transaction"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_recurring_amount_positive"),
        Index("ix_recurring_active_next", "is_active", "next_execution_date"),
    )
