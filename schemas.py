from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from models import (
    CardType,
    GroupType,
    InvitationStatus,
    PaymentMethodType,
    RecurringFrequency,
    TransactionStatus,
    TransactionType,
)

SINGLE_FUNDING_SOURCE = "Informe uma conta bancária ou um cartão de crédito, não ambos"


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class OrmModel(ApiModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# Input


class RegisterIn(ApiModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    confirm_password: str = Field(..., min_length=6, max_length=128)

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, value: str, info: ValidationInfo) -> str:
        if "password" in info.data and value != info.data["password"]:
            raise ValueError("As senhas não coincidem")
        return value


class LoginIn(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)


class GroupIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=255)


class GroupUpdateIn(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, min_length=1, max_length=255)


class InvitationIn(ApiModel):
    email: EmailStr
    group_id: int = Field(..., gt=0)


class InvitationResponseIn(ApiModel):
    status: InvitationStatus

    @field_validator("status")
    @classmethod
    def must_be_an_answer(cls, value: InvitationStatus) -> InvitationStatus:
        if value == InvitationStatus.pending:
            raise ValueError("Resposta deve ser ACCEPTED ou REJECTED")
        return value


class MemberIn(ApiModel):
    user_id: int = Field(..., gt=0)


class CategoryIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    group_id: int = Field(..., gt=0)


class PaymentMethodIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: PaymentMethodType
    description: Optional[str] = Field(default=None, max_length=255)
    is_active: bool = True


class BankAccountIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    bank: str = Field(..., min_length=1, max_length=100)
    balance: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    is_active: bool = True


class CreditCardIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    last4_digits: str = Field(..., pattern=r"^\d{4}$")
    brand: str = Field(..., min_length=1, max_length=50)
    type: CardType
    credit_limit: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2
    )
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    bank_account_id: Optional[int] = None
    is_active: bool = True

    @model_validator(mode="after")
    def credit_cards_need_billing_cycle(self) -> "CreditCardIn":
        if self.type in (CardType.credit, CardType.both):
            if not (self.credit_limit and self.closing_day and self.due_day):
                raise ValueError(
                    "Cartões de crédito exigem limite, dia de fechamento e dia de vencimento"
                )
        return self


class TransactionIn(ApiModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    type: TransactionType
    description: Optional[str] = Field(default=None, max_length=255)
    transaction_date: datetime
    due_date: Optional[datetime] = None
    status: Optional[TransactionStatus] = None
    is_paid: Optional[bool] = None
    group_id: int = Field(..., gt=0)
    category_id: Optional[int] = Field(default=None, gt=0)
    payment_method_id: Optional[int] = Field(default=None, gt=0)
    bank_account_id: Optional[int] = Field(default=None, gt=0)
    credit_card_id: Optional[int] = Field(default=None, gt=0)
    installment_number: Optional[int] = Field(default=None, ge=1)
    total_installments: Optional[int] = Field(default=None, ge=1)
    recurring_transaction_id: Optional[int] = None

    @field_validator("credit_card_id")
    @classmethod
    def single_funding_source(
        cls, value: Optional[int], info: ValidationInfo
    ) -> Optional[int]:
        if value is not None and info.data.get("bank_account_id") is not None:
            raise ValueError(SINGLE_FUNDING_SOURCE)
        return value


class TransactionUpdateIn(ApiModel):
    status: Optional[TransactionStatus] = None
    category_id: Optional[int] = None


class PayIn(ApiModel):
    paid_at: Optional[datetime] = None


class RecurringTransactionIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=255)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    type: TransactionType
    frequency: RecurringFrequency
    total_installments: Optional[int] = Field(default=None, ge=1)
    start_date: date
    end_date: Optional[date] = None
    group_id: int = Field(..., gt=0)
    category_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    bank_account_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    is_active: bool = True

    @field_validator("end_date")
    @classmethod
    def end_after_start(
        cls, value: Optional[date], info: ValidationInfo
    ) -> Optional[date]:
        start = info.data.get("start_date")
        if value is not None and start is not None and value <= start:
            raise ValueError("A data final deve ser posterior à data inicial")
        return value

    @field_validator("credit_card_id")
    @classmethod
    def single_funding_source(
        cls, value: Optional[int], info: ValidationInfo
    ) -> Optional[int]:
        if value is not None and info.data.get("bank_account_id") is not None:
            raise ValueError(SINGLE_FUNDING_SOURCE)
        return value


# Output


class UserRef(OrmModel):
    id: int
    name: str


class UserOut(OrmModel):
    id: int
    name: str
    email: str
    created_at: datetime


class NamedRef(OrmModel):
    id: int
    name: str


class BankAccountRef(OrmModel):
    id: int
    name: str
    bank: str


class CreditCardRef(OrmModel):
    id: int
    name: str
    last4_digits: str


class GroupOut(OrmModel):
    id: int
    name: str
    description: Optional[str]
    type: GroupType
    created_by_id: int
    created_at: datetime
    updated_at: datetime


class MemberOut(OrmModel):
    id: int
    user_id: int
    financial_group_id: int
    is_owner: bool
    joined_at: datetime
    user: UserRef


class InvitationOut(OrmModel):
    id: int
    status: InvitationStatus
    created_at: datetime
    sender: UserRef
    group: NamedRef


class CategoryOut(OrmModel):
    id: int
    name: str
    group_id: int


class PaymentMethodOut(OrmModel):
    id: int
    name: str
    type: PaymentMethodType
    description: Optional[str]
    is_active: bool


class BankAccountOut(OrmModel):
    id: int
    name: str
    bank: str
    balance: float
    is_active: bool


class CreditCardOut(OrmModel):
    id: int
    name: str
    last4_digits: str
    brand: str
    type: CardType
    credit_limit: Optional[float]
    closing_day: Optional[int]
    due_day: Optional[int]
    bank_account_id: Optional[int]
    is_active: bool


class TransactionOut(OrmModel):
    id: int
    amount: float
    type: TransactionType
    status: TransactionStatus
    is_paid: bool
    description: Optional[str]
    transaction_date: datetime
    due_date: Optional[datetime]
    paid_at: Optional[datetime]
    group_id: int
    category_id: Optional[int]
    bank_account_id: Optional[int]
    credit_card_id: Optional[int]
    payment_method_id: Optional[int]
    created_by_id: int
    installment_number: Optional[int]
    total_installments: Optional[int]
    recurring_transaction_id: Optional[int]
    created_at: datetime
    group: Optional[NamedRef] = None
    category: Optional[NamedRef] = None
    bank_account: Optional[BankAccountRef] = None
    credit_card: Optional[CreditCardRef] = None
    payment_method: Optional[NamedRef] = None
    created_by: Optional[UserRef] = None


class RecurringTransactionOut(OrmModel):
    id: int
    name: str
    description: Optional[str]
    amount: float
    type: TransactionType
    frequency: RecurringFrequency
    total_installments: Optional[int]
    executed_installments: int
    start_date: date
    end_date: Optional[date]
    next_execution_date: date
    group_id: int
    category_id: Optional[int]
    payment_method_id: Optional[int]
    bank_account_id: Optional[int]
    credit_card_id: Optional[int]
    is_active: bool
    group: Optional[NamedRef] = None
    category: Optional[NamedRef] = None
