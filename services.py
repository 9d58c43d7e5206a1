from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from auth import hash_password, verify_password
from ledger import apply_account_delta, initial_status, signed_amount
from models import (
    BankAccount,
    CardType,
    CreditCard,
    FinancialCategory,
    FinancialGroup,
    FinancialGroupMember,
    GroupInvitation,
    GroupType,
    InvitationStatus,
    PaymentMethod,
    RecurringTransaction,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    utcnow,
)
from notifications import LoggingChannel, NotificationChannel
from periods import days_in_month
from recurrence import RecurringEngine
from schemas import (
    BankAccountIn,
    CategoryIn,
    CreditCardIn,
    GroupIn,
    GroupUpdateIn,
    InvitationIn,
    PaymentMethodIn,
    RecurringTransactionIn,
    RegisterIn,
    TransactionIn,
    TransactionUpdateIn,
)

logger = logging.getLogger(__name__)

PERSONAL_GROUP_NAME = "Pessoal"
PERSONAL_GROUP_DESCRIPTION = "Grupo financeiro pessoal"
MIRROR_DEFAULT_DESCRIPTION = "Despesa compartilhada"

DEFAULT_CATEGORIES = (
    # income
    "Salário",
    "Freelance",
    "Investimentos",
    "Vendas",
    "Rendimentos",
    "Bonificações",
    "Outros Ganhos",
    # expense
    "Alimentação",
    "Transporte",
    "Moradia",
    "Saúde",
    "Educação",
    "Entretenimento",
    "Compras",
    "Serviços",
    "Impostos",
    "Seguros",
    "Viagens",
    "Pets",
    "Doações",
    "Outros Gastos",
)


class ServiceError(ValueError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(ServiceError):
    pass


class ForbiddenError(ServiceError):
    pass


class ConflictError(ServiceError):
    pass


class BusinessRuleError(ServiceError):
    pass


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def accessible_group_ids(session: Session, user_id: int) -> list[int]:
    """Groups the user belongs to, then groups they created, without duplicates."""
    member_ids = session.scalars(
        select(FinancialGroupMember.financial_group_id)
        .where(FinancialGroupMember.user_id == user_id)
        .order_by(FinancialGroupMember.financial_group_id)
    ).all()
    created_ids = session.scalars(
        select(FinancialGroup.id)
        .where(FinancialGroup.created_by_id == user_id)
        .order_by(FinancialGroup.id)
    ).all()
    ids = list(member_ids)
    seen = set(ids)
    for group_id in created_ids:
        if group_id not in seen:
            ids.append(group_id)
            seen.add(group_id)
    return ids


def get_membership(
    session: Session, user_id: int, group_id: int
) -> Optional[FinancialGroupMember]:
    return session.scalar(
        select(FinancialGroupMember).where(
            FinancialGroupMember.user_id == user_id,
            FinancialGroupMember.financial_group_id == group_id,
        )
    )


def get_personal_group(session: Session, user_id: int) -> Optional[FinancialGroup]:
    return session.scalar(
        select(FinancialGroup)
        .join(FinancialGroupMember)
        .where(
            FinancialGroup.type == GroupType.personal,
            FinancialGroupMember.user_id == user_id,
            FinancialGroupMember.is_owner.is_(True),
        )
        .order_by(FinancialGroup.id)
        .limit(1)
    )


def card_due_date(card: CreditCard, purchased_at: datetime) -> Optional[datetime]:
    """Due date of the statement a purchase lands on."""
    if not card.due_day:
        return None
    year = purchased_at.year
    month = purchased_at.month
    if card.closing_day and purchased_at.day > card.closing_day:
        month += 1
        if month > 12:
            month = 1
            year += 1
    day = min(card.due_day, days_in_month(year, month))
    return datetime(year, month, day)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def get_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.email == email.strip().lower())
        )

    def register(self, data: RegisterIn) -> User:
        email = data.email.lower()
        if self.get_by_email(email):
            raise ConflictError(
                "E-mail já cadastrado",
                details={"email": ["Este e-mail já está em uso"]},
            )
        user = User(
            name=data.name,
            email=email,
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        self.session.flush()

        group = FinancialGroup(
            name=PERSONAL_GROUP_NAME,
            description=PERSONAL_GROUP_DESCRIPTION,
            type=GroupType.personal,
            created_by_id=user.id,
        )
        group.members.append(FinancialGroupMember(user_id=user.id, is_owner=True))
        self.session.add(group)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: id={user.id}")
        return user

    def authenticate(self, email: str, password: str) -> Optional[User]:
        user = self.get_by_email(email)
        if not user or not verify_password(password, user.password_hash):
            return None
        return user


class GroupService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _get(self, group_id: int) -> FinancialGroup:
        group = self.session.get(FinancialGroup, group_id)
        if not group:
            raise NotFoundError("Grupo não encontrado")
        return group

    def _require_member(self, group_id: int) -> FinancialGroupMember:
        self._get(group_id)
        membership = get_membership(self.session, self.user_id, group_id)
        if not membership:
            raise ForbiddenError("Você não tem acesso a este grupo")
        return membership

    def _require_owner(self, group_id: int) -> FinancialGroup:
        group = self._get(group_id)
        membership = get_membership(self.session, self.user_id, group_id)
        if not membership or not membership.is_owner:
            raise ForbiddenError("Apenas o dono do grupo pode realizar esta ação")
        return group

    def list_collaborative(self) -> list[FinancialGroup]:
        stmt = (
            select(FinancialGroup)
            .join(FinancialGroupMember)
            .where(
                FinancialGroupMember.user_id == self.user_id,
                FinancialGroup.type == GroupType.collaborative,
            )
            .order_by(FinancialGroup.created_at.desc(), FinancialGroup.id.desc())
        )
        return self.session.scalars(stmt).all()

    def create(self, data: GroupIn) -> FinancialGroup:
        group = FinancialGroup(
            name=data.name,
            description=data.description,
            type=GroupType.collaborative,
            created_by_id=self.user_id,
        )
        group.members.append(FinancialGroupMember(user_id=self.user_id, is_owner=True))
        group.categories.extend(FinancialCategory(name=name) for name in DEFAULT_CATEGORIES)
        self.session.add(group)
        self.session.commit()
        self.session.refresh(group)
        logger.info(f"group_created: id={group.id} user={self.user_id}")
        return group

    def get_detail(self, group_id: int) -> FinancialGroup:
        self._require_member(group_id)
        stmt = (
            select(FinancialGroup)
            .options(
                joinedload(FinancialGroup.members).joinedload(FinancialGroupMember.user),
            )
            .where(FinancialGroup.id == group_id)
        )
        return self.session.scalars(stmt).unique().one()

    def transactions(self, group_id: int) -> list[Transaction]:
        self._require_member(group_id)
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.created_by),
            )
            .where(Transaction.group_id == group_id)
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def update(self, group_id: int, data: GroupUpdateIn) -> FinancialGroup:
        group = self._require_owner(group_id)
        if data.name is not None:
            group.name = data.name
        if data.description is not None:
            group.description = data.description
        self.session.commit()
        self.session.refresh(group)
        return group

    def delete(self, group_id: int) -> None:
        group = self._require_owner(group_id)
        if group.type == GroupType.personal:
            raise BusinessRuleError("O grupo pessoal não pode ser removido")
        self.session.delete(group)
        self.session.commit()
        logger.info(f"group_deleted: id={group_id} user={self.user_id}")

    def list_members(self, group_id: int) -> list[FinancialGroupMember]:
        self._require_member(group_id)
        stmt = (
            select(FinancialGroupMember)
            .options(joinedload(FinancialGroupMember.user))
            .where(FinancialGroupMember.financial_group_id == group_id)
            .order_by(FinancialGroupMember.joined_at, FinancialGroupMember.id)
        )
        return self.session.scalars(stmt).all()

    def add_member(self, group_id: int, user_id: int) -> FinancialGroupMember:
        group = self._require_owner(group_id)
        if group.type == GroupType.personal:
            raise BusinessRuleError("O grupo pessoal não aceita membros")
        if not self.session.get(User, user_id):
            raise NotFoundError("Usuário não encontrado")
        if get_membership(self.session, user_id, group_id):
            raise ConflictError("Usuário já é membro do grupo")
        member = FinancialGroupMember(
            user_id=user_id, financial_group_id=group_id, is_owner=False
        )
        self.session.add(member)
        self.session.commit()
        self.session.refresh(member)
        return member

    def remove_member(self, group_id: int, user_id: int) -> None:
        self._require_owner(group_id)
        membership = get_membership(self.session, user_id, group_id)
        if not membership:
            raise NotFoundError("Membro não encontrado")
        if membership.is_owner:
            raise BusinessRuleError("O dono do grupo não pode ser removido")
        self.session.delete(membership)
        self.session.commit()


class InvitationService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def invite(self, data: InvitationIn) -> Optional[GroupInvitation]:
        """Create an invitation when possible.

        The caller always gets the same answer so that it cannot learn which
        e-mail addresses are registered.
        """
        group = self.session.get(FinancialGroup, data.group_id)
        if not group:
            raise NotFoundError("Grupo não encontrado")
        if not get_membership(self.session, self.user_id, group.id):
            raise ForbiddenError("Você não tem acesso a este grupo")

        receiver = UserService(self.session).get_by_email(data.email)
        if not receiver or receiver.id == self.user_id:
            return None
        if get_membership(self.session, receiver.id, group.id):
            return None
        pending = self.session.scalar(
            select(GroupInvitation.id).where(
                GroupInvitation.group_id == group.id,
                GroupInvitation.receiver_id == receiver.id,
                GroupInvitation.status == InvitationStatus.pending,
            )
        )
        if pending:
            return None

        invitation = GroupInvitation(
            sender_id=self.user_id,
            receiver_id=receiver.id,
            group_id=group.id,
            status=InvitationStatus.pending,
        )
        self.session.add(invitation)
        self.session.commit()
        logger.info(f"invitation_created: id={invitation.id} group={group.id}")
        return invitation

    def list_pending(self) -> list[GroupInvitation]:
        stmt = (
            select(GroupInvitation)
            .options(
                joinedload(GroupInvitation.sender),
                joinedload(GroupInvitation.group),
            )
            .where(
                GroupInvitation.receiver_id == self.user_id,
                GroupInvitation.status == InvitationStatus.pending,
            )
            .order_by(GroupInvitation.created_at.desc(), GroupInvitation.id.desc())
        )
        return self.session.scalars(stmt).all()

    def respond(self, invitation_id: int, status: InvitationStatus) -> GroupInvitation:
        invitation = self.session.get(GroupInvitation, invitation_id)
        if not invitation:
            raise NotFoundError("Convite não encontrado")
        if invitation.receiver_id != self.user_id:
            raise ForbiddenError("Este convite não é seu")
        if invitation.status != InvitationStatus.pending:
            raise BusinessRuleError("Convite já respondido")

        invitation.status = status
        if status == InvitationStatus.accepted and not get_membership(
            self.session, self.user_id, invitation.group_id
        ):
            self.session.add(
                FinancialGroupMember(
                    user_id=self.user_id,
                    financial_group_id=invitation.group_id,
                    is_owner=False,
                )
            )
        self.session.commit()
        self.session.refresh(invitation)
        return invitation


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, group_id: Optional[int] = None) -> list[FinancialCategory]:
        group_ids = accessible_group_ids(self.session, self.user_id)
        if group_id is not None:
            if group_id not in group_ids:
                raise NotFoundError("Grupo não encontrado")
            group_ids = [group_id]
        stmt = (
            select(FinancialCategory)
            .where(FinancialCategory.group_id.in_(group_ids))
            .order_by(FinancialCategory.name, FinancialCategory.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: CategoryIn) -> FinancialCategory:
        if not get_membership(self.session, self.user_id, data.group_id):
            raise NotFoundError("Grupo não encontrado")
        existing = self.session.scalar(
            select(FinancialCategory.id).where(
                FinancialCategory.group_id == data.group_id,
                func.lower(FinancialCategory.name) == data.name.lower(),
            )
        )
        if existing:
            raise ConflictError("Categoria já existe neste grupo")
        category = FinancialCategory(name=data.name, group_id=data.group_id)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class PaymentMethodService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_active(self) -> list[PaymentMethod]:
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.user_id == self.user_id, PaymentMethod.is_active.is_(True))
            .order_by(PaymentMethod.name)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: PaymentMethodIn) -> PaymentMethod:
        method = PaymentMethod(user_id=self.user_id, **data.model_dump())
        self.session.add(method)
        self.session.commit()
        self.session.refresh(method)
        return method


class BankAccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, account_id: int) -> BankAccount:
        account = self.session.get(BankAccount, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Conta bancária não encontrada")
        return account

    def list_active(self) -> list[BankAccount]:
        stmt = (
            select(BankAccount)
            .where(BankAccount.user_id == self.user_id, BankAccount.is_active.is_(True))
            .order_by(BankAccount.name)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: BankAccountIn) -> BankAccount:
        account = BankAccount(user_id=self.user_id, **data.model_dump())
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account


class CreditCardService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, card_id: int) -> CreditCard:
        card = self.session.get(CreditCard, card_id)
        if not card or card.user_id != self.user_id:
            raise NotFoundError("Cartão de crédito não encontrado")
        return card

    def list_active(self) -> list[CreditCard]:
        stmt = (
            select(CreditCard)
            .where(CreditCard.user_id == self.user_id, CreditCard.is_active.is_(True))
            .order_by(CreditCard.name)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: CreditCardIn) -> CreditCard:
        if data.bank_account_id is not None:
            BankAccountService(self.session, self.user_id).get(data.bank_account_id)
        card = CreditCard(user_id=self.user_id, **data.model_dump())
        self.session.add(card)
        self.session.commit()
        self.session.refresh(card)
        return card

    def used_amount(self, card: CreditCard) -> Decimal:
        """Debt over every pending or paid expense on the card."""
        total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.credit_card_id == card.id,
                Transaction.type == TransactionType.expense,
                Transaction.status.in_(
                    (TransactionStatus.pending, TransactionStatus.paid)
                ),
            )
        ).scalar_one()
        return Decimal(str(total or 0)).quantize(Decimal("0.01"))


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        notifier: Optional[NotificationChannel] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.notifier = notifier or LoggingChannel()

    def _notify(self, event: str, txn: Transaction) -> None:
        self.notifier.emit(
            event,
            {"id": txn.id, "groupId": txn.group_id, "userId": self.user_id},
        )

    def _load(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.group),
                joinedload(Transaction.category),
                joinedload(Transaction.bank_account),
                joinedload(Transaction.credit_card),
                joinedload(Transaction.payment_method),
                joinedload(Transaction.created_by),
            )
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transação não encontrada")
        return txn

    def _load_own(self, transaction_id: int) -> Transaction:
        txn = self._load(transaction_id)
        if txn.created_by_id != self.user_id:
            raise NotFoundError("Transação não encontrada")
        return txn

    def _load_editable(self, transaction_id: int) -> Transaction:
        txn = self._load(transaction_id)
        if txn.created_by_id == self.user_id:
            return txn
        membership = get_membership(self.session, self.user_id, txn.group_id)
        if not membership:
            raise NotFoundError("Transação não encontrada")
        if not membership.is_owner:
            raise ForbiddenError("Sem permissão para alterar esta transação")
        return txn

    def _category_in_group(self, category_id: int, group_id: int) -> FinancialCategory:
        category = self.session.get(FinancialCategory, category_id)
        if not category or category.group_id != group_id:
            raise NotFoundError("Categoria não encontrada")
        return category

    def _check_card_limit(self, card: CreditCard, amount: Decimal) -> None:
        if card.type not in (CardType.credit, CardType.both):
            return
        used = CreditCardService(self.session, self.user_id).used_amount(card)
        limit = card.credit_limit or Decimal("0")
        available = limit - used
        if amount > available:
            raise BusinessRuleError(
                "Limite do cartão insuficiente",
                details={
                    "cardName": card.name,
                    "creditLimit": float(limit),
                    "usedAmount": float(used),
                    "availableLimit": float(available),
                    "requiredAmount": float(amount),
                },
            )

    def _insufficient_balance(self, account: BankAccount, amount: Decimal) -> BusinessRuleError:
        return BusinessRuleError(
            "Saldo insuficiente na conta bancária",
            details={
                "accountName": account.name,
                "currentBalance": float(account.balance),
                "requiredAmount": float(amount),
            },
        )

    def list(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.group),
                joinedload(Transaction.category),
                joinedload(Transaction.created_by),
            )
            .where(Transaction.created_by_id == self.user_id)
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: int) -> Transaction:
        return self._load_own(transaction_id)

    def create(self, data: TransactionIn) -> Transaction:
        group = self.session.get(FinancialGroup, data.group_id)
        if not group or not get_membership(self.session, self.user_id, group.id):
            raise NotFoundError("Grupo não encontrado")
        if data.category_id is not None:
            self._category_in_group(data.category_id, group.id)
        if data.payment_method_id is not None:
            method = self.session.get(PaymentMethod, data.payment_method_id)
            if not method or method.user_id != self.user_id:
                raise NotFoundError("Forma de pagamento não encontrada")

        card: Optional[CreditCard] = None
        account: Optional[BankAccount] = None
        if data.credit_card_id is not None:
            card = CreditCardService(self.session, self.user_id).get(data.credit_card_id)
            if data.type == TransactionType.expense:
                self._check_card_limit(card, data.amount)
        if data.bank_account_id is not None:
            account = BankAccountService(self.session, self.user_id).get(
                data.bank_account_id
            )

        status, is_paid = initial_status(
            data.status, data.is_paid, data.type, data.credit_card_id
        )
        if (
            account
            and data.type == TransactionType.expense
            and is_paid
            and account.balance < data.amount
        ):
            raise self._insufficient_balance(account, data.amount)

        transaction_date = to_naive_utc(data.transaction_date)
        due_date = to_naive_utc(data.due_date)
        if due_date is None and card is not None:
            due_date = card_due_date(card, transaction_date)

        txn = Transaction(
            amount=data.amount,
            type=data.type,
            status=status,
            is_paid=is_paid,
            description=data.description,
            transaction_date=transaction_date,
            due_date=due_date,
            paid_at=utcnow() if is_paid else None,
            group_id=group.id,
            category_id=data.category_id,
            bank_account_id=data.bank_account_id,
            credit_card_id=data.credit_card_id,
            payment_method_id=data.payment_method_id,
            created_by_id=self.user_id,
            installment_number=data.installment_number,
            total_installments=data.total_installments,
            recurring_transaction_id=data.recurring_transaction_id,
        )
        self.session.add(txn)
        self.session.flush()

        if account and is_paid:
            delta = signed_amount(data.type, data.amount)
            if not apply_account_delta(self.session, account.id, delta):
                self.session.rollback()
                raise self._insufficient_balance(account, data.amount)
            logger.info(f"bank_balance_updated: account={account.id} delta={delta}")

        if data.type == TransactionType.expense and group.type == GroupType.collaborative:
            self._mirror_into_personal(txn, group)

        self.session.commit()
        logger.info(f"transaction_created: id={txn.id} user={self.user_id}")
        self._notify("transaction:created", txn)
        return self._load(txn.id)

    def _mirror_into_personal(self, txn: Transaction, group: FinancialGroup) -> None:
        personal = get_personal_group(self.session, self.user_id)
        if not personal:
            logger.warning(f"personal_group_missing: user={self.user_id}")
            return
        mirrored = Transaction(
            amount=txn.amount,
            type=TransactionType.expense,
            status=TransactionStatus.paid,
            is_paid=True,
            description=f"[{group.name}] {txn.description or MIRROR_DEFAULT_DESCRIPTION}",
            transaction_date=txn.transaction_date,
            due_date=txn.due_date,
            paid_at=utcnow(),
            group_id=personal.id,
            category_id=txn.category_id,
            bank_account_id=txn.bank_account_id,
            credit_card_id=txn.credit_card_id,
            payment_method_id=txn.payment_method_id,
            created_by_id=self.user_id,
        )
        self.session.add(mirrored)
        self.session.flush()
        logger.info(
            f"transaction_mirrored: source={txn.id} mirror={mirrored.id} "
            f"personal_group={personal.id}"
        )

    def _set_paid(self, txn: Transaction, paid_at: Optional[datetime]) -> bool:
        result = self.session.execute(
            update(Transaction)
            .where(Transaction.id == txn.id, Transaction.is_paid.is_(False))
            .values(
                is_paid=True,
                status=TransactionStatus.paid,
                paid_at=to_naive_utc(paid_at) or utcnow(),
            )
        )
        if result.rowcount == 0:
            return False
        if txn.bank_account_id is not None and txn.credit_card_id is None:
            delta = signed_amount(txn.type, txn.amount)
            if not apply_account_delta(self.session, txn.bank_account_id, delta):
                account = self.session.get(BankAccount, txn.bank_account_id)
                error = self._insufficient_balance(account, txn.amount)
                self.session.rollback()
                raise error
        return True

    def _set_unpaid(
        self, txn: Transaction, status: TransactionStatus, *, keep_paid_at: bool = False
    ) -> bool:
        values: dict[str, Any] = {"is_paid": False, "status": status}
        if not keep_paid_at:
            values["paid_at"] = None
        result = self.session.execute(
            update(Transaction)
            .where(Transaction.id == txn.id, Transaction.is_paid.is_(True))
            .values(**values)
        )
        if result.rowcount == 0:
            return False
        if txn.bank_account_id is not None and txn.credit_card_id is None:
            delta = -signed_amount(txn.type, txn.amount)
            apply_account_delta(self.session, txn.bank_account_id, delta, guarded=False)
        return True

    def mark_paid(self, transaction_id: int, paid_at: Optional[datetime] = None) -> Transaction:
        txn = self._load_own(transaction_id)
        changed = self._set_paid(txn, paid_at)
        self.session.commit()
        if changed:
            logger.info(f"transaction_paid: id={txn.id} user={self.user_id}")
            self._notify("transaction:paid", txn)
        return self._refreshed(txn.id)

    def mark_unpaid(self, transaction_id: int) -> Transaction:
        txn = self._load_own(transaction_id)
        changed = self._set_unpaid(txn, TransactionStatus.pending)
        self.session.commit()
        if changed:
            logger.info(f"transaction_unpaid: id={txn.id} user={self.user_id}")
            self._notify("transaction:unpaid", txn)
        return self._refreshed(txn.id)

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        txn = self._load_editable(transaction_id)
        if "category_id" in data.model_fields_set:
            if data.category_id is not None:
                self._category_in_group(data.category_id, txn.group_id)
            txn.category_id = data.category_id

        if data.status is not None and data.status != txn.status:
            if data.status == TransactionStatus.paid:
                if not self._set_paid(txn, None):
                    txn.status = TransactionStatus.paid
            elif txn.is_paid:
                self._set_unpaid(
                    txn,
                    data.status,
                    keep_paid_at=data.status == TransactionStatus.partially_paid,
                )
            else:
                txn.status = data.status
                if data.status != TransactionStatus.partially_paid:
                    txn.paid_at = None

        self.session.commit()
        logger.info(f"transaction_updated: id={txn.id} user={self.user_id}")
        self._notify("transaction:updated", txn)
        return self._refreshed(txn.id)

    def delete(self, transaction_id: int) -> None:
        txn = self._load_editable(transaction_id)
        if txn.is_paid and txn.bank_account_id is not None and txn.credit_card_id is None:
            delta = -signed_amount(txn.type, txn.amount)
            apply_account_delta(self.session, txn.bank_account_id, delta, guarded=False)
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: id={transaction_id} user={self.user_id}")
        self._notify("transaction:deleted", txn)

    def _refreshed(self, transaction_id: int) -> Transaction:
        txn = self._load(transaction_id)
        self.session.refresh(txn)
        return txn


class RecurringTransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def list_active(self) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .options(
                joinedload(RecurringTransaction.group),
                joinedload(RecurringTransaction.category),
            )
            .where(
                RecurringTransaction.user_id == self.user_id,
                RecurringTransaction.is_active.is_(True),
            )
            .order_by(RecurringTransaction.next_execution_date, RecurringTransaction.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        if not get_membership(self.session, self.user_id, data.group_id):
            raise NotFoundError("Grupo não encontrado")
        if data.category_id is not None:
            category = self.session.get(FinancialCategory, data.category_id)
            if not category or category.group_id != data.group_id:
                raise NotFoundError("Categoria não encontrada")
        if data.bank_account_id is not None:
            BankAccountService(self.session, self.user_id).get(data.bank_account_id)
        if data.credit_card_id is not None:
            CreditCardService(self.session, self.user_id).get(data.credit_card_id)
        if data.payment_method_id is not None:
            method = self.session.get(PaymentMethod, data.payment_method_id)
            if not method or method.user_id != self.user_id:
                raise NotFoundError("Forma de pagamento não encontrada")

        recurring = RecurringTransaction(
            user_id=self.user_id,
            next_execution_date=data.start_date,
            executed_installments=0,
            **data.model_dump(),
        )
        self.session.add(recurring)
        self.session.commit()
        self.session.refresh(recurring)
        logger.info(f"recurring_created: id={recurring.id} user={self.user_id}")
        return recurring

    def deactivate(self, recurring_id: int) -> RecurringTransaction:
        recurring = self.session.get(RecurringTransaction, recurring_id)
        if not recurring or recurring.user_id != self.user_id:
            raise NotFoundError("Transação recorrente não encontrada")
        recurring.is_active = False
        self.session.commit()
        return recurring

    def catch_up_all(self, today: Optional[date] = None) -> int:
        engine = RecurringEngine(self.session)
        return engine.post_due(today)

