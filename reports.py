from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.orm import Session, joinedload

from models import (
    CardType,
    CreditCard,
    FinancialGroup,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from periods import Period, utc_to_local, year_window
from schemas import TransactionOut
from services import (
    BankAccountService,
    CreditCardService,
    NotFoundError,
    accessible_group_ids,
    get_personal_group,
)

# trailing window that stands in for the open statement of a card
CREDIT_CYCLE_WINDOW_DAYS = 40
TOP_EXPENSE_CATEGORIES = 5
MONTHS_IN_YEAR = 12

ZERO = Decimal("0")
CENTS = Decimal("0.01")

NO_CATEGORY = "Sem categoria"
NO_ACCOUNT = "Sem conta"
NO_KEY = "none"

DEBT_STATUSES = (TransactionStatus.pending, TransactionStatus.paid)

SIGNED_AMOUNT = case(
    (Transaction.type == TransactionType.income, Transaction.amount),
    else_=-Transaction.amount,
)


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS)


def _percent(part: Decimal, whole: Decimal) -> float:
    if not whole:
        return 0.0
    return float(part / whole * 100)


def _iso(value: datetime) -> str:
    return value.isoformat()


def _month_key(value: datetime) -> str:
    local = utc_to_local(value)
    return f"{local.year}-{local.month:02d}"


class BalanceService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _groups(self) -> list[FinancialGroup]:
        group_ids = accessible_group_ids(self.session, self.user_id)
        if not group_ids:
            return []
        rows = self.session.scalars(
            select(FinancialGroup).where(FinancialGroup.id.in_(group_ids))
        ).all()
        by_id = {group.id: group for group in rows}
        return [by_id[group_id] for group_id in group_ids if group_id in by_id]

    def _group_flows(self, group_ids: list[int]) -> dict[int, tuple[Decimal, int]]:
        """Net of paid transactions with no account or card, and the row count."""
        if not group_ids:
            return {}
        unlinked_paid = and_(
            Transaction.is_paid.is_(True),
            Transaction.bank_account_id.is_(None),
            Transaction.credit_card_id.is_(None),
        )
        rows = self.session.execute(
            select(
                Transaction.group_id,
                func.coalesce(
                    func.sum(case((unlinked_paid, SIGNED_AMOUNT), else_=0)), 0
                ),
                func.count(Transaction.id),
            )
            .where(Transaction.group_id.in_(group_ids))
            .group_by(Transaction.group_id)
        ).all()
        return {group_id: (_money(total), count) for group_id, total, count in rows}

    def _account_flows(self, account_ids: list[int]) -> dict[int, Decimal]:
        if not account_ids:
            return {}
        rows = self.session.execute(
            select(Transaction.bank_account_id, func.sum(SIGNED_AMOUNT))
            .where(
                Transaction.bank_account_id.in_(account_ids),
                Transaction.is_paid.is_(True),
                Transaction.credit_card_id.is_(None),
            )
            .group_by(Transaction.bank_account_id)
        ).all()
        return {account_id: _money(total) for account_id, total in rows}

    def _credit_cards(self) -> list[CreditCard]:
        stmt = (
            select(CreditCard)
            .where(
                CreditCard.user_id == self.user_id,
                CreditCard.is_active.is_(True),
                CreditCard.type.in_((CardType.credit, CardType.both)),
            )
            .order_by(CreditCard.name, CreditCard.id)
        )
        return self.session.scalars(stmt).all()

    def _card_debts(
        self, card_ids: list[int], since: Optional[datetime] = None
    ) -> dict[int, Decimal]:
        if not card_ids:
            return {}
        stmt = (
            select(Transaction.credit_card_id, func.sum(Transaction.amount))
            .where(
                Transaction.credit_card_id.in_(card_ids),
                Transaction.type == TransactionType.expense,
                Transaction.status.in_(DEBT_STATUSES),
            )
            .group_by(Transaction.credit_card_id)
        )
        if since is not None:
            stmt = stmt.where(Transaction.transaction_date >= since)
        rows = self.session.execute(stmt).all()
        return {card_id: _money(total) for card_id, total in rows}

    def snapshot(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or utcnow()

        groups = self._groups()
        flows = self._group_flows([group.id for group in groups])
        total_balance = ZERO
        balance_by_group = []
        for group in groups:
            group_balance, count = flows.get(group.id, (ZERO, 0))
            total_balance += group_balance
            balance_by_group.append(
                {
                    "groupId": group.id,
                    "groupName": group.name,
                    "groupType": group.type.value,
                    "balance": float(group_balance),
                    "transactionCount": count,
                }
            )

        accounts = BankAccountService(self.session, self.user_id).list_active()
        account_flows = self._account_flows([account.id for account in accounts])
        total_bank_balance = ZERO
        bank_accounts = []
        for account in accounts:
            real_balance = _money(account.balance) + account_flows.get(account.id, ZERO)
            total_bank_balance += real_balance
            bank_accounts.append(
                {
                    "id": account.id,
                    "name": account.name,
                    "bank": account.bank,
                    "balance": float(account.balance),
                    "realBalance": float(real_balance),
                }
            )

        cards = self._credit_cards()
        since = now - timedelta(days=CREDIT_CYCLE_WINDOW_DAYS)
        debts = self._card_debts([card.id for card in cards], since)
        total_credit_debt = ZERO
        total_credit_limit = ZERO
        credit_cards = []
        for card in cards:
            limit = _money(card.credit_limit)
            debt = debts.get(card.id, ZERO)
            total_credit_debt += debt
            total_credit_limit += limit
            credit_cards.append(
                {
                    "id": card.id,
                    "name": card.name,
                    "last4Digits": card.last4_digits,
                    "brand": card.brand,
                    "creditLimit": float(limit),
                    "currentDebt": float(debt),
                    "availableLimit": float(max(ZERO, limit - debt)),
                    "utilizationRate": _percent(debt, limit),
                }
            )

        available_credit = max(ZERO, total_credit_limit - total_credit_debt)
        return {
            "totalBalance": float(total_balance),
            "totalBankBalance": float(total_bank_balance),
            "totalCreditDebt": float(total_credit_debt),
            "totalCreditLimit": float(total_credit_limit),
            "availableCreditLimit": float(available_credit),
            "consolidatedBalance": float(total_balance + total_bank_balance),
            "realNetBalance": float(
                total_balance + total_bank_balance - total_credit_debt
            ),
            "totalAvailableBalance": float(
                total_balance + total_bank_balance + available_credit
            ),
            "balanceByGroup": balance_by_group,
            "bankAccounts": bank_accounts,
            "creditCards": credit_cards,
            "summary": {
                "totalGroups": len(groups),
                "totalBankAccounts": len(accounts),
                "totalCreditCards": len(cards),
                "creditUtilization": _percent(total_credit_debt, total_credit_limit),
                "lastUpdated": _iso(now),
            },
        }

    def personal_group(self) -> dict[str, Any]:
        """Cash held by the user plus what is left on their credit cards."""
        group = get_personal_group(self.session, self.user_id)
        if not group:
            raise NotFoundError("Grupo pessoal não encontrado")

        group_balance, _count = self._group_flows([group.id]).get(group.id, (ZERO, 0))
        accounts = BankAccountService(self.session, self.user_id).list_active()
        stored = sum((_money(account.balance) for account in accounts), ZERO)
        linked = sum(
            self._account_flows([account.id for account in accounts]).values(), ZERO
        )
        cash_balance = group_balance + stored + linked

        cards = self._credit_cards()
        debts = self._card_debts([card.id for card in cards])
        total_limit = ZERO
        total_used = ZERO
        card_summaries = []
        for card in cards:
            limit = _money(card.credit_limit)
            used = debts.get(card.id, ZERO)
            total_limit += limit
            total_used += used
            card_summaries.append(
                {
                    "id": card.id,
                    "name": card.name,
                    "last4Digits": card.last4_digits,
                    "brand": card.brand,
                    "creditLimit": float(limit),
                    "usedAmount": float(used),
                    "availableLimit": float(max(ZERO, limit - used)),
                }
            )

        available_credit = total_limit - total_used
        return {
            "id": group.id,
            "name": group.name,
            "description": group.description,
            "balance": float(cash_balance + available_credit),
            "breakdown": {
                "cashBalance": float(cash_balance),
                "availableCreditLimit": float(available_credit),
                "totalCreditLimit": float(total_limit),
                "totalCreditUsed": float(total_used),
            },
            "creditCards": card_summaries,
        }

    def card_usage(self, card_id: int) -> dict[str, Any]:
        card = CreditCardService(self.session, self.user_id).get(card_id)
        transactions = self.session.scalars(
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.group))
            .where(
                Transaction.credit_card_id == card.id,
                Transaction.type == TransactionType.expense,
                Transaction.status.in_(DEBT_STATUSES),
            )
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        ).all()
        used = sum((_money(txn.amount) for txn in transactions), ZERO)
        limit = _money(card.credit_limit)
        return {
            "card": {
                "id": card.id,
                "name": card.name,
                "last4Digits": card.last4_digits,
                "brand": card.brand,
                "creditLimit": float(card.credit_limit)
                if card.credit_limit is not None
                else None,
            },
            "usage": {
                "usedAmount": float(used),
                "availableLimit": float(limit - used),
                "utilizationRate": _percent(used, limit),
                "transactionCount": len(transactions),
            },
            "transactions": [
                {
                    "id": txn.id,
                    "amount": float(txn.amount),
                    "description": txn.description,
                    "transactionDate": _iso(txn.transaction_date),
                    "status": txn.status.value,
                    "isPaid": txn.is_paid,
                    "category": txn.category.name if txn.category else None,
                    "group": txn.group.name if txn.group else None,
                }
                for txn in transactions
            ],
        }


@dataclass(frozen=True)
class ReportFilters:
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    card_id: Optional[int] = None


@dataclass
class Bucket:
    id: Optional[int]
    name: str
    income: Decimal = ZERO
    expenses: Decimal = ZERO
    count: int = 0
    paid_amount: Decimal = ZERO
    pending_amount: Decimal = ZERO
    paid_count: int = 0
    pending_count: int = 0

    def add(self, txn: Transaction) -> None:
        amount = _money(txn.amount)
        if txn.type == TransactionType.income:
            self.income += amount
        else:
            self.expenses += amount
        self.count += 1
        if txn.is_paid:
            self.paid_amount += amount
            self.paid_count += 1
        else:
            self.pending_amount += amount
            self.pending_count += 1

    def as_dict(self, *, payments: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "income": float(self.income),
            "expenses": float(self.expenses),
            "count": self.count,
        }
        if payments:
            data.update(
                paidAmount=float(self.paid_amount),
                pendingAmount=float(self.pending_amount),
                paidCount=self.paid_count,
                pendingCount=self.pending_count,
            )
        return data


@dataclass
class PaymentTally:
    total_paid: Decimal = ZERO
    total_pending: Decimal = ZERO
    paid_count: int = 0
    pending_count: int = 0
    overdue_amount: Decimal = ZERO
    overdue_count: int = 0

    @classmethod
    def of(cls, transactions: Iterable[Transaction], now: datetime) -> "PaymentTally":
        tally = cls()
        for txn in transactions:
            amount = _money(txn.amount)
            if txn.is_paid:
                tally.total_paid += amount
                tally.paid_count += 1
                continue
            tally.total_pending += amount
            tally.pending_count += 1
            if txn.due_date is not None and txn.due_date < now:
                tally.overdue_amount += amount
                tally.overdue_count += 1
        return tally

    def monthly_dict(self) -> dict[str, Any]:
        return {
            "totalPaid": float(self.total_paid),
            "totalPending": float(self.total_pending),
            "paidTransactions": self.paid_count,
            "pendingTransactions": self.pending_count,
            "overdueTransactions": self.overdue_count,
            "overdueAmount": float(self.overdue_amount),
        }

    def yearly_dict(self) -> dict[str, Any]:
        total = self.paid_count + self.pending_count
        return {
            "totalPaid": float(self.total_paid),
            "totalPending": float(self.total_pending),
            "paidCount": self.paid_count,
            "pendingCount": self.pending_count,
            "overdueAmount": float(self.overdue_amount),
            "overdueCount": self.overdue_count,
            "paymentRate": (self.paid_count / total * 100) if total else 0.0,
        }


@dataclass
class Breakdowns:
    by_category: dict[str, Bucket] = field(default_factory=dict)
    by_account: dict[str, Bucket] = field(default_factory=dict)
    by_card: dict[str, Bucket] = field(default_factory=dict)

    @classmethod
    def of(cls, transactions: Iterable[Transaction]) -> "Breakdowns":
        result = cls()
        for txn in transactions:
            if txn.category is not None:
                key, name = str(txn.category.id), txn.category.name
            else:
                key, name = NO_KEY, NO_CATEGORY
            result._bucket(result.by_category, key, txn.category_id, name).add(txn)

            if txn.bank_account is not None:
                key, name = str(txn.bank_account.id), txn.bank_account.name
            else:
                key, name = NO_KEY, NO_ACCOUNT
            result._bucket(result.by_account, key, txn.bank_account_id, name).add(txn)

            if txn.credit_card is not None:
                card = txn.credit_card
                result._bucket(
                    result.by_card, str(card.id), card.id, card.display_name
                ).add(txn)
        return result

    @staticmethod
    def _bucket(
        buckets: dict[str, Bucket], key: str, entity_id: Optional[int], name: str
    ) -> Bucket:
        if key not in buckets:
            buckets[key] = Bucket(id=entity_id, name=name)
        return buckets[key]


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _transactions(
        self,
        group_ids: list[int],
        start: datetime,
        end: datetime,
        filters: Optional[ReportFilters] = None,
    ) -> list[Transaction]:
        if not group_ids:
            return []
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.bank_account),
                joinedload(Transaction.credit_card),
                joinedload(Transaction.group),
                joinedload(Transaction.created_by),
                joinedload(Transaction.payment_method),
            )
            .where(
                Transaction.group_id.in_(group_ids),
                Transaction.transaction_date >= start,
                Transaction.transaction_date <= end,
            )
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        )
        if filters is not None:
            if filters.category_id is not None:
                stmt = stmt.where(Transaction.category_id == filters.category_id)
            if filters.account_id is not None:
                stmt = stmt.where(Transaction.bank_account_id == filters.account_id)
            if filters.card_id is not None:
                stmt = stmt.where(Transaction.credit_card_id == filters.card_id)
        return self.session.scalars(stmt).all()

    def _card_metadata(self, transactions: list[Transaction]) -> list[dict[str, Any]]:
        card_ids = {txn.credit_card_id for txn in transactions if txn.credit_card_id}
        if not card_ids:
            return []
        cards = self.session.scalars(
            select(CreditCard)
            .where(CreditCard.id.in_(card_ids))
            .order_by(CreditCard.name, CreditCard.id)
        ).all()
        return [
            {
                "id": card.id,
                "name": card.name,
                "last4Digits": card.last4_digits,
                "brand": card.brand,
                "creditLimit": float(card.credit_limit)
                if card.credit_limit is not None
                else None,
                "closingDay": card.closing_day,
                "dueDay": card.due_day,
            }
            for card in cards
        ]

    @staticmethod
    def _totals(transactions: Iterable[Transaction]) -> tuple[Decimal, Decimal]:
        income = ZERO
        expenses = ZERO
        for txn in transactions:
            if txn.type == TransactionType.income:
                income += _money(txn.amount)
            else:
                expenses += _money(txn.amount)
        return income, expenses

    def monthly(
        self,
        period: Period,
        filters: Optional[ReportFilters] = None,
        *,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        group_ids = accessible_group_ids(self.session, self.user_id)
        transactions = self._transactions(
            group_ids, period.utc_start, period.utc_end, filters
        )

        income, expenses = self._totals(transactions)
        breakdowns = Breakdowns.of(transactions)
        payment_status = PaymentTally.of(transactions, now).monthly_dict()

        return {
            "period": {
                "month": period.month,
                "year": period.year,
                "startDate": _iso(period.start),
                "endDate": _iso(period.end),
            },
            "summary": {
                "totalIncome": float(income),
                "totalExpenses": float(expenses),
                "balance": float(income - expenses),
                "transactionCount": len(transactions),
                "paymentStatus": payment_status,
            },
            "breakdown": {
                "byCategory": {
                    key: bucket.as_dict(payments=True)
                    for key, bucket in breakdowns.by_category.items()
                },
                "byAccount": {
                    key: bucket.as_dict() for key, bucket in breakdowns.by_account.items()
                },
                "byCard": {
                    key: bucket.as_dict() for key, bucket in breakdowns.by_card.items()
                },
            },
            "paymentStatus": payment_status,
            "creditCards": self._card_metadata(transactions),
            "transactions": [
                TransactionOut.model_validate(txn).to_json() for txn in transactions
            ],
        }

    def yearly(
        self,
        period: Period,
        filters: Optional[ReportFilters] = None,
        *,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        group_ids = accessible_group_ids(self.session, self.user_id)
        transactions = self._transactions(
            group_ids, period.utc_start, period.utc_end, filters
        )

        income, expenses = self._totals(transactions)
        balance = income - expenses
        breakdowns = Breakdowns.of(transactions)
        payment_analysis = PaymentTally.of(transactions, now).yearly_dict()

        monthly_data = self._monthly_data(period.year, transactions)
        by_category = {}
        for key, bucket in breakdowns.by_category.items():
            record = bucket.as_dict()
            record["percentage"] = _percent(
                bucket.income + bucket.expenses, income + expenses
            )
            by_category[key] = record
        top_expense_categories = sorted(
            (record for record in by_category.values() if record["expenses"] > 0),
            key=lambda record: record["expenses"],
            reverse=True,
        )[:TOP_EXPENSE_CATEGORIES]

        return {
            "period": {
                "year": period.year,
                "startDate": _iso(period.start),
                "endDate": _iso(period.end),
            },
            "summary": {
                "totalIncome": float(income),
                "totalExpenses": float(expenses),
                "balance": float(balance),
                "transactionCount": len(transactions),
                "averageMonthlyIncome": float(income / MONTHS_IN_YEAR),
                "averageMonthlyExpense": float(expenses / MONTHS_IN_YEAR),
                "paymentAnalysis": payment_analysis,
            },
            "paymentAnalysis": payment_analysis,
            "monthlyData": {
                key: {
                    "income": float(values["income"]),
                    "expenses": float(values["expenses"]),
                    "balance": float(values["income"] - values["expenses"]),
                    "count": values["count"],
                }
                for key, values in monthly_data.items()
            },
            "breakdown": {
                "byCategory": by_category,
                "byAccount": {
                    key: bucket.as_dict() for key, bucket in breakdowns.by_account.items()
                },
                "byCard": {
                    key: bucket.as_dict() for key, bucket in breakdowns.by_card.items()
                },
                "topExpenseCategories": top_expense_categories,
            },
            "creditCardAnalysis": self._card_analysis(transactions),
            "creditCards": self._card_metadata(transactions),
            "comparison": self._comparison(group_ids, period.year, income, expenses),
            "insights": {
                "savingsRate": _percent(balance, income),
                "expenseRatio": _percent(expenses, income),
                "mostExpensiveMonth": self._most_expensive_month(monthly_data),
            },
        }

    @staticmethod
    def _monthly_data(
        year: int, transactions: Iterable[Transaction]
    ) -> dict[str, dict[str, Any]]:
        data = {
            f"{year}-{month:02d}": {"income": ZERO, "expenses": ZERO, "count": 0}
            for month in range(1, MONTHS_IN_YEAR + 1)
        }
        for txn in transactions:
            entry = data[_month_key(txn.transaction_date)]
            if txn.type == TransactionType.income:
                entry["income"] += _money(txn.amount)
            else:
                entry["expenses"] += _money(txn.amount)
            entry["count"] += 1
        return data

    @staticmethod
    def _most_expensive_month(monthly_data: dict[str, dict[str, Any]]) -> dict[str, Any]:
        best: dict[str, Any] = {}
        best_expenses = ZERO
        # months are scanned in calendar order, so ties go to the earliest
        for key, values in monthly_data.items():
            if values["expenses"] > best_expenses:
                best_expenses = values["expenses"]
                best = {"month": key, "expenses": float(values["expenses"])}
        return best

    @staticmethod
    def _card_analysis(transactions: Iterable[Transaction]) -> dict[str, dict[str, Any]]:
        totals: dict[int, dict[str, Any]] = {}
        for txn in transactions:
            card = txn.credit_card
            if card is None:
                continue
            entry = totals.setdefault(
                card.id,
                {"name": card.display_name, "spent": ZERO, "count": 0, "months": {}},
            )
            amount = _money(txn.amount)
            entry["spent"] += amount
            entry["count"] += 1
            month_key = _month_key(txn.transaction_date)
            entry["months"][month_key] = entry["months"].get(month_key, ZERO) + amount

        return {
            str(card_id): {
                "id": card_id,
                "name": entry["name"],
                "totalSpent": float(entry["spent"]),
                "transactionCount": entry["count"],
                "averageTransaction": float(entry["spent"] / entry["count"]),
                "monthlySpend": {
                    key: float(value) for key, value in sorted(entry["months"].items())
                },
            }
            for card_id, entry in totals.items()
        }

    def _comparison(
        self, group_ids: list[int], year: int, income: Decimal, expenses: Decimal
    ) -> dict[str, Any]:
        previous = year_window(year - 1)
        # prior year is always unfiltered
        prior_transactions = self._transactions(
            group_ids, previous.utc_start, previous.utc_end
        )
        prior_income, prior_expenses = self._totals(prior_transactions)
        balance = income - expenses
        prior_balance = prior_income - prior_expenses
        improvement = balance - prior_balance
        return {
            "previousYear": {
                "year": previous.year,
                "totalIncome": float(prior_income),
                "totalExpenses": float(prior_expenses),
                "balance": float(prior_balance),
                "transactionCount": len(prior_transactions),
            },
            "incomeGrowth": _percent(income - prior_income, prior_income),
            "expenseGrowth": _percent(expenses - prior_expenses, prior_expenses),
            "balanceImprovement": float(improvement),
            "percentageImprovement": _percent(improvement, abs(prior_balance)),
        }
