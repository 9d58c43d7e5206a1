import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger import apply_account_delta, initial_status, signed_amount
from models import (
    RecurringFrequency,
    RecurringTransaction,
    Transaction,
    TransactionType,
    utcnow,
)
from periods import days_in_month, local_today

logger = logging.getLogger(__name__)

MAX_CATCH_UP_ITERATIONS = 365


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(desired_day, days_in_month(year, month))
    return date(year, month, day)


def calculate_next_date(recurring: RecurringTransaction, from_date: date) -> date:
    frequency = recurring.frequency
    if frequency == RecurringFrequency.daily:
        return from_date + timedelta(days=1)
    if frequency == RecurringFrequency.weekly:
        return from_date + timedelta(weeks=1)
    # anchor on the start day so a 31st does not drift to the 28th for good
    anchor_day = recurring.start_date.day
    if frequency == RecurringFrequency.monthly:
        return _add_months(from_date, 1, desired_day=anchor_day)
    return _add_months(from_date, 12, desired_day=anchor_day)


def is_exhausted(recurring: RecurringTransaction, occurrence_date: date) -> bool:
    if recurring.end_date and occurrence_date > recurring.end_date:
        return True
    if (
        recurring.total_installments
        and recurring.executed_installments >= recurring.total_installments
    ):
        return True
    return False


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def catch_up(self, recurring: RecurringTransaction, today: Optional[date] = None) -> int:
        today = today or local_today()
        posted_count = 0
        iterations = 0
        while (
            recurring.is_active
            and recurring.next_execution_date <= today
            and iterations < MAX_CATCH_UP_ITERATIONS
        ):
            occurrence_date = recurring.next_execution_date
            if is_exhausted(recurring, occurrence_date):
                recurring.is_active = False
                logger.info(f"recurring_finished: id={recurring.id}")
                break
            if self._post_occurrence(recurring, occurrence_date):
                recurring.executed_installments += 1
                posted_count += 1
            recurring.next_execution_date = calculate_next_date(recurring, occurrence_date)
            iterations += 1

        if recurring.is_active and is_exhausted(recurring, recurring.next_execution_date):
            recurring.is_active = False
            logger.info(f"recurring_finished: id={recurring.id}")
        return posted_count

    def post_due(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        stmt = (
            select(RecurringTransaction)
            .where(
                RecurringTransaction.is_active.is_(True),
                RecurringTransaction.next_execution_date <= today,
            )
            .order_by(RecurringTransaction.next_execution_date, RecurringTransaction.id)
        )
        count = 0
        for recurring in self.session.scalars(stmt).all():
            count += self.catch_up(recurring, today)
        self.session.flush()
        return count

    def _post_occurrence(self, recurring: RecurringTransaction, occurrence_date: date) -> bool:
        existing = self.session.execute(
            select(Transaction.id)
            .where(
                Transaction.recurring_transaction_id == recurring.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        ).scalar_one_or_none()
        if existing:
            return False

        status, is_paid = initial_status(
            None, None, recurring.type, recurring.credit_card_id
        )
        installment_number = None
        if recurring.total_installments:
            installment_number = recurring.executed_installments + 1

        txn = Transaction(
            amount=recurring.amount,
            type=recurring.type,
            status=status,
            is_paid=is_paid,
            description=recurring.description or recurring.name,
            transaction_date=datetime.combine(occurrence_date, time(12, 0)),
            paid_at=utcnow() if is_paid else None,
            group_id=recurring.group_id,
            category_id=recurring.category_id,
            bank_account_id=recurring.bank_account_id,
            credit_card_id=recurring.credit_card_id,
            payment_method_id=recurring.payment_method_id,
            created_by_id=recurring.user_id,
            installment_number=installment_number,
            total_installments=recurring.total_installments,
            recurring_transaction_id=recurring.id,
            occurrence_date=occurrence_date,
        )
        self.session.add(txn)
        self.session.flush()

        if is_paid and recurring.bank_account_id and recurring.type == TransactionType.income:
            apply_account_delta(
                self.session,
                recurring.bank_account_id,
                signed_amount(recurring.type, recurring.amount),
            )
        logger.info(
            f"recurring_posted: id={recurring.id} date={occurrence_date} txn={txn.id}"
        )
        return True
