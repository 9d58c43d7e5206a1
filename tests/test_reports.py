from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import Base
from models import (
    BankAccount,
    CardType,
    CreditCard,
    FinancialCategory,
    FinancialGroup,
    FinancialGroupMember,
    GroupType,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from periods import month_window, resolve_month_period, year_window
from reports import NO_KEY, ReportFilters, ReportService
from schemas import TransactionIn
from services import TransactionService


@pytest.fixture(autouse=True)
def sao_paulo_time(monkeypatch):
    # stored timestamps are UTC, windows are local (UTC-3 all year)
    monkeypatch.setattr(get_settings(), "timezone", "America/Sao_Paulo")


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session):
    user = User(name="Ana", email="ana@example.com", password_hash="x")
    session.add(user)
    session.flush()
    group = FinancialGroup(
        name="Pessoal", type=GroupType.personal, created_by_id=user.id
    )
    group.members.append(FinancialGroupMember(user_id=user.id, is_owner=True))
    session.add(group)
    session.flush()
    salary = FinancialCategory(name="Salário", group_id=group.id)
    market = FinancialCategory(name="Mercado", group_id=group.id)
    account = BankAccount(user_id=user.id, name="Conta", bank="Banco", balance=Decimal("0"))
    session.add_all([salary, market, account])
    session.flush()
    card = CreditCard(
        user_id=user.id,
        name="Visa",
        last4_digits="1234",
        brand="Visa",
        type=CardType.credit,
        credit_limit=Decimal("1000"),
        closing_day=5,
        due_day=12,
    )
    session.add(card)
    session.commit()
    return user, group, salary, market, account, card


def add_txn(
    session,
    user,
    group,
    amount: str,
    txn_type: TransactionType,
    when: datetime,
    *,
    is_paid: bool = True,
    **fields,
) -> Transaction:
    txn = Transaction(
        amount=Decimal(amount),
        type=txn_type,
        status=TransactionStatus.paid if is_paid else TransactionStatus.pending,
        is_paid=is_paid,
        transaction_date=when,
        group_id=group.id,
        created_by_id=user.id,
        **fields,
    )
    session.add(txn)
    session.commit()
    return txn


def seed_march(session):
    user, group, salary, market, account, card = seed(session)
    add_txn(
        session,
        user,
        group,
        "3000",
        TransactionType.income,
        datetime(2025, 3, 5, 9, 0),
        category_id=salary.id,
        bank_account_id=account.id,
    )
    add_txn(
        session,
        user,
        group,
        "200",
        TransactionType.expense,
        datetime(2025, 3, 2, 18, 0),
        is_paid=False,
        category_id=market.id,
        credit_card_id=card.id,
        due_date=datetime(2025, 3, 12),
    )
    add_txn(
        session, user, group, "100", TransactionType.expense, datetime(2025, 3, 31, 23, 0)
    )
    add_txn(
        session,
        user,
        group,
        "50",
        TransactionType.expense,
        datetime(2025, 3, 15, 12, 0),
        is_paid=False,
        category_id=market.id,
        due_date=datetime(2025, 4, 30),
    )
    # next month, outside the window
    add_txn(
        session, user, group, "999", TransactionType.expense, datetime(2025, 4, 1, 12, 0)
    )
    return user, group, salary, market, account, card


NOW = datetime(2025, 3, 20, 12, 0)


def test_monthly_totals_match_breakdowns() -> None:
    session = make_session()
    user, *_ = seed_march(session)

    report = ReportService(session, user.id).monthly(month_window(2025, 3), now=NOW)

    summary = report["summary"]
    assert summary["totalIncome"] == 3000
    assert summary["totalExpenses"] == 350
    assert summary["balance"] == 2650
    assert summary["transactionCount"] == 4
    for dimension in ("byCategory", "byAccount"):
        buckets = report["breakdown"][dimension].values()
        assert sum(b["income"] for b in buckets) == summary["totalIncome"]
        assert sum(b["expenses"] for b in buckets) == summary["totalExpenses"]


def test_monthly_breakdowns_are_keyed_by_id() -> None:
    session = make_session()
    user, _group, salary, market, account, card = seed_march(session)

    report = ReportService(session, user.id).monthly(month_window(2025, 3), now=NOW)
    breakdown = report["breakdown"]

    assert set(breakdown["byCategory"]) == {str(salary.id), str(market.id), NO_KEY}
    market_bucket = breakdown["byCategory"][str(market.id)]
    assert market_bucket["name"] == "Mercado"
    assert market_bucket["expenses"] == 250
    assert market_bucket["pendingAmount"] == 250
    assert market_bucket["pendingCount"] == 2
    assert breakdown["byCategory"][NO_KEY]["name"] == "Sem categoria"
    assert breakdown["byCategory"][NO_KEY]["id"] is None

    assert breakdown["byAccount"][str(account.id)]["income"] == 3000
    assert breakdown["byAccount"][NO_KEY]["name"] == "Sem conta"
    assert breakdown["byAccount"][NO_KEY]["count"] == 3

    assert list(breakdown["byCard"]) == [str(card.id)]
    assert breakdown["byCard"][str(card.id)]["name"] == "Visa (****1234)"
    assert breakdown["byCard"][str(card.id)]["expenses"] == 200


def test_same_category_name_in_two_groups_stays_separate() -> None:
    session = make_session()
    user, group, _salary, market, *_ = seed(session)
    shared = FinancialGroup(
        name="Casa", type=GroupType.collaborative, created_by_id=user.id
    )
    shared.members.append(FinancialGroupMember(user_id=user.id, is_owner=True))
    session.add(shared)
    session.flush()
    shared_market = FinancialCategory(name="Mercado", group_id=shared.id)
    session.add(shared_market)
    session.commit()
    when = datetime(2025, 3, 3, 10, 0)
    add_txn(session, user, group, "10", TransactionType.expense, when, category_id=market.id)
    add_txn(
        session,
        user,
        shared,
        "20",
        TransactionType.expense,
        when,
        category_id=shared_market.id,
    )

    report = ReportService(session, user.id).monthly(month_window(2025, 3), now=NOW)
    by_category = report["breakdown"]["byCategory"]

    assert by_category[str(market.id)]["expenses"] == 10
    assert by_category[str(shared_market.id)]["expenses"] == 20
    assert by_category[str(market.id)]["name"] == by_category[str(shared_market.id)]["name"]


def test_monthly_payment_status_and_overdue() -> None:
    session = make_session()
    user, *_ = seed_march(session)

    report = ReportService(session, user.id).monthly(month_window(2025, 3), now=NOW)
    status = report["paymentStatus"]

    assert status == report["summary"]["paymentStatus"]
    assert status["totalPaid"] == 3100
    assert status["totalPending"] == 250
    assert status["paidTransactions"] == 2
    assert status["pendingTransactions"] == 2
    # only the pending row whose due date already passed
    assert status["overdueTransactions"] == 1
    assert status["overdueAmount"] == 200


def test_overdue_needs_a_due_date_strictly_before_now() -> None:
    session = make_session()
    user, group, *_ = seed(session)
    dues = (None, NOW, NOW - timedelta(minutes=1), NOW + timedelta(days=1))
    for amount, due in zip(("1", "2", "4", "8"), dues):
        add_txn(
            session,
            user,
            group,
            amount,
            TransactionType.expense,
            datetime(2025, 3, 10, 12),
            is_paid=False,
            due_date=due,
        )
    service = ReportService(session, user.id)

    monthly = service.monthly(month_window(2025, 3), now=NOW)["paymentStatus"]
    assert monthly["pendingTransactions"] == 4
    assert monthly["overdueTransactions"] == 1
    assert monthly["overdueAmount"] == 4

    yearly = service.yearly(year_window(2025), now=NOW)["paymentAnalysis"]
    assert yearly["pendingCount"] == 4
    assert yearly["overdueCount"] == 1
    assert yearly["overdueAmount"] == 4


def test_monthly_filters_narrow_the_set() -> None:
    session = make_session()
    user, _group, _salary, market, account, card = seed_march(session)
    service = ReportService(session, user.id)
    period = month_window(2025, 3)

    by_category = service.monthly(period, ReportFilters(category_id=market.id), now=NOW)
    assert by_category["summary"]["totalExpenses"] == 250
    assert by_category["summary"]["transactionCount"] == 2

    by_account = service.monthly(period, ReportFilters(account_id=account.id), now=NOW)
    assert by_account["summary"]["totalIncome"] == 3000
    assert by_account["summary"]["transactionCount"] == 1

    by_card = service.monthly(period, ReportFilters(card_id=card.id), now=NOW)
    assert by_card["summary"]["transactionCount"] == 1
    assert by_card["creditCards"][0]["id"] == card.id
    assert by_card["creditCards"][0]["closingDay"] == 5


def test_monthly_report_lists_serialized_transactions() -> None:
    session = make_session()
    user, *_ = seed_march(session)

    report = ReportService(session, user.id).monthly(month_window(2025, 3), now=NOW)

    newest = report["transactions"][0]
    assert newest["amount"] == 100
    assert newest["transactionDate"] == "2025-03-31T23:00:00"
    assert newest["group"]["name"] == "Pessoal"
    assert newest["createdBy"]["name"] == "Ana"
    card_row = next(t for t in report["transactions"] if t["creditCard"])
    assert card_row["creditCard"]["last4Digits"] == "1234"


def test_default_period_is_current_month() -> None:
    session = make_session()
    user, *_ = seed_march(session)

    period = resolve_month_period(None, None, today=date(2025, 3, 9))
    report = ReportService(session, user.id).monthly(period, now=NOW)

    assert report["period"]["month"] == 3
    assert report["period"]["year"] == 2025
    assert report["period"]["startDate"] == "2025-03-01T00:00:00"
    assert report["period"]["endDate"] == "2025-03-31T23:59:59.999999"
    assert report["summary"]["transactionCount"] == 4


def test_late_evening_entries_stay_in_their_local_month() -> None:
    session = make_session()
    user, group, *_ = seed(session)
    service = TransactionService(session, user.id)
    march_end = service.create(
        TransactionIn(
            amount=Decimal("10"),
            type=TransactionType.income,
            transaction_date=datetime.fromisoformat("2025-03-31T22:00:00-03:00"),
            group_id=group.id,
        )
    )
    service.create(
        TransactionIn(
            amount=Decimal("5"),
            type=TransactionType.income,
            transaction_date=datetime.fromisoformat("2025-12-31T22:00:00-03:00"),
            group_id=group.id,
        )
    )
    assert march_end.transaction_date == datetime(2025, 4, 1, 1, 0)
    reports = ReportService(session, user.id)

    assert reports.monthly(month_window(2025, 3), now=NOW)["summary"]["totalIncome"] == 10
    assert reports.monthly(month_window(2025, 4), now=NOW)["summary"]["totalIncome"] == 0

    yearly = reports.yearly(year_window(2025), now=NOW)
    assert yearly["summary"]["totalIncome"] == 15
    assert yearly["monthlyData"]["2025-03"]["income"] == 10
    assert yearly["monthlyData"]["2025-04"]["income"] == 0
    assert yearly["monthlyData"]["2025-12"]["income"] == 5

    next_year = reports.yearly(year_window(2026), now=NOW)
    assert next_year["summary"]["totalIncome"] == 0
    assert next_year["comparison"]["previousYear"]["totalIncome"] == 15


def test_empty_month_reports_zeroes() -> None:
    session = make_session()
    user, *_ = seed(session)

    report = ReportService(session, user.id).monthly(month_window(2020, 1), now=NOW)

    assert report["summary"]["totalIncome"] == 0
    assert report["summary"]["balance"] == 0
    assert report["breakdown"] == {"byCategory": {}, "byAccount": {}, "byCard": {}}
    assert report["creditCards"] == []
    assert report["transactions"] == []


def seed_years(session):
    user, group, salary, market, account, card = seed(session)
    # 2024: balance 200
    add_txn(session, user, group, "500", TransactionType.income, datetime(2024, 6, 1, 12))
    add_txn(session, user, group, "300", TransactionType.expense, datetime(2024, 7, 1, 12))
    # 2025
    add_txn(
        session,
        user,
        group,
        "1000",
        TransactionType.income,
        datetime(2025, 1, 10, 12),
        category_id=salary.id,
    )
    add_txn(
        session,
        user,
        group,
        "100",
        TransactionType.expense,
        datetime(2025, 2, 10, 12),
        category_id=market.id,
        credit_card_id=card.id,
    )
    add_txn(
        session,
        user,
        group,
        "100",
        TransactionType.expense,
        datetime(2025, 3, 10, 12),
        is_paid=False,
        category_id=market.id,
        credit_card_id=card.id,
        due_date=datetime(2025, 3, 12),
    )
    add_txn(session, user, group, "50", TransactionType.expense, datetime(2025, 3, 20, 12))
    return user, group, salary, market, account, card


def test_yearly_summary_and_insights() -> None:
    session = make_session()
    user, *_ = seed_years(session)

    report = ReportService(session, user.id).yearly(year_window(2025), now=NOW)

    summary = report["summary"]
    assert summary["totalIncome"] == 1000
    assert summary["totalExpenses"] == 250
    assert summary["balance"] == 750
    assert summary["averageMonthlyIncome"] == pytest.approx(1000 / 12)
    assert summary["averageMonthlyExpense"] == pytest.approx(250 / 12)
    assert report["insights"]["savingsRate"] == pytest.approx(75.0)
    assert report["insights"]["expenseRatio"] == pytest.approx(25.0)


def test_yearly_monthly_data_covers_every_month() -> None:
    session = make_session()
    user, *_ = seed_years(session)

    report = ReportService(session, user.id).yearly(year_window(2025), now=NOW)
    monthly = report["monthlyData"]

    assert list(monthly) == [f"2025-{m:02d}" for m in range(1, 13)]
    assert monthly["2025-03"] == {"income": 0, "expenses": 150, "balance": -150, "count": 2}
    assert monthly["2025-12"]["count"] == 0


def test_most_expensive_month_prefers_earliest_on_tie() -> None:
    session = make_session()
    user, group, *_ = seed(session)
    add_txn(session, user, group, "300", TransactionType.expense, datetime(2025, 5, 1, 12))
    add_txn(session, user, group, "300", TransactionType.expense, datetime(2025, 2, 1, 12))

    report = ReportService(session, user.id).yearly(year_window(2025), now=NOW)

    assert report["insights"]["mostExpensiveMonth"] == {"month": "2025-02", "expenses": 300}


def test_year_without_expenses_has_no_expensive_month() -> None:
    session = make_session()
    user, group, *_ = seed(session)
    add_txn(session, user, group, "10", TransactionType.income, datetime(2025, 5, 1, 12))

    report = ReportService(session, user.id).yearly(year_window(2025), now=NOW)

    assert report["insights"]["mostExpensiveMonth"] == {}
    assert report["insights"]["expenseRatio"] == 0


def test_yearly_comparison_against_previous_year() -> None:
    session = make_session()
    user, *_ = seed_years(session)

    report = ReportService(session, user.id).yearly(year_window(2025), now=NOW)
    comparison = report["comparison"]

    assert comparison["previousYear"]["year"] == 2024
    assert comparison["previousYear"]["balance"] == 200
    assert comparison["incomeGrowth"] == pytest.approx(100.0)
    assert comparison["expenseGrowth"] == pytest.approx(-50 / 300 * 100)
    assert comparison["balanceImprovement"] == 550
    assert comparison["percentageImprovement"] == pytest.approx(275.0)


def test_percentage_improvement_is_zero_when_prior_balance_is_zero() -> None:
    session = make_session()
    user, group, *_ = seed(session)
    add_txn(session, user, group, "100", TransactionType.income, datetime(2024, 4, 1, 12))
    add_txn(session, user, group, "100", TransactionType.expense, datetime(2024, 4, 2, 12))
    add_txn(session, user, group, "80", TransactionType.income, datetime(2025, 4, 1, 12))

    report = ReportService(session, user.id).yearly(year_window(2025), now=NOW)

    assert report["comparison"]["previousYear"]["balance"] == 0
    assert report["comparison"]["balanceImprovement"] == 80
    assert report["comparison"]["percentageImprovement"] == 0


def test_empty_year_has_zero_ratios() -> None:
    session = make_session()
    user, *_ = seed(session)

    report = ReportService(session, user.id).yearly(year_window(2030), now=NOW)

    assert report["insights"]["savingsRate"] == 0
    assert report["comparison"]["incomeGrowth"] == 0
    assert report["comparison"]["expenseGrowth"] == 0
    assert report["paymentAnalysis"]["paymentRate"] == 0
    assert report["breakdown"]["topExpenseCategories"] == []


def test_yearly_comparison_ignores_filters() -> None:
    session = make_session()
    user, _group, _salary, market, *_ = seed_years(session)

    report = ReportService(session, user.id).yearly(
        year_window(2025), ReportFilters(category_id=market.id), now=NOW
    )

    assert report["summary"]["totalIncome"] == 0
    assert report["summary"]["totalExpenses"] == 200
    assert report["comparison"]["previousYear"]["totalIncome"] == 500


def test_yearly_card_analysis_and_categories() -> None:
    session = make_session()
    user, _group, salary, market, _account, card = seed_years(session)

    report = ReportService(session, user.id).yearly(year_window(2025), now=NOW)

    analysis = report["creditCardAnalysis"][str(card.id)]
    assert analysis["name"] == "Visa (****1234)"
    assert analysis["totalSpent"] == 200
    assert analysis["transactionCount"] == 2
    assert analysis["averageTransaction"] == 100
    assert analysis["monthlySpend"] == {"2025-02": 100, "2025-03": 100}

    by_category = report["breakdown"]["byCategory"]
    assert by_category[str(salary.id)]["percentage"] == pytest.approx(1000 / 1250 * 100)
    top = report["breakdown"]["topExpenseCategories"]
    assert [entry["name"] for entry in top] == ["Mercado", "Sem categoria"]

    payments = report["paymentAnalysis"]
    assert payments["paidCount"] == 3
    assert payments["pendingCount"] == 1
    assert payments["overdueCount"] == 1
    assert payments["paymentRate"] == pytest.approx(75.0)
