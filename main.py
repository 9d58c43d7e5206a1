import logging
import tomllib
from pathlib import Path
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import SESSION_COOKIE, create_session_token, get_current_user
from config import get_settings
from database import SessionLocal
from models import User
from notifications import LoggingChannel, NotificationChannel
from periods import (
    InvalidQueryParam,
    parse_int_param,
    resolve_month_period,
    resolve_year_period,
)
from reports import BalanceService, ReportFilters, ReportService
from scheduler import SchedulerManager
from schemas import (
    BankAccountIn,
    BankAccountOut,
    CategoryIn,
    CategoryOut,
    CreditCardIn,
    CreditCardOut,
    GroupIn,
    GroupOut,
    GroupUpdateIn,
    InvitationIn,
    InvitationOut,
    InvitationResponseIn,
    LoginIn,
    MemberIn,
    MemberOut,
    PayIn,
    PaymentMethodIn,
    PaymentMethodOut,
    RecurringTransactionIn,
    RecurringTransactionOut,
    RegisterIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdateIn,
    UserOut,
)
from services import (
    BankAccountService,
    BusinessRuleError,
    CategoryService,
    ConflictError,
    CreditCardService,
    ForbiddenError,
    GroupService,
    InvitationService,
    NotFoundError,
    PaymentMethodService,
    RecurringTransactionService,
    ServiceError,
    TransactionService,
    UserService,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

UNAUTHORIZED = "Não autorizado"
INVALID_DATA = "Dados inválidos"
INTERNAL_ERROR = "Erro interno do servidor"
INVITATION_SENT = (
    "Seu convite foi enviado, caso exista um usuário com este endereço de e-mail, "
    "ele será notificado."
)


def _load_app_version() -> str:
    path = Path(__file__).with_name("pyproject.toml")
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()

app = FastAPI(title="Finance Tracker", version=APP_VERSION)
app.state.notifier = LoggingChannel()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_notifier(request: Request) -> NotificationChannel:
    return request.app.state.notifier


def current_user_id(request: Request, db: Session = Depends(get_db)) -> int:
    user_id = get_current_user(request)
    if user_id is None or db.get(User, user_id) is None:
        raise HTTPException(status_code=401, detail=UNAUTHORIZED)
    return user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if settings.scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


# Errors

SERVICE_ERROR_STATUS = {
    NotFoundError: 404,
    ForbiddenError: 403,
    ConflictError: 409,
    BusinessRuleError: 400,
}


def _error_body(message: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"error": message}
    if details:
        body["details"] = details
    return body


def _field_errors(errors: list[dict[str, Any]]) -> dict[str, list[str]]:
    details: dict[str, list[str]] = {}
    for error in errors:
        loc = [
            str(part)
            for part in error.get("loc", ())
            if part not in ("body", "query", "path")
        ]
        field = ".".join(loc) or "_root"
        message = str(error.get("msg", "Valor inválido"))
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        details.setdefault(field, []).append(message)
    return details


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=_error_body(INVALID_DATA, _field_errors(exc.errors())),
    )


@app.exception_handler(InvalidQueryParam)
async def query_param_exception_handler(request: Request, exc: InvalidQueryParam):
    return JSONResponse(
        status_code=400,
        content=_error_body(INVALID_DATA, {exc.field: [exc.message]}),
    )


@app.exception_handler(ServiceError)
async def service_exception_handler(request: Request, exc: ServiceError):
    status_code = SERVICE_ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(
        status_code=status_code, content=_error_body(exc.message, exc.details)
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse(status_code=500, content=_error_body(INTERNAL_ERROR))


def _listing(items: list[dict[str, Any]]) -> dict[str, Any]:
    return {"data": items, "count": len(items)}


def _report_filters(
    category_id: Optional[str], account_id: Optional[str], card_id: Optional[str]
) -> ReportFilters:
    return ReportFilters(
        category_id=parse_int_param(category_id, "categoryId"),
        account_id=parse_int_param(account_id, "accountId"),
        card_id=parse_int_param(card_id, "cardId"),
    )


@app.get("/api/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


# Auth


@app.post("/api/auth/signup", status_code=201)
def signup(payload: RegisterIn, db: Session = Depends(get_db)):
    user = UserService(db).register(payload)
    return {
        "message": "Usuário criado com sucesso",
        "user": UserOut.model_validate(user).to_json(),
    }


@app.post("/api/auth/login")
def login(payload: LoginIn, response: Response, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(payload.email, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="E-mail ou senha inválidos")
    token = create_session_token(user.id)
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=settings.session_max_age_secs,
        httponly=True,
        samesite="lax",
    )
    logger.info(f"user_login: id={user.id}")
    return {"token": token, "user": UserOut.model_validate(user).to_json()}


@app.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return {"success": True}


@app.get("/api/auth/me")
def me(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    user = UserService(db).get(user_id)
    return {"data": UserOut.model_validate(user).to_json()}


# Aggregates


@app.get("/api/balance")
def balance(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return BalanceService(db, user_id).snapshot()


@app.get("/api/reports/monthly")
def monthly_report(
    month: Optional[str] = Query(default=None),
    year: Optional[str] = Query(default=None),
    category_id: Optional[str] = Query(default=None, alias="categoryId"),
    account_id: Optional[str] = Query(default=None, alias="accountId"),
    card_id: Optional[str] = Query(default=None, alias="cardId"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    period = resolve_month_period(month, year)
    filters = _report_filters(category_id, account_id, card_id)
    return ReportService(db, user_id).monthly(period, filters)


@app.get("/api/reports/yearly")
def yearly_report(
    year: Optional[str] = Query(default=None),
    category_id: Optional[str] = Query(default=None, alias="categoryId"),
    account_id: Optional[str] = Query(default=None, alias="accountId"),
    card_id: Optional[str] = Query(default=None, alias="cardId"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    period = resolve_year_period(year)
    filters = _report_filters(category_id, account_id, card_id)
    return ReportService(db, user_id).yearly(period, filters)


# Groups


@app.get("/api/group")
def list_groups(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    groups = GroupService(db, user_id).list_collaborative()
    return _listing([GroupOut.model_validate(group).to_json() for group in groups])


@app.post("/api/group", status_code=201)
def create_group(
    payload: GroupIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    group = GroupService(db, user_id).create(payload)
    return {"data": GroupOut.model_validate(group).to_json()}


@app.get("/api/group/me")
def personal_group(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return {"data": BalanceService(db, user_id).personal_group()}


@app.get("/api/group/invite")
def list_invitations(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    invitations = InvitationService(db, user_id).list_pending()
    return _listing([InvitationOut.model_validate(inv).to_json() for inv in invitations])


@app.post("/api/group/invite")
def invite(
    payload: InvitationIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    InvitationService(db, user_id).invite(payload)
    return {"message": INVITATION_SENT}


@app.put("/api/group/invite/{invitation_id}")
def respond_invitation(
    invitation_id: int,
    payload: InvitationResponseIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    invitation = InvitationService(db, user_id).respond(invitation_id, payload.status)
    return {"data": InvitationOut.model_validate(invitation).to_json()}


@app.get("/api/group/{group_id}")
def group_detail(
    group_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    service = GroupService(db, user_id)
    group = service.get_detail(group_id)
    data = GroupOut.model_validate(group).to_json()
    data["members"] = [MemberOut.model_validate(m).to_json() for m in group.members]
    data["transactions"] = [
        TransactionOut.model_validate(txn).to_json()
        for txn in service.transactions(group_id)
    ]
    return {"data": data}


@app.put("/api/group/{group_id}")
def update_group(
    group_id: int,
    payload: GroupUpdateIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    group = GroupService(db, user_id).update(group_id, payload)
    return {"data": GroupOut.model_validate(group).to_json()}


@app.delete("/api/group/{group_id}")
def delete_group(
    group_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    GroupService(db, user_id).delete(group_id)
    return {"success": True}


@app.get("/api/group/{group_id}/member")
def list_members(
    group_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    members = GroupService(db, user_id).list_members(group_id)
    return _listing([MemberOut.model_validate(m).to_json() for m in members])


@app.post("/api/group/{group_id}/member", status_code=201)
def add_member(
    group_id: int,
    payload: MemberIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    member = GroupService(db, user_id).add_member(group_id, payload.user_id)
    return {"data": MemberOut.model_validate(member).to_json()}


@app.delete("/api/group/{group_id}/member/{member_user_id}")
def remove_member(
    group_id: int,
    member_user_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    GroupService(db, user_id).remove_member(group_id, member_user_id)
    return {"success": True}


# Catalogs


@app.get("/api/categories")
def list_categories(
    group_id: Optional[str] = Query(default=None, alias="groupId"),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    parsed_group = parse_int_param(group_id, "groupId")
    categories = CategoryService(db, user_id).list(parsed_group)
    return _listing([CategoryOut.model_validate(c).to_json() for c in categories])


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user_id).create(payload)
    return {"data": CategoryOut.model_validate(category).to_json()}


@app.get("/api/payment-methods")
def list_payment_methods(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    methods = PaymentMethodService(db, user_id).list_active()
    return _listing([PaymentMethodOut.model_validate(m).to_json() for m in methods])


@app.post("/api/payment-methods", status_code=201)
def create_payment_method(
    payload: PaymentMethodIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    method = PaymentMethodService(db, user_id).create(payload)
    return {"data": PaymentMethodOut.model_validate(method).to_json()}


@app.get("/api/bank-accounts")
def list_bank_accounts(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    accounts = BankAccountService(db, user_id).list_active()
    return _listing([BankAccountOut.model_validate(a).to_json() for a in accounts])


@app.post("/api/bank-accounts", status_code=201)
def create_bank_account(
    payload: BankAccountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    account = BankAccountService(db, user_id).create(payload)
    return {"data": BankAccountOut.model_validate(account).to_json()}


@app.get("/api/credit-cards")
def list_credit_cards(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    cards = CreditCardService(db, user_id).list_active()
    return _listing([CreditCardOut.model_validate(c).to_json() for c in cards])


@app.post("/api/credit-cards", status_code=201)
def create_credit_card(
    payload: CreditCardIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    card = CreditCardService(db, user_id).create(payload)
    return {"data": CreditCardOut.model_validate(card).to_json()}


@app.get("/api/credit-cards/{card_id}/usage")
def credit_card_usage(
    card_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return BalanceService(db, user_id).card_usage(card_id)


# Transactions


@app.get("/api/transactions")
def list_transactions(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    transactions = TransactionService(db, user_id).list()
    return _listing([TransactionOut.model_validate(t).to_json() for t in transactions])


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    notifier: NotificationChannel = Depends(get_notifier),
):
    txn = TransactionService(db, user_id, notifier).create(payload)
    return {
        "data": TransactionOut.model_validate(txn).to_json(),
        "message": "Transação criada com sucesso",
    }


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).get(transaction_id)
    return {"data": TransactionOut.model_validate(txn).to_json()}


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdateIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    notifier: NotificationChannel = Depends(get_notifier),
):
    txn = TransactionService(db, user_id, notifier).update(transaction_id, payload)
    return {"data": TransactionOut.model_validate(txn).to_json()}


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    notifier: NotificationChannel = Depends(get_notifier),
):
    TransactionService(db, user_id, notifier).delete(transaction_id)
    return {"success": True}


@app.patch("/api/transactions/{transaction_id}/pay")
def pay_transaction(
    transaction_id: int,
    payload: Optional[PayIn] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    notifier: NotificationChannel = Depends(get_notifier),
):
    paid_at = payload.paid_at if payload else None
    txn = TransactionService(db, user_id, notifier).mark_paid(transaction_id, paid_at)
    return {
        "data": TransactionOut.model_validate(txn).to_json(),
        "message": "Transação marcada como paga",
    }


@app.delete("/api/transactions/{transaction_id}/pay")
def unpay_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    notifier: NotificationChannel = Depends(get_notifier),
):
    txn = TransactionService(db, user_id, notifier).mark_unpaid(transaction_id)
    return {
        "data": TransactionOut.model_validate(txn).to_json(),
        "message": "Transação marcada como pendente",
    }


# Recurring


@app.get("/api/recurring-transactions")
def list_recurring(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    items = RecurringTransactionService(db, user_id).list_active()
    return _listing([RecurringTransactionOut.model_validate(r).to_json() for r in items])


@app.post("/api/recurring-transactions", status_code=201)
def create_recurring(
    payload: RecurringTransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    recurring = RecurringTransactionService(db, user_id).create(payload)
    return {"data": RecurringTransactionOut.model_validate(recurring).to_json()}


@app.delete("/api/recurring-transactions/{recurring_id}")
def deactivate_recurring(
    recurring_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    RecurringTransactionService(db, user_id).deactivate(recurring_id)
    return {"success": True}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
