from datetime import date, datetime, timedelta
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, Header, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError

from expense_tracker.currency_conversion import CurrencyConverter
from expense_tracker.expense_store import ExpenseNotFound, ExpenseStore
from expense_tracker.expenses import ExpenseFilter
from expense_tracker.logging_config import get_logger
from expense_tracker.rate_cache import RateCache
from expense_tracker.rate_source import ExchangeRateApiSource
from expense_tracker.report_export import report_filename, report_to_csv
from expense_tracker.reporting import ReportRequest, ReportService
from expense_tracker.settings import Settings, normalize_currency

logger = get_logger(__name__)

settings = Settings.from_env()

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.database_url, connect_args=connect_args)
STORE = ExpenseStore(engine)

# Shared by every request for the lifetime of the process.
RATE_CACHE = RateCache(
    base_currency=settings.reference_currency,
    ttl=timedelta(seconds=settings.rates_cache_seconds),
    fallback_ttl=timedelta(seconds=settings.rates_fallback_seconds),
)
RATE_SOURCE = ExchangeRateApiSource(
    cache=RATE_CACHE,
    base_url=settings.rates_api_url,
    api_key=settings.rates_api_key,
    timeout_seconds=settings.rates_timeout_seconds,
)
CONVERTER = CurrencyConverter(
    source=RATE_SOURCE,
    cache=RATE_CACHE,
    reference_currency=settings.reference_currency,
)
REPORTS = ReportService(STORE, CONVERTER)


@app.on_event("startup")
def init_db() -> None:
    STORE.create_schema()
    logger.info("Expense tracker started with reference currency %s", settings.reference_currency)


@app.on_event("shutdown")
def clear_rates() -> None:
    RATE_CACHE.clear()


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class UserSettingsPayload(BaseModel):
    default_currency: str | None = None


class UserSettingsResponse(BaseModel):
    id: int
    email: str
    default_currency: str


class CategoryPayload(BaseModel):
    name: str


class CategoryResponse(BaseModel):
    id: int
    name: str


class ExpensePayload(BaseModel):
    amount: Decimal
    currency: str | None = None
    date: date
    description: str = ""
    category_id: int | None = None
    is_tax_deductible: bool = False
    is_recurring: bool = False
    recurring_frequency: str | None = None
    recurring_end_date: date | None = None


class ExpenseResponse(BaseModel):
    id: int
    amount: Decimal
    currency: str
    date: date
    description: str
    category: str | None = None
    is_tax_deductible: bool
    is_recurring: bool
    recurring_frequency: str | None = None
    recurring_end_date: date | None = None


class ConvertedTotalsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    currency: str
    total_amount: Decimal
    currency_breakdown: dict[str, Decimal]
    exchange_rates: dict[str, Decimal]
    last_updated: datetime | None = None
    category_breakdown: dict[str, Decimal]
    tax_deductible_amount: Decimal
    recurring_amount: Decimal
    date_breakdown: dict[str, Decimal]
    average_transaction_amount: Decimal | None = None
    is_success: bool
    error_message: str | None = None


class ReportTotalsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_amount: Decimal
    tax_deductible_amount: Decimal
    recurring_amount: Decimal
    total_transactions: int
    category_breakdown: dict[str, Decimal]
    currency_breakdown: dict[str, Decimal]
    conversion: ConvertedTotalsResponse | None = None


class MonthlyReportResponse(ReportTotalsResponse):
    year: int
    month: int
    month_name: str


class AnnualReportResponse(ReportTotalsResponse):
    year: int
    is_financial_year: bool
    monthly_breakdown: dict[str, Decimal]


class CustomReportResponse(ReportTotalsResponse):
    from_date: date
    to_date: date
    average_transaction_amount: Decimal
    daily_breakdown: dict[str, Decimal]


class ReportViewResponse(BaseModel):
    report_type: str
    title: str
    date_range: str
    monthly_report: MonthlyReportResponse | None = None
    annual_report: AnnualReportResponse | None = None
    custom_report: CustomReportResponse | None = None


class ConvertPayload(BaseModel):
    amount: Decimal
    from_currency: str
    to_currency: str | None = None


class ConversionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    converted_currency: str
    exchange_rate: Decimal
    rate_timestamp: datetime
    is_success: bool
    error_message: str | None = None


class RatesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    base_currency: str
    rates: dict[str, Decimal]
    last_updated: datetime
    is_success: bool
    error_message: str | None = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    if not STORE.user_exists(user_id):
        raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def to_expense_response(expense) -> ExpenseResponse:
    frequency = expense.recurring_frequency
    return ExpenseResponse(
        id=expense.id,
        amount=expense.amount,
        currency=expense.currency,
        date=expense.date,
        description=expense.description,
        category=expense.category,
        is_tax_deductible=expense.is_tax_deductible,
        is_recurring=expense.is_recurring,
        recurring_frequency=frequency.value if frequency else None,
        recurring_end_date=expense.recurring_end_date,
    )


def build_report_request(
    report_type: str,
    year: int | None,
    month: int | None,
    financial_year: bool,
    from_date: date | None,
    to_date: date | None,
    convert: bool,
) -> ReportRequest:
    return ReportRequest(
        report_type=report_type,
        year=year if year is not None else date.today().year,
        month=month,
        financial_year=financial_year,
        from_date=from_date,
        to_date=to_date,
        convert=convert,
    )


def generate_report_view(user_id: int, request: ReportRequest):
    try:
        return REPORTS.generate(user_id, request)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Error generating report for user %s", user_id)
        raise HTTPException(status_code=500, detail="Error generating report.") from exc


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    try:
        row = STORE.create_user(email, hash_password(payload.password))
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    row = STORE.find_user_by_email(payload.email.strip().lower())
    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    user = STORE.get_user(user_id)
    return UserSettingsResponse(
        id=user["id"],
        email=user["email"],
        default_currency=STORE.default_currency(user_id),
    )


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    if not payload.default_currency:
        raise HTTPException(status_code=400, detail="Default currency required.")
    try:
        currency = STORE.set_default_currency(user_id, payload.default_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    user = STORE.get_user(user_id)
    return UserSettingsResponse(id=user["id"], email=user["email"], default_currency=currency)


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    return [CategoryResponse(**row) for row in STORE.list_categories(user_id)]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        row = STORE.create_category(user_id, payload.name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return CategoryResponse(**row)


@app.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        row = STORE.update_category(user_id, category_id, payload.name)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return CategoryResponse(**row)


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        removed = STORE.delete_category(user_id, category_id)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "deleted" if removed else "deactivated"}


@app.get("/expenses", response_model=list[ExpenseResponse])
def list_expenses(
    search: str | None = Query(None),
    category_id: int | None = Query(None),
    currency: str | None = Query(None),
    is_tax_deductible: bool | None = Query(None),
    from_date: date | None = Query(None),
    to_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ExpenseResponse]:
    user_id = get_user_id(x_user_id)
    filters = ExpenseFilter(
        start_date=from_date,
        end_date=to_date,
        category_id=category_id,
        currency=currency,
        is_tax_deductible=is_tax_deductible,
        search_term=search,
    )
    try:
        found = STORE.list_expenses(user_id, filters)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [to_expense_response(expense) for expense in found]


@app.post("/expenses", response_model=ExpenseResponse)
def create_expense(
    payload: ExpensePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        currency = (
            normalize_currency(payload.currency)
            if payload.currency
            else STORE.default_currency(user_id)
        )
        expense = STORE.create_expense(
            user_id,
            amount=payload.amount,
            currency=currency,
            expense_date=payload.date,
            description=payload.description,
            category_id=payload.category_id,
            is_tax_deductible=payload.is_tax_deductible,
            is_recurring=payload.is_recurring,
            recurring_frequency=payload.recurring_frequency,
            recurring_end_date=payload.recurring_end_date,
        )
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return to_expense_response(expense)


@app.get("/expenses/recurring", response_model=list[ExpenseResponse])
def list_recurring_expenses(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ExpenseResponse]:
    user_id = get_user_id(x_user_id)
    return [to_expense_response(expense) for expense in STORE.list_recurring_expenses(user_id)]


@app.put("/expenses/{expense_id}", response_model=ExpenseResponse)
def update_expense(
    expense_id: int,
    payload: ExpensePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        currency = (
            normalize_currency(payload.currency)
            if payload.currency
            else STORE.get_expense(user_id, expense_id).currency
        )
        expense = STORE.update_expense(
            user_id,
            expense_id,
            amount=payload.amount,
            currency=currency,
            expense_date=payload.date,
            description=payload.description,
            category_id=payload.category_id,
            is_tax_deductible=payload.is_tax_deductible,
            is_recurring=payload.is_recurring,
            recurring_frequency=payload.recurring_frequency,
            recurring_end_date=payload.recurring_end_date,
        )
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return to_expense_response(expense)


@app.get("/expenses/{expense_id}", response_model=ExpenseResponse)
def get_expense(
    expense_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        return to_expense_response(STORE.get_expense(user_id, expense_id))
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.delete("/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        STORE.delete_expense(user_id, expense_id)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "deleted"}


@app.get("/reports", response_model=ReportViewResponse)
def get_report(
    report_type: str = Query(...),
    year: int | None = Query(None),
    month: int | None = Query(None),
    financial_year: bool = Query(False),
    from_date: date | None = Query(None),
    to_date: date | None = Query(None),
    convert: bool = Query(False),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ReportViewResponse:
    user_id = get_user_id(x_user_id)
    request = build_report_request(
        report_type, year, month, financial_year, from_date, to_date, convert
    )
    view = generate_report_view(user_id, request)
    return ReportViewResponse(
        report_type=request.report_type.strip().lower(),
        title=view.title,
        date_range=view.date_range,
        monthly_report=(
            MonthlyReportResponse.model_validate(view.monthly_report)
            if view.monthly_report
            else None
        ),
        annual_report=(
            AnnualReportResponse.model_validate(view.annual_report)
            if view.annual_report
            else None
        ),
        custom_report=(
            CustomReportResponse.model_validate(view.custom_report)
            if view.custom_report
            else None
        ),
    )


@app.get("/reports/download")
def download_report(
    report_type: str = Query(...),
    year: int | None = Query(None),
    month: int | None = Query(None),
    financial_year: bool = Query(False),
    from_date: date | None = Query(None),
    to_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> Response:
    user_id = get_user_id(x_user_id)
    request = build_report_request(
        report_type, year, month, financial_year, from_date, to_date, convert=False
    )
    view = generate_report_view(user_id, request)
    if view.report is None:
        raise HTTPException(status_code=404, detail="Report not found.")
    content = report_to_csv(view.report, STORE.default_currency(user_id))
    return Response(
        content=content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{report_filename(view.report)}"'
        },
    )


@app.post("/currency/convert", response_model=ConversionResponse)
def convert_currency(
    payload: ConvertPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ConversionResponse:
    get_user_id(x_user_id)
    try:
        source = normalize_currency(payload.from_currency)
        target = normalize_currency(payload.to_currency) if payload.to_currency else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    result = CONVERTER.convert(payload.amount, source, target)
    return ConversionResponse.model_validate(result)


@app.get("/currency/rates", response_model=RatesResponse)
def latest_rates(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RatesResponse:
    get_user_id(x_user_id)
    return RatesResponse.model_validate(CONVERTER.get_latest_rates())


@app.post("/currency/rates/clear")
def clear_rate_cache(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    get_user_id(x_user_id)
    CONVERTER.clear_cache()
    return {"status": "cleared"}
