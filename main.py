import logging
import time
from datetime import datetime
from http import HTTPStatus
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Path, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import SessionLocal
from models import TransactionType
from schemas import (
    AuthOut,
    BudgetIn,
    BudgetOut,
    CategoryIn,
    CategoryOut,
    ContributionIn,
    GoalIn,
    GoalOut,
    LoginIn,
    RegisterIn,
    TransactionIn,
    TransactionOut,
    UserOut,
)
from security import InvalidTokenError, decode_access_token
from services import (
    AlreadyExistsError,
    AnalyticsService,
    AuthService,
    BudgetService,
    CategoryService,
    GoalService,
    InvalidCredentialsError,
    NotFoundError,
    TransactionService,
    ValidationFailedError,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

bearer_scheme = HTTPBearer(auto_error=False)

MonthParam = Annotated[int, Path(ge=1, le=12)]
YearParam = Annotated[int, Path(ge=2000, le=9999)]


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class UnauthorizedError(ValueError):
    pass


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> int:
    if credentials is None:
        raise UnauthorizedError("Missing bearer token")
    try:
        return decode_access_token(credentials.credentials)
    except InvalidTokenError as exc:
        raise UnauthorizedError(str(exc)) from exc


def error_response(
    request: Request,
    status_code: int,
    message: str,
    errors: Optional[dict[str, str]] = None,
) -> JSONResponse:
    body: dict[str, object] = {
        "timestamp": datetime.utcnow().isoformat(),
        "status": status_code,
        "error": HTTPStatus(status_code).phrase,
        "message": message,
        "path": request.url.path,
    }
    if errors is not None:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return error_response(request, 404, str(exc))


@app.exception_handler(AlreadyExistsError)
async def already_exists_handler(request: Request, exc: AlreadyExistsError):
    return error_response(request, 409, str(exc))


@app.exception_handler(InvalidCredentialsError)
async def invalid_credentials_handler(request: Request, exc: InvalidCredentialsError):
    return error_response(request, 401, str(exc))


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(request: Request, exc: UnauthorizedError):
    return error_response(request, 401, str(exc))


@app.exception_handler(ValidationFailedError)
async def validation_failed_handler(request: Request, exc: ValidationFailedError):
    return error_response(request, 400, str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors: dict[str, str] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        errors[".".join(loc) or "body"] = error.get("msg", "Invalid value")
    return error_response(request, 400, "Validation failed", errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(request, exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return error_response(request, 500, "An unexpected error occurred")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        f"request: method={request.method} path={request.url.path} "
        f"status={response.status_code} duration_ms={elapsed_ms:.1f}"
    )
    return response


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


# Auth


@app.post("/api/auth/register", response_model=AuthOut, status_code=201)
def register(data: RegisterIn, db: Session = Depends(get_db)):
    user, token = AuthService(db).register(data)
    return AuthOut(
        token=token,
        message="Registration successful",
        user=UserOut.model_validate(user),
    )


@app.post("/api/auth/login", response_model=AuthOut)
def login(data: LoginIn, db: Session = Depends(get_db)):
    user, token = AuthService(db).login(data)
    return AuthOut(
        token=token, message="Login successful", user=UserOut.model_validate(user)
    )


@app.post("/api/auth/logout")
def logout():
    return {"message": "Logged out successfully"}


@app.get("/api/auth/profile", response_model=UserOut)
def profile(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return AuthService(db).profile(user_id)


# Transactions


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    service = TransactionService(db, user_id)
    if start is None and end is None:
        return service.list_all()
    return service.list_between(start, end)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).get(transaction_id)


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).create(data)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).update(transaction_id, data)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    TransactionService(db, user_id).delete(transaction_id)
    return Response(status_code=204)


# Budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return BudgetService(db, user_id).list_all()


@app.get("/api/budgets/current", response_model=list[BudgetOut])
def current_month_budgets(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return BudgetService(db, user_id).list_current_month()


@app.get("/api/budgets/month/{month}/year/{year}", response_model=list[BudgetOut])
def budgets_for_month(
    month: MonthParam,
    year: YearParam,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).list_for_month(month, year)


@app.get("/api/budgets/comparison/month/{month}/year/{year}")
def budget_comparison(
    month: MonthParam,
    year: YearParam,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).comparison_for_month(month, year)


@app.post("/api/budgets/reconcile")
def reconcile_budgets(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    count = BudgetService(db, user_id).reconcile_all()
    return {"reconciled": count}


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).get(budget_id)


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def upsert_budget(
    data: BudgetIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).upsert(data)


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user_id).update(budget_id, data)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    BudgetService(db, user_id).delete(budget_id)
    return Response(status_code=204)


# Analytics


@app.get("/api/analytics/stats")
def dashboard_stats(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return AnalyticsService(db, user_id).dashboard_stats()


@app.get("/api/analytics/categories")
def current_month_categories(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return AnalyticsService(db, user_id).current_month_category_breakdown()


@app.get("/api/analytics/categories/month/{month}/year/{year}")
def categories_for_month(
    month: MonthParam,
    year: YearParam,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return AnalyticsService(db, user_id).category_breakdown(month, year)


@app.get("/api/analytics/monthly/expenses")
def monthly_expenses(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return AnalyticsService(db, user_id).monthly_series(TransactionType.expense)


@app.get("/api/analytics/monthly/income")
def monthly_income(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return AnalyticsService(db, user_id).monthly_series(TransactionType.income)


# Categories


@app.get("/api/categories")
def list_categories(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return CategoryService(db, user_id).list_grouped()


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).create(data)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    CategoryService(db, user_id).delete(category_id)
    return Response(status_code=204)


# Goals


@app.get("/api/goals", response_model=list[GoalOut])
def list_goals(
    status: Optional[str] = None,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    service = GoalService(db, user_id)
    if status == "active":
        return service.list_active()
    if status == "completed":
        return service.list_completed()
    if status:
        raise ValidationFailedError("status must be 'active' or 'completed'")
    return service.list_all()


@app.post("/api/goals", response_model=GoalOut, status_code=201)
def create_goal(
    data: GoalIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return GoalService(db, user_id).create(data)


@app.get("/api/goals/{goal_id}", response_model=GoalOut)
def get_goal(
    goal_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return GoalService(db, user_id).get(goal_id)


@app.put("/api/goals/{goal_id}", response_model=GoalOut)
def update_goal(
    goal_id: int,
    data: GoalIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return GoalService(db, user_id).update(goal_id, data)


@app.post("/api/goals/{goal_id}/contribute", response_model=GoalOut)
def contribute_to_goal(
    goal_id: int,
    data: ContributionIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return GoalService(db, user_id).contribute(goal_id, data.amount)


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(
    goal_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    GoalService(db, user_id).delete(goal_id)
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
