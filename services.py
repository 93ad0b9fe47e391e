from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Budget, CustomCategory, Goal, Transaction, TransactionType, User
from periods import LEDGER_EPOCH, Period, month_window, resolve_period
from schemas import (
    BudgetIn,
    CategoryIn,
    GoalIn,
    LoginIn,
    RegisterIn,
    TransactionIn,
    naive_utc,
)
from security import create_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

DEFAULT_CATEGORIES: dict[TransactionType, list[str]] = {
    TransactionType.income: [
        "Salary",
        "Business Income",
        "Investment Returns",
        "Other Income",
    ],
    TransactionType.expense: [
        "Food & Dining",
        "Rent & Housing",
        "Transportation",
        "Utilities",
        "Other Expenses",
    ],
}


class NotFoundError(ValueError):
    pass


class AlreadyExistsError(ValueError):
    pass


class InvalidCredentialsError(ValueError):
    pass


class ValidationFailedError(ValueError):
    pass


def _as_decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value or 0))


def require_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def sum_amount(
    session: Session,
    user_id: int,
    transaction_type: TransactionType,
    period: Period,
    *,
    category: Optional[str] = None,
) -> Decimal:
    stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
        Transaction.user_id == user_id,
        Transaction.type == transaction_type,
        Transaction.occurred_at.between(period.start, period.end),
    )
    if category is not None:
        stmt = stmt.where(Transaction.category == category)
    return _as_decimal(session.execute(stmt).scalar_one())


def reconcile_budget(
    session: Session, user_id: int, category: str, month: int, year: int
) -> Optional[Budget]:
    """
    Re-derive a budget's spent amount from the ledger.

    Sums every expense of the owner in ``category`` whose ``occurred_at`` falls
    inside the calendar month and overwrites ``Budget.spent`` with the result.
    A missing budget, or one deleted before the write lands, is a no-op.
    Runs inside the caller's unit of work; the caller commits.
    """
    budget = session.scalar(
        select(Budget).where(
            Budget.user_id == user_id,
            Budget.category == category,
            Budget.month == month,
            Budget.year == year,
        )
    )
    if budget is None:
        logger.info(
            f"budget_reconcile_skipped: user_id={user_id} category={category} "
            f"month={month} year={year} reason=no_budget"
        )
        return None

    budget_id = budget.id
    window = month_window(year, month)
    spent = sum_amount(
        session, user_id, TransactionType.expense, window, category=category
    )
    result = session.execute(
        update(Budget)
        .where(Budget.id == budget_id, Budget.user_id == user_id)
        .values(spent=spent)
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount == 0:
        logger.info(
            f"budget_reconcile_skipped: user_id={user_id} budget_id={budget_id} "
            "reason=budget_vanished"
        )
        return None

    logger.info(
        f"budget_reconciled: user_id={user_id} budget_id={budget_id} "
        f"category={category} month={month} year={year} spent={spent}"
    )
    return budget


def reconcile_all_budgets(session: Session, user_id: int) -> int:
    keys = session.execute(
        select(Budget.category, Budget.month, Budget.year).where(
            Budget.user_id == user_id
        )
    ).all()
    count = 0
    for row in keys:
        if reconcile_budget(session, user_id, row.category, row.month, row.year):
            count += 1
    return count


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: RegisterIn) -> tuple[User, str]:
        username = data.username
        email = data.email.strip().lower()
        logger.info(f"auth_register: username={username}")

        if self.session.scalar(select(User).where(User.username == username)):
            raise AlreadyExistsError(f"User already exists with username: {username}")
        if self.session.scalar(select(User).where(User.email == email)):
            raise AlreadyExistsError(f"User already exists with email: {email}")

        user = User(
            username=username,
            email=email,
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise AlreadyExistsError("User already exists") from exc
        self.session.refresh(user)
        logger.info(f"auth_registered: username={user.username} user_id={user.id}")
        return user, create_access_token(user.id, user.username, user.email)

    def login(self, data: LoginIn) -> tuple[User, str]:
        logger.info(f"auth_login: username={data.username}")
        user = self.session.scalar(select(User).where(User.username == data.username))
        if not user:
            raise InvalidCredentialsError("Invalid credentials")
        if not verify_password(data.password, user.password_hash):
            logger.warning(f"auth_login_failed: username={data.username}")
            raise InvalidCredentialsError("Invalid credentials")
        logger.info(f"auth_logged_in: username={user.username} user_id={user.id}")
        return user, create_access_token(user.id, user.username, user.email)

    def profile(self, user_id: int) -> User:
        return require_user(self.session, user_id)


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _reconcile_for(
        self, category: str, txn_type: TransactionType, occurred_at: datetime
    ) -> None:
        if txn_type != TransactionType.expense:
            return
        reconcile_budget(
            self.session,
            self.user_id,
            category,
            occurred_at.month,
            occurred_at.year,
        )

    def create(self, data: TransactionIn) -> Transaction:
        require_user(self.session, self.user_id)
        txn = Transaction(
            user_id=self.user_id,
            amount=data.amount,
            description=data.description,
            category=data.category,
            type=data.type,
            occurred_at=data.occurred_at,
        )
        self.session.add(txn)
        self.session.flush()
        logger.info(
            f"transaction_created: user_id={self.user_id} id={txn.id} "
            f"type={txn.type.value}"
        )

        self._reconcile_for(txn.category, txn.type, txn.occurred_at)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        return txn

    def list_all(self) -> list[Transaction]:
        require_user(self.session, self.user_id)
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def list_between(self, start: datetime, end: datetime) -> list[Transaction]:
        require_user(self.session, self.user_id)
        try:
            period = resolve_period(
                naive_utc(start) if start else None,
                naive_utc(end) if end else None,
            )
        except ValueError as exc:
            raise ValidationFailedError(str(exc)) from exc
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.occurred_at.between(period.start, period.end),
            )
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)

        old_category = txn.category
        old_type = txn.type
        old_occurred_at = txn.occurred_at

        txn.amount = data.amount
        txn.description = data.description
        txn.category = data.category
        txn.type = data.type
        txn.occurred_at = data.occurred_at
        self.session.flush()
        logger.info(f"transaction_updated: user_id={self.user_id} id={txn.id}")

        # Old window first so an edit that moves between windows clears it.
        self._reconcile_for(old_category, old_type, old_occurred_at)
        self._reconcile_for(txn.category, txn.type, txn.occurred_at)

        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        category = txn.category
        txn_type = txn.type
        occurred_at = txn.occurred_at

        self.session.delete(txn)
        self.session.flush()
        logger.info(f"transaction_deleted: user_id={self.user_id} id={transaction_id}")

        self._reconcile_for(category, txn_type, occurred_at)
        self.session.commit()


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _commit_budget(self, budget: Budget) -> Budget:
        try:
            self.session.flush()
            reconcile_budget(
                self.session, self.user_id, budget.category, budget.month, budget.year
            )
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise AlreadyExistsError(
                "Budget already exists for this category and month"
            ) from exc
        self.session.refresh(budget)
        return budget

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def list_all(self) -> list[Budget]:
        require_user(self.session, self.user_id)
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.year.desc(), Budget.month.desc(), Budget.category)
        )
        return self.session.scalars(stmt).all()

    def list_for_month(self, month: int, year: int) -> list[Budget]:
        require_user(self.session, self.user_id)
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.month == month,
                Budget.year == year,
            )
            .order_by(Budget.category)
        )
        return self.session.scalars(stmt).all()

    def list_current_month(self, today: Optional[date] = None) -> list[Budget]:
        today = today or date.today()
        return self.list_for_month(today.month, today.year)

    def comparison_for_month(self, month: int, year: int) -> list[dict[str, object]]:
        return [
            {"category": b.category, "amount": b.amount, "spent": b.spent}
            for b in self.list_for_month(month, year)
        ]

    def upsert(self, data: BudgetIn) -> Budget:
        require_user(self.session, self.user_id)
        budget = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category == data.category,
                Budget.month == data.month,
                Budget.year == data.year,
            )
        )
        if budget:
            logger.info(f"budget_upsert: user_id={self.user_id} id={budget.id} action=update")
            budget.amount = data.amount
        else:
            budget = Budget(
                user_id=self.user_id,
                category=data.category,
                amount=data.amount,
                spent=ZERO,
                month=data.month,
                year=data.year,
            )
            self.session.add(budget)
            logger.info(f"budget_upsert: user_id={self.user_id} action=create")
        return self._commit_budget(budget)

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        # No check against other budgets with the same key; the unique
        # constraint is the only guard.
        budget = self.get(budget_id)
        budget.category = data.category
        budget.amount = data.amount
        budget.month = data.month
        budget.year = data.year
        logger.info(f"budget_updated: user_id={self.user_id} id={budget.id}")
        return self._commit_budget(budget)

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()
        logger.info(f"budget_deleted: user_id={self.user_id} id={budget_id}")

    def reconcile_all(self) -> int:
        require_user(self.session, self.user_id)
        count = reconcile_all_budgets(self.session, self.user_id)
        self.session.commit()
        logger.info(f"budget_reconcile_all: user_id={self.user_id} budgets={count}")
        return count


class AnalyticsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def dashboard_stats(self, now: Optional[datetime] = None) -> dict[str, Decimal]:
        require_user(self.session, self.user_id)
        now = now or datetime.utcnow()
        all_time = Period("all", LEDGER_EPOCH, now)
        this_month = month_window(now.year, now.month)

        total_income = sum_amount(
            self.session, self.user_id, TransactionType.income, all_time
        )
        total_expenses = sum_amount(
            self.session, self.user_id, TransactionType.expense, all_time
        )
        monthly_income = sum_amount(
            self.session, self.user_id, TransactionType.income, this_month
        )
        monthly_expenses = sum_amount(
            self.session, self.user_id, TransactionType.expense, this_month
        )
        return {
            "total_income": total_income,
            "total_expenses": total_expenses,
            "balance": total_income - total_expenses,
            "monthly_income": monthly_income,
            "monthly_expenses": monthly_expenses,
        }

    def category_breakdown(self, month: int, year: int) -> list[dict[str, object]]:
        require_user(self.session, self.user_id)
        try:
            window = month_window(year, month)
        except ValueError as exc:
            raise ValidationFailedError(str(exc)) from exc

        total_col = func.sum(Transaction.amount)
        stmt = (
            select(
                Transaction.category.label("category"),
                total_col.label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.occurred_at.between(window.start, window.end),
            )
            .group_by(Transaction.category)
            .order_by(total_col.desc(), Transaction.category)
        )
        rows = self.session.execute(stmt).all()
        total = sum((_as_decimal(row.total) for row in rows), ZERO)

        breakdown = []
        for row in rows:
            amount = _as_decimal(row.total)
            percentage = float(amount / total * 100) if total > 0 else 0.0
            breakdown.append(
                {
                    "category": row.category,
                    "amount": amount,
                    "count": int(row.count),
                    "percentage": percentage,
                }
            )
        return breakdown

    def current_month_category_breakdown(
        self, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        today = today or date.today()
        return self.category_breakdown(today.month, today.year)

    def monthly_series(
        self, transaction_type: TransactionType, *, months_back: int = 12
    ) -> list[dict[str, object]]:
        require_user(self.session, self.user_id)
        label = func.strftime("%Y-%m", Transaction.occurred_at).label("month")
        stmt = (
            select(label, func.sum(Transaction.amount).label("total"))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == transaction_type,
            )
            .group_by(label)
            .order_by(label.desc())
            .limit(months_back)
        )
        return [
            {"month": row.month, "amount": _as_decimal(row.total)}
            for row in self.session.execute(stmt)
        ]


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_custom(self) -> list[CustomCategory]:
        stmt = (
            select(CustomCategory)
            .where(CustomCategory.user_id == self.user_id)
            .order_by(CustomCategory.type, CustomCategory.name)
        )
        return self.session.scalars(stmt).all()

    def list_grouped(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        custom = self.list_custom()
        for txn_type in (TransactionType.income, TransactionType.expense):
            names = list(DEFAULT_CATEGORIES[txn_type])
            seen = {n.lower() for n in names}
            for category in custom:
                if category.type != txn_type or category.name.lower() in seen:
                    continue
                names.append(category.name)
                seen.add(category.name.lower())
            grouped[txn_type.value] = names
        return grouped

    def create(self, data: CategoryIn) -> CustomCategory:
        require_user(self.session, self.user_id)
        clean_name = data.name.strip()
        if not clean_name:
            raise ValidationFailedError("Category name cannot be empty")

        existing = self.session.scalar(
            select(CustomCategory).where(
                CustomCategory.user_id == self.user_id,
                CustomCategory.type == data.type,
                func.lower(CustomCategory.name) == clean_name.lower(),
            )
        )
        if existing:
            raise AlreadyExistsError("Category with this name already exists")

        category = CustomCategory(
            user_id=self.user_id, name=clean_name, type=data.type
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.session.get(CustomCategory, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        self.session.delete(category)
        self.session.commit()


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFoundError("Goal not found")
        return goal

    def list_all(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.deadline.asc(), Goal.id.asc())
        )
        return self.session.scalars(stmt).all()

    def list_active(self, now: Optional[datetime] = None) -> list[Goal]:
        now = now or datetime.utcnow()
        stmt = (
            select(Goal)
            .where(Goal.user_id == self.user_id, Goal.deadline > now)
            .order_by(Goal.deadline.asc(), Goal.id.asc())
        )
        return self.session.scalars(stmt).all()

    def list_completed(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(
                Goal.user_id == self.user_id,
                Goal.current_amount >= Goal.target_amount,
            )
            .order_by(Goal.deadline.asc(), Goal.id.asc())
        )
        return self.session.scalars(stmt).all()

    def create(self, data: GoalIn) -> Goal:
        require_user(self.session, self.user_id)
        goal = Goal(
            user_id=self.user_id,
            title=data.title.strip(),
            target_amount=data.target_amount,
            current_amount=data.current_amount,
            deadline=data.deadline,
            description=data.description,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalIn) -> Goal:
        goal = self.get(goal_id)
        goal.title = data.title.strip()
        goal.target_amount = data.target_amount
        goal.current_amount = data.current_amount
        goal.deadline = data.deadline
        goal.description = data.description
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def contribute(self, goal_id: int, amount: Decimal) -> Goal:
        if amount <= 0:
            raise ValidationFailedError("Contribution must be positive")
        goal = self.get(goal_id)
        goal.current_amount = (goal.current_amount or ZERO) + amount
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()
