from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import TransactionType, User
from schemas import CategoryIn, GoalIn
from services import (
    DEFAULT_CATEGORIES,
    AlreadyExistsError,
    CategoryService,
    GoalService,
    NotFoundError,
    ValidationFailedError,
)


def _user(session: Session, username: str = "alice") -> User:
    user = User(username=username, email=f"{username}@example.com", password_hash="x")
    session.add(user)
    session.commit()
    return user


def test_grouped_categories_merge_defaults_with_custom_names() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        service = CategoryService(session, user.id)
        service.create(CategoryIn(name="  Pets ", type=TransactionType.expense))
        service.create(CategoryIn(name="salary", type=TransactionType.income))

        grouped = service.list_grouped()
        assert grouped["expense"] == DEFAULT_CATEGORIES[TransactionType.expense] + ["Pets"]
        assert grouped["income"] == DEFAULT_CATEGORIES[TransactionType.income]

        with pytest.raises(AlreadyExistsError):
            service.create(CategoryIn(name="PETS", type=TransactionType.expense))

        # Same name under the other type is allowed.
        service.create(CategoryIn(name="Pets", type=TransactionType.income))
        assert "Pets" in service.list_grouped()["income"]


def test_category_delete_is_owner_scoped() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice")
        bob = _user(session, "bob")
        pets = CategoryService(session, alice.id).create(
            CategoryIn(name="Pets", type=TransactionType.expense)
        )

        with pytest.raises(NotFoundError):
            CategoryService(session, bob.id).delete(pets.id)

        CategoryService(session, alice.id).delete(pets.id)
        assert CategoryService(session, alice.id).list_custom() == []

        with pytest.raises(ValidationFailedError):
            CategoryService(session, alice.id).create(
                CategoryIn(name="   ", type=TransactionType.expense)
            )


def test_goal_contributions_track_progress() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        service = GoalService(session, user.id)
        goal = service.create(
            GoalIn(
                title="Emergency fund",
                target_amount=Decimal("1000"),
                deadline=datetime(2025, 6, 1),
            )
        )
        assert goal.current_amount == Decimal("0")
        assert goal.progress_percentage == 0.0

        goal = service.contribute(goal.id, Decimal("250"))
        assert goal.current_amount == Decimal("250")
        assert goal.remaining_amount == Decimal("750")
        assert goal.progress_percentage == 25.0

        with pytest.raises(ValidationFailedError):
            service.contribute(goal.id, Decimal("0"))


def test_goal_listings_by_status() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        service = GoalService(session, user.id)
        done = service.create(
            GoalIn(
                title="Laptop",
                target_amount=Decimal("800"),
                current_amount=Decimal("800"),
                deadline=datetime(2024, 1, 1),
            )
        )
        pending = service.create(
            GoalIn(
                title="Holiday",
                target_amount=Decimal("2000"),
                current_amount=Decimal("100"),
                deadline=datetime(2024, 9, 1),
            )
        )

        now = datetime(2024, 3, 1)
        assert [g.id for g in service.list_all()] == [done.id, pending.id]
        assert [g.id for g in service.list_active(now)] == [pending.id]
        assert [g.id for g in service.list_completed()] == [done.id]

        updated = service.update(
            pending.id,
            GoalIn(
                title="Holiday abroad",
                target_amount=Decimal("2500"),
                current_amount=Decimal("100"),
                deadline=datetime(2024, 10, 1),
                description="Flights and hotel",
            ),
        )
        assert updated.title == "Holiday abroad"
        assert updated.description == "Flights and hotel"


def test_goals_are_scoped_to_their_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice")
        bob = _user(session, "bob")
        goal = GoalService(session, alice.id).create(
            GoalIn(title="Bike", target_amount=Decimal("500"), deadline=datetime(2024, 8, 1))
        )

        other = GoalService(session, bob.id)
        with pytest.raises(NotFoundError):
            other.get(goal.id)
        with pytest.raises(NotFoundError):
            other.contribute(goal.id, Decimal("10"))
        with pytest.raises(NotFoundError):
            other.delete(goal.id)

        GoalService(session, alice.id).delete(goal.id)
        assert GoalService(session, alice.id).list_all() == []
