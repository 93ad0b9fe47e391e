from datetime import datetime, timedelta, timezone

import jwt
import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from schemas import LoginIn, RegisterIn
from security import (
    InvalidTokenError,
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from services import AlreadyExistsError, AuthService, InvalidCredentialsError, NotFoundError


def test_register_then_login_issue_tokens_for_the_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        auth = AuthService(session)
        user, token = auth.register(
            RegisterIn(username="alice", email="Alice@Example.com", password="secret1")
        )
        assert user.email == "alice@example.com"
        assert user.password_hash != "secret1"
        assert decode_access_token(token) == user.id

        logged_in, login_token = auth.login(LoginIn(username="alice", password="secret1"))
        assert logged_in.id == user.id
        assert decode_access_token(login_token) == user.id
        assert auth.profile(user.id).username == "alice"


def test_register_rejects_duplicate_username_then_email() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        auth = AuthService(session)
        auth.register(RegisterIn(username="alice", email="alice@example.com", password="secret1"))

        with pytest.raises(AlreadyExistsError, match="username"):
            auth.register(
                RegisterIn(username="alice", email="alice@example.com", password="secret1")
            )
        with pytest.raises(AlreadyExistsError, match="email"):
            auth.register(
                RegisterIn(username="alice2", email="ALICE@example.com", password="secret1")
            )


def test_login_failures_share_one_message() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        auth = AuthService(session)
        auth.register(RegisterIn(username="alice", email="alice@example.com", password="secret1"))

        with pytest.raises(InvalidCredentialsError, match="Invalid credentials"):
            auth.login(LoginIn(username="alice", password="wrong-password"))
        with pytest.raises(InvalidCredentialsError, match="Invalid credentials"):
            auth.login(LoginIn(username="nobody", password="secret1"))
        with pytest.raises(NotFoundError):
            auth.profile(999)


def test_password_hashing_round_trip() -> None:
    hashed = hash_password("correct horse")
    assert verify_password("correct horse", hashed)
    assert not verify_password("wrong horse", hashed)


def test_expired_and_foreign_tokens_are_rejected() -> None:
    expired = create_access_token(
        7,
        "alice",
        "alice@example.com",
        now=datetime.now(timezone.utc) - timedelta(days=3),
    )
    with pytest.raises(InvalidTokenError):
        decode_access_token(expired)

    foreign = jwt.encode(
        {"sub": "7", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        "some-other-secret",
        algorithm="HS256",
    )
    with pytest.raises(InvalidTokenError):
        decode_access_token(foreign)

    with pytest.raises(InvalidTokenError):
        decode_access_token("not-a-token")


def test_usernames_are_trimmed_before_validation_and_login() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        auth = AuthService(session)
        user, _ = auth.register(
            RegisterIn(username=" bob ", email="bob@example.com", password="secret1")
        )
        assert user.username == "bob"

        logged_in, _ = auth.login(LoginIn(username=" bob ", password="secret1"))
        assert logged_in.id == user.id

    with pytest.raises(ValidationError):
        RegisterIn(username="  a ", email="a@example.com", password="secret1")
