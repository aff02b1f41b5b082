from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from itsdangerous import URLSafeTimedSerializer
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

import create_admin
from auth import (
    JWT_ALGORITHM,
    InvalidToken,
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from config import get_settings
from database import Base
from formatting import format_currency, format_date, is_valid_timezone
from models import User, UserRole
from pin_tokens import generate_pin_token, validate_pin_token


def test_password_hash_round_trip() -> None:
    hashed = hash_password("secret123")

    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("secret124", hashed)
    assert not verify_password("secret123", "not-a-bcrypt-hash")


def test_access_token_carries_user_id() -> None:
    user = User(id=7, email="ana@example.com", name="Ana", role=UserRole.admin)

    token = create_access_token(user)

    assert decode_access_token(token) == 7
    payload = jwt.decode(token, get_settings().jwt_secret, algorithms=[JWT_ALGORITHM])
    assert payload["role"] == "admin"


def test_expired_or_foreign_tokens_are_rejected() -> None:
    now = datetime.now(timezone.utc)
    expired = jwt.encode(
        {"sub": "7", "iat": now - timedelta(hours=2), "exp": now - timedelta(hours=1)},
        get_settings().jwt_secret,
        algorithm=JWT_ALGORITHM,
    )
    foreign = jwt.encode({"sub": "7"}, "another-secret", algorithm=JWT_ALGORITHM)

    for token in (expired, foreign, "garbage"):
        with pytest.raises(InvalidToken):
            decode_access_token(token)


def test_pin_token_is_bound_to_user() -> None:
    token = generate_pin_token(3)

    assert validate_pin_token(token, 3)
    assert not validate_pin_token(token, 4)
    assert not validate_pin_token(token[:-2], 3)
    assert not validate_pin_token("", 3)

    payload = URLSafeTimedSerializer(
        get_settings().pin_secret, salt="pin-confirmation"
    ).loads(token)
    assert payload == {"u": 3}


def test_format_date_and_timezones() -> None:
    assert format_date("2024-08-05") == "05 Agu 2024"
    assert format_date(None) == "-"
    assert format_date("soon") == "-"
    assert is_valid_timezone("Asia/Jakarta")
    assert not is_valid_timezone("Nowhere/City")
    assert format_currency(1_234_567) == "Rp 1.234.567"
    assert format_currency(-2500) == "-Rp 2.500"


def test_create_admin_registers_then_promotes(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def scope():
        session = SessionLocal()
        try:
            yield session
            session.commit()
        finally:
            session.close()

    monkeypatch.setattr(create_admin, "session_scope", scope)

    user, created = create_admin.create_admin("Boss@Example.com", "secret123", "Boss")
    assert created
    assert user.role == UserRole.admin

    exit_code = create_admin.main(["ana@example.com", "secret123", "Ana", "--yes"])
    assert exit_code == 0
    assert create_admin.main(["bad-email", "secret123", "X", "--yes"]) == 1

    again, created = create_admin.create_admin("boss@example.com", "other123", "Boss")
    assert not created
    assert again.id == user.id

    with SessionLocal() as session:
        roles = {u.email: u.role for u in session.scalars(select(User))}
    assert roles == {"boss@example.com": UserRole.admin, "ana@example.com": UserRole.admin}
