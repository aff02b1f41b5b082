from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import hash_password, verify_password
from formatting import is_valid_timezone
from models import Transaction, TransactionType, User, UserRole
from schemas import (
    AdminUserCreateIn,
    AdminUserUpdateIn,
    ImportRow,
    PinUpdateIn,
    ProfileUpdateIn,
    RegisterIn,
    TransactionIn,
)


logger = logging.getLogger(__name__)


class TransactionNotFound(ValueError):
    pass


class UserNotFound(ValueError):
    pass


class EmailAlreadyUsed(ValueError):
    pass


class InvalidCredentials(ValueError):
    pass


class InvalidPin(ValueError):
    pass


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
        "pin_enabled": user.pin_enabled,
        "timezone": user.timezone,
        "created_at": _isoformat(user.created_at),
    }


@dataclass
class ImportResult:
    imported: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"imported": self.imported, "failed": self.failed, "errors": self.errors}


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise UserNotFound("User not found")
        return user

    def get_by_email(self, email: str) -> Optional[User]:
        stmt = select(User).where(User.email == normalize_email(email))
        return self.session.scalar(stmt)

    def _ensure_email_free(self, email: str, user_id: Optional[int] = None) -> str:
        clean = normalize_email(email)
        existing = self.get_by_email(clean)
        if existing and existing.id != user_id:
            raise EmailAlreadyUsed("Email is already used by another account")
        return clean

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise EmailAlreadyUsed("Email is already used by another account") from exc

    def register(self, data: RegisterIn, role: UserRole = UserRole.user) -> User:
        email = self._ensure_email_free(data.email)
        user = User(
            email=email,
            password_hash=hash_password(data.password),
            name=data.name.strip(),
            role=role,
        )
        self.session.add(user)
        self._commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id} role={user.role.value}")
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self.get_by_email(email)
        if not user or not verify_password(password, user.password_hash):
            logger.info("login_failed: reason=bad_credentials")
            raise InvalidCredentials("Incorrect email or password")
        return user

    def update_profile(self, user_id: int, data: ProfileUpdateIn) -> User:
        user = self.get(user_id)
        if data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValueError("Name is required")
            user.name = name
        if data.email is not None:
            user.email = self._ensure_email_free(data.email, user.id)
        if data.timezone is not None:
            if not is_valid_timezone(data.timezone):
                raise ValueError(f"Unknown timezone: {data.timezone}")
            user.timezone = data.timezone
        if data.password:
            user.password_hash = hash_password(data.password)
        self._commit()
        self.session.refresh(user)
        return user

    def update_pin(self, user_id: int, data: PinUpdateIn) -> User:
        user = self.get(user_id)
        if data.pin_enabled:
            pin = data.pin or user.pin
            if not pin:
                raise InvalidPin("A 4-digit PIN is required to enable PIN protection")
            user.pin = pin
            user.pin_enabled = True
        else:
            user.pin = None
            user.pin_enabled = False
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"pin_updated: user_id={user.id} enabled={user.pin_enabled}")
        return user

    def verify_pin(self, user_id: int, pin: str) -> bool:
        user = self.get(user_id)
        if not user.pin_enabled or not user.pin:
            return False
        return user.pin == pin

    def list_with_counts(self) -> list[dict[str, Any]]:
        count = (
            select(func.count(Transaction.id))
            .where(Transaction.user_id == User.id)
            .correlate(User)
            .scalar_subquery()
        )
        stmt = select(User, count.label("transaction_count")).order_by(
            User.created_at.desc(), User.id.desc()
        )
        result = []
        for user, txn_count in self.session.execute(stmt).all():
            data = serialize_user(user)
            data["transaction_count"] = int(txn_count or 0)
            result.append(data)
        return result

    def create(self, data: AdminUserCreateIn) -> User:
        return self.register(data, role=data.role)

    def update(self, user_id: int, data: AdminUserUpdateIn) -> User:
        user = self.get(user_id)
        if data.name is not None:
            user.name = data.name.strip()
        if data.email is not None:
            user.email = self._ensure_email_free(data.email, user.id)
        if data.password:
            user.password_hash = hash_password(data.password)
        self._commit()
        self.session.refresh(user)
        return user

    def update_role(self, user_id: int, role: UserRole) -> User:
        user = self.get(user_id)
        user.role = role
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"role_updated: user_id={user.id} role={role.value}")
        return user

    def delete(self, user_id: int) -> User:
        user = self.get(user_id)
        self.session.execute(delete(Transaction).where(Transaction.user_id == user.id))
        self.session.delete(user)
        self.session.commit()
        logger.info(f"user_deleted: user_id={user_id}")
        return user


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def serialize(txn: Transaction) -> dict[str, Any]:
        return {
            "id": txn.id,
            "description": txn.description,
            "type": txn.type.value,
            "amount": txn.amount,
            "date": txn.date.isoformat(),
            "created_at": _isoformat(txn.created_at),
        }

    def list_all(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.asc(), Transaction.created_at.asc(), Transaction.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def records(self) -> list[dict[str, Any]]:
        return [self.serialize(txn) for txn in self.list_all()]

    def get(self, transaction_id: int) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id, Transaction.id == transaction_id
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise TransactionNotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            description=data.description.strip(),
            type=data.type,
            amount=int(round(data.amount)),
            date=data.date,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(f"transaction_created: user_id={self.user_id} id={txn.id}")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        txn.description = data.description.strip()
        txn.type = data.type
        txn.amount = int(round(data.amount))
        txn.date = data.date
        self.session.commit()
        self.session.refresh(txn)
        logger.info(f"transaction_updated: user_id={self.user_id} id={txn.id}")
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: user_id={self.user_id} id={transaction_id}")

    def delete_all(self) -> int:
        result = self.session.execute(
            delete(Transaction).where(Transaction.user_id == self.user_id)
        )
        self.session.commit()
        removed = result.rowcount or 0
        logger.info(f"transactions_cleared: user_id={self.user_id} removed={removed}")
        return removed

    def import_rows(self, rows: list[ImportRow]) -> ImportResult:
        result = ImportResult()
        for row in rows:
            try:
                data = TransactionIn(
                    description=row.description,
                    type=row.type,
                    amount=row.amount,
                    date=row.date,
                )
            except ValueError as exc:
                result.failed += 1
                result.errors.append(f"Row {row.row}: {exc}")
                continue
            self.session.add(
                Transaction(
                    user_id=self.user_id,
                    description=data.description,
                    type=data.type,
                    amount=int(round(data.amount)),
                    date=data.date,
                )
            )
            result.imported += 1
        self.session.commit()
        logger.info(
            f"transactions_imported: user_id={self.user_id} "
            f"imported={result.imported} failed={result.failed}"
        )
        return result


class AdminService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def stats(self) -> dict[str, Any]:
        total_users = self.session.execute(select(func.count(User.id))).scalar_one()
        income_sum = func.coalesce(
            func.sum(
                case((Transaction.type == TransactionType.income, Transaction.amount), else_=0)
            ),
            0,
        )
        expense_sum = func.coalesce(
            func.sum(
                case((Transaction.type == TransactionType.expense, Transaction.amount), else_=0)
            ),
            0,
        )
        totals = self.session.execute(
            select(func.count(Transaction.id), income_sum, expense_sum)
        ).one()
        by_type = self.session.execute(
            select(
                Transaction.type,
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.amount), 0),
            )
            .group_by(Transaction.type)
            .order_by(Transaction.type)
        ).all()
        total_income = int(totals[1] or 0)
        total_expense = int(totals[2] or 0)
        return {
            "total_users": int(total_users or 0),
            "total_transactions": int(totals[0] or 0),
            "total_income": total_income,
            "total_expense": total_expense,
            "balance": total_income - total_expense,
            "transactions_by_type": [
                {"type": txn_type.value, "count": int(count), "total": int(total)}
                for txn_type, count, total in by_type
            ],
        }

    def all_transactions(self) -> list[dict[str, Any]]:
        stmt = (
            select(Transaction, User.name, User.email)
            .join(User, Transaction.user_id == User.id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        )
        result = []
        for txn, user_name, user_email in self.session.execute(stmt).all():
            data = TransactionService.serialize(txn)
            data["user_id"] = txn.user_id
            data["user_name"] = user_name
            data["user_email"] = user_email
            result.append(data)
        return result
