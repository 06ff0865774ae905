from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from auth import SessionContext, require_user
from config import get_settings
from database import insert_ignoring_conflicts
from errors import StorageError, ValidationError
from models import Category, Transaction
from schemas import CategoryIn, ImportRecord, TransactionIn

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: tuple[tuple[str, int, str], ...] = (
    ("Housing", 200_000, "#FF6B6B"),
    ("Utilities", 30_000, "#4ECDC4"),
    ("Groceries", 80_000, "#45B7D1"),
    ("Transportation", 40_000, "#96CEB4"),
    ("Healthcare", 30_000, "#FFEEAD"),
    ("Entertainment", 20_000, "#D4A5A5"),
    ("Education", 20_000, "#9B5DE5"),
    ("Savings", 50_000, "#00BBF9"),
    ("Debt Payment", 50_000, "#00F5D4"),
    ("Miscellaneous", 20_000, "#738290"),
)

FALLBACK_COLOR = "#738290"


def parse_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid date: {value!r}") from exc


class CategoryService:
    def __init__(self, session: Session, user: Optional[SessionContext]) -> None:
        self.session = session
        self.user = require_user(user)
        self.user_id = self.user.user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.created_at, Category.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValidationError("Category not found")
        return category

    def _by_name(self, name: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == name.lower(),
            )
        )

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        if data.budget_limit_cents < 0:
            raise ValidationError("Budget limit cannot be negative")
        if self._by_name(name):
            raise ValidationError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            budget_limit_cents=data.budget_limit_cents,
            color=data.color,
        )
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise StorageError("Category could not be saved") from exc
        self.session.refresh(category)
        return category

    def seed_defaults(self) -> int:
        """Insert the default category set, skipping names the user already has.

        Safe to run concurrently: the ``(user_id, name)`` unique constraint
        decides which writer wins each row.
        """
        stmt = insert_ignoring_conflicts(self.session, Category, ["user_id", "name"])
        inserted = 0
        for name, limit_cents, color in DEFAULT_CATEGORIES:
            result = self.session.execute(
                stmt.values(
                    user_id=self.user_id,
                    name=name,
                    budget_limit_cents=limit_cents,
                    color=color,
                )
            )
            inserted += max(result.rowcount or 0, 0)
        self.session.commit()
        logger.info(f"seed_defaults: user_id={self.user_id} inserted={inserted}")
        return inserted

    def ensure_defaults(self) -> int:
        count = self.session.scalar(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        )
        if count:
            return 0
        return self.seed_defaults()

    def get_or_create_fallback(self) -> Category:
        self.ensure_defaults()
        name = get_settings().fallback_category_name
        category = self._by_name(name)
        if category:
            return category
        self.session.execute(
            insert_ignoring_conflicts(self.session, Category, ["user_id", "name"]).values(
                user_id=self.user_id,
                name=name,
                budget_limit_cents=0,
                color=FALLBACK_COLOR,
            )
        )
        self.session.commit()
        category = self._by_name(name)
        if category is None:
            raise StorageError("Fallback category could not be created")
        return category


class ImportOutcome(str, Enum):
    inserted = "inserted"
    duplicate = "duplicate"
    failed = "failed"


@dataclass
class ImportResult:
    external_id: str
    outcome: ImportOutcome
    transaction_id: Optional[int] = None
    error: Optional[str] = None


class TransactionService:
    def __init__(self, session: Session, user: Optional[SessionContext]) -> None:
        self.session = session
        self.user = require_user(user)
        self.user_id = self.user.user_id

    def _owned_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValidationError("Category not found")
        return category

    def list_all(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: TransactionIn) -> Transaction:
        category = self._owned_category(data.category_id)
        txn = Transaction(
            user_id=self.user_id,
            category_id=category.id,
            amount_cents=data.amount_cents,
            description=data.description.strip(),
            date=parse_date(data.date),
        )
        self.session.add(txn)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise StorageError("Transaction could not be saved") from exc
        self.session.refresh(txn)
        return txn

    def bulk_import(self, records: Sequence[ImportRecord]) -> list[ImportResult]:
        """Store externally sourced transactions, one database transaction each.

        Records already stored under the same ``external_id`` come back as
        duplicates; a record that fails validation or storage is reported and
        the remaining records are still processed.
        """
        results: list[ImportResult] = []
        for record in records:
            try:
                results.append(self._import_one(record))
            except (ValidationError, StorageError) as exc:
                logger.warning(
                    f"bulk_import: user_id={self.user_id} "
                    f"external_id={record.external_id} error={exc}"
                )
                results.append(
                    ImportResult(
                        external_id=record.external_id,
                        outcome=ImportOutcome.failed,
                        error=str(exc),
                    )
                )
        return results

    def _import_one(self, record: ImportRecord) -> ImportResult:
        category = self._owned_category(record.category_id)
        txn_date = parse_date(record.date)
        stmt = insert_ignoring_conflicts(
            self.session, Transaction, ["user_id", "external_id"]
        ).values(
            user_id=self.user_id,
            category_id=category.id,
            amount_cents=record.amount_cents,
            description=record.description.strip(),
            date=txn_date,
            external_id=record.external_id,
            external_category_hint=record.external_category_hint,
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError(
                f"Could not store transaction {record.external_id}"
            ) from exc
        if not result.rowcount or result.rowcount < 0:
            return ImportResult(
                external_id=record.external_id, outcome=ImportOutcome.duplicate
            )
        return ImportResult(
            external_id=record.external_id,
            outcome=ImportOutcome.inserted,
            transaction_id=result.inserted_primary_key[0],
        )


@dataclass(frozen=True)
class BudgetTotals:
    budget_cents: int
    spent_cents: int
    remaining_cents: int


@dataclass(frozen=True)
class CategoryProgress:
    category_id: int
    name: str
    color: Optional[str]
    limit_cents: int
    spent_cents: int
    remaining_cents: int
    used_ratio: Optional[float]


class BudgetSummaryService:
    def __init__(self, session: Session, user: Optional[SessionContext]) -> None:
        self.session = session
        self.user = require_user(user)
        self.user_id = self.user.user_id

    def category_spend(self, category_id: int) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.category_id == category_id,
        )
        return int(self.session.execute(stmt).scalar_one())

    def spent_by_category(self) -> dict[int, int]:
        stmt = (
            select(Transaction.category_id, func.sum(Transaction.amount_cents))
            .where(Transaction.user_id == self.user_id)
            .group_by(Transaction.category_id)
        )
        return {row[0]: int(row[1] or 0) for row in self.session.execute(stmt).all()}

    def totals(self) -> BudgetTotals:
        budget = self.session.execute(
            select(func.coalesce(func.sum(Category.budget_limit_cents), 0)).where(
                Category.user_id == self.user_id
            )
        ).scalar_one()
        spent = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == self.user_id
            )
        ).scalar_one()
        return BudgetTotals(
            budget_cents=int(budget),
            spent_cents=int(spent),
            remaining_cents=int(budget) - int(spent),
        )

    def category_progress(self) -> list[CategoryProgress]:
        spent_map = self.spent_by_category()
        rows: list[CategoryProgress] = []
        for category in CategoryService(self.session, self.user).list_all():
            spent = spent_map.get(category.id, 0)
            limit = category.budget_limit_cents
            rows.append(
                CategoryProgress(
                    category_id=category.id,
                    name=category.name,
                    color=category.color,
                    limit_cents=limit,
                    spent_cents=spent,
                    remaining_cents=limit - spent,
                    used_ratio=(spent / limit) if limit else None,
                )
            )
        return rows

    def category_breakdown(self) -> dict[str, list]:
        progress = self.category_progress()
        return {
            "labels": [row.name for row in progress],
            "data": [row.spent_cents for row in progress],
            "colors": [row.color for row in progress],
        }
