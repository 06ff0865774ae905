from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aggregator import (
    ExchangedItem,
    ExternalTransaction,
    PlaidGateway,
    normalize_amount_cents,
)
from auth import SessionContext, require_user
from category_mapping import CategoryResolver
from config import get_settings
from errors import StorageError, UpstreamError, ValidationError
from models import BankAccessToken
from schemas import ImportRecord
from services import ImportOutcome, ImportResult, TransactionService

logger = logging.getLogger(__name__)


class AggregatorGateway(Protocol):
    def create_link_token(self, client_user_id: str) -> str: ...

    def exchange_public_token(self, public_token: str) -> ExchangedItem: ...

    def fetch_transactions(
        self, access_token: str, start_date: date, end_date: date
    ) -> list[ExternalTransaction]: ...


@dataclass
class SyncReport:
    item_ids: list[str] = field(default_factory=list)
    results: list[ImportResult] = field(default_factory=list)
    # item_id -> error for links whose fetch or import failed
    failed_items: dict[str, str] = field(default_factory=dict)

    def count(self, outcome: ImportOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "success": True,
            "imported": self.count(ImportOutcome.inserted),
            "duplicates": self.count(ImportOutcome.duplicate),
            "failed": self.count(ImportOutcome.failed),
        }
        if self.failed_items:
            payload["failed_items"] = dict(self.failed_items)
        return payload


class BankLinkService:
    def __init__(
        self,
        session: Session,
        user: Optional[SessionContext],
        gateway: Optional[AggregatorGateway] = None,
        mapping_table: Optional[dict[str, str]] = None,
    ) -> None:
        self.session = session
        self.user = require_user(user)
        self.gateway = gateway or PlaidGateway()
        self.mapping_table = mapping_table or {}

    def create_link_token(self) -> str:
        token = self.gateway.create_link_token(str(self.user.user_id))
        logger.info(f"link_token: user_id={self.user.user_id}")
        return token

    def list_links(self) -> list[BankAccessToken]:
        stmt = (
            select(BankAccessToken)
            .where(BankAccessToken.user_id == self.user.user_id)
            .order_by(BankAccessToken.created_at, BankAccessToken.id)
        )
        return list(self.session.scalars(stmt).all())

    def exchange_and_sync(self, public_token: str) -> SyncReport:
        item = self.gateway.exchange_public_token(public_token)
        link = self._store_access_token(item)
        logger.info(
            f"bank_link: user_id={self.user.user_id} item_id={link.item_id} stored"
        )
        report = SyncReport(item_ids=[link.item_id])
        report.results.extend(self._sync_link(link))
        return report

    def sync(self, item_id: Optional[str] = None) -> SyncReport:
        """Re-import every stored link (or just ``item_id``) without re-exchange.

        Links sync independently: a failing link is recorded in
        ``failed_items`` and the rest still import. Raises the last error only
        when no link synced.
        """
        links = self.list_links()
        if item_id is not None:
            links = [link for link in links if link.item_id == item_id]
        if not links:
            raise ValidationError("No linked bank account found")
        report = SyncReport()
        last_error: Optional[Exception] = None
        for link in links:
            report.item_ids.append(link.item_id)
            try:
                report.results.extend(self._sync_link(link))
            except (UpstreamError, StorageError) as exc:
                report.failed_items[link.item_id] = str(exc)
                last_error = exc
        if last_error is not None and len(report.failed_items) == len(links):
            raise last_error
        return report

    def _store_access_token(self, item: ExchangedItem) -> BankAccessToken:
        link = self.session.scalar(
            select(BankAccessToken).where(
                BankAccessToken.user_id == self.user.user_id,
                BankAccessToken.item_id == item.item_id,
            )
        )
        if link is None:
            link = BankAccessToken(user_id=self.user.user_id, item_id=item.item_id)
            self.session.add(link)
        link.access_token = item.access_token
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise StorageError("Bank link could not be saved") from exc
        self.session.refresh(link)
        return link

    def _window(self) -> tuple[date, date]:
        settings = get_settings()
        today = datetime.now(ZoneInfo(settings.timezone)).date()
        return today - timedelta(days=settings.sync_window_days), today

    def _sync_link(self, link: BankAccessToken) -> list[ImportResult]:
        start, end = self._window()
        results: list[ImportResult] = []
        try:
            fetched = self.gateway.fetch_transactions(link.access_token, start, end)
            resolver = CategoryResolver.for_user(
                self.session, self.user, self.mapping_table
            )
            records: list[ImportRecord] = []
            for txn in fetched:
                try:
                    records.append(self._to_record(txn, resolver))
                except ValueError as exc:
                    results.append(
                        ImportResult(
                            external_id=txn.transaction_id,
                            outcome=ImportOutcome.failed,
                            error=str(exc),
                        )
                    )
            results.extend(
                TransactionService(self.session, self.user).bulk_import(records)
            )
        except (UpstreamError, StorageError) as exc:
            self.session.rollback()
            self._mark_sync(link, error=str(exc))
            logger.warning(
                f"bank_sync: user_id={self.user.user_id} item_id={link.item_id} "
                f"error={exc}"
            )
            raise

        self._mark_sync(link, error=None)
        inserted = sum(1 for r in results if r.outcome == ImportOutcome.inserted)
        logger.info(
            f"bank_sync: user_id={self.user.user_id} item_id={link.item_id} "
            f"window={start}..{end} fetched={len(fetched)} inserted={inserted}"
        )
        return results

    @staticmethod
    def _to_record(txn: ExternalTransaction, resolver: CategoryResolver) -> ImportRecord:
        category = resolver.resolve(txn.category)
        return ImportRecord(
            external_id=txn.transaction_id,
            category_id=category.id,
            amount_cents=normalize_amount_cents(txn.amount),
            description=txn.name[:500],
            date=txn.date,
            external_category_hint=" > ".join(txn.category)[:200] or None,
        )

    def _mark_sync(self, link: BankAccessToken, error: Optional[str]) -> None:
        link.last_sync_error = error
        if error is None:
            link.last_synced_at = datetime.utcnow()
        self.session.commit()
