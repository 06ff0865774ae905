from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from aggregator import normalize_amount_cents
from bank_bridge import BankLinkService
from config import get_settings
from conftest import external, make_user
from database import Base
from errors import UpstreamError, ValidationError
from models import BankAccessToken, Transaction
from services import DEFAULT_CATEGORIES, CategoryService, TransactionService


def _transaction_count(session: Session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


def test_create_link_token_uses_the_session_user(fake_gateway) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = make_user(session)
        token = BankLinkService(session, user, fake_gateway).create_link_token()
        assert token == f"link-sandbox-{user.user_id}"


def test_exchange_stores_token_and_imports_window(fake_gateway) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = make_user(session)
        CategoryService(session, user).ensure_defaults()
        service = BankLinkService(
            session,
            user,
            fake_gateway,
            {"Rent": "Housing", "Supermarkets and Groceries": "Groceries"},
        )

        report = service.exchange_and_sync("public-sandbox-ok")

        assert report.as_dict() == {
            "success": True,
            "imported": 3,
            "duplicates": 0,
            "failed": 0,
        }
        [link] = service.list_links()
        assert link.access_token == "access-sandbox-1"
        assert link.last_synced_at is not None
        assert link.last_sync_error is None

        start, end = fake_gateway.fetch_windows[0]
        assert (end - start).days == 30

        by_external = {
            t.external_id: t for t in TransactionService(session, user).list_all()
        }
        assert by_external["txn-rent"].category.name == "Housing"
        assert by_external["txn-rent"].amount_cents == 150_000
        assert by_external["txn-grocer"].category.name == "Groceries"
        assert by_external["txn-mystery"].category.name == "Miscellaneous"
        assert by_external["txn-mystery"].external_category_hint == (
            "Service > Unknown Things"
        )


def test_first_sync_seeds_the_default_categories(fake_gateway) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = make_user(session)
        BankLinkService(session, user, fake_gateway).exchange_and_sync("public-ok")

        service = CategoryService(session, user)
        names = [c.name for c in service.list_all()]
        assert names == [name for name, _, _ in DEFAULT_CATEGORIES]
        assert service.ensure_defaults() == 0

        by_external = {
            t.external_id: t for t in TransactionService(session, user).list_all()
        }
        assert by_external["txn-mystery"].category.name == "Miscellaneous"
        assert by_external["txn-mystery"].category.budget_limit_cents == 20_000


def test_renamed_fallback_is_created_beside_the_defaults(
    fake_gateway, monkeypatch
) -> None:
    monkeypatch.setenv("BUDGET_FALLBACK_CATEGORY", "Unsorted")
    get_settings.cache_clear()
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    try:
        with Session(engine) as session:
            user = make_user(session)
            BankLinkService(session, user, fake_gateway).exchange_and_sync(
                "public-ok"
            )

            categories = CategoryService(session, user).list_all()
            assert len(categories) == len(DEFAULT_CATEGORIES) + 1
            unsorted = categories[-1]
            assert (unsorted.name, unsorted.budget_limit_cents) == ("Unsorted", 0)
            txns = TransactionService(session, user).list_all()
            # no mapping table, and no label is close to a default name
            assert {t.category_id for t in txns} == {unsorted.id}
    finally:
        get_settings.cache_clear()


def test_repeated_sync_does_not_double_count(fake_gateway) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = make_user(session)
        service = BankLinkService(session, user, fake_gateway)
        service.exchange_and_sync("public-ok")
        report = service.sync()

        assert report.as_dict()["imported"] == 0
        assert report.as_dict()["duplicates"] == 3
        assert _transaction_count(session) == 3
        assert fake_gateway.exchanged == ["public-ok"]


def test_fetch_failure_keeps_token_and_allows_retry(fake_gateway) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = make_user(session)
        service = BankLinkService(session, user, fake_gateway)
        fake_gateway.fail_fetch = True

        with pytest.raises(UpstreamError):
            service.exchange_and_sync("public-ok")

        [link] = service.list_links()
        assert link.access_token == "access-sandbox-1"
        assert link.last_sync_error == "the requested product is not yet ready"
        assert _transaction_count(session) == 0

        fake_gateway.fail_fetch = False
        report = service.sync(link.item_id)

        assert report.as_dict()["imported"] == 3
        assert fake_gateway.exchanged == ["public-ok"]
        assert service.list_links()[0].last_sync_error is None


def test_exchange_failure_stores_nothing(fake_gateway) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = make_user(session)
        service = BankLinkService(session, user, fake_gateway)
        with pytest.raises(UpstreamError):
            service.exchange_and_sync("public-bad")
        assert session.scalar(select(func.count(BankAccessToken.id))) == 0
        assert fake_gateway.fetch_windows == []


def test_sync_without_link_is_a_validation_error(fake_gateway) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = BankLinkService(session, make_user(session), fake_gateway)
        with pytest.raises(ValidationError):
            service.sync()


def test_malformed_external_record_does_not_block_the_rest(fake_gateway) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    fake_gateway.transactions.append(external("", "5.00", "No id"))
    with Session(engine) as session:
        user = make_user(session)
        report = BankLinkService(session, user, fake_gateway).exchange_and_sync(
            "public-ok"
        )
        assert report.as_dict()["imported"] == 3
        assert report.as_dict()["failed"] == 1


def _link_second_item(session: Session, user) -> None:
    session.add(
        BankAccessToken(
            user_id=user.user_id, item_id="item-2", access_token="access-sandbox-2"
        )
    )
    session.commit()


def test_one_failing_link_does_not_block_the_others(fake_gateway) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = make_user(session)
        service = BankLinkService(session, user, fake_gateway)
        service.exchange_and_sync("public-ok")
        _link_second_item(session, user)

        fake_gateway.transactions.append(
            external("txn-pharmacy", "12.30", "Main St Pharmacy", ["Healthcare"])
        )
        fake_gateway.failing_tokens.add("access-sandbox-1")

        report = service.sync()

        assert report.item_ids == ["item-1", "item-2"]
        assert report.as_dict() == {
            "success": True,
            "imported": 1,
            "duplicates": 3,
            "failed": 0,
            "failed_items": {"item-1": "the requested product is not yet ready"},
        }
        assert _transaction_count(session) == 4
        errors = {link.item_id: link.last_sync_error for link in service.list_links()}
        assert errors == {
            "item-1": "the requested product is not yet ready",
            "item-2": None,
        }


def test_sync_raises_when_every_link_fails(fake_gateway) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = make_user(session)
        service = BankLinkService(session, user, fake_gateway)
        service.exchange_and_sync("public-ok")
        _link_second_item(session, user)
        fake_gateway.fail_fetch = True

        with pytest.raises(UpstreamError):
            service.sync()
        assert all(link.last_sync_error for link in service.list_links())


def test_amounts_normalize_to_signed_cents() -> None:
    assert normalize_amount_cents(Decimal("12.345")) == 1235
    assert normalize_amount_cents(82.45) == 8245
    # money flowing into the account is negative spend
    assert normalize_amount_cents(Decimal("-5.5")) == -550
