from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from aggregator import ExchangedItem, ExternalTransaction
from auth import SessionContext
from errors import UpstreamError
from models import User


class FakeGateway:
    """In-memory stand-in for the Plaid gateway."""

    def __init__(self, transactions=None) -> None:
        self.transactions: list[ExternalTransaction] = list(transactions or [])
        self.fail_fetch = False
        self.failing_tokens: set[str] = set()
        self.exchanged: list[str] = []
        self.fetch_windows: list[tuple[date, date]] = []

    def create_link_token(self, client_user_id: str) -> str:
        return f"link-sandbox-{client_user_id}"

    def exchange_public_token(self, public_token: str) -> ExchangedItem:
        self.exchanged.append(public_token)
        if public_token == "public-bad":
            raise UpstreamError("provided public token is in an invalid format")
        return ExchangedItem(access_token="access-sandbox-1", item_id="item-1")

    def fetch_transactions(self, access_token, start_date, end_date):
        self.fetch_windows.append((start_date, end_date))
        if self.fail_fetch or access_token in self.failing_tokens:
            raise UpstreamError("the requested product is not yet ready")
        return list(self.transactions)


def external(transaction_id, amount, name, labels=(), on=date(2025, 3, 3)):
    return ExternalTransaction(
        transaction_id=transaction_id,
        amount=Decimal(str(amount)),
        date=on,
        name=name,
        category=tuple(labels),
    )


def make_user(session: Session, email: str = "dana@example.com") -> SessionContext:
    user = User(email=email, password_hash="not-a-real-hash")
    session.add(user)
    session.commit()
    return SessionContext(user_id=user.id, email=user.email)


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway(
        [
            external("txn-rent", "1500.00", "Oak Street Rent", ["Payment", "Rent"]),
            external(
                "txn-grocer",
                "82.45",
                "Corner Grocer",
                ["Shops", "Supermarkets and Groceries"],
            ),
            external("txn-mystery", "9.99", "ACME*7781", ["Service", "Unknown Things"]),
        ]
    )
