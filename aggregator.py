from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import urllib3
from plaid.api import plaid_api
from plaid.api_client import ApiClient
from plaid.configuration import Configuration
from plaid.exceptions import ApiException
from plaid.model.country_code import CountryCode
from plaid.model.item_public_token_exchange_request import (
    ItemPublicTokenExchangeRequest,
)
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_get_request import TransactionsGetRequest
from plaid.model.transactions_get_request_options import (
    TransactionsGetRequestOptions,
)

from config import Settings, get_settings
from errors import UpstreamError

logger = logging.getLogger(__name__)

PLAID_ENV_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

PAGE_SIZE = 100


@dataclass(frozen=True)
class ExchangedItem:
    access_token: str
    item_id: str


@dataclass(frozen=True)
class ExternalTransaction:
    transaction_id: str
    amount: Decimal  # aggregator units; positive = money out of the account
    date: date
    name: str
    category: tuple[str, ...] = field(default_factory=tuple)


def normalize_amount_cents(amount: Decimal | float | int | str) -> int:
    """Convert an aggregator amount to signed cents, positive = expense."""
    cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def _category_labels(raw: dict) -> tuple[str, ...]:
    labels = [str(label) for label in (raw.get("category") or []) if label]
    if labels:
        return tuple(labels)
    pfc = raw.get("personal_finance_category") or {}
    return tuple(
        str(pfc[key]) for key in ("primary", "detailed") if pfc.get(key)
    )


def _upstream_message(exc: ApiException) -> str:
    try:
        body = json.loads(exc.body or "{}")
    except (TypeError, ValueError):
        body = {}
    return body.get("error_message") or str(exc.reason or "Aggregator request failed")


class PlaidGateway:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self._client: Optional[plaid_api.PlaidApi] = None

    @property
    def client(self) -> plaid_api.PlaidApi:
        if self._client is None:
            host = PLAID_ENV_HOSTS.get(self.settings.plaid_env)
            if host is None:
                raise UpstreamError(f"Invalid PLAID_ENV: {self.settings.plaid_env}")
            configuration = Configuration(
                host=host,
                api_key={
                    "clientId": self.settings.plaid_client_id,
                    "secret": self.settings.plaid_secret,
                },
            )
            self._client = plaid_api.PlaidApi(ApiClient(configuration))
        return self._client

    def _call(self, operation: str, method, request):
        try:
            return method(request, _request_timeout=self.settings.plaid_timeout_secs)
        except ApiException as exc:
            message = _upstream_message(exc)
            logger.warning(f"plaid_call: op={operation} status={exc.status} error={message}")
            raise UpstreamError(message) from exc
        except urllib3.exceptions.HTTPError as exc:
            logger.warning(f"plaid_call: op={operation} transport_error={exc}")
            raise UpstreamError(f"Aggregator unreachable during {operation}") from exc

    def create_link_token(self, client_user_id: str) -> str:
        request = LinkTokenCreateRequest(
            products=[Products("transactions")],
            client_name=self.settings.plaid_client_name,
            country_codes=[CountryCode("US")],
            language="en",
            user=LinkTokenCreateRequestUser(client_user_id=client_user_id),
        )
        response = self._call("link_token_create", self.client.link_token_create, request)
        return response.link_token

    def exchange_public_token(self, public_token: str) -> ExchangedItem:
        response = self._call(
            "item_public_token_exchange",
            self.client.item_public_token_exchange,
            ItemPublicTokenExchangeRequest(public_token=public_token),
        )
        return ExchangedItem(access_token=response.access_token, item_id=response.item_id)

    def fetch_transactions(
        self, access_token: str, start_date: date, end_date: date
    ) -> list[ExternalTransaction]:
        fetched: list[ExternalTransaction] = []
        offset = 0
        while True:
            request = TransactionsGetRequest(
                access_token=access_token,
                start_date=start_date,
                end_date=end_date,
                options=TransactionsGetRequestOptions(count=PAGE_SIZE, offset=offset),
            )
            response = self._call("transactions_get", self.client.transactions_get, request)
            batch = [t.to_dict() for t in response.transactions]
            for raw in batch:
                fetched.append(
                    ExternalTransaction(
                        transaction_id=str(raw["transaction_id"]),
                        amount=Decimal(str(raw["amount"])),
                        date=raw["date"],
                        name=raw.get("name") or raw.get("merchant_name") or "",
                        category=_category_labels(raw),
                    )
                )
            offset += len(batch)
            if not batch or offset >= response.total_transactions:
                break
        return fetched
