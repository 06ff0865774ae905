import logging
from functools import lru_cache

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from aggregator import PlaidGateway
from auth import SessionContext, UserService, issue_session_token, load_session
from bank_bridge import AggregatorGateway, BankLinkService
from category_mapping import load_mapping_table
from config import get_settings
from database import SessionLocal
from errors import NotAuthenticated, StorageError, UpstreamError, ValidationError
from models import BankAccessToken, Category, Transaction
from schemas import (
    CategoryIn,
    CredentialsIn,
    ExchangeTokenIn,
    LinkTokenIn,
    SyncIn,
    TransactionIn,
)
from services import BudgetSummaryService, CategoryService, TransactionService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Family Budget")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_gateway() -> AggregatorGateway:
    return PlaidGateway()


@lru_cache(maxsize=1)
def get_mapping_table() -> dict[str, str]:
    return load_mapping_table(get_settings().category_map_path)


@app.on_event("startup")
def startup_event():
    table = get_mapping_table()
    logger.info(f"category_map: labels={len(table)}")


def _bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def current_user(request: Request, db: Session = Depends(get_db)) -> SessionContext:
    return load_session(db, _bearer_token(request))


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(NotAuthenticated)
async def not_authenticated_handler(request: Request, exc: NotAuthenticated):
    return _error(401, str(exc))


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(400, str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return _error(400, f"Invalid request: {problems}")


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.warning(f"storage_error: path={request.url.path} error={exc}")
    return _error(400, "Could not save changes")


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    return _error(400, str(exc))


def category_to_dict(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "budget_limit_cents": category.budget_limit_cents,
        "color": category.color,
        "created_at": category.created_at.isoformat(),
    }


def transaction_to_dict(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "category_id": txn.category_id,
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "date": txn.date.isoformat(),
        "created_at": txn.created_at.isoformat(),
        "external_id": txn.external_id,
        "external_category_hint": txn.external_category_hint,
    }


def link_to_dict(link: BankAccessToken) -> dict[str, object]:
    return {
        "item_id": link.item_id,
        "linked_at": link.created_at.isoformat(),
        "last_synced_at": link.last_synced_at.isoformat()
        if link.last_synced_at
        else None,
        "last_sync_error": link.last_sync_error,
    }


@app.post("/auth/signup")
def signup(data: CredentialsIn, db: Session = Depends(get_db)):
    user = UserService(db).register(data)
    return {"token": issue_session_token(user), "user_id": user.id}


@app.post("/auth/signin")
def signin(data: CredentialsIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(data)
    return {"token": issue_session_token(user), "user_id": user.id}


@app.get("/api/categories")
def api_categories(
    user: SessionContext = Depends(current_user), db: Session = Depends(get_db)
):
    service = CategoryService(db, user)
    service.ensure_defaults()
    return [category_to_dict(c) for c in service.list_all()]


@app.post("/api/categories", status_code=201)
def api_create_category(
    data: CategoryIn,
    user: SessionContext = Depends(current_user),
    db: Session = Depends(get_db),
):
    return category_to_dict(CategoryService(db, user).create(data))


@app.get("/api/transactions")
def api_transactions(
    user: SessionContext = Depends(current_user), db: Session = Depends(get_db)
):
    return [transaction_to_dict(t) for t in TransactionService(db, user).list_all()]


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    data: TransactionIn,
    user: SessionContext = Depends(current_user),
    db: Session = Depends(get_db),
):
    return transaction_to_dict(TransactionService(db, user).create(data))


@app.get("/api/summary")
def api_summary(
    user: SessionContext = Depends(current_user), db: Session = Depends(get_db)
):
    service = BudgetSummaryService(db, user)
    totals = service.totals()
    return {
        "budget_cents": totals.budget_cents,
        "spent_cents": totals.spent_cents,
        "remaining_cents": totals.remaining_cents,
        "categories": [
            {
                "category_id": row.category_id,
                "name": row.name,
                "color": row.color,
                "limit_cents": row.limit_cents,
                "spent_cents": row.spent_cents,
                "remaining_cents": row.remaining_cents,
                "used_ratio": row.used_ratio,
            }
            for row in service.category_progress()
        ],
    }


@app.get("/api/category-breakdown")
def api_category_breakdown(
    user: SessionContext = Depends(current_user), db: Session = Depends(get_db)
):
    return BudgetSummaryService(db, user).category_breakdown()


@app.get("/api/bank-links")
def api_bank_links(
    user: SessionContext = Depends(current_user),
    db: Session = Depends(get_db),
    gateway: AggregatorGateway = Depends(get_gateway),
):
    return [link_to_dict(link) for link in BankLinkService(db, user, gateway).list_links()]


def _bridge_user(request: Request, db: Session, user_id: int) -> SessionContext:
    user = load_session(db, _bearer_token(request))
    if user.user_id != user_id:
        raise ValidationError("user_id does not match the signed-in user")
    return user


def _bridge_failure(operation: str, exc: Exception) -> JSONResponse:
    if isinstance(exc, (NotAuthenticated, ValidationError, UpstreamError)):
        logger.warning(f"{operation}: error={exc}")
        return _error(400, str(exc))
    if isinstance(exc, StorageError):
        logger.warning(f"{operation}: storage_error={exc}")
        return _error(400, "Could not save bank data")
    logger.exception(f"{operation}: unexpected failure")
    return _error(400, "Bank request failed")


@app.post("/create-link-token")
def create_link_token(
    data: LinkTokenIn,
    request: Request,
    db: Session = Depends(get_db),
    gateway: AggregatorGateway = Depends(get_gateway),
):
    try:
        user = _bridge_user(request, db, data.user_id)
        link_token = BankLinkService(db, user, gateway).create_link_token()
    except Exception as exc:
        return _bridge_failure("create_link_token", exc)
    return {"link_token": link_token}


@app.post("/exchange-token")
def exchange_token(
    data: ExchangeTokenIn,
    request: Request,
    db: Session = Depends(get_db),
    gateway: AggregatorGateway = Depends(get_gateway),
):
    try:
        user = _bridge_user(request, db, data.user_id)
        report = BankLinkService(
            db, user, gateway, get_mapping_table()
        ).exchange_and_sync(data.public_token)
    except Exception as exc:
        return _bridge_failure("exchange_token", exc)
    return report.as_dict()


@app.post("/sync")
def sync_bank(
    data: SyncIn,
    user: SessionContext = Depends(current_user),
    db: Session = Depends(get_db),
    gateway: AggregatorGateway = Depends(get_gateway),
):
    try:
        report = BankLinkService(db, user, gateway, get_mapping_table()).sync(
            data.item_id
        )
    except Exception as exc:
        return _bridge_failure("sync", exc)
    return report.as_dict()
