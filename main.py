import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ai import GeminiClient
from auth import (
    AllowAllGate,
    IdentityProvider,
    SecurityGate,
    SignedTokenIdentityProvider,
    enforce,
)
from balances import from_cents
from config import get_settings
from database import SessionLocal, init_db
from errors import (
    Blocked,
    ExtractionFailure,
    FinanceError,
    NotFound,
    RateLimited,
    TransientExternalFailure,
    Unauthorized,
    ValidationFailed,
)
from models import Account, Transaction, TransactionType, User
from receipts import ReceiptScanner
from scheduler import SchedulerManager
from schemas import AccountIn, BudgetIn, BulkDeleteIn, TransactionIn
from services import (
    AccountService,
    BudgetService,
    TransactionFilters,
    TransactionService,
    UserService,
)


logger = logging.getLogger(__name__)


def _narrator_factory():
    if not get_settings().gemini_api_key:
        return None
    return GeminiClient()


scheduler_manager = SchedulerManager(narrator_factory=_narrator_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    scheduler_manager.start()
    try:
        yield
    finally:
        scheduler_manager.stop()


app = FastAPI(title="Finance", lifespan=lifespan)

ERROR_STATUS = {
    Unauthorized: 401,
    NotFound: 404,
    ValidationFailed: 400,
    RateLimited: 429,
    Blocked: 403,
    ExtractionFailure: 502,
    TransientExternalFailure: 503,
}


@app.exception_handler(FinanceError)
async def finance_error_handler(request: Request, exc: FinanceError) -> JSONResponse:
    status_code = 500
    for error_cls, code in ERROR_STATUS.items():
        if isinstance(exc, error_cls):
            status_code = code
            break
    return JSONResponse(
        status_code=status_code, content={"error": exc.kind, "detail": str(exc)}
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_identity_provider() -> IdentityProvider:
    return SignedTokenIdentityProvider()


def get_security_gate() -> SecurityGate:
    return AllowAllGate()


def get_receipt_scanner() -> ReceiptScanner:
    return ReceiptScanner(GeminiClient())




def current_user(
    request: Request,
    db: Session = Depends(get_db),
    identity_provider: IdentityProvider = Depends(get_identity_provider),
) -> User:
    header = request.headers.get("Authorization", "")
    token = header[7:].strip() if header.lower().startswith("bearer ") else None
    identity = identity_provider.resolve(token)
    if identity is None:
        raise Unauthorized("Unauthorized")
    return UserService(db).sync(identity)


def account_out(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "balance": str(from_cents(account.balance_cents)),
        "is_default": account.is_default,
    }


def transaction_out(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "type": txn.type.value,
        "amount": str(from_cents(txn.amount_cents)),
        "date": txn.date.isoformat(),
        "description": txn.description,
        "category": txn.category,
        "receipt_url": txn.receipt_url,
        "is_recurring": txn.is_recurring,
        "recurring_interval": (
            txn.recurring_interval.value if txn.recurring_interval else None
        ),
        "next_recurring_date": (
            txn.next_recurring_date.isoformat() if txn.next_recurring_date else None
        ),
        "status": txn.status.value,
    }


def _balance_of(db: Session, account_id: int) -> str:
    account = db.get(Account, account_id)
    db.refresh(account)
    return str(from_cents(account.balance_cents))


@app.get("/api/accounts")
def list_accounts(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return {"items": [account_out(a) for a in AccountService(db, user.id).list()]}


@app.post("/api/accounts", status_code=201)
def create_account(
    data: AccountIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return account_out(AccountService(db, user.id).create(data))


@app.post("/api/accounts/{account_id}/default")
def set_default_account(
    account_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return account_out(AccountService(db, user.id).set_default(account_id))


@app.get("/api/accounts/{account_id}/balance-check")
def check_account_balance(
    account_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    service = AccountService(db, user.id)
    account = service.get(account_id)
    replayed = service.recompute_balance(account_id)
    return {
        "account_id": account_id,
        "cached": str(from_cents(account.balance_cents)),
        "replayed": str(from_cents(replayed)),
        "consistent": replayed == account.balance_cents,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    gate: SecurityGate = Depends(get_security_gate),
):
    enforce(gate.protect(user.external_id, requested=1))
    txn = TransactionService(db, user.id).create(data)
    return {"data": transaction_out(txn), "balance": _balance_of(db, txn.account_id)}


@app.get("/api/transactions")
def list_transactions(
    account_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    recurring: Optional[bool] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    page: int = 1,
    limit: int = 50,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    filters = TransactionFilters(
        account_id=account_id,
        type=type,
        category=category,
        is_recurring=recurring,
        start=start,
        end=end,
    )
    items = TransactionService(db, user.id).list(
        filters, limit=limit + 1, offset=(page - 1) * limit
    )
    has_more = len(items) > limit
    return {
        "items": [transaction_out(txn) for txn in items[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    return transaction_out(TransactionService(db, user.id).get(transaction_id))


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).update(transaction_id, data)
    return {"data": transaction_out(txn), "balance": _balance_of(db, txn.account_id)}


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    balance = TransactionService(db, user.id).delete(transaction_id)
    return {"deleted": transaction_id, "balance": str(from_cents(balance))}


@app.post("/api/transactions/bulk-delete")
def bulk_delete_transactions(
    data: BulkDeleteIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    count = TransactionService(db, user.id).bulk_delete(data.transaction_ids)
    return {"deleted": count}


@app.get("/api/budget")
def get_budget(user: User = Depends(current_user), db: Session = Depends(get_db)):
    progress = BudgetService(db, user.id).progress()
    if progress is None:
        return {"budget": None}
    return {
        "budget": str(from_cents(progress.budget_cents)),
        "spent": str(from_cents(progress.spent_cents)),
        "remaining": str(from_cents(progress.remaining_cents)),
        "percentage_used": round(progress.ratio * 100, 1),
        "account_id": progress.account_id,
    }


@app.put("/api/budget")
def update_budget(
    data: BudgetIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    budget = BudgetService(db, user.id).upsert(data)
    return {"budget": str(from_cents(budget.amount_cents))}


@app.post("/api/receipts/scan")
async def scan_receipt(
    file: UploadFile = File(...),
    user: User = Depends(current_user),
    scanner: ReceiptScanner = Depends(get_receipt_scanner),
):
    image_bytes = await file.read()
    try:
        receipt = await run_in_threadpool(
            scanner.extract, image_bytes, file.content_type
        )
    except ExtractionFailure as exc:
        logger.warning(f"receipt_scan_failed: user_id={user.id} error={exc}")
        receipt = None
    if receipt is None:
        return {
            "data": None,
            "message": "No receipt data extracted, please enter manually",
        }
    return {"data": receipt.model_dump(mode="json")}
