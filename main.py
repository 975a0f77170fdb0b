import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth import read_access_token
from config import get_settings
from database import SessionLocal
from errors import LedgerError
from models import TransactionType
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    Pagination,
    TagService,
    TransactionFilters,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(authorization: Optional[str] = Header(default=None)) -> int:
    scheme, _, token = (authorization or "").partition(" ")
    user_id = None
    if scheme.lower() == "bearer" and token.strip():
        user_id = read_access_token(token.strip())
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_id


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"success": False, "error": {"status": status, "message": message}},
    )


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    logger.info(
        f"request_rejected: path={request.url.path} status={exc.status_code} "
        f"message={exc}"
    )
    return _error(exc.status_code, str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(422, str(exc))


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return _error(exc.status_code, str(exc.detail))


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_dump(item) for item in value]
    return jsonable_encoder(value)


def ok(data: Any = None, meta: Any = None, status_code: int = 200) -> JSONResponse:
    content: dict[str, Any] = {"success": True, "data": _dump(data)}
    if meta is not None:
        content["meta"] = _dump(meta)
    return JSONResponse(status_code=status_code, content=content)


@app.get("/finance/accounts")
def list_accounts(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok(AccountService(db, user_id).list_all())


@app.post("/finance/accounts")
def create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(AccountService(db, user_id).create(payload), status_code=201)


@app.get("/finance/accounts/{account_id}")
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(AccountService(db, user_id).get(account_id))


@app.patch("/finance/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(AccountService(db, user_id).update(account_id, payload))


@app.delete("/finance/accounts/{account_id}")
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    AccountService(db, user_id).delete(account_id)
    return ok({"id": account_id})


@app.get("/finance/categories")
def list_categories(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok(CategoryService(db, user_id).list_all())


@app.get("/finance/categories/tree")
def category_tree(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok(CategoryService(db, user_id).tree())


@app.post("/finance/categories")
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(CategoryService(db, user_id).create(payload), status_code=201)


@app.patch("/finance/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(CategoryService(db, user_id).update(category_id, payload))


@app.delete("/finance/categories/{category_id}")
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    CategoryService(db, user_id).delete(category_id)
    return ok({"id": category_id})


@app.get("/finance/tags")
def list_tags(db: Session = Depends(get_db), user_id: int = Depends(current_user_id)):
    return ok(TagService(db, user_id).list_all())


@app.delete("/finance/tags/{tag_id}")
def delete_tag(
    tag_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    TagService(db, user_id).delete(tag_id)
    return ok({"id": tag_id})


@app.get("/finance/transactions")
def list_transactions(
    type: Optional[List[TransactionType]] = Query(default=None),
    account_id: Optional[int] = Query(default=None, alias="accountId"),
    category_id: Optional[int] = Query(default=None, alias="categoryId"),
    date_from: Optional[datetime] = Query(default=None, alias="from"),
    date_to: Optional[datetime] = Query(default=None, alias="to"),
    min_amount: Optional[Decimal] = Query(default=None, alias="minAmount"),
    max_amount: Optional[Decimal] = Query(default=None, alias="maxAmount"),
    tags: Optional[List[str]] = Query(default=None),
    q: Optional[str] = None,
    page: Optional[int] = None,
    page_size: Optional[int] = Query(default=None, alias="pageSize"),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    tag_names: list[str] = []
    for raw in tags or []:
        tag_names.extend(part for part in raw.split(",") if part.strip())
    filters = TransactionFilters(
        types=list(type or []),
        account_id=account_id,
        category_id=category_id,
        date_from=date_from,
        date_to=date_to,
        min_amount=min_amount,
        max_amount=max_amount,
        tags=tag_names,
        query=q.strip() if q and q.strip() else None,
    )
    items, meta = TransactionService(db, user_id).list(
        filters, Pagination.from_params(page, page_size)
    )
    return ok(items, meta=meta)


@app.post("/finance/transactions")
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(TransactionService(db, user_id).create(payload), status_code=201)


@app.get("/finance/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(TransactionService(db, user_id).get(transaction_id))


@app.patch("/finance/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(TransactionService(db, user_id).update(transaction_id, payload))


@app.delete("/finance/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    TransactionService(db, user_id).delete(transaction_id)
    return ok({"id": transaction_id})


@app.get("/finance/budgets")
def list_budgets(
    year: Optional[int] = Query(default=None, ge=2000, le=3000),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(BudgetService(db, user_id).list(year=year, month=month))


@app.post("/finance/budgets")
def create_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(BudgetService(db, user_id).create(payload), status_code=201)


@app.get("/finance/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(BudgetService(db, user_id).get(budget_id))


@app.patch("/finance/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(BudgetService(db, user_id).update(budget_id, payload))


@app.delete("/finance/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    BudgetService(db, user_id).delete(budget_id)
    return ok({"id": budget_id})


def main() -> None:
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
