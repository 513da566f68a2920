import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import Session

from config import get_settings
from csrf import CSRF_HEADER, generate_csrf_token, validate_csrf_token
from database import StoreError, ledger
from filters import FilterSpec, build_filter_spec, lenient_int
from models import Account, Category, Transaction
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    LedgerOpenIn,
    TransactionEntryIn,
    TransactionIn,
    TransactionSearchIn,
    TransactionUpdate,
)
from services import (
    AccountInUse,
    AccountNotFound,
    AccountService,
    CategoryNotFound,
    CategoryService,
    CSVService,
    MetricsService,
    ReimbursementReport,
    ReimbursementService,
    SearchResult,
    TransactionNotFound,
    TransactionService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

NOT_FOUND_ERRORS = (AccountNotFound, CategoryNotFound, TransactionNotFound)


def get_db():
    with ledger.session() as db:
        yield db


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if not ledger.is_open:
        ledger.open(settings.database_url, create_if_missing=True)
    logger.info(f"startup: version={APP_VERSION} url={ledger.url}")


@app.on_event("shutdown")
def shutdown_event():
    ledger.close()


@app.exception_handler(StoreError)
def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NOT_FOUND_ERRORS):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AccountInUse):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def require_csrf(request: Request) -> None:
    if not validate_csrf_token(request.headers.get(CSRF_HEADER, "")):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def ledger_url(requested: str) -> str:
    """Map a requested ledger (file name or sqlite URL) to a file in the data dir."""
    data_dir = get_settings().data_dir
    target = requested.strip()
    if "://" in target:
        try:
            url = make_url(target)
        except ArgumentError as exc:
            raise HTTPException(status_code=400, detail="Invalid ledger URL") from exc
        if not url.drivername.startswith("sqlite"):
            raise HTTPException(status_code=400, detail="Only SQLite ledgers are supported")
        target = url.database or ""
    if not target or target == ":memory:":
        raise HTTPException(status_code=400, detail="Ledger file name is required")
    path = (data_dir / target).resolve()
    if not path.is_relative_to(data_dir):
        logger.warning(f"ledger_rejected: path={path}")
        raise HTTPException(
            status_code=400, detail="Ledger files must live in the data directory"
        )
    return f"sqlite:///{path}"


def filter_spec_from_request(request: Request) -> FilterSpec:
    params = request.query_params
    return build_filter_spec(
        query=params.get("q"),
        account_id=params.get("account_id"),
        date_from=params.get("date_from"),
        date_to=params.get("date_to"),
        tx_type=params.get("type"),
        sort_by=params.get("sort_by"),
        sort_dir=params.get("sort_dir"),
        limit=params.get("limit"),
        offset=params.get("offset"),
        period=params.get("period"),
    )


def filter_spec_from_payload(payload: TransactionSearchIn) -> FilterSpec:
    return build_filter_spec(
        query=payload.query,
        account_id=payload.account_id,
        date_from=payload.date_from,
        date_to=payload.date_to,
        tx_type=payload.tx_type,
        sort_by=payload.sort_by,
        sort_dir=payload.sort_dir,
        limit=payload.limit,
        offset=payload.offset,
        period=payload.period,
    )


def account_payload(account: Account, balance_cents: Optional[int] = None) -> dict:
    data = {
        "id": account.id,
        "name": account.name,
        "color": account.color,
        "kind": account.kind.value,
    }
    if balance_cents is not None:
        data["balance_cents"] = balance_cents
    return data


def category_payload(category: Category) -> dict:
    return {"id": category.id, "name": category.name}


def transaction_payload(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "date": txn.date.isoformat(),
        "category": txn.category.name if txn.category else None,
        "note": txn.note,
        "amount_cents": txn.amount_cents,
    }


def search_payload(result: SearchResult) -> dict:
    return {
        "items": [
            {**item, "date": item["date"].isoformat()} for item in result.items
        ],
        "total": result.total,
        "offset": result.offset,
        "limit": result.limit,
        "sums": result.sums.as_dict(),
    }


def report_payload(report: ReimbursementReport) -> dict:
    return {
        "account_id": report.account_id,
        "account_name": report.account_name,
        "current_balance_cents": report.current_balance_cents,
        "initial_carry_cents": report.initial_carry_cents,
        "period": report.period_label,
        "total_outstanding_cents": report.total_outstanding_cents,
        "rows": [
            {
                **transaction_payload(row.transaction),
                "adjusted_cents": row.adjusted_cents,
                "consumed_cents": row.consumed_cents,
                "coverage": row.note,
            }
            for row in report.rows
        ],
    }


def csv_response(csv_text: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/version")
def api_version():
    return {"version": APP_VERSION}


@app.get("/api/csrf-token")
def api_csrf_token():
    return {"header": CSRF_HEADER, "token": generate_csrf_token()}


@app.get("/api/ledger")
def api_ledger_status():
    return {"open": ledger.is_open, "url": ledger.url}


@app.post("/api/ledger/open")
def api_ledger_open(payload: LedgerOpenIn, request: Request):
    require_csrf(request)
    ledger.open(ledger_url(payload.database_url))
    return {"open": True, "url": ledger.url}


@app.post("/api/ledger/create", status_code=201)
def api_ledger_create(payload: LedgerOpenIn, request: Request):
    require_csrf(request)
    ledger.create(ledger_url(payload.database_url))
    return {"open": True, "url": ledger.url}


@app.post("/api/ledger/close")
def api_ledger_close(request: Request):
    require_csrf(request)
    ledger.close()
    return {"open": False, "url": None}


@app.get("/api/overview")
def api_overview(db: Session = Depends(get_db)):
    return MetricsService(db).overview()


@app.get("/api/accounts")
def api_accounts(db: Session = Depends(get_db)):
    return [
        account_payload(entry["account"], entry["balance_cents"])
        for entry in MetricsService(db).account_balances()
    ]


@app.post("/api/accounts", status_code=201)
def api_create_account(
    payload: AccountIn, request: Request, db: Session = Depends(get_db)
):
    require_csrf(request)
    try:
        account = AccountService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return account_payload(account)


@app.patch("/api/accounts/{account_id}")
def api_update_account(
    account_id: int,
    payload: AccountUpdate,
    request: Request,
    db: Session = Depends(get_db),
):
    require_csrf(request)
    try:
        account = AccountService(db).update(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return account_payload(account)


@app.delete("/api/accounts/{account_id}", status_code=204)
def api_delete_account(
    account_id: int, request: Request, db: Session = Depends(get_db)
):
    require_csrf(request)
    try:
        AccountService(db).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db)):
    return [category_payload(c) for c in CategoryService(db).list_all()]


@app.get("/api/categories/suggest")
def api_category_suggest(
    q: Optional[str] = None, limit: int = 8, db: Session = Depends(get_db)
):
    return CategoryService(db).suggest(q, limit=max(limit, 1))


@app.post("/api/categories", status_code=201)
def api_create_category(
    payload: CategoryIn, request: Request, db: Session = Depends(get_db)
):
    require_csrf(request)
    try:
        category = CategoryService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_payload(category)


@app.patch("/api/categories/{category_id}")
def api_rename_category(
    category_id: int,
    payload: CategoryIn,
    request: Request,
    db: Session = Depends(get_db),
):
    require_csrf(request)
    try:
        category = CategoryService(db).rename(category_id, payload.name)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_payload(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def api_delete_category(
    category_id: int, request: Request, db: Session = Depends(get_db)
):
    require_csrf(request)
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    spec = filter_spec_from_request(request)
    return search_payload(TransactionService(db).search(spec))


@app.post("/api/transactions/search")
def api_transactions_search(
    payload: TransactionSearchIn, db: Session = Depends(get_db)
):
    spec = filter_spec_from_payload(payload)
    return search_payload(TransactionService(db).search(spec))


@app.get("/api/transactions/aggregate")
def api_transactions_aggregate(request: Request, db: Session = Depends(get_db)):
    spec = filter_spec_from_request(request)
    return MetricsService(db).aggregate(spec).as_dict()


@app.get("/api/transactions/recent")
def api_recent_transactions(limit: int = 10, db: Session = Depends(get_db)):
    return [transaction_payload(t) for t in TransactionService(db).recent(limit)]


@app.get("/api/transactions/export.csv")
def api_export_transactions(request: Request, db: Session = Depends(get_db)):
    spec = filter_spec_from_request(request)
    raw_columns = request.query_params.get("columns")
    columns = (
        [c.strip() for c in raw_columns.split(",") if c.strip()]
        if raw_columns
        else None
    )
    csv_text = CSVService(db).export_search(spec, columns)
    start = spec.date_from.isoformat() if spec.date_from else "all"
    end = spec.date_to.isoformat() if spec.date_to else "all"
    return csv_response(csv_text, f"transactions_{start}_{end}.csv")


@app.get("/api/transactions/{transaction_id}")
def api_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_payload(txn)


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    payload: TransactionIn, request: Request, db: Session = Depends(get_db)
):
    require_csrf(request)
    try:
        txn = TransactionService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_payload(txn)


@app.post("/api/transactions/entry", status_code=201)
def api_create_entry(
    payload: TransactionEntryIn, request: Request, db: Session = Depends(get_db)
):
    require_csrf(request)
    try:
        created = TransactionService(db).create_entry(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [transaction_payload(t) for t in created]


@app.patch("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    request: Request,
    db: Session = Depends(get_db),
):
    require_csrf(request)
    try:
        txn = TransactionService(db).update(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_payload(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: int, request: Request, db: Session = Depends(get_db)
):
    require_csrf(request)
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/reimbursements")
def api_reimbursement_report(
    account_id: Optional[str] = None, db: Session = Depends(get_db)
):
    try:
        report = ReimbursementService(db).report(lenient_int(account_id))
    except ValueError as exc:
        raise http_error(exc) from exc
    return report_payload(report)


@app.get("/api/reimbursements/export.csv")
def api_export_reimbursement(
    account_id: Optional[str] = None, db: Session = Depends(get_db)
):
    try:
        csv_text = CSVService(db).export_reimbursement(lenient_int(account_id))
    except ValueError as exc:
        raise http_error(exc) from exc
    return csv_response(csv_text, f"reimbursement_{account_id}.csv")


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
