import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from budget import total_amount
from config import get_settings
from csv_utils import export_transactions
from database import SessionLocal, get_engine, init_db, shutdown
from errors import ConstraintViolation, InvalidArgument, NotFound, StorageFailure
from schemas import (
    AccountAuditOut,
    AccountIn,
    AccountOut,
    BudgetOut,
    BulkLoadOut,
    FixturesIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdateIn,
    UserDetailOut,
    UserIn,
    UserOut,
)
from services import (
    AccountService,
    FixtureService,
    LedgerAuditService,
    TransactionService,
    UserService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.on_event("startup")
def startup_event():
    logging.basicConfig(level=get_settings().log_level)
    init_db(get_engine())


@app.on_event("shutdown")
def shutdown_event():
    shutdown()


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400, content={"detail": jsonable_encoder(exc.errors())}
    )


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _error_response(404, exc)


@app.exception_handler(InvalidArgument)
async def invalid_argument_handler(request: Request, exc: InvalidArgument):
    return _error_response(400, exc)


@app.exception_handler(ConstraintViolation)
async def constraint_violation_handler(request: Request, exc: ConstraintViolation):
    return _error_response(400, exc)


@app.exception_handler(StorageFailure)
async def storage_failure_handler(request: Request, exc: StorageFailure):
    logger.error(f"storage_failure: path={request.url.path} error={exc}")
    return _error_response(500, exc)


@app.get("/users", response_model=list[UserOut])
def list_users(db: Session = Depends(get_db)):
    return UserService(db).list_all()


@app.post("/users", response_model=UserOut, status_code=201)
def create_user(data: UserIn, db: Session = Depends(get_db)):
    return UserService(db).create(data)


@app.get("/users/{user_id}", response_model=UserDetailOut)
def get_user(user_id: int, db: Session = Depends(get_db)):
    return UserService(db).get(user_id)


@app.get("/accounts", response_model=list[AccountOut])
def list_accounts(user_id: Optional[int] = None, db: Session = Depends(get_db)):
    service = AccountService(db)
    if user_id is not None:
        return service.list_for_user(user_id)
    return service.list_all()


@app.post("/accounts", response_model=AccountOut, status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).create(data)


@app.get("/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: int, db: Session = Depends(get_db)):
    return AccountService(db).get(account_id)


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(
    account_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    service = TransactionService(db)
    if account_id is not None:
        return service.list_for_account(account_id)
    limit = min(max(limit, 1), 1000)
    return service.list_all(limit=limit, offset=max(offset, 0))


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    return TransactionService(db).create(data)


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return TransactionService(db).get(transaction_id)


@app.patch("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int, data: TransactionUpdateIn, db: Session = Depends(get_db)
):
    return TransactionService(db).update(transaction_id, data)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    TransactionService(db).delete(transaction_id)
    return Response(status_code=204)


@app.get("/accounts/{account_id}/budgets/{amount}", response_model=BudgetOut)
def transactions_within_budget(
    account_id: int, amount: int, db: Session = Depends(get_db)
):
    selected = TransactionService(db).within_budget(account_id, amount)
    return BudgetOut(
        account_id=account_id,
        budget_cents=amount,
        total_cents=total_amount(selected),
        transactions=[TransactionOut.model_validate(txn) for txn in selected],
    )


@app.post("/accounts/{account_id}/fixtures", response_model=BulkLoadOut)
def generate_fixtures(
    account_id: int, data: FixturesIn, db: Session = Depends(get_db)
):
    result = FixtureService(db).generate_transactions(account_id, data.count)
    return BulkLoadOut(
        account_id=result.account_id,
        requested=result.requested,
        inserted=result.inserted,
        balance_delta_cents=result.balance_delta_cents,
    )


@app.get("/accounts/{account_id}/audit", response_model=AccountAuditOut)
def audit_account(account_id: int, db: Session = Depends(get_db)):
    audit = LedgerAuditService(db).check_account(account_id)
    return AccountAuditOut(
        account_id=audit.account_id,
        expected_balance_cents=audit.expected_balance_cents,
        actual_balance_cents=audit.actual_balance_cents,
        expected_transaction_count=audit.expected_transaction_count,
        actual_transaction_count=audit.actual_transaction_count,
        is_consistent=audit.is_consistent,
    )


@app.get("/accounts/{account_id}/exports")
def export_account_transactions(account_id: int, db: Session = Depends(get_db)):
    transactions = TransactionService(db).list_for_account(account_id)
    csv_text = export_transactions(transactions)
    filename = f"account_{account_id}_transactions.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
