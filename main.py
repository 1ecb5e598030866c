import logging
from datetime import date

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from billing_cycle import classify_billing_month, cycle_dates
from database import SessionLocal, unit_of_work
from errors import (
    LedgerError,
    NotFoundError,
    ReferentialError,
    StateError,
    ValidationError,
)
from models import Budget
from recurrence import PendingTransactionGenerator
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    BillingCycleOut,
    BillingMonthOut,
    BudgetIn,
    BudgetOut,
    ConfirmOut,
    ConfirmScheduledIn,
    ContributionOut,
    ContributionResultOut,
    EnsureResultOut,
    GoalContributionIn,
    GoalIn,
    GoalOut,
    GoalUpdateIn,
    IncomeSourceIn,
    IncomeSourceOut,
    RecurringBillIn,
    RecurringBillOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    AccountService,
    GoalService,
    LedgerService,
    RecurringTemplateService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Shared Ledger")

ERROR_STATUS = {
    ValidationError: 400,
    ReferentialError: 403,
    NotFoundError: 404,
    StateError: 409,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = 400
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    logger.info(
        f"request_rejected: path={request.url.path} status={status_code} "
        f"error={type(exc).__name__}"
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    budget = Budget(name=payload.name)
    with unit_of_work(db):
        db.add(budget)
    return BudgetOut.model_validate(budget)


@app.get("/api/budgets/{budget_id}/accounts", response_model=list[AccountOut])
def list_accounts(budget_id: int, db: Session = Depends(get_db)):
    accounts = AccountService(db).list(budget_id)
    return [AccountOut.model_validate(a) for a in accounts]


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(payload: AccountIn, db: Session = Depends(get_db)):
    account = AccountService(db).create(payload)
    return AccountOut.model_validate(account)


@app.get("/api/budgets/{budget_id}/accounts/{account_id}", response_model=AccountOut)
def get_account(budget_id: int, account_id: int, db: Session = Depends(get_db)):
    account = AccountService(db).get(account_id, budget_id)
    return AccountOut.model_validate(account)


@app.post(
    "/api/budgets/{budget_id}/accounts/{account_id}/archive",
    response_model=AccountOut,
)
def archive_account(budget_id: int, account_id: int, db: Session = Depends(get_db)):
    account = AccountService(db).archive(account_id, budget_id)
    return AccountOut.model_validate(account)


@app.post(
    "/api/budgets/{budget_id}/months/{year}/{month}/pending",
    response_model=EnsureResultOut,
)
def ensure_pending(budget_id: int, year: int, month: int, db: Session = Depends(get_db)):
    if db.get(Budget, budget_id) is None:
        raise HTTPException(status_code=404, detail="Budget not found")
    result = PendingTransactionGenerator(db).ensure_pending_for_month(
        budget_id, year, month
    )
    return EnsureResultOut(
        created=result.created,
        expenses=result.expenses,
        income=result.income,
        already_existed=result.already_existed,
    )


@app.post(
    "/api/budgets/{budget_id}/pending/current", response_model=EnsureResultOut
)
def ensure_pending_current_month(budget_id: int, db: Session = Depends(get_db)):
    if db.get(Budget, budget_id) is None:
        raise HTTPException(status_code=404, detail="Budget not found")
    result = PendingTransactionGenerator(db).ensure_current_month(budget_id)
    return EnsureResultOut(
        created=result.created,
        expenses=result.expenses,
        income=result.income,
        already_existed=result.already_existed,
    )


@app.post("/api/transactions", response_model=list[TransactionOut], status_code=201)
def create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    created = LedgerService(db).create_transaction(payload)
    if not isinstance(created, list):
        created = [created]
    return [TransactionOut.model_validate(txn) for txn in created]


@app.post(
    "/api/budgets/{budget_id}/transactions/{transaction_id}/clear",
    response_model=TransactionOut,
)
def clear_transaction(
    budget_id: int, transaction_id: int, db: Session = Depends(get_db)
):
    txn = LedgerService(db).clear_transaction(transaction_id, budget_id)
    return TransactionOut.model_validate(txn)


@app.post(
    "/api/budgets/{budget_id}/transactions/{transaction_id}/reconcile",
    response_model=TransactionOut,
)
def reconcile_transaction(
    budget_id: int, transaction_id: int, db: Session = Depends(get_db)
):
    txn = LedgerService(db).reconcile_transaction(transaction_id, budget_id)
    return TransactionOut.model_validate(txn)


@app.post("/api/budgets/{budget_id}/confirm-scheduled", response_model=ConfirmOut)
def confirm_scheduled(
    budget_id: int, payload: ConfirmScheduledIn, db: Session = Depends(get_db)
):
    result = LedgerService(db).confirm_scheduled(budget_id, payload)
    return ConfirmOut(
        action=result.action,
        transaction=TransactionOut.model_validate(result.transaction),
    )


@app.post("/api/bills", response_model=RecurringBillOut, status_code=201)
def create_bill(payload: RecurringBillIn, db: Session = Depends(get_db)):
    bill = RecurringTemplateService(db).create_bill(payload)
    return RecurringBillOut.model_validate(bill)


@app.put("/api/bills/{bill_id}", response_model=RecurringBillOut)
def update_bill(bill_id: int, payload: RecurringBillIn, db: Session = Depends(get_db)):
    bill = RecurringTemplateService(db).update_bill(bill_id, payload)
    return RecurringBillOut.model_validate(bill)


@app.post("/api/income-sources", response_model=IncomeSourceOut, status_code=201)
def create_income_source(payload: IncomeSourceIn, db: Session = Depends(get_db)):
    source = RecurringTemplateService(db).create_income_source(payload)
    return IncomeSourceOut.model_validate(source)


@app.put("/api/income-sources/{source_id}", response_model=IncomeSourceOut)
def update_income_source(
    source_id: int, payload: IncomeSourceIn, db: Session = Depends(get_db)
):
    source = RecurringTemplateService(db).update_income_source(source_id, payload)
    return IncomeSourceOut.model_validate(source)


@app.get("/api/budgets/{budget_id}/bills", response_model=list[RecurringBillOut])
def list_bills(
    budget_id: int, include_inactive: bool = False, db: Session = Depends(get_db)
):
    bills = RecurringTemplateService(db).list_bills(budget_id, include_inactive)
    return [RecurringBillOut.model_validate(b) for b in bills]


@app.post(
    "/api/budgets/{budget_id}/bills/{bill_id}/deactivate",
    response_model=RecurringBillOut,
)
def deactivate_bill(budget_id: int, bill_id: int, db: Session = Depends(get_db)):
    bill = RecurringTemplateService(db).deactivate_bill(bill_id, budget_id)
    return RecurringBillOut.model_validate(bill)


@app.get(
    "/api/budgets/{budget_id}/income-sources", response_model=list[IncomeSourceOut]
)
def list_income_sources(
    budget_id: int, include_inactive: bool = False, db: Session = Depends(get_db)
):
    sources = RecurringTemplateService(db).list_income_sources(
        budget_id, include_inactive
    )
    return [IncomeSourceOut.model_validate(s) for s in sources]


@app.post(
    "/api/budgets/{budget_id}/income-sources/{source_id}/deactivate",
    response_model=IncomeSourceOut,
)
def deactivate_income_source(
    budget_id: int, source_id: int, db: Session = Depends(get_db)
):
    source = RecurringTemplateService(db).deactivate_income_source(
        source_id, budget_id
    )
    return IncomeSourceOut.model_validate(source)


@app.post("/api/goals", response_model=GoalOut, status_code=201)
def create_goal(payload: GoalIn, db: Session = Depends(get_db)):
    goal = GoalService(db).create_goal(payload)
    return GoalOut.model_validate(goal)


@app.patch("/api/budgets/{budget_id}/goals/{goal_id}", response_model=GoalOut)
def update_goal(
    budget_id: int, goal_id: int, payload: GoalUpdateIn, db: Session = Depends(get_db)
):
    goal = GoalService(db).update_goal(goal_id, budget_id, payload)
    return GoalOut.model_validate(goal)


@app.post("/api/budgets/{budget_id}/goals/{goal_id}/archive", response_model=GoalOut)
def archive_goal(budget_id: int, goal_id: int, db: Session = Depends(get_db)):
    goal = GoalService(db).archive(goal_id, budget_id)
    return GoalOut.model_validate(goal)


@app.post(
    "/api/goals/{goal_id}/contributions",
    response_model=ContributionResultOut,
    status_code=201,
)
def contribute_to_goal(
    goal_id: int, payload: GoalContributionIn, db: Session = Depends(get_db)
):
    result = GoalService(db).contribute(goal_id, payload)
    return ContributionResultOut(
        contribution=ContributionOut.model_validate(result.contribution),
        transaction=(
            TransactionOut.model_validate(result.transaction)
            if result.transaction is not None
            else None
        ),
        goal=GoalOut.model_validate(result.goal),
        just_completed=result.just_completed,
    )


@app.get("/api/billing-cycle", response_model=BillingCycleOut)
def billing_cycle(closing_day: int, year: int, month: int):
    cycle = cycle_dates(closing_day, year, month)
    return BillingCycleOut(start=cycle.start, end=cycle.end)


@app.get("/api/billing-month", response_model=BillingMonthOut)
def billing_month(transaction_date: date, closing_day: int):
    billing = classify_billing_month(transaction_date, closing_day)
    return BillingMonthOut(year=billing.year, month=billing.month)
