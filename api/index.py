import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from engagement.completions import CompletionMachine
from engagement.errors import (
    AlreadyCompletedError,
    NotMemberError,
    OracleUnavailableError,
    TaskNotAvailableError,
    TaskNotFoundError,
    VerificationAttemptsExceededError,
)
from engagement.models import (
    Completion,
    CreateTaskRequest,
    ReferralVerificationResult,
    SweepReport,
    Task,
    VerificationResult,
    VerifyReferralRequest,
    VerifyTaskRequest,
)
from engagement.oracle import LoggingNotifier, MembershipOracle, Notifier, TelegramMembershipOracle, TelegramNotifier
from engagement.referrals import ReferralEngine
from engagement.retention import RetentionAuditor, RetentionScheduler
from engagement.task_engine import TaskEngine
from ledger.config import configure_logging, settings
from ledger.models import (
    Account,
    AdminStats,
    AppSettings,
    DailyBonusResponse,
    DepositRequest,
    LedgerHistoryResponse,
    RegisterAccountRequest,
    SettingsUpdate,
    Transaction,
    TransactionType,
    UserBalance,
    WithdrawRequest,
    utcnow,
)
from ledger.service import (
    AccountNotFoundError,
    DailyBonusUnavailableError,
    LedgerService,
    LedgerServiceError,
    TransactionNotFoundError,
)
from ledger.store import ConcurrentModificationError, InMemoryStorage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    ledger: LedgerService
    tasks: TaskEngine
    completions: CompletionMachine
    referrals: ReferralEngine
    auditor: RetentionAuditor
    scheduler: RetentionScheduler


def build_services(
    oracle: Optional[MembershipOracle] = None,
    notifier: Optional[Notifier] = None,
    storage: Optional[InMemoryStorage] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    oracle = oracle or TelegramMembershipOracle(settings.TELEGRAM_BOT_TOKEN, timeout=settings.ORACLE_TIMEOUT_SECONDS)
    if notifier is None:
        notifier = TelegramNotifier(settings.TELEGRAM_BOT_TOKEN) if settings.TELEGRAM_BOT_TOKEN else LoggingNotifier()

    ledger = LedgerService(
        storage=storage,
        clock=clock,
        admin_telegram_ids=settings.ADMIN_TELEGRAM_IDS,
        currency=settings.CURRENCY,
    )
    ledger.initialize_settings()
    tasks = TaskEngine(ledger)
    completions = CompletionMachine(ledger, tasks, oracle, max_attempts=settings.MAX_VERIFICATION_ATTEMPTS)
    referrals = ReferralEngine(ledger, tasks, completions, oracle, settings.OFFICIAL_CHANNEL)
    auditor = RetentionAuditor(
        ledger, tasks, oracle, notifier, settings.OFFICIAL_CHANNEL, grace_period=settings.grace_period
    )
    scheduler = RetentionScheduler(auditor, interval_seconds=settings.RETENTION_INTERVAL_SECONDS)
    return Services(ledger, tasks, completions, referrals, auditor, scheduler)


services = build_services()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if not settings.TELEGRAM_BOT_TOKEN:
        logger.warning("TELEGRAM_BOT_TOKEN not set: membership checks will answer 503")
    if settings.RETENTION_SCHEDULER_ENABLED:
        services.scheduler.start()
    yield
    services.scheduler.stop()


app = FastAPI(
    title="Channel Rewards API",
    description="Channel-join rewards with an auditable balance ledger and retention clawbacks",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_admin(x_admin_token: str = Header(default="")) -> None:
    expected = settings.ADMIN_API_TOKEN
    if not expected or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


def _ledger_error(e: Exception) -> HTTPException:
    if isinstance(e, (AccountNotFoundError, TransactionNotFoundError, TaskNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ConcurrentModificationError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, OracleUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, VerificationAttemptsExceededError):
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {
        "status": "healthy",
        "service": "channel-rewards",
        "oracle_configured": bool(settings.TELEGRAM_BOT_TOKEN),
        "retention_scheduler": services.scheduler.running,
    }


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------

@app.post("/auth/telegram", response_model=Account, tags=["Users"])
def telegram_login(request: RegisterAccountRequest) -> Account:
    return services.referrals.register_account(request)


@app.get("/users/top-earners", response_model=list[Account], tags=["Users"])
def top_earners(limit: int = Query(default=10, ge=1, le=100)) -> list[Account]:
    return services.ledger.top_earners(limit)


@app.get("/users/{account_id}", response_model=Account, tags=["Users"])
def get_user(account_id: UUID) -> Account:
    try:
        return services.ledger.get_account(account_id)
    except AccountNotFoundError as e:
        raise _ledger_error(e)


@app.get("/users/{account_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(account_id: UUID) -> UserBalance:
    try:
        return services.ledger.get_balance(account_id)
    except AccountNotFoundError as e:
        raise _ledger_error(e)


@app.get("/users/{account_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(
    account_id: UUID,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> LedgerHistoryResponse:
    try:
        return services.ledger.get_ledger_history(account_id, limit, offset)
    except AccountNotFoundError as e:
        raise _ledger_error(e)


@app.post("/users/{account_id}/daily-checkin", response_model=DailyBonusResponse, tags=["Users"])
def daily_checkin(account_id: UUID) -> DailyBonusResponse:
    try:
        return services.ledger.claim_daily_bonus(account_id)
    except DailyBonusUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerServiceError as e:
        raise _ledger_error(e)


@app.get("/users/{account_id}/referrals", response_model=list[Account], tags=["Users"])
def list_referrals(account_id: UUID) -> list[Account]:
    try:
        return services.referrals.list_referrals(account_id)
    except AccountNotFoundError as e:
        raise _ledger_error(e)


# ----------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------

@app.get("/tasks", response_model=list[Task], tags=["Tasks"])
def list_tasks() -> list[Task]:
    return services.tasks.list_active()


@app.post("/tasks", response_model=Task, status_code=status.HTTP_201_CREATED, tags=["Tasks"])
def create_task(request: CreateTaskRequest) -> Task:
    try:
        return services.tasks.create_task(request)
    except LedgerServiceError as e:
        raise _ledger_error(e)


@app.get("/tasks/completions", response_model=list[Completion], tags=["Tasks"])
def list_completions(account_id: UUID) -> list[Completion]:
    return services.completions.list_for_account(account_id)


@app.get("/tasks/{task_id}", response_model=Task, tags=["Tasks"])
def get_task(task_id: UUID) -> Task:
    try:
        return services.tasks.get_task(task_id)
    except TaskNotFoundError as e:
        raise _ledger_error(e)


@app.post("/tasks/{task_id}/verify", response_model=VerificationResult, tags=["Tasks"])
def verify_task(task_id: UUID, request: VerifyTaskRequest) -> VerificationResult:
    try:
        return services.completions.verify(task_id, request.account_id)
    except AlreadyCompletedError as e:
        return VerificationResult(success=False, already_completed=True, error=str(e))
    except (TaskNotAvailableError, NotMemberError) as e:
        return VerificationResult(success=False, error=str(e))
    except (LedgerServiceError, TaskNotFoundError, OracleUnavailableError,
            VerificationAttemptsExceededError, ConcurrentModificationError) as e:
        raise _ledger_error(e)


@app.post("/referral/verify-channel", response_model=ReferralVerificationResult, tags=["Referrals"])
def verify_referral_channel(request: VerifyReferralRequest) -> ReferralVerificationResult:
    try:
        return services.referrals.verify_official_channel(request.account_id)
    except NotMemberError as e:
        return ReferralVerificationResult(success=False, error=str(e))
    except (LedgerServiceError, OracleUnavailableError,
            VerificationAttemptsExceededError, ConcurrentModificationError) as e:
        raise _ledger_error(e)


# ----------------------------------------------------------------------
# Transactions
# ----------------------------------------------------------------------

@app.get("/transactions", response_model=list[Transaction], tags=["Transactions"])
def list_transactions(account_id: UUID) -> list[Transaction]:
    return services.ledger.list_transactions(account_id)


@app.post("/transactions/deposit", response_model=Transaction, status_code=status.HTTP_201_CREATED,
          tags=["Transactions"])
def request_deposit(request: DepositRequest) -> Transaction:
    try:
        return services.ledger.request_deposit(request)
    except LedgerServiceError as e:
        raise _ledger_error(e)


@app.post("/transactions/withdraw", response_model=Transaction, status_code=status.HTTP_201_CREATED,
          tags=["Transactions"])
def request_withdrawal(request: WithdrawRequest) -> Transaction:
    try:
        return services.ledger.request_withdrawal(request)
    except (LedgerServiceError, ConcurrentModificationError) as e:
        raise _ledger_error(e)


@app.get("/settings", response_model=AppSettings, tags=["Settings"])
def get_settings() -> AppSettings:
    return services.ledger.get_settings()


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------

@app.put("/admin/settings", response_model=AppSettings, tags=["Admin"], dependencies=[Depends(require_admin)])
def update_settings(update: SettingsUpdate) -> AppSettings:
    return services.ledger.update_settings(update)


@app.get("/admin/stats", response_model=AdminStats, tags=["Admin"], dependencies=[Depends(require_admin)])
def admin_stats() -> AdminStats:
    return services.ledger.admin_stats(active_tasks=services.tasks.count_active())


@app.get("/admin/pending-deposits", response_model=list[Transaction], tags=["Admin"],
         dependencies=[Depends(require_admin)])
def pending_deposits() -> list[Transaction]:
    return services.ledger.list_pending(TransactionType.DEPOSIT)


@app.get("/admin/pending-withdrawals", response_model=list[Transaction], tags=["Admin"],
         dependencies=[Depends(require_admin)])
def pending_withdrawals() -> list[Transaction]:
    return services.ledger.list_pending(TransactionType.WITHDRAW)


@app.post("/admin/transactions/{transaction_id}/approve", response_model=Transaction, tags=["Admin"],
          dependencies=[Depends(require_admin)])
def approve_transaction(transaction_id: UUID) -> Transaction:
    try:
        return services.ledger.approve_transaction(transaction_id)
    except (LedgerServiceError, ConcurrentModificationError) as e:
        raise _ledger_error(e)


@app.post("/admin/transactions/{transaction_id}/reject", response_model=Transaction, tags=["Admin"],
          dependencies=[Depends(require_admin)])
def reject_transaction(transaction_id: UUID) -> Transaction:
    try:
        return services.ledger.reject_transaction(transaction_id)
    except (LedgerServiceError, ConcurrentModificationError) as e:
        raise _ledger_error(e)


@app.post("/admin/retention/run", response_model=SweepReport, tags=["Admin"],
          dependencies=[Depends(require_admin)])
def run_retention_sweep() -> SweepReport:
    report = services.scheduler.run_once()
    if report is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Retention sweep already running")
    return report


handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
