import logging
import secrets
import string
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID

from .models import (
    Account,
    AdminStats,
    AppSettings,
    DailyBonusResponse,
    DepositRequest,
    LedgerHistoryResponse,
    RegisterAccountRequest,
    SettingsUpdate,
    Transaction,
    TransactionMeta,
    TransactionStatus,
    TransactionType,
    UserBalance,
    WithdrawRequest,
    to_money,
    utcnow,
)
from .store import (
    ACCOUNTS,
    SETTINGS,
    TRANSACTIONS,
    ConcurrentModificationError,
    InMemoryStorage,
)

logger = logging.getLogger(__name__)

MAX_CAS_RETRIES = 3
DAILY_CHECKIN_INTERVAL = timedelta(hours=24)
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 6


class LedgerServiceError(Exception):
    pass


class AccountNotFoundError(LedgerServiceError):
    pass


class TransactionNotFoundError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


class BelowMinimumError(LedgerServiceError):
    pass


class DailyBonusUnavailableError(LedgerServiceError):
    def __init__(self, next_claim_at: datetime):
        super().__init__(f"Daily bonus already claimed, next claim at {next_claim_at.isoformat()}")
        self.next_claim_at = next_claim_at


def _positive(amount) -> Decimal:
    amount = to_money(amount)
    if amount <= 0:
        raise LedgerServiceError(f"Amount must be positive, got {amount}")
    return amount


class LedgerService:
    """
    Ledger Operations: every balance mutation is a locked, version-checked
    read-modify-write of one account paired with one Transaction record.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        clock: Callable[[], datetime] = utcnow,
        admin_telegram_ids: Iterable[str] = (),
        currency: str = "BDT",
    ):
        self.storage = storage or InMemoryStorage()
        self.clock = clock
        self.admin_telegram_ids = set(admin_telegram_ids)
        self.currency = currency

    # ------------------------------------------------------------------
    # Ledger operations
    # ------------------------------------------------------------------

    def credit(
        self,
        account_id: UUID,
        amount: Decimal,
        tx_type: TransactionType,
        meta: Optional[TransactionMeta] = None,
    ) -> Transaction:
        return self._record(account_id, _positive(amount), tx_type, meta or TransactionMeta())

    def debit(
        self,
        account_id: UUID,
        amount: Decimal,
        tx_type: TransactionType,
        meta: Optional[TransactionMeta] = None,
        allow_overdraft: bool = False,
    ) -> Transaction:
        """Debit ``amount``; ``allow_overdraft`` is the admin task-funding bypass and nothing else."""
        return self._record(
            account_id, -_positive(amount), tx_type, meta or TransactionMeta(), allow_overdraft=allow_overdraft
        )

    def _record(
        self,
        account_id: UUID,
        delta: Decimal,
        tx_type: TransactionType,
        meta: TransactionMeta,
        allow_overdraft: bool = False,
        changes: Optional[dict] = None,
    ) -> Transaction:
        key = meta.idempotency_key
        with self.storage.lock("account", account_id):
            if key:
                existing = self._check_idempotency(key)
                if existing:
                    logger.info("Idempotent replay of %s for account %s", key, account_id)
                    return existing

            account = self._adjust_balance(account_id, delta, allow_overdraft=allow_overdraft, changes=changes)
            transaction = Transaction(
                account_id=account_id,
                type=tx_type,
                amount=abs(delta),
                status=meta.status,
                method=meta.method,
                wallet_address=meta.wallet_address,
                external_transaction_id=meta.external_transaction_id,
                note=meta.note,
                idempotency_key=key,
                balance_after=account.balance,
                created_at=self.clock(),
            )
            if key and not self.storage.claim_idempotency_key(key, transaction.id):
                raise ConcurrentModificationError(f"Idempotency key {key} claimed concurrently")
            return self.storage.insert(TRANSACTIONS, transaction)

    def _adjust_balance(
        self,
        account_id: UUID,
        delta: Decimal,
        allow_overdraft: bool = False,
        changes: Optional[dict] = None,
    ) -> Account:
        for attempt in range(1, MAX_CAS_RETRIES + 1):
            account = self.get_account(account_id)
            new_balance = to_money(account.balance + delta)
            if new_balance < 0 and not allow_overdraft:
                raise InsufficientBalanceError(
                    f"Insufficient balance: {account.balance} available, {abs(delta)} required"
                )
            if new_balance < 0:
                logger.warning("Admin overdraft on account %s: balance %s", account_id, new_balance)
            account.balance = new_balance
            for field_name, value in (changes or {}).items():
                setattr(account, field_name, value)
            try:
                return self.storage.put(ACCOUNTS, account, expected_version=account.version)
            except ConcurrentModificationError:
                if attempt == MAX_CAS_RETRIES:
                    raise
                logger.debug("Balance write conflict on %s, retry %d", account_id, attempt)
        raise ConcurrentModificationError(f"Account {account_id} could not be updated")

    def _check_idempotency(self, key: str) -> Optional[Transaction]:
        transaction_id = self.storage.lookup_idempotency_key(key)
        if transaction_id:
            return self.storage.get(TRANSACTIONS, transaction_id)
        return None

    def find_transaction_by_key(self, key: str) -> Optional[Transaction]:
        return self._check_idempotency(key)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(
        self,
        request: RegisterAccountRequest,
        referred_by: Optional[UUID] = None,
    ) -> Account:
        with self.storage.lock("telegram", request.telegram_id):
            existing = self.get_account_by_telegram_id(request.telegram_id)
            if existing:
                return existing

            account = Account(
                telegram_id=request.telegram_id,
                username=request.username,
                first_name=request.first_name,
                last_name=request.last_name,
                photo_url=request.photo_url,
                referral_code=self._generate_referral_code(),
                referred_by=referred_by,
                referral_bonus_pending=referred_by is not None,
                is_admin=request.telegram_id in self.admin_telegram_ids,
                created_at=self.clock(),
            )
            account = self.storage.insert(ACCOUNTS, account)
            logger.info("Created account %s (telegram %s)", account.id, account.telegram_id)
            return account

    def _generate_referral_code(self) -> str:
        while True:
            code = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
            if self.get_account_by_referral_code(code) is None:
                return code

    def get_account(self, account_id: UUID) -> Account:
        account = self.storage.get(ACCOUNTS, account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def find_account(self, account_id: Optional[UUID]) -> Optional[Account]:
        if account_id is None:
            return None
        return self.storage.get(ACCOUNTS, account_id)

    def get_account_by_telegram_id(self, telegram_id: str) -> Optional[Account]:
        return self.storage.find_one(ACCOUNTS, lambda a: a.telegram_id == telegram_id)

    def get_account_by_referral_code(self, code: str) -> Optional[Account]:
        code = code.strip().upper()
        return self.storage.find_one(ACCOUNTS, lambda a: a.referral_code == code)

    def list_referrals(self, account_id: UUID) -> list[Account]:
        referrals = self.storage.query(ACCOUNTS, lambda a: a.referred_by == account_id)
        referrals.sort(key=lambda a: a.created_at, reverse=True)
        return referrals

    def top_earners(self, limit: int = 10) -> list[Account]:
        accounts = self.storage.query(ACCOUNTS)
        accounts.sort(key=lambda a: a.balance, reverse=True)
        return accounts[:limit]

    # ------------------------------------------------------------------
    # Deposits and withdrawals
    # ------------------------------------------------------------------

    def request_deposit(self, request: DepositRequest) -> Transaction:
        self.get_account(request.account_id)
        amount = to_money(request.amount)
        minimum = self.get_settings().min_deposit_amount
        if amount < minimum:
            raise BelowMinimumError(f"Minimum deposit is {minimum} {self.currency}")

        transaction = Transaction(
            account_id=request.account_id,
            type=TransactionType.DEPOSIT,
            amount=amount,
            status=TransactionStatus.PENDING,
            method=request.method,
            external_transaction_id=request.transaction_id,
            created_at=self.clock(),
        )
        transaction = self.storage.insert(TRANSACTIONS, transaction)
        logger.info("Deposit %s of %s requested by %s", transaction.id, amount, request.account_id)
        return transaction

    def request_withdrawal(self, request: WithdrawRequest) -> Transaction:
        amount = to_money(request.amount)
        minimum = self.get_settings().min_withdraw_amount
        if amount < minimum:
            raise BelowMinimumError(f"Minimum withdrawal is {minimum} {self.currency}")

        # Funds leave the balance now and come back if the request is rejected.
        return self.debit(
            request.account_id,
            amount,
            TransactionType.WITHDRAW,
            TransactionMeta(
                status=TransactionStatus.PENDING,
                method=request.method,
                wallet_address=request.wallet_address,
            ),
        )

    def approve_transaction(self, transaction_id: UUID) -> Transaction:
        with self.storage.lock("transaction", transaction_id):
            transaction = self._require_pending(transaction_id, "approve")
            if transaction.type == TransactionType.DEPOSIT:
                with self.storage.lock("account", transaction.account_id):
                    account = self._adjust_balance(transaction.account_id, transaction.amount)
                transaction.balance_after = account.balance
            transaction.status = TransactionStatus.APPROVED
            transaction = self.storage.put(TRANSACTIONS, transaction, expected_version=transaction.version)
        logger.info("Approved %s %s", transaction.type.value, transaction_id)
        return transaction

    def reject_transaction(self, transaction_id: UUID) -> Transaction:
        with self.storage.lock("transaction", transaction_id):
            transaction = self._require_pending(transaction_id, "reject")
            if transaction.type == TransactionType.WITHDRAW:
                with self.storage.lock("account", transaction.account_id):
                    account = self._adjust_balance(transaction.account_id, transaction.amount)
                transaction.balance_after = account.balance
            transaction.status = TransactionStatus.REJECTED
            transaction = self.storage.put(TRANSACTIONS, transaction, expected_version=transaction.version)
        logger.info("Rejected %s %s", transaction.type.value, transaction_id)
        return transaction

    def _require_pending(self, transaction_id: UUID, action: str) -> Transaction:
        transaction = self.get_transaction(transaction_id)
        if transaction.type not in (TransactionType.DEPOSIT, TransactionType.WITHDRAW):
            raise InvalidStateTransitionError(f"Cannot {action} a {transaction.type.value} transaction")
        if transaction.status != TransactionStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Cannot {action} transaction in {transaction.status.value} state"
            )
        return transaction

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        transaction = self.storage.get(TRANSACTIONS, transaction_id)
        if not transaction:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def list_pending(self, tx_type: TransactionType) -> list[Transaction]:
        pending = self.storage.query(
            TRANSACTIONS, lambda t: t.type == tx_type and t.status == TransactionStatus.PENDING
        )
        pending.sort(key=lambda t: t.created_at)
        return pending

    # ------------------------------------------------------------------
    # Daily check-in
    # ------------------------------------------------------------------

    def claim_daily_bonus(self, account_id: UUID) -> DailyBonusResponse:
        reward = self.get_settings().daily_checkin_reward
        with self.storage.lock("account", account_id):
            account = self.get_account(account_id)
            now = self.clock()
            last = account.daily_checkin_last_claimed
            if last is not None and now < last + DAILY_CHECKIN_INTERVAL:
                raise DailyBonusUnavailableError(last + DAILY_CHECKIN_INTERVAL)

            transaction = self._record(
                account_id,
                _positive(reward),
                TransactionType.DAILY_BONUS,
                TransactionMeta(idempotency_key=f"daily_bonus:{account_id}:{now.date().isoformat()}"),
                changes={"daily_checkin_last_claimed": now},
            )
        return DailyBonusResponse(
            transaction=transaction,
            next_claim_at=now + DAILY_CHECKIN_INTERVAL,
            message="Daily bonus claimed",
        )

    # ------------------------------------------------------------------
    # Balances and history
    # ------------------------------------------------------------------

    def get_balance(self, account_id: UUID) -> UserBalance:
        account = self.get_account(account_id)
        entries = self.storage.query(TRANSACTIONS, lambda t: t.account_id == account_id)
        last_entry = max(entries, key=lambda t: t.created_at) if entries else None
        return UserBalance(
            account_id=account_id,
            currency=self.currency,
            current_balance=account.balance,
            total_entries=len(entries),
            last_transaction_at=last_entry.created_at if last_entry else None,
        )

    def list_transactions(self, account_id: UUID) -> list[Transaction]:
        entries = self.storage.query(TRANSACTIONS, lambda t: t.account_id == account_id)
        entries.sort(key=lambda t: t.created_at, reverse=True)
        return entries

    def get_ledger_history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        account = self.get_account(account_id)
        all_entries = self.list_transactions(account_id)
        return LedgerHistoryResponse(
            account_id=account_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=account.balance,
        )

    def admin_stats(self, active_tasks: int = 0) -> AdminStats:
        transactions = self.storage.query(TRANSACTIONS)

        def approved_sum(tx_type: TransactionType) -> Decimal:
            return to_money(sum(
                (t.amount for t in transactions if t.type == tx_type and t.status == TransactionStatus.APPROVED),
                Decimal("0"),
            ))

        def pending_count(tx_type: TransactionType) -> int:
            return sum(1 for t in transactions if t.type == tx_type and t.status == TransactionStatus.PENDING)

        return AdminStats(
            total_users=self.storage.count(ACCOUNTS),
            total_deposits=approved_sum(TransactionType.DEPOSIT),
            total_withdrawals=approved_sum(TransactionType.WITHDRAW),
            pending_deposits=pending_count(TransactionType.DEPOSIT),
            pending_withdrawals=pending_count(TransactionType.WITHDRAW),
            active_tasks=active_tasks,
        )

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def initialize_settings(self) -> AppSettings:
        with self.storage.lock(SETTINGS):
            current = self.storage.get(SETTINGS, "default")
            if current:
                return current
            logger.info("Initializing default app settings")
            return self.storage.insert(SETTINGS, AppSettings(updated_at=self.clock()))

    def get_settings(self) -> AppSettings:
        return self.storage.get(SETTINGS, "default") or self.initialize_settings()

    def update_settings(self, update: SettingsUpdate) -> AppSettings:
        with self.storage.lock(SETTINGS):
            current = self.get_settings()
            changes = {k: to_money(v) for k, v in update.model_dump(exclude_none=True).items()}
            updated = current.model_copy(update={**changes, "updated_at": self.clock()})
            updated = self.storage.put(SETTINGS, updated, expected_version=current.version)
        logger.info("App settings updated: %s", sorted(changes))
        return updated
