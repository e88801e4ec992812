import logging
from typing import Optional
from uuid import UUID

from ledger.models import Account, RegisterAccountRequest, Transaction, TransactionMeta, TransactionType
from ledger.service import LedgerService, MAX_CAS_RETRIES
from ledger.store import ACCOUNTS, ConcurrentModificationError

from .completions import CompletionMachine
from .errors import AlreadyCompletedError, NotMemberError, OracleUnavailableError, TaskNotAvailableError
from .models import Completion, ReferralVerificationResult, Task, normalize_channel, same_channel
from .oracle import MembershipOracle, MembershipStatus
from .task_engine import TaskEngine

logger = logging.getLogger(__name__)


class ReferralEngine:
    """
    Pending-bonus bookkeeping for referred accounts.

    Signing up with a referral code only marks the bonus as pending. The
    referrer is paid once the referred account verifies membership of the
    official channel.
    """

    def __init__(
        self,
        ledger: LedgerService,
        tasks: TaskEngine,
        completions: CompletionMachine,
        oracle: MembershipOracle,
        official_channel: str,
    ):
        self.ledger = ledger
        self.tasks = tasks
        self.completions = completions
        self.oracle = oracle
        self.official_channel = normalize_channel(official_channel)
        self.storage = ledger.storage
        completions.on_verified.append(self.on_completion_verified)

    def register_account(self, request: RegisterAccountRequest) -> Account:
        existing = self.ledger.get_account_by_telegram_id(request.telegram_id)
        if existing:
            return existing

        referred_by = None
        if request.referral_code:
            referrer = self.ledger.get_account_by_referral_code(request.referral_code)
            if referrer is None:
                logger.info("Unknown referral code %r ignored", request.referral_code)
            elif referrer.telegram_id == request.telegram_id:
                logger.info("Self-referral by telegram %s ignored", request.telegram_id)
            else:
                referred_by = referrer.id
        return self.ledger.create_account(request, referred_by=referred_by)

    def list_referrals(self, account_id: UUID) -> list[Account]:
        self.ledger.get_account(account_id)
        return self.ledger.list_referrals(account_id)

    def is_official_channel(self, channel: str) -> bool:
        return same_channel(channel, self.official_channel)

    def on_completion_verified(self, task: Task, account: Account, completion: Completion) -> Optional[Transaction]:
        if not self.is_official_channel(task.channel_username):
            return None
        return self.release_bonus(account.id)

    def release_bonus(self, referred_id: UUID) -> Optional[Transaction]:
        """Pay the referrer once; check and flip happen under the referred account's lock."""
        with self.storage.lock("account", referred_id):
            account = self.ledger.get_account(referred_id)
            if not account.referral_bonus_pending or account.referral_bonus_credited:
                return None

            referrer = self.ledger.find_account(account.referred_by)
            if referrer is None:
                logger.warning("Referrer %s of %s no longer exists, bonus dropped", account.referred_by, referred_id)
                self._set_flags(referred_id, referral_bonus_pending=False)
                return None

            amount = self.ledger.get_settings().referral_bonus_amount
            transaction = None
            if amount > 0:
                transaction = self.ledger.credit(
                    referrer.id,
                    amount,
                    TransactionType.REFERRAL_BONUS,
                    TransactionMeta(
                        note=f"Referral bonus: {account.first_name} joined {self.official_channel}",
                        idempotency_key=f"referral_bonus:{referred_id}",
                    ),
                )
            self._set_flags(referred_id, referral_bonus_pending=False, referral_bonus_credited=True)

        logger.info("Referral bonus %s paid to %s for %s", amount, referrer.id, referred_id)
        return transaction

    def _set_flags(self, account_id: UUID, **flags) -> Account:
        for attempt in range(1, MAX_CAS_RETRIES + 1):
            account = self.ledger.get_account(account_id)
            updated = account.model_copy(update=flags)
            try:
                return self.storage.put(ACCOUNTS, updated, expected_version=account.version)
            except ConcurrentModificationError:
                if attempt == MAX_CAS_RETRIES:
                    raise
        raise ConcurrentModificationError(f"Account {account_id} could not be updated")

    def verify_official_channel(self, account_id: UUID) -> ReferralVerificationResult:
        account = self.ledger.get_account(account_id)
        if account.referral_bonus_credited:
            return ReferralVerificationResult(success=True, already_credited=True)

        bonus = None
        task = self.tasks.find_active_by_channel(self.official_channel)
        if task is not None:
            try:
                bonus = self.completions.verify(task.id, account_id).referral_bonus
            except AlreadyCompletedError:
                bonus = self.release_bonus(account_id)
            except TaskNotAvailableError:
                task = None

        if task is None:
            status = self.oracle.is_member(self.official_channel, account.telegram_id)
            if status == MembershipStatus.UNAVAILABLE:
                raise OracleUnavailableError(f"Could not verify membership of {self.official_channel}")
            if status == MembershipStatus.NOT_MEMBER:
                raise NotMemberError()
            bonus = self.release_bonus(account_id)

        return ReferralVerificationResult(
            success=True,
            bonus_credited=bonus is not None,
            transaction=bonus,
        )
