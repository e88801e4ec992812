"""
Completion State Machine.

One Completion per (task, account) pair, keyed by a deterministic id:

    none ──member──▶ verified   (terminal; reward credited once)
    none ──no──────▶ failed ──member──▶ verified
                       └──no──▶ failed (attempts += 1)

The membership oracle is consulted outside any lock. The pair lock is then
taken and the state re-read before the task slot is claimed and the reward
credited, so two racing requests for the same pair pay out once.
"""

import logging
from typing import Callable, Optional
from uuid import NAMESPACE_URL, UUID, uuid5

from ledger.models import Account, Transaction, TransactionMeta, TransactionType
from ledger.service import LedgerService
from ledger.store import COMPLETIONS

from .errors import (
    AlreadyCompletedError,
    NotMemberError,
    OracleUnavailableError,
    TaskNotAvailableError,
    VerificationAttemptsExceededError,
)
from .models import Completion, CompletionStatus, Task, VerificationResult
from .oracle import MembershipOracle, MembershipStatus
from .task_engine import TaskEngine

logger = logging.getLogger(__name__)

VerifiedListener = Callable[[Task, Account, Completion], Optional[Transaction]]


def completion_id(task_id: UUID, account_id: UUID) -> UUID:
    return uuid5(NAMESPACE_URL, f"completion:{task_id}:{account_id}")


def earning_key(completion: Completion) -> str:
    return f"task_earning:{completion.task_id}:{completion.account_id}"


class CompletionMachine:
    def __init__(
        self,
        ledger: LedgerService,
        tasks: TaskEngine,
        oracle: MembershipOracle,
        max_attempts: int = 10,
    ):
        self.ledger = ledger
        self.tasks = tasks
        self.oracle = oracle
        self.storage = ledger.storage
        self.max_attempts = max_attempts
        self.on_verified: list[VerifiedListener] = []

    def get_completion(self, task_id: UUID, account_id: UUID) -> Optional[Completion]:
        return self.storage.get(COMPLETIONS, completion_id(task_id, account_id))

    def list_for_account(self, account_id: UUID) -> list[Completion]:
        completions = self.storage.query(COMPLETIONS, lambda c: c.account_id == account_id)
        completions.sort(key=lambda c: c.created_at, reverse=True)
        return completions

    def verify(self, task_id: UUID, account_id: UUID) -> VerificationResult:
        task = self.tasks.get_task(task_id)
        account = self.ledger.get_account(account_id)

        existing = self.get_completion(task_id, account_id)
        if existing and existing.status == CompletionStatus.VERIFIED:
            self._settle(task, existing)
            raise AlreadyCompletedError()
        if not task.has_open_slot():
            raise TaskNotAvailableError()
        self._check_retry_allowed(existing)

        status = self.oracle.is_member(task.channel, account.telegram_id)
        if status == MembershipStatus.UNAVAILABLE:
            raise OracleUnavailableError(f"Could not verify membership of {task.channel}, try again later")

        with self.storage.lock("completion", task_id, account_id):
            completion = self.get_completion(task_id, account_id)
            if completion and completion.status == CompletionStatus.VERIFIED:
                self._settle(task, completion)
                raise AlreadyCompletedError()

            if status == MembershipStatus.NOT_MEMBER:
                self._save(completion, task_id, account_id, status=CompletionStatus.FAILED)
                logger.info("Account %s is not a member of %s", account_id, task.channel)
                raise NotMemberError()

            # Slot first, then the verified mark, then the credit. If the credit
            # fails, the next verify of this pair settles it through _settle.
            task = self.tasks.claim_slot(task_id)
            reward = task.reward_per_member
            completion = self._save(
                completion,
                task_id,
                account_id,
                status=CompletionStatus.VERIFIED,
                reward_amount=reward,
                verified_at=self.ledger.clock(),
            )
            transaction = self._settle(task, completion)

        logger.info("Account %s verified for task %s, credited %s", account_id, task_id, reward)
        result = VerificationResult(success=True, completion=completion, transaction=transaction)
        for listener in self.on_verified:
            try:
                bonus = listener(task, account, completion)
            except Exception:
                logger.exception("Post-verification hook failed for completion %s", completion.id)
                continue
            if bonus is not None:
                result.referral_bonus = bonus
        return result

    def _settle(self, task: Task, completion: Completion) -> Transaction:
        """Credit the reward of a verified completion; a repeat returns the original earning."""
        with self.storage.lock("completion", completion.task_id, completion.account_id):
            return self.ledger.credit(
                completion.account_id,
                completion.reward_amount,
                TransactionType.TASK_EARNING,
                TransactionMeta(
                    note=f"Joined {task.channel}",
                    idempotency_key=earning_key(completion),
                ),
            )

    def _check_retry_allowed(self, existing: Optional[Completion]) -> None:
        if existing is None:
            return
        if self.max_attempts and existing.attempts >= self.max_attempts:
            raise VerificationAttemptsExceededError(
                f"Verification attempted {existing.attempts} times, limit is {self.max_attempts}"
            )

    def _save(self, completion: Optional[Completion], task_id: UUID, account_id: UUID, **changes) -> Completion:
        if completion is None:
            completion = Completion(
                id=completion_id(task_id, account_id),
                task_id=task_id,
                account_id=account_id,
                attempts=1,
                created_at=self.ledger.clock(),
                **changes,
            )
            return self.storage.insert(COMPLETIONS, completion)

        updated = completion.model_copy(update={**changes, "attempts": completion.attempts + 1})
        return self.storage.put(COMPLETIONS, updated, expected_version=completion.version)
