"""
Retention Auditor.

Re-checks channel membership for verified completions once the grace period
has elapsed and claws back the reward from accounts that left early. The
``retention_checked`` / ``deducted`` flags are the claim on a completion: they
are re-read under the completion's lock right before any debit, so a second
sweep over the same data finds nothing left to do.
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from ledger.models import Account, TransactionMeta, TransactionType
from ledger.service import InsufficientBalanceError, LedgerService
from ledger.store import COMPLETIONS

from .completions import earning_key
from .errors import OracleUnavailableError, OrphanedReferenceError
from .models import Completion, CompletionStatus, SweepReport, Task, normalize_channel, same_channel
from .oracle import MembershipOracle, MembershipStatus, Notifier
from .task_engine import TaskEngine

logger = logging.getLogger(__name__)

GRACE_PERIOD = timedelta(hours=48)


class RetentionAuditor:
    def __init__(
        self,
        ledger: LedgerService,
        tasks: TaskEngine,
        oracle: MembershipOracle,
        notifier: Notifier,
        official_channel: str,
        grace_period: timedelta = GRACE_PERIOD,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.tasks = tasks
        self.oracle = oracle
        self.notifier = notifier
        self.official_channel = normalize_channel(official_channel)
        self.grace_period = grace_period
        self.clock = clock or ledger.clock
        self.storage = ledger.storage

    def pending_checks(self, now: Optional[datetime] = None) -> list[Completion]:
        cutoff = (now or self.clock()) - self.grace_period
        candidates = self.storage.query(COMPLETIONS, lambda c: self._is_due(c, cutoff))
        candidates.sort(key=lambda c: c.verified_at)
        return candidates

    @staticmethod
    def _is_due(completion: Completion, cutoff: datetime) -> bool:
        return (
            completion.status == CompletionStatus.VERIFIED
            and not completion.retention_checked
            and not completion.deducted
            and completion.verified_at is not None
            and completion.verified_at <= cutoff
        )

    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        started = time.monotonic()
        now = now or self.clock()
        report = SweepReport()
        candidates = self.pending_checks(now)
        logger.info("Retention sweep: %d completions due", len(candidates))

        for completion in candidates:
            try:
                self._audit(completion.id, now, report)
            except OrphanedReferenceError as e:
                logger.warning("%s, skipped without deduction", e)
                report.errors += 1
            except Exception:
                logger.exception("Retention check failed for completion %s", completion.id)
                report.errors += 1

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Retention sweep finished in %dms: %s", report.duration_ms, report.model_dump())
        return report

    def _audit(self, completion_id, now: datetime, report: SweepReport) -> None:
        completion = self.storage.get(COMPLETIONS, completion_id)
        if completion is None or not self._is_due(completion, now - self.grace_period):
            return

        task = self.tasks.find_task(completion.task_id)
        account = self.ledger.find_account(completion.account_id)
        if task is None or account is None:
            self._mark(completion, retention_checked=True)
            missing = "task" if task is None else "account"
            raise OrphanedReferenceError(f"Completion {completion.id} references a missing {missing}")

        try:
            status = self.oracle.is_member(task.channel, account.telegram_id)
        except OracleUnavailableError as e:
            status = MembershipStatus.UNAVAILABLE
            logger.warning("Membership oracle unavailable: %s", e)
        if status == MembershipStatus.UNAVAILABLE:
            # Left untouched so the next sweep asks again.
            report.errors += 1
            return

        report.checked += 1
        if status == MembershipStatus.MEMBER:
            self._mark(completion, retention_checked=True)
            report.retained += 1
            return

        self._claw_back(completion, task, account, report)

    def _claw_back(self, completion: Completion, task: Task, account: Account, report: SweepReport) -> None:
        target_id, note = self._debit_target(task, account)
        amount: Decimal = completion.reward_amount or task.reward_per_member

        with self.storage.lock("completion", completion.task_id, completion.account_id):
            current = self.storage.get(COMPLETIONS, completion.id)
            if current is None or current.retention_checked or current.deducted:
                logger.info("Completion %s already claimed by another sweep", completion.id)
                return

            if self.ledger.find_transaction_by_key(earning_key(completion)) is None:
                logger.warning("Completion %s was never paid, nothing to claw back", completion.id)
                self._mark(current, retention_checked=True)
                return

            target = self.ledger.find_account(target_id)
            transaction = None
            if target is not None:
                try:
                    transaction = self.ledger.debit(
                        target_id,
                        amount,
                        TransactionType.DEDUCTION,
                        TransactionMeta(note=note, idempotency_key=f"deduction:{completion.id}"),
                    )
                except InsufficientBalanceError:
                    transaction = None

            # Marked deducted either way so an unpaid clawback is not retried forever.
            self._mark(current, retention_checked=True, deducted=True)

        if transaction is None:
            report.insufficient_balance += 1
            logger.info(
                "Completion %s: %s cannot cover deduction of %s, loss accepted",
                completion.id, target_id, amount,
            )
            return

        report.deducted += 1
        logger.info("Completion %s: deducted %s from %s (%s)", completion.id, amount, target_id, note)
        self._notify(target, amount, note)

    def _debit_target(self, task: Task, account: Account):
        channel = task.channel
        if same_channel(channel, self.official_channel) and account.referred_by is not None:
            return account.referred_by, f"Deduction: Referral {account.first_name} left {channel} early"
        return account.id, f"Deduction: Left {channel} early"

    def _notify(self, target: Account, amount: Decimal, note: str) -> None:
        grace_hours = int(self.grace_period.total_seconds() // 3600)
        message = (
            f"⚠️ {amount} {self.ledger.currency} deducted from your balance.\n\n"
            f"Reason: {note}\n\n"
            f"Please stay in channels for at least {grace_hours} hours to keep your rewards."
        )
        try:
            if not self.notifier.send(target.telegram_id, message):
                logger.warning("Deduction notice to %s was not delivered", target.telegram_id)
        except Exception:
            logger.exception("Failed to send deduction notice to %s", target.telegram_id)

    def _mark(self, completion: Completion, **flags) -> Completion:
        with self.storage.lock("completion", completion.task_id, completion.account_id):
            current = self.storage.get(COMPLETIONS, completion.id)
            updated = current.model_copy(update=flags)
            return self.storage.put(COMPLETIONS, updated, expected_version=current.version)


class RetentionScheduler:
    """
    Runs the retention sweep on a fixed interval in a background thread.
    Default = 3600 seconds (hourly).
    """

    def __init__(self, auditor: RetentionAuditor, interval_seconds: int = 3600):
        self.auditor = auditor
        self.interval = interval_seconds
        self._stop = threading.Event()
        self._sweep_lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name="retention-sweep", daemon=True)

    def start(self):
        """Start the scheduler in a background thread."""
        if not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="retention-sweep", daemon=True)
            self._thread.start()
            logger.info("Retention scheduler started, interval %ss", self.interval)

    def stop(self):
        """Stop the scheduler."""
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=1)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def run_once(self, now: Optional[datetime] = None) -> Optional[SweepReport]:
        """Run one sweep unless another is in progress, in which case return None."""
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("Retention sweep already running, skipped")
            return None
        try:
            return self.auditor.run_sweep(now)
        finally:
            self._sweep_lock.release()

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Retention sweep crashed")
