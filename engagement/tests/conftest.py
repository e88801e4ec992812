import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from engagement.completions import CompletionMachine
from engagement.models import CreateTaskRequest, normalize_channel
from engagement.oracle import MembershipStatus
from engagement.referrals import ReferralEngine
from engagement.retention import RetentionAuditor
from engagement.task_engine import TaskEngine
from ledger.models import RegisterAccountRequest, TransactionType
from ledger.service import LedgerService

OFFICIAL_CHANNEL = "@rewards_official"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeOracle:
    """Membership answers from an in-memory set of (channel, telegram_id)."""

    def __init__(self):
        self.members = set()
        self.unavailable = False
        self.broken_users = set()
        self.calls = []
        self._lock = threading.Lock()

    @staticmethod
    def _key(channel, telegram_id):
        return normalize_channel(channel).lower(), str(telegram_id)

    def join(self, channel, telegram_id):
        self.members.add(self._key(channel, telegram_id))

    def leave(self, channel, telegram_id):
        self.members.discard(self._key(channel, telegram_id))

    def is_member(self, channel, telegram_id):
        with self._lock:
            self.calls.append((channel, telegram_id))
        if str(telegram_id) in self.broken_users:
            raise RuntimeError("oracle exploded")
        if self.unavailable:
            return MembershipStatus.UNAVAILABLE
        if self._key(channel, telegram_id) in self.members:
            return MembershipStatus.MEMBER
        return MembershipStatus.NOT_MEMBER


class FakeNotifier:
    def __init__(self):
        self.messages = []
        self.fail = False

    def send(self, external_user_id, message):
        if self.fail:
            raise RuntimeError("telegram down")
        self.messages.append((external_user_id, message))
        return True


@pytest.fixture
def env():
    clock = FakeClock()
    oracle = FakeOracle()
    notifier = FakeNotifier()
    ledger = LedgerService(clock=clock, admin_telegram_ids=["1"])
    ledger.initialize_settings()
    tasks = TaskEngine(ledger)
    completions = CompletionMachine(ledger, tasks, oracle, max_attempts=3)
    referrals = ReferralEngine(ledger, tasks, completions, oracle, OFFICIAL_CHANNEL)
    auditor = RetentionAuditor(ledger, tasks, oracle, notifier, OFFICIAL_CHANNEL)
    return SimpleNamespace(
        clock=clock,
        oracle=oracle,
        notifier=notifier,
        ledger=ledger,
        tasks=tasks,
        completions=completions,
        referrals=referrals,
        auditor=auditor,
    )


def make_account(env, telegram_id, balance=None, first_name="Sadia", referral_code=None):
    account = env.referrals.register_account(RegisterAccountRequest(
        telegram_id=str(telegram_id), first_name=first_name, referral_code=referral_code,
    ))
    if balance is not None:
        env.ledger.credit(account.id, Decimal(str(balance)), TransactionType.DEPOSIT)
    return env.ledger.get_account(account.id)


def make_task(env, creator, channel="@promo_channel", reward="2", budget="10", title="Join promo"):
    return env.tasks.create_task(CreateTaskRequest(
        creator_id=creator.id,
        title=title,
        channel_username=channel,
        channel_link=f"https://t.me/{channel.lstrip('@')}",
        reward_per_member=Decimal(reward),
        total_budget=Decimal(budget),
    ))


def transactions_of(env, account_id, tx_type):
    return [t for t in env.ledger.list_transactions(account_id) if t.type == tx_type]


def assert_budget_invariant(task):
    assert task.remaining_budget == task.total_budget - task.completed_count * task.reward_per_member
    assert task.remaining_budget >= 0
