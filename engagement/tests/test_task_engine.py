import threading
from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError

from engagement.errors import TaskNotAvailableError, TaskNotFoundError
from engagement.models import CreateTaskRequest
from ledger.models import TransactionType
from ledger.service import InsufficientBalanceError

from .conftest import assert_budget_invariant, make_account, make_task, transactions_of


class TestCreateTask:

    def test_budget_debited_from_creator(self, env):
        """Balance 100 funding a 30 budget leaves 70 and one task_creation record of 30."""
        creator = make_account(env, 500, balance=100)

        make_task(env, creator, reward="1", budget="30")

        assert env.ledger.get_account(creator.id).balance == Decimal("70.00")
        funding = transactions_of(env, creator.id, TransactionType.TASK_CREATION)
        assert len(funding) == 1
        assert funding[0].amount == Decimal("30.00")

    def test_initial_accounting(self, env):
        creator = make_account(env, 500, balance=100)

        task = make_task(env, creator, reward="2", budget="10")

        assert task.max_members == 5
        assert task.remaining_budget == Decimal("10.00")
        assert task.completed_count == 0
        assert task.is_active
        assert task.channel_username == "@promo_channel"
        assert_budget_invariant(task)

    def test_max_members_rounds_down(self, env):
        creator = make_account(env, 500, balance=100)
        task = make_task(env, creator, reward="3", budget="10")
        assert task.max_members == 3

    def test_insufficient_balance(self, env):
        creator = make_account(env, 500, balance=5)

        with pytest.raises(InsufficientBalanceError):
            make_task(env, creator, budget="10")

        assert env.tasks.list_tasks() == []
        assert env.ledger.get_account(creator.id).balance == Decimal("5.00")
        assert transactions_of(env, creator.id, TransactionType.TASK_CREATION) == []

    def test_admin_bypasses_balance_check(self, env):
        admin = make_account(env, 1)
        assert admin.is_admin

        task = make_task(env, admin, budget="30")

        assert task.is_active
        assert env.ledger.get_account(admin.id).balance == Decimal("-30.00")

    @pytest.mark.parametrize("reward,budget", [("0.4", "10"), ("1", "0.5")])
    def test_request_validation(self, env, reward, budget):
        creator = make_account(env, 500, balance=100)
        with pytest.raises(ValidationError):
            CreateTaskRequest(
                creator_id=creator.id,
                title="Join us",
                channel_username="@x",
                channel_link="https://t.me/x",
                reward_per_member=Decimal(reward),
                total_budget=Decimal(budget),
            )


class TestListAndClaim:

    def test_list_active_newest_first(self, env):
        creator = make_account(env, 500, balance=100)
        older = make_task(env, creator, channel="@a")
        env.clock.advance(minutes=5)
        newer = make_task(env, creator, channel="@b")

        assert [t.id for t in env.tasks.list_active()] == [newer.id, older.id]

    def test_claim_slot_until_closed(self, env):
        creator = make_account(env, 500, balance=100)
        task = make_task(env, creator, reward="2", budget="10")

        for _ in range(5):
            task = env.tasks.claim_slot(task.id)
            assert_budget_invariant(task)

        assert task.remaining_budget == Decimal("0.00")
        assert not task.is_active
        assert env.tasks.list_active() == []
        with pytest.raises(TaskNotAvailableError):
            env.tasks.claim_slot(task.id)

    def test_task_closes_when_remainder_below_reward(self, env):
        creator = make_account(env, 500, balance=100)
        task = make_task(env, creator, reward="3", budget="10")

        for _ in range(3):
            task = env.tasks.claim_slot(task.id)

        assert task.remaining_budget == Decimal("1.00")
        assert not task.is_active

    def test_racing_claims_for_last_slots(self, env):
        """Twenty concurrent claims against five slots: exactly five win."""
        creator = make_account(env, 500, balance=100)
        task = make_task(env, creator, reward="2", budget="10")
        won, lost = [], []

        def claim():
            try:
                env.tasks.claim_slot(task.id)
                won.append(1)
            except TaskNotAvailableError:
                lost.append(1)

        threads = [threading.Thread(target=claim) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        task = env.tasks.get_task(task.id)
        assert len(won) == 5
        assert len(lost) == 15
        assert task.completed_count == 5
        assert_budget_invariant(task)

    def test_unknown_task(self, env):
        with pytest.raises(TaskNotFoundError):
            env.tasks.get_task(uuid4())
