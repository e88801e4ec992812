import logging
from typing import Optional
from uuid import UUID, uuid4

from ledger.models import TransactionMeta, TransactionType, to_money
from ledger.service import LedgerService, MAX_CAS_RETRIES
from ledger.store import TASKS, ConcurrentModificationError

from .errors import TaskNotAvailableError, TaskNotFoundError
from .models import CreateTaskRequest, Task, normalize_channel, same_channel

logger = logging.getLogger(__name__)


class TaskEngine:
    """Creation, funding and slot accounting for promotional channel-join tasks."""

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def create_task(self, request: CreateTaskRequest) -> Task:
        creator = self.ledger.get_account(request.creator_id)
        reward = to_money(request.reward_per_member)
        budget = to_money(request.total_budget)
        task_id = uuid4()

        # Admin creators may fund tasks beyond their balance.
        self.ledger.debit(
            creator.id,
            budget,
            TransactionType.TASK_CREATION,
            TransactionMeta(
                note=f"Task funding: {request.title}",
                idempotency_key=f"task_creation:{task_id}",
            ),
            allow_overdraft=creator.is_admin,
        )

        task = Task(
            id=task_id,
            creator_id=creator.id,
            title=request.title,
            title_bn=request.title_bn,
            channel_username=normalize_channel(request.channel_username),
            channel_link=str(request.channel_link),
            reward_per_member=reward,
            total_budget=budget,
            remaining_budget=budget,
            completed_count=0,
            max_members=int(budget // reward),
            is_active=True,
            created_at=self.ledger.clock(),
        )
        task = self.storage.insert(TASKS, task)
        logger.info(
            "Task %s created by %s for %s: %s x %s",
            task.id, creator.id, task.channel_username, task.max_members, reward,
        )
        return task

    def get_task(self, task_id: UUID) -> Task:
        task = self.storage.get(TASKS, task_id)
        if not task:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    def find_task(self, task_id: UUID) -> Optional[Task]:
        return self.storage.get(TASKS, task_id)

    def list_tasks(self) -> list[Task]:
        tasks = self.storage.query(TASKS)
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks

    def list_active(self) -> list[Task]:
        tasks = self.storage.query(TASKS, lambda t: t.is_active and t.remaining_budget > 0)
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks

    def count_active(self) -> int:
        return self.storage.count(TASKS, lambda t: t.is_active)

    def find_active_by_channel(self, channel: str) -> Optional[Task]:
        for task in self.list_active():
            if same_channel(task.channel_username, channel):
                return task
        return None

    def claim_slot(self, task_id: UUID) -> Task:
        """Conditionally decrement the budget by one reward; fails if no slot is left."""
        with self.storage.lock("task", task_id):
            for attempt in range(1, MAX_CAS_RETRIES + 1):
                task = self.get_task(task_id)
                if not task.has_open_slot():
                    raise TaskNotAvailableError()

                task.remaining_budget = to_money(task.remaining_budget - task.reward_per_member)
                task.completed_count += 1
                task.is_active = task.remaining_budget >= task.reward_per_member
                try:
                    task = self.storage.put(TASKS, task, expected_version=task.version)
                except ConcurrentModificationError:
                    if attempt == MAX_CAS_RETRIES:
                        raise
                    continue

                if not task.is_active:
                    logger.info("Task %s closed after %d completions", task.id, task.completed_count)
                return task
        raise ConcurrentModificationError(f"Task {task_id} could not be updated")
