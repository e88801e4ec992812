"""
Engagement Package

Channel-join tasks and everything that hangs off a verified join: the task
budget, the per-user completion state machine, referral bonuses and the
retention audit that claws back rewards from users who leave early.
"""

from .completions import CompletionMachine
from .models import Completion, CompletionStatus, CreateTaskRequest, SweepReport, Task
from .oracle import MembershipStatus, TelegramMembershipOracle, TelegramNotifier
from .referrals import ReferralEngine
from .retention import RetentionAuditor, RetentionScheduler
from .task_engine import TaskEngine

__all__ = [
    "CompletionMachine",
    "Completion",
    "CompletionStatus",
    "CreateTaskRequest",
    "SweepReport",
    "Task",
    "MembershipStatus",
    "TelegramMembershipOracle",
    "TelegramNotifier",
    "ReferralEngine",
    "RetentionAuditor",
    "RetentionScheduler",
    "TaskEngine",
]
