# src/flowcore/engine/__init__.py
"""
Execution engine for flowcore.

- loop_detector: retry-loop suggestions from task text
- scheduler: ready-set dispatch batches and completion checks
- retry_policy: what a task failure means inside accepted loops
- controller: job state machine, runner callbacks, checkpoints
- runner / planner: boundaries to task execution and plan generation
- events: change notifications for read-only subscribers
- checkpoints: periodic checkpoint timer
"""

from .checkpoints import CheckpointTimer
from .controller import ALLOWED_TRANSITIONS, JobController
from .events import EventBus
from .loop_detector import DEFAULT_RULES, LoopDetector, LoopRule, load_rules
from .planner import PlanGenerator, RuleBasedPlanGenerator
from .retry_policy import RetryAction, RetryDecision, RetryPolicy
from .runner import ShellTaskRunner, TaskDispatch, TaskEventSink, TaskRunner
from .scheduler import DependencyScheduler, Dispatch

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CheckpointTimer",
    "DEFAULT_RULES",
    "DependencyScheduler",
    "Dispatch",
    "EventBus",
    "JobController",
    "LoopDetector",
    "LoopRule",
    "PlanGenerator",
    "RetryAction",
    "RetryDecision",
    "RetryPolicy",
    "RuleBasedPlanGenerator",
    "ShellTaskRunner",
    "TaskDispatch",
    "TaskEventSink",
    "TaskRunner",
    "load_rules",
]
