"""
Flow control for course-creation conversations.

This module provides the workflow state tables, the navigation-style
signals and scoring, and the ConversationFlowEngine that performs
branching, backtracking and recovery on loaded sessions.
"""

from flow.counters import CounterStore, InMemoryCounterStore
from flow.engine import (
    BacktrackResult,
    Branch,
    BranchResult,
    ConversationFlowEngine,
    FlowDecision,
    RecoveryResult,
    RecoveryStrategy,
)
from flow.signals import ExpertiseLevel, FlowType, NavigationPreference

__all__ = [
    "BacktrackResult",
    "Branch",
    "BranchResult",
    "ConversationFlowEngine",
    "CounterStore",
    "ExpertiseLevel",
    "FlowDecision",
    "FlowType",
    "InMemoryCounterStore",
    "NavigationPreference",
    "RecoveryResult",
    "RecoveryStrategy",
]
