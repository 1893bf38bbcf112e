"""
CI Controller module.

This module contains the build orchestration core: build number
allocation, branch history, config obfuscation, the build/job state
machine and the controller that wires them together.

The controller depends only on the interfaces in ci_common, so any store,
vault or notifier implementation can be plugged in.
"""

from .controller import BuildController
from .history import BranchHistoryResolver
from .numbering import SequenceAllocator
from .obfuscation import ObfuscationEngine
from .state_machine import BuildStateMachine, aggregate_state

__all__ = [
    "BranchHistoryResolver",
    "BuildController",
    "BuildStateMachine",
    "ObfuscationEngine",
    "SequenceAllocator",
    "aggregate_state",
]
