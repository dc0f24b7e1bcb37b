"""Use cases for bulk assignment.

Each piece of the engine is usable on its own; BulkAssignmentUseCase
wires them together.
"""

from .batching import chunk
from .bulk_assign import BulkAssignmentUseCase
from .execute_batch import BatchExecutor, BatchResult
from .progress import ProgressReporter
from .rate_limit import RateLimitCoordinator
from .validate import validate

__all__ = [
    "BulkAssignmentUseCase",
    "BatchExecutor",
    "BatchResult",
    "ProgressReporter",
    "RateLimitCoordinator",
    "chunk",
    "validate",
]
