"""Infrastructure adapters for bulk assignment.

These adapters implement the port interfaces defined in the domain layer
on top of the Microsoft Graph client.
"""

from .assignment_cache import AssignmentCache
from .graph_assignment_source import GraphAssignmentSource
from .graph_batch_transport import GraphBatchTransport

__all__ = [
    "GraphBatchTransport",
    "GraphAssignmentSource",
    "AssignmentCache",
]
