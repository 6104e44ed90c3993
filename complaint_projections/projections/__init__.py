"""Read-model projection: views, checkpoints, dead letters and the partition workers."""

from __future__ import annotations

from .checkpoints import Checkpoint, CheckpointStore
from .dead_letters import (
    DeadLetter,
    DeadLetterEntry,
    DeadLetterManager,
    DeadLetterReason,
    DeadLetterStatus,
    DeadLetterStore,
)
from .deltas import AggregateSnapshot, Projection, compute_projection
from .drain import DeadLetterTopicDrain
from .lag import LagMonitor, LagReport, LagStatus
from .leases import Lease, LeaseManager
from .projector import BatchResult, PartitionHealth, PartitionProjector, PartitionState
from .queries import DailyStats, ReadModelQueries
from .retry import FailureKind, RetriesExhaustedError, RetryManager, classify
from .supervisor import ProjectorSupervisor
from .views import ViewWriter

__all__ = [
    "AggregateSnapshot",
    "BatchResult",
    "Checkpoint",
    "CheckpointStore",
    "DailyStats",
    "DeadLetter",
    "DeadLetterEntry",
    "DeadLetterManager",
    "DeadLetterReason",
    "DeadLetterStatus",
    "DeadLetterStore",
    "DeadLetterTopicDrain",
    "FailureKind",
    "LagMonitor",
    "LagReport",
    "LagStatus",
    "Lease",
    "LeaseManager",
    "PartitionHealth",
    "PartitionProjector",
    "PartitionState",
    "Projection",
    "ProjectorSupervisor",
    "ReadModelQueries",
    "RetriesExhaustedError",
    "RetryManager",
    "ViewWriter",
    "classify",
    "compute_projection",
]
