"""MongoDB repositories, one async class per collection."""

from repositories.click_aggregate_repository import ClickAggregateRepository
from repositories.evaluation_repository import EvaluationRepository
from repositories.indexes import ensure_indexes
from repositories.job_checkpoint_repository import JobCheckpointRepository
from repositories.link_repository import LinkRepository

__all__ = [
    "ClickAggregateRepository",
    "EvaluationRepository",
    "JobCheckpointRepository",
    "LinkRepository",
    "ensure_indexes",
]
