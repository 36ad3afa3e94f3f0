"""
Repository subpackage for the ingestion feature.
"""

from .job_repository import JobRepository
from .raw_event_repository import RawEventRepository, is_ingestible

__all__ = ["JobRepository", "RawEventRepository", "is_ingestible"]
