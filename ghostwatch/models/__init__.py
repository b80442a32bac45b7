from .base import Base, TimestampMixin
from .hidden_cache import HiddenCacheEntry
from .job import Job, JobSource, JobStatus
from .monitor import MonitorTarget, SentContentRecord
from .user import User

__all__ = [
    "Base",
    "TimestampMixin",
    "Job",
    "JobSource",
    "JobStatus",
    "MonitorTarget",
    "SentContentRecord",
    "HiddenCacheEntry",
    "User",
]
