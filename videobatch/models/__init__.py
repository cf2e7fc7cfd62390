from .base import Base, get_db, engine, SessionLocal
from .batch import BatchJob, BatchSource, BatchStatus, SettlementStatus
from .task import InvalidStateTransition, TaskStatus, VideoTask
from .enterprise import EnterpriseApiKey, EnterpriseApiUsage

__all__ = [
    "Base",
    "get_db",
    "engine",
    "SessionLocal",
    "BatchJob",
    "BatchSource",
    "BatchStatus",
    "SettlementStatus",
    "VideoTask",
    "TaskStatus",
    "InvalidStateTransition",
    "EnterpriseApiKey",
    "EnterpriseApiUsage",
]
