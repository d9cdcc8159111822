"""Bulk cloud-to-cloud transfer orchestration."""

from .config import AppConfig, load_config
from .engine import RcloneClient
from .jobs import JobStatus, TransferJob
from .orchestrator import Orchestrator, plan_transfer
from .quota import QuotaTracker

__all__ = [
    "AppConfig",
    "load_config",
    "JobStatus",
    "Orchestrator",
    "QuotaTracker",
    "RcloneClient",
    "TransferJob",
    "plan_transfer",
]
