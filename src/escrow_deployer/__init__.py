"""
Escrow deployer package.

Deploys per-job escrow contracts through an account-abstraction relay and
resolves the deployed contract address, at most once per job.
"""

from .config import DeployerConfig
from .errors import DeploymentError, ErrorKind
from .lock_manager import JobLockManager
from .models import DeploymentEvent, DeploymentJob, DeploymentResult, FundingSplit, JobState
from .orchestrator import ResolutionOrchestrator

__all__ = [
    "DeployerConfig",
    "DeploymentError",
    "DeploymentEvent",
    "DeploymentJob",
    "DeploymentResult",
    "ErrorKind",
    "FundingSplit",
    "JobLockManager",
    "JobState",
    "ResolutionOrchestrator",
]
__version__ = "0.1.0"
