from .job_store import JobStore, AuditorStore
from .notifications import JobEventBus, JobNotification
from .state_machine import JobStateMachine
from .hosting import HostingControlPlane
from .file_transfer import SSHFileTransfer
from .provisioning import ProvisioningClient
from .blueprints import BlueprintRegistry
from .deployer import DeploymentPlanner, DomainLocks
from .scanner import SiteScanner
from .ai_engine import ContentGenerator
from .audit import AuditCoordinator
from .orchestrator import Orchestrator

__all__ = [
    "JobStore",
    "AuditorStore",
    "JobEventBus",
    "JobNotification",
    "JobStateMachine",
    "HostingControlPlane",
    "SSHFileTransfer",
    "ProvisioningClient",
    "BlueprintRegistry",
    "DeploymentPlanner",
    "DomainLocks",
    "SiteScanner",
    "ContentGenerator",
    "AuditCoordinator",
    "Orchestrator",
]
