from .schemas import (
    AssignmentReport,
    AssignRequest,
    AuditDecision,
    Auditor,
    AuditorCreateRequest,
    ContentPackage,
    DeploymentPlan,
    ErrorResponse,
    HealthResponse,
    HostingPackage,
    Job,
    JobCreateRequest,
    JobEvent,
    JobListResponse,
    JobResponse,
    JobResult,
    JobStatus,
    LogEntry,
    PlannedFile,
    ProvisioningRequest,
    ProvisioningResult,
    ReviewRequest,
    SiteManifest,
    TargetIdentity,
    TransferCredentials,
    utcnow,
)

__all__ = [
    "AssignmentReport",
    "AssignRequest",
    "AuditDecision",
    "Auditor",
    "AuditorCreateRequest",
    "ContentPackage",
    "DeploymentPlan",
    "ErrorResponse",
    "HealthResponse",
    "HostingPackage",
    "Job",
    "JobCreateRequest",
    "JobEvent",
    "JobListResponse",
    "JobResponse",
    "JobResult",
    "JobStatus",
    "LogEntry",
    "PlannedFile",
    "ProvisioningRequest",
    "ProvisioningResult",
    "ReviewRequest",
    "SiteManifest",
    "TargetIdentity",
    "TransferCredentials",
    "utcnow",
]
