"""
Pydantic models for jobs, auditors, provisioning and API payloads.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, SecretStr
from pydantic.alias_generators import to_camel

from demoforge.errors import ErrorKind


def utcnow() -> datetime:
    """Timezone-aware current time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class JobStatus(str, Enum):
    """Lifecycle status of a demo-site job."""
    QUEUED = "queued"
    SCANNING = "scanning"
    GENERATING_CONTENT = "generating_content"
    PROVISIONING = "provisioning"
    PENDING_AUDIT = "pending_audit"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


class JobEvent(str, Enum):
    """Events that drive status transitions."""
    START = "start"
    SCAN_OK = "scan_ok"
    SCAN_FAIL = "scan_fail"
    CONTENT_OK = "content_ok"
    CONTENT_FAIL = "content_fail"
    DEPLOY_OK = "deploy_ok"
    DEPLOY_FAIL = "deploy_fail"
    APPROVE = "approve"
    REJECT = "reject"
    RESUBMIT = "resubmit"
    FAIL = "fail"


class AuditDecision(str, Enum):
    """Auditor verdict on a provisioned job."""
    APPROVE = "approve"
    REJECT = "reject"


# ============================================================================
# Request Models
# ============================================================================

class JobCreateRequest(BaseModel):
    """Request to create a new demo-site job."""
    business_name: str = Field(..., min_length=1, max_length=200)
    website_url: Optional[HttpUrl] = None
    domain: Optional[str] = Field(None, max_length=253)
    public_domain: Optional[str] = Field(None, max_length=253)
    blueprint_id: str = "wp-starter"
    client_id: Optional[str] = None
    client_slug: Optional[str] = Field(None, max_length=63)
    html_content: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "business_name": "Acme Plumbing",
                "website_url": "https://acme.biz",
                "domain": "acme.biz",
                "blueprint_id": "wp-starter",
                "client_slug": "acme",
            }
        }
    )


class AuditorCreateRequest(BaseModel):
    """Admin request to register an auditor."""
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)


class AssignRequest(BaseModel):
    """Batch assignment of jobs to an auditor."""
    job_ids: list[str]
    auditor_id: str


class ReviewRequest(BaseModel):
    """Auditor decision on a job."""
    decision: AuditDecision
    issues: list[str] = []


# ============================================================================
# Job Data Models
# ============================================================================

class LogEntry(BaseModel):
    """One timestamped line in a job's log."""
    timestamp: datetime = Field(default_factory=utcnow)
    level: str = "info"
    message: str


class TargetIdentity(BaseModel):
    """Who the demo site is for, as discovered by the scan."""
    display_name: str
    domain_candidate: Optional[str] = None
    source_url: Optional[str] = None


class ContentPackage(BaseModel):
    """Site content produced by the AI service."""
    site_title: str
    tagline: Optional[str] = None
    sections: list[str] = []
    html: str


class TransferCredentials(BaseModel):
    """Credentials for the file-transfer session on a hosting package."""
    host: str
    port: int = 22
    username: str
    secret: SecretStr
    protocol: str = "sftp"


class JobResult(BaseModel):
    """Structured payload accumulated as a job progresses."""
    target: Optional[TargetIdentity] = None
    scanned_html: Optional[str] = None
    content: Optional[ContentPackage] = None
    url: Optional[str] = None
    package_id: Optional[str] = None
    credentials: Optional[TransferCredentials] = None
    fingerprint: Optional[str] = None
    issues: list[str] = []
    failure_reason: Optional[ErrorKind] = None


class Job(BaseModel):
    """A scan -> generate -> provision -> audit unit of work."""
    id: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(0, ge=0, le=100)
    logs: list[LogEntry] = []
    result: JobResult = Field(default_factory=JobResult)
    auditor_id: Optional[str] = None

    # Input
    request: JobCreateRequest
    client_slug: str

    # Bookkeeping
    resubmit_count: int = 0
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    stage_entered_at: datetime = Field(default_factory=utcnow)
    last_progress_at: datetime = Field(default_factory=utcnow)


class Auditor(BaseModel):
    """Human reviewer of provisioned jobs."""
    id: str
    name: str
    email: str
    active: bool = True
    assigned_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class AssignmentReport(BaseModel):
    """Outcome of a best-effort batch assignment."""
    auditor_id: str
    assigned: list[str] = []
    skipped: list[str] = []


# ============================================================================
# Provisioning Models
# ============================================================================

class ProvisioningRequest(BaseModel):
    """What to deploy and for whom."""
    domain: str
    blueprint_id: str
    client_id: Optional[str] = None
    client_slug: str
    html_content: str = ""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProvisioningResult(BaseModel):
    """Outcome of a provisioning run."""
    success: bool
    url: Optional[str] = None
    package_id: Optional[str] = None
    credentials: Optional[TransferCredentials] = None
    fingerprint: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HostingPackage(BaseModel):
    """A hosting resource on the control plane."""
    id: str
    name: str
    reused: bool = False


class PlannedFile(BaseModel):
    """A file to write; relative paths resolve against the manifest target dir."""
    path: str
    content: str
    mode: int = 0o644


class SiteManifest(BaseModel):
    """Concrete file set and commands for one site."""
    public_host: str
    public_url: str
    target_dir: str
    files: list[PlannedFile]
    post_install: list[str] = []
    success_indicator: Optional[str] = None


class DeploymentPlan(BaseModel):
    """A blueprint resolved against one job's content and domain."""
    job_id: Optional[str] = None
    request: ProvisioningRequest
    blueprint_id: str
    manifest: SiteManifest
    fingerprint: str
    lock_keys: list[str]


# ============================================================================
# Response Models
# ============================================================================

class JobResponse(BaseModel):
    """API response for job operations."""
    job: Job
    message: str = "Success"


class JobListResponse(BaseModel):
    """API response for listing jobs."""
    jobs: list[Job]
    total: int
    page: int
    page_size: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str
    environment: str
    services: dict[str, bool]


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
