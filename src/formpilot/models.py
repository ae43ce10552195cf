from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


@dataclass(slots=True)
class JobRecord:
    job_id: str
    target_url: str
    company_label: str
    external_lead_id: str
    payload: dict[str, Any]
    status: JobStatus
    created_at: str
    claimed_at: str | None = None
    claim_token: str | None = None
    lease_expires_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None
    last_error: str | None = None
    final_url: str | None = None
    retry_count: int = 0
    diagnostics: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "target_url": self.target_url,
            "company_label": self.company_label,
            "external_lead_id": self.external_lead_id,
            "payload": self.payload,
            "status": self.status.value,
            "created_at": self.created_at,
            "claimed_at": self.claimed_at,
            "lease_expires_at": self.lease_expires_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "last_error": self.last_error,
            "final_url": self.final_url,
            "retry_count": self.retry_count,
            "diagnostics": self.diagnostics,
        }


@dataclass(slots=True)
class JobRequest:
    target_url: str
    company_label: str = ""
    external_lead_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobOutcome:
    success: bool
    error: str | None = None
    final_url: str | None = None
    diagnostics: str | None = None

    @property
    def report_status(self) -> str:
        return "success" if self.success else "failed"
