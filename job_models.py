from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

DESIGN_FILE = "design.pes"
PREVIEW_FILE = "preview.png"
OUTPUT_FILES = (DESIGN_FILE, PREVIEW_FILE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    done = "done"
    error = "error"
    canceled = "canceled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.done, JobStatus.error, JobStatus.canceled})


class DoneOutcome(BaseModel):
    kind: Literal["done"] = "done"
    files: Dict[str, str]
    duration_seconds: Optional[float] = None


class ErrorOutcome(BaseModel):
    kind: Literal["error"] = "error"
    error_kind: str
    message: str
    exit_code: Optional[int] = None
    command: List[str] = Field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    duration_seconds: Optional[float] = None


class CanceledOutcome(BaseModel):
    kind: Literal["canceled"] = "canceled"
    was_running: bool = False
    exit_code: Optional[int] = None


JobOutcome = Annotated[Union[DoneOutcome, ErrorOutcome, CanceledOutcome], Field(discriminator="kind")]

OUTCOME_STATUS = {
    "done": JobStatus.done,
    "error": JobStatus.error,
    "canceled": JobStatus.canceled,
}


class JobRecord(BaseModel):
    id: str
    status: JobStatus = JobStatus.queued
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    layers: List[str] = Field(default_factory=list)
    command: List[str] = Field(default_factory=list)
    outcome: Optional[JobOutcome] = None
    queue_position: Optional[int] = None
    reconstructed: bool = False


def output_urls(job_id: str) -> Dict[str, str]:
    return {
        "pes": f"/api/jobs/{job_id}/{DESIGN_FILE}",
        "preview": f"/api/jobs/{job_id}/{PREVIEW_FILE}",
    }
