"""
Pipeline data model.

Rows come back from PostgREST as plain dicts; these models validate them at
the store boundary so services only handle typed values.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ============================================
# Job state machine
# ============================================

class JobStatus(str, Enum):
    PENDING = "pending"
    SCRAPING = "scraping"
    ENRICHING = "enriching"
    QUALIFYING = "qualifying"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.SCRAPING, JobStatus.FAILED}),
    JobStatus.SCRAPING: frozenset({JobStatus.ENRICHING, JobStatus.FAILED}),
    JobStatus.ENRICHING: frozenset({JobStatus.QUALIFYING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.QUALIFYING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def is_allowed_transition(current: JobStatus, target: JobStatus) -> bool:
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


class Provider(str, Enum):
    DEEP_SCRAPE = "deep_scrape"
    LOOKUP = "lookup"


class EnrichmentJob(BaseModel):
    id: str
    profile_ids: List[int]
    qualification_id: Optional[int] = None
    organization_id: str
    snapshot_id: Optional[str] = None
    provider: Optional[Provider] = None
    status: JobStatus
    error: Optional[str] = None
    summary: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("summary", mode="before")
    @classmethod
    def _summary_default(cls, value):
        return value or {}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ============================================
# Qualifications
# ============================================

class QualificationCriteria(BaseModel):
    """Scoring criteria. Accepts snake_case or camelCase keys; unknown keys are ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    min_connections: Optional[int] = None
    min_followers: Optional[int] = None
    min_experience_years: Optional[int] = None
    required_titles: List[str] = Field(default_factory=list)
    preferred_titles: List[str] = Field(default_factory=list)
    required_companies: List[str] = Field(default_factory=list)
    preferred_companies: List[str] = Field(default_factory=list)
    required_skills: List[str] = Field(default_factory=list)
    preferred_skills: List[str] = Field(default_factory=list)
    required_education: List[str] = Field(default_factory=list)
    custom_prompt: Optional[str] = None


class Qualification(BaseModel):
    id: int
    organization_id: str
    name: str
    description: Optional[str] = None
    criteria: QualificationCriteria = Field(default_factory=QualificationCriteria)

    @field_validator("criteria", mode="before")
    @classmethod
    def _criteria_default(cls, value):
        return value or {}


class ScoredResult(BaseModel):
    score: int = Field(ge=0, le=100)
    passed: bool
    reasoning: str
    low_confidence: bool = False


class QualificationResult(BaseModel):
    profile_id: int
    qualification_id: int
    score: int = Field(ge=0, le=100)
    passed: bool
    reasoning: str
    low_confidence: bool = False
    criteria_snapshot: Dict[str, Any] = Field(default_factory=dict)
    evaluated_at: Optional[datetime] = None


# ============================================
# Enrichment records
# ============================================

class EnrichmentRecord(BaseModel):
    """Provider-agnostic enrichment of one profile (one row per profile)."""

    profile_id: Optional[int] = None
    source: str
    profile_url: Optional[str] = None
    name: Optional[str] = None
    headline: Optional[str] = None
    location: Optional[str] = None
    current_company: Optional[str] = None
    experience: List[Dict[str, Any]] = Field(default_factory=list)
    education: List[Dict[str, Any]] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    certifications: List[Dict[str, Any]] = Field(default_factory=list)
    languages: List[Dict[str, Any]] = Field(default_factory=list)
    connection_count: Optional[int] = None
    follower_count: Optional[int] = None
    about: Optional[str] = None
    raw_response: Dict[str, Any] = Field(default_factory=dict)
    enriched_at: Optional[datetime] = None

    @field_validator("experience", "education", "skills", "certifications", "languages", mode="before")
    @classmethod
    def _list_default(cls, value):
        return value or []

    @field_validator("raw_response", mode="before")
    @classmethod
    def _raw_default(cls, value):
        return value or {}


class Profile(BaseModel):
    """Captured profile row. Owned by the capture side; read-only here."""

    model_config = ConfigDict(extra="ignore")

    id: int
    organization_id: str
    profile_url: Optional[str] = None
    vanity_name: Optional[str] = None
    name: Optional[str] = None
    company: Optional[str] = None


# ============================================
# Queue
# ============================================

class MessageKind(str, Enum):
    COLLECT = "collect"     # wait for and ingest a deep-scrape delivery
    LOOKUP = "lookup"       # run lookup-provider enrichment for a job
    QUALIFY = "qualify"     # score an enriched job


class QueueMessage(BaseModel):
    id: Optional[str] = None
    kind: MessageKind
    job_id: str
    organization_id: str
    profile_ids: List[int] = Field(default_factory=list)
    profile_urls: List[str] = Field(default_factory=list)
    qualification_id: Optional[int] = None
    snapshot_id: Optional[str] = None
    attempts: int = 0

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id", "kind", "attempts"})
