"""
Enrichment Router - Start and follow enrichment jobs

Endpoints:
- POST /enrichment/enrich - Start enriching profiles (202, returns job id)
- GET /enrichment/jobs/{id} - Job status
- POST /enrichment/jobs/{id}/abandon - Stop processing a job
- GET /enrichment/profiles/{id} - Stored enrichment record for a profile
- GET /enrichment/profiles/{id}/qualifications - Qualification results for a profile

Every endpoint is scoped to the X-Organization-Id header; another
organization's jobs and profiles look exactly like missing ones.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from ..dependencies import get_organization_id, get_services
from ..errors import (
    JobNotFoundError,
    NotConfiguredError,
    ProfilesNotFoundError,
    StaleStateError,
    ValidationError,
)
from ..models import EnrichmentJob
from ..services import Services

router = APIRouter()


# ============================================
# Pydantic Models
# ============================================

class EnrichRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Validated by the dispatcher so bad ids come back as 400
    profile_ids: list = Field(default_factory=list, alias="profileIds")
    qualification_id: Optional[int] = Field(None, alias="qualificationId")


class EnrichResponse(BaseModel):
    jobId: str
    snapshotId: Optional[str] = None
    profileCount: int
    status: str
    error: Optional[str] = None


class JobResponse(BaseModel):
    id: str
    status: str
    provider: Optional[str] = None
    profileIds: List[int]
    qualificationId: Optional[int] = None
    snapshotId: Optional[str] = None
    error: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None


def _job_response(job: EnrichmentJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        status=job.status.value,
        provider=job.provider.value if job.provider else None,
        profileIds=job.profile_ids,
        qualificationId=job.qualification_id,
        snapshotId=job.snapshot_id,
        error=job.error,
        summary=job.summary if job.is_terminal else None,
        createdAt=job.created_at,
        updatedAt=job.updated_at,
        completedAt=job.completed_at,
    )


# ============================================
# Endpoints
# ============================================

@router.post("/enrich", response_model=EnrichResponse, status_code=status.HTTP_202_ACCEPTED)
async def enrich_profiles(
    body: EnrichRequest,
    organization_id: str = Depends(get_organization_id),
    services: Services = Depends(get_services),
):
    """
    Start enrichment (and optional qualification) of profiles.

    Returns as soon as the provider accepted the work; poll the job for results.
    """
    try:
        result = await services.dispatcher.dispatch(
            body.profile_ids,
            organization_id,
            qualification_id=body.qualification_id,
        )
        return EnrichResponse(
            jobId=result.job_id,
            snapshotId=result.snapshot_id,
            profileCount=result.profile_count,
            status=result.status,
            error=result.error,
        )

    except ProfilesNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except NotConfiguredError as e:
        raise HTTPException(status_code=503, detail=e.message)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    organization_id: str = Depends(get_organization_id),
    services: Services = Depends(get_services),
):
    """Get job status. Terminal jobs include their summary."""
    try:
        job = services.jobs.get(job_id, organization_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return _job_response(job)

    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/jobs/{job_id}/abandon", response_model=JobResponse)
async def abandon_job(
    job_id: str,
    organization_id: str = Depends(get_organization_id),
    services: Services = Depends(get_services),
):
    """Mark a job failed. A running provider scrape is not cancelled."""
    try:
        job = services.jobs.abandon(job_id, organization_id)
        return _job_response(job)

    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except StaleStateError as e:
        raise HTTPException(status_code=409, detail=f"Job already {e.current_status}")
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/profiles/{profile_id}")
async def get_profile_enrichment(
    profile_id: int,
    organization_id: str = Depends(get_organization_id),
    services: Services = Depends(get_services),
):
    """Get the stored enrichment record for a profile."""
    try:
        if services.profiles.get(profile_id, organization_id) is None:
            raise HTTPException(status_code=404, detail="Profile not found")

        record = services.records.get(profile_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Profile has not been enriched")

        return record.model_dump(mode="json", exclude={"raw_response"})

    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/profiles/{profile_id}/qualifications")
async def get_profile_qualifications(
    profile_id: int,
    organization_id: str = Depends(get_organization_id),
    services: Services = Depends(get_services),
):
    """List qualification results for a profile, newest first."""
    try:
        if services.profiles.get(profile_id, organization_id) is None:
            raise HTTPException(status_code=404, detail="Profile not found")

        results = services.results.list_for_profile(profile_id)
        return {
            "profile_id": profile_id,
            "results": [r.model_dump(mode="json") for r in results],
        }

    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
