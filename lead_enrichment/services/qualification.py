"""
Qualification Engine - score enriched profiles against a qualification.

One scoring call per profile. A qualifying job is held by one worker at a
time: updated_at acts as a lease that the scoring worker keeps renewing, and
another worker only takes the job over once the lease has run out. The model only supplies a score and its
reasoning; pass/fail is always derived locally from the threshold, and a
score the model got wrong (missing, non-numeric, out of range) is coerced
and flagged low-confidence instead of being trusted.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from ..config import DEFAULT_SCORING_MODEL
from ..errors import JobBusyError, JobNotFoundError, ScoringError
from ..models import (
    EnrichmentJob,
    EnrichmentRecord,
    JobStatus,
    QualificationCriteria,
    QualificationResult,
    ScoredResult,
)
from ..utils import to_iso, utc_now, utc_now_iso
from .db.job_store import JobStore
from .db.repositories import EnrichmentRecordStore, QualificationResultStore, QualificationStore

logger = logging.getLogger(__name__)

PASS_THRESHOLD = 70

QUALIFY_LEASE_SECONDS = 900

SYSTEM_PROMPT = """You are an expert recruiter evaluating LinkedIn profiles against job qualification criteria.
Your task is to score how well a candidate matches the requirements on a scale of 0-100.

Scoring guidelines:
- 90-100: Exceptional match, exceeds all requirements
- 70-89: Strong match, meets most requirements
- 50-69: Moderate match, meets some requirements
- 30-49: Weak match, meets few requirements
- 0-29: Poor match, does not meet requirements

IMPORTANT: Be flexible and make reasonable inferences when data is missing.
- If experience years aren't explicit, infer from job history, seniority of roles, or career progression
- A senior title or founder role implies significant experience
- High follower counts suggest industry influence and experience
- Don't penalize candidates for incomplete LinkedIn profiles - judge based on available evidence

Respond with JSON only:
{
  "score": <number 0-100>,
  "reasoning": "<brief explanation of score>"
}"""

USER_PROMPT = """Evaluate this candidate profile against the job criteria.

## Candidate Profile
{profile_summary}

## Job Qualification Criteria
{criteria_summary}
{additional}
Respond with a JSON object containing score and reasoning fields."""


# ============================================
# Prompt building
# ============================================

def _count(value: Optional[int]) -> str:
    return f"{value:,}" if value else "Unknown"


def build_profile_summary(record: EnrichmentRecord) -> str:
    """Markdown summary of an enrichment record for the scoring prompt."""
    lines = [
        f"**Name:** {record.name or 'Unknown'}",
        f"**Headline:** {record.headline or 'Not specified'}",
        f"**Location:** {record.location or 'Not specified'}",
        f"**Connections:** {_count(record.connection_count)}",
        f"**Followers:** {_count(record.follower_count)}",
    ]

    if record.current_company:
        lines.append(f"**Current Company:** {record.current_company}")

    if record.about:
        about = record.about[:500] + ("..." if len(record.about) > 500 else "")
        lines.append(f"\n**About:**\n{about}")

    if record.experience:
        lines.append("\n**Experience:**")
        for exp in record.experience[:5]:
            dates = f"({exp.get('start_date')} - {exp.get('end_date') or 'Present'})" if exp.get("start_date") else ""
            lines.append(f"- {exp.get('title') or 'Unknown role'} at {exp.get('company') or 'Unknown company'} {dates}".rstrip())
            # Role changes nested under one company
            for pos in (exp.get("positions") or [])[:3]:
                pos_dates = f"({pos.get('start_date')} - {pos.get('end_date') or 'Present'})" if pos.get("start_date") else ""
                lines.append(f"  - {pos.get('title')} {pos_dates}".rstrip())

    if record.education:
        lines.append("\n**Education:**")
        for edu in record.education[:3]:
            line = f"- {edu.get('school') or 'Unknown school'}"
            if edu.get("degree"):
                line += f": {edu['degree']}"
                if edu.get("field_of_study"):
                    line += f" in {edu['field_of_study']}"
            if edu.get("start_year") or edu.get("end_year"):
                line += f" ({edu.get('start_year') or '?'} - {edu.get('end_year') or '?'})"
            lines.append(line)

    if record.skills:
        lines.append(f"\n**Skills:** {', '.join(record.skills[:15])}")

    if record.certifications:
        lines.append("\n**Certifications:**")
        for cert in record.certifications[:5]:
            issuer = f" ({cert['issuing_organization']})" if cert.get("issuing_organization") else ""
            lines.append(f"- {cert.get('name')}{issuer}")

    if record.languages:
        languages = [
            f"{lang.get('language')}" + (f" ({lang['proficiency']})" if lang.get("proficiency") else "")
            for lang in record.languages
        ]
        lines.append(f"\n**Languages:** {', '.join(languages)}")

    return "\n".join(lines)


def build_criteria_summary(criteria: QualificationCriteria) -> str:
    lines = []

    if criteria.min_connections:
        lines.append(f"- Minimum connections: {criteria.min_connections:,}")
    if criteria.min_followers:
        lines.append(f"- Minimum followers: {criteria.min_followers:,}")
    if criteria.min_experience_years:
        lines.append(f"- Minimum years of experience: {criteria.min_experience_years}")
    if criteria.required_titles:
        lines.append(f"- Required job titles (must have held): {', '.join(criteria.required_titles)}")
    if criteria.preferred_titles:
        lines.append(f"- Preferred job titles: {', '.join(criteria.preferred_titles)}")
    if criteria.required_companies:
        lines.append(f"- Required companies (must have worked at): {', '.join(criteria.required_companies)}")
    if criteria.preferred_companies:
        lines.append(f"- Preferred companies: {', '.join(criteria.preferred_companies)}")
    if criteria.required_skills:
        lines.append(f"- Required skills: {', '.join(criteria.required_skills)}")
    if criteria.preferred_skills:
        lines.append(f"- Preferred skills: {', '.join(criteria.preferred_skills)}")
    if criteria.required_education:
        lines.append(f"- Required education: {', '.join(criteria.required_education)}")

    return "\n".join(lines) if lines else "No specific criteria defined"


# ============================================
# Score coercion
# ============================================

def _parse_score(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def coerce_score(raw: Any, pass_threshold: int = PASS_THRESHOLD) -> ScoredResult:
    """
    Turn whatever the model returned into a ScoredResult.

    Numeric strings are accepted and fractions rounded half up. A missing or
    non-numeric score becomes 0, an out-of-range one is clamped; both are
    flagged low_confidence. The model's own pass/fail opinion is ignored.
    """
    data = raw if isinstance(raw, dict) else {}

    reasoning = data.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning.strip():
        reasoning = "No reasoning provided"

    low_confidence = False
    number = _parse_score(data.get("score"))
    if number is None:
        score = 0
        low_confidence = True
    else:
        score = int(math.floor(number + 0.5))
        if score < 0 or score > 100:
            score = max(0, min(100, score))
            low_confidence = True

    return ScoredResult(
        score=score,
        passed=score >= pass_threshold,
        reasoning=reasoning.strip(),
        low_confidence=low_confidence,
    )


# ============================================
# Scorer
# ============================================

class OpenAIScorer:
    """Chat-completion scorer returning the model's raw JSON answer."""

    def __init__(self, api_key: Optional[str], model: str = DEFAULT_SCORING_MODEL, client: Optional[Any] = None):
        self.api_key = api_key
        self.model = model
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.api_key) or self._client is not None

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise ScoringError("OPENAI_API_KEY not configured")
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def score(
        self,
        profile_summary: str,
        criteria_summary: str,
        custom_prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Raises:
            ScoringError: the request failed or the answer was not a JSON object
        """
        additional = f"\n## Additional Requirements\n{custom_prompt}\n" if custom_prompt else ""
        prompt = USER_PROMPT.format(
            profile_summary=profile_summary,
            criteria_summary=criteria_summary,
            additional=additional,
        )

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
            )
            content = response.choices[0].message.content
        except ScoringError:
            raise
        except Exception as e:
            raise ScoringError(f"Scoring request failed: {e}") from e

        try:
            result = json.loads(content or "")
        except ValueError as e:
            raise ScoringError(f"Could not parse scoring response: {(content or '')[:200]}") from e

        if not isinstance(result, dict):
            raise ScoringError("Scoring response was not a JSON object")
        return result


# ============================================
# Engine
# ============================================

@dataclass
class QualificationOutcome:
    job_id: str
    status: str
    scored: int = 0
    passed: int = 0
    low_confidence: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


class QualificationEngine:
    def __init__(
        self,
        jobs: JobStore,
        records: EnrichmentRecordStore,
        qualifications: QualificationStore,
        results: QualificationResultStore,
        scorer: OpenAIScorer,
        pass_threshold: int = PASS_THRESHOLD,
        lease_seconds: int = QUALIFY_LEASE_SECONDS,
    ):
        self.jobs = jobs
        self.records = records
        self.qualifications = qualifications
        self.results = results
        self.scorer = scorer
        self.pass_threshold = pass_threshold
        self.lease = timedelta(seconds=lease_seconds)

    def _lease_expired(self, job: EnrichmentJob) -> bool:
        return job.updated_at is None or utc_now() - job.updated_at > self.lease

    def _renew(self, job: EnrichmentJob) -> EnrichmentJob:
        """Keep the lease alive; stop if another worker has taken the job."""
        if job.updated_at is not None and utc_now() - job.updated_at < self.lease / 3:
            return job
        renewed = self.jobs.take_over(job)
        if renewed is None:
            raise JobBusyError("Lost the job to another worker", job.id)
        return renewed

    def _start(self, job_id: str) -> EnrichmentJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", job_id)

        if job.status == JobStatus.QUALIFYING:
            if not self._lease_expired(job):
                raise JobBusyError("Job is being scored by another worker", job_id)
            # The worker holding it stopped renewing; take over
            taken = self.jobs.take_over(job)
            if taken is None:
                raise JobBusyError("Job was taken over by another worker", job_id)
            logger.info("[Qualifier] Job %s: resuming scoring after an expired lease", job_id)
            return taken

        return self.jobs.transition(
            job_id,
            JobStatus.ENRICHING,
            JobStatus.QUALIFYING,
            summary={**job.summary, "qualify_started_at": utc_now_iso()},
        )

    def _scored_this_run(self, job: EnrichmentJob, profile_ids: List[int], qualification_id: int) -> Dict[int, QualificationResult]:
        """Results already written since this job started qualifying (kept across a takeover)."""
        started_at = job.summary.get("qualify_started_at")
        if not started_at:
            return {}
        return {
            pid: result
            for pid, result in self.results.get_many(profile_ids, qualification_id).items()
            if result.evaluated_at is not None and to_iso(result.evaluated_at) > started_at
        }

    async def qualify_job(self, job_id: str) -> QualificationOutcome:
        """
        Score every enriched profile of a job and settle it.

        Raises:
            JobNotFoundError: no such job
            StaleStateError: the job was not ready for scoring
            JobBusyError: another worker is scoring the job
        """
        job = self._start(job_id)
        held = job

        qualification = None
        if job.qualification_id is not None:
            qualification = self.qualifications.get(job.qualification_id, job.organization_id)
        if qualification is None:
            failed = self.jobs.fail(job_id, f"Qualification {job.qualification_id} not found")
            return QualificationOutcome(job_id=job_id, status=failed.status.value)

        profile_ids = job.summary.get("enriched") or job.profile_ids
        records = self.records.get_many(profile_ids)
        criteria_summary = build_criteria_summary(qualification.criteria)
        criteria_snapshot = qualification.criteria.model_dump(by_alias=True)

        done = self._scored_this_run(job, profile_ids, qualification.id)

        outcome = QualificationOutcome(job_id=job_id, status=job.status.value)

        for profile_id in profile_ids:
            held = self._renew(held)
            previous = done.get(profile_id)
            if previous is not None:
                outcome.scored += 1
                outcome.passed += int(previous.passed)
                outcome.low_confidence += int(previous.low_confidence)
                continue

            record = records.get(profile_id)
            if record is None:
                logger.info("[Qualifier] Job %s: profile %s has no enrichment record", job_id, profile_id)
                continue

            try:
                raw = await self.scorer.score(
                    build_profile_summary(record),
                    criteria_summary,
                    qualification.criteria.custom_prompt,
                )
            except ScoringError as e:
                error = ScoringError(e.message, job_id, profile_id=profile_id)
                logger.warning("[Qualifier] Profile %s: %s", profile_id, error)
                outcome.errors.append({"profile_id": profile_id, "error": e.message})
                continue

            scored = coerce_score(raw, self.pass_threshold)
            if scored.low_confidence:
                logger.info("[Qualifier] Profile %s: low-confidence score %s (raw %r)", profile_id, scored.score, raw.get("score"))

            self.results.upsert(QualificationResult(
                profile_id=profile_id,
                qualification_id=qualification.id,
                score=scored.score,
                passed=scored.passed,
                reasoning=scored.reasoning,
                low_confidence=scored.low_confidence,
                criteria_snapshot=criteria_snapshot,
            ))
            outcome.scored += 1
            outcome.passed += int(scored.passed)
            outcome.low_confidence += int(scored.low_confidence)

        summary = {
            **job.summary,
            "scored": outcome.scored,
            "passed": outcome.passed,
            "low_confidence": outcome.low_confidence,
            "scoring_failed": len(outcome.errors),
            "errors": outcome.errors,
        }

        if outcome.scored == 0:
            if outcome.errors:
                first = outcome.errors[0]
                error = (
                    f"Scoring failed for all {len(outcome.errors)} profiles of job {job_id}: "
                    f"profile {first['profile_id']}: {first['error']}"
                )
            else:
                error = f"No enriched profiles to score for job {job_id}"
            failed = self.jobs.fail(job_id, error, summary=summary)
            outcome.status = failed.status.value
            return outcome

        completed = self.jobs.transition(job_id, JobStatus.QUALIFYING, JobStatus.COMPLETED, summary=summary)
        logger.info(
            "[Qualifier] Job %s: scored %d, passed %d, failed %d",
            job_id, outcome.scored, outcome.passed, len(outcome.errors),
        )
        outcome.status = completed.status.value
        return outcome
