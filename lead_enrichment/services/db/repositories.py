"""
Row stores for profiles, enrichment records, qualifications and results.

Enrichment records and qualification results are idempotent upserts keyed by
profile (and qualification), so concurrent or repeated writers converge on
the same row.
"""

import logging
from typing import Dict, List, Optional

from ...models import EnrichmentRecord, Profile, Qualification, QualificationResult
from ...utils import utc_now_iso
from .supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
ENRICHMENTS_TABLE = "profile_enrichments"
QUALIFICATIONS_TABLE = "qualifications"
RESULTS_TABLE = "qualification_results"


class ProfileStore:
    def __init__(self, db: SupabaseClient):
        self.db = db

    def get_by_ids(self, profile_ids: List[int], organization_id: str) -> List[Profile]:
        """
        Resolve ids to profiles owned by organization_id, in request order.

        Ids owned by another organization are dropped exactly like ids that
        do not exist.
        """
        if not profile_ids:
            return []

        result = (
            self.db.table(PROFILES_TABLE)
            .select("*")
            .in_("id", profile_ids)
            .eq("organization_id", organization_id)
            .execute()
        )
        by_id = {row["id"]: Profile.model_validate(row) for row in result.data or []}
        return [by_id[pid] for pid in profile_ids if pid in by_id]

    def get(self, profile_id: int, organization_id: str) -> Optional[Profile]:
        profiles = self.get_by_ids([profile_id], organization_id)
        return profiles[0] if profiles else None

    def mark_enriched(self, profile_id: int) -> None:
        self.db.table(PROFILES_TABLE).update({"enriched_at": utc_now_iso()}).eq("id", profile_id).execute()


class EnrichmentRecordStore:
    def __init__(self, db: SupabaseClient):
        self.db = db

    def upsert(self, record: EnrichmentRecord) -> EnrichmentRecord:
        if record.profile_id is None:
            raise ValueError("EnrichmentRecord needs a profile_id before it can be stored")

        row = record.model_dump(mode="json", exclude={"profile_url"})
        row["enriched_at"] = utc_now_iso()
        result = self.db.table(ENRICHMENTS_TABLE).upsert(row, on_conflict="profile_id").execute()
        return EnrichmentRecord.model_validate(result.data[0] if result.data else row)

    def get(self, profile_id: int) -> Optional[EnrichmentRecord]:
        result = self.db.table(ENRICHMENTS_TABLE).select("*").eq("profile_id", profile_id).execute()
        if not result.data:
            return None
        return EnrichmentRecord.model_validate(result.data[0])

    def get_many(self, profile_ids: List[int]) -> Dict[int, EnrichmentRecord]:
        if not profile_ids:
            return {}
        result = self.db.table(ENRICHMENTS_TABLE).select("*").in_("profile_id", profile_ids).execute()
        records = [EnrichmentRecord.model_validate(row) for row in result.data or []]
        return {r.profile_id: r for r in records}


class QualificationStore:
    def __init__(self, db: SupabaseClient):
        self.db = db

    def get(self, qualification_id: int, organization_id: str) -> Optional[Qualification]:
        result = (
            self.db.table(QUALIFICATIONS_TABLE)
            .select("*")
            .eq("id", qualification_id)
            .eq("organization_id", organization_id)
            .execute()
        )
        if not result.data:
            return None
        return Qualification.model_validate(result.data[0])


class QualificationResultStore:
    def __init__(self, db: SupabaseClient):
        self.db = db

    def upsert(self, result: QualificationResult) -> QualificationResult:
        """Replace any earlier result for the same (profile, qualification) pair."""
        row = result.model_dump(mode="json")
        row["evaluated_at"] = utc_now_iso()
        response = (
            self.db.table(RESULTS_TABLE)
            .upsert(row, on_conflict="profile_id,qualification_id")
            .execute()
        )
        return QualificationResult.model_validate(response.data[0] if response.data else row)

    def get_many(self, profile_ids: List[int], qualification_id: int) -> Dict[int, QualificationResult]:
        if not profile_ids:
            return {}
        response = (
            self.db.table(RESULTS_TABLE)
            .select("*")
            .in_("profile_id", profile_ids)
            .eq("qualification_id", qualification_id)
            .execute()
        )
        results = [QualificationResult.model_validate(row) for row in response.data or []]
        return {r.profile_id: r for r in results}

    def list_for_profile(self, profile_id: int) -> List[QualificationResult]:
        response = (
            self.db.table(RESULTS_TABLE)
            .select("*")
            .eq("profile_id", profile_id)
            .order("evaluated_at", desc=True)
            .execute()
        )
        return [QualificationResult.model_validate(row) for row in response.data or []]
