"""
Queue Bridge - durable hand-off between the API and background workers.

Messages live in the enrichment_queue table. A worker claims a message by
bumping its attempts counter with a compare-and-swap and pushing visible_at
past the visibility timeout; if the worker dies the message becomes visible
again on its own. ack deletes, retry re-schedules with exponential backoff,
and a message that runs out of attempts is parked as dead. defer re-schedules
without counting the attempt, for messages that are only waiting.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..errors import QueueError
from ..models import QueueMessage
from ..utils import to_iso, utc_now, utc_now_iso
from .db.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

QUEUE_TABLE = "enrichment_queue"

STATUS_QUEUED = "queued"
STATUS_DEAD = "dead"


class QueueBridge:
    def __init__(
        self,
        db: SupabaseClient,
        visibility_timeout: int = 300,
        max_attempts: int = 8,
        backoff_base: int = 30,
        backoff_max: int = 900,
    ):
        self.db = db
        self.visibility_timeout = visibility_timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    def backoff_seconds(self, attempts: int) -> int:
        """30s, 60s, 120s, ... capped at backoff_max."""
        exponent = max(attempts, 1) - 1
        return min(self.backoff_base * (2 ** exponent), self.backoff_max)

    def send(self, message: QueueMessage, delay_seconds: int = 0) -> QueueMessage:
        now = utc_now()
        row = {
            "id": str(uuid.uuid4()),
            "kind": message.kind.value,
            "payload": message.payload(),
            "attempts": 0,
            "status": STATUS_QUEUED,
            "visible_at": to_iso(now + timedelta(seconds=delay_seconds)),
            "last_error": None,
            "created_at": to_iso(now),
        }
        try:
            self.db.table(QUEUE_TABLE).insert(row).execute()
        except httpx.HTTPError as e:
            raise QueueError(f"Failed to enqueue {message.kind.value} message: {e}", message.job_id) from e

        logger.info("[Queue] Enqueued %s message %s for job %s", message.kind.value, row["id"], message.job_id)
        return message.model_copy(update={"id": row["id"], "attempts": 0})

    def receive(self, max_messages: int = 1) -> List[QueueMessage]:
        """Claim up to max_messages visible messages."""
        now = utc_now()
        try:
            result = (
                self.db.table(QUEUE_TABLE)
                .select("*")
                .eq("status", STATUS_QUEUED)
                .lte("visible_at", to_iso(now))
                .order("visible_at")
                .limit(max_messages * 3)
                .execute()
            )
        except httpx.HTTPError as e:
            raise QueueError(f"Failed to read queue: {e}") from e

        claimed: List[QueueMessage] = []
        lease_until = to_iso(now + timedelta(seconds=self.visibility_timeout))

        for row in result.data or []:
            if len(claimed) >= max_messages:
                break

            attempts = int(row.get("attempts") or 0)
            try:
                update = (
                    self.db.table(QUEUE_TABLE)
                    .update({"attempts": attempts + 1, "visible_at": lease_until})
                    .eq("id", row["id"])
                    .eq("status", STATUS_QUEUED)
                    .eq("attempts", attempts)
                    .execute()
                )
            except httpx.HTTPError as e:
                raise QueueError(f"Failed to claim message {row['id']}: {e}") from e

            if not update.data:
                # Another worker claimed it first
                continue

            message = self._to_message(update.data[0])
            if message is not None:
                claimed.append(message)

        return claimed

    def ack(self, message: QueueMessage) -> None:
        try:
            self.db.table(QUEUE_TABLE).delete().eq("id", message.id).execute()
        except httpx.HTTPError as e:
            raise QueueError(f"Failed to ack message {message.id}: {e}", message.job_id) from e

    def retry(self, message: QueueMessage, error: str) -> bool:
        """
        Schedule another attempt after backoff.

        Returns:
            False when the message has used all its attempts and was parked as dead
        """
        if message.attempts >= self.max_attempts:
            self._dead_letter(message, error)
            return False

        delay = self.backoff_seconds(message.attempts)
        visible_at = to_iso(utc_now() + timedelta(seconds=delay))
        try:
            (
                self.db.table(QUEUE_TABLE)
                .update({"visible_at": visible_at, "last_error": error[:500]})
                .eq("id", message.id)
                .execute()
            )
        except httpx.HTTPError as e:
            raise QueueError(f"Failed to reschedule message {message.id}: {e}", message.job_id) from e

        logger.info(
            "[Queue] Retrying %s message %s for job %s in %ss (attempt %d/%d)",
            message.kind.value, message.id, message.job_id, delay, message.attempts, self.max_attempts,
        )
        return True

    def defer(self, message: QueueMessage, reason: str, delay_seconds: Optional[int] = None) -> None:
        """
        Check the message again later without spending one of its attempts.

        For work that is waiting on someone else (a scrape still running, a
        job held by another worker). Whatever bounds the wait lives outside
        the queue.
        """
        delay = self.backoff_max if delay_seconds is None else delay_seconds
        visible_at = to_iso(utc_now() + timedelta(seconds=delay))
        try:
            (
                self.db.table(QUEUE_TABLE)
                .update({
                    # receive() counted this claim; give it back
                    "attempts": max(message.attempts - 1, 0),
                    "visible_at": visible_at,
                    "last_error": reason[:500],
                })
                .eq("id", message.id)
                .execute()
            )
        except httpx.HTTPError as e:
            raise QueueError(f"Failed to defer message {message.id}: {e}", message.job_id) from e

        logger.info(
            "[Queue] Deferring %s message %s for job %s by %ss: %s",
            message.kind.value, message.id, message.job_id, delay, reason,
        )

    def _dead_letter(self, message: QueueMessage, error: str) -> None:
        logger.error(
            "[Queue] Message %s for job %s dead after %d attempts: %s",
            message.id, message.job_id, message.attempts, error,
        )
        try:
            (
                self.db.table(QUEUE_TABLE)
                .update({"status": STATUS_DEAD, "last_error": error[:500], "visible_at": utc_now_iso()})
                .eq("id", message.id)
                .execute()
            )
        except httpx.HTTPError as e:
            raise QueueError(f"Failed to dead-letter message {message.id}: {e}", message.job_id) from e

    def _to_message(self, row: Dict[str, Any]) -> Optional[QueueMessage]:
        payload = row.get("payload") or {}
        try:
            return QueueMessage(
                id=row["id"],
                kind=row["kind"],
                attempts=int(row.get("attempts") or 0),
                **payload,
            )
        except (PydanticValidationError, TypeError) as e:
            logger.error("[Queue] Unreadable message %s: %s", row.get("id"), e)
            self.db.table(QUEUE_TABLE).update(
                {"status": STATUS_DEAD, "last_error": f"unreadable payload: {e}"[:500]}
            ).eq("id", row["id"]).execute()
            return None
