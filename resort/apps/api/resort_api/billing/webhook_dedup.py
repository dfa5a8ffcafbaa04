"""Processor-event idempotency gate: atomic INSERT ON CONFLICT on webhook_events.

Stripe delivers webhooks at least once, sometimes concurrently. Admission
guarantees at most one handler performs side effects for a given event id:

  0. SELECT status for the event id
       → 'failed'            : go to step 2 (reclaim)
       → other existing row  : AlreadyProcessed → 200 immediately
  1. INSERT ON CONFLICT (id) DO NOTHING RETURNING id
       → row returned  : this request is the FIRST processor → Admitted
       → no row        : lost the race to a concurrent delivery → step 2
  2. UPDATE ... WHERE id = :id AND status = 'failed' RETURNING id
       → row returned  : previous attempt failed; reclaimed → Admitted
       → no row        : 'done' or concurrent 'processing' → AlreadyProcessed

The primary key on webhook_events makes exactly one INSERT win under
concurrent load; the reclaim UPDATE is atomic under its row lock. A row left
in 'processing' (crash after admission) is not reclaimed here.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import TIMESTAMP, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from resort_api.billing.result import Err, ErrorKind, Ok, Result

logger = logging.getLogger(__name__)


class Admission(str, enum.Enum):
    ADMITTED = "admitted"
    ALREADY_PROCESSED = "already_processed"


_SELECT_SQL = text("SELECT status FROM webhook_events WHERE id = :id")

_INSERT_SQL = text("""
    INSERT INTO webhook_events
        (id, event_type, processed, status, received_at, payload_hash)
    VALUES
        (:id, :event_type, false, 'processing', :now, :payload_hash)
    ON CONFLICT (id) DO NOTHING
    RETURNING id
""").bindparams(bindparam("now", type_=TIMESTAMP(timezone=True)))

_RECLAIM_SQL = text("""
    UPDATE webhook_events
    SET status = 'processing', last_seen_at = :now
    WHERE id = :id AND status = 'failed'
    RETURNING id
""").bindparams(bindparam("now", type_=TIMESTAMP(timezone=True)))

_MARK_DONE_SQL = text("""
    UPDATE webhook_events
    SET processed = true, status = 'done', last_seen_at = :now
    WHERE id = :id
""").bindparams(bindparam("now", type_=TIMESTAMP(timezone=True)))

_MARK_FAILED_SQL = text("""
    UPDATE webhook_events
    SET processed = false, status = 'failed', last_seen_at = :now
    WHERE id = :id
""").bindparams(bindparam("now", type_=TIMESTAMP(timezone=True)))


class IdempotencyStore:
    """Record handled processor events; one admission per event id."""

    def __init__(self, db: Session):
        self.db = db

    def admit(
        self,
        event_id: str,
        event_type: str,
        payload_hash: Optional[str] = None,
    ) -> Result[Admission]:
        now = datetime.now(timezone.utc)
        try:
            existing = self.db.execute(_SELECT_SQL, {"id": event_id}).fetchone()

            if existing is None:
                row = self.db.execute(_INSERT_SQL, {
                    "id": event_id,
                    "event_type": event_type,
                    "now": now,
                    "payload_hash": payload_hash,
                }).fetchone()
                if row is not None:
                    self.db.commit()
                    logger.debug("WEBHOOK_EVENT_ADMITTED", extra={"event_id": event_id})
                    return Ok(Admission.ADMITTED)
            elif existing.status != "failed":
                self.db.commit()
                logger.info(
                    "WEBHOOK_EVENT_DUPLICATE",
                    extra={"event_id": event_id, "status": existing.status},
                )
                return Ok(Admission.ALREADY_PROCESSED)

            # Conflict on insert, or a previously failed attempt
            reclaimed = self.db.execute(_RECLAIM_SQL, {"id": event_id, "now": now}).fetchone()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "WEBHOOK_EVENT_ADMISSION_FAILED",
                extra={"event_id": event_id, "error_type": type(e).__name__},
                exc_info=True,
            )
            return Err(ErrorKind.STORAGE_ERROR, "Failed to record webhook event")

        if reclaimed is not None:
            logger.info("WEBHOOK_EVENT_RECLAIMED", extra={"event_id": event_id})
            return Ok(Admission.ADMITTED)

        logger.info("WEBHOOK_EVENT_DUPLICATE", extra={"event_id": event_id})
        return Ok(Admission.ALREADY_PROCESSED)

    def mark_processed(self, event_id: str) -> Result[None]:
        """Flip processed=true once every side effect has committed."""
        return self._mark(_MARK_DONE_SQL, event_id)

    def mark_failed(self, event_id: str) -> Result[None]:
        """Leave processed=false and allow the next delivery to reclaim."""
        return self._mark(_MARK_FAILED_SQL, event_id)

    def _mark(self, statement, event_id: str) -> Result[None]:
        try:
            self.db.execute(statement, {"id": event_id, "now": datetime.now(timezone.utc)})
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "WEBHOOK_EVENT_MARK_FAILED",
                extra={"event_id": event_id, "error_type": type(e).__name__},
                exc_info=True,
            )
            return Err(ErrorKind.STORAGE_ERROR, "Failed to update webhook event")
        return Ok(None)
