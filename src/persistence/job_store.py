"""
Job Store - durable, transactional queue backing the order scheduler

One row per order id. Every state change is a compare-and-set UPDATE
guarded on the current state, so a job can be claimed by at most one
worker even with several schedulers sharing the database.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from loguru import logger
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from .database import Database
from .models import JobRecord
from ..execution_engine.order_schemas import Job, JobState, as_utc, utc_now


class JobStore:
    """
    Persistent job queue with attempt bookkeeping and retention
    """

    # Rows inspected per claim; a few extra in case other workers win races
    CLAIM_BATCH = 5

    def __init__(self, database: Database):
        self.database = database

    def add(self, order_id: str, max_attempts: int, backoff_delay: float,
            session: Optional[Session] = None) -> bool:
        """
        Queue a job for an order

        Args:
            session: Join this transaction instead of committing on its own

        Returns:
            False if a job for this order already exists (in any state)
        """
        now = utc_now()
        with self.database.session(session) as session:
            if session.get(JobRecord, order_id) is not None:
                return False
            session.add(JobRecord(
                job_id=order_id,
                order_id=order_id,
                state=JobState.WAITING.value,
                attempts_made=0,
                max_attempts=max_attempts,
                backoff_delay=backoff_delay,
                available_at=now,
                created_at=now
            ))
        return True

    def get(self, job_id: str) -> Optional[Job]:
        with self.database.session() as session:
            record = session.get(JobRecord, job_id)
            return self._to_job(record) if record else None

    def claim_next(self, now: Optional[datetime] = None) -> Optional[Job]:
        """
        Atomically move the oldest ready job to ACTIVE and count the attempt

        Returns:
            The claimed job, or None when nothing is ready
        """
        now = now or utc_now()
        with self.database.session() as session:
            candidates = (session.query(JobRecord.job_id)
                          .filter(JobRecord.state == JobState.WAITING.value,
                                  JobRecord.available_at <= now)
                          .order_by(JobRecord.available_at.asc(), JobRecord.created_at.asc())
                          .limit(self.CLAIM_BATCH)
                          .all())

            for (job_id,) in candidates:
                claimed = (session.query(JobRecord)
                           .filter(JobRecord.job_id == job_id,
                                   JobRecord.state == JobState.WAITING.value)
                           .update({
                               JobRecord.state: JobState.ACTIVE.value,
                               JobRecord.attempts_made: JobRecord.attempts_made + 1,
                               JobRecord.started_at: now
                           }, synchronize_session=False))
                if claimed == 1:
                    session.flush()
                    record = session.get(JobRecord, job_id, populate_existing=True)
                    return self._to_job(record)

        return None

    def has_ready(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        with self.database.session() as session:
            return (session.query(JobRecord.job_id)
                    .filter(JobRecord.state == JobState.WAITING.value,
                            JobRecord.available_at <= now)
                    .first()) is not None

    def next_available_at(self) -> Optional[datetime]:
        """Earliest time a waiting job becomes ready"""
        with self.database.session() as session:
            value = (session.query(func.min(JobRecord.available_at))
                     .filter(JobRecord.state == JobState.WAITING.value)
                     .scalar())
            return as_utc(value)

    def complete(self, job_id: str) -> bool:
        return self._finish(job_id, JobState.COMPLETED, None)

    def fail(self, job_id: str, error: str) -> bool:
        return self._finish(job_id, JobState.FAILED, error)

    def retry_later(self, job_id: str, error: str, delay_seconds: float) -> bool:
        """Return an active job to the queue after a backoff delay"""
        available_at = utc_now() + timedelta(seconds=delay_seconds)
        with self.database.session() as session:
            updated = (session.query(JobRecord)
                       .filter(JobRecord.job_id == job_id,
                               JobRecord.state == JobState.ACTIVE.value)
                       .update({
                           JobRecord.state: JobState.WAITING.value,
                           JobRecord.available_at: available_at,
                           JobRecord.last_error: error
                       }, synchronize_session=False))
        return updated == 1

    def release(self, job_id: str) -> bool:
        """
        Put back a job whose attempt was interrupted (e.g. shutdown)

        The interrupted attempt is not counted.
        """
        with self.database.session() as session:
            updated = (session.query(JobRecord)
                       .filter(JobRecord.job_id == job_id,
                               JobRecord.state == JobState.ACTIVE.value)
                       .update({
                           JobRecord.state: JobState.WAITING.value,
                           JobRecord.attempts_made: case(
                               (JobRecord.attempts_made > 0, JobRecord.attempts_made - 1),
                               else_=0
                           ),
                           JobRecord.available_at: utc_now()
                       }, synchronize_session=False))
        return updated == 1

    def recover_stalled(self) -> int:
        """
        Requeue jobs left ACTIVE by a process that died mid-attempt

        Attempt counters are kept, so a crash consumes an attempt.
        Only call this when no other scheduler shares the database.
        """
        with self.database.session() as session:
            recovered = (session.query(JobRecord)
                         .filter(JobRecord.state == JobState.ACTIVE.value)
                         .update({
                             JobRecord.state: JobState.WAITING.value,
                             JobRecord.available_at: utc_now()
                         }, synchronize_session=False))
        if recovered:
            logger.warning(f"Recovered {recovered} stalled jobs")
        return recovered

    def counts(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Job counts by state; waiting jobs still in backoff are reported as delayed"""
        now = now or utc_now()
        with self.database.session() as session:
            by_state = dict(session.query(JobRecord.state, func.count())
                            .group_by(JobRecord.state)
                            .all())
            delayed = (session.query(func.count())
                       .select_from(JobRecord)
                       .filter(JobRecord.state == JobState.WAITING.value,
                               JobRecord.available_at > now)
                       .scalar())

        waiting_total = by_state.get(JobState.WAITING.value, 0)
        return {
            'waiting': waiting_total - delayed,
            'delayed': delayed,
            'active': by_state.get(JobState.ACTIVE.value, 0),
            'completed': by_state.get(JobState.COMPLETED.value, 0),
            'failed': by_state.get(JobState.FAILED.value, 0)
        }

    def purge(self, completed_max_age: float, completed_max_count: int,
              failed_max_age: float, now: Optional[datetime] = None) -> int:
        """
        Delete finished jobs past their retention

        Completed jobs are kept for completed_max_age seconds and at most
        completed_max_count of them; failed jobs for failed_max_age seconds.
        """
        now = now or utc_now()
        completed_cutoff = now - timedelta(seconds=completed_max_age)
        failed_cutoff = now - timedelta(seconds=failed_max_age)

        with self.database.session() as session:
            removed = (session.query(JobRecord)
                       .filter(JobRecord.state == JobState.COMPLETED.value,
                               JobRecord.finished_at < completed_cutoff)
                       .delete(synchronize_session=False))

            removed += (session.query(JobRecord)
                        .filter(JobRecord.state == JobState.FAILED.value,
                                JobRecord.finished_at < failed_cutoff)
                        .delete(synchronize_session=False))

            overflow = (session.query(JobRecord.job_id)
                        .filter(JobRecord.state == JobState.COMPLETED.value)
                        .order_by(JobRecord.finished_at.desc())
                        .offset(completed_max_count)
                        .all())
            if overflow:
                removed += (session.query(JobRecord)
                            .filter(JobRecord.job_id.in_([job_id for (job_id,) in overflow]))
                            .delete(synchronize_session=False))

        if removed:
            logger.info(f"Purged {removed} finished jobs")
        return removed

    def _finish(self, job_id: str, state: JobState, error: Optional[str]) -> bool:
        values = {
            JobRecord.state: state.value,
            JobRecord.finished_at: utc_now()
        }
        if error is not None:
            values[JobRecord.last_error] = error

        with self.database.session() as session:
            updated = (session.query(JobRecord)
                       .filter(JobRecord.job_id == job_id,
                               JobRecord.state == JobState.ACTIVE.value)
                       .update(values, synchronize_session=False))
        if updated != 1:
            logger.warning(f"Job {job_id} was not active; could not mark {state.value}")
        return updated == 1

    @staticmethod
    def _to_job(record: JobRecord) -> Job:
        return Job(
            job_id=record.job_id,
            order_id=record.order_id,
            state=JobState(record.state),
            attempts_made=record.attempts_made,
            max_attempts=record.max_attempts,
            backoff_delay=record.backoff_delay,
            available_at=as_utc(record.available_at),
            created_at=as_utc(record.created_at),
            started_at=as_utc(record.started_at),
            finished_at=as_utc(record.finished_at),
            last_error=record.last_error
        )
