"""Job store for relay jobs.

Supports two backends:
1. MongoDB (durable) - jobs survive server restart and are shared between
   relay instances
2. In-memory (fallback) - for testing or single-process deployments

Every state transition is a single conditional write: the filter encodes the
allowed source states, so two workers racing on the same job cannot both
win. Jobs are never deleted by the relay.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from llm_relay.api.exceptions import (
    DuplicateJobError,
    JobAlreadyCompletedError,
    JobAlreadyFailedError,
    JobBusyError,
    JobNotFoundError,
)
from llm_relay.models import (
    MAX_DELIVERY_RETRIES,
    DeliveryAttempt,
    RelayJob,
    RelayJobStatus,
    ensure_tz_aware,
)

logger = logging.getLogger(__name__)

# Collection name for MongoDB storage
RELAY_JOBS_COLLECTION = "relay_jobs"

DATETIME_FIELDS = (
    "created_at",
    "processing_started_at",
    "completed_at",
    "fetched_at",
    "last_delivery_retry_at",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _refuse_claim(job: RelayJob, stale_after: float, now: datetime) -> None:
    """Raise the error explaining why a job cannot be claimed."""
    if job.status == RelayJobStatus.completed:
        raise JobAlreadyCompletedError(job.job_id)
    if job.status == RelayJobStatus.failed:
        raise JobAlreadyFailedError(job.job_id, job.error)
    started = ensure_tz_aware(job.processing_started_at) or now
    raise JobBusyError(job.job_id, (now - started).total_seconds())


def _log_claim(job: RelayJob) -> None:
    if job.processing_attempts > 1:
        logger.warning(
            f"Reclaimed stale job {job.job_id} (attempt {job.processing_attempts})"
        )
    else:
        logger.info(f"Claimed job {job.job_id}")


class BaseJobStore(ABC):
    """Abstract base class for relay job stores."""

    async def ensure_indexes(self) -> None:
        """Called on application startup. Override to prepare storage."""
        pass

    @abstractmethod
    async def create_job(self, job_id: str, payload: dict[str, Any]) -> RelayJob:
        """Insert a queued job.

        Raises:
            DuplicateJobError: If the id is already taken.
        """
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[RelayJob]:
        """Get a job by ID."""
        pass

    @abstractmethod
    async def begin_processing(self, job_id: str, stale_after: float) -> RelayJob:
        """Atomically claim a job for processing.

        A queued job is claimed. A processing job is reclaimed only when its
        claim is older than ``stale_after`` seconds.

        Raises:
            JobNotFoundError: Unknown id.
            JobAlreadyCompletedError: Result already stored.
            JobAlreadyFailedError: Error already stored.
            JobBusyError: Another worker holds a fresh claim.
        """
        pass

    @abstractmethod
    async def complete_job(
        self, job_id: str, attempt: int, result: dict[str, Any]
    ) -> Optional[RelayJob]:
        """Store the result if ``attempt`` still owns the job."""
        pass

    @abstractmethod
    async def fail_job(self, job_id: str, attempt: int, error: str) -> Optional[RelayJob]:
        """Store the error if ``attempt`` still owns the job."""
        pass

    @abstractmethod
    async def mark_fetched(self, job_id: str) -> Optional[RelayJob]:
        """Stamp fetched_at on a completed job if it is still unset.

        Returns the job as stored afterwards, or None for an unknown id.
        """
        pass

    @abstractmethod
    async def record_delivery_retry(self, job_id: str) -> Optional[RelayJob]:
        """Count one reconciliation attempt.

        Only succeeds while the job is completed, unfetched and below the
        retry limit. Returns None otherwise.
        """
        pass

    @abstractmethod
    async def append_delivery_attempt(self, job_id: str, attempt: DeliveryAttempt) -> None:
        """Add an entry to the job's delivery log."""
        pass

    @abstractmethod
    async def find_undelivered(
        self,
        completed_after: datetime,
        completed_before: datetime,
        limit: int,
    ) -> list[RelayJob]:
        """Completed, unfetched jobs eligible for a webhook re-push, newest first."""
        pass

    @abstractmethod
    async def find_stalled(
        self,
        queued_before: datetime,
        processing_before: datetime,
        limit: int,
    ) -> list[RelayJob]:
        """Jobs whose trigger was lost or whose worker died, oldest first."""
        pass


class InMemoryJobStore(BaseJobStore):
    """In-memory relay job store.

    Thread-safe via an asyncio lock; every transition is a read-modify-write
    under the lock. Returns copies so callers never hold live state.
    Jobs are lost on server restart.
    """

    def __init__(self):
        """Initialize job store."""
        self._jobs: dict[str, RelayJob] = {}
        self._lock = asyncio.Lock()

    async def create_job(self, job_id: str, payload: dict[str, Any]) -> RelayJob:
        """Create a new relay job."""
        job = RelayJob(job_id=job_id, payload=payload)

        async with self._lock:
            if job_id in self._jobs:
                raise DuplicateJobError(job_id)
            self._jobs[job_id] = job

        logger.debug(f"Created relay job {job_id}")
        return job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[RelayJob]:
        """Get a job by ID."""
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def begin_processing(self, job_id: str, stale_after: float) -> RelayJob:
        """Claim a job under the store lock."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            now = _utcnow()
            claimable = job.status == RelayJobStatus.queued or job.is_stale(stale_after, now)
            if not claimable:
                _refuse_claim(job, stale_after, now)

            job.status = RelayJobStatus.processing
            job.processing_started_at = now
            job.error = None
            job.processing_attempts += 1
            claimed = job.model_copy(deep=True)

        _log_claim(claimed)
        return claimed

    async def _finish(self, job_id: str, attempt: int, **fields) -> Optional[RelayJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if (
                job is None
                or job.status != RelayJobStatus.processing
                or job.processing_attempts != attempt
            ):
                return None
            for key, value in fields.items():
                setattr(job, key, value)
            job.completed_at = _utcnow()
            return job.model_copy(deep=True)

    async def complete_job(
        self, job_id: str, attempt: int, result: dict[str, Any]
    ) -> Optional[RelayJob]:
        """Store the result for the owning attempt."""
        return await self._finish(
            job_id, attempt, status=RelayJobStatus.completed, result=result, error=None
        )

    async def fail_job(self, job_id: str, attempt: int, error: str) -> Optional[RelayJob]:
        """Store the error for the owning attempt."""
        return await self._finish(
            job_id, attempt, status=RelayJobStatus.failed, result=None, error=error
        )

    async def mark_fetched(self, job_id: str) -> Optional[RelayJob]:
        """Stamp fetched_at once."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.status == RelayJobStatus.completed and job.fetched_at is None:
                job.fetched_at = _utcnow()
            return job.model_copy(deep=True)

    async def record_delivery_retry(self, job_id: str) -> Optional[RelayJob]:
        """Increment the retry counter if the job is still eligible."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if (
                job is None
                or job.status != RelayJobStatus.completed
                or job.fetched_at is not None
                or job.delivery_retry_count >= MAX_DELIVERY_RETRIES
            ):
                return None
            job.delivery_retry_count += 1
            job.last_delivery_retry_at = _utcnow()
            return job.model_copy(deep=True)

    async def append_delivery_attempt(self, job_id: str, attempt: DeliveryAttempt) -> None:
        """Record a webhook push."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.delivery_log.append(attempt)

    async def find_undelivered(
        self,
        completed_after: datetime,
        completed_before: datetime,
        limit: int,
    ) -> list[RelayJob]:
        """Scan for unfetched completed jobs inside the window."""
        async with self._lock:
            matching = [
                job for job in self._jobs.values()
                if job.status == RelayJobStatus.completed
                and job.fetched_at is None
                and job.delivery_retry_count < MAX_DELIVERY_RETRIES
                and job.completed_at is not None
                and completed_after < job.completed_at < completed_before
            ]
            matching.sort(key=lambda j: j.completed_at, reverse=True)
            return [job.model_copy(deep=True) for job in matching[:limit]]

    async def find_stalled(
        self,
        queued_before: datetime,
        processing_before: datetime,
        limit: int,
    ) -> list[RelayJob]:
        """Scan for queued or processing jobs that stopped moving."""
        async with self._lock:
            matching = []
            for job in self._jobs.values():
                if job.status == RelayJobStatus.queued and job.created_at < queued_before:
                    matching.append(job)
                elif job.status == RelayJobStatus.processing and (
                    job.processing_started_at is None
                    or job.processing_started_at < processing_before
                ):
                    matching.append(job)
            matching.sort(key=lambda j: j.created_at)
            return [job.model_copy(deep=True) for job in matching[:limit]]

    def __len__(self) -> int:
        """Return total number of jobs in store."""
        return len(self._jobs)


def _to_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert to naive UTC, the form MongoDB returns datetimes in."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


class MongoJobStore(BaseJobStore):
    """MongoDB-backed relay job store.

    Jobs persist across server restarts. Transitions use
    ``find_one_and_update`` so the filter and the write are one atomic step.
    """

    def __init__(self):
        """Initialize MongoDB job store."""
        self._index_created = False

    async def _get_collection(self):
        """Get the MongoDB collection."""
        from llm_relay.db.mongo import get_database
        db = await get_database()
        return db[RELAY_JOBS_COLLECTION]

    async def ensure_indexes(self) -> None:
        """Create indexes if not exists."""
        if self._index_created:
            return

        try:
            collection = await self._get_collection()
            # Unique job id doubles as the duplicate-submission guard
            await collection.create_index("job_id", unique=True)
            # Reconciliation scans
            await collection.create_index([("status", 1), ("completed_at", DESCENDING)])
            await collection.create_index([("status", 1), ("created_at", 1)])
            self._index_created = True
            logger.info("MongoDB relay job store indexes created")
        except PyMongoError as e:
            logger.warning(f"Failed to create MongoDB relay job indexes: {e}")

    def _job_to_doc(self, job: RelayJob) -> dict:
        """Convert RelayJob to MongoDB document."""
        doc = job.model_dump(mode="python")
        doc["status"] = job.status.value
        for key in DATETIME_FIELDS:
            doc[key] = _to_naive(doc[key])
        doc["delivery_log"] = [self._attempt_to_doc(a) for a in job.delivery_log]
        return doc

    def _attempt_to_doc(self, attempt: DeliveryAttempt) -> dict:
        doc = attempt.model_dump(mode="python")
        doc["attempted_at"] = _to_naive(attempt.attempted_at)
        return doc

    def _doc_to_job(self, doc: dict) -> RelayJob:
        """Convert MongoDB document to RelayJob."""
        delivery_log = []
        for entry in doc.get("delivery_log") or []:
            entry = dict(entry)
            entry["attempted_at"] = ensure_tz_aware(entry.get("attempted_at"))
            delivery_log.append(DeliveryAttempt.model_validate(entry))

        return RelayJob(
            job_id=doc["job_id"],
            status=RelayJobStatus(doc["status"]),
            payload=doc.get("payload") or {},
            result=doc.get("result"),
            error=doc.get("error"),
            created_at=ensure_tz_aware(doc["created_at"]),
            processing_started_at=ensure_tz_aware(doc.get("processing_started_at")),
            completed_at=ensure_tz_aware(doc.get("completed_at")),
            processing_attempts=doc.get("processing_attempts", 0),
            fetched_at=ensure_tz_aware(doc.get("fetched_at")),
            delivery_retry_count=doc.get("delivery_retry_count", 0),
            last_delivery_retry_at=ensure_tz_aware(doc.get("last_delivery_retry_at")),
            delivery_log=delivery_log,
        )

    async def create_job(self, job_id: str, payload: dict[str, Any]) -> RelayJob:
        """Create a new relay job in MongoDB."""
        await self.ensure_indexes()

        job = RelayJob(job_id=job_id, payload=payload)
        collection = await self._get_collection()
        try:
            await collection.insert_one(self._job_to_doc(job))
        except DuplicateKeyError:
            raise DuplicateJobError(job_id)

        logger.debug(f"Created relay job {job_id} in MongoDB")
        return job

    async def get_job(self, job_id: str) -> Optional[RelayJob]:
        """Get a job by ID from MongoDB."""
        collection = await self._get_collection()
        doc = await collection.find_one({"job_id": job_id})

        if not doc:
            return None

        return self._doc_to_job(doc)

    async def begin_processing(self, job_id: str, stale_after: float) -> RelayJob:
        """Claim a job with one conditional update."""
        collection = await self._get_collection()
        now = _utcnow()
        cutoff = _to_naive(now - timedelta(seconds=stale_after))

        doc = await collection.find_one_and_update(
            {
                "job_id": job_id,
                "$or": [
                    {"status": RelayJobStatus.queued.value},
                    {
                        "status": RelayJobStatus.processing.value,
                        "processing_started_at": {"$lte": cutoff},
                    },
                    {
                        "status": RelayJobStatus.processing.value,
                        "processing_started_at": None,
                    },
                ],
            },
            {
                "$set": {
                    "status": RelayJobStatus.processing.value,
                    "processing_started_at": _to_naive(now),
                    "error": None,
                },
                "$inc": {"processing_attempts": 1},
            },
            return_document=ReturnDocument.AFTER,
        )

        if doc is None:
            current = await self.get_job(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            _refuse_claim(current, stale_after, now)

        claimed = self._doc_to_job(doc)
        _log_claim(claimed)
        return claimed

    async def _finish(self, job_id: str, attempt: int, fields: dict) -> Optional[RelayJob]:
        collection = await self._get_collection()
        fields["completed_at"] = _to_naive(_utcnow())
        doc = await collection.find_one_and_update(
            {
                "job_id": job_id,
                "status": RelayJobStatus.processing.value,
                "processing_attempts": attempt,
            },
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return self._doc_to_job(doc) if doc else None

    async def complete_job(
        self, job_id: str, attempt: int, result: dict[str, Any]
    ) -> Optional[RelayJob]:
        """Store the result for the owning attempt."""
        return await self._finish(job_id, attempt, {
            "status": RelayJobStatus.completed.value,
            "result": result,
            "error": None,
        })

    async def fail_job(self, job_id: str, attempt: int, error: str) -> Optional[RelayJob]:
        """Store the error for the owning attempt."""
        return await self._finish(job_id, attempt, {
            "status": RelayJobStatus.failed.value,
            "result": None,
            "error": error,
        })

    async def mark_fetched(self, job_id: str) -> Optional[RelayJob]:
        """Stamp fetched_at once."""
        collection = await self._get_collection()
        doc = await collection.find_one_and_update(
            {
                "job_id": job_id,
                "status": RelayJobStatus.completed.value,
                "fetched_at": None,
            },
            {"$set": {"fetched_at": _to_naive(_utcnow())}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return self._doc_to_job(doc)
        return await self.get_job(job_id)

    async def record_delivery_retry(self, job_id: str) -> Optional[RelayJob]:
        """Increment the retry counter if the job is still eligible."""
        collection = await self._get_collection()
        doc = await collection.find_one_and_update(
            {
                "job_id": job_id,
                "status": RelayJobStatus.completed.value,
                "fetched_at": None,
                "delivery_retry_count": {"$lt": MAX_DELIVERY_RETRIES},
            },
            {
                "$inc": {"delivery_retry_count": 1},
                "$set": {"last_delivery_retry_at": _to_naive(_utcnow())},
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._doc_to_job(doc) if doc else None

    async def append_delivery_attempt(self, job_id: str, attempt: DeliveryAttempt) -> None:
        """Record a webhook push."""
        collection = await self._get_collection()
        await collection.update_one(
            {"job_id": job_id},
            {"$push": {"delivery_log": self._attempt_to_doc(attempt)}},
        )

    async def find_undelivered(
        self,
        completed_after: datetime,
        completed_before: datetime,
        limit: int,
    ) -> list[RelayJob]:
        """Query unfetched completed jobs inside the window."""
        collection = await self._get_collection()
        cursor = collection.find({
            "status": RelayJobStatus.completed.value,
            "fetched_at": None,
            "delivery_retry_count": {"$lt": MAX_DELIVERY_RETRIES},
            "completed_at": {
                "$gt": _to_naive(completed_after),
                "$lt": _to_naive(completed_before),
            },
        }).sort("completed_at", DESCENDING).limit(limit)

        docs = await cursor.to_list(length=limit)
        return [self._doc_to_job(doc) for doc in docs]

    async def find_stalled(
        self,
        queued_before: datetime,
        processing_before: datetime,
        limit: int,
    ) -> list[RelayJob]:
        """Query queued or processing jobs that stopped moving."""
        collection = await self._get_collection()
        cursor = collection.find({
            "$or": [
                {
                    "status": RelayJobStatus.queued.value,
                    "created_at": {"$lt": _to_naive(queued_before)},
                },
                {
                    "status": RelayJobStatus.processing.value,
                    "processing_started_at": {"$lt": _to_naive(processing_before)},
                },
                {
                    "status": RelayJobStatus.processing.value,
                    "processing_started_at": None,
                },
            ],
        }).sort("created_at", 1).limit(limit)

        docs = await cursor.to_list(length=limit)
        return [self._doc_to_job(doc) for doc in docs]


# Module-level singleton instance
_job_store: Optional[BaseJobStore] = None


def get_job_store() -> BaseJobStore:
    """Get the default job store singleton.

    Uses MongoDB unless JOB_STORE_BACKEND selects the in-memory store.
    """
    global _job_store
    if _job_store is None:
        use_mongo = os.getenv("JOB_STORE_BACKEND", "mongo").lower() == "mongo"
        if use_mongo:
            _job_store = MongoJobStore()
            logger.info("Using MongoDB relay job store")
        else:
            _job_store = InMemoryJobStore()
            logger.info("Using in-memory relay job store")
    return _job_store


def set_job_store(store: Optional[BaseJobStore]) -> None:
    """Set the job store instance (for testing)."""
    global _job_store
    _job_store = store
