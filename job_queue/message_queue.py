"""
Print Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  print:dispatch    — Tickets ready to print
  print:delayed     — Retries waiting for their backoff (sorted set in Redis)
  print:dlq         — Dead-letter stream for tickets that never printed

Message Schema:
  {
      "job_id":        unique job identifier (stable across retries),
      "order_id":      Order to print,
      "printer_name":  target printer,
      "duplicate":     "1" to print a second copy,
      "attempt":       current attempt number,
      "max_attempts":  ceiling before DLQ,
      "scheduled_at":  ISO timestamp when the job should execute,
      "created_at":    ISO timestamp when the job was enqueued,
      "metadata":      JSON-encoded extra data (last failure, DLQ reason),
  }

Enqueueing is fire-and-forget from the conversation's point of view: order
creation never waits on the printer.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from config.settings import QueueConfig

logger = structlog.get_logger()

JobHandler = Callable[["QueueJob"], Awaitable[Any]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class PrintJob:
    """What the conversation asks for: print this order on that printer."""
    order_id: str
    printer_name: str = "default"
    duplicate: bool = False


@dataclass
class QueueJob:
    """A PrintJob plus delivery bookkeeping."""
    order_id: str
    printer_name: str = "default"
    duplicate: bool = False
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: str = ""
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"print_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = _now().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at

    @classmethod
    def from_print_job(cls, job: PrintJob, max_attempts: int = 3) -> QueueJob:
        return cls(order_id=job.order_id, printer_name=job.printer_name,
                   duplicate=job.duplicate, max_attempts=max_attempts)

    def to_dict(self) -> dict[str, str]:
        d = asdict(self)
        d["metadata"] = json.dumps(d["metadata"])
        d["duplicate"] = "1" if self.duplicate else "0"
        d["attempt"] = str(d["attempt"])
        d["max_attempts"] = str(d["max_attempts"])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"] or "{}")
        data["duplicate"] = str(data.get("duplicate", "0")).lower() in ("1", "true")
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def exhausted(self) -> bool:
        return self.attempt + 1 >= self.max_attempts

    def next_retry_job(self, backoff_seconds: int = 30) -> QueueJob:
        """Same job_id, attempt + 1, scheduled after an exponential backoff."""
        retry_at = _now() + timedelta(seconds=backoff_seconds * (2 ** self.attempt))
        return QueueJob(
            order_id=self.order_id,
            printer_name=self.printer_name,
            duplicate=self.duplicate,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=retry_at.isoformat(),
            created_at=self.created_at,
            metadata={**self.metadata, "last_failure_at": _now().isoformat()},
            job_id=self.job_id,
        )


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    DISPATCH = "print:dispatch"
    DELAYED = "print:delayed"
    DLQ = "print:dlq"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class JobQueue(ABC):
    """Abstract print queue interface."""

    def __init__(self, max_attempts: int = 3, retry_backoff_base: int = 30):
        self.max_attempts = max_attempts
        self.retry_backoff_base = retry_backoff_base
        self._running = False

    async def enqueue(self, job: PrintJob) -> QueueJob:
        queued = QueueJob.from_print_job(job, max_attempts=self.max_attempts)
        await self.publish(Queues.DISPATCH, queued)
        return queued

    async def nack(self, job: QueueJob, error: str = "") -> None:
        """Failed attempt: schedule a retry, or dead-letter once attempts run out."""
        if job.exhausted:
            job.metadata["dlq_reason"] = error or f"Exceeded {job.max_attempts} attempts"
            await self._dead_letter(job)
            logger.warning("print_job_moved_to_dlq", job_id=job.job_id,
                           order_id=job.order_id, attempts=job.attempt + 1)
            return
        retry_job = job.next_retry_job(self.retry_backoff_base)
        await self.publish_delayed(retry_job)
        logger.info("print_job_scheduled_for_retry", job_id=job.job_id,
                    attempt=retry_job.attempt, scheduled_at=retry_job.scheduled_at)

    def stop(self) -> None:
        self._running = False

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def publish(self, queue: str, job: QueueJob) -> None: ...

    @abstractmethod
    async def publish_delayed(self, job: QueueJob) -> None: ...

    @abstractmethod
    async def _dead_letter(self, job: QueueJob) -> None: ...

    @abstractmethod
    async def consume(self, handler: JobHandler, consumer_group: str = "print-workers",
                      consumer_name: str = "", batch_size: int = 10) -> None:
        """Run until stop(); each job goes to handler, failures go to nack()."""
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int: ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]: ...

    @abstractmethod
    async def promote_delayed(self) -> int:
        """Move due retries to the dispatch queue; returns how many moved."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisJobQueue(JobQueue):
    """
    Production queue backed by Redis Streams + a Sorted Set.

    - Dispatch uses a Redis Stream with consumer groups
    - Retries wait in a Sorted Set scored by scheduled_at
    - The DLQ is a Redis Stream kept for inspection
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", **kwargs):
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self._redis = None

    async def connect(self) -> None:
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True, max_connections=20)
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self) -> None:
        self._running = False
        if self._redis:
            await self._redis.close()

    async def _ensure_group(self, group: str) -> None:
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(Queues.DISPATCH, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, queue: str, job: QueueJob) -> None:
        await self._redis.xadd(queue, job.to_dict())
        logger.info("print_job_published", queue=queue, job_id=job.job_id, order_id=job.order_id)

    async def publish_delayed(self, job: QueueJob) -> None:
        score = datetime.fromisoformat(job.scheduled_at).timestamp()
        await self._redis.zadd(Queues.DELAYED, {json.dumps(job.to_dict()): score})

    async def _dead_letter(self, job: QueueJob) -> None:
        await self.publish(Queues.DLQ, job)

    async def consume(self, handler: JobHandler, consumer_group: str = "print-workers",
                      consumer_name: str = "", batch_size: int = 10) -> None:
        consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        await self._ensure_group(consumer_group)
        self._running = True
        logger.info("consumer_started", queue=Queues.DISPATCH, group=consumer_group,
                    consumer=consumer_name)

        while self._running:
            try:
                messages = await self._redis.xreadgroup(
                    groupname=consumer_group,
                    consumername=consumer_name,
                    streams={Queues.DISPATCH: ">"},
                    count=batch_size,
                    block=2000,
                )
                for _, stream_messages in messages or []:
                    for message_id, fields in stream_messages:
                        job = QueueJob.from_dict(fields)
                        try:
                            await handler(job)
                        except Exception as e:
                            logger.error("print_job_handler_error", job_id=job.job_id, error=str(e))
                            await self.nack(job, error=str(e))
                        await self._redis.xack(Queues.DISPATCH, consumer_group, message_id)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=Queues.DISPATCH, error=str(e))
                await asyncio.sleep(1)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return await self._redis.zcard(queue)
        return await self._redis.xlen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        messages = await self._redis.xrange(queue, count=count)
        return [QueueJob.from_dict(fields) for _, fields in messages]

    async def promote_delayed(self) -> int:
        ready = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", _now().timestamp())
        if not ready:
            return 0
        pipe = self._redis.pipeline()
        for payload in ready:
            job = QueueJob.from_dict(json.loads(payload))
            pipe.xadd(Queues.DISPATCH, job.to_dict())
            pipe.zrem(Queues.DELAYED, payload)
        await pipe.execute()
        logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryJobQueue(JobQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no consumer groups or persistence.
    """

    def __init__(self, promote_interval: float = 5.0, **kwargs):
        super().__init__(**kwargs)
        self.promote_interval = promote_interval
        self._queues: dict[str, asyncio.Queue] = {}
        self._delayed: list[tuple[float, QueueJob]] = []
        self._dlq: list[QueueJob] = []
        self._promoter: Optional[asyncio.Task] = None

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    @property
    def dead_letters(self) -> list[QueueJob]:
        return list(self._dlq)

    async def connect(self) -> None:
        self._running = True
        self._promoter = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_queue_connected")

    async def close(self) -> None:
        self._running = False
        if self._promoter:
            self._promoter.cancel()
            try:
                await self._promoter
            except asyncio.CancelledError:
                pass
            self._promoter = None

    async def publish(self, queue: str, job: QueueJob) -> None:
        await self._get_queue(queue).put(job)
        logger.info("print_job_published", queue=queue, job_id=job.job_id, order_id=job.order_id)

    async def publish_delayed(self, job: QueueJob) -> None:
        score = datetime.fromisoformat(job.scheduled_at).timestamp()
        self._delayed.append((score, job))
        self._delayed.sort(key=lambda x: x[0])

    async def _dead_letter(self, job: QueueJob) -> None:
        self._dlq.append(job)

    async def consume(self, handler: JobHandler, consumer_group: str = "print-workers",
                      consumer_name: str = "", batch_size: int = 10) -> None:
        q = self._get_queue(Queues.DISPATCH)
        self._running = True
        logger.info("consumer_started", queue=Queues.DISPATCH)

        while self._running:
            try:
                job = await asyncio.wait_for(q.get(), timeout=2.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            try:
                await handler(job)
            except Exception as e:
                logger.error("print_job_handler_error", job_id=job.job_id, error=str(e))
                await self.nack(job, error=str(e))

    async def process_next(self, handler: JobHandler) -> bool:
        """Handle one waiting dispatch job, if any. Used by tests and scripts."""
        q = self._get_queue(Queues.DISPATCH)
        if q.empty():
            return False
        job = q.get_nowait()
        try:
            await handler(job)
        except Exception as e:
            logger.error("print_job_handler_error", job_id=job.job_id, error=str(e))
            await self.nack(job, error=str(e))
        return True

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return len(self._delayed)
        if queue == Queues.DLQ:
            return len(self._dlq)
        return self._get_queue(queue).qsize()

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        if queue == Queues.DLQ:
            return self._dlq[:count]
        if queue == Queues.DELAYED:
            return [job for _, job in self._delayed[:count]]
        return list(self._get_queue(queue)._queue)[:count]

    async def promote_delayed(self, now: Optional[float] = None) -> int:
        now = _now().timestamp() if now is None else now
        ready = [job for ts, job in self._delayed if ts <= now]
        self._delayed = [(ts, job) for ts, job in self._delayed if ts > now]
        for job in ready:
            await self.publish(Queues.DISPATCH, job)
        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)

    async def _promote_loop(self) -> None:
        while self._running:
            try:
                await self.promote_delayed()
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self.promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[JobQueue] = None


def create_job_queue(config: Optional[QueueConfig] = None) -> JobQueue:
    """Factory: create the configured queue backend once."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or QueueConfig()
    common = {"max_attempts": config.max_attempts, "retry_backoff_base": config.retry_backoff_base}
    if config.backend == "redis":
        _instance = RedisJobQueue(redis_url=config.redis_url, **common)
    else:
        _instance = InMemoryJobQueue(**common)
    return _instance


def get_job_queue() -> JobQueue:
    global _instance
    if _instance is None:
        _instance = create_job_queue()
    return _instance


def reset_job_queue() -> None:
    global _instance
    _instance = None
