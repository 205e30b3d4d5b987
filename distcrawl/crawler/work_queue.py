"""
Durable work queue for URL tasks.

The frontier lives in a single Redis stream. Every entry is one URL task
published under the subject ``url.<domain>`` of its partition, and a
consumer group shared by all crawler processes hands out leases on the
entries. An entry stays in the group's pending list until it is acked; if
its lease is not settled within ``ack_wait`` it is reclaimed and
redelivered to whichever consumer asks next.
"""

import asyncio
import logging
import os
import socket
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Tuple, Union

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from .exceptions import BrokerUnavailable, EnqueueBatchError, InvalidTarget, QueueClosed
from .partitioner import SUBJECT_PREFIX, get_domain, partition_subject

STREAM_NAME = "CRAWL_QUEUE"
CONSUMER_GROUP = "crawler-worker"


def default_consumer_name() -> str:
    """Consumer name unique to this process."""
    return f"{socket.gethostname()}-{os.getpid()}"


def _decode(value: Union[bytes, str]) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value


@dataclass
class URLTask:
    """A leased URL task. The message id is the acknowledgment handle."""
    url: str
    domain: str
    message_id: str
    delivery_count: int = 1
    settled: bool = field(default=False, compare=False)

    @property
    def subject(self) -> str:
        return SUBJECT_PREFIX + self.domain

    @property
    def redelivered(self) -> bool:
        return self.delivery_count > 1


class WorkQueue:
    """
    Partitioned, at-least-once FIFO on top of Redis Streams.

    Enqueue appends to the stream, dequeue leases entries through the
    consumer group, ack removes an entry for good and nak hands it back for
    redelivery. Redelivery and the retry bound are driven by the lease
    bookkeeping Redis keeps for the group; nothing is retried in process.
    """

    def __init__(self, redis_client: redis.Redis, stream: str = STREAM_NAME,
                 group: str = CONSUMER_GROUP, consumer: Optional[str] = None,
                 prefetch: int = 1000, ack_wait: float = 60.0, max_deliver: int = 5,
                 block_ms: int = 1000, reclaim_interval: float = 1.0):
        self.redis_client = redis_client
        self.stream = stream
        self.group = group
        self.consumer = consumer or default_consumer_name()
        self.prefetch = prefetch
        self.ack_wait = ack_wait
        self.max_deliver = max_deliver
        self.block_ms = block_ms
        self.reclaim_interval = reclaim_interval
        self.logger = logging.getLogger(__name__)

        self._buffer: Deque[URLTask] = deque()
        self._closed = False
        self._last_reclaim = float('-inf')
        self._reclaim_cursor = "0-0"

    @classmethod
    def from_config(cls, config) -> 'WorkQueue':
        """Build a queue and its Redis connection from a ``BrokerConfig``."""
        redis_client = redis.Redis(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            socket_connect_timeout=config.connect_timeout,
            decode_responses=False
        )
        return cls(
            redis_client,
            stream=config.stream,
            group=config.group,
            consumer=config.consumer,
            prefetch=config.prefetch,
            ack_wait=config.ack_wait,
            max_deliver=config.max_deliver,
            block_ms=config.block_ms,
            reclaim_interval=config.reclaim_interval
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self):
        if self._closed:
            raise QueueClosed()

    async def initialize(self):
        """Create the stream and its consumer group on first run."""
        self._ensure_open()
        try:
            await self.redis_client.xgroup_create(self.stream, self.group, id='0', mkstream=True)
            self.logger.info(f"Created consumer group {self.group} on stream {self.stream}")
        except ResponseError as e:
            if 'BUSYGROUP' not in str(e):
                raise BrokerUnavailable(f"failed to create consumer group {self.group}: {e}") from e
            self.logger.debug(f"Consumer group {self.group} already exists")
        except RedisError as e:
            raise BrokerUnavailable(f"failed to initialize stream {self.stream}: {e}") from e

        self.logger.info(f"Work queue ready: stream={self.stream} group={self.group} consumer={self.consumer}")

    # Publishing

    @staticmethod
    def _entry(url: str) -> Dict[str, Union[str, bytes]]:
        subject = partition_subject(url)
        try:
            payload = url.encode('utf-8')
        except UnicodeEncodeError as e:
            raise InvalidTarget(url, "not encodable as UTF-8") from e
        return {'subject': subject, 'data': payload}

    async def enqueue(self, url: str) -> str:
        """Publish one URL and wait for Redis to confirm the append."""
        self._ensure_open()
        entry = self._entry(url)
        try:
            message_id = await self.redis_client.xadd(self.stream, entry)
        except RedisError as e:
            raise BrokerUnavailable(f"failed to enqueue {url}: {e}") from e

        self.logger.debug(f"Enqueued {url} on {entry['subject']}")
        return _decode(message_id)

    async def enqueue_batch(self, urls: Iterable[str]) -> int:
        """
        Publish many URLs in one pipelined round trip.

        Every URL is attempted. Returns the number of URLs enqueued, or raises
        EnqueueBatchError naming each URL that failed.
        """
        self._ensure_open()
        failures: List[Tuple[str, Exception]] = []
        pending: List[str] = []
        results: list = []

        async with self.redis_client.pipeline(transaction=False) as pipe:
            for url in urls:
                try:
                    entry = self._entry(url)
                except InvalidTarget as e:
                    failures.append((url, e))
                    continue
                pipe.xadd(self.stream, entry)
                pending.append(url)

            if pending:
                try:
                    results = await pipe.execute(raise_on_error=False)
                except RedisError as e:
                    results = [e] * len(pending)

        enqueued = 0
        for url, result in zip(pending, results):
            if isinstance(result, Exception):
                failures.append((url, BrokerUnavailable(f"failed to enqueue {url}: {result}")))
            else:
                enqueued += 1

        if failures:
            raise EnqueueBatchError(failures, enqueued)

        self.logger.debug(f"Enqueued batch of {enqueued} URLs")
        return enqueued

    # Consuming

    async def dequeue(self, cancel: Optional[asyncio.Event] = None) -> URLTask:
        """
        Lease the next task, waiting until one is available.

        Raises QueueClosed once the queue is closed or ``cancel`` is set.
        """
        while True:
            self._ensure_open()
            if cancel is not None and cancel.is_set():
                raise QueueClosed("dequeue cancelled")
            while self._buffer:
                task = self._buffer.popleft()
                if await self._renew_lease(task):
                    return task
            await self._fill_buffer()

    async def _renew_lease(self, task: URLTask) -> bool:
        """
        Restart the lease clock of a task leaving the buffer.

        Buffered tasks have been leased since they were read. One that sat
        idle for ``ack_wait`` may already belong to another consumer, so it
        is given up and left to the reclaim instead of being handed out.
        """
        try:
            pending = await self.redis_client.xpending_range(
                self.stream, self.group, task.message_id, task.message_id, 1
            )
            if not pending:
                self.logger.debug(f"Task {task.message_id} was settled elsewhere, skipping")
                return False

            lease = pending[0]
            if (_decode(lease['consumer']) != self.consumer
                    or int(lease['time_since_delivered']) >= self.ack_wait * 1000):
                self.logger.debug(f"Lease on {task.message_id} expired in the buffer, skipping")
                return False

            await self.redis_client.xclaim(
                self.stream,
                self.group,
                self.consumer,
                min_idle_time=0,
                message_ids=[task.message_id],
                idle=0,
                justid=True
            )
        except RedisError as e:
            raise BrokerUnavailable(f"failed to renew lease on {task.message_id}: {e}") from e
        return True

    async def _fill_buffer(self):
        now = time.monotonic()
        if now - self._last_reclaim >= self.reclaim_interval:
            self._last_reclaim = now
            reclaimed = await self._reclaim_expired()
            if reclaimed:
                self._buffer.extend(reclaimed)
                return

        try:
            response = await self.redis_client.xreadgroup(
                self.group,
                self.consumer,
                {self.stream: '>'},
                count=self.prefetch,
                block=self.block_ms
            )
        except RedisError as e:
            if self._closed:
                raise QueueClosed() from e
            raise BrokerUnavailable(f"failed to read from {self.stream}: {e}") from e

        tasks = []
        for _stream, entries in response or []:
            for message_id, fields in entries:
                task = await self._to_task(message_id, fields, delivery_count=1)
                if task:
                    tasks.append(task)

        # close() ran while the read was blocked; leases expire and redeliver
        if self._closed:
            raise QueueClosed()

        self._buffer.extend(tasks)

    async def _reclaim_expired(self) -> List[URLTask]:
        """Take over leases that have been idle for longer than ack_wait."""
        try:
            response = await self.redis_client.xautoclaim(
                self.stream,
                self.group,
                self.consumer,
                min_idle_time=int(self.ack_wait * 1000),
                start_id=self._reclaim_cursor,
                count=self.prefetch
            )
        except RedisError as e:
            raise BrokerUnavailable(f"failed to reclaim leases on {self.stream}: {e}") from e

        self._reclaim_cursor = _decode(response[0])
        entries = [(message_id, fields) for message_id, fields in response[1] if fields]
        if not entries:
            return []

        delivery_counts = await self._delivery_counts([message_id for message_id, _ in entries])

        tasks = []
        for message_id, fields in entries:
            message_id = _decode(message_id)
            delivery_count = delivery_counts.get(message_id, 2)
            if delivery_count > self.max_deliver:
                self.logger.warning(
                    f"Dropping task {message_id} after {delivery_count - 1} deliveries "
                    f"(max_deliver={self.max_deliver})"
                )
                await self._remove(message_id)
                continue

            task = await self._to_task(message_id, fields, delivery_count=delivery_count)
            if task:
                tasks.append(task)

        if tasks:
            self.logger.info(f"Reclaimed {len(tasks)} expired or rejected tasks")
        return tasks

    async def _delivery_counts(self, message_ids) -> Dict[str, int]:
        try:
            async with self.redis_client.pipeline(transaction=False) as pipe:
                for message_id in message_ids:
                    pipe.xpending_range(self.stream, self.group, message_id, message_id, 1)
                results = await pipe.execute()
        except RedisError as e:
            raise BrokerUnavailable(f"failed to read delivery counts on {self.stream}: {e}") from e

        counts = {}
        for pending in results:
            for info in pending:
                counts[_decode(info['message_id'])] = int(info['times_delivered'])
        return counts

    async def _to_task(self, message_id, fields, delivery_count: int) -> Optional[URLTask]:
        message_id = _decode(message_id)
        fields = {_decode(key): value for key, value in fields.items()}
        try:
            url = _decode(fields['data'])
            subject = _decode(fields.get('subject', b''))
            if subject.startswith(SUBJECT_PREFIX):
                domain = subject[len(SUBJECT_PREFIX):]
            else:
                domain = get_domain(url)
        except (KeyError, UnicodeDecodeError, InvalidTarget) as e:
            self.logger.warning(f"Discarding malformed task {message_id}: {e}")
            await self._remove(message_id)
            return None

        return URLTask(url=url, domain=domain, message_id=message_id, delivery_count=delivery_count)

    # Settlement

    async def _remove(self, message_id: str):
        try:
            async with self.redis_client.pipeline(transaction=False) as pipe:
                pipe.xack(self.stream, self.group, message_id)
                pipe.xdel(self.stream, message_id)
                await pipe.execute()
        except RedisError as e:
            raise BrokerUnavailable(f"failed to ack {message_id}: {e}") from e

    async def ack(self, task: URLTask):
        """Remove a task for good. Acking a settled task does nothing."""
        self._ensure_open()
        if task.settled:
            return
        await self._remove(task.message_id)
        task.settled = True
        self.logger.debug(f"Acked {task.url}")

    async def nak(self, task: URLTask, delay: float = 0.0):
        """
        Hand a task back for redelivery after ``delay`` seconds.

        The lease's idle time is pushed forward so the next reclaim picks it
        up; the delivery counter is left for the reclaim to bump.
        """
        self._ensure_open()
        if task.settled:
            return
        idle_ms = max(0, int((self.ack_wait - delay) * 1000))
        try:
            await self.redis_client.xclaim(
                self.stream,
                self.group,
                self.consumer,
                min_idle_time=0,
                message_ids=[task.message_id],
                idle=idle_ms,
                justid=True
            )
        except RedisError as e:
            raise BrokerUnavailable(f"failed to nak {task.message_id}: {e}") from e
        task.settled = True
        self.logger.debug(f"Nak'd {task.url} (delivery {task.delivery_count})")

    # Introspection

    async def size(self) -> int:
        """Entries not yet acked, leased ones included."""
        self._ensure_open()
        try:
            return int(await self.redis_client.xlen(self.stream))
        except RedisError as e:
            raise BrokerUnavailable(f"failed to read size of {self.stream}: {e}") from e

    async def empty(self) -> bool:
        return await self.size() == 0

    async def healthy(self) -> bool:
        """Connectivity probe. Never raises."""
        if self._closed:
            return False
        try:
            await self.redis_client.ping()
            return True
        except (RedisError, OSError) as e:
            self.logger.debug(f"Health probe failed: {e}")
            return False

    async def close(self):
        """Release buffered leases and close the Redis connection."""
        if self._closed:
            return

        buffered = list(self._buffer)
        self._buffer.clear()
        for task in buffered:
            try:
                await self.nak(task)
            except BrokerUnavailable as e:
                self.logger.warning(f"Could not release buffered task {task.url}: {e}")

        self._closed = True
        try:
            await self.redis_client.aclose()
        except RedisError as e:
            self.logger.error(f"Error closing Redis connection: {e}")

        self.logger.info(f"Work queue closed ({len(buffered)} buffered tasks released)")
