"""
Shared test doubles: an in-memory Redis stream client and crawl
collaborators.
"""

import asyncio
from collections import OrderedDict

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError

from distcrawl.crawler.work_queue import WorkQueue


def _text(value):
    return value.decode('utf-8') if isinstance(value, bytes) else str(value)


def _seq(message_id):
    return int(_text(message_id).split('-')[0])


class FakePipeline:
    """Buffers commands and runs them against the fake client on execute."""

    def __init__(self, client):
        self.client = client
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.commands = []

    def __getattr__(self, name):
        method = getattr(self.client, name)

        def buffer(*args, **kwargs):
            self.commands.append((method, args, kwargs))
            return self

        return buffer

    async def execute(self, raise_on_error=True):
        results = []
        for method, args, kwargs in self.commands:
            try:
                results.append(await method(*args, **kwargs))
            except RedisError as e:
                if raise_on_error:
                    raise
                results.append(e)
        self.commands = []
        return results


class FakeRedis:
    """
    In-memory stand-in for the subset of ``redis.asyncio.Redis`` used by the
    work queue: streams, consumer groups and their pending entry lists.

    Time only moves through ``advance`` so lease expiry is deterministic.
    """

    def __init__(self):
        self.streams = {}
        self.groups = {}
        self.sets = {}
        self.clock_ms = 0
        self.next_seq = 0
        self.down = False
        self.closed = False
        self.fail_xadd_for = set()
        self.acked = []

    def advance(self, seconds):
        self.clock_ms += int(seconds * 1000)

    def _check(self):
        if self.down:
            raise RedisConnectionError("Connection refused")

    def _group(self, name, groupname):
        key = (_text(name), _text(groupname))
        if key not in self.groups:
            raise ResponseError("NOGROUP No such key or consumer group")
        return self.groups[key]

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        self.closed = True

    async def xgroup_create(self, name, groupname, id='$', mkstream=False):
        self._check()
        name = _text(name)
        if name not in self.streams:
            if not mkstream:
                raise ResponseError("ERR The XGROUP subcommand requires the key to exist")
            self.streams[name] = OrderedDict()
        key = (name, _text(groupname))
        if key in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.groups[key] = {'last': 0, 'pel': {}}
        return True

    async def xadd(self, name, fields, id='*'):
        self._check()
        encoded = {
            _text(k).encode('utf-8'): v if isinstance(v, bytes) else str(v).encode('utf-8')
            for k, v in fields.items()
        }
        if _text(encoded.get(b'data', b'')) in self.fail_xadd_for:
            raise ResponseError("OOM command not allowed when used memory > 'maxmemory'")
        self.next_seq += 1
        message_id = f"{self.next_seq}-0"
        self.streams.setdefault(_text(name), OrderedDict())[message_id] = encoded
        return message_id.encode('utf-8')

    async def xlen(self, name):
        self._check()
        return len(self.streams.get(_text(name), {}))

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None, noack=False):
        self._check()
        response = []
        for name in streams:
            group = self._group(name, groupname)
            entries = []
            for message_id, fields in self.streams[_text(name)].items():
                if _seq(message_id) <= group['last']:
                    continue
                if count is not None and len(entries) >= count:
                    break
                group['last'] = _seq(message_id)
                group['pel'][message_id] = {
                    'consumer': _text(consumername),
                    'delivered_at': self.clock_ms,
                    'count': 1,
                }
                entries.append((message_id.encode('utf-8'), dict(fields)))
            if entries:
                response.append([_text(name).encode('utf-8'), entries])

        if not response and block:
            await asyncio.sleep(0.001)
        return response

    async def xautoclaim(self, name, groupname, consumername, min_idle_time,
                         start_id='0-0', count=None, justid=False):
        self._check()
        group = self._group(name, groupname)
        stream = self.streams[_text(name)]
        claimed = []
        for message_id in sorted(group['pel'], key=_seq):
            if _seq(message_id) < _seq(start_id):
                continue
            if count is not None and len(claimed) >= count:
                break
            lease = group['pel'][message_id]
            if self.clock_ms - lease['delivered_at'] < min_idle_time:
                continue
            lease['consumer'] = _text(consumername)
            lease['delivered_at'] = self.clock_ms
            lease['count'] += 1
            fields = stream.get(message_id)
            claimed.append((message_id.encode('utf-8'), dict(fields) if fields else None))
        return [b'0-0', claimed, []]

    async def xpending_range(self, name, groupname, min, max, count, consumername=None, idle=None):
        self._check()
        group = self._group(name, groupname)
        pending = []
        for message_id in sorted(group['pel'], key=_seq):
            if not _seq(min) <= _seq(message_id) <= _seq(max):
                continue
            lease = group['pel'][message_id]
            pending.append({
                'message_id': message_id.encode('utf-8'),
                'consumer': lease['consumer'].encode('utf-8'),
                'time_since_delivered': self.clock_ms - lease['delivered_at'],
                'times_delivered': lease['count'],
            })
        return pending[:count]

    async def xclaim(self, name, groupname, consumername, min_idle_time, message_ids,
                     idle=None, time=None, retrycount=None, force=False, justid=False):
        self._check()
        group = self._group(name, groupname)
        claimed = []
        for message_id in message_ids:
            message_id = _text(message_id)
            lease = group['pel'].get(message_id)
            if lease is None or self.clock_ms - lease['delivered_at'] < min_idle_time:
                continue
            lease['consumer'] = _text(consumername)
            lease['delivered_at'] = self.clock_ms - idle if idle is not None else self.clock_ms
            if not justid:
                lease['count'] += 1
            claimed.append(message_id.encode('utf-8'))
        return claimed

    async def xack(self, name, groupname, *message_ids):
        self._check()
        group = self._group(name, groupname)
        removed = 0
        for message_id in message_ids:
            if group['pel'].pop(_text(message_id), None) is not None:
                removed += 1
                self.acked.append(_text(message_id))
        return removed

    async def xdel(self, name, *message_ids):
        self._check()
        stream = self.streams.get(_text(name), {})
        return sum(1 for message_id in message_ids if stream.pop(_text(message_id), None) is not None)

    async def sadd(self, name, *values):
        self._check()
        members = self.sets.setdefault(_text(name), set())
        added = 0
        for value in values:
            if value not in members:
                members.add(value)
                added += 1
        return added

    async def srem(self, name, *values):
        self._check()
        members = self.sets.get(_text(name), set())
        removed = 0
        for value in values:
            if value in members:
                members.discard(value)
                removed += 1
        return removed

    async def delete(self, *names):
        self._check()
        return sum(1 for name in names if self.sets.pop(_text(name), None) is not None)

    # Helpers for assertions

    def pending_count(self, stream="CRAWL_QUEUE", group="crawler-worker"):
        return len(self.groups[(stream, group)]['pel'])

    def stream_urls(self, stream="CRAWL_QUEUE"):
        return [_text(fields[b'data']) for fields in self.streams.get(stream, {}).values()]


class FakeFetcher:
    """Serves canned bodies and records concurrency."""

    def __init__(self, pages=None, errors=None, delay=0.0, on_fetch=None):
        self.pages = pages or {}
        self.errors = errors or {}
        self.delay = delay
        self.on_fetch = on_fetch
        self.fetched = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, url):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            self.fetched.append(url)
            if self.on_fetch is not None:
                self.on_fetch(url)
            if url in self.errors:
                raise self.errors[url]
            return self.pages.get(url, b"<html><body>no links</body></html>")
        finally:
            self.active -= 1


class RecordingStats:
    """Collects emitted progress events in order."""

    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)


def html_with_links(*hrefs):
    anchors = "".join(f'<a href="{href}">link</a>' for href in hrefs)
    return f"<html><body>{anchors}</body></html>".encode('utf-8')


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_queue(fake_redis):
    """Factory for initialized work queues sharing one fake Redis."""

    async def factory(consumer="consumer-1", **kwargs):
        options = dict(prefetch=10, ack_wait=60.0, max_deliver=5, block_ms=10, reclaim_interval=0)
        options.update(kwargs)
        queue = WorkQueue(fake_redis, consumer=consumer, **options)
        await queue.initialize()
        return queue

    return factory
