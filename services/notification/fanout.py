"""
services/notification/fanout.py
Best-effort realtime push keyed by user id.

publish() never raises: a missing session, a Redis outage or a slow
socket is logged, counted and dropped. The Notification row is the
durable copy clients reconcile against.

Backends:
  redis  - PUBLISH on <prefix>:<user_id>; every API instance runs a
           FanoutListener that forwards into its own SessionRegistry.
  local  - deliver straight into this process's SessionRegistry.
"""

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Set, Union

from prometheus_client import Counter

from config.settings import settings

logger = logging.getLogger(__name__)

PUSH_FAILURES = Counter(
    "realtime_push_failures_total",
    "Realtime pushes that failed or timed out",
    ["kind"],
)

EVENT_KINDS = frozenset({
    "new_booking",
    "booking_completed",
    "booking_status_updated",
    "review_added",
    "notification",
})

UserKey = Union[uuid.UUID, str]


@dataclass
class RealtimeEvent:
    user_id: UserKey
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown realtime event kind: {self.kind}")


def _envelope(kind: str, payload: dict) -> dict:
    return {"event": kind, "data": payload}


class SessionRegistry:
    """Live sessions of this process, grouped by user id."""

    def __init__(self):
        self._sessions: Dict[str, Set[Any]] = defaultdict(set)

    def add(self, user_id: UserKey, session) -> None:
        self._sessions[str(user_id)].add(session)

    def remove(self, user_id: UserKey, session) -> None:
        key = str(user_id)
        sessions = self._sessions.get(key)
        if not sessions:
            return
        sessions.discard(session)
        if not sessions:
            del self._sessions[key]

    def count(self, user_id: UserKey) -> int:
        return len(self._sessions.get(str(user_id), ()))

    async def deliver(self, user_id: UserKey, message: dict) -> int:
        """Send to every session of user_id. Returns how many accepted it."""
        delivered = 0
        for session in list(self._sessions.get(str(user_id), ())):
            try:
                await session.send_json(message)
                delivered += 1
            except Exception:
                logger.warning(
                    "Dropping realtime session after failed send",
                    extra={"user_id": str(user_id)},
                    exc_info=True,
                )
                self.remove(user_id, session)
        return delivered


class RealtimeFanout:
    """The Publish(user_id, kind, payload) capability used by the dispatch layer."""

    def __init__(
        self,
        registry: SessionRegistry,
        backend: str = "local",
        redis=None,
        timeout: float = 2.0,
        channel_prefix: str = "user_events",
    ):
        self.registry = registry
        self.backend = backend
        self.timeout = timeout
        self.channel_prefix = channel_prefix
        self._redis = redis

    def channel_for(self, user_id: UserKey) -> str:
        return f"{self.channel_prefix}:{user_id}"

    async def _send(self, user_id: UserKey, message: dict) -> None:
        if self.backend == "redis":
            redis = self._redis
            if redis is None:
                from config.redis_client import get_redis
                redis = get_redis()
            await redis.publish(self.channel_for(user_id), json.dumps(message, default=str))
        else:
            await self.registry.deliver(user_id, message)

    async def publish(self, user_id: UserKey, kind: str, payload: Optional[dict] = None) -> bool:
        """Push one event. Returns False on failure; never raises."""
        message = _envelope(kind, payload or {})
        try:
            await asyncio.wait_for(self._send(user_id, message), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "Realtime push timed out",
                extra={"user_id": str(user_id), "kind": kind, "timeout": self.timeout},
            )
        except Exception:
            logger.warning(
                "Realtime push failed",
                extra={"user_id": str(user_id), "kind": kind},
                exc_info=True,
            )
        PUSH_FAILURES.labels(kind=kind).inc()
        return False

    async def deliver_all(self, events: Iterable[RealtimeEvent]) -> int:
        """Publish a batch collected during a committed request. Returns successes."""
        sent = 0
        for event in events:
            if await self.publish(event.user_id, event.kind, event.payload):
                sent += 1
        return sent


class FanoutListener:
    """Forwards Redis pub/sub messages into this process's SessionRegistry."""

    def __init__(self, redis, registry: SessionRegistry, channel_prefix: str):
        self.redis = redis
        self.registry = registry
        self.channel_prefix = channel_prefix
        self._task: Optional[asyncio.Task] = None

    def _user_key(self, channel: str) -> str:
        return channel[len(self.channel_prefix) + 1:]

    async def _handle(self, message: dict) -> None:
        if message.get("type") != "pmessage":
            return
        try:
            body = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("Discarding malformed realtime message", extra={"channel": message.get("channel")})
            return
        await self.registry.deliver(self._user_key(message["channel"]), body)

    async def _run(self) -> None:
        pattern = f"{self.channel_prefix}:*"
        while True:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.psubscribe(pattern)
                logger.info("Realtime listener subscribed", extra={"pattern": pattern})
                async for message in pubsub.listen():
                    await self._handle(message)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Realtime listener lost Redis, resubscribing", exc_info=True)
                await asyncio.sleep(1)
            finally:
                await pubsub.aclose()

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Realtime listener stopped")


# ── Process-wide instances ────────────────────────────────────
session_registry = SessionRegistry()
realtime_fanout = RealtimeFanout(
    session_registry,
    backend=settings.FANOUT_BACKEND,
    timeout=settings.FANOUT_TIMEOUT_SECONDS,
    channel_prefix=settings.FANOUT_CHANNEL_PREFIX,
)


def get_fanout() -> RealtimeFanout:
    """FastAPI dependency for the realtime publisher."""
    return realtime_fanout
