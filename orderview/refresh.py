"""
Projection refresh coordination.

Rebuilds named projections without making them unavailable to readers and
without running redundant concurrent rebuilds:

- In-process ticket table: a second refresh of a projection that is
  already in flight returns immediately with status "coalesced".
- Cross-process exclusion: a Redis lock keyed by a stable CRC32 of the
  projection name; if another instance holds it, the call is coalesced.
- Failure: the ticket is always cleared, the previous generation keeps
  serving, and the error is reported to operator callers only.
- Debounced write trigger: mutations are queued on a bounded queue and a
  burst inside one debounce window results in a single refresh_all().
- Staleness: the first unreflected mutation per projection is tracked so
  readers can bypass a projection that has been dirty for too long.

Usage:
    coordinator = RefreshCoordinator(store)
    result = await coordinator.refresh("enriched_order_view", trigger="manual")
    await coordinator.start_worker()
"""
import asyncio
import time
import uuid
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from orderview.cache import RedisCache, cache as default_cache
from orderview.config import RefreshConfig, config
from orderview.events import EventBus, ReadModelEvent, events as default_events
from orderview.models import MutationEvent
from orderview.observability import correlation_context, get_logger, metrics, Timer
from orderview.projections import PROJECTIONS, REFRESH_ORDER
from orderview.validators import validate_projection_name

logger = get_logger(__name__)


class RefreshStatus(str, Enum):
    """Outcome of a refresh call."""
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    COALESCED = "coalesced"


@dataclass
class RefreshTicket:
    """An in-flight rebuild of one projection."""
    projection: str
    trigger: str
    ticket_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: RefreshStatus = RefreshStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projection": self.projection,
            "ticket_id": self.ticket_id,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "status": self.status.value,
        }


def lock_name(projection: str) -> str:
    """Stable cross-process lock name for a projection."""
    return f"refresh:{zlib.crc32(projection.encode('utf-8')) & 0xFFFFFFFF}"


class RefreshCoordinator:
    """Coalescing, failure-isolated projection refreshes."""

    def __init__(
        self,
        store,
        cache: RedisCache = default_cache,
        bus: EventBus = default_events,
        settings: RefreshConfig = config.refresh,
    ):
        self.store = store
        self.cache = cache
        self.bus = bus
        self.settings = settings

        self._tickets: Dict[str, RefreshTicket] = {}
        self._last_results: Dict[str, Dict[str, Any]] = {}

        # Monotonic time of the first and latest unreflected mutation
        self._dirty_since: Dict[str, float] = {}
        self._last_mutation: Dict[str, float] = {}

        self._queue: Optional[asyncio.Queue] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._dropped_events = 0

    # ─── Refresh ─────────────────────────────────────────────────────────────

    def in_flight(self, name: str) -> Optional[RefreshTicket]:
        return self._tickets.get(name)

    async def refresh(self, name: str, trigger: str = "manual") -> Dict[str, Any]:
        """
        Rebuild one projection unless a rebuild of it is already running.

        Never raises for rebuild failures; returns status "error" instead.
        """
        validate_projection_name(name)

        running = self._tickets.get(name)
        if running is not None:
            return await self._coalesced(name, trigger, running.ticket_id, "in_flight")

        # Registered before the first await so concurrent callers see it
        ticket = RefreshTicket(projection=name, trigger=trigger)
        self._tickets[name] = ticket
        try:
            acquired, handle = await self.cache.acquire_lock(
                lock_name(name), timeout=self.settings.lock_timeout_seconds
            )
            if not acquired:
                ticket.status = RefreshStatus.COALESCED
                return await self._coalesced(name, trigger, ticket.ticket_id, "locked_elsewhere")

            try:
                return await self._rebuild(ticket)
            finally:
                await self.cache.release_lock(handle)
        finally:
            self._tickets.pop(name, None)

    async def _coalesced(
        self, name: str, trigger: str, ticket_id: str, reason: str
    ) -> Dict[str, Any]:
        metrics.increment("refresh:coalesced")
        logger.info(f"Refresh of {name} coalesced ({reason}, trigger={trigger})")
        await self.bus.emit(
            ReadModelEvent.REFRESH_COALESCED,
            {"projection": name, "trigger": trigger, "reason": reason},
        )
        return {
            "status": RefreshStatus.COALESCED.value,
            "projection": name,
            "trigger": trigger,
            "ticket_id": ticket_id,
            "reason": reason,
        }

    async def _rebuild(self, ticket: RefreshTicket) -> Dict[str, Any]:
        name = ticket.projection
        started = time.monotonic()
        await self.bus.emit(
            ReadModelEvent.REFRESH_STARTED,
            {"projection": name, "trigger": ticket.trigger, "ticket_id": ticket.ticket_id},
        )

        try:
            with Timer(f"refresh:{name}"):
                state = await self.store.rebuild_projection(name)
        except Exception as e:
            duration_ms = round((time.monotonic() - started) * 1000, 2)
            ticket.status = RefreshStatus.ERROR
            metrics.record_error("refresh_failed")
            logger.error(f"Refresh of {name} failed ({ticket.trigger}): {e}", exc_info=True)

            result = {
                "status": RefreshStatus.ERROR.value,
                "projection": name,
                "trigger": ticket.trigger,
                "ticket_id": ticket.ticket_id,
                "duration_ms": duration_ms,
                "error": str(e),
            }
            self._last_results[name] = result
            await self._audit(name, ticket.trigger, RefreshStatus.ERROR, duration_ms=duration_ms, error=str(e))
            await self.bus.emit(ReadModelEvent.REFRESH_FAILED, result)
            return result

        self._settle_dirty(name, started)
        ticket.status = RefreshStatus.SUCCESS
        metrics.increment("refresh:success")

        result = {
            "status": RefreshStatus.SUCCESS.value,
            "projection": name,
            "trigger": ticket.trigger,
            "ticket_id": ticket.ticket_id,
            "generation": state.generation,
            "row_count": state.row_count,
            "duration_ms": state.duration_ms,
        }
        self._last_results[name] = result
        await self._audit(
            name, ticket.trigger, RefreshStatus.SUCCESS,
            generation=state.generation, row_count=state.row_count, duration_ms=state.duration_ms,
        )
        await self.bus.emit(ReadModelEvent.PROJECTION_REFRESHED, result)
        return result

    async def _audit(self, name: str, trigger: str, status: RefreshStatus, **fields) -> None:
        try:
            await self.store.record_refresh(name, trigger, status.value, **fields)
        except Exception as e:
            logger.warning(f"Could not record refresh of {name}: {e}")

    async def refresh_all(self, trigger: str = "manual") -> Dict[str, Any]:
        """Refresh every projection sequentially, list projection first."""
        results = {}
        for name in REFRESH_ORDER:
            results[name] = await self.refresh(name, trigger=trigger)

        statuses = {r["status"] for r in results.values()}
        if RefreshStatus.ERROR.value in statuses:
            overall = RefreshStatus.ERROR.value
        elif statuses == {RefreshStatus.COALESCED.value}:
            overall = RefreshStatus.COALESCED.value
        else:
            overall = RefreshStatus.SUCCESS.value

        return {"status": overall, "trigger": trigger, "projections": results}

    # ─── Staleness ───────────────────────────────────────────────────────────

    def mark_dirty(self, names: Optional[Iterable[str]] = None) -> None:
        """Record an unreflected mutation against projections (default: all)."""
        now = time.monotonic()
        for name in names or PROJECTIONS:
            self._dirty_since.setdefault(name, now)
            self._last_mutation[name] = now

    def _settle_dirty(self, name: str, build_started: float) -> None:
        if name not in self._dirty_since:
            return
        if self._last_mutation.get(name, 0.0) <= build_started:
            self._dirty_since.pop(name, None)
            self._last_mutation.pop(name, None)
        else:
            # Mutations arrived mid-build; age them from the build start
            self._dirty_since[name] = build_started

    def dirty_age(self, name: str) -> Optional[float]:
        since = self._dirty_since.get(name)
        return None if since is None else time.monotonic() - since

    def is_stale(self, name: str) -> bool:
        """True when unreflected mutations are older than the staleness bound."""
        age = self.dirty_age(name)
        return age is not None and age > self.settings.max_staleness_seconds

    def is_available(self, name: str) -> bool:
        """True when a built generation exists."""
        return self.store.get_projection_state(name) is not None

    def should_serve_projection(self, name: str) -> bool:
        return self.is_available(name) and not self.is_stale(name)

    # ─── Debounced write trigger ─────────────────────────────────────────────

    @property
    def worker_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start_worker(self) -> None:
        """Start the debounced write-event worker."""
        if self.worker_running:
            return
        self._queue = asyncio.Queue(maxsize=self.settings.queue_size)
        self._worker_task = asyncio.create_task(self._worker_loop(), name="refresh-debounce")
        logger.info(
            f"Refresh worker started (debounce={self.settings.debounce_seconds}s, "
            f"queue={self.settings.queue_size})"
        )

    async def stop_worker(self) -> None:
        """Stop the worker; queued events are discarded."""
        if self._worker_task is None:
            return
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
        self._queue = None
        logger.info("Refresh worker stopped")

    def enqueue_mutation(self, event: MutationEvent) -> bool:
        """
        Queue a mutation for the debounced refresh.

        Returns:
            False when the worker is not running or the queue is full. A
            full queue already guarantees a pending refresh.
        """
        if self._queue is None or not self.worker_running:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self._dropped_events += 1
            logger.warning(f"Refresh queue full, dropped mutation on {event.table}")
            return False

    async def _collect_burst(self) -> int:
        await self._queue.get()
        burst = 1
        deadline = time.monotonic() + self.settings.debounce_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                await asyncio.wait_for(self._queue.get(), timeout=remaining)
                burst += 1
            except asyncio.TimeoutError:
                break
        while not self._queue.empty():
            self._queue.get_nowait()
            burst += 1
        return burst

    async def _worker_loop(self) -> None:
        while True:
            burst = await self._collect_burst()
            with correlation_context():
                logger.info(f"Refreshing projections after {burst} mutation(s)")
                try:
                    await self.refresh_all(trigger="write")
                except Exception as e:
                    logger.error(f"Debounced refresh failed: {e}", exc_info=True)

    # ─── Status ──────────────────────────────────────────────────────────────

    def status(self) -> Dict[str, Any]:
        """Per-projection state for operator monitoring."""
        projections = {}
        for name in PROJECTIONS:
            state = self.store.get_projection_state(name)
            ticket = self._tickets.get(name)
            age = self.dirty_age(name)
            last = self._last_results.get(name) or {}
            projections[name] = {
                "available": state is not None,
                "generation": state.generation if state else None,
                "built_at": state.built_at.isoformat() if state else None,
                "row_count": state.row_count if state else None,
                "last_duration_ms": last.get("duration_ms"),
                "last_status": last.get("status"),
                "last_error": last.get("error"),
                "stale": self.is_stale(name),
                "dirty_age_seconds": round(age, 3) if age is not None else None,
                "in_flight": ticket.to_dict() if ticket else None,
            }
        return {
            "projections": projections,
            "worker_running": self.worker_running,
            "queued_events": self._queue.qsize() if self._queue else 0,
            "dropped_events": self._dropped_events,
            "max_staleness_seconds": self.settings.max_staleness_seconds,
        }
