# apps/backend/services/keepalive/keepalive.py

from __future__ import annotations

import asyncio
import logging
import math
import os
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

import httpx
from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

log = logging.getLogger("keepalive")

# --------------------------------------------------------
# Defaults
# --------------------------------------------------------

DEFAULT_PRIMARY_INTERVAL_MS = 30000
DEFAULT_SECONDARY_INTERVAL_MS = 45000
DEFAULT_TERTIARY_INTERVAL_MS = 20000
MIN_INTERVAL_MS = 1000

DEFAULT_ENDPOINTS = ["/api/status", "/api/health"]
DEFAULT_EXTERNAL_ENDPOINTS = [
    "https://www.google.com/generate_204",
    "https://www.cloudflare.com/cdn-cgi/trace",
]

INTERNAL_TIMEOUT_SECONDS = 5.0
EXTERNAL_TIMEOUT_SECONDS = 10.0

# Boot stagger so the first external burst and heartbeat don't collide
EXTERNAL_STAGGER_MS = 5000
ACTIVITY_STAGGER_MS = 10000

OK = "ok"
BAD_STATUS = "bad_status"
TIMEOUT = "timeout"
NETWORK_ERROR = "network_error"
SETUP_ERROR = "setup_error"


class PingSetupError(Exception):
    pass


@dataclass(frozen=True)
class PingResult:
    """
    Outcome of a single keep-alive request.
    """
    target: str
    kind: str                       # "internal" | "external"
    outcome: str                    # ok / bad_status / timeout / network_error / setup_error
    status_code: Optional[int] = None
    duration_ms: Optional[int] = None
    detail: Optional[str] = None
    at: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == OK

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def derive_intervals(primary_ms: int) -> tuple[int, int, int]:
    """
    Returns (primary, secondary, tertiary) for a primary cadence.
    Secondary runs at 1.5x and tertiary at 0.67x of the primary.
    """
    return primary_ms, round_half_up(primary_ms * 1.5), round_half_up(primary_ms * 0.67)


def is_internal_success(status_code: Optional[int]) -> bool:
    return status_code == 200


def is_external_success(status_code: Optional[int]) -> bool:
    return status_code is not None and 200 <= status_code < 400


def internal_target() -> tuple[str, int]:
    """
    Host/port of our own process, read from env on every ping cycle.
    """
    hostname = os.getenv("HOST") or "localhost"
    raw_port = os.getenv("PORT") or "8000"
    try:
        port = int(raw_port)
    except ValueError:
        raise PingSetupError(f"Invalid PORT value: {raw_port!r}")
    return hostname, port


def build_internal_url(hostname: str, port: int, endpoint: str) -> httpx.URL:
    path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
    try:
        return httpx.URL(f"http://{hostname}:{port}{path}")
    except httpx.InvalidURL as e:
        raise PingSetupError(f"Invalid internal endpoint {endpoint!r}: {e}")


def resolve_external_url(endpoint: str) -> httpx.URL:
    """
    Parses an external URL. The scheme picks TLS or plain HTTP, and the
    port defaults to 443 or 80 accordingly.
    """
    try:
        url = httpx.URL(endpoint)
    except httpx.InvalidURL as e:
        raise PingSetupError(f"Invalid external endpoint {endpoint!r}: {e}")

    if url.scheme not in ("http", "https") or not url.host:
        raise PingSetupError(f"Invalid external endpoint {endpoint!r}: expected an absolute http(s) URL")

    return url


def _now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


class KeepAliveScheduler:
    """
    Keeps the host process looking busy.

    Three independent recurring jobs run on an asyncio APScheduler:
      - primary:   internal pings against our own HTTP server
      - secondary: external pings against third-party endpoints
      - tertiary:  heartbeat log line, no network

    Every tick spawns one task per endpoint and returns at once. Nothing
    joins those tasks, and stop() leaves already-dispatched requests alone.
    """

    def __init__(
        self,
        scheduler: Optional[AsyncIOScheduler] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or AsyncIOScheduler()
        self.transport = transport

        self.interval_primary: Optional[Job] = None
        self.interval_secondary: Optional[Job] = None
        self.interval_tertiary: Optional[Job] = None

        self.primary_interval_ms = DEFAULT_PRIMARY_INTERVAL_MS
        self.secondary_interval_ms = DEFAULT_SECONDARY_INTERVAL_MS
        self.tertiary_interval_ms = DEFAULT_TERTIARY_INTERVAL_MS

        self.endpoints: List[str] = list(DEFAULT_ENDPOINTS)
        self.external_endpoints: List[str] = list(DEFAULT_EXTERNAL_ENDPOINTS)

        self.last_results: Dict[str, PingResult] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._created = time.monotonic()

    # ---------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------
    @property
    def running(self) -> bool:
        return self.interval_primary is not None

    def start(self) -> None:
        if self.running:
            log.warning("Keep-alive mechanism is already running")
            return

        log.info(
            f"Starting enhanced keep-alive mechanism with primary interval: {self.primary_interval_ms}ms"
        )

        try:
            asyncio.get_running_loop()
            if not self.scheduler.running:
                self.scheduler.start()
        except RuntimeError as e:
            log.error(f"Error starting keep-alive scheduler: {e}")
            return

        self.interval_primary = self._add_recurring(
            self.ping_internal, self.primary_interval_ms, "keepalive_internal"
        )
        self.interval_secondary = self._add_recurring(
            self.ping_external, self.secondary_interval_ms, "keepalive_external"
        )
        self.interval_tertiary = self._add_recurring(
            self.perform_activity_log, self.tertiary_interval_ms, "keepalive_activity"
        )

        # Tick 0: internal right away, the rest staggered
        self.ping_internal()
        self._add_once(self.ping_external, EXTERNAL_STAGGER_MS)
        self._add_once(self.perform_activity_log, ACTIVITY_STAGGER_MS)

        log.info("Enhanced keep-alive mechanism started")

    def stop(self) -> None:
        log.info("Stopping enhanced keep-alive mechanism")

        if self.interval_primary is not None:
            self._remove_job(self.interval_primary)
            self.interval_primary = None

        if self.interval_secondary is not None:
            self._remove_job(self.interval_secondary)
            self.interval_secondary = None

        if self.interval_tertiary is not None:
            self._remove_job(self.interval_tertiary)
            self.interval_tertiary = None

        log.info("Enhanced keep-alive mechanism stopped")

    def shutdown(self) -> None:
        self.stop()
        if self._owns_scheduler and self.scheduler.running:
            # Shutdown may be deferred to the loop, so only ever request it once
            self._owns_scheduler = False
            self.scheduler.shutdown(wait=False)

    async def wait_idle(self) -> None:
        """
        Waits for every request dispatched so far. The tick loop never calls this.
        """
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    # ---------------------------------------------------------
    # Configuration
    # ---------------------------------------------------------
    def set_interval(self, ms: int) -> None:
        if ms < MIN_INTERVAL_MS:
            log.warning(f"Keep-alive interval too short: {ms}ms, using {MIN_INTERVAL_MS}ms instead")
            ms = MIN_INTERVAL_MS

        (
            self.primary_interval_ms,
            self.secondary_interval_ms,
            self.tertiary_interval_ms,
        ) = derive_intervals(ms)

        # Jobs can't be retimed in place here, rebuild them
        if self.running:
            self.stop()
            self.start()

        log.info(
            f"Keep-alive intervals set to: primary={self.primary_interval_ms}ms, "
            f"secondary={self.secondary_interval_ms}ms, tertiary={self.tertiary_interval_ms}ms"
        )

    def set_endpoints(self, endpoints: List[str]) -> None:
        self.endpoints = list(endpoints)
        log.info(f"Keep-alive endpoints set to: {', '.join(self.endpoints)}")

    def set_external_endpoints(self, endpoints: List[str]) -> None:
        self.external_endpoints = list(endpoints)
        log.info(f"External keep-alive endpoints set to: {', '.join(self.external_endpoints)}")

    def intervals(self) -> Dict[str, int]:
        return {
            "primary_ms": self.primary_interval_ms,
            "secondary_ms": self.secondary_interval_ms,
            "tertiary_ms": self.tertiary_interval_ms,
        }

    def snapshot(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "intervals": self.intervals(),
            "endpoints": list(self.endpoints),
            "external_endpoints": list(self.external_endpoints),
            "in_flight": len(self._in_flight),
            "last_results": {k: v.to_dict() for k, v in self.last_results.items()},
        }

    # ---------------------------------------------------------
    # Actions
    # ---------------------------------------------------------
    def ping_internal(self) -> None:
        log.debug("Performing internal keep-alive ping")

        for endpoint in list(self.endpoints):
            self._spawn(self._ping_internal_endpoint(endpoint), endpoint, "internal")

    def ping_external(self) -> None:
        if not self.external_endpoints:
            return

        log.debug("Performing external keep-alive ping")

        for endpoint in list(self.external_endpoints):
            self._spawn(self._ping_external_endpoint(endpoint), endpoint, "external")

    def perform_activity_log(self) -> None:
        uptime = int(time.monotonic() - self._created)
        active = sum(
            1 for job in (self.interval_primary, self.interval_secondary, self.interval_tertiary)
            if job is not None
        )
        log.info(
            f"Keep-alive heartbeat: uptime={uptime}s, active_timers={active}, "
            f"in_flight_requests={len(self._in_flight)}"
        )

    # ---------------------------------------------------------
    # Request coroutines
    # ---------------------------------------------------------
    async def _ping_internal_endpoint(self, endpoint: str) -> PingResult:
        try:
            hostname, port = internal_target()
            url = build_internal_url(hostname, port, endpoint)
        except PingSetupError as e:
            log.error(f"Error setting up internal ping request: {e}")
            return self._record(PingResult(endpoint, "internal", SETUP_ERROR, detail=str(e), at=_now_iso()))

        start = time.monotonic()
        try:
            # Our own host, never via an env-configured proxy
            async with self._client(INTERNAL_TIMEOUT_SECONDS, trust_env=False) as client:
                res = await client.get(url)
        except httpx.TimeoutException:
            log.warning(f"Internal keep-alive ping to {endpoint} timed out")
            return self._record(
                PingResult(endpoint, "internal", TIMEOUT, duration_ms=_elapsed_ms(start), at=_now_iso())
            )
        except httpx.TransportError as e:
            log.error(f"Internal keep-alive ping to {endpoint} failed: {_describe(e)}")
            return self._record(
                PingResult(endpoint, "internal", NETWORK_ERROR, detail=_describe(e), at=_now_iso())
            )
        except Exception as e:
            log.error(f"Error setting up internal ping request: {e}")
            return self._record(PingResult(endpoint, "internal", SETUP_ERROR, detail=str(e), at=_now_iso()))

        duration = _elapsed_ms(start)
        if is_internal_success(res.status_code):
            log.debug(f"Internal keep-alive ping to {endpoint} successful ({duration}ms)")
            outcome = OK
        else:
            log.warning(
                f"Internal keep-alive ping to {endpoint} returned status {res.status_code} ({duration}ms)"
            )
            outcome = BAD_STATUS

        return self._record(
            PingResult(endpoint, "internal", outcome, res.status_code, duration, at=_now_iso())
        )

    async def _ping_external_endpoint(self, endpoint: str) -> PingResult:
        try:
            url = resolve_external_url(endpoint)
        except PingSetupError as e:
            log.error(f"Error setting up external ping request: {e}")
            return self._record(PingResult(endpoint, "external", SETUP_ERROR, detail=str(e), at=_now_iso()))

        start = time.monotonic()
        try:
            async with self._client(EXTERNAL_TIMEOUT_SECONDS) as client:
                res = await client.get(url)
        except httpx.TimeoutException:
            log.warning(f"External keep-alive ping to {endpoint} timed out")
            return self._record(
                PingResult(endpoint, "external", TIMEOUT, duration_ms=_elapsed_ms(start), at=_now_iso())
            )
        except httpx.TransportError as e:
            # Third-party outages are routine, keep them out of error logs
            log.debug(f"External keep-alive ping to {endpoint} failed: {_describe(e)}")
            return self._record(
                PingResult(endpoint, "external", NETWORK_ERROR, detail=_describe(e), at=_now_iso())
            )
        except Exception as e:
            log.error(f"Error setting up external ping request: {e}")
            return self._record(PingResult(endpoint, "external", SETUP_ERROR, detail=str(e), at=_now_iso()))

        duration = _elapsed_ms(start)
        if is_external_success(res.status_code):
            log.debug(f"External keep-alive ping to {endpoint} successful ({duration}ms)")
            outcome = OK
        else:
            log.warning(
                f"External keep-alive ping to {endpoint} returned status {res.status_code} ({duration}ms)"
            )
            outcome = BAD_STATUS

        return self._record(
            PingResult(endpoint, "external", outcome, res.status_code, duration, at=_now_iso())
        )

    # ---------------------------------------------------------
    # Internals
    # ---------------------------------------------------------
    def _client(self, timeout: float, *, trust_env: bool = True) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport, trust_env=trust_env)

    def _record(self, result: PingResult) -> PingResult:
        self.last_results[result.target] = result
        return result

    def _spawn(self, coro: Coroutine[Any, Any, PingResult], endpoint: str, kind: str) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError as e:
            coro.close()
            log.error(f"Error setting up {kind} ping request for {endpoint}: {e}")
            return

        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    def _add_recurring(self, action: Callable[[], None], interval_ms: int, job_id: str) -> Job:
        return self.scheduler.add_job(
            _dispatch,
            "interval",
            args=[action],
            seconds=interval_ms / 1000,
            id=job_id,
            replace_existing=True,
        )

    def _add_once(self, action: Callable[[], None], delay_ms: int) -> Job:
        return self.scheduler.add_job(
            _dispatch,
            "date",
            args=[action],
            run_date=datetime.now() + timedelta(milliseconds=delay_ms),
        )

    def _remove_job(self, job: Job) -> None:
        try:
            job.remove()
        except JobLookupError as e:
            log.debug(f"Keep-alive job {job.id} already gone: {e}")


async def _dispatch(action: Callable[[], None]) -> None:
    # Runs on the event loop so the action can spawn request tasks
    action()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _describe(e: Exception) -> str:
    return str(e) or e.__class__.__name__
