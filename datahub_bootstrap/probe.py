"""Dependency readiness probing: DNS, TCP and HTTP health checks with bounded retry."""
import enum
import logging
import socket
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import httpx

from .connection import EndpointDescriptor
from .constants import (
    DEFAULT_CHECK_TIMEOUT,
    DEFAULT_PROBE_WORKERS,
    DEFAULT_WAIT_ATTEMPTS,
    DEFAULT_WAIT_INTERVAL,
    PROGRESS_LOG_EVERY,
)
from .errors import DependencyUnreachable

logger = logging.getLogger(__name__)


class CheckKind(str, enum.Enum):
    DNS = "dns"
    TCP = "tcp"
    HTTP = "http"


class ProbeState(str, enum.Enum):
    PENDING = "pending"
    PROBING = "probing"
    READY = "ready"
    EXHAUSTED = "exhausted"


class CheckFailed(Exception):
    """A single check attempt did not succeed."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_WAIT_ATTEMPTS
    interval: float = DEFAULT_WAIT_INTERVAL
    check_timeout: float = DEFAULT_CHECK_TIMEOUT

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")
        if self.check_timeout <= 0:
            raise ValueError("check_timeout must be > 0")

    @property
    def ceiling(self) -> float:
        return self.max_attempts * self.interval


@dataclass(frozen=True)
class DependencyTarget:
    name: str
    descriptor: EndpointDescriptor
    kind: CheckKind = CheckKind.TCP
    required: bool = True
    policy: RetryPolicy = RetryPolicy()
    health_path: str | None = None
    secondary_path: str | None = None
    depends_on: str | None = None

    def url_for(self, path: str | None) -> str:
        base = f"{self.descriptor.scheme}://{self.descriptor.host_port}"
        if self.descriptor.path:
            base += "/" + self.descriptor.path.strip("/")
        if not path:
            return base
        return base + "/" + path.lstrip("/")

    @property
    def health_url(self) -> str:
        return self.url_for(self.health_path)

    @property
    def secondary_url(self) -> str | None:
        if not self.secondary_path:
            return None
        return self.url_for(self.secondary_path)

    def describe(self) -> str:
        if self.kind == CheckKind.HTTP:
            return self.health_url
        if self.kind == CheckKind.DNS:
            return self.descriptor.host
        return self.descriptor.host_port


@dataclass(frozen=True)
class ProbeResult:
    name: str
    state: ProbeState
    attempts: int = 0
    elapsed: float = 0.0
    required: bool = True
    last_error: str | None = None

    @property
    def ready(self) -> bool:
        return self.state == ProbeState.READY


def check_dns(host: str, timeout: float = DEFAULT_CHECK_TIMEOUT):
    """Resolve ``host``, giving up after ``timeout`` seconds.

    getaddrinfo has no timeout of its own, so the lookup runs on a
    throwaway worker thread that is abandoned if it hangs.
    """
    resolver = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dns")
    try:
        future = resolver.submit(socket.getaddrinfo, host, None)
        future.result(timeout=timeout)
    except FutureTimeout as exc:
        raise CheckFailed(f"DNS resolution for {host} timed out after {timeout:.1f}s") from exc
    except (OSError, UnicodeError) as exc:
        raise CheckFailed(f"DNS resolution failed for {host}: {exc}") from exc
    finally:
        resolver.shutdown(wait=False)


def check_tcp(host: str, port: int, timeout: float):
    started = time.monotonic()
    check_dns(host, timeout)
    remaining = max(timeout - (time.monotonic() - started), 0.1)
    try:
        with socket.create_connection((host, port), timeout=remaining):
            pass
    except (OSError, UnicodeError) as exc:
        raise CheckFailed(f"TCP connect to {host}:{port} failed: {exc}") from exc


def check_http(url: str, timeout: float):
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise CheckFailed(f"GET {url} failed: {exc}") from exc
    if response.status_code >= 400:
        raise CheckFailed(f"GET {url} returned HTTP {response.status_code}")


def run_check(target: DependencyTarget):
    """Run one check attempt for ``target``; raises CheckFailed on failure.

    Composite HTTP targets only pass when the primary and the secondary
    endpoint both answer within the same attempt.
    """
    timeout = target.policy.check_timeout
    if target.kind == CheckKind.DNS:
        check_dns(target.descriptor.host, timeout)
    elif target.kind == CheckKind.TCP:
        check_tcp(target.descriptor.host, target.descriptor.port, timeout)
    elif target.kind == CheckKind.HTTP:
        started = time.monotonic()
        check_http(target.health_url, timeout)
        if target.secondary_url:
            # Both requests share one attempt's timeout
            remaining = max(timeout - (time.monotonic() - started), 0.1)
            try:
                check_http(target.secondary_url, remaining)
            except CheckFailed as exc:
                raise CheckFailed(f"primary ready but secondary signal not ready: {exc}") from exc
    else:
        raise ValueError(f"Unknown check kind {target.kind!r}")


def wait_for(
    target: DependencyTarget,
    sleep: Optional[Callable[[float], None]] = None,
    clock: Optional[Callable[[], float]] = None,
) -> ProbeResult:
    """Poll ``target`` until it is ready or its attempt budget is exhausted."""
    sleep = sleep or time.sleep
    clock = clock or time.monotonic
    policy = target.policy
    started = clock()
    logger.info(
        "Waiting for %s at %s (%s check, %s, max wait: %.0f minutes)...",
        target.name, target.describe(), target.kind.value,
        "required" if target.required else "optional",
        policy.ceiling / 60,
    )

    deadline = started + policy.ceiling
    attempt = 0
    last_error = None
    while True:
        attempt += 1
        attempt_started = clock()
        try:
            run_check(target)
        except CheckFailed as exc:
            last_error = str(exc)
            logger.debug("%s attempt %d/%d failed: %s", target.name, attempt, policy.max_attempts, exc)
        else:
            elapsed = clock() - started
            logger.info("%s is ready after %d attempt(s) (%.0fs)", target.name, attempt, elapsed)
            return ProbeResult(target.name, ProbeState.READY, attempt, elapsed, target.required)

        now = clock()
        if attempt >= policy.max_attempts or (policy.interval > 0 and now >= deadline):
            break
        if attempt % PROGRESS_LOG_EVERY == 0:
            logger.info(
                "Still waiting for %s... (%.1f minutes elapsed, attempt %d/%d)",
                target.name, (clock() - started) / 60, attempt, policy.max_attempts,
            )
        # Interval runs from the start of the attempt and never past the deadline
        pause = min(policy.interval - (now - attempt_started), deadline - now)
        if pause > 0:
            sleep(pause)

    elapsed = clock() - started
    return ProbeResult(target.name, ProbeState.EXHAUSTED, attempt, elapsed, target.required, last_error)


def _ordered(targets: list[DependencyTarget]) -> list[DependencyTarget]:
    """Order targets so every prerequisite is submitted before its dependents."""
    by_name = {t.name: t for t in targets}
    if len(by_name) != len(targets):
        raise ValueError("Dependency target names must be unique")
    for t in targets:
        if t.depends_on and t.depends_on not in by_name:
            raise ValueError(f"{t.name} depends on unknown target {t.depends_on}")

    ordered = []
    visiting = set()
    done = set()

    def visit(t: DependencyTarget):
        if t.name in done:
            return
        if t.name in visiting:
            raise ValueError(f"Dependency cycle detected at {t.name}")
        visiting.add(t.name)
        if t.depends_on:
            visit(by_name[t.depends_on])
        visiting.discard(t.name)
        done.add(t.name)
        ordered.append(t)

    for t in targets:
        visit(t)
    return ordered


class DependencyProber:
    """Probe independent targets concurrently on a ThreadPoolExecutor.

    Targets are submitted prerequisites-first, so a dependent task that blocks
    on its prerequisite's future never starves the pool. Each target owns
    exactly one result slot, filled once by its future.
    """

    def __init__(
        self,
        max_workers: int = DEFAULT_PROBE_WORKERS,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._max_workers = max_workers
        self._sleep = sleep or time.sleep
        self._clock = clock or time.monotonic

    def _probe(self, target: DependencyTarget, prerequisite: Optional[Future]) -> ProbeResult:
        if prerequisite is not None:
            pre = prerequisite.result()
            if not pre.ready:
                logger.warning("Not probing %s: prerequisite %s is not ready", target.name, pre.name)
                return ProbeResult(
                    target.name, ProbeState.EXHAUSTED, 0, 0.0, target.required,
                    f"prerequisite {pre.name} not ready",
                )
        return wait_for(target, sleep=self._sleep, clock=self._clock)

    def probe_all(self, targets: Iterable[DependencyTarget]) -> dict[str, ProbeResult]:
        ordered = _ordered(list(targets))
        if not ordered:
            return {}
        futures: dict[str, Future] = {}
        workers = max(1, min(self._max_workers, len(ordered)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as executor:
            for target in ordered:
                prerequisite = futures.get(target.depends_on) if target.depends_on else None
                futures[target.name] = executor.submit(self._probe, target, prerequisite)
            results = {name: fut.result() for name, fut in futures.items()}
        return results


def enforce(results: dict[str, ProbeResult]):
    """Warn about exhausted optional targets; raise for exhausted required ones.

    Raises:
        DependencyUnreachable: If any required target is exhausted
    """
    failed = []
    for result in results.values():
        if result.ready:
            continue
        if result.required:
            logger.error(
                "Required dependency %s not ready after %d attempt(s): %s",
                result.name, result.attempts, result.last_error or "unknown error",
            )
            failed.append(result)
        else:
            logger.warning(
                "Optional dependency %s not ready after %d attempt(s); continuing anyway (%s)",
                result.name, result.attempts, result.last_error or "unknown error",
            )
    if failed:
        raise DependencyUnreachable(failed)
