# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Certificate manager.

Keeps the gateway's TLS identity (active root CA plus a leaf certificate
and key for the gateway service) fresh on disk:

    FETCHING_ROOT -> FETCHING_LEAF -> WRITING -> SLEEPING -> FETCHING_ROOT

Root fetches, leaf fetches and writes each have their own consecutive
failure counter. A step that fails ``tries`` times in a row ends the loop
with ``CertRetriesExhaustedError``. The first successful write sets a
readiness event that any number of callers can wait on.
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from .ca_client import CAClient
from .config import Settings
from .errors import CertRetriesExhaustedError, CertWaitTimeoutError, FetchKind
from .metrics import (
    CERT_FETCH_FAILURES_TOTAL,
    CERT_LEAF_VALID_BEFORE,
    CERT_MANAGER_UP,
    CERT_WRITES_TOTAL,
)
from .models import CARoot, LeafCert
from .sink import (
    CLIENT_CERT_FILE,
    CLIENT_PRIVATE_KEY_FILE,
    ROOT_CA_FILE,
    CertSink,
    FileCertSink,
)

DEFAULT_CERT_DIRECTORY = "/certs"
DEFAULT_TRIES = 10
DEFAULT_BACKOFF_INTERVAL = 1.0
DEFAULT_MAX_BACKOFF_INTERVAL = 30.0
DEFAULT_MIN_RENEWAL_INTERVAL = 1.0


@dataclass
class CertManagerOptions:
    """Certificate manager configuration.

    ``tries`` is the number of consecutive failures of one kind that ends
    the loop. ``tries=0`` fails on the very first error.
    """

    directory: str = DEFAULT_CERT_DIRECTORY
    tries: int = DEFAULT_TRIES
    backoff_interval: float = DEFAULT_BACKOFF_INTERVAL
    max_backoff_interval: float = DEFAULT_MAX_BACKOFF_INTERVAL
    min_renewal_interval: float = DEFAULT_MIN_RENEWAL_INTERVAL
    root_ca_filename: str = ROOT_CA_FILE
    client_cert_filename: str = CLIENT_CERT_FILE
    client_private_key_filename: str = CLIENT_PRIVATE_KEY_FILE

    def __post_init__(self) -> None:
        if self.tries < 0:
            raise ValueError("tries must be >= 0")
        for name in ("backoff_interval", "max_backoff_interval", "min_renewal_interval"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def default(cls) -> "CertManagerOptions":
        return cls()

    @classmethod
    def from_settings(cls, settings: Settings) -> "CertManagerOptions":
        return cls(
            directory=settings.cert_directory,
            tries=settings.cert_tries,
            backoff_interval=settings.cert_backoff_seconds,
            max_backoff_interval=settings.cert_max_backoff_seconds,
            min_renewal_interval=settings.cert_min_renewal_seconds,
        )


class ManagerState(str, Enum):
    """Phase of the management loop."""

    IDLE = "idle"
    FETCHING_ROOT = "fetching_root"
    FETCHING_LEAF = "fetching_leaf"
    WRITING = "writing"
    SLEEPING = "sleeping"
    STOPPED = "stopped"
    FAILED = "failed"


class _StopRequested(Exception):
    """The stop event fired while the loop was suspended."""


def next_renewal_delay(
    valid_before: datetime,
    now: datetime | None = None,
    floor: float = DEFAULT_MIN_RENEWAL_INTERVAL,
) -> float:
    """Seconds to wait before fetching a replacement certificate.

    Renews at the halfway point of the remaining validity. Expired or
    nearly expired certificates are refreshed after ``floor`` seconds.
    """
    now = now or datetime.now(timezone.utc)
    remaining = (valid_before - now).total_seconds()
    return max(remaining / 2, floor, 0.0)


class CertManager:
    """Fetches, persists and renews the gateway's certificates.

    Usage:
        manager = CertManager(client, "api-gateway", options)
        task = asyncio.create_task(manager.manage(stop_event))
        await manager.wait_for_write(timeout=30)
    """

    def __init__(
        self,
        client: CAClient | None,
        service: str = "",
        options: CertManagerOptions | None = None,
        *,
        sink: CertSink | None = None,
        logger: Any = None,
    ):
        """Initialize the manager.

        Args:
            client: Certificate authority client
            service: Service identity the leaf certificate is issued for
            options: Manager options (defaults to CertManagerOptions.default())
            sink: Persistence target (defaults to FileCertSink on options.directory)
            logger: structlog logger (defaults to this module's logger)
        """
        self.options = options or CertManagerOptions.default()
        self.client = client
        self.service = service
        self.sink = sink or FileCertSink(
            self.options.directory,
            root_ca_filename=self.options.root_ca_filename,
            client_cert_filename=self.options.client_cert_filename,
            client_private_key_filename=self.options.client_private_key_filename,
        )

        # Overridable to speed up tests
        self.backoff_interval = self.options.backoff_interval
        self.max_backoff_interval = self.options.max_backoff_interval
        self.min_renewal_interval = self.options.min_renewal_interval

        self.state = ManagerState.IDLE
        self.last_leaf: LeafCert | None = None
        self.next_renewal_at: datetime | None = None

        self._logger = (logger or structlog.get_logger(__name__)).bind(service=service)
        self._written = asyncio.Event()
        self._writes = 0
        self._failures: dict[FetchKind, int] = {kind: 0 for kind in FetchKind}
        self._managed = False
        self._task: asyncio.Task | None = None

    @property
    def written(self) -> bool:
        """True once the first bundle has been persisted."""
        return self._written.is_set()

    @property
    def writes(self) -> int:
        return self._writes

    @property
    def failures(self) -> dict[str, int]:
        """Current consecutive failure counts by kind."""
        return {kind.value: count for kind, count in self._failures.items()}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # =========================================================================
    # Management loop
    # =========================================================================

    async def manage(self, stop: asyncio.Event | None = None) -> None:
        """Run the fetch/write/renew loop.

        Returns None once ``stop`` is set. Cancelling the running task
        propagates ``CancelledError``.

        Raises:
            CertRetriesExhaustedError: A step failed ``options.tries`` times in a row
            RuntimeError: manage() was already called, or no CA client is set
        """
        if self._managed:
            raise RuntimeError("manage() may only be called once per CertManager")
        client = self.client
        if client is None:
            raise RuntimeError("CertManager has no CA client")
        self._managed = True

        self._logger.info(
            "cert_manager_started",
            directory=self.options.directory,
            tries=self.options.tries,
        )
        CERT_MANAGER_UP.set(1)
        try:
            while True:
                await self._run_cycle(client, stop)
        except _StopRequested:
            self.state = ManagerState.STOPPED
            self._logger.info("cert_manager_stopped")
            return None
        except asyncio.CancelledError:
            self.state = ManagerState.STOPPED
            self._logger.info("cert_manager_stopped")
            raise
        except CertRetriesExhaustedError as e:
            self.state = ManagerState.FAILED
            self._logger.error(
                "cert_manager_failed",
                kind=e.kind.value,
                attempts=e.attempts,
                error=str(e.last_error),
            )
            raise
        finally:
            CERT_MANAGER_UP.set(0)

    async def _run_cycle(self, client: CAClient, stop: asyncio.Event | None) -> None:
        while True:
            root: CARoot = await self._retry(
                FetchKind.ROOT, ManagerState.FETCHING_ROOT, client.fetch_roots, stop
            )
            leaf: LeafCert = await self._retry(
                FetchKind.LEAF,
                ManagerState.FETCHING_LEAF,
                lambda: client.fetch_leaf(self.service),
                stop,
            )

            self.state = ManagerState.WRITING
            try:
                await self._until_stopped(self.sink.write(root, leaf), stop)
            except _StopRequested:
                raise
            except Exception as e:
                # refetch before the next write attempt
                await self._record_failure(FetchKind.WRITE, e, stop)
                continue

            self._failures[FetchKind.WRITE] = 0
            break

        self._on_written(leaf)

        delay = next_renewal_delay(leaf.valid_before, floor=self.min_renewal_interval)
        self.next_renewal_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self._logger.info(
            "cert_renewal_scheduled",
            valid_before=leaf.valid_before.isoformat(),
            renew_in_seconds=round(delay, 3),
        )
        self.state = ManagerState.SLEEPING
        await self._sleep(delay, stop)

    def _on_written(self, leaf: LeafCert) -> None:
        self._writes += 1
        self.last_leaf = leaf
        CERT_WRITES_TOTAL.inc()
        CERT_LEAF_VALID_BEFORE.set(leaf.valid_before.timestamp())

        if self._writes == 1:
            self._written.set()
            self._logger.info("certificates_written", directory=self.options.directory)
        else:
            self._logger.info("certificates_renewed", writes=self._writes)

    async def _retry(
        self,
        kind: FetchKind,
        state: ManagerState,
        operation: Callable[[], Awaitable[Any]],
        stop: asyncio.Event | None,
    ) -> Any:
        """Run ``operation`` until it succeeds or its budget is spent."""
        while True:
            self.state = state
            try:
                result = await self._until_stopped(operation(), stop)
            except _StopRequested:
                raise
            except Exception as e:
                await self._record_failure(kind, e, stop)
                continue
            self._failures[kind] = 0
            return result

    async def _record_failure(
        self, kind: FetchKind, error: Exception, stop: asyncio.Event | None
    ) -> None:
        self._failures[kind] += 1
        attempts = self._failures[kind]
        CERT_FETCH_FAILURES_TOTAL.labels(kind=kind.value).inc()

        if attempts >= self.options.tries:
            raise CertRetriesExhaustedError(kind, attempts, error) from error

        delay = self._backoff_delay(attempts)
        self._logger.warning(
            "cert_step_failed",
            kind=kind.value,
            attempt=attempts,
            tries=self.options.tries,
            retry_in_seconds=delay,
            error=str(error),
        )
        await self._sleep(delay, stop)

    def _backoff_delay(self, attempts: int) -> float:
        delay = self.backoff_interval * (2 ** (attempts - 1))
        return min(delay, self.max_backoff_interval)

    async def _sleep(self, seconds: float, stop: asyncio.Event | None) -> None:
        await self._until_stopped(asyncio.sleep(seconds), stop)

    async def _until_stopped(self, aw: Awaitable[Any], stop: asyncio.Event | None) -> Any:
        """Await ``aw`` unless ``stop`` fires first."""
        if stop is None:
            return await aw
        if stop.is_set():
            if inspect.iscoroutine(aw):
                aw.close()
            raise _StopRequested()

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task.done() and not task.cancelled():
            return task.result()
        raise _StopRequested()

    # =========================================================================
    # Readiness
    # =========================================================================

    async def wait_for_write(self, timeout: float | None = None) -> None:
        """Block until the first bundle has been written.

        Safe to call any number of times, concurrently, before or after the
        loop starts, and on a manager that will never run.

        Raises:
            CertWaitTimeoutError: ``timeout`` seconds elapsed first
        """
        if self._written.is_set():
            return
        try:
            await asyncio.wait_for(self._written.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise CertWaitTimeoutError(timeout) from e

    # =========================================================================
    # Background task helpers
    # =========================================================================

    def start(self, stop: asyncio.Event | None = None) -> asyncio.Task:
        """Run manage() as a background task."""
        if self._task is None:
            self._task = asyncio.create_task(
                self.manage(stop), name=f"cert-manager-{self.service or 'default'}"
            )
        return self._task

    async def stop(self) -> None:
        """Cancel the background task and wait for it to exit."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def error(self) -> BaseException | None:
        """Fatal error of a finished background task, if any."""
        task = self._task
        if task is None or not task.done() or task.cancelled():
            return None
        return task.exception()

    def result(self) -> None:
        """Re-raise the fatal error of a finished background task."""
        err = self.error()
        if err is not None:
            raise err
