from __future__ import annotations

import logging
import math
import random
import threading
import time

from hostsync.src.errors import (
    AlreadyRunningError,
    NotRunningError,
    StopTimeoutError,
    TransportError,
)
from hostsync.src.kube import ChangeEvent, ChangeKind, ServiceStore
from hostsync.src.metrics import METRICS
from hostsync.src.reconciler import DEFAULT_STOP_TIMEOUT_SECONDS, Reconciler

DEFAULT_RESYNC_SECONDS = 15 * 60
DEFAULT_WATCH_TIMEOUT_SECONDS = 10


class Watcher:
    """Turns Service change notifications into reconciliation demand.

    Every notification, whatever its kind or payload, marks the embedded
    :class:`Reconciler` as pending.  A pass rescans the whole cluster, so it
    never matters *which* Service changed, only that something did.

    The watch thread runs list-then-watch over Services in all namespaces:

    1. ``start()`` reads the collection ``resourceVersion`` synchronously, so a
       broken API connection fails startup instead of a background thread.
    2. Watch streams are opened with a bounded server-side timeout and
       resumed from the last seen ``resourceVersion``; the timeout also bounds
       how long ``stop()`` waits for the thread.
    3. Every ``resync_seconds`` a resync notification is emitted to recover
       from anything the watch may have missed.
    4. On ``410 Gone`` the collection is re-listed and a resync notification
       is emitted.
    5. Other errors back off exponentially with jitter (capped at 30 s),
       waiting on the stop event so shutdown is not delayed.
    6. ``401`` / ``403`` responses clear ``ready`` until a watch stream
       completes cleanly again.
    """

    def __init__(
        self,
        store: ServiceStore,
        reconciler: Reconciler,
        resync_seconds: int = DEFAULT_RESYNC_SECONDS,
        watch_timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS,
        stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.resync_seconds = resync_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._lifecycle_lock = threading.Lock()
        self._running = False
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the reconciler, establish the subscription and spawn the watch thread.

        If the initial list fails the reconciler is stopped again and the
        ``TransportError`` propagates.
        """
        with self._lifecycle_lock:
            if self._running:
                raise AlreadyRunningError("watcher is already running")

            self.reconciler.start()
            try:
                resource_version = self.store.current_resource_version()
            except Exception:
                self.reconciler.stop()
                raise

            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run,
                args=(stop_event, resource_version),
                name="hostsync-watcher",
                daemon=True,
            )
            self._running = True
            self.ready.set()
            self.logger.info("Watching services from resourceVersion %s", resource_version)
            # The initial list stands in for an ADDED event per existing Service.
            self.handle_change(ChangeEvent(kind=ChangeKind.RESYNC))
            self._thread.start()

    def stop(self) -> None:
        """Stop the watch thread, wait for it to exit, then stop the reconciler.

        If either join times out, ``StopTimeoutError`` propagates and the
        watcher stays running; calling ``stop()`` again resumes where the
        previous attempt left off.
        """
        with self._lifecycle_lock:
            if not self._running:
                raise NotRunningError("watcher is not running")

            if self._thread is not None and self._stop_event is not None:
                self._stop_event.set()
                self._thread.join(timeout=self.stop_timeout_seconds)
                self.ready.clear()
                if self._thread.is_alive():
                    self.logger.error(
                        "Watch thread did not stop within %ss", self.stop_timeout_seconds
                    )
                    raise StopTimeoutError(
                        f"watcher did not stop within {self.stop_timeout_seconds}s"
                    )
                self._thread = None
                self._stop_event = None

            if self.reconciler.is_running():
                self.reconciler.stop()
            self._running = False
            self.logger.info("Stopped watching services")

    def handle_change(self, event: ChangeEvent) -> None:
        METRICS.notifications_total.labels(kind=event.kind.value).inc()
        self.logger.debug(
            "Service change %s for %s/%s; sync requested",
            event.kind.value,
            event.namespace,
            event.name,
        )
        self.reconciler.mark_pending()

    def _next_watch_timeout_seconds(self, last_resync: float, now_monotonic: float) -> int:
        """Return the watch timeout, shortened so the stream ends in time for the next resync."""
        remaining = self.resync_seconds - (now_monotonic - last_resync)
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    def _run(self, stop_event: threading.Event, resource_version: str | None) -> None:
        backoff_seconds = 1
        watch_stream_count = 0
        last_resync = time.monotonic()

        while not stop_event.is_set():
            now = time.monotonic()
            if now - last_resync >= self.resync_seconds:
                last_resync = now
                self.handle_change(ChangeEvent(kind=ChangeKind.RESYNC))

            if watch_stream_count > 0:
                METRICS.watch_reconnects_total.inc()
            watch_stream_count += 1
            try:
                timeout_seconds = self._next_watch_timeout_seconds(last_resync, now)
                for event in self.store.watch(
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                ):
                    if event.resource_version:
                        resource_version = event.resource_version
                    self.handle_change(event)
                    if stop_event.is_set():
                        break
                backoff_seconds = 1
                if not stop_event.is_set():
                    self.ready.set()
            except TransportError as exc:
                # 410 Gone: the resourceVersion was compacted away and events
                # may have been lost, so re-list and force a pass.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self.store.current_resource_version()
                    except TransportError as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self.ready.clear()
                        else:
                            self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    self.handle_change(ChangeEvent(kind=ChangeKind.RESYNC))
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                else:
                    self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)

        self.logger.debug("Watch loop exited")
