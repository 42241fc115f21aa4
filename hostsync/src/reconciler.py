from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass

from hostsync.src.annotations import (
    SOURCE_ANNOTATION_KEY,
    TARGET_ANNOTATION_KEY,
    aggregate_hosts,
    desired_annotations,
    mapping_hosts,
    parse_source_config,
)
from hostsync.src.errors import (
    AlreadyRunningError,
    ConfigParseError,
    DesignatedResourceNotFoundError,
    NotRunningError,
    StopTimeoutError,
)
from hostsync.src.kube import Resource, ServiceStore
from hostsync.src.metrics import METRICS

DEFAULT_INTERVAL_SECONDS = 4.0
DEFAULT_STOP_TIMEOUT_SECONDS = 60.0


class ReconcilerState(str, enum.Enum):
    IDLE = "idle"
    TICKING = "ticking"
    RECONCILING = "reconciling"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one successful reconciliation pass.

    ``hosts`` is sorted and de-duplicated; ``value`` is what the target
    annotation holds after the pass (``""`` meaning the key is absent);
    ``updated`` tells whether a write was issued.
    """

    hosts: tuple[str, ...]
    value: str
    updated: bool


class PendingFlag:
    """Lock-guarded boolean shared by the watch thread (writer) and the tick thread (reader).

    Setting it any number of times before it is taken is the same as setting
    it once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = False

    def set(self) -> None:
        with self._lock:
            self._value = True

    def clear(self) -> None:
        with self._lock:
            self._value = False

    def is_set(self) -> bool:
        with self._lock:
            return self._value

    def take(self) -> bool:
        """Atomically clear the flag and return whether it was set."""
        with self._lock:
            value = self._value
            self._value = False
            return value


class Reconciler:
    """Converges the external-dns annotation on the designated Service.

    A background thread ticks every ``interval_seconds``.  A tick does nothing
    unless :meth:`mark_pending` was called since the last successful pass, so
    any burst of notifications between two ticks collapses into exactly one
    pass.

    The pending flag is taken (tested and cleared) before a pass starts and
    set again if the pass fails.  A notification that arrives while a pass is
    running is therefore kept for the next tick instead of being wiped when
    the running pass succeeds.
    """

    def __init__(
        self,
        store: ServiceStore,
        service_namespace: str,
        service_name: str,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.service_namespace = service_namespace
        self.service_name = service_name
        self.interval_seconds = interval_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._pending = PendingFlag()
        self._lifecycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = ReconcilerState.STOPPED
        self._running = False
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def designated_key(self) -> tuple[str, str]:
        return (self.service_namespace, self.service_name)

    @property
    def state(self) -> ReconcilerState:
        with self._state_lock:
            return self._state

    @property
    def is_pending(self) -> bool:
        return self._pending.is_set()

    def _set_state(self, state: ReconcilerState, running: bool | None = None) -> None:
        with self._state_lock:
            if running is not None:
                self._running = running
            self._state = state

    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._running:
                raise AlreadyRunningError("reconciler is already running")

            self._pending.clear()
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event,),
                name="hostsync-reconciler",
                daemon=True,
            )
            self._set_state(ReconcilerState.IDLE, running=True)
            self._thread.start()

    def stop(self) -> None:
        """Ask the tick loop to exit and block until it has.

        The loop only observes the request between ticks, so a pass that is
        already running finishes first.
        """
        with self._lifecycle_lock:
            if not self._running or self._thread is None or self._stop_event is None:
                raise NotRunningError("reconciler is not running")

            self._stop_event.set()
            self._thread.join(timeout=self.stop_timeout_seconds)
            if self._thread.is_alive():
                self.logger.error(
                    "Reconciler thread did not stop within %ss", self.stop_timeout_seconds
                )
                raise StopTimeoutError(
                    f"reconciler did not stop within {self.stop_timeout_seconds}s"
                )

            self._thread = None
            self._stop_event = None
            self._pending.clear()
            self._set_state(ReconcilerState.STOPPED, running=False)

    def mark_pending(self) -> None:
        self._pending.set()

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(timeout=self.interval_seconds):
            self.tick()
        self.logger.debug("Reconciler loop exited")

    def tick(self) -> bool:
        """Run one tick of the loop.  Returns True when a pass ran and succeeded.

        Failures are logged and counted, never raised; the pending flag is
        restored so the next tick retries.
        """
        self._set_state(ReconcilerState.TICKING)
        try:
            if not self._pending.take():
                return False

            self._set_state(ReconcilerState.RECONCILING)
            self.logger.info("Performing sync between annotations")
            started = time.monotonic()
            try:
                result = self.reconcile()
            except DesignatedResourceNotFoundError as exc:
                self._pending.set()
                METRICS.passes_total.labels(result="not_found").inc()
                self.logger.error("Failed to perform sync: %s", exc)
                return False
            except Exception:
                self._pending.set()
                METRICS.passes_total.labels(result="error").inc()
                self.logger.exception("Failed to perform sync")
                return False
            finally:
                METRICS.pass_duration_seconds.observe(time.monotonic() - started)

            METRICS.passes_total.labels(result="success").inc()
            METRICS.discovered_hosts.set(len(result.hosts))
            METRICS.last_success_timestamp.set_to_current_time()
            if result.hosts:
                self.logger.info(
                    "Performed sync between annotations for hosts: %s",
                    ", ".join(result.hosts),
                )
            elif result.updated:
                self.logger.warning("No hosts found; external-dns annotation removed")
            else:
                self.logger.warning("No hosts found; external-dns annotation is not set")
            return True
        finally:
            with self._state_lock:
                self._state = (
                    ReconcilerState.IDLE if self._running else ReconcilerState.STOPPED
                )

    def reconcile(self) -> ReconcileResult:
        """Scan every Service, aggregate declared hosts and converge the designated Service.

        1. List all Services in all namespaces.
        2. Parse each ``getambassador.io/config`` annotation; malformed values
           are logged and skipped, ``Mapping`` resources with a non-empty
           ``host`` contribute it.
        3. Sort and comma-join the distinct hosts.
        4. Raise :class:`DesignatedResourceNotFoundError` if the designated
           Service was not in the listing; nothing is written.
        5. Write the designated Service only if its external-dns annotation
           differs from the aggregate (an empty aggregate removes the key).

        Transport failures propagate as ``TransportError``.
        """
        hosts: set[str] = set()
        designated: Resource | None = None

        for resource in self.store.list_all():
            if resource.key == self.designated_key:
                designated = resource

            raw = resource.annotations.get(SOURCE_ANNOTATION_KEY)
            if raw is None:
                continue
            try:
                configs = parse_source_config(raw)
            except ConfigParseError as exc:
                METRICS.parse_errors_total.inc()
                self.logger.error(
                    "Failed to parse ambassador annotation config on service %s/%s: %s",
                    resource.namespace,
                    resource.name,
                    exc,
                )
                continue

            found = mapping_hosts(configs)
            if found:
                self.logger.debug(
                    "Service %s/%s has host: %s",
                    resource.namespace,
                    resource.name,
                    ", ".join(found),
                )
                hosts.update(found)
            elif any(config.is_mapping for config in configs):
                self.logger.debug(
                    "Service %s/%s has no host defined on its ambassador mapping annotation",
                    resource.namespace,
                    resource.name,
                )
            else:
                self.logger.debug(
                    "Service %s/%s doesn't have an ambassador mapping annotation",
                    resource.namespace,
                    resource.name,
                )

        value = aggregate_hosts(hosts)
        if value:
            self.logger.debug("Found the following hosts to update external-dns annotation: %s", value)
        else:
            self.logger.debug("Found zero hosts to set for external-dns, annotation will be removed")

        if designated is None:
            raise DesignatedResourceNotFoundError(self.service_namespace, self.service_name)

        sorted_hosts = tuple(sorted(hosts))
        annotations = desired_annotations(designated.annotations, value, key=TARGET_ANNOTATION_KEY)
        if annotations is None:
            self.logger.debug(
                "Service %s/%s external-dns annotation already up to date",
                self.service_namespace,
                self.service_name,
            )
            return ReconcileResult(hosts=sorted_hosts, value=value, updated=False)

        self.store.update(designated.with_annotations(annotations))
        METRICS.writes_total.inc()
        self.logger.info(
            "Updated external-dns annotation on service %s/%s",
            self.service_namespace,
            self.service_name,
        )
        return ReconcileResult(hosts=sorted_hosts, value=value, updated=True)
