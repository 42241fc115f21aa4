from __future__ import annotations

import copy
import enum
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from hostsync.src.errors import TransportError

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit *kubeconfig* path always wins.  Otherwise in-cluster config is
    tried first (running inside a pod), falling back to the local kubeconfig
    for development.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


@dataclass(frozen=True)
class Resource:
    """A Service as seen by one reconciliation pass.

    ``raw`` keeps the API object the resource was read from so it can be
    written back with ``replace`` (which needs the full object, including the
    ``resourceVersion`` used for conflict detection).
    """

    namespace: str
    name: str
    annotations: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    def with_annotations(self, annotations: dict[str, str]) -> Resource:
        return replace(self, annotations=dict(annotations))


def resource_from_service(service: Any) -> Resource:
    """Build a :class:`Resource` from a ``V1Service`` (or any object shaped like one)."""
    metadata = getattr(service, "metadata", None)
    raw_annotations = getattr(metadata, "annotations", None)
    annotations = {
        k: ("" if v is None else str(v))
        for k, v in (raw_annotations or {}).items()
        if isinstance(k, str)
    }
    return Resource(
        namespace=getattr(metadata, "namespace", None) or "",
        name=getattr(metadata, "name", None) or "",
        annotations=annotations,
        resource_version=getattr(metadata, "resource_version", None),
        raw=service,
    )


class ChangeKind(str, enum.Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    # Emitted after a re-list, when individual events may have been missed.
    RESYNC = "RESYNC"


@dataclass(frozen=True)
class ChangeEvent:
    """A normalised "something changed" notification for the Service collection."""

    kind: ChangeKind
    namespace: str = ""
    name: str = ""
    resource_version: str | None = None


class ServiceStore:
    """List, watch and update Services across all namespaces.

    Every ``ApiException`` is re-raised as :class:`TransportError` carrying the
    HTTP status, so callers never depend on the client library's exception
    types.
    """

    def __init__(self, core_api: CoreV1Api, logger: logging.Logger | None = None) -> None:
        self.core_api = core_api
        self.logger = logger or LOGGER

    def list_all(self) -> list[Resource]:
        try:
            services = self.core_api.list_service_for_all_namespaces()
        except ApiException as exc:
            raise TransportError(
                f"Failed to list services: {exc.reason}", status=exc.status
            ) from exc
        return [resource_from_service(service) for service in (services.items or [])]

    def current_resource_version(self) -> str | None:
        """Return the collection ``resourceVersion`` to start a watch from."""
        try:
            services = self.core_api.list_service_for_all_namespaces(limit=1)
        except ApiException as exc:
            raise TransportError(
                f"Failed to list services: {exc.reason}", status=exc.status
            ) from exc
        return getattr(getattr(services, "metadata", None), "resource_version", None)

    def watch(
        self, resource_version: str | None, timeout_seconds: int
    ) -> Iterator[ChangeEvent]:
        """Stream add/modify/delete notifications until the server-side timeout elapses.

        Events of any other type (bookmarks) are dropped.  An expired
        *resource_version* surfaces as a ``TransportError`` with status 410.
        """
        watcher = watch.Watch()
        try:
            stream = watcher.stream(
                self.core_api.list_service_for_all_namespaces,
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
            )
            for event in stream:
                event_type = str(event.get("type", ""))
                try:
                    kind = ChangeKind(event_type)
                except ValueError:
                    self.logger.debug("Ignoring watch event of type %r", event_type)
                    continue
                if kind is ChangeKind.RESYNC:
                    continue
                metadata = getattr(event.get("object"), "metadata", None)
                yield ChangeEvent(
                    kind=kind,
                    namespace=getattr(metadata, "namespace", None) or "",
                    name=getattr(metadata, "name", None) or "",
                    resource_version=getattr(metadata, "resource_version", None),
                )
        except ApiException as exc:
            raise TransportError(
                f"Failed to watch services: {exc.reason}", status=exc.status
            ) from exc
        finally:
            watcher.stop()

    def update(self, resource: Resource) -> None:
        """Replace the Service with *resource*'s annotations.

        The body keeps the ``resourceVersion`` the resource was read with, so
        a concurrent edit makes the API reject the write with ``409``.
        """
        if resource.raw is None:
            raise ValueError(f"service {resource.namespace}/{resource.name} has no API object")
        body = copy.deepcopy(resource.raw)
        body.metadata.annotations = dict(resource.annotations)
        try:
            self.core_api.replace_namespaced_service(
                name=resource.name,
                namespace=resource.namespace,
                body=body,
            )
        except ApiException as exc:
            raise TransportError(
                f"Failed to update service {resource.namespace}/{resource.name}: {exc.reason}",
                status=exc.status,
            ) from exc
