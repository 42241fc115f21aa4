from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import yaml

from hostsync.src.errors import ConfigParseError

SOURCE_ANNOTATION_KEY = "getambassador.io/config"
TARGET_ANNOTATION_KEY = "external-dns.alpha.kubernetes.io/hostname"
MAPPING_KIND = "Mapping"
_NULL_TAG = "tag:yaml.org,2002:null"


@dataclass(frozen=True)
class SourceConfig:
    """One Ambassador resource declared in a Service's ``getambassador.io/config`` annotation.

    Only ``kind`` and ``host`` matter here; every other field of the Ambassador
    resource (``prefix``, ``service``, ``timeout_ms`` and so on) is ignored.
    """

    kind: str
    host: str

    @property
    def is_mapping(self) -> bool:
        return self.kind == MAPPING_KIND


def _scalar_field(document: yaml.MappingNode, field: str) -> str:
    """Return the source text of a top-level scalar *field*, or ``""`` if absent or null."""
    value = ""
    for key_node, value_node in document.value:
        if not isinstance(key_node, yaml.ScalarNode) or key_node.value != field:
            continue
        if not isinstance(value_node, yaml.ScalarNode):
            raise ConfigParseError(f"{field} must be a scalar, got {value_node.id}")
        value = "" if value_node.tag == _NULL_TAG else value_node.value
    return value


def parse_source_config(raw: str) -> list[SourceConfig]:
    """Parse an annotation value into the Ambassador resources it declares.

    The value is YAML and may hold several documents separated by ``---``.
    Empty documents are skipped.  A document that is not valid YAML, is not
    a YAML mapping, or whose ``kind`` or ``host`` is a sequence or mapping
    makes the whole value invalid and raises :class:`ConfigParseError`.

    ``kind`` and ``host`` keep their source text, so ``host: true`` yields
    ``"true"``.
    """
    try:
        documents = list(yaml.compose_all(raw, Loader=yaml.SafeLoader))
    except yaml.YAMLError as exc:
        raise ConfigParseError(f"invalid YAML: {exc}") from exc

    configs: list[SourceConfig] = []
    for document in documents:
        if document is None or (
            isinstance(document, yaml.ScalarNode) and document.tag == _NULL_TAG
        ):
            continue
        if not isinstance(document, yaml.MappingNode):
            raise ConfigParseError(f"expected a mapping, got {document.id}")
        configs.append(
            SourceConfig(
                kind=_scalar_field(document, "kind"),
                host=_scalar_field(document, "host").strip(),
            )
        )
    return configs


def mapping_hosts(configs: Iterable[SourceConfig]) -> list[str]:
    """Return the non-empty hosts declared by ``Mapping`` resources, in declaration order."""
    return [config.host for config in configs if config.is_mapping and config.host]


def aggregate_hosts(hosts: Iterable[str]) -> str:
    """Join hosts into the external-dns annotation value: sorted, de-duplicated, comma-separated.

    An empty collection yields ``""``, which means the annotation should be
    absent rather than empty-valued.
    """
    return ",".join(sorted(set(hosts)))


def desired_annotations(
    annotations: Mapping[str, str] | None,
    value: str,
    key: str = TARGET_ANNOTATION_KEY,
) -> dict[str, str] | None:
    """Return the annotation mapping with *key* converged on *value*, or ``None`` if already converged.

    An empty *value* removes *key* entirely, including a key that is present
    with an empty value.  The input mapping is never mutated; a fresh dict is
    returned when a write is needed.
    """
    current = dict(annotations or {})
    if key in current:
        if not value:
            del current[key]
            return current
        if current[key] == value:
            return None
        current[key] = value
        return current

    if not value:
        return None
    current[key] = value
    return current
