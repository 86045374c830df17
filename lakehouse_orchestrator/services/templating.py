from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

from lakehouse_orchestrator.models.resources import ResourceRegistry


# ${resource-name.attribute}
_REFERENCE_RE = re.compile(r"\$\{([A-Za-z0-9_\-]+)\.([A-Za-z0-9_]+)\}")


def references(value: Any) -> set[str]:
    """Resource names referenced anywhere inside `value` (nested dicts/lists included)."""

    found: set[str] = set()
    for text in _strings(value):
        found.update(match.group(1) for match in _REFERENCE_RE.finditer(text))
    return found


def render(value: Any, registry: ResourceRegistry) -> Any:
    """Substitute `${name.attr}` references with realized resource identities.

    Raises ResourceDependencyError if a referenced resource (or attribute) was
    never realized.
    """

    if isinstance(value, str):
        return _REFERENCE_RE.sub(lambda m: registry.get(m.group(1)).attribute(m.group(2)), value)
    if isinstance(value, Mapping):
        return {key: render(item, registry) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [render(item, registry) for item in value]
    return value


def _strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from _strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _strings(item)
