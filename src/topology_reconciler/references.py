"""Cross-resource references inside declared attributes.

A reference is a string value of the form ``ref:<node_id>`` or
``ref:<node_id>.<attribute.path>``; the bare form points at the node's
``id`` attribute. References may sit at any depth inside lists and dicts.
They are found statically when the graph is built and resolved against the
state store when an action is dispatched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterator

REF_PREFIX = "ref:"

_MISSING = object()


@dataclass(frozen=True)
class Reference:
    node_id: str
    attribute: str = "id"

    def __str__(self) -> str:
        return f"{REF_PREFIX}{self.node_id}.{self.attribute}"


def parse_reference(value: Any) -> Reference | None:
    if not isinstance(value, str) or not value.startswith(REF_PREFIX):
        return None
    ref_text = value[len(REF_PREFIX):].strip()
    if not ref_text:
        raise ValueError(f"Empty reference: {value!r}")
    if "." in ref_text:
        node_id, attribute = ref_text.split(".", 1)
    else:
        node_id, attribute = ref_text, "id"
    if not node_id or not attribute:
        raise ValueError(f"Malformed reference: {value!r}")
    return Reference(node_id=node_id, attribute=attribute)


def iter_references(value: Any, location: str = "") -> Iterator[tuple[str, Reference]]:
    """Yield ``(location, reference)`` for every reference nested in *value*."""
    if isinstance(value, dict):
        for key in sorted(value):
            child = f"{location}.{key}" if location else str(key)
            yield from iter_references(value[key], child)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from iter_references(item, f"{location}[{index}]")
    else:
        ref = parse_reference(value)
        if ref is not None:
            yield location, ref


def resolve_references(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Return a copy of *value* with every reference replaced by ``lookup(ref)``."""
    if isinstance(value, dict):
        return {key: resolve_references(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_references(item, lookup) for item in value]
    ref = parse_reference(value)
    if ref is not None:
        return lookup(ref)
    return value


def lookup_path(data: Any, path: str) -> Any:
    """Walk a dotted path (``a.b.0.c``) through nested dicts and lists.

    Raises:
        KeyError: If any segment does not resolve.
    """
    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            found = current.get(segment, _MISSING)
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            found = current[int(segment)]
        else:
            found = _MISSING
        if found is _MISSING:
            raise KeyError(path)
        current = found
    return current
