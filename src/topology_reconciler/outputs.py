from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from .errors import AttributePathError, NodeNotReconciledError
from .models import ObservedResource, ObservedStatus, OutputSpec
from .references import lookup_path

logger = logging.getLogger(__name__)


def resolve_outputs(
    observed: Mapping[str, ObservedResource],
    output_specs: Iterable[OutputSpec],
) -> dict[str, Any]:
    """Read each named output from the live attributes of its node.

    Raises:
        NodeNotReconciledError: The node has no ``created`` record.
        AttributePathError: The dotted path does not resolve on the node.
    """
    values: dict[str, Any] = {}
    for spec in output_specs:
        record = observed.get(spec.node_id)
        if record is None or record.status != ObservedStatus.CREATED:
            raise NodeNotReconciledError(
                spec.name,
                spec.node_id,
                record.status.value if record is not None else None,
            )
        try:
            values[spec.name] = lookup_path(record.attributes, spec.attribute_path)
        except KeyError as exc:
            raise AttributePathError(spec.name, spec.node_id, spec.attribute_path) from exc
    logger.debug("Resolved %d outputs", len(values))
    return values
