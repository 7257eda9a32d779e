import pytest

from topology_reconciler.errors import AttributePathError, NodeNotReconciledError
from topology_reconciler.models import ObservedResource, ObservedStatus, OutputSpec, ResourceKind
from topology_reconciler.outputs import resolve_outputs


def _lb(status=ObservedStatus.CREATED):
    return ObservedResource(
        node_id="web_lb",
        kind=ResourceKind.LOAD_BALANCER,
        provider_id="arn:lb",
        attributes={
            "dns_name": "web-1.us-east-1.elb.amazonaws.com",
            "listeners": [{"port": 80}, {"port": 443}],
        },
        status=status,
    )


def test_resolves_dotted_paths_and_list_indices() -> None:
    specs = [
        OutputSpec(name="dns", node_id="web_lb", attribute_path="dns_name"),
        OutputSpec(name="https_port", node_id="web_lb", attribute_path="listeners.1.port"),
    ]
    assert resolve_outputs({"web_lb": _lb()}, specs) == {
        "dns": "web-1.us-east-1.elb.amazonaws.com",
        "https_port": 443,
    }


def test_missing_node_is_not_reconciled() -> None:
    spec = OutputSpec(name="dns", node_id="web_lb", attribute_path="dns_name")
    with pytest.raises(NodeNotReconciledError) as excinfo:
        resolve_outputs({}, [spec])
    assert excinfo.value.status is None


@pytest.mark.parametrize("status", [ObservedStatus.PENDING, ObservedStatus.DEGRADED, ObservedStatus.DELETED])
def test_only_created_records_satisfy_outputs(status) -> None:
    spec = OutputSpec(name="dns", node_id="web_lb", attribute_path="dns_name")
    with pytest.raises(NodeNotReconciledError) as excinfo:
        resolve_outputs({"web_lb": _lb(status)}, [spec])
    assert excinfo.value.status == status.value


def test_unknown_attribute_path_raises() -> None:
    spec = OutputSpec(name="zone", node_id="web_lb", attribute_path="listeners.7.port")
    with pytest.raises(AttributePathError) as excinfo:
        resolve_outputs({"web_lb": _lb()}, [spec])
    assert excinfo.value.attribute_path == "listeners.7.port"
