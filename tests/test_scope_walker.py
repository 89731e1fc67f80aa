"""Unit tests for ScopeWalker enumeration and record normalization."""

import logging
from typing import Any, Dict, List, Set

import pytest

from pve_ipset_dns.cli import ApiGateway, ApiResult, IPSet, Scope, ScopeWalker, as_record_list


class ReadOnlyGateway(ApiGateway):
    """Serves canned GET responses; unknown paths read as None."""

    def __init__(self, resources: Dict[str, Any], raising: Set[str] | None = None):
        self._resources = resources
        self._raising = raising or set()
        self.get_calls: List[str] = []

    @property
    def name(self) -> str:
        return "ReadOnly"

    def test_connection(self) -> bool:
        return True

    def get(self, path: str) -> Any:
        self.get_calls.append(path)
        if path in self._raising:
            raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        return self._resources.get(path)

    def set(self, path: str, **params: Any) -> ApiResult:
        raise AssertionError("walker must not write")

    def create(self, path: str, **params: Any) -> ApiResult:
        raise AssertionError("walker must not write")

    def delete(self, path: str) -> ApiResult:
        raise AssertionError("walker must not write")


# =============================================================================
# as_record_list Tests
# =============================================================================


@pytest.mark.parametrize("value", [None, "", "null", 0, True, "<html>error</html>"])
def test_as_record_list_scalars_are_empty(value: Any) -> None:
    assert as_record_list(value) == []


def test_as_record_list_wraps_single_object() -> None:
    assert as_record_list({"name": "web"}) == [{"name": "web"}]


def test_as_record_list_drops_non_dict_items() -> None:
    assert as_record_list([{"name": "a"}, "b", None, {"name": "c"}]) == [{"name": "a"}, {"name": "c"}]


# =============================================================================
# Enumeration Tests
# =============================================================================


def test_walks_every_scope_in_order() -> None:
    gateway = ReadOnlyGateway(
        {
            "/cluster/firewall/ipset": [{"name": "cluster-set", "comment": "auto_dns_a.example.com"}],
            "/nodes": [{"node": "pve1"}, {"node": "pve2"}],
            "/nodes/pve1/firewall/ipset": [{"name": "node-set"}],
            "/nodes/pve1/qemu": [{"vmid": 100}, {"vmid": 101}],
            "/nodes/pve1/qemu/100/firewall/ipset": [{"name": "vm-set"}],
            "/nodes/pve1/lxc": [{"vmid": 200}],
            "/nodes/pve1/lxc/200/firewall/ipset": {"name": "ct-set", "comment": "auto_dns_b.example.com"},
            "/nodes/pve2/firewall/ipset": [{"name": "other-node-set"}],
        }
    )

    ipsets = list(ScopeWalker(gateway).iter_ipsets())

    assert ipsets == [
        IPSet(Scope.CLUSTER, "/cluster/firewall/ipset", "cluster-set", "auto_dns_a.example.com"),
        IPSet(Scope.NODE, "/nodes/pve1/firewall/ipset", "node-set", ""),
        IPSet(Scope.VM, "/nodes/pve1/qemu/100/firewall/ipset", "vm-set", ""),
        IPSet(Scope.CONTAINER, "/nodes/pve1/lxc/200/firewall/ipset", "ct-set", "auto_dns_b.example.com"),
        IPSet(Scope.NODE, "/nodes/pve2/firewall/ipset", "other-node-set", ""),
    ]
    assert "/nodes/pve1/qemu/101/firewall/ipset" in gateway.get_calls


def test_ipset_path_joins_collection_and_name() -> None:
    ipset = IPSet(Scope.VM, "/nodes/pve1/qemu/100/firewall/ipset", "web")
    assert ipset.path == "/nodes/pve1/qemu/100/firewall/ipset/web"


def test_failing_sub_resources_do_not_stop_siblings() -> None:
    gateway = ReadOnlyGateway(
        {
            "/nodes": [{"node": "pve1"}, {"node": "pve2"}],
            # pve1 has no qemu/lxc listings at all (reads as None)
            "/nodes/pve1/firewall/ipset": "not json",
            "/nodes/pve2/lxc": [{"vmid": "300"}],
            "/nodes/pve2/lxc/300/firewall/ipset": [{"name": "ct"}],
        }
    )

    ipsets = list(ScopeWalker(gateway).iter_ipsets())

    assert [i.path for i in ipsets] == ["/nodes/pve2/lxc/300/firewall/ipset/ct"]


def test_node_listing_as_bare_strings_or_single_object() -> None:
    gateway = ReadOnlyGateway({"/nodes": ["pve1", "pve2"]})
    list(ScopeWalker(gateway).iter_ipsets())
    assert "/nodes/pve2/firewall/ipset" in gateway.get_calls

    gateway = ReadOnlyGateway({"/nodes": {"node": "solo"}})
    list(ScopeWalker(gateway).iter_ipsets())
    assert "/nodes/solo/qemu" in gateway.get_calls


def test_name_falls_back_to_ipset_then_id_and_unnamed_is_skipped() -> None:
    gateway = ReadOnlyGateway(
        {
            "/cluster/firewall/ipset": [
                {"ipset": "by-ipset"},
                {"id": "by-id"},
                {"comment": "auto_dns_example.com"},
            ]
        }
    )

    names = [i.name for i in ScopeWalker(gateway).iter_ipsets()]

    assert names == ["by-ipset", "by-id"]


def test_debug_mode_dumps_record_fields(caplog: pytest.LogCaptureFixture) -> None:
    gateway = ReadOnlyGateway(
        {"/cluster/firewall/ipset": [{"name": "web", "comment": "auto_dns_x.example.com", "digest": "abc"}]}
    )

    with caplog.at_level(logging.DEBUG, logger="pve_ipset_dns.cli"):
        list(ScopeWalker(gateway).iter_ipsets())

    assert "digest: abc" in caplog.text


def test_raising_read_does_not_stop_sibling_scopes() -> None:
    gateway = ReadOnlyGateway(
        {
            "/nodes": [{"node": "pve1"}, {"node": "pve2"}],
            "/nodes/pve1/qemu": [{"vmid": 100}],
            "/nodes/pve1/lxc": [{"vmid": 200}],
            "/nodes/pve1/lxc/200/firewall/ipset": [{"name": "ct"}],
            "/nodes/pve2/firewall/ipset": [{"name": "node-set"}],
        },
        raising={"/cluster/firewall/ipset", "/nodes/pve1/qemu"},
    )

    paths = [i.path for i in ScopeWalker(gateway).iter_ipsets()]

    assert paths == [
        "/nodes/pve1/lxc/200/firewall/ipset/ct",
        "/nodes/pve2/firewall/ipset/node-set",
    ]
