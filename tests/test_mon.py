"""
Monitor Quorum Building Block Tests

Covers the pure parts of the monitor subsystem:
- Member naming and quorum status parsing
- Duration parsing and spec validation
- Cluster state bookkeeping and the config store record
- Placement policy (node collocation, stretch zones)
- Quorum snapshot filtering and classification
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from quorumkeeper.mon.config import (
    ClusterSpec,
    MonSpec,
    OperatorSettings,
    StretchClusterSpec,
    ZoneSpec,
    parse_duration,
)
from quorumkeeper.mon.errors import ConfigurationError, RemoteQueryError
from quorumkeeper.mon.placement import (
    determine_extra_member_to_remove,
    find_extra_member,
)
from quorumkeeper.mon.quorum import (
    classify_members,
    endpoint_from_public_addr,
    remove_members_from_quorum_status,
)
from quorumkeeper.mon.state import (
    EXTERNAL_MONS_KEY,
    OUT_OF_QUORUM_KEY,
    ClusterState,
    format_endpoints,
    majority,
    parse_endpoints,
)
from quorumkeeper.mon.types import (
    MemberClass,
    MemberHealth,
    MemberRecord,
    PlacementRecord,
    QuorumMember,
    QuorumStatus,
    index_to_name,
    name_to_index,
    resource_name,
)


def placed(nodes, zones=None):
    zones = zones or {}
    return {
        member_id: PlacementRecord(member_id=member_id, node=node, zone=zones.get(member_id))
        for member_id, node in nodes.items()
    }


def stretch_spec():
    return StretchClusterSpec(zones=[
        ZoneSpec(name="x", arbiter=True),
        ZoneSpec(name="y"),
        ZoneSpec(name="z"),
    ])


def status_abc():
    return QuorumStatus(
        quorum=[0, 1, 2],
        members=[
            QuorumMember(name="a", rank=0),
            QuorumMember(name="b", rank=1),
            QuorumMember(name="c", rank=2),
        ],
    )


# =============================================================================
# Type Tests
# =============================================================================


class TestMemberNaming:
    """Test letter ids derived from the allocation cursor."""

    def test_single_letters(self):
        assert index_to_name(0) == "a"
        assert index_to_name(5) == "f"
        assert index_to_name(25) == "z"

    def test_double_letters(self):
        assert index_to_name(26) == "aa"
        assert index_to_name(27) == "ab"
        assert index_to_name(701) == "zz"
        assert index_to_name(702) == "aaa"

    def test_name_to_index_inverts(self):
        for index in (0, 4, 25, 26, 51, 700, 702):
            assert name_to_index(index_to_name(index)) == index

    def test_non_letter_names(self):
        assert name_to_index("ext-mon-id") == -1
        assert name_to_index("") == -1

    def test_negative_index_rejected(self):
        with pytest.raises(ValueError):
            index_to_name(-1)

    def test_resource_name(self):
        assert resource_name("a") == "qk-mon-a"
        assert resource_name("b", prefix="rook-ceph-mon") == "rook-ceph-mon-b"


class TestQuorumStatus:
    """Test quorum status parsing and lookups."""

    def test_from_dict(self):
        status = QuorumStatus.from_dict({
            "quorum": [0, 2],
            "monmap": {"mons": [
                {"name": "a", "rank": 0, "public_addr": "10.0.0.1:6789/0"},
                {"name": "b", "rank": 1, "public_addr": "10.0.0.2:6789/0"},
                {"name": "c", "rank": 2, "public_addr": "10.0.0.3:6789/0"},
            ]},
        })
        assert status.quorum == [0, 2]
        assert status.member_names == ["a", "b", "c"]
        assert status.in_quorum("a") is True
        assert status.in_quorum("b") is False
        assert status.in_quorum("zz") is False

    def test_to_dict_parses_back(self):
        status = status_abc()
        assert QuorumStatus.from_dict(status.to_dict()) == status

    def test_malformed(self):
        with pytest.raises(RemoteQueryError):
            QuorumStatus.from_dict({"quorum": [0]})
        with pytest.raises(RemoteQueryError):
            QuorumStatus.from_dict({"quorum": ["x"], "monmap": {"mons": []}})

    def test_endpoint_from_public_addr(self):
        assert endpoint_from_public_addr("10.0.0.1:6789/0") == "10.0.0.1:6789"
        assert endpoint_from_public_addr("v2:10.0.0.1:3300/0") == "10.0.0.1:3300"
        assert endpoint_from_public_addr("10.0.0.1:6789") == "10.0.0.1:6789"


# =============================================================================
# Configuration Tests
# =============================================================================


class TestParseDuration:
    """Test duration string parsing."""

    def test_units(self):
        assert parse_duration("45s") == timedelta(seconds=45)
        assert parse_duration("10m") == timedelta(minutes=10)
        assert parse_duration("2h") == timedelta(hours=2)
        assert parse_duration("500ms") == timedelta(milliseconds=500)

    def test_compound(self):
        assert parse_duration("1h30m") == timedelta(minutes=90)
        assert parse_duration("1m30.5s") == timedelta(seconds=90.5)

    def test_zero_and_negative(self):
        assert parse_duration("0") == timedelta(0)
        assert parse_duration("-5s") == timedelta(seconds=-5)

    @pytest.mark.parametrize("value", ["", "abc", "10", "10x", "s10", "1m 30s"])
    def test_invalid(self, value):
        with pytest.raises(ConfigurationError):
            parse_duration(value)


class TestClusterSpec:
    """Test spec validation."""

    def test_defaults(self):
        spec = ClusterSpec()
        assert spec.mon.count == 3
        assert spec.mon.allow_multiple_per_node is False
        assert spec.mon.is_stretch is False
        assert spec.network.is_host is False
        assert spec.health_check.mon.disabled is False

    def test_host_network(self):
        spec = ClusterSpec(network={"provider": "host"})
        assert spec.network.is_host is True

    def test_stretch_zones(self):
        stretch = stretch_spec()
        assert stretch.arbiter_zone == "x"
        assert stretch.data_zones == ["y", "z"]

    def test_stretch_requires_single_arbiter(self):
        with pytest.raises(ValidationError):
            StretchClusterSpec(zones=[ZoneSpec(name="x"), ZoneSpec(name="y")])
        with pytest.raises(ValidationError):
            StretchClusterSpec(zones=[
                ZoneSpec(name="x", arbiter=True),
                ZoneSpec(name="y", arbiter=True),
            ])

    def test_bad_duration_rejected(self):
        with pytest.raises(ValidationError):
            ClusterSpec(health_check={"mon": {"interval": "soon"}})
        with pytest.raises(ValidationError):
            OperatorSettings(mon_out_timeout="forever")

    def test_non_positive_count_is_accepted(self):
        # Rejected when a pass starts, not when the spec is parsed.
        assert MonSpec(count=0).count == 0


# =============================================================================
# Cluster State Tests
# =============================================================================


class TestEndpointCodec:
    """Test the endpoint table format."""

    def test_format(self):
        members = [
            MemberRecord(name="a", endpoint="1.2.3.1:3300"),
            MemberRecord(name="b", endpoint="1.2.3.2:3300"),
        ]
        assert format_endpoints(members) == "a=1.2.3.1:3300,b=1.2.3.2:3300"

    def test_parse(self):
        members = parse_endpoints("b=1.2.3.2:3300,a=1.2.3.1:3300,f=:6789")
        assert set(members) == {"a", "b", "f"}
        assert members["f"].endpoint == ":6789"

    def test_parse_skips_garbage(self):
        assert parse_endpoints("") == {}
        assert set(parse_endpoints("a=1.2.3.1:3300,,junk")) == {"a"}


class TestClusterState:
    """Test ClusterState bookkeeping."""

    def test_majority(self):
        assert majority(1) == 1
        assert majority(2) == 2
        assert majority(3) == 2
        assert majority(5) == 3

    def test_cursor_observes_existing_members(self):
        state = ClusterState(internal={"c": MemberRecord(name="c")})
        assert state.max_member_id == "c"
        assert state.allocate_member_id() == "d"

    def test_allocation_never_reuses_ids(self):
        state = ClusterState()
        first = state.allocate_member_id()
        state.internal[first] = MemberRecord(name=first)
        state.remove_member(first)
        assert state.allocate_member_id() == "b"
        assert state.max_member_index == 1

    def test_allocation_skips_external_ids(self):
        state = ClusterState(spec=ClusterSpec(mon=MonSpec(external_mon_ids=["a", "b"])))
        assert state.allocate_member_id() == "c"

    def test_endpoints_include_external(self):
        state = ClusterState(
            internal={"a": MemberRecord(name="a", endpoint="10.0.0.1:6789")},
            external={"ext": MemberRecord(name="ext", endpoint="10.0.0.9:6789")},
        )
        assert state.endpoints() == {"a": "10.0.0.1:6789", "ext": "10.0.0.9:6789"}

    def test_record_reload(self):
        state = ClusterState(
            internal={
                "a": MemberRecord(name="a", endpoint="10.0.0.1:6789"),
                "c": MemberRecord(name="c", endpoint="10.0.0.3:6789", out_of_quorum=True),
            },
            external={"ext": MemberRecord(name="ext", endpoint="10.0.0.9:6789")},
            placement=placed({"a": "node1", "c": "node2"}, zones={"c": "y"}),
        )
        state.max_member_index = 4
        record = state.to_record()
        assert record[EXTERNAL_MONS_KEY] == "ext"
        assert record[OUT_OF_QUORUM_KEY] == "c"

        restored = ClusterState()
        restored.load_record(record)
        assert set(restored.internal) == {"a", "c"}
        assert set(restored.external) == {"ext"}
        assert restored.internal["c"].out_of_quorum is True
        assert restored.placement["c"].zone == "y"
        assert restored.max_member_id == "e"

    def test_empty_record(self):
        record = ClusterState().to_record()
        assert record[EXTERNAL_MONS_KEY] == ""
        assert record[OUT_OF_QUORUM_KEY] == ""


# =============================================================================
# Placement Policy Tests
# =============================================================================


class TestPlacementPolicy:
    """Test extra-member selection."""

    def test_crowded_node(self):
        placement = placed({"a": "node1", "b": "node2", "c": "node1", "d": "node1"})
        assert find_extra_member(placement) in {"a", "c", "d"}

    def test_two_on_one_node(self):
        placement = placed({"a": "node1", "b": "node2", "c": "node3", "d": "node1"})
        assert find_extra_member(placement) in {"a", "d"}
        assert determine_extra_member_to_remove(placement) in {"a", "d"}

    def test_distinct_nodes(self):
        placement = placed({"a": "node1", "b": "node2", "c": "node3", "d": "node4"})
        assert find_extra_member(placement) is None
        assert determine_extra_member_to_remove(placement) in {"a", "b", "c", "d"}

    def test_empty(self):
        assert find_extra_member({}) is None
        assert determine_extra_member_to_remove({}) is None

    def test_balanced_stretch_cluster(self):
        placement = placed(
            {"a": "node1", "b": "node2", "c": "node3", "d": "node4", "e": "node5"},
            zones={"a": "x", "b": "y", "c": "y", "d": "z", "e": "z"},
        )
        assert find_extra_member(placement, stretch_spec()) is None
        assert determine_extra_member_to_remove(placement, stretch_spec()) is None

    def test_stretch_zone_under_count_is_not_extra(self):
        placement = placed(
            {"a": "node1", "b": "node2", "c": "node3", "d": "node4"},
            zones={"a": "x", "b": "y", "c": "y", "d": "z"},
        )
        assert find_extra_member(placement, stretch_spec()) is None

    def test_arbiter_over_count(self):
        placement = placed(
            {"a": "node1", "b": "node2", "c": "node3", "d": "node4", "e": "node5"},
            zones={"a": "x", "b": "y", "c": "y", "d": "x", "e": "z"},
        )
        assert find_extra_member(placement, stretch_spec()) in {"a", "d"}

    def test_data_zone_over_count(self):
        placement = placed(
            {"a": "node1", "b": "node2", "c": "node3", "d": "node4", "e": "node5"},
            zones={"a": "x", "b": "y", "c": "y", "d": "y", "e": "z"},
        )
        assert find_extra_member(placement, stretch_spec()) in {"b", "c", "d"}

    def test_data_zone_over_desired_count(self):
        placement = placed(
            {f"m{i}": f"node{i}" for i in range(6)},
            zones={"m0": "x", "m1": "y", "m2": "y", "m3": "y", "m4": "z", "m5": "z"},
        )
        assert find_extra_member(placement, stretch_spec()) is None
        assert find_extra_member(placement, stretch_spec(), desired_count=5) in {
            "m1", "m2", "m3",
        }

    def test_node_collocation_wins_over_zones(self):
        placement = placed(
            {"a": "node1", "b": "node2", "c": "node2", "d": "node4", "e": "node5"},
            zones={"a": "x", "b": "y", "c": "y", "d": "z", "e": "z"},
        )
        assert find_extra_member(placement, stretch_spec()) in {"b", "c"}


# =============================================================================
# Quorum Snapshot Tests
# =============================================================================


class TestRemoveMembersFromQuorumStatus:
    """Test the pending-failover filter."""

    def test_remove_one_member(self):
        result = remove_members_from_quorum_status(status_abc(), ["b"])
        assert result.quorum == [0, 2]
        assert result.member_names == ["a", "c"]
        assert [m.rank for m in result.members] == [0, 2]

    def test_not_present(self):
        original = status_abc()
        assert remove_members_from_quorum_status(original, ["e"]) == original

    def test_input_untouched(self):
        original = status_abc()
        remove_members_from_quorum_status(original, ["a", "b"])
        assert original == status_abc()

    def test_member_out_of_quorum(self):
        status = QuorumStatus(
            quorum=[0, 2],
            members=[
                QuorumMember(name="a", rank=0),
                QuorumMember(name="b", rank=1),
                QuorumMember(name="c", rank=2),
            ],
        )
        result = remove_members_from_quorum_status(status, ["b"])
        assert result.quorum == [0, 2]
        assert result.member_names == ["a", "c"]


class TestClassifyMembers:
    """Test per-member tagging."""

    def test_classification(self):
        status = QuorumStatus(
            quorum=[0, 2, 3],
            members=[
                QuorumMember(name="a", rank=0),
                QuorumMember(name="b", rank=1),
                QuorumMember(name="x", rank=2),
                QuorumMember(name="y", rank=3),
            ],
        )
        result = classify_members(status, internal_ids=["a", "b", "c"], external_ids=["x"])

        assert result["a"].member_class == MemberClass.INTERNAL
        assert result["a"].health == MemberHealth.IN_QUORUM
        assert result["b"].health == MemberHealth.OUT_OF_QUORUM
        assert result["c"].health == MemberHealth.NOT_FOUND
        assert result["c"].entry is None
        assert result["x"].member_class == MemberClass.EXTERNAL
        assert result["y"].member_class == MemberClass.UNKNOWN

    def test_internal_wins_over_external_declaration(self):
        status = QuorumStatus(quorum=[0], members=[QuorumMember(name="a", rank=0)])
        result = classify_members(status, internal_ids=["a"], external_ids=["a"])
        assert result["a"].member_class == MemberClass.INTERNAL
