"""
Monitor Cluster State

In-memory source of truth for one monitor group:

- desired spec
- ``internal`` members (created and managed here) and ``external``
  members (declared in the spec, only mirrored)
- placement records for internal members
- a monotonically increasing id allocation cursor
- members currently being failed over, and out-of-quorum timers

Also defines the config store record layout and its codec.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import structlog

from quorumkeeper.mon.config import ClusterSpec
from quorumkeeper.mon.errors import PersistenceError
from quorumkeeper.mon.types import (
    MemberConfig,
    MemberRecord,
    PlacementRecord,
    index_to_name,
    name_to_index,
    resource_name,
)

logger = structlog.get_logger(__name__)

# Config store record keys
ENDPOINT_DATA_KEY = "data"
EXTERNAL_MONS_KEY = "externalMons"
OUT_OF_QUORUM_KEY = "outOfQuorum"
MAPPING_KEY = "mapping"
MAX_MON_ID_KEY = "maxMonId"


# ---------------------------------------------------------------------------
# Record codec
# ---------------------------------------------------------------------------


def format_endpoints(members: Iterable[MemberRecord]) -> str:
    """Serialize members as ``id=host:port`` pairs joined by commas."""
    return ",".join(f"{m.name}={m.endpoint}" for m in members)


def parse_endpoints(value: str) -> Dict[str, MemberRecord]:
    """Inverse of :func:`format_endpoints`. Malformed pairs are skipped."""
    members: Dict[str, MemberRecord] = {}
    for pair in value.split(","):
        pair = pair.strip()
        if not pair:
            continue
        name, sep, endpoint = pair.partition("=")
        if not sep or not name:
            logger.warning("cluster_state.bad_endpoint_pair", pair=pair)
            continue
        members[name] = MemberRecord(name=name, endpoint=endpoint)
    return members


def format_id_list(ids: Iterable[str]) -> str:
    return ",".join(ids)


def parse_id_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def majority(count: int) -> int:
    """Smallest member count that is a strict majority of ``count``."""
    return count // 2 + 1


# ---------------------------------------------------------------------------
# ClusterState
# ---------------------------------------------------------------------------


@dataclass
class ClusterState:
    """Mutable membership state owned by the reconciler."""

    spec: ClusterSpec = field(default_factory=ClusterSpec)
    internal: Dict[str, MemberRecord] = field(default_factory=dict)
    external: Dict[str, MemberRecord] = field(default_factory=dict)
    placement: Dict[str, PlacementRecord] = field(default_factory=dict)
    max_member_index: int = -1
    pending_failover: Dict[str, MemberConfig] = field(default_factory=dict)
    out_of_quorum_since: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in list(self.internal) + list(self.external):
            self.observe_member_id(name)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def desired_count(self) -> int:
        return self.spec.mon.count

    @property
    def max_member_id(self) -> Optional[str]:
        if self.max_member_index < 0:
            return None
        return index_to_name(self.max_member_index)

    @property
    def out_of_quorum_ids(self) -> List[str]:
        return sorted(n for n, m in self.internal.items() if m.out_of_quorum)

    # ------------------------------------------------------------------
    # Id allocation
    # ------------------------------------------------------------------

    def observe_member_id(self, name: str) -> None:
        """Advance the cursor so that ``name`` is never handed out again."""
        index = name_to_index(name)
        if index > self.max_member_index:
            self.max_member_index = index

    def allocate_member_id(self) -> str:
        """Return the next unused id. Declared external ids are skipped."""
        reserved = set(self.spec.mon.external_mon_ids) | set(self.external)
        while True:
            self.max_member_index += 1
            name = index_to_name(self.max_member_index)
            if name not in reserved and name not in self.internal:
                return name

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def resource_name(self, member_id: str) -> str:
        return resource_name(member_id, self.spec.resource_prefix)

    def member_config(self, member_id: str) -> MemberConfig:
        """Config of an existing member, or a fresh one for the desired spec."""
        placed = self.placement.get(member_id)
        if placed is not None:
            use_host = placed.host_network
            zone = placed.zone
        else:
            use_host = self.spec.network.is_host
            zone = None
        return MemberConfig(
            member_id=member_id,
            resource_name=self.resource_name(member_id),
            port=self.spec.mon.port,
            zone=zone,
            use_host_network=use_host,
        )

    def endpoints(self) -> Dict[str, str]:
        table = {name: m.endpoint for name, m in self.internal.items()}
        table.update({name: m.endpoint for name, m in self.external.items()})
        return table

    def remove_member(self, member_id: str) -> None:
        """Drop every trace of an internal member."""
        self.internal.pop(member_id, None)
        self.placement.pop(member_id, None)
        self.out_of_quorum_since.pop(member_id, None)

    # ------------------------------------------------------------------
    # Store record
    # ------------------------------------------------------------------

    def to_record(self) -> Dict[str, str]:
        """Derive the full config store record from the current state."""
        members = sorted(
            list(self.internal.values()) + list(self.external.values()),
            key=lambda m: m.name,
        )
        mapping = {
            name: placed.to_dict()
            for name, placed in sorted(self.placement.items())
        }
        return {
            ENDPOINT_DATA_KEY: format_endpoints(members),
            EXTERNAL_MONS_KEY: format_id_list(sorted(self.external)),
            OUT_OF_QUORUM_KEY: format_id_list(self.out_of_quorum_ids),
            MAPPING_KEY: json.dumps(mapping, sort_keys=True),
            MAX_MON_ID_KEY: str(self.max_member_index),
        }

    def load_record(self, record: Dict[str, str]) -> None:
        """Replace members and placement with what a store record holds."""
        try:
            members = parse_endpoints(record.get(ENDPOINT_DATA_KEY, ""))
            external_ids = set(parse_id_list(record.get(EXTERNAL_MONS_KEY, "")))
            out_ids = set(parse_id_list(record.get(OUT_OF_QUORUM_KEY, "")))
            raw_mapping: Dict[str, Any] = json.loads(record.get(MAPPING_KEY) or "{}")
            max_index = int(record.get(MAX_MON_ID_KEY) or -1)
        except (ValueError, TypeError) as exc:
            raise PersistenceError(f"corrupt config store record: {exc}") from exc

        self.internal = {}
        self.external = {}
        for name, member in members.items():
            member.out_of_quorum = name in out_ids
            if name in external_ids:
                self.external[name] = member
            else:
                self.internal[name] = member
        self.placement = {
            name: PlacementRecord.from_dict(name, data)
            for name, data in raw_mapping.items()
            if name in self.internal
        }
        self.max_member_index = max(self.max_member_index, max_index)
        for name in list(self.internal) + list(self.external):
            self.observe_member_id(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster": self.spec.name,
            "desired_count": self.desired_count,
            "internal": {n: m.to_dict() for n, m in self.internal.items()},
            "external": {n: m.to_dict() for n, m in self.external.items()},
            "placement": {n: p.to_dict() for n, p in self.placement.items()},
            "max_member_id": self.max_member_id,
            "pending_failover": sorted(self.pending_failover),
        }
