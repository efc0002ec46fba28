"""
Monitor Quorum Types

Type definitions shared by the monitor reconciliation subsystem:

- Member and placement records tracked by the cluster state
- Quorum status snapshots as reported by the monitor group
- Per-member classification produced by a single reconciliation pass
- Member naming helpers (index <-> letter ids, resource names)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from quorumkeeper.mon.errors import RemoteQueryError

DEFAULT_MON_PORT = 6789
DEFAULT_RESOURCE_PREFIX = "qk-mon"

_ALPHABET = "abcdefghijklmnopqrstuvwxyz"


# =============================================================================
# Enums
# =============================================================================


class MemberClass(str, Enum):
    """Which mapping a member id belongs to."""
    INTERNAL = "internal"       # Created and managed by the reconciler
    EXTERNAL = "external"       # Declared in spec, only mirrored
    UNKNOWN = "unknown"         # Seen in quorum only, never adopted


class MemberHealth(str, Enum):
    """Health of a member according to the latest quorum snapshot."""
    IN_QUORUM = "in_quorum"
    OUT_OF_QUORUM = "out_of_quorum"   # In the member list, not in the ranks
    NOT_FOUND = "not_found"           # Absent from the member list


class NetworkProvider(str, Enum):
    """Network mode a member runs with."""
    DEFAULT = ""
    HOST = "host"


# =============================================================================
# Naming
# =============================================================================


def index_to_name(index: int) -> str:
    """
    Convert an allocation index to a member id.

    ``0 -> "a"``, ``25 -> "z"``, ``26 -> "aa"``, ``27 -> "ab"`` ...
    """
    if index < 0:
        raise ValueError(f"member index must be non-negative, got {index}")
    name = ""
    n = index
    while True:
        name = _ALPHABET[n % 26] + name
        n = n // 26 - 1
        if n < 0:
            return name


def name_to_index(name: str) -> int:
    """Inverse of :func:`index_to_name`. Returns -1 for non-letter ids."""
    if not name or any(c not in _ALPHABET for c in name):
        return -1
    index = 0
    for c in name:
        index = index * 26 + (_ALPHABET.index(c) + 1)
    return index - 1


def resource_name(member_id: str, prefix: str = DEFAULT_RESOURCE_PREFIX) -> str:
    """Deterministic workload resource name for a member."""
    return f"{prefix}-{member_id}"


# =============================================================================
# Records
# =============================================================================


@dataclass
class MemberRecord:
    """A single monitor member known to the cluster state."""
    name: str
    endpoint: str = ""
    out_of_quorum: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "out_of_quorum": self.out_of_quorum,
        }


@dataclass
class PlacementRecord:
    """Where an internal member was scheduled."""
    member_id: str
    node: str
    zone: Optional[str] = None
    address: str = ""            # Address override (host networking)
    host_network: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node": self.node,
            "zone": self.zone,
            "address": self.address,
            "host_network": self.host_network,
        }

    @classmethod
    def from_dict(cls, member_id: str, data: Dict[str, Any]) -> "PlacementRecord":
        return cls(
            member_id=member_id,
            node=data.get("node", ""),
            zone=data.get("zone"),
            address=data.get("address", ""),
            host_network=bool(data.get("host_network", False)),
        )


@dataclass
class MemberConfig:
    """Everything the workload manager needs to start one member."""
    member_id: str
    resource_name: str
    port: int = DEFAULT_MON_PORT
    zone: Optional[str] = None
    use_host_network: bool = False


@dataclass
class SchedulingResult:
    """Node chosen by the scheduler for a new member."""
    node: str
    zone: Optional[str] = None
    address: str = ""


@dataclass
class LivePlacement:
    """A running member workload and the node it actually runs on."""
    member_id: str
    node: str


# =============================================================================
# Quorum status
# =============================================================================


@dataclass
class QuorumMember:
    """One entry of the monitor map."""
    name: str
    rank: int
    public_addr: str = ""


@dataclass
class QuorumStatus:
    """
    Snapshot of what the monitor group believes its membership to be.

    Members listed in ``members`` whose rank is absent from ``quorum``
    are known to the group but currently unreachable.
    """
    quorum: List[int] = field(default_factory=list)
    members: List[QuorumMember] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuorumStatus":
        """Parse the monitor's JSON quorum status output."""
        try:
            quorum = [int(rank) for rank in data.get("quorum", [])]
            members = [
                QuorumMember(
                    name=str(m["name"]),
                    rank=int(m["rank"]),
                    public_addr=str(m.get("public_addr", "")),
                )
                for m in data["monmap"]["mons"]
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise RemoteQueryError(f"malformed quorum status: {exc}") from exc
        return cls(quorum=quorum, members=members)

    def get(self, name: str) -> Optional[QuorumMember]:
        for member in self.members:
            if member.name == name:
                return member
        return None

    def in_quorum(self, name: str) -> bool:
        member = self.get(name)
        return member is not None and member.rank in self.quorum

    @property
    def member_names(self) -> List[str]:
        return [m.name for m in self.members]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quorum": list(self.quorum),
            "monmap": {
                "mons": [
                    {"name": m.name, "rank": m.rank, "public_addr": m.public_addr}
                    for m in self.members
                ],
            },
        }


@dataclass
class MemberAssessment:
    """Classification of one member id for a single reconciliation pass."""
    member_id: str
    member_class: MemberClass
    health: MemberHealth
    entry: Optional[QuorumMember] = None

    @property
    def is_internal(self) -> bool:
        return self.member_class == MemberClass.INTERNAL
