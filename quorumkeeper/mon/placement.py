"""
Monitor Placement Policy

Pure decision logic choosing which member, if any, is extra given the
current placement:

1. Members sharing a node are always the first candidates.
2. In a stretch cluster the arbiter zone must hold exactly one member and
   the data zones must hold equal counts.

The tie-break among equally good candidates is not part of the contract;
sorted order is used so results are reproducible.
"""

from __future__ import annotations

import math
from collections import defaultdict
from typing import Dict, List, Mapping, Optional

import structlog

from quorumkeeper.mon.config import StretchClusterSpec
from quorumkeeper.mon.types import PlacementRecord

logger = structlog.get_logger(__name__)


def group_by_node(placement: Mapping[str, PlacementRecord]) -> Dict[str, List[str]]:
    groups: Dict[str, List[str]] = defaultdict(list)
    for member_id, placed in sorted(placement.items()):
        groups[placed.node].append(member_id)
    return dict(groups)


def group_by_zone(placement: Mapping[str, PlacementRecord]) -> Dict[str, List[str]]:
    groups: Dict[str, List[str]] = defaultdict(list)
    for member_id, placed in sorted(placement.items()):
        if placed.zone:
            groups[placed.zone].append(member_id)
    return dict(groups)


def _crowded_node_member(placement: Mapping[str, PlacementRecord]) -> Optional[str]:
    groups = group_by_node(placement)
    if not groups:
        return None
    node, members = max(groups.items(), key=lambda item: (len(item[1]), item[0]))
    if len(members) < 2:
        return None
    logger.debug("placement.crowded_node", node=node, members=members)
    return members[0]


def _stretch_zone_member(
    placement: Mapping[str, PlacementRecord],
    stretch: StretchClusterSpec,
    desired_count: Optional[int] = None,
) -> Optional[str]:
    zones = group_by_zone(placement)
    arbiter_members = zones.get(stretch.arbiter_zone, [])
    if len(arbiter_members) > 1:
        logger.debug(
            "placement.arbiter_over_count",
            zone=stretch.arbiter_zone,
            members=arbiter_members,
        )
        return arbiter_members[0]

    data_zones = stretch.data_zones
    if not data_zones:
        return None
    # Every member except the arbiter's is spread evenly over the data zones.
    total = desired_count if desired_count else len(placement)
    per_zone = math.ceil(max(total - 1, 0) / len(data_zones))
    counts = {zone: len(zones.get(zone, [])) for zone in data_zones}
    zone, largest = max(counts.items(), key=lambda item: (item[1], item[0]))
    if largest > per_zone:
        logger.debug(
            "placement.zone_over_count",
            zone=zone,
            count=largest,
            expected=per_zone,
        )
        return zones[zone][0]
    return None


def find_extra_member(
    placement: Mapping[str, PlacementRecord],
    stretch: Optional[StretchClusterSpec] = None,
    desired_count: Optional[int] = None,
) -> Optional[str]:
    """
    Return a member whose removal improves placement, or ``None``.

    ``None`` means the placement is already balanced. ``desired_count``
    sets the expected members per stretch data zone; without it the
    current member count is used.
    """
    member = _crowded_node_member(placement)
    if member is not None:
        return member
    if stretch is not None:
        return _stretch_zone_member(placement, stretch, desired_count)
    return None


def determine_extra_member_to_remove(
    placement: Mapping[str, PlacementRecord],
    stretch: Optional[StretchClusterSpec] = None,
    desired_count: Optional[int] = None,
) -> Optional[str]:
    """
    Pick the member to drop when scaling down.

    Outside a stretch cluster any member may go once placement is
    balanced; a balanced stretch cluster keeps all of its members.
    """
    member = find_extra_member(placement, stretch, desired_count)
    if member is not None or stretch is not None:
        return member
    if not placement:
        return None
    return max(placement)
