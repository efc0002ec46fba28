"""
Quorum Snapshot Helpers

Pure functions over :class:`QuorumStatus` snapshots: filtering out
members that are mid-replacement and classifying every id the reconciler
cares about in a single pass.
"""

from __future__ import annotations

import copy
from typing import Collection, Dict, Iterable

from quorumkeeper.mon.types import (
    MemberAssessment,
    MemberClass,
    MemberHealth,
    QuorumStatus,
)


def remove_members_from_quorum_status(
    status: QuorumStatus,
    ids_to_remove: Collection[str],
) -> QuorumStatus:
    """
    Return a copy of ``status`` without the named members.

    Both the member entries and their ranks are dropped; every other rank
    and entry is left untouched. The input is not modified.
    """
    removed_ranks = {m.rank for m in status.members if m.name in ids_to_remove}
    return QuorumStatus(
        quorum=[rank for rank in status.quorum if rank not in removed_ranks],
        members=[
            copy.copy(m) for m in status.members if m.name not in ids_to_remove
        ],
    )


def member_health(status: QuorumStatus, member_id: str) -> MemberHealth:
    member = status.get(member_id)
    if member is None:
        return MemberHealth.NOT_FOUND
    if member.rank in status.quorum:
        return MemberHealth.IN_QUORUM
    return MemberHealth.OUT_OF_QUORUM


def classify_members(
    status: QuorumStatus,
    internal_ids: Iterable[str],
    external_ids: Iterable[str],
) -> Dict[str, MemberAssessment]:
    """
    Tag every known id and every snapshot member with its class and health.

    Internal ids win over external declarations; snapshot members that are
    neither are tagged ``UNKNOWN`` and never adopted.
    """
    internal = set(internal_ids)
    external = set(external_ids) - internal
    assessments: Dict[str, MemberAssessment] = {}

    for member_id in sorted(internal | external | set(status.member_names)):
        if member_id in internal:
            member_class = MemberClass.INTERNAL
        elif member_id in external:
            member_class = MemberClass.EXTERNAL
        else:
            member_class = MemberClass.UNKNOWN
        assessments[member_id] = MemberAssessment(
            member_id=member_id,
            member_class=member_class,
            health=member_health(status, member_id),
            entry=status.get(member_id),
        )
    return assessments


def endpoint_from_public_addr(public_addr: str) -> str:
    """``"v2:10.0.0.1:3300/0"`` -> ``"10.0.0.1:3300"``."""
    addr = public_addr.split("/", 1)[0]
    for prefix in ("v2:", "v1:"):
        if addr.startswith(prefix):
            addr = addr[len(prefix):]
    return addr
