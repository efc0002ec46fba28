"""
Monitor Quorum Reconciler

Control loop step that converges the live monitor group onto the desired
spec:

- Classifies every member against the latest quorum snapshot
- Replaces members missing from the group and fails over members that
  stayed out of quorum past the timeout
- Scales up eagerly (all missing members in one pass) and scales down
  cautiously (one member per pass, never below a majority)
- Evicts members sharing a node when collocation is not allowed
- Mirrors externally managed members and persists the resulting record

Each pass keeps whatever progress it made before an error; the periodic
health checker is the retry mechanism.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog

from quorumkeeper.mon.config import (
    DEFAULT_MON_OUT_TIMEOUT,
    OperatorSettings,
    resolve_mon_out_timeout,
)
from quorumkeeper.mon.errors import PersistenceError, PreconditionError, RemoteQueryError
from quorumkeeper.mon.interfaces import (
    Clock,
    ConfigStore,
    QuorumStatusSource,
    Scheduler,
    SystemClock,
    WorkloadManager,
)
from quorumkeeper.mon.placement import determine_extra_member_to_remove
from quorumkeeper.mon.quorum import (
    classify_members,
    endpoint_from_public_addr,
    remove_members_from_quorum_status,
)
from quorumkeeper.mon.state import ClusterState, majority
from quorumkeeper.mon.types import (
    MemberAssessment,
    MemberHealth,
    MemberRecord,
    PlacementRecord,
    QuorumStatus,
)

logger = structlog.get_logger(__name__)


class QuorumReconciler:
    """
    Reconciles one cluster's monitor group.

    Usage::

        reconciler = QuorumReconciler(
            state,
            quorum_source=source,
            scheduler=scheduler,
            workloads=workloads,
            store=store,
        )
        await reconciler.check_health()
    """

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def __init__(
        self,
        state: Optional[ClusterState],
        *,
        quorum_source: QuorumStatusSource,
        scheduler: Scheduler,
        workloads: WorkloadManager,
        store: ConfigStore,
        clock: Optional[Clock] = None,
        settings: Optional[OperatorSettings] = None,
    ) -> None:
        self._state = state
        self._quorum_source = quorum_source
        self._scheduler = scheduler
        self._workloads = workloads
        self._store = store
        self._clock = clock or SystemClock()
        self._settings = settings or OperatorSettings()

        self._mon_out_timeout: timedelta = (
            resolve_mon_out_timeout(state.spec, self._settings)
            if state is not None
            else DEFAULT_MON_OUT_TIMEOUT
        )

        # Metrics counters
        self._passes: int = 0
        self._members_added: int = 0
        self._members_removed: int = 0
        self._failovers: int = 0

        logger.info(
            "reconciler.init",
            cluster=state.spec.name if state is not None else None,
            mon_out_timeout=self._mon_out_timeout.total_seconds(),
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> Optional[ClusterState]:
        return self._state

    @property
    def settings(self) -> OperatorSettings:
        return self._settings

    @property
    def mon_out_timeout(self) -> timedelta:
        return self._mon_out_timeout

    def _require_state(self) -> ClusterState:
        if self._state is None:
            raise PreconditionError("cluster state is not initialized")
        return self._state

    # ------------------------------------------------------------------
    # Health check pass
    # ------------------------------------------------------------------

    async def check_health(self) -> None:
        """Run one reconciliation pass."""
        state = self._require_state()
        desired = state.desired_count
        if desired <= 0:
            raise PreconditionError(f"desired monitor count must be positive, got {desired}")

        self._passes += 1
        logger.debug(
            "reconciler.pass_start",
            cluster=state.spec.name,
            desired=desired,
            internal=sorted(state.internal),
        )

        status = await self._query_quorum_status()

        if state.spec.external_cluster:
            if self.sync_external_cluster(status):
                await self.save_member_config()
            return

        status = remove_members_from_quorum_status(status, list(state.pending_failover))
        assessments = self.classify_members(status)
        self.reconcile_external_members(status)

        all_in_quorum = await self._handle_internal_members(status, assessments)

        current = len(state.internal)
        if current < desired:
            await self._scale_up(desired)
        elif current > desired:
            await self._scale_down(desired)
        elif all_in_quorum:
            await self.evict_member_if_multiple_on_same_node()

        await self.save_member_config()
        logger.debug(
            "reconciler.pass_complete",
            cluster=state.spec.name,
            internal=sorted(state.internal),
            external=sorted(state.external),
        )

    async def _query_quorum_status(self) -> QuorumStatus:
        try:
            return await self._quorum_source.get_quorum_status()
        except RemoteQueryError as exc:
            logger.warning("reconciler.quorum_status_failed", error=str(exc))
            raise

    def classify_members(self, status: QuorumStatus) -> Dict[str, MemberAssessment]:
        state = self._require_state()
        return classify_members(
            status,
            internal_ids=state.internal,
            external_ids=state.spec.mon.external_mon_ids,
        )

    async def _handle_internal_members(
        self,
        status: QuorumStatus,
        assessments: Dict[str, MemberAssessment],
    ) -> bool:
        """
        Track quorum membership and replace lost members. Returns all-in-quorum.

        At most one member is failed over per pass. A missing member takes
        precedence over one that timed out of quorum.
        """
        state = self._require_state()
        all_in_quorum = True
        missing: List[str] = []
        timed_out: List[str] = []

        for member_id, assessment in assessments.items():
            if not assessment.is_internal or member_id not in state.internal:
                continue
            if member_id in state.pending_failover:
                # Already being replaced.
                continue

            if assessment.entry is not None and assessment.entry.public_addr:
                state.internal[member_id].endpoint = endpoint_from_public_addr(
                    assessment.entry.public_addr
                )

            if assessment.health == MemberHealth.IN_QUORUM:
                state.out_of_quorum_since.pop(member_id, None)
                await self.track_member_quorum_state(member_id, True)
                continue

            all_in_quorum = False
            if assessment.health == MemberHealth.NOT_FOUND:
                logger.warning("reconciler.member_not_found", member=member_id)
                missing.append(member_id)
                continue

            await self.track_member_quorum_state(member_id, False)
            since = state.out_of_quorum_since.setdefault(member_id, self._clock.now())
            if self._out_of_quorum_expired(since):
                timed_out.append(member_id)
            else:
                logger.warning(
                    "reconciler.member_out_of_quorum",
                    member=member_id,
                    seconds_left=round(self._seconds_until_timeout(since), 1),
                )

        if missing:
            await self._replace_missing(status, missing)
        elif timed_out:
            await self._failover_timed_out(status, timed_out[0])
        return all_in_quorum

    def _out_of_quorum_expired(self, since: float) -> bool:
        if self._mon_out_timeout.total_seconds() <= 0:
            return False
        return self._seconds_until_timeout(since) < 0

    def _seconds_until_timeout(self, since: float) -> float:
        return self._mon_out_timeout.total_seconds() - (self._clock.now() - since)

    def _has_quorum(self, status: QuorumStatus, member_id: str) -> bool:
        # Failing over a member of a group without quorum could lose it for good.
        if len(status.quorum) > len(status.members) // 2:
            return True
        logger.warning(
            "reconciler.failover_skipped_no_quorum",
            member=member_id,
            in_quorum=len(status.quorum),
            members=len(status.members),
        )
        return False

    async def _replace_missing(self, status: QuorumStatus, missing: List[str]) -> None:
        state = self._require_state()
        member_id = missing[0]
        if not any(status.get(name) is not None for name in state.internal):
            # A snapshot without any of our members is stale or incomplete.
            logger.warning(
                "reconciler.failover_skipped_stale_snapshot",
                missing=missing,
                snapshot=status.member_names,
            )
            return
        if not self._has_quorum(status, member_id):
            return
        await self.failover_member(member_id)

    async def _failover_timed_out(self, status: QuorumStatus, member_id: str) -> None:
        if not self._has_quorum(status, member_id):
            return
        logger.warning("reconciler.member_out_of_quorum_timeout", member=member_id)
        await self.failover_member(member_id)

    # ------------------------------------------------------------------
    # Scaling
    # ------------------------------------------------------------------

    async def _scale_up(self, desired: int) -> None:
        state = self._require_state()
        logger.info(
            "reconciler.scale_up",
            current=len(state.internal),
            desired=desired,
        )
        while len(state.internal) < desired:
            await self.start_new_member()

    async def _scale_down(self, desired: int) -> None:
        state = self._require_state()
        current = len(state.internal)
        if current - 1 < majority(current):
            logger.warning(
                "reconciler.scale_down_refused",
                current=current,
                desired=desired,
                reason="removal would break majority",
            )
            return

        placement = {n: p for n, p in state.placement.items() if n in state.internal}
        for member_id in state.internal:
            if member_id not in placement:
                placement[member_id] = PlacementRecord(member_id=member_id, node="")
        victim = determine_extra_member_to_remove(
            placement,
            state.spec.mon.stretch_cluster,
            desired,
        )
        if victim is None:
            logger.info("reconciler.scale_down_balanced", current=current, desired=desired)
            return

        logger.info(
            "reconciler.scale_down",
            member=victim,
            current=current,
            desired=desired,
        )
        await self.remove_member(victim)

    async def start_new_member(self, zone: Optional[str] = None) -> str:
        """
        Allocate, schedule, create, register and persist one new member.

        ``zone`` pins the new member to a failure zone, as when it takes over
        from a member of a stretch cluster.
        """
        state = self._require_state()
        member_id = state.allocate_member_id()
        config = state.member_config(member_id)
        if zone is not None:
            config.zone = zone

        result = await self._scheduler.schedule(config)
        placement = PlacementRecord(
            member_id=member_id,
            node=result.node,
            zone=result.zone,
            address=result.address if config.use_host_network else "",
            host_network=config.use_host_network,
        )
        config.zone = result.zone
        endpoint = await self._workloads.create(config, placement)

        state.internal[member_id] = MemberRecord(name=member_id, endpoint=endpoint)
        state.placement[member_id] = placement
        self._members_added += 1
        logger.info(
            "reconciler.member_added",
            member=member_id,
            node=placement.node,
            zone=placement.zone,
            endpoint=endpoint,
        )

        await self.save_member_config()
        await self._refresh_endpoints(exclude=member_id)
        return member_id

    async def remove_member(self, member_id: str) -> None:
        state = self._require_state()
        state.remove_member(member_id)
        self._members_removed += 1
        await self._workloads.delete(state.resource_name(member_id))
        await self.save_member_config()
        logger.info("reconciler.member_removed", member=member_id)

    async def _refresh_endpoints(self, exclude: Optional[str] = None) -> None:
        """Push the current endpoint table to every other member workload."""
        state = self._require_state()
        endpoints = state.endpoints()
        for member_id in sorted(state.internal):
            if member_id == exclude:
                continue
            await self._workloads.update(state.resource_name(member_id), endpoints)

    # ------------------------------------------------------------------
    # Failover
    # ------------------------------------------------------------------

    def stop_member_during_failover(self, member_id: str) -> bool:
        """
        Whether the old member must be stopped before its replacement starts.

        Members on the default network always stop. A member staying on host
        networking keeps running; one converting to host networking stops.
        """
        state = self._require_state()
        if not state.spec.network.is_host:
            return True
        pending = state.pending_failover.get(member_id)
        if pending is not None and not pending.use_host_network:
            return True
        return False

    async def failover_member(self, member_id: str) -> str:
        """
        Replace ``member_id`` with a freshly allocated member in the same zone.

        The member is listed in ``pending_failover`` only while this call is
        in flight. A pass that queries quorum meanwhile, such as one racing a
        direct eviction, leaves it alone instead of replacing it twice.
        """
        state = self._require_state()
        old_config = state.member_config(member_id)
        state.pending_failover[member_id] = old_config
        logger.info("reconciler.failover_start", member=member_id)

        stopped = False
        try:
            if self.stop_member_during_failover(member_id):
                stopped = await self._try_set_enabled(member_id, False)
            try:
                new_id = await self.start_new_member(zone=old_config.zone)
            except Exception:
                if stopped:
                    await self._try_set_enabled(member_id, True)
                raise
        finally:
            state.pending_failover.pop(member_id, None)

        state.remove_member(member_id)
        self._failovers += 1
        await self.save_member_config()
        logger.info("reconciler.failover_complete", old_member=member_id, new_member=new_id)
        return new_id

    async def update_member_workload_replicas(self, member_id: str, enabled: bool) -> None:
        """Scale a member workload to one replica, or to zero to stop it."""
        state = self._require_state()
        replicas = 1 if enabled else 0
        await self._workloads.set_replicas(state.resource_name(member_id), replicas)
        logger.info("reconciler.member_replicas", member=member_id, replicas=replicas)

    async def _try_set_enabled(self, member_id: str, enabled: bool) -> bool:
        try:
            await self.update_member_workload_replicas(member_id, enabled)
        except Exception as exc:
            logger.warning(
                "reconciler.member_replicas_failed",
                member=member_id,
                enabled=enabled,
                error=str(exc),
            )
            return False
        return True

    async def evict_member_if_multiple_on_same_node(self) -> Optional[str]:
        """Fail over one member that shares its node with another running member."""
        state = self._require_state()
        if state.spec.mon.allow_multiple_per_node:
            return None

        # Untracked workloads are left to orphan cleanup.
        live = [
            placed
            for placed in await self._workloads.list_running_placements()
            if placed.member_id in state.internal
        ]
        if len(live) <= 1:
            return None

        nodes: Dict[str, List[str]] = {}
        for placed in live:
            nodes.setdefault(placed.node, []).append(placed.member_id)
        node, members = max(nodes.items(), key=lambda item: (len(item[1]), item[0]))
        if len(members) < 2:
            return None

        victim = sorted(members)[-1]
        logger.warning(
            "reconciler.evict_collocated_member",
            member=victim,
            node=node,
            collocated=sorted(members),
        )
        await self.failover_member(victim)
        return victim

    async def remove_orphan_resources(self) -> List[str]:
        """Delete workloads and volume claims of members no longer tracked."""
        state = self._require_state()
        expected = {state.resource_name(member_id) for member_id in state.internal}
        removed: List[str] = []

        for name in await self._workloads.list_workloads():
            if name not in expected:
                logger.info("reconciler.orphan_workload_removed", resource=name)
                await self._workloads.delete(name)
                removed.append(name)

        for name in await self._workloads.list_volume_claims():
            if name not in expected:
                logger.info("reconciler.orphan_volume_claim_removed", resource=name)
                await self._workloads.delete_volume_claim(name)
                removed.append(name)
        return removed

    # ------------------------------------------------------------------
    # External members
    # ------------------------------------------------------------------

    def reconcile_external_members(self, status: QuorumStatus) -> bool:
        """Mirror declared external members present in the snapshot."""
        state = self._require_state()
        declared = set(state.spec.mon.external_mon_ids)
        changed = False

        for member in status.members:
            if member.name not in declared:
                continue
            if member.name in state.internal:
                logger.warning("reconciler.external_id_collision", member=member.name)
                continue
            endpoint = endpoint_from_public_addr(member.public_addr)
            existing = state.external.get(member.name)
            if existing is None:
                state.external[member.name] = MemberRecord(name=member.name, endpoint=endpoint)
                state.observe_member_id(member.name)
                logger.info("reconciler.external_member_added", member=member.name)
                changed = True
            elif existing.endpoint != endpoint:
                existing.endpoint = endpoint
                changed = True

        present = set(status.member_names)
        for name in sorted(state.external):
            if name not in present or name not in declared:
                del state.external[name]
                logger.info("reconciler.external_member_removed", member=name)
                changed = True
        return changed

    def sync_external_cluster(self, status: QuorumStatus) -> bool:
        """Mirror every snapshot member of a fully external cluster."""
        state = self._require_state()
        changed = False
        for member in status.members:
            endpoint = endpoint_from_public_addr(member.public_addr)
            existing = state.external.get(member.name)
            if existing is None or existing.endpoint != endpoint:
                state.external[member.name] = MemberRecord(name=member.name, endpoint=endpoint)
                changed = True
        present = set(status.member_names)
        for name in [n for n in state.external if n not in present]:
            del state.external[name]
            changed = True
        if changed:
            logger.info("reconciler.external_cluster_synced", members=sorted(state.external))
        return changed

    # ------------------------------------------------------------------
    # Quorum tracking & persistence
    # ------------------------------------------------------------------

    async def track_member_quorum_state(self, member_id: str, in_quorum: bool) -> bool:
        """
        Record whether a member is in quorum.

        The record is only written when the flag actually flips.
        """
        state = self._require_state()
        member = state.internal.get(member_id)
        if member is None or member.out_of_quorum != in_quorum:
            return False
        member.out_of_quorum = not in_quorum
        logger.info(
            "reconciler.member_quorum_state",
            member=member_id,
            in_quorum=in_quorum,
            out_of_quorum=state.out_of_quorum_ids,
        )
        await self.save_member_config()
        return True

    async def persist_expected_members(self) -> None:
        """Seed the store with every internal member marked in quorum."""
        state = self._require_state()
        for member in state.internal.values():
            member.out_of_quorum = False
        await self.save_member_config()

    async def save_member_config(self) -> None:
        state = self._require_state()
        record = state.to_record()
        try:
            await self._store.save(record)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Failed to persist member config: {exc}") from exc

    async def load_state(self) -> None:
        """Restore members, placement and the id cursor from the store."""
        state = self._require_state()
        try:
            record = await self._store.load()
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Failed to load member config: {exc}") from exc
        state.load_record(record)
        logger.info(
            "reconciler.state_loaded",
            internal=sorted(state.internal),
            external=sorted(state.external),
            max_member_id=state.max_member_id,
        )

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Return operational statistics."""
        state = self._state
        return {
            "passes": self._passes,
            "members_added": self._members_added,
            "members_removed": self._members_removed,
            "failovers": self._failovers,
            "internal": len(state.internal) if state is not None else 0,
            "external": len(state.external) if state is not None else 0,
        }
