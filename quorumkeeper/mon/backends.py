"""
Monitor Collaborator Backends

Concrete implementations of the collaborator interfaces that need no
orchestration platform:

- :class:`InMemoryConfigStore` / :class:`FileConfigStore` for the shared
  config record (the file store writes atomically via temp-file-then-rename)
- :class:`InMemoryWorkloadManager` tracking workloads, volume claims and
  live placement in dictionaries
- :class:`StaticScheduler` placing every member on a fixed node list
- :class:`StaticQuorumStatusSource` returning a settable snapshot
- :class:`ManualClock` for deterministic timing
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import structlog

from quorumkeeper.mon.errors import PersistenceError, RemoteQueryError, SchedulingError
from quorumkeeper.mon.interfaces import (
    Clock,
    ConfigStore,
    QuorumStatusSource,
    Scheduler,
    WorkloadManager,
)
from quorumkeeper.mon.types import (
    LivePlacement,
    MemberConfig,
    MemberRecord,
    PlacementRecord,
    QuorumMember,
    QuorumStatus,
    SchedulingResult,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Config stores
# ---------------------------------------------------------------------------


class InMemoryConfigStore(ConfigStore):
    """Config record held in a dict. Counts writes for inspection."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self.save_count = 0

    @property
    def data(self) -> Dict[str, str]:
        return dict(self._data)

    async def load(self) -> Dict[str, str]:
        return dict(self._data)

    async def save(self, data: Dict[str, str]) -> None:
        self._data = dict(data)
        self.save_count += 1


class FileConfigStore(ConfigStore):
    """Config record persisted as a JSON object in a single file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            raw = await asyncio.to_thread(self._path.read_text, "utf-8")
            data = json.loads(raw)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Failed to read {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"{self._path} does not hold a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    async def save(self, data: Dict[str, str]) -> None:
        payload = json.dumps(data, sort_keys=True, indent=2).encode("utf-8")
        try:
            await self._atomic_write(payload)
        except OSError as exc:
            raise PersistenceError(f"Failed to write {self._path}: {exc}") from exc
        logger.debug("file_config_store.saved", path=str(self._path), keys=len(data))

    async def _atomic_write(self, data: bytes) -> None:
        """
        Write data atomically by creating a temp file then renaming.

        The temp file is created in the same directory as the target to
        ensure the rename is atomic on the same filesystem.
        """
        target_dir = self._path.parent

        def _write() -> None:
            target_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(target_dir), suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_path, str(self._path))
            except Exception:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

        await asyncio.to_thread(_write)


# ---------------------------------------------------------------------------
# Workloads
# ---------------------------------------------------------------------------


@dataclass
class Workload:
    """A member workload as tracked by :class:`InMemoryWorkloadManager`."""
    config: MemberConfig
    node: str
    replicas: int = 1
    endpoints: Dict[str, str] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.replicas > 0


class InMemoryWorkloadManager(WorkloadManager):
    """
    Workload manager backed by dictionaries.

    ``updated`` lists the resource names of every successful endpoint
    refresh in call order, so callers can observe the rolling update.
    """

    def __init__(self, endpoint_host: str = "") -> None:
        self._endpoint_host = endpoint_host
        self.workloads: Dict[str, Workload] = {}
        self.volume_claims: Dict[str, str] = {}
        self.extra_running: List[LivePlacement] = []
        self.updated: List[str] = []
        self.deleted: List[str] = []

    async def create(self, config: MemberConfig, placement: PlacementRecord) -> str:
        self.workloads[config.resource_name] = Workload(config=config, node=placement.node)
        self.volume_claims[config.resource_name] = config.member_id
        host = placement.address or self._endpoint_host
        logger.debug(
            "workload_manager.created",
            resource=config.resource_name,
            node=placement.node,
        )
        return f"{host}:{config.port}"

    async def update(self, resource_name: str, endpoints: Dict[str, str]) -> bool:
        workload = self.workloads.get(resource_name)
        if workload is None:
            return False
        workload.endpoints = dict(endpoints)
        self.updated.append(resource_name)
        return True

    async def delete(self, resource_name: str) -> None:
        if self.workloads.pop(resource_name, None) is not None:
            self.deleted.append(resource_name)

    async def set_replicas(self, resource_name: str, replicas: int) -> None:
        workload = self.workloads.get(resource_name)
        if workload is None:
            raise KeyError(resource_name)
        workload.replicas = replicas

    async def list_workloads(self) -> List[str]:
        return sorted(self.workloads)

    async def list_volume_claims(self) -> List[str]:
        return sorted(self.volume_claims)

    async def delete_volume_claim(self, resource_name: str) -> None:
        self.volume_claims.pop(resource_name, None)

    async def list_running_placements(self) -> List[LivePlacement]:
        running = [
            LivePlacement(member_id=w.config.member_id, node=w.node)
            for w in self.workloads.values()
            if w.running
        ]
        return running + list(self.extra_running)

    def clear_updated(self) -> None:
        self.updated.clear()


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class StaticScheduler(Scheduler):
    """
    Assigns members to a fixed list of nodes in round-robin order.

    An empty node list means no eligible node exists.
    """

    def __init__(
        self,
        nodes: Sequence[str] = ("node0",),
        zones: Optional[Mapping[str, str]] = None,
        addresses: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._nodes = list(nodes)
        self._zones = dict(zones or {})
        self._addresses = dict(addresses or {})
        self._next = 0
        self.scheduled: List[str] = []

    async def schedule(self, config: MemberConfig) -> SchedulingResult:
        if not self._nodes:
            raise SchedulingError(f"no eligible node for member {config.member_id}")
        node = self._nodes[self._next % len(self._nodes)]
        self._next += 1
        self.scheduled.append(config.member_id)
        return SchedulingResult(
            node=node,
            zone=config.zone or self._zones.get(node),
            address=self._addresses.get(node, ""),
        )


# ---------------------------------------------------------------------------
# Quorum status
# ---------------------------------------------------------------------------


def quorum_status_from_members(
    members: Iterable[MemberRecord],
    out_of_quorum: Iterable[str] = (),
) -> QuorumStatus:
    """Build a snapshot where every member is in quorum unless listed."""
    excluded = set(out_of_quorum)
    entries = [
        QuorumMember(name=m.name, rank=rank, public_addr=m.endpoint)
        for rank, m in enumerate(sorted(members, key=lambda m: m.name))
    ]
    return QuorumStatus(
        quorum=[e.rank for e in entries if e.name not in excluded],
        members=entries,
    )


class StaticQuorumStatusSource(QuorumStatusSource):
    """Returns whatever snapshot was last assigned to ``status``."""

    def __init__(self, status: Optional[QuorumStatus] = None) -> None:
        self.status = status or QuorumStatus()
        self.error: Optional[str] = None
        self.query_count = 0

    async def get_quorum_status(self) -> QuorumStatus:
        self.query_count += 1
        if self.error is not None:
            raise RemoteQueryError(self.error)
        return self.status

    def set_members(
        self,
        members: Iterable[MemberRecord],
        out_of_quorum: Iterable[str] = (),
    ) -> None:
        self.status = quorum_status_from_members(members, out_of_quorum)


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds
