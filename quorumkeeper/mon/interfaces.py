"""
Monitor Collaborator Interfaces

Abstract base classes for everything the reconciler talks to but does
not own: the quorum status source, the placement scheduler, the workload
manager, the shared config store, and the clock. Implementations are
injected into :class:`~quorumkeeper.mon.reconcile.QuorumReconciler` at
construction.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Dict, List

from quorumkeeper.mon.types import (
    LivePlacement,
    MemberConfig,
    PlacementRecord,
    QuorumStatus,
    SchedulingResult,
)


class QuorumStatusSource(ABC):
    """Answers what the monitor group currently believes its membership is."""

    @abstractmethod
    async def get_quorum_status(self) -> QuorumStatus:
        """Return a snapshot. Raises ``RemoteQueryError`` on failure."""
        pass


class Scheduler(ABC):
    """Chooses the node a new member should run on."""

    @abstractmethod
    async def schedule(self, config: MemberConfig) -> SchedulingResult:
        """Return the chosen node. Raises ``SchedulingError`` if none fits."""
        pass


class WorkloadManager(ABC):
    """
    Creates, updates and deletes per-member workloads.

    Workloads and volume claims are keyed by the member's resource name.
    """

    @abstractmethod
    async def create(self, config: MemberConfig, placement: PlacementRecord) -> str:
        """Create (or replace) a member workload; return its endpoint."""
        pass

    @abstractmethod
    async def update(self, resource_name: str, endpoints: Dict[str, str]) -> bool:
        """Push a refreshed endpoint table. Returns False if it does not exist."""
        pass

    @abstractmethod
    async def delete(self, resource_name: str) -> None:
        pass

    @abstractmethod
    async def set_replicas(self, resource_name: str, replicas: int) -> None:
        pass

    @abstractmethod
    async def list_workloads(self) -> List[str]:
        """Resource names of all member workloads that currently exist."""
        pass

    @abstractmethod
    async def list_volume_claims(self) -> List[str]:
        """Resource names of all member volume claims that currently exist."""
        pass

    @abstractmethod
    async def delete_volume_claim(self, resource_name: str) -> None:
        pass

    @abstractmethod
    async def list_running_placements(self) -> List[LivePlacement]:
        """Actual node assignment of every running member."""
        pass


class ConfigStore(ABC):
    """Small persisted key/value record shared across the cluster."""

    @abstractmethod
    async def load(self) -> Dict[str, str]:
        """Return the stored record, empty if none. Raises ``PersistenceError``."""
        pass

    @abstractmethod
    async def save(self, data: Dict[str, str]) -> None:
        """Replace the stored record. Raises ``PersistenceError``."""
        pass


class Clock(ABC):
    """Monotonic time source."""

    @abstractmethod
    def now(self) -> float:
        pass


class SystemClock(Clock):
    def now(self) -> float:
        return time.monotonic()
