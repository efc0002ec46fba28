"""
Monitor Quorum Management

Keeps a storage cluster's monitor group at the desired size, placement
and health. Provides:

- **Reconciliation**: quorum-aware health-check/scale passes with eager
  scale-up and one-at-a-time scale-down that never breaks majority
- **Placement Policy**: node collocation and stretch-cluster zone balance
- **Failover**: replacement of lost, timed-out and collocated members
- **Quorum Tracking**: out-of-quorum bookkeeping persisted to a shared store
- **Health Checker**: serialized periodic driver with layered timing config

Architecture:
    The reconciler owns a ``ClusterState`` and talks to its environment
    only through injected collaborators (quorum status source, scheduler,
    workload manager, config store, clock).
"""

from quorumkeeper.mon.types import (
    DEFAULT_MON_PORT,
    DEFAULT_RESOURCE_PREFIX,
    LivePlacement,
    MemberAssessment,
    MemberClass,
    MemberConfig,
    MemberHealth,
    MemberRecord,
    NetworkProvider,
    PlacementRecord,
    QuorumMember,
    QuorumStatus,
    SchedulingResult,
    index_to_name,
    name_to_index,
    resource_name,
)

from quorumkeeper.mon.errors import (
    ConfigurationError,
    MonitorError,
    PersistenceError,
    PreconditionError,
    RemoteQueryError,
    SchedulingError,
)

from quorumkeeper.mon.config import (
    ClusterSpec,
    HealthCheckSpec,
    MonHealthSpec,
    MonSpec,
    NetworkSpec,
    OperatorSettings,
    StretchClusterSpec,
    ZoneSpec,
    parse_duration,
    resolve_health_check_interval,
    resolve_mon_out_timeout,
)

from quorumkeeper.mon.interfaces import (
    Clock,
    ConfigStore,
    QuorumStatusSource,
    Scheduler,
    SystemClock,
    WorkloadManager,
)

from quorumkeeper.mon.state import ClusterState
from quorumkeeper.mon.placement import (
    determine_extra_member_to_remove,
    find_extra_member,
)
from quorumkeeper.mon.quorum import (
    classify_members,
    remove_members_from_quorum_status,
)
from quorumkeeper.mon.reconcile import QuorumReconciler
from quorumkeeper.mon.health import HealthChecker

__all__ = [
    # Types
    "DEFAULT_MON_PORT",
    "DEFAULT_RESOURCE_PREFIX",
    "LivePlacement",
    "MemberAssessment",
    "MemberClass",
    "MemberConfig",
    "MemberHealth",
    "MemberRecord",
    "NetworkProvider",
    "PlacementRecord",
    "QuorumMember",
    "QuorumStatus",
    "SchedulingResult",
    "index_to_name",
    "name_to_index",
    "resource_name",
    # Errors
    "ConfigurationError",
    "MonitorError",
    "PersistenceError",
    "PreconditionError",
    "RemoteQueryError",
    "SchedulingError",
    # Configuration
    "ClusterSpec",
    "HealthCheckSpec",
    "MonHealthSpec",
    "MonSpec",
    "NetworkSpec",
    "OperatorSettings",
    "StretchClusterSpec",
    "ZoneSpec",
    "parse_duration",
    "resolve_health_check_interval",
    "resolve_mon_out_timeout",
    # Collaborators
    "Clock",
    "ConfigStore",
    "QuorumStatusSource",
    "Scheduler",
    "SystemClock",
    "WorkloadManager",
    # Core
    "ClusterState",
    "determine_extra_member_to_remove",
    "find_extra_member",
    "classify_members",
    "remove_members_from_quorum_status",
    "QuorumReconciler",
    "HealthChecker",
]
