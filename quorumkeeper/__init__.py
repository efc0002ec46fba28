"""
quorum-keeper - Monitor quorum reconciliation for storage clusters

Keeps the metadata consensus group of a distributed storage cluster at
the desired size and placement without ever dropping below majority.
"""

__version__ = "0.1.0"
__author__ = "quorum-keeper maintainers"

from quorumkeeper.mon.reconcile import QuorumReconciler
from quorumkeeper.mon.health import HealthChecker

__all__ = ["QuorumReconciler", "HealthChecker", "__version__"]
