"""Cluster providers: the snapshot/apply/health boundary."""

from .kubectl import KubectlCluster, KubectlRunner
from .provider import ClusterSnapshot, ClusterStateProvider, HealthSignal

__all__ = ["ClusterSnapshot", "ClusterStateProvider", "HealthSignal", "KubectlCluster", "KubectlRunner"]
