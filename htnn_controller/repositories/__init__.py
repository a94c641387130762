"""Cluster data access layer."""

from .cluster import ClusterClient, load_kube_config

__all__ = ["ClusterClient", "load_kube_config"]
