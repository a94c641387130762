"""Pytest configuration and shared fixtures for controller tests."""

import copy
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

import pytest

from htnn_controller.exceptions import ResourceConflictError, ResourceNotFoundError
from htnn_controller.models.istio import Gateway, VirtualService
from htnn_controller.models.policy import HTTPFilterPolicy
from htnn_controller.services.indexers import GatewayReferenceIndex
from htnn_controller.services.reconciler import (
    CREATED_BY_VALUE,
    LABEL_CREATED_BY,
    HTTPFilterPolicyReconciler,
)

ROOT_NAMESPACE = "istio-system"

# ============================================================================
# Fake cluster
# ============================================================================


class FakeClusterClient:
    """In-memory stand-in for ClusterClient that records writes."""

    def __init__(self):
        self.policies: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.virtual_services: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.gateways: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.envoy_filters: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.writes: Counter = Counter()
        self.failures: Dict[str, Exception] = {}
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _maybe_fail(self, action: str) -> None:
        if action in self.failures:
            raise self.failures[action]

    def reset_writes(self) -> None:
        self.writes.clear()

    # Seeding ---------------------------------------------------------------

    def add(self, store: Dict, body: Dict[str, Any]) -> Dict[str, Any]:
        body = copy.deepcopy(body)
        metadata = body.setdefault("metadata", {})
        metadata.setdefault("generation", 1)
        metadata["resourceVersion"] = self._next_version()
        store[(metadata["namespace"], metadata["name"])] = body
        return body

    # ClusterClient API -----------------------------------------------------

    def list_policies(self) -> List[HTTPFilterPolicy]:
        self._maybe_fail("list_policies")
        return [HTTPFilterPolicy(copy.deepcopy(b)) for _, b in sorted(self.policies.items())]

    def get_policy(self, namespace: str, name: str) -> HTTPFilterPolicy:
        if (namespace, name) not in self.policies:
            raise ResourceNotFoundError("HTTPFilterPolicy", namespace, name)
        return HTTPFilterPolicy(copy.deepcopy(self.policies[(namespace, name)]))

    def update_policy_status(self, policy: HTTPFilterPolicy) -> Dict[str, Any]:
        self._maybe_fail("update_policy_status")
        stored = self.policies[(policy.namespace, policy.name)]
        sent = policy.body.get("metadata", {}).get("resourceVersion")
        if sent is not None and sent != stored["metadata"]["resourceVersion"]:
            raise ResourceConflictError(
                "update status of", "HTTPFilterPolicy", policy.namespace, policy.name, "Conflict"
            )
        stored["status"] = copy.deepcopy(policy.to_status_body()["status"])
        stored["metadata"]["resourceVersion"] = self._next_version()
        self.writes["status"] += 1
        return copy.deepcopy(stored)

    def get_virtual_service(self, namespace: str, name: str) -> VirtualService:
        self._maybe_fail("get_virtual_service")
        if (namespace, name) not in self.virtual_services:
            raise ResourceNotFoundError("VirtualService", namespace, name)
        return VirtualService(copy.deepcopy(self.virtual_services[(namespace, name)]))

    def get_gateway(self, namespace: str, name: str) -> Gateway:
        self._maybe_fail("get_gateway")
        if (namespace, name) not in self.gateways:
            raise ResourceNotFoundError("Gateway", namespace, name)
        return Gateway(copy.deepcopy(self.gateways[(namespace, name)]))

    def list_envoy_filters(self, label_selector: str) -> List[Dict[str, Any]]:
        key, _, value = label_selector.partition("=")
        return [
            copy.deepcopy(ef)
            for ef in self.envoy_filters.values()
            if (ef["metadata"].get("labels") or {}).get(key) == value
        ]

    def get_envoy_filter(self, namespace: str, name: str) -> Dict[str, Any]:
        if (namespace, name) not in self.envoy_filters:
            raise ResourceNotFoundError("EnvoyFilter", namespace, name)
        return copy.deepcopy(self.envoy_filters[(namespace, name)])

    def create_envoy_filter(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("create_envoy_filter")
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = self._next_version()
        self.envoy_filters[(body["metadata"]["namespace"], body["metadata"]["name"])] = body
        self.writes["create"] += 1
        return body

    def update_envoy_filter(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("update_envoy_filter")
        key = (body["metadata"]["namespace"], body["metadata"]["name"])
        current = self.envoy_filters[key]
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ResourceConflictError("update", "EnvoyFilter", key[0], key[1], "Conflict")
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = self._next_version()
        self.envoy_filters[key] = body
        self.writes["update"] += 1
        return body

    def delete_envoy_filter(self, namespace: str, name: str) -> None:
        self._maybe_fail("delete_envoy_filter")
        if (namespace, name) not in self.envoy_filters:
            raise ResourceNotFoundError("EnvoyFilter", namespace, name)
        del self.envoy_filters[(namespace, name)]
        self.writes["delete"] += 1

    # Helpers ---------------------------------------------------------------

    def policy_status(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        status = self.policies[(namespace, name)].get("status") or {}
        conditions = status.get("conditions") or []
        return conditions[0] if conditions else None


# ============================================================================
# Resource builders
# ============================================================================


def make_policy(
    name: str = "policy",
    namespace: str = "default",
    target: str = "vs",
    kind: str = "VirtualService",
    group: str = "networking.istio.io",
    section: Optional[str] = None,
    target_namespace: Optional[str] = None,
    filters: Optional[Dict[str, Any]] = None,
    generation: int = 1,
    created: str = "2024-01-15T12:00:00Z",
) -> Dict[str, Any]:
    target_ref = {"group": group, "kind": kind, "name": target}
    if section is not None:
        target_ref["sectionName"] = section
    if target_namespace is not None:
        target_ref["namespace"] = target_namespace
    if filters is None:
        filters = {"demo": {"config": {"hostName": "peter"}}}
    return {
        "apiVersion": "htnn.mosn.io/v1",
        "kind": "HTTPFilterPolicy",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "generation": generation,
            "creationTimestamp": created,
        },
        "spec": {"targetRef": target_ref, "filters": filters},
    }


def make_virtual_service(
    name: str = "vs",
    namespace: str = "default",
    hosts: Optional[List[str]] = None,
    gateways: Optional[List[str]] = None,
    routes: Optional[List[str]] = None,
) -> Dict[str, Any]:
    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "VirtualService",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "hosts": hosts if hosts is not None else ["www.example.com"],
            "gateways": gateways if gateways is not None else ["gw"],
            "http": [
                {"name": r, "route": [{"destination": {"host": "backend"}}]}
                for r in (routes if routes is not None else ["route"])
            ],
        },
    }


def make_gateway(name: str = "gw", namespace: str = "default", ports=(80,)) -> Dict[str, Any]:
    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "Gateway",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "servers": [
                {"port": {"number": p, "name": f"http-{p}", "protocol": "HTTP"}, "hosts": ["*"]}
                for p in ports
            ]
        },
    }


def make_envoy_filter(name: str, namespace: str = ROOT_NAMESPACE, labelled: bool = True) -> Dict[str, Any]:
    labels = {LABEL_CREATED_BY: CREATED_BY_VALUE} if labelled else {}
    return {
        "apiVersion": "networking.istio.io/v1alpha3",
        "kind": "EnvoyFilter",
        "metadata": {"name": name, "namespace": namespace, "labels": labels},
        "spec": {"configPatches": []},
    }


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def cluster():
    """Empty fake cluster."""
    return FakeClusterClient()


@pytest.fixture
def policy_factory():
    return make_policy


@pytest.fixture
def virtual_service_factory():
    return make_virtual_service


@pytest.fixture
def gateway_factory():
    return make_gateway


@pytest.fixture
def envoy_filter_factory():
    return make_envoy_filter


@pytest.fixture
def gateway_index():
    return GatewayReferenceIndex()


@pytest.fixture
def reconciler(cluster, gateway_index):
    return HTTPFilterPolicyReconciler(cluster, gateway_index, ROOT_NAMESPACE)


@pytest.fixture
def routed_cluster(cluster):
    """Cluster with one VirtualService routed through one Gateway."""
    cluster.add(cluster.virtual_services, make_virtual_service())
    cluster.add(cluster.gateways, make_gateway())
    return cluster


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the settings cache between tests."""
    from htnn_controller.core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ============================================================================
# Markers
# ============================================================================


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "reconcile: Reconciliation tests")
