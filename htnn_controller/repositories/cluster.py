"""Cluster API access for the resources the controller reads and writes."""

from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from htnn_controller.core.logging import get_logger
from htnn_controller.exceptions import (
    ClusterAPIError,
    ResourceConflictError,
    ResourceNotFoundError,
)
from htnn_controller.models.istio import (
    ENVOY_FILTER_KIND,
    ENVOY_FILTER_PLURAL,
    ENVOY_FILTER_VERSION,
    GATEWAY_KIND,
    GATEWAY_PLURAL,
    GATEWAY_VERSION,
    ISTIO_GROUP,
    VIRTUAL_SERVICE_KIND,
    VIRTUAL_SERVICE_PLURAL,
    VIRTUAL_SERVICE_VERSION,
    Gateway,
    VirtualService,
)
from htnn_controller.models.policy import (
    POLICY_GROUP,
    POLICY_KIND,
    POLICY_PLURAL,
    POLICY_VERSION,
    HTTPFilterPolicy,
)

logger = get_logger(__name__)


def load_kube_config() -> None:
    """Load in-cluster config, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")


class ClusterClient:
    """Typed access to HTTPFilterPolicies, Istio resources and EnvoyFilters.

    NotFound responses become `ResourceNotFoundError`; every other API
    failure becomes `ClusterAPIError` naming the resource involved.
    """

    def __init__(
        self,
        api: Optional[client.CustomObjectsApi] = None,
        namespace: Optional[str] = None,
        request_timeout: Optional[float] = None,
    ):
        self.api = api or client.CustomObjectsApi()
        self.namespace = namespace
        self.request_timeout = request_timeout

    def _call(self, action: str, kind: str, namespace: str, name: str, fn, *args, **kwargs):
        if self.request_timeout is not None:
            kwargs["_request_timeout"] = self.request_timeout
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            if e.status == 404 and name:
                raise ResourceNotFoundError(kind, namespace, name) from e
            if e.status == 409:
                raise ResourceConflictError(action, kind, namespace, name, e.reason or e) from e
            raise ClusterAPIError(action, kind, namespace, name, e.reason or e) from e

    # ------------------------------------------------------------------
    # HTTPFilterPolicy
    # ------------------------------------------------------------------

    def list_policies(self) -> List[HTTPFilterPolicy]:
        if self.namespace:
            result = self._call(
                "list", POLICY_KIND, self.namespace, "",
                self.api.list_namespaced_custom_object,
                POLICY_GROUP, POLICY_VERSION, self.namespace, POLICY_PLURAL,
            )
        else:
            result = self._call(
                "list", POLICY_KIND, "", "",
                self.api.list_cluster_custom_object,
                POLICY_GROUP, POLICY_VERSION, POLICY_PLURAL,
            )
        return [HTTPFilterPolicy(item) for item in result.get("items", [])]

    def get_policy(self, namespace: str, name: str) -> HTTPFilterPolicy:
        body = self._call(
            "get", POLICY_KIND, namespace, name,
            self.api.get_namespaced_custom_object,
            POLICY_GROUP, POLICY_VERSION, namespace, POLICY_PLURAL, name,
        )
        return HTTPFilterPolicy(body)

    def update_policy_status(self, policy: HTTPFilterPolicy) -> Dict[str, Any]:
        return self._call(
            "update status of", POLICY_KIND, policy.namespace, policy.name,
            self.api.replace_namespaced_custom_object_status,
            POLICY_GROUP, POLICY_VERSION, policy.namespace, POLICY_PLURAL,
            policy.name, policy.to_status_body(),
        )

    # ------------------------------------------------------------------
    # Istio targets
    # ------------------------------------------------------------------

    def get_virtual_service(self, namespace: str, name: str) -> VirtualService:
        body = self._call(
            "get", VIRTUAL_SERVICE_KIND, namespace, name,
            self.api.get_namespaced_custom_object,
            ISTIO_GROUP, VIRTUAL_SERVICE_VERSION, namespace, VIRTUAL_SERVICE_PLURAL, name,
        )
        return VirtualService(body)

    def get_gateway(self, namespace: str, name: str) -> Gateway:
        body = self._call(
            "get", GATEWAY_KIND, namespace, name,
            self.api.get_namespaced_custom_object,
            ISTIO_GROUP, GATEWAY_VERSION, namespace, GATEWAY_PLURAL, name,
        )
        return Gateway(body)

    # ------------------------------------------------------------------
    # EnvoyFilter
    # ------------------------------------------------------------------

    def list_envoy_filters(self, label_selector: str) -> List[Dict[str, Any]]:
        result = self._call(
            "list", ENVOY_FILTER_KIND, "", "",
            self.api.list_cluster_custom_object,
            ISTIO_GROUP, ENVOY_FILTER_VERSION, ENVOY_FILTER_PLURAL,
            label_selector=label_selector,
        )
        return list(result.get("items", []))

    def get_envoy_filter(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._call(
            "get", ENVOY_FILTER_KIND, namespace, name,
            self.api.get_namespaced_custom_object,
            ISTIO_GROUP, ENVOY_FILTER_VERSION, namespace, ENVOY_FILTER_PLURAL, name,
        )

    def create_envoy_filter(self, body: Dict[str, Any]) -> Dict[str, Any]:
        metadata = body["metadata"]
        return self._call(
            "create", ENVOY_FILTER_KIND, metadata["namespace"], metadata["name"],
            self.api.create_namespaced_custom_object,
            ISTIO_GROUP, ENVOY_FILTER_VERSION, metadata["namespace"],
            ENVOY_FILTER_PLURAL, body,
        )

    def update_envoy_filter(self, body: Dict[str, Any]) -> Dict[str, Any]:
        metadata = body["metadata"]
        return self._call(
            "update", ENVOY_FILTER_KIND, metadata["namespace"], metadata["name"],
            self.api.replace_namespaced_custom_object,
            ISTIO_GROUP, ENVOY_FILTER_VERSION, metadata["namespace"],
            ENVOY_FILTER_PLURAL, metadata["name"], body,
        )

    def delete_envoy_filter(self, namespace: str, name: str) -> None:
        self._call(
            "delete", ENVOY_FILTER_KIND, namespace, name,
            self.api.delete_namespaced_custom_object,
            ISTIO_GROUP, ENVOY_FILTER_VERSION, namespace, ENVOY_FILTER_PLURAL, name,
        )
