"""Indexers mapping changes of referenced resources to reconcile requests."""

import threading
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Protocol

import kopf

from htnn_controller.core.logging import get_logger
from htnn_controller.models.istio import (
    GATEWAY_KIND,
    GATEWAY_PLURAL,
    GATEWAY_VERSION,
    ISTIO_GROUP,
    VIRTUAL_SERVICE_KIND,
    VIRTUAL_SERVICE_PLURAL,
    VIRTUAL_SERVICE_VERSION,
)
from htnn_controller.models.keys import object_key
from htnn_controller.models.policy import (
    POLICY_GROUP,
    POLICY_PLURAL,
    POLICY_VERSION,
    HTTPFilterPolicy,
)
from htnn_controller.services.scheduler import ReconcileRequest, trigger_reconciliation

logger = get_logger(__name__)


class WatchedResource(NamedTuple):
    group: str
    version: str
    plural: str
    kind: str


class GatewayReferenceIndex:
    """Gateway key -> policies attached through that gateway.

    Rebuilt by every successful reconciliation and read from the event
    path. The mapping is only ever replaced, never mutated in place.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._index: Dict[str, List[HTTPFilterPolicy]] = {}

    def update(self, index: Dict[str, List[HTTPFilterPolicy]]) -> None:
        with self._lock:
            self._index = index

    def lookup(self, key: str) -> List[HTTPFilterPolicy]:
        with self._lock:
            policies = self._index.get(key)
        return list(policies) if policies else []

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)


class CustomResourceIndexer(Protocol):
    """A resource the policies depend on but the controller doesn't own."""

    resource: WatchedResource

    def register_index(self, registry: Optional[kopf.OperatorRegistry] = None) -> None:
        ...

    def find_affected_requests(
        self, body: Mapping[str, Any], **kwargs: Any
    ) -> List[ReconcileRequest]:
        ...


def _metadata(body: Mapping[str, Any]) -> Mapping[str, Any]:
    return body.get("metadata") or {}


class VirtualServiceIndexer:
    """Finds policies targeting a VirtualService through a field index."""

    resource = WatchedResource(
        ISTIO_GROUP, VIRTUAL_SERVICE_VERSION, VIRTUAL_SERVICE_PLURAL, VIRTUAL_SERVICE_KIND
    )
    index_name = "policies_by_virtual_service"

    def index(self, body: Mapping[str, Any], **_: Any) -> Optional[Dict[str, Dict[str, str]]]:
        """Index a policy under the VirtualService it targets."""
        ref = (body.get("spec") or {}).get("targetRef") or {}
        if ref.get("group") != ISTIO_GROUP or ref.get("kind") != VIRTUAL_SERVICE_KIND:
            return None
        if not ref.get("name"):
            return None

        metadata = _metadata(body)
        namespace = metadata.get("namespace", "")
        return {
            object_key(namespace, ref["name"]): {
                "namespace": namespace,
                "name": metadata.get("name", ""),
            }
        }

    def register_index(self, registry: Optional[kopf.OperatorRegistry] = None) -> None:
        kopf.index(
            POLICY_GROUP,
            POLICY_VERSION,
            POLICY_PLURAL,
            id=self.index_name,
            registry=registry,
        )(self.index)

    def find_affected_requests(
        self, body: Mapping[str, Any], **kwargs: Any
    ) -> List[ReconcileRequest]:
        index = kwargs.get(self.index_name) or {}
        metadata = _metadata(body)
        namespace, name = metadata.get("namespace", ""), metadata.get("name", "")

        key = object_key(namespace, name)
        policies = list(index[key]) if key in index else []
        if not policies:
            return []

        logger.info(
            f"Target changed, trigger reconciliation: kind={VIRTUAL_SERVICE_KIND} "
            f"namespace={namespace} name={name} policies={len(policies)}"
        )
        # A full rebuild only needs one trigger
        return trigger_reconciliation()


class IstioGatewayIndexer:
    """Finds policies attached through a Gateway via the reference index."""

    resource = WatchedResource(ISTIO_GROUP, GATEWAY_VERSION, GATEWAY_PLURAL, GATEWAY_KIND)

    def __init__(self, gateway_index: GatewayReferenceIndex):
        self.gateway_index = gateway_index

    def register_index(self, registry: Optional[kopf.OperatorRegistry] = None) -> None:
        # The reference index is rebuilt by the reconciler
        return None

    def find_affected_requests(
        self, body: Mapping[str, Any], **kwargs: Any
    ) -> List[ReconcileRequest]:
        metadata = _metadata(body)
        namespace, name = metadata.get("namespace", ""), metadata.get("name", "")

        policies = self.gateway_index.lookup(object_key(namespace, name))
        if not policies:
            return []

        logger.info(
            f"Target changed, trigger reconciliation: kind=IstioGateway "
            f"namespace={namespace} name={name} policies={len(policies)}"
        )
        return trigger_reconciliation()
