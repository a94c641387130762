"""kopf wiring for the HTTPFilterPolicy controller.

Policy changes, VirtualService changes and Gateway changes all end up as
the same reconcile request on one queue.
"""

from typing import Any, Callable, Dict, List, Optional

import kopf
from prometheus_client import start_http_server

from htnn_controller.core.config import Settings
from htnn_controller.core.logging import get_logger
from htnn_controller.models.policy import POLICY_GROUP, POLICY_PLURAL, POLICY_VERSION
from htnn_controller.repositories.cluster import ClusterClient
from htnn_controller.services.indexers import (
    CustomResourceIndexer,
    GatewayReferenceIndex,
    IstioGatewayIndexer,
    VirtualServiceIndexer,
)
from htnn_controller.services.reconciler import HTTPFilterPolicyReconciler
from htnn_controller.services.scheduler import (
    GenerationChangedPredicate,
    ReconcileQueue,
    trigger_reconciliation,
)

logger = get_logger(__name__)


class Controller:
    """Owns the reconciler, its indexers and the queue feeding it."""

    def __init__(self, settings: Settings, cluster: Optional[ClusterClient] = None):
        self.settings = settings
        self.gateway_index = GatewayReferenceIndex()
        self.cluster = cluster or ClusterClient(
            namespace=settings.namespace,
            request_timeout=settings.api_request_timeout,
        )
        self.reconciler = HTTPFilterPolicyReconciler(
            self.cluster, self.gateway_index, settings.istio_root_namespace
        )
        self.queue = ReconcileQueue(
            self.reconciler.reconcile,
            base_delay=settings.requeue_base_delay,
            max_delay=settings.requeue_max_delay,
        )
        self.indexers: List[CustomResourceIndexer] = [
            VirtualServiceIndexer(),
            IstioGatewayIndexer(self.gateway_index),
        ]

    def register(self, registry: kopf.OperatorRegistry) -> None:
        kopf.on.startup(registry=registry)(self.configure)
        kopf.on.startup(registry=registry)(self.startup)
        kopf.on.cleanup(registry=registry)(self.cleanup)
        kopf.on.probe(id="health", registry=registry)(self.health)

        policy = (POLICY_GROUP, POLICY_VERSION, POLICY_PLURAL)
        # Raw events also carry deletions, so no finalizer is needed. Status
        # writes keep the generation and are filtered out.
        kopf.on.event(
            *policy,
            id="policy_changed",
            when=GenerationChangedPredicate(),
            registry=registry,
        )(self.policy_changed)

        for indexer in self.indexers:
            indexer.register_index(registry)
            # Generated EnvoyFilters are not watched
            kopf.on.event(
                indexer.resource.group,
                indexer.resource.version,
                indexer.resource.plural,
                id=f"{indexer.resource.plural}_changed",
                when=GenerationChangedPredicate(),
                registry=registry,
            )(self._dependency_changed(indexer))

    def configure(self, settings: kopf.OperatorSettings, **_: Any) -> None:
        """Configure kopf settings"""
        settings.posting.enabled = False
        settings.watching.server_timeout = 300
        settings.watching.client_timeout = 310
        settings.watching.connect_timeout = 10
        settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
            prefix=POLICY_GROUP
        )
        settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
            prefix=POLICY_GROUP
        )
        settings.batching.idle_timeout = 1.0
        settings.batching.batch_window = 0.5

        logger.info("Kopf configured")

    async def startup(self, **_: Any) -> None:
        logger.info("HTTPFilterPolicy controller starting up")

        if self.settings.metrics_enabled:
            start_http_server(self.settings.metrics_port)
            logger.info(f"Serving metrics on port {self.settings.metrics_port}")

        self.queue.start()
        self.queue.trigger(trigger_reconciliation())
        logger.info("HTTPFilterPolicy controller ready")

    async def cleanup(self, **_: Any) -> None:
        logger.info("HTTPFilterPolicy controller shutting down")
        await self.queue.stop()

    async def health(self, **_: Any) -> Dict[str, Any]:
        return {"status": "healthy", "indexed_gateways": len(self.gateway_index)}

    async def policy_changed(self, name: str, namespace: str, **_: Any) -> None:
        logger.info(f"HTTPFilterPolicy {namespace}/{name} changed")
        self.queue.trigger(trigger_reconciliation())

    def _dependency_changed(self, indexer: CustomResourceIndexer) -> Callable[..., Any]:
        async def handler(body: Dict[str, Any], **kwargs: Any) -> None:
            requests = indexer.find_affected_requests(body, **kwargs)
            if requests:
                self.queue.trigger(requests)

        return handler
