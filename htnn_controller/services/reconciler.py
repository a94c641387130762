"""HTTPFilterPolicy reconciler.

Each reconciliation rebuilds the whole desired state from scratch:

1. list every HTTPFilterPolicy and resolve its target chain
   (VirtualService -> Gateways), recording the outcome in the policy status
   and rebuilding the Gateway reference index;
2. translate the accepted policies into EnvoyFilters;
3. converge the labelled EnvoyFilters in the cluster to that set;
4. write back the statuses that changed.

The caller must not run two reconciliations at the same time.
"""

import copy
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from htnn_controller.core import metrics
from htnn_controller.core.logging import get_logger, resource_extra
from htnn_controller.exceptions import (
    PolicyValidationError,
    ResourceConflictError,
    ResourceNotFoundError,
    TranslationError,
    UnsupportedResourceError,
)
from htnn_controller.models.istio import (
    ENVOY_FILTER_KIND,
    ISTIO_GROUP,
    MESH_GATEWAY,
    VIRTUAL_SERVICE_KIND,
    validate_gateway,
    validate_virtual_service,
)
from htnn_controller.models.policy import POLICY_KIND, HTTPFilterPolicy, PolicyReason
from htnn_controller.repositories.cluster import ClusterClient
from htnn_controller.services.indexers import GatewayReferenceIndex
from htnn_controller.services.scheduler import ReconcileRequest, ReconcileResult
from htnn_controller.services.translation import FinalState, InitState

logger = get_logger(__name__)

LABEL_CREATED_BY = "htnn.mosn.io/created-by"
CREATED_BY_VALUE = "HTTPFilterPolicy"


class HTTPFilterPolicyReconciler:
    """Projects HTTPFilterPolicies onto EnvoyFilters."""

    def __init__(
        self,
        cluster: ClusterClient,
        gateway_index: GatewayReferenceIndex,
        root_namespace: str,
        state_factory: Callable[[logging.Logger], InitState] = InitState,
    ):
        self.cluster = cluster
        self.gateway_index = gateway_index
        self.root_namespace = root_namespace
        self.state_factory = state_factory

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        logger.info(f"Reconcile triggered by {request.namespace}/{request.name}")

        try:
            policies, init_state = self.policy_to_translation_state()

            start = time.monotonic()
            try:
                final_state = init_state.process()
            except TranslationError as e:
                # Translation is deterministic, retrying the same input won't help
                logger.error(f"Failed to process state: {e}", exc_info=True)
                metrics.reconcile_total.labels(result="translation_error").inc()
                return ReconcileResult()
            finally:
                metrics.translate_duration.observe(time.monotonic() - start)

            self.translation_state_to_custom_resource(final_state)
            self.update_policies(policies)
        except Exception:
            metrics.reconcile_total.labels(result="error").inc()
            raise

        metrics.reconcile_total.labels(result="success").inc()
        return ReconcileResult()

    # ------------------------------------------------------------------
    # Policies -> translation state
    # ------------------------------------------------------------------

    def policy_to_translation_state(self) -> Tuple[List[HTTPFilterPolicy], InitState]:
        """Resolve every policy's target and build the translation input.

        Only cluster errors other than NotFound are raised. The Gateway
        reference index is replaced only when the whole pass succeeds.
        """
        policies = self.cluster.list_policies()
        init_state = self.state_factory(logger)
        gateway_refs: Dict[str, List[HTTPFilterPolicy]] = {}

        for policy in policies:
            # The webhook may not have run, validate again on spec change
            if policy.is_changed():
                try:
                    policy.validate()
                except PolicyValidationError as e:
                    logger.error(
                        f"Invalid HTTPFilterPolicy {policy.namespace}/{policy.name}: {e}",
                        extra=resource_extra(POLICY_KIND, policy.namespace, policy.name),
                    )
                    policy.set_accepted(PolicyReason.INVALID, str(e))
                    continue

            if not policy.is_valid():
                continue

            ref = policy.target_ref
            if ref.group == ISTIO_GROUP and ref.kind == VIRTUAL_SERVICE_KIND:
                self._resolve_virtual_service(policy, init_state, gateway_refs)
            else:
                policy.set_accepted(
                    PolicyReason.TARGET_NOT_FOUND,
                    f"unsupported target resource {ref.group}/{ref.kind}",
                )

        self.gateway_index.update(gateway_refs)
        return policies, init_state

    def _resolve_virtual_service(
        self,
        policy: HTTPFilterPolicy,
        init_state: InitState,
        gateway_refs: Dict[str, List[HTTPFilterPolicy]],
    ) -> None:
        ref = policy.target_ref
        try:
            virtual_service = self.cluster.get_virtual_service(policy.namespace, ref.name)
        except ResourceNotFoundError:
            policy.set_accepted(PolicyReason.TARGET_NOT_FOUND)
            return

        try:
            validate_virtual_service(virtual_service)
        except UnsupportedResourceError as e:
            logger.info(
                f"Unsupported VirtualService {virtual_service.key}, reason: {e}",
                extra=resource_extra(
                    VIRTUAL_SERVICE_KIND, virtual_service.namespace, virtual_service.name
                ),
            )
            # Treat an unusable target the same as a missing one
            policy.set_accepted(PolicyReason.TARGET_NOT_FOUND, str(e))
            return

        if ref.section_name is not None and not virtual_service.has_http_route(ref.section_name):
            policy.set_accepted(PolicyReason.TARGET_NOT_FOUND)
            return

        accepted = False
        for gw in virtual_service.gateways:
            if gw == MESH_GATEWAY:
                logger.info(f"Skip unsupported mesh gateway of VirtualService {virtual_service.key}")
                continue
            if "/" in gw:
                logger.info(
                    f"Skip gateway {gw} from other namespace of VirtualService {virtual_service.key}"
                )
                continue

            try:
                gateway = self.cluster.get_gateway(virtual_service.namespace, gw)
            except ResourceNotFoundError:
                logger.info(f"Gateway {gw} of VirtualService {virtual_service.key} not found")
                continue

            try:
                validate_gateway(gateway)
            except UnsupportedResourceError as e:
                logger.info(f"Unsupported Gateway {gateway.key}, reason: {e}")
                continue

            init_state.add_policy_for_virtual_service(policy, virtual_service, gateway)
            # The affected Gateway is not labelled, the index is the only record
            gateway_refs.setdefault(gateway.key, []).append(policy)
            accepted = True

        if accepted:
            policy.set_accepted(PolicyReason.ACCEPTED)
        else:
            policy.set_accepted(PolicyReason.TARGET_NOT_FOUND, "invalid target resource")

    # ------------------------------------------------------------------
    # Translation state -> cluster
    # ------------------------------------------------------------------

    def translation_state_to_custom_resource(self, final_state: FinalState) -> None:
        """Converge labelled EnvoyFilters to the desired set.

        A failure part way is safe to retry: everything is regenerated and
        already applied objects compare equal next time.
        """
        existing = self.cluster.list_envoy_filters(
            label_selector=f"{LABEL_CREATED_BY}={CREATED_BY_VALUE}"
        )

        for ef in existing:
            metadata = ef.get("metadata") or {}
            name, namespace = metadata.get("name", ""), metadata.get("namespace", "")
            if name in final_state.envoy_filters:
                continue

            logger.info(
                f"Delete EnvoyFilter {namespace}/{name}",
                extra=resource_extra(ENVOY_FILTER_KIND, namespace, name),
            )
            try:
                self.cluster.delete_envoy_filter(namespace, name)
            except ResourceNotFoundError:
                logger.debug(f"EnvoyFilter {namespace}/{name} already deleted")
                continue
            metrics.envoyfilter_writes.labels(operation="delete").inc()

        for name in sorted(final_state.envoy_filters):
            desired = self._desired_envoy_filter(final_state.envoy_filters[name])
            self._apply_envoy_filter(desired)

    def _desired_envoy_filter(self, ef: Dict[str, Any]) -> Dict[str, Any]:
        desired = copy.deepcopy(ef)
        metadata = desired.setdefault("metadata", {})
        metadata["namespace"] = self.root_namespace
        labels = metadata.get("labels") or {}
        labels[LABEL_CREATED_BY] = CREATED_BY_VALUE
        metadata["labels"] = labels
        return desired

    def _apply_envoy_filter(self, desired: Dict[str, Any]) -> None:
        metadata = desired["metadata"]
        name, namespace = metadata["name"], metadata["namespace"]
        extra = resource_extra(ENVOY_FILTER_KIND, namespace, name)

        current: Optional[Dict[str, Any]]
        try:
            current = self.cluster.get_envoy_filter(namespace, name)
        except ResourceNotFoundError:
            current = None

        if current is None:
            logger.info(f"Create EnvoyFilter {namespace}/{name}", extra=extra)
            self.cluster.create_envoy_filter(desired)
            metrics.envoyfilter_writes.labels(operation="create").inc()
            return

        if current.get("spec") == desired.get("spec"):
            return

        logger.info(f"Update EnvoyFilter {namespace}/{name}", extra=extra)
        # Carry the resourceVersion forward, the update is rejected without it
        metadata["resourceVersion"] = (current.get("metadata") or {}).get("resourceVersion")
        self.cluster.update_envoy_filter(desired)
        metrics.envoyfilter_writes.labels(operation="update").inc()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def update_policies(self, policies: List[HTTPFilterPolicy]) -> None:
        """Persist the statuses that differ from what the cluster has."""
        for policy in policies:
            if not policy.status_changed():
                continue
            logger.debug(
                f"Update status of {policy.namespace}/{policy.name}: {policy.status.reason}",
                extra=resource_extra(POLICY_KIND, policy.namespace, policy.name),
            )
            try:
                self.cluster.update_policy_status(policy)
            except ResourceConflictError:
                self._retry_status_update(policy)

    def _retry_status_update(self, policy: HTTPFilterPolicy) -> None:
        extra = resource_extra(POLICY_KIND, policy.namespace, policy.name)
        try:
            latest = self.cluster.get_policy(policy.namespace, policy.name)
        except ResourceNotFoundError:
            logger.debug(f"HTTPFilterPolicy {policy.namespace}/{policy.name} is gone", extra=extra)
            return

        if latest.generation != policy.generation:
            # The newer generation has its own event queued
            logger.info(
                f"HTTPFilterPolicy {policy.namespace}/{policy.name} changed during "
                "reconciliation, skipping status update",
                extra=extra,
            )
            return

        resource_version = (latest.body.get("metadata") or {}).get("resourceVersion")
        policy.body.setdefault("metadata", {})["resourceVersion"] = resource_version
        self.cluster.update_policy_status(policy)
