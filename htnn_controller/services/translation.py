"""Translation of accepted HTTPFilterPolicies into EnvoyFilters.

The reconciler only relies on the narrow contract below:

* `InitState.add_policy_for_virtual_service(policy, virtual_service, gateway)`
  accumulates the policies attached through one gateway;
* `InitState.process()` returns a `FinalState` or raises `TranslationError`;
* `FinalState.envoy_filters` maps EnvoyFilter name to the desired object.

EnvoyFilter names are derived from the VirtualService host: `htnn-h-<host>`,
with a leading `*.` replaced by `-`, so `*.example.com` gives
`htnn-h--example.com`. The name must stay stable across runs, pruning
depends on it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from htnn_controller.exceptions import TranslationError
from htnn_controller.models.istio import (
    ENVOY_FILTER_KIND,
    ENVOY_FILTER_VERSION,
    ISTIO_GROUP,
    Gateway,
    VirtualService,
)
from htnn_controller.models.keys import object_key
from htnn_controller.models.policy import HTTPFilterPolicy

ENVOY_FILTER_NAME_PREFIX = "htnn-h-"

GOLANG_FILTER_NAME = "htnn.filters.http.golang"
CONFIGS_PER_ROUTE_TYPE = (
    "type.googleapis.com/envoy.extensions.filters.http.golang.v3alpha.ConfigsPerRoute"
)
TYPED_STRUCT_TYPE = "type.googleapis.com/xds.type.v3.TypedStruct"
FILTER_MANAGER_PLUGIN = "fm"


def envoy_filter_name(host: str) -> str:
    if host.startswith("*."):
        host = "-" + host[2:]
    return ENVOY_FILTER_NAME_PREFIX + host


@dataclass
class FinalState:
    envoy_filters: Dict[str, Dict[str, Any]] = field(default_factory=dict)


# (host, port, route name) -> policy key -> policy
_RouteKey = Tuple[str, int, str]


class InitState:
    """Accumulates the policies attached to each routed host."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._routes: Dict[_RouteKey, Dict[str, HTTPFilterPolicy]] = {}

    def add_policy_for_virtual_service(
        self,
        policy: HTTPFilterPolicy,
        virtual_service: VirtualService,
        gateway: Gateway,
    ) -> None:
        section = policy.target_ref.section_name
        if section:
            routes = [section]
        else:
            routes = [r["name"] for r in virtual_service.http_routes if r.get("name")]

        key = object_key(policy.namespace, policy.name)
        for host in virtual_service.hosts:
            for port in gateway.ports:
                for route in routes:
                    self._routes.setdefault((host, port, route), {})[key] = policy

    def process(self) -> FinalState:
        patches_by_host: Dict[str, List[Dict[str, Any]]] = {}

        for (host, port, route) in sorted(self._routes):
            if not isinstance(host, str) or not host:
                raise TranslationError(f"invalid host {host!r} for route {route}")

            policies = sorted(
                self._routes[(host, port, route)].values(),
                key=lambda p: (p.creation_timestamp, p.namespace, p.name),
            )
            plugins = self._merge_plugins(policies)
            patches_by_host.setdefault(host, []).append(
                _route_patch(host, port, route, plugins)
            )

        state = FinalState()
        for host, patches in patches_by_host.items():
            name = envoy_filter_name(host)
            if name in state.envoy_filters:
                raise TranslationError(f"EnvoyFilter name {name} is generated twice")
            state.envoy_filters[name] = {
                "apiVersion": f"{ISTIO_GROUP}/{ENVOY_FILTER_VERSION}",
                "kind": ENVOY_FILTER_KIND,
                "metadata": {"name": name},
                "spec": {"configPatches": patches},
            }

        self.logger.debug(f"Translated {len(state.envoy_filters)} EnvoyFilters")
        return state

    def _merge_plugins(self, policies: List[HTTPFilterPolicy]) -> List[Dict[str, Any]]:
        """The oldest policy wins when several configure the same filter."""
        merged: Dict[str, Dict[str, Any]] = {}
        for policy in policies:
            for name, config in policy.filter_configs().items():
                if name in merged:
                    self.logger.info(
                        f"Filter {name} from {policy.namespace}/{policy.name} "
                        "is shadowed by an older policy"
                    )
                    continue
                merged[name] = config
        return [{"name": name, "config": merged[name]} for name in sorted(merged)]


def _route_patch(
    host: str, port: int, route: str, plugins: List[Dict[str, Any]]
) -> Dict[str, Any]:
    return {
        "applyTo": "HTTP_ROUTE",
        "match": {
            "routeConfiguration": {
                "vhost": {"name": f"{host}:{port}", "route": {"name": route}}
            }
        },
        "patch": {
            "operation": "MERGE",
            "value": {
                "typed_per_filter_config": {
                    GOLANG_FILTER_NAME: {
                        "@type": CONFIGS_PER_ROUTE_TYPE,
                        "plugins_config": {
                            FILTER_MANAGER_PLUGIN: {
                                "config": {
                                    "@type": TYPED_STRUCT_TYPE,
                                    "value": {"plugins": plugins},
                                }
                            }
                        },
                    }
                }
            },
        },
    }
