"""Istio networking resources read or written by the controller."""

from typing import Any, Dict, List

from htnn_controller.exceptions import UnsupportedResourceError
from htnn_controller.models.keys import object_key

ISTIO_GROUP = "networking.istio.io"

VIRTUAL_SERVICE_VERSION = "v1beta1"
VIRTUAL_SERVICE_PLURAL = "virtualservices"
VIRTUAL_SERVICE_KIND = "VirtualService"

GATEWAY_VERSION = "v1beta1"
GATEWAY_PLURAL = "gateways"
GATEWAY_KIND = "Gateway"

ENVOY_FILTER_VERSION = "v1alpha3"
ENVOY_FILTER_PLURAL = "envoyfilters"
ENVOY_FILTER_KIND = "EnvoyFilter"

MESH_GATEWAY = "mesh"


class _IstioResource:
    def __init__(self, body: Dict[str, Any]):
        self.body = body
        metadata = body.get("metadata") or {}
        self.name: str = metadata.get("name", "")
        self.namespace: str = metadata.get("namespace", "")
        self.spec: Dict[str, Any] = body.get("spec") or {}

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.key}>"


class VirtualService(_IstioResource):
    @property
    def hosts(self) -> List[str]:
        return list(self.spec.get("hosts") or [])

    @property
    def gateways(self) -> List[str]:
        return list(self.spec.get("gateways") or [])

    @property
    def http_routes(self) -> List[Dict[str, Any]]:
        return list(self.spec.get("http") or [])

    def has_http_route(self, name: str) -> bool:
        return any(route.get("name") == name for route in self.http_routes)


class Gateway(_IstioResource):
    @property
    def servers(self) -> List[Dict[str, Any]]:
        return list(self.spec.get("servers") or [])

    @property
    def ports(self) -> List[int]:
        ports = set()
        for server in self.servers:
            number = (server.get("port") or {}).get("number")
            if number:
                ports.add(int(number))
        return sorted(ports)


def validate_virtual_service(vs: VirtualService) -> None:
    """Reject VirtualServices the translation can't handle."""
    if not vs.hosts:
        raise UnsupportedResourceError("VirtualService must have at least one host")
    if not vs.http_routes:
        raise UnsupportedResourceError("only HTTP route is supported")
    for route in vs.http_routes:
        if not route.get("name"):
            raise UnsupportedResourceError("route name is required")


def validate_gateway(gateway: Gateway) -> None:
    if not gateway.ports:
        raise UnsupportedResourceError("Gateway must have at least one server port")
