"""Resource models."""

from .istio import Gateway, VirtualService, validate_gateway, validate_virtual_service
from .keys import object_key
from .policy import HTTPFilterPolicy, PolicyReason, PolicyStatus, TargetRef

__all__ = [
    "object_key",
    "HTTPFilterPolicy",
    "PolicyReason",
    "PolicyStatus",
    "TargetRef",
    "VirtualService",
    "Gateway",
    "validate_virtual_service",
    "validate_gateway",
]
