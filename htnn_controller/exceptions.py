"""Error types raised by the controller."""


class ControllerError(Exception):
    """Base exception for controller errors"""


class ValidationError(ControllerError):
    """A resource failed validation"""


class PolicyValidationError(ValidationError):
    """HTTPFilterPolicy failed validation"""


class UnsupportedResourceError(ValidationError):
    """A referenced VirtualService or Gateway has an unsupported shape"""


class ResourceNotFoundError(ControllerError):
    """A referenced resource does not exist"""

    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} not found")


class ClusterAPIError(ControllerError):
    """Cluster API call failed for a reason other than not-found"""

    def __init__(self, action: str, kind: str, namespace: str, name: str, cause):
        self.action = action
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.cause = cause
        target = f"{namespace}/{name}" if name else namespace or "<all namespaces>"
        super().__init__(f"failed to {action} {kind}: {cause}, namespacedName: {target}")


class ResourceConflictError(ClusterAPIError):
    """Write rejected because the resourceVersion is stale"""


class TranslationError(ControllerError):
    """Translation of policies into EnvoyFilters failed"""
