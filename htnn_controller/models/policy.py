"""HTTPFilterPolicy model and its status."""

import copy
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from htnn_controller.exceptions import PolicyValidationError

POLICY_GROUP = "htnn.mosn.io"
POLICY_VERSION = "v1"
POLICY_PLURAL = "httpfilterpolicies"
POLICY_KIND = "HTTPFilterPolicy"

CONDITION_ACCEPTED = "Accepted"


class PolicyReason(str, Enum):
    ACCEPTED = "Accepted"
    INVALID = "Invalid"
    TARGET_NOT_FOUND = "TargetNotFound"


DEFAULT_MESSAGES = {
    PolicyReason.ACCEPTED: "The policy has been accepted",
    PolicyReason.INVALID: "The policy is invalid",
    PolicyReason.TARGET_NOT_FOUND: "The target resource is not found",
}


# ============================================================================
# SPEC
# ============================================================================


class TargetRef(BaseModel):
    """Reference to the resource a policy attaches to."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    group: str = Field(..., min_length=1)
    kind: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    namespace: Optional[str] = None
    section_name: Optional[str] = Field(None, alias="sectionName", min_length=1)


class FilterConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    config: Dict[str, Any]


class HTTPFilterPolicySpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    target_ref: TargetRef = Field(..., alias="targetRef")
    filters: Dict[str, FilterConfig] = Field(default_factory=dict)


def _format_validation_error(err: PydanticValidationError) -> str:
    parts = []
    for item in err.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else item.get("msg"))
    return "; ".join(parts)


# ============================================================================
# STATUS
# ============================================================================


@dataclass(frozen=True)
class PolicyStatus:
    """The Accepted condition of a policy."""

    accepted: bool
    reason: str
    message: str
    observed_generation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conditions": [
                {
                    "type": CONDITION_ACCEPTED,
                    "status": "True" if self.accepted else "False",
                    "reason": self.reason,
                    "message": self.message,
                    "observedGeneration": self.observed_generation,
                }
            ]
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PolicyStatus"]:
        """Read the Accepted condition, if any, from a raw status."""
        for condition in (data or {}).get("conditions") or []:
            if condition.get("type") != CONDITION_ACCEPTED:
                continue
            return cls(
                accepted=condition.get("status") == "True",
                reason=condition.get("reason", ""),
                message=condition.get("message", ""),
                observed_generation=int(condition.get("observedGeneration") or 0),
            )
        return None


# ============================================================================
# POLICY
# ============================================================================


class HTTPFilterPolicy:
    """A HTTPFilterPolicy read from the cluster.

    The raw object is kept as-is so the status can be written back with
    the resourceVersion it was read at. `status` is the in-memory outcome
    of the current reconciliation, `persisted_status` what the cluster has.
    """

    def __init__(self, body: Dict[str, Any]):
        self.body = body
        metadata = body.get("metadata") or {}
        self.name: str = metadata.get("name", "")
        self.namespace: str = metadata.get("namespace", "")
        self.generation: int = int(metadata.get("generation") or 0)
        self.creation_timestamp: str = metadata.get("creationTimestamp") or ""

        self.persisted_status = PolicyStatus.from_dict(body.get("status"))
        self.status = self.persisted_status

        self.spec: Optional[HTTPFilterPolicySpec] = None
        self._spec_error: Optional[str] = None
        try:
            self.spec = HTTPFilterPolicySpec.model_validate(body.get("spec") or {})
        except PydanticValidationError as e:
            self._spec_error = _format_validation_error(e)

    def __repr__(self) -> str:
        return f"<HTTPFilterPolicy {self.namespace}/{self.name}>"

    @property
    def target_ref(self) -> TargetRef:
        if self.spec is None:
            raise PolicyValidationError(self._spec_error)
        return self.spec.target_ref

    def is_changed(self) -> bool:
        """Whether the generation moved since the status was last written."""
        if self.persisted_status is None:
            return True
        return self.persisted_status.observed_generation != self.generation

    def is_valid(self) -> bool:
        if self.spec is None:
            return False
        return not (
            self.status is not None
            and self.status.reason == PolicyReason.INVALID.value
            and self.status.observed_generation == self.generation
        )

    def validate(self) -> None:
        """Structural validation of the policy."""
        if self.spec is None:
            raise PolicyValidationError(self._spec_error)

        ref = self.spec.target_ref
        if ref.namespace is not None and ref.namespace != self.namespace:
            raise PolicyValidationError(
                "namespace in TargetRef doesn't match HTTPFilterPolicy's namespace"
            )

    def set_accepted(self, reason: PolicyReason, message: str = "") -> None:
        self.status = PolicyStatus(
            accepted=reason == PolicyReason.ACCEPTED,
            reason=reason.value,
            message=message or DEFAULT_MESSAGES[reason],
            observed_generation=self.generation,
        )

    def status_changed(self) -> bool:
        return self.status is not None and self.status != self.persisted_status

    def to_status_body(self) -> Dict[str, Any]:
        """Copy of the raw object carrying the new status."""
        body = copy.deepcopy(self.body)
        body["status"] = self.status.to_dict() if self.status else {}
        return body

    def filter_configs(self) -> Dict[str, Dict[str, Any]]:
        if self.spec is None:
            return {}
        return {name: f.config for name, f in self.spec.filters.items()}
