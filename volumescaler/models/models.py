"""Data models for the volume scaler controller."""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from enum import Enum

from volumescaler.core.units import to_base_unit


# Enums
class ScaleStrategy(Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"

    @classmethod
    def from_label(cls, label: Optional[str]) -> "ScaleStrategy":
        """Resolve a scaleType label; anything other than "fixed" scales by percentage."""
        if label and label.strip().lower() == cls.FIXED.value:
            return cls.FIXED
        return cls.PERCENTAGE


class DecisionKind(Enum):
    NO_ACTION = "NoAction"
    REACHED_MAX_SIZE = "ReachedMaxSize"
    RESIZE_COMPLETE = "ResizeComplete"
    STILL_RESIZING = "StillResizing"
    COOLDOWN_ACTIVE = "CooldownActive"
    REQUEST_RESIZE = "RequestResize"
    INVALID_POLICY = "InvalidPolicy"


# Policy Models
@dataclass
class VolumeLifecycleStatus:
    """Status sub-resource of a VolumeScaler, written only by the controller"""
    resize_in_progress: bool = False
    reached_max_size: bool = False
    scaled_at: str = ""
    last_requested_size: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VolumeLifecycleStatus":
        data = data or {}
        return cls(
            resize_in_progress=bool(data.get("resizeInProgress", False)),
            reached_max_size=bool(data.get("reachedMaxSize", False)),
            scaled_at=data.get("scaledAt") or "",
            last_requested_size=data.get("lastRequestedSize") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resizeInProgress": self.resize_in_progress,
            "reachedMaxSize": self.reached_max_size,
            "scaledAt": self.scaled_at,
            "lastRequestedSize": self.last_requested_size,
        }

    def apply(self, patch: Dict[str, Any]) -> None:
        """Merge a status patch into this status."""
        merged = self.to_dict()
        merged.update(patch)
        updated = VolumeLifecycleStatus.from_dict(merged)
        self.__dict__.update(updated.__dict__)


@dataclass
class AutoscalePolicy:
    """A VolumeScaler custom resource governing one claim"""
    namespace: str
    name: str
    claim_name: str
    threshold: str
    scale: str
    max_size: str
    scale_type: str = ""
    cooldown_period: str = ""
    uid: str = ""
    api_version: str = "autoscaling.storage.k8s.io/v1alpha1"
    kind: str = "VolumeScaler"
    status: VolumeLifecycleStatus = field(default_factory=VolumeLifecycleStatus)

    @property
    def strategy(self) -> ScaleStrategy:
        return ScaleStrategy.from_label(self.scale_type)

    @property
    def key(self) -> str:
        """Join key: the namespace and name of the governed claim."""
        return f"{self.namespace}/{self.claim_name}"

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "AutoscalePolicy":
        """Build a policy from the API's dict representation.

        Raises:
            ValueError: If metadata or spec.pvcName is missing
        """
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        if not metadata.get("name") or not spec.get("pvcName"):
            raise ValueError("VolumeScaler is missing metadata.name or spec.pvcName")
        return cls(
            namespace=metadata.get("namespace", "default"),
            name=metadata["name"],
            uid=metadata.get("uid", ""),
            api_version=obj.get("apiVersion", cls.api_version),
            kind=obj.get("kind", cls.kind),
            claim_name=spec["pvcName"],
            threshold=str(spec.get("threshold", "")),
            scale=str(spec.get("scale", "")),
            scale_type=spec.get("scaleType", ""),
            cooldown_period=spec.get("cooldownPeriod", ""),
            max_size=str(spec.get("maxSize", "")),
            status=VolumeLifecycleStatus.from_dict(obj.get("status")),
        )


# Volume Models
@dataclass(frozen=True)
class VolumeClaim:
    """A PersistentVolumeClaim as listed from the cluster."""
    uid: str
    namespace: str
    name: str
    requested: str
    reported: str = "0"

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class VolumeSnapshot:
    """Requested and reported capacity of a claim, in GiB"""
    requested_gi: float
    reported_gi: float

    @property
    def settled(self) -> bool:
        return self.reported_gi == self.requested_gi

    @classmethod
    def from_claim(cls, claim: VolumeClaim) -> "VolumeSnapshot":
        return cls(
            requested_gi=to_base_unit(claim.requested),
            reported_gi=to_base_unit(claim.reported or "0"),
        )


@dataclass(frozen=True)
class UsageSample:
    used_gi: int
    usage_percent: int


# Decision Models
@dataclass
class Decision:
    """Outcome of evaluating one volume for one cycle"""
    kind: DecisionKind
    new_capacity_gi: Optional[float] = None
    reached_max: bool = False
    failure_reason: str = ""
    policy_field: str = ""
    detail: str = ""
    usage: Optional[UsageSample] = None
    measurement_error: str = ""
    mount_missing: bool = False
    status_patch: Dict[str, Any] = field(default_factory=dict)
    requested_gi: float = 0.0
    reported_gi: float = 0.0
    max_size_gi: float = 0.0
    threshold_percent: float = 0.0

    @property
    def measured(self) -> bool:
        return self.usage is not None
