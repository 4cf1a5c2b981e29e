"""
Reconciliation decision engine.

Evaluates one volume against its VolumeScaler policy and returns exactly one
Decision. The engine never talks to the cluster itself: usage measurement and
resize-failure lookup are injected, and the resulting status mutation is
returned as a merge-patch body for the caller to apply.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from volumescaler.core.cooldown import can_scale_now, format_timestamp, parse_cooldown
from volumescaler.core.sizing import compute_new_capacity
from volumescaler.core.units import format_size, to_base_unit, to_percent
from volumescaler.models.models import (
    AutoscalePolicy,
    Decision,
    DecisionKind,
    UsageSample,
    VolumeSnapshot,
)
from volumescaler.storage.usage import UsageSampler
from volumescaler.utils.errors import (
    InvalidDuration,
    InvalidPolicyValue,
    InvalidTimestamp,
    MeasurementUnavailable,
)

logger = logging.getLogger(__name__)

FailureLookup = Callable[[str, str], str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconcileEngine:
    """Per-volume state machine deciding the next autoscaling step."""

    def __init__(self,
                 sampler: UsageSampler,
                 failure_lookup: Optional[FailureLookup] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.sampler = sampler
        self.failure_lookup = failure_lookup
        self.clock = clock or _utcnow

    def evaluate(self,
                 policy: AutoscalePolicy,
                 snapshot: VolumeSnapshot,
                 mount_path: Optional[str],
                 claim_namespace: Optional[str] = None,
                 claim_name: Optional[str] = None) -> Decision:
        """Decide what to do with one volume this cycle.

        Args:
            policy: The VolumeScaler governing the claim, including its status
            snapshot: Requested and reported capacity of the claim
            mount_path: Local mount path, None if the volume was not found locally
            claim_namespace: Namespace of the claim, defaults to the policy's
            claim_name: Name of the claim, defaults to the policy's pvcName

        Returns:
            Decision: The single decision for this cycle
        """
        claim_namespace = claim_namespace or policy.namespace
        claim_name = claim_name or policy.claim_name
        requested = snapshot.requested_gi
        reported = snapshot.reported_gi

        # 1) policy fields that gate everything else
        try:
            threshold = to_percent(policy.threshold)
        except InvalidPolicyValue as e:
            return self._invalid("threshold", policy.threshold, e, snapshot)
        try:
            max_size = to_base_unit(policy.max_size)
        except InvalidPolicyValue as e:
            return self._invalid("maxSize", policy.max_size, e, snapshot)

        # 2) usage; absence is inconclusive, never zero
        usage, measurement_error, mount_missing = self._measure(mount_path, requested)

        def decision(kind: DecisionKind, **kwargs) -> Decision:
            return Decision(
                kind=kind,
                usage=usage,
                measurement_error=measurement_error,
                mount_missing=mount_missing,
                requested_gi=requested,
                reported_gi=reported,
                max_size_gi=max_size,
                threshold_percent=threshold,
                **kwargs,
            )

        # 3) settled at or beyond the ceiling
        if requested >= max_size and reported == requested:
            patch = {"reachedMaxSize": True}
            if policy.status.resize_in_progress:
                # the final resize landed on the ceiling; never leave the flag set while settled
                patch["resizeInProgress"] = False
            return decision(DecisionKind.REACHED_MAX_SIZE,
                            reached_max=True,
                            status_patch=patch)

        # 4) resize lifecycle
        in_progress = reported < requested
        if policy.status.resize_in_progress and not in_progress:
            reached_max = requested >= max_size
            return decision(DecisionKind.RESIZE_COMPLETE,
                            reached_max=reached_max,
                            status_patch={
                                "resizeInProgress": False,
                                "scaledAt": format_timestamp(self.clock()),
                                "reachedMaxSize": reached_max,
                            })
        if in_progress:
            reason = ""
            if self.failure_lookup is not None:
                reason = self.failure_lookup(claim_namespace, claim_name) or ""
            return decision(DecisionKind.STILL_RESIZING, failure_reason=reason)

        # 5) expansion
        if usage is None:
            return decision(DecisionKind.NO_ACTION, detail="usage unmeasured")
        if usage.usage_percent < threshold:
            return decision(DecisionKind.NO_ACTION, detail="below threshold")

        try:
            cooldown = parse_cooldown(policy.cooldown_period)
        except InvalidDuration as e:
            return decision(DecisionKind.INVALID_POLICY, policy_field="cooldownPeriod", detail=e.message)
        try:
            permitted = can_scale_now(policy.status.scaled_at, cooldown, now=self.clock())
        except InvalidTimestamp as e:
            return decision(DecisionKind.INVALID_POLICY, policy_field="scaledAt", detail=e.message)
        if not permitted:
            return decision(DecisionKind.COOLDOWN_ACTIVE)

        try:
            candidate = compute_new_capacity(policy.scale, policy.strategy, requested)
        except InvalidPolicyValue as e:
            return decision(DecisionKind.INVALID_POLICY, policy_field="scale", detail=e.message)
        if candidate > max_size:
            candidate = max_size

        if candidate <= requested:
            if requested >= max_size:
                return decision(DecisionKind.REACHED_MAX_SIZE,
                                reached_max=True,
                                status_patch={"reachedMaxSize": True})
            return decision(DecisionKind.NO_ACTION,
                            new_capacity_gi=candidate,
                            detail="no net expansion")

        return decision(DecisionKind.REQUEST_RESIZE,
                        new_capacity_gi=candidate,
                        status_patch={
                            "resizeInProgress": True,
                            "lastRequestedSize": format_size(candidate),
                            "scaledAt": format_timestamp(self.clock()),
                        })

    def _measure(self, mount_path: Optional[str], requested_gi: float):
        """Return (sample, error message, mount missing)."""
        if not mount_path:
            return None, "no mount path found", True
        try:
            return self.sampler.measure(mount_path, requested_gi), "", False
        except MeasurementUnavailable as e:
            logger.debug(f"Usage unavailable for {mount_path}: {e.message}")
            return None, e.message, False

    @staticmethod
    def _invalid(field_name: str, value: str, error: InvalidPolicyValue,
                 snapshot: VolumeSnapshot) -> Decision:
        return Decision(
            kind=DecisionKind.INVALID_POLICY,
            policy_field=field_name,
            detail=f"{field_name} '{value}' invalid: {error.message}",
            requested_gi=snapshot.requested_gi,
            reported_gi=snapshot.reported_gi,
        )


def describe_usage(sample: Optional[UsageSample]) -> str:
    """Human readable usage for events and logs."""
    if sample is None:
        return "usage=unmeasured"
    return f"usage={sample.used_gi}Gi ({sample.usage_percent}%)"
