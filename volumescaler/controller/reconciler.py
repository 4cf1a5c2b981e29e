"""Per-node reconcile loop for VolumeScaler policies."""

from typing import Dict, List, Optional, Set, Tuple
from dataclasses import dataclass
from datetime import datetime, timezone
import asyncio
import logging
import time

from volumescaler.config.settings import ControllerConfig
from volumescaler.core.engine import ReconcileEngine, describe_usage
from volumescaler.core.units import format_size
from volumescaler.infrastructure.cluster_client import (
    ClusterClient,
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    TRANSPORT_ERRORS,
)
from volumescaler.models.models import (
    AutoscalePolicy,
    Decision,
    DecisionKind,
    VolumeClaim,
    VolumeSnapshot,
)
from volumescaler.monitoring.metrics import (
    DECISIONS_TOTAL,
    MANAGED_VOLUMES,
    TICK_DURATION,
    TICK_FAILURES,
    VOLUME_ERRORS,
    VOLUME_REQUESTED_GIB,
    VOLUME_USAGE_PERCENT,
)
from volumescaler.storage.discovery import MountDiscovery
from volumescaler.utils.errors import (
    DiscoveryFailed,
    ExternalCallFailed,
    InvalidSize,
    VolumeScalerError,
)

logger = logging.getLogger(__name__)

INVALID_FIELD_REASONS = {
    "threshold": "InvalidThreshold",
    "maxSize": "InvalidMaxSize",
    "cooldownPeriod": "InvalidCooldown",
    "scaledAt": "CooldownError",
    "scale": "ScaleParseError",
}


@dataclass
class ReconcileResult:
    """Outcome for one joined volume in one pass"""
    namespace: str
    claim: str
    policy: str
    decision: Optional[Decision] = None
    error: str = ""


@dataclass
class TickStatus:
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    ok: bool = False
    error: str = ""
    volumes: int = 0


class NodeReconciler:
    """Runs the reconcile pass for volumes mounted on this node."""

    def __init__(self,
                 cluster: ClusterClient,
                 discovery: MountDiscovery,
                 engine: ReconcileEngine,
                 controller_config: ControllerConfig):
        self.cluster = cluster
        self.discovery = discovery
        self.engine = engine
        self.config = controller_config
        self.last_tick = TickStatus()
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reported: Set[Tuple[str, str]] = set()

    def reconcile_once(self) -> List[ReconcileResult]:
        """Run one full pass: discover, join, decide and apply.

        Discovery and listing failures abort the pass; they are retried on
        the next interval.
        """
        status = TickStatus(started_at=datetime.now(timezone.utc))
        self.last_tick = status
        with TICK_DURATION.time():
            try:
                results = self._reconcile()
            except DiscoveryFailed as e:
                TICK_FAILURES.labels(phase="discovery").inc()
                logger.error(f"Mount discovery failed: {e.message}")
                status.error = e.message
                results = None
            except ExternalCallFailed as e:
                TICK_FAILURES.labels(phase="listing").inc()
                logger.error(f"Error {e.message}")
                status.error = e.message
                results = None
        status.finished_at = datetime.now(timezone.utc)
        status.ok = results is not None
        status.volumes = len(results or [])
        return results or []

    def _reconcile(self) -> List[ReconcileResult]:
        mounts = self.discovery.discover()
        if not mounts:
            logger.info("No PVCs found on this node")
            MANAGED_VOLUMES.set(0)
            self._prune_volume_metrics(set())
            return []

        claims: Dict[str, VolumeClaim] = {c.uid: c for c in self.cluster.list_claims()}
        policies: Dict[str, AutoscalePolicy] = {p.key: p for p in self.cluster.list_policies()}

        results = []
        for uid, mount_path in sorted(mounts.items(), key=lambda item: item[1]):
            claim = claims.get(uid)
            if claim is None:
                logger.debug(f"Local volume {uid} has no matching PVC")
                continue
            policy = policies.get(claim.key)
            if policy is None:
                continue
            results.append(self.reconcile_volume(claim, policy, mount_path))

        MANAGED_VOLUMES.set(len(results))
        self._prune_volume_metrics({(r.namespace, r.claim) for r in results})
        return results

    def _prune_volume_metrics(self, current: Set[Tuple[str, str]]) -> None:
        """Drop per-claim series for claims no longer managed on this node."""
        for namespace, claim in self._reported - current:
            for gauge in (VOLUME_USAGE_PERCENT, VOLUME_REQUESTED_GIB):
                try:
                    gauge.remove(namespace, claim)
                except KeyError:
                    # usage is only set once measured
                    pass
        self._reported = current

    def reconcile_volume(self, claim: VolumeClaim, policy: AutoscalePolicy,
                         mount_path: Optional[str]) -> ReconcileResult:
        """Evaluate and apply one volume; failures never escape."""
        result = ReconcileResult(namespace=claim.namespace, claim=claim.name, policy=policy.name)
        try:
            try:
                snapshot = VolumeSnapshot.from_claim(claim)
            except InvalidSize as e:
                self._emit(policy, EVENT_TYPE_WARNING, "InvalidCapacity",
                           f"PVC '{claim.key}' has an unparsable capacity: {e.message}")
                raise

            decision = self.engine.evaluate(policy, snapshot, mount_path,
                                            claim_namespace=claim.namespace,
                                            claim_name=claim.name)
            result.decision = decision
            DECISIONS_TOTAL.labels(kind=decision.kind.value).inc()
            VOLUME_REQUESTED_GIB.labels(namespace=claim.namespace, claim=claim.name).set(snapshot.requested_gi)
            if decision.usage is not None:
                VOLUME_USAGE_PERCENT.labels(namespace=claim.namespace, claim=claim.name).set(
                    decision.usage.usage_percent)
            self.apply(policy, claim, mount_path, decision)
        except VolumeScalerError as e:
            VOLUME_ERRORS.labels(namespace=claim.namespace).inc()
            logger.error(f"Error processing PVC '{claim.key}' (VolumeScaler {policy.name}): {e.message}")
            result.error = e.message
        except Exception as e:
            VOLUME_ERRORS.labels(namespace=claim.namespace).inc()
            logger.error(f"Unexpected error processing PVC '{claim.key}': {str(e)}")
            result.error = str(e)
        return result

    def apply(self, policy: AutoscalePolicy, claim: VolumeClaim,
              mount_path: Optional[str], decision: Decision) -> None:
        """Apply a decision: patches, events and log lines."""
        key = claim.key
        kind = decision.kind
        usage = describe_usage(decision.usage)

        if kind is DecisionKind.INVALID_POLICY:
            reason = INVALID_FIELD_REASONS.get(decision.policy_field, "InvalidPolicy")
            self._emit(policy, EVENT_TYPE_WARNING, reason, decision.detail)
            logger.warning(f"VolumeScaler {policy.namespace}/{policy.name}: {decision.detail}")
            return

        if decision.usage is None:
            if decision.mount_missing:
                self._emit(policy, EVENT_TYPE_WARNING, "MountNotFound",
                           f"No mount path found for PVC '{claim.name}'")
            else:
                self._emit(policy, EVENT_TYPE_WARNING, "MeasureFailed",
                           f"Failed measuring usage for mount '{mount_path}': {decision.measurement_error}")

        requested = format_size(decision.requested_gi)
        reported = format_size(decision.reported_gi)

        if kind is DecisionKind.REACHED_MAX_SIZE:
            self.cluster.patch_policy_status(policy, decision.status_patch)
            msg = f"PVC '{key}' reached maxSize={format_size(decision.max_size_gi)}. {usage}"
            self._emit(policy, EVENT_TYPE_WARNING, "AtMaxSize", msg)
            logger.warning(msg)

        elif kind is DecisionKind.RESIZE_COMPLETE:
            msg = f"PVC '{key}' expansion complete. Capacity={reported}, {usage}."
            self._emit(policy, EVENT_TYPE_NORMAL, "ResizeComplete", msg)
            logger.info(msg)
            self.cluster.patch_policy_status(policy, decision.status_patch)

        elif kind is DecisionKind.STILL_RESIZING:
            if decision.failure_reason:
                msg = (f"PVC '{key}' still resizing (Spec={requested}, Status={reported}) "
                       f"due to '{decision.failure_reason}'. {usage}.")
            else:
                msg = f"PVC '{key}' still resizing (Spec={requested}, Status={reported}). {usage}."
            self._emit(policy, EVENT_TYPE_WARNING, "StillResizing", msg)
            logger.warning(msg)

        elif kind is DecisionKind.COOLDOWN_ACTIVE:
            msg = (f"PVC '{key}' {usage} >= threshold={policy.threshold}, "
                   f"but in cooldown. Skipping expansion.")
            self._emit(policy, EVENT_TYPE_NORMAL, "CooldownActive", msg)
            logger.info(msg)

        elif kind is DecisionKind.REQUEST_RESIZE:
            new_size = decision.status_patch.get("lastRequestedSize") or format_size(decision.new_capacity_gi)
            try:
                self.cluster.patch_claim_capacity(claim.namespace, claim.name, new_size)
            except ExternalCallFailed as e:
                msg = f"Failed initiating expansion from {requested} -> {new_size}: {e.message}"
                self._emit(policy, EVENT_TYPE_WARNING, "ResizeFailed", msg)
                logger.error(msg)
                return
            self.cluster.patch_policy_status(policy, decision.status_patch)
            msg = f"Initiated resize of PVC '{key}' from {requested} -> {new_size}. {usage}"
            self._emit(policy, EVENT_TYPE_NORMAL, "ResizeRequested", msg)
            logger.info(msg)

        else:
            logger.info(f"PVC '{key}' {usage}, threshold={policy.threshold}: "
                        f"no expansion needed ({decision.detail or 'no action'}).")

    def _emit(self, policy: AutoscalePolicy, event_type: str, reason: str, message: str) -> None:
        try:
            self.cluster.emit_event(policy, event_type, reason, message)
        except ExternalCallFailed as e:
            logger.error(f"Error recording {reason} event: {e.message}")
        except TRANSPORT_ERRORS as e:
            logger.error(f"Error recording {reason} event: {str(e)}")

    async def run(self):
        """Reconcile on a fixed interval until stop() is called.

        A pass in progress always finishes; stop is observed between passes.
        """
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._running = True
        logger.info(f"Starting VolumeScaler controller (interval={self.config.poll_interval}s, "
                    f"pods path={self.config.kubelet_pods_path})")
        try:
            while self._running:
                started = time.monotonic()
                await asyncio.to_thread(self.reconcile_once)
                if not self._running:
                    break
                delay = max(0.0, self.config.poll_interval - (time.monotonic() - started))
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("VolumeScaler controller stopped")

    def stop(self):
        """Request the loop to exit after the current pass. Safe from any thread."""
        self._running = False
        loop, event = self._loop, self._stop_event
        if loop is not None and event is not None and not loop.is_closed():
            loop.call_soon_threadsafe(event.set)

    @property
    def running(self) -> bool:
        return self._running
