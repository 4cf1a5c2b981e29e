"""Kubernetes API access for the volume scaler controller."""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import logging
import socket
import uuid

import kubernetes
import urllib3
from kubernetes import client, config

from volumescaler.config.settings import ControllerConfig
from volumescaler.models.models import AutoscalePolicy, VolumeClaim
from volumescaler.utils.errors import ExternalCallFailed

logger = logging.getLogger(__name__)

RESIZE_FAILED_REASON = "VolumeResizeFailed"
EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# urllib3 raises connection and read failures past the client unwrapped
TRANSPORT_ERRORS = (urllib3.exceptions.HTTPError, OSError)
API_ERRORS = (kubernetes.client.rest.ApiException,) + TRANSPORT_ERRORS

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def load_kube_config(kubeconfig: Optional[str] = None) -> None:
    """Load an explicit kubeconfig, else in-cluster config with kubeconfig fallback."""
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        return
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class ClusterClient:
    """Thin wrapper over CoreV1Api and CustomObjectsApi.

    Every API error is raised as ExternalCallFailed so callers handle a single
    error type.
    """

    def __init__(self,
                 controller_config: ControllerConfig,
                 core_api: Optional[client.CoreV1Api] = None,
                 custom_api: Optional[client.CustomObjectsApi] = None):
        self.config = controller_config
        self.core_api = core_api or client.CoreV1Api()
        self.custom_api = custom_api or client.CustomObjectsApi()
        self.host = controller_config.node_name or socket.gethostname()

    def _timeout(self) -> Dict[str, Any]:
        if self.config.api_timeout:
            return {"_request_timeout": self.config.api_timeout}
        return {}

    def list_claims(self) -> List[VolumeClaim]:
        """List every PersistentVolumeClaim in the cluster."""
        try:
            claim_list = self.core_api.list_persistent_volume_claim_for_all_namespaces(**self._timeout())
        except API_ERRORS as e:
            raise ExternalCallFailed("listing PVCs", e)

        claims = []
        for pvc in claim_list.items:
            requests = (pvc.spec.resources.requests or {}) if pvc.spec and pvc.spec.resources else {}
            capacity = (pvc.status.capacity or {}) if pvc.status else {}
            claims.append(VolumeClaim(
                uid=pvc.metadata.uid,
                namespace=pvc.metadata.namespace,
                name=pvc.metadata.name,
                requested=str(requests.get("storage", "0")),
                reported=str(capacity.get("storage", "0")),
            ))
        return claims

    def list_policies(self) -> List[AutoscalePolicy]:
        """List every VolumeScaler in the cluster; malformed objects are skipped."""
        try:
            response = self.custom_api.list_cluster_custom_object(
                group=self.config.scaler_group,
                version=self.config.scaler_version,
                plural=self.config.scaler_plural,
                **self._timeout()
            )
        except API_ERRORS as e:
            raise ExternalCallFailed("listing VolumeScalers", e)

        policies = []
        for obj in response.get("items", []):
            try:
                policies.append(AutoscalePolicy.from_object(obj))
            except (ValueError, TypeError, AttributeError) as e:
                name = (obj.get("metadata") or {}).get("name", "<unknown>")
                logger.error(f"Error converting VolumeScaler {name}: {str(e)}")
        return policies

    def resolve_claim_uid(self, volume_name: str) -> Optional[str]:
        """Find the UID of the claim bound to a PersistentVolume."""
        try:
            pv = self.core_api.read_persistent_volume(volume_name, **self._timeout())
        except API_ERRORS as e:
            raise ExternalCallFailed(f"reading PV '{volume_name}'", e)
        claim_ref = pv.spec.claim_ref if pv.spec else None
        if claim_ref is None or not claim_ref.uid:
            return None
        return claim_ref.uid

    def patch_claim_capacity(self, namespace: str, name: str, size: str) -> None:
        """Request a new storage size on a claim."""
        body = {"spec": {"resources": {"requests": {"storage": size}}}}
        try:
            self.core_api.patch_namespaced_persistent_volume_claim(
                name, namespace, body, **self._timeout()
            )
        except API_ERRORS as e:
            raise ExternalCallFailed(f"patching PVC '{namespace}/{name}'", e)

    def patch_policy_status(self, policy: AutoscalePolicy, patch: Dict[str, Any]) -> None:
        """Merge-patch the status sub-resource of a VolumeScaler."""
        try:
            self.custom_api.patch_namespaced_custom_object_status(
                group=self.config.scaler_group,
                version=self.config.scaler_version,
                namespace=policy.namespace,
                plural=self.config.scaler_plural,
                name=policy.name,
                body={"status": patch},
                **self._timeout()
            )
        except API_ERRORS as e:
            raise ExternalCallFailed(f"patching status of VolumeScaler '{policy.namespace}/{policy.name}'", e)
        policy.status.apply(patch)

    def latest_resize_failure(self, namespace: str, claim_name: str) -> str:
        """Message of the most recent VolumeResizeFailed warning on a claim, or ""."""
        field_selector = f"involvedObject.kind=PersistentVolumeClaim,involvedObject.name={claim_name}"
        try:
            event_list = self.core_api.list_namespaced_event(
                namespace, field_selector=field_selector, **self._timeout()
            )
        except API_ERRORS as e:
            logger.error(f"Error listing events for PVC '{namespace}/{claim_name}': {str(e)}")
            return ""

        latest_key = None
        latest_msg = ""
        for ev in event_list.items:
            if ev.type != EVENT_TYPE_WARNING or ev.reason != RESIZE_FAILED_REASON:
                continue
            created = _aware(ev.metadata.creation_timestamp if ev.metadata else None) or _EPOCH
            seen = _aware(ev.last_timestamp) or created
            key = (seen, created)
            if latest_key is None or key >= latest_key:
                latest_key = key
                latest_msg = ev.message or ""
        return latest_msg.replace("(MISSING)", "").strip()

    def emit_event(self, policy: AutoscalePolicy, event_type: str, reason: str, message: str) -> None:
        """Record an event on a VolumeScaler."""
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                name=f"{policy.name}.{uuid.uuid4().hex[:16]}",
                namespace=policy.namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=policy.api_version,
                kind=policy.kind,
                namespace=policy.namespace,
                name=policy.name,
                uid=policy.uid or None,
            ),
            type=event_type,
            reason=reason,
            message=message,
            source=client.V1EventSource(component=self.config.event_component, host=self.host),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(policy.namespace, event, **self._timeout())
        except API_ERRORS as e:
            raise ExternalCallFailed(f"recording event {reason} on '{policy.namespace}/{policy.name}'", e)
