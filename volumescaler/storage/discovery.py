"""Discovery of CSI volumes mounted on this node."""

from typing import Callable, Dict, Optional
import logging
import os

from volumescaler.utils.errors import DiscoveryFailed, ExternalCallFailed

logger = logging.getLogger(__name__)

CSI_VOLUMES_DIR = os.path.join("volumes", "kubernetes.io~csi")
PVC_PREFIX = "pvc-"


class MountDiscovery:
    """Maps claim UIDs to mount paths under the kubelet pods directory.

    CSI mounts live at ``<pods>/<pod-uid>/volumes/kubernetes.io~csi/<volume>/mount``.
    A ``pvc-<uid>`` volume directory names the claim directly; any other name
    is a PersistentVolume name resolved through ``resolve_claim_uid``.
    """

    def __init__(self,
                 kubelet_pods_path: str,
                 resolve_claim_uid: Optional[Callable[[str], Optional[str]]] = None):
        self.kubelet_pods_path = kubelet_pods_path
        self.resolve_claim_uid = resolve_claim_uid

    def discover(self) -> Dict[str, str]:
        """Return a mapping of claim UID to absolute mount path.

        Raises:
            DiscoveryFailed: If the kubelet pods directory cannot be read
        """
        root = self.kubelet_pods_path
        if not os.path.isdir(root):
            raise DiscoveryFailed(f"kubelet pods path '{root}' not found")

        def on_error(error: OSError):
            if error.filename == root:
                raise DiscoveryFailed(f"cannot read kubelet pods path '{root}': {str(error)}")
            logger.debug(f"Skipping unreadable path {error.filename}: {error}")

        mounts: Dict[str, str] = {}
        for dirpath, dirnames, _ in os.walk(root, onerror=on_error):
            if os.path.basename(dirpath) != "mount":
                continue
            # mount points are not descended into
            dirnames[:] = []
            volume_dir = os.path.dirname(dirpath)
            if os.path.dirname(volume_dir).endswith(CSI_VOLUMES_DIR):
                uid = self._claim_uid(os.path.basename(volume_dir))
                if uid:
                    mounts[uid] = os.path.abspath(dirpath)
        logger.debug(f"Discovered {len(mounts)} local volume mounts under {root}")
        return mounts

    def _claim_uid(self, volume_name: str) -> Optional[str]:
        if volume_name.startswith(PVC_PREFIX):
            return volume_name[len(PVC_PREFIX):] or None
        if self.resolve_claim_uid is None:
            return None
        try:
            return self.resolve_claim_uid(volume_name)
        except ExternalCallFailed as e:
            logger.warning(f"Could not get PV '{volume_name}': {e.message}")
            return None
