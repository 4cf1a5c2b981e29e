"""Controller configuration management."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_KUBELET_PODS_PATH = "/var/lib/kubelet/pods"
DEFAULT_POLL_INTERVAL = 60.0
DEFAULT_API_TIMEOUT = 30.0


@dataclass
class ControllerConfig:
    kubelet_pods_path: str = DEFAULT_KUBELET_PODS_PATH
    poll_interval: float = DEFAULT_POLL_INTERVAL
    api_timeout: float = DEFAULT_API_TIMEOUT
    node_name: str = ""
    kubeconfig: Optional[str] = None
    scaler_group: str = "autoscaling.storage.k8s.io"
    scaler_version: str = "v1alpha1"
    scaler_plural: str = "volumescalers"
    event_component: str = "volumescaler-controller"
    metrics_enabled: bool = True
    metrics_host: str = "0.0.0.0"
    metrics_port: int = 9090
    log_level: str = "INFO"

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.api_timeout < 0:
            raise ValueError(f"api_timeout must not be negative, got {self.api_timeout}")


def load_controller_config() -> ControllerConfig:
    """Load controller configuration from environment variables."""
    return ControllerConfig(
        kubelet_pods_path=os.getenv('KUBELET_PODS_PATH', DEFAULT_KUBELET_PODS_PATH),
        poll_interval=float(os.getenv('POLL_INTERVAL', str(DEFAULT_POLL_INTERVAL))),
        api_timeout=float(os.getenv('API_TIMEOUT', str(DEFAULT_API_TIMEOUT))),
        node_name=os.getenv('NODE_NAME', ''),
        kubeconfig=os.getenv('KUBECONFIG') or None,
        scaler_group=os.getenv('SCALER_GROUP', 'autoscaling.storage.k8s.io'),
        scaler_version=os.getenv('SCALER_VERSION', 'v1alpha1'),
        scaler_plural=os.getenv('SCALER_PLURAL', 'volumescalers'),
        event_component=os.getenv('EVENT_COMPONENT', 'volumescaler-controller'),
        metrics_enabled=os.getenv('METRICS_ENABLED', 'true').lower() == 'true',
        metrics_host=os.getenv('METRICS_HOST', '0.0.0.0'),
        metrics_port=int(os.getenv('METRICS_PORT', '9090')),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )
