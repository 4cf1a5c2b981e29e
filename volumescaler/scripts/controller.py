#!/usr/bin/env python3
"""
VolumeScaler controller entry point.
Runs the per-node reconcile loop that expands PVCs as they fill up.
"""

import argparse
import asyncio
import logging
import signal
import sys

from volumescaler.config.settings import ControllerConfig, load_controller_config
from volumescaler.controller.reconciler import NodeReconciler
from volumescaler.core.engine import ReconcileEngine
from volumescaler.infrastructure.cluster_client import ClusterClient, load_kube_config
from volumescaler.monitoring.app import start_monitoring_server
from volumescaler.storage.discovery import MountDiscovery
from volumescaler.storage.usage import DiskUsageSampler

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    """Configure logging with consistent format."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def parse_args(argv=None):
    """Parse command line arguments; unset flags fall back to the environment."""
    parser = argparse.ArgumentParser(description='VolumeScaler node controller')
    parser.add_argument('--kubeconfig', default=None,
                        help='Path to a kubeconfig file (default: in-cluster config)')
    parser.add_argument('--kubelet-pods-path', default=None,
                        help='Kubelet pods directory to scan for CSI mounts')
    parser.add_argument('--poll-interval', type=float, default=None,
                        help='Seconds between reconcile passes')
    parser.add_argument('--node-name', default=None,
                        help='Node name reported as the event source host')
    parser.add_argument('--metrics-port', type=int, default=None,
                        help='Port for the /health and /metrics endpoints')
    parser.add_argument('--no-metrics', action='store_true',
                        help='Do not serve /health and /metrics')
    parser.add_argument('--once', action='store_true',
                        help='Run a single reconcile pass and exit')
    parser.add_argument('--log-level', default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')
    return parser.parse_args(argv)


def build_config(args) -> ControllerConfig:
    """Overlay command line flags on the environment configuration."""
    cfg = load_controller_config()
    if args.kubeconfig:
        cfg.kubeconfig = args.kubeconfig
    if args.kubelet_pods_path:
        cfg.kubelet_pods_path = args.kubelet_pods_path
    if args.poll_interval is not None:
        if args.poll_interval <= 0:
            raise ValueError(f"--poll-interval must be positive, got {args.poll_interval}")
        cfg.poll_interval = args.poll_interval
    if args.node_name:
        cfg.node_name = args.node_name
    if args.metrics_port is not None:
        cfg.metrics_port = args.metrics_port
    if args.no_metrics:
        cfg.metrics_enabled = False
    if args.log_level:
        cfg.log_level = args.log_level
    return cfg


def build_reconciler(cfg: ControllerConfig) -> NodeReconciler:
    """Wire the cluster client, discovery and engine together."""
    cluster = ClusterClient(cfg)
    discovery = MountDiscovery(cfg.kubelet_pods_path, resolve_claim_uid=cluster.resolve_claim_uid)
    engine = ReconcileEngine(DiskUsageSampler(), failure_lookup=cluster.latest_resize_failure)
    return NodeReconciler(cluster, discovery, engine, cfg)


async def run_until_signalled(reconciler: NodeReconciler):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, reconciler.stop)
        except NotImplementedError:
            pass
    await reconciler.run()


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        cfg = build_config(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    setup_logging(cfg.log_level)

    load_kube_config(cfg.kubeconfig)
    reconciler = build_reconciler(cfg)

    if args.once:
        results = reconciler.reconcile_once()
        for result in results:
            outcome = result.decision.kind.value if result.decision else f"error: {result.error}"
            logger.info(f"{result.namespace}/{result.claim} -> {outcome}")
        return 0 if reconciler.last_tick.ok else 1

    if cfg.metrics_enabled:
        start_monitoring_server(reconciler, cfg.metrics_host, cfg.metrics_port)

    logger.info("Starting VolumeScaler operator...")
    asyncio.run(run_until_signalled(reconciler))
    return 0


if __name__ == '__main__':
    sys.exit(main())
