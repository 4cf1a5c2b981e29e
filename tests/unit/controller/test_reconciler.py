"""Unit tests for the per-node reconcile loop."""
import asyncio
import os
import shutil
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import REGISTRY
from urllib3.exceptions import MaxRetryError, NewConnectionError, ReadTimeoutError

from volumescaler.controller.reconciler import NodeReconciler
from volumescaler.core.cooldown import format_timestamp
from volumescaler.core.engine import ReconcileEngine
from volumescaler.infrastructure.cluster_client import ClusterClient
from volumescaler.models.models import DecisionKind
from volumescaler.storage.discovery import MountDiscovery
from volumescaler.utils.errors import DiscoveryFailed, ExternalCallFailed

from tests.test_utils import StaticSampler, create_mock_cluster, make_claim, make_policy


def add_mount(pods_path, uid, pod="pod1"):
    mount = os.path.join(pods_path, pod, "volumes", "kubernetes.io~csi", f"pvc-{uid}", "mount")
    os.makedirs(mount)
    return mount


def make_reconciler(cluster, controller_config, now, percent=80, engine=None):
    discovery = MountDiscovery(controller_config.kubelet_pods_path,
                               resolve_claim_uid=cluster.resolve_claim_uid)
    engine = engine or ReconcileEngine(StaticSampler(percent=percent),
                                       failure_lookup=cluster.latest_resize_failure,
                                       clock=lambda: now)
    return NodeReconciler(cluster, discovery, engine, controller_config)


def event_reasons(cluster):
    return [c.args[2] for c in cluster.emit_event.call_args_list]


def unreachable_cluster(controller_config):
    """Real client whose API server refuses every connection."""
    refused = MaxRetryError(None, "/api/v1", reason=NewConnectionError(None, "connection refused"))
    core_api, custom_api = MagicMock(), MagicMock()
    core_api.list_persistent_volume_claim_for_all_namespaces.side_effect = refused
    core_api.read_persistent_volume.side_effect = refused
    core_api.create_namespaced_event.side_effect = refused
    custom_api.list_cluster_custom_object.side_effect = refused
    return ClusterClient(controller_config, core_api=core_api, custom_api=custom_api)


class TestReconcileOnce:
    def test_normal_resize(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        policy = make_policy()
        cluster = create_mock_cluster(claims=[make_claim()], policies=[policy])
        results = make_reconciler(cluster, controller_config, now).reconcile_once()

        assert len(results) == 1
        assert results[0].decision.kind is DecisionKind.REQUEST_RESIZE
        cluster.patch_claim_capacity.assert_called_once_with("default", "test-pvc", "7Gi")
        cluster.patch_policy_status.assert_called_once_with(policy, {
            "resizeInProgress": True,
            "lastRequestedSize": "7Gi",
            "scaledAt": format_timestamp(now),
        })
        assert event_reasons(cluster) == ["ResizeRequested"]

    def test_at_max_size(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        policy = make_policy()
        cluster = create_mock_cluster(claims=[make_claim(requested="10Gi", reported="10Gi")],
                                      policies=[policy])
        results = make_reconciler(cluster, controller_config, now, percent=10).reconcile_once()

        assert results[0].decision.kind is DecisionKind.REACHED_MAX_SIZE
        cluster.patch_policy_status.assert_called_once_with(policy, {"reachedMaxSize": True})
        cluster.patch_claim_capacity.assert_not_called()
        assert event_reasons(cluster) == ["AtMaxSize"]

    def test_invalid_threshold(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(claims=[make_claim()], policies=[make_policy(threshold="invalid")])
        results = make_reconciler(cluster, controller_config, now).reconcile_once()

        assert results[0].decision.kind is DecisionKind.INVALID_POLICY
        assert event_reasons(cluster) == ["InvalidThreshold"]
        cluster.patch_policy_status.assert_not_called()
        cluster.patch_claim_capacity.assert_not_called()

    def test_invalid_max_size(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(claims=[make_claim()], policies=[make_policy(max_size="invalid")])
        make_reconciler(cluster, controller_config, now).reconcile_once()
        assert event_reasons(cluster) == ["InvalidMaxSize"]
        cluster.patch_policy_status.assert_not_called()

    def test_resize_in_progress(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(claims=[make_claim(requested="7Gi", reported="5Gi")],
                                      policies=[make_policy(resize_in_progress=True)],
                                      failure_reason="insufficient capacity")
        results = make_reconciler(cluster, controller_config, now).reconcile_once()

        assert results[0].decision.kind is DecisionKind.STILL_RESIZING
        assert results[0].decision.failure_reason == "insufficient capacity"
        cluster.latest_resize_failure.assert_called_once_with("default", "test-pvc")
        cluster.patch_policy_status.assert_not_called()
        cluster.patch_claim_capacity.assert_not_called()
        message = cluster.emit_event.call_args.args[3]
        assert "insufficient capacity" in message

    def test_resize_complete(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        policy = make_policy(resize_in_progress=True, last_requested_size="7Gi")
        cluster = create_mock_cluster(claims=[make_claim(requested="7Gi", reported="7Gi")],
                                      policies=[policy])
        make_reconciler(cluster, controller_config, now, percent=40).reconcile_once()

        assert event_reasons(cluster) == ["ResizeComplete"]
        cluster.patch_policy_status.assert_called_once_with(policy, {
            "resizeInProgress": False,
            "scaledAt": format_timestamp(now),
            "reachedMaxSize": False,
        })

    def test_in_cooldown_period(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        policy = make_policy(cooldown_period="10m",
                             scaled_at=format_timestamp(now - timedelta(minutes=5)))
        cluster = create_mock_cluster(claims=[make_claim()], policies=[policy])
        results = make_reconciler(cluster, controller_config, now).reconcile_once()

        assert results[0].decision.kind is DecisionKind.COOLDOWN_ACTIVE
        assert event_reasons(cluster) == ["CooldownActive"]
        cluster.patch_policy_status.assert_not_called()
        cluster.patch_claim_capacity.assert_not_called()

    def test_below_threshold_is_silent(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(claims=[make_claim()], policies=[make_policy()])
        results = make_reconciler(cluster, controller_config, now, percent=20).reconcile_once()

        assert results[0].decision.kind is DecisionKind.NO_ACTION
        cluster.emit_event.assert_not_called()
        cluster.patch_policy_status.assert_not_called()

    def test_measurement_failure_is_reported(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(claims=[make_claim()], policies=[make_policy()])
        engine = ReconcileEngine(StaticSampler(error="disk gone"), clock=lambda: now)
        results = make_reconciler(cluster, controller_config, now, engine=engine).reconcile_once()

        assert results[0].decision.kind is DecisionKind.NO_ACTION
        assert event_reasons(cluster) == ["MeasureFailed"]
        cluster.patch_claim_capacity.assert_not_called()

    def test_claim_patch_failure_skips_status(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(claims=[make_claim()], policies=[make_policy()])
        cluster.patch_claim_capacity.side_effect = ExternalCallFailed("patching PVC", Exception("denied"))
        results = make_reconciler(cluster, controller_config, now).reconcile_once()

        assert results[0].error == ""
        assert event_reasons(cluster) == ["ResizeFailed"]
        cluster.patch_policy_status.assert_not_called()

    def test_unparsable_claim_capacity(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(claims=[make_claim(requested="5G")], policies=[make_policy()])
        results = make_reconciler(cluster, controller_config, now).reconcile_once()

        assert results[0].decision is None
        assert "5G" in results[0].error
        assert event_reasons(cluster) == ["InvalidCapacity"]


class TestJoin:
    def test_no_local_mounts(self, controller_config, now):
        cluster = create_mock_cluster(claims=[make_claim()], policies=[make_policy()])
        reconciler = make_reconciler(cluster, controller_config, now)
        assert reconciler.reconcile_once() == []
        cluster.list_claims.assert_not_called()
        assert reconciler.last_tick.ok is True

    def test_unmatched_mounts_and_policies_are_skipped(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        add_mount(pods_path, "no-claim", pod="pod2")
        add_mount(pods_path, "no-policy", pod="pod3")
        cluster = create_mock_cluster(
            claims=[make_claim(), make_claim(name="unscaled", uid="no-policy")],
            policies=[make_policy(), make_policy(name="remote", claim_name="elsewhere")],
        )
        results = make_reconciler(cluster, controller_config, now).reconcile_once()
        assert [(r.claim, r.policy) for r in results] == [("test-pvc", "test-vs")]

    def test_policy_must_share_namespace(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(claims=[make_claim(namespace="apps")],
                                      policies=[make_policy(namespace="default")])
        assert make_reconciler(cluster, controller_config, now).reconcile_once() == []


class TestFailureIsolation:
    def test_volume_failure_does_not_abort_others(self, controller_config, pods_path, now):
        add_mount(pods_path, "uid-a", pod="pod1")
        add_mount(pods_path, "uid-b", pod="pod2")
        policy_a = make_policy(name="vs-a", claim_name="pvc-a")
        policy_b = make_policy(name="vs-b", claim_name="pvc-b")
        cluster = create_mock_cluster(
            claims=[make_claim(name="pvc-a", uid="uid-a", requested="10Gi", reported="10Gi"),
                    make_claim(name="pvc-b", uid="uid-b")],
            policies=[policy_a, policy_b],
        )

        def patch_status(policy, body):
            if policy is policy_a:
                raise ExternalCallFailed("patching status", Exception("conflict"))

        cluster.patch_policy_status.side_effect = patch_status
        results = make_reconciler(cluster, controller_config, now).reconcile_once()

        by_claim = {r.claim: r for r in results}
        assert "conflict" in by_claim["pvc-a"].error
        assert by_claim["pvc-b"].decision.kind is DecisionKind.REQUEST_RESIZE
        cluster.patch_claim_capacity.assert_called_once_with("default", "pvc-b", "7Gi")

    def test_event_failure_is_not_fatal(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(claims=[make_claim()], policies=[make_policy()])
        cluster.emit_event.side_effect = ExternalCallFailed("recording event", Exception("forbidden"))
        results = make_reconciler(cluster, controller_config, now).reconcile_once()
        assert results[0].error == ""
        cluster.patch_policy_status.assert_called_once()

    def test_event_timeout_still_records_status(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        policy = make_policy()
        cluster = create_mock_cluster(claims=[make_claim()], policies=[policy])
        cluster.emit_event.side_effect = ReadTimeoutError(None, "/api/v1/events", "read timed out")
        results = make_reconciler(cluster, controller_config, now).reconcile_once()

        assert results[0].error == ""
        cluster.patch_claim_capacity.assert_called_once_with("default", "test-pvc", "7Gi")
        cluster.patch_policy_status.assert_called_once_with(policy, {
            "resizeInProgress": True,
            "lastRequestedSize": "7Gi",
            "scaledAt": format_timestamp(now),
        })

    def test_status_recorded_before_resize_event(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(claims=[make_claim()], policies=[make_policy()])
        make_reconciler(cluster, controller_config, now).reconcile_once()

        calls = [c[0] for c in cluster.mock_calls
                 if c[0] in ("patch_claim_capacity", "patch_policy_status", "emit_event")]
        assert calls == ["patch_claim_capacity", "patch_policy_status", "emit_event"]

    def test_listing_failure_aborts_tick(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        cluster = create_mock_cluster(policies=[make_policy()])
        cluster.list_claims.side_effect = ExternalCallFailed("listing PVCs", Exception("timeout"))
        reconciler = make_reconciler(cluster, controller_config, now)

        assert reconciler.reconcile_once() == []
        assert reconciler.last_tick.ok is False
        assert "listing PVCs" in reconciler.last_tick.error
        cluster.emit_event.assert_not_called()

    def test_unreachable_api_server_aborts_tick(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        reconciler = make_reconciler(unreachable_cluster(controller_config), controller_config, now)

        assert reconciler.reconcile_once() == []
        assert reconciler.last_tick.ok is False
        assert "listing PVCs" in reconciler.last_tick.error

    def test_unreachable_volume_lookup_skips_mount(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        os.makedirs(os.path.join(pods_path, "pod2", "volumes", "kubernetes.io~csi", "local-pv", "mount"))
        cluster = unreachable_cluster(controller_config)
        discovery = MountDiscovery(pods_path, resolve_claim_uid=cluster.resolve_claim_uid)

        assert discovery.discover() == {"12345678": os.path.join(pods_path, "pod1", "volumes",
                                                                 "kubernetes.io~csi", "pvc-12345678", "mount")}

    def test_discovery_failure_aborts_tick(self, controller_config, now):
        cluster = create_mock_cluster(claims=[make_claim()], policies=[make_policy()])
        reconciler = make_reconciler(cluster, controller_config, now)
        reconciler.discovery = MagicMock()
        reconciler.discovery.discover.side_effect = DiscoveryFailed("pods path unreadable")

        assert reconciler.reconcile_once() == []
        assert reconciler.last_tick.ok is False
        cluster.list_claims.assert_not_called()


class TestVolumeMetrics:
    @staticmethod
    def sample(name, namespace, claim="test-pvc"):
        return REGISTRY.get_sample_value(name, {"namespace": namespace, "claim": claim})

    def test_series_removed_when_claim_leaves_node(self, controller_config, pods_path, now):
        add_mount(pods_path, "gone-uid")
        cluster = create_mock_cluster(claims=[make_claim(namespace="leaving", uid="gone-uid")],
                                      policies=[make_policy(namespace="leaving")])
        reconciler = make_reconciler(cluster, controller_config, now)

        reconciler.reconcile_once()
        assert self.sample("volumescaler_volume_requested_gibibytes", "leaving") == 5.0
        assert self.sample("volumescaler_volume_usage_percent", "leaving") is not None

        shutil.rmtree(os.path.join(pods_path, "pod1"))
        reconciler.reconcile_once()
        assert self.sample("volumescaler_volume_requested_gibibytes", "leaving") is None
        assert self.sample("volumescaler_volume_usage_percent", "leaving") is None

    def test_aborted_tick_keeps_series(self, controller_config, pods_path, now):
        add_mount(pods_path, "kept-uid")
        cluster = create_mock_cluster(claims=[make_claim(namespace="staying", uid="kept-uid")],
                                      policies=[make_policy(namespace="staying")])
        reconciler = make_reconciler(cluster, controller_config, now)
        reconciler.reconcile_once()

        cluster.list_claims.side_effect = ExternalCallFailed("listing PVCs", Exception("timeout"))
        reconciler.reconcile_once()
        assert self.sample("volumescaler_volume_requested_gibibytes", "staying") == 5.0


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_stop_between_ticks(self, controller_config, now):
        cluster = create_mock_cluster()
        reconciler = make_reconciler(cluster, controller_config, now)
        calls = []

        def tick():
            calls.append(1)
            if len(calls) == 2:
                reconciler.stop()
            return []

        with patch.object(reconciler, "reconcile_once", side_effect=tick):
            await asyncio.wait_for(reconciler.run(), timeout=5)

        assert len(calls) == 2
        assert reconciler.running is False

    @pytest.mark.asyncio
    async def test_stop_interrupts_wait(self, controller_config, now):
        controller_config.poll_interval = 60
        cluster = create_mock_cluster()
        reconciler = make_reconciler(cluster, controller_config, now)

        with patch.object(reconciler, "reconcile_once", return_value=[]) as mock_tick:
            task = asyncio.create_task(reconciler.run())
            while mock_tick.call_count == 0:
                await asyncio.sleep(0.01)
            reconciler.stop()
            await asyncio.wait_for(task, timeout=5)

        assert mock_tick.call_count == 1

    @pytest.mark.asyncio
    async def test_unreachable_api_server_keeps_loop_running(self, controller_config, pods_path, now):
        add_mount(pods_path, "12345678")
        reconciler = make_reconciler(unreachable_cluster(controller_config), controller_config, now)
        real_tick = reconciler.reconcile_once
        ticks = []

        def tick():
            ticks.append(real_tick())
            if len(ticks) == 2:
                reconciler.stop()
            return ticks[-1]

        with patch.object(reconciler, "reconcile_once", side_effect=tick):
            await asyncio.wait_for(reconciler.run(), timeout=5)

        assert ticks == [[], []]
        assert reconciler.last_tick.ok is False
