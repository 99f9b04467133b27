"""Unit tests for the Kubernetes adapters: converters and KubernetesWatchSource."""

import itertools
from types import SimpleNamespace
from typing import Any, Dict, List
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import (
    V1Ingress,
    V1IngressList,
    V1IngressLoadBalancerIngress,
    V1IngressLoadBalancerStatus,
    V1IngressRule,
    V1IngressSpec,
    V1IngressStatus,
    V1ListMeta,
    V1LoadBalancerIngress,
    V1LoadBalancerStatus,
    V1ObjectMeta,
    V1ServiceStatus,
)
from kubernetes.client.exceptions import ApiException

from kube_cloudflare_dns import cli
from kube_cloudflare_dns.cli import (
    APP_NAME,
    HOSTNAME_ANNOTATION,
    IngressResource,
    KubernetesWatchSource,
    ResourceIdentity,
    ResourceKind,
    ServiceResource,
    WatchEventType,
    compute_records,
    ingress_from_k8s,
    service_from_k8s,
)


def k8s_ingress(name: str, hosts: List[str], ips: List[str], resource_version: str = "1"):
    return V1Ingress(
        metadata=V1ObjectMeta(name=name, namespace="web", resource_version=resource_version),
        spec=V1IngressSpec(rules=[V1IngressRule(host=h) for h in hosts]),
        status=V1IngressStatus(
            load_balancer=V1IngressLoadBalancerStatus(
                ingress=[V1IngressLoadBalancerIngress(ip=ip) for ip in ips]
            )
        ),
    )


def k8s_service(
    name: str,
    annotations: Dict[str, str] | None = None,
    cluster_ips: List[str] | None = None,
    lb_ips: List[str] | None = None,
    cluster_ip: str | None = None,
    cluster_ips_field: str = "cluster_ips",
):
    """Duck-typed V1Service; the dual-stack field name differs between client releases."""
    spec = SimpleNamespace(cluster_ip=cluster_ip, **{cluster_ips_field: cluster_ips})
    return SimpleNamespace(
        metadata=V1ObjectMeta(name=name, namespace="apps", annotations=annotations),
        spec=spec,
        status=V1ServiceStatus(
            load_balancer=V1LoadBalancerStatus(
                ingress=[V1LoadBalancerIngress(ip=ip) for ip in lb_ips or []]
            )
        ),
    )


# =============================================================================
# Converters
# =============================================================================


class TestIngressConverter:
    def test_converts_hosts_and_addresses(self) -> None:
        obj = k8s_ingress("site", ["a.example.com", "b.example.com"], ["10.0.0.1", "fd00::1"])

        assert ingress_from_k8s(obj) == IngressResource(
            identity=ResourceIdentity(ResourceKind.INGRESS, "web", "site"),
            hosts=("a.example.com", "b.example.com"),
            addresses=("10.0.0.1", "fd00::1"),
        )

    def test_rules_without_host_are_skipped(self) -> None:
        obj = k8s_ingress("site", [], ["10.0.0.1"])
        obj.spec.rules = [V1IngressRule(host=None), V1IngressRule(host="a.example.com")]

        assert ingress_from_k8s(obj).hosts == ("a.example.com",)

    def test_hostname_only_load_balancer_has_no_addresses(self) -> None:
        obj = k8s_ingress("site", ["a.example.com"], [])
        obj.status.load_balancer.ingress = [
            V1IngressLoadBalancerIngress(hostname="lb.elb.amazonaws.com")
        ]

        assert ingress_from_k8s(obj).addresses == ()

    def test_missing_spec_and_status(self) -> None:
        obj = V1Ingress(metadata=V1ObjectMeta(name="bare", namespace="web"))

        resource = ingress_from_k8s(obj)

        assert resource.hosts == ()
        assert resource.addresses == ()


class TestServiceConverter:
    def test_converts_annotations_and_addresses(self) -> None:
        obj = k8s_service(
            "db",
            annotations={HOSTNAME_ANNOTATION: "db.example.com"},
            cluster_ips=["10.96.0.10"],
            lb_ips=["203.0.113.7"],
        )

        assert service_from_k8s(obj) == ServiceResource(
            identity=ResourceIdentity(ResourceKind.SERVICE, "apps", "db"),
            annotations={HOSTNAME_ANNOTATION: "db.example.com"},
            load_balancer_addresses=("203.0.113.7",),
            cluster_addresses=("10.96.0.10",),
        )

    def test_falls_back_to_single_cluster_ip(self) -> None:
        obj = k8s_service("db", cluster_ip="10.96.0.11")

        assert service_from_k8s(obj).cluster_addresses == ("10.96.0.11",)

    @pytest.mark.parametrize("field_name", ["cluster_ips", "cluster_i_ps"])
    def test_keeps_dual_stack_cluster_ips(self, field_name: str) -> None:
        obj = k8s_service(
            "db",
            annotations={HOSTNAME_ANNOTATION: "db.example.com"},
            cluster_ip="10.96.0.10",
            cluster_ips=["10.96.0.10", "fd00::10"],
            cluster_ips_field=field_name,
        )

        resource = service_from_k8s(obj)

        assert resource.cluster_addresses == ("10.96.0.10", "fd00::10")
        assert [str(r) for r in compute_records([resource])] == [
            "A db.example.com -> 10.96.0.10",
            "AAAA db.example.com -> fd00::10",
            f"TXT db.example.com -> {APP_NAME}",
        ]

    def test_without_annotations(self) -> None:
        obj = k8s_service("db")

        assert service_from_k8s(obj).annotations == {}


# =============================================================================
# KubernetesWatchSource
# =============================================================================


class FakeWatch:
    """Replays scripted watch streams; one script entry per stream() call."""

    def __init__(self, scripts: List[Any]):
        self._scripts = scripts
        self.calls: List[Dict[str, Any]] = []
        self.stopped = 0

    def __call__(self) -> "FakeWatch":
        return self

    def stream(self, func, **kwargs):
        self.calls.append(kwargs)
        script = self._scripts.pop(0) if self._scripts else []
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item

    def stop(self) -> None:
        self.stopped += 1


def listing(items, resource_version: str) -> V1IngressList:
    return V1IngressList(items=items, metadata=V1ListMeta(resource_version=resource_version))


def make_source(list_results, scripts) -> tuple[KubernetesWatchSource, MagicMock, FakeWatch]:
    list_fn = MagicMock(side_effect=list_results)
    fake_watch = FakeWatch(scripts)
    source = KubernetesWatchSource(
        ResourceKind.INGRESS,
        list_fn,
        ingress_from_k8s,
        timeout_seconds=60,
        watch_factory=fake_watch,
    )
    return source, list_fn, fake_watch


def test_source_lists_then_streams_changes() -> None:
    site = k8s_ingress("site", ["a.example.com"], ["10.0.0.1"], resource_version="10")
    changed = k8s_ingress("site", ["a.example.com"], ["10.0.0.2"], resource_version="11")
    source, _, fake_watch = make_source(
        [listing([site], "10")],
        [[{"type": "MODIFIED", "object": changed}, {"type": "DELETED", "object": changed}]],
    )

    events = list(itertools.islice(source(), 3))

    assert [e.type for e in events] == [
        WatchEventType.RESYNCED,
        WatchEventType.UPDATED,
        WatchEventType.REMOVED,
    ]
    assert events[0].resources == (ingress_from_k8s(site),)
    assert events[1].resources[0].addresses == ("10.0.0.2",)
    assert fake_watch.calls[0]["resource_version"] == "10"
    assert fake_watch.calls[0]["timeout_seconds"] == 60


def test_source_reopens_watch_from_last_resource_version() -> None:
    site = k8s_ingress("site", ["a.example.com"], ["10.0.0.1"], resource_version="11")
    other = k8s_ingress("other", ["b.example.com"], ["10.0.0.3"], resource_version="12")
    source, _, fake_watch = make_source(
        [listing([], "10")],
        [[{"type": "ADDED", "object": site}], [{"type": "ADDED", "object": other}]],
    )

    events = list(itertools.islice(source(), 3))

    assert [e.resources[0].identity.name for e in events[1:]] == ["site", "other"]
    assert fake_watch.calls[1]["resource_version"] == "11"
    assert fake_watch.stopped >= 1


def test_source_relists_after_410_gone() -> None:
    first = k8s_ingress("first", ["a.example.com"], ["10.0.0.1"])
    second = k8s_ingress("second", ["b.example.com"], ["10.0.0.2"])
    source, list_fn, fake_watch = make_source(
        [listing([first], "10"), listing([second], "50")],
        [[ApiException(status=410, reason="Gone")], []],
    )

    events = list(itertools.islice(source(), 2))

    assert [e.type for e in events] == [WatchEventType.RESYNCED, WatchEventType.RESYNCED]
    assert events[1].resources == (ingress_from_k8s(second),)
    assert list_fn.call_count == 2


def test_source_ignores_bookmarks_but_tracks_version() -> None:
    site = k8s_ingress("site", ["a.example.com"], ["10.0.0.1"], resource_version="30")
    bookmark = {"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "20"}}}
    source, _, fake_watch = make_source(
        [listing([], "10")],
        [[bookmark], [{"type": "ADDED", "object": site}]],
    )

    events = list(itertools.islice(source(), 2))

    assert events[1].type == WatchEventType.UPDATED
    assert fake_watch.calls[1]["resource_version"] == "20"


def test_source_propagates_other_api_errors() -> None:
    source, _, _ = make_source(
        [listing([], "10")], [[ApiException(status=403, reason="Forbidden")]]
    )
    events = source()

    next(events)
    with pytest.raises(ApiException):
        next(events)


# =============================================================================
# Kubernetes config loading
# =============================================================================


def test_load_kubernetes_config_prefers_in_cluster() -> None:
    with patch.object(cli.config, "load_incluster_config") as incluster, patch.object(
        cli.config, "load_kube_config"
    ) as kubeconfig:
        cli.load_kubernetes_config()

    incluster.assert_called_once_with()
    kubeconfig.assert_not_called()


def test_load_kubernetes_config_falls_back_to_kubeconfig() -> None:
    with patch.object(
        cli.config,
        "load_incluster_config",
        side_effect=cli.config.ConfigException("not in cluster"),
    ), patch.object(cli.config, "load_kube_config") as kubeconfig:
        cli.load_kubernetes_config()

    kubeconfig.assert_called_once_with()
