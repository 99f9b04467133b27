#!/usr/bin/env python3
"""kube-cloudflare-dns - Kubernetes to Cloudflare DNS Reconciler

Watches Ingress and Service resources in a Kubernetes cluster and keeps
address records (A/AAAA) in a single Cloudflare zone in line with them,
similar in spirit to Kubernetes external-dns.

Every hostname the controller manages carries a co-located TXT record whose
content is the controller identity (APP_NAME). Names without that marker are
never modified or deleted.

Record sources:
    - Ingress: every rule host, pointing at the load balancer IPs from
      status.loadBalancer.ingress
    - Service: only when annotated with HOSTNAME_ANNOTATION; points at the
      load balancer IPs, falling back to the cluster IPs

Environment variables:

    Cloudflare:
        ZONE_NAME                    Zone to reconcile, e.g. "example.com" (required)
        CF_TOKEN                     API token with DNS edit permission (required)
        CF_API_URL                   API base URL (default: https://api.cloudflare.com/client/v4)
        RECORD_TTL                   TTL for created records, 1 = automatic (default: 1)
        VERIFY_TOKEN                 Verify the API token at startup (default: true)

    Kubernetes:
        HOSTNAME_ANNOTATION          Service annotation holding the hostname
                                     (default: kube-cloudflare-dns.github.com/hostname)
        WATCH_RETRY_SECONDS          Delay before re-opening a failed watch (default: 30)
        WATCH_TIMEOUT_SECONDS        Server-side timeout of one watch request (default: 300)

    Runtime:
        SYNC_MODE                    "once" or "watch" (default: watch)
        RECONCILE_INTERVAL_SECONDS   Upper bound between two reconciliations (default: 60)
        LOG_LEVEL                    DEBUG, INFO, WARNING, ERROR (default: INFO)
        CONFIG_PATH                  Optional YAML file with the same settings in
                                     lower case (default: /config/kube-cloudflare-dns.yaml).
                                     Environment variables take precedence.
                                     Example config file:
                                       zone_name: "example.com"
                                       reconcile_interval_seconds: 120
                                       hostname_annotation: "dns.example.com/hostname"
"""

from __future__ import annotations

import ipaddress
import logging
import os
import queue
import sys
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

import requests
import yaml
from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException

# =============================================================================
# Configuration
# =============================================================================

# Controller identity, written as the content of every ownership marker record.
APP_NAME = "kube-cloudflare-dns"
HOSTNAME_ANNOTATION = "kube-cloudflare-dns.github.com/hostname"
CF_ENDPOINT = "https://api.cloudflare.com/client/v4"

CONFIG_PATH = os.getenv("CONFIG_PATH", "/config/kube-cloudflare-dns.yaml")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

ADDRESS_RECORD_TYPES = ("A", "AAAA")
MARKER_RECORD_TYPE = "TXT"
SYNC_MODES = ("once", "watch")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class ConfigError(ValueError):
    """Raised when the process configuration is missing or invalid."""


class CloudflareError(Exception):
    """Base class for everything that can go wrong talking to Cloudflare."""


class CloudflareTransportError(CloudflareError):
    """Connectivity, HTTP or decoding failure."""


class CloudflareAPIError(CloudflareError):
    """The API answered with success=false."""

    def __init__(self, errors: Any):
        self.errors = errors
        super().__init__(f"cf api error: {errors}")


class ZoneNotFoundError(CloudflareError):
    """The configured zone is not in the account's zone list."""

    def __init__(self, zone_name: str):
        self.zone_name = zone_name
        super().__init__(f"zone not found: {zone_name}")


# =============================================================================
# Enums
# =============================================================================


class ResourceKind(Enum):
    """Kubernetes resource kinds the controller watches."""

    INGRESS = "Ingress"
    SERVICE = "Service"


class PlanActionType(Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class WatchEventType(Enum):
    """Events emitted by a watch source.

    RESYNCED: the full current set of one kind (initial list or re-list).
    UPDATED:  one resource was added or modified.
    REMOVED:  one resource was deleted.
    """

    RESYNCED = "resynced"
    UPDATED = "updated"
    REMOVED = "removed"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ResourceIdentity:
    """Unique key of a watched resource."""

    kind: ResourceKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class IngressResource:
    """The parts of an Ingress needed to derive DNS records."""

    identity: ResourceIdentity
    hosts: Tuple[str, ...] = ()
    addresses: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ServiceResource:
    """The parts of a Service needed to derive DNS records."""

    identity: ResourceIdentity
    annotations: Mapping[str, str] = field(default_factory=dict, hash=False)
    load_balancer_addresses: Tuple[str, ...] = ()
    cluster_addresses: Tuple[str, ...] = ()


WatchedResource = Union[IngressResource, ServiceResource]


@dataclass(frozen=True)
class DNSRecord:
    """A DNS record on either side of the diff.

    Desired records are built locally and have an empty id; actual records
    carry the id Cloudflare assigned on creation.
    """

    type: str
    name: str
    content: str
    id: str = ""

    def __str__(self) -> str:
        suffix = f" (id={self.id})" if self.id else ""
        return f"{self.type} {self.name} -> {self.content}{suffix}"


@dataclass(frozen=True)
class PlanAction:
    """One provider mutation computed by plan()."""

    action: PlanActionType
    record: DNSRecord

    def __str__(self) -> str:
        return f"{self.action.value.upper()} {self.record}"


@dataclass(frozen=True)
class WatchEvent:
    type: WatchEventType
    kind: ResourceKind
    resources: Tuple[WatchedResource, ...] = ()


@dataclass(frozen=True)
class Zone:
    id: str
    name: str


@dataclass(frozen=True)
class Settings:
    """Process configuration, loaded once at startup."""

    zone_name: str
    cf_token: str
    cf_api_url: str = CF_ENDPOINT
    reconcile_interval_seconds: int = 60
    watch_retry_seconds: int = 30
    watch_timeout_seconds: int = 300
    hostname_annotation: str = HOSTNAME_ANNOTATION
    record_ttl: int = 1
    sync_mode: str = "watch"
    verify_token: bool = True


# =============================================================================
# Configuration Loading
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_positive_int(name: str, value: Any) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if parsed <= 0:
        raise ConfigError(f"{name} must be positive, got {parsed}")
    return parsed


def _load_config_file(config_path: str) -> Dict[str, Any]:
    """Read the optional YAML config file, returns {} if it doesn't exist."""
    path = Path(config_path)
    if not path.is_file():
        return {}

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    logger.info(f"Loaded configuration from {config_path}")
    return data


def load_settings(
    config_path: str = CONFIG_PATH, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Build Settings from the YAML config file and the environment.

    Environment variables win over file values; empty environment values are
    treated as unset.

    Raises:
        ConfigError: on missing required values or unparseable numbers.
    """
    env = os.environ if environ is None else environ
    file_values = _load_config_file(config_path) if config_path else {}

    def value(key: str, default: Any = None) -> Any:
        raw = env.get(key.upper())
        if raw is not None and str(raw).strip():
            return str(raw).strip()
        raw = file_values.get(key)
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return default
        return raw.strip() if isinstance(raw, str) else raw

    errors = []
    zone_name = str(value("zone_name", "")).strip().rstrip(".").lower()
    if not zone_name:
        errors.append("ZONE_NAME is required")
    cf_token = str(value("cf_token", ""))
    if not cf_token:
        errors.append("CF_TOKEN is required")
    sync_mode = str(value("sync_mode", "watch")).lower()
    if sync_mode not in SYNC_MODES:
        errors.append(f"Invalid SYNC_MODE: {sync_mode}. Use 'once' or 'watch'")
    if errors:
        raise ConfigError("; ".join(errors))

    return Settings(
        zone_name=zone_name,
        cf_token=cf_token,
        cf_api_url=str(value("cf_api_url", CF_ENDPOINT)).rstrip("/"),
        reconcile_interval_seconds=_parse_positive_int(
            "RECONCILE_INTERVAL_SECONDS", value("reconcile_interval_seconds", 60)
        ),
        watch_retry_seconds=_parse_positive_int(
            "WATCH_RETRY_SECONDS", value("watch_retry_seconds", 30)
        ),
        watch_timeout_seconds=_parse_positive_int(
            "WATCH_TIMEOUT_SECONDS", value("watch_timeout_seconds", 300)
        ),
        hostname_annotation=str(value("hostname_annotation", HOSTNAME_ANNOTATION)),
        record_ttl=_parse_positive_int("RECORD_TTL", value("record_ttl", 1)),
        sync_mode=sync_mode,
        verify_token=_parse_bool(value("verify_token"), default=True),
    )


# =============================================================================
# Cloudflare API Client
# =============================================================================


def _record_from_api(item: Any) -> Optional[DNSRecord]:
    if not isinstance(item, dict):
        return None
    record_type = item.get("type")
    name = item.get("name")
    content = item.get("content")
    record_id = item.get("id")
    if not all(isinstance(v, str) for v in (record_type, name, content, record_id)):
        return None
    # Cloudflare may return TXT content wrapped in quotes.
    if record_type == MARKER_RECORD_TYPE and len(content) >= 2 and content[0] == content[-1] == '"':
        content = content[1:-1]
    return DNSRecord(type=record_type, name=name.lower(), content=content, id=record_id)


class CloudflareAPI:
    """Minimal Cloudflare v4 client: zones and DNS records."""

    def __init__(
        self,
        token: str,
        base_url: str = CF_ENDPOINT,
        timeout_seconds: float = 10.0,
        record_ttl: int = 1,
        per_page: int = 100,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._record_ttl = record_ttl
        self._per_page = per_page
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """Send a request and unwrap the {success, result, errors} envelope.

        Raises:
            CloudflareTransportError: connection failure, or a response that
                is not a JSON envelope.
            CloudflareAPIError: the envelope reports success=false.
        """
        url = f"{self._base_url}/{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise CloudflareTransportError(f"cf transport error: {method} {path}: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise CloudflareTransportError(
                f"cf transport error: {method} {path}: invalid JSON "
                f"(HTTP {response.status_code})"
            ) from e

        if not isinstance(payload, dict) or "success" not in payload:
            raise CloudflareTransportError(
                f"cf transport error: {method} {path}: unexpected response "
                f"(HTTP {response.status_code})"
            )
        if not payload.get("success"):
            raise CloudflareAPIError(payload.get("errors"))
        return payload

    def _get_all(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        """GET a list endpoint, following result_info pagination."""
        items: List[Any] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"page": page, "per_page": self._per_page})
            payload = self._request("GET", path, params=query)
            result = payload.get("result") or []
            if not isinstance(result, list):
                raise CloudflareTransportError(
                    f"cf transport error: GET {path}: expected list, got {type(result).__name__}"
                )
            items.extend(result)

            info = payload.get("result_info") or {}
            try:
                total_pages = int(info.get("total_pages") or 1)
            except (TypeError, ValueError):
                total_pages = 1
            if page >= total_pages:
                return items
            page += 1

    def verify_token(self) -> bool:
        try:
            self._request("GET", "user/tokens/verify")
            logger.info(f"{self.name} token verified")
            return True
        except CloudflareError as e:
            logger.error(f"Failed to verify {self.name} token: {e}")
            return False

    def zones(self) -> List[Zone]:
        zones = []
        for item in self._get_all("zones"):
            if isinstance(item, dict) and item.get("id") and item.get("name"):
                zones.append(Zone(id=str(item["id"]), name=str(item["name"])))
            else:
                logger.warning(f"Skipping malformed zone: {item}")
        return zones

    def find_zone(self, zone_name: str) -> Zone:
        wanted = zone_name.rstrip(".").lower()
        for zone in self.zones():
            if zone.name.rstrip(".").lower() == wanted:
                return zone
        raise ZoneNotFoundError(zone_name)

    def records(self, zone_id: str) -> List[DNSRecord]:
        records = []
        for item in self._get_all(f"zones/{zone_id}/dns_records"):
            record = _record_from_api(item)
            if record is None:
                logger.warning(f"Skipping malformed record: {item}")
                continue
            records.append(record)
        return records

    def _record_body(self, record: DNSRecord) -> Dict[str, Any]:
        return {
            "type": record.type,
            "name": record.name,
            "content": record.content,
            "ttl": self._record_ttl,
        }

    def create_record(self, zone_id: str, record: DNSRecord) -> None:
        self._request("POST", f"zones/{zone_id}/dns_records", json=self._record_body(record))

    def update_record(self, zone_id: str, record: DNSRecord) -> None:
        if not record.id:
            raise ValueError(f"Cannot update record without id: {record}")
        self._request(
            "PUT", f"zones/{zone_id}/dns_records/{record.id}", json=self._record_body(record)
        )

    def delete_record(self, zone_id: str, record_id: str) -> None:
        if not record_id:
            raise ValueError("Cannot delete record without id")
        self._request("DELETE", f"zones/{zone_id}/dns_records/{record_id}")


# =============================================================================
# Resource Cache
# =============================================================================


class ResourceCache:
    """Latest observed snapshot of every watched resource.

    Shared between the watch threads and the reconciler. The lock only ever
    guards a single mutation or the snapshot copy, never network I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: Dict[ResourceIdentity, WatchedResource] = {}

    def upsert(self, identity: ResourceIdentity, resource: WatchedResource) -> None:
        with self._lock:
            self._resources[identity] = resource

    def remove(self, identity: ResourceIdentity) -> None:
        with self._lock:
            self._resources.pop(identity, None)

    def replace_all(self, kind: ResourceKind, resources: Iterable[WatchedResource]) -> None:
        """Replace every entry of one kind; other kinds are left untouched."""
        fresh: Dict[ResourceIdentity, WatchedResource] = {}
        for resource in resources:
            if resource.identity.kind != kind:
                raise ValueError(f"Cannot resync {kind.value} with {resource.identity}")
            fresh[resource.identity] = resource

        with self._lock:
            kept = {i: r for i, r in self._resources.items() if i.kind != kind}
            kept.update(fresh)
            self._resources = kept

    def snapshot(self) -> List[WatchedResource]:
        with self._lock:
            return list(self._resources.values())

    def identities(self) -> List[ResourceIdentity]:
        with self._lock:
            return sorted(self._resources, key=str)

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)


class ChangeNotifier:
    """Bounded wake-up channel between the watch threads and the reconciler.

    notify() never blocks: when the queue is full the notification is dropped,
    the reconciler is already due to run. wait() drains whatever piled up so a
    burst of events causes a single reconciliation.
    """

    def __init__(self, maxsize: int = 10):
        self._queue: "queue.Queue[None]" = queue.Queue(maxsize=maxsize)

    def notify(self) -> bool:
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            logger.debug("Change notification dropped (channel full)")
            return False
        return True

    def wait(self, timeout: float) -> bool:
        """Block up to timeout seconds; True if woken by a notification."""
        try:
            self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        self.drain()
        return True

    def drain(self) -> int:
        drained = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return drained
            drained += 1


# =============================================================================
# Desired State
# =============================================================================


IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _parse_address(address: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(str(address).strip())
    except ValueError:
        return None


def classify_address(address: str) -> Optional[str]:
    """Return "A" for IPv4, "AAAA" for IPv6 and None for anything else."""
    parsed = _parse_address(address)
    if parsed is None:
        return None
    return "A" if parsed.version == 4 else "AAAA"


def normalize_hostname(hostname: str) -> str:
    return str(hostname or "").strip().rstrip(".").lower()


def records_for_hostname(
    hostname: str, addresses: Sequence[str], marker: str = APP_NAME
) -> List[DNSRecord]:
    """Address records for one host plus its ownership marker.

    Addresses that are not IPs are skipped. A host without any valid address
    gets no records at all, not even the marker.
    """
    name = normalize_hostname(hostname)
    if not name:
        return []

    records = []
    for address in addresses:
        record_type = classify_address(address)
        if record_type is None:
            logger.debug(f"Ignoring non-IP address {address!r} for {name}")
            continue
        records.append(
            DNSRecord(type=record_type, name=name, content=str(_parse_address(address)))
        )

    if records:
        records.append(DNSRecord(type=MARKER_RECORD_TYPE, name=name, content=marker))
    return records


def service_addresses(service: ServiceResource) -> Tuple[str, ...]:
    """Load balancer addresses if any were assigned, cluster addresses otherwise."""
    if service.load_balancer_addresses:
        return service.load_balancer_addresses
    return service.cluster_addresses


def compute_records(
    resources: Iterable[WatchedResource],
    hostname_annotation: str = HOSTNAME_ANNOTATION,
    marker: str = APP_NAME,
) -> List[DNSRecord]:
    """Desired DNS records for a snapshot of resources.

    The result is de-duplicated and keeps the order in which records were
    first produced.
    """
    records: List[DNSRecord] = []
    for resource in resources:
        if isinstance(resource, IngressResource):
            for host in resource.hosts:
                records.extend(records_for_hostname(host, resource.addresses, marker))
        elif isinstance(resource, ServiceResource):
            hostname = (resource.annotations or {}).get(hostname_annotation, "")
            if hostname and hostname.strip():
                records.extend(
                    records_for_hostname(hostname, service_addresses(resource), marker)
                )
        else:
            raise TypeError(f"Unsupported resource type: {type(resource).__name__}")
    return list(dict.fromkeys(records))


def in_zone(name: str, zone_name: str) -> bool:
    name = normalize_hostname(name)
    zone = normalize_hostname(zone_name)
    return bool(zone) and (name == zone or name.endswith(f".{zone}"))


def filter_zone(records: Iterable[DNSRecord], zone_name: str) -> List[DNSRecord]:
    return [r for r in records if in_zone(r.name, zone_name)]


# =============================================================================
# Plan
# =============================================================================


def _is_marker(record: DNSRecord, marker: str) -> bool:
    return record.type == MARKER_RECORD_TYPE and record.content == marker


def _is_owned_type(record: DNSRecord, marker: str) -> bool:
    """Records the controller may ever update or delete."""
    if record.type in ADDRESS_RECORD_TYPES:
        return True
    return _is_marker(record, marker)


def managed_names(actual: Iterable[DNSRecord], marker: str = APP_NAME) -> Set[str]:
    return {r.name for r in actual if _is_marker(r, marker)}


def _action_rank(action: PlanAction, marker: str) -> int:
    """Sort key: marker adds, other adds/updates, address deletes, marker deletes."""
    if action.action == PlanActionType.DELETE:
        return 3 if _is_marker(action.record, marker) else 2
    return 0 if _is_marker(action.record, marker) else 1


def plan(
    expected: Iterable[DNSRecord], actual: Iterable[DNSRecord], marker: str = APP_NAME
) -> List[PlanAction]:
    """Compute the mutations that turn actual into expected.

    Ownership protocol: a name is ours only if it carries a TXT record with
    the marker content. Records on other names are never updated or deleted,
    and nothing is created next to them.

    Records are matched on (type, name). Updates echo back the id of the
    record they replace. Adds and updates come before deletes. A name's marker
    is added before its address records and deleted after them, so a partly
    applied plan never leaves address records on a name without a marker.
    """
    expected = list(dict.fromkeys(replace(r, id="") for r in expected))
    actual = list(actual)

    managed = managed_names(actual, marker)
    unmanaged = {r.name for r in actual if r.name not in managed}

    actual_by_key: Dict[Tuple[str, str], List[DNSRecord]] = {}
    for record in actual:
        if _is_owned_type(record, marker):
            actual_by_key.setdefault((record.type, record.name), []).append(record)

    expected_by_key: Dict[Tuple[str, str], List[DNSRecord]] = {}
    for record in expected:
        expected_by_key.setdefault((record.type, record.name), []).append(record)

    actions: List[PlanAction] = []
    stale: List[DNSRecord] = []

    for (record_type, name), wanted in expected_by_key.items():
        existing = actual_by_key.get((record_type, name), [])

        if name not in managed:
            if name in unmanaged:
                verb = "updating" if existing else "creating"
                for record in wanted:
                    logger.warning(f"Skip {verb} record {record_type} {name}: not managed by us")
                continue
            actions.extend(PlanAction(PlanActionType.ADD, record) for record in wanted)
            continue

        remaining = list(existing)
        pending = []
        for record in wanted:
            match = next((r for r in remaining if r.content == record.content), None)
            if match is not None:
                remaining.remove(match)
            else:
                pending.append(record)

        for record in pending:
            if remaining:
                current = remaining.pop(0)
                actions.append(PlanAction(PlanActionType.UPDATE, replace(record, id=current.id)))
            else:
                actions.append(PlanAction(PlanActionType.ADD, record))
        stale.extend(remaining)

    stale_records = set(stale)
    for record in actual:
        if record.name not in managed or not _is_owned_type(record, marker):
            continue
        if (record.type, record.name) not in expected_by_key or record in stale_records:
            actions.append(PlanAction(PlanActionType.DELETE, record))

    actions.sort(key=lambda action: _action_rank(action, marker))
    return actions


# =============================================================================
# Kubernetes Watch Source
# =============================================================================


def _load_balancer_ips(status: Any) -> Tuple[str, ...]:
    load_balancer = getattr(status, "load_balancer", None)
    entries = getattr(load_balancer, "ingress", None) or []
    return tuple(e.ip for e in entries if getattr(e, "ip", None))


def _identity_from_k8s(kind: ResourceKind, obj: Any) -> ResourceIdentity:
    metadata = obj.metadata
    return ResourceIdentity(kind=kind, namespace=metadata.namespace or "", name=metadata.name)


def ingress_from_k8s(obj: Any) -> IngressResource:
    """Convert a V1Ingress into an IngressResource."""
    rules = getattr(obj.spec, "rules", None) or []
    hosts = tuple(rule.host for rule in rules if getattr(rule, "host", None))
    return IngressResource(
        identity=_identity_from_k8s(ResourceKind.INGRESS, obj),
        hosts=hosts,
        addresses=_load_balancer_ips(obj.status),
    )


def service_from_k8s(obj: Any) -> ServiceResource:
    """Convert a V1Service into a ServiceResource."""
    spec = obj.spec
    # Older client releases name the dual-stack field cluster_i_ps.
    cluster_ips = list(
        getattr(spec, "cluster_ips", None) or getattr(spec, "cluster_i_ps", None) or []
    )
    if not cluster_ips and getattr(spec, "cluster_ip", None):
        cluster_ips = [spec.cluster_ip]
    return ServiceResource(
        identity=_identity_from_k8s(ResourceKind.SERVICE, obj),
        annotations=dict(obj.metadata.annotations or {}),
        load_balancer_addresses=_load_balancer_ips(obj.status),
        cluster_addresses=tuple(cluster_ips),
    )


def _resource_version(obj: Any) -> Optional[str]:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


class KubernetesWatchSource:
    """List+watch one resource kind and translate it into WatchEvents.

    events() yields RESYNCED for the initial list and for every re-list after
    the watch expired (410 Gone), then UPDATED/REMOVED for each change. Any
    other error propagates to the caller.
    """

    def __init__(
        self,
        kind: ResourceKind,
        list_fn: Callable[..., Any],
        converter: Callable[[Any], WatchedResource],
        timeout_seconds: int = 300,
        watch_factory: Callable[[], Any] = watch.Watch,
    ):
        self.kind = kind
        self._list_fn = list_fn
        self._converter = converter
        self._timeout_seconds = timeout_seconds
        self._watch_factory = watch_factory

    def __call__(self) -> Iterator[WatchEvent]:
        return self.events()

    def _relist(self) -> Iterator[WatchEvent]:
        listing = self._list_fn()
        resources = tuple(self._converter(item) for item in listing.items or [])
        logger.info(f"Listed {len(resources)} {self.kind.value} resource(s)")
        yield WatchEvent(WatchEventType.RESYNCED, self.kind, resources)
        return _resource_version(listing)

    def events(self) -> Iterator[WatchEvent]:
        resource_version = yield from self._relist()
        while True:
            watcher = self._watch_factory()
            try:
                stream = watcher.stream(
                    self._list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self._timeout_seconds,
                    allow_watch_bookmarks=True,
                )
                for event in stream:
                    event_type = event.get("type")
                    obj = event.get("object")
                    resource_version = _resource_version(obj) or resource_version

                    if event_type in ("ADDED", "MODIFIED"):
                        yield WatchEvent(
                            WatchEventType.UPDATED, self.kind, (self._converter(obj),)
                        )
                    elif event_type == "DELETED":
                        yield WatchEvent(
                            WatchEventType.REMOVED, self.kind, (self._converter(obj),)
                        )
                    elif event_type != "BOOKMARK":
                        logger.debug(f"Ignoring {self.kind.value} watch event {event_type}")
            except ApiException as e:
                if e.status != 410:
                    raise
                logger.info(f"{self.kind.value} watch expired, re-listing")
                resource_version = yield from self._relist()
            finally:
                watcher.stop()


def load_kubernetes_config() -> None:
    """In-cluster service account first, then the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Kubernetes: using in-cluster service account")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Kubernetes: using kubeconfig")


# =============================================================================
# Watchers
# =============================================================================


class ResourceWatcher(threading.Thread):
    """Feeds one resource kind's watch events into the cache.

    Events are applied in delivery order. When the source fails the watcher
    waits retry_seconds and opens it again; other watchers and the reconciler
    keep running.
    """

    def __init__(
        self,
        kind: ResourceKind,
        source: Callable[[], Iterable[WatchEvent]],
        cache: ResourceCache,
        notifier: ChangeNotifier,
        retry_seconds: float = 30.0,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__(name=f"watch-{kind.value.lower()}", daemon=True)
        self.kind = kind
        self._source = source
        self._cache = cache
        self._notifier = notifier
        self._retry_seconds = retry_seconds
        self._stop_event = stop_event or threading.Event()
        self.synced = threading.Event()

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                for event in self._source():
                    if self._stop_event.is_set():
                        return
                    self.apply(event)
                logger.warning(
                    f"{self.kind.value} watch ended, reconnecting in {self._retry_seconds}s"
                )
            except Exception as e:
                logger.warning(
                    f"{self.kind.value} watch error: {e}, retrying in {self._retry_seconds}s"
                )
            self._stop_event.wait(self._retry_seconds)

    def apply(self, event: WatchEvent) -> None:
        if event.kind != self.kind:
            raise ValueError(f"{self.kind.value} watcher got a {event.kind.value} event")

        if event.type == WatchEventType.RESYNCED:
            self._cache.replace_all(self.kind, event.resources)
            logger.debug(f"{self.kind.value} resync: {len(event.resources)} resource(s)")
        elif event.type == WatchEventType.UPDATED:
            for resource in event.resources:
                self._cache.upsert(resource.identity, resource)
                logger.debug(f"Updated {resource.identity}")
        elif event.type == WatchEventType.REMOVED:
            for resource in event.resources:
                self._cache.remove(resource.identity)
                logger.debug(f"Removed {resource.identity}")
        else:
            raise TypeError(f"Unsupported watch event: {event.type}")

        self.synced.set()
        self._notifier.notify()


def create_watchers(
    settings: Settings,
    cache: ResourceCache,
    notifier: ChangeNotifier,
    stop_event: Optional[threading.Event] = None,
) -> List[ResourceWatcher]:
    networking = client.NetworkingV1Api()
    core = client.CoreV1Api()
    sources = [
        KubernetesWatchSource(
            ResourceKind.INGRESS,
            networking.list_ingress_for_all_namespaces,
            ingress_from_k8s,
            timeout_seconds=settings.watch_timeout_seconds,
        ),
        KubernetesWatchSource(
            ResourceKind.SERVICE,
            core.list_service_for_all_namespaces,
            service_from_k8s,
            timeout_seconds=settings.watch_timeout_seconds,
        ),
    ]
    return [
        ResourceWatcher(
            source.kind,
            source,
            cache,
            notifier,
            retry_seconds=settings.watch_retry_seconds,
            stop_event=stop_event,
        )
        for source in sources
    ]


# =============================================================================
# Core Reconciler
# =============================================================================


class Reconciler:
    def __init__(
        self,
        *,
        cache: ResourceCache,
        cf_api: CloudflareAPI,
        notifier: ChangeNotifier,
        zone_name: str,
        interval_seconds: float = 60,
        hostname_annotation: str = HOSTNAME_ANNOTATION,
        marker: str = APP_NAME,
    ):
        self.cache = cache
        self.cf_api = cf_api
        self.notifier = notifier
        self.zone_name = zone_name
        self.interval_seconds = interval_seconds
        self.hostname_annotation = hostname_annotation
        self.marker = marker

    def wait_for_initial_sync(
        self, watchers: Sequence[ResourceWatcher], stop_event: Optional[threading.Event] = None
    ) -> bool:
        """Block until every watcher has applied at least one event.

        Returns False if stop_event was set first.
        """
        pending = [w for w in watchers if not w.synced.is_set()]
        if pending:
            logger.info(
                f"Waiting for initial sync of: {', '.join(w.kind.value for w in pending)}"
            )
        for watcher in pending:
            while not watcher.synced.wait(timeout=1.0):
                if stop_event is not None and stop_event.is_set():
                    return False
        logger.info("Initial sync complete")
        return True

    def expected_records(self) -> List[DNSRecord]:
        resources = self.cache.snapshot()
        logger.info(f"Resources: {len(resources)} observed")
        for identity in self.cache.identities():
            logger.debug(f"  {identity}")
        records = compute_records(resources, self.hostname_annotation, self.marker)
        return filter_zone(records, self.zone_name)

    def apply(self, zone_id: str, action: PlanAction) -> None:
        if action.action == PlanActionType.ADD:
            self.cf_api.create_record(zone_id, action.record)
        elif action.action == PlanActionType.UPDATE:
            self.cf_api.update_record(zone_id, action.record)
        elif action.action == PlanActionType.DELETE:
            self.cf_api.delete_record(zone_id, action.record.id)
        else:
            raise TypeError(f"Unsupported plan action: {action.action}")

    def _held_back(self, action: PlanAction, unmarked: Set[str], undeleted: Set[str]) -> bool:
        """Whether an action must wait because its name's marker is out of step.

        Address records are not created on a name whose marker could not be
        added, and a marker is kept while address records on its name could
        not be deleted. Otherwise those records would look foreign and never
        be touched again.
        """
        name = action.record.name
        if _is_marker(action.record, self.marker):
            return action.action == PlanActionType.DELETE and name in undeleted
        return action.action == PlanActionType.ADD and name in unmarked

    def reconcile_once(self) -> bool:
        """Run one reconciliation cycle.

        Returns False if the cycle was aborted before a plan could be
        computed (zone lookup or record listing failed). Failed actions are
        logged and do not stop the remaining ones, except the
        marker-dependent actions described in _held_back().
        """
        expected = self.expected_records()
        logger.info(
            f"Expected: {len(expected)} record(s)"
            + (f": {', '.join(str(r) for r in expected)}" if expected else "")
        )

        try:
            zone = self.cf_api.find_zone(self.zone_name)
            actual = self.cf_api.records(zone.id)
        except CloudflareError as e:
            logger.error(f"Reconciliation aborted: {e}")
            return False
        logger.info(f"Actual: {len(actual)} record(s) in zone {zone.name}")
        for record in actual:
            logger.debug(f"  {record}")

        actions = plan(expected, actual, marker=self.marker)
        if not actions:
            logger.info("Plan: no changes")
            return True
        logger.info(f"Plan: {', '.join(str(a) for a in actions)}")

        unmarked: Set[str] = set()
        undeleted: Set[str] = set()
        failed = skipped = 0
        for action in actions:
            if self._held_back(action, unmarked, undeleted):
                skipped += 1
                logger.warning(f"Skipped {action}: an earlier change on this name failed")
                continue
            try:
                self.apply(zone.id, action)
                logger.info(f"Applied {action}")
            except (CloudflareError, ValueError) as e:
                failed += 1
                logger.error(f"Failed to apply {action}: {e}")
                if action.action == PlanActionType.ADD and _is_marker(action.record, self.marker):
                    unmarked.add(action.record.name)
                elif action.action == PlanActionType.DELETE:
                    undeleted.add(action.record.name)

        if failed:
            logger.warning(
                f"{failed} of {len(actions)} change(s) failed, {skipped} skipped, "
                "retrying next cycle"
            )
        return True

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Reconcile, then wait for the interval or a change, whichever is first."""
        stop = stop_event or threading.Event()
        while not stop.is_set():
            try:
                self.reconcile_once()
            except Exception as e:
                logger.error(f"Unexpected error during reconciliation: {e}", exc_info=True)

            if stop.is_set():
                break
            if self.notifier.wait(self.interval_seconds):
                logger.debug("Woken up by resource change")


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    try:
        settings = load_settings(CONFIG_PATH)
    except ConfigError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    logger.info(f"{APP_NAME}: Kubernetes -> Cloudflare zone {settings.zone_name}")
    logger.info(f"Hostname annotation: {settings.hostname_annotation}")
    logger.info(f"Sync mode: {settings.sync_mode}")
    if settings.sync_mode == "watch":
        logger.info(f"Reconcile interval: {settings.reconcile_interval_seconds}s")

    cf_api = CloudflareAPI(
        settings.cf_token, base_url=settings.cf_api_url, record_ttl=settings.record_ttl
    )
    if settings.verify_token and not cf_api.verify_token():
        logger.error(f"Cannot authenticate with {cf_api.name}. Exiting.")
        sys.exit(1)

    try:
        load_kubernetes_config()
    except Exception as e:
        logger.error(f"Failed to load Kubernetes configuration: {e}")
        sys.exit(1)

    cache = ResourceCache()
    notifier = ChangeNotifier()
    watchers = create_watchers(settings, cache, notifier)
    for watcher in watchers:
        watcher.start()

    reconciler = Reconciler(
        cache=cache,
        cf_api=cf_api,
        notifier=notifier,
        zone_name=settings.zone_name,
        interval_seconds=settings.reconcile_interval_seconds,
        hostname_annotation=settings.hostname_annotation,
    )

    try:
        reconciler.wait_for_initial_sync(watchers)
        if settings.sync_mode == "once":
            if not reconciler.reconcile_once():
                sys.exit(1)
            return
        reconciler.run_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")


if __name__ == "__main__":
    main()
