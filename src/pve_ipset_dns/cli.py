#!/usr/bin/env python3
"""pve-ipset-dns - DNS-driven Proxmox VE firewall IP sets

Keeps Proxmox VE firewall IP set members in sync with the DNS resolution of
domain names listed in each IP set's comment. An IP set is managed when its
comment carries a directive of the form:

    auto_dns_<domain>[_<domain>...]

e.g. "auto_dns_example.com_api.example.org". Every run resolves the listed
domains (A and AAAA), replaces the set's members with the resolved addresses
and tags each member with the domain that produced it. IP sets without the
directive are left alone.

IP sets are discovered at every scope: cluster, node, VM (qemu) and container
(lxc).

Environment variables:

    Configuration file:
        PVE_IPSET_DNS_CONFIG   Optional YAML file providing defaults for the
                               settings below (lower-case keys, e.g. api_mode,
                               api_url, api_token, verify_tls, nameservers).
                               (default: /etc/pve-ipset-dns/config.yaml)

    Proxmox API:
        PVE_API_MODE           "pvesh" (run pvesh on the local node) or "http"
                               (Proxmox REST API) (default: pvesh)
        PVE_API_URL            REST base URL (default: https://localhost:8006)
        PVE_API_TOKEN          API token, "user@realm!tokenid=secret" (http mode)
        PVE_VERIFY_TLS         Verify TLS certificates (default: true)
        PVE_API_TIMEOUT_SECONDS  REST request timeout (default: 10)

    DNS:
        DNS_NAMESERVERS        Comma or space separated nameservers
                               (default: system resolver)
        DNS_TIMEOUT_SECONDS    Per-query lifetime (default: 5)

    Runtime:
        SYNC_MODE              "once" or "watch" (polling loop) (default: once)
        POLL_INTERVAL_SECONDS  Poll interval in watch mode (default: 3600)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

Command line:
    --debug                    Trace every Proxmox API call and dump every
                               inspected IP set record.
    --once                     Run a single sync even if SYNC_MODE=watch.
    --config PATH              Override PVE_IPSET_DNS_CONFIG.
"""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import os
import shlex
import shutil
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import quote

import dns.exception
import dns.resolver
import requests
import yaml

# =============================================================================
# Configuration
# =============================================================================

DIRECTIVE_PREFIX = "auto_dns_"
DIRECTIVE_SEPARATOR = "_"

DEFAULT_CONFIG_PATH = "/etc/pve-ipset-dns/config.yaml"

CONFIG_PATH = os.getenv("PVE_IPSET_DNS_CONFIG", DEFAULT_CONFIG_PATH)
SYNC_MODE = os.getenv("SYNC_MODE", "once").lower().strip()
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "3600"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

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
# Enums
# =============================================================================


class AddressFamily(Enum):
    """Address family to query, valued by its DNS record type."""

    IPV4 = "A"
    IPV6 = "AAAA"


class Scope(Enum):
    """Level at which a firewall IP set is defined."""

    CLUSTER = "cluster"
    NODE = "node"
    VM = "vm"
    CONTAINER = "container"


class ReconcileStatus(Enum):
    """Terminal state of a single IP set reconciliation.

    SKIPPED:    comment carries no directive; the set is not managed here.
    NO_DOMAINS: directive present but lists no domains.
    UNRESOLVED: no domain resolved to any address; members left untouched.
    APPLIED:    members replaced with the resolved addresses.
    """

    SKIPPED = "skipped"
    NO_DOMAINS = "no_domains"
    UNRESOLVED = "unresolved"
    APPLIED = "applied"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Settings:
    """Resolved runtime settings (config file overlaid with environment)."""

    api_mode: str = "pvesh"
    api_url: str = "https://localhost:8006"
    api_token: str = ""
    verify_tls: bool = True
    api_timeout_seconds: float = 10.0
    nameservers: Tuple[str, ...] = ()
    dns_timeout_seconds: float = 5.0
    problems: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Member:
    """An IP set entry."""

    cidr: str
    comment: str = ""


@dataclass(frozen=True)
class IPSet:
    """A firewall IP set discovered at some scope."""

    scope: Scope
    collection_path: str
    name: str
    comment: str = ""

    @property
    def path(self) -> str:
        return f"{self.collection_path}/{self.name}"


@dataclass(frozen=True)
class ApiResult:
    """Outcome of a mutating Proxmox API call."""

    ok: bool
    path: str
    error: str = ""


@dataclass
class ResolutionResult:
    """Addresses resolved for a directive, with the domain each came from.

    ``address_domains`` keeps first-seen order; an address is attributed to
    the first domain in the directive that resolved to it.
    """

    address_domains: Dict[str, str] = field(default_factory=dict)
    per_domain: Dict[str, List[str]] = field(default_factory=dict)
    unresolved: List[str] = field(default_factory=list)

    @property
    def addresses(self) -> List[str]:
        return list(self.address_domains)

    def domain_for(self, address: str) -> Optional[str]:
        return self.address_domains.get(address)

    def __len__(self) -> int:
        return len(self.address_domains)

    def __bool__(self) -> bool:
        return bool(self.address_domains)


@dataclass(frozen=True)
class MemberChangePlan:
    """Member deletions and creations that bring an IP set up to date."""

    deletes: List[str] = field(default_factory=list)
    creates: List[Member] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.deletes and not self.creates


@dataclass
class ReconcileReport:
    """What happened to one IP set during a sync."""

    ipset: IPSet
    status: ReconcileStatus
    domains: List[str] = field(default_factory=list)
    resolution: ResolutionResult = field(default_factory=ResolutionResult)
    deleted: List[str] = field(default_factory=list)
    created: List[Member] = field(default_factory=list)
    failures: List[ApiResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class SyncSummary:
    """Counters for one full sync run."""

    inspected: int = 0
    managed: int = 0
    applied: int = 0
    unresolved: int = 0
    errors: int = 0
    failed_operations: int = 0

    def record(self, report: ReconcileReport) -> None:
        self.inspected += 1
        if report.status != ReconcileStatus.SKIPPED:
            self.managed += 1
        if report.status == ReconcileStatus.APPLIED:
            self.applied += 1
        elif report.status == ReconcileStatus.UNRESOLVED:
            self.unresolved += 1
        self.failed_operations += len(report.failures)


# =============================================================================
# Proxmox API Gateway Interface and Implementations
# =============================================================================


class ApiGateway(ABC):
    """Abstract get/set/create/delete facade over the Proxmox API tree.

    ``get`` never raises: errors and non-JSON output come back as ``None``.
    Mutating calls report an ``ApiResult`` instead of raising.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the gateway name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Check that the API is reachable."""
        pass

    @abstractmethod
    def get(self, path: str) -> Any:
        """Read a resource, returning parsed JSON or None."""
        pass

    @abstractmethod
    def set(self, path: str, **params: Any) -> ApiResult:
        """Update a resource."""
        pass

    @abstractmethod
    def create(self, path: str, **params: Any) -> ApiResult:
        """Create a resource below ``path``."""
        pass

    @abstractmethod
    def delete(self, path: str) -> ApiResult:
        """Delete a resource."""
        pass

    def member_path(self, set_path: str, cidr: str) -> str:
        return f"{set_path}/{cidr}"

    def create_member(self, set_path: str, cidr: str, comment: str) -> ApiResult:
        return self.create(set_path, cidr=cidr, comment=comment)

    def delete_member(self, set_path: str, cidr: str) -> ApiResult:
        return self.delete(self.member_path(set_path, cidr))


class PveshApiGateway(ApiGateway):
    """Proxmox API access through the ``pvesh`` CLI on a cluster node."""

    def __init__(self, executable: str = "pvesh"):
        self._executable = executable

    @property
    def name(self) -> str:
        return "pvesh"

    def test_connection(self) -> bool:
        if shutil.which(self._executable) is None:
            logger.error(f"'{self._executable}' not found on PATH")
            return False
        return True

    def _run(self, verb: str, path: str, params: Mapping[str, Any]) -> subprocess.CompletedProcess:
        cmd = [self._executable, verb, path]
        for key, value in params.items():
            cmd.extend([f"--{key}", str(value)])
        logger.debug(f"+ {shlex.join(cmd)}")
        return subprocess.run(
            cmd + ["--output-format", "json"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            check=False,
        )

    def _mutate(self, verb: str, path: str, params: Mapping[str, Any]) -> ApiResult:
        try:
            res = self._run(verb, path, params)
        except (OSError, ValueError) as e:
            return ApiResult(ok=False, path=path, error=str(e))
        if res.returncode != 0:
            error = (res.stderr or "").strip() or f"exit status {res.returncode}"
            return ApiResult(ok=False, path=path, error=error)
        return ApiResult(ok=True, path=path)

    def get(self, path: str) -> Any:
        try:
            res = self._run("get", path, {})
        except (OSError, ValueError) as e:
            logger.debug(f"pvesh get {path} failed: {e}")
            return None
        if res.returncode != 0:
            logger.debug(f"pvesh get {path} exited with {res.returncode}")
            return None
        output = (res.stdout or "").strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except ValueError:
            logger.debug(f"pvesh get {path} returned non-JSON output")
            return None

    def set(self, path: str, **params: Any) -> ApiResult:
        return self._mutate("set", path, params)

    def create(self, path: str, **params: Any) -> ApiResult:
        return self._mutate("create", path, params)

    def delete(self, path: str) -> ApiResult:
        return self._mutate("delete", path, {})


class HttpApiGateway(ApiGateway):
    """Proxmox REST API access with an API token."""

    def __init__(self, url: str, token: str, verify_tls: bool = True, timeout: float = 10.0):
        self._url = url.rstrip("/")
        self._verify = verify_tls
        self._timeout = timeout
        self._session = requests.Session()
        if token:
            self._session.headers["Authorization"] = f"PVEAPIToken={token}"

    @property
    def name(self) -> str:
        return "Proxmox REST API"

    def _endpoint(self, path: str) -> str:
        return f"{self._url}/api2/json/{path.lstrip('/')}"

    def member_path(self, set_path: str, cidr: str) -> str:
        return f"{set_path}/{quote(cidr, safe='')}"

    def test_connection(self) -> bool:
        try:
            response = self._session.get(
                self._endpoint("/version"), timeout=self._timeout, verify=self._verify
            )
            response.raise_for_status()
            logger.info(f"{self.name} connection successful")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def get(self, path: str) -> Any:
        logger.debug(f"+ GET {path}")
        try:
            response = self._session.get(
                self._endpoint(path), timeout=self._timeout, verify=self._verify
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.debug(f"GET {path} failed: {e}")
            return None
        if not isinstance(payload, dict):
            return None
        return payload.get("data")

    def _mutate(self, method: str, path: str, params: Mapping[str, Any]) -> ApiResult:
        logger.debug(f"+ {method.upper()} {path} {dict(params) if params else ''}".rstrip())
        send = getattr(self._session, method)
        kwargs: Dict[str, Any] = {"timeout": self._timeout, "verify": self._verify}
        if params:
            kwargs["data"] = dict(params)
        try:
            response = send(self._endpoint(path), **kwargs)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            return ApiResult(ok=False, path=path, error=str(e))
        return ApiResult(ok=True, path=path)

    def set(self, path: str, **params: Any) -> ApiResult:
        return self._mutate("put", path, params)

    def create(self, path: str, **params: Any) -> ApiResult:
        return self._mutate("post", path, params)

    def delete(self, path: str) -> ApiResult:
        return self._mutate("delete", path, {})


def create_api_gateway(settings: Settings) -> ApiGateway:
    """Factory function to create the configured API gateway."""
    if settings.api_mode == "pvesh":
        return PveshApiGateway()
    elif settings.api_mode == "http":
        return HttpApiGateway(
            settings.api_url,
            settings.api_token,
            verify_tls=settings.verify_tls,
            timeout=settings.api_timeout_seconds,
        )
    else:
        raise ValueError(
            f"Unsupported API mode: '{settings.api_mode}'. Supported modes: pvesh, http"
        )


# =============================================================================
# Directive Parsing
# =============================================================================


def parse_domain_directive(comment: Optional[str]) -> Optional[List[str]]:
    """Extract the domain list from an IP set comment.

    Returns None when the comment does not start with the directive prefix,
    otherwise the remainder split on the separator with each token stripped.
    Empty tokens are kept; an empty remainder gives an empty list.
    """
    if not comment or not comment.startswith(DIRECTIVE_PREFIX):
        return None
    remainder = comment[len(DIRECTIVE_PREFIX):]
    if not remainder:
        return []
    return [token.strip() for token in remainder.split(DIRECTIVE_SEPARATOR)]


# =============================================================================
# DNS Resolution
# =============================================================================

AddressLookup = Callable[[str, AddressFamily], List[str]]


class DnsPythonLookup:
    """A/AAAA lookups through dnspython. Failures yield no addresses."""

    def __init__(self, nameservers: Optional[List[str]] = None, timeout: float = 5.0):
        # Explicit nameservers make /etc/resolv.conf optional.
        self._resolver = dns.resolver.Resolver(configure=not nameservers)
        self._resolver.timeout = timeout
        self._resolver.lifetime = timeout
        if nameservers:
            self._resolver.nameservers = list(nameservers)

    def __call__(self, domain: str, family: AddressFamily) -> List[str]:
        if not domain:
            return []
        try:
            answer = self._resolver.resolve(domain, family.value, raise_on_no_answer=False)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            logger.debug(f"No {family.value} records for {domain}")
            return []
        except dns.exception.DNSException as e:
            logger.warning(f"{family.value} lookup for {domain} failed: {e}")
            return []
        if answer.rrset is None:
            return []
        return [rdata.to_text() for rdata in answer]


def is_ip_literal(token: str) -> bool:
    try:
        ipaddress.ip_address(token)
    except ValueError:
        return False
    return True


def _lookup_tokens(lookup: AddressLookup, domain: str) -> List[str]:
    tokens: List[str] = []
    for family in (AddressFamily.IPV4, AddressFamily.IPV6):
        try:
            tokens.extend(lookup(domain, family))
        except Exception as e:
            logger.warning(f"{family.value} lookup for {domain} failed: {e}")
    return tokens


def resolve_domains(domains: List[str], lookup: AddressLookup) -> ResolutionResult:
    """Resolve domains in order into a deduplicated, attributed address set."""
    result = ResolutionResult()
    for domain in domains:
        domain_ips: List[str] = []
        for raw in _lookup_tokens(lookup, domain):
            ip = str(raw).strip()
            if not ip or not is_ip_literal(ip):
                continue
            if ip not in domain_ips:
                domain_ips.append(ip)
            # First domain to produce an address keeps it.
            result.address_domains.setdefault(ip, domain)
        result.per_domain[domain] = domain_ips
        if not domain_ips:
            result.unresolved.append(domain)
    return result


# =============================================================================
# Member Diffing
# =============================================================================


def members_from_response(data: Any) -> List[Member]:
    """Turn an IP set read into members; anything malformed counts as empty."""
    members: List[Member] = []
    for item in as_record_list(data):
        cidr = item.get("cidr")
        if not isinstance(cidr, str) or not cidr:
            logger.debug(f"Skipping malformed IP set entry: {item}")
            continue
        members.append(Member(cidr=cidr, comment=str(item.get("comment") or "")))
    return members


def plan_member_changes(current: List[Member], resolution: ResolutionResult) -> MemberChangePlan:
    """Full replace: drop every current member, add every resolved address.

    Nothing is planned when resolution came back empty so a total DNS outage
    cannot wipe the set.
    """
    if not resolution:
        return MemberChangePlan()
    return MemberChangePlan(
        deletes=[m.cidr for m in current],
        creates=[Member(cidr=ip, comment=domain) for ip, domain in resolution.address_domains.items()],
    )


# =============================================================================
# Reconciler
# =============================================================================


class IPSetReconciler:
    def __init__(self, gateway: ApiGateway, lookup: AddressLookup):
        self.gateway = gateway
        self.lookup = lookup

    def reconcile(self, ipset: IPSet) -> ReconcileReport:
        domains = parse_domain_directive(ipset.comment)
        if domains is None:
            return ReconcileReport(ipset=ipset, status=ReconcileStatus.SKIPPED)

        logger.info(f"  - Found auto_dns comment. Domains: {', '.join(domains) or '<none>'}")
        if not domains:
            logger.info(f"  - No domains listed for IP set '{ipset.name}', nothing to resolve")
            return ReconcileReport(ipset=ipset, status=ReconcileStatus.NO_DOMAINS)

        resolution = resolve_domains(domains, self.lookup)
        for domain, ips in resolution.per_domain.items():
            if ips:
                logger.info(f"  - Resolved for {domain}: {' '.join(ips)}")
            else:
                logger.info(f"  - No IPs resolved for {domain}")

        report = ReconcileReport(
            ipset=ipset,
            status=ReconcileStatus.UNRESOLVED,
            domains=domains,
            resolution=resolution,
        )
        if not resolution:
            logger.warning(
                f"  - No IPs resolved for any domains of '{ipset.name}', leaving members untouched"
            )
            return report

        logger.info(f"  - Total unique IPs to add: {len(resolution)}")
        current = members_from_response(self.gateway.get(ipset.path))
        plan = plan_member_changes(current, resolution)

        logger.info(f"  - Clearing {len(plan.deletes)} existing IP(s)")
        for cidr in plan.deletes:
            result = self.gateway.delete_member(ipset.path, cidr)
            if result.ok:
                report.deleted.append(cidr)
            else:
                logger.error(f"Failed to delete {cidr} from '{ipset.name}': {result.error}")
                report.failures.append(result)

        for member in plan.creates:
            logger.info(f"      Adding IP: {member.cidr} (domain: {member.comment})")
            result = self.gateway.create_member(ipset.path, member.cidr, member.comment)
            if result.ok:
                report.created.append(member)
            else:
                logger.error(f"Failed to add {member.cidr} to '{ipset.name}': {result.error}")
                report.failures.append(result)

        report.status = ReconcileStatus.APPLIED
        logger.info(f"  - Applied {len(report.created)}/{len(plan.creates)} IP(s) to '{ipset.name}'")
        return report


# =============================================================================
# Scope Walker
# =============================================================================


def as_record_list(value: Any) -> List[Dict[str, Any]]:
    """Normalize a single record or a list of records into a list of dicts."""
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return []


def _ids_from(value: Any, key: str) -> List[str]:
    """Collect ids from a listing whose entries are records or bare ids."""
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        return []
    ids: List[str] = []
    for item in value:
        if isinstance(item, dict):
            item = item.get(key)
        if isinstance(item, (str, int)) and not isinstance(item, bool) and str(item):
            ids.append(str(item))
    return ids


class ScopeWalker:
    """Enumerates firewall IP sets at cluster, node, VM and container scope."""

    def __init__(self, gateway: ApiGateway):
        self.gateway = gateway

    def iter_ipsets(self) -> Iterator[IPSet]:
        logger.info("Gathering cluster-level IP sets")
        yield from self._ipsets_at(Scope.CLUSTER, "/cluster/firewall/ipset")

        for node in _ids_from(self._read("/nodes"), "node"):
            logger.info(f"Node {node}: gathering node-level IP sets")
            yield from self._ipsets_at(Scope.NODE, f"/nodes/{node}/firewall/ipset")

            logger.info(f"Node {node}: gathering VM-level IP sets")
            for vmid in _ids_from(self._read(f"/nodes/{node}/qemu"), "vmid"):
                yield from self._ipsets_at(Scope.VM, f"/nodes/{node}/qemu/{vmid}/firewall/ipset")

            logger.info(f"Node {node}: gathering container-level IP sets")
            for ctid in _ids_from(self._read(f"/nodes/{node}/lxc"), "vmid"):
                yield from self._ipsets_at(
                    Scope.CONTAINER, f"/nodes/{node}/lxc/{ctid}/firewall/ipset"
                )

    def _read(self, path: str) -> Any:
        try:
            return self.gateway.get(path)
        except Exception as e:
            logger.error(f"Failed to read {path}: {e}", exc_info=True)
            return None

    def _ipsets_at(self, scope: Scope, collection_path: str) -> Iterator[IPSet]:
        records = as_record_list(self._read(collection_path))
        if not records:
            return
        logger.info(f"Found IP sets at {collection_path.lstrip('/')}:")
        for record in records:
            name = record.get("name") or record.get("ipset") or record.get("id")
            if not name:
                logger.warning(f"Skipping unnamed IP set at {collection_path}: {record}")
                continue
            logger.info(f"  IPset name: {name}")
            if logger.isEnabledFor(logging.DEBUG):
                for key, value in record.items():
                    logger.debug(f"    {key}: {value}")
            yield IPSet(
                scope=scope,
                collection_path=collection_path,
                name=str(name),
                comment=str(record.get("comment") or ""),
            )


# =============================================================================
# Core Syncer
# =============================================================================


class IPSetDNSSyncer:
    def __init__(self, *, walker: ScopeWalker, reconciler: IPSetReconciler):
        self.walker = walker
        self.reconciler = reconciler

    def sync_once(self) -> SyncSummary:
        summary = SyncSummary()
        for ipset in self.walker.iter_ipsets():
            try:
                report = self.reconciler.reconcile(ipset)
            except Exception as e:
                summary.inspected += 1
                summary.errors += 1
                logger.error(f"Failed to reconcile IP set '{ipset.path}': {e}", exc_info=True)
                continue
            summary.record(report)

        logger.info(
            f"IP set update completed: {summary.inspected} inspected, "
            f"{summary.managed} managed, {summary.applied} updated, "
            f"{summary.unresolved} unresolved, {summary.failed_operations} failed API call(s)"
        )
        return summary


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_nameservers(value: Any) -> Tuple[str, ...]:
    """Accept a YAML list or a comma/space separated string."""
    if not value:
        return ()
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value).replace(",", " ").split()
    return tuple(item.strip() for item in items if item.strip())


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load the optional YAML config file; missing or broken files give {}."""
    path = Path(config_path)
    if not config_path or not path.is_file():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {config_path} is not a mapping, ignoring it")
        return {}
    return data


def load_settings(config_path: str, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the YAML file, with environment variables winning."""
    env = os.environ if environ is None else environ
    file_values = load_config_file(config_path)

    def pick(env_name: str, key: str, default: Any) -> Any:
        if env.get(env_name, "").strip():
            return env[env_name].strip()
        value = file_values.get(key)
        return default if value is None else value

    problems: List[str] = []

    def seconds(env_name: str, key: str, default: float) -> float:
        raw = pick(env_name, key, default)
        try:
            value = float(raw)
        except (TypeError, ValueError):
            value = 0.0
        if value > 0:
            return value
        problems.append(f"{env_name} must be a positive number of seconds, got {raw!r}")
        return default

    defaults = Settings()
    return Settings(
        api_mode=str(pick("PVE_API_MODE", "api_mode", defaults.api_mode)).lower().strip(),
        api_url=str(pick("PVE_API_URL", "api_url", defaults.api_url)).strip(),
        api_token=str(pick("PVE_API_TOKEN", "api_token", defaults.api_token)).strip(),
        verify_tls=_parse_bool(pick("PVE_VERIFY_TLS", "verify_tls", None), default=True),
        api_timeout_seconds=seconds("PVE_API_TIMEOUT_SECONDS", "api_timeout_seconds", defaults.api_timeout_seconds),
        nameservers=_parse_nameservers(pick("DNS_NAMESERVERS", "nameservers", "")),
        dns_timeout_seconds=seconds("DNS_TIMEOUT_SECONDS", "dns_timeout_seconds", defaults.dns_timeout_seconds),
        problems=tuple(problems),
    )


# =============================================================================
# Main
# =============================================================================


def validate_settings(settings: Settings) -> bool:
    """Validate configuration."""
    errors = list(settings.problems)

    if settings.api_mode == "http":
        if not settings.api_url:
            errors.append("PVE_API_URL is required when PVE_API_MODE=http")
        if not settings.api_token:
            errors.append("PVE_API_TOKEN is required when PVE_API_MODE=http")
        if not settings.verify_tls:
            logger.warning("⚠️  PVE_VERIFY_TLS disabled. TLS certificates will not be checked.")
    elif settings.api_mode != "pvesh":
        errors.append(f"Unsupported PVE_API_MODE: {settings.api_mode}. Supported: pvesh, http")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pve-ipset-dns",
        description="Sync Proxmox VE firewall IP sets with DNS names listed in their comments.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="trace every Proxmox API call and dump inspected IP set records",
    )
    parser.add_argument("--once", action="store_true", help="run a single sync and exit")
    parser.add_argument("--config", default=CONFIG_PATH, help="YAML config file path")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    args = parse_args(argv)
    if args.debug:
        logger.setLevel(logging.DEBUG)

    settings = load_settings(args.config)
    sync_mode = "once" if args.once else SYNC_MODE
    logger.info(f"pve-ipset-dns: API mode {settings.api_mode}, sync mode {sync_mode}")

    if not validate_settings(settings):
        logger.error("Configuration validation failed")
        sys.exit(1)

    if sync_mode not in ("once", "watch"):
        logger.error(f"Invalid SYNC_MODE: {sync_mode}. Use 'once' or 'watch'")
        sys.exit(1)

    gateway = create_api_gateway(settings)
    if not gateway.test_connection():
        logger.error(f"Cannot reach Proxmox API via {gateway.name}. Exiting.")
        sys.exit(1)

    if settings.nameservers:
        logger.info(f"DNS nameservers: {', '.join(settings.nameservers)}")
    lookup = DnsPythonLookup(list(settings.nameservers), timeout=settings.dns_timeout_seconds)

    syncer = IPSetDNSSyncer(
        walker=ScopeWalker(gateway),
        reconciler=IPSetReconciler(gateway, lookup),
    )

    try:
        if sync_mode == "once":
            syncer.sync_once()
            return

        logger.info(f"Poll interval: {POLL_INTERVAL_SECONDS}s")
        while True:
            syncer.sync_once()
            time.sleep(max(5, POLL_INTERVAL_SECONDS))

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
