#!/usr/bin/env python3
"""
MuleSoft Consumption Analyzer
=============================

Connects to MuleSoft Anypoint Platform APIs and estimates billable consumption
for every CloudHub application in your organization:

- Accounts API: Root organization, business groups, environments
- CloudHub API: Deployed applications, worker sizing, deployment artifacts
- Monitoring API: Message counts, CPU/memory usage, flow-level metrics

For each application the tool estimates the number of billable flows and the
monthly message volume, each with a confidence level (high/medium/low/none),
then writes JSON and CSV reports rolled up by business group and organization.

Usage:
    python mule_consumption_analyzer.py \\
        --client-id "YOUR_CLIENT_ID" \\
        --client-secret "YOUR_CLIENT_SECRET"

Credentials can also come from ANYPOINT_CLIENT_ID / ANYPOINT_CLIENT_SECRET
(a .env file in the working directory is loaded automatically).
"""

import os
import sys
import csv
import json
import math
import time
import zipfile
import argparse
import requests
import logging
import xml.etree.ElementTree as ET
from io import BytesIO
from enum import Enum
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any, Union
from dataclasses import dataclass, asdict, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================

class ConfigurationError(ValueError):
    """Missing or invalid analyzer configuration."""


class AuthenticationError(RuntimeError):
    """Client-credentials exchange with Anypoint Platform failed."""


# =============================================================================
# Configuration
# =============================================================================

def _env_flag(name: str, default: bool = True) -> bool:
    """Toggles are on unless explicitly set to 'false'."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() != "false"


@dataclass
class AnalyzerConfig:
    """Configuration for Anypoint Platform access and report output."""
    client_id: str
    client_secret: str
    org_id: str = ""
    region: str = "us"
    output_dir: str = "consumption-data"
    jars_dir: str = "application-jars"
    debug: bool = False
    export_csv: bool = True
    download_jars: bool = True
    analyze_days: int = 30

    @classmethod
    def from_env(cls, args: Optional[argparse.Namespace] = None) -> "AnalyzerConfig":
        """Build config from .env/environment, letting CLI arguments win."""
        load_dotenv(find_dotenv(usecwd=True))

        def pick(arg_name: str, env_name: str, default: Any = "") -> Any:
            value = getattr(args, arg_name, None) if args is not None else None
            if value not in (None, ""):
                return value
            return os.getenv(env_name, default)

        debug = _env_flag("DEBUG", default=False)
        export_csv = _env_flag("EXPORT_CSV")
        download_jars = _env_flag("DOWNLOAD_JARS")
        if args is not None:
            debug = debug or bool(getattr(args, "verbose", False)) or getattr(args, "mode", None) == "debug"
            export_csv = export_csv and not getattr(args, "no_csv", False)
            download_jars = download_jars and not getattr(args, "no_jars", False)

        days = pick("days", "ANALYZE_DAYS", "30")
        try:
            analyze_days = int(days)
        except (TypeError, ValueError):
            raise ConfigurationError(f"ANALYZE_DAYS must be an integer, got {days!r}")

        return cls(
            client_id=pick("client_id", "ANYPOINT_CLIENT_ID") or "",
            client_secret=pick("client_secret", "ANYPOINT_CLIENT_SECRET") or "",
            org_id=pick("org_id", "ANYPOINT_ORG_ID") or "",
            region=pick("region", "ANYPOINT_REGION", "us") or "us",
            output_dir=pick("output_dir", "OUTPUT_DIR", "consumption-data") or "consumption-data",
            debug=debug,
            export_csv=export_csv,
            download_jars=download_jars,
            analyze_days=analyze_days,
        )

    def validate(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("Client ID and Client Secret are required.")
        if self.region not in ("us", "eu", "gov"):
            raise ConfigurationError(f"Unknown region: {self.region}")
        if self.analyze_days < 1:
            raise ConfigurationError("Analysis period must be at least 1 day.")

    @property
    def base_url(self) -> str:
        if self.region == "eu":
            return "https://eu1.anypoint.mulesoft.com"
        elif self.region == "gov":
            return "https://gov.anypoint.mulesoft.com"
        return "https://anypoint.mulesoft.com"

    @property
    def accounts_url(self) -> str:
        return f"{self.base_url}/accounts/api"

    @property
    def cloudhub_url(self) -> str:
        return f"{self.base_url}/cloudhub/api/v2"

    @property
    def arm_url(self) -> str:
        return f"{self.base_url}/hybrid/api/v1"

    @property
    def monitoring_url(self) -> str:
        host = self.base_url.replace("https://", "https://monitoring.", 1)
        return f"{host}/monitoring/api/v2"

    @property
    def auth_url(self) -> str:
        return f"{self.base_url}/accounts/api/v2/oauth2/token"

    @property
    def jars_path(self) -> Path:
        return Path(self.output_dir) / self.jars_dir


# =============================================================================
# Data Models
# =============================================================================

@dataclass
class BusinessGroup:
    """Business group flattened out of the organization hierarchy."""
    group_id: str
    name: str
    parent_id: Optional[str] = None


@dataclass
class Environment:
    """Environment data."""
    env_id: str
    name: str
    env_type: str = ""
    is_production: bool = False


@dataclass
class Application:
    """Deployed CloudHub application as seen during one discovery pass."""
    domain: str
    status: str = ""
    last_update_time: Any = None
    file_name: Optional[str] = None
    mule_version: str = "Unknown"
    worker_weight: float = 0.0
    worker_type: str = "Unknown"
    worker_count: int = 0

    @classmethod
    def from_api(cls, raw: Dict) -> "Application":
        workers = raw.get("workers")
        if not isinstance(workers, dict):
            workers = {}
        worker_type = workers.get("type")
        if not isinstance(worker_type, dict):
            worker_type = {}
        return cls(
            domain=raw.get("domain", ""),
            status=raw.get("status", ""),
            last_update_time=raw.get("lastUpdateTime"),
            file_name=raw.get("fileName") or None,
            mule_version=raw.get("muleVersion") or "Unknown",
            worker_weight=worker_type.get("weight") or 0.0,
            worker_type=worker_type.get("name") or "Unknown",
            worker_count=workers.get("amount") or 0,
        )


@dataclass
class FlowEstimate:
    """Estimated billable flow count for one application."""
    estimated_flows: int
    confidence: str
    source: str
    size: Optional[str] = None
    actual_analysis: Optional[bool] = None


@dataclass
class MessageEstimate:
    """Estimated message volume for one application."""
    estimated_daily_messages: int
    estimated_monthly_messages: int
    confidence: str
    source: str


@dataclass
class ArtifactInfo:
    """Deployment artifact stored on local disk."""
    path: str
    size_bytes: int
    downloaded: bool
    method: str = ""


@dataclass
class MonitoringData:
    """Raw monitoring payloads for one application; each may be missing."""
    period_days: int
    period_from: str = ""
    period_to: str = ""
    message_data: Optional[Dict] = None
    resource_data: Optional[Dict] = None
    flow_metrics: Optional[Any] = None


@dataclass
class ApplicationReport:
    """Application plus everything estimated about it."""
    application: Application
    flow_analysis: FlowEstimate
    message_analysis: MessageEstimate
    artifact: Optional[ArtifactInfo] = None
    monitoring: Optional[MonitoringData] = None


@dataclass
class EnvironmentReport:
    environment: Environment
    applications: List[ApplicationReport] = field(default_factory=list)


@dataclass
class BusinessGroupReport:
    group: BusinessGroup
    environments: List[EnvironmentReport] = field(default_factory=list)


@dataclass
class InventorySummary:
    total_applications: int = 0
    total_estimated_flows: int = 0
    total_estimated_monthly_messages: int = 0


@dataclass
class Inventory:
    """Full result tree for one analysis run."""
    timestamp: str
    root_organization: BusinessGroup
    business_groups: List[BusinessGroupReport] = field(default_factory=list)

    @property
    def summary(self) -> InventorySummary:
        # Always recomputed from the leaves
        summary = InventorySummary()
        for report in iter_applications(self):
            summary.total_applications += 1
            summary.total_estimated_flows += report.flow_analysis.estimated_flows
            summary.total_estimated_monthly_messages += report.message_analysis.estimated_monthly_messages
        return summary


@dataclass
class MetricSplit:
    total: int = 0
    production: int = 0
    sandbox: int = 0

    def add(self, value: int, is_production: bool) -> None:
        self.total += value
        if is_production:
            self.production += value
        else:
            self.sandbox += value


@dataclass
class BusinessGroupSummary:
    group_id: str
    name: str
    total_applications: int = 0
    production_applications: int = 0
    sandbox_applications: int = 0
    estimated_flows: int = 0
    estimated_monthly_messages: int = 0


@dataclass
class OrganizationSummary:
    applications: MetricSplit = field(default_factory=MetricSplit)
    estimated_flows: MetricSplit = field(default_factory=MetricSplit)
    estimated_monthly_messages: MetricSplit = field(default_factory=MetricSplit)


# =============================================================================
# API Client
# =============================================================================

class AnypointClient:
    """HTTP client for Anypoint Platform APIs. One attempt per request."""

    def __init__(self, config: AnalyzerConfig):
        self.config = config
        self.access_token: Optional[str] = None
        self.session = requests.Session()

        self.stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "permission_errors": set(),
        }

    def authenticate(self) -> None:
        """Get access token using client credentials."""
        logger.info("Authenticating with Anypoint Platform...")

        payload = {
            "grant_type": "client_credentials",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret
        }

        try:
            response = self.session.post(
                self.config.auth_url,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=30
            )
            response.raise_for_status()
            token_data = response.json()
        except requests.exceptions.HTTPError as e:
            if e.response is not None:
                logger.error(f"Response: {e.response.text}")
            raise AuthenticationError(f"Authentication failed: {e}") from e
        except (requests.exceptions.RequestException, ValueError) as e:
            raise AuthenticationError(f"Authentication error: {e}") from e

        self.access_token = token_data.get("access_token")
        if not self.access_token:
            raise AuthenticationError("Authentication response did not contain an access token")

        self.session.headers.update({
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json"
        })
        logger.info("✅ Authentication successful")

    def _send(self, url: str, **kwargs) -> Optional[requests.Response]:
        self.stats["total_requests"] += 1
        try:
            response = self.session.get(url, timeout=60, **kwargs)
        except requests.exceptions.RequestException as e:
            self.stats["failed_requests"] += 1
            logger.warning(f"⚠️  Request error: {url} - {e}")
            return None

        if response.status_code == 403:
            logger.debug(f"🔒 Access denied (403): {url} - Check Connected App scopes")
            self.stats["failed_requests"] += 1
            self._track_permission_error(url)
            return None

        if response.status_code == 404:
            self.stats["successful_requests"] += 1
            logger.debug(f"Not found (404): {url}")
            return None

        if not response.ok:
            self.stats["failed_requests"] += 1
            logger.warning(f"⚠️  HTTP error {response.status_code}: {url}")
            if self.config.debug:
                logger.debug(f"Response body: {response.text[:200]}")
            return None

        self.stats["successful_requests"] += 1
        return response

    def get(self, url: str, **kwargs) -> Optional[Any]:
        """Make a JSON GET request. Returns None when the call fails."""
        response = self._send(url, **kwargs)
        if response is None:
            return None
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            logger.warning(f"⚠️  Response from {url} is not valid JSON")
            return None

    def get_binary(self, url: str, **kwargs) -> Optional[bytes]:
        """Make a GET request and return the raw body."""
        response = self._send(url, **kwargs)
        if response is None:
            return None
        if self.config.debug:
            logger.debug(f"Content-Type: {response.headers.get('Content-Type')}")
            logger.debug(f"Content-Length: {response.headers.get('Content-Length')}")
        return response.content or None

    def _track_permission_error(self, url: str) -> None:
        """Track 403 errors to report scope issues at the end."""
        if "/accounts/" in url:
            self.stats["permission_errors"].add("Accounts")
        elif "/cloudhub/" in url:
            self.stats["permission_errors"].add("Runtime Manager")
        elif "/hybrid/" in url:
            self.stats["permission_errors"].add("Runtime Manager (ARM)")
        elif "/monitoring/" in url:
            self.stats["permission_errors"].add("Monitoring")

    def print_stats(self) -> None:
        """Print request statistics."""
        print(f"\n📊 API Request Statistics:")
        print(f"  Total requests: {self.stats['total_requests']}")
        print(f"  Successful: {self.stats['successful_requests']}")
        print(f"  Failed: {self.stats['failed_requests']}")

        if self.stats["permission_errors"]:
            print(f"\n⚠️  Permission Issues Detected (403 Forbidden):")
            print(f"   The Connected App may be missing scopes for:")
            for api in sorted(self.stats["permission_errors"]):
                print(f"     - {api}")


# =============================================================================
# Response Decoding
# =============================================================================

class ResponseShape(Enum):
    BARE_ARRAY = "array"
    DATA_ENVELOPE = "data"
    APPLICATIONS_ENVELOPE = "applications"
    EMPTY = "empty"
    UNRECOGNIZED = "unrecognized"


@dataclass
class DecodedApplications:
    shape: ResponseShape
    items: List[Dict] = field(default_factory=list)
    detail: str = ""


def decode_applications_response(payload: Any) -> DecodedApplications:
    """Classify an application listing body by envelope shape."""
    if payload is None or payload == {} or payload == "":
        return DecodedApplications(ResponseShape.EMPTY)
    if isinstance(payload, list):
        return DecodedApplications(ResponseShape.BARE_ARRAY, payload)
    if isinstance(payload, dict):
        if isinstance(payload.get("data"), list):
            return DecodedApplications(ResponseShape.DATA_ENVELOPE, payload["data"])
        if isinstance(payload.get("applications"), list):
            return DecodedApplications(ResponseShape.APPLICATIONS_ENVELOPE, payload["applications"])
        return DecodedApplications(
            ResponseShape.UNRECOGNIZED,
            detail=f"object with keys {sorted(payload.keys())}"
        )
    return DecodedApplications(ResponseShape.UNRECOGNIZED, detail=f"{type(payload).__name__} body")


# =============================================================================
# API Discovery Classes
# =============================================================================

def flatten_business_groups(org: Dict, parent_id: Optional[str] = None,
                            seen: Optional[set] = None) -> List[BusinessGroup]:
    """Flatten the hierarchy tree depth-first, root first."""
    if seen is None:
        seen = set()
    result = []
    group_id = org.get("id", "")
    if group_id in seen:
        logger.debug(f"Skipping duplicate business group {group_id}")
        return result
    seen.add(group_id)

    result.append(BusinessGroup(
        group_id=group_id,
        name=org.get("name", ""),
        parent_id=org.get("parentId") or parent_id
    ))
    for sub_org in org.get("subOrganizations") or []:
        result.extend(flatten_business_groups(sub_org, group_id, seen))
    return result


class AccountsDiscovery:
    """Retrieves organization, business group and environment data."""

    def __init__(self, client: AnypointClient):
        self.client = client
        self.config = client.config

    def get_root_organization(self) -> BusinessGroup:
        if self.config.org_id:
            url = f"{self.config.accounts_url}/organizations/{self.config.org_id}"
            result = self.client.get(url)
            if not result:
                raise RuntimeError(f"Unable to fetch organization {self.config.org_id}")
            return BusinessGroup(group_id=result.get("id", self.config.org_id),
                                 name=result.get("name", ""))

        result = self.client.get(f"{self.config.accounts_url}/me")
        user = (result or {}).get("user") or {}
        if not user.get("organizationId"):
            raise RuntimeError("Unable to determine root organization from /accounts/api/me")
        return BusinessGroup(
            group_id=user["organizationId"],
            name=(user.get("organization") or {}).get("name", "")
        )

    def get_business_groups(self, org_id: str) -> List[BusinessGroup]:
        url = f"{self.config.accounts_url}/organizations/{org_id}/hierarchy"
        result = self.client.get(url)
        if not result:
            raise RuntimeError(f"Unable to fetch business group hierarchy for {org_id}")
        return flatten_business_groups(result)

    def get_environments(self, org_id: str) -> List[Environment]:
        url = f"{self.config.accounts_url}/organizations/{org_id}/environments"
        result = self.client.get(url)
        if not isinstance(result, dict) or not isinstance(result.get("data"), list):
            logger.warning(f"⚠️  No environments returned for business group {org_id}")
            return []
        return [
            Environment(
                env_id=env.get("id", ""),
                name=env.get("name", ""),
                env_type=env.get("type", ""),
                is_production=bool(env.get("isProduction", False))
            )
            for env in result["data"] if isinstance(env, dict)
        ]


class RuntimeManagerDiscovery:
    """Retrieves deployed application data and artifacts."""

    def __init__(self, client: AnypointClient):
        self.client = client
        self.config = client.config

    @staticmethod
    def _headers(org_id: str, env_id: str) -> Dict[str, str]:
        return {"X-ANYPNT-ORG-ID": org_id, "X-ANYPNT-ENV-ID": env_id}

    def get_applications(self, org_id: str, env_id: str) -> List[Application]:
        url = f"{self.config.cloudhub_url}/applications"
        result = self.client.get(url, headers=self._headers(org_id, env_id))
        decoded = decode_applications_response(result)
        logger.debug(f"Applications response shape for {env_id}: {decoded.shape.value}")

        if decoded.shape is ResponseShape.UNRECOGNIZED:
            logger.warning(f"⚠️  Unrecognized applications response for environment {env_id}: {decoded.detail}")
            if self.config.debug:
                logger.debug(f"Full response: {json.dumps(result, indent=2, default=str)}")
            return []
        if decoded.shape is ResponseShape.EMPTY:
            return []
        return [Application.from_api(app) for app in decoded.items if isinstance(app, dict)]

    def get_application_details(self, org_id: str, env_id: str, domain: str) -> Optional[Dict]:
        url = f"{self.config.cloudhub_url}/applications/{domain}"
        result = self.client.get(url, headers=self._headers(org_id, env_id))
        if not result:
            logger.warning(f"⚠️  No details found for application {domain}")
            return None
        if not isinstance(result, dict):
            logger.warning(f"⚠️  Unrecognized details response for application {domain}: {type(result).__name__} body")
            return None
        logger.debug(f"Application details structure: {sorted(result.keys())}")
        return result

    def download_artifact(self, org_id: str, env_id: str, details: Dict) -> Optional[ArtifactInfo]:
        """Fetch the application JAR once; the ARM endpoint often fails server-side."""
        if not self.config.download_jars:
            return None

        domain = details.get("domain", "")
        file_name = details.get("fileName")
        if not file_name:
            logger.info(f"  No file information available for {domain}. Cannot download JAR.")
            return None

        jars_dir = self.config.jars_path
        jars_dir.mkdir(parents=True, exist_ok=True)
        jar_path = jars_dir / Path(file_name).name

        if jar_path.exists():
            logger.info(f"  JAR file for {domain} already exists at {jar_path}")
            return ArtifactInfo(path=str(jar_path), size_bytes=jar_path.stat().st_size, downloaded=False)

        version_id = details.get("versionId")
        if not version_id:
            logger.info(f"  No versionId available for {domain}. Cannot download JAR.")
            return None

        url = f"{self.config.arm_url}/applications/{version_id}/artifact"
        logger.debug(f"Downloading artifact from {url}")
        content = self.client.get_binary(url, headers=self._headers(org_id, env_id))
        if not content:
            logger.info(f"  JAR download failed for {domain}; using application metadata to estimate flows")
            return None

        jar_path.write_bytes(content)
        logger.info(f"  Downloaded JAR file for {domain} to {jar_path}")
        return ArtifactInfo(path=str(jar_path), size_bytes=len(content), downloaded=True, method="arm-api")


class MonitoringDiscovery:
    """Retrieves application metrics from Anypoint Monitoring."""

    def __init__(self, client: AnypointClient):
        self.client = client
        self.config = client.config

    def _fetch(self, url: str, params: Dict, label: str, domain: str) -> Optional[Any]:
        result = self.client.get(url, params=params)
        if result is None:
            logger.info(f"  Unable to fetch {label} metrics for {domain}")
            return None
        if isinstance(result, dict) and result.get("error"):
            logger.info(f"  {label.capitalize()} metrics for {domain} returned an error: {result.get('error')}")
            return None
        return result

    def get_monitoring_data(self, org_id: str, env_id: str, domain: str,
                            now: Optional[datetime] = None) -> MonitoringData:
        end = now or datetime.now(timezone.utc)
        start = end - timedelta(days=self.config.analyze_days)
        start_ms = int(start.timestamp() * 1000)
        end_ms = int(end.timestamp() * 1000)
        logger.debug(f"Fetching monitoring data for {domain} from {start.isoformat()} to {end.isoformat()}")

        app_url = f"{self.config.monitoring_url}/organizations/{org_id}/environments/{env_id}/applications/{domain}"
        return MonitoringData(
            period_days=self.config.analyze_days,
            period_from=start.isoformat(),
            period_to=end.isoformat(),
            message_data=self._fetch(f"{app_url}/metrics",
                                     {"from": start_ms, "to": end_ms, "metrics": "messageCount"},
                                     "message count", domain),
            resource_data=self._fetch(f"{app_url}/metrics",
                                      {"from": start_ms, "to": end_ms, "metrics": "cpu,memory"},
                                      "resource", domain),
            flow_metrics=self._fetch(f"{app_url}/flows/metrics",
                                     {"from": start_ms, "to": end_ms},
                                     "flow", domain),
        )


# =============================================================================
# Estimation
# =============================================================================

MIN_HEURISTIC_FLOWS = 1
MAX_HEURISTIC_FLOWS = 20
MB_PER_FLOW = 0.5

# (match terms for file name, match terms for domain, base flows, tag)
API_LAYER_PATTERNS = [
    (("eapi", "experience-api"), ("eapi", "experience"), 5, "EAPI"),
    (("papi", "process-api"), ("papi", "process"), 7, "PAPI"),
    (("sapi", "system-api"), ("sapi", "system"), 3, "SAPI"),
]

INTEGRATION_PATTERNS = [
    (("salesforce", "sfdc"), 2, "Salesforce"),
    (("onbase", "database"), 1, "Database"),
    (("splunk",), 1, "Splunk"),
]

COMPOSITE_ELEMENTS = {"async", "until-successful", "scatter-gather"}
BATCH_NAMESPACE_SUFFIX = "/batch"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp_flows(value: int) -> int:
    return max(MIN_HEURISTIC_FLOWS, min(MAX_HEURISTIC_FLOWS, value))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _nested(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def estimate_from_metadata(app: Optional[Application]) -> FlowEstimate:
    """
    Guess a flow count from naming conventions and worker sizing.

    The file name is preferred over the domain. API-layer and integration
    patterns are independent; worker count and size each add up to 3.
    """
    estimated = 2
    source = "Application metadata"

    if app is None:
        return FlowEstimate(estimated, "low", "Default estimate (no metadata)")

    if app.file_name:
        name, kind, use_domain_terms = app.file_name.lower(), "filename", False
    elif app.domain:
        name, kind, use_domain_terms = app.domain.lower(), "domain", True
    else:
        name, kind, use_domain_terms = "", "", False

    if name:
        for file_terms, domain_terms, base, tag in API_LAYER_PATTERNS:
            terms = domain_terms if use_domain_terms else file_terms
            if any(term in name for term in terms):
                estimated = base
                source = f"{tag} {kind} pattern"
                break

        for terms, bonus, tag in INTEGRATION_PATTERNS:
            if any(term in name for term in terms):
                estimated += bonus
                source += f" + {tag} pattern"
                break

    if app.worker_count > 1:
        estimated += min(3, app.worker_count - 1)
        source += " + Multiple workers"

    if app.worker_weight > 0.1:
        estimated += min(3, round_half_up(app.worker_weight * 10))
        source += " + Larger worker size"

    return FlowEstimate(_clamp_flows(estimated), "low", source)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _namespace(tag: str) -> str:
    return tag[1:tag.index("}")] if tag.startswith("{") else ""


def count_config_elements(root: ET.Element) -> Dict[str, int]:
    """Count flows, sub-flows and composite scopes in one Mule config document."""
    counts = {"flows": 0, "sub_flows": 0, "other": 0}
    for element in root.iter():
        if not isinstance(element.tag, str):
            continue
        name = _local_name(element.tag)
        if name == "flow":
            counts["flows"] += 1
        elif name == "sub-flow":
            counts["sub_flows"] += 1
        elif name in COMPOSITE_ELEMENTS:
            counts["other"] += 1
        elif name == "job" and _namespace(element.tag).endswith(BATCH_NAMESPACE_SUFFIX):
            counts["other"] += 1
    return counts


def extract_flow_counts(artifact: Union[bytes, str, Path]) -> Optional[Dict[str, int]]:
    """
    Read Mule configuration files out of a deployment archive.

    Returns summed counts, or None when the archive holds no Mule configs.
    Raises zipfile.BadZipFile/OSError for unreadable archives.
    """
    source = BytesIO(artifact) if isinstance(artifact, bytes) else artifact
    totals = {"flows": 0, "sub_flows": 0, "other": 0}
    configs = 0

    with zipfile.ZipFile(source) as archive:
        for member in archive.infolist():
            name = member.filename
            if member.is_dir() or not name.lower().endswith(".xml"):
                continue
            if Path(name).name.lower() == "pom.xml":
                continue
            try:
                root = ET.fromstring(archive.read(member))
            except ET.ParseError as e:
                logger.debug(f"Skipping unparseable XML {name}: {e}")
                continue
            if _local_name(root.tag) != "mule":
                continue
            configs += 1
            for key, value in count_config_elements(root).items():
                totals[key] += value

    if not configs:
        return None
    logger.info(f"  Found {configs} Mule configuration files")
    return totals


def _artifact_size(artifact: Union[bytes, str, Path]) -> Optional[int]:
    if isinstance(artifact, bytes):
        return len(artifact)
    try:
        return Path(artifact).stat().st_size
    except OSError as e:
        logger.warning(f"⚠️  Cannot read artifact {artifact}: {e}")
        return None


def count_flows(artifact: Union[bytes, str, Path, None],
                app: Optional[Application]) -> FlowEstimate:
    """Estimate flows from an artifact, falling back to size and then metadata."""
    if artifact is None:
        logger.info("  No JAR file available, using application metadata to estimate flows")
        return estimate_from_metadata(app)

    size_bytes = _artifact_size(artifact)
    if size_bytes is None:
        return estimate_from_metadata(app)
    size_mb = size_bytes / (1024 * 1024)
    size_label = f"{size_mb:.2f} MB"

    try:
        counts = extract_flow_counts(artifact)
    except Exception as e:
        logger.warning(f"⚠️  Error extracting/analyzing JAR contents: {e}")
        counts = None

    if counts is not None:
        logger.info(f"  Found {counts['flows']} flows, {counts['sub_flows']} sub-flows, "
                    f"and {counts['other']} other flow elements")
        return FlowEstimate(
            estimated_flows=counts["flows"] + counts["sub_flows"] + counts["other"],
            confidence="high",
            source="XML analysis",
            size=size_label,
            actual_analysis=True
        )

    logger.debug("No Mule configuration found in JAR; using size heuristic")
    return FlowEstimate(
        estimated_flows=_clamp_flows(round_half_up(size_mb / MB_PER_FLOW)),
        confidence="low",
        source="JAR size heuristic",
        size=size_label,
        actual_analysis=False
    )


def estimate_messages(monitoring: Optional[MonitoringData],
                      analysis_period_days: Optional[int] = None) -> MessageEstimate:
    """
    Estimate message volume: flow metrics, then app metrics, then CPU usage.

    The CPU tier (average percent * 100 messages/day) is a rough proxy with an
    uncalibrated constant.
    """
    if monitoring is None:
        return MessageEstimate(0, 0, "none", "No monitoring data available")

    days = analysis_period_days if analysis_period_days is not None else monitoring.period_days
    if days <= 0:
        raise ValueError(f"Analysis period must be positive, got {days}")

    daily = 0.0
    confidence = "none"
    source = "No message data available"

    if isinstance(monitoring.flow_metrics, list) and monitoring.flow_metrics:
        total = 0
        flows_with_data = 0
        for flow in monitoring.flow_metrics:
            count = _nested(flow, "messageCount", "count")
            if _is_number(count):
                total += count
                flows_with_data += 1
        if flows_with_data:
            daily = total / days
            confidence = "high"
            source = "Flow-level message metrics"
            logger.debug(f"Flow-level metrics: {total} messages across {flows_with_data} flows")

    if daily == 0 and monitoring.message_data:
        count = _nested(monitoring.message_data, "messageCount", "count")
        if _is_number(count):
            daily = count / days
            confidence = "medium"
            source = "Application-level message metrics"
            logger.debug(f"Application-level metrics: {count} messages")

    if daily == 0 and monitoring.resource_data:
        average = _nested(monitoring.resource_data, "cpu", "average")
        if _is_number(average):
            daily = average * 100
            confidence = "low"
            source = "CPU usage heuristic"
            logger.debug(f"CPU heuristic: average {average}%")

    return MessageEstimate(
        estimated_daily_messages=round_half_up(daily),
        estimated_monthly_messages=round_half_up(daily * 30),
        confidence=confidence,
        source=source
    )


# =============================================================================
# Aggregation
# =============================================================================

def iter_applications(inventory: Inventory):
    for group in inventory.business_groups:
        for env in group.environments:
            for report in env.applications:
                yield report


def summarize_business_group(group: BusinessGroupReport) -> BusinessGroupSummary:
    summary = BusinessGroupSummary(group_id=group.group.group_id, name=group.group.name)
    for env in group.environments:
        apps = len(env.applications)
        summary.total_applications += apps
        if env.environment.is_production:
            summary.production_applications += apps
        else:
            summary.sandbox_applications += apps
        for report in env.applications:
            summary.estimated_flows += report.flow_analysis.estimated_flows
            summary.estimated_monthly_messages += report.message_analysis.estimated_monthly_messages
    return summary


def summarize_organization(inventory: Inventory) -> OrganizationSummary:
    summary = OrganizationSummary()
    for group in inventory.business_groups:
        for env in group.environments:
            is_production = env.environment.is_production
            summary.applications.add(len(env.applications), is_production)
            for report in env.applications:
                summary.estimated_flows.add(report.flow_analysis.estimated_flows, is_production)
                summary.estimated_monthly_messages.add(
                    report.message_analysis.estimated_monthly_messages, is_production)
    return summary


# =============================================================================
# Reports
# =============================================================================

APPLICATION_CSV = "billable-consumption-by-application.csv"
BUSINESS_GROUP_CSV = "billable-consumption-by-business-group.csv"
ORGANIZATION_CSV = "organization-consumption-summary.csv"
INVENTORY_JSON = "complete-billable-consumption.json"


def format_date(value: Any) -> str:
    """Render epoch milliseconds or an ISO timestamp as YYYY-MM-DD."""
    if value in (None, ""):
        return "N/A"
    try:
        if _is_number(value):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).strftime("%Y-%m-%d")
    except (ValueError, OverflowError, OSError):
        return "N/A"


def _safe_name(name: str) -> str:
    return name.replace("/", "_").replace(" ", "_")


def to_dict(obj) -> Any:
    if hasattr(obj, '__dataclass_fields__'):
        return {k: to_dict(v) for k, v in asdict(obj).items()}
    elif isinstance(obj, list):
        return [to_dict(i) for i in obj]
    elif isinstance(obj, dict):
        return {k: to_dict(v) for k, v in obj.items()}
    return obj


class ReportWriter:
    """Writes JSON and CSV output files."""

    def __init__(self, config: AnalyzerConfig):
        self.config = config
        self.output_path = Path(config.output_dir)

    def _write_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str)
        logger.debug(f"Saved data to {path}")

    def write_application(self, group: BusinessGroup, env: Environment, report: ApplicationReport) -> Path:
        path = self.output_path / _safe_name(group.group_id) / f"{_safe_name(report.application.domain)}.json"
        self._write_json(path, {
            "business_group": {"id": group.group_id, "name": group.name},
            "environment": to_dict(env),
            "application": to_dict(report),
        })
        return path

    def write_inventory(self, inventory: Inventory) -> Path:
        data = to_dict(inventory)
        data["summary"] = to_dict(inventory.summary)
        path = self.output_path / INVENTORY_JSON
        self._write_json(path, data)
        return path

    def write_application_csv(self, inventory: Inventory) -> Path:
        path = self.output_path / APPLICATION_CSV
        with open(path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow([
                "Business Group", "Environment", "Is Production", "Application", "Status",
                "Mule Version", "Worker Type", "Workers", "Estimated Flows", "Confidence",
                "Est. Daily Messages", "Est. Monthly Messages", "Message Confidence", "Last Updated"
            ])
            for group in inventory.business_groups:
                for env in group.environments:
                    for report in env.applications:
                        app = report.application
                        writer.writerow([
                            group.group.name,
                            env.environment.name,
                            "Yes" if env.environment.is_production else "No",
                            app.domain,
                            app.status or "Unknown",
                            app.mule_version or "Unknown",
                            app.worker_type or "Unknown",
                            app.worker_count or 0,
                            report.flow_analysis.estimated_flows,
                            report.flow_analysis.confidence,
                            report.message_analysis.estimated_daily_messages,
                            report.message_analysis.estimated_monthly_messages,
                            report.message_analysis.confidence,
                            format_date(app.last_update_time),
                        ])
        return path

    def write_business_group_csv(self, inventory: Inventory) -> Path:
        path = self.output_path / BUSINESS_GROUP_CSV
        with open(path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow([
                "Business Group", "Business Group ID", "Total Applications", "Production Apps",
                "Sandbox Apps", "Estimated Total Flows", "Est. Monthly Messages"
            ])
            for group in inventory.business_groups:
                s = summarize_business_group(group)
                writer.writerow([
                    s.name, s.group_id, s.total_applications, s.production_applications,
                    s.sandbox_applications, s.estimated_flows, s.estimated_monthly_messages
                ])
        return path

    def write_organization_csv(self, inventory: Inventory) -> Path:
        path = self.output_path / ORGANIZATION_CSV
        summary = summarize_organization(inventory)
        with open(path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow(["Metric", "Total", "Production", "Sandbox"])
            for label, split in (("Applications", summary.applications),
                                 ("Estimated Flows", summary.estimated_flows),
                                 ("Est. Monthly Messages", summary.estimated_monthly_messages)):
                writer.writerow([label, split.total, split.production, split.sandbox])
        return path


# =============================================================================
# Main Analysis
# =============================================================================

class ConsumptionAnalyzer:
    """Orchestrates discovery, estimation and reporting."""

    def __init__(self, config: AnalyzerConfig, client: Optional[AnypointClient] = None):
        self.config = config
        self.client = client or AnypointClient(config)
        self.accounts = AccountsDiscovery(self.client)
        self.runtime = RuntimeManagerDiscovery(self.client)
        self.monitoring = MonitoringDiscovery(self.client)
        self.writer = ReportWriter(config)
        self.inventory: Optional[Inventory] = None

    def run_analysis(self) -> Inventory:
        """Run the complete analysis."""
        logger.info("=" * 70)
        logger.info("🚀 Starting Anypoint Platform billable consumption analysis")
        logger.info("=" * 70)
        logger.debug(f"Analyzing data for the last {self.config.analyze_days} days; "
                     f"JAR downloads {'enabled' if self.config.download_jars else 'disabled'}")

        Path(self.config.output_dir).mkdir(parents=True, exist_ok=True)
        self.client.authenticate()

        logger.info("\n📦 Fetching organization structure...")
        root = self.accounts.get_root_organization()
        logger.info(f"  Root Organization: {root.name} ({root.group_id})")

        groups = self.accounts.get_business_groups(root.group_id)
        logger.info(f"  Found {len(groups)} business groups")

        self.inventory = Inventory(
            timestamp=datetime.now(timezone.utc).isoformat(),
            root_organization=root
        )
        seen_envs = set()

        for group in groups:
            logger.info(f"\n🏢 Processing business group: {group.name} ({group.group_id})")
            group_report = BusinessGroupReport(group=group)

            environments = self.accounts.get_environments(group.group_id)
            logger.info(f"  Found {len(environments)} environments in {group.name}")

            for env in environments:
                if env.env_id in seen_envs:
                    logger.debug(f"Skipping duplicate environment {env.env_id}")
                    continue
                seen_envs.add(env.env_id)
                group_report.environments.append(self._analyze_environment(group, env))

            self.inventory.business_groups.append(group_report)

        logger.info("\n" + "=" * 70)
        logger.info("✅ Analysis Complete!")
        logger.info("=" * 70)
        return self.inventory

    def _analyze_environment(self, group: BusinessGroup, env: Environment) -> EnvironmentReport:
        logger.info(f"  Environment: {env.name} ({env.env_id})")
        env_report = EnvironmentReport(environment=env)

        applications = self.runtime.get_applications(group.group_id, env.env_id)
        logger.info(f"  Found {len(applications)} applications in {env.name}")

        for app in applications:
            try:
                report = self.analyze_application(group, env, app)
            except Exception as e:
                logger.warning(f"  ⚠️  Error analyzing application {app.domain}: {e}")
                report = ApplicationReport(
                    application=app,
                    flow_analysis=estimate_from_metadata(None),
                    message_analysis=estimate_messages(None)
                )
            env_report.applications.append(report)
            self.writer.write_application(group, env, report)
        return env_report

    def analyze_application(self, group: BusinessGroup, env: Environment,
                            app: Application) -> ApplicationReport:
        logger.info(f"  Processing application: {app.domain}")

        details = self.runtime.get_application_details(group.group_id, env.env_id, app.domain)
        metadata = Application.from_api(details) if details else None

        artifact = None
        if self.config.download_jars and details:
            artifact = self.runtime.download_artifact(group.group_id, env.env_id, details)

        monitoring = self.monitoring.get_monitoring_data(group.group_id, env.env_id, app.domain)

        flow_analysis = count_flows(artifact.path if artifact else None, metadata)
        message_analysis = estimate_messages(monitoring, self.config.analyze_days)
        logger.debug(f"{app.domain}: flows={flow_analysis.estimated_flows} ({flow_analysis.source}), "
                     f"messages={message_analysis.estimated_monthly_messages}/month ({message_analysis.source})")

        return ApplicationReport(
            application=app,
            flow_analysis=flow_analysis,
            message_analysis=message_analysis,
            artifact=artifact,
            monitoring=monitoring
        )

    def save_output(self) -> Dict[str, str]:
        """Save aggregate JSON and CSV reports."""
        if not self.inventory:
            raise ValueError("No output to save. Run analysis first.")

        saved_files = {"inventory": str(self.writer.write_inventory(self.inventory))}
        if self.config.export_csv:
            logger.info("Generating CSV reports...")
            saved_files["applications_csv"] = str(self.writer.write_application_csv(self.inventory))
            saved_files["business_groups_csv"] = str(self.writer.write_business_group_csv(self.inventory))
            saved_files["organization_csv"] = str(self.writer.write_organization_csv(self.inventory))

        logger.info(f"\n📁 Output saved to: {Path(self.config.output_dir).resolve()}")
        for name, path in saved_files.items():
            logger.info(f"  • {name}: {path}")
        return saved_files

    def print_summary(self) -> None:
        summary = self.inventory.summary
        print(f"\n  Total Applications: {summary.total_applications}")
        print(f"  Total Estimated Flows: {summary.total_estimated_flows}")
        print(f"  Total Estimated Monthly Messages: {summary.total_estimated_monthly_messages:,}")
        print(f"  Business Groups: {len(self.inventory.business_groups)}")
        print(f"  Output Directory: {Path(self.config.output_dir).resolve()}")
        self.client.print_stats()


# =============================================================================
# CLI
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="MuleSoft Consumption Analyzer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Credentials from ANYPOINT_CLIENT_ID / ANYPOINT_CLIENT_SECRET or .env
  python mule_consumption_analyzer.py

  # Explicit credentials, skip JAR downloads
  python mule_consumption_analyzer.py --client-id xxx --client-secret xxx --no-jars

  # Positional form with debug output
  python mule_consumption_analyzer.py <clientId> <clientSecret> debug
        """
    )

    parser.add_argument("client_id_pos", nargs="?", metavar="client_id", help="Connected App Client ID")
    parser.add_argument("client_secret_pos", nargs="?", metavar="client_secret", help="Connected App Client Secret")
    parser.add_argument("mode", nargs="?", choices=["debug"], help="Pass 'debug' for verbose output")

    parser.add_argument("--client-id", help="Connected App Client ID")
    parser.add_argument("--client-secret", help="Connected App Client Secret")
    parser.add_argument("--org-id", help="Root organization ID (discovered when omitted)")
    parser.add_argument("--region", choices=["us", "eu", "gov"], help="Anypoint region")

    parser.add_argument("--days", type=int, help="Analysis window in days (default: 30)")
    parser.add_argument("--no-csv", action="store_true", help="Skip CSV reports")
    parser.add_argument("--no-jars", action="store_true", help="Skip JAR downloads")

    parser.add_argument("--output-dir", help="Output directory (default: consumption-data)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    args.client_id = args.client_id or args.client_id_pos
    args.client_secret = args.client_secret or args.client_secret_pos

    try:
        config = AnalyzerConfig.from_env(args)
        config.validate()
    except ConfigurationError as e:
        logger.error(f"Error: {e}")
        logger.error("Usage: mule_consumption_analyzer.py <clientId> <clientSecret> [debug]")
        return 1

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    analyzer = ConsumptionAnalyzer(config)
    started = time.time()

    try:
        analyzer.run_analysis()
        analyzer.save_output()
        analyzer.print_summary()
        print(f"\n⏱️  Completed in {time.time() - started:.1f}s")
    except Exception as e:
        logger.error(f"Error analyzing billable consumption: {e}")
        if config.debug:
            import traceback
            traceback.print_exc()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
