"""
Service model and service registry clients.

A Service is the declarative state of a Knative-style service: its desired
traffic split (spec), the traffic actually being served (status) and its
annotations. The registry fetches and replaces that state as a whole.
"""

import copy
import requests
import yaml
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from release_operator.errors import ConfigurationError, ConflictError, NotFoundError, ServiceRegistryError
from release_operator.traffic import STABLE_TAG, TrafficTarget

# Annotations holding the rollout state between runs.
ANNOTATION_PREFIX = "rollout.cloud.run/"
STABLE_REVISION_ANNOTATION = ANNOTATION_PREFIX + "stableRevision"
CANDIDATE_REVISION_ANNOTATION = ANNOTATION_PREFIX + "candidateRevision"
LAST_FAILED_CANDIDATE_REVISION_ANNOTATION = ANNOTATION_PREFIX + "lastFailedCandidateRevision"
LAST_ROLLOUT_ANNOTATION = ANNOTATION_PREFIX + "lastRollout"
LAST_HEALTH_REPORT_ANNOTATION = ANNOTATION_PREFIX + "lastHealthReport"

# Label Cloud Run sets on every service with the region it runs in.
LOCATION_LABEL = "cloud.googleapis.com/location"


@dataclass
class Service:
    """Declarative state of a service"""
    name: str
    project: str
    region: str
    traffic: List[TrafficTarget] = field(default_factory=list)
    status_traffic: List[TrafficTarget] = field(default_factory=list)
    annotations: Dict[str, str] = field(default_factory=dict)
    latest_ready_revision: str = ""
    resource_version: str = ""
    raw: Dict = field(default_factory=dict)  # full API object, kept for round-trips

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.project, self.region, self.name)

    def to_dict(self) -> Dict:
        """Serialize to a serving.knative.dev/v1 Service object"""
        data = copy.deepcopy(self.raw)
        data.setdefault('apiVersion', 'serving.knative.dev/v1')
        data.setdefault('kind', 'Service')

        metadata = data.setdefault('metadata', {})
        metadata['name'] = self.name
        metadata['namespace'] = self.project
        metadata['annotations'] = dict(self.annotations)
        if self.resource_version:
            metadata['resourceVersion'] = self.resource_version

        data.setdefault('spec', {})['traffic'] = [t.to_dict() for t in self.traffic]
        return data

    @classmethod
    def from_dict(cls, data: Dict, region: str) -> 'Service':
        metadata = data.get('metadata', {})
        spec = data.get('spec', {})
        status = data.get('status', {})
        return cls(
            name=metadata.get('name', ''),
            project=metadata.get('namespace', ''),
            region=region,
            traffic=[TrafficTarget.from_dict(t) for t in spec.get('traffic', [])],
            status_traffic=[TrafficTarget.from_dict(t) for t in status.get('traffic', [])],
            annotations=dict(metadata.get('annotations') or {}),
            latest_ready_revision=status.get('latestReadyRevisionName', ''),
            resource_version=str(metadata.get('resourceVersion', '')),
            raw=copy.deepcopy(data),
        )


def detect_stable_revision(service: Service) -> str:
    """
    Name of the stable revision, or "" if it cannot be determined.

    The stable annotation wins. Without it, a served revision tagged stable is
    used, then a revision serving all the traffic on its own.
    """
    stable = service.annotations.get(STABLE_REVISION_ANNOTATION, "")
    if stable:
        return stable

    for target in service.status_traffic:
        if target.tag == STABLE_TAG and target.percent > 0 and target.revision_name:
            return target.revision_name

    serving = [t for t in service.status_traffic if t.percent > 0]
    if len(serving) == 1 and serving[0].percent == 100 and serving[0].revision_name:
        return serving[0].revision_name

    return ""


def detect_candidate_revision(service: Service, stable: str) -> str:
    """
    Name of the candidate revision, or "" if there is none.

    The candidate is the latest ready revision, unless it is the stable one
    or the one that was last rolled back.
    """
    candidate = service.latest_ready_revision
    if not candidate or candidate == stable:
        return ""
    if candidate == service.annotations.get(LAST_FAILED_CANDIDATE_REVISION_ANNOTATION):
        return ""
    return candidate


def current_candidate_percent(service: Service, candidate: str) -> int:
    """Share of traffic the candidate is serving, 0 if none"""
    for target in service.status_traffic:
        if target.revision_name == candidate and target.percent > 0 and not target.latest_revision:
            return target.percent
    return 0


class ServiceRegistry(ABC):
    """Reads and replaces the declarative state of services"""

    @abstractmethod
    def get_service(self, project: str, region: str, name: str) -> Service:
        """Fetch a service; raises NotFoundError if it does not exist"""

    @abstractmethod
    def replace_service(self, service: Service) -> Service:
        """Replace a service; raises ConflictError on a stale resource version"""


class InMemoryServiceRegistry(ServiceRegistry):
    """
    Registry keeping services in memory.

    Replacing a service reconciles its served traffic from the desired traffic
    at once, the way the control plane does eventually.
    """

    def __init__(self, services: Optional[List[Service]] = None):
        self.services: Dict[Tuple[str, str, str], Service] = {}
        self.replace_count = 0
        for service in services or []:
            self.add_service(service)

    @classmethod
    def from_file(cls, path: str) -> 'InMemoryServiceRegistry':
        """
        Seed a registry from a YAML or JSON file holding a list of
        serving.knative.dev/v1 Service objects, e.g. the output of
        `gcloud run services describe --format=json`.

        The region of each service is read from its location label.
        """
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigurationError(f"could not read services file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in services file {path}: {e}") from e

        if isinstance(data, dict) and data.get('kind') == 'List':
            data = data.get('items')
        if not isinstance(data, list):
            raise ConfigurationError(f"services file {path} must hold a list of Service objects")

        services = []
        for item in data:
            if not isinstance(item, dict):
                raise ConfigurationError(f"invalid service entry in {path}: {item!r}")
            metadata = item.get('metadata') or {}
            labels = metadata.get('labels') if isinstance(metadata, dict) else None
            region = labels.get(LOCATION_LABEL) if isinstance(labels, dict) else None
            if not region or not metadata.get('name') or not metadata.get('namespace'):
                raise ConfigurationError(
                    f"service entry in {path} needs metadata.name, metadata.namespace "
                    f"and the {LOCATION_LABEL} label"
                )
            services.append(Service.from_dict(item, region))
        return cls(services)

    def add_service(self, service: Service):
        stored = copy.deepcopy(service)
        stored.resource_version = "1"
        self.services[stored.key] = stored

    def get_service(self, project: str, region: str, name: str) -> Service:
        key = (project, region, name)
        if key not in self.services:
            raise NotFoundError(f"service {name!r} not found in {project}/{region}")
        return copy.deepcopy(self.services[key])

    def replace_service(self, service: Service) -> Service:
        current = self.services.get(service.key)
        if current is None:
            raise NotFoundError(f"could not update service {service.name!r}: not found")
        if service.resource_version != current.resource_version:
            raise ConflictError(
                f"could not update service {service.name!r}: resource version "
                f"{service.resource_version!r} is stale (current {current.resource_version!r})"
            )

        stored = copy.deepcopy(service)
        stored.resource_version = str(int(current.resource_version) + 1)
        stored.status_traffic = [
            TrafficTarget(
                target.revision_name or stored.latest_ready_revision,
                target.percent,
                target.tag,
                target.latest_revision
            )
            for target in stored.traffic
        ]
        self.services[stored.key] = stored
        self.replace_count += 1
        return copy.deepcopy(stored)


class CloudRunServiceRegistry(ServiceRegistry):
    """Cloud Run admin API (serving.knative.dev/v1) over HTTP"""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30,
        session: Optional[requests.Session] = None
    ):
        self.token = token
        self.base_url = base_url.rstrip('/') if base_url else None
        self.timeout = timeout
        self.session = session or requests.Session()

    def _service_url(self, project: str, region: str, name: str) -> str:
        base = self.base_url or f"https://{region}-run.googleapis.com"
        return f"{base}/apis/serving.knative.dev/v1/namespaces/{project}/services/{name}"

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.token:
            headers['Authorization'] = f"Bearer {self.token}"
        return headers

    def get_service(self, project: str, region: str, name: str) -> Service:
        url = self._service_url(project, region, name)
        try:
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise ServiceRegistryError(f"could not get service {name!r}: {e}") from e

        self._check_response(response, name, "get")
        return self._parse_response(response, name, region, "get")

    def replace_service(self, service: Service) -> Service:
        url = self._service_url(service.project, service.region, service.name)
        try:
            response = self.session.put(
                url,
                json=service.to_dict(),
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ServiceRegistryError(f"could not update service {service.name!r}: {e}") from e

        self._check_response(response, service.name, "update")
        return self._parse_response(response, service.name, service.region, "update")

    def _check_response(self, response, name: str, operation: str):
        if response.status_code == 404:
            raise NotFoundError(f"could not {operation} service {name!r}: not found")
        if response.status_code == 409:
            raise ConflictError(f"could not {operation} service {name!r}: {response.text}")
        if response.status_code >= 400:
            raise ServiceRegistryError(
                f"could not {operation} service {name!r}: HTTP {response.status_code} {response.text}"
            )

    def _parse_response(self, response, name: str, region: str, operation: str) -> Service:
        try:
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError(f"expected a Service object, got {type(data).__name__}")
            return Service.from_dict(data, region)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ServiceRegistryError(f"could not {operation} service {name!r}: invalid response: {e}") from e
