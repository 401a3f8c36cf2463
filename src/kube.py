"""Kubernetes API access through kubectl.

ClusterEndpoint identifies one API server by its kubeconfig. KubeClient is
the narrow interface every component uses to talk to it; all calls are
synchronous kubectl invocations scoped with --kubeconfig.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from common import run_command
from errors import TransportError

logger = logging.getLogger(__name__)


class KubectlError(TransportError):
    """kubectl exited non-zero."""

    def __init__(self, args: list[str], stderr: str):
        self.args_used = args
        self.stderr = stderr.strip()
        super().__init__(f"kubectl {' '.join(args[:3])} failed: {self.stderr}")


@dataclass
class ClusterEndpoint:
    """Access credentials for one live API server."""
    name: str
    kubeconfig: Path
    server: str = ''

    def __post_init__(self):
        if isinstance(self.kubeconfig, str):
            self.kubeconfig = Path(self.kubeconfig)
        if not self.server and self.kubeconfig.exists():
            self.server = read_server(self.kubeconfig)

    def to_dict(self) -> dict:
        return {'name': self.name, 'kubeconfig': str(self.kubeconfig), 'server': self.server}

    @classmethod
    def from_dict(cls, data: dict) -> 'ClusterEndpoint':
        return cls(name=data['name'], kubeconfig=Path(data['kubeconfig']), server=data.get('server', ''))


def read_server(kubeconfig: Path) -> str:
    """Return the API server URL of the first cluster in a kubeconfig."""
    try:
        with open(kubeconfig, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        return data['clusters'][0]['cluster']['server']
    except (OSError, yaml.YAMLError, KeyError, IndexError, TypeError):
        return ''


def resource_ref(obj: dict) -> str:
    """kubectl resource reference (kind.group) for an object."""
    api_version = obj.get('apiVersion', 'v1')
    kind = obj['kind'].lower()
    if '/' in api_version:
        return f"{kind}.{api_version.split('/')[0]}"
    return kind


def object_key(obj: dict) -> str:
    """Stable identity string: Kind/namespace/name."""
    meta = obj.get('metadata', {})
    return f"{obj.get('kind')}/{meta.get('namespace', '')}/{meta.get('name')}"


class KubeClient:
    """Thin kubectl wrapper bound to one ClusterEndpoint."""

    def __init__(self, endpoint: ClusterEndpoint, timeout: int = 120):
        self.endpoint = endpoint
        self.timeout = timeout

    def _kubectl(self, args: list[str], input_data: Optional[str] = None,
                 timeout: Optional[int] = None) -> str:
        cmd = ['kubectl', '--kubeconfig', str(self.endpoint.kubeconfig)] + args
        rc, out, err = run_command(cmd, timeout=timeout or self.timeout, input_data=input_data)
        if rc != 0:
            raise KubectlError(args, err or out)
        return out

    @staticmethod
    def _ns_args(namespace: Optional[str]) -> list[str]:
        return ['-n', namespace] if namespace else []

    def reachable(self) -> bool:
        """True if the API server answers its readiness endpoint."""
        try:
            self._kubectl(['get', '--raw', '/readyz'], timeout=15)
            return True
        except KubectlError as e:
            logger.debug(f"{self.endpoint.name} not reachable: {e.stderr}")
            return False

    def get(self, resource: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
        """Get one object, or None if it does not exist."""
        out = self._kubectl(['get', resource, name, '-o', 'json', '--ignore-not-found']
                            + self._ns_args(namespace))
        return json.loads(out) if out.strip() else None

    def list(self, resource: str, namespace: Optional[str] = None,
             selector: Optional[str] = None) -> list[dict]:
        """List objects. Unknown resource types yield an empty list."""
        args = ['get', resource, '-o', 'json'] + self._ns_args(namespace)
        if selector:
            args += ['-l', selector]
        try:
            out = self._kubectl(args)
        except KubectlError as e:
            if "doesn't have a resource type" in e.stderr:
                return []
            raise
        return json.loads(out).get('items', [])

    def apply_file(self, path: Path, field_manager: str) -> str:
        """Server-side apply one manifest file."""
        return self._kubectl([
            'apply', '--server-side', '--force-conflicts',
            f'--field-manager={field_manager}', '-f', str(path),
        ])

    def apply_object(self, obj: dict, field_manager: str) -> str:
        """Server-side apply an in-memory object."""
        return self._kubectl([
            'apply', '--server-side', '--force-conflicts',
            f'--field-manager={field_manager}', '-f', '-',
        ], input_data=json.dumps(obj))

    def create(self, obj: dict) -> dict:
        """Create an object and return it as stored by the server."""
        out = self._kubectl(['create', '-f', '-', '-o', 'json'], input_data=json.dumps(obj))
        return json.loads(out)

    def patch(self, resource: str, name: str, namespace: Optional[str], patch: dict,
              patch_type: str = 'merge') -> None:
        args = ['patch', resource, name, '--type', patch_type, '-p', json.dumps(patch)]
        self._kubectl(args + self._ns_args(namespace))

    def delete(self, resource: str, name: str, namespace: Optional[str] = None) -> None:
        self._kubectl(['delete', resource, name, '--ignore-not-found', '--wait=false']
                      + self._ns_args(namespace))

    def wait_for(self, resource: str, condition: str, namespace: Optional[str] = None,
                 timeout: int = 60) -> None:
        """Block on kubectl wait --for=condition=<condition>."""
        self._kubectl(['wait', f'--for=condition={condition}', resource, f'--timeout={timeout}s']
                      + self._ns_args(namespace), timeout=timeout + 15)


def strip_server_fields(obj: dict) -> dict:
    """Copy of obj without fields the API server assigns.

    Drops uid, resourceVersion, managedFields, creationTimestamp, generation,
    selfLink, ownerReferences and status; the caller re-links owners.
    """
    clean: dict[str, Any] = {k: v for k, v in obj.items() if k != 'status'}
    meta = dict(obj.get('metadata', {}))
    for key in ('uid', 'resourceVersion', 'managedFields', 'creationTimestamp',
                'generation', 'selfLink', 'ownerReferences', 'deletionTimestamp',
                'deletionGracePeriodSeconds'):
        meta.pop(key, None)
    clean['metadata'] = meta
    return clean
