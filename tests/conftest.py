"""Shared pytest fixtures for gokp tests."""

import copy
import logging
import sys
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from kube import ClusterEndpoint, KubectlError, object_key, resource_ref  # noqa: E402

PAUSED = 'cluster.x-k8s.io/paused'
CLUSTER_LABEL = 'cluster.x-k8s.io/cluster-name'


def merge_patch(target, patch):
    """RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


class FakeApiServer:
    """In-memory stand-in for one API server.

    reconcile maps Kind/ns/name to the status a controller would report once
    the object is no longer paused. fail maps (verb, resource) to an error
    message raised as KubectlError.
    """

    def __init__(self, name: str):
        self.name = name
        self.objects: dict[tuple, dict] = {}
        self.reconcile: dict[str, dict] = {}
        self.fail: dict[tuple, str] = {}
        self.deleted: list[str] = []
        self.on_delete = None
        self._uid = 0

    def _next_uid(self) -> str:
        self._uid += 1
        return f"{self.name}-uid-{self._uid}"

    @staticmethod
    def _key(resource: str, namespace, name: str) -> tuple:
        return (resource, namespace or '', name)

    def add(self, obj: dict) -> dict:
        """Store obj as-is (server fields included), assigning a uid if missing."""
        obj = copy.deepcopy(obj)
        obj.setdefault('metadata', {}).setdefault('uid', self._next_uid())
        meta = obj['metadata']
        self.objects[self._key(resource_ref(obj), meta.get('namespace'), meta['name'])] = obj
        return obj

    def find(self, kind: str, name: str, namespace: str = 'default'):
        for obj in self.objects.values():
            meta = obj['metadata']
            if obj['kind'] == kind and meta['name'] == name and meta.get('namespace', '') == namespace:
                return obj
        return None

    def keys(self) -> set:
        return {object_key(o) for o in self.objects.values()}

    def check_fail(self, verb: str, resource: str) -> None:
        message = self.fail.get((verb, resource))
        if message:
            raise KubectlError([verb, resource], message)


class FakeKubeClient:
    """KubeClient interface backed by a FakeApiServer."""

    def __init__(self, endpoint: ClusterEndpoint, server: FakeApiServer):
        self.endpoint = endpoint
        self.server = server

    @staticmethod
    def _paused(obj: dict) -> bool:
        annotations = obj.get('metadata', {}).get('annotations') or {}
        return PAUSED in annotations or bool(obj.get('spec', {}).get('paused'))

    def get(self, resource, name, namespace=None):
        self.server.check_fail('get', resource)
        obj = self.server.objects.get(FakeApiServer._key(resource, namespace, name))
        if obj is None:
            return None
        status = self.server.reconcile.get(object_key(obj))
        if status is not None and not self._paused(obj):
            obj['status'] = copy.deepcopy(status)
        return copy.deepcopy(obj)

    def list(self, resource, namespace=None, selector=None):
        self.server.check_fail('list', resource)
        items = []
        for (ref, ns, _name), obj in self.server.objects.items():
            if ref != resource or (namespace and ns != namespace):
                continue
            if selector:
                key, value = selector.split('=', 1)
                if (obj['metadata'].get('labels') or {}).get(key) != value:
                    continue
            items.append(copy.deepcopy(obj))
        return items

    def create(self, obj):
        ref = resource_ref(obj)
        self.server.check_fail('create', ref)
        meta = obj['metadata']
        key = FakeApiServer._key(ref, meta.get('namespace'), meta['name'])
        if key in self.server.objects:
            raise KubectlError(['create'], f'{object_key(obj)} already exists')
        stored = copy.deepcopy(obj)
        stored['metadata']['uid'] = self.server._next_uid()
        stored['metadata']['resourceVersion'] = '1'
        self.server.objects[key] = stored
        return copy.deepcopy(stored)

    def patch(self, resource, name, namespace, patch, patch_type='merge'):
        self.server.check_fail('patch', resource)
        key = FakeApiServer._key(resource, namespace, name)
        if key not in self.server.objects:
            raise KubectlError(['patch', resource, name], 'NotFound')
        self.server.objects[key] = merge_patch(self.server.objects[key], patch)

    def delete(self, resource, name, namespace=None):
        self.server.check_fail('delete', resource)
        key = FakeApiServer._key(resource, namespace, name)
        obj = self.server.objects.pop(key, None)
        if obj is not None:
            if self.server.on_delete:
                self.server.on_delete(obj)
            self.server.deleted.append(object_key(obj))

    def apply_object(self, obj, field_manager):
        """Server-side apply: create, or merge into the stored object (uid kept)."""
        ref = resource_ref(obj)
        self.server.check_fail('apply', ref)
        meta = obj['metadata']
        key = FakeApiServer._key(ref, meta.get('namespace'), meta['name'])
        existing = self.server.objects.get(key)
        if existing is None:
            stored = copy.deepcopy(obj)
            stored['metadata']['uid'] = self.server._next_uid()
            stored['metadata']['resourceVersion'] = '1'
            self.server.objects[key] = stored
            return f'{object_key(obj)} serverside-applied'
        merged = merge_patch(existing, obj)
        if merged != existing:
            merged['metadata']['resourceVersion'] = str(int(existing['metadata']['resourceVersion']) + 1)
        self.server.objects[key] = merged
        return f'{object_key(obj)} serverside-applied'

    def apply_file(self, path, field_manager):
        return self.apply_object(yaml.safe_load(Path(path).read_text()), field_manager)

    def wait_for(self, resource, condition, namespace=None, timeout=60):
        self.server.check_fail('wait', resource)


class FakeKube:
    """Registry of fake API servers keyed by endpoint name."""

    def __init__(self):
        self.servers: dict[str, FakeApiServer] = {}

    def server(self, name: str) -> FakeApiServer:
        return self.servers.setdefault(name, FakeApiServer(name))

    def client(self, endpoint: ClusterEndpoint) -> FakeKubeClient:
        return FakeKubeClient(endpoint, self.server(endpoint.name))


@pytest.fixture
def gokp_home(tmp_path, monkeypatch):
    """Point GOKP_HOME at a temporary directory."""
    home = tmp_path / 'gokp-home'
    monkeypatch.setenv('GOKP_HOME', str(home))
    return home


@pytest.fixture
def fake_kube():
    return FakeKube()


@pytest.fixture
def endpoints(tmp_path):
    """Bootstrap and target endpoints with (nonexistent) kubeconfigs."""
    return (
        ClusterEndpoint(name='bootstrap', kubeconfig=tmp_path / 'kind.kubeconfig'),
        ClusterEndpoint(name='target', kubeconfig=tmp_path / 'demo1.kubeconfig'),
    )


def _obj(api_version, kind, name, owner=None, labels=None, status=None, **extra):
    obj = {
        'apiVersion': api_version,
        'kind': kind,
        'metadata': {
            'name': name,
            'namespace': 'default',
            'resourceVersion': '42',
            'creationTimestamp': '2022-03-01T00:00:00Z',
            'generation': 3,
            'managedFields': [{'manager': 'capi'}],
        },
        'spec': {},
    }
    if labels:
        obj['metadata']['labels'] = labels
    if owner is not None:
        obj['metadata']['ownerReferences'] = [{
            'apiVersion': owner['apiVersion'],
            'kind': owner['kind'],
            'name': owner['metadata']['name'],
            'uid': owner['metadata']['uid'],
        }]
    if status is not None:
        obj['status'] = status
    obj.update(extra)
    return obj


def populate_capi_graph(server: FakeApiServer, name: str = 'demo1') -> dict:
    """Store a representative Cluster API object graph on server.

    Returns the stored objects by short name.
    """
    label = {CLUSTER_LABEL: name}
    o = {}
    o['cluster'] = server.add(_obj(
        'cluster.x-k8s.io/v1beta1', 'Cluster', name, labels=label,
        status={'phase': 'Provisioned', 'controlPlaneReady': True, 'infrastructureReady': True}))
    o['awscluster'] = server.add(_obj(
        'infrastructure.cluster.x-k8s.io/v1beta1', 'AWSCluster', name, owner=o['cluster'],
        status={'ready': True}))
    o['kcp'] = server.add(_obj(
        'controlplane.cluster.x-k8s.io/v1beta1', 'KubeadmControlPlane', f'{name}-control-plane',
        owner=o['cluster'], labels=label, status={'ready': True}))
    o['cp_template'] = server.add(_obj(
        'infrastructure.cluster.x-k8s.io/v1beta1', 'AWSMachineTemplate', f'{name}-control-plane',
        labels=label))
    o['md'] = server.add(_obj(
        'cluster.x-k8s.io/v1beta1', 'MachineDeployment', f'{name}-md-0', owner=o['cluster'],
        labels=label, status={'phase': 'Running'}))
    o['ms'] = server.add(_obj(
        'cluster.x-k8s.io/v1beta1', 'MachineSet', f'{name}-md-0-abc', owner=o['md']))
    o['machine'] = server.add(_obj(
        'cluster.x-k8s.io/v1beta1', 'Machine', f'{name}-md-0-abc-x1', owner=o['ms'],
        status={'phase': 'Running'}))
    o['machine']['metadata']['finalizers'] = ['machine.cluster.x-k8s.io']
    server.add(o['machine'])
    o['awsmachine'] = server.add(_obj(
        'infrastructure.cluster.x-k8s.io/v1beta1', 'AWSMachine', f'{name}-md-0-abc-x1',
        owner=o['machine'], status={'ready': True}))
    o['kubeconfig'] = server.add(_obj('v1', 'Secret', f'{name}-kubeconfig', owner=o['cluster']))
    return o


def populate_unrelated(server: FakeApiServer) -> None:
    """Objects in the same namespace that belong to another cluster."""
    other = server.add(_obj('cluster.x-k8s.io/v1beta1', 'Cluster', 'other',
                            labels={CLUSTER_LABEL: 'other'}))
    server.add(_obj('infrastructure.cluster.x-k8s.io/v1beta1', 'AWSCluster', 'other', owner=other))
    server.add(_obj('v1', 'Secret', 'unrelated'))


def adopt_statuses(dest: FakeApiServer, source: FakeApiServer) -> None:
    """Make dest 'controllers' report the same status the source objects had."""
    for obj in source.objects.values():
        status = {k: v for k, v in (obj.get('status') or {}).items()
                  if k in ('phase', 'ready', 'controlPlaneReady', 'infrastructureReady')}
        if status:
            dest.reconcile[object_key(obj)] = status


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """cli._setup_logging swaps root handlers; put them back after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
