"""GitOps repository skeleton.

Layout written into the local clone:

    cluster/bootstrap/base/                 Argo CD install (upstream manifests)
    cluster/bootstrap/overlays/default/     Overlay applied by the installer
    cluster/bootstrap/applications/         Application definitions, applied last
    cluster/core/                           Core components, one directory each
    cluster/capi/                           Exported cluster definition
    apps/                                   Workload applications
"""

from dataclasses import dataclass
from pathlib import Path

import yaml

from errors import ResourceError

ARGOCD_VERSION = 'v2.3.3'
ARGOCD_INSTALL_URL = f'https://raw.githubusercontent.com/argoproj/argo-cd/{ARGOCD_VERSION}/manifests/install.yaml'
ARGOCD_NAMESPACE = 'argocd'
IN_CLUSTER = 'https://kubernetes.default.svc'


def kustomization(resources: list[str], **extra) -> dict:
    return {
        'apiVersion': 'kustomize.config.k8s.io/v1beta1',
        'kind': 'Kustomization',
        **extra,
        'resources': resources,
    }


def _sync_policy(automated: bool = True) -> dict:
    policy: dict = {'syncOptions': ['CreateNamespace=true']}
    if automated:
        policy['automated'] = {'prune': True, 'selfHeal': True}
    return policy


def directory_appset(name: str, repo_url: str, revision: str, path_glob: str, prefix: str) -> dict:
    """ApplicationSet creating one Application per directory under path_glob."""
    return {
        'apiVersion': 'argoproj.io/v1alpha1',
        'kind': 'ApplicationSet',
        'metadata': {'name': name, 'namespace': ARGOCD_NAMESPACE},
        'spec': {
            'generators': [{'git': {
                'repoURL': repo_url,
                'revision': revision,
                'directories': [{'path': path_glob}],
            }}],
            'template': {
                'metadata': {'name': prefix + '-{{path.basename}}'},
                'spec': {
                    'project': 'default',
                    'source': {'repoURL': repo_url, 'targetRevision': revision, 'path': '{{path}}'},
                    'destination': {'server': IN_CLUSTER},
                    'syncPolicy': _sync_policy(),
                },
            },
        },
    }


def cluster_definition_app(repo_url: str, revision: str) -> dict:
    """Application for the exported cluster definition.

    Sync is manual: the live objects arrive through the pivot, and changes to
    the cluster shape are a deliberate operator action.
    """
    return {
        'apiVersion': 'argoproj.io/v1alpha1',
        'kind': 'Application',
        'metadata': {'name': 'cluster-definition', 'namespace': ARGOCD_NAMESPACE},
        'spec': {
            'project': 'default',
            'source': {'repoURL': repo_url, 'targetRevision': revision, 'path': 'cluster/capi'},
            'destination': {'server': IN_CLUSTER},
            'syncPolicy': _sync_policy(automated=False),
        },
    }


@dataclass
class RepoTemplates:
    """Renders the skeleton for one repository."""
    cluster_name: str

    def files(self, repo_url: str, revision: str) -> dict[str, object]:
        """Map of relative path to content (dict → YAML, str → verbatim)."""
        return {
            'README.md': (
                f"# {self.cluster_name}\n\n"
                "Desired state of this cluster, reconciled by Argo CD.\n\n"
                "* `cluster/core/` - core components, one Application per directory\n"
                "* `cluster/capi/` - Cluster API definition of this cluster (manual sync)\n"
                "* `apps/` - workloads, one Application per directory\n"
            ),
            'cluster/bootstrap/base/kustomization.yaml': kustomization(
                ['argocd-ns.yaml', ARGOCD_INSTALL_URL], namespace=ARGOCD_NAMESPACE),
            'cluster/bootstrap/base/argocd-ns.yaml': {
                'apiVersion': 'v1',
                'kind': 'Namespace',
                'metadata': {'name': ARGOCD_NAMESPACE},
            },
            'cluster/bootstrap/overlays/default/kustomization.yaml': kustomization(
                ['../../base'], patches=[{'path': 'argocd-cm.yaml'}]),
            'cluster/bootstrap/overlays/default/argocd-cm.yaml': {
                'apiVersion': 'v1',
                'kind': 'ConfigMap',
                'metadata': {
                    'name': 'argocd-cm',
                    'namespace': ARGOCD_NAMESPACE,
                    'labels': {'app.kubernetes.io/name': 'argocd-cm', 'app.kubernetes.io/part-of': 'argocd'},
                },
                'data': {
                    'kustomize.buildOptions': '--enable-helm',
                    'application.resourceTrackingMethod': 'annotation',
                },
            },
            'cluster/bootstrap/applications/00-core.yaml': directory_appset(
                'cluster-core', repo_url, revision, 'cluster/core/*', 'core'),
            'cluster/bootstrap/applications/10-cluster-definition.yaml': cluster_definition_app(repo_url, revision),
            'cluster/bootstrap/applications/20-apps.yaml': directory_appset(
                'apps', repo_url, revision, 'apps/*', 'app'),
            'cluster/core/.gitkeep': '',
            'cluster/capi/.gitkeep': '',
            'apps/.gitkeep': '',
        }

    def write(self, root: Path, handle) -> list[Path]:
        """Write the skeleton under root. Returns written paths."""
        written = []
        try:
            for rel, content in self.files(handle.ssh_url, handle.default_branch).items():
                path = root / rel
                path.parent.mkdir(parents=True, exist_ok=True)
                if isinstance(content, dict):
                    content = yaml.safe_dump(content, sort_keys=False)
                path.write_text(content, encoding='utf-8')
                written.append(path)
        except OSError as e:
            raise ResourceError(f"Cannot write repository skeleton under {root}: {e}") from e
        return written
