"""GitOps controller (Argo CD) installation on the target cluster."""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from actions.apply import DeclarativeApplier, load_split_dir
from actions.github import RepositoryHandle
from actions.render import ManifestRenderer
from actions.templates import ARGOCD_NAMESPACE
from common import ActionResult, CancelToken, wait_until
from config import FIELD_MANAGER, ClusterConfig
from errors import ApplyError, ResourceError
from kube import ClusterEndpoint, KubeClient, KubectlError
from run_state import WorkflowRun

logger = logging.getLogger(__name__)

OVERLAY = Path('cluster/bootstrap/overlays/default')
APPLICATIONS = Path('cluster/bootstrap/applications')


def repository_secret(handle: RepositoryHandle) -> dict:
    """Argo CD repository credential built from the deploy key.

    Applied straight to the cluster; the private key is never committed.
    """
    if handle.deploy_key is None:
        raise ResourceError(f"No deploy key for repository {handle.name}")
    try:
        private_key = handle.deploy_key.read_text(encoding='utf-8')
    except OSError as e:
        raise ResourceError(f"Cannot read deploy key {handle.deploy_key}: {e}") from e
    return {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'metadata': {
            'name': f'repo-{handle.name}',
            'namespace': ARGOCD_NAMESPACE,
            'labels': {'argocd.argoproj.io/secret-type': 'repository'},
        },
        'stringData': {
            'type': 'git',
            'url': handle.ssh_url,
            'sshPrivateKey': private_key,
        },
    }


def deployment_available(obj: Optional[dict]) -> bool:
    if not obj:
        return False
    status = obj.get('status') or {}
    return (status.get('availableReplicas') or 0) >= 1


class GitOpsInstaller:
    """Installs Argo CD and points it at the cluster repository."""

    def __init__(
        self,
        workdir: Path,
        renderer: Optional[ManifestRenderer] = None,
        applier: Optional[DeclarativeApplier] = None,
        ready_timeout: int = 600,
        poll_interval: int = 10,
        cancel: Optional[CancelToken] = None,
    ):
        self.workdir = workdir
        self.renderer = renderer or ManifestRenderer()
        self.applier = applier or DeclarativeApplier()
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.cancel = cancel

    def install_controller(self, target: ClusterEndpoint, handle: RepositoryHandle) -> None:
        """Render and apply the Argo CD install, then the Application definitions."""
        manifest_set = self.renderer.render(
            handle.local_path / OVERLAY,
            self.workdir / 'argocd-install.yaml',
            self.workdir / 'argocd-install-output',
        )
        self.applier.apply(target, manifest_set)

        client = KubeClient(target)
        logger.info("Waiting for argocd-server to become available")
        wait_until(
            lambda: deployment_available(client.get('deployment', 'argocd-server', ARGOCD_NAMESPACE)),
            timeout=self.ready_timeout,
            interval=self.poll_interval,
            description='argocd-server deployment',
            cancel=self.cancel,
        )

        secret = repository_secret(handle)
        try:
            client.apply_object(secret, FIELD_MANAGER)
        except KubectlError as e:
            raise ApplyError(f"Secret/{secret['metadata']['name']}", e.stderr) from e

        applications = load_split_dir(handle.local_path / APPLICATIONS)
        self.applier.apply(target, applications)
        logger.info(f"Argo CD is tracking {handle.url}")


@dataclass
class InstallGitOpsAction:
    """Install Argo CD on the target and register the cluster repository."""
    name: str
    ready_timeout: int = 600
    poll_interval: int = 10

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        handle = RepositoryHandle.from_dict(run.require('repository'))
        installer = GitOpsInstaller(
            run.require('workspace'),
            ready_timeout=self.ready_timeout,
            poll_interval=self.poll_interval,
            cancel=run.cancel,
        )
        installer.install_controller(run.require('target'), handle)
        return ActionResult(success=True, message=f"Argo CD tracking {handle.url}",
                            duration=time.time() - start)
