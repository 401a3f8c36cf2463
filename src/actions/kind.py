"""Bootstrap control plane lifecycle (kind)."""

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from common import ActionResult, run_command
from config import BOOTSTRAP_CLUSTER_NAME, ClusterConfig
from errors import InfrastructureError
from kube import ClusterEndpoint
from run_state import PIVOT_CLEARED, WorkflowRun

logger = logging.getLogger(__name__)


class BootstrapController:
    """Creates and destroys the disposable local control plane."""

    def __init__(self, kubeconfig: Path, timeout: int = 600):
        self.kubeconfig = kubeconfig
        self.timeout = timeout

    def _check_runtime(self) -> None:
        rc, _, err = run_command(['docker', 'info'], timeout=30)
        if rc != 0:
            raise InfrastructureError(f"Container runtime unavailable: {err.strip() or 'docker info failed'}")

    def exists(self, name: str) -> bool:
        rc, out, err = run_command(['kind', 'get', 'clusters'], timeout=30)
        if rc != 0:
            raise InfrastructureError(f"kind get clusters failed: {err.strip()}")
        return name in out.split()

    def create(self, name: str) -> ClusterEndpoint:
        """Start a single-node control plane and return its endpoint.

        Raises:
            InfrastructureError: If docker/kind are unavailable or creation fails
        """
        self._check_runtime()
        logger.info(f"Creating temporary control plane '{name}'")
        rc, _, err = run_command(
            ['kind', 'create', 'cluster', '--name', name,
             '--kubeconfig', str(self.kubeconfig), '--wait', '5m'],
            timeout=self.timeout,
        )
        if rc != 0:
            raise InfrastructureError(f"kind create cluster failed: {err.strip()}")
        return ClusterEndpoint(name='bootstrap', kubeconfig=self.kubeconfig)

    def destroy(self, name: str) -> None:
        """Delete the control plane. Safe to call when it is already gone."""
        if not self.exists(name):
            logger.info(f"Temporary control plane '{name}' already absent")
            return
        logger.info(f"Deleting temporary control plane '{name}'")
        cmd = ['kind', 'delete', 'cluster', '--name', name]
        if self.kubeconfig.exists():
            cmd += ['--kubeconfig', str(self.kubeconfig)]
        rc, _, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            raise InfrastructureError(f"kind delete cluster failed: {err.strip()}")


@dataclass
class CreateBootstrapAction:
    """Start the temporary control plane inside the workspace."""
    name: str
    cluster_name: str = BOOTSTRAP_CLUSTER_NAME

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        workspace = run.require('workspace')
        controller = BootstrapController(workspace / 'kind.kubeconfig')
        run.bootstrap = controller.create(self.cluster_name)
        logger.info(f"[{self.name}] Bootstrap API server: {run.bootstrap.server or 'unknown'}")
        return ActionResult(
            success=True,
            message=f"Control plane '{self.cluster_name}' running",
            duration=time.time() - start,
        )


@dataclass
class DestroyBootstrapAction:
    """Delete the temporary control plane once the target owns the cluster."""
    name: str
    cluster_name: str = BOOTSTRAP_CLUSTER_NAME

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        if run.pivot_phase != PIVOT_CLEARED:
            raise InfrastructureError(
                f"Refusing to delete '{self.cluster_name}': pivot is '{run.pivot_phase}', "
                "the bootstrap cluster still owns the Cluster API objects")

        kubeconfig = run.bootstrap.kubeconfig if run.bootstrap else run.require('workspace') / 'kind.kubeconfig'
        BootstrapController(kubeconfig).destroy(self.cluster_name)
        run.bootstrap = None
        logger.info(f"[{self.name}] Temporary control plane removed")
        return ActionResult(
            success=True,
            message=f"Control plane '{self.cluster_name}' deleted",
            duration=time.time() - start,
        )
