"""Infrastructure provisioning through Cluster API (AWS provider)."""

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import requests

from actions.apply import DeclarativeApplier, split
from common import ActionResult, CancelToken, run_command, wait_until
from config import ClusterConfig
from errors import InfrastructureError, ProvisioningFailedError, ResourceError, TransportError
from kube import ClusterEndpoint, KubeClient
from run_state import WorkflowRun

logger = logging.getLogger(__name__)

INFRA_PROVIDER = 'aws'
CLUSTER_RESOURCE = 'cluster.cluster.x-k8s.io'
CLUSTER_NAMESPACE = 'default'
CNI_URL = 'https://docs.projectcalico.org/v3.21/manifests/calico.yaml'


@dataclass
class InfraSpec:
    """Provider request for one target cluster."""
    cluster_name: str
    region: str
    ssh_key: str
    control_plane_machine: str
    node_machine: str
    ha: bool = True
    skip_cloud_formation: bool = False
    kubernetes_version: str = 'v1.23.3'
    worker_count: int = 3
    provider_env: dict = field(default_factory=dict, repr=False)

    @property
    def control_plane_count(self) -> int:
        return 3 if self.ha else 1

    @classmethod
    def from_config(cls, config: ClusterConfig) -> 'InfraSpec':
        return cls(
            cluster_name=config.cluster_name,
            region=config.aws_region,
            ssh_key=config.aws_ssh_key,
            control_plane_machine=config.aws_control_plane_machine,
            node_machine=config.aws_node_machine,
            ha=config.ha,
            skip_cloud_formation=config.skip_cloud_formation,
            kubernetes_version=config.kubernetes_version,
            worker_count=config.worker_count,
            provider_env=config.provider_env(),
        )


def cluster_ready(obj: Optional[dict]) -> bool:
    """Evaluate a Cluster object.

    Returns True once the control plane and infrastructure are ready, False
    while still provisioning.

    Raises:
        ProvisioningFailedError: If the cluster reports a terminal failure
    """
    if not obj:
        return False
    status = obj.get('status') or {}
    if status.get('phase') == 'Failed' or status.get('failureReason') or status.get('failureMessage'):
        reason = status.get('failureMessage') or status.get('failureReason') or 'phase Failed'
        raise ProvisioningFailedError(f"Cluster {obj['metadata']['name']} failed: {reason}")
    return bool(status.get('controlPlaneReady') and status.get('infrastructureReady'))


class InfraProvisioner:
    """Submits a cluster request to the bootstrap cluster and waits for it."""

    def __init__(
        self,
        workdir: Path,
        ready_timeout: int = 2400,
        poll_interval: int = 20,
        cancel: Optional[CancelToken] = None,
        applier: Optional[DeclarativeApplier] = None,
    ):
        self.workdir = workdir
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.cancel = cancel
        self.applier = applier or DeclarativeApplier()

    def _env(self, spec: InfraSpec, extra: Optional[dict] = None) -> dict:
        return {**os.environ, **spec.provider_env, **(extra or {})}

    def _run(self, cmd: list[str], spec: InfraSpec, what: str, timeout: int = 600,
             extra_env: Optional[dict] = None) -> str:
        rc, out, err = run_command(cmd, timeout=timeout, env=self._env(spec, extra_env))
        if rc != 0:
            raise InfrastructureError(f"{what} failed: {err.strip()}")
        return out

    def setup_account(self, spec: InfraSpec) -> None:
        """One-time provider account setup (IAM CloudFormation stack)."""
        if spec.skip_cloud_formation:
            logger.info("Skipping CloudFormation stack creation")
            return
        logger.info("Creating CloudFormation stack for Cluster API IAM resources")
        self._run(['clusterawsadm', 'bootstrap', 'iam', 'create-cloudformation-stack',
                   '--region', spec.region], spec, 'clusterawsadm create-cloudformation-stack')

    def encode_credentials(self, spec: InfraSpec) -> str:
        out = self._run(['clusterawsadm', 'bootstrap', 'credentials', 'encode-as-profile',
                         '--region', spec.region], spec, 'clusterawsadm encode-as-profile', timeout=60)
        return out.strip()

    def init_providers(self, endpoint: ClusterEndpoint, spec: InfraSpec, credentials: str) -> None:
        """Install the Cluster API core and AWS providers on a cluster."""
        logger.info(f"Installing Cluster API providers on {endpoint.name}")
        self._run(['clusterctl', 'init', '--infrastructure', INFRA_PROVIDER,
                   '--kubeconfig', str(endpoint.kubeconfig), '--wait-providers'],
                  spec, f'clusterctl init on {endpoint.name}', timeout=900,
                  extra_env={'AWS_B64ENCODED_CREDENTIALS': credentials})

    def generate_cluster(self, bootstrap: ClusterEndpoint, spec: InfraSpec) -> Path:
        """Write the cluster-and-machine-pool request to install-cluster.yaml."""
        out = self._run([
            'clusterctl', 'generate', 'cluster', spec.cluster_name,
            '--kubeconfig', str(bootstrap.kubeconfig),
            '--kubernetes-version', spec.kubernetes_version,
            '--control-plane-machine-count', str(spec.control_plane_count),
            '--worker-machine-count', str(spec.worker_count),
        ], spec, 'clusterctl generate cluster', timeout=120)
        path = self.workdir / 'install-cluster.yaml'
        try:
            path.write_text(out, encoding='utf-8')
        except OSError as e:
            raise ResourceError(f"Cannot write {path}: {e}") from e
        return path

    def wait_for_cluster(self, bootstrap: ClusterEndpoint, name: str) -> None:
        """Block until the Cluster reports ready.

        Raises:
            ReadinessTimeoutError: Still provisioning when the timeout expires
            ProvisioningFailedError: Cluster reported a terminal failure
        """
        client = KubeClient(bootstrap)
        logger.info(f"Waiting up to {self.ready_timeout}s for cluster '{name}' to become ready")
        wait_until(
            lambda: cluster_ready(client.get(CLUSTER_RESOURCE, name, CLUSTER_NAMESPACE)),
            timeout=self.ready_timeout,
            interval=self.poll_interval,
            description=f"cluster {name} control plane",
            cancel=self.cancel,
        )

    def fetch_kubeconfig(self, bootstrap: ClusterEndpoint, name: str) -> ClusterEndpoint:
        """Retrieve the target kubeconfig and wait for its API server."""
        rc, out, err = run_command(['clusterctl', 'get', 'kubeconfig', name,
                                    '--kubeconfig', str(bootstrap.kubeconfig)], timeout=60)
        if rc != 0:
            raise InfrastructureError(f"clusterctl get kubeconfig failed: {err.strip()}")
        path = self.workdir / f'{name}.kubeconfig'
        try:
            path.write_text(out, encoding='utf-8')
            path.chmod(0o600)
        except OSError as e:
            raise ResourceError(f"Cannot write {path}: {e}") from e

        target = ClusterEndpoint(name='target', kubeconfig=path)
        client = KubeClient(target)
        wait_until(client.reachable, timeout=self.ready_timeout, interval=self.poll_interval,
                   description=f"API server of {name}", cancel=self.cancel)
        return target

    def install_cni(self, target: ClusterEndpoint, url: str = CNI_URL) -> None:
        """Download the CNI manifest and apply it to the target."""
        cni_file = self.workdir / 'cni.yaml'
        logger.info(f"Installing CNI from {url}")
        try:
            resp = requests.get(url, timeout=60)
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Cannot download CNI manifest {url}: {e}") from e
        try:
            cni_file.write_text(resp.text, encoding='utf-8')
        except OSError as e:
            raise ResourceError(f"Cannot write {cni_file}: {e}") from e
        self.applier.apply(target, split(cni_file, self.workdir / 'cni-output'))

    def provision(self, bootstrap: ClusterEndpoint, spec: InfraSpec) -> ClusterEndpoint:
        """Provision the target cluster and return its endpoint.

        Failures are fatal; nothing already created on the provider is
        rolled back.
        """
        self.setup_account(spec)
        credentials = self.encode_credentials(spec)
        self.init_providers(bootstrap, spec, credentials)

        install_yaml = self.generate_cluster(bootstrap, spec)
        manifest_set = split(install_yaml, self.workdir / 'capi-install-yamls-output')
        logger.info(f"Submitting cluster request for '{spec.cluster_name}' "
                    f"({spec.control_plane_count} control plane, {spec.worker_count} workers)")
        self.applier.apply(bootstrap, manifest_set)

        self.wait_for_cluster(bootstrap, spec.cluster_name)
        target = self.fetch_kubeconfig(bootstrap, spec.cluster_name)
        self.install_cni(target)
        self.init_providers(target, spec, credentials)
        return target


@dataclass
class ProvisionTargetAction:
    """Provision the target cluster from the bootstrap control plane."""
    name: str
    poll_interval: int = 20

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        spec = InfraSpec.from_config(config)
        provisioner = InfraProvisioner(
            run.require('workspace'),
            ready_timeout=config.ready_timeout,
            poll_interval=self.poll_interval,
            cancel=run.cancel,
        )
        logger.info(f"[{self.name}] Provisioning '{spec.cluster_name}' in {spec.region}")
        run.target = provisioner.provision(run.require('bootstrap'), spec)
        return ActionResult(
            success=True,
            message=f"Cluster '{spec.cluster_name}' ready at {run.target.server or run.target.kubeconfig}",
            duration=time.time() - start,
        )
