"""Workspace actions: acquire the scratch directory, promote it to the archive."""

import logging
import time
from dataclasses import dataclass

from common import ActionResult
from config import ClusterConfig
from run_state import WorkflowRun
from workspace import Workspace

logger = logging.getLogger(__name__)


@dataclass
class AcquireWorkspaceAction:
    """Reject stray archives, then create a fresh scratch directory."""
    name: str

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        workspace = Workspace()
        workspace.preflight(config.cluster_name)
        run.workspace = workspace.acquire()
        return ActionResult(success=True, message=str(run.workspace), duration=time.time() - start)


@dataclass
class PromoteArtifactsAction:
    """Prune transient output and rename the workspace to ~/.gokp/<name>."""
    name: str

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        archive = Workspace().promote(run.require('workspace'), config.cluster_name)
        run.relocate(archive)
        logger.info(f"[{self.name}] Kubeconfig: {run.target.kubeconfig if run.target else 'n/a'}")
        return ActionResult(success=True, message=str(archive), duration=time.time() - start)
