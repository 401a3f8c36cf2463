"""Workflow run state with save/load.

WorkflowRun is the single context object threaded through every action. It
tracks the orchestrator state, the two cluster endpoints, the repository
handle and the pivot phase, and persists them to <workspace>/gokp-run.json
after every transition so a crashed run can be inspected or resumed.
No credentials are ever written to the state file.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from common import CancelToken
from errors import ResourceError
from kube import ClusterEndpoint

logger = logging.getLogger(__name__)

STATE_FILE = 'gokp-run.json'

# Orchestrator states, in order
INIT = 'Init'
WORKSPACE_ACQUIRED = 'WorkspaceAcquired'
BOOTSTRAP_UP = 'BootstrapUp'
TARGET_PROVISIONED = 'TargetProvisioned'
REPO_CREATED = 'RepoCreated'
REPO_SEEDED = 'RepoSeeded'
CLUSTER_YAML_EXPORTED = 'ClusterYamlExported'
REPO_PUSHED = 'RepoPushed'
GITOPS_INSTALLED = 'GitOpsInstalled'
PIVOTED = 'Pivoted'
BOOTSTRAP_DOWN = 'BootstrapDown'
ARTIFACTS_PROMOTED = 'ArtifactsPromoted'
DONE = 'Done'
ABORTED = 'Aborted'

STATES = (
    INIT, WORKSPACE_ACQUIRED, BOOTSTRAP_UP, TARGET_PROVISIONED, REPO_CREATED,
    REPO_SEEDED, CLUSTER_YAML_EXPORTED, REPO_PUSHED, GITOPS_INSTALLED, PIVOTED,
    BOOTSTRAP_DOWN, ARTIFACTS_PROMOTED, DONE,
)

# Pivot protocol phases
PIVOT_NONE = 'none'
PIVOT_PAUSED = 'paused'
PIVOT_DUAL = 'dual-existence'
PIVOT_CLEARED = 'source-cleared'
PIVOT_PHASES = (PIVOT_NONE, PIVOT_PAUSED, PIVOT_DUAL, PIVOT_CLEARED)


def state_index(state: str) -> int:
    """Position of a state in the ordered state list."""
    return STATES.index(state)


@dataclass
class WorkflowRun:
    """Mutable context of one create-cluster run.

    Attributes:
        cluster_name: Run identity
        workspace: Scratch directory (archive path once promoted)
        state: Last state reached (or Aborted)
        bootstrap: Endpoint of the disposable control plane
        target: Endpoint of the provisioned cluster
        repository: Serialized RepositoryHandle
        pivot_phase: Progress of the pivot protocol
        authoritative: Which endpoint owns the Cluster API objects
        error: {'category', 'message', 'state'} once aborted
        cancel: Shared cancellation flag (not persisted)
    """
    cluster_name: str
    workspace: Optional[Path] = None
    state: str = INIT
    bootstrap: Optional[ClusterEndpoint] = None
    target: Optional[ClusterEndpoint] = None
    repository: Optional[dict] = None
    pivot_phase: str = PIVOT_NONE
    authoritative: str = 'bootstrap'
    error: Optional[dict] = None
    history: list[dict] = field(default_factory=list)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    cancel: CancelToken = field(default_factory=CancelToken, repr=False, compare=False)

    def transition(self, state: str) -> None:
        """Record that a state was reached and persist."""
        if state not in STATES:
            raise ValueError(f"Unknown state: {state}")
        if self.state != ABORTED and state_index(state) < state_index(self.state):
            raise ValueError(f"Cannot move backwards from {self.state} to {state}")
        if self.state == ABORTED:
            # Resumed run
            self.error = None
            self.completed_at = None
        self.state = state
        self.history.append({'state': state, 'at': time.time()})
        if state == DONE:
            self.completed_at = time.time()
        self.save()

    def abort(self, category: str, message: str) -> None:
        """Mark the run aborted, remembering where it stopped."""
        self.error = {'category': category, 'message': message, 'state': self.state}
        self.state = ABORTED
        self.history.append({'state': ABORTED, 'at': time.time()})
        self.completed_at = time.time()
        self.save()

    def set_pivot_phase(self, phase: str) -> None:
        if phase not in PIVOT_PHASES:
            raise ValueError(f"Unknown pivot phase: {phase}")
        self.pivot_phase = phase
        if phase == PIVOT_CLEARED:
            self.authoritative = 'target'
        self.save()

    def require(self, attr: str) -> Any:
        """Return a field an earlier state should have filled in.

        Raises:
            ResourceError: If it is missing (state file from an older phase)
        """
        value = getattr(self, attr)
        if value is None:
            raise ResourceError(f"Run '{self.cluster_name}' has no {attr} recorded (state {self.state})")
        return value

    def relocate(self, new_root: Path) -> None:
        """Rewrite recorded paths after the workspace directory was renamed."""
        old_root = self.workspace

        def moved(path) -> Path:
            path = Path(path)
            if old_root is None:
                return path
            try:
                return new_root / path.relative_to(old_root)
            except ValueError:
                return path

        for endpoint in (self.bootstrap, self.target):
            if endpoint is not None:
                endpoint.kubeconfig = moved(endpoint.kubeconfig)
        if self.repository:
            for key in ('local_path', 'deploy_key'):
                if self.repository.get(key):
                    self.repository[key] = str(moved(self.repository[key]))
        self.workspace = new_root

    @property
    def last_completed(self) -> str:
        """Last successful state (the state before Aborted, if aborted)."""
        if self.state == ABORTED and self.error:
            return self.error.get('state', INIT)
        return self.state

    @property
    def pivot_in_flight(self) -> bool:
        return self.pivot_phase in (PIVOT_PAUSED, PIVOT_DUAL)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'cluster_name': self.cluster_name,
            'state': self.state,
            'pivot_phase': self.pivot_phase,
            'authoritative': self.authoritative,
            'history': self.history,
        }
        if self.workspace is not None:
            d['workspace'] = str(self.workspace)
        if self.bootstrap is not None:
            d['bootstrap'] = self.bootstrap.to_dict()
        if self.target is not None:
            d['target'] = self.target.to_dict()
        if self.repository is not None:
            d['repository'] = self.repository
        if self.error is not None:
            d['error'] = self.error
        if self.started_at is not None:
            d['started_at'] = self.started_at
        if self.completed_at is not None:
            d['completed_at'] = self.completed_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'WorkflowRun':
        return cls(
            cluster_name=data['cluster_name'],
            workspace=Path(data['workspace']) if data.get('workspace') else None,
            state=data.get('state', INIT),
            bootstrap=ClusterEndpoint.from_dict(data['bootstrap']) if data.get('bootstrap') else None,
            target=ClusterEndpoint.from_dict(data['target']) if data.get('target') else None,
            repository=data.get('repository'),
            pivot_phase=data.get('pivot_phase', PIVOT_NONE),
            authoritative=data.get('authoritative', 'bootstrap'),
            error=data.get('error'),
            history=data.get('history', []),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
        )

    def save(self, path: Optional[Path] = None) -> Optional[Path]:
        """Save state to JSON. No-op until a workspace exists.

        Returns:
            Path where state was saved, or None
        """
        if path is None:
            if self.workspace is None or not self.workspace.exists():
                return None
            path = self.workspace / STATE_FILE
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved run state to {path}")
        return path

    @classmethod
    def load(cls, workspace: Path) -> 'WorkflowRun':
        """Load state from <workspace>/gokp-run.json.

        The workspace path is taken from the argument, so an archived run
        (renamed directory) loads with its current location.

        Raises:
            FileNotFoundError: If the state file doesn't exist
        """
        path = workspace / STATE_FILE
        with open(path, encoding='utf-8') as f:
            data = json.load(f)
        run = cls.from_dict(data)
        run.workspace = workspace
        logger.debug(f"Loaded run state from {path}")
        return run
