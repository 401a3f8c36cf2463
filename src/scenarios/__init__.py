"""Scenario definitions and orchestration.

A scenario is an ordered list of (state, action, description) tuples. The
Orchestrator runs them strictly in order; the state is recorded on the
WorkflowRun (and persisted) only after its action succeeded. The first
failure aborts the run: no retries, no rollback of completed steps.
"""

import logging
import time
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from config import ClusterConfig
from errors import GokpError, ReadinessTimeoutError
from reporting import RunReport
from run_state import BOOTSTRAP_UP, DONE, STATES, WorkflowRun, state_index
from workspace import Workspace

logger = logging.getLogger(__name__)


@runtime_checkable
class Scenario(Protocol):
    """Protocol for scenario definitions.

    Class attributes:
        name: Scenario identifier (e.g., 'create-cluster-aws')
        description: Human-readable description
    """
    name: str
    description: str

    def get_phases(self, config: ClusterConfig) -> list[tuple[str, Any, str]]:
        """Return list of (state, action, description) tuples."""
        ...


class Orchestrator:
    """Drives a WorkflowRun through a scenario's states."""

    def __init__(
        self,
        scenario: Scenario,
        config: ClusterConfig,
        report_dir: Path,
        timeout: Optional[int] = None,
        dry_run: bool = False,
        workflow: Optional[WorkflowRun] = None,
        resume_from: Optional[str] = None,
    ):
        self.scenario = scenario
        self.config = config
        self.report_dir = report_dir
        self.timeout = timeout  # Overall run timeout in seconds
        self.dry_run = dry_run
        self.workflow = workflow or WorkflowRun(cluster_name=config.cluster_name)
        if resume_from is not None and resume_from not in STATES:
            raise ValueError(f"Unknown state: {resume_from}")
        self.resume_from = resume_from
        self.report = RunReport(cluster=config.cluster_name, report_dir=report_dir, scenario=scenario.name)
        self.error: Optional[GokpError] = None

    def _already_reached(self, state: str) -> bool:
        return self.resume_from is not None and state_index(state) <= state_index(self.resume_from)

    def preview(self) -> bool:
        """Show what would be executed without running. Returns True."""
        phases = self.scenario.get_phases(self.config)

        print("")
        print("═══════════════════════════════════════════════════════════════")
        print(f"  DRY-RUN: {self.scenario.name}")
        print(f"  Cluster: {self.config.cluster_name}")
        print(f"  Region:  {self.config.aws_region}")
        print("═══════════════════════════════════════════════════════════════")
        print("")

        print("States to reach:")
        phase_count = 0
        skip_count = 0

        for state, action, description in phases:
            action_type = type(action).__name__
            if self._already_reached(state):
                print(f"  [SKIP] {state}: {description}")
                skip_count += 1
            else:
                print(f"  [ OK ] {state}: {description}")
                phase_count += 1
            print(f"         Action: {action_type}")
            if hasattr(action, 'name'):
                print(f"         Name: {action.name}")
            if hasattr(action, 'confirm_timeout'):
                print(f"         Timeout: {action.confirm_timeout}s")
            print("")

        print("═══════════════════════════════════════════════════════════════")
        print(f"  Summary: {phase_count} states to reach, {skip_count} already reached")
        print(f"  Control plane: {self.config.control_plane_count} x {self.config.aws_control_plane_machine}")
        print(f"  Workers: {self.config.worker_count} x {self.config.aws_node_machine}")
        print(f"  Repository: {'private' if self.config.private_repo else 'public'}")
        if self.timeout:
            print(f"  Timeout: {self.timeout}s")
        print("  Mode: DRY-RUN (no changes made)")
        print("═══════════════════════════════════════════════════════════════")
        print("")
        print("Remove --dry-run to create the cluster.")
        print("")

        return True

    def _abort(self, error: GokpError) -> None:
        """Record the failure and decide what happens to the workspace.

        Before the bootstrap cluster exists nothing outside the workspace
        was created, so it is released. From then on it is kept: it holds
        the kubeconfigs and state needed to inspect or clean up by hand.
        """
        self.error = error
        wf = self.workflow
        reached = wf.last_completed
        wf.abort(error.category, error.message)
        logger.error(f"Run aborted after state {reached}: {error}")
        if state_index(reached) < state_index(BOOTSTRAP_UP):
            Workspace().release(wf.workspace)
        elif wf.workspace is not None:
            logger.error(f"Workspace preserved at {wf.workspace}")

    def run(self) -> bool:
        """Run all states. Returns True if the run reached Done."""
        if self.dry_run:
            return self.preview()

        wf = self.workflow
        timeout_msg = f" (timeout: {self.timeout}s)" if self.timeout else ""
        resume_msg = f", resuming after {self.resume_from}" if self.resume_from else ""
        logger.info(f"Starting scenario '{self.scenario.name}' for cluster: "
                    f"{self.config.cluster_name}{timeout_msg}{resume_msg}")
        self.report.start()
        if wf.started_at is None:
            wf.started_at = time.time()

        phases = self.scenario.get_phases(self.config)
        start_time = time.time()

        for state, action, description in phases:
            if self._already_reached(state):
                logger.info(f"Skipping state {state}: already reached")
                self.report.skip_phase(state, description)
                continue

            self.report.start_phase(state, description)
            try:
                wf.cancel.raise_if_cancelled(f"transition to {state}")
                if self.timeout:
                    elapsed = time.time() - start_time
                    if elapsed >= self.timeout:
                        raise ReadinessTimeoutError(
                            f"Run timeout ({self.timeout}s) exceeded after {elapsed:.1f}s")

                logger.info(f"Running phase: {state} - {description}")
                result = action.run(self.config, wf)
                if not result.success:
                    raise GokpError(result.message or f"{type(action).__name__} failed")
            except GokpError as e:
                self.report.fail_phase(state, e.message)
                self._abort(e)
                break
            except Exception as e:
                logger.exception(f"Phase {state} raised exception")
                self.report.fail_phase(state, str(e))
                self._abort(GokpError(f"{type(e).__name__}: {e}"))
                break

            logger.info(f"Phase {state} passed")
            self.report.pass_phase(state, result.message, result.duration)
            wf.transition(state)

        success = self.error is None
        if success:
            wf.transition(DONE)

        total_time = time.time() - start_time
        logger.info(f"Scenario completed in {total_time:.1f}s")
        self.report.finish(success, self.error.category if self.error else None)
        return success


# Registry of available scenarios
_scenarios: dict[str, type[Scenario]] = {}


def register_scenario(cls: type[Scenario]) -> type[Scenario]:
    """Decorator to register a scenario class."""
    _scenarios[cls.name] = cls
    return cls


def get_scenario(name: str) -> Scenario:
    """Get a scenario instance by name."""
    if name not in _scenarios:
        available = list(_scenarios.keys())
        raise ValueError(f"Unknown scenario: {name}. Available: {available}")
    return _scenarios[name]()


def list_scenarios() -> list[str]:
    """List available scenario names."""
    return sorted(_scenarios.keys())


# Import scenarios to trigger registration
from scenarios import create_cluster  # noqa: E402, F401
