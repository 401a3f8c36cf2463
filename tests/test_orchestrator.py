#!/usr/bin/env python3
"""Tests for the scenario Orchestrator.

Tests verify:
1. States are reached strictly in order and persisted
2. The first failure aborts with its category recorded
3. Workspace is released or preserved depending on how far the run got
4. Cancellation, run timeout, resume and dry-run
"""

import itertools
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import ActionResult
from config import ClusterConfig
from errors import ConflictError, GokpError
from run_state import (
    ABORTED,
    BOOTSTRAP_UP,
    DONE,
    STATE_FILE,
    STATES,
    TARGET_PROVISIONED,
    WORKSPACE_ACQUIRED,
    WorkflowRun,
)
from scenarios import Orchestrator, get_scenario, list_scenarios


@dataclass
class RecordingAction:
    """Appends its name to a shared log; optionally fails."""
    name: str
    log: list
    error: Optional[Exception] = None
    result: Optional[ActionResult] = None
    effect: Optional[object] = None

    def run(self, config, run):
        self.log.append(self.name)
        if self.effect:
            self.effect(run)
        if self.error:
            raise self.error
        return self.result or ActionResult(success=True, message=f'{self.name} ok')


@dataclass
class FakeScenario:
    name: str = 'fake'
    description: str = 'three states'
    actions: dict = field(default_factory=dict)

    def get_phases(self, config):
        return [(state, self.actions[state], f'reach {state}')
                for state in (WORKSPACE_ACQUIRED, BOOTSTRAP_UP, TARGET_PROVISIONED)]


@pytest.fixture
def config():
    return ClusterConfig(cluster_name='demo1')


@pytest.fixture
def log():
    return []


def _scenario(log, gokp_home, **overrides):
    def acquire(run):
        run.workspace = gokp_home / '.gokpinstallabc'
        run.workspace.mkdir(parents=True)

    actions = {
        WORKSPACE_ACQUIRED: RecordingAction('acquire', log, effect=acquire),
        BOOTSTRAP_UP: RecordingAction('bootstrap', log),
        TARGET_PROVISIONED: RecordingAction('provision', log),
    }
    for state, kwargs in overrides.items():
        actions[state] = RecordingAction(actions[state].name, log, **kwargs)
    return FakeScenario(actions=actions)


class TestOrchestratorRun:
    """Test the happy path."""

    def test_reaches_done_in_order(self, config, log, gokp_home, tmp_path):
        orch = Orchestrator(_scenario(log, gokp_home), config, report_dir=tmp_path / 'reports')
        assert orch.run() is True
        assert log == ['acquire', 'bootstrap', 'provision']
        wf = orch.workflow
        assert wf.state == DONE
        assert [h['state'] for h in wf.history] == [WORKSPACE_ACQUIRED, BOOTSTRAP_UP, TARGET_PROVISIONED, DONE]
        saved = json.loads((wf.workspace / STATE_FILE).read_text())
        assert saved['state'] == DONE

    def test_writes_reports(self, config, log, gokp_home, tmp_path):
        orch = Orchestrator(_scenario(log, gokp_home), config, report_dir=tmp_path / 'reports')
        orch.run()
        names = sorted(p.name for p in (tmp_path / 'reports').iterdir())
        assert len(names) == 2
        assert all('.demo1.passed.' in n for n in names)
        assert [p.status for p in orch.report.phases] == ['passed'] * 3


class TestOrchestratorAbort:
    """Test the first failure ends the run."""

    def test_conflict_aborts_and_preserves_workspace(self, config, log, gokp_home, tmp_path):
        scenario = _scenario(log, gokp_home, **{
            TARGET_PROVISIONED: {'error': ConflictError("GitHub repository 'demo1' already exists")},
        })
        orch = Orchestrator(scenario, config, report_dir=tmp_path / 'reports')

        assert orch.run() is False

        wf = orch.workflow
        assert wf.state == ABORTED
        assert wf.error['category'] == 'conflict'
        assert wf.error['state'] == BOOTSTRAP_UP
        assert wf.workspace.exists()
        saved = json.loads((wf.workspace / STATE_FILE).read_text())
        assert saved['state'] == ABORTED
        assert saved['error']['category'] == 'conflict'
        assert orch.report.error_category == 'conflict'
        assert orch.report.phases[-1].status == 'failed'

    def test_failure_before_bootstrap_releases_workspace(self, config, log, gokp_home, tmp_path):
        scenario = _scenario(log, gokp_home, **{
            BOOTSTRAP_UP: {'error': GokpError('docker is not running')},
        })
        orch = Orchestrator(scenario, config, report_dir=tmp_path / 'reports')

        assert orch.run() is False

        assert log == ['acquire', 'bootstrap']
        assert not orch.workflow.workspace.exists()

    def test_later_states_not_run(self, config, log, gokp_home, tmp_path):
        scenario = _scenario(log, gokp_home, **{BOOTSTRAP_UP: {'error': GokpError('x')}})
        Orchestrator(scenario, config, report_dir=tmp_path / 'reports').run()
        assert 'provision' not in log

    def test_unexpected_exception_has_generic_category(self, config, log, gokp_home, tmp_path):
        scenario = _scenario(log, gokp_home, **{TARGET_PROVISIONED: {'error': RuntimeError('boom')}})
        orch = Orchestrator(scenario, config, report_dir=tmp_path / 'reports')
        assert orch.run() is False
        assert orch.error.category == 'error'
        assert orch.error.message == 'RuntimeError: boom'

    def test_unsuccessful_result_aborts(self, config, log, gokp_home, tmp_path):
        scenario = _scenario(log, gokp_home, **{
            TARGET_PROVISIONED: {'result': ActionResult(success=False, message='not ready')},
        })
        orch = Orchestrator(scenario, config, report_dir=tmp_path / 'reports')
        assert orch.run() is False
        assert orch.workflow.error['message'] == 'not ready'

    def test_cancel_stops_before_next_state(self, config, log, gokp_home, tmp_path):
        scenario = _scenario(log, gokp_home, **{
            BOOTSTRAP_UP: {'effect': lambda run: run.cancel.cancel('interrupted by SIGINT')},
        })
        orch = Orchestrator(scenario, config, report_dir=tmp_path / 'reports')
        assert orch.run() is False
        assert log == ['acquire', 'bootstrap']
        assert orch.workflow.error['category'] == 'cancelled'
        # The state whose action completed is still recorded
        assert orch.workflow.error['state'] == BOOTSTRAP_UP

    def test_run_timeout(self, config, log, gokp_home, tmp_path):
        orch = Orchestrator(_scenario(log, gokp_home), config, report_dir=tmp_path / 'reports', timeout=100)
        with patch('scenarios.time') as mock_time:
            # started_at, start_time, then one reading per state
            mock_time.time.side_effect = itertools.count(0, 50)
            assert orch.run() is False
        assert log == ['acquire']
        assert orch.error.category == 'timeout'


class TestOrchestratorResume:
    def test_skips_reached_states(self, config, log, gokp_home, tmp_path):
        workspace = gokp_home / '.gokpinstallxyz'
        workspace.mkdir(parents=True)
        wf = WorkflowRun(cluster_name='demo1', workspace=workspace, state=BOOTSTRAP_UP)
        orch = Orchestrator(_scenario(log, gokp_home), config, report_dir=tmp_path / 'reports',
                            workflow=wf, resume_from=BOOTSTRAP_UP)
        assert orch.run() is True
        assert log == ['provision']
        assert [p.status for p in orch.report.phases] == ['skipped', 'skipped', 'passed']
        assert wf.state == DONE

    def test_resume_after_abort(self, config, log, gokp_home, tmp_path):
        workspace = gokp_home / '.gokpinstallxyz'
        workspace.mkdir(parents=True)
        wf = WorkflowRun(cluster_name='demo1', workspace=workspace, state=BOOTSTRAP_UP)
        wf.abort('timeout', 'cluster demo1 control plane')
        orch = Orchestrator(_scenario(log, gokp_home), config, report_dir=tmp_path / 'reports',
                            workflow=wf, resume_from=wf.last_completed)
        assert orch.run() is True
        assert wf.error is None

    def test_unknown_resume_state(self, config, log, gokp_home, tmp_path):
        with pytest.raises(ValueError):
            Orchestrator(_scenario(log, gokp_home), config, report_dir=tmp_path, resume_from='Nope')


class TestDryRun:
    def test_preview_runs_nothing(self, config, log, gokp_home, tmp_path, capsys):
        orch = Orchestrator(_scenario(log, gokp_home), config, report_dir=tmp_path / 'reports', dry_run=True)
        assert orch.run() is True
        assert log == []
        out = capsys.readouterr().out
        assert 'DRY-RUN: fake' in out
        assert 'Cluster: demo1' in out
        assert '3 states to reach' in out
        assert not gokp_home.exists()


class TestScenarioRegistry:
    def test_create_cluster_registered(self):
        assert 'create-cluster-aws' in list_scenarios()

    def test_unknown(self):
        with pytest.raises(ValueError, match='Unknown scenario'):
            get_scenario('nope')

    def test_phases_in_state_order(self, config):
        phases = get_scenario('create-cluster-aws').get_phases(config)
        states = [s for s, _, _ in phases]
        assert states == list(STATES[1:-1])
