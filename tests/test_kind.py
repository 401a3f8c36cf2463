"""Tests for actions/kind.py - bootstrap control plane lifecycle."""

import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from actions.kind import BootstrapController, CreateBootstrapAction, DestroyBootstrapAction
from config import BOOTSTRAP_CLUSTER_NAME, ClusterConfig
from errors import InfrastructureError
from kube import ClusterEndpoint
from run_state import PIVOT_CLEARED, PIVOT_DUAL, WorkflowRun


def _commands(mock_run):
    return [c.args[0] for c in mock_run.call_args_list]


class TestBootstrapController:
    """Test kind invocations."""

    def test_create(self, tmp_path):
        kubeconfig = tmp_path / 'kind.kubeconfig'
        with patch('actions.kind.run_command', return_value=(0, '', '')) as mock_run:
            endpoint = BootstrapController(kubeconfig).create(BOOTSTRAP_CLUSTER_NAME)
        cmds = _commands(mock_run)
        assert cmds[0] == ['docker', 'info']
        assert cmds[1][:5] == ['kind', 'create', 'cluster', '--name', 'gokp-bootstrapper']
        assert str(kubeconfig) in cmds[1]
        assert endpoint.name == 'bootstrap'
        assert endpoint.kubeconfig == kubeconfig

    def test_no_container_runtime(self, tmp_path):
        with patch('actions.kind.run_command', return_value=(1, '', 'Cannot connect to the Docker daemon')) as mock_run:
            with pytest.raises(InfrastructureError, match='Container runtime unavailable'):
                BootstrapController(tmp_path / 'k').create(BOOTSTRAP_CLUSTER_NAME)
        assert mock_run.call_count == 1

    def test_create_failure(self, tmp_path):
        with patch('actions.kind.run_command', side_effect=[(0, '', ''), (1, '', 'node(s) already exist')]):
            with pytest.raises(InfrastructureError, match='already exist'):
                BootstrapController(tmp_path / 'k').create(BOOTSTRAP_CLUSTER_NAME)

    def test_destroy(self, tmp_path):
        kubeconfig = tmp_path / 'kind.kubeconfig'
        kubeconfig.write_text('apiVersion: v1\n')
        with patch('actions.kind.run_command', side_effect=[(0, 'gokp-bootstrapper\nother\n', ''), (0, '', '')]) as mock_run:
            BootstrapController(kubeconfig).destroy(BOOTSTRAP_CLUSTER_NAME)
        cmds = _commands(mock_run)
        assert cmds[1] == ['kind', 'delete', 'cluster', '--name', 'gokp-bootstrapper',
                           '--kubeconfig', str(kubeconfig)]

    def test_destroy_is_idempotent(self, tmp_path):
        with patch('actions.kind.run_command', return_value=(0, 'other\n', '')) as mock_run:
            BootstrapController(tmp_path / 'k').destroy(BOOTSTRAP_CLUSTER_NAME)
        assert mock_run.call_count == 1

    def test_destroy_failure(self, tmp_path):
        with patch('actions.kind.run_command', side_effect=[(0, 'gokp-bootstrapper\n', ''), (1, '', 'boom')]):
            with pytest.raises(InfrastructureError, match='kind delete cluster failed'):
                BootstrapController(tmp_path / 'k').destroy(BOOTSTRAP_CLUSTER_NAME)


class TestCreateBootstrapAction:
    def test_sets_bootstrap_endpoint(self, tmp_path):
        run = WorkflowRun(cluster_name='demo1', workspace=tmp_path)
        with patch('actions.kind.run_command', return_value=(0, '', '')):
            result = CreateBootstrapAction('bootstrap').run(ClusterConfig(cluster_name='demo1'), run)
        assert result.success
        assert run.bootstrap.kubeconfig == tmp_path / 'kind.kubeconfig'


class TestDestroyBootstrapAction:
    """The bootstrap cluster is only deleted once the pivot cleared it."""

    def test_refuses_before_pivot_cleared(self, tmp_path):
        run = WorkflowRun(cluster_name='demo1', workspace=tmp_path, pivot_phase=PIVOT_DUAL,
                          bootstrap=ClusterEndpoint('bootstrap', tmp_path / 'kind.kubeconfig'))
        with patch('actions.kind.run_command') as mock_run:
            with pytest.raises(InfrastructureError, match='still owns'):
                DestroyBootstrapAction('teardown').run(ClusterConfig(cluster_name='demo1'), run)
        mock_run.assert_not_called()
        assert run.bootstrap is not None

    def test_destroys_after_pivot(self, tmp_path):
        run = WorkflowRun(cluster_name='demo1', workspace=tmp_path, pivot_phase=PIVOT_CLEARED,
                          bootstrap=ClusterEndpoint('bootstrap', tmp_path / 'kind.kubeconfig'))
        with patch('actions.kind.run_command', side_effect=[(0, 'gokp-bootstrapper\n', ''), (0, '', '')]):
            result = DestroyBootstrapAction('teardown').run(ClusterConfig(cluster_name='demo1'), run)
        assert result.success
        assert run.bootstrap is None
