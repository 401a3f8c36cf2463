"""Workflow actions, one per orchestrator state."""

from actions.artifacts import AcquireWorkspaceAction, PromoteArtifactsAction
from actions.kind import CreateBootstrapAction, DestroyBootstrapAction
from actions.capi import ProvisionTargetAction
from actions.github import CreateRepositoryAction, SeedRepositoryAction, PushRepositoryAction
from actions.export import ExportClusterYamlAction
from actions.argocd import InstallGitOpsAction
from actions.pivot import PivotAction

__all__ = [
    'AcquireWorkspaceAction',
    'PromoteArtifactsAction',
    'CreateBootstrapAction',
    'DestroyBootstrapAction',
    'ProvisionTargetAction',
    'CreateRepositoryAction',
    'SeedRepositoryAction',
    'PushRepositoryAction',
    'ExportClusterYamlAction',
    'InstallGitOpsAction',
    'PivotAction',
]
