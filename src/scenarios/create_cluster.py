"""Create a self-managed cluster on AWS.

kind bootstrap → Cluster API provisioning → GitOps repository → Argo CD →
pivot → kind teardown → archive in ~/.gokp/<cluster-name>.
"""

from actions import (
    AcquireWorkspaceAction,
    CreateBootstrapAction,
    ProvisionTargetAction,
    CreateRepositoryAction,
    SeedRepositoryAction,
    ExportClusterYamlAction,
    PushRepositoryAction,
    InstallGitOpsAction,
    PivotAction,
    DestroyBootstrapAction,
    PromoteArtifactsAction,
)
from config import ClusterConfig
from run_state import (
    ARTIFACTS_PROMOTED,
    BOOTSTRAP_DOWN,
    BOOTSTRAP_UP,
    CLUSTER_YAML_EXPORTED,
    GITOPS_INSTALLED,
    PIVOTED,
    REPO_CREATED,
    REPO_PUSHED,
    REPO_SEEDED,
    TARGET_PROVISIONED,
    WORKSPACE_ACQUIRED,
)
from scenarios import register_scenario


@register_scenario
class CreateClusterAws:
    """Bootstrap-and-pivot on the AWS provider."""

    name = 'create-cluster-aws'
    description = 'Provision an AWS cluster through a temporary kind control plane and pivot to it'

    def get_phases(self, config: ClusterConfig) -> list[tuple]:
        return [
            (WORKSPACE_ACQUIRED, AcquireWorkspaceAction(name='acquire-workspace'),
             'Check for stray artifacts and create the workspace'),
            (BOOTSTRAP_UP, CreateBootstrapAction(name='create-bootstrap'),
             'Start the temporary kind control plane'),
            (TARGET_PROVISIONED, ProvisionTargetAction(name='provision-target'),
             f'Provision {config.cluster_name} on AWS ({config.aws_region})'),
            (REPO_CREATED, CreateRepositoryAction(name='create-repo'),
             'Create the GitHub repository and deploy key'),
            (REPO_SEEDED, SeedRepositoryAction(name='seed-repo'),
             'Push the repository skeleton'),
            (CLUSTER_YAML_EXPORTED, ExportClusterYamlAction(name='export-cluster-yaml'),
             'Export cluster definition and CNI into the repository'),
            (REPO_PUSHED, PushRepositoryAction(name='push-repo'),
             'Push the exported cluster definition'),
            (GITOPS_INSTALLED, InstallGitOpsAction(name='install-argocd'),
             'Install Argo CD and register the repository'),
            (PIVOTED, PivotAction(name='pivot'),
             'Move Cluster API objects to the target'),
            (BOOTSTRAP_DOWN, DestroyBootstrapAction(name='destroy-bootstrap'),
             'Delete the temporary kind control plane'),
            (ARTIFACTS_PROMOTED, PromoteArtifactsAction(name='promote-artifacts'),
             f'Archive the workspace as ~/.gokp/{config.cluster_name}'),
        ]
