"""Cluster configuration management.

Configuration comes from CLI flags, with optional defaults from
~/.gokp/config.yaml:

    defaults:
      aws_region: eu-west-1
      aws_control_plane_machine: m5.xlarge
      kubernetes_version: v1.23.3

The merge order is: built-in defaults → config.yaml → CLI flags.
"""

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from errors import ConfigError

BOOTSTRAP_CLUSTER_NAME = 'gokp-bootstrapper'
FIELD_MANAGER = 'gokp'
DEFAULT_GITHUB_API = 'https://api.github.com'

# RFC 1123 label, which is also what Cluster API and GitHub accept
_CLUSTER_NAME_RE = re.compile(r'^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$')

# Keys config.yaml may override; secrets are CLI-only
_OVERRIDABLE = {
    'private_repo', 'aws_region', 'aws_ssh_key', 'aws_control_plane_machine',
    'aws_node_machine', 'ha', 'skip_cloud_formation', 'kubernetes_version',
    'worker_count', 'ready_timeout', 'github_api',
}


def gokp_home() -> Path:
    """Get the persistent root directory.

    Resolution order:
    1. $GOKP_HOME environment variable
    2. $HOME/.gokp
    """
    if env_path := os.environ.get('GOKP_HOME'):
        return Path(env_path)
    home = os.environ.get('HOME')
    return Path(home) / '.gokp' if home else Path.home() / '.gokp'


def reports_dir() -> Path:
    """Default run report directory. Dot-prefixed so it never collides with a cluster archive."""
    return gokp_home() / '.reports'


def validate_cluster_name(name: str) -> str:
    """Return name unchanged if it is a valid DNS label, else raise ConfigError."""
    if not name or not _CLUSTER_NAME_RE.match(name):
        raise ConfigError(
            f"Invalid cluster name '{name}': use lowercase letters, digits and '-', "
            "start and end with an alphanumeric character, at most 63 characters"
        )
    return name


@dataclass
class ClusterConfig:
    """User-supplied settings for one create-cluster run.

    Immutable for the duration of the run; mutable progress lives on
    WorkflowRun. Secret fields are excluded from repr.
    """
    cluster_name: str
    github_token: str = field(default='', repr=False)
    private_repo: bool = True

    aws_region: str = 'us-east-1'
    aws_access_key: str = field(default='', repr=False)
    aws_secret_key: str = field(default='', repr=False)
    aws_ssh_key: str = 'default'
    aws_control_plane_machine: str = 'm4.xlarge'
    aws_node_machine: str = 'm4.xlarge'

    ha: bool = True
    skip_cloud_formation: bool = False
    kubernetes_version: str = 'v1.23.3'
    worker_count: int = 3
    ready_timeout: int = 2400  # seconds
    github_api: str = field(default_factory=lambda: os.environ.get('GITHUB_API_URL', DEFAULT_GITHUB_API))

    def __post_init__(self):
        validate_cluster_name(self.cluster_name)
        if self.worker_count < 0:
            raise ConfigError(f"worker_count must be >= 0, got {self.worker_count}")

    @property
    def control_plane_count(self) -> int:
        return 3 if self.ha else 1

    def provider_env(self) -> dict[str, str]:
        """AWS environment consumed by clusterctl/clusterawsadm."""
        return {
            'AWS_REGION': self.aws_region,
            'AWS_ACCESS_KEY_ID': self.aws_access_key,
            'AWS_SECRET_ACCESS_KEY': self.aws_secret_key,
            'AWS_SSH_KEY_NAME': self.aws_ssh_key,
            'AWS_CONTROL_PLANE_MACHINE_TYPE': self.aws_control_plane_machine,
            'AWS_NODE_MACHINE_TYPE': self.aws_node_machine,
        }


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def load_defaults(path: Optional[Path] = None) -> dict:
    """Load the defaults mapping from config.yaml (empty if absent).

    Unknown keys are rejected so typos do not silently fall back to defaults.
    """
    path = path or gokp_home() / 'config.yaml'
    if not path.exists():
        return {}
    data = _parse_yaml(path)
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    defaults = data.get('defaults') or {}
    if not isinstance(defaults, dict):
        raise ConfigError(f"'defaults' in {path} must be a mapping")
    unknown = set(defaults) - _OVERRIDABLE
    if unknown:
        raise ConfigError(f"Unknown keys in {path}: {', '.join(sorted(unknown))}")
    return defaults


def build_config(cluster_name: str, overrides: dict, defaults_path: Optional[Path] = None) -> ClusterConfig:
    """Build ClusterConfig from config.yaml defaults and CLI overrides.

    Args:
        cluster_name: Name of the cluster (validated)
        overrides: CLI values; None means "not given on the command line"
        defaults_path: Optional override for the config.yaml location
    """
    values = dict(load_defaults(defaults_path))
    known = {f.name for f in fields(ClusterConfig)}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in known:
            raise ConfigError(f"Unknown setting: {key}")
        values[key] = value
    return ClusterConfig(cluster_name=cluster_name, **values)
