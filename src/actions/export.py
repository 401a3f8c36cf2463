"""Export the cluster definition and core components into the GitOps repo."""

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

import yaml

from actions.apply import split_text
from actions.github import RepositoryHandle
from actions.templates import kustomization
from common import ActionResult
from config import ClusterConfig
from errors import RenderError, ResourceError
from run_state import WorkflowRun

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r'[^a-z0-9.-]+')


def _filename(seq: int, width: int, doc: dict) -> str:
    kind = str(doc.get('kind', 'object')).lower()
    name = _UNSAFE.sub('-', str((doc.get('metadata') or {}).get('name', 'unnamed')).lower())
    return f"{seq:0{width}d}-{kind}-{name}.yaml"


def export_documents(source: Path, dest_dir: Path) -> list[Path]:
    """Write every document of source into dest_dir with a kustomization.yaml.

    Document order is kept through the file prefix and the resources list.

    Raises:
        RenderError: If a document is not valid YAML
        ResourceError: On read/write failure
    """
    try:
        parts = split_text(source.read_text(encoding='utf-8'))
    except OSError as e:
        raise ResourceError(f"Cannot read {source}: {e}") from e

    width = max(2, len(str(len(parts) - 1)))
    written = []
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        for old in dest_dir.glob('*.yaml'):
            old.unlink()
        for i, part in enumerate(parts):
            try:
                doc = yaml.safe_load(part)
            except yaml.YAMLError as e:
                raise RenderError(f"Invalid document {i} in {source}: {e}") from e
            if not isinstance(doc, dict):
                continue
            path = dest_dir / _filename(i, width, doc)
            path.write_text(part, encoding='utf-8')
            written.append(path)
        (dest_dir / 'kustomization.yaml').write_text(
            yaml.safe_dump(kustomization([p.name for p in written]), sort_keys=False), encoding='utf-8')
        gitkeep = dest_dir / '.gitkeep'
        if gitkeep.exists():
            gitkeep.unlink()
    except OSError as e:
        raise ResourceError(f"Cannot export to {dest_dir}: {e}") from e

    logger.debug(f"Exported {len(written)} documents from {source.name} to {dest_dir}")
    return written


def export_cluster_yaml(workdir: Path, repo_dir: Path) -> dict[str, int]:
    """Export install-cluster.yaml and cni.yaml from the workspace into the repo.

    Returns:
        Number of documents exported per destination
    """
    sources = {
        'cluster/capi': workdir / 'install-cluster.yaml',
        'cluster/core/cni': workdir / 'cni.yaml',
    }
    counts = {}
    for rel, source in sources.items():
        if not source.exists():
            raise ResourceError(f"Cannot export {rel}: {source} not found")
        counts[rel] = len(export_documents(source, repo_dir / rel))
    logger.info(f"Exported cluster YAML: {counts}")
    return counts


@dataclass
class ExportClusterYamlAction:
    """Copy the cluster definition and CNI manifests into the local clone."""
    name: str

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        handle = RepositoryHandle.from_dict(run.require('repository'))
        counts = export_cluster_yaml(run.require('workspace'), handle.local_path)
        summary = ', '.join(f"{rel}: {n}" for rel, n in counts.items())
        logger.info(f"[{self.name}] {summary}")
        return ActionResult(success=True, message=summary, duration=time.time() - start)
