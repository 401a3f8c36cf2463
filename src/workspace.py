"""Artifact workspace: per-run scratch directory and final archive.

All run artifacts are written under a private directory in ~/.gokp and, on
success, the directory is pruned and renamed to ~/.gokp/<cluster-name>.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from config import gokp_home
from errors import ConflictError, ResourceError

logger = logging.getLogger(__name__)

WORKDIR_PREFIX = '.gokpinstall'

# Transient render/apply output removed before archiving
PRUNE_DIRS = (
    'argocd-install-output',
    'capi-install-yamls-output',
    'cni-output',
)
PRUNE_FILES = (
    'argocd-install.yaml',
    'cni.yaml',
    'install-cluster.yaml',
    'kind.kubeconfig',
)


class Workspace:
    """Owns the scratch directory and its promotion to the archive."""

    def __init__(self, root: Optional[Path] = None):
        self.root = root or gokp_home()

    def archive_path(self, name: str) -> Path:
        return self.root / name

    def preflight(self, cluster_name: str) -> None:
        """Reject the run if a previous archive with this name exists.

        Raises:
            ConflictError: If ~/.gokp/<cluster_name> exists
        """
        archive = self.archive_path(cluster_name)
        if archive.exists():
            raise ConflictError(
                f"Stray artifacts found: {archive}. "
                f"A cluster named '{cluster_name}' was already installed; "
                "remove or rename the directory to continue"
            )
        logger.debug(f"No previous archive at {archive}")

    def acquire(self) -> Path:
        """Create a fresh, collision-free scratch directory.

        Raises:
            ResourceError: If the root cannot be created or written
        """
        try:
            self.root.mkdir(mode=0o775, parents=True, exist_ok=True)
            path = Path(tempfile.mkdtemp(prefix=WORKDIR_PREFIX, dir=self.root))
        except OSError as e:
            raise ResourceError(f"Cannot create workspace under {self.root}: {e}") from e
        logger.info(f"Workspace: {path}")
        return path

    def prune(self, path: Path) -> None:
        """Remove transient artifacts from a workspace."""
        try:
            for name in PRUNE_DIRS:
                target = path / name
                if target.is_dir():
                    shutil.rmtree(target)
            for name in PRUNE_FILES:
                target = path / name
                if target.exists():
                    target.unlink()
        except OSError as e:
            raise ResourceError(f"Cannot prune workspace {path}: {e}") from e

    def promote(self, path: Path, final_name: str) -> Path:
        """Prune the workspace and rename it to its permanent location.

        Raises:
            ConflictError: If the archive location already exists
            ResourceError: If the rename fails
        """
        archive = self.archive_path(final_name)
        if archive.exists():
            raise ConflictError(f"Archive already exists: {archive}")
        self.prune(path)
        try:
            os.rename(path, archive)
        except OSError as e:
            raise ResourceError(f"Cannot move {path} to {archive}: {e}") from e
        logger.info(f"Artifacts archived to {archive}")
        return archive

    def release(self, path: Optional[Path]) -> None:
        """Best-effort recursive delete of a scratch directory."""
        if path is None or not path.exists():
            return
        shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"Released workspace {path}")
