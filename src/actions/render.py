"""Manifest renderer wrapping `kustomize build`."""

import logging
from pathlib import Path

from actions.apply import ManifestSet, split
from common import run_command
from errors import RenderError, ResourceError

logger = logging.getLogger(__name__)


class ManifestRenderer:
    """Turns an overlay directory into one flat, ordered ManifestSet."""

    def __init__(self, timeout: int = 300):
        self.timeout = timeout

    def build(self, overlay_dir: Path) -> str:
        """Run kustomize and return the concatenated YAML.

        Raises:
            RenderError: If the overlay is malformed or kustomize fails
        """
        if not overlay_dir.is_dir():
            raise RenderError(f"Overlay directory not found: {overlay_dir}")
        if not any((overlay_dir / n).exists() for n in ('kustomization.yaml', 'kustomization.yml', 'Kustomization')):
            raise RenderError(f"No kustomization file in {overlay_dir}")

        rc, out, err = run_command(['kustomize', 'build', str(overlay_dir)], timeout=self.timeout)
        if rc != 0:
            raise RenderError(f"kustomize build {overlay_dir} failed: {err.strip()}")
        return out

    def render(self, overlay_dir: Path, out_file: Path, split_dir: Path) -> ManifestSet:
        """Render overlay_dir to out_file and split it into split_dir."""
        logger.info(f"Rendering {overlay_dir}")
        yml = self.build(overlay_dir)
        try:
            out_file.write_text(yml, encoding='utf-8')
        except OSError as e:
            raise ResourceError(f"Cannot write {out_file}: {e}") from e
        return split(out_file, split_dir)
