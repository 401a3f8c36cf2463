"""Declarative applier: split rendered YAML and server-side apply it in order."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from config import FIELD_MANAGER
from errors import ApplyError, ResourceError
from kube import ClusterEndpoint, KubeClient, KubectlError

logger = logging.getLogger(__name__)

_SEPARATOR = re.compile(r'^---[ \t]*$', re.MULTILINE)

CRD_ESTABLISH_TIMEOUT = 60


@dataclass
class ManifestDocument:
    """One resource document, as written to disk by split()."""
    path: Path
    text: str
    kind: str = ''
    name: str = ''
    namespace: str = ''

    @classmethod
    def from_text(cls, path: Path, text: str) -> 'ManifestDocument':
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError:
            data = {}
        meta = (data.get('metadata') or {}) if isinstance(data, dict) else {}
        return cls(
            path=path,
            text=text,
            kind=data.get('kind', '') if isinstance(data, dict) else '',
            name=meta.get('name', ''),
            namespace=meta.get('namespace', ''),
        )

    def describe(self) -> str:
        ident = f"{self.kind}/{self.name}" if self.kind else self.path.name
        return f"{self.path.name} ({ident})"


@dataclass
class ManifestSet:
    """Ordered documents; order is render order and is never changed."""
    source: Optional[Path] = None
    documents: list[ManifestDocument] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.documents)

    def __iter__(self):
        return iter(self.documents)


def split_text(text: str) -> list[str]:
    """Split a multi-document YAML string, dropping empty fragments."""
    parts = []
    for part in _SEPARATOR.split(text):
        body = '\n'.join(line for line in part.splitlines() if line.strip() and not line.lstrip().startswith('#'))
        if body.strip():
            parts.append(part.strip('\n') + '\n')
    return parts


def split(concatenated: Path, out_dir: Path) -> ManifestSet:
    """Split a concatenated YAML file into one file per document.

    Files are named <seq>.<basename>; seq is zero-padded wide enough that
    lexical order of the directory equals document order.

    Raises:
        ResourceError: If the input can't be read or the output written
    """
    try:
        text = concatenated.read_text(encoding='utf-8')
    except OSError as e:
        raise ResourceError(f"Cannot read {concatenated}: {e}") from e

    parts = split_text(text)
    width = max(2, len(str(len(parts) - 1)))
    manifest_set = ManifestSet(source=concatenated)
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        for i, part in enumerate(parts):
            path = out_dir / f"{i:0{width}d}.{concatenated.name}"
            path.write_text(part, encoding='utf-8')
            manifest_set.documents.append(ManifestDocument.from_text(path, part))
    except OSError as e:
        raise ResourceError(f"Cannot write split manifests to {out_dir}: {e}") from e

    logger.debug(f"Split {concatenated.name} into {len(parts)} documents under {out_dir}")
    return manifest_set


def load_split_dir(out_dir: Path) -> ManifestSet:
    """Rebuild a ManifestSet from a directory written by split()."""
    manifest_set = ManifestSet(source=out_dir)
    for path in sorted(out_dir.glob('*.yaml')):
        manifest_set.documents.append(ManifestDocument.from_text(path, path.read_text(encoding='utf-8')))
    return manifest_set


class DeclarativeApplier:
    """Applies a ManifestSet to one cluster with server-side apply.

    Documents are applied strictly one at a time in order. After a
    CustomResourceDefinition the applier waits until it is Established so
    custom resources later in the set find their type.
    """

    def __init__(self, field_manager: str = FIELD_MANAGER, client_factory=None):
        self.field_manager = field_manager
        self.client_factory = client_factory or KubeClient

    def apply(self, endpoint: ClusterEndpoint, manifest_set: ManifestSet) -> int:
        """Apply every document in order. Returns the number applied.

        Raises:
            ApplyError: On the first document that fails
        """
        client = self.client_factory(endpoint)
        applied = 0
        for doc in manifest_set:
            logger.debug(f"Applying {doc.describe()} to {endpoint.name}")
            try:
                client.apply_file(doc.path, self.field_manager)
                if doc.kind == 'CustomResourceDefinition' and doc.name:
                    client.wait_for(f'crd/{doc.name}', 'Established', timeout=CRD_ESTABLISH_TIMEOUT)
            except KubectlError as e:
                raise ApplyError(str(doc.path), e.stderr) from e
            applied += 1
        logger.info(f"Applied {applied} documents to {endpoint.name}")
        return applied
