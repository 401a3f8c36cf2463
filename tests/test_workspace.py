"""Tests for workspace.py - scratch directory and archive."""

import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from errors import ConflictError, ResourceError
from workspace import PRUNE_DIRS, PRUNE_FILES, WORKDIR_PREFIX, Workspace


class TestPreflight:
    """A previous archive with the same name blocks the run."""

    def test_no_archive(self, tmp_path):
        Workspace(tmp_path).preflight('demo1')

    def test_archive_exists(self, tmp_path):
        (tmp_path / 'demo1').mkdir()
        with pytest.raises(ConflictError, match='Stray artifacts found'):
            Workspace(tmp_path).preflight('demo1')

    def test_repeatable_until_archive_appears(self, tmp_path):
        workspace = Workspace(tmp_path)
        workspace.preflight('demo1')
        workspace.preflight('demo1')
        assert list(tmp_path.iterdir()) == []

        (tmp_path / 'demo1').mkdir()
        with pytest.raises(ConflictError):
            workspace.preflight('demo1')

    def test_other_archive_ignored(self, tmp_path):
        (tmp_path / 'demo2').mkdir()
        Workspace(tmp_path).preflight('demo1')

    def test_defaults_to_gokp_home(self, gokp_home):
        assert Workspace().root == gokp_home


class TestAcquire:
    def test_creates_root_and_private_dir(self, tmp_path):
        root = tmp_path / 'missing' / '.gokp'
        path = Workspace(root).acquire()
        assert path.is_dir()
        assert path.parent == root
        assert path.name.startswith(WORKDIR_PREFIX)

    def test_distinct_paths(self, tmp_path):
        ws = Workspace(tmp_path)
        assert ws.acquire() != ws.acquire()

    def test_unwritable_root(self, tmp_path):
        with patch('workspace.tempfile.mkdtemp', side_effect=PermissionError('denied')):
            with pytest.raises(ResourceError, match='Cannot create workspace'):
                Workspace(tmp_path).acquire()


def _fill(path: Path) -> None:
    for name in PRUNE_DIRS:
        (path / name).mkdir()
        (path / name / '00.doc.yaml').write_text('kind: ConfigMap\n')
    for name in PRUNE_FILES:
        (path / name).write_text('transient\n')
    (path / 'demo1.kubeconfig').write_text('apiVersion: v1\n')
    (path / 'demo1').mkdir()
    (path / 'demo1' / 'README.md').write_text('# demo1\n')


class TestPromote:
    """Test prune and rename to the permanent location."""

    def test_prunes_and_renames(self, tmp_path):
        ws = Workspace(tmp_path)
        scratch = ws.acquire()
        _fill(scratch)

        archive = ws.promote(scratch, 'demo1')

        assert archive == tmp_path / 'demo1'
        assert not scratch.exists()
        assert (archive / 'demo1.kubeconfig').exists()
        assert (archive / 'demo1' / 'README.md').exists()
        for name in PRUNE_DIRS + PRUNE_FILES:
            assert not (archive / name).exists()

    def test_missing_prune_entries_tolerated(self, tmp_path):
        ws = Workspace(tmp_path)
        scratch = ws.acquire()
        (scratch / 'demo1.kubeconfig').write_text('x')
        archive = ws.promote(scratch, 'demo1')
        assert (archive / 'demo1.kubeconfig').exists()

    def test_existing_archive_conflict(self, tmp_path):
        ws = Workspace(tmp_path)
        scratch = ws.acquire()
        (tmp_path / 'demo1').mkdir()
        with pytest.raises(ConflictError, match='Archive already exists'):
            ws.promote(scratch, 'demo1')
        # Nothing was pruned or moved
        assert scratch.exists()

    def test_rename_failure(self, tmp_path):
        ws = Workspace(tmp_path)
        scratch = ws.acquire()
        with patch('workspace.os.rename', side_effect=OSError('cross-device link')):
            with pytest.raises(ResourceError, match='cross-device link'):
                ws.promote(scratch, 'demo1')


class TestRelease:
    def test_removes_tree(self, tmp_path):
        ws = Workspace(tmp_path)
        scratch = ws.acquire()
        _fill(scratch)
        ws.release(scratch)
        assert not scratch.exists()

    def test_none_and_missing_are_noops(self, tmp_path):
        ws = Workspace(tmp_path)
        ws.release(None)
        ws.release(tmp_path / 'gone')
