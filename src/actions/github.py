"""GitOps repository publishing on GitHub.

Creates the per-cluster repository through the GitHub REST API, registers a
repository-scoped deploy key, and pushes commits with git. Pushes are never
forced: a rejected push aborts the run.
"""

import base64
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from actions.templates import RepoTemplates
from common import ActionResult, run_command
from config import DEFAULT_GITHUB_API, ClusterConfig
from errors import AuthError, ConflictError, ResourceError, TransportError
from run_state import WorkflowRun

logger = logging.getLogger(__name__)

GIT_AUTHOR = ('gokp', 'gokp@users.noreply.github.com')
_REJECTED_MARKERS = ('[rejected]', 'non-fast-forward', 'fetch first', '[remote rejected]')
_AUTH_MARKERS = ('Authentication failed', 'could not read Username', 'returned error: 403',
                 'returned error: 401', 'Permission to')


@dataclass
class RepositoryHandle:
    """A created remote repository and its local working copy."""
    name: str
    owner: str
    url: str
    clone_url: str
    ssh_url: str
    local_path: Path
    default_branch: str = 'main'
    private: bool = True
    deploy_key: Optional[Path] = None  # private key; public key at <path>.pub

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'owner': self.owner,
            'url': self.url,
            'clone_url': self.clone_url,
            'ssh_url': self.ssh_url,
            'local_path': str(self.local_path),
            'default_branch': self.default_branch,
            'private': self.private,
            'deploy_key': str(self.deploy_key) if self.deploy_key else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RepositoryHandle':
        return cls(
            name=data['name'],
            owner=data['owner'],
            url=data['url'],
            clone_url=data['clone_url'],
            ssh_url=data['ssh_url'],
            local_path=Path(data['local_path']),
            default_branch=data.get('default_branch', 'main'),
            private=data.get('private', True),
            deploy_key=Path(data['deploy_key']) if data.get('deploy_key') else None,
        )


class GitOpsPublisher:
    """Creates and pushes the cluster's configuration repository."""

    def __init__(
        self,
        token: str,
        workdir: Path,
        api_url: str = DEFAULT_GITHUB_API,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        self.token = token
        self.workdir = workdir
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'token {token}',
            'Accept': 'application/vnd.github+json',
        })

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            resp = self.session.request(method, f"{self.api_url}{path}", timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"GitHub API {method} {path} failed: {e}") from e
        if resp.status_code in (401, 403):
            raise AuthError(f"GitHub rejected credentials for {method} {path} ({resp.status_code})")
        return resp

    @staticmethod
    def _error_text(resp: requests.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text[:200]
        messages = [data.get('message', '')]
        messages += [e.get('message', '') for e in data.get('errors', []) if isinstance(e, dict)]
        return '; '.join(m for m in messages if m)

    def create_repository(self, name: str, private: bool = True) -> RepositoryHandle:
        """Create the remote repository, its deploy key and a local working copy.

        Raises:
            AuthError: Bad token
            ConflictError: Repository name already taken
            TransportError: Any other API failure
        """
        logger.info(f"Creating {'private' if private else 'public'} GitHub repository '{name}'")
        resp = self._request('POST', '/user/repos', json={
            'name': name,
            'private': private,
            'description': f'GitOps configuration for cluster {name}',
            'auto_init': False,
        })
        if resp.status_code == 422 and 'already exists' in self._error_text(resp):
            raise ConflictError(f"GitHub repository '{name}' already exists")
        if resp.status_code != 201:
            raise TransportError(f"Cannot create repository '{name}': "
                                 f"{resp.status_code} {self._error_text(resp)}")
        data = resp.json()

        handle = RepositoryHandle(
            name=data['name'],
            owner=data['owner']['login'],
            url=data['html_url'],
            clone_url=data['clone_url'],
            ssh_url=data['ssh_url'],
            local_path=self.workdir / name,
            default_branch=data.get('default_branch') or 'main',
            private=data.get('private', private),
        )
        handle.deploy_key = self._create_deploy_key(handle)
        self._init_clone(handle)
        return handle

    def _create_deploy_key(self, handle: RepositoryHandle) -> Path:
        """Generate an ed25519 key pair and register it read-only on the repo."""
        key_path = self.workdir / f'{handle.name}-deploy-key'
        rc, _, err = run_command(['ssh-keygen', '-q', '-t', 'ed25519', '-N', '',
                                  '-C', f'gokp-{handle.name}', '-f', str(key_path)], timeout=30)
        if rc != 0:
            raise ResourceError(f"ssh-keygen failed: {err.strip()}")
        public_key = key_path.with_name(key_path.name + '.pub').read_text(encoding='utf-8').strip()

        resp = self._request('POST', f'/repos/{handle.owner}/{handle.name}/keys', json={
            'title': f'gokp-{handle.name}',
            'key': public_key,
            'read_only': True,
        })
        if resp.status_code != 201:
            raise TransportError(f"Cannot add deploy key to {handle.owner}/{handle.name}: "
                                 f"{resp.status_code} {self._error_text(resp)}")
        logger.debug(f"Registered deploy key {key_path.name} on {handle.owner}/{handle.name}")
        return key_path

    def _git(self, args: list[str], cwd: Path, timeout: int = 120, auth: bool = False) -> tuple[int, str, str]:
        env = {
            **os.environ,
            'GIT_TERMINAL_PROMPT': '0',
            'GIT_AUTHOR_NAME': GIT_AUTHOR[0], 'GIT_AUTHOR_EMAIL': GIT_AUTHOR[1],
            'GIT_COMMITTER_NAME': GIT_AUTHOR[0], 'GIT_COMMITTER_EMAIL': GIT_AUTHOR[1],
        }
        if auth:
            # Passed through the environment so the token never shows up in argv
            basic = base64.b64encode(f'x-access-token:{self.token}'.encode()).decode()
            env.update({
                'GIT_CONFIG_COUNT': '1',
                'GIT_CONFIG_KEY_0': 'http.extraheader',
                'GIT_CONFIG_VALUE_0': f'AUTHORIZATION: basic {basic}',
            })
        return run_command(['git'] + args, cwd=cwd, timeout=timeout, env=env)

    def _init_clone(self, handle: RepositoryHandle) -> None:
        """Create the local working copy of the (empty) remote repository."""
        try:
            handle.local_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceError(f"Cannot create {handle.local_path}: {e}") from e
        for args in (['init', '-q', '-b', handle.default_branch],
                     ['remote', 'add', 'origin', handle.clone_url]):
            rc, _, err = self._git(args, cwd=handle.local_path)
            if rc != 0:
                raise ResourceError(f"git {args[0]} failed in {handle.local_path}: {err.strip()}")

    def seed(self, handle: RepositoryHandle, templates: RepoTemplates) -> None:
        """Write the repository skeleton and push it as the first commit."""
        written = templates.write(handle.local_path, handle)
        logger.info(f"Wrote {len(written)} skeleton files to {handle.local_path}")
        self.publish(handle, handle.local_path, 'initial repository structure')

    def publish(self, handle: RepositoryHandle, local_dir: Path, message: str) -> bool:
        """Stage everything, commit and push. Returns False if nothing changed.

        Raises:
            TransportError: Push rejected (never force-pushed) or network failure
            AuthError: Credentials rejected by the remote
        """
        rc, _, err = self._git(['add', '-A'], cwd=local_dir)
        if rc != 0:
            raise ResourceError(f"git add failed: {err.strip()}")
        rc, out, err = self._git(['status', '--porcelain'], cwd=local_dir)
        if rc != 0:
            raise ResourceError(f"git status failed: {err.strip()}")
        if not out.strip():
            logger.info(f"Nothing to commit in {local_dir}")
            return False

        rc, _, err = self._git(['commit', '-q', '-m', message], cwd=local_dir)
        if rc != 0:
            raise ResourceError(f"git commit failed: {err.strip()}")

        logger.info(f"Pushing '{message}' to {handle.url}")
        rc, _, err = self._git(['push', '-q', 'origin', f'HEAD:refs/heads/{handle.default_branch}'],
                               cwd=local_dir, timeout=300, auth=True)
        if rc != 0:
            if any(marker in err for marker in _AUTH_MARKERS):
                raise AuthError(f"Push to {handle.url} denied: {err.strip()}")
            if any(marker in err for marker in _REJECTED_MARKERS):
                raise TransportError(f"Push to {handle.url} rejected: {err.strip()}")
            raise TransportError(f"Push to {handle.url} failed: {err.strip()}")
        return True


def _publisher(config: ClusterConfig, run: WorkflowRun) -> GitOpsPublisher:
    return GitOpsPublisher(config.github_token, run.require('workspace'), api_url=config.github_api)


@dataclass
class CreateRepositoryAction:
    """Create the per-cluster GitHub repository and its local clone."""
    name: str

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        handle = _publisher(config, run).create_repository(config.cluster_name, private=config.private_repo)
        run.repository = handle.to_dict()
        logger.info(f"[{self.name}] Repository {handle.owner}/{handle.name} created")
        return ActionResult(success=True, message=handle.url, duration=time.time() - start)


@dataclass
class SeedRepositoryAction:
    """Write the repository skeleton and push the first commit."""
    name: str

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        handle = RepositoryHandle.from_dict(run.require('repository'))
        _publisher(config, run).seed(handle, RepoTemplates(config.cluster_name))
        return ActionResult(success=True, message=f"Skeleton pushed to {handle.url}",
                            duration=time.time() - start)


@dataclass
class PushRepositoryAction:
    """Commit and push whatever changed in the local clone."""
    name: str
    message: str = 'add cluster definition'

    def run(self, config: ClusterConfig, run: WorkflowRun) -> ActionResult:
        start = time.time()
        handle = RepositoryHandle.from_dict(run.require('repository'))
        pushed = _publisher(config, run).publish(handle, handle.local_path, f"{self.message} ({config.cluster_name})")
        if not pushed:
            logger.warning(f"[{self.name}] Nothing new to push to {handle.url}")
        return ActionResult(success=True, message='pushed' if pushed else 'nothing to push',
                            duration=time.time() - start)
