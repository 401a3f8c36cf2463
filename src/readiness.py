"""Pre-flight readiness checks for create-cluster.

Validates prerequisites before any resource is created:
- external tools on PATH (warnings only; the failing step reports precisely)
- GitHub token validity
"""

import requests

from common import tool_available
from config import ClusterConfig

REQUIRED_TOOLS = (
    'kubectl',
    'docker',
    'git',
    'kind',
    'clusterctl',
    'clusterawsadm',
    'kustomize',
    'ssh-keygen',
)


def check_tools(tools: tuple = REQUIRED_TOOLS) -> list[str]:
    """Return warnings for tools missing from PATH."""
    return [f"'{tool}' not found on PATH" for tool in tools if not tool_available(tool)]


def validate_github_token(api_url: str, token: str) -> tuple[bool, str]:
    """Validate the GitHub token with a lightweight API call.

    Returns:
        (success, message) tuple
    """
    if not token:
        return False, "GitHub token is empty"

    try:
        resp = requests.get(
            f"{api_url.rstrip('/')}/user",
            headers={'Authorization': f'token {token}', 'Accept': 'application/vnd.github+json'},
            timeout=10,
        )
    except requests.exceptions.ConnectionError as e:
        return False, f"Cannot connect to {api_url}: {e}"
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to {api_url}"
    except requests.exceptions.RequestException as e:
        return False, f"Error validating token: {e}"

    if resp.status_code == 401:
        return False, "Invalid GitHub token. Create one with the 'repo' scope and pass it with --github-token"
    if resp.status_code == 200:
        login = resp.json().get('login', 'unknown')
        scopes = resp.headers.get('X-OAuth-Scopes')
        if scopes is not None and 'repo' not in [s.strip() for s in scopes.split(',')]:
            return False, f"GitHub token for {login} lacks the 'repo' scope (has: {scopes or 'none'})"
        return True, f"GitHub API accessible as {login}"

    return False, f"Unexpected GitHub API response: {resp.status_code} - {resp.text[:100]}"


def validate_readiness(config: ClusterConfig, check_token: bool = True) -> tuple[list[str], list[str]]:
    """Run all readiness checks.

    Returns:
        (errors, warnings); errors block the run, warnings are only logged
    """
    errors = []
    warnings = check_tools()

    if check_token:
        ok, message = validate_github_token(config.github_api, config.github_token)
        if not ok:
            errors.append(message)

    return errors, warnings
