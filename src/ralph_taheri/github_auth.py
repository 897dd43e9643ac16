"""GitHub REST access for the GitHub Issues backend.

Supports two authentication methods:
1. gh CLI (preferred) - uses the system keychain and resolves
   ``{owner}/{repo}`` placeholders from the current checkout
2. Token-based - reads a personal access token from an environment variable

Tokens are never logged or printed; ``__repr__`` hides them.
"""

from __future__ import annotations

import json
import os
import subprocess
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

GITHUB_API_URL = "https://api.github.com"


class GitHubAuthError(Exception):
    """Authentication or transport failure talking to GitHub."""

    pass


class GitHubNotFoundError(GitHubAuthError):
    """The requested resource does not exist (HTTP 404)."""

    pass


def _with_query(endpoint: str, params: Optional[Dict[str, Any]]) -> str:
    if not params:
        return endpoint
    sep = "&" if "?" in endpoint else "?"
    return f"{endpoint}{sep}{urlencode(params)}"


class GitHubAuth(ABC):
    """Authenticated access to the GitHub REST API."""

    @abstractmethod
    def api_call(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make an authenticated API call.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            endpoint: API path (e.g. "/repos/owner/repo/issues")
            data: Optional JSON body
            params: Optional query parameters

        Returns:
            Decoded JSON response (dict or list), {} for empty bodies

        Raises:
            GitHubNotFoundError: If the resource does not exist
            GitHubAuthError: For any other failure
        """

    @abstractmethod
    def validate(self) -> bool:
        """True if the credentials work."""


class GhCliAuth(GitHubAuth):
    """Authentication through ``gh api``."""

    def __init__(self, timeout_seconds: int = 30) -> None:
        """Raises GitHubAuthError if the gh CLI is not installed."""
        self.timeout_seconds = timeout_seconds
        if not self._is_gh_installed():
            raise GitHubAuthError(
                "gh CLI is not installed. Install it from https://cli.github.com/ "
                "or use token-based authentication instead."
            )

    def _is_gh_installed(self) -> bool:
        try:
            subprocess.run(["gh", "--version"], capture_output=True, check=True, timeout=5)
            return True
        except (
            subprocess.CalledProcessError,
            FileNotFoundError,
            subprocess.TimeoutExpired,
        ):
            return False

    def validate(self) -> bool:
        try:
            data = self.api_call("GET", "/user")
        except GitHubAuthError:
            return False
        return isinstance(data, dict) and "login" in data

    def api_call(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        cmd = ["gh", "api", _with_query(endpoint, params), "-X", method]

        stdin_data = None
        if data is not None:
            stdin_data = json.dumps(data)
            cmd.extend(["--input", "-"])

        try:
            result = subprocess.run(
                cmd,
                input=stdin_data,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            raise GitHubAuthError(f"GitHub API call timed out: {method} {endpoint}") from e
        except FileNotFoundError as e:
            raise GitHubAuthError("gh CLI disappeared from PATH") from e
        except subprocess.CalledProcessError as e:
            error_msg = (e.stderr or e.stdout or "").strip() or "Unknown error"
            lowered = error_msg.lower()
            if "not found" in lowered or "http 404" in lowered:
                raise GitHubNotFoundError(f"GitHub resource not found: {endpoint}") from e
            if "authentication" in lowered or "unauthorized" in lowered:
                raise GitHubAuthError(
                    "GitHub authentication failed. Run 'gh auth login' to authenticate."
                ) from e
            if "rate limit" in lowered:
                raise GitHubAuthError("GitHub API rate limit exceeded. Try again later.") from e
            raise GitHubAuthError(f"GitHub API call failed: {error_msg}") from e

        if not result.stdout.strip():
            return {}
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise GitHubAuthError(f"Failed to parse GitHub API response: {e}") from e

    def __repr__(self) -> str:
        return "GhCliAuth()"


class TokenAuth(GitHubAuth):
    """Authentication with a personal access token over ``requests``."""

    def __init__(
        self,
        token: Optional[str] = None,
        token_env: str = "GITHUB_TOKEN",
        timeout_seconds: int = 30,
    ) -> None:
        """Raises GitHubAuthError if no token is available."""
        self._token = token or os.getenv(token_env)
        self.timeout_seconds = timeout_seconds

        if not self._token:
            raise GitHubAuthError(
                f"GitHub token not found. Set {token_env} environment variable "
                "or pass token directly. Get a token from https://github.com/settings/tokens"
            )

        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "ralph-taheri",
            }
        )

    def validate(self) -> bool:
        try:
            self.api_call("GET", "/user")
            return True
        except GitHubAuthError:
            return False

    def api_call(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if method not in {"GET", "POST", "PATCH", "PUT", "DELETE"}:
            raise GitHubAuthError(f"Unsupported HTTP method: {method}")

        url = f"{GITHUB_API_URL}{endpoint}"
        try:
            response = self._session.request(
                method,
                url,
                json=data,
                params=params,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.Timeout as e:
            raise GitHubAuthError(f"GitHub API call timed out: {method} {endpoint}") from e
        except requests.exceptions.RequestException as e:
            raise GitHubAuthError(f"GitHub API call failed: {e}") from e

        if response.status_code == 401:
            raise GitHubAuthError(
                "GitHub authentication failed. Check your token and try again."
            )
        if response.status_code == 403:
            if "rate limit" in response.text.lower():
                raise GitHubAuthError("GitHub API rate limit exceeded. Try again later.")
            raise GitHubAuthError(
                "GitHub API access forbidden. Check your token permissions."
            )
        if response.status_code == 404:
            raise GitHubNotFoundError(f"GitHub resource not found: {endpoint}")
        if response.status_code >= 400:
            raise GitHubAuthError(
                f"GitHub API call failed with status {response.status_code}: {response.text[:500]}"
            )

        if not response.text.strip():
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise GitHubAuthError(f"Failed to parse GitHub API response: {e}") from e

    def __repr__(self) -> str:
        return "TokenAuth(***)"


def create_auth(auth_method: str = "gh_cli", token_env: str = "GITHUB_TOKEN") -> GitHubAuth:
    """Create the configured auth implementation.

    Raises:
        GitHubAuthError: If the method is unknown or its prerequisites are missing
    """
    if auth_method == "gh_cli":
        return GhCliAuth()
    if auth_method == "token":
        return TokenAuth(token_env=token_env)
    raise GitHubAuthError(f"Unknown auth method: {auth_method}. Use 'gh_cli' or 'token'.")
