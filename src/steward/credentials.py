"""Git credential providers.

Credentials are fetched once per claim and shared by every clone in that
claim. Authentication failures are fatal and never retried here.
"""

from __future__ import annotations

import os
from typing import Mapping, Protocol

from pydantic import ValidationError

from . import log
from .api import ApiClient, error_detail, raise_for_status
from .errors import AuthenticationError, RemoteApiError
from .models import GitCredentials

CREDENTIALS_PATH = "/api/cli/credentials"

ENV_GIT_TOKEN = "STEWARD_GIT_TOKEN"
ENV_GIT_USERNAME = "STEWARD_GIT_USERNAME"
ENV_GIT_NAME = "STEWARD_GIT_NAME"
ENV_GIT_EMAIL = "STEWARD_GIT_EMAIL"


class CredentialProvider(Protocol):
    """Source of git credentials for clone and commit identity."""

    def get_credentials(self) -> GitCredentials: ...


class StaticCredentialProvider:
    """Return a fixed set of credentials."""

    def __init__(self, credentials: GitCredentials) -> None:
        self._credentials = credentials

    def get_credentials(self) -> GitCredentials:
        return self._credentials


class EnvCredentialProvider:
    """Read credentials from ``STEWARD_GIT_*`` environment variables."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env = env

    def get_credentials(self) -> GitCredentials:
        env = os.environ if self._env is None else self._env
        token = env.get(ENV_GIT_TOKEN, "").strip()
        if not token:
            raise AuthenticationError(
                f"{ENV_GIT_TOKEN} is not set",
                recovery_hint=f"export {ENV_GIT_TOKEN} or configure the credentials endpoint",
            )
        return GitCredentials(
            token=token,
            username=env.get(ENV_GIT_USERNAME) or None,
            name=env.get(ENV_GIT_NAME) or None,
            email=env.get(ENV_GIT_EMAIL) or None,
        )


class HttpCredentialProvider:
    """Fetch the linked git provider credentials from the remote API."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    def get_credentials(self) -> GitCredentials:
        response = self._client.get(CREDENTIALS_PATH)
        if response.status_code == 404:
            raise AuthenticationError(
                "git provider not connected",
                recovery_hint="connect a git provider account, then restart the worker",
            )
        raise_for_status(response, context="fetch credentials")
        try:
            credentials = GitCredentials.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise RemoteApiError(
                response.status_code, f"malformed credentials payload: {error_detail(response)}"
            ) from exc
        log.debug("fetched git credentials")
        return credentials
