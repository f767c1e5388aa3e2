import os
import json
from dataclasses import dataclass
from typing import Dict, Optional

from .config import AGENT_CREDENTIALS_PATH, AGENT_API_KEY_ENV, logger


class CredentialsError(RuntimeError):
    """Raised when the credential file exists but cannot be used."""


@dataclass
class AgentCredentials:
    api_key: Optional[str] = None
    auth_method: Optional[str] = None

    def agent_env(self, api_key_env: str = AGENT_API_KEY_ENV) -> Dict[str, str]:
        """Environment for the agent process, with the key exported if we have one."""
        env = dict(os.environ)
        if self.api_key:
            env[api_key_env] = self.api_key
        return env


def load_credentials(path: str = AGENT_CREDENTIALS_PATH) -> AgentCredentials:
    """
    Reads the local credential file.

    A missing file is not an error: the agent may already be logged in on its own.
    """
    if not os.path.exists(path):
        logger.info(f"[CREDENTIALS] {path} not found, agent will use its own login")
        return AgentCredentials()

    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CredentialsError(f"Could not read credential file {path}: {e}") from e

    if not isinstance(data, dict):
        raise CredentialsError(f"Credential file {path} must contain a JSON object")

    credentials = AgentCredentials(
        api_key=data.get("api_key") or None,
        auth_method=data.get("auth_method") or None,
    )
    logger.info(
        f"[CREDENTIALS] Loaded {path}: api_key={'set' if credentials.api_key else 'unset'}, "
        f"auth_method={credentials.auth_method}"
    )
    return credentials
