"""
Credential resolution for the audited registry.

Credentials are looked up the way the docker CLI stores them:
- REGISTRY_USERNAME / REGISTRY_PASSWORD environment variables
- credential helpers (credHelpers / credsStore) from docker's config.json
- inline ``auths`` entries from docker's config.json
"""

import base64
import json
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, Optional

from manifest_sync.error_utils import create_registry_auth_error


@dataclass(frozen=True)
class RegistryCredentials:
    username: str
    password: str

    def as_skopeo_creds(self) -> str:
        return f"{self.username}:{self.password}"

    def __repr__(self) -> str:
        return f"RegistryCredentials(username={self.username!r}, password='****')"


def docker_config_path(docker_config_dir: Optional[str] = None) -> str:
    """Location of docker's config.json ($DOCKER_CONFIG or ~/.docker)"""
    config_dir = docker_config_dir or os.environ.get("DOCKER_CONFIG") or os.path.join(
        os.path.expanduser("~"), ".docker"
    )
    return os.path.join(config_dir, "config.json")


def _auth_keys_for(domain: str):
    return (
        domain,
        f"https://{domain}",
        f"http://{domain}",
        f"https://{domain}/v1/",
        f"https://{domain}/v2/",
    )


def _credentials_from_helper(helper: str, domain: str) -> Optional[RegistryCredentials]:
    """Query ``docker-credential-<helper> get`` for the domain"""
    cmd = [f"docker-credential-{helper}", "get"]
    logging.debug(f"Querying credential helper {cmd[0]} for {domain}")
    try:
        result = subprocess.run(cmd, input=domain, capture_output=True, text=True, check=True, timeout=30)
    except subprocess.CalledProcessError as e:
        # Helpers exit non-zero with this message when they hold nothing for the server
        if "credentials not found" in (e.stdout or "").lower() + (e.stderr or "").lower():
            return None
        raise
    payload = json.loads(result.stdout)
    username, secret = payload.get("Username"), payload.get("Secret")
    if not secret:
        return None
    return RegistryCredentials(username=username or "", password=secret)


def _credentials_from_auths(auths: Dict[str, Any], domain: str) -> Optional[RegistryCredentials]:
    for key in _auth_keys_for(domain):
        auth_data = auths.get(key)
        if not auth_data:
            continue

        username = auth_data.get("username")
        password = auth_data.get("password")

        # Decode from 'auth' field (base64 encoded "username:password") when needed
        if (not username or not password) and auth_data.get("auth"):
            decoded = base64.b64decode(auth_data["auth"]).decode("utf-8")
            if ":" in decoded:
                decoded_user, decoded_pass = decoded.split(":", 1)
                username = username or decoded_user
                password = password or decoded_pass

        if username and password:
            logging.info(f"Found registry credentials for {domain} in docker config ({key})")
            return RegistryCredentials(username=username, password=password)
    return None


def resolve_credentials(domain: str, docker_config_dir: Optional[str] = None) -> Optional[RegistryCredentials]:
    """Resolve credentials for ``domain``.

    Args:
        domain: Registry domain, e.g. "registry.io" or "registry.io:5000".
        docker_config_dir: Directory holding docker's config.json (defaults to $DOCKER_CONFIG or ~/.docker).

    Returns:
        RegistryCredentials, or None for anonymous access.

    Raises:
        AuthenticationError: If the docker config or a credential helper cannot be read.
    """
    username = os.environ.get("REGISTRY_USERNAME")
    password = os.environ.get("REGISTRY_PASSWORD")
    if username and password:
        logging.info("Using registry credentials from REGISTRY_USERNAME/REGISTRY_PASSWORD")
        return RegistryCredentials(username=username, password=password)

    path = docker_config_path(docker_config_dir)
    if not os.path.exists(path):
        logging.debug(f"No docker config at {path}; using anonymous access")
        return None

    try:
        with open(path, "r") as f:
            docker_config = json.load(f)

        helper = (docker_config.get("credHelpers") or {}).get(domain) or docker_config.get("credsStore")
        if helper:
            credentials = _credentials_from_helper(helper, domain)
            if credentials:
                logging.info(f"Found registry credentials for {domain} via docker-credential-{helper}")
                return credentials

        credentials = _credentials_from_auths(docker_config.get("auths") or {}, domain)
    except (OSError, ValueError, AttributeError, TypeError, subprocess.SubprocessError) as e:
        # AttributeError/TypeError: config.json or helper output with the wrong JSON shape
        raise create_registry_auth_error(domain, e)

    if credentials is None:
        logging.debug(f"No credentials for {domain} in {path}; using anonymous access")
    return credentials
