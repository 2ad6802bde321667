"""Unit tests for manifest_sync/auth.py"""

import base64
import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from manifest_sync.auth import RegistryCredentials, resolve_credentials
from manifest_sync.error_utils import AuthenticationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ("REGISTRY_USERNAME", "REGISTRY_PASSWORD", "DOCKER_CONFIG"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def docker_config(tmp_path):
    """Write a docker config.json into tmp_path and return the directory"""

    def _write(content):
        path = tmp_path / "config.json"
        path.write_text(content if isinstance(content, str) else json.dumps(content))
        return str(tmp_path)

    return _write


def _auth(user, password):
    return base64.b64encode(f"{user}:{password}".encode()).decode()


class TestResolveCredentials:
    """Tests for resolve_credentials"""

    def test_environment_takes_precedence(self, monkeypatch, docker_config):
        monkeypatch.setenv("REGISTRY_USERNAME", "env-user")
        monkeypatch.setenv("REGISTRY_PASSWORD", "env-pass")
        config_dir = docker_config({"auths": {"registry.io": {"auth": _auth("file-user", "file-pass")}}})

        assert resolve_credentials("registry.io", config_dir) == RegistryCredentials("env-user", "env-pass")

    def test_decodes_auth_field(self, docker_config):
        config_dir = docker_config({"auths": {"registry.io": {"auth": _auth("user", "pa:ss")}}})

        assert resolve_credentials("registry.io", config_dir) == RegistryCredentials("user", "pa:ss")

    def test_matches_https_key(self, docker_config):
        config_dir = docker_config({"auths": {"https://registry.io": {"username": "u", "password": "p"}}})

        assert resolve_credentials("registry.io", config_dir) == RegistryCredentials("u", "p")

    def test_other_registry_only_is_anonymous(self, docker_config):
        config_dir = docker_config({"auths": {"other.io": {"auth": _auth("u", "p")}}})

        assert resolve_credentials("registry.io", config_dir) is None

    def test_missing_config_is_anonymous(self, tmp_path):
        assert resolve_credentials("registry.io", str(tmp_path)) is None

    def test_uses_docker_config_env_var(self, monkeypatch, docker_config):
        config_dir = docker_config({"auths": {"registry.io": {"auth": _auth("u", "p")}}})
        monkeypatch.setenv("DOCKER_CONFIG", config_dir)

        assert resolve_credentials("registry.io") == RegistryCredentials("u", "p")

    def test_malformed_config_raises_authentication_error(self, docker_config):
        config_dir = docker_config("{not json")

        with pytest.raises(AuthenticationError):
            resolve_credentials("registry.io", config_dir)

    @pytest.mark.parametrize("content", [
        {"auths": {"registry.io": "not-a-mapping"}},
        {"auths": ["registry.io"]},
        ["registry.io"],
    ])
    def test_wrongly_shaped_config_raises_authentication_error(self, docker_config, content):
        config_dir = docker_config(content)

        with pytest.raises(AuthenticationError):
            resolve_credentials("registry.io", config_dir)

    def test_wrongly_shaped_helper_output_raises_authentication_error(self, docker_config):
        config_dir = docker_config({"credsStore": "desktop"})
        completed = MagicMock(stdout=json.dumps(["helper-user", "helper-secret"]))

        with patch("manifest_sync.auth.subprocess.run", return_value=completed):
            with pytest.raises(AuthenticationError):
                resolve_credentials("registry.io", config_dir)

    def test_credential_helper(self, docker_config):
        config_dir = docker_config({"credHelpers": {"registry.io": "pass"}, "auths": {"registry.io": {}}})
        completed = MagicMock(stdout=json.dumps({"Username": "helper-user", "Secret": "helper-secret"}))

        with patch("manifest_sync.auth.subprocess.run", return_value=completed) as mock_run:
            credentials = resolve_credentials("registry.io", config_dir)

        assert credentials == RegistryCredentials("helper-user", "helper-secret")
        assert mock_run.call_args[0][0] == ["docker-credential-pass", "get"]
        assert mock_run.call_args[1]["input"] == "registry.io"

    def test_helper_without_credentials_falls_back_to_auths(self, docker_config):
        config_dir = docker_config({"credsStore": "desktop", "auths": {"registry.io": {"auth": _auth("u", "p")}}})
        error = subprocess.CalledProcessError(1, ["docker-credential-desktop", "get"],
                                              output="credentials not found in native keychain")

        with patch("manifest_sync.auth.subprocess.run", side_effect=error):
            assert resolve_credentials("registry.io", config_dir) == RegistryCredentials("u", "p")

    def test_missing_helper_binary_raises_authentication_error(self, docker_config):
        config_dir = docker_config({"credsStore": "missing"})

        with patch("manifest_sync.auth.subprocess.run", side_effect=FileNotFoundError("docker-credential-missing")):
            with pytest.raises(AuthenticationError) as exc_info:
                resolve_credentials("registry.io", config_dir)
        assert "credential helper" in str(exc_info.value)


class TestRegistryCredentials:
    def test_repr_hides_password(self):
        assert "secret" not in repr(RegistryCredentials("user", "secret"))

    def test_skopeo_creds(self):
        assert RegistryCredentials("user", "secret").as_skopeo_creds() == "user:secret"
