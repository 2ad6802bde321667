#!/usr/bin/env python3
"""
Configuration Manager for manifest-sync

This module handles loading and managing configuration from config.yaml
and environment variables. Command line flags are applied on top by the CLI.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml

from manifest_sync.error_utils import ConfigurationError, create_config_error

DEFAULT_CONFIG: Dict[str, Any] = {
    "architectures": {
        "process": ["amd64", "s390x"],
        "all": ["amd64", "s390x", "ppc64le", "arm64"],
    },
    "concurrency": {
        "inventory_workers": 16,
        "tag_workers": 8,
        "repo_workers": 1,
    },
    "registry": {
        "tls_verify": True,
        "timeout": 60,  # Timeout for skopeo / HTTP calls in seconds
        "catalog_page_size": 1000,
    },
    "retry": {
        "max_retries": 3,
        "initial_delay": 1.0,
        "max_delay": 30.0,
        "exponential_base": 2.0,
        "jitter": True,
    },
    "rate_limit": {
        "enabled": True,
        "requests_per_second": 10.0,
        "burst_size": 20,
    },
    "plan": {
        "tool": "docker",
        "insecure": True,
    },
}


def parse_arch_list(value: Any) -> List[str]:
    """Normalize a comma separated string or a YAML list into a list of architectures.

    Empty items are dropped, so ``""`` and ``","`` both become ``[]``.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        raise create_config_error("architectures", value, "expected a list or a comma separated string")
    return [item.strip() for item in items if item.strip()]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class ConfigManager:
    """Manages configuration for a manifest-sync run"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to CONFIG_FILE env var or ./config.yaml)
            validate: If True, validate configuration on initialization
        """
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()
        self._overrides: Dict[str, Any] = {}

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        if not os.path.exists(self.config_file):
            logging.warning(f"Config file {self.config_file} not found, using defaults")
            return self._merge_config(DEFAULT_CONFIG, {})

        try:
            with open(self.config_file, "r") as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise create_config_error("config_file", self.config_file, f"could not be loaded: {e}")

        if not isinstance(user_config, dict):
            raise create_config_error("config_file", self.config_file, "top level must be a mapping")
        return self._merge_config(DEFAULT_CONFIG, user_config)

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = {k: (dict(v) if isinstance(v, dict) else v) for k, v in default.items()}
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def set_override(self, key: str, value: Any) -> None:
        """Apply a command line value; ``None`` leaves the configured value in place"""
        if value is not None:
            self._overrides[key] = value

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.config.get(name) or {}
        if not isinstance(section, dict):
            raise create_config_error(name, section, "must be a mapping")
        return section

    def _get_int(self, section: str, key: str) -> int:
        value = self._overrides.get(f"{section}.{key}", self._section(section).get(key, DEFAULT_CONFIG[section][key]))
        try:
            return int(value)
        except (ValueError, TypeError):
            raise create_config_error(f"{section}.{key}", value, "must be an integer")

    def _get_float(self, section: str, key: str) -> float:
        value = self._section(section).get(key, DEFAULT_CONFIG[section][key])
        try:
            return float(value)
        except (ValueError, TypeError):
            raise create_config_error(f"{section}.{key}", value, "must be a number")

    # Architecture configuration
    def get_architectures_to_process(self) -> List[str]:
        """Architectures processed this run. Priority: CLI -> env ARCHS -> config"""
        value = self._overrides.get("architectures.process", os.environ.get("ARCHS"))
        if value is None:
            value = self._section("architectures").get("process")
        return parse_arch_list(value)

    def get_all_architectures(self) -> List[str]:
        """All architectures the registry uses. Priority: CLI -> env ALL_ARCHS -> config"""
        value = self._overrides.get("architectures.all", os.environ.get("ALL_ARCHS"))
        if value is None:
            value = self._section("architectures").get("all")
        return parse_arch_list(value)

    # Concurrency configuration
    def get_inventory_workers(self) -> int:
        return self._get_int("concurrency", "inventory_workers")

    def get_tag_workers(self) -> int:
        """Bound on concurrent fetches within one repository"""
        return self._get_int("concurrency", "tag_workers")

    def get_repo_workers(self) -> int:
        """Bound on repositories reconciled at the same time (1 = sequential)"""
        return self._get_int("concurrency", "repo_workers")

    # Registry configuration
    def get_tls_verify(self) -> bool:
        """Get TLS verification setting from environment or config"""
        env = os.environ.get("REGISTRY_TLS_VERIFY")
        if env is not None:
            return _parse_bool(env)
        return _parse_bool(self._section("registry").get("tls_verify", True))

    def get_registry_timeout(self) -> int:
        return self._get_int("registry", "timeout")

    def get_catalog_page_size(self) -> int:
        return self._get_int("registry", "catalog_page_size")

    # Retry configuration
    def get_max_retries(self) -> int:
        return self._get_int("retry", "max_retries")

    def get_retry_initial_delay(self) -> float:
        return self._get_float("retry", "initial_delay")

    def get_retry_max_delay(self) -> float:
        return self._get_float("retry", "max_delay")

    def get_retry_exponential_base(self) -> float:
        return self._get_float("retry", "exponential_base")

    def get_retry_jitter(self) -> bool:
        return _parse_bool(self._section("retry").get("jitter", True))

    # Rate limiting
    def get_rate_limit_enabled(self) -> bool:
        return _parse_bool(self._section("rate_limit").get("enabled", True))

    def get_rate_limit_rps(self) -> float:
        return self._get_float("rate_limit", "requests_per_second")

    def get_rate_limit_burst(self) -> int:
        return self._get_int("rate_limit", "burst_size")

    # Update plan
    def get_plan_tool(self) -> str:
        return str(self._section("plan").get("tool", "docker"))

    def get_plan_insecure(self) -> bool:
        return _parse_bool(self._section("plan").get("insecure", True))

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors = []
        warnings = []

        all_archs = self.get_all_architectures()
        archs = self.get_architectures_to_process()
        if not all_archs:
            errors.append(create_config_error("architectures.all", all_archs,
                                              "list of all architectures not allowed to be empty"))
        if not archs:
            errors.append(create_config_error("architectures.process", archs,
                                              "list of architectures to process not allowed to be empty"))
        unknown = [a for a in archs if a not in all_archs]
        if all_archs and unknown:
            warnings.append(
                f"architectures {', '.join(unknown)} are processed but not listed as known; "
                "their repositories will be treated as top-level"
            )

        for key in ("inventory_workers", "tag_workers", "repo_workers"):
            workers = self._get_int("concurrency", key)
            if workers < 1:
                errors.append(create_config_error(f"concurrency.{key}", workers, "must be a positive integer"))
            elif workers > 100:
                warnings.append(f"concurrency.{key} is very high ({workers}), this may cause resource issues")

        timeout = self.get_registry_timeout()
        if timeout < 1:
            errors.append(create_config_error("registry.timeout", timeout, "must be a positive integer (seconds)"))

        if self.get_catalog_page_size() < 1:
            errors.append(create_config_error("registry.catalog_page_size", self.get_catalog_page_size(),
                                              "must be a positive integer"))

        max_retries = self.get_max_retries()
        if max_retries < 0:
            errors.append(create_config_error("retry.max_retries", max_retries, "must be a non-negative integer"))

        initial_delay = self.get_retry_initial_delay()
        max_delay = self.get_retry_max_delay()
        if initial_delay < 0:
            errors.append(create_config_error("retry.initial_delay", initial_delay, "must be a non-negative number"))
        elif max_delay < initial_delay:
            errors.append(create_config_error("retry.max_delay", max_delay,
                                              f"must be >= retry.initial_delay ({initial_delay})"))

        if self.get_retry_exponential_base() < 1.0:
            errors.append(create_config_error("retry.exponential_base", self.get_retry_exponential_base(),
                                              "must be >= 1.0"))

        if self.get_rate_limit_enabled() and self.get_rate_limit_rps() <= 0:
            errors.append(create_config_error("rate_limit.requests_per_second", self.get_rate_limit_rps(),
                                              "must be a positive number"))
        if self.get_rate_limit_enabled() and self.get_rate_limit_burst() < 1:
            errors.append(create_config_error("rate_limit.burst_size", self.get_rate_limit_burst(),
                                              "must be a positive integer"))

        for warning in warnings:
            logging.warning(f"Configuration warning: {warning}")

        if errors:
            if len(errors) == 1:
                raise errors[0]
            raise ConfigurationError(
                message="Configuration validation failed:\n  " + "\n  ".join(
                    f"{e.details['field']}: {e.details['reason']}" for e in errors
                ),
                category=errors[0].category,
                suggestions=errors[0].suggestions,
            )

    def print_config(self, domain: Optional[str] = None):
        """Print current configuration"""
        print("Current Configuration:")
        if domain:
            print(f"  Registry Domain: {domain}")
        print(f"  Architectures To Process: {','.join(self.get_architectures_to_process())}")
        print(f"  All Architectures: {','.join(self.get_all_architectures())}")
        print(f"  Inventory Workers: {self.get_inventory_workers()}")
        print(f"  Tag Workers: {self.get_tag_workers()}")
        print(f"  Repository Workers: {self.get_repo_workers()}")
        print(f"  TLS Verify: {self.get_tls_verify()}")
        print(f"  Timeout: {self.get_registry_timeout()}")
        print(f"  Max Retries: {self.get_max_retries()}")
