"""
Error message utilities for providing actionable guidance to users.

Every fatal condition of a run is raised as an ActionableError subclass so the
CLI can print the message together with suggested fixes.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [self.message]

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\nAdditional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


class ConfigurationError(ActionableError):
    """Raised for invalid run configuration, before any network activity"""


class AuthenticationError(ActionableError):
    """Raised when registry credentials cannot be resolved"""


class CatalogError(ActionableError):
    """Raised when the registry catalog cannot be listed.

    ``malformed`` is True when the domain answered but did not serve a valid
    registry catalog, False for connectivity failures.
    """

    def __init__(self, message: str, malformed: bool = False, **kwargs):
        self.malformed = malformed
        super().__init__(message, **kwargs)


class TagListError(ActionableError):
    """Raised when the tags of one repository cannot be listed"""

    def __init__(self, message: str, repository: str, **kwargs):
        self.repository = repository
        super().__init__(message, **kwargs)


class FetchError(ActionableError):
    """Raised when a digest or manifest list cannot be fetched"""

    def __init__(self, message: str, reference: str, **kwargs):
        self.reference = reference
        super().__init__(message, **kwargs)


def _error_details(error: Exception, **extra) -> Dict[str, Any]:
    details = dict(extra)
    details["error_type"] = type(error).__name__
    details["error_message"] = str(error)
    return details


def create_config_error(field: str, value: Any, reason: str) -> ConfigurationError:
    """Create actionable error for configuration validation failures"""
    suggestions = [
        f"Check the '{field}' value in config.yaml or on the command line",
        "Verify the value matches the expected format",
    ]

    if "arch" in field.lower():
        suggestions.insert(1, "Architecture lists are comma separated, e.g. amd64,s390x")
    elif "workers" in field.lower():
        suggestions.insert(1, "Worker counts must be positive integers")
    elif "timeout" in field.lower() or "delay" in field.lower():
        suggestions.insert(1, "Time values must be positive numbers")

    return ConfigurationError(
        message=f"Configuration error: Invalid value for '{field}'",
        category=ErrorCategory.CONFIGURATION,
        suggestions=suggestions,
        details={"field": field, "value": value, "reason": reason},
    )


def create_registry_auth_error(registry_url: str, error: Exception) -> AuthenticationError:
    """Create actionable error for registry credential resolution failures"""
    error_str = str(error).lower()

    suggestions = [
        "Verify REGISTRY_USERNAME and REGISTRY_PASSWORD are set correctly",
        "Check ~/.docker/config.json (or $DOCKER_CONFIG/config.json) is valid JSON",
        f"Run 'docker login {registry_url}' to refresh stored credentials",
    ]

    if "docker-credential" in error_str or "helper" in error_str:
        suggestions.insert(0, "Verify the configured docker credential helper is installed and on PATH")

    return AuthenticationError(
        message=f"Failed to resolve credentials for Docker registry at {registry_url}",
        category=ErrorCategory.AUTHENTICATION,
        suggestions=suggestions,
        details=_error_details(error, registry_url=registry_url),
    )


def create_catalog_error(registry_url: str, error: Exception, malformed: bool = False) -> CatalogError:
    """Create actionable error for catalog listing failures"""
    if malformed:
        return CatalogError(
            message=f"Domain {registry_url} is not a valid registry",
            malformed=True,
            category=ErrorCategory.RESOURCE,
            suggestions=[
                f"Verify {registry_url} serves the Docker Registry HTTP API v2",
                "Check that the catalog endpoint (/v2/_catalog) is enabled",
            ],
            details=_error_details(error, registry_url=registry_url),
        )

    suggestions = [
        f"Verify the registry domain is correct: {registry_url}",
        "Check network connectivity to the registry",
        "Check if the registry service is running",
    ]

    error_str = str(error).lower()
    if "401" in error_str or "403" in error_str or "unauthorized" in error_str:
        suggestions.insert(0, "Verify the credentials grant catalog access (scope registry:catalog:*)")

    return CatalogError(
        message=f"Failed to list the catalog of Docker registry at {registry_url}",
        malformed=False,
        category=ErrorCategory.CONNECTION,
        suggestions=suggestions,
        details=_error_details(error, registry_url=registry_url),
    )


def create_tag_list_error(registry_url: str, repository: str, error: Exception) -> TagListError:
    """Create actionable error for tag listing failures"""
    return TagListError(
        message=f"Failed to list tags of {registry_url}/{repository}",
        repository=repository,
        category=ErrorCategory.CONNECTION,
        suggestions=[
            "Check network connectivity to the registry",
            "Verify the credentials grant pull access to the repository",
        ],
        details=_error_details(error, registry_url=registry_url, repository=repository),
    )


def create_fetch_error(reference: str, error: Exception) -> FetchError:
    """Create actionable error for digest / manifest list fetch failures"""
    suggestions = [
        f"Verify the image exists: skopeo inspect docker://{reference}",
        "Check network connectivity to the registry",
    ]

    error_str = str(error).lower()
    if "manifest unknown" in error_str or "not found" in error_str:
        suggestions.insert(0, "The tag may have been deleted while the audit was running; re-run the audit")

    return FetchError(
        message=f"Failed to fetch manifest data for {reference}",
        reference=reference,
        category=ErrorCategory.CONNECTION,
        suggestions=suggestions,
        details=_error_details(error, reference=reference),
    )
