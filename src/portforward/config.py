"""Configuration management with validation.

Every setting is validated when the configuration is built, and all problems
are reported together so a misconfigured deployment fails at startup rather
than on the first reconcile.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

from .records import CleanupAnnotations


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_ANNOTATION_PREFIX = "kube-port-forward-controller"
DEFAULT_PORTS_ANNOTATION = f"{DEFAULT_ANNOTATION_PREFIX}/ports"
DEFAULT_FINALIZER_NAME = f"{DEFAULT_ANNOTATION_PREFIX}/port-forward-cleanup"

DEFAULT_ROUTER_URL = "https://192.168.1.1"
DEFAULT_ROUTER_USERNAME = "admin"
DEFAULT_ROUTER_SITE = "default"
DEFAULT_ROUTER_TIMEOUT_SECONDS = 10
MAX_ROUTER_TIMEOUT_SECONDS = 300

DEFAULT_FINALIZER_MAX_RETRIES = 3
MIN_FINALIZER_MAX_RETRIES = 1
MAX_FINALIZER_MAX_RETRIES = 20
DEFAULT_FINALIZER_RETRY_INTERVAL_SECONDS = 30

DEFAULT_PERIODIC_INTERVAL_SECONDS = 900  # 15 minutes
MIN_PERIODIC_INTERVAL_SECONDS = 60
MAX_PERIODIC_INTERVAL_SECONDS = 86400

DEFAULT_MAX_CONCURRENT_PASSES = 3
DEFAULT_POLL_INTERVAL_SECONDS = 10

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1 MiB

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Qualified annotation key: optional DNS prefix, then a name segment
VALID_ANNOTATION_PATTERN = r"^([a-z0-9]([-a-z0-9.]*[a-z0-9])?/)?[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$"
VALID_SITE_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


@dataclass(frozen=True)
class AnnotationKeys:
    """Annotation keys the controller reads and writes on a Service."""

    ports: str
    change_context: str
    error_context: str
    cleanup: CleanupAnnotations

    @classmethod
    def from_ports_annotation(cls, ports: str) -> AnnotationKeys:
        """Derive every key from the prefix of the ports annotation."""
        prefix, sep, _ = ports.rpartition("/")
        base = prefix if sep else DEFAULT_ANNOTATION_PREFIX
        return cls(
            ports=ports,
            change_context=f"{base}/change-context",
            error_context=f"{base}/error-context",
            cleanup=CleanupAnnotations(
                state=f"{base}/cleanup-state",
                legacy_status=f"{base}/cleanup-status",
                legacy_attempts=f"{base}/cleanup-attempts",
            ),
        )


@dataclass(frozen=True)
class RouterConfig:
    """Connection settings for the UniFi controller.

    One of password or API key is required. The API key wins when both are set.
    """

    url: str = DEFAULT_ROUTER_URL
    username: str = DEFAULT_ROUTER_USERNAME
    password: str | None = field(default=None, repr=False)
    api_key: str | None = field(default=None, repr=False)
    site: str = DEFAULT_ROUTER_SITE
    verify_tls: bool = False
    timeout_seconds: int = DEFAULT_ROUTER_TIMEOUT_SECONDS

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.url.startswith(("http://", "https://")):
            errors.append(f"UNIFI_ROUTER_URL must start with http:// or https://: {self.url}")
        if not self.password and not self.api_key:
            errors.append("UNIFI_PASSWORD or UNIFI_API_KEY is required")
        if self.password and not self.api_key and not self.username:
            errors.append("UNIFI_USERNAME is required with UNIFI_PASSWORD")
        if not re.match(VALID_SITE_PATTERN, self.site):
            errors.append(f"UNIFI_SITE must match pattern {VALID_SITE_PATTERN}: {self.site}")
        if not 1 <= self.timeout_seconds <= MAX_ROUTER_TIMEOUT_SECONDS:
            errors.append(f"ROUTER_TIMEOUT must be between 1 and {MAX_ROUTER_TIMEOUT_SECONDS} seconds")
        return errors


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    router: RouterConfig = field(default_factory=RouterConfig)

    # Controller
    ports_annotation: str = DEFAULT_PORTS_ANNOTATION
    finalizer_name: str = DEFAULT_FINALIZER_NAME
    watch_namespace: str = ""

    # Finalizer lifecycle
    finalizer_max_retries: int = DEFAULT_FINALIZER_MAX_RETRIES
    finalizer_retry_interval_seconds: int = DEFAULT_FINALIZER_RETRY_INTERVAL_SECONDS

    # Timing
    periodic_interval_seconds: int = DEFAULT_PERIODIC_INTERVAL_SECONDS
    max_concurrent_passes: int = DEFAULT_MAX_CONCURRENT_PASSES
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS

    # Logging
    log_level: str = "INFO"
    debug: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = self.router.validate()

        for name, value in (
            ("PORTS_ANNOTATION", self.ports_annotation),
            ("FINALIZER_NAME", self.finalizer_name),
        ):
            if not re.match(VALID_ANNOTATION_PATTERN, value):
                errors.append(f"{name} must be a qualified name like 'example.com/name': {value}")

        if not (MIN_FINALIZER_MAX_RETRIES <= self.finalizer_max_retries <= MAX_FINALIZER_MAX_RETRIES):
            errors.append(
                f"FINALIZER_MAX_RETRIES must be between {MIN_FINALIZER_MAX_RETRIES} "
                f"and {MAX_FINALIZER_MAX_RETRIES}"
            )

        if self.finalizer_retry_interval_seconds < 1:
            errors.append("FINALIZER_RETRY_INTERVAL must be at least 1 second")

        if not (
            MIN_PERIODIC_INTERVAL_SECONDS
            <= self.periodic_interval_seconds
            <= MAX_PERIODIC_INTERVAL_SECONDS
        ):
            errors.append(
                f"PERIODIC_INTERVAL must be between {MIN_PERIODIC_INTERVAL_SECONDS} "
                f"and {MAX_PERIODIC_INTERVAL_SECONDS} seconds"
            )

        if self.max_concurrent_passes < 1:
            errors.append("MAX_CONCURRENT_PASSES must be at least 1")

        if self.poll_interval_seconds < 1:
            errors.append("POLL_INTERVAL must be at least 1 second")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def annotations(self) -> AnnotationKeys:
        return AnnotationKeys.from_ports_annotation(self.ports_annotation)

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level.upper()

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Router Variables:
            UNIFI_ROUTER_URL: Controller base URL (default: https://192.168.1.1)
            UNIFI_USERNAME: Login user (default: admin)
            UNIFI_PASSWORD: Login password
            UNIFI_API_KEY: API key, used instead of a login when set
            UNIFI_SITE: Site name (default: default)
            UNIFI_VERIFY_TLS: Verify the controller certificate (default: false)
            ROUTER_TIMEOUT: Request timeout in seconds (default: 10)

        Controller Variables:
            PORTS_ANNOTATION: Annotation holding the port mappings
            FINALIZER_NAME: Finalizer blocking deletion until cleanup
            WATCH_NAMESPACE: Namespace to manage (default: all namespaces)
            FINALIZER_MAX_RETRIES: Cleanup attempts before giving up (default: 3)
            FINALIZER_RETRY_INTERVAL: Seconds between cleanup attempts (default: 30)
            PERIODIC_INTERVAL: Seconds between drift passes (default: 900)
            MAX_CONCURRENT_PASSES: Concurrent drift passes (default: 3)
            POLL_INTERVAL: Seconds between Service polls (default: 10)
            LOG_LEVEL: Logging level (default: INFO)
            DEBUG: If "true", forces DEBUG logging (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            router=RouterConfig(
                url=os.environ.get("UNIFI_ROUTER_URL", DEFAULT_ROUTER_URL).rstrip("/"),
                username=os.environ.get("UNIFI_USERNAME", DEFAULT_ROUTER_USERNAME),
                password=os.environ.get("UNIFI_PASSWORD") or None,
                api_key=os.environ.get("UNIFI_API_KEY") or None,
                site=os.environ.get("UNIFI_SITE", DEFAULT_ROUTER_SITE),
                verify_tls=get_bool("UNIFI_VERIFY_TLS", False),
                timeout_seconds=get_int("ROUTER_TIMEOUT", DEFAULT_ROUTER_TIMEOUT_SECONDS),
            ),
            ports_annotation=os.environ.get("PORTS_ANNOTATION", DEFAULT_PORTS_ANNOTATION),
            finalizer_name=os.environ.get("FINALIZER_NAME", DEFAULT_FINALIZER_NAME),
            watch_namespace=os.environ.get("WATCH_NAMESPACE", ""),
            finalizer_max_retries=get_int("FINALIZER_MAX_RETRIES", DEFAULT_FINALIZER_MAX_RETRIES),
            finalizer_retry_interval_seconds=get_int(
                "FINALIZER_RETRY_INTERVAL", DEFAULT_FINALIZER_RETRY_INTERVAL_SECONDS
            ),
            periodic_interval_seconds=get_int("PERIODIC_INTERVAL", DEFAULT_PERIODIC_INTERVAL_SECONDS),
            max_concurrent_passes=get_int("MAX_CONCURRENT_PASSES", DEFAULT_MAX_CONCURRENT_PASSES),
            poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            debug=get_bool("DEBUG", False),
        )
