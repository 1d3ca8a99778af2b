"""Configuration management for ABAP ADT MCP.

Connection settings, retry policy and server settings are pydantic models;
``load_config`` builds them from ``SAP_*`` environment variables.
"""

import logging
import os
from typing import Mapping, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_PORT = 443
DEFAULT_LANGUAGE = "EN"
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_LOG_LEVEL = "info"
VALID_LOG_LEVELS = ["debug", "info", "warning", "error"]
MIN_TIMEOUT = 1
MAX_TIMEOUT = 300

ADT_ROOT_PATH = "/sap/bc/adt"

REQUIRED_ENV_VARS = {
    "host": "SAP_HOST",
    "client": "SAP_CLIENT",
    "username": "SAP_USER",
    "password": "SAP_PASSWORD",
}


class ConnectionConfig(BaseModel):
    """Connection settings for one SAP system.

    Immutable for the lifetime of a client instance.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(description="SAP system host (e.g. myserver.sap.com)")
    port: int = Field(default=DEFAULT_PORT, description="SAP system HTTP(S) port")
    https: bool = Field(default=True, description="Use TLS")
    client: str = Field(description="SAP client number (sap-client header)")
    username: str = Field(description="SAP user name")
    password: str = Field(repr=False, description="SAP password")
    language: Optional[str] = Field(
        default=DEFAULT_LANGUAGE, description="Logon language (sap-language header)"
    )
    allow_insecure: bool = Field(
        default=False, description="Accept self-signed TLS certificates"
    )

    @field_validator("host", "client", "username", "password")
    @classmethod
    def _not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError(f"port must be between 1 and 65535. Got: {v}")
        return v

    @property
    def base_url(self) -> str:
        """ADT service root, e.g. ``https://host:443/sap/bc/adt``."""
        scheme = "https" if self.https else "http"
        return f"{scheme}://{self.host}:{self.port}{ADT_ROOT_PATH}"


class RetryPolicy(BaseModel):
    """Retry settings used by the request dispatcher."""

    max_attempts: int = Field(
        default=DEFAULT_MAX_RETRIES, ge=1, description="Total attempts per request"
    )
    base_delay: float = Field(
        default=DEFAULT_RETRY_DELAY_MS / 1000,
        ge=0,
        description="Base delay in seconds, multiplied by the attempt number",
    )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        return self.base_delay * attempt


class ServerConfig(BaseModel):
    """Configuration for the tool server."""

    connection: ConnectionConfig
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout: float = Field(
        default=DEFAULT_TIMEOUT_MS / 1000, description="Request timeout in seconds"
    )
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default=DEFAULT_LOG_LEVEL, description="Logging level"
    )
    package_name: Optional[str] = Field(
        default=None, description="Default package for new objects"
    )

    @field_validator("timeout")
    @classmethod
    def _timeout_range(cls, v: float) -> float:
        if v < MIN_TIMEOUT or v > MAX_TIMEOUT:
            raise ValueError(
                f"timeout must be between {MIN_TIMEOUT} and {MAX_TIMEOUT} seconds. "
                f"Got: {v}"
            )
        return v

    @field_validator("package_name")
    @classmethod
    def _customer_namespace(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.upper().startswith(("Z", "Y", "$")):
            raise ValueError(
                "package_name must start with Z, Y, or $ (customer namespace). "
                f"Got: {v}"
            )
        return v


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if not value:
        return default
    return value.lower() == "true" or value == "1"


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={value!r}, using {default}")
        return default


def load_config(environ: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Load server configuration from environment variables.

    Args:
        environ: Environment mapping (default: os.environ)

    Returns:
        ServerConfig instance

    Raises:
        ValueError: If required variables are missing or values are invalid

    Environment Variables:
        SAP_HOST, SAP_CLIENT, SAP_USER, SAP_PASSWORD: required
        SAP_PORT: HTTP(S) port (default: 443)
        SAP_SSL: use TLS (default: true)
        SAP_LANGUAGE: logon language (default: EN)
        SAP_ALLOW_INSECURE: accept self-signed certificates (default: false)
        LOG_LEVEL: debug/info/warning/error (default: info)
        REQUEST_TIMEOUT: request timeout in milliseconds (default: 30000)
        MAX_RETRIES: attempts per request (default: 3)
        RETRY_DELAY: base retry delay in milliseconds (default: 1000)
        SAP_PACKAGE_NAME: default package for new objects
    """
    env = os.environ if environ is None else environ

    for field_name, var in REQUIRED_ENV_VARS.items():
        if not env.get(var):
            raise ValueError(
                f"Missing required field: {field_name}\n"
                f"  Fix: Set {var} environment variable"
            )

    connection = ConnectionConfig(
        host=env["SAP_HOST"],
        port=_env_int(env, "SAP_PORT", DEFAULT_PORT),
        https=_env_bool(env, "SAP_SSL", True),
        client=env["SAP_CLIENT"],
        username=env["SAP_USER"],
        password=env["SAP_PASSWORD"],
        language=env.get("SAP_LANGUAGE") or DEFAULT_LANGUAGE,
        allow_insecure=_env_bool(env, "SAP_ALLOW_INSECURE", False),
    )
    retry = RetryPolicy(
        max_attempts=_env_int(env, "MAX_RETRIES", DEFAULT_MAX_RETRIES),
        base_delay=_env_int(env, "RETRY_DELAY", DEFAULT_RETRY_DELAY_MS) / 1000,
    )

    log_level = (env.get("LOG_LEVEL") or DEFAULT_LOG_LEVEL).lower()
    if log_level == "warn":
        log_level = "warning"

    return ServerConfig(
        connection=connection,
        retry=retry,
        timeout=_env_int(env, "REQUEST_TIMEOUT", DEFAULT_TIMEOUT_MS) / 1000,
        log_level=log_level,
        package_name=env.get("SAP_PACKAGE_NAME") or None,
    )
