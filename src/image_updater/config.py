# ABOUTME: Configuration management for the image updater webhook
# ABOUTME: YAML config file + environment overlay, validated with pydantic-settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Everything the server needs to know before it accepts its first webhook:

1. WHERE to listen and how loudly to log
2. WHO may call it (allowed IPs, shared secret)
3. WHICH git repositories it may push to, and as whom
4. WHICH deployments exist, which manifest and images each one owns
5. HOW to reach Argo CD, if syncs should be triggered

All of it is validated once at startup. A deployment that points at an
unknown repository, two repositories with the same name or a malformed IP
range stop the process before it binds a port, so request handling can trust
the configuration completely.

=============================================================================
WHERE VALUES COME FROM
=============================================================================

Lowest to highest priority:

1. Field defaults below
2. The YAML configuration file (see find_config_file)
3. IMAGE_UPDATER_* environment variables
4. Command line flags (applied by server.main)

Inside the YAML file, any string may reference the environment:

    repositories:
      - name: infra
        url: https://git.example.com/platform/infra.git
        username: deploy-bot
        password: ${INFRA_GIT_TOKEN}
        committer_name: Image Updater
        committer_email: ${COMMITTER_EMAIL:-image-updater@example.com}

=============================================================================
EXAMPLE FILE
=============================================================================

    listen_address: ":8080"
    secret_key: ${WEBHOOK_SECRET}
    allowed_ips: ["10.0.0.0/8", "192.168.1.15"]
    argocd_url: https://argocd.example.com
    argocd_token: ${ARGOCD_TOKEN}

    repositories:
      - name: infra
        url: https://git.example.com/platform/infra.git
        branch: main
        username: deploy-bot
        password: ${INFRA_GIT_TOKEN}
        committer_name: Image Updater
        committer_email: image-updater@example.com

    deployments:
      - name: web
        repository: infra
        path: apps/web/kustomization.yaml
        images: ["registry.example.com/web", "registry.example.com/web-*"]
        argocd_app: web
"""

from __future__ import annotations

import ipaddress
import os
import re
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

# =============================================================================
# CONSTANTS
# =============================================================================

LOCAL_CONFIG_NAME = ".image-updater.yaml"
GLOBAL_CONFIG_PATH = Path("/etc/image-updater.yaml")

DEFAULT_MANIFEST_PATH = "kustomization.yaml"
DEFAULT_COMMIT_MESSAGE = "[{{ name }}] Version bumped to {{ tag }} by {{ user }}"

# ${NAME} or ${NAME:-default}
_ENV_REFERENCE = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}")


class ConfigError(Exception):
    """The configuration file is missing, unreadable or not a YAML mapping."""


# =============================================================================
# ARGO CD INSTANCE
# =============================================================================


class ArgocdInstance(BaseModel):
    """
    Connection details for the Argo CD API server.

    Built from ServerSettings.argocd_* rather than read from the environment
    directly, so it is a BaseModel and not a BaseSettings.

    USAGE EXAMPLE:
    --------------
        instance = ArgocdInstance(
            url="https://argocd.example.com",
            token=SecretStr("my-api-token"),
        )
    """

    model_config = {"extra": "ignore", "frozen": True}

    url: str = Field(description="Argo CD server URL")
    token: SecretStr = Field(description="Argo CD API token")
    name: str = Field(default="default", description="Instance identifier used in logs")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """
        Ensure URL has a scheme and no trailing slash.

        "argocd.example.com"   -> "https://argocd.example.com"
        "https://argocd.local/" -> "https://argocd.local"
        """
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")


# =============================================================================
# REPOSITORIES AND DEPLOYMENTS
# =============================================================================


class RepositoryConfig(BaseModel):
    """
    One remote git repository the server may push to.

    Credentials are HTTP basic auth (a username plus a password or access
    token). The committer identity is written into every clone, so commits
    made by the webhook are attributable to the bot rather than to whatever
    identity the host happens to have.
    """

    model_config = {"extra": "forbid", "frozen": True}

    name: str = Field(min_length=1, description="Repository identifier referenced by deployments")
    url: str = Field(min_length=1, description="Clone URL (https:// or a local path)")
    branch: str | None = Field(
        default=None,
        description="Branch to update; the remote's default branch when unset",
    )
    username: str = Field(default="", description="Basic auth username")
    password: SecretStr = Field(default=SecretStr(""), description="Basic auth password or token")
    committer_name: str = Field(min_length=1, description="Commit author/committer name")
    committer_email: str = Field(min_length=1, description="Commit author/committer email")

    @field_validator("branch")
    @classmethod
    def strip_branch_prefix(cls, v: str | None) -> str | None:
        """Accept both "main" and "refs/heads/main"."""
        if v is None:
            return None
        v = v.removeprefix("refs/heads/")
        return v or None


class DeploymentConfig(BaseModel):
    """
    One logical deployment: which manifest in which repository, and which
    image names in that manifest follow the deployment's tag.

    `images` entries are exact names ("registry.example.com/web") or globs
    with `*` ("registry.example.com/web-*"). Exact names must be present in
    the manifest; globs may match nothing.
    """

    model_config = {"extra": "forbid", "frozen": True}

    name: str = Field(min_length=1, description="Deployment name used in webhook payloads")
    repository: str = Field(min_length=1, description="Name of a configured repository")
    path: str = Field(default=DEFAULT_MANIFEST_PATH, description="Manifest path in the repo")
    images: list[str] = Field(min_length=1, description="Image names or globs to update")
    message: str = Field(
        default=DEFAULT_COMMIT_MESSAGE,
        description="Commit message template with name, tag and user variables",
    )
    argocd_app: str | None = Field(default=None, description="Argo CD application to sync")

    @field_validator("path")
    @classmethod
    def default_empty_path(cls, v: str) -> str:
        return v or DEFAULT_MANIFEST_PATH

    @field_validator("message")
    @classmethod
    def default_empty_message(cls, v: str) -> str:
        return v or DEFAULT_COMMIT_MESSAGE

    @field_validator("images")
    @classmethod
    def reject_empty_patterns(cls, v: list[str]) -> list[str]:
        if any(not image for image in v):
            raise ValueError("image patterns must not be empty")
        return v


# =============================================================================
# MAIN SERVER SETTINGS
# =============================================================================


class ServerSettings(BaseSettings):
    """
    Top-level configuration container.

    USAGE:
    ------
        settings = load_settings(Path("/etc/image-updater.yaml"))
        settings.deployments[0].repository       # "infra"
        settings.argocd_instance                 # None when Argo CD is not configured
    """

    model_config = SettingsConfigDict(
        env_prefix="IMAGE_UPDATER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # HTTP SERVER
    # -------------------------------------------------------------------------

    listen_address: str = Field(default=":8080", description="host:port to listen on")

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds a webhook call may spend waiting for the lock, cloning and pushing",
    )

    # -------------------------------------------------------------------------
    # CALLER GATING
    # -------------------------------------------------------------------------

    allowed_ips: list[str] = Field(
        default_factory=list,
        description="IP addresses or CIDR ranges allowed to reach the server",
    )
    # Empty means everyone. Bare addresses are widened to /32 or /128.

    secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Shared secret expected in the X-Key header of webhook calls",
    )

    audit_log: Path | None = Field(default=None, description="JSON-lines audit log file")

    # -------------------------------------------------------------------------
    # ARGO CD
    # -------------------------------------------------------------------------

    argocd_url: str = Field(default="", description="Argo CD server URL; empty disables syncs")
    argocd_token: SecretStr = Field(default=SecretStr(""), description="Argo CD API token")
    argocd_insecure: bool = Field(default=False, description="Skip TLS verification")
    sync_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds to keep retrying an Argo CD sync before giving up",
    )

    # -------------------------------------------------------------------------
    # REPOSITORIES AND DEPLOYMENTS
    # -------------------------------------------------------------------------

    repositories: list[RepositoryConfig] = Field(default_factory=list)
    deployments: list[DeploymentConfig] = Field(default_factory=list)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Let the environment override values passed to the constructor.

        load_settings() passes the YAML file contents as constructor keyword
        arguments, and IMAGE_UPDATER_* variables must still win over them.
        """
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    # -------------------------------------------------------------------------
    # VALIDATION
    # -------------------------------------------------------------------------

    @field_validator("allowed_ips")
    @classmethod
    def validate_allowed_ips(cls, v: list[str]) -> list[str]:
        for entry in v:
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError as e:
                raise ValueError(f"invalid IP address or network {entry!r}") from e
        return v

    @model_validator(mode="after")
    def check_references(self) -> ServerSettings:
        """
        Enforce unique names and referential integrity.

        Request handling treats a deployment whose repository cannot be found
        as an internal error; this check is what makes that unreachable.
        """
        repo_names = [r.name for r in self.repositories]
        duplicates = sorted({n for n in repo_names if repo_names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate repository name(s): {', '.join(duplicates)}")

        deploy_names = [d.name for d in self.deployments]
        duplicates = sorted({n for n in deploy_names if deploy_names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate deployment name(s): {', '.join(duplicates)}")

        known = set(repo_names)
        for deployment in self.deployments:
            if deployment.repository not in known:
                raise ValueError(
                    f"deployment {deployment.name!r} references unknown repository "
                    f"{deployment.repository!r}"
                )
        return self

    # -------------------------------------------------------------------------
    # COMPUTED PROPERTIES
    # -------------------------------------------------------------------------

    @property
    def argocd_instance(self) -> ArgocdInstance | None:
        """Argo CD connection details, or None when no URL is configured."""
        if not self.argocd_url:
            return None
        return ArgocdInstance(
            url=self.argocd_url,
            token=self.argocd_token,
            name="argocd",
            insecure=self.argocd_insecure,
        )

    @property
    def listen_host_port(self) -> tuple[str, int]:
        """
        Split listen_address into a (host, port) pair for uvicorn.

        ":8080" listens on all interfaces, "[::1]:9000" on IPv6 loopback.
        """
        host, sep, port = self.listen_address.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"invalid listen address {self.listen_address!r}")
        host = host.strip("[]") or "0.0.0.0"  # noqa: S104 - listening everywhere is the default
        return host, int(port)


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def expand_env(value: Any, environ: dict[str, str] | None = None) -> Any:
    """
    Substitute ${NAME} and ${NAME:-default} references in every string.

    Walks dicts and lists recursively; other scalars pass through. An unset
    variable without a default becomes an empty string, matching the
    behaviour of shell expansion.
    """
    env = os.environ if environ is None else environ

    if isinstance(value, str):

        def _replace(match: re.Match[str]) -> str:
            resolved = env.get(match.group("name"), "")
            if not resolved and match.group("default") is not None:
                return match.group("default")
            return resolved

        return _ENV_REFERENCE.sub(_replace, value)
    if isinstance(value, dict):
        return {k: expand_env(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v, env) for v in value]
    return value


def find_config_file() -> Path:
    """
    Default configuration path when none is given on the command line.

    $HOME/.image-updater.yaml wins if it exists, otherwise
    /etc/image-updater.yaml.
    """
    local = Path.home() / LOCAL_CONFIG_NAME
    if local.is_file():
        return local
    return GLOBAL_CONFIG_PATH


def read_config_file(path: Path) -> dict[str, Any]:
    """Read and environment-expand a YAML configuration file."""
    try:
        raw = path.read_text()
    except OSError as e:
        raise ConfigError(f"could not read config file {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"could not parse config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at the top level")
    return expand_env(data)


def load_settings(config_path: Path | None = None, **overrides: Any) -> ServerSettings:
    """
    Load and validate settings.

    Args:
        config_path: YAML file to read; find_config_file() when None.
        **overrides: Values that beat both the file and the environment
                     (command line flags). None values are ignored.

    Returns:
        Fully validated ServerSettings instance.

    Raises:
        ConfigError: If the file cannot be read or parsed.
        pydantic.ValidationError: If a value is invalid.
    """
    path = config_path or find_config_file()
    settings = ServerSettings(**read_config_file(path))

    changed = {k: v for k, v in overrides.items() if v is not None}
    if changed:
        settings = ServerSettings.model_validate(settings.model_dump() | changed)
    return settings
