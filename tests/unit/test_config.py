# ABOUTME: Unit tests for configuration management
# ABOUTME: Tests models, cross-reference validation, env expansion and file loading

from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from image_updater.config import (
    DEFAULT_COMMIT_MESSAGE,
    DEFAULT_MANIFEST_PATH,
    ArgocdInstance,
    ConfigError,
    DeploymentConfig,
    RepositoryConfig,
    ServerSettings,
    expand_env,
    find_config_file,
    load_settings,
    read_config_file,
)

CONFIG_FILE = """\
listen_address: ":9090"
secret_key: ${WEBHOOK_SECRET}
allowed_ips: ["10.0.0.0/8", "192.168.1.15"]
argocd_url: argocd.example.com
argocd_token: ${ARGOCD_TOKEN:-fallback-token}

repositories:
  - name: infra
    url: https://git.example.com/platform/infra.git
    branch: refs/heads/main
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


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Write the sample configuration with its environment."""
    monkeypatch.setenv("WEBHOOK_SECRET", "s3cret")
    monkeypatch.setenv("INFRA_GIT_TOKEN", "token-from-env")
    monkeypatch.delenv("ARGOCD_TOKEN", raising=False)
    path = tmp_path / "image-updater.yaml"
    path.write_text(CONFIG_FILE)
    return path


def repo(name: str = "infra", **kwargs) -> RepositoryConfig:
    return RepositoryConfig(
        name=name,
        url="https://git.example.com/x.git",
        committer_name="bot",
        committer_email="bot@example.com",
        **kwargs,
    )


def deploy(name: str = "web", repository: str = "infra", **kwargs) -> DeploymentConfig:
    return DeploymentConfig(name=name, repository=repository, images=["web"], **kwargs)


@pytest.mark.unit
class TestArgocdInstance:
    """Tests for ArgocdInstance configuration."""

    def test_url_validation_adds_https(self):
        """Test that URL without scheme gets https added."""
        instance = ArgocdInstance(url="argocd.example.com", token=SecretStr("test"))
        assert instance.url == "https://argocd.example.com"

    def test_url_validation_preserves_http(self):
        """Test that explicit http scheme is preserved."""
        instance = ArgocdInstance(url="http://argocd.local", token=SecretStr("test"))
        assert instance.url == "http://argocd.local"

    def test_url_validation_removes_trailing_slash(self):
        """Test that trailing slash is removed from URL."""
        instance = ArgocdInstance(url="https://argocd.example.com/", token=SecretStr("test"))
        assert instance.url == "https://argocd.example.com"


@pytest.mark.unit
class TestRepositoryAndDeploymentConfig:
    """Tests for repository and deployment models."""

    def test_branch_prefix_stripped(self):
        """Test that refs/heads/ is accepted and removed."""
        assert repo(branch="refs/heads/main").branch == "main"
        assert repo(branch="main").branch == "main"
        assert repo().branch is None

    def test_unknown_repository_field(self):
        """Test that typos in repository config are refused."""
        with pytest.raises(ValidationError):
            repo(pasword="oops")

    def test_password_is_secret(self):
        """Test that the password does not show up in repr."""
        config = repo(password=SecretStr("hunter2"))
        assert "hunter2" not in repr(config)

    def test_deployment_defaults(self):
        """Test default manifest path and message."""
        config = deploy()
        assert config.path == DEFAULT_MANIFEST_PATH
        assert config.message == DEFAULT_COMMIT_MESSAGE
        assert config.argocd_app is None

    def test_empty_path_and_message_use_defaults(self):
        """Test that empty strings fall back to defaults."""
        config = deploy(path="", message="")
        assert config.path == DEFAULT_MANIFEST_PATH
        assert config.message == DEFAULT_COMMIT_MESSAGE

    def test_deployment_needs_images(self):
        """Test that a deployment must own at least one image."""
        with pytest.raises(ValidationError):
            DeploymentConfig(name="web", repository="infra", images=[])

    def test_empty_image_pattern(self):
        """Test that empty image patterns are refused."""
        with pytest.raises(ValidationError, match="must not be empty"):
            DeploymentConfig(name="web", repository="infra", images=["web", ""])

    def test_models_are_frozen(self):
        """Test that configuration cannot change after startup."""
        config = deploy()
        with pytest.raises(ValidationError):
            config.name = "other"


@pytest.mark.unit
class TestServerSettings:
    """Tests for top-level settings."""

    def test_defaults(self):
        """Test default server settings."""
        settings = ServerSettings()
        assert settings.listen_address == ":8080"
        assert settings.log_level == "INFO"
        assert settings.request_timeout == 30.0
        assert settings.sync_timeout == 300.0
        assert settings.allowed_ips == []
        assert settings.secret_key.get_secret_value() == ""
        assert settings.argocd_instance is None

    def test_unknown_repository_reference(self):
        """Test referential integrity between deployments and repositories."""
        with pytest.raises(ValidationError, match="unknown repository 'missing'"):
            ServerSettings(repositories=[repo()], deployments=[deploy(repository="missing")])

    def test_duplicate_repository_names(self):
        """Test that repository names are unique."""
        with pytest.raises(ValidationError, match="duplicate repository"):
            ServerSettings(repositories=[repo(), repo()])

    def test_duplicate_deployment_names(self):
        """Test that deployment names are unique."""
        with pytest.raises(ValidationError, match="duplicate deployment"):
            ServerSettings(repositories=[repo()], deployments=[deploy(), deploy()])

    def test_invalid_allowed_ip(self):
        """Test that malformed allowlist entries are refused at startup."""
        with pytest.raises(ValidationError, match="invalid IP"):
            ServerSettings(allowed_ips=["10.0.0.300"])

    def test_invalid_log_level(self):
        """Test that unknown log levels are refused."""
        with pytest.raises(ValidationError):
            ServerSettings(log_level="LOUD")

    def test_argocd_instance(self):
        """Test Argo CD instance built from flat settings."""
        settings = ServerSettings(
            argocd_url="argocd.example.com",
            argocd_token=SecretStr("tok"),
            argocd_insecure=True,
        )
        instance = settings.argocd_instance
        assert instance is not None
        assert instance.url == "https://argocd.example.com"
        assert instance.token.get_secret_value() == "tok"
        assert instance.insecure is True

    @pytest.mark.parametrize(
        ("address", "expected"),
        [
            (":8080", ("0.0.0.0", 8080)),
            ("127.0.0.1:9000", ("127.0.0.1", 9000)),
            ("[::1]:9000", ("::1", 9000)),
        ],
    )
    def test_listen_host_port(self, address, expected):
        """Test splitting listen addresses for uvicorn."""
        assert ServerSettings(listen_address=address).listen_host_port == expected

    def test_listen_address_without_port(self):
        """Test that a listen address needs a port."""
        with pytest.raises(ValueError, match="invalid listen address"):
            _ = ServerSettings(listen_address="localhost").listen_host_port

    def test_environment_beats_constructor(self, monkeypatch):
        """Test that IMAGE_UPDATER_* variables override file values."""
        monkeypatch.setenv("IMAGE_UPDATER_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("IMAGE_UPDATER_REQUEST_TIMEOUT", "5")

        settings = ServerSettings(log_level="WARNING", request_timeout=60)

        assert settings.log_level == "DEBUG"
        assert settings.request_timeout == 5.0


@pytest.mark.unit
class TestExpandEnv:
    """Tests for ${NAME} expansion in configuration values."""

    def test_expands_nested_values(self):
        """Test expansion in dicts and lists, leaving other scalars alone."""
        data = {"a": "${X}", "b": ["x=${X}", 3], "c": {"d": "${Y:-dflt}"}, "e": True}

        assert expand_env(data, {"X": "1"}) == {
            "a": "1",
            "b": ["x=1", 3],
            "c": {"d": "dflt"},
            "e": True,
        }

    def test_unset_without_default_is_empty(self):
        """Test shell-like expansion of unset variables."""
        assert expand_env("[${NOPE}]", {}) == "[]"

    def test_empty_value_uses_default(self):
        """Test that an empty variable falls back to the default."""
        assert expand_env("${X:-fallback}", {"X": ""}) == "fallback"

    def test_plain_dollar_untouched(self):
        """Test that text without braces is not expanded."""
        assert expand_env("$HOME and $$", {"HOME": "/root"}) == "$HOME and $$"


@pytest.mark.unit
class TestLoading:
    """Tests for reading configuration files."""

    def test_load_settings(self, config_file):
        """Test loading the sample file with environment references."""
        settings = load_settings(config_file)

        assert settings.listen_address == ":9090"
        assert settings.secret_key.get_secret_value() == "s3cret"
        assert settings.argocd_token.get_secret_value() == "fallback-token"
        assert settings.repositories[0].password.get_secret_value() == "token-from-env"
        assert settings.repositories[0].branch == "main"
        assert settings.deployments[0].images == [
            "registry.example.com/web",
            "registry.example.com/web-*",
        ]

    def test_overrides_beat_file(self, config_file):
        """Test that command line values win, and None means not given."""
        settings = load_settings(config_file, listen_address="127.0.0.1:1234", log_level=None)

        assert settings.listen_address == "127.0.0.1:1234"
        assert settings.log_level == "INFO"
        assert settings.repositories[0].password.get_secret_value() == "token-from-env"

    def test_environment_beats_file(self, config_file, monkeypatch):
        """Test that environment variables override file values."""
        monkeypatch.setenv("IMAGE_UPDATER_LISTEN_ADDRESS", ":7070")
        assert load_settings(config_file).listen_address == ":7070"

    def test_missing_file(self, tmp_path):
        """Test that an unreadable file is a ConfigError."""
        with pytest.raises(ConfigError, match="could not read"):
            read_config_file(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        """Test that a broken file is a ConfigError."""
        path = tmp_path / "broken.yaml"
        path.write_text("deployments: [\n")
        with pytest.raises(ConfigError, match="could not parse"):
            read_config_file(path)

    def test_non_mapping(self, tmp_path):
        """Test that a top-level list is refused."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            read_config_file(path)

    def test_empty_file(self, tmp_path):
        """Test that an empty file gives default settings."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_settings(path).listen_address == ":8080"

    def test_find_config_file_prefers_home(self, tmp_path, monkeypatch):
        """Test the search order: home directory first."""
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
        assert find_config_file() == Path("/etc/image-updater.yaml")

        (tmp_path / ".image-updater.yaml").write_text("")
        assert find_config_file() == tmp_path / ".image-updater.yaml"
