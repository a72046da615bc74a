# ABOUTME: Pytest fixtures and configuration for image updater tests
# ABOUTME: Provides settings, in-memory worktrees and fake repositories for unit tests

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from image_updater.config import (
    ArgocdInstance,
    DeploymentConfig,
    RepositoryConfig,
    ServerSettings,
)
from image_updater.deployment import Deployment
from image_updater.repository import RepositoryError
from image_updater.utils.logging import AuditLogger

KUSTOMIZATION = """\
apiVersion: kustomize.config.k8s.io/v1beta1
kind: Kustomization
resources:
  - deployment.yaml
images:
  - name: registry.example.com/web
    newTag: "1.0"   # pinned by CI
  - name: registry.example.com/sidecar
    newName: registry.example.com/sidecar-v2
    newTag: 1.0
"""


class MemoryWorktree:
    """Worktree stand-in keeping files in a dict and recording commits."""

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self.files = dict(files or {})
        self.staged: list[str] = []
        self.commits: list[str] = []

    def read_text(self, path: str) -> str:
        if path not in self.files:
            raise RepositoryError(f"failed to read {path}: no such file")
        return self.files[path]

    def write_text(self, path: str, text: str) -> None:
        self.files[path] = text

    def stage(self, path: str) -> None:
        self.staged.append(path)

    def commit(self, message: str) -> str:
        self.commits.append(message)
        return f"{len(self.commits):040x}"


class FakeSession:
    def __init__(self, worktree: MemoryWorktree, push_error: Exception | None = None) -> None:
        self.worktree = worktree
        self.push = AsyncMock(side_effect=push_error)
        self.discarded = False


class FakeRepository:
    """
    Repository stand-in with a real lock and an in-memory session.

    `fetch_error` makes session() fail before yielding, `push_error` makes
    push() fail. `fetch_hook` is awaited while the session is being fetched,
    so tests can hold a session open and observe concurrency.
    """

    def __init__(self, name: str, files: dict[str, str] | None = None) -> None:
        self.name = name
        self.lock = asyncio.Lock()
        self.worktree = MemoryWorktree(files)
        self.sessions: list[FakeSession] = []
        self.fetch_error: Exception | None = None
        self.push_error: Exception | None = None
        self.fetch_hook: Callable[[], Awaitable[None]] | None = None
        self.active = 0
        self.max_active = 0

    @asynccontextmanager
    async def session(self) -> AsyncIterator[FakeSession]:
        session = FakeSession(self.worktree, self.push_error)
        self.sessions.append(session)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.fetch_error is not None:
                raise self.fetch_error
            if self.fetch_hook is not None:
                await self.fetch_hook()
            yield session
        finally:
            self.active -= 1
            session.discarded = True


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep IMAGE_UPDATER_* variables of the host out of settings tests."""
    for key in list(os.environ):
        if key.startswith("IMAGE_UPDATER_"):
            monkeypatch.delenv(key)


@pytest.fixture
def kustomization() -> str:
    """A manifest declaring a web image and a renamed sidecar."""
    return KUSTOMIZATION


@pytest.fixture
def argocd_instance() -> ArgocdInstance:
    """Create an Argo CD instance configuration."""
    return ArgocdInstance(
        url="https://argocd.example.com",
        token=SecretStr("test-token"),
        name="test",
        insecure=True,
    )


@pytest.fixture
def repository_config() -> RepositoryConfig:
    """Create a repository configuration."""
    return RepositoryConfig(
        name="infra",
        url="https://git.example.com/platform/infra.git",
        branch="main",
        username="deploy-bot",
        password=SecretStr("hunter2"),
        committer_name="Image Updater",
        committer_email="image-updater@example.com",
    )


@pytest.fixture
def deployment_config() -> DeploymentConfig:
    """Create a deployment owning the web image."""
    return DeploymentConfig(
        name="web",
        repository="infra",
        path="apps/web/kustomization.yaml",
        images=["registry.example.com/web"],
        argocd_app="web",
    )


@pytest.fixture
def server_settings(
    repository_config: RepositoryConfig,
    deployment_config: DeploymentConfig,
) -> ServerSettings:
    """Create settings with one repository and one deployment."""
    return ServerSettings(
        secret_key=SecretStr("s3cret"),
        repositories=[repository_config],
        deployments=[deployment_config],
    )


@pytest.fixture
def deployment(deployment_config: DeploymentConfig) -> Deployment:
    """Create the compiled web deployment."""
    return Deployment.from_config(deployment_config)


@pytest.fixture
def memory_worktree() -> Callable[..., MemoryWorktree]:
    """Factory for in-memory worktrees."""
    return MemoryWorktree


@pytest.fixture
def fake_repository() -> Callable[..., FakeRepository]:
    """Factory for fake repositories."""
    return FakeRepository


@pytest.fixture
def audit() -> MagicMock:
    """Create an audit logger mock."""
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def infra_repository(fake_repository: Callable[..., FakeRepository], kustomization: str) -> Any:
    """Fake 'infra' repository holding the web kustomization."""
    return fake_repository("infra", {"apps/web/kustomization.yaml": kustomization})
