# ABOUTME: Webhook dispatcher: validates tag bump requests and drives one bump end to end
# ABOUTME: Strict payload decoding, per-repository locking, deadline, outcome mapping

"""
From an HTTP body to an outcome.

=============================================================================
REQUEST FLOW
=============================================================================

    body ──► WebhookPayload.parse()   unknown/duplicate/non-string fields: 400
         ──► payload.check()          empty field, whitespace in tag:     400
         ──► deployment lookup        unknown deployment:                 404
         ──► repository lookup        configuration defect:               500
         ──► repository lock          one bump per repository at a time
         ──► deadline / caller check  nothing is cloned for a dead request
         ──► fetch, apply, push       failure:                            500
                                      nothing to change:                  304
                                      pushed:                             200

The whole dispatch, lock wait included, runs under one deadline
(request_timeout, 30 seconds by default). If it expires the call answers
503 "Request timed out" and the clone is discarded. A push that has already
reached the remote cannot be taken back, so a timed out call may still have
bumped the tag.

The HTTP layer (server.py) turns a WebhookResult into a response and starts
the Argo CD sync for a 200 with a revision.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from image_updater.deployment import Deployment, ManifestError
from image_updater.repository import Repository, RepositoryError, run_blocking

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from image_updater.config import ServerSettings
    from image_updater.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

INTERNAL_ERROR = "Internal server error"
TIMED_OUT = "Request timed out"

REQUIRED_FIELDS = ("deployment", "tag_name", "authorized_by")


# =============================================================================
# PAYLOAD
# =============================================================================


class PayloadError(ValueError):
    """The request body is malformed or incomplete. The message goes back to the caller."""


def _reject_duplicates(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    """json object_pairs_hook refusing repeated keys instead of keeping the last one."""
    document: dict[str, Any] = {}
    for key, value in pairs:
        if key in document:
            raise PayloadError(f"Duplicate field: {key}")
        document[key] = value
    return document


class WebhookPayload(BaseModel):
    """
    A tag bump request.

        {"deployment": "web", "tag_name": "1.4.2", "authorized_by": "ci"}

    Decoding is strict: unknown fields, repeated fields and non-string
    values are refused. Missing fields decode as empty strings so that
    check() can name them.
    """

    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)

    deployment: str = ""
    tag_name: str = ""
    authorized_by: str = ""

    @classmethod
    def parse(cls, raw: bytes | str) -> WebhookPayload:
        """
        Decode a request body.

        Raises:
            PayloadError: Invalid JSON, not an object, or a field error.
        """
        try:
            document = json.loads(raw, object_pairs_hook=_reject_duplicates)
        except PayloadError:
            raise
        except ValueError as e:
            raise PayloadError("Request body is not valid JSON") from e

        if not isinstance(document, dict):
            raise PayloadError("Request body must be a JSON object")

        try:
            return cls.model_validate(document)
        except ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error["loc"]) or "body"
            if error["type"] == "extra_forbidden":
                raise PayloadError(f"Unknown field: {field}") from e
            raise PayloadError(f"Invalid field: {field}") from e

    def check(self) -> None:
        """
        Enforce non-empty fields and a tag without whitespace.

        Raises:
            PayloadError: "Missing field: <name>" or "Invalid field: tag_name".
        """
        for name in REQUIRED_FIELDS:
            if not getattr(self, name):
                raise PayloadError(f"Missing field: {name}")
        if any(char.isspace() for char in self.tag_name):
            raise PayloadError("Invalid field: tag_name")


# =============================================================================
# DISPATCHER
# =============================================================================


@dataclass(frozen=True)
class WebhookResult:
    """Outcome of one dispatch."""

    status_code: int
    message: str
    deployment: Deployment | None = None
    revision: str | None = None


class WebhookDispatcher:
    """
    Applies validated payloads to the configured deployments.

    Requests for different repositories run concurrently; requests for the
    same repository queue on that repository's lock.
    """

    def __init__(
        self,
        deployments: Iterable[Deployment],
        repositories: Iterable[Repository],
        audit: AuditLogger,
        timeout: float = 30.0,
    ) -> None:
        self._deployments = {d.name: d for d in deployments}
        self._repositories = {r.name: r for r in repositories}
        self._audit = audit
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: ServerSettings, audit: AuditLogger) -> WebhookDispatcher:
        """
        Build deployments and repositories from validated settings.

        Raises:
            TemplateError: A deployment's commit message template is broken.
        """
        return cls(
            deployments=[Deployment.from_config(d) for d in settings.deployments],
            repositories=[Repository(r) for r in settings.repositories],
            audit=audit,
            timeout=settings.request_timeout,
        )

    def deployment(self, name: str) -> Deployment | None:
        return self._deployments.get(name)

    def repository(self, name: str) -> Repository | None:
        return self._repositories.get(name)

    async def dispatch(
        self,
        payload: WebhookPayload,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> WebhookResult:
        """
        Run one validated tag bump.

        Args:
            payload: Request that already passed check().
            is_disconnected: Tells whether the caller has gone away; checked
                once the repository lock is held, before cloning.

        Returns:
            The outcome. Errors are logged and mapped, never raised.
        """
        tag, user = payload.tag_name, payload.authorized_by
        log = logger.bind(deployment=payload.deployment, authorized_by=user, tag=tag)

        deployment = self.deployment(payload.deployment)
        if deployment is None:
            log.info("Deployment not found")
            self._audit.log_rejected(payload.deployment, tag, user, "deployment not found")
            return WebhookResult(404, "Deployment not found")

        log = log.bind(repository=deployment.repository)
        repository = self.repository(deployment.repository)
        if repository is None:
            log.error("Repository not found")
            self._audit.log_error(deployment.name, tag, user, "repository not found")
            return WebhookResult(500, INTERNAL_ERROR, deployment)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        stage = "lock"
        try:
            async with asyncio.timeout_at(deadline), repository.lock:
                if loop.time() >= deadline:
                    raise TimeoutError
                if is_disconnected is not None and await is_disconnected():
                    log.info("Caller went away before the repository was fetched")
                    self._audit.log_rejected(deployment.name, tag, user, "caller disconnected")
                    return WebhookResult(503, TIMED_OUT, deployment)

                stage = "fetch"
                async with repository.session() as session:
                    stage = "apply"
                    commit = await run_blocking(deployment.apply, session.worktree, tag, user)
                    if commit is None:
                        log.info("No changes made")
                        self._audit.log_unchanged(deployment.name, tag, user)
                        return WebhookResult(304, "No changes made", deployment)

                    stage = "push"
                    await session.push(timeout=max(deadline - loop.time(), 1.0))
        except TimeoutError:
            log.warning("Request timed out", stage=stage)
            self._audit.log_error(deployment.name, tag, user, f"timed out during {stage}")
            return WebhookResult(503, TIMED_OUT, deployment)
        except ManifestError as e:
            log.warning("Failed to apply deployment", error=str(e))
            self._audit.log_error(deployment.name, tag, user, str(e))
            return WebhookResult(500, INTERNAL_ERROR, deployment)
        except RepositoryError as e:
            event = {
                "fetch": "Failed to fetch repository",
                "apply": "Failed to apply deployment",
            }.get(stage, "Failed to push repository")
            log.warning(event, error=str(e))
            if e.details:
                log.debug("Repository error details", details=e.details)
            self._audit.log_error(deployment.name, tag, user, str(e))
            return WebhookResult(500, INTERNAL_ERROR, deployment)

        log.info("Deployment updated", revision=commit)
        self._audit.log_updated(deployment.name, tag, user, commit)
        return WebhookResult(200, "OK", deployment, commit)
