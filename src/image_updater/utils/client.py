# ABOUTME: Argo CD API client: application lookup, revision watch stream, sync trigger
# ABOUTME: Async httpx wrapper with bearer auth, retry on timeouts, structured errors

"""
Argo CD API client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The image updater only needs three things from Argo CD:

    GET  /api/v1/applications/{name}                 - is our token any good?
    GET  /api/v1/stream/applications?name={name}     - tell me when you see X
    POST /api/v1/applications/{name}/sync            - now deploy it

Authentication is a Bearer token in the Authorization header. Errors come
back as JSON:

    {"message": "error description", "error": "additional details", "code": 7}

=============================================================================
THE WATCH STREAM
=============================================================================

The stream endpoint keeps the HTTP response open and writes one JSON document
per line whenever the application changes:

    {"result": {"type": "MODIFIED", "application": {...}}}

Right after Argo CD notices a push, an event arrives whose
status.sync.revision is the pushed commit. ArgocdSyncer (utils/sync.py) reads
the stream until it sees that revision, then triggers the sync.

A stream may also carry an error document instead of a result:

    {"error": {"grpc_code": 7, "http_code": 403, "message": "permission denied"}}

which watch_application() raises as ArgocdError.

=============================================================================
CONTEXT MANAGER
=============================================================================

    async with ArgocdClient(instance) as client:
        app = await client.get_application("web")

The httpx connection pool lives exactly as long as the `async with` block.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from image_updater.utils.logging import mask_secrets

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from image_updater.config import ArgocdInstance

logger = structlog.get_logger(__name__)


# =============================================================================
# ARGOCD ERROR CLASS
# =============================================================================


class ArgocdError(Exception):
    """
    Structured Argo CD API error.

    `code` is the HTTP status code. ArgocdSyncer uses it to tell permanent
    failures (401, 403) from transient ones (5xx, 404 while the application
    is still being created, ...).

    USAGE:
    ------
    try:
        app = await client.get_application("nonexistent")
    except ArgocdError as e:
        print(f"Error {e.code}: {e.message}")  # Error 404: Application not found
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"ArgoCD API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base

    @property
    def is_auth_error(self) -> bool:
        return self.code in (401, 403)


# =============================================================================
# APPLICATION DATA CLASSES
# =============================================================================


@dataclass
class Application:
    """
    The parts of an Argo CD Application the syncer looks at.

    FIELDS EXPLAINED:
    -----------------
    - name: Application name (e.g., "web")
    - sync_status: "Synced", "OutOfSync", "Unknown"
    - sync_revision: Commit Argo CD last compared against
    """

    name: str
    sync_status: str
    sync_revision: str

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> Application:
        """Create Application from an Argo CD API Application object."""
        metadata = data.get("metadata") or {}
        status = data.get("status") or {}
        sync = status.get("sync") or {}

        return cls(
            name=metadata.get("name", ""),
            sync_status=sync.get("status", "Unknown"),
            sync_revision=sync.get("revision", ""),
        )


@dataclass
class ApplicationEvent:
    """One change notification from the application watch stream."""

    type: str
    application: Application


# =============================================================================
# ARGOCD CLIENT
# =============================================================================


def _error_from_response(status_code: int, body: str) -> ArgocdError:
    """Build an ArgocdError from an error response body, JSON or not."""
    message = f"HTTP {status_code}"
    details = None
    try:
        error_json = json.loads(body)
    except ValueError:
        details = mask_secrets(body[:200]) or None
    else:
        if isinstance(error_json, dict):
            message = error_json.get("message") or message
            details = error_json.get("error")
    return ArgocdError(code=status_code, message=message, details=details)


class ArgocdClient:
    """
    Async Argo CD API client.

    LIFECYCLE:
    ----------
    1. Create client: client = ArgocdClient(instance)
    2. Enter context: async with client: ...
    3. Use client: await client.get_application("web")
    4. Exit context: HTTP connections cleaned up

    RETRY LOGIC:
    ------------
    Plain requests are retried on timeout, three attempts with exponential
    backoff. The watch stream is not: a broken stream is reported to the
    syncer, which restarts the whole attempt under its own backoff policy.
    """

    def __init__(
        self,
        instance: ArgocdInstance,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize Argo CD client.

        Args:
            instance: Argo CD instance configuration (URL, token, etc.)
            timeout: HTTP request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self._instance = instance
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ArgocdClient:
        self._client = httpx.AsyncClient(
            base_url=f"{self._instance.url}/api/v1",
            headers={
                "Authorization": f"Bearer {self._instance.token.get_secret_value()}",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            verify=not self._instance.insecure,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make HTTP request to the Argo CD API.

        Returns:
            API response as dictionary

        Raises:
            ArgocdError: On API error (4xx, 5xx)
            httpx.TimeoutException: On request timeout (after retries)
            httpx.TransportError: On connection failures
            RuntimeError: If client not initialized (forgot async with)
        """
        client = self._require_client()

        log = logger.bind(method=method, path=path, instance=self._instance.name)
        log.debug("Making ArgoCD API request")

        response = await client.request(method, path, params=params, json=json_data)

        if response.status_code >= 400:
            log.debug(
                "ArgoCD API error",
                status=response.status_code,
                body=mask_secrets(response.text[:200]),
            )
            raise _error_from_response(response.status_code, response.text)

        result = response.json() if response.content else {}
        return result if isinstance(result, dict) else {}

    # =========================================================================
    # APPLICATION OPERATIONS
    # =========================================================================

    async def get_application(self, name: str) -> Application:
        """
        Get application by name.

        ArgoCD API: GET /api/v1/applications/{name}

        Raises:
            ArgocdError: 401/403 for a bad token, 404 if not found
        """
        data = await self._request("GET", f"/applications/{name}")
        return Application.from_api_response(data)

    async def watch_application(self, name: str) -> AsyncIterator[ApplicationEvent]:
        """
        Stream change events for one application.

        ArgoCD API: GET /api/v1/stream/applications?name={name}

        Yields events until the server closes the stream or the caller stops
        iterating. There is no read timeout: the stream legitimately stays
        silent until something changes, and the caller bounds it with its
        own deadline.

        Raises:
            ArgocdError: On an error response or an error document in the stream
        """
        client = self._require_client()
        log = logger.bind(application=name, instance=self._instance.name)
        log.debug("Watching ArgoCD application")

        timeout = httpx.Timeout(self._timeout, read=None)
        async with client.stream(
            "GET",
            "/stream/applications",
            params={"name": name},
            timeout=timeout,
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise _error_from_response(response.status_code, body)

            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    document = json.loads(line)
                except ValueError:
                    log.debug("Skipping undecodable stream line", line=mask_secrets(line[:200]))
                    continue
                if not isinstance(document, dict):
                    continue

                if document.get("error"):
                    error = document["error"]
                    raise ArgocdError(
                        code=error.get("http_code") or 500,
                        message=error.get("message") or "watch stream error",
                    )

                result = document.get("result") or {}
                yield ApplicationEvent(
                    type=result.get("type", ""),
                    application=Application.from_api_response(result.get("application") or {}),
                )

    async def sync_application(self, name: str) -> dict[str, Any]:
        """
        Trigger application sync.

        ArgoCD API: POST /api/v1/applications/{name}/sync

        Args:
            name: Application name

        Returns:
            Sync operation result (the updated Application object)
        """
        return await self._request("POST", f"/applications/{name}/sync", json_data={"name": name})
