# ABOUTME: Argo CD sync sessions: wait for a pushed revision, then trigger a sync
# ABOUTME: Exponential backoff under one overall deadline; outcome is only logged

"""
Argo CD synchronisation after a successful push.

=============================================================================
STATE MACHINE
=============================================================================

Every attempt walks the same path:

    connecting -> authenticating -> waiting-for-revision -> syncing -> done

    connecting             open an API client
    authenticating         GET the application; proves the token works
    waiting-for-revision   read the watch stream until Argo CD reports the
                           pushed commit as its sync revision
    syncing                POST the sync action

Any state can end in `failed`.

=============================================================================
RETRIES
=============================================================================

Transient failures (connection refused, 5xx, the watch stream closing before
the revision shows up) start a new attempt from `connecting` after an
exponential backoff. Permanent failures stop immediately:

- 401/403 while authenticating: retrying will not fix a bad token
- the session deadline: 300 seconds after the push by default

Nobody waits for the result. The webhook response has already been sent by
the time a session starts, so the outcome is logged and counted, never
raised.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, wait_exponential

from image_updater.utils.client import ArgocdClient, ArgocdError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tenacity import RetryCallState

    from image_updater.config import ArgocdInstance
    from image_updater.utils.metrics import MetricsRecorder

logger = structlog.get_logger(__name__)

DEFAULT_SYNC_TIMEOUT = 300.0


class SyncState(StrEnum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    WAITING_FOR_REVISION = "waiting-for-revision"
    SYNCING = "syncing"
    DONE = "done"
    FAILED = "failed"


class PermanentSyncError(Exception):
    """A sync failure that no amount of retrying will fix."""


class StreamEndedError(Exception):
    """The watch stream closed before the target revision was reported."""


RETRYABLE_ERRORS = (ArgocdError, httpx.HTTPError, OSError, StreamEndedError)


@dataclass
class SyncSession:
    """Progress of one sync request, from the push until done or failed."""

    application: str
    revision: str
    deadline: float
    state: SyncState = SyncState.CONNECTING
    attempts: int = 0
    history: list[SyncState] = field(default_factory=list)
    error: str | None = None

    def transition(self, state: SyncState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def succeeded(self) -> bool:
        return self.state is SyncState.DONE


class ArgocdSyncer:
    """
    Runs sync sessions against one Argo CD instance.

    Args:
        instance: Argo CD connection details.
        timeout: Overall deadline of a session, in seconds.
        client_factory: Builds the API client for each attempt.
        clock: Monotonic clock the deadline is measured on.
        sleep: Coroutine used for backoff pauses.
        metrics: Counts session outcomes when given.
    """

    def __init__(
        self,
        instance: ArgocdInstance,
        timeout: float = DEFAULT_SYNC_TIMEOUT,
        client_factory: Callable[[ArgocdInstance], ArgocdClient] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._instance = instance
        self._timeout = timeout
        self._client_factory = client_factory or ArgocdClient
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics

    async def sync(self, application: str, revision: str) -> SyncSession:
        """
        Wait until Argo CD has seen `revision`, then sync `application`.

        Never raises: the returned session tells what happened, and the
        outcome has already been logged.
        """
        session = SyncSession(
            application=application,
            revision=revision,
            deadline=self._clock() + self._timeout,
        )
        log = logger.bind(application=application, revision=revision)

        try:
            retrying = AsyncRetrying(
                retry=retry_if_exception_type(RETRYABLE_ERRORS),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=60),
                stop=lambda _state: self._clock() >= session.deadline,
                sleep=self._backoff(session),
                before_sleep=self._log_retry(session),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    await self._run_attempt(session)
        except PermanentSyncError as e:
            self._fail(session, str(e))
            if session.error == "deadline exceeded":
                log.warning("Timed out waiting for ArgoCD sync", attempts=session.attempts)
            else:
                log.warning("Could not trigger ArgoCD sync", error=session.error)
        except RETRYABLE_ERRORS as e:
            # Stop condition reached with a transient error in hand
            self._fail(session, str(e))
            log.warning(
                "Could not trigger ArgoCD sync",
                error=session.error,
                attempts=session.attempts,
            )
        except Exception as e:  # noqa: BLE001 - the session must never raise
            self._fail(session, str(e))
            log.exception("ArgoCD sync crashed")
        else:
            log.info("Application synchronized", attempts=session.attempts)
            self._record("success")
        return session

    def _fail(self, session: SyncSession, error: str) -> None:
        session.error = error
        session.transition(SyncState.FAILED)
        self._record("timeout" if error == "deadline exceeded" else "failed")

    def _record(self, result: str) -> None:
        if self._metrics is not None:
            self._metrics.record_sync(result)

    def _backoff(self, session: SyncSession) -> Callable[[float], Awaitable[None]]:
        """Backoff pauses never run past the session deadline."""

        async def sleep(seconds: float) -> None:
            remaining = session.deadline - self._clock()
            await self._sleep(max(0.0, min(seconds, remaining)))

        return sleep

    @staticmethod
    def _log_retry(session: SyncSession) -> Callable[[RetryCallState], None]:
        def before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.debug(
                "Retrying ArgoCD sync",
                application=session.application,
                attempt=state.attempt_number,
                error=str(error),
                wait=state.next_action.sleep if state.next_action else None,
            )

        return before_sleep

    async def _run_attempt(self, session: SyncSession) -> None:
        remaining = session.deadline - self._clock()
        if remaining <= 0:
            raise PermanentSyncError("deadline exceeded")
        try:
            async with asyncio.timeout(remaining):
                await self._attempt(session)
        except TimeoutError as e:
            raise PermanentSyncError("deadline exceeded") from e

    async def _attempt(self, session: SyncSession) -> None:
        session.attempts += 1
        session.transition(SyncState.CONNECTING)

        async with self._client_factory(self._instance) as client:
            session.transition(SyncState.AUTHENTICATING)
            try:
                await client.get_application(session.application)
            except ArgocdError as e:
                if e.is_auth_error:
                    raise PermanentSyncError(str(e)) from e
                raise

            session.transition(SyncState.WAITING_FOR_REVISION)
            async with aclosing(client.watch_application(session.application)) as events:
                async for event in events:
                    current = event.application.sync_revision
                    logger.debug(
                        "Application revision is now",
                        application=session.application,
                        current=current,
                        status=event.application.sync_status,
                    )
                    if current == session.revision:
                        break
                else:
                    raise StreamEndedError("watch stream ended before the revision appeared")

            session.transition(SyncState.SYNCING)
            await client.sync_application(session.application)

        session.transition(SyncState.DONE)
