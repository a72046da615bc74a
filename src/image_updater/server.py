# ABOUTME: Starlette application factory and command line entry point
# ABOUTME: Wires webhook route, health, metrics, allowlist and Argo CD syncs together

"""Image updater webhook server - GitOps tag bumps over HTTP."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import click
import structlog
import uvicorn
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.middleware import Middleware
from starlette.requests import ClientDisconnect, Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route

from image_updater import __version__
from image_updater.config import ConfigError, ServerSettings, load_settings
from image_updater.deployment import TemplateError
from image_updater.utils.logging import AuditLogger, configure_logging, set_correlation_id
from image_updater.utils.metrics import MetricsRecorder
from image_updater.utils.safety import AllowlistMiddleware, RequestGuard
from image_updater.utils.sync import ArgocdSyncer
from image_updater.webhook import PayloadError, WebhookDispatcher, WebhookPayload

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
SHUTDOWN_GRACE_SECONDS = 30
WEBHOOK_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@asynccontextmanager
async def lifespan(app: Starlette) -> AsyncIterator[None]:
    """Log server start and stop."""
    settings: ServerSettings = app.state.settings
    logger.info(
        "Starting image updater",
        deployments=len(settings.deployments),
        repositories=len(settings.repositories),
        argocd=settings.argocd_instance.url if settings.argocd_instance else None,
    )
    yield
    logger.info("Image updater stopped")


def create_app(
    settings: ServerSettings,
    *,
    dispatcher: WebhookDispatcher | None = None,
    syncer: ArgocdSyncer | None = None,
    metrics: MetricsRecorder | None = None,
    audit: AuditLogger | None = None,
    guard: RequestGuard | None = None,
) -> Starlette:
    """
    Build the ASGI application.

    Collaborators not passed in are built from the settings. A syncer is only
    built when argocd_url is configured.

    Raises:
        TemplateError: A deployment's commit message template is broken.
    """
    audit = audit or AuditLogger(settings.audit_log)
    metrics = metrics or MetricsRecorder()
    dispatcher = dispatcher or WebhookDispatcher.from_settings(settings, audit)
    guard = guard or RequestGuard.from_settings(
        settings.allowed_ips,
        settings.secret_key.get_secret_value(),
    )
    if syncer is None and settings.argocd_instance is not None:
        syncer = ArgocdSyncer(settings.argocd_instance, timeout=settings.sync_timeout, metrics=metrics)

    # Logged twice so it survives a quick glance at the startup output
    if not guard.allowlist_enabled and not guard.secret_enabled:
        logger.warning("Your secret_key and allowed_ips have not been configured.")
        logger.warning("This is extremely insecure, and should never be done outside of testing.")

    async def handle_webhook(request: Request) -> Response:
        blocked = guard.check_secret(request.headers)
        if blocked is not None:
            logger.info("Request refused", reason=blocked.format_message())
            return PlainTextResponse("Forbidden", status_code=403)

        if request.method != "POST":
            return PlainTextResponse("Method not allowed", status_code=405)

        try:
            body = await request.body()
        except ClientDisconnect:
            logger.warning("Failed to read payload")
            return PlainTextResponse("Failed to read payload", status_code=500)

        try:
            payload = WebhookPayload.parse(body)
            payload.check()
        except PayloadError as e:
            logger.info("Rejected payload", error=str(e))
            return PlainTextResponse(str(e), status_code=400)

        result = await dispatcher.dispatch(payload, request.is_disconnected)
        if result.status_code == 304:
            return Response(status_code=304)

        background = None
        application = result.deployment.application if result.deployment else None
        if result.status_code == 200 and syncer and application and result.revision:
            background = BackgroundTask(syncer.sync, application, result.revision)
        return PlainTextResponse(result.message, status_code=result.status_code, background=background)

    async def webhook(request: Request) -> Response:
        set_correlation_id(request.headers.get("X-Request-ID", ""))
        with metrics.track_hook() as tracker:
            response = await handle_webhook(request)
            tracker.code = response.status_code
        return response

    async def health(_request: Request) -> Response:
        return PlainTextResponse("OK")

    async def metrics_endpoint(_request: Request) -> Response:
        body, content_type = metrics.render()
        return Response(body, media_type=content_type)

    app = Starlette(
        routes=[
            # Every method reaches the handler so the secret is checked first
            Route("/", webhook, methods=WEBHOOK_METHODS),
            Route("/health", health, methods=["GET"]),
            Route("/metrics", metrics_endpoint, methods=["GET"]),
        ],
        middleware=[Middleware(AllowlistMiddleware, guard=guard)],
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.syncer = syncer
    app.state.metrics = metrics
    return app


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def _more_verbose(first: str, second: str) -> str:
    return min(first, second, key=LOG_LEVELS.index)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default is $HOME/.image-updater.yaml or /etc/image-updater.yaml)",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity")
@click.option(
    "-l",
    "--listen-addr",
    envvar="IMAGE_UPDATER_LISTEN_ADDR",
    default=None,
    help="Address to listen on, e.g. :8080",
)
@click.version_option(__version__, prog_name="image-updater")
def main(config_path: Path | None, verbose: int, listen_addr: str | None) -> None:
    """Webhook server to update image manifests in git repos."""
    level = "DEBUG" if verbose else "INFO"
    configure_logging(level=level)
    logger.info("Log level", level=level)

    try:
        settings = load_settings(config_path, listen_address=listen_addr)
    except (ConfigError, ValidationError) as e:
        logger.error("Config file loading failed", error=str(e))
        sys.exit(1)

    new_level = _more_verbose(level, settings.log_level)
    configure_logging(level=new_level, json_output=settings.json_logs)
    if new_level != level:
        logger.debug("Log level is now", level=new_level)

    try:
        app = create_app(settings)
        host, port = settings.listen_host_port
    except (TemplateError, ValueError) as e:
        logger.error("Invalid config", error=str(e))
        sys.exit(1)

    try:
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_config=None,
            access_log=False,
            timeout_graceful_shutdown=SHUTDOWN_GRACE_SECONDS,
        )
    except KeyboardInterrupt:
        logger.info("Server interrupted")


if __name__ == "__main__":
    main()
