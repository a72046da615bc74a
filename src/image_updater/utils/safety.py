# ABOUTME: Caller gating for the webhook server
# ABOUTME: IP allowlist middleware and constant-time shared secret check

"""Caller gating: who may reach the server, and who may trigger a bump."""

from __future__ import annotations

import ipaddress
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from starlette.responses import PlainTextResponse

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from starlette.types import ASGIApp, Receive, Scope, Send

logger = structlog.get_logger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

SECRET_HEADER = "X-Key"


@dataclass
class OperationBlocked:
    """A request refused by a gate, with the setting that refused it."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        """Format the refusal for the log."""
        return f"{self.operation} blocked: {self.reason} (setting: {self.setting})"


def parse_networks(entries: Iterable[str]) -> list[IPNetwork]:
    """Parse allowlist entries.

    Bare addresses become single-host networks (/32 for IPv4, /128 for IPv6).
    Host bits in CIDR entries are ignored.

    Raises:
        ValueError: If an entry is neither an address nor a network
    """
    return [ipaddress.ip_network(entry.strip(), strict=False) for entry in entries]


class RequestGuard:
    """Allowlist and shared secret checks."""

    def __init__(
        self,
        networks: Iterable[IPNetwork] = (),
        secret_key: str = "",
        header: str = SECRET_HEADER,
    ) -> None:
        """Initialize request guard.

        Args:
            networks: Allowed client networks; empty allows everyone
            secret_key: Expected header value; empty disables the check
            header: Header carrying the secret
        """
        self._networks = list(networks)
        self._secret = secret_key.encode()
        self._header = header

    @classmethod
    def from_settings(cls, allowed_ips: Iterable[str], secret_key: str) -> RequestGuard:
        return cls(parse_networks(allowed_ips), secret_key)

    @property
    def allowlist_enabled(self) -> bool:
        return bool(self._networks)

    @property
    def secret_enabled(self) -> bool:
        return bool(self._secret)

    def check_address(self, host: str | None) -> OperationBlocked | None:
        """Check the client address against the allowlist.

        Args:
            host: Client IP as reported by the server, or None if unknown

        Returns:
            OperationBlocked if refused, None if allowed
        """
        if not self._networks:
            return None
        try:
            address = ipaddress.ip_address(host or "")
        except ValueError:
            return OperationBlocked(
                operation="request",
                reason=f"client address {host!r} is unknown",
                setting="allowed_ips",
            )
        if any(address in network for network in self._networks):
            return None
        return OperationBlocked(
            operation="request",
            reason=f"client address {address} is not allowed",
            setting="allowed_ips",
        )

    def check_secret(self, headers: Mapping[str, str]) -> OperationBlocked | None:
        """Check the shared secret header in constant time.

        Returns:
            OperationBlocked if refused, None if allowed
        """
        if not self._secret:
            return None
        presented = headers.get(self._header, "").encode()
        if secrets.compare_digest(presented, self._secret):
            return None
        return OperationBlocked(
            operation="webhook",
            reason=f"missing or wrong {self._header} header",
            setting="secret_key",
        )


class AllowlistMiddleware:
    """ASGI middleware refusing HTTP clients outside the allowlist with 403."""

    def __init__(self, app: ASGIApp, guard: RequestGuard) -> None:
        self.app = app
        self.guard = guard

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.guard.allowlist_enabled:
            await self.app(scope, receive, send)
            return

        client = scope.get("client")
        blocked = self.guard.check_address(client[0] if client else None)
        if blocked is None:
            await self.app(scope, receive, send)
            return

        logger.info("Request refused", reason=blocked.format_message(), path=scope.get("path"))
        response = PlainTextResponse("Forbidden", status_code=403)
        await response(scope, receive, send)
