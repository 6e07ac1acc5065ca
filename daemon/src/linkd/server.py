"""HTTP server for linkd.

Single aiohttp server handling all routes:
- /health - Health check
- /session - Service info
- /session/auth - Create (or reuse) a linking session
- /session/validate-number/{number} - Phone number format check
- /session/{id} - Get / delete a session (phone number or session key)
- /session/{id}/qr.png - QR code image of a pending QR session
- /admin/sessions, /admin/stats - Registry overview
"""

import asyncio
import logging
import time
from collections import OrderedDict, deque
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web

from linkd import __version__
from linkd.config import Config
from linkd.errors import SessionNotFoundError, ValidationError
from linkd.keys import (
    anonymous_session_key,
    is_valid_phone,
    normalize_phone,
    phone_session_key,
    resolve_session_key,
)
from linkd.linking.registry import SessionRegistry
from linkd.linking.state import LinkingMethod, SessionStatus
from linkd.logging import short_key
from linkd.qr import QrRenderer, png_data_url

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# Rendered QR images kept per server
QR_CACHE_SIZE = 64


# =============================================================================
# Rate Limiter
# =============================================================================

class RateLimiter:
    """Per-client sliding window of request timestamps.

    Clients whose window has emptied are forgotten, at most one window
    after their last request.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_prune = clock()

    def is_allowed(self, client: str) -> bool:
        """Record a request from client unless it is over the limit."""
        now = self._clock()
        if now - self._last_prune >= self.window_seconds:
            self.prune()

        hits = self._hits.get(client)
        if hits is None:
            hits = self._hits[client] = deque()
        self._expire(hits, now)

        if len(hits) >= self.max_requests:
            if not hits:
                del self._hits[client]
            return False

        hits.append(now)
        return True

    def prune(self) -> int:
        """Forget clients with no requests inside the window.

        Returns:
            Number of clients dropped.
        """
        now = self._clock()
        self._last_prune = now
        idle = []
        for client, hits in self._hits.items():
            self._expire(hits, now)
            if not hits:
                idle.append(client)
        for client in idle:
            del self._hits[client]
        return len(idle)

    def _expire(self, hits: deque, now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def __len__(self) -> int:
        """Number of clients currently tracked."""
        return len(self._hits)


# =============================================================================
# Server
# =============================================================================

class LinkServer:
    """HTTP front end over a SessionRegistry."""

    def __init__(self, registry: SessionRegistry, config: Optional[Config] = None):
        """Initialize server.

        Args:
            registry: Session registry owned by the daemon.
            config: Daemon configuration. Defaults to Config().
        """
        self.registry = registry
        self.config = config or Config()
        self.ip_limiter = RateLimiter(
            max_requests=self.config.rate_limit.max_requests,
            window_seconds=self.config.rate_limit.window_seconds,
        )

        self.app = web.Application(middlewares=[self._rate_limit_middleware])
        self._setup_routes()
        self._runner: Optional[web.AppRunner] = None
        # Rendered QR images by payload, oldest first
        self._qr_cache: OrderedDict[str, bytes] = OrderedDict()

    def _setup_routes(self) -> None:
        """Set up all HTTP routes."""
        # Health
        self.app.router.add_get("/health", self._handle_health)

        # Session API (static paths before /session/{session_id})
        self.app.router.add_get("/session", self._handle_info)
        self.app.router.add_get("/session/auth", self._handle_auth)
        self.app.router.add_get(
            "/session/validate-number/{number}", self._handle_validate_number
        )
        self.app.router.add_get("/session/{session_id}", self._handle_status)
        self.app.router.add_get("/session/{session_id}/qr.png", self._handle_qr_image)
        self.app.router.add_delete("/session/{session_id}", self._handle_delete)

        # Admin
        self.app.router.add_get("/admin/sessions", self._handle_admin_sessions)
        self.app.router.add_get("/admin/stats", self._handle_admin_stats)

    @web.middleware
    async def _rate_limit_middleware(
        self, request: web.Request, handler: Handler
    ) -> web.StreamResponse:
        if request.path != "/health":
            client_ip = request.remote or "unknown"
            if not self.ip_limiter.is_allowed(client_ip):
                return _error("Too many requests, please try again later", status=429)
        return await handler(request)

    # =========================================================================
    # Health and info
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.Response(text="OK")

    async def _handle_info(self, request: web.Request) -> web.Response:
        """Describe the API."""
        return web.json_response({
            "success": True,
            "message": "Device link session service",
            "version": __version__,
            "endpoints": {
                "auth": "GET /session/auth?phone=[number]&mode=[qr|code]",
                "status": "GET /session/[phone|sessionId]",
                "qr_image": "GET /session/[sessionId]/qr.png",
                "delete": "DELETE /session/[phone|sessionId]",
                "validate_number": "GET /session/validate-number/[number]",
            },
            "notes": [
                "Phone numbers must include the country code, e.g. +201012345678",
                "The credential is sent to the linked account once linking succeeds",
                f"Sessions are cleaned up {self.config.delivery.grace_period:g} "
                "seconds after delivery",
            ],
        })

    # =========================================================================
    # Session API
    # =========================================================================

    async def _handle_auth(self, request: web.Request) -> web.Response:
        """Create or reuse a linking session and wait for its artifact."""
        phone_param = request.query.get("phone")
        mode = request.query.get("mode", "qr")

        try:
            method = LinkingMethod.parse(mode)
            if phone_param:
                phone = normalize_phone(phone_param)
                key = phone_session_key(phone)
            elif method is LinkingMethod.QR:
                phone = None
                key = anonymous_session_key()
            else:
                raise ValidationError("Phone number is required for code authentication")

            await self.registry.get_or_create(key, method, phone=phone)
        except ValidationError as e:
            return _error(str(e), status=400)

        try:
            status = await self.registry.wait_for_linking(key, self.config.artifact_wait)
        except SessionNotFoundError:
            # Ended and cleaned up while we waited
            return _error("Session ended before a linking artifact was issued", status=410)

        logger.info(f"Auth request for {short_key(key)}: {status.state.value}")
        body = await self._describe(request, status)
        return web.json_response({"success": True, **body})

    async def _handle_validate_number(self, request: web.Request) -> web.Response:
        """Check a phone number's format."""
        number = request.match_info["number"]
        valid = is_valid_phone(number)
        return web.json_response({
            "success": True,
            "number": number,
            "isValid": valid,
            "message": (
                "Valid phone number format"
                if valid
                else "Invalid format. Use 10-15 digits including the country code"
            ),
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Get session status."""
        try:
            key = resolve_session_key(request.match_info["session_id"])
            status = self.registry.require(key)
        except ValidationError as e:
            return _error(str(e), status=400)
        except SessionNotFoundError:
            return _error("Session not found", status=404)

        body = await self._describe(request, status)
        return web.json_response({"success": True, **body})

    async def _handle_qr_image(self, request: web.Request) -> web.Response:
        """Serve the pending QR code as a PNG image."""
        try:
            key = resolve_session_key(request.match_info["session_id"])
        except ValidationError as e:
            return _error(str(e), status=400)

        status = self.registry.get(key)
        if status is None or status.linking_artifact_kind != "qr":
            return _error(
                "QR code not available. Create a session with mode=qr first",
                status=404,
            )

        png = await self._qr_png(status.linking_artifact_value)
        return web.Response(
            body=png,
            content_type="image/png",
            headers={
                "Cache-Control": "no-cache, no-store, must-revalidate",
                "Pragma": "no-cache",
                "Expires": "0",
            },
        )

    async def _handle_delete(self, request: web.Request) -> web.Response:
        """Delete a session. Deleting an unknown session still succeeds."""
        try:
            key = resolve_session_key(request.match_info["session_id"])
        except ValidationError as e:
            return _error(str(e), status=400)

        deleted = await self.registry.delete(key)
        return web.json_response({
            "success": True,
            "deleted": deleted,
            "message": "Session cleared successfully",
        })

    # =========================================================================
    # Admin
    # =========================================================================

    async def _handle_admin_sessions(self, request: web.Request) -> web.Response:
        """List all sessions."""
        sessions = [
            {
                "session_id": status.key,
                "method": status.method.value,
                "state": status.state.value,
                "linked": status.is_linked,
                "created_at": status.created_at,
            }
            for status in self.registry.list_all()
        ]
        return web.json_response({"success": True, "sessions": sessions})

    async def _handle_admin_stats(self, request: web.Request) -> web.Response:
        """Registry counters."""
        return web.json_response({"success": True, "stats": self.registry.stats()})

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _describe(
        self, request: web.Request, status: SessionStatus
    ) -> dict[str, Any]:
        body = {"session_id": status.key, **status.to_dict()}
        if status.linking_artifact_kind == "pairing_code":
            body["code"] = status.linking_artifact_value
        elif status.linking_artifact_kind == "qr":
            png = await self._qr_png(status.linking_artifact_value)
            body["qr_data_url"] = png_data_url(png)
            body["qr_image_url"] = str(
                request.url.with_path(f"/session/{status.key}/qr.png").with_query(None)
            )
        return body

    async def _qr_png(self, payload: str) -> bytes:
        """PNG for a QR payload, rendered off the event loop once per payload."""
        png = self._qr_cache.get(payload)
        if png is not None:
            self._qr_cache.move_to_end(payload)
            return png

        png = await asyncio.to_thread(QrRenderer(payload).to_png)
        self._qr_cache[payload] = png
        while len(self._qr_cache) > QR_CACHE_SIZE:
            self._qr_cache.popitem(last=False)
        return png

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, host: str, port: int) -> web.AppRunner:
        """Start the server.

        Args:
            host: Host to bind to.
            port: Port to bind to.

        Returns:
            App runner (for cleanup).
        """
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        self._runner = runner
        logger.info(f"HTTP server started on {host}:{port}")
        return runner

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("HTTP server stopped")


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)
