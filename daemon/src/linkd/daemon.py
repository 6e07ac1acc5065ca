"""Main daemon orchestration - ties all components together."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from linkd.config import Config
from linkd.credentials import CredentialStore, FileCredentialStore
from linkd.linking.registry import SessionRegistry
from linkd.server import LinkServer
from linkd.transport import TransportFactory

logger = logging.getLogger(__name__)


class StartupError(Exception):
    """Error during daemon startup."""

    pass


class Daemon:
    """Main daemon orchestrating all components.

    Responsibilities:
    - Open the credential store and purge stale credentials
    - Own the session registry for the process lifetime
    - Serve the HTTP API
    - Periodically sweep ended sessions and stale credentials
    - Handle graceful shutdown
    """

    def __init__(
        self,
        config: Config,
        transport_factory: TransportFactory,
        store: Optional[CredentialStore] = None,
        registry: Optional[SessionRegistry] = None,
        server: Optional[LinkServer] = None,
    ):
        """Initialize daemon.

        Args:
            config: Daemon configuration.
            transport_factory: Builds transport clients for sessions.
            store: Optional injected credential store (for testing).
            registry: Optional injected session registry (for testing).
            server: Optional injected HTTP server (for testing).
        """
        self._config = config
        self._transport_factory = transport_factory
        self._store = store
        self._registry = registry
        self._server = server
        self._running = False
        self._janitor_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def registry(self) -> Optional[SessionRegistry]:
        return self._registry

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the daemon.

        Raises:
            StartupError: If the store or the HTTP server cannot be started.
        """
        logger.info("Starting daemon...")

        await self._initialize_store()

        if self._registry is None:
            self._registry = SessionRegistry.from_config(
                self._config, self._transport_factory, self._store
            )

        await self._start_server()

        self._janitor_task = asyncio.create_task(self._janitor_loop())

        self._setup_signals()

        self._running = True
        logger.info("Daemon started successfully")

    async def run_forever(self) -> None:
        """Run daemon until shutdown signal."""
        if not self._running:
            await self.start()

        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self._shutdown()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        self._stop_event.set()

    async def _initialize_store(self) -> None:
        """Open the credential store and drop leftovers from earlier runs."""
        if self._store is None:
            try:
                self._store = FileCredentialStore(
                    Path(self._config.credentials_dir).expanduser()
                )
            except OSError as e:
                raise StartupError(f"Cannot open credentials directory: {e}")

        removed = await self._store.purge_stale(self._config.stale_credential_age)
        logger.info(f"Initial cleanup: {removed} stale credentials removed")

    async def _start_server(self) -> None:
        """Start the HTTP server."""
        if self._server is None:
            self._server = LinkServer(self._registry, self._config)

        try:
            await self._server.start(self._config.bind_address, self._config.port)
        except OSError as e:
            raise StartupError(
                f"Cannot listen on {self._config.bind_address}:{self._config.port}: {e}"
            )

    async def _janitor_loop(self) -> None:
        """Periodically sweep ended sessions and stale credentials."""
        while True:
            await asyncio.sleep(self._config.sweep_interval)
            await self.sweep()

    async def sweep(self) -> None:
        """Run one sweep of the registry and the credential store."""
        if self._registry is not None:
            try:
                self._registry.sweep(self._config.session_retention)
            except Exception as e:
                logger.error(f"Error sweeping ended sessions: {e}")
        if self._store is not None:
            try:
                removed = await self._store.purge_stale(self._config.stale_credential_age)
                if removed:
                    logger.info(f"Cleanup completed: {removed} stale credentials removed")
            except Exception as e:
                logger.error(f"Error cleaning up stale credentials: {e}")

    def _setup_signals(self) -> None:
        """Stop on SIGINT / SIGTERM where the loop supports signal handlers."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug(f"Signal handler for {sig.name} not installed")

    def _remove_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass

    async def _shutdown(self) -> None:
        """Release everything in reverse start order."""
        if not self._running:
            return
        self._running = False
        logger.info("Shutting down daemon...")
        self._remove_signals()

        if self._janitor_task is not None:
            self._janitor_task.cancel()
            try:
                await self._janitor_task
            except asyncio.CancelledError:
                pass
            self._janitor_task = None

        if self._server is not None:
            await self._server.stop()

        if self._registry is not None:
            await self._registry.close()

        logger.info("Daemon stopped")
