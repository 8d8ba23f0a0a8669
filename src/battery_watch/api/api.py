"""
Flask REST API implementation for Battery Watch.

This module provides the BatteryWatchAPI class which manages the Flask
application and serves device snapshots from the core engine.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

from flask import Flask, request

from .devices import setup_device_routes
from .validation import APIError, format_error_response

if TYPE_CHECKING:
    from battery_watch.config.config_manager import ConfigManager
    from battery_watch.core.engine import BatteryWatchCore


class BatteryWatchAPI:
    """
    Flask REST API for Battery Watch.

    Request handlers run on Flask's threads. They read the registry, which
    is lock-protected, and schedule rescans on the engine loop.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        core_engine: BatteryWatchCore,
    ) -> None:
        """
        Initialize BatteryWatchAPI with configuration and core engine.

        Args:
            config_manager: Configuration manager instance
            core_engine: Core monitoring engine instance
        """
        self.config = config_manager
        self.core_engine = core_engine
        self.logger = logging.getLogger("battery_watch.api")

        self.app = Flask(__name__)

        self.running = False
        self.server_thread: threading.Thread | None = None

        self._configure_app()
        self._setup_error_handlers()
        self.setup_routes()

        self.logger.info("BatteryWatchAPI initialized")

    def _api_config(self) -> dict[str, Any]:
        return self.config.get_config("system").get("api", {})

    def _configure_app(self) -> None:
        """Configure Flask application settings."""
        self.app.config.update(
            {
                "DEBUG": self._api_config().get("debug", False),
                "TESTING": False,
            },
        )
        self.app.json.sort_keys = False

        @self.app.before_request
        def log_request() -> None:
            """Log incoming requests."""
            self.logger.debug(
                "API Request: %s %s from %s",
                request.method,
                request.path,
                request.remote_addr,
            )

    def _setup_error_handlers(self) -> None:
        """Setup Flask error handlers for consistent error responses."""

        @self.app.errorhandler(APIError)
        def handle_api_error(error: APIError) -> tuple[dict[str, Any], int]:
            self.logger.error(
                "API Error: %s (status: %d)",
                error.message,
                error.status_code,
            )
            return format_error_response(
                error.message,
                error.status_code,
                error.error_code,
                error.source,
                error.meta,
            )

        @self.app.errorhandler(404)
        def handle_not_found(error: Any) -> tuple[dict[str, Any], int]:  # noqa: ARG001
            return format_error_response(
                "The requested resource was not found",
                404,
                "NOT_FOUND",
            )

        @self.app.errorhandler(405)
        def handle_method_not_allowed(error: Any) -> tuple[dict[str, Any], int]:  # noqa: ARG001
            return format_error_response(
                f"Method {request.method} not allowed for {request.path}",
                405,
                "METHOD_NOT_ALLOWED",
            )

        @self.app.errorhandler(500)
        def handle_internal_error(error: Any) -> tuple[dict[str, Any], int]:
            self.logger.exception("Internal server error: %s", error)
            return format_error_response(
                "An internal server error occurred",
                500,
                "INTERNAL_ERROR",
            )

    def setup_routes(self) -> None:
        """Setup all API routes."""

        @self.app.route("/api/health", methods=["GET"])
        def health_check() -> dict[str, Any]:
            """Health check endpoint."""
            summary = self.core_engine.registry.get_summary()
            return {
                "status": "healthy",
                "service": "battery-watch-api",
                "core_running": self.core_engine.running,
                "devices": summary,
            }

        @self.app.route("/api/version", methods=["GET"])
        def version_info() -> dict[str, Any]:
            """Version information endpoint."""
            from battery_watch.api import __version__ as api_version
            from battery_watch.core import __version__ as core_version

            return {
                "api_version": api_version,
                "core_version": core_version,
                "service": "battery-watch-api",
            }

        setup_device_routes(self.app, self.core_engine)

        self.logger.info("API routes registered")

    def start(self) -> None:
        """
        Start the Flask API server in a separate thread.

        The development server runs in a daemon thread so the AsyncIO
        engine keeps the main thread.
        """
        if self.running:
            self.logger.warning("API server is already running")
            return

        api_config = self._api_config()
        host = api_config.get("host", "127.0.0.1")
        port = api_config.get("port", 5080)
        debug = api_config.get("debug", False)

        self.logger.info("Starting API server on %s:%d", host, port)

        def run_server() -> None:
            try:
                self.app.run(
                    host=host,
                    port=port,
                    debug=debug,
                    use_reloader=False,
                    threaded=True,
                )
            except Exception:
                self.logger.exception("API server error")

        self.server_thread = threading.Thread(target=run_server, daemon=True)
        self.server_thread.start()
        self.running = True

        self.logger.info("API server started successfully")

    def stop(self) -> None:
        """
        Stop the Flask API server.

        The development server has no clean shutdown; the daemon thread ends
        with the process.
        """
        if not self.running:
            self.logger.warning("API server is not running")
            return

        self.logger.info("Stopping API server")
        self.running = False
        if self.server_thread and self.server_thread.is_alive():
            self.logger.info("API server thread will terminate when main process exits")
