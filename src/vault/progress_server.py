"""HTTP endpoint for polling the progress of an operation by its access key."""

import json
from typing import Optional

from aiohttp import web
import structlog

from vault.operation_store import OperationStore
from utils.logging import get_logger


class ProgressServer:
    """Serves ``GET /progress/{accesskey}`` with the status and log of an operation."""

    def __init__(
        self,
        operations: OperationStore,
        port: int = 8001,
        host: str = "0.0.0.0",
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize progress server.

        Args:
            operations: Operation store
            port: Port to listen on
            host: Interface to bind
            logger: Optional logger instance
        """
        self.operations = operations
        self.port = port
        self.host = host
        self.logger = logger or get_logger("progress_server")
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/progress/{accesskey}", self._handle_progress)
        return app

    async def start(self) -> None:
        """Start the progress server."""
        self.app = self.build_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        self.logger.info(
            "Progress server started",
            port=self.port,
            endpoint=f"http://{self.host}:{self.port}/progress/<accesskey>",
        )

    async def stop(self) -> None:
        """Stop the progress server."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        self.logger.info("Progress server stopped")

    async def _handle_progress(self, request: web.Request) -> web.Response:
        """Status and log of the operation bound to the access key.

        The optional ``since`` query parameter returns only log entries with a larger id.
        """
        accesskey = request.match_info["accesskey"]
        model = await self.operations.get_by_access_key(accesskey)
        if model is None:
            return web.Response(
                text=json.dumps({"error": "Operation not found"}),
                status=404,
                content_type="application/json",
            )
        try:
            since = int(request.query.get("since", "0"))
        except ValueError:
            since = 0

        logs = await self.operations.get_logs(model.id, since_id=since)
        response_data = {
            "id": model.id,
            "type": str(model.type),
            "status": str(model.status),
            "backupkey": model.backupkey,
            "timecreated": model.timecreated.isoformat(),
            "timemodified": model.timemodified.isoformat(),
            "logs": [entry.to_dict() for entry in logs],
            "formatted": "\n".join(entry.format() for entry in logs),
        }
        return web.Response(
            text=json.dumps(response_data, indent=2, default=str),
            content_type="application/json",
        )
