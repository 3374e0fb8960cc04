"""
Local certificate review surface.

A throwaway FastAPI app served by uvicorn on the loopback interface with
three routes: the review page, approve and cancel. Whatever happens, the
server and its listening socket are released exactly once on exit.
"""

import asyncio
import html
import socket
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, status
from fastapi.responses import HTMLResponse, JSONResponse

from formation_engine.core.exceptions import CertificateError
from formation_engine.domain.schemas import CertificateSessionData

from .gate import ReviewGate

logger = structlog.get_logger(__name__)

STARTUP_TIMEOUT_SECONDS = 5.0

_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Review certificate - {company}</title></head>
<body>
  <h1>{company}</h1>
  <p><a href="{download_url}" target="_blank">Open the certificate</a>
     (link expires in {minutes} minutes)</p>
  <form method="post" action="/approve"><button type="submit">Approve</button></form>
  <form method="post" action="/cancel"><button type="submit">Cancel</button></form>
</body>
</html>
"""


def create_review_app(gate: ReviewGate, certificate: CertificateSessionData) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    def _signal(accepted: bool, action: str) -> JSONResponse:
        if not accepted:
            logger.info("review_signal_rejected", action=action, outcome=gate.outcome_value)
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={
                    "error": "REVIEW_ALREADY_RESOLVED",
                    "message": f"This review is already {gate.outcome_value}",
                },
            )
        return JSONResponse({"status": gate.outcome_value})

    @app.get("/", response_class=HTMLResponse)
    async def review_page() -> HTMLResponse:
        return HTMLResponse(
            _PAGE.format(
                company=html.escape(certificate.metadata.company_name),
                download_url=html.escape(certificate.download_url, quote=True),
                minutes=certificate.minutes_remaining(),
            )
        )

    @app.post("/approve")
    async def approve() -> JSONResponse:
        return _signal(gate.approve(), "approve")

    @app.post("/cancel")
    async def cancel() -> JSONResponse:
        return _signal(gate.cancel(), "cancel")

    return app


class CertificateReviewServer:
    """
    Async context manager running the review app on a pre-bound socket.

    Port 0 binds an ephemeral port; the bound port is available as ``port``
    once started.
    """

    def __init__(
        self,
        gate: ReviewGate,
        certificate: CertificateSessionData,
        host: str = "127.0.0.1",
        port: int = 0,
    ):
        self.gate = gate
        self.app = create_review_app(gate, certificate)
        self.host = host
        self.requested_port = port
        self.port: Optional[int] = None
        self.teardown_count = 0
        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    async def start(self) -> "CertificateReviewServer":
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.requested_port))
        except OSError as e:
            sock.close()
            raise CertificateError(
                f"Could not start the review server on {self.host}:{self.requested_port}: {e}",
                code="CERTIFICATE_REVIEW_SERVER_ERROR",
                suggestion="Free the review port or configure a different REVIEW_PORT.",
            ) from e
        self._socket = sock
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(self.app, log_level="warning", access_log=False, lifespan="off")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT_SECONDS
        while not self._server.started:
            if self._task.done() or loop.time() > deadline:
                await self.stop()
                raise CertificateError(
                    "The review server failed to start",
                    code="CERTIFICATE_REVIEW_SERVER_ERROR",
                )
            await asyncio.sleep(0.01)

        self._task.add_done_callback(self._on_serve_exit)
        logger.info("review_server_started", url=self.url)
        return self

    def _on_serve_exit(self, task: asyncio.Task) -> None:
        """Fail the gate when the server goes away on its own during a review."""
        if self._closed:
            return
        if task.cancelled():
            reason = "the review server was cancelled"
        else:
            error = task.exception()
            reason = f"the review server crashed: {error}" if error else "the review server exited unexpectedly"
        logger.error("review_server_crashed", port=self.port, reason=reason)
        self.gate.fail("REVIEW_CRASHED", reason)

    async def stop(self) -> None:
        """Shut down the server and release the socket; later calls do nothing."""
        if self._closed:
            return
        self._closed = True
        self.teardown_count += 1

        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await self._task
            except Exception as e:
                logger.warning("review_server_stop_error", error=str(e), error_type=type(e).__name__)
        if self._socket is not None:
            self._socket.close()
        logger.info("review_server_stopped", port=self.port)

    async def __aenter__(self) -> "CertificateReviewServer":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
