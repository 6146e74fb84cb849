"""Webhook trigger: a starlette app served by uvicorn on the trigger thread."""

from __future__ import annotations

import hashlib
import hmac
import json

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from taskrail._log import get_logger
from taskrail.pipeline.schema import WebhookTriggerConfig
from taskrail.triggers.base import EventCallback, TriggerBase

logger = get_logger("triggers.webhook")

MAX_BODY_BYTES = 1_048_576
SIGNATURE_HEADER = "x-hub-signature-256"

# Delivery headers copied into the event metadata when the sender provides them.
_METADATA_HEADERS = {
    "x-github-event": "event",
    "x-github-delivery": "delivery",
}


def sign_body(secret: str, body: bytes) -> str:
    """Return the ``X-Hub-Signature-256`` header value for *body*."""
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def body_variables(body: bytes) -> dict[str, str]:
    """Turn a JSON object body into run variables; anything else yields none.

    String values are passed through, other values are JSON-encoded and
    ``null`` values are dropped.
    """
    if not body.strip():
        return {}
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    if not isinstance(data, dict):
        return {}
    variables = {}
    for key, value in data.items():
        if value is None:
            continue
        variables[str(key)] = value if isinstance(value, str) else json.dumps(value)
    return variables


def _declared_length(request: Request) -> int | None:
    raw = request.headers.get("content-length")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


class WebhookTrigger(TriggerBase):
    """Starts a run for every accepted HTTP request on the configured route.

    With a ``secret`` configured, requests must carry a matching
    ``X-Hub-Signature-256`` header. Keys of a JSON object body override the
    trigger's configured variables.
    """

    trigger_type = "webhook"
    _config: WebhookTriggerConfig

    def __init__(
        self,
        config: WebhookTriggerConfig,
        namespace: str,
        pipeline_id: str,
        callback: EventCallback,
    ) -> None:
        super().__init__(config, namespace, pipeline_id, callback)
        self._server: uvicorn.Server | None = None

    def _signature_ok(self, request: Request, body: bytes) -> bool:
        if not self._config.secret:
            return True
        received = request.headers.get(SIGNATURE_HEADER, "")
        return hmac.compare_digest(received, sign_body(self._config.secret, body))

    async def _handle(self, request: Request) -> JSONResponse:
        declared = _declared_length(request)
        if declared is not None and declared > MAX_BODY_BYTES:
            return _error("payload too large", 413)
        body = await request.body()
        if len(body) > MAX_BODY_BYTES:
            return _error("payload too large", 413)

        if not self._signature_ok(request, body):
            logger.warning(
                "Rejected webhook for %s/%s: invalid signature",
                self._namespace,
                self._pipeline_id,
            )
            return _error("invalid signature", 403)

        metadata = {"path": self._config.path}
        for header, key in _METADATA_HEADERS.items():
            if header in request.headers:
                metadata[key] = request.headers[header]
        self._emit({**self._config.variables, **body_variables(body)}, metadata)
        return JSONResponse({"status": "ok"})

    def build_app(self) -> Starlette:
        route = Route(self._config.path, self._handle, methods=[self._config.method])
        return Starlette(routes=[route])

    def _run(self) -> None:
        server_config = uvicorn.Config(
            self.build_app(), host="127.0.0.1", port=self._config.port, log_level="warning"
        )
        self._server = uvicorn.Server(server_config)
        logger.debug(
            "Webhook for %s/%s listening on port %d%s",
            self._namespace,
            self._pipeline_id,
            self._config.port,
            self._config.path,
        )
        self._server.run()

    def stop(self) -> None:
        server = self._server
        if server is not None:
            server.should_exit = True
        super().stop()
        thread = self._thread
        if thread is None or not thread.is_alive():
            return
        if server is not None:
            server.force_exit = True
        thread.join(timeout=5)
        if thread.is_alive():
            logger.warning("Webhook server on port %d did not stop", self._config.port)
