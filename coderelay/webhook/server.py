"""HTTP receiver for push-mode updates plus a health endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from coderelay.update_loop import UpdateLoop

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhook"
DISPATCH_TIMEOUT_SECONDS = 120


def parse_webhook_body(body: str) -> list[dict[str, Any]]:
    """Return the updates carried by a callback body (one object or a list); [] if unusable."""
    if not body.strip():
        return []
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return []
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    return []


class WebhookServer:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        update_loop: UpdateLoop,
        event_loop: asyncio.AbstractEventLoop,
        profile_name: str,
    ) -> None:
        self._host = host
        self._port = port
        self._update_loop = update_loop
        self._event_loop = event_loop
        self._profile_name = profile_name
        self._started_at = time.time()
        self._thread: threading.Thread | None = None
        self._httpd: ThreadingHTTPServer | None = None

    @property
    def port(self) -> int:
        if self._httpd is not None:
            return int(self._httpd.server_address[1])
        return self._port

    def start(self) -> None:
        handler_cls = self._build_handler()
        self._httpd = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._thread.start()
        logger.info("webhook receiver listening on %s:%s", self._host, self.port)

    def stop(self) -> None:
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2)
        self._httpd = None
        self._thread = None

    def _build_handler(self) -> type[BaseHTTPRequestHandler]:
        update_loop = self._update_loop
        event_loop = self._event_loop
        profile_name = self._profile_name
        started_at = self._started_at

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                if self.path == "/health":
                    self._write_json(
                        200,
                        {
                            "status": "ok",
                            "profile": profile_name,
                            "mode": "push",
                            "uptime": int(time.time() - started_at),
                        },
                    )
                    return
                self._write_json(404, {"error": "Not found"})

            def do_POST(self) -> None:  # noqa: N802
                path = self.path.split("?")[0]
                if path != WEBHOOK_PATH:
                    self._write_json(404, {"error": "Not found"})
                    return
                try:
                    content_len = int(self.headers.get("Content-Length", 0))
                except ValueError:
                    content_len = 0
                # A negative length would make rfile.read() wait for the client to close.
                body = self.rfile.read(content_len).decode("utf-8", errors="replace") if content_len > 0 else ""
                updates = parse_webhook_body(body)
                if updates:
                    future = asyncio.run_coroutine_threadsafe(
                        update_loop.handle_batch(updates, advance_cursor=False),
                        event_loop,
                    )
                    try:
                        future.result(timeout=DISPATCH_TIMEOUT_SECONDS)
                    except FutureTimeoutError:
                        logger.error("webhook batch still running after %ss", DISPATCH_TIMEOUT_SECONDS)
                    except Exception:  # noqa: BLE001
                        logger.exception("webhook batch failed")
                # Acknowledged regardless of dispatch outcome.
                self._write_json(200, {"ok": True})

            def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
                logger.debug("webhook %s - " + format, self.address_string(), *args)

            def _write_json(self, status_code: int, payload: dict[str, Any]) -> None:
                encoded = json.dumps(payload, ensure_ascii=True).encode("utf-8")
                self.send_response(status_code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(encoded)))
                self.end_headers()
                self.wfile.write(encoded)

        return Handler
