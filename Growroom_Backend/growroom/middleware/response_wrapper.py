from __future__ import annotations

import json
from typing import Any


def _content_type(headers: list[tuple[bytes, bytes]]) -> str:
    for k, v in headers:
        if k.lower() == b"content-type":
            return v.decode("latin-1").lower()
    return ""


class ResponseWrapperMiddleware:
    """
    Puts successful JSON bodies into the `{"success": true, "data": ...}`
    envelope. Errors already carry `{"success": false, ...}` from the
    exception handlers and pass through untouched.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        start: dict[str, Any] = {}
        chunks: list[bytes] = []
        wrapping = False

        async def send_wrapper(message):
            nonlocal wrapping

            if message["type"] == "http.response.start":
                status = int(message.get("status") or 0)
                headers = list(message.get("headers") or [])
                wrapping = 200 <= status < 300 and status != 204 and "application/json" in _content_type(headers)
                if not wrapping:
                    await send(message)
                    return
                start.update(message)
                start["headers"] = headers
                return

            if message["type"] != "http.response.body" or not wrapping:
                await send(message)
                return

            chunks.append(message.get("body", b"") or b"")
            if message.get("more_body", False):
                return

            body = b"".join(chunks)
            try:
                decoded = json.loads(body.decode("utf-8")) if body else None
            except ValueError:
                decoded = None
            if decoded is not None and not (isinstance(decoded, dict) and "success" in decoded):
                body = json.dumps({"success": True, "data": decoded}, ensure_ascii=False).encode("utf-8")

            headers = [(k, v) for k, v in start["headers"] if k.lower() != b"content-length"]
            headers.append((b"content-length", str(len(body)).encode("ascii")))
            await send({"type": "http.response.start", "status": start["status"], "headers": headers})
            await send({"type": "http.response.body", "body": body, "more_body": False})

        await self.app(scope, receive, send_wrapper)
