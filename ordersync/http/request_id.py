"""Request ID middleware.

Propagates an inbound X-Request-Id header or assigns a new one, and echoes
it on the response.
"""

from __future__ import annotations

import uuid


class RequestIdMiddleware:
    def __init__(self, app, header_name: str = "X-Request-Id") -> None:  # type: ignore[no-untyped-def]
        self.app = app
        self.header_name = header_name
        self._header_bytes = header_name.lower().encode("latin-1")

    async def __call__(self, scope, receive, send):  # type: ignore[no-untyped-def]
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        inbound = None
        for k, v in scope.get("headers") or []:
            if k.lower() == self._header_bytes:
                inbound = v
                break
        request_id = inbound or str(uuid.uuid4()).encode("latin-1")
        scope.setdefault("state", {})["request_id"] = request_id.decode("latin-1")

        async def send_wrapper(message):  # type: ignore[no-untyped-def]
            if message.get("type") == "http.response.start":
                headers = list(message.get("headers") or [])
                if not any(k.lower() == self._header_bytes for k, _ in headers):
                    headers.append((self.header_name.encode("latin-1"), request_id))
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_wrapper)


__all__ = ["RequestIdMiddleware"]
