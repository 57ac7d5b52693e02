"""
ASGI middleware that negotiates and applies brotli, gzip or deflate
compression to responses.
"""
import logging
import re
from collections.abc import Iterable

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .compressors import (
    BrotliCompressor,
    CompressedBodyStream,
    CompressionError,
    DeflateCompressor,
    GzipCompressor,
    IdentityCompressor,
    StreamCompressor,
    get_compressor,
)
from .headers import (
    DEFAULT_PRIORITIES,
    IDENTITY,
    EncodingToken,
    NegotiationResult,
    ServerPriorityList,
    get_preferred_encoding,
    negotiate,
    parse_accept_encoding,
)

__all__ = [
    "PackMiddleware",
    "PackResponder",
    "CompressionError",
    "CompressedBodyStream",
    "StreamCompressor",
    "IdentityCompressor",
    "DeflateCompressor",
    "GzipCompressor",
    "BrotliCompressor",
    "get_compressor",
    "EncodingToken",
    "NegotiationResult",
    "ServerPriorityList",
    "IDENTITY",
    "DEFAULT_PRIORITIES",
    "get_preferred_encoding",
    "negotiate",
    "parse_accept_encoding",
]

logger = logging.getLogger(__name__)

# Below this size the codec framing overhead outweighs the savings.
DEFAULT_MINIMUM_SIZE = 860


class PackMiddleware:
    def __init__(
        self,
        app: ASGIApp,
        minimum_size: int = DEFAULT_MINIMUM_SIZE,
        priorities: Iterable[str] = DEFAULT_PRIORITIES,
        gzip_level: int = 6,
        deflate_level: int = 6,
        brotli_quality: int = 8,
        brotli_lgwin: int = 20,
        compress_when_absent: bool = False,
        excluded_handlers: Iterable[str] | None = None,
    ) -> None:
        self.app = app
        self.minimum_size = minimum_size
        self.priorities = ServerPriorityList(tuple(priorities))
        self.compressor_options = {
            "gzip_level": gzip_level,
            "deflate_level": deflate_level,
            "brotli_quality": brotli_quality,
            "brotli_lgwin": brotli_lgwin,
        }
        # Fail on bad levels at startup rather than on the first request.
        for encoding in self.priorities:
            get_compressor(encoding, **self.compressor_options)
        self.compress_when_absent = compress_when_absent
        self.excluded_handlers = [re.compile(path) for path in excluded_handlers or []]

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self._is_excluded(scope):
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        accept_encoding = headers.get("Accept-Encoding")
        if accept_encoding is None and self.compress_when_absent:
            accept_encoding = "*"

        result = get_preferred_encoding(accept_encoding or "", self.priorities)
        responder = PackResponder(
            self.app,
            result,
            get_compressor(result.encoding, **self.compressor_options),
            minimum_size=self.minimum_size,
        )
        await responder(scope, receive, send)

    def _is_excluded(self, scope: Scope) -> bool:
        path = scope.get("path", "")
        return any(pattern.search(path) for pattern in self.excluded_handlers)


class PackResponder:
    def __init__(
        self,
        app: ASGIApp,
        result: NegotiationResult,
        compressor: StreamCompressor,
        minimum_size: int = DEFAULT_MINIMUM_SIZE,
    ) -> None:
        self.app = app
        self.result = result
        self.compressor = compressor
        self.minimum_size = minimum_size
        self.send: Send = unattached_send
        self.initial_message: Message = {}
        self.started = False
        self.content_encoding_set = False
        self.passthrough = False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self.send = send
        try:
            await self.app(scope, receive, self.send_with_compression)
        finally:
            # Covers aborted and failed responses; no-op after a clean close.
            self.compressor.release()

    async def send_with_compression(self, message: Message) -> None:
        message_type = message["type"]
        if message_type == "http.response.start":
            # Don't send the initial message until we've determined how to
            # modify the outgoing headers correctly.
            self.initial_message = message
            self.initial_message.setdefault("headers", [])
            headers = Headers(raw=self.initial_message["headers"])
            self.content_encoding_set = "content-encoding" in headers
        elif message_type != "http.response.body" or self.content_encoding_set:
            # Already encoded, or not a body message: forward untouched.
            await self.start()
            await self.send(message)
        elif not self.started:
            await self.send_first_body(message)
        elif self.passthrough:
            await self.send(message)
        else:
            # Remaining body in streaming response.
            more_body = message.get("more_body", False)
            body = self.compressor.compress(message.get("body", b""))
            if not more_body:
                body += self.compressor.close()
            message["body"] = body
            await self.send(message)

    async def send_first_body(self, message: Message) -> None:
        body = message.get("body", b"")
        more_body = message.get("more_body", False)

        if not body and more_body:
            # Nothing to decide on yet; wait for the first real bytes.
            return

        headers = MutableHeaders(raw=self.initial_message["headers"])
        add_vary_accept_encoding(headers)

        if self.result.is_identity or not more_body and (
            not body or len(body) < self.minimum_size
        ):
            self.passthrough = True
            await self.start()
            await self.send(message)
            return

        self.compressor.open()
        headers["Content-Encoding"] = self.result.encoding
        if more_body:
            # Initial body in streaming response.
            del headers["Content-Length"]
            message["body"] = self.compressor.compress(body)
        else:
            # Standard response.
            message["body"] = self.compressor.compress(body) + self.compressor.close()
            headers["Content-Length"] = str(len(message["body"]))
        logger.debug(
            "Compressing response with %s (q=%s)",
            self.result.encoding,
            self.result.chosen.weight,
        )
        await self.start()
        await self.send(message)

    async def start(self) -> None:
        if not self.started:
            self.started = True
            await self.send(self.initial_message)


def add_vary_accept_encoding(headers: MutableHeaders) -> None:
    values = [
        value.strip()
        for line in headers.getlist("Vary")
        for value in line.split(",")
        if value.strip()
    ]
    lowered = {value.lower() for value in values}
    if "accept-encoding" in lowered or "*" in lowered:
        return
    # Collapses repeated Vary lines into one, keeping every value.
    headers["Vary"] = ", ".join([*values, "Accept-Encoding"])


async def unattached_send(message: Message) -> None:
    raise RuntimeError("send awaitable not set")  # pragma: no cover
