"""Main tests for the pack middleware.

Some of these tests follow starlette.tests.middleware.test_gzip, adapted to
negotiate between brotli, gzip and deflate.
"""

import functools
import gzip
import io
import os
import tracemalloc
import zlib

import anyio
import brotli
import pytest

from starlette.applications import Starlette
from starlette.responses import (
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)
from starlette.routing import Route
from starlette.testclient import TestClient

from pack_asgi import (
    IDENTITY,
    BrotliCompressor,
    CompressedBodyStream,
    CompressionError,
    DeflateCompressor,
    EncodingToken,
    GzipCompressor,
    IdentityCompressor,
    PackMiddleware,
    PackResponder,
    ServerPriorityList,
    StreamCompressor,
    get_compressor,
    get_preferred_encoding,
    negotiate,
    parse_accept_encoding,
)
from pack_asgi.headers import parse_part


DECOMPRESSORS = {
    "gzip": lambda data: zlib.decompress(data, 16 + zlib.MAX_WBITS),
    "deflate": lambda data: zlib.decompress(data, -zlib.MAX_WBITS),
    "br": brotli.decompress,
}


@pytest.fixture
def test_client_factory(anyio_backend_name, anyio_backend_options):
    return functools.partial(
        TestClient,
        backend=anyio_backend_name,
        backend_options=anyio_backend_options,
    )


def plain_app(**middleware_options):
    def homepage(request):
        return PlainTextResponse("x" * 4000, status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(PackMiddleware, **middleware_options)
    return app


# --- Accept-Encoding parsing ---


def test_parse_part_defaults_weight_to_one():
    assert parse_part("gzip") == EncodingToken("gzip", 1.0)
    assert parse_part(" BR ; q=0.5 ") == EncodingToken("br", 0.5)
    assert parse_part("deflate;level=1;Q=0.3") == EncodingToken("deflate", 0.3)


@pytest.mark.parametrize(
    "part",
    ["", "   ", ";q=0.5", "gzip;q=foo", "gzip;q=1.5", "gzip;q=-0.1", "gzip;q=nan"],
)
def test_parse_part_drops_malformed(part):
    assert parse_part(part) is None


def test_parse_accept_encoding_keeps_last_duplicate():
    tokens = parse_accept_encoding("gzip;q=0.2, br, gzip;q=0.9, x-custom")
    assert {token.name: token.weight for token in tokens} == {
        "br": 1.0,
        "gzip": 0.9,
        "x-custom": 1.0,
    }


def test_parse_accept_encoding_survives_bad_tokens():
    tokens = parse_accept_encoding("gzip;q=bogus, ,br;q=2, deflate;q=0.4")
    assert tokens == (EncodingToken("deflate", 0.4),)


@pytest.mark.parametrize("header", [None, ""])
def test_parse_accept_encoding_empty(header):
    assert parse_accept_encoding(header) == ()


# --- Negotiation ---


@pytest.mark.parametrize(
    "accept_encoding, priorities, expected_encoding",
    [
        # 1. br and gzip tie, server order breaks the tie
        ("gzip;q=0.8, br;q=0.8", ("br", "gzip", "deflate"), "br"),
        # 2. Client declared order does not matter on ties
        ("deflate, gzip", ("br", "gzip", "deflate"), "gzip"),
        # 3. Higher client weight beats server priority
        ("br;q=0.5, deflate;q=1.0", ("br", "gzip", "deflate"), "deflate"),
        # 4. q=0 forbids an encoding
        ("br;q=0, gzip;q=0.1", ("br", "gzip", "deflate"), "gzip"),
        # 5. Wildcard picks up the server favourite
        ("*", ("br", "gzip", "deflate"), "br"),
        # 6. Wildcard only covers encodings not weighted explicitly
        ("br;q=0, *;q=0.5", ("br", "gzip", "deflate"), "gzip"),
        ("*;q=0.5, deflate;q=0.9", ("br", "gzip", "deflate"), "deflate"),
        # 7. Wildcard zero weight forbids everything unlisted
        ("identity;q=0, *;q=0", ("gzip",), "identity"),
        # 8. Unsupported encodings only
        ("zstd, compress", ("br", "gzip", "deflate"), "identity"),
        # 9. identity alone
        ("identity", ("br", "gzip", "deflate"), "identity"),
        # 10. Client forbids identity but nothing else is acceptable
        ("identity;q=0", ("br", "gzip", "deflate"), "identity"),
        # 11. Server list restricts the choice
        ("br, gzip;q=0.5", ("gzip", "deflate"), "gzip"),
        # 12. Empty header
        ("", ("br", "gzip", "deflate"), "identity"),
    ],
)
def test_negotiation(accept_encoding, priorities, expected_encoding):
    result = get_preferred_encoding(accept_encoding, ServerPriorityList(priorities))
    assert result.encoding == expected_encoding


@pytest.mark.parametrize(
    "accept_encoding",
    [
        "gzip, deflate, br",
        "br;q=0.1, gzip;q=0.0001",
        "*;q=0.3, identity",
        "gzip;q=0, deflate;q=0, br;q=0",
        "*;q=0",
        "x-gzip, gzip;q=bad, deflate;q=0.2",
    ],
)
def test_negotiation_result_invariants(accept_encoding):
    priorities = ServerPriorityList(("br", "gzip", "deflate"))
    accepted = parse_accept_encoding(accept_encoding)
    result = negotiate(accepted, priorities)

    assert result.encoding in set(priorities) | {"identity"}
    if not result.is_identity:
        assert result.chosen.weight > 0


def test_negotiation_identity_is_sentinel():
    result = negotiate((), ServerPriorityList())
    assert result.is_identity
    assert result.chosen is IDENTITY


@pytest.mark.parametrize(
    "priorities", [(), ("gzip", "gzip"), ("identity",), ("*",), ("zstd", "gzip")]
)
def test_server_priority_list_rejects_invalid(priorities):
    with pytest.raises(ValueError):
        ServerPriorityList(priorities)


def test_server_priority_list_normalizes_names():
    assert ServerPriorityList(("GZIP", " br ")).encodings == ("gzip", "br")


# --- Compressors ---


@pytest.mark.parametrize("encoding", ["gzip", "deflate", "br"])
@pytest.mark.parametrize(
    "chunks",
    [
        [b"", b"hello world " * 50, bytes(range(256)) * 40, b"!"],
        [b"\x00"],
        [os.urandom(16 * 1024) for _ in range(4)],
        [bytes([value]) for value in b"one byte at a time " * 20],
    ],
    ids=["mixed", "single-byte", "random-blocks", "byte-chunks"],
)
def test_compressor_round_trip(encoding, chunks):
    compressor = get_compressor(encoding)
    compressor.open()
    compressed = b"".join(compressor.compress(chunk) for chunk in chunks)
    compressed += compressor.close()

    assert compressor.closed
    assert DECOMPRESSORS[encoding](compressed) == b"".join(chunks)


def test_stream_compressor_is_abstract():
    with pytest.raises(TypeError):
        StreamCompressor()


def test_compressor_empty_input_is_valid_stream():
    compressor = GzipCompressor()
    compressor.open()
    assert gzip.decompress(compressor.close()) == b""


def test_identity_compressor_passes_through():
    compressor = IdentityCompressor()
    compressor.open()
    assert compressor.compress(b"abc") == b"abc"
    assert compressor.close() == b""


def test_get_compressor_selection():
    assert isinstance(get_compressor("br"), BrotliCompressor)
    assert isinstance(get_compressor("gzip"), GzipCompressor)
    assert isinstance(get_compressor("deflate"), DeflateCompressor)
    assert isinstance(get_compressor("identity"), IdentityCompressor)
    with pytest.raises(ValueError):
        get_compressor("zstd")


@pytest.mark.parametrize(
    "options",
    [{"gzip_level": 10}, {"deflate_level": -1}, {"brotli_quality": 12}, {"brotli_lgwin": 9}],
)
def test_invalid_levels_fail_at_construction(options):
    with pytest.raises(ValueError):
        PackMiddleware(plain_app(), **options)


def test_compressor_wraps_codec_failures():
    class BrokenGzip(GzipCompressor):
        def _process(self, data):
            raise zlib.error("boom")

    compressor = BrokenGzip()
    compressor.open()
    with pytest.raises(CompressionError) as excinfo:
        compressor.compress(b"data")
    assert isinstance(excinfo.value.__cause__, zlib.error)
    assert compressor.closed


def test_compressor_requires_open():
    compressor = DeflateCompressor()
    with pytest.raises(RuntimeError):
        compressor.compress(b"data")
    compressor.open()
    compressor.close()
    with pytest.raises(RuntimeError):
        compressor.compress(b"data")
    # release after close is harmless
    compressor.release()


# --- CompressedBodyStream ---


@pytest.mark.anyio
@pytest.mark.parametrize("encoding", ["gzip", "deflate", "br"])
async def test_compressed_body_stream_async_source(encoding):
    async def source():
        for index in range(10):
            yield f"chunk {index} ".encode() * 100

    stream = CompressedBodyStream(source(), get_compressor(encoding))
    compressed = b"".join([chunk async for chunk in stream])

    expected = b"".join(f"chunk {index} ".encode() * 100 for index in range(10))
    assert DECOMPRESSORS[encoding](compressed) == expected
    assert await stream.next_chunk() is None


@pytest.mark.anyio
async def test_compressed_body_stream_sync_source():
    stream = CompressedBodyStream([b"a" * 1000, b"b" * 1000], GzipCompressor())
    chunks = []
    while (chunk := await stream.next_chunk()) is not None:
        chunks.append(chunk)
    assert gzip.decompress(b"".join(chunks)) == b"a" * 1000 + b"b" * 1000


@pytest.mark.anyio
async def test_compressed_body_stream_is_lazy():
    pulled = []

    async def source():
        for index in range(100):
            pulled.append(index)
            yield bytes([index % 256]) * 4096

    # Identity emits every chunk as soon as it is pulled
    async with CompressedBodyStream(source(), IdentityCompressor()) as stream:
        first = await stream.next_chunk()
        assert first == b"\x00" * 4096
        assert pulled == [0]


@pytest.mark.anyio
async def test_compressed_body_stream_releases_on_early_close():
    async def source():
        for _ in range(64):
            yield os.urandom(64 * 1024)

    compressor = BrotliCompressor()
    async with CompressedBodyStream(source(), compressor) as stream:
        assert await stream.next_chunk()
    assert compressor.closed


@pytest.mark.anyio
async def test_compressed_body_stream_releases_on_source_error():
    async def source():
        yield b"x" * 100
        raise OSError("connection reset")

    compressor = GzipCompressor()
    stream = CompressedBodyStream(source(), compressor)
    with pytest.raises(OSError):
        async for _ in stream:
            pass
    assert compressor.closed


@pytest.mark.anyio
async def test_compressed_body_stream_bounded_memory():
    chunk_size = 64 * 1024
    chunk_count = 512  # 32 MiB in total

    async def source():
        for index in range(chunk_count):
            yield bytes([index % 256]) * chunk_size

    tracemalloc.start()
    try:
        total = 0
        async for chunk in CompressedBodyStream(source(), GzipCompressor()):
            total += len(chunk)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    assert total > 0
    assert peak < 4 * 1024 * 1024


# --- Middleware ---


@pytest.mark.parametrize(
    "accept_encoding, expected_encoding",
    [("br", "br"), ("gzip", "gzip"), ("deflate", "deflate")],
)
def test_compressed_responses(test_client_factory, accept_encoding, expected_encoding):
    client = test_client_factory(plain_app())
    response = client.get("/", headers={"accept-encoding": accept_encoding})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == expected_encoding
    assert response.headers["Vary"] == "Accept-Encoding"
    # TestClient (httpx) decodes the body transparently.
    assert response.text == "x" * 4000
    assert int(response.headers["Content-Length"]) < 4000


def test_priority_tie_break_over_http(test_client_factory):
    client = test_client_factory(plain_app())
    response = client.get("/", headers={"accept-encoding": "gzip;q=0.8, br;q=0.8"})
    assert response.headers["Content-Encoding"] == "br"


def test_not_in_accept_encoding(test_client_factory):
    client = test_client_factory(plain_app())
    response = client.get("/", headers={"accept-encoding": "identity"})
    assert response.status_code == 200
    assert response.text == "x" * 4000
    assert "Content-Encoding" not in response.headers
    assert response.headers["Vary"] == "Accept-Encoding"
    assert int(response.headers["Content-Length"]) == 4000


def test_absent_accept_encoding(test_client_factory):
    client = test_client_factory(plain_app())
    del client.headers["accept-encoding"]
    response = client.get("/")
    assert response.status_code == 200
    assert response.text == "x" * 4000
    assert "Content-Encoding" not in response.headers
    assert response.headers["Vary"] == "Accept-Encoding"


def test_absent_accept_encoding_with_compress_when_absent(test_client_factory):
    client = test_client_factory(plain_app(compress_when_absent=True))
    del client.headers["accept-encoding"]
    response = client.get("/")
    assert response.headers["Content-Encoding"] == "br"
    assert response.text == "x" * 4000


def test_wildcard_zero_serves_identity(test_client_factory):
    client = test_client_factory(plain_app(priorities=["gzip"]))
    response = client.get("/", headers={"accept-encoding": "identity;q=0, *;q=0"})
    assert response.status_code == 200
    assert "Content-Encoding" not in response.headers
    assert response.text == "x" * 4000


def test_ignored_for_small_responses(test_client_factory):
    def homepage(request):
        return PlainTextResponse("OK", status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(PackMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.text == "OK"
    assert "Content-Encoding" not in response.headers
    assert int(response.headers["Content-Length"]) == 2


def test_empty_body_never_compressed(test_client_factory):
    def homepage(request):
        return Response(b"", status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(PackMiddleware, minimum_size=0)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.content == b""
    assert "Content-Encoding" not in response.headers
    assert response.headers["Vary"] == "Accept-Encoding"


def test_empty_streaming_response_never_compressed(test_client_factory):
    def homepage(request):
        async def generator():
            yield b""
            yield b""

        return StreamingResponse(generator(), status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(PackMiddleware, minimum_size=0)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.content == b""
    assert "Content-Encoding" not in response.headers


@pytest.mark.parametrize("accept_encoding", ["br", "gzip", "deflate"])
def test_streaming_response(test_client_factory, accept_encoding):
    def homepage(request):
        async def generator(bytes, count):
            for index in range(count):
                yield bytes

        streaming = generator(bytes=b"x" * 400, count=10)
        return StreamingResponse(streaming, status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(PackMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": accept_encoding})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == accept_encoding
    assert response.content == b"x" * 4000
    assert "Content-Length" not in response.headers


def test_streaming_response_raw_bytes_are_brotli(test_client_factory):
    def homepage(request):
        async def generator():
            for index in range(5):
                yield f"line {index}\n".encode() * 200

        return StreamingResponse(generator(), status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(PackMiddleware)

    client = test_client_factory(app)
    with client.stream("GET", "/", headers={"accept-encoding": "br"}) as response:
        raw = b"".join(response.iter_raw())

    expected = b"".join(f"line {index}\n".encode() * 200 for index in range(5))
    assert brotli.decompress(raw) == expected


def test_api_options(test_client_factory):
    def homepage(request):
        return JSONResponse({"data": "a" * 4000}, status_code=200)

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(
        PackMiddleware,
        minimum_size=100,
        gzip_level=9,
        brotli_quality=11,
        brotli_lgwin=22,
    )

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.status_code == 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert response.json() == {"data": "a" * 4000}


def test_excluded_handlers(test_client_factory):
    def homepage(request):
        return PlainTextResponse("x" * 4000, status_code=200)

    app = Starlette(routes=[Route("/excluded", homepage)])
    app.add_middleware(
        PackMiddleware,
        excluded_handlers=["/excluded"],
    )

    client = test_client_factory(app)
    response = client.get("/excluded", headers={"accept-encoding": "br"})

    assert response.status_code == 200
    assert response.text == "x" * 4000
    assert "Content-Encoding" not in response.headers
    assert "Vary" not in response.headers
    assert int(response.headers["Content-Length"]) == 4000


def test_existing_vary_header_is_merged(test_client_factory):
    def homepage(request):
        return PlainTextResponse("x" * 4000, headers={"vary": "Origin"})

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(PackMiddleware)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "gzip"})
    assert response.headers["Vary"] == "Origin, Accept-Encoding"

    response = client.get("/", headers={"accept-encoding": "identity"})
    assert response.headers["Vary"] == "Origin, Accept-Encoding"


def test_avoids_double_encoding(test_client_factory):
    # See https://github.com/encode/starlette/pull/1901
    def homepage(request):
        gzip_buffer = io.BytesIO()
        gzip_file = gzip.GzipFile(mode="wb", fileobj=gzip_buffer)
        gzip_file.write(b"hello world" * 200)
        gzip_file.close()
        body = gzip_buffer.getvalue()
        return Response(
            body,
            headers={
                "content-encoding": "gzip",
                "x-gzipped-content-length": str(len(body)),
            },
        )

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(PackMiddleware, minimum_size=1)

    client = test_client_factory(app)
    response = client.get("/", headers={"accept-encoding": "br"})
    assert response.status_code == 200
    assert response.text == "hello world" * 200
    assert response.headers["Content-Encoding"] == "gzip"
    assert "Vary" not in response.headers
    assert (
        response.headers["Content-Length"]
        == response.headers["x-gzipped-content-length"]
    )


def test_non_http_scope_passes_through():
    seen = []

    async def app(scope, receive, send):
        seen.append(scope["type"])

    middleware = PackMiddleware(app)
    anyio.run(middleware, {"type": "lifespan"}, None, None)
    assert seen == ["lifespan"]


# --- Responder failure paths ---


def run_responder(app, compressor, encoding="gzip"):
    sent = []

    async def send(message):
        sent.append(message)

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    responder = PackResponder(
        app,
        get_preferred_encoding(encoding, ServerPriorityList()),
        compressor,
        minimum_size=0,
    )
    scope = {"type": "http", "method": "GET", "path": "/", "headers": []}
    anyio.run(responder, scope, receive, send)
    return sent


def test_responder_releases_compressor_on_abort():
    async def app(scope, receive, send):
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"x" * 1000, "more_body": True})
        raise OSError("client went away")

    compressor = GzipCompressor()
    with pytest.raises(OSError):
        run_responder(app, compressor)
    assert compressor.opened
    assert compressor.closed


def test_responder_surfaces_codec_failure():
    class BrokenGzip(GzipCompressor):
        def _process(self, data):
            raise zlib.error("stream error")

    async def app(scope, receive, send):
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"x" * 1000, "more_body": True})
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    with pytest.raises(CompressionError):
        run_responder(app, BrokenGzip())


def test_responder_preserves_chunk_order():
    parts = [f"part-{index:03d};".encode() * 20 for index in range(50)]

    async def app(scope, receive, send):
        await send({"type": "http.response.start", "status": 200, "headers": []})
        for part in parts:
            await send({"type": "http.response.body", "body": part, "more_body": True})
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    sent = run_responder(app, DeflateCompressor(), encoding="deflate")
    start, *bodies = sent
    headers = dict(start["headers"])
    assert headers[b"content-encoding"] == b"deflate"
    assert b"content-length" not in headers
    assert bodies[-1]["more_body"] is False

    compressed = b"".join(message["body"] for message in bodies)
    assert zlib.decompress(compressed, -zlib.MAX_WBITS) == b"".join(parts)


def test_responder_keeps_every_vary_header():
    async def app(scope, receive, send):
        await send(
            {
                "type": "http.response.start",
                "status": 200,
                "headers": [(b"vary", b"Origin"), (b"vary", b"Cookie")],
            }
        )
        await send({"type": "http.response.body", "body": b"x" * 2000})

    sent = run_responder(app, GzipCompressor())
    start = sent[0]
    vary = [value for key, value in start["headers"] if key == b"vary"]
    assert vary == [b"Origin, Cookie, Accept-Encoding"]


def test_responder_does_not_repeat_accept_encoding_in_vary():
    async def app(scope, receive, send):
        await send(
            {
                "type": "http.response.start",
                "status": 200,
                "headers": [(b"vary", b"Origin"), (b"vary", b"accept-encoding")],
            }
        )
        await send({"type": "http.response.body", "body": b"x" * 2000})

    sent = run_responder(app, GzipCompressor())
    vary = [value for key, value in sent[0]["headers"] if key == b"vary"]
    assert vary == [b"Origin", b"accept-encoding"]


def test_responder_accepts_start_without_headers():
    async def app(scope, receive, send):
        await send({"type": "http.response.start", "status": 200})
        await send({"type": "http.response.body", "body": b"x" * 2000})

    sent = run_responder(app, GzipCompressor())
    start, body = sent
    headers = dict(start["headers"])
    assert headers[b"content-encoding"] == b"gzip"
    assert headers[b"vary"] == b"Accept-Encoding"
    assert gzip.decompress(body["body"]) == b"x" * 2000
