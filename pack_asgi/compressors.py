"""
Streaming compressors for the supported content-codings.

Every variant shares the same push interface (open / compress / close) so the
responder never needs to know which codec it is driving.
"""
import logging
import zlib
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import Any

import brotli
from starlette.concurrency import iterate_in_threadpool

logger = logging.getLogger(__name__)


class CompressionError(Exception):
    """Raised when the underlying codec fails while compressing a body."""


class StreamCompressor(ABC):
    encoding: str = ""

    def __init__(self) -> None:
        self._codec: Any = None
        self.opened = False
        self.closed = False

    @abstractmethod
    def _create_codec(self) -> Any:
        raise NotImplementedError

    @abstractmethod
    def _process(self, data: bytes) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def _finish(self) -> bytes:
        raise NotImplementedError

    def open(self) -> None:
        """
        Allocates codec state. Only fails on resource exhaustion.
        """
        if self.opened:
            raise RuntimeError(f"{self.encoding} compressor is already open")
        self._codec = self._create_codec()
        self.opened = True

    def compress(self, data: bytes) -> bytes:
        """
        Feeds one chunk to the codec and returns the compressed bytes it has
        ready so far, which may be empty.
        """
        if not self.opened or self.closed:
            raise RuntimeError(f"{self.encoding} compressor is not open")
        if not data:
            return b""
        try:
            return self._process(data)
        except (zlib.error, brotli.error) as exc:
            self.release()
            logger.warning("%s compression failed: %s", self.encoding, exc)
            raise CompressionError(f"{self.encoding} compression failed") from exc

    def close(self) -> bytes:
        """
        Flushes trailing codec state and releases the codec.
        """
        if not self.opened or self.closed:
            raise RuntimeError(f"{self.encoding} compressor is not open")
        try:
            return self._finish()
        except (zlib.error, brotli.error) as exc:
            logger.warning("%s compression failed: %s", self.encoding, exc)
            raise CompressionError(f"{self.encoding} compression failed") from exc
        finally:
            self.release()

    def release(self) -> None:
        """
        Drops the codec without flushing. Safe to call more than once.
        """
        self._codec = None
        if self.opened:
            self.closed = True


class IdentityCompressor(StreamCompressor):
    encoding = "identity"

    def _create_codec(self) -> None:
        return None

    def _process(self, data: bytes) -> bytes:
        return data

    def _finish(self) -> bytes:
        return b""


class ZlibCompressor(StreamCompressor):
    wbits: int = zlib.MAX_WBITS

    def __init__(self, level: int = 6) -> None:
        super().__init__()
        if not 0 <= level <= 9:
            raise ValueError(f"{self.encoding} level must be between 0 and 9, got {level}")
        self.level = level

    def _create_codec(self) -> Any:
        return zlib.compressobj(self.level, zlib.DEFLATED, self.wbits)

    def _process(self, data: bytes) -> bytes:
        return self._codec.compress(data)

    def _finish(self) -> bytes:
        return self._codec.flush(zlib.Z_FINISH)


class DeflateCompressor(ZlibCompressor):
    encoding = "deflate"
    # raw deflate (no zlib header or checksum)
    wbits = -zlib.MAX_WBITS


class GzipCompressor(ZlibCompressor):
    encoding = "gzip"
    # 16 + 15: zlib writes the gzip header and trailer
    wbits = 16 + zlib.MAX_WBITS


class BrotliCompressor(StreamCompressor):
    encoding = "br"

    def __init__(self, quality: int = 8, lgwin: int = 20) -> None:
        super().__init__()
        if not 0 <= quality <= 11:
            raise ValueError(f"brotli quality must be between 0 and 11, got {quality}")
        if not 10 <= lgwin <= 24:
            raise ValueError(f"brotli lgwin must be between 10 and 24, got {lgwin}")
        self.quality = quality
        self.lgwin = lgwin

    def _create_codec(self) -> Any:
        return brotli.Compressor(quality=self.quality, lgwin=self.lgwin)

    def _process(self, data: bytes) -> bytes:
        return self._codec.process(data)

    def _finish(self) -> bytes:
        return self._codec.finish()


def get_compressor(
    encoding: str,
    gzip_level: int = 6,
    deflate_level: int = 6,
    brotli_quality: int = 8,
    brotli_lgwin: int = 20,
) -> StreamCompressor:
    """
    Returns a fresh, unopened compressor for a negotiated encoding.
    """
    if encoding == "br":
        return BrotliCompressor(quality=brotli_quality, lgwin=brotli_lgwin)
    if encoding == "gzip":
        return GzipCompressor(level=gzip_level)
    if encoding == "deflate":
        return DeflateCompressor(level=deflate_level)
    if encoding == "identity":
        return IdentityCompressor()
    raise ValueError(f"No compressor for encoding {encoding!r}")


class CompressedBodyStream:
    """
    Lazily compresses a byte source, one chunk at a time.

    The source may be an async iterable or a plain iterable (iterated in a
    worker thread so blocking producers don't stall the event loop). The
    stream cannot be restarted. Whatever way iteration ends, the compressor
    is released; use ``async with`` or call ``aclose()`` when abandoning the
    stream early.
    """

    def __init__(
        self,
        source: AsyncIterable[bytes] | Iterable[bytes],
        compressor: StreamCompressor,
    ) -> None:
        if isinstance(source, AsyncIterable):
            self._source: AsyncIterator[bytes] = source.__aiter__()
        else:
            self._source = iterate_in_threadpool(iter(source))
        self.compressor = compressor
        self._done = False

    @property
    def encoding(self) -> str:
        return self.compressor.encoding

    async def next_chunk(self) -> bytes | None:
        """
        Returns the next non-empty compressed chunk, or None at end of stream.
        """
        if self._done:
            return None
        if not self.compressor.opened:
            self.compressor.open()

        try:
            while True:
                try:
                    data = await self._source.__anext__()
                except StopAsyncIteration:
                    self._done = True
                    return self.compressor.close() or None
                chunk = self.compressor.compress(data)
                if chunk:
                    return chunk
        except BaseException:
            self._done = True
            self.compressor.release()
            raise

    def __aiter__(self) -> "CompressedBodyStream":
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.next_chunk()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def aclose(self) -> None:
        self._done = True
        self.compressor.release()
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "CompressedBodyStream":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
