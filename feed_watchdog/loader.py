"""HTTP MJPEG loader.

Plays the part of the dashboard's image element: opens the stream URL,
pulls JPEG frames out of the multipart body and (optionally) decodes each
one with OpenCV so a corrupt frame counts as a failed load.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import cv2
import httpx
import numpy as np

from feed_watchdog.config import LOAD_TIMEOUT_S, MAX_FRAME_BUFFER

log = logging.getLogger(__name__)

SOI = b"\xff\xd8"
EOI = b"\xff\xd9"


class LoadError(RuntimeError):
    """The stream could not be loaded (network, HTTP status or empty body)."""


class FrameDecodeError(LoadError):
    """A frame arrived but is not a decodable image."""


def split_jpeg_frames(buffer: bytes) -> tuple[list[bytes], bytes]:
    """Extract complete JPEG images from *buffer*.

    Returns the frames found and the unconsumed tail, which starts at the
    next partial frame (or is a lone 0xFF that may open the next marker).
    Multipart boundaries and part headers between frames are discarded.
    """
    frames: list[bytes] = []
    pos = 0
    while True:
        start = buffer.find(SOI, pos)
        if start < 0:
            return frames, (b"\xff" if buffer.endswith(b"\xff") else b"")
        end = _frame_end(buffer, start)
        if end is None:
            return frames, buffer[start:]
        frames.append(buffer[start:end])
        pos = end


def _frame_end(buffer: bytes, start: int) -> int | None:
    """Index just past the EOI of the JPEG starting at *start*, or None if incomplete.

    Marker segments are skipped by their length field, so an EXIF thumbnail
    (a whole JPEG inside APP1) does not end the frame early.
    """
    n = len(buffer)
    i = start + len(SOI)
    while True:
        if i + 1 >= n:
            return None
        if buffer[i] != 0xFF:
            # Not a marker where one belongs; fall back to the first EOI
            end = buffer.find(EOI, i)
            return None if end < 0 else end + len(EOI)

        marker = buffer[i + 1]
        if marker == 0xFF:                      # fill byte
            i += 1
            continue
        if marker == 0xD9:
            return i + 2
        if marker == 0x01 or 0xD0 <= marker <= 0xD7:
            i += 2
            continue
        if i + 4 > n:
            return None
        i += 2 + int.from_bytes(buffer[i + 2:i + 4], "big")
        if marker != 0xDA:
            continue

        # Entropy-coded data after SOS: FF00, RSTn and fill bytes are not markers
        while True:
            k = buffer.find(b"\xff", i)
            if k < 0 or k + 1 >= n:
                return None
            nxt = buffer[k + 1]
            if nxt in (0x00, 0xFF) or 0xD0 <= nxt <= 0xD7:
                i = k + 1
                continue
            i = k
            break


def decode_frame(frame: bytes) -> np.ndarray:
    img = cv2.imdecode(np.frombuffer(frame, dtype=np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        raise FrameDecodeError(f"Undecodable frame ({len(frame)} bytes)")
    return img


class MjpegLoader:
    """Streams JPEG frames from an MJPEG endpoint with httpx."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = LOAD_TIMEOUT_S,
        decode: bool = True,
        max_buffer: int = MAX_FRAME_BUFFER,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self.decode = decode
        self.max_buffer = max_buffer

    async def frames(self, url: str) -> AsyncIterator[bytes]:
        """Yield each JPEG frame from *url*; raise `LoadError` on any failure."""
        delivered = 0
        loop = asyncio.get_running_loop()
        try:
            async with self._client.stream(
                "GET", url, headers={"Cache-Control": "no-cache"}
            ) as response:
                if response.status_code >= 400:
                    raise LoadError(f"HTTP {response.status_code} from {url}")

                buffer = b""
                async for chunk in response.aiter_bytes():
                    buffer += chunk
                    frames, buffer = split_jpeg_frames(buffer)
                    for frame in frames:
                        if self.decode:
                            # Decode off the event loop
                            await loop.run_in_executor(None, decode_frame, frame)
                        delivered += 1
                        yield frame
                    if len(buffer) > self.max_buffer:
                        raise LoadError(f"No complete frame within {self.max_buffer} bytes")
        except httpx.HTTPError as exc:
            raise LoadError(f"{type(exc).__name__}: {exc}") from exc

        if delivered == 0:
            raise LoadError(f"Stream ended before the first frame: {url}")
        log.debug("Stream %s closed after %d frames", url, delivered)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
