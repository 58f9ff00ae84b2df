import asyncio
import json
import struct
from typing import Any, Dict, Optional

"""
framing.py — length-prefixed JSON frames for asyncio streams.

Protocol:
- Each frame = 4-byte little-endian unsigned length (N) + N bytes of UTF-8 JSON.
- Hard cap at 1 MiB; the biggest legitimate request is a 20k-character
  message plus its token, far below that.
- Requests look like {"method", "path", "body"}, responses like
  {"status", "body"}.
"""

MAX_FRAME_SIZE = 1024 * 1024  # 1 MiB hard limit
LENGTH_STRUCT = struct.Struct("<I")  # little-endian unsigned 32-bit length


class FrameError(ValueError):
    """Oversized or undecodable frame."""


async def read_frame(reader: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    """
    Read one framed JSON object.

    Returns None on a clean EOF between frames. Raises FrameError for an
    oversized frame or a payload that is not a JSON object, and
    asyncio.IncompleteReadError if the peer vanishes mid-frame.
    """
    try:
        len_bytes = await reader.readexactly(LENGTH_STRUCT.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise
    (length,) = LENGTH_STRUCT.unpack(len_bytes)

    # Check before allocating/reading the body.
    if length > MAX_FRAME_SIZE:
        raise FrameError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")

    payload = await reader.readexactly(length)
    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # No payload echo; it may be large or hostile.
        raise FrameError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(obj, dict):
        raise FrameError("Frame must hold a JSON object")
    return obj


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    """Serialize a dict to compact JSON and write it as one frame."""
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    if len(payload) > MAX_FRAME_SIZE:
        raise FrameError("Frame exceeds maximum size")

    writer.write(LENGTH_STRUCT.pack(len(payload)))
    writer.write(payload)
    await writer.drain()
