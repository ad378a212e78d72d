# casamatch/adapters/clients/images.py
from __future__ import annotations

from .http_resilience import resilient_request

MAX_IMAGE_BYTES = 15 * 1024 * 1024


async def fetch_image_bytes(url: str) -> bytes:
    resp = await resilient_request("GET", url, timeout_s=20.0, max_retries=1)
    ctype = resp.headers.get("content-type", "")
    if ctype and not ctype.startswith("image/"):
        raise ValueError(f"not an image: content-type={ctype!r}")
    data = resp.content
    if len(data) > MAX_IMAGE_BYTES:
        raise ValueError(f"image too large: {len(data)} bytes")
    return data
