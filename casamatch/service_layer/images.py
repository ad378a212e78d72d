# casamatch/service_layer/images.py
from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

import imagehash
from PIL import Image, UnidentifiedImageError

from ..adapters.clients.images import fetch_image_bytes
from ..config import settings
from ..domain.disjoint_set import DisjointSet

log = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[bytes]]
Distance = Callable[[str, str], int]


@dataclass(frozen=True)
class ImageHashRecord:
    url: str
    hash: str  # hex pHash


@dataclass(frozen=True)
class ImageCluster:
    urls: tuple[str, ...]


@dataclass
class HashBatch:
    records: list[ImageHashRecord] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)  # url -> error


def hamming_distance(a: str, b: str) -> int:
    """Number of differing bits between two equal-length hex hashes."""
    if len(a) != len(b):
        raise ValueError(f"hash length mismatch: {len(a)} vs {len(b)}")
    return bin(int(a, 16) ^ int(b, 16)).count("1")


def similar(a: str, b: str, threshold: int) -> bool:
    return hamming_distance(a, b) <= threshold


def cluster_similar(
    records: Sequence[ImageHashRecord],
    threshold: int,
    distance: Distance = hamming_distance,
) -> list[ImageCluster]:
    """
    Union every pair within threshold; similarity is transitive through the chain,
    so A~B and B~C cluster A, B and C even if A and C are far apart.
    Only clusters with more than one url are returned.
    """
    ds: DisjointSet[str] = DisjointSet(r.url for r in records)
    for i in range(len(records)):
        for j in range(i + 1, len(records)):
            a, b = records[i], records[j]
            if a.url == b.url:
                continue
            if distance(a.hash, b.hash) <= threshold:
                ds.union(a.url, b.url)
    return [ImageCluster(urls=tuple(g)) for g in ds.groups() if len(g) > 1]


def phash_bytes(data: bytes, hash_size: int = 8) -> str:
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        return str(imagehash.phash(img.convert("RGB"), hash_size=hash_size))


class ImageHasher:
    def __init__(
        self,
        *,
        fetch: Fetcher = fetch_image_bytes,
        hash_size: int | None = None,
    ) -> None:
        self._fetch = fetch
        self.hash_size = int(settings.IMAGE_HASH_SIZE if hash_size is None else hash_size)

    async def hash(self, url: str) -> str:
        data = await self._fetch(url)
        # decoding + DCT is CPU work; keep it off the loop
        return await asyncio.to_thread(phash_bytes, data, self.hash_size)

    async def hash_many(self, urls: Sequence[str]) -> HashBatch:
        """Hash each url; a failing url is recorded and skipped, never fatal."""
        batch = HashBatch()
        seen: set[str] = set()
        for url in urls:
            if url in seen:
                continue
            seen.add(url)
            try:
                batch.records.append(ImageHashRecord(url=url, hash=await self.hash(url)))
            except UnidentifiedImageError as e:
                batch.failures[url] = f"unsupported format: {e}"
            except Exception as e:
                # fetch errors (httpx, circuit open, ...) are per-url too
                batch.failures[url] = f"{type(e).__name__}: {e}"
        if batch.failures:
            log.info("image hashing: %d ok, %d failed", len(batch.records), len(batch.failures))
        return batch
