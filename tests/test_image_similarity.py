import io

import httpx
import pytest
from PIL import Image

from casamatch.domain.disjoint_set import DisjointSet
from casamatch.service_layer.images import (
    ImageHashRecord,
    ImageHasher,
    cluster_similar,
    hamming_distance,
    similar,
)


def _png(size: int = 64, invert: bool = False) -> bytes:
    img = Image.new("L", (size, size))
    for x in range(size):
        for y in range(size):
            v = (x * 4) % 256
            img.putpixel((x, y), 255 - v if invert else v)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def test_hamming_distance_counts_differing_bits():
    assert hamming_distance("0000000000000000", "0000000000000000") == 0
    assert hamming_distance("0000000000000000", "0000000000000007") == 3
    assert hamming_distance("ffffffffffffffff", "0000000000000000") == 64
    assert similar("0000000000000000", "000000000000001f", threshold=5)
    assert not similar("0000000000000000", "000000000000003f", threshold=5)


def test_hamming_distance_rejects_mismatched_lengths():
    with pytest.raises(ValueError):
        hamming_distance("00ff", "000000ff")


def test_clusters_are_transitive_through_chains():
    # A~B (3), B~C (4), A!~C (9): one cluster anyway
    table = {
        frozenset({"a", "b"}): 3,
        frozenset({"b", "c"}): 4,
        frozenset({"a", "c"}): 9,
    }
    records = [
        ImageHashRecord(url="https://img/a.jpg", hash="a"),
        ImageHashRecord(url="https://img/b.jpg", hash="b"),
        ImageHashRecord(url="https://img/c.jpg", hash="c"),
    ]
    clusters = cluster_similar(records, threshold=5, distance=lambda x, y: table[frozenset({x, y})])

    assert len(clusters) == 1
    assert set(clusters[0].urls) == {"https://img/a.jpg", "https://img/b.jpg", "https://img/c.jpg"}


def test_clusters_with_real_hashes_and_singletons_dropped():
    records = [
        ImageHashRecord(url="a", hash="0000000000000000"),
        ImageHashRecord(url="b", hash="0000000000000007"),  # 3 from a
        ImageHashRecord(url="c", hash="000000000000007f"),  # 4 from b, 7 from a
        ImageHashRecord(url="lonely", hash="ffffffffffffffff"),
        ImageHashRecord(url="x", hash="ff00ff00ff00ff00"),
        ImageHashRecord(url="y", hash="ff00ff00ff00ff01"),
    ]
    clusters = sorted(cluster_similar(records, threshold=5), key=lambda c: len(c.urls), reverse=True)

    assert [set(c.urls) for c in clusters] == [{"a", "b", "c"}, {"x", "y"}]


def test_disjoint_set_union_and_groups():
    ds: DisjointSet[int] = DisjointSet([1, 2, 3, 4, 5])
    assert ds.union(1, 2) is True
    assert ds.union(2, 3) is True
    assert ds.union(1, 3) is False
    assert ds.connected(1, 3)
    assert not ds.connected(1, 4)
    assert sorted(sorted(g) for g in ds.groups()) == [[1, 2, 3], [4], [5]]
    assert len(ds) == 5
    assert 6 not in ds


@pytest.mark.asyncio
async def test_hasher_produces_stable_64_bit_hex():
    data = _png()

    async def fetch(url: str) -> bytes:
        return data

    hasher = ImageHasher(fetch=fetch)
    h1 = await hasher.hash("https://img.example.com/1.jpg")
    h2 = await hasher.hash("https://img.example.com/1-copy.jpg")

    assert len(h1) == 16
    int(h1, 16)  # valid hex
    assert hamming_distance(h1, h2) == 0


@pytest.mark.asyncio
async def test_hash_many_records_failures_per_url():
    good = _png()

    async def fetch(url: str) -> bytes:
        if "down" in url:
            raise httpx.ConnectError("unreachable")
        if "broken" in url:
            return b"definitely not an image"
        return good

    hasher = ImageHasher(fetch=fetch)
    batch = await hasher.hash_many(
        [
            "https://img/ok.jpg",
            "https://img/down.jpg",
            "https://img/broken.jpg",
            "https://img/ok.jpg",
        ]
    )

    assert [r.url for r in batch.records] == ["https://img/ok.jpg"]
    assert set(batch.failures) == {"https://img/down.jpg", "https://img/broken.jpg"}
    assert batch.failures["https://img/broken.jpg"].startswith("unsupported format")
    assert "ConnectError" in batch.failures["https://img/down.jpg"]
