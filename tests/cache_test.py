"""Tests for the shared caches."""

from __future__ import annotations

import asyncio

import pytest

from ldaplookup.cache import DisplayNameCache


@pytest.mark.asyncio
async def test_display_name_cache() -> None:
    cache = DisplayNameCache()
    assert cache.raw is None

    mapping = await cache.get("cn:Common Name")
    assert dict(mapping) == {"cn": "Common Name"}
    assert cache.raw == "cn:Common Name"
    assert await cache.get("cn:Common Name") is mapping

    # The table is read-only.
    with pytest.raises(TypeError):
        mapping["sn"] = "Surname"  # type: ignore[index]

    other = await cache.get("sn:Surname")
    assert dict(other) == {"sn": "Surname"}
    assert dict(mapping) == {"cn": "Common Name"}

    await cache.clear()
    assert cache.raw is None
    assert dict(await cache.get("")) == {}


@pytest.mark.asyncio
async def test_concurrent_rebuild() -> None:
    cache = DisplayNameCache()
    raws = ["a:A", "b:B", "a:A", "c:C"] * 5
    results = await asyncio.gather(*(cache.get(r) for r in raws))
    for raw, result in zip(raws, results, strict=True):
        name, display = raw.split(":")
        assert dict(result) == {name: display}
