"""Tests for the root mod cache."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from nimble.exceptions import FormatError
from nimble.filesystem.mod_cache import ModCache, load_mod_cache, save_mod_cache

if TYPE_CHECKING:
    from pathlib import Path

A = "A" * 32
B = "B" * 32


class TestModCache:
    def test_with_mod_replaces_previous_checksum(self) -> None:
        cache = ModCache().with_mod(A, "@ace").with_mod(B, "@ace")
        assert cache.mods == {B: "@ace"}
        assert cache.contains(B, "@ACE")
        assert not cache.contains(A, "@ace")

    def test_values_are_not_mutated(self) -> None:
        empty = ModCache()
        empty.with_mod(A, "@ace")
        assert empty.mods == {}

    def test_without_drops_mod(self) -> None:
        cache = ModCache().with_mod(A, "@ace").with_mod(B, "@cba")
        assert cache.without("@ace").names() == ["@cba"]
        assert cache.without("@ACE").names() == ["@cba"]

    def test_json_shape(self) -> None:
        document = json.loads(ModCache().with_mod(A, "@ace").to_json())
        assert document == {"version": 1, "mods": {A: {"name": "@ace"}}}

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "[]",
            '{"version": 1}',
            '{"version": 2, "mods": {}}',
            '{"version": 1, "mods": {"X": {}}}',
        ],
    )
    def test_malformed_cache_is_format_error(self, text: str) -> None:
        with pytest.raises(FormatError):
            ModCache.from_json(text)


class TestModCacheFile:
    def test_missing_file_is_empty_cache(self, tmp_path: Path) -> None:
        assert load_mod_cache(tmp_path) == ModCache()

    def test_save_and_load(self, tmp_path: Path) -> None:
        cache = ModCache().with_mod(A, "@ace")
        save_mod_cache(tmp_path, cache)
        assert load_mod_cache(tmp_path) == cache
        assert [p.name for p in tmp_path.iterdir()] == ["nimble-cache.json"]
