# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Tests for unpacking batch and base asset bundles."""

from __future__ import annotations

import gzip
from unittest.mock import patch

import pytest
import zstandard as zstd

from .. import CorruptBundleError, client, read_asset_bundle, unpack_bundle
from .conftest import asset_bundle, bundle_metadata, make_bundle, make_zip


class TestUnpackBundle:
    def test_extracts_metadata_and_both_renditions(self):
        data = make_bundle(
            {"e1": ("full one", "delta one"), "e2": ("full two", None)},
            bundle_metadata(["e1", "e2"], ts="2024-03-01T10:00:00Z"),
        )

        bundle = unpack_bundle(data)

        assert bundle.metadata.latest_snip_update_ts == "2024-03-01T10:00:00Z"
        assert bundle.metadata.show_name("e1") == "The Show"
        assert bundle.episodes["e1"].full == "full one"
        assert bundle.episodes["e1"].append == "delta one"
        assert bundle.episodes["e2"].full == "full two"
        assert bundle.episodes["e2"].append is None

    def test_bundle_without_metadata(self):
        bundle = unpack_bundle(make_bundle({"e1": ("full", None)}))

        assert bundle.metadata is None
        assert list(bundle.episodes) == ["e1"]

    def test_unrecognized_entries_are_ignored(self):
        data = make_zip(
            {
                "episodes/": "",
                "episodes/e1_full_content.md": "full",
                "episodes/readme.md": "ignored",
                "episodes/e1_other.md": "ignored",
                "notes.txt": "ignored",
                "images/cover.png": b"\x89PNG\xff\xfe",
            }
        )

        bundle = unpack_bundle(data)

        assert list(bundle.episodes) == ["e1"]
        assert bundle.episodes["e1"].full == "full"

    def test_episode_ids_may_contain_underscores(self):
        bundle = unpack_bundle(make_bundle({"ep_1_a": ("full", "delta")}))

        assert bundle.episodes["ep_1_a"].append == "delta"

    def test_empty_append_rendition_is_kept(self):
        bundle = unpack_bundle(make_bundle({"e1": ("full", "")}))

        assert bundle.episodes["e1"].append == ""

    def test_not_an_archive(self):
        with pytest.raises(CorruptBundleError, match="Cannot open bundle"):
            unpack_bundle(b"definitely not a zip file")

    def test_non_utf8_episode_entry(self):
        data = make_zip({"episodes/e1_full_content.md": b"\xff\xfe broken"})

        with pytest.raises(CorruptBundleError, match="e1_full_content.md"):
            unpack_bundle(data)

    def test_invalid_metadata_json(self):
        data = make_zip({"metadata.json": "{not json"})

        with pytest.raises(CorruptBundleError, match="Invalid JSON"):
            unpack_bundle(data)

    def test_metadata_must_be_an_object(self):
        data = make_zip({"metadata.json": "[1, 2]"})

        with pytest.raises(CorruptBundleError, match="Expected an object"):
            unpack_bundle(data)

    def test_zstd_framed_bundle(self):
        inner = make_bundle({"e1": ("full", None)})
        framed = zstd.ZstdCompressor().compress(inner)

        assert unpack_bundle(framed).episodes["e1"].full == "full"

    def test_gzip_framed_bundle(self):
        inner = make_bundle({"e1": ("full", None)})

        assert unpack_bundle(gzip.compress(inner)).episodes["e1"].full == "full"

    def test_gzip_output_is_bounded(self):
        framed = gzip.compress(b"x" * 1000)

        with patch.object(client, "MAX_BUNDLE_BYTES", 100):
            with pytest.raises(CorruptBundleError, match="larger than 100 bytes"):
                unpack_bundle(framed)

    def test_truncated_gzip_stream(self):
        framed = gzip.compress(make_bundle({"e1": ("full", None)}))

        with pytest.raises(CorruptBundleError, match="gzip bundle"):
            unpack_bundle(framed[:-12])

    def test_truncated_zstd_frame(self):
        framed = zstd.ZstdCompressor().compress(make_bundle({"e1": ("full", None)}))

        with pytest.raises(CorruptBundleError):
            unpack_bundle(framed[:12])


class TestReadAssetBundle:
    def test_separates_manifest_from_assets(self):
        data = asset_bundle(
            {"Snipd.base": "view", "Shows/All.base": "shows"},
            manifest={"default_open": "Snipd.base"},
        )

        manifest, assets = read_asset_bundle(data)

        assert manifest == {"default_open": "Snipd.base"}
        assert assets == {"Snipd.base": "view", "Shows/All.base": "shows"}

    def test_without_manifest(self):
        manifest, assets = read_asset_bundle(asset_bundle({"Snipd.base": "view"}))

        assert manifest is None
        assert assets == {"Snipd.base": "view"}
