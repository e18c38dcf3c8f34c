"""Tests for bibstash.root_index."""

import json

from bibstash.root_index import (
    ROOT_INDEX_VERSION,
    build_root_index,
    discover_collections,
    root_index_content,
)

API = "https://api.example.org"


def _make_collection(data_root, name):
    d = data_root / name
    d.mkdir()
    (d / "index.json").write_text("{}\n")
    return d


class TestDiscover:
    def test_only_dirs_with_index(self, data_root):
        _make_collection(data_root, "works")
        _make_collection(data_root, "authors")
        (data_root / "empty").mkdir()
        (data_root / "stray.json").write_text("{}")
        assert discover_collections(data_root) == ["authors", "works"]

    def test_missing_root(self, tmp_path):
        assert discover_collections(tmp_path / "nope") == []


class TestContent:
    def test_shape(self):
        doc = root_index_content(["authors", "works"], api_base=API)
        assert doc["$id"] == f"{API}/schema/index"
        assert doc["type"] == "object"
        assert doc["version"] == ROOT_INDEX_VERSION
        assert doc["allOf"] == [
            {"$ref": "./authors/index.json"},
            {"$ref": "./works/index.json"},
        ]
        assert "lastModified" not in doc


class TestBuild:
    def test_first_build_writes(self, data_root):
        _make_collection(data_root, "works")
        assert build_root_index(data_root, api_base=API)
        data = json.loads((data_root / "index.json").read_text())
        assert data["allOf"] == [{"$ref": "./works/index.json"}]
        assert data["lastModified"]

    def test_noop_rerun_leaves_file_alone(self, data_root):
        _make_collection(data_root, "works")
        build_root_index(data_root, api_base=API)
        before = (data_root / "index.json").read_bytes()

        assert not build_root_index(data_root, api_base=API)
        assert (data_root / "index.json").read_bytes() == before

    def test_new_collection_rewrites(self, data_root):
        _make_collection(data_root, "works")
        build_root_index(data_root, api_base=API)
        _make_collection(data_root, "topics")
        assert build_root_index(data_root, api_base=API)
        data = json.loads((data_root / "index.json").read_text())
        assert {"$ref": "./topics/index.json"} in data["allOf"]

    def test_corrupt_root_index_rebuilt(self, data_root):
        _make_collection(data_root, "works")
        (data_root / "index.json").write_text("{oops")
        assert build_root_index(data_root, api_base=API)
        assert json.loads((data_root / "index.json").read_text())["type"] == "object"

    def test_trailing_newline(self, data_root):
        build_root_index(data_root, api_base=API)
        assert (data_root / "index.json").read_text().endswith("\n")
