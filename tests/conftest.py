"""Shared test fixtures for Bibstash."""

import copy
import json
from pathlib import Path

import pytest

from bibstash.cancellation import clear_token
from bibstash.errors import TransientFetchFailure
from bibstash.filename_codec import canonical_url_to_filename
from bibstash.http import FetchResponse

API = "https://api.example.org"


class FakeFetcher:
    """In-memory Fetcher: canned responses per URL, every call recorded."""

    def __init__(self):
        self.raw: dict[str, FetchResponse] = {}
        self.json: dict[str, object] = {}
        self.calls: list[str] = []

    def add(self, url, status=200, payload=None, location=None):
        headers = {"location": location} if location else {}
        body = json.dumps(payload) if payload is not None else ""
        self.raw[url] = FetchResponse(status, headers, body)

    def redirect(self, url, location, status=301):
        self.add(url, status=status, location=location)

    def add_query(self, url, payload):
        self.json[url] = payload

    def fetch_raw(self, url):
        self.calls.append(url)
        if url not in self.raw:
            raise TransientFetchFailure(url, 0, "no canned response")
        return self.raw[url]

    def fetch_json(self, url):
        self.calls.append(url)
        return self.json.get(url)


@pytest.fixture
def api() -> str:
    return API


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def data_root(tmp_path: Path) -> Path:
    """An empty static cache root."""
    root = tmp_path / "openalex"
    root.mkdir()
    return root


@pytest.fixture
def works_dir(data_root: Path) -> Path:
    d = data_root / "works"
    d.mkdir()
    return d


@pytest.fixture
def authors_dir(data_root: Path) -> Path:
    d = data_root / "authors"
    d.mkdir()
    return d


@pytest.fixture(autouse=True)
def _no_cancel_token():
    """Never leak a cancellation token between tests."""
    clear_token()
    yield
    clear_token()


def _write_resource(collection_dir: Path, url: str, data) -> Path:
    path = collection_dir / canonical_url_to_filename(url)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


def _write_index(collection_dir: Path, data) -> Path:
    path = collection_dir / "index.json"
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


@pytest.fixture
def write_resource():
    """Write data under the canonical filename for a URL: write_resource(dir, url, data)."""
    return _write_resource


@pytest.fixture
def write_index():
    """Write a raw index.json: write_index(dir, data)."""
    return _write_index


SAMPLE_WORK = {
    "id": "https://openalex.org/W2741809807",
    "doi": "https://doi.org/10.7717/peerj.4375",
    "title": "The state of OA: a large-scale analysis of the prevalence and impact of Open Access articles",
    "publication_year": 2018,
    "type": "article",
}

SAMPLE_AUTHOR = {
    "id": "https://openalex.org/A5025875274",
    "display_name": "Heather Piwowar",
    "works_count": 52,
}

SAMPLE_QUERY_RESULT = {
    "meta": {"count": 2, "db_response_time_ms": 31, "page": 1, "per_page": 25},
    "results": [
        {"id": "https://openalex.org/W1", "title": "First"},
        {"id": "https://openalex.org/W2", "title": "Second"},
    ],
    "group_by": [],
}


@pytest.fixture
def sample_work() -> dict:
    return copy.deepcopy(SAMPLE_WORK)


@pytest.fixture
def sample_author() -> dict:
    return copy.deepcopy(SAMPLE_AUTHOR)


@pytest.fixture
def sample_query_result() -> dict:
    return copy.deepcopy(SAMPLE_QUERY_RESULT)
