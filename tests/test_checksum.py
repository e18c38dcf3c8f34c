"""Tests for bibstash.checksum."""

from bibstash.checksum import HASH_LENGTH, content_hash, sha256_bytes


def test_sha256_bytes_empty():
    assert sha256_bytes(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_content_hash_length():
    h = content_hash({"id": "W1"})
    assert len(h) == HASH_LENGTH
    assert all(c in "0123456789abcdef" for c in h)


def test_content_hash_ignores_key_order():
    assert content_hash({"a": 1, "b": {"x": 1, "y": 2}}) == content_hash({"b": {"y": 2, "x": 1}, "a": 1})


def test_content_hash_ignores_meta():
    a = {"meta": {"count": 2, "db_response_time_ms": 31}, "results": [1, 2]}
    b = {"meta": {"count": 2, "db_response_time_ms": 99}, "results": [1, 2]}
    assert content_hash(a) == content_hash(b)


def test_content_hash_detects_real_changes():
    assert content_hash({"results": [1, 2]}) != content_hash({"results": [2, 1]})
    assert content_hash({"title": "A"}) != content_hash({"title": "B"})


def test_content_hash_nested_meta_kept():
    assert content_hash({"x": {"meta": 1}}) != content_hash({"x": {"meta": 2}})


def test_content_hash_list_payload():
    assert content_hash([{"id": "W1"}]) == content_hash([{"id": "W1"}])
