"""Tests for bibstash.http retry logic and the httpx-backed fetcher.

httpx is always mocked; all but the cross-thread throttle test also mock time.sleep.
"""

import json
import threading
import time
from unittest.mock import MagicMock, patch

import httpx as httpx_mod
import pytest

from bibstash.errors import TransientFetchFailure
from bibstash.http import FetchResponse, HttpFetcher, get_with_retry, strip_polite_params


def _resp(status=200, headers=None, text="", json_data=None):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.text = text
    resp.json.return_value = json_data
    return resp


class TestGetWithRetry:
    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_success_no_retry(self, mock_get, mock_sleep):
        mock_get.return_value = _resp(200)

        result = get_with_retry("https://example.com")
        assert result.status_code == 200
        assert mock_get.call_count == 1
        mock_sleep.assert_not_called()

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_redirects_not_followed_by_default(self, mock_get, mock_sleep):
        mock_get.return_value = _resp(301, {"location": "https://example.com/b"})

        result = get_with_retry("https://example.com/a")
        assert result.status_code == 301
        assert mock_get.call_args.kwargs["follow_redirects"] is False

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_429_retries_then_succeeds(self, mock_get, mock_sleep):
        mock_get.side_effect = [_resp(429), _resp(429), _resp(200)]

        result = get_with_retry("https://example.com")
        assert result.status_code == 200
        assert mock_get.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_500_retries_then_succeeds(self, mock_get, mock_sleep):
        mock_get.side_effect = [_resp(500), _resp(200)]

        result = get_with_retry("https://example.com")
        assert result.status_code == 200
        assert mock_get.call_count == 2

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_404_not_retried(self, mock_get, mock_sleep):
        mock_get.return_value = _resp(404)

        result = get_with_retry("https://example.com")
        assert result.status_code == 404
        assert mock_get.call_count == 1

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_exhausted_retries_returns_last(self, mock_get, mock_sleep):
        mock_get.return_value = _resp(429)

        result = get_with_retry("https://example.com", max_retries=2)
        assert result.status_code == 429
        assert mock_get.call_count == 3  # 1 initial + 2 retries

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_retry_after_respected(self, mock_get, mock_sleep):
        mock_get.side_effect = [_resp(429, {"retry-after": "5"}), _resp(200)]

        get_with_retry("https://example.com", backoff_base=1.0)
        mock_sleep.assert_called_once_with(5.0)

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_exponential_backoff(self, mock_get, mock_sleep):
        mock_get.side_effect = [_resp(503), _resp(503), _resp(503), _resp(200)]

        get_with_retry("https://example.com", backoff_base=0.5)
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0, 2.0]

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_connect_error_retries_then_raises(self, mock_get, mock_sleep):
        mock_get.side_effect = httpx_mod.ConnectError("refused")

        with pytest.raises(httpx_mod.ConnectError):
            get_with_retry("https://example.com", max_retries=2)
        assert mock_get.call_count == 3


class TestStripPoliteParams:
    def test_removes_mailto_and_key(self):
        url = "https://api.example.org/works?filter=x&mailto=me@example.org&api_key=k"
        assert strip_polite_params(url) == "https://api.example.org/works?filter=x"

    def test_untouched_without_polite_params(self):
        url = "https://api.example.org/works?filter=is_oa:true"
        assert strip_polite_params(url) == url

    def test_no_query(self):
        assert strip_polite_params("https://api.example.org/works/W1") == "https://api.example.org/works/W1"


class TestFetchResponse:
    def test_flags(self):
        assert FetchResponse(301, {"location": "/x"}).is_redirect
        assert FetchResponse(301, {"location": "/x"}).location == "/x"
        assert FetchResponse(204).ok
        assert not FetchResponse(404).ok
        assert FetchResponse(200).location is None


class TestHttpFetcher:
    def _fetcher(self, **kwargs):
        kwargs.setdefault("min_interval", 0)
        kwargs.setdefault("max_retries", 0)
        return HttpFetcher(**kwargs)

    @patch("bibstash.http.httpx.get")
    def test_fetch_raw_lowercases_headers(self, mock_get):
        mock_get.return_value = _resp(302, {"Location": "https://api.example.org/works/W2"})

        resp = self._fetcher().fetch_raw("https://api.example.org/works/W1")
        assert resp.status == 302
        assert resp.location == "https://api.example.org/works/W2"

    @patch("bibstash.http.httpx.get")
    def test_polite_params_sent(self, mock_get):
        mock_get.return_value = _resp(200, text="{}")

        self._fetcher(mailto="me@example.org", api_key="k").fetch_raw("https://api.example.org/works/W1")
        assert mock_get.call_args.kwargs["params"] == {"mailto": "me@example.org", "api_key": "k"}

    @patch("bibstash.http.httpx.get")
    def test_no_params_when_anonymous(self, mock_get):
        mock_get.return_value = _resp(200, text="{}")

        self._fetcher().fetch_raw("https://api.example.org/works/W1")
        assert mock_get.call_args.kwargs["params"] is None

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_fetch_raw_network_error(self, mock_get, mock_sleep):
        mock_get.side_effect = httpx_mod.ConnectTimeout("slow")

        with pytest.raises(TransientFetchFailure, match="Could not reach"):
            self._fetcher().fetch_raw("https://api.example.org/works/W1")

    @patch("bibstash.http.httpx.get")
    def test_fetch_json_success(self, mock_get):
        mock_get.return_value = _resp(200, json_data={"results": []})

        assert self._fetcher().fetch_json("https://api.example.org/works") == {"results": []}

    @patch("bibstash.http.httpx.get")
    def test_fetch_json_http_error(self, mock_get):
        mock_get.return_value = _resp(500)

        assert self._fetcher().fetch_json("https://api.example.org/works") is None

    @patch("bibstash.http.httpx.get")
    def test_fetch_json_invalid_body(self, mock_get):
        resp = _resp(200)
        resp.json.side_effect = json.JSONDecodeError("bad", "", 0)
        mock_get.return_value = resp

        assert self._fetcher().fetch_json("https://api.example.org/works") is None

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.httpx.get")
    def test_fetch_json_network_error(self, mock_get, mock_sleep):
        mock_get.side_effect = httpx_mod.ConnectError("refused")

        assert self._fetcher().fetch_json("https://api.example.org/works") is None

    @patch("bibstash.http.time.sleep")
    @patch("bibstash.http.time.monotonic")
    @patch("bibstash.http.httpx.get")
    def test_throttle_spaces_requests(self, mock_get, mock_monotonic, mock_sleep):
        mock_get.return_value = _resp(200, text="{}")
        mock_monotonic.side_effect = [100.0, 100.0, 100.05, 100.1]

        fetcher = HttpFetcher(min_interval=0.1, max_retries=0)
        fetcher.fetch_raw("https://api.example.org/works/W1")
        fetcher.fetch_raw("https://api.example.org/works/W2")
        assert mock_sleep.call_count == 1
        assert mock_sleep.call_args.args[0] == pytest.approx(0.05)

    @patch("bibstash.http.httpx.get")
    def test_throttle_holds_across_threads(self, mock_get):
        stamps = []

        def record(*args, **kwargs):
            stamps.append(time.monotonic())
            return _resp(200, text="{}")

        mock_get.side_effect = record
        fetcher = HttpFetcher(min_interval=0.1, max_retries=0)
        threads = [
            threading.Thread(target=fetcher.fetch_raw, args=(f"https://api.example.org/works/W{i}",))
            for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stamps.sort()
        gaps = [b - a for a, b in zip(stamps, stamps[1:])]
        assert len(gaps) == 3
        assert min(gaps) >= 0.08
