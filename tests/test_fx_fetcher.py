"""
Tests for the USD→IDR rate fetcher

Run with:
    pytest tests/test_fx_fetcher.py -v
"""

from unittest.mock import Mock, patch

import requests

from config import FX_FALLBACK_RATE
from data.fetchers.fx_fetcher import fetch_idr_rate


def _response(payload):
    resp = Mock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = payload
    return resp


class TestFetchIdrRate:

    @patch("data.fetchers.fx_fetcher.requests.get")
    def test_returns_live_rate(self, mock_get):
        mock_get.return_value = _response({"rates": {"IDR": 15890.5, "EUR": 0.92}})

        assert fetch_idr_rate() == 15890.5
        mock_get.assert_called_once()

    @patch("data.fetchers.fx_fetcher.requests.get")
    def test_network_error_falls_back(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("down")

        assert fetch_idr_rate() == FX_FALLBACK_RATE

    @patch("data.fetchers.fx_fetcher.requests.get")
    def test_http_error_falls_back(self, mock_get):
        resp = Mock()
        resp.raise_for_status.side_effect = requests.HTTPError("503")
        mock_get.return_value = resp

        assert fetch_idr_rate() == FX_FALLBACK_RATE

    @patch("data.fetchers.fx_fetcher.requests.get")
    def test_missing_currency_falls_back(self, mock_get):
        mock_get.return_value = _response({"rates": {"EUR": 0.92}})

        assert fetch_idr_rate() == FX_FALLBACK_RATE

    @patch("data.fetchers.fx_fetcher.requests.get")
    def test_non_positive_rate_falls_back(self, mock_get):
        mock_get.return_value = _response({"rates": {"IDR": 0}})

        assert fetch_idr_rate() == FX_FALLBACK_RATE

    @patch("data.fetchers.fx_fetcher.requests.get")
    def test_bad_json_falls_back(self, mock_get):
        resp = Mock()
        resp.raise_for_status.return_value = None
        resp.json.side_effect = ValueError("not json")
        mock_get.return_value = resp

        assert fetch_idr_rate() == FX_FALLBACK_RATE
