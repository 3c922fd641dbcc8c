"""Unit tests for planhub.integrations.regeneration_gateway.

All HTTP goes through a MagicMock session handed to the constructor, so no
collaborator is needed.
"""

from unittest.mock import MagicMock

import pytest
import requests

from planhub.integrations.regeneration_gateway import GatewayResult, RegenerationGateway


def _response(status_code, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 400
    resp.text = text
    return resp


@pytest.fixture()
def http():
    return MagicMock(spec=requests.Session)


@pytest.fixture()
def gw(http):
    return RegenerationGateway(
        "https://regen.example.com/api/",
        api_key="secret",
        timeout=2.5,
        session=http,
        retry_backoff=[],
    )


def test_posts_sorted_fields_to_document_endpoint(gw, http):
    http.request.return_value = _response(202)

    result = gw.regenerate("doc-1", ["objectives", "companyName"])

    assert result.ok is True
    assert result.status_code == 202
    http.request.assert_called_once()
    args, kwargs = http.request.call_args
    assert args == ("POST", "https://regen.example.com/api/documents/doc-1/regenerate")
    assert kwargs["json"] == {"triggering_fields": ["companyName", "objectives"]}
    assert kwargs["timeout"] == 2.5
    assert kwargs["headers"]["Authorization"] == "Bearer secret"


def test_client_error_is_final(gw, http):
    http.request.return_value = _response(404, "no such document")

    result = gw.regenerate("doc-1", ["companyName"])

    assert result.ok is False
    assert result.status_code == 404
    assert "no such document" in result.error
    assert http.request.call_count == 1


def test_server_error_is_retried(gw, http):
    http.request.side_effect = [_response(503), _response(202)]

    result = gw.regenerate("doc-1", ["companyName"])

    assert result.ok is True
    assert http.request.call_count == 2


def test_timeout_reported_not_raised(gw, http):
    http.request.side_effect = requests.Timeout("slow")

    result = gw.regenerate("doc-1", ["companyName"])

    assert isinstance(result, GatewayResult)
    assert result.ok is False
    assert result.timed_out is True
    assert "timed out" in result.error
    assert http.request.call_count == 2


def test_network_error_reported_not_raised(gw, http):
    http.request.side_effect = requests.ConnectionError("refused")

    result = gw.regenerate("doc-1", ["companyName"])

    assert result.ok is False
    assert result.timed_out is False
    assert "refused" in result.error


def test_log_only_mode_without_base_url(http):
    gw = RegenerationGateway(None, session=http)

    result = gw.regenerate("doc-1", ["companyName"])

    assert gw.log_only is True
    assert result.ok is True
    http.request.assert_not_called()


def test_from_config():
    gw = RegenerationGateway.from_config({
        "REGENERATION_URL": "https://regen.example.com",
        "REGENERATION_API_KEY": None,
        "REGENERATION_TIMEOUT_SECONDS": 3,
    })
    assert gw.base_url == "https://regen.example.com"
    assert gw.timeout == 3.0
    assert gw.log_only is False
