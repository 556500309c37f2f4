"""Unit tests for isochrone_http.py — Mapbox walking isochrone client.

Tests cover: configuration check, request shape, error classification,
geometry validation, and trace recording.
"""

from unittest.mock import patch, MagicMock

import pytest
import requests

from analysis_trace import TraceContext, set_trace
from isochrone_http import (
    ConfigurationError,
    ExternalServiceError,
    IsochroneHTTPClient,
)


# =========================================================================
# Helpers
# =========================================================================

def _mock_response(status_code=200, json_data=None, text=""):
    """Create a mock requests.Response object."""
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.text = text
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("No JSON")
    return resp


def _feature_collection(geometry):
    return {"type": "FeatureCollection", "features": [{"type": "Feature", "geometry": geometry}]}


POLYGON = {"type": "Polygon", "coordinates": [[[79.5, 18.0], [79.6, 18.0], [79.6, 18.1], [79.5, 18.0]]]}


@pytest.fixture()
def client():
    return IsochroneHTTPClient(access_token="pk.test", base_url="https://iso.example/v1/mapbox/")


# =========================================================================
# Configuration
# =========================================================================

class TestConfiguration:
    def test_missing_token_raises(self, monkeypatch):
        monkeypatch.delenv("MAPBOX_TOKEN", raising=False)
        with pytest.raises(ConfigurationError):
            IsochroneHTTPClient()

    def test_token_from_env(self, monkeypatch):
        monkeypatch.setenv("MAPBOX_TOKEN", "pk.env")
        monkeypatch.setenv("ISOCHRONE_TIMEOUT", "3")
        c = IsochroneHTTPClient()
        assert c.access_token == "pk.env"
        assert c.timeout == 3.0

    def test_base_url_trailing_slash_stripped(self, client):
        assert client.base_url == "https://iso.example/v1/mapbox"


# =========================================================================
# Successful request
# =========================================================================

class TestSuccess:
    def test_returns_first_polygon(self, client):
        resp = _mock_response(200, _feature_collection(POLYGON))
        with patch.object(requests.Session, "get", return_value=resp) as mock_get:
            geometry = client.walking_isochrone(79.56, 18.0, minutes=10, denoise=1)

        assert geometry == POLYGON
        args, kwargs = mock_get.call_args
        assert args[0] == "https://iso.example/v1/mapbox/walking/79.56,18.0"
        assert kwargs["params"]["contours_minutes"] == 10
        assert kwargs["params"]["polygons"] == "true"
        assert kwargs["params"]["denoise"] == 1
        assert kwargs["params"]["access_token"] == "pk.test"
        assert kwargs["timeout"] == client.timeout

    def test_multipolygon_accepted(self, client):
        multi = {"type": "MultiPolygon", "coordinates": [POLYGON["coordinates"]]}
        resp = _mock_response(200, _feature_collection(multi))
        with patch.object(requests.Session, "get", return_value=resp):
            assert client.walking_isochrone(79.56, 18.0, minutes=10)["type"] == "MultiPolygon"


# =========================================================================
# Failures
# =========================================================================

class TestFailures:
    def test_http_500(self, client):
        with patch.object(requests.Session, "get", return_value=_mock_response(500, text="err")):
            with pytest.raises(ExternalServiceError, match="500"):
                client.walking_isochrone(79.56, 18.0, minutes=10)

    def test_timeout(self, client):
        with patch.object(requests.Session, "get", side_effect=requests.exceptions.Timeout()):
            with pytest.raises(ExternalServiceError, match="timeout"):
                client.walking_isochrone(79.56, 18.0, minutes=10)

    def test_connection_error(self, client):
        with patch.object(
            requests.Session, "get", side_effect=requests.exceptions.ConnectionError("refused")
        ):
            with pytest.raises(ExternalServiceError):
                client.walking_isochrone(79.56, 18.0, minutes=10)

    def test_point_geometry_rejected(self, client):
        point = {"type": "Point", "coordinates": [79.56, 18.0]}
        with patch.object(requests.Session, "get", return_value=_mock_response(200, _feature_collection(point))):
            with pytest.raises(ExternalServiceError, match="Point"):
                client.walking_isochrone(79.56, 18.0, minutes=10)

    def test_non_json(self, client):
        with patch.object(requests.Session, "get", return_value=_mock_response(200)):
            with pytest.raises(ExternalServiceError, match="non-JSON"):
                client.walking_isochrone(79.56, 18.0, minutes=10)

    def test_no_features(self, client):
        resp = _mock_response(200, {"type": "FeatureCollection", "features": []})
        with patch.object(requests.Session, "get", return_value=resp):
            with pytest.raises(ExternalServiceError, match="No isochrone"):
                client.walking_isochrone(79.56, 18.0, minutes=10)

    def test_never_retries(self, client):
        with patch.object(requests.Session, "get", return_value=_mock_response(503)) as mock_get:
            with pytest.raises(ExternalServiceError):
                client.walking_isochrone(79.56, 18.0, minutes=10)
        assert mock_get.call_count == 1


# =========================================================================
# Trace recording
# =========================================================================

class TestTrace:
    def test_success_recorded(self, client):
        ctx = TraceContext(trace_id="t")
        set_trace(ctx)
        resp = _mock_response(200, _feature_collection(POLYGON))
        with patch.object(requests.Session, "get", return_value=resp):
            client.walking_isochrone(79.56, 18.0, minutes=10)

        assert len(ctx.calls) == 1
        assert ctx.calls[0].service == "isochrone"
        assert ctx.calls[0].status_code == 200
        assert ctx.calls[0].outcome == "ok"

    def test_failure_outcome_recorded(self, client):
        ctx = TraceContext(trace_id="t")
        set_trace(ctx)
        point = {"type": "Point", "coordinates": [79.56, 18.0]}
        with patch.object(requests.Session, "get", return_value=_mock_response(200, _feature_collection(point))):
            with pytest.raises(ExternalServiceError):
                client.walking_isochrone(79.56, 18.0, minutes=10)

        assert ctx.calls[0].outcome == "bad_geometry"
