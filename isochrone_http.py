"""
Walking-isochrone HTTP client (Mapbox Isochrone API).

All routing-service requests in the application go through this module.
It provides:
- Fail-fast configuration check: a missing access token raises
  ConfigurationError before any request is attempted
- A bounded per-request timeout
- Response validation: only Polygon / MultiPolygon geometries are accepted
- analysis_trace integration for observability

No retry loop: callers treat any ExternalServiceError as the signal to
use the buffer fallback.
"""

import logging
import os
import time
from typing import Any, Dict, Optional

import requests

from analysis_trace import get_trace

logger = logging.getLogger(__name__)

ACCEPTED_GEOMETRY_TYPES = ("Polygon", "MultiPolygon")


class ConfigurationError(RuntimeError):
    """The routing service credential is not configured."""


class ExternalServiceError(Exception):
    """The isochrone request failed, timed out, or returned unusable geometry."""


class IsochroneHTTPClient:
    DEFAULT_TIMEOUT = 10  # seconds
    PROFILE = "walking"

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.access_token = access_token if access_token is not None else os.environ.get("MAPBOX_TOKEN")
        if not self.access_token:
            raise ConfigurationError(
                "Mapbox token not configured. Set MAPBOX_TOKEN in the environment."
            )
        self.base_url = (
            base_url
            or os.environ.get("ISOCHRONE_BASE_URL", "https://api.mapbox.com/isochrone/v1/mapbox")
        ).rstrip("/")
        if timeout is None:
            timeout = float(os.environ.get("ISOCHRONE_TIMEOUT", self.DEFAULT_TIMEOUT))
        self.timeout = timeout

    def walking_isochrone(
        self,
        lng: float,
        lat: float,
        minutes: int,
        denoise: float = 1,
    ) -> Dict[str, Any]:
        """
        Request the area reachable on foot within *minutes* of (lng, lat).

        Returns:
            The GeoJSON geometry dict of the first contour (Polygon or
            MultiPolygon).

        Raises:
            ExternalServiceError: non-2xx status, timeout, connection error,
                non-JSON body, no features, or an unexpected geometry type.
        """
        url = f"{self.base_url}/{self.PROFILE}/{lng},{lat}"
        params = {
            "contours_minutes": minutes,
            "polygons": "true",
            "denoise": denoise,
            "access_token": self.access_token,
        }

        start = time.monotonic()
        outcome = "ok"
        status_code = 0
        try:
            # Fresh session per request (thread-safe, no shared state)
            session = requests.Session()
            session.trust_env = False
            try:
                resp = session.get(url, params=params, timeout=self.timeout)
            except requests.exceptions.Timeout as e:
                outcome = "timeout"
                raise ExternalServiceError(
                    f"Isochrone request timeout after {self.timeout}s"
                ) from e
            except requests.exceptions.RequestException as e:
                outcome = "error"
                raise ExternalServiceError(f"Isochrone request failed: {e}") from e
            finally:
                session.close()

            status_code = resp.status_code
            if not resp.ok:
                outcome = "http_error"
                raise ExternalServiceError(
                    f"Isochrone HTTP {status_code}: {resp.text[:200]}"
                )

            try:
                data = resp.json()
            except ValueError as e:
                outcome = "parse_error"
                raise ExternalServiceError(
                    f"Isochrone returned non-JSON response (HTTP {status_code})"
                ) from e

            geometry = self._first_geometry(data)
            if geometry is None:
                outcome = "empty"
                raise ExternalServiceError("No isochrone data returned")

            geom_type = geometry.get("type")
            if geom_type not in ACCEPTED_GEOMETRY_TYPES:
                outcome = "bad_geometry"
                raise ExternalServiceError(f"Unexpected geometry type: {geom_type}")

            logger.info(
                "Isochrone received: %s (%d min walking) at %.5f,%.5f",
                geom_type, minutes, lat, lng,
            )
            return geometry
        finally:
            trace = get_trace()
            if trace:
                trace.record_call(
                    service="isochrone",
                    endpoint=self.PROFILE,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=status_code,
                    outcome=outcome,
                )

    @staticmethod
    def _first_geometry(data: Any) -> Optional[Dict[str, Any]]:
        """Extract features[0].geometry from a FeatureCollection, if present."""
        if not isinstance(data, dict):
            return None
        features = data.get("features") or []
        if not features or not isinstance(features[0], dict):
            return None
        geometry = features[0].get("geometry")
        return geometry if isinstance(geometry, dict) else None
