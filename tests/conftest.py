"""Shared fixtures for the parcel analyzer test suite.

Provides an in-memory stand-in for ParcelSpatialStore and a stub
isochrone client so the pipeline can run without SpatiaLite or network.
"""

import threading

import pytest

from analysis_trace import clear_trace
from isochrone_http import ExternalServiceError
from spatial_store import NearestRow, ParcelNotFound, ParcelRow, POIRow


WALK_POLYGON = {
    "type": "Polygon",
    "coordinates": [[
        [79.55, 17.99], [79.57, 17.99], [79.57, 18.01], [79.55, 18.01], [79.55, 17.99],
    ]],
}

BUFFER_POLYGON = {
    "type": "Polygon",
    "coordinates": [[
        [79.55, 17.99], [79.57, 17.99], [79.56, 18.01], [79.55, 17.99],
    ]],
}


class FakeSpatialStore:
    """Answers the store queries from plain Python data.

    errors: {method_name: exception} raised instead of answering.
    """

    def __init__(
        self,
        parcels=None,
        pois=(),
        facilities=None,
        overlap=(0.0, 1_000_000.0),
        tanks=None,
        buffer_geometry=None,
        errors=None,
    ):
        self.parcels = parcels if parcels is not None else {
            ("Hanamkonda", "123"): (18.0, 79.56),
        }
        self.pois = list(pois)
        self.facilities = facilities or {}
        self.overlap = overlap
        self.tanks = tanks
        self.buffer_geometry = buffer_geometry or BUFFER_POLYGON
        self.errors = errors or {}
        self.calls = []
        self._lock = threading.Lock()

    def _called(self, name, *args):
        with self._lock:
            self.calls.append((name,) + args)
        if name in self.errors:
            raise self.errors[name]

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    def parcel_location(self, village, survey_number):
        self._called("parcel_location", village, survey_number)
        try:
            lat, lng = self.parcels[(village, survey_number)]
        except KeyError:
            raise ParcelNotFound(f"No parcel found for {village}/{survey_number}")
        return ParcelRow(village, survey_number, lat, lng, None)

    def buffer_polygon(self, lat, lng, radius_m):
        self._called("buffer_polygon", lat, lng, radius_m)
        return self.buffer_geometry

    def pois_intersecting(self, geometry):
        self._called("pois_intersecting", geometry)
        return [POIRow(category, lat, lng) for category, lat, lng in self.pois]

    def nearest_feature(self, lat, lng, kind):
        self._called("nearest_feature", kind)
        found = self.facilities.get(kind)
        if found is None:
            return None
        distance_m, f_lat, f_lng = found
        return NearestRow(kind, distance_m, f_lat, f_lng)

    def hazard_overlap(self, geometry):
        self._called("hazard_overlap", geometry)
        return self.overlap

    def hazard_features(self, geometry):
        self._called("hazard_features", geometry)
        return self.tanks


class StubIsochrone:
    """Returns *geometry* or raises *error*; counts requests."""

    def __init__(self, geometry=None, error=None):
        self.geometry = geometry if geometry is not None else WALK_POLYGON
        self.error = error
        self.requests = []

    def walking_isochrone(self, lng, lat, minutes, denoise=1):
        self.requests.append((lng, lat, minutes, denoise))
        if self.error is not None:
            raise self.error
        return self.geometry


@pytest.fixture(autouse=True)
def _no_leaked_trace():
    clear_trace()
    yield
    clear_trace()


@pytest.fixture()
def fake_store():
    return FakeSpatialStore()


@pytest.fixture()
def isochrone():
    return StubIsochrone()


@pytest.fixture()
def failing_isochrone():
    return StubIsochrone(error=ExternalServiceError("Isochrone HTTP 500: boom"))
