"""
SpatiaLite-backed spatial store for parcel analysis.

Holds the survey parcel centroids and the reference layers the analysis
reads: POIs, police stations, hospitals, main roads and tank (FTL)
polygons.  Buffering in a projected CRS, intersection tests and geodesic
distance/area all run inside SpatiaLite against R-tree indexes.

The engine only ever reads from this database.  Ingestion scripts use
init_spatial_db() / create_layer_table() to build it.

Error policy: a missing or empty facility layer is a valid "no facility"
answer (None).  Anything else that goes wrong in a query is raised as
ComputationError.
"""

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from analysis_trace import get_trace

logger = logging.getLogger(__name__)


# Layer name -> table name.  Facility kinds used by the analysis are
# "police", "hospital" and "road".
LAYER_TABLES: Dict[str, str] = {
    "parcels": "layer_parcels",
    "pois": "layer_pois",
    "police": "layer_police",
    "hospital": "layer_hospitals",
    "road": "layer_main_roads",
    "tanks": "layer_tanks",
}

FACILITY_KINDS = ("police", "hospital", "road")

# Search radii (meters) tried in order by nearest_feature() before falling
# back to a full-table scan.
NEAREST_SEARCH_RADII_M = (5_000, 25_000, 100_000)

# BuildCircleMbr takes degrees for SRID 4326.  Dividing by 80000 instead of
# ~111000 overestimates the frame so the R-tree never misses a candidate.
_METERS_PER_DEGREE_GENEROUS = 80_000.0


class ParcelNotFound(LookupError):
    """No parcel centroid matches the requested village / survey number."""


class ComputationError(RuntimeError):
    """A spatial query failed (store unavailable, SQL error, bad geometry)."""


def _spatial_db_path() -> str:
    return os.environ.get("PARCEL_SPATIAL_DB_PATH", "data/parcels.db")


def _projected_srid() -> int:
    """Metric CRS used for the fallback buffer (UTM zone of the survey area)."""
    return int(os.environ.get("PARCEL_PROJECTED_SRID", "32643"))


def _connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    """Open a SpatiaLite-enabled connection."""
    conn = sqlite3.connect(db_path or _spatial_db_path())
    conn.enable_load_extension(True)
    for lib_name in ["mod_spatialite", "libspatialite"]:
        try:
            conn.load_extension(lib_name)
            return conn
        except sqlite3.OperationalError:
            continue
    conn.close()
    raise RuntimeError(
        "SpatiaLite extension not found. "
        "Install libsqlite3-mod-spatialite (apt) or spatialite-tools (brew)."
    )


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def _geojson_param(geometry: Dict[str, Any]) -> str:
    return json.dumps(geometry, separators=(",", ":"))


@dataclass(frozen=True)
class ParcelRow:
    """Raw parcel lookup result."""
    village: str
    survey_number: str
    lat: float
    lng: float
    geometry: Optional[Dict[str, Any]]  # stored polygon, None for bare centroids


@dataclass(frozen=True)
class POIRow:
    category: Optional[str]
    lat: float
    lng: float


@dataclass(frozen=True)
class NearestRow:
    """Closest feature in a facility layer."""
    kind: str
    distance_m: float
    lat: float
    lng: float


class ParcelSpatialStore:
    """
    Read-only access to the parcel spatial database.

    Each query opens its own connection, so one instance can be shared by
    the worker threads of an analysis.

    Usage:
        store = ParcelSpatialStore()
        parcel = store.parcel_location("Hanamkonda", "123")
        nearest = store.nearest_feature(parcel.lat, parcel.lng, "police")
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or _spatial_db_path()
        self._available: Optional[bool] = None

    def is_available(self) -> bool:
        """Check if the DB exists and SpatiaLite loads. Cached after first check."""
        if self._available is not None:
            return self._available
        if not os.path.exists(self.db_path):
            logger.info("Spatial DB not found at %s", self.db_path)
            self._available = False
            return False
        try:
            _connect(self.db_path).close()
            self._available = True
        except (RuntimeError, sqlite3.Error) as e:
            logger.warning("SpatiaLite not available: %s", e)
            self._available = False
        return self._available

    @contextmanager
    def _query(self, endpoint: str) -> Iterator[sqlite3.Connection]:
        """Yield a connection; trace the call and wrap failures."""
        if not os.path.exists(self.db_path):
            raise ComputationError(f"Spatial DB not found at {self.db_path}")
        t0 = time.time()
        outcome = "ok"
        try:
            try:
                conn = _connect(self.db_path)
            except (RuntimeError, sqlite3.Error) as e:
                raise ComputationError(f"Spatial store unavailable: {e}") from e
            try:
                yield conn
            except sqlite3.Error as e:
                logger.error("Spatial query %s failed: %s", endpoint, e)
                raise ComputationError(f"Spatial query {endpoint} failed: {e}") from e
            finally:
                conn.close()
        except Exception:
            outcome = "error"
            raise
        finally:
            trace = get_trace()
            if trace:
                trace.record_call(
                    service="spatial",
                    endpoint=endpoint,
                    elapsed_ms=int((time.time() - t0) * 1000),
                    outcome=outcome,
                )

    # ------------------------------------------------------------------
    # Parcel lookup
    # ------------------------------------------------------------------

    def parcel_location(self, village: str, survey_number: str) -> ParcelRow:
        """Resolve a parcel to its centroid (and stored polygon, if any).

        Raises ParcelNotFound when no row matches.
        """
        table = LAYER_TABLES["parcels"]
        with self._query("parcel_location") as conn:
            row = conn.execute(
                f"""
                SELECT
                    X(ST_Centroid(geometry)) AS lng,
                    Y(ST_Centroid(geometry)) AS lat,
                    GeometryType(geometry) AS geom_type,
                    AsGeoJSON(geometry) AS geom_json
                FROM {table}
                WHERE village = ? AND surveyno = ?
                LIMIT 1
                """,
                (village, str(survey_number)),
            ).fetchone()

        if row is None:
            raise ParcelNotFound(
                f"No parcel found for village={village!r} survey_number={survey_number!r}"
            )
        lng, lat, geom_type, geom_json = row
        geometry = None
        if geom_json and not str(geom_type or "").upper().startswith("POINT"):
            geometry = json.loads(geom_json)
        return ParcelRow(
            village=village,
            survey_number=str(survey_number),
            lat=float(lat),
            lng=float(lng),
            geometry=geometry,
        )

    # ------------------------------------------------------------------
    # Reachability fallback
    # ------------------------------------------------------------------

    def buffer_polygon(self, lat: float, lng: float, radius_m: float) -> Dict[str, Any]:
        """Circular buffer of *radius_m* around a point, as GeoJSON (EPSG:4326).

        The buffer is computed in a projected metric CRS so the radius is
        accurate in meters, then transformed back to geographic coordinates.
        """
        if radius_m <= 0:
            raise ValueError("radius_m must be positive")
        with self._query("buffer_polygon") as conn:
            row = conn.execute(
                """
                SELECT AsGeoJSON(
                    ST_Transform(
                        ST_Buffer(ST_Transform(MakePoint(?, ?, 4326), ?), ?),
                        4326
                    )
                )
                """,
                (lng, lat, _projected_srid(), radius_m),
            ).fetchone()
        if row is None or row[0] is None:
            raise ComputationError(
                f"Buffer computation returned no geometry for ({lat:.5f}, {lng:.5f})"
            )
        return json.loads(row[0])

    # ------------------------------------------------------------------
    # POIs
    # ------------------------------------------------------------------

    def pois_intersecting(self, geometry: Dict[str, Any]) -> List[POIRow]:
        """All POIs whose geometry intersects *geometry*, in stored order.

        No result cap.  Categories are returned exactly as stored.
        """
        table = LAYER_TABLES["pois"]
        geojson = _geojson_param(geometry)
        with self._query("pois_intersecting") as conn:
            cursor = conn.execute(
                f"""
                SELECT category, Y(geometry) AS lat, X(geometry) AS lng
                FROM {table}
                WHERE ROWID IN (
                    SELECT ROWID FROM SpatialIndex
                    WHERE f_table_name = ?
                    AND f_geometry_column = 'geometry'
                    AND search_frame = SetSRID(GeomFromGeoJSON(?), 4326)
                )
                AND ST_Intersects(geometry, SetSRID(GeomFromGeoJSON(?), 4326))
                ORDER BY ROWID
                """,
                (table, geojson, geojson),
            )
            return [
                POIRow(category=category, lat=float(lat), lng=float(lng))
                for category, lat, lng in cursor
            ]

    # ------------------------------------------------------------------
    # Nearest facility
    # ------------------------------------------------------------------

    def nearest_feature(self, lat: float, lng: float, kind: str) -> Optional[NearestRow]:
        """Closest feature of *kind* with its geodesic distance in meters.

        For line layers (main roads) the returned coordinate is the closest
        point on the line.  Returns None when the layer is missing or empty.
        """
        if kind not in FACILITY_KINDS:
            raise ValueError(f"Unknown facility kind: {kind!r}")
        table = LAYER_TABLES[kind]

        with self._query(f"nearest_{kind}") as conn:
            if not _table_exists(conn, table):
                logger.info("Facility layer %s missing; no nearest %s", table, kind)
                return None

            # Expanding R-tree search.  A hit within the radius is the true
            # nearest because the search frame overestimates the radius.
            for radius_m in NEAREST_SEARCH_RADII_M:
                row = conn.execute(
                    f"""
                    SELECT
                        ST_Distance(geometry, MakePoint(?, ?, 4326), 1) AS distance_m,
                        Y(ST_ClosestPoint(geometry, MakePoint(?, ?, 4326))) AS lat,
                        X(ST_ClosestPoint(geometry, MakePoint(?, ?, 4326))) AS lng
                    FROM {table}
                    WHERE ROWID IN (
                        SELECT ROWID FROM SpatialIndex
                        WHERE f_table_name = ?
                        AND f_geometry_column = 'geometry'
                        AND search_frame = BuildCircleMbr(?, ?, ?, 4326)
                    )
                    ORDER BY distance_m ASC
                    LIMIT 1
                    """,
                    (
                        lng, lat,
                        lng, lat,
                        lng, lat,
                        table,
                        lng, lat, radius_m / _METERS_PER_DEGREE_GENEROUS,
                    ),
                ).fetchone()
                if row is not None and row[0] is not None and row[0] <= radius_m:
                    return NearestRow(kind, float(row[0]), float(row[1]), float(row[2]))

            # Nothing inside the largest frame: scan the whole layer.
            row = conn.execute(
                f"""
                SELECT
                    ST_Distance(geometry, MakePoint(?, ?, 4326), 1) AS distance_m,
                    Y(ST_ClosestPoint(geometry, MakePoint(?, ?, 4326))) AS lat,
                    X(ST_ClosestPoint(geometry, MakePoint(?, ?, 4326))) AS lng
                FROM {table}
                WHERE geometry IS NOT NULL
                ORDER BY distance_m ASC
                LIMIT 1
                """,
                (lng, lat, lng, lat, lng, lat),
            ).fetchone()

        if row is None or row[0] is None:
            logger.info("Facility layer %s is empty; no nearest %s", table, kind)
            return None
        return NearestRow(kind, float(row[0]), float(row[1]), float(row[2]))

    # ------------------------------------------------------------------
    # Hazard (tank / FTL) overlap
    # ------------------------------------------------------------------

    def hazard_overlap(self, geometry: Dict[str, Any]) -> Tuple[float, float]:
        """Return ``(intersection_m2, area_m2)`` for *geometry* against tanks.

        Both areas are geodesic.  Intersection areas are summed across every
        intersecting tank polygon.
        """
        table = LAYER_TABLES["tanks"]
        geojson = _geojson_param(geometry)
        with self._query("hazard_overlap") as conn:
            area_row = conn.execute(
                "SELECT ST_Area(SetSRID(GeomFromGeoJSON(?), 4326), 1)",
                (geojson,),
            ).fetchone()
            area_m2 = float(area_row[0] or 0.0) if area_row else 0.0

            if not _table_exists(conn, table):
                logger.info("Hazard layer %s missing; overlap is 0", table)
                return 0.0, area_m2

            row = conn.execute(
                f"""
                SELECT COALESCE(SUM(
                    ST_Area(ST_Intersection(geometry, SetSRID(GeomFromGeoJSON(?), 4326)), 1)
                ), 0)
                FROM {table}
                WHERE ROWID IN (
                    SELECT ROWID FROM SpatialIndex
                    WHERE f_table_name = ?
                    AND f_geometry_column = 'geometry'
                    AND search_frame = SetSRID(GeomFromGeoJSON(?), 4326)
                )
                AND ST_Intersects(geometry, SetSRID(GeomFromGeoJSON(?), 4326))
                """,
                (geojson, table, geojson, geojson),
            ).fetchone()
        return float(row[0] or 0.0), area_m2

    def hazard_features(self, geometry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Tank polygons intersecting *geometry*, as a FeatureCollection.

        Display only.  Returns None when nothing intersects.
        """
        table = LAYER_TABLES["tanks"]
        geojson = _geojson_param(geometry)
        with self._query("hazard_features") as conn:
            if not _table_exists(conn, table):
                return None
            cursor = conn.execute(
                f"""
                SELECT name, AsGeoJSON(geometry)
                FROM {table}
                WHERE ROWID IN (
                    SELECT ROWID FROM SpatialIndex
                    WHERE f_table_name = ?
                    AND f_geometry_column = 'geometry'
                    AND search_frame = SetSRID(GeomFromGeoJSON(?), 4326)
                )
                AND ST_Intersects(geometry, SetSRID(GeomFromGeoJSON(?), 4326))
                ORDER BY ROWID
                """,
                (table, geojson, geojson),
            )
            features = [
                {
                    "type": "Feature",
                    "properties": {"name": name} if name else {},
                    "geometry": json.loads(geom_json),
                }
                for name, geom_json in cursor
                if geom_json
            ]
        if not features:
            return None
        return {"type": "FeatureCollection", "features": features}

    # ------------------------------------------------------------------
    # Parcel catalog (read-only lookups for pickers / autocomplete)
    # ------------------------------------------------------------------

    def list_parcels(self) -> List[Tuple[str, str]]:
        """Distinct (village, survey_number) pairs, ordered."""
        table = LAYER_TABLES["parcels"]
        with self._query("list_parcels") as conn:
            cursor = conn.execute(
                f"""
                SELECT DISTINCT village, surveyno FROM {table}
                WHERE village IS NOT NULL AND surveyno IS NOT NULL
                ORDER BY village, surveyno
                """
            )
            return [(village, str(surveyno)) for village, surveyno in cursor]

    def survey_numbers(self, village: str) -> List[str]:
        table = LAYER_TABLES["parcels"]
        with self._query("survey_numbers") as conn:
            cursor = conn.execute(
                f"""
                SELECT DISTINCT surveyno FROM {table}
                WHERE village = ? AND surveyno IS NOT NULL
                ORDER BY surveyno
                """,
                (village,),
            )
            return [str(r[0]) for r in cursor]

    def search_villages(
        self, query: str, prefix_only: bool = False, limit: int = 10
    ) -> List[str]:
        """Case-insensitive village search.

        Substring matching needs at least 2 characters; prefix matching
        accepts any non-empty query.
        """
        query = (query or "").strip()
        if not query or (not prefix_only and len(query) < 2):
            return []
        pattern = f"{query}%" if prefix_only else f"%{query}%"
        table = LAYER_TABLES["parcels"]
        with self._query("search_villages") as conn:
            cursor = conn.execute(
                f"""
                SELECT DISTINCT village FROM {table}
                WHERE village IS NOT NULL AND LOWER(village) LIKE LOWER(?)
                ORDER BY village
                LIMIT ?
                """,
                (pattern, limit),
            )
            return [r[0] for r in cursor]

    def search_survey_numbers(
        self, query: str, village: Optional[str] = None, limit: int = 20
    ) -> List[str]:
        """Survey numbers starting with *query*, optionally within one village."""
        query = (query or "").strip()
        if not query:
            return []
        table = LAYER_TABLES["parcels"]
        sql = f"SELECT DISTINCT surveyno FROM {table} WHERE surveyno IS NOT NULL"
        params: List[Any] = []
        if village:
            sql += " AND village = ?"
            params.append(village)
        sql += " AND CAST(surveyno AS TEXT) LIKE ? ORDER BY surveyno LIMIT ?"
        params.extend([f"{query}%", limit])
        with self._query("search_survey_numbers") as conn:
            return [str(r[0]) for r in conn.execute(sql, params)]


# =============================================================================
# Schema management (used by ingestion scripts, not by the analysis)
# =============================================================================

_LAYER_EXTRA_COLUMNS = {
    "parcels": "village TEXT, surveyno TEXT",
    "pois": "category TEXT",
}

_LAYER_GEOMETRY_TYPES = {
    "parcels": "GEOMETRY",
    "pois": "POINT",
    "police": "POINT",
    "hospital": "POINT",
    "road": "MULTILINESTRING",
    "tanks": "MULTIPOLYGON",
}


def init_spatial_db(db_path: Optional[str] = None):
    """Initialize SpatiaLite metadata and the dataset registry."""
    db_path = db_path or _spatial_db_path()
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = _connect(db_path)
    try:
        conn.execute("SELECT InitSpatialMetaData(1)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS dataset_registry (
                layer TEXT PRIMARY KEY,
                source TEXT,
                ingested_at TEXT,
                record_count INTEGER,
                notes TEXT
            )
        """
        )
        conn.commit()
    finally:
        conn.close()


def create_layer_table(
    layer: str,
    db_path: Optional[str] = None,
    geometry_type: Optional[str] = None,
):
    """
    (Re)create the table for *layer* with a geometry column and spatial index.

    Standard schema: id, name, metadata_json, layer-specific columns
    (village/surveyno for parcels, category for POIs) and geometry in
    SRID 4326.  Drops the existing table first (idempotent).
    """
    if layer not in LAYER_TABLES:
        raise ValueError(f"Unknown layer {layer!r}; expected one of {sorted(LAYER_TABLES)}")
    geometry_type = geometry_type or _LAYER_GEOMETRY_TYPES[layer]
    allowed = ("POINT", "LINESTRING", "MULTILINESTRING", "POLYGON", "MULTIPOLYGON", "GEOMETRY")
    if geometry_type not in allowed:
        raise ValueError(
            f"geometry_type must be one of {allowed}, got {geometry_type!r}"
        )
    table = LAYER_TABLES[layer]
    conn = _connect(db_path)
    try:
        if _table_exists(conn, table):
            conn.execute(f"SELECT DisableSpatialIndex('{table}', 'geometry')")
            conn.execute(f"SELECT DiscardGeometryColumn('{table}', 'geometry')")
        conn.execute(f"DROP TABLE IF EXISTS idx_{table}_geometry")
        conn.execute(f"DROP TABLE IF EXISTS {table}")

        extra = _LAYER_EXTRA_COLUMNS.get(layer, "")
        extra = f", {extra}" if extra else ""
        conn.execute(
            f"""
            CREATE TABLE {table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT,
                metadata_json TEXT
                {extra}
            )
        """
        )
        conn.execute(
            f"SELECT AddGeometryColumn('{table}', 'geometry', 4326, "
            f"'{geometry_type}', 'XY')"
        )
        conn.execute(f"SELECT CreateSpatialIndex('{table}', 'geometry')")
        if layer == "parcels":
            conn.execute(
                f"CREATE INDEX idx_{table}_village_survey ON {table}(village, surveyno)"
            )
        conn.commit()
    finally:
        conn.close()
