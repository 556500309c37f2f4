#!/usr/bin/env python3
"""
Ingest a GeoJSON FeatureCollection into one layer of the parcel spatial DB.

Layers:
    parcels     survey parcel centroids or polygons (village, surveyno)
    pois        points of interest (category)
    police      police stations (points)
    hospital    hospitals (points)
    road        main roads (lines)
    tanks       tank / FTL polygons

Idempotent: drops and recreates the layer table on each run.

Usage:
    python scripts/ingest_layer.py parcels data/raw/survey_centroids.geojson
    python scripts/ingest_layer.py pois data/raw/overture_poi.geojson --category-field category
    python scripts/ingest_layer.py road data/raw/main_roads.geojson --name-field ref
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from spatial_store import (  # noqa: E402
    LAYER_TABLES,
    _connect,
    _spatial_db_path,
    create_layer_table,
    init_spatial_db,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Layers stored as multi-geometries need single geometries promoted.
_GEOMETRY_CAST = {
    "road": "CastToMultiLinestring",
    "tanks": "CastToMultiPolygon",
}


def _geometry_sql(layer: str) -> str:
    expr = "SetSRID(GeomFromGeoJSON(?), 4326)"
    cast = _GEOMETRY_CAST.get(layer)
    return f"{cast}({expr})" if cast else expr


def build_row(layer: str, feature: dict, fields: argparse.Namespace) -> dict | None:
    """Map one GeoJSON feature to column values. None if unusable."""
    geometry = feature.get("geometry")
    if not geometry or not geometry.get("type"):
        return None
    props = feature.get("properties") or {}
    row = {
        "name": props.get(fields.name_field),
        "geometry": json.dumps(geometry),
        "metadata_json": json.dumps(props, default=str),
    }
    if layer == "parcels":
        village = props.get(fields.village_field)
        surveyno = props.get(fields.survey_field)
        if village is None or surveyno is None:
            return None
        row["village"] = str(village).strip()
        row["surveyno"] = str(surveyno).strip()
    elif layer == "pois":
        # Stored exactly as given; no default category.
        row["category"] = props.get(fields.category_field)
    return row


def ingest(layer: str, path: str, fields: argparse.Namespace, db_path: str | None = None):
    """Load *path* into *layer*. Returns (inserted, skipped)."""
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    if data.get("type") != "FeatureCollection":
        raise ValueError(f"{path} is not a GeoJSON FeatureCollection")
    features = data.get("features") or []
    logger.info("Loaded %d features from %s", len(features), path)

    init_spatial_db(db_path)
    create_layer_table(layer, db_path=db_path)
    table = LAYER_TABLES[layer]
    logger.info("Created %s table", table)

    columns = ["name", "metadata_json"]
    if layer == "parcels":
        columns += ["village", "surveyno"]
    elif layer == "pois":
        columns += ["category"]
    placeholders = ", ".join("?" for _ in columns)
    sql = (
        f"INSERT INTO {table} ({', '.join(columns)}, geometry) "
        f"VALUES ({placeholders}, {_geometry_sql(layer)})"
    )

    inserted = skipped = 0
    conn = _connect(db_path)
    try:
        for feature in features:
            row = build_row(layer, feature, fields)
            if row is None:
                skipped += 1
                continue
            try:
                conn.execute(sql, [row[c] for c in columns] + [row["geometry"]])
                inserted += 1
            except Exception as e:
                logger.warning("Insert failed for %s: %s", row.get("name"), e)
                skipped += 1
        conn.execute(
            """INSERT OR REPLACE INTO dataset_registry
               (layer, source, ingested_at, record_count, notes)
               VALUES (?, ?, ?, ?, ?)""",
            (
                layer,
                os.path.abspath(path),
                datetime.now(timezone.utc).isoformat(),
                inserted,
                f"skipped={skipped}",
            ),
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("=" * 50)
    logger.info("%s INGESTION COMPLETE", layer.upper())
    logger.info("  Total inserted: %d", inserted)
    logger.info("  Total skipped:  %d", skipped)
    logger.info("=" * 50)
    return inserted, skipped


def main(argv=None):
    parser = argparse.ArgumentParser(description="Ingest a GeoJSON layer into the parcel spatial DB")
    parser.add_argument("layer", choices=sorted(LAYER_TABLES))
    parser.add_argument("path", help="GeoJSON FeatureCollection file")
    parser.add_argument("--db", default=None, help=f"SpatiaLite file (default {_spatial_db_path()})")
    parser.add_argument("--name-field", default="name")
    parser.add_argument("--category-field", default="category")
    parser.add_argument("--village-field", default="village")
    parser.add_argument("--survey-field", default="surveyno")
    args = parser.parse_args(argv)

    inserted, _ = ingest(args.layer, args.path, args, db_path=args.db)
    return 0 if inserted else 1


if __name__ == "__main__":
    sys.exit(main())
