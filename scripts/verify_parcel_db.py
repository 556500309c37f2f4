#!/usr/bin/env python3
"""Verify SpatiaLite loads and every layer the analysis reads is populated."""

import os
import sqlite3
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from spatial_store import LAYER_TABLES, _connect, _spatial_db_path  # noqa: E402

# Facility layers may legitimately be absent (the analysis reports "not found").
REQUIRED_LAYERS = ("parcels", "pois", "tanks")


def check(db_path=None) -> bool:
    db_path = db_path or _spatial_db_path()
    if not os.path.exists(db_path):
        print(f"FAIL: spatial DB not found at {db_path}")
        return False

    try:
        conn = _connect(db_path)
    except RuntimeError as e:
        print(f"FAIL: {e}")
        print("Install with:")
        print("  Ubuntu/Debian: apt-get install libsqlite3-mod-spatialite")
        print("  macOS:         brew install spatialite-tools libspatialite")
        return False

    ok = True
    try:
        version = conn.execute("SELECT spatialite_version()").fetchone()[0]
        print(f"OK: SpatiaLite {version} ({db_path})")
        for layer, table in LAYER_TABLES.items():
            try:
                count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            except sqlite3.OperationalError:
                count = None
            required = layer in REQUIRED_LAYERS
            if count is None:
                print(f"{'FAIL' if required else 'WARN'}: {layer:<9} table {table} missing")
                ok = ok and not required
            elif count == 0:
                print(f"{'FAIL' if required else 'WARN'}: {layer:<9} {table} is empty")
                ok = ok and not required
            else:
                print(f"OK:   {layer:<9} {count:>8} rows")
    finally:
        conn.close()
    return ok


if __name__ == "__main__":
    success = check(sys.argv[1] if len(sys.argv) > 1 else None)
    sys.exit(0 if success else 1)
