import os
from pathlib import Path

from repository import PortalRepository
from snapshot import sync_snapshot

DATA_DIR = os.environ.get("DATA_DIR", "./data")
DUCKDB_PATH = os.environ.get("SNAPSHOT_DB", os.path.join(DATA_DIR, "portal.duckdb"))

def main(repo=None, data_dir=DATA_DIR, db_path=DUCKDB_PATH):
    Path(data_dir).mkdir(parents=True, exist_ok=True)
    repo = repo or PortalRepository()
    counts = sync_snapshot(repo, db_path, data_dir, progress=print)
    print("ETL complete:", ", ".join(f"{t}={n}" for t, n in counts.items()))
    return counts

if __name__ == "__main__":
    main()
