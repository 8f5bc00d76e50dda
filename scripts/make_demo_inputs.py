# scripts/make_demo_inputs.py

from __future__ import annotations

import polars as pl

from simexport.config.settings import settings

DEMO_DIR = settings.DATA_DIR / "demo"


def main() -> None:
    """
    Write a tiny phone/tablet dataset for trying the export end to end:

        python -m scripts.make_demo_inputs
        python -m simexport.pipeline.write_to_index \
            -ism data/demo/similarity/primary -csm data/demo/similarity/cross_action \
            -ix data/demo/indexes -o data/demo/solr_docs
    """
    indexes = DEMO_DIR / "indexes"
    primary_dir = DEMO_DIR / "similarity" / "primary"
    cross_dir = DEMO_DIR / "similarity" / "cross_action"
    for d in (indexes, primary_dir, cross_dir):
        d.mkdir(parents=True, exist_ok=True)

    items = pl.DataFrame(
        {
            "internal_id": [0, 1, 2, 3],
            "external_id": ["ipad", "iphone", "nexus", "galaxy"],
        }
    )
    users = pl.DataFrame(
        {
            "internal_id": [0, 1, 2],
            "external_id": ["u-alice", "u-bob", "u-carol"],
        }
    )

    # purchase-purchase similarities, score-descending per row
    primary = pl.DataFrame(
        {
            "row_id": [0, 1, 2, 2, 3],
            "col_id": [1, 0, 3, 1, 2],
            "score": [0.9, 0.9, 0.8, 0.4, 0.8],
        }
    )
    # view-purchase similarities
    cross = pl.DataFrame(
        {
            "row_id": [0, 0, 1, 1, 3],
            "col_id": [1, 2, 0, 3, 1],
            "score": [0.7, 0.6, 0.7, 0.3, 0.5],
        }
    )

    items.write_parquet(indexes / "item_index.parquet")
    users.write_parquet(indexes / "user_index.parquet")
    primary.write_parquet(primary_dir / "part-00000.parquet")
    cross.write_parquet(cross_dir / "part-00000.parquet")

    print("[DONE] Demo inputs written.")
    print(f"[PATH] {indexes}")
    print(f"[PATH] {primary_dir}")
    print(f"[PATH] {cross_dir}")


if __name__ == "__main__":
    main()
