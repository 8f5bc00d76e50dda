"""
Write item-item similarity matrices as search-index CSV documents.

Usage:
  python -m simexport.pipeline.write_to_index \
    -ism data/demo/similarity/primary \
    -csm data/demo/similarity/cross_action \
    -ix data/demo/indexes \
    -o data/demo/solr_docs

Output rows (one per item found in either matrix):
  item_id,similar_items,cross_action_similar_items
  ipad,iphone,iphone nexus

WARNING: the output location is deleted before writing.
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, List, Optional  # noqa: UP035

from pydantic import ValidationError

from simexport.config.settings import ExportSettings
from simexport.export.errors import EXIT_CODES
from simexport.pipeline.driver import run_export

# CLI flag -> settings field
_FLAG_FIELDS = {
    "item_similarity_matrix_dir": "ITEM_SIMILARITY_MATRIX_DIR",
    "cross_similarity_matrix_dir": "CROSS_SIMILARITY_MATRIX_DIR",
    "index_dir": "INDEX_DIR",
    "item_index": "ITEM_INDEX_PATH",
    "user_index": "USER_INDEX_PATH",
    "output": "OUTPUT_DIR",
    "item_id_field": "ITEM_ID_FIELD_NAME",
    "similar_items_field": "ITEM_SIMILARITY_FIELD_NAME",
    "cross_action_field": "CROSS_ACTION_SIMILARITY_FIELD_NAME",
    "delimiter": "FIELD_DELIMITER",
    "list_delimiter": "LIST_DELIMITER",
    "max_records_per_shard": "MAX_RECORDS_PER_SHARD",
    "max_bytes_per_shard": "MAX_BYTES_PER_SHARD",
    "max_warnings": "MAX_RESOLUTION_WARNINGS",
    "row_window": "ROW_WINDOW",
    "partitions": "PARTITIONS",
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="simexport-write",
        description="Join similarity matrices with id indexes and write search-index CSV docs.",
    )
    p.add_argument("-ism", "--item-similarity-matrix-dir", dest="item_similarity_matrix_dir",
                   help="Item-item similarity triples (parquet file or dir). Required.")
    p.add_argument("-csm", "--cross-similarity-matrix-dir", dest="cross_similarity_matrix_dir",
                   help="Cross-action similarity triples. Optional.")
    p.add_argument("-ix", "--index-dir", dest="index_dir",
                   help="Directory holding the item and user index files.")
    p.add_argument("-iix", "--item-index", dest="item_index",
                   help="Item index file, overrides <index-dir>/item_index.parquet.")
    p.add_argument("-uix", "--user-index", dest="user_index",
                   help="User index file, overrides <index-dir>/user_index.parquet.")
    p.add_argument("-o", "--output", dest="output",
                   help="Where to write docs. Deleted before writing. Required.")

    p.add_argument("--item-id-field", dest="item_id_field")
    p.add_argument("--similar-items-field", dest="similar_items_field")
    p.add_argument("--cross-action-field", dest="cross_action_field")
    p.add_argument("--delimiter", dest="delimiter")
    p.add_argument("--list-delimiter", dest="list_delimiter")
    p.add_argument("--no-header", action="store_true", default=False)

    p.add_argument("--max-records-per-shard", type=int, dest="max_records_per_shard")
    p.add_argument("--max-bytes-per-shard", type=int, dest="max_bytes_per_shard")
    p.add_argument("--max-warnings", type=int, dest="max_warnings",
                   help="Abort once more unresolved ids than this are seen. Negative disables.")
    p.add_argument("--row-window", type=int, dest="row_window")
    p.add_argument("--partitions", type=int, dest="partitions")
    p.add_argument("--no-progress", action="store_true", default=False)
    p.add_argument("--dump-options", action="store_true", default=False,
                   help="Print the resolved options and exit.")
    return p


def settings_from_args(args: argparse.Namespace) -> ExportSettings:
    overrides: Dict[str, Any] = {}
    for flag, name in _FLAG_FIELDS.items():
        value = getattr(args, flag, None)
        if value is not None:
            overrides[name] = value

    if overrides.get("MAX_RESOLUTION_WARNINGS", 0) < 0:
        overrides["MAX_RESOLUTION_WARNINGS"] = None
    if args.no_header:
        overrides["WRITE_HEADER"] = False
    if args.no_progress:
        overrides["SHOW_PROGRESS"] = False

    return ExportSettings(**overrides)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = settings_from_args(args)
    except ValidationError as e:
        print(f"[ERROR] invalid options: {e}", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return EXIT_CODES["config"]

    if args.dump_options:
        print(cfg.describe())
        return 0

    report = run_export(cfg)
    if report.ok:
        return 0

    if report.error_category == "config":
        parser.print_usage(sys.stderr)
    return EXIT_CODES.get(report.error_category, 1)


if __name__ == "__main__":
    sys.exit(main())
