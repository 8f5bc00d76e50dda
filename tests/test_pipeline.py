import json
import tempfile
import unittest
from pathlib import Path

import polars as pl

from _fixtures import DEMO_ITEMS, DEMO_ROWS, demo_settings, read_shards, write_demo_inputs
from simexport.pipeline.cleanup import clean_output_dir
from simexport.pipeline.driver import ExportPipeline, PipelineState, run_export, split_id_range


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def _data_lines(self, out_dir: Path):
        lines = []
        for body in read_shards(out_dir).values():
            lines.extend(body.splitlines()[1:])
        return lines


class ExportPipelineTests(PipelineTestCase):
    def test_end_to_end_export(self):
        write_demo_inputs(self.root)
        report = run_export(demo_settings(self.root))

        self.assertTrue(report.ok)
        self.assertEqual(report.state, PipelineState.COMPLETED)
        self.assertEqual(report.records_written, 4)
        self.assertEqual(report.warnings, 0)
        self.assertEqual(report.shards, ["part-00000-00000.csv"])

        shards = read_shards(self.root / "out")
        self.assertEqual(shards["part-00000-00000.csv"].splitlines(), DEMO_ROWS)

    def test_metadata_is_kept_out_of_data_rows(self):
        write_demo_inputs(self.root)
        run_export(demo_settings(self.root))

        meta = json.loads((self.root / "out" / "_export_meta.json").read_text(encoding="utf-8"))
        self.assertIn("created_at", meta)
        self.assertEqual(meta["report"]["state"], "completed")
        self.assertEqual(meta["report"]["records_written"], 4)
        self.assertEqual(meta["options"]["ITEM_ID_FIELD_NAME"], "item_id")

    def test_idempotent_output(self):
        write_demo_inputs(self.root)
        run_export(demo_settings(self.root))
        first = read_shards(self.root / "out")

        run_export(demo_settings(self.root))
        self.assertEqual(read_shards(self.root / "out"), first)

    def test_previous_output_removed_before_writing(self):
        write_demo_inputs(self.root)
        out = self.root / "out"
        (out / "nested").mkdir(parents=True)
        (out / "stale.csv").write_text("old", encoding="utf-8")
        (out / "nested" / "part-00009-00000.csv").write_text("old", encoding="utf-8")

        report = run_export(demo_settings(self.root))

        self.assertTrue(report.ok)
        self.assertFalse((out / "stale.csv").exists())
        self.assertFalse((out / "nested").exists())
        self.assertEqual(sorted(p.name for p in out.iterdir()), ["_export_meta.json", "part-00000-00000.csv"])

    def test_missing_cross_matrix_is_not_an_error(self):
        write_demo_inputs(self.root, with_cross=False)
        report = run_export(demo_settings(self.root))

        self.assertTrue(report.ok)
        self.assertEqual(
            self._data_lines(self.root / "out"),
            ["ipad,iphone,", "iphone,ipad,", "nexus,galaxy iphone,", "galaxy,nexus,"],
        )

    def test_custom_field_labels(self):
        write_demo_inputs(self.root)
        run_export(
            demo_settings(
                self.root,
                ITEM_ID_FIELD_NAME="id",
                ITEM_SIMILARITY_FIELD_NAME="purchase_sims",
                CROSS_ACTION_SIMILARITY_FIELD_NAME="view_sims",
            )
        )
        body = read_shards(self.root / "out")["part-00000-00000.csv"]
        self.assertEqual(body.splitlines()[0], "id,purchase_sims,view_sims")

    def test_unresolved_ids_are_counted(self):
        items = {k: v for k, v in DEMO_ITEMS.items() if k != 3}
        write_demo_inputs(self.root, items=items)

        report = run_export(demo_settings(self.root))

        self.assertTrue(report.ok)
        self.assertEqual(report.records_written, 3)
        self.assertEqual(report.unresolved_items, 1)
        self.assertEqual(report.unresolved_neighbors, 2)
        self.assertEqual(
            self._data_lines(self.root / "out"),
            ["ipad,iphone,iphone nexus", "iphone,ipad,ipad", "nexus,iphone,"],
        )

    def test_warning_threshold_fails_the_run(self):
        items = {k: v for k, v in DEMO_ITEMS.items() if k != 3}
        write_demo_inputs(self.root, items=items)

        report = run_export(demo_settings(self.root, MAX_RESOLUTION_WARNINGS=1))

        self.assertFalse(report.ok)
        self.assertEqual(report.state, PipelineState.FAILED)
        self.assertEqual(report.error_category, "resolution")
        self.assertEqual(report.failed_stage, "streaming")
        # partial output stays for inspection
        self.assertTrue((self.root / "out" / "_export_meta.json").exists())

    def test_partitioned_run_matches_sequential_run(self):
        write_demo_inputs(self.root)
        report = run_export(demo_settings(self.root, PARTITIONS=3))

        self.assertTrue(report.ok)
        self.assertEqual(report.records_written, 4)
        self.assertEqual(report.shards, ["part-00000-00000.csv", "part-00001-00000.csv"])
        self.assertEqual(self._data_lines(self.root / "out"), DEMO_ROWS[1:])

    def test_partitioned_run_keeps_threshold_global(self):
        # [0,2) sees 1 unresolved id and [2,4) sees 2; only the run-wide total of 3 exceeds 2
        items = {k: v for k, v in DEMO_ITEMS.items() if k != 3}
        write_demo_inputs(self.root, items=items)

        report = run_export(demo_settings(self.root, PARTITIONS=3, MAX_RESOLUTION_WARNINGS=2))

        self.assertEqual(report.state, PipelineState.FAILED)
        self.assertEqual(report.error_category, "resolution")
        self.assertEqual(report.failed_stage, "streaming")
        self.assertEqual(report.warnings, 3)

    def test_cancel_stops_every_partition(self):
        write_demo_inputs(self.root)
        pipeline = ExportPipeline(demo_settings(self.root, PARTITIONS=3))
        pipeline.cancel()

        report = pipeline.run()

        self.assertEqual(report.state, PipelineState.FAILED)
        self.assertEqual(report.error_category, "cancelled")
        self.assertEqual(report.records_written, 0)
        self.assertEqual(report.shards, [])

    def test_cancel_moves_to_failed(self):
        write_demo_inputs(self.root)
        pipeline = ExportPipeline(demo_settings(self.root))
        pipeline.cancel()

        report = pipeline.run()

        self.assertEqual(pipeline.state, PipelineState.FAILED)
        self.assertEqual(report.error_category, "cancelled")
        self.assertEqual(report.records_written, 0)

    def test_state_transitions(self):
        write_demo_inputs(self.root)
        pipeline = ExportPipeline(demo_settings(self.root))
        self.assertEqual(pipeline.state, PipelineState.IDLE)

        pipeline.load_indexes()
        self.assertEqual(pipeline.state, PipelineState.INDEXES_LOADED)
        self.assertEqual(len(pipeline.item_index), 4)
        self.assertEqual(len(pipeline.user_index), 2)

        with self.assertRaises(RuntimeError):
            pipeline.load_indexes()


class ExportPipelineFailureTests(PipelineTestCase):
    def _stale_output(self) -> Path:
        stale = self.root / "out" / "previous.csv"
        stale.parent.mkdir(parents=True)
        stale.write_text("keep me", encoding="utf-8")
        return stale

    def test_missing_primary_matrix(self):
        write_demo_inputs(self.root)
        stale = self._stale_output()

        report = run_export(demo_settings(self.root, ITEM_SIMILARITY_MATRIX_DIR=self.root / "nope"))

        self.assertEqual(report.state, PipelineState.FAILED)
        self.assertEqual(report.failed_stage, "open_readers")
        # fatal before streaming: previous output untouched
        self.assertTrue(stale.exists())

    def test_null_ids_in_matrix_fail_before_cleanup(self):
        write_demo_inputs(self.root)
        pl.DataFrame(
            {"row_id": [0, 0, None], "col_id": [None, 1, 0], "score": [0.9, 0.5, 0.3]},
            schema={"row_id": pl.Int64, "col_id": pl.Int64, "score": pl.Float64},
        ).write_parquet(self.root / "primary" / "part-00000.parquet")
        stale = self._stale_output()

        report = run_export(demo_settings(self.root))

        self.assertEqual(report.state, PipelineState.FAILED)
        self.assertEqual(report.failed_stage, "open_readers")
        self.assertEqual(report.records_written, 0)
        self.assertTrue(stale.exists())

    def test_missing_user_index(self):
        write_demo_inputs(self.root)
        (self.root / "indexes" / "user_index.parquet").unlink()
        stale = self._stale_output()

        report = run_export(demo_settings(self.root))

        self.assertEqual(report.error_category, "index")
        self.assertEqual(report.failed_stage, "load_indexes")
        self.assertTrue(stale.exists())

    def test_unsafe_external_id_fails_at_index_load(self):
        items = dict(DEMO_ITEMS)
        items[2] = "nexus 5"
        write_demo_inputs(self.root, items=items)

        report = run_export(demo_settings(self.root))

        self.assertEqual(report.error_category, "index")

    def test_missing_required_options(self):
        report = run_export(demo_settings(self.root, OUTPUT_DIR=None, ITEM_SIMILARITY_MATRIX_DIR=None))

        self.assertEqual(report.error_category, "config")
        self.assertEqual(report.failed_stage, "config")
        self.assertIn("output location is required", report.error)


class CleanupTests(PipelineTestCase):
    def test_missing_location_is_not_an_error(self):
        self.assertFalse(clean_output_dir(self.root / "missing"))

    def test_removes_file_or_tree(self):
        f = self.root / "file.csv"
        f.write_text("x", encoding="utf-8")
        self.assertTrue(clean_output_dir(f))
        self.assertFalse(f.exists())

        d = self.root / "tree" / "deep"
        d.mkdir(parents=True)
        (d / "x.csv").write_text("x", encoding="utf-8")
        self.assertTrue(clean_output_dir(self.root / "tree"))
        self.assertFalse((self.root / "tree").exists())


class SplitIdRangeTests(unittest.TestCase):
    def test_contiguous_disjoint_ranges(self):
        self.assertEqual(split_id_range(0, 10, 3), [(0, 4), (4, 8), (8, 10)])

    def test_more_parts_than_ids(self):
        self.assertEqual(split_id_range(0, 2, 5), [(0, 1), (1, 2)])

    def test_empty_range(self):
        self.assertEqual(split_id_range(5, 5, 2), [])


if __name__ == "__main__":
    unittest.main()
