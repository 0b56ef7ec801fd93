"""
Unit tests for backfill deduplication.
"""

import json
import shutil
import tempfile
from datetime import datetime
from pathlib import Path

from token_ledger.core.dedup import BackfillDedup, compute_event_id


class TestEventId:
    """Test content-hash event ids."""

    def test_same_inputs_same_id(self):
        a = compute_event_id("s1", "2026-01-01T00:00:00Z", "claude-sonnet-4.5")
        b = compute_event_id("s1", "2026-01-01T00:00:00Z", "claude-sonnet-4.5")
        assert a == b
        assert len(a) == 64

    def test_model_is_normalized(self):
        raw = compute_event_id("s1", "t", "claude-sonnet-4-5-20250929")
        assert raw == compute_event_id("s1", "t", "claude-sonnet-4.5")

    def test_any_field_changes_id(self):
        base = compute_event_id("s1", "t", "claude-haiku-4")
        assert base != compute_event_id("s2", "t", "claude-haiku-4")
        assert base != compute_event_id("s1", "t2", "claude-haiku-4")
        assert base != compute_event_id("s1", "t", "claude-opus-4.6")


class TestBackfillDedup:
    """Test processed-id bookkeeping."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.state_path = Path(self.temp_dir) / "backfill-state.json"
        self.dedup = BackfillDedup(self.state_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_initial_state(self):
        stats = self.dedup.get_stats()
        assert stats["total_processed"] == 0
        assert datetime.fromisoformat(stats["last_backfill_time"])

    def test_mark_and_check(self):
        assert not self.dedup.is_processed("e1")
        self.dedup.mark_processed("e1")
        assert self.dedup.is_processed("e1")

    def test_marking_is_idempotent(self):
        self.dedup.mark_processed("e1")
        self.dedup.mark_processed("e1")
        self.dedup.mark_processed("e2")
        assert self.dedup.get_stats()["total_processed"] == 2

    def test_state_survives_save_and_load(self):
        self.dedup.mark_processed("e1")
        self.dedup.mark_processed("e2")
        assert self.dedup.save()

        data = json.loads(self.state_path.read_text(encoding="utf-8"))
        assert sorted(data["processedIds"]) == ["e1", "e2"]
        assert "lastBackfillTime" in data

        restored = BackfillDedup(self.state_path)
        restored.load()
        assert restored.is_processed("e1")
        assert restored.get_stats()["total_processed"] == 2
        assert restored.get_stats()["last_backfill_time"] == data["lastBackfillTime"]

    def test_load_missing_or_corrupt_file(self):
        self.dedup.load()
        assert self.dedup.get_stats()["total_processed"] == 0

        self.state_path.write_text("not json", encoding="utf-8")
        self.dedup.load()
        assert self.dedup.get_stats()["total_processed"] == 0

    def test_reset_clears_memory_and_file(self):
        self.dedup.mark_processed("e1")
        self.dedup.save()

        self.dedup.reset()

        assert not self.dedup.is_processed("e1")
        assert not self.state_path.exists()
