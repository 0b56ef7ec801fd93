"""
Unit tests for transcript backfill.

Tests usage extraction, agent attribution and replay deduplication.
"""

import json
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from token_ledger.config.loader import AnalyticsConfig, PricingConfig
from token_ledger.core.backfill import (
    BackfillEngine,
    extract_task_spawns,
    extract_token_usage,
    scan_transcripts,
    session_id_from_path,
)
from token_ledger.core.context import AnalyticsContext
from token_ledger.core.dedup import compute_event_id
from token_ledger.core.pricing import reset_adapter_cache
from token_ledger.storage.models import RecordValidationError

SESSION_ID = "0f8e7d6c-1a2b-4c3d-8e9f-001122334455"


def _assistant(timestamp, model="claude-sonnet-4-5-20250929", usage=None, content=None):
    return {
        "type": "assistant",
        "timestamp": timestamp,
        "sessionId": SESSION_ID,
        "message": {
            "model": model,
            "usage": usage if usage is not None else {
                "input_tokens": 100,
                "output_tokens": 40,
                "cache_creation_input_tokens": 10,
                "cache_read_input_tokens": 500,
            },
            "content": content or [],
        },
    }


def _task_call(tool_use_id, agent_type):
    return {"type": "tool_use", "name": "Task", "id": tool_use_id, "input": {"subagent_type": agent_type}}


def _progress(timestamp, parent_id, model="claude-haiku-4-5", agent_id=None):
    entry = {
        "type": "progress",
        "timestamp": timestamp,
        "parentToolUseID": parent_id,
        "data": {
            "message": {
                "message": {
                    "model": model,
                    "usage": {"input_tokens": 20, "output_tokens": 5},
                }
            }
        },
    }
    if agent_id:
        entry["agentId"] = agent_id
    return entry


class TestExtraction:
    """Test turning transcript entries into records."""

    def test_assistant_entry(self):
        extracted = extract_token_usage(_assistant("2026-01-01T00:00:00Z"), SESSION_ID, "t.jsonl")
        record = extracted.record

        assert record.session_id == SESSION_ID
        assert record.timestamp == "2026-01-01T00:00:00Z"
        assert record.model_name == "claude-sonnet-4.5"
        assert record.agent_name is None
        assert (record.input_tokens, record.output_tokens) == (100, 40)
        assert (record.cache_creation_tokens, record.cache_read_tokens) == (10, 500)
        assert extracted.entry_id == compute_event_id(SESSION_ID, "2026-01-01T00:00:00Z", "claude-sonnet-4.5")
        assert extracted.source_file == "t.jsonl"

    def test_progress_entry_attributed_to_spawning_agent(self):
        extracted = extract_token_usage(
            _progress("2026-01-01T00:00:01Z", "toolu_1"), SESSION_ID, "t.jsonl", {"toolu_1": "executor"}
        )
        assert extracted.record.agent_name == "executor"
        assert extracted.record.model_name == "claude-haiku-4"

    def test_progress_entry_falls_back_to_agent_id(self):
        entry = _progress("2026-01-01T00:00:01Z", None, agent_id="oh-my:architect")
        extracted = extract_token_usage(entry, SESSION_ID, "t.jsonl", {})
        assert extracted.record.agent_name == "oh-my:architect"

    def test_entries_without_usage_are_ignored(self):
        assert extract_token_usage({"type": "user", "message": {}}, SESSION_ID, "t") is None
        assert extract_token_usage({"type": "assistant", "message": {"model": "x"}}, SESSION_ID, "t") is None

    def test_synthetic_model_skipped(self):
        entry = _assistant("2026-01-01T00:00:00Z", model="<synthetic>")
        assert extract_token_usage(entry, SESSION_ID, "t") is None

    def test_session_id_falls_back_to_entry(self):
        extracted = extract_token_usage(_assistant("2026-01-01T00:00:00Z"), None, "t")
        assert extracted.record.session_id == SESSION_ID

    def test_malformed_counts_raise(self):
        entry = _assistant("2026-01-01T00:00:00Z", usage={"input_tokens": -5, "output_tokens": 1})
        with pytest.raises(RecordValidationError):
            extract_token_usage(entry, SESSION_ID, "t")

    def test_task_spawns(self):
        entry = _assistant("t", content=[
            {"type": "text", "text": "delegating"},
            _task_call("toolu_1", "planner"),
            {"type": "tool_use", "name": "Read", "id": "toolu_2", "input": {}},
            {"type": "tool_use", "name": "Task", "id": "toolu_3", "input": {}},
        ])
        spawns = extract_task_spawns(entry)
        assert [(s.tool_use_id, s.agent_type) for s in spawns] == [("toolu_1", "planner")]
        assert extract_task_spawns({"type": "progress"}) == []


class TestBackfillEngine:
    """Test end-to-end backfill runs."""

    def setup_method(self):
        reset_adapter_cache()
        self.temp_dir = tempfile.mkdtemp()
        root = Path(self.temp_dir)
        config = AnalyticsConfig(state_dir=root / "state", pricing=PricingConfig(external_module=None))
        self.context = AnalyticsContext(config, session_id="live-session")
        self.projects = root / "projects" / "-home-user-project"
        self.projects.mkdir(parents=True)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _engine(self):
        return BackfillEngine(self.context.tracker, self.context.dedup)

    def _write_transcript(self, entries, session_id=SESSION_ID, extra_lines=()):
        path = self.projects / f"{session_id}.jsonl"
        with open(path, "w", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps(entry) + "\n")
            for line in extra_lines:
                f.write(line + "\n")
        return path

    def _standard_transcript(self):
        return self._write_transcript([
            {"type": "user", "timestamp": "2026-01-01T00:00:00Z"},
            _assistant("2026-01-01T00:00:01Z", content=[_task_call("toolu_1", "executor")]),
            _progress("2026-01-01T00:00:02Z", "toolu_1"),
            _assistant("2026-01-01T00:00:03Z", model="<synthetic>"),
            _assistant("2026-01-01T00:00:04Z", model="claude-opus-4-6"),
        ])

    def test_scan_and_session_id(self):
        path = self._standard_transcript()
        (self.projects / "notes.jsonl").write_text("", encoding="utf-8")
        (self.projects / "sessions-index.json").write_text("{}", encoding="utf-8")

        assert scan_transcripts(self.projects.parent) == [path]
        assert scan_transcripts(path) == [path]
        assert scan_transcripts(Path(self.temp_dir) / "missing") == []
        assert session_id_from_path(path) == SESSION_ID

    def test_run_appends_records_with_original_session(self):
        self._standard_transcript()

        result = self._engine().run([self.projects.parent])

        assert result.files_processed == 1
        assert result.entries_added == 3
        assert result.duplicates_skipped == 0
        assert result.errors_encountered == 0
        assert result.total_cost_discovered > 0

        records = self.context.event_log.read_all()
        assert {r.session_id for r in records} == {SESSION_ID}
        assert [r.timestamp for r in records] == [
            "2026-01-01T00:00:01Z", "2026-01-01T00:00:02Z", "2026-01-01T00:00:04Z",
        ]
        assert [r.agent_name for r in records] == [None, "executor", None]
        # Historical records do not leak into the live session
        assert self.context.tracker.get_session_stats().total_input_tokens == 0

    def test_replay_adds_nothing(self):
        self._standard_transcript()
        self._engine().run([self.projects])

        again = self._engine().run([self.projects])

        assert again.entries_added == 0
        assert again.duplicates_skipped == 3
        assert len(self.context.event_log.read_all()) == 3

    def test_dedup_state_persisted(self):
        self._standard_transcript()
        self._engine().run([self.projects])

        fresh = AnalyticsContext(self.context.config)
        fresh.dedup.load()
        assert fresh.dedup.get_stats()["total_processed"] == 3

    def test_replay_after_crash_adds_each_entry_once(self):
        self._standard_transcript()
        self._write_transcript(
            [_assistant(f"2026-01-02T00:00:0{n}Z") for n in range(3)],
            session_id="9a8b7c6d-1111-4222-8333-444455556666",
        )
        tracker = self.context.tracker
        ingest = tracker.ingest
        calls = []

        def crash_on_fifth(record):
            calls.append(record)
            if len(calls) == 5:
                raise KeyboardInterrupt
            return ingest(record)

        with patch.object(tracker, "ingest", side_effect=crash_on_fifth):
            with pytest.raises(KeyboardInterrupt):
                self._engine().run([self.projects])
        assert self.context.event_log.line_count() == 4

        restarted = AnalyticsContext(self.context.config, session_id="live-session")
        result = BackfillEngine(restarted.tracker, restarted.dedup).run([self.projects])

        assert result.entries_added == 2
        assert result.duplicates_skipped == 4
        assert restarted.event_log.line_count() == 6

    def test_dry_run_writes_nothing(self):
        self._standard_transcript()

        result = self._engine().run([self.projects], dry_run=True)

        assert result.entries_added == 3
        assert not self.context.event_log.exists()
        assert not self.context.paths.dedup_file.exists()

    def test_parse_errors_counted(self):
        self._write_transcript(
            [_assistant("2026-01-01T00:00:01Z")],
            extra_lines=["{not json", json.dumps(_assistant("2026-01-01T00:00:02Z", usage={"input_tokens": "x"}))],
        )

        result = self._engine().run([self.projects])

        assert result.entries_added == 1
        assert result.errors_encountered == 2

    def test_backfilled_usage_visible_in_stats(self):
        self._standard_transcript()
        self._engine().run([self.projects])

        stats = self.context.tracker.load_session_stats(SESSION_ID)
        assert stats.total_input_tokens == 100 + 20 + 100
        assert set(stats.by_agent) == {"(main session)", "executor"}
        assert self.context.tracker.get_all_stats().session_count == 1
