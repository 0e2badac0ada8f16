"""
Unit tests for output sinks.
"""

import json

from batch_guard.storage.models import OutcomeStatus, UnitOutcome, WorkUnitKey
from batch_guard.storage.sinks import JsonlSink, MarkdownSink


class TestJsonlSink:
    """Test append-only JSONL output."""

    def test_appends_one_line_per_outcome(self, tmp_path):
        path = tmp_path / "out" / "results.jsonl"
        sink = JsonlSink(str(path))
        key = WorkUnitKey.of("North", "q1", 0)

        sink.append_result(key, UnitOutcome(key, OutcomeStatus.COMPLETED, value={"themes": ["a"]}, cost=12))
        sink.append_result(key, UnitOutcome(key, OutcomeStatus.FAILED, error="boom"))

        lines = path.read_text(encoding='utf-8').splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first == {
            "key": ["North", "q1", 0],
            "status": "completed",
            "value": {"themes": ["a"]},
            "cost": 12,
            "error": None,
        }
        assert json.loads(lines[1])["error"] == "boom"

    def test_lookup_returns_completed_values_only(self, tmp_path):
        path = tmp_path / "results.jsonl"
        done = WorkUnitKey.of("a", 0)
        failed = WorkUnitKey.of("a", 1)
        writer = JsonlSink(str(path))
        writer.append_result(done, UnitOutcome(done, OutcomeStatus.COMPLETED, value="summary"))
        writer.append_result(failed, UnitOutcome(failed, OutcomeStatus.FAILED, error="x"))

        reader = JsonlSink(str(path))
        assert reader.lookup(done) == "summary"
        assert reader.lookup(failed) is None

    def test_lookup_skips_unreadable_lines(self, tmp_path):
        path = tmp_path / "results.jsonl"
        path.write_text('garbage\n{"key": ["a", 0], "status": "completed", "value": 1}\n', encoding='utf-8')
        assert JsonlSink(str(path)).lookup(WorkUnitKey.of("a", 0)) == 1

    def test_lookup_sees_new_appends(self, tmp_path):
        sink = JsonlSink(str(tmp_path / "results.jsonl"))
        key = WorkUnitKey.of("a", 0)
        assert sink.lookup(key) is None
        sink.append_result(key, UnitOutcome(key, OutcomeStatus.COMPLETED, value="v"))
        assert sink.lookup(key) == "v"


class TestMarkdownSink:
    """Test per-unit Markdown output and the combined report."""

    def test_unit_paths_are_unique_after_sanitizing(self, tmp_path):
        sink = MarkdownSink(str(tmp_path))
        first = sink.unit_path(WorkUnitKey.of("a/b", "c"))
        second = sink.unit_path(WorkUnitKey.of("a_b", "c"))
        assert first != second
        assert first.parent == tmp_path

    def test_writes_unit_files_and_report(self, tmp_path):
        report = tmp_path / "report.md"
        sink = MarkdownSink(str(tmp_path / "units"), report_path=str(report), title="District Report")
        done = WorkUnitKey.of("North", 0)
        failed = WorkUnitKey.of("North", 1)

        sink.append_result(done, UnitOutcome(done, OutcomeStatus.COMPLETED, value={"text": "## Themes\n- parking"}))
        sink.append_result(failed, UnitOutcome(failed, OutcomeStatus.FAILED, error="boom"))
        sink.flush()

        assert sink.unit_path(done).read_text(encoding='utf-8') == "## Themes\n- parking"
        assert not sink.unit_path(failed).exists()
        content = report.read_text(encoding='utf-8')
        assert content.startswith("# District Report")
        assert "- parking" in content
        assert "*Batch North / 1 failed after retries*" in content

    def test_structured_values_render_as_json(self, tmp_path):
        sink = MarkdownSink(str(tmp_path))
        key = WorkUnitKey.of("a", 0)
        sink.append_result(key, UnitOutcome(key, OutcomeStatus.COMPLETED, value={"themes": ["x"]}))
        assert sink.lookup(key).startswith("```json")

    def test_lookup_missing_unit(self, tmp_path):
        assert MarkdownSink(str(tmp_path)).lookup(WorkUnitKey.of("a", 0)) is None
