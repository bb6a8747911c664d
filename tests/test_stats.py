"""Tests for storyforge.lib.stats module."""

from storyforge.lib.stats import (
    AgentStats,
    format_duration,
    format_phase_summary,
    load_agent_stats,
    record_agent_stats,
    summarize_by_phase,
)


def _stats(phase, run_id="r1", elapsed=10.0, tokens=100):
    return AgentStats(
        timestamp="2025-01-01T00:00:00+00:00",
        run_id=run_id,
        phase=phase,
        elapsed_seconds=elapsed,
        outcome="iteration_complete",
        story_id="US-001",
        input_tokens=tokens,
        output_tokens=tokens // 2,
    )


class TestStatsLog:
    def test_record_and_load(self, tmp_path):
        record_agent_stats(tmp_path, _stats("implement"))
        record_agent_stats(tmp_path, _stats("review", run_id="r2"))
        assert len(load_agent_stats(tmp_path)) == 2
        assert [s.phase for s in load_agent_stats(tmp_path, run_id="r2")] == ["review"]

    def test_corrupted_lines_skipped(self, tmp_path, caplog):
        record_agent_stats(tmp_path, _stats("implement"))
        with open(tmp_path / "stats.jsonl", "a") as f:
            f.write("garbage\n")
            f.write('{"unexpected": 1}\n')
        assert len(load_agent_stats(tmp_path)) == 1
        assert "Skipping corrupted stats line" in caplog.text


class TestSummaries:
    def test_summarize_by_phase(self):
        summary = summarize_by_phase([_stats("implement"), _stats("review", elapsed=5), _stats("implement")])
        assert list(summary) == ["implement", "review"]
        assert summary["implement"].calls == 2
        assert summary["implement"].elapsed_seconds == 20.0
        assert summary["review"].input_tokens == 100

    def test_format_duration(self):
        assert format_duration(5.25) == "5.2s"
        assert format_duration(125) == "2m 5s"
        assert format_duration(7300) == "2h 1m"

    def test_format_phase_summary(self):
        lines = format_phase_summary(summarize_by_phase([_stats("implement")]))
        assert len(lines) == 1
        assert "implement" in lines[0]
        assert "1 calls" in lines[0]
