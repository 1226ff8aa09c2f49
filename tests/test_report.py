"""Tests for threadfix.lib.report."""

import json

from threadfix.lib.report import JsonFileSink, OrchestrationReport, PRReport, StdoutSink, ThreadReport


def sample_report() -> OrchestrationReport:
    return OrchestrationReport(
        strategy="batch",
        policy="continue",
        gate_open=False,
        prs=[
            PRReport(
                pr_id="1",
                state="done",
                resolved=[ThreadReport("PRRT_a", "a.py:3", commit_ref="abc123", attempts=1)],
                failed=[ThreadReport("PRRT_b", "b.py:?", reason="tests failed", attempts=2)],
                deferred=[ThreadReport("PRRT_c", "c.py:9", reason="dependency PRRT_b did not succeed")],
            ),
            PRReport(pr_id="2", state="skipped", reason="tier 1 did not complete cleanly (1)"),
        ],
    )


class TestPRReport:
    def test_markdown_sections(self):
        text = sample_report().prs[0].to_markdown()
        assert text.startswith("## Automated Resolution Summary")
        assert "- [PRRT_a] a.py:3 - addressed in abc123" in text
        assert "- [PRRT_b] b.py:? - tests failed" in text
        assert "### Deferred Threads" in text
        assert "1 resolved, 1 failed, 1 deferred" in text

    def test_all_resolved_status(self):
        report = PRReport(pr_id="1", state="done", resolved=[ThreadReport("a", "a.py:1", commit_ref="x")])
        assert report.ok
        assert "All threads marked as resolved" in report.to_markdown()

    def test_aborted_shows_reason(self):
        report = PRReport(pr_id="1", state="aborted", reason="SourceUnavailable: down")
        assert not report.ok
        assert "Run aborted: SourceUnavailable: down" in report.to_markdown()


class TestOrchestrationReport:
    def test_ok_requires_every_pr(self):
        assert not sample_report().ok

    def test_get(self):
        assert sample_report().get("2").state == "skipped"

    def test_json_round_trip_fields(self):
        data = json.loads(sample_report().to_json())
        assert data["gate_open"] is False
        assert data["prs"][0]["failed"][0]["reason"] == "tests failed"

    def test_markdown_mentions_closed_gate(self):
        assert "Batch gate closed" in sample_report().to_markdown()


class TestSinks:
    def test_json_file_sink(self, tmp_path):
        path = tmp_path / "out" / "report.json"
        JsonFileSink(path).publish(sample_report())
        assert json.loads(path.read_text())["strategy"] == "batch"

    def test_stdout_sink(self, capsys):
        StdoutSink().publish(sample_report())
        assert "# PR 1 [done]" in capsys.readouterr().out
