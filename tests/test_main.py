"""main モジュールのテスト. DB・分析はモックに差し替える."""

import json
from unittest.mock import patch

import pytest

from plancompare.analysis import InvalidRequestError
from plancompare.main import ingest, run, run_analysis
from plancompare.models import AnalysisResponse


def _plan_row(plan_id: str, source: str) -> dict:
    return {
        "id": plan_id,
        "source": source,
        "plan_data": {"name": f"{source} plan"},
        "scrape_timestamp": "2026-10-18T06:00:00+00:00",
    }


class TestIngest:
    """ingest のテスト."""

    @patch("plancompare.main.insert_plans")
    def test_normalizes_before_insert(self, mock_insert):
        mock_insert.return_value = [{"id": "1"}, {"id": "2"}]
        records = [
            {"name": "Plan A", "data": "50000", "price": "1300", "contract": "24 months"},
            "broken",
        ]

        rows = ingest("O2", records, scrape_id="run-1")

        assert len(rows) == 2
        source, normalized = mock_insert.call_args.args
        assert source == "O2"
        assert normalized[0]["plan_key"] == "O2-50GB-24months"
        assert normalized[0]["price"] == "£13.00"
        assert normalized[1]["normalization_error"] is True
        assert mock_insert.call_args.kwargs["scrape_id"] == "run-1"

    @patch("plancompare.main.insert_plans", return_value=[])
    def test_generates_scrape_id(self, mock_insert):
        ingest("Sky", [{"name": "Plan"}])
        assert mock_insert.call_args.kwargs["scrape_id"]


class TestRunAnalysis:
    """run_analysis のテスト."""

    @patch("plancompare.main.generate_analysis")
    @patch("plancompare.main.get_recent_plans")
    def test_full_uses_all_sources(self, mock_plans, mock_generate):
        mock_plans.return_value = [_plan_row("1", "Vodafone"), _plan_row("2", "O2"), _plan_row("3", "Sky")]
        mock_generate.return_value = AnalysisResponse(False, "a1", "2026-10-18T09:00:00+00:00", {"currency": "GBP"})

        result = run_analysis("full")

        request = mock_generate.call_args.args[0]
        assert request.comparison_type == "full"
        assert request.brands == ["O2", "Sky", "Vodafone"]
        assert request.plan_ids == ["1", "2", "3"]
        assert mock_plans.call_args.kwargs["brands"] is None
        assert result["analysisId"] == "a1"
        assert result["cached"] is False

    @patch("plancompare.main.generate_analysis")
    @patch("plancompare.main.get_recent_plans")
    def test_custom_filters_brands(self, mock_plans, mock_generate):
        mock_plans.return_value = [_plan_row("1", "O2"), _plan_row("2", "Vodafone")]
        mock_generate.return_value = AnalysisResponse(True, "a2", "2026-10-18T09:00:00+00:00", {}, "custom")

        run_analysis("custom", ["O2", "Vodafone"])

        assert mock_plans.call_args.kwargs["brands"] == ["O2", "Vodafone"]
        assert mock_generate.call_args.args[0].brands == ["O2", "Vodafone"]

    @patch("plancompare.main.get_recent_plans", return_value=[])
    def test_no_plans_rejected(self, mock_plans):
        with patch("plancompare.analysis.find_cached_analysis") as mock_find:
            with pytest.raises(InvalidRequestError):
                run_analysis("full")
        mock_find.assert_not_called()


class TestRun:
    """CLI のテスト."""

    @pytest.fixture(autouse=True)
    def no_logging_setup(self):
        with patch("plancompare.main.setup_logging"):
            yield

    @patch("plancompare.main.run_analysis")
    def test_analyze_custom_prints_json(self, mock_run, capsys):
        mock_run.return_value = {"cached": True, "analysisId": "a1", "createdAt": "t", "data": {}}

        assert run(["analyze-custom", "O2", "Vodafone"]) == 0

        mock_run.assert_called_once_with("custom", ["O2", "Vodafone"])
        assert json.loads(capsys.readouterr().out)["analysisId"] == "a1"

    @patch("plancompare.main.run_analysis", side_effect=InvalidRequestError("no plans"))
    def test_analysis_error_exit_code(self, mock_run):
        assert run(["analyze-full"]) == 1

    @patch("plancompare.main.insert_plans", return_value=[{"id": "1"}])
    def test_ingest_reads_file(self, mock_insert, tmp_path):
        path = tmp_path / "o2.json"
        path.write_text(json.dumps([{"name": "Plan", "data": "20GB"}]), encoding="utf-8")

        assert run(["ingest", "O2", str(path), "--scrape-id", "run-9"]) == 0
        assert mock_insert.call_args.kwargs["scrape_id"] == "run-9"

    @patch("plancompare.main.get_analysis", return_value=None)
    def test_show_missing(self, mock_get):
        assert run(["show", "missing"]) == 1

    @patch("plancompare.main.get_recent_analyses")
    def test_list_recent(self, mock_recent, capsys):
        mock_recent.return_value = [
            {"id": "a2", "comparison_type": "custom", "brands": ["O2", "Sky"], "created_at": "2026-10-18"},
            {"id": "a1", "comparison_type": "full", "brands": ["O2"], "created_at": "2026-10-17"},
        ]

        assert run(["list", "--limit", "2"]) == 0

        mock_recent.assert_called_once_with(limit=2)
        assert [r["id"] for r in json.loads(capsys.readouterr().out)] == ["a2", "a1"]

    @patch("plancompare.main.get_recent_analyses", return_value=[])
    def test_list_default_limit(self, mock_recent):
        assert run(["list"]) == 0
        mock_recent.assert_called_once_with(limit=10)
