"""db モジュールのモックテスト."""

from unittest.mock import MagicMock, patch

import pytest


def _chain(data) -> MagicMock:
    """Supabase クエリビルダーのメソッドチェーンを模したモック."""
    chain = MagicMock()
    for name in ("select", "insert", "eq", "gt", "in_", "contains", "contained_by", "order", "limit"):
        getattr(chain, name).return_value = chain
    chain.execute.return_value = MagicMock(data=data)
    return chain


class TestInsertPlans:
    """insert_plan / insert_plans のテスト."""

    @patch("plancompare.db._table")
    def test_insert_records(self, mock_table):
        from plancompare.db import insert_plans

        mock_chain = _chain([{"id": "uuid-1"}, {"id": "uuid-2"}])
        mock_table.return_value = mock_chain

        plans = [
            {"name": "Plan A", "price": "£10.00", "plan_key": "O2-10GB-12months"},
            {"name": "Plan B", "price": "£15.00", "plan_key": "O2-Unlimited-24months"},
        ]
        rows = insert_plans("O2", plans, scrape_id="run-1")

        assert len(rows) == 2
        mock_table.assert_called_once_with("plans")
        # 1 回の INSERT でまとめて送る
        mock_chain.insert.assert_called_once_with([
            {"source": "O2", "plan_data": plans[0], "plan_key": "O2-10GB-12months", "scrape_id": "run-1"},
            {"source": "O2", "plan_data": plans[1], "plan_key": "O2-Unlimited-24months", "scrape_id": "run-1"},
        ])

    @patch("plancompare.db._table")
    def test_skip_empty(self, mock_table):
        from plancompare.db import insert_plans

        assert insert_plans("O2", []) == []
        mock_table.assert_not_called()

    @patch("plancompare.db._table")
    def test_insert_single(self, mock_table):
        from plancompare.db import insert_plan

        stored = {"id": "uuid-1", "scrape_timestamp": "2026-10-18T00:00:00+00:00"}
        mock_chain = _chain([stored])
        mock_table.return_value = mock_chain

        row = insert_plan("Sky", {"name": "Plan", "plan_key": "Sky-5GB-payg"})

        assert row == stored
        inserted = mock_chain.insert.call_args.args[0]
        assert inserted["plan_key"] == "Sky-5GB-payg"
        assert inserted["scrape_id"] is None


class TestGetRecentPlans:
    """get_recent_plans のテスト."""

    @patch("plancompare.db._table")
    def test_latest_per_plan_key(self, mock_table):
        from plancompare.db import get_recent_plans

        rows = [
            {"id": "3", "source": "O2", "plan_key": "O2-10GB-12months", "scrape_timestamp": "2026-10-18"},
            {"id": "2", "source": "Sky", "plan_key": "Sky-5GB-payg", "scrape_timestamp": "2026-10-17"},
            {"id": "1", "source": "O2", "plan_key": "O2-10GB-12months", "scrape_timestamp": "2026-10-16"},
        ]
        mock_table.return_value = _chain(rows)

        result = get_recent_plans(7)

        assert [r["id"] for r in result] == ["3", "2"]

    @patch("plancompare.db._table")
    def test_brand_filter(self, mock_table):
        from plancompare.db import get_recent_plans

        mock_chain = _chain([])
        mock_table.return_value = mock_chain

        get_recent_plans(7, brands=["O2", "Vodafone"])

        mock_chain.in_.assert_called_once_with("source", ["O2", "Vodafone"])
        mock_chain.order.assert_called_once_with("scrape_timestamp", desc=True)

    @patch("plancompare.db._table")
    def test_no_brand_filter(self, mock_table):
        from plancompare.db import get_recent_plans

        mock_chain = _chain([])
        mock_table.return_value = mock_chain

        get_recent_plans(7)

        mock_chain.in_.assert_not_called()


class TestAnalyses:
    """analyses テーブル操作のテスト."""

    @patch("plancompare.db._table")
    def test_find_cached_uses_set_equality(self, mock_table):
        from plancompare.db import find_cached_analysis

        mock_chain = _chain([])
        mock_table.return_value = mock_chain

        result = find_cached_analysis("custom", ["O2", "Vodafone"], ["p1", "p2"], "2026-10-17T00:00:00+00:00")

        assert result is None
        mock_table.assert_called_once_with("analyses")
        mock_chain.eq.assert_called_once_with("comparison_type", "custom")
        mock_chain.contains.assert_any_call("brands", ["O2", "Vodafone"])
        mock_chain.contained_by.assert_any_call("brands", ["O2", "Vodafone"])
        mock_chain.contains.assert_any_call("plan_ids", ["p1", "p2"])
        mock_chain.contained_by.assert_any_call("plan_ids", ["p1", "p2"])
        mock_chain.gt.assert_called_once_with("created_at", "2026-10-17T00:00:00+00:00")
        mock_chain.limit.assert_called_once_with(1)

    @patch("plancompare.db._table")
    def test_find_cached_returns_row(self, mock_table):
        from plancompare.db import find_cached_analysis

        row = {"id": "a1", "comparison_type": "full"}
        mock_table.return_value = _chain([row])

        assert find_cached_analysis("full", ["O2"], ["p1"], "2026-10-17") == row

    @patch("plancompare.db._table")
    def test_insert_analysis(self, mock_table):
        from plancompare.db import insert_analysis

        mock_chain = _chain([{"id": "a1", "created_at": "2026-10-18T00:00:00+00:00"}])
        mock_table.return_value = mock_chain

        saved = insert_analysis("full", ["O2", "Sky"], ["p1"], {"currency": "GBP"})

        assert saved == {"id": "a1", "created_at": "2026-10-18T00:00:00+00:00"}
        mock_chain.insert.assert_called_once_with({
            "comparison_type": "full",
            "brands": ["O2", "Sky"],
            "plan_ids": ["p1"],
            "analysis_result": {"currency": "GBP"},
        })

    @patch("plancompare.db._table")
    def test_get_analysis_not_found(self, mock_table):
        from plancompare.db import get_analysis

        mock_table.return_value = _chain([])

        assert get_analysis("missing") is None

    @patch("plancompare.db._table")
    def test_get_recent_analyses(self, mock_table):
        from plancompare.db import get_recent_analyses

        mock_chain = _chain([{"id": "a2"}, {"id": "a1"}])
        mock_table.return_value = mock_chain

        assert [r["id"] for r in get_recent_analyses(limit=2)] == ["a2", "a1"]
        mock_chain.order.assert_called_once_with("created_at", desc=True)
        mock_chain.limit.assert_called_once_with(2)


class TestClient:
    """クライアント生成のテスト."""

    def test_missing_credentials(self):
        from plancompare import db

        with patch.object(db, "_client", None), patch.object(db, "SUPABASE_URL", ""):
            with pytest.raises(RuntimeError):
                db._get_client()
