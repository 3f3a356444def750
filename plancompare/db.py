"""Supabase データベース操作モジュール.

テーブル:
  plans    — 正規化済みプランの時系列（追記のみ）
  analyses — LLM 分析結果のキャッシュ（追記のみ）

スキーマは config.SUPABASE_SCHEMA。DDL は migrations/ を参照。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from supabase import create_client

from plancompare.config import (
    PLAN_LOOKBACK_DAYS,
    SUPABASE_SCHEMA,
    SUPABASE_SECRET_KEY,
    SUPABASE_URL,
)

logger = logging.getLogger(__name__)

_PLAN_COLUMNS = "id, source, plan_key, plan_data, scrape_timestamp, scrape_id"
_ANALYSIS_COLUMNS = "id, comparison_type, brands, plan_ids, analysis_result, created_at"

_client = None


def _get_client():
    """Supabase クライアントを初回利用時に生成する."""
    global _client
    if _client is None:
        if not SUPABASE_URL or not SUPABASE_SECRET_KEY:
            raise RuntimeError("SUPABASE_URL / SUPABASE_SECRET_KEY が設定されていません")
        _client = create_client(SUPABASE_URL, SUPABASE_SECRET_KEY)
    return _client


def _table(name: str):
    """設定スキーマのテーブルを参照する."""
    return _get_client().schema(SUPABASE_SCHEMA).table(name)


def _plan_record(source: str, plan_data: dict, scrape_id: str | None) -> dict:
    return {
        "source": source,
        "plan_data": plan_data,
        # plan_key は正規化で付与される
        "plan_key": plan_data.get("plan_key"),
        "scrape_id": scrape_id,
    }


def insert_plan(source: str, plan_data: dict, scrape_id: str | None = None) -> dict:
    """正規化済みプランを 1 件挿入する.

    Returns:
        挿入された行 (id, scrape_timestamp を含む)
    """
    resp = _table("plans").insert(_plan_record(source, plan_data, scrape_id)).execute()
    row = resp.data[0]
    logger.debug("plans に挿入: source=%s, id=%s", source, row.get("id"))
    return row


def insert_plans(source: str, plans: list[dict], scrape_id: str | None = None) -> list[dict]:
    """正規化済みプランを一括挿入する.

    1 回の INSERT 文で送るため、全件成功か全件失敗のどちらかになる。

    Args:
        source: 取得元 (例: "O2")
        plans: normalize_plans() の結果
        scrape_id: スクレイプ実行 ID
    """
    if not plans:
        logger.warning("挿入するプランがありません: source=%s", source)
        return []
    records = [_plan_record(source, p, scrape_id) for p in plans]
    resp = _table("plans").insert(records).execute()
    logger.info("plans に %d 件挿入: source=%s", len(resp.data), source)
    return resp.data


def _latest_per_plan_key(rows: list[dict]) -> list[dict]:
    """(source, plan_key) ごとに最新の行だけを残す.

    rows は scrape_timestamp の降順であること。
    """
    seen: set[tuple] = set()
    latest = []
    for row in rows:
        # plan_key が無い古い行は行単位で扱う
        key = (row.get("source"), row.get("plan_key") or row.get("id"))
        if key in seen:
            continue
        seen.add(key)
        latest.append(row)
    return latest


def get_recent_plans(
    lookback_days: int = PLAN_LOOKBACK_DAYS, brands: list[str] | None = None
) -> list[dict]:
    """直近 lookback_days 日の最新プランを取得する.

    Args:
        lookback_days: 遡る日数
        brands: 指定時はその取得元のみ

    Returns:
        (source, plan_key) ごとに最新の行のリスト
    """
    since = (datetime.now(timezone.utc) - timedelta(days=lookback_days)).isoformat()
    query = (
        _table("plans")
        .select(_PLAN_COLUMNS)
        .gt("scrape_timestamp", since)
    )
    if brands:
        query = query.in_("source", brands)
    resp = query.order("scrape_timestamp", desc=True).execute()

    rows = _latest_per_plan_key(resp.data)
    logger.info("直近 %d 日のプラン: %d 件 (全 %d 行)", lookback_days, len(rows), len(resp.data))
    return rows


def find_cached_analysis(
    comparison_type: str, brands: list[str], plan_ids: list[str], since: str
) -> dict | None:
    """条件に一致する最新の分析を 1 件取得する.

    brands / plan_ids は順序を問わない完全一致
    （配列の @> と <@ の両方を満たすもの）。

    Args:
        since: created_at の下限 (ISO 8601)
    """
    resp = (
        _table("analyses")
        .select(_ANALYSIS_COLUMNS)
        .eq("comparison_type", comparison_type)
        .contains("brands", brands)
        .contained_by("brands", brands)
        .contains("plan_ids", plan_ids)
        .contained_by("plan_ids", plan_ids)
        .gt("created_at", since)
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    return resp.data[0] if resp.data else None


def insert_analysis(
    comparison_type: str, brands: list[str], plan_ids: list[str], analysis_result: dict
) -> dict:
    """分析結果を保存する.

    Returns:
        {"id": uuid, "created_at": ISO 8601}
    """
    resp = (
        _table("analyses")
        .insert({
            "comparison_type": comparison_type,
            "brands": brands,
            "plan_ids": plan_ids,
            "analysis_result": analysis_result,
        })
        .execute()
    )
    row = resp.data[0]
    logger.info("analyses に挿入: id=%s, type=%s", row["id"], comparison_type)
    return {"id": row["id"], "created_at": row.get("created_at")}


def get_analysis(analysis_id: str) -> dict | None:
    """ID で分析を 1 件取得する."""
    resp = (
        _table("analyses")
        .select(_ANALYSIS_COLUMNS)
        .eq("id", analysis_id)
        .limit(1)
        .execute()
    )
    return resp.data[0] if resp.data else None


def get_recent_analyses(limit: int = 10) -> list[dict]:
    """最近の分析一覧を新しい順に取得する（結果本体は含めない）."""
    resp = (
        _table("analyses")
        .select("id, comparison_type, brands, created_at")
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return resp.data
