"""プラン比較 — メインエントリーポイント.

サブコマンド:
  ingest SOURCE FILE       スクレイプ結果 (JSON 配列) を正規化して plans に保存
  analyze-full             O2 vs 全取得元の分析
  analyze-custom A B       ブランド A vs B の分析
  show ANALYSIS_ID         保存済み分析を表示
  list [--limit N]         最近の分析一覧を表示
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
import uuid
from datetime import datetime
from pathlib import Path

from plancompare.analysis import AnalysisError, generate_analysis
from plancompare.config import DISTINGUISHED_BRAND, LOG_DIR, LOG_LEVEL, PLAN_LOOKBACK_DAYS, SOURCES
from plancompare.db import get_analysis, get_recent_analyses, get_recent_plans, insert_plans
from plancompare.models import CUSTOM, FULL, AnalysisRequest, PlanRow
from plancompare.normalize import normalize_plans

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """ロギングの初期設定."""
    LOG_DIR.mkdir(exist_ok=True)
    log_file = LOG_DIR / f"plancompare_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def ingest(source: str, records: list[dict], scrape_id: str | None = None) -> list[dict]:
    """取得元 1 つ分の生レコードを正規化して一括保存する."""
    if source not in SOURCES:
        logger.warning("未登録の取得元: %s", source)

    scrape_id = scrape_id or uuid.uuid4().hex
    normalized = normalize_plans(records, source)
    failures = sum(1 for p in normalized if p.get("normalization_error"))
    if failures:
        logger.warning("正規化失敗: %d / %d 件 (source=%s)", failures, len(normalized), source)

    rows = insert_plans(source, normalized, scrape_id=scrape_id)
    logger.info("取り込み完了: source=%s, scrape_id=%s, %d 件", source, scrape_id, len(rows))
    return rows


def run_analysis(comparison_type: str, brands: list[str] | None = None) -> dict:
    """最新プランを取得して分析を実行し、レスポンスのエンベロープを返す."""
    rows = get_recent_plans(PLAN_LOOKBACK_DAYS, brands=brands)
    plans = [PlanRow.from_row(r) for r in rows]

    if comparison_type == FULL:
        # full は取得できた取得元すべてを対象にする
        brands = sorted({p.source for p in plans})
        if brands and DISTINGUISHED_BRAND not in brands:
            logger.warning("基準ブランド %s のプランが見つかりません", DISTINGUISHED_BRAND)

    response = generate_analysis(AnalysisRequest(
        comparison_type=comparison_type,
        brands=brands or [],
        plans=plans,
    ))
    warnings = [i for i in response.issues if i.severity == "warning"]
    if warnings:
        logger.warning("キャッシュ済み分析に検証警告 %d 件", len(warnings))
    return response.to_dict()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="plancompare", description="モバイルプラン価格の競合分析")
    sub = parser.add_subparsers(dest="command", required=True)

    p_ingest = sub.add_parser("ingest", help="スクレイプ結果を取り込む")
    p_ingest.add_argument("source")
    p_ingest.add_argument("file", type=Path)
    p_ingest.add_argument("--scrape-id")

    sub.add_parser("analyze-full", help="O2 vs 全取得元の分析")

    p_custom = sub.add_parser("analyze-custom", help="2 ブランド比較")
    p_custom.add_argument("brand_a")
    p_custom.add_argument("brand_b")

    p_show = sub.add_parser("show", help="保存済み分析を表示")
    p_show.add_argument("analysis_id")

    p_list = sub.add_parser("list", help="最近の分析一覧")
    p_list.add_argument("--limit", type=int, default=10)
    return parser


def run(argv: list[str] | None = None) -> int:
    """メイン処理."""
    args = _build_parser().parse_args(argv)
    setup_logging()
    start_time = time.time()

    try:
        if args.command == "ingest":
            records = json.loads(args.file.read_text(encoding="utf-8"))
            ingest(args.source, records, scrape_id=args.scrape_id)
        elif args.command == "analyze-full":
            print(json.dumps(run_analysis(FULL), ensure_ascii=False, indent=2))
        elif args.command == "analyze-custom":
            result = run_analysis(CUSTOM, [args.brand_a, args.brand_b])
            print(json.dumps(result, ensure_ascii=False, indent=2))
        elif args.command == "show":
            row = get_analysis(args.analysis_id)
            if row is None:
                logger.error("分析が見つかりません: id=%s", args.analysis_id)
                return 1
            print(json.dumps(row, ensure_ascii=False, indent=2, default=str))
        elif args.command == "list":
            rows = get_recent_analyses(limit=args.limit)
            logger.info("分析一覧: %d 件", len(rows))
            print(json.dumps(rows, ensure_ascii=False, indent=2, default=str))
    except AnalysisError as e:
        logger.error("分析失敗: code=%s, message=%s, context=%s", e.code.value, e, e.context)
        return 1

    logger.info("完了: command=%s, 所要時間: %.1f 秒", args.command, time.time() - start_time)
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
