"""データモデル定義."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

FULL = "full"  # 基準ブランド (O2) vs 他社すべて
CUSTOM = "custom"  # 任意の 2 ブランド比較

COMPARISON_TYPES = (FULL, CUSTOM)

# 比較種別ごとの商品分析配列のキー
PRODUCTS_KEYS = {
    FULL: "o2_products_analysis",
    CUSTOM: "brand_a_products_analysis",
}

_PAYLOAD_FIELDS = (
    "analysis_timestamp",
    "currency",
    "overall_competitive_sentiments",
    "full_competitive_dataset_all_plans",
    "products_not_considered",
)


@dataclass
class PlanRow:
    """DB に保存済みのプランレコード."""

    id: str  # uuid
    source: str  # 取得元 (例: O2, Uswitch)
    plan_data: dict  # 正規化済みプラン
    scrape_timestamp: str  # ISO 8601
    plan_key: str | None = None
    scrape_id: str | None = None  # 同一スクレイプ実行のグルーピング用

    @classmethod
    def from_row(cls, row: dict) -> PlanRow:
        return cls(
            id=str(row["id"]),
            source=row["source"],
            plan_data=row.get("plan_data") or {},
            scrape_timestamp=str(row.get("scrape_timestamp", "")),
            plan_key=row.get("plan_key"),
            scrape_id=row.get("scrape_id"),
        )


@dataclass
class AnalysisRequest:
    """分析リクエスト."""

    comparison_type: str  # "full" or "custom"
    brands: list[str]
    plans: list[PlanRow]

    @property
    def plan_ids(self) -> list[str]:
        """キャッシュ照合・保存用のプラン ID 集合（ソート済み・重複なし）."""
        return sorted({p.id for p in self.plans})


@dataclass
class CachedAnalysis:
    """analyses テーブルの 1 行."""

    id: str
    comparison_type: str
    brands: list[str]
    plan_ids: list[str]
    analysis_result: dict
    created_at: str  # ISO 8601

    @classmethod
    def from_row(cls, row: dict) -> CachedAnalysis:
        return cls(
            id=str(row["id"]),
            comparison_type=row["comparison_type"],
            brands=list(row.get("brands") or []),
            plan_ids=[str(pid) for pid in row.get("plan_ids") or []],
            analysis_result=row.get("analysis_result") or {},
            created_at=str(row.get("created_at", "")),
        )


@dataclass
class ValidationIssue:
    """検証で見つかった問題 1 件."""

    path: str  # 例: overall_competitive_sentiments[2].score
    message: str
    severity: str = "warning"  # "warning" or "info"
    expected: str | None = None
    actual: Any = None


@dataclass
class ValidationReport:
    """緩和モード検証の結果. 問題はリクエスト単位で返す."""

    data: Any
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    @property
    def is_clean(self) -> bool:
        return not self.warnings


@dataclass
class AnalysisPayload:
    """分析 JSON の型付きビュー.

    比較種別をタグとして持ち、未知のトップレベルキーは extras に退避する。
    to_dict() で元の JSON 形に戻せる。
    """

    comparison_type: str
    analysis_timestamp: str | None = None
    currency: str | None = None
    sentiments: list = field(default_factory=list)
    products: list = field(default_factory=list)
    dataset: list = field(default_factory=list)
    products_not_considered: list | None = None
    extras: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict, comparison_type: str) -> AnalysisPayload:
        products_key = PRODUCTS_KEYS[comparison_type]
        known = set(_PAYLOAD_FIELDS) | {products_key}
        return cls(
            comparison_type=comparison_type,
            analysis_timestamp=data.get("analysis_timestamp"),
            currency=data.get("currency"),
            sentiments=data.get("overall_competitive_sentiments") or [],
            products=data.get(products_key) or [],
            dataset=data.get("full_competitive_dataset_all_plans") or [],
            products_not_considered=data.get("products_not_considered"),
            extras={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict:
        result = {
            "analysis_timestamp": self.analysis_timestamp,
            "currency": self.currency,
            "overall_competitive_sentiments": self.sentiments,
            PRODUCTS_KEYS[self.comparison_type]: self.products,
            "full_competitive_dataset_all_plans": self.dataset,
        }
        if self.products_not_considered is not None:
            result["products_not_considered"] = self.products_not_considered
        result.update(self.extras)
        return result


@dataclass
class AnalysisResponse:
    """分析結果のレスポンス."""

    cached: bool
    analysis_id: str
    created_at: str  # ISO 8601
    data: dict
    comparison_type: str = FULL
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def payload(self) -> AnalysisPayload:
        return AnalysisPayload.from_dict(self.data, self.comparison_type)

    def to_dict(self) -> dict:
        """ダッシュボードに返すエンベロープ形式."""
        return {
            "cached": self.cached,
            "analysisId": self.analysis_id,
            "createdAt": self.created_at,
            "data": self.data,
        }
