"""LLM 分析レスポンスの検証モジュール.

Gemini から返る JSON が分析結果として必要な構造を満たすかを確認する。

2 つのモード:
  strict  — 最初の違反で ValidationError を送出する（生成時のリトライ判定用）
  lenient — 違反を ValidationIssue として集めるだけで処理は止めない。
            送出するのは JSON としてパースできない場合のみ。

スキーマは比較種別ごとに 2 種類 (full: O2 vs 全社 / custom: ブランド A vs B)。
プランレコードとデータセット行の形は共通。
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from plancompare.models import CUSTOM, FULL, PRODUCTS_KEYS, ValidationIssue, ValidationReport

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """検証エラー. 違反箇所・期待型・実際の値を持つ."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        expected_type: str | None = None,
        actual_value: Any = None,
    ):
        super().__init__(message)
        self.field = field
        self.expected_type = expected_type
        self.actual_value = actual_value


@dataclass(frozen=True)
class _Schema:
    """比較種別ごとに異なる部分."""

    products_key: str
    sentiments_key: str
    changes_key: str
    min_products: int


SCHEMAS = {
    FULL: _Schema(
        products_key=PRODUCTS_KEYS[FULL],
        sentiments_key="o2_product_sentiments",
        changes_key="o2_product_changes",
        min_products=5,
    ),
    CUSTOM: _Schema(
        products_key=PRODUCTS_KEYS[CUSTOM],
        sentiments_key="brand_a_product_sentiments",
        changes_key="brand_a_product_changes",
        min_products=1,
    ),
}

MIN_SENTIMENTS = 5
MAX_SENTIMENTS = 10
SCORE_RANGE = (0, 100)
PRICE_RANGE = (0, 1000)

REQUIRED_SENTIMENT_FIELDS = ("score", "sentiment", "rationale")

# product_breakdown / comparable_products / データセット行で共通
# price_per_month_GBP は任意。ある場合のみ範囲チェックする
REQUIRED_PLAN_FIELDS = (
    "brand",
    "contract",
    "data",
    "roaming",
    "competitiveness_score",
    "source",
)
REQUIRED_DATASET_FIELDS = REQUIRED_PLAN_FIELDS + ("extras", "speed", "notes")


def _required_top_level_fields(schema: _Schema) -> tuple[str, ...]:
    return (
        "analysis_timestamp",
        "currency",
        "overall_competitive_sentiments",
        schema.products_key,
        "full_competitive_dataset_all_plans",
    )


def _required_product_fields(schema: _Schema) -> tuple[str, ...]:
    return (
        "product_name",
        "data_tier",
        "roaming_tier",
        "product_breakdown",
        "comparable_products",
        schema.sentiments_key,
        schema.changes_key,
        "price_suggestions",
        "source",
    )


Report = Callable[[ValidationIssue], None]


def _issue(
    report: Report,
    path: str,
    message: str,
    expected: str | None = None,
    actual: Any = None,
    severity: str = "warning",
) -> None:
    report(ValidationIssue(
        path=path, message=message, severity=severity,
        expected=expected, actual=actual,
    ))


def _is_number(value) -> bool:
    # bool は int のサブクラスなので除外
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_number(report: Report, value, bounds: tuple[int, int], path: str) -> None:
    low, high = bounds
    if not _is_number(value) or value != value:
        _issue(report, path, f"{path} は数値である必要があります", "number", value)
        return
    if value < low or value > high:
        _issue(
            report, path, f"{path} は {low}〜{high} の範囲である必要があります: {value}",
            f"number ({low}-{high})", value,
        )


def _check_required(report: Report, obj: dict, fields: tuple[str, ...], path: str) -> bool:
    """必須フィールドの存在確認. すべて揃っていれば True."""
    ok = True
    for name in fields:
        if obj.get(name) is None:
            field_path = f"{path}.{name}" if path else name
            _issue(report, field_path, f"必須フィールド {name!r} がありません ({path or 'top-level'})", "required")
            ok = False
    return ok


def _check_array(report: Report, value, path: str) -> bool:
    if not isinstance(value, list):
        _issue(report, path, f"{path} は配列である必要があります", "array", type(value).__name__)
        return False
    return True


def _check_object(report: Report, value, path: str) -> bool:
    if not isinstance(value, dict):
        _issue(report, path, f"{path} はオブジェクトである必要があります", "object", value)
        return False
    return True


def _check_non_empty_string(report: Report, value, path: str) -> None:
    if not isinstance(value, str) or not value.strip():
        _issue(report, path, f"{path} は空でない文字列である必要があります", "string", value)


def _check_plan(report: Report, plan, path: str, required: tuple[str, ...]) -> None:
    if not _check_object(report, plan, path):
        return
    _check_required(report, plan, required, path)
    if plan.get("competitiveness_score") is not None:
        _check_number(report, plan["competitiveness_score"], SCORE_RANGE, f"{path}.competitiveness_score")
    if plan.get("price_per_month_GBP") is None:
        _issue(
            report, f"{path}.price_per_month_GBP", "price_per_month_GBP がありません",
            "number", severity="info",
        )
    else:
        _check_number(report, plan["price_per_month_GBP"], PRICE_RANGE, f"{path}.price_per_month_GBP")


def _check_sentiments(report: Report, sentiments) -> None:
    path = "overall_competitive_sentiments"
    if not _check_array(report, sentiments, path):
        return
    if not MIN_SENTIMENTS <= len(sentiments) <= MAX_SENTIMENTS:
        _issue(
            report, path,
            f"{path} は {MIN_SENTIMENTS}〜{MAX_SENTIMENTS} 件である必要があります: {len(sentiments)} 件",
            f"array (length {MIN_SENTIMENTS}-{MAX_SENTIMENTS})", len(sentiments),
        )
    for i, sentiment in enumerate(sentiments):
        item_path = f"{path}[{i}]"
        if not _check_object(report, sentiment, item_path):
            continue
        _check_required(report, sentiment, REQUIRED_SENTIMENT_FIELDS, item_path)
        if sentiment.get("score") is not None:
            _check_number(report, sentiment["score"], SCORE_RANGE, f"{item_path}.score")
        if sentiment.get("sentiment") is not None:
            _check_non_empty_string(report, sentiment["sentiment"], f"{item_path}.sentiment")
        if sentiment.get("rationale") is not None:
            _check_non_empty_string(report, sentiment["rationale"], f"{item_path}.rationale")


def _check_products(report: Report, products, schema: _Schema) -> None:
    path = schema.products_key
    if not _check_array(report, products, path):
        return
    if len(products) < schema.min_products:
        _issue(
            report, path,
            f"{path} は {schema.min_products} 件以上必要です: {len(products)} 件",
            f"array (length >= {schema.min_products})", len(products),
        )
    for i, product in enumerate(products):
        item_path = f"{path}[{i}]"
        if not _check_object(report, product, item_path):
            continue
        _check_required(report, product, _required_product_fields(schema), item_path)

        if product.get("product_breakdown") is not None:
            _check_plan(report, product["product_breakdown"], f"{item_path}.product_breakdown", REQUIRED_PLAN_FIELDS)

        comparable = product.get("comparable_products")
        if comparable is not None and _check_array(report, comparable, f"{item_path}.comparable_products"):
            for j, plan in enumerate(comparable):
                _check_plan(report, plan, f"{item_path}.comparable_products[{j}]", REQUIRED_PLAN_FIELDS)

        for key in (schema.sentiments_key, schema.changes_key):
            if product.get(key) is not None:
                _check_array(report, product[key], f"{item_path}.{key}")

        suggestions = product.get("price_suggestions")
        if suggestions is not None and _check_array(report, suggestions, f"{item_path}.price_suggestions"):
            for j, suggestion in enumerate(suggestions):
                s_path = f"{item_path}.price_suggestions[{j}]"
                if not isinstance(suggestion, dict) or not suggestion.get("motivation") or suggestion.get("price") is None:
                    _issue(
                        report, s_path, f"{s_path} には motivation と price が必要です",
                        "object with motivation and price", suggestion,
                    )
                    continue
                if not _is_number(suggestion["price"]):
                    _issue(report, f"{s_path}.price", f"{s_path}.price は数値である必要があります", "number", suggestion["price"])


def _check_dataset(report: Report, dataset) -> None:
    path = "full_competitive_dataset_all_plans"
    if not _check_array(report, dataset, path):
        return
    for i, plan in enumerate(dataset):
        _check_plan(report, plan, f"{path}[{i}]", REQUIRED_DATASET_FIELDS)


def _check_not_considered(report: Report, items) -> None:
    path = "products_not_considered"
    if not _check_array(report, items, path):
        return
    for i, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("product") or not item.get("details"):
            _issue(
                report, f"{path}[{i}]", f"{path}[{i}] には product と details が必要です",
                "object with product and details", item,
            )


def _check_payload(report: Report, parsed, schema: _Schema) -> None:
    """スキーマ全体を走査し、見つかった問題を report に渡す."""
    if not _check_object(report, parsed, "top-level"):
        return

    _check_required(report, parsed, _required_top_level_fields(schema), "")

    if parsed.get("currency") is not None and parsed["currency"] != "GBP":
        _issue(report, "currency", 'currency は "GBP" である必要があります', "GBP", parsed["currency"])

    if parsed.get("analysis_timestamp") is not None and not isinstance(parsed["analysis_timestamp"], str):
        _issue(
            report, "analysis_timestamp", "analysis_timestamp は文字列である必要があります",
            "string", parsed["analysis_timestamp"],
        )

    if parsed.get("overall_competitive_sentiments") is not None:
        _check_sentiments(report, parsed["overall_competitive_sentiments"])
    if parsed.get(schema.products_key) is not None:
        _check_products(report, parsed[schema.products_key], schema)
    if parsed.get("full_competitive_dataset_all_plans") is not None:
        _check_dataset(report, parsed["full_competitive_dataset_all_plans"])
    if parsed.get("products_not_considered"):
        _check_not_considered(report, parsed["products_not_considered"])


def _schema_for(comparison_type: str) -> _Schema:
    try:
        return SCHEMAS[comparison_type]
    except KeyError:
        raise ValueError(f"未知の比較種別: {comparison_type!r}") from None


def _parse(response):
    if not isinstance(response, (str, bytes, bytearray)):
        return response
    try:
        return json.loads(response)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("JSON パースエラー: %s", e)
        raise ValidationError(
            "Response is not valid JSON",
            expected_type="JSON",
            actual_value=response[:100],
        ) from e


def _raise_on_warning(issue: ValidationIssue) -> None:
    if issue.severity == "warning":
        raise ValidationError(issue.message, issue.path, issue.expected, issue.actual)


def validate_analysis_response(response, comparison_type: str):
    """strict モードで検証する.

    Args:
        response: Gemini のレスポンス文字列、またはパース済みの値
        comparison_type: "full" or "custom"

    Returns:
        パース済みの分析 dict

    Raises:
        ValidationError: 最初に見つかった違反
    """
    schema = _schema_for(comparison_type)
    logger.debug("分析レスポンスを検証: type=%s", comparison_type)
    parsed = _parse(response)
    _check_payload(_raise_on_warning, parsed, schema)
    logger.info("分析レスポンスの検証 OK: type=%s", comparison_type)
    return parsed


def validate_full_analysis_response(response):
    return validate_analysis_response(response, FULL)


def validate_custom_comparison_response(response):
    return validate_analysis_response(response, CUSTOM)


def _repair(parsed, schema: _Schema, issues: list[ValidationIssue]):
    """明らかな欠落だけを補う. 入力は変更せずコピーを返す."""
    if not isinstance(parsed, dict) or not isinstance(parsed.get(schema.products_key), list):
        return parsed

    repaired = copy.deepcopy(parsed)
    for i, product in enumerate(repaired[schema.products_key]):
        if not isinstance(product, dict):
            continue
        breakdown = product.get("product_breakdown")
        if isinstance(breakdown, dict) and not breakdown.get("source") and product.get("source"):
            breakdown["source"] = product["source"]
            issues.append(ValidationIssue(
                path=f"{schema.products_key}[{i}].product_breakdown.source",
                message="product_breakdown.source を親の source から補完しました",
                severity="info",
            ))
    return repaired


def validate_analysis_response_lenient(response, comparison_type: str) -> ValidationReport:
    """lenient モードで検証する.

    問題は ValidationReport.issues に記録し、処理は継続する。
    返却する data は（補完後の）パース結果そのもの。

    Raises:
        ValidationError: JSON としてパースできない場合のみ
    """
    schema = _schema_for(comparison_type)
    parsed = _parse(response)

    issues: list[ValidationIssue] = []
    data = _repair(parsed, schema, issues)
    _check_payload(issues.append, data, schema)

    warnings = [i for i in issues if i.severity == "warning"]
    if warnings:
        for issue in warnings:
            logger.warning("検証警告: %s: %s", issue.path, issue.message)
    else:
        logger.info("分析レスポンスの検証 OK (lenient): type=%s", comparison_type)
    logger.debug("検証 info: %d 件", len(issues) - len(warnings))
    return ValidationReport(data=data, issues=issues)
