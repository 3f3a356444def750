"""分析生成・キャッシュモジュール.

処理フロー:
  1. リクエスト検証（ブランド・プランが空なら I/O 前に拒否）
  2. キャッシュ照合（同じ比較種別・ブランド集合・プラン ID 集合で 24 時間以内）
  3. ヒット時: lenient 検証をかけて返す
  4. ミス時: プロンプト生成 → Gemini 呼び出し → strict 検証（失敗時はリトライ）
  5. analyses テーブルに保存して返す
"""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from plancompare.config import (
    CACHE_TTL_HOURS,
    MAX_ATTEMPTS,
    PROMPTS_DIR,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
)
from plancompare.db import find_cached_analysis, insert_analysis
from plancompare.gemini import (
    GeminiAuthError,
    GeminiError,
    GeminiMalformedResponseError,
    GeminiQuotaError,
    GeminiTimeoutError,
    query_gemini_json,
)
from plancompare.models import (
    COMPARISON_TYPES,
    CUSTOM,
    FULL,
    AnalysisRequest,
    AnalysisResponse,
    CachedAnalysis,
    PlanRow,
)
from plancompare.validation import (
    ValidationError,
    validate_analysis_response,
    validate_analysis_response_lenient,
)

logger = logging.getLogger(__name__)

PROMPT_FILES = {
    FULL: "full_analysis.txt",
    CUSTOM: "custom_comparison.txt",
}


class AnalysisErrorCode(Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    API_FAILURE = "API_FAILURE"
    AUTH_FAILURE = "AUTH_FAILURE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"
    PROMPT_ERROR = "PROMPT_ERROR"
    UNEXPECTED = "UNEXPECTED"


class AnalysisError(Exception):
    """分析生成の失敗. context に比較種別・ブランド等を持つ."""

    def __init__(self, message: str, code: AnalysisErrorCode, context: dict | None = None):
        super().__init__(message)
        self.code = code
        self.context = context or {}


class InvalidRequestError(AnalysisError):
    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, AnalysisErrorCode.INVALID_REQUEST, context)


class PromptError(AnalysisError):
    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, AnalysisErrorCode.PROMPT_ERROR, context)


class GenerationError(AnalysisError):
    """Gemini 呼び出し自体の失敗. リトライしない."""


class ValidationExhaustedError(AnalysisError):
    """全試行で検証に失敗した."""

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, AnalysisErrorCode.VALIDATION_FAILED, context)


class PersistenceError(AnalysisError):
    """生成後の保存に失敗した."""

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, AnalysisErrorCode.DATABASE_ERROR, context)


# 具体的なクラスを先に並べる
_GEMINI_ERROR_CODES = (
    (GeminiAuthError, AnalysisErrorCode.AUTH_FAILURE),
    (GeminiQuotaError, AnalysisErrorCode.RATE_LIMIT_EXCEEDED),
    (GeminiTimeoutError, AnalysisErrorCode.TIMEOUT),
    (GeminiMalformedResponseError, AnalysisErrorCode.MALFORMED_RESPONSE),
)


def _error_code_for(error: Exception) -> AnalysisErrorCode:
    for cls, code in _GEMINI_ERROR_CODES:
        if isinstance(error, cls):
            return code
    return AnalysisErrorCode.API_FAILURE


def load_prompt_template(comparison_type: str) -> str:
    """比較種別に対応するプロンプトテンプレートを読み込む."""
    filename = PROMPT_FILES[comparison_type]
    try:
        template = (PROMPTS_DIR / filename).read_text(encoding="utf-8")
    except OSError as e:
        logger.error("プロンプトテンプレート読み込み失敗: %s", filename)
        raise PromptError(
            f"Failed to load prompt template: {filename}",
            {"comparison_type": comparison_type, "error": str(e)},
        ) from e
    logger.debug("プロンプトテンプレート読み込み: %s (%d 文字)", filename, len(template))
    return template


def format_prompt(
    template: str, brands: list[str], plans: list[PlanRow], comparison_type: str
) -> str:
    """テンプレートにブランド名とプランデータを埋め込む.

    custom の場合のみ {{BRAND_A}} / {{BRAND_B}} を置換する。
    プランは取得元ごとにまとめ、再現性のため取得元名のアルファベット順で並べる。
    """
    prompt = template
    if comparison_type == CUSTOM and len(brands) >= 2:
        prompt = prompt.replace("{{BRAND_A}}", brands[0]).replace("{{BRAND_B}}", brands[1])

    plans_by_brand: dict[str, list[dict]] = defaultdict(list)
    for plan in plans:
        plans_by_brand[plan.source].append({
            "id": plan.id,
            **plan.plan_data,
            "scrape_timestamp": plan.scrape_timestamp,
        })

    sections = [prompt.rstrip("\n"), ""]
    for brand in sorted(plans_by_brand):
        sections.append(f"{brand} data:")
        sections.append(json.dumps(plans_by_brand[brand], indent=2, ensure_ascii=False, default=str))
        sections.append("")

    formatted = "\n".join(sections) + "\n"
    logger.debug(
        "プロンプト生成: type=%s, brands=%s, plans=%d, length=%d",
        comparison_type, sorted(plans_by_brand), len(plans), len(formatted),
    )
    return formatted


def retry_delay(attempt: int) -> float:
    """attempt 回目の失敗後の待機秒数 (指数バックオフ、上限あり)."""
    return min(RETRY_BASE_DELAY * 2 ** (attempt - 1), RETRY_MAX_DELAY)


def check_analysis_cache(
    comparison_type: str, brands: list[str], plan_ids: list[str]
) -> CachedAnalysis | None:
    """24 時間以内の一致する分析を探す.

    DB エラーはキャッシュミスとして扱う（生成をブロックしない）。
    """
    since = (datetime.now(timezone.utc) - timedelta(hours=CACHE_TTL_HOURS)).isoformat()
    try:
        row = find_cached_analysis(comparison_type, brands, plan_ids, since)
        cached = CachedAnalysis.from_row(row) if row is not None else None
    except Exception as e:
        logger.error("キャッシュ照合でエラー（ミス扱い）: type=%s, brands=%s, error=%s", comparison_type, brands, e)
        return None

    if cached is None:
        logger.debug("キャッシュミス: type=%s, brands=%s, plans=%d", comparison_type, brands, len(plan_ids))
        return None

    logger.info("キャッシュヒット: id=%s, type=%s, created_at=%s", cached.id, comparison_type, cached.created_at)
    return cached


def generate_new_analysis(
    comparison_type: str,
    brands: list[str],
    plans: list[PlanRow],
    *,
    generate: Callable[[str], str] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """Gemini で新しい分析を生成する.

    検証エラーのみ最大 MAX_ATTEMPTS 回まで指数バックオフでリトライする。
    API エラー（認証・上限・通信など）はリトライせず即座に GenerationError にする。

    Args:
        generate: プロンプトを受けて JSON テキストを返す関数。既定は query_gemini_json
        sleep: 待機関数（テストで差し替える）

    Raises:
        GenerationError: Gemini 呼び出しの失敗
        ValidationExhaustedError: 全試行で検証に失敗
    """
    generate = generate or query_gemini_json
    template = load_prompt_template(comparison_type)
    prompt = format_prompt(template, brands, plans, comparison_type)
    context = {"comparison_type": comparison_type, "brands": brands}

    last_error: ValidationError | None = None
    for attempt in range(1, MAX_ATTEMPTS + 1):
        logger.info("分析生成 %d/%d 回目: type=%s, brands=%s", attempt, MAX_ATTEMPTS, comparison_type, brands)
        try:
            text = generate(prompt)
            result = validate_analysis_response(text, comparison_type)
        except ValidationError as e:
            last_error = e
            logger.warning("検証失敗 (%d/%d): field=%s, error=%s", attempt, MAX_ATTEMPTS, e.field, e)
            if attempt < MAX_ATTEMPTS:
                delay = retry_delay(attempt)
                logger.debug("%.1f 秒待機してリトライ", delay)
                sleep(delay)
            continue
        except Exception as e:
            code = _error_code_for(e)
            message = e.user_message if isinstance(e, GeminiError) else f"Gemini API call failed: {e}"
            logger.error("Gemini 呼び出し失敗（リトライしない）: code=%s, error=%s", code.value, e)
            raise GenerationError(message, code, {**context, "attempts": attempt, "error": str(e)}) from e

        logger.info("分析生成・検証 OK: type=%s, attempt=%d", comparison_type, attempt)
        return result

    message = f"Analysis validation failed after {MAX_ATTEMPTS} attempts"
    logger.error("%s: type=%s, brands=%s, last_error=%s", message, comparison_type, brands, last_error)
    raise ValidationExhaustedError(
        message,
        {
            **context,
            "attempts": MAX_ATTEMPTS,
            "last_error": str(last_error),
            "field": last_error.field if last_error else None,
        },
    ) from last_error


def save_analysis(
    comparison_type: str, brands: list[str], plan_ids: list[str], analysis_result: dict
) -> dict:
    """分析結果を保存する. 失敗時は PersistenceError."""
    try:
        return insert_analysis(comparison_type, brands, plan_ids, analysis_result)
    except Exception as e:
        logger.error("分析の保存に失敗: type=%s, brands=%s, error=%s", comparison_type, brands, e)
        raise PersistenceError(
            "Failed to save analysis to database",
            {"comparison_type": comparison_type, "brands": brands, "error": str(e)},
        ) from e


def _validate_request(request: AnalysisRequest) -> None:
    context = {"comparison_type": request.comparison_type, "brands": request.brands}
    if request.comparison_type not in COMPARISON_TYPES:
        raise InvalidRequestError(f"Unknown comparison type: {request.comparison_type!r}", context)
    if not request.brands:
        raise InvalidRequestError("At least one brand must be specified", context)
    if not request.plans:
        raise InvalidRequestError("At least one plan must be provided for analysis", context)
    if request.comparison_type == CUSTOM and len(request.brands) != 2:
        raise InvalidRequestError("Custom comparison requires exactly two brands", context)


def generate_analysis(
    request: AnalysisRequest,
    *,
    generate: Callable[[str], str] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AnalysisResponse:
    """キャッシュ付きで競合分析を生成する（メインエントリーポイント）.

    Raises:
        AnalysisError: 各サブクラスで失敗種別を区別する
    """
    logger.info(
        "分析開始: type=%s, brands=%s, plans=%d",
        request.comparison_type, request.brands, len(request.plans),
    )
    _validate_request(request)
    plan_ids = request.plan_ids

    try:
        cached = check_analysis_cache(request.comparison_type, request.brands, plan_ids)
        if cached:
            # 保存後のスキーマ変更に備えて再検証する
            report = validate_analysis_response_lenient(cached.analysis_result, request.comparison_type)
            return AnalysisResponse(
                cached=True,
                analysis_id=cached.id,
                created_at=cached.created_at,
                data=report.data,
                comparison_type=request.comparison_type,
                issues=report.issues,
            )

        logger.info("キャッシュなし。新規生成: type=%s, brands=%s", request.comparison_type, request.brands)
        result = generate_new_analysis(
            request.comparison_type, request.brands, request.plans,
            generate=generate, sleep=sleep,
        )
        saved = save_analysis(request.comparison_type, request.brands, plan_ids, result)
        return AnalysisResponse(
            cached=False,
            analysis_id=str(saved["id"]),
            created_at=datetime.now(timezone.utc).isoformat(),
            data=result,
            comparison_type=request.comparison_type,
        )
    except AnalysisError:
        raise
    except Exception as e:
        logger.exception("分析生成中に予期しないエラー: type=%s, brands=%s", request.comparison_type, request.brands)
        raise AnalysisError(
            f"Unexpected error during analysis generation: {e}",
            AnalysisErrorCode.UNEXPECTED,
            {"comparison_type": request.comparison_type, "brands": request.brands, "error": str(e)},
        ) from e
