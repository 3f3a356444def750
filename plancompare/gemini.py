"""Google Gemini API 連携モジュール.

REST API を requests で直接呼び出す。JSON モード
(generationConfig.responseMimeType = application/json) でテキストを取得し、
JSON としてのパース・検証は呼び出し側で行う。

エラーは種類ごとに例外クラスを分け、ユーザー向けメッセージを持たせる。
"""

from __future__ import annotations

import logging

import requests

from plancompare import config

logger = logging.getLogger(__name__)


class GeminiError(Exception):
    """Gemini API 呼び出し失敗（汎用）."""

    user_message = "Gemini API でエラーが発生しました。"


class GeminiAuthError(GeminiError):
    user_message = "Gemini API キーが無効です。GEMINI_API_KEY を確認してください。"


class GeminiQuotaError(GeminiError):
    user_message = "Gemini API の利用上限に達しました。時間をおいて再実行してください。"


class GeminiTimeoutError(GeminiError):
    user_message = "Gemini API がタイムアウトしました。分析が複雑すぎるか、サービスが混雑しています。"


class GeminiMalformedResponseError(GeminiError):
    user_message = "Gemini API のレスポンス形式が不正です。"


def _api_key() -> str:
    key = (config.GEMINI_API_KEY or "").strip()
    if not key:
        logger.error("GEMINI_API_KEY が設定されていません")
        raise GeminiAuthError("GEMINI_API_KEY is not set")
    return key


def _classify_http_error(status: int, body: str) -> GeminiError:
    message = f"Gemini API request failed: {status} {body[:200]}"
    lowered = body.lower()
    if status in (401, 403) or "api key" in lowered or "unauthorized" in lowered:
        return GeminiAuthError(message)
    if status == 429 or "quota" in lowered:
        return GeminiQuotaError(message)
    if status == 504 or "deadline" in lowered:
        return GeminiTimeoutError(message)
    return GeminiError(message)


def call_gemini_api(prompt: str, generation_config: dict | None = None):
    """Gemini API を呼び出し、レスポンス JSON（単体 or ストリームのチャンク配列）を返す."""
    body: dict = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
    }
    if generation_config:
        body["generationConfig"] = generation_config

    logger.info("Gemini API 呼び出し: prompt_length=%d", len(prompt))
    try:
        resp = requests.post(
            config.GEMINI_API_URL,
            params={"key": _api_key()},
            headers={"Content-Type": "application/json"},
            json=body,
            timeout=config.GEMINI_REQUEST_TIMEOUT,
        )
    except requests.Timeout as e:
        logger.error("Gemini API タイムアウト: %s", e)
        raise GeminiTimeoutError(str(e)) from e
    except requests.RequestException as e:
        logger.error("Gemini API 通信エラー: %s", e)
        raise GeminiError(str(e)) from e

    if not resp.ok:
        logger.error("Gemini API HTTP エラー: status=%d, body=%s", resp.status_code, resp.text[:500])
        raise _classify_http_error(resp.status_code, resp.text)

    try:
        return resp.json()
    except ValueError as e:
        raise GeminiMalformedResponseError("Gemini API returned a non-JSON body") from e


def _candidate_text(chunk) -> str | None:
    if not isinstance(chunk, dict):
        return None
    candidates = chunk.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    if not parts:
        return None
    return parts[0].get("text") or None


def extract_text(response) -> str:
    """レスポンスからテキストを取り出す.

    ストリームレスポンス（チャンクの配列）の場合は各チャンクのテキストを連結する。
    """
    if isinstance(response, list):
        texts = [t for t in (_candidate_text(c) for c in response) if t]
        if not texts:
            raise GeminiMalformedResponseError("No text content in streaming response")
        logger.debug("ストリームチャンク連結: %d 件", len(texts))
        return "".join(texts)

    text = _candidate_text(response)
    if not text:
        raise GeminiMalformedResponseError("No text in Gemini API response")
    return text


def query_gemini_json(prompt: str) -> str:
    """JSON モードで問い合わせ、生成テキストを返す.

    Returns:
        JSON 文字列（パースは呼び出し側）

    Raises:
        GeminiError: 認証・上限・タイムアウト・レスポンス不正・その他
    """
    response = call_gemini_api(prompt, {"responseMimeType": "application/json"})
    text = extract_text(response)
    logger.info("Gemini API 応答受信: response_length=%d", len(text))
    return text

