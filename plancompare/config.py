"""設定モジュール — 環境変数・定数定義."""

import os
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# --- Supabase ---
# 未設定でも import は通す。クライアント生成時にエラーにする
SUPABASE_URL: str = os.environ.get("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.environ.get("SUPABASE_SECRET_KEY", "")
SUPABASE_SCHEMA: str = os.environ.get("SUPABASE_SCHEMA", "public")

# --- Gemini ---
GEMINI_API_KEY: str = os.environ.get("GEMINI_API_KEY", "")
GEMINI_API_URL: str = os.environ.get(
    "GEMINI_API_URL",
    "https://aiplatform.googleapis.com/v1/publishers/google/models/"
    "gemini-2.5-pro:streamGenerateContent",
)
# 未設定ならタイムアウトなし（キャンセルは呼び出し側の責務）
_timeout = os.environ.get("GEMINI_REQUEST_TIMEOUT", "")
GEMINI_REQUEST_TIMEOUT: float | None = float(_timeout) if _timeout else None

# --- 取得元 ---
SOURCES = [
    "O2",
    "Vodafone",
    "Sky",
    "Tesco",
    "Three",
    "Giffgaff",
    "Smarty",
    "Uswitch",
]

# full 比較で「他社すべて」と比べる基準ブランド
DISTINGUISHED_BRAND = "O2"

# --- キャッシュ・データ鮮度 ---
CACHE_TTL_HOURS = 24
PLAN_LOOKBACK_DAYS = 7

# --- 生成リトライ ---
MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 2.0  # 秒
RETRY_MAX_DELAY = 10.0  # 秒

# --- プロンプト ---
PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"

# --- ログ ---
LOG_DIR = _PROJECT_ROOT / "logs"
LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
