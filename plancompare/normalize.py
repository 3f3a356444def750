"""スクレイプ結果の正規化モジュール.

8 つの取得元 (各社サイト 7 + Uswitch) から来る生データを、DB 保存前に
統一フォーマットへ変換する。

正規化後のフォーマット:
  data_allowance: "Unlimited" / "10GB" / "1.5GB" / "500MB"
  price:          "£10.00" / "Unknown"
  contract_term:  "12 months" / "1 month" / "PAYG"
  plan_key:       "{Source}-{data}-{contract}" (例: O2-10GB-12months)

どの関数も例外を投げない。想定外フォーマットは WARNING を出して入力をそのまま返す。
"""

from __future__ import annotations

import logging
import math
import re
import time
from decimal import ROUND_HALF_UP, Decimal

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

# 取得元ごとにフィールド名が揺れるため、候補を順に見る
DATA_ALLOWANCE_ALIASES = ("data_allowance", "dataAllowance", "data", "allowance")
PRICE_ALIASES = ("price", "monthlyPrice", "monthly_cost", "cost")
# Uswitch は contract_length を数値で持つ
CONTRACT_TERM_ALIASES = ("contract_term", "contractTerm", "contract", "contract_length")

_UNLIMITED_PATTERN = re.compile(r"unlimited", re.IGNORECASE)
_INTEGER_PATTERN = re.compile(r"^\d+$")
_GB_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*GB?$", re.IGNORECASE)
_MB_PATTERN = re.compile(r"^(\d+)\s*MB$", re.IGNORECASE)

_PENCE_PATTERN = re.compile(r"^\d{3,}$")
_POUND_PATTERN = re.compile(r"£\s*(\d+(?:\.\d+)?)")
_BARE_NUMBER_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)$")
_GBP_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*GBP", re.IGNORECASE)

_MONTHS_PATTERN = re.compile(r"^(\d+)\s*(?:months?|m|-months?)$", re.IGNORECASE)
_YEARS_PATTERN = re.compile(r"^(\d+)\s*years?$", re.IGNORECASE)
_PAYG_PATTERN = re.compile(r"pay\s*as\s*you\s*go|payg", re.IGNORECASE)

_ONE_PLACE = Decimal("0.1")
_TWO_PLACES = Decimal("0.01")


def _to_text(value) -> str:
    """数値は文字列化する。整数値の float は .0 を付けない."""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _is_missing(value) -> bool:
    """None または空白のみの文字列なら True."""
    return value is None or (isinstance(value, str) and not value.strip())


def _format_gb(value: float) -> str:
    """GB 値を "<n>GB" にする. 小数は 1 桁に四捨五入し、末尾の .0 は付けない."""
    rounded = Decimal(str(value)).quantize(_ONE_PLACE, rounding=ROUND_HALF_UP)
    if rounded == rounded.to_integral_value():
        return f"{int(rounded)}GB"
    return f"{rounded}GB"


def _format_months(months: int) -> str:
    """月数を "1 month" / "<n> months" にする."""
    return "1 month" if months == 1 else f"{months} months"


def _format_pounds(amount: str | Decimal) -> str:
    return f"£{Decimal(amount).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)}"


def normalize_data_allowance(value) -> str:
    """データ容量を正規化する.

    入力例:
        "20GB", "20 GB", "20G" (各社サイト)
        "Unlimited" (全取得元)
        "50000" (Uswitch, MB 単位の数値)
        "0.5GB" (Smarty)

    Returns:
        "Unlimited" / "<n>GB" / "<n>MB"。欠損時は "Unknown"、
        想定外フォーマットは入力をそのまま返す。
    """
    if _is_missing(value):
        logger.warning("データ容量が未設定: %r", value)
        return UNKNOWN

    text = _to_text(value)

    if _UNLIMITED_PATTERN.search(text):
        return "Unlimited"

    # 数値のみは MB とみなす
    if _INTEGER_PATTERN.match(text):
        mb = int(text)
        if mb >= 1000:
            return _format_gb(mb / 1000)
        return f"{mb}MB"

    m = _GB_PATTERN.match(text)
    if m:
        gb = float(m.group(1))
        if gb < 1:
            return f"{math.floor(gb * 1000 + 0.5)}MB"
        return _format_gb(gb)

    m = _MB_PATTERN.match(text)
    if m:
        return f"{m.group(1)}MB"

    logger.warning("想定外のデータ容量フォーマット: %r", text)
    return text


def normalize_price(value) -> str:
    """月額料金を "£xx.xx" 形式に正規化する.

    入力例:
        "£20.00/month", "£0/month" (O2, Smarty, Uswitch)
        "£10", "£8.00" (Tesco, Giffgaff)
        "1300" (Three, ペンス単位の整数)
        "10 GBP per month"
        "Unknown" (Vodafone)
    """
    if _is_missing(value):
        logger.warning("料金が未設定: %r", value)
        return UNKNOWN

    text = _to_text(value)

    if text.lower() == UNKNOWN.lower():
        return UNKNOWN

    # 3 桁以上の整数はペンス
    if _PENCE_PATTERN.match(text):
        return _format_pounds(Decimal(text) / 100)

    # "/month" や "a month" が続くものも含む
    m = _POUND_PATTERN.search(text)
    if m:
        return _format_pounds(m.group(1))

    m = _BARE_NUMBER_PATTERN.match(text)
    if m:
        return _format_pounds(m.group(1))

    m = _GBP_PATTERN.search(text)
    if m:
        return _format_pounds(m.group(1))

    logger.warning("想定外の料金フォーマット: %r", text)
    return text


def normalize_contract_term(value) -> str:
    """契約期間を正規化する.

    入力例:
        "24 months", "1 month", "1 months" (Uswitch の表記揺れ)
        "2 years", "12m", "12-month"
        "Pay as you go", "PAYG"
        0, 1, 24 (Uswitch の contract_length。0 は PAYG)
    """
    if _is_missing(value):
        logger.warning("契約期間が未設定: %r", value)
        return UNKNOWN

    text = _to_text(value)

    m = _MONTHS_PATTERN.match(text)
    if m:
        return _format_months(int(m.group(1)))

    m = _YEARS_PATTERN.match(text)
    if m:
        return f"{int(m.group(1)) * 12} months"

    if _PAYG_PATTERN.search(text):
        return "PAYG"

    if _INTEGER_PATTERN.match(text):
        months = int(text)
        if months == 0:
            return "PAYG"
        return _format_months(months)

    logger.warning("想定外の契約期間フォーマット: %r", text)
    return text


def generate_plan_key(source: str, data_allowance: str, contract_term: str) -> str:
    """履歴追跡用の plan_key を生成する.

    例: ("giffgaff", "25GB", "18 months") -> "Giffgaff-25GB-18months"
    """
    safe_source = source[:1].upper() + source[1:].lower()
    safe_data = re.sub(r"\s+", "", data_allowance)
    safe_contract = re.sub(r"\s+", "", contract_term).lower()
    return f"{safe_source}-{safe_data}-{safe_contract}"


def _first_present(record: dict, aliases: tuple[str, ...]):
    """aliases の順に見て、最初に値が入っているフィールドの値を返す."""
    for key in aliases:
        value = record.get(key)
        if not _is_missing(value):
            return value
    return None


def normalize_plan_data(raw: dict, source: str) -> dict:
    """生レコード 1 件を正規化する.

    元のフィールドはすべて残し、name / data_allowance / price /
    contract_term / plan_key を上書きした新しい dict を返す。
    内部で例外が起きても送出せず、normalization_error=True を付けて返す。
    """
    try:
        data_allowance = normalize_data_allowance(
            _first_present(raw, DATA_ALLOWANCE_ALIASES)
        )
        price = normalize_price(_first_present(raw, PRICE_ALIASES))
        contract_term = normalize_contract_term(
            _first_present(raw, CONTRACT_TERM_ALIASES)
        )
        plan_key = generate_plan_key(source, data_allowance, contract_term)

        normalized = {
            **raw,
            "name": raw.get("name") or "Unnamed Plan",
            "data_allowance": data_allowance,
            "price": price,
            "contract_term": contract_term,
            "plan_key": plan_key,
        }
        logger.debug(
            "正規化完了: source=%s, plan_key=%s, price=%s", source, plan_key, price
        )
        return normalized
    except Exception:
        logger.exception("プランの正規化に失敗: source=%s, raw=%r", source, raw)
        base = dict(raw) if isinstance(raw, dict) else {}
        return {
            **base,
            "name": base.get("name") or "Error",
            "data_allowance": UNKNOWN,
            "price": UNKNOWN,
            "contract_term": UNKNOWN,
            # 一意性を保つため時刻を付ける
            "plan_key": f"{source}-Error-{time.time_ns()}",
            "normalization_error": True,
        }


def normalize_plans(records: list[dict], source: str) -> list[dict]:
    """生レコードのリストを順序を保ったまま正規化する."""
    return [normalize_plan_data(record, source) for record in records]
