"""
タイムスタンプ正規化
リモートから届く複数形式のタイムスタンプ文字列をUTCのdatetimeに統一する
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

# 解析不能な値に割り当てる番兵値（どの競合比較にも必ず負ける）
FAR_PAST = datetime.min.replace(tzinfo=timezone.utc)

# 末尾のオフセット表記ゆれ（"+00", "+0530", "Z"）
_SHORT_OFFSET = re.compile(r"([+-]\d{2})$")
_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


@dataclass(frozen=True)
class TimestampFormat:
    """受理するエンコーディング"""
    name: str
    pattern: str
    assume_utc: bool = False


# 優先順位順（先に成功したものを採用）
TIMESTAMP_FORMATS: List[TimestampFormat] = [
    TimestampFormat("iso8601_fractional", "%Y-%m-%dT%H:%M:%S.%f%z"),
    TimestampFormat("iso8601", "%Y-%m-%dT%H:%M:%S%z"),
    TimestampFormat("postgres_fractional", "%Y-%m-%d %H:%M:%S.%f%z"),
    TimestampFormat("postgres", "%Y-%m-%d %H:%M:%S%z"),
    TimestampFormat("postgres_fractional_spaced_offset", "%Y-%m-%d %H:%M:%S.%f %z"),
    TimestampFormat("postgres_spaced_offset", "%Y-%m-%d %H:%M:%S %z"),
    TimestampFormat("iso8601_naive_fractional", "%Y-%m-%dT%H:%M:%S.%f", assume_utc=True),
    TimestampFormat("iso8601_naive", "%Y-%m-%dT%H:%M:%S", assume_utc=True),
    TimestampFormat("postgres_naive_fractional", "%Y-%m-%d %H:%M:%S.%f", assume_utc=True),
    TimestampFormat("postgres_naive", "%Y-%m-%d %H:%M:%S", assume_utc=True),
]


def _prepare(raw: str) -> str:
    """strptimeが扱える形に表記を揃える"""
    value = raw.strip()
    # "+00" -> "+00:00"
    value = _SHORT_OFFSET.sub(r"\1:00", value)
    # ナノ秒精度はマイクロ秒に切り詰め
    value = _LONG_FRACTION.sub(r"\1", value)
    return value


def try_parse(raw: Any) -> Optional[datetime]:
    """タイムスタンプ解析（失敗時はNone）"""
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if not isinstance(raw, str) or not raw.strip():
        return None

    value = _prepare(raw)
    for timestamp_format in TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(value, timestamp_format.pattern)
        except ValueError:
            continue

        if timestamp_format.assume_utc:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    return None


def parse(raw: Any) -> datetime:
    """タイムスタンプ解析（失敗時は番兵値FAR_PASTを返し、例外は投げない）"""
    parsed = try_parse(raw)
    if parsed is None:
        logger.warning(f"Unparseable timestamp {raw!r}, falling back to far-past sentinel")
        return FAR_PAST
    return parsed


def is_sentinel(value: datetime) -> bool:
    return value == FAR_PAST


def format_timestamp(value: datetime) -> str:
    """正規形 YYYY-MM-DDTHH:MM:SS.ffffff+00:00 に整形"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
