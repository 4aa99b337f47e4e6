"""
デバウンススケジューラ
アプリのフォアグラウンド/バックグラウンド切り替えなどによる連続した同期要求を抑制する
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ...core.models import utc_now

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(seconds=30)


class DebounceScheduler:
    """同期実行可否の判定"""

    def __init__(self, cooldown: timedelta = DEFAULT_COOLDOWN,
                 clock: Callable[[], datetime] = utc_now):
        self.cooldown = cooldown
        self._clock = clock
        self._last_sync_time: Optional[datetime] = None

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self._last_sync_time

    def should_run(self, force: bool = False, now: Optional[datetime] = None) -> bool:
        """実行可否を判定し、実行する場合は即座に時刻を記録する"""
        now = now or self._clock()

        if force or self._last_sync_time is None or now - self._last_sync_time >= self.cooldown:
            # 楽観的マーク（重複した呼び出しが両方通過しないように）
            self._last_sync_time = now
            return True

        remaining = self.cooldown - (now - self._last_sync_time)
        logger.debug(f"Sync debounced, {remaining.total_seconds():.1f}s of cooldown left")
        return False

    def reset(self):
        self._last_sync_time = None
