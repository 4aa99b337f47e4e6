"""
レート制限管理
リモートストアへのネットワーク操作をスライディングウィンドウで制限する
"""

import asyncio
import time
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

_PERIODS = {
    'second': 1,
    'minute': 60,
    'hour': 3600,
}


class RateLimiter:
    """レート制限管理"""

    def __init__(self, max_requests: int, time_window: float,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.time_window = time_window  # seconds
        self.requests: List[float] = []
        self._clock = clock
        self._lock = asyncio.Lock()

    @classmethod
    def from_string(cls, rate_limit: Optional[str]) -> Optional["RateLimiter"]:
        """"30/minute", "100/hour" 形式のパース"""
        if not rate_limit:
            return None

        try:
            count, period = rate_limit.split('/')
            return cls(int(count), _PERIODS.get(period.strip(), 60))
        except ValueError:
            logger.warning(f"Invalid rate limit format: {rate_limit}")
            return None

    def _prune(self, now: float):
        self.requests = [req_time for req_time in self.requests
                         if now - req_time < self.time_window]

    async def acquire(self) -> bool:
        """レート制限チェック・許可取得"""
        async with self._lock:
            now = self._clock()

            # 古いリクエスト記録を削除
            self._prune(now)

            # レート制限チェック
            if len(self.requests) >= self.max_requests:
                return False

            # リクエスト記録
            self.requests.append(now)
            return True

    def wait_time(self) -> float:
        """次に利用可能になるまでの待機時間を取得"""
        if len(self.requests) < self.max_requests:
            return 0.0

        oldest_request = min(self.requests)
        return max(0.0, self.time_window - (self._clock() - oldest_request))

    async def wait_for_slot(self):
        """許可が得られるまで待機"""
        while not await self.acquire():
            delay = self.wait_time()
            logger.debug(f"Rate limited, waiting {delay:.2f}s")
            await asyncio.sleep(max(delay, 0.01))
