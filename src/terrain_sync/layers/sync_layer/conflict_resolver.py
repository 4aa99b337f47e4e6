"""
競合解決システム
同一IDのローカル・リモートレコードのどちらを採用するかを決定する（レコード単位のLWW）
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, Optional
from enum import Enum
import logging

from ...core.models import SyncedEntity, utc_now
from .timestamp_normalizer import is_sentinel

logger = logging.getLogger(__name__)


class ConflictStrategy(Enum):
    """競合解決戦略"""
    LATEST_WINS = "latest_wins"          # 最新更新優先（同時刻はローカル優先）
    LOCAL_WINS = "local_wins"            # ローカル優先
    REMOTE_WINS = "remote_wins"          # リモート優先


class Resolution(Enum):
    """解決結果"""
    LOCAL_NEWER = "local_newer"
    REMOTE_NEWER = "remote_newer"
    TIE_LOCAL = "tie_local"
    FORCED_LOCAL = "forced_local"
    FORCED_REMOTE = "forced_remote"

    @property
    def local_wins(self) -> bool:
        return self in (Resolution.LOCAL_NEWER, Resolution.TIE_LOCAL, Resolution.FORCED_LOCAL)


@dataclass
class ConflictDecision:
    """競合判定"""
    record_id: str
    resolution: Resolution
    winner: SyncedEntity
    local_updated_at: datetime
    remote_updated_at: datetime
    decided_at: Optional[datetime] = None

    def summary(self) -> str:
        return (f"{self.record_id}: {self.resolution.value} "
                f"(local={self.local_updated_at.isoformat()}, remote={self.remote_updated_at.isoformat()})")


class ConflictResolver:
    """競合解決エンジン"""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.strategy = ConflictStrategy(config.get('strategy', 'latest_wins'))

        # 統計情報
        self.conflicts_detected = 0
        self.local_wins = 0
        self.remote_wins = 0
        self.ties = 0

    def resolve(self, local: SyncedEntity, remote: SyncedEntity) -> SyncedEntity:
        """勝者レコードを返す"""
        return self.decide(local, remote).winner

    def decide(self, local: SyncedEntity, remote: SyncedEntity) -> ConflictDecision:
        """競合判定（フィールド単位のマージは行わない）"""
        if local.id != remote.id:
            raise ValueError(f"Cannot resolve records with different ids: {local.id} vs {remote.id}")

        if not local.same_content(remote):
            self.conflicts_detected += 1

        if self.strategy == ConflictStrategy.LOCAL_WINS:
            resolution = Resolution.FORCED_LOCAL
        elif self.strategy == ConflictStrategy.REMOTE_WINS:
            resolution = Resolution.FORCED_REMOTE
        elif local.updated_at > remote.updated_at:
            resolution = Resolution.LOCAL_NEWER
        elif remote.updated_at > local.updated_at:
            resolution = Resolution.REMOTE_NEWER
        else:
            resolution = Resolution.TIE_LOCAL

        if resolution.local_wins:
            winner = local
            self.local_wins += 1
        else:
            winner = remote
            self.remote_wins += 1

        if resolution == Resolution.TIE_LOCAL and not local.same_content(remote):
            self.ties += 1
            logger.debug(f"Timestamp tie on {local.id}, keeping local copy")

        if is_sentinel(remote.updated_at) and resolution.local_wins:
            logger.info(f"Remote {remote.id} carries an unparseable timestamp, local copy wins")

        return ConflictDecision(
            record_id=local.id,
            resolution=resolution,
            winner=winner,
            local_updated_at=local.updated_at,
            remote_updated_at=remote.updated_at,
            decided_at=utc_now()
        )

    def get_statistics(self) -> Dict[str, Any]:
        """競合解決統計情報"""
        return {
            "conflicts_detected": self.conflicts_detected,
            "local_wins": self.local_wins,
            "remote_wins": self.remote_wins,
            "ties": self.ties,
            "strategy_used": self.strategy.value
        }
