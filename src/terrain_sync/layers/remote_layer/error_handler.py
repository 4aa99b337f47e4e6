"""
エラーハンドリング
同期エラーの種別ごとの集計・アラート閾値・再認証エスカレーション
一時的な障害の即時リトライは行わず、次回の同期トリガーを待つ
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ...core.errors import SyncErrorKind
from ...core.models import SyncError

logger = logging.getLogger(__name__)


class RecoveryAction:
    """復旧方針"""
    RETRY_NEXT_TRIGGER = "retry_next_trigger"
    REAUTHENTICATE = "reauthenticate"
    SKIP_RECORD = "skip_record"


@dataclass
class ErrorStrategy:
    """エラー対応戦略設定"""
    action: str
    alert_threshold: int = 1
    escalation: Optional[str] = None


class ErrorHandler:
    """同期エラー集計システム"""

    # エラータイプ別の対応戦略
    STRATEGIES: Dict[SyncErrorKind, ErrorStrategy] = {
        SyncErrorKind.NETWORK: ErrorStrategy(
            action=RecoveryAction.RETRY_NEXT_TRIGGER,
            alert_threshold=3
        ),
        SyncErrorKind.AUTHENTICATION: ErrorStrategy(
            action=RecoveryAction.REAUTHENTICATE,
            alert_threshold=1,
            escalation='immediate'
        ),
        SyncErrorKind.REQUEST: ErrorStrategy(
            action=RecoveryAction.SKIP_RECORD,
            alert_threshold=3
        ),
        SyncErrorKind.SERIALIZATION: ErrorStrategy(
            action=RecoveryAction.SKIP_RECORD,
            alert_threshold=5
        ),
        SyncErrorKind.LOCAL_STORAGE: ErrorStrategy(
            action=RecoveryAction.RETRY_NEXT_TRIGGER,
            alert_threshold=1
        ),
        SyncErrorKind.UNKNOWN: ErrorStrategy(
            action=RecoveryAction.RETRY_NEXT_TRIGGER,
            alert_threshold=3
        ),
    }

    def __init__(self):
        self.error_counts: Dict[SyncErrorKind, int] = {}
        self.history: List[SyncError] = []
        self.reauthentication_required = False

    def handle_error(self, error: SyncError) -> str:
        """エラー記録と復旧方針の決定"""
        strategy = self.STRATEGIES.get(error.kind, self.STRATEGIES[SyncErrorKind.UNKNOWN])

        # エラーカウント更新
        self.error_counts[error.kind] = self.error_counts.get(error.kind, 0) + 1
        self.history.append(error)

        logger.error(f"Sync error classified as {error.kind.value}: {error}")

        # アラート閾値チェック
        if self.error_counts[error.kind] >= strategy.alert_threshold:
            self._send_alert(error, self.error_counts[error.kind])

        # エスカレーション判定
        if strategy.escalation == 'immediate':
            self._escalate_error(error)

        if strategy.action == RecoveryAction.REAUTHENTICATE:
            self.reauthentication_required = True

        return strategy.action

    def record_success(self):
        """正常終了時にカウントをリセット"""
        self.error_counts.clear()

    def clear_reauthentication(self):
        self.reauthentication_required = False

    def _send_alert(self, error: SyncError, count: int):
        """エラーアラート"""
        logger.warning(
            f"Repeated sync errors: kind={error.kind.value} count={count} latest={error.message}"
        )

    def _escalate_error(self, error: SyncError):
        """エラーエスカレーション"""
        logger.critical(
            f"Sync requires re-authentication: collection={error.collection} error={error.message}"
        )

    def get_statistics(self) -> Dict[str, int]:
        return {kind.value: count for kind, count in self.error_counts.items()}
