"""データモデル定義"""

import uuid
from dataclasses import dataclass, field, fields, asdict, MISSING
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from .errors import SerializationError, SyncEngineError, SyncErrorKind, classify_error


def utc_now() -> datetime:
    """現在時刻（UTC）"""
    return datetime.now(timezone.utc)


class SyncTrigger(Enum):
    """同期トリガーイベント"""
    APP_DID_BECOME_ACTIVE = "app_did_become_active"
    AUTHENTICATION_SUCCEEDED = "authentication_succeeded"
    COLD_START = "cold_start"
    MANUAL_REFRESH_REQUESTED = "manual_refresh_requested"

    @property
    def forces_sync(self) -> bool:
        """クールダウンを無視するトリガーかどうか"""
        return self is not SyncTrigger.APP_DID_BECOME_ACTIVE


class SkipReason(Enum):
    """同期サイクルを実行しなかった理由"""
    ALREADY_SYNCING = "already_syncing"
    DEBOUNCED = "debounced"
    SIGNED_OUT = "signed_out"


@dataclass(frozen=True)
class Session:
    """認証済みセッション"""
    identity: str
    email: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at


# --- コレクション別ペイロード ---

def _expect(value: Any, expected: Tuple[type, ...], name: str):
    if value is not None and not isinstance(value, expected):
        raise SerializationError(f"Field '{name}' has unexpected type {type(value).__name__}")


def _expect_date_string(value: Optional[str], name: str):
    if value is None:
        return
    _expect(value, (str,), name)
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise SerializationError(f"Field '{name}' is not a YYYY-MM-DD date: {value!r}")


@dataclass
class Payload:
    """ペイロード基底クラス"""

    @classmethod
    def from_dict(cls, data: Any) -> "Payload":
        """辞書からペイロードを構築（形式不正はSerializationError）"""
        if not isinstance(data, dict):
            raise SerializationError(f"{cls.__name__} expects an object, got {type(data).__name__}")

        kwargs = {}
        for f in fields(cls):
            value = data.get(f.name)
            if value is not None:
                kwargs[f.name] = value
            elif f.default is MISSING and f.default_factory is MISSING:
                raise SerializationError(f"{cls.__name__} is missing required field '{f.name}'")

        payload = cls(**kwargs)
        payload.validate()
        return payload

    def validate(self):
        pass

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProfilePayload(Payload):
    """ユーザープロフィール"""
    terrain_profile_id: Optional[str] = None
    terrain_modifier: Optional[str] = None
    goals: List[str] = field(default_factory=list)
    quiz_responses: Dict[str, str] = field(default_factory=dict)
    notification_preferences: Dict[str, Any] = field(default_factory=lambda: {"enabled": False})

    def validate(self):
        _expect(self.terrain_profile_id, (str,), "terrain_profile_id")
        _expect(self.terrain_modifier, (str,), "terrain_modifier")
        _expect(self.goals, (list,), "goals")
        _expect(self.quiz_responses, (dict,), "quiz_responses")
        _expect(self.notification_preferences, (dict,), "notification_preferences")


@dataclass
class DailyLogPayload(Payload):
    """日次ログ"""
    date: str
    symptoms: List[str] = field(default_factory=list)
    energy_level: Optional[str] = None
    quick_symptoms: List[str] = field(default_factory=list)
    completed_routine_ids: List[str] = field(default_factory=list)
    completed_movement_ids: List[str] = field(default_factory=list)
    routine_level: Optional[str] = None
    routine_feedback: List[Dict[str, Any]] = field(default_factory=list)
    quick_fix_completion_times: Dict[str, str] = field(default_factory=dict)
    notes: Optional[str] = None

    def validate(self):
        _expect_date_string(self.date, "date")
        for name in ("symptoms", "quick_symptoms", "completed_routine_ids",
                     "completed_movement_ids", "routine_feedback"):
            _expect(getattr(self, name), (list,), name)
        _expect(self.quick_fix_completion_times, (dict,), "quick_fix_completion_times")
        _expect(self.energy_level, (str,), "energy_level")
        _expect(self.routine_level, (str,), "routine_level")
        _expect(self.notes, (str,), "notes")


@dataclass
class ProgressRecordPayload(Payload):
    """進捗記録"""
    current_streak: int = 0
    longest_streak: int = 0
    total_completions: int = 0

    def validate(self):
        for name in ("current_streak", "longest_streak", "total_completions"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise SerializationError(f"Field '{name}' must be an integer")


@dataclass
class CabinetItemPayload(Payload):
    """キャビネット（手持ち食材）"""
    ingredient_id: str
    added_at: Optional[str] = None

    def validate(self):
        _expect(self.ingredient_id, (str,), "ingredient_id")
        _expect(self.added_at, (str,), "added_at")


@dataclass
class ProgramEnrollmentPayload(Payload):
    """プログラム登録"""
    program_id: str
    start_date: str
    current_day: int = 1
    day_completions: List[Dict[str, Any]] = field(default_factory=list)
    is_active: bool = True
    completed_at: Optional[str] = None

    def validate(self):
        _expect(self.program_id, (str,), "program_id")
        _expect_date_string(self.start_date, "start_date")
        _expect(self.current_day, (int,), "current_day")
        _expect(self.day_completions, (list,), "day_completions")
        _expect(self.is_active, (bool,), "is_active")
        _expect(self.completed_at, (str,), "completed_at")


@dataclass(frozen=True)
class CollectionSpec:
    """同期対象コレクションの定義"""
    name: str
    table: str
    payload_type: Type[Payload]
    window_field: Optional[str] = None  # 期間で絞り込む日付フィールド

    def validate_payload(self, payload: Any) -> Dict[str, Any]:
        return self.payload_type.from_dict(payload).to_dict()


PROFILE = CollectionSpec("profile", "user_profiles", ProfilePayload)
DAILY_LOG = CollectionSpec("daily_log", "daily_logs", DailyLogPayload, window_field="date")
PROGRESS_RECORD = CollectionSpec("progress_record", "progress_records", ProgressRecordPayload)
CABINET_ITEM = CollectionSpec("cabinet_item", "user_cabinets", CabinetItemPayload)
PROGRAM_ENROLLMENT = CollectionSpec("program_enrollment", "program_enrollments", ProgramEnrollmentPayload)

COLLECTIONS: Tuple[CollectionSpec, ...] = (
    PROFILE, DAILY_LOG, PROGRESS_RECORD, CABINET_ITEM, PROGRAM_ENROLLMENT,
)


def get_collection(name: str) -> CollectionSpec:
    for spec in COLLECTIONS:
        if spec.name == name:
            return spec
    raise KeyError(f"Unknown collection: {name}")


@dataclass
class SyncedEntity:
    """同期対象レコード"""
    id: str
    collection: str
    owner_identity: Optional[str]
    updated_at: datetime
    payload: Dict[str, Any]
    deleted: bool = False
    synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def create(cls, collection: str, payload: Dict[str, Any],
               owner_identity: Optional[str] = None,
               now: Optional[datetime] = None) -> "SyncedEntity":
        """新規レコード作成（IDはローカルで生成）"""
        now = now or utc_now()
        return cls(
            id=str(uuid.uuid4()),
            collection=collection,
            owner_identity=owner_identity,
            updated_at=now,
            payload=dict(payload),
            created_at=now,
        )

    def same_content(self, other: "SyncedEntity") -> bool:
        """両側で書き戻しが不要な状態かどうか"""
        return (self.updated_at == other.updated_at
                and self.deleted == other.deleted
                and self.payload == other.payload)

    def __str__(self) -> str:
        state = " (deleted)" if self.deleted else ""
        return f"{self.collection}/{self.id} @ {self.updated_at.isoformat()}{state}"


@dataclass
class SyncStats:
    """コレクション単位の同期統計"""
    collection: str
    remote_rows: int = 0
    local_rows: int = 0
    pushed: int = 0
    pulled: int = 0
    deleted_remote: int = 0
    deleted_local: int = 0
    conflicts: int = 0
    skipped: int = 0
    deferred: int = 0
    unchanged: int = 0

    @property
    def total_changes(self) -> int:
        return self.pushed + self.pulled + self.deleted_remote + self.deleted_local

    def summary(self) -> str:
        return (f"{self.collection}: "
                f"{self.pushed} pushed, "
                f"{self.pulled} pulled, "
                f"{self.deleted_remote + self.deleted_local} deleted, "
                f"{self.conflicts} conflicts, "
                f"{self.skipped} skipped, "
                f"{self.deferred} deferred")


@dataclass
class SyncError:
    """同期エラー（値として返却される）"""
    collection: Optional[str]
    kind: SyncErrorKind
    message: str
    occurred_at: datetime = field(default_factory=utc_now)
    status: Optional[int] = None

    @property
    def requires_reauthentication(self) -> bool:
        return self.kind == SyncErrorKind.AUTHENTICATION

    @classmethod
    def from_exception(cls, collection: Optional[str], error: BaseException,
                       now: Optional[datetime] = None) -> "SyncError":
        return cls(
            collection=collection,
            kind=classify_error(error),
            message=str(error) or error.__class__.__name__,
            occurred_at=now or utc_now(),
            status=getattr(error, 'status', None) if isinstance(error, SyncEngineError) else None,
        )

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.collection or 'sync'}: {self.message}"


@dataclass
class CollectionSyncResult:
    """コレクション同期結果（SyncStatsまたはSyncError）"""
    collection: str
    stats: Optional[SyncStats] = None
    error: Optional[SyncError] = None
    # 完了したコレクション内でスキップされたレコードの最後のエラー
    record_error: Optional[SyncError] = None

    @classmethod
    def ok(cls, stats: SyncStats, record_error: Optional[SyncError] = None) -> "CollectionSyncResult":
        return cls(collection=stats.collection, stats=stats, record_error=record_error)

    @classmethod
    def failure(cls, error: SyncError, stats: Optional[SyncStats] = None) -> "CollectionSyncResult":
        return cls(collection=error.collection or "", stats=stats, error=error)

    def is_successful(self) -> bool:
        return self.error is None


@dataclass
class SyncSummary:
    """同期サイクル結果サマリー"""
    started_at: datetime
    forced: bool
    finished_at: Optional[datetime] = None
    skipped_reason: Optional[SkipReason] = None
    results: Dict[str, CollectionSyncResult] = field(default_factory=dict)
    last_sync_error: Optional[SyncError] = None

    @property
    def performed(self) -> bool:
        return self.skipped_reason is None

    @property
    def failed_collections(self) -> List[str]:
        return [name for name, result in self.results.items() if not result.is_successful()]

    @property
    def requires_reauthentication(self) -> bool:
        return any(result.error.requires_reauthentication
                   for result in self.results.values() if result.error)

    def is_successful(self) -> bool:
        return self.performed and not self.failed_collections

    def summary(self) -> str:
        if not self.performed:
            return f"Sync skipped: {self.skipped_reason.value}"
        succeeded = len(self.results) - len(self.failed_collections)
        return f"Sync: {succeeded}/{len(self.results)} collections succeeded"


@dataclass
class PurgeResult:
    """サインアウト時のローカル削除結果"""
    rows_deleted: Dict[str, int]
    purged_at: datetime = field(default_factory=utc_now)

    @property
    def total_deleted(self) -> int:
        return sum(self.rows_deleted.values())
