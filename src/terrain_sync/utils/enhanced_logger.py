"""
強化ログシステム - 同期サイクルの構造化ログとメトリクス
"""

import json
import logging
import sys
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

import structlog


class LogLevel(Enum):
    """ログレベル定義"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AlertLevel(Enum):
    """アラートレベル"""
    WARNING = "warning"
    CRITICAL = "critical"


class MetricsCollector:
    """同期メトリクス収集"""

    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, list] = defaultdict(list)
        self.start_time = datetime.now(timezone.utc)

    def record_success(self, operation: str, duration: float):
        """成功メトリクス記録"""
        self.counters[f"{operation}.success"] += 1
        self.histograms[f"{operation}.duration"].append(duration)

    def record_error(self, operation: str, error_type: str):
        """エラーメトリクス記録"""
        self.counters[f"{operation}.error.{error_type}"] += 1

    def record_event(self, event_name: str, count: int = 1):
        self.counters[event_name] += count

    def set_gauge(self, name: str, value: float):
        self.gauges[name] = value

    def _operation_totals(self) -> Dict[str, Dict[str, int]]:
        totals: Dict[str, Dict[str, int]] = defaultdict(lambda: {"success": 0, "error": 0})
        for key, count in self.counters.items():
            if key.endswith(".success"):
                totals[key[:-len(".success")]]["success"] += count
            elif ".error." in key:
                totals[key.split(".error.", 1)[0]]["error"] += count
        return totals

    def get_health_summary(self) -> Dict[str, Any]:
        """健全性サマリー"""
        uptime = (datetime.now(timezone.utc) - self.start_time).total_seconds()

        totals = self._operation_totals()
        total_successes = sum(t["success"] for t in totals.values())
        total_operations = total_successes + sum(t["error"] for t in totals.values())
        success_rate = (total_successes / total_operations * 100) if total_operations > 0 else 100.0

        avg_durations = {
            key: sum(values) / len(values)
            for key, values in self.histograms.items() if values
        }

        return {
            'uptime_seconds': uptime,
            'success_rate_percent': success_rate,
            'total_operations': total_operations,
            'avg_durations': avg_durations,
            'error_rates_by_type': self._get_error_rates(totals),
            'gauges': self.gauges.copy(),
        }

    def _get_error_rates(self, totals: Dict[str, Dict[str, int]]) -> Dict[str, float]:
        """操作・エラー種別ごとのエラー率"""
        error_rates = {}
        for key, count in self.counters.items():
            if ".error." not in key:
                continue
            operation, error_type = key.split(".error.", 1)
            total = totals[operation]["success"] + totals[operation]["error"]
            if total:
                error_rates[f"{operation}.{error_type}"] = count / total * 100
        return error_rates


class EnhancedLogger:
    """強化ログシステム"""

    def __init__(self,
                 name: str = "terrain_sync",
                 log_level: LogLevel = LogLevel.INFO,
                 log_file: Optional[Path] = None,
                 metrics_enabled: bool = True,
                 structured_stream: Optional[TextIO] = None):

        self.name = name
        self.metrics = None
        self.configure(log_level, log_file, metrics_enabled, structured_stream)

    def configure(self,
                  log_level: LogLevel = LogLevel.INFO,
                  log_file: Optional[Path] = None,
                  metrics_enabled: bool = True,
                  structured_stream: Optional[TextIO] = None):
        """出力先・レベルの（再）設定。既存インスタンスの参照はそのまま有効"""
        self.log_level = log_level
        self.log_file = log_file
        self.metrics_enabled = metrics_enabled

        if not metrics_enabled:
            self.metrics = None
        elif self.metrics is None:
            self.metrics = MetricsCollector()

        # 構造化ログ設定
        self._setup_structured_logging(structured_stream or sys.stderr)

        # 標準ログ設定
        self._setup_standard_logging()

    def _setup_structured_logging(self, stream: TextIO):
        """構造化ログ（JSON）の設定"""
        def add_logger_name(logger, method_name, event_dict):
            event_dict['logger'] = self.name
            return event_dict

        self.structured_logger = structlog.wrap_logger(
            structlog.WriteLogger(stream),
            processors=[
                add_logger_name,
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.JSONRenderer(ensure_ascii=False, default=str),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(
                getattr(logging, self.log_level.value)
            ),
        )

    def _setup_standard_logging(self):
        """標準ログの設定（パッケージ配下の全loggerに適用）"""
        self.logger = logging.getLogger(self.name)
        self.logger.setLevel(getattr(logging, self.log_level.value))

        # 再設定時のハンドラー重複を防ぐ
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[BaseException] = None, **kwargs):
        """エラーログ"""
        if error:
            kwargs['error_type'] = error.__class__.__name__
            kwargs['error_message'] = str(error)
        self._log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(LogLevel.CRITICAL, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def _log(self, level: LogLevel, message: str, **kwargs):
        """内部ログ処理"""
        if self.metrics and level in (LogLevel.ERROR, LogLevel.CRITICAL):
            self.metrics.record_error(kwargs.get('operation', 'unknown'),
                                      kwargs.get('error_type', 'unknown'))

        # 構造化ログ
        getattr(self.structured_logger, level.value.lower())(message, **kwargs)

        # 標準ログ
        log_method = getattr(self.logger, level.value.lower())
        if kwargs:
            log_method(f"{message} | Context: {json.dumps(kwargs, default=str, ensure_ascii=False)}")
        else:
            log_method(message)

        if level in (LogLevel.ERROR, LogLevel.CRITICAL):
            self._check_alert_conditions()

    def _check_alert_conditions(self):
        """成功率低下のアラート判定"""
        if not self.metrics:
            return

        health_summary = self.metrics.get_health_summary()
        success_rate = health_summary['success_rate_percent']

        if success_rate < 50.0:
            self._trigger_alert(AlertLevel.CRITICAL, f"Sync success rate dropped to {success_rate:.1f}%")
        elif success_rate < 95.0:
            self._trigger_alert(AlertLevel.WARNING, f"Sync success rate at {success_rate:.1f}%")

    def _trigger_alert(self, alert_level: AlertLevel, message: str):
        self.structured_logger.warning("alert", alert_level=alert_level.value, alert_message=message)
        self.logger.warning(f"ALERT [{alert_level.value.upper()}]: {message}")

    def log_operation_start(self, operation: str, **context) -> dict:
        """操作開始ログ"""
        start_time = datetime.now(timezone.utc)
        self.info(f"Operation started: {operation}", operation=operation, status='started', **context)
        return {'start_time': start_time, 'operation': operation, **context}

    def log_operation_end(self, operation_context: dict, success: bool = True, **additional_context):
        """操作終了ログ（所要時間をメトリクスに記録）"""
        end_time = datetime.now(timezone.utc)
        start_time = operation_context.get('start_time')
        operation = operation_context.get('operation', 'unknown')
        duration = (end_time - start_time).total_seconds() if start_time else 0.0

        result_context = {
            key: value for key, value in operation_context.items() if key != 'start_time'
        }
        result_context.update(additional_context)
        result_context['duration_seconds'] = duration
        result_context['status'] = 'success' if success else 'failed'

        if success:
            if self.metrics:
                self.metrics.record_success(operation, duration)
            self.info(f"Operation completed: {operation} ({duration:.2f}s)", **result_context)
        else:
            result_context.setdefault('error_type', 'failed')
            self.error(f"Operation failed: {operation} ({duration:.2f}s)", **result_context)

    def get_health_status(self) -> dict:
        """健全性ステータス取得"""
        if not self.metrics:
            return {"status": "metrics_disabled"}

        health_summary = self.metrics.get_health_summary()

        success_rate = health_summary['success_rate_percent']
        if success_rate >= 98.0:
            status = "healthy"
        elif success_rate >= 90.0:
            status = "warning"
        elif success_rate >= 70.0:
            status = "degraded"
        else:
            status = "critical"

        return {
            "overall_status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **health_summary
        }


# グローバルインスタンス
_global_logger: Optional[EnhancedLogger] = None


def get_logger(name: str = "terrain_sync",
               log_level: LogLevel = LogLevel.INFO,
               log_file: Optional[Path] = None) -> EnhancedLogger:
    """グローバルロガー取得"""
    global _global_logger

    if _global_logger is None:
        _global_logger = EnhancedLogger(name, log_level, log_file)

    return _global_logger


def setup_logging(config: Optional[dict] = None) -> EnhancedLogger:
    """ログ設定の初期化"""
    config = config or {}

    log_file_path = config.get('file_path')

    name = config.get('name', 'terrain_sync')
    log_level = LogLevel(str(config.get('level', 'INFO')).upper())
    log_file = Path(log_file_path) if log_file_path else None
    metrics_enabled = config.get('metrics_enabled', True)

    global _global_logger
    if _global_logger is not None and _global_logger.name == name:
        _global_logger.configure(log_level, log_file, metrics_enabled)
    else:
        _global_logger = EnhancedLogger(name, log_level, log_file, metrics_enabled)

    return _global_logger
