"""Observability utilities for notetree.

Provides persistent disk logging with rotation, per-operation timing
metrics and a context manager that ties the two together.
"""
import json
import logging
import os
import re
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

# Default log directory (can be overridden via configure_logging)
DEFAULT_LOG_DIR = Path.home() / ".notetree" / "logs"

# Logging format with ISO 8601 timestamps
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_HOME = str(Path.home())


def _sanitize_error_message(message: Optional[str], max_length: int = 200) -> Optional[str]:
    """Make an error message safe to keep in metrics.

    Replaces the home directory with '~', flattens newlines and truncates
    to max_length characters (ending in '...').
    """
    if message is None:
        return None
    result = message.replace(_HOME, "~") if _HOME and _HOME != "/" else message
    result = re.sub(r"[\r\n]+", " ", result)
    if len(result) > max_length:
        result = result[: max_length - 3] + "..."
    return result


def _is_console_handler(handler: logging.Handler) -> bool:
    # FileHandler subclasses StreamHandler
    return isinstance(handler, logging.StreamHandler) and not isinstance(
        handler, logging.FileHandler
    )


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the notetree logger hierarchy to a rotating log file.

    Calling it again with the same directory only updates the level; no
    second handler is attached for the same file.

    Args:
        log_dir: Directory for notetree.log. Defaults to ~/.notetree/logs/
        level: Level for the logger and its handlers.
        max_bytes: Size at which the file is rotated (default: 10 MB).
        backup_count: Rotated files to keep (default: 5).
        console: Also log to stderr.

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / "notetree.log"

    package_logger = logging.getLogger("notetree")
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = package_logger.handlers
    wanted = []
    if not any(getattr(h, "baseFilename", None) == os.path.abspath(log_file) for h in handlers):
        wanted.append(
            RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )
    if console and not any(_is_console_handler(h) for h in handlers):
        wanted.append(logging.StreamHandler())
    for handler in wanted:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    package_logger.info(
        f"Logging to {log_file} (rotating at {max_bytes} bytes, {backup_count} kept)"
    )
    return log_path


@dataclass
class OperationMetrics:
    """Running totals for one operation name (e.g. 'folder.move')."""

    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def add(self, duration_ms: float, success: bool, error: Optional[str] = None) -> None:
        self.count += 1
        self.total_duration_ms += duration_ms
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if success:
            self.success_count += 1
            return
        self.error_count += 1
        self.last_error = _sanitize_error_message(error)
        self.last_error_time = datetime.now(timezone.utc)

    def snapshot(self) -> Dict[str, Any]:
        """Rounded view for reporting."""
        average = self.total_duration_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_count / self.count if self.count else 0,
            "avg_duration_ms": round(average, 2),
            "min_duration_ms": round(self.min_duration_ms or 0.0, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_error": self.last_error,
            "last_error_time": _isoformat(self.last_error_time),
        }

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_error_time"] = _isoformat(self.last_error_time)
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "OperationMetrics":
        values = {key: data[key] for key in _METRIC_FIELDS if data.get(key) is not None}
        if "last_error_time" in values:
            values["last_error_time"] = datetime.fromisoformat(values["last_error_time"])
        return cls(**values)


_METRIC_FIELDS = tuple(f.name for f in fields(OperationMetrics))


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class MetricsCollector:
    """Thread-safe per-operation metrics for store calls.

    Metrics live in memory. With a metrics file they are loaded from it on
    startup, written back every auto_save_interval operations and on
    save_metrics().
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
    ):
        """Initialize the metrics collector.

        Args:
            metrics_file: Path to persist metrics. None keeps them in memory only.
            auto_save_interval: Save to disk every N operations (0 to disable)
        """
        self._metrics: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else None
        self._auto_save_interval = auto_save_interval
        self._unsaved = 0

        self._load_metrics()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Add one call of operation to its totals."""
        with self._lock:
            self._metrics[operation].add(duration_ms, success, error)
            self._unsaved += 1
            if 0 < self._auto_save_interval <= self._unsaved:
                self._save_metrics_unlocked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation's metrics, keyed by operation name."""
        with self._lock:
            return {name: m.snapshot() for name, m in self._metrics.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals over all operations since the collector started."""
        with self._lock:
            total = sum(m.count for m in self._metrics.values())
            succeeded = sum(m.success_count for m in self._metrics.values())
            return {
                "uptime_seconds": (datetime.now(timezone.utc) - self._start_time).total_seconds(),
                "total_operations": total,
                "total_success": succeeded,
                "total_errors": total - succeeded,
                "overall_success_rate": succeeded / total if total else 1.0,
                "operations_tracked": sorted(self._metrics),
            }

    def reset(self) -> None:
        """Forget every recorded operation and restart the uptime clock."""
        with self._lock:
            self._metrics.clear()
            self._start_time = datetime.now(timezone.utc)
            self._unsaved = 0

    def _load_metrics(self) -> bool:
        if self._metrics_file is None or not self._metrics_file.exists():
            return False
        try:
            with open(self._metrics_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            if "start_time" in data:
                self._start_time = datetime.fromisoformat(data["start_time"])
            for name, values in data.get("operations", {}).items():
                self._metrics[name] = OperationMetrics.from_json(values)
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load metrics from {self._metrics_file}: {e}")
            return False
        logger.debug(f"Loaded metrics from {self._metrics_file}")
        return True

    def _save_metrics_unlocked(self) -> bool:
        # Caller holds self._lock
        if self._metrics_file is None:
            return False
        data = {
            "start_time": self._start_time.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": {name: m.to_json() for name, m in self._metrics.items()},
        }
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            # Atomic replace through a sibling temp file
            temp_file = self._metrics_file.with_suffix(".tmp")
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            temp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        self._unsaved = 0
        return True

    def save_metrics(self) -> bool:
        """Write metrics to the metrics file.

        Returns:
            True if saved, False on failure or when no file is configured.
        """
        with self._lock:
            return self._save_metrics_unlocked()

    def get_metrics_file(self) -> Optional[Path]:
        return self._metrics_file


def _default_metrics_file() -> Optional[Path]:
    from notetree.config import config

    return config.metrics_file


# Global metrics collector instance
metrics = MetricsCollector(metrics_file=_default_metrics_file())


@contextmanager
def timed_operation(operation: str, **context):
    """Time a block, record it in metrics and log its start and end.

    The block may contain awaits; the timing covers all of it. Any
    exception, cancellation included, is recorded as a failure and
    re-raised.

    Yields:
        A dict the block can add result details to (e.g. entity_id); they
        are included in the END log line.

    Example:
        with timed_operation('folder.create', parent_id=3) as op:
            created = await handlers.create(payload)
            op['entity_id'] = created.id
    """
    correlation_id = uuid.uuid4().hex[:8]
    details = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({details})")

    result_info: Dict[str, Any] = {}
    error_msg: Optional[str] = None
    started = time.perf_counter()
    try:
        yield result_info
    except BaseException as e:
        error_msg = str(e) or type(e).__name__
        raise
    finally:
        duration_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, duration_ms, error_msg is None, error_msg)
        status = "OK" if error_msg is None else f"ERROR: {error_msg}"
        results = ", ".join(f"{k}={v}" for k, v in result_info.items())
        logger.debug(
            f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) [{status}] {results}"
        )
