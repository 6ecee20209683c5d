"""
Per-process logging: console on the root logger plus one daily file per
process label (supervisor, balancer, worker-N) for the chatcluster tree.
"""

import contextlib
import datetime
import logging
import re
from pathlib import Path
from typing import List, Optional, TextIO
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings

LOGGER_NAME = "chatcluster"

_configured_label: Optional[str] = None


class LocalTimezoneFormatter(logging.Formatter):
    """
    Renders timestamps in LOG_TIMEZONE, or the host's local zone when it is
    unset or unknown.
    """

    def __init__(self, *args, timezone_name: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._tzinfo = self._resolve_tzinfo(timezone_name)

    @staticmethod
    def _resolve_tzinfo(timezone_name: str | None) -> datetime.tzinfo:
        if timezone_name:
            try:
                return ZoneInfo(timezone_name)
            except ZoneInfoNotFoundError:
                pass
        return datetime.datetime.now().astimezone().tzinfo or datetime.UTC

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.datetime.fromtimestamp(record.created, tz=self._tzinfo)
        return dt.strftime(datefmt) if datefmt else dt.isoformat(timespec="milliseconds")


class DailyFileHandler(logging.Handler):
    """
    Appends to <log_dir>/<label>-YYYY-MM-DD.log, switching files when the
    date changes and keeping the newest ``backup_count`` files of its label.
    """

    def __init__(self, log_dir: Path, label: str, backup_count: int = 7) -> None:
        super().__init__()
        self.log_dir = log_dir
        self.label = label
        self.backup_count = backup_count
        # "worker-1" must not claim "worker-10-..." files
        self._own_name = re.compile(rf"{re.escape(label)}-\d{{4}}-\d{{2}}-\d{{2}}\.log")
        self._day: Optional[datetime.date] = None
        self._stream: Optional[TextIO] = None

    def own_files(self) -> List[Path]:
        return sorted(
            p for p in self.log_dir.glob(f"{self.label}-*.log") if self._own_name.fullmatch(p.name)
        )

    def _open_for(self, day: datetime.date) -> None:
        if self._stream is not None:
            self._stream.close()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.log_dir / f"{self.label}-{day.isoformat()}.log"
        self._stream = path.open("a", encoding="utf-8")
        self._day = day
        if self.backup_count > 0:
            for old in self.own_files()[: -self.backup_count]:
                with contextlib.suppress(OSError):
                    old.unlink()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            today = datetime.date.today()
            if self._day != today or self._stream is None:
                self._open_for(today)
            self._stream.write(self.format(record) + "\n")
            self._stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        if self._stream is not None:
            with contextlib.suppress(OSError):
                self._stream.close()
            self._stream = None
        super().close()


def setup_logging(process_label: str = "app") -> None:
    """
    Configure logging once per process. Later calls are no-ops, so a child
    process keeps the label it was started with.
    """
    global _configured_label
    if _configured_label is not None:
        return

    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    formatter = LocalTimezoneFormatter(
        f"%(asctime)s [%(levelname)s] {process_label} %(name)s - %(message)s",
        timezone_name=settings.log_timezone,
    )

    file_handler = DailyFileHandler(Path(settings.log_dir), process_label)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(lambda record: record.name.startswith(LOGGER_NAME))
    app_logger = logging.getLogger(LOGGER_NAME)
    app_logger.setLevel(level)
    app_logger.addHandler(file_handler)

    # uvicorn runs with log_config=None, so its records reach this handler too.
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root_logger.addHandler(console)

    _configured_label = process_label


logger = logging.getLogger(LOGGER_NAME)
