import logging
import multiprocessing as mp
import os
import re
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler

from config.constants import LOG_DIR
from config.helpers import format_duration

# Color mapping for console output
LOG_COLORS = {
    "DEBUG": "\033[92m",  # Green
    "INFO": "\033[94m",  # Blue
    "WARNING": "\033[93m",  # Yellow
    "ERROR": "\033[91m",  # Red
    "CRITICAL": "\033[95m",  # Magenta
    "ELAPSED": "\033[96m",  # Cyan (right-aligned clock)
    "ENDC": "\033[0m",  # Reset
}

FILE_FORMAT = "%(asctime)s - %(processName)s - %(name)s - %(levelname)s - %(message)s"
MP_FILE_POLICIES = ("off", "main_only", "per_process")

_ANSI = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")


def _paint(text, key):
    return f"{LOG_COLORS[key]}{text}{LOG_COLORS['ENDC']}"


def _is_worker():
    # Pool workers inherit the parent's logger on fork
    return mp.current_process().name != "MainProcess"


class TqdmToLogger:
    """
    File-like sink for the PSO progress bar.

    tqdm redraws the bar with carriage returns; only the last non-empty
    segment of each write is logged and an unchanged bar is not repeated.
    """

    def __init__(self, logger, level=logging.INFO):
        self.logger = logger
        self.level = level
        self._last = None

    def write(self, message):
        parts = [p.strip() for p in re.split(r"[\r\n]", message)]
        parts = [p for p in parts if p]
        if not parts or parts[-1] == self._last:
            return
        self._last = parts[-1]
        self.logger.log(self.level, self._last)

    def flush(self):
        pass


class ColoredFormatter(logging.Formatter):
    """
    Console formatter: colored level and message, the worker name when the
    record comes from a pool process, and a right-aligned clock with the
    wall time since the runner configured logging.
    """

    def __init__(self, fmt=None, datefmt=None, width=160):
        super().__init__(fmt, datefmt)
        self.t0 = time.monotonic()
        self.width = width

    def format(self, record):
        color = record.levelname if record.levelname in LOG_COLORS else "INFO"
        head = [_paint(self.formatTime(record, self.datefmt), "DEBUG")]
        if record.processName != "MainProcess":
            head.append(record.processName)
        head.append(_paint(record.name, "WARNING"))
        head.append(_paint(record.levelname, color))
        head.append(_paint(record.getMessage(), color))
        line = " - ".join(head)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"

        visible = len(self.remove_ansi(line.splitlines()[-1]))
        clock = _paint(f"⏱ {format_duration(time.monotonic() - self.t0)}", "ELAPSED")
        return f"{line}{' ' * max(0, self.width - visible)}{clock}"

    @staticmethod
    def remove_ansi(s):
        return _ANSI.sub("", s)


def _file_handler(log_file, level, rotate, max_bytes, backup_count):
    # Only the main process rotates; workers append to their own file
    if rotate and not _is_worker():
        handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
    else:
        handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    handler.setLevel(level)
    return handler


def _log_path(name, log_dir, log_file, mp_file_logging):
    """Where this process should write, or None when it should not write at all."""
    if mp_file_logging not in MP_FILE_POLICIES:
        raise ValueError(f"mp_file_logging must be one of {MP_FILE_POLICIES}, got {mp_file_logging!r}")
    if mp_file_logging == "off" or (mp_file_logging == "main_only" and _is_worker()):
        return None

    log_dir = str(log_dir)
    os.makedirs(log_dir, exist_ok=True)
    if log_file is None:
        log_file = os.path.join(log_dir, f"{name}_{datetime.now():%Y%m%d}.log")
    if mp_file_logging == "per_process" and _is_worker():
        base, ext = os.path.splitext(log_file)
        log_file = f"{base}.pid{os.getpid()}{ext}"
    return log_file


def setup_logger(
        name="sercafit",
        log_file=None,
        level=logging.DEBUG,
        log_dir=LOG_DIR,
        rotate=True,
        max_bytes=2 * 1024 * 1024,
        backup_count=5,
        mp_file_logging="main_only",  # off | main_only | per_process
):
    """
    Configure the ``sercafit`` logger (or another named one) for a run.

    Library modules log through children of ``sercafit``
    (``logging.getLogger(__name__)``), so the runner calls this once.
    Calling it again replaces the handlers instead of stacking them.

    :param name: logger name
    :param log_file: explicit log file, defaults to ``<log_dir>/<name>_<YYYYmmdd>.log``
    :param level: level of the logger and of the file handler; the console shows INFO and above
    :param log_dir: directory created on demand for the default log file
    :param rotate: use a RotatingFileHandler in the main process
    :param max_bytes: rotation size
    :param backup_count: rotated files kept
    :param mp_file_logging:
        - "off": console only
        - "main_only": file logging only in the main process
        - "per_process": each worker writes ``<log_file>.pid<N>``
    :return: logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    path = _log_path(name, log_dir, log_file, mp_file_logging)
    if path is not None:
        logger.addHandler(_file_handler(path, level, rotate, max_bytes, backup_count))

    console = logging.StreamHandler()
    console.setFormatter(ColoredFormatter())
    console.setLevel(max(level, logging.INFO))
    logger.addHandler(console)

    # Prevent double logging via root handlers
    logger.propagate = False
    return logger
