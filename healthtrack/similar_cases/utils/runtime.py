"""Runtime utilities for logging and progress reporting."""
from __future__ import annotations

import json
import logging
import sys as _sys
import time

logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("azure.core.pipeline.policies.http_logging_policy").setLevel(logging.WARNING)

_RESERVED_ATTRS = frozenset(
    (
        "args",
        "msg",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    )
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        base = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
        }
        for k, v in getattr(record, "__dict__", {}).items():
            if k in _RESERVED_ATTRS or k.startswith("_") or k in base:
                continue
            try:
                json.dumps({k: v})
                base[k] = v
            except Exception:
                base[k] = str(v)
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger()
    if logger.handlers:
        return logger
    logger.setLevel(level)
    ch = logging.StreamHandler()
    ch.setFormatter(JsonFormatter())
    logger.addHandler(ch)
    return logger


# ---- Progress logging (ETA) --------------------------------------------------

def _fmt_hms(_secs: float) -> str:
    if not _secs or _secs == float("inf") or _secs != _secs:  # NaN
        return "--:--:--"
    secs = int(max(0, _secs))
    h, rem = divmod(secs, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


def iter_with_bar(step: str, iterable, *, total: int | None = None, min_interval_s: float = 10):
    """
    Wrap an iterable and write periodic progress lines to stderr.

    A line is emitted for the first item, then at most every ``min_interval_s``
    seconds, and for the last item when the total is known.
    """

    try:
        if total is None:
            total = len(iterable)  # may fail for generators
    except Exception:
        total = None

    t0 = time.time()
    last = t0
    for i, item in enumerate(iterable, 1):
        now = time.time()
        if i == 1 or now - last >= min_interval_s or (total and i == total):
            last = now
            elapsed = now - t0
            rate = (i / elapsed) if elapsed > 0 else 0.0
            if total:
                eta = ((total - i) / rate) if rate > 0 else float("inf")
                msg = f"[{step}] {i}/{total} • {rate:.2f}/s • ETA {_fmt_hms(eta)}"
            else:
                msg = f"[{step}] {i} done • {rate:.2f}/s • elapsed {_fmt_hms(elapsed)}"
            _sys.stderr.write(msg + "\n")
            _sys.stderr.flush()
        yield item


__all__ = ["JsonFormatter", "iter_with_bar", "setup_logging"]
