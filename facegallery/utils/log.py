"""日志配置"""

import json
import logging
import os

from contextlib import contextmanager
from typing import Any, Mapping

logging.basicConfig(level=logging.INFO)


def get_logger(name):
    """获取日志记录器"""
    logger = logging.getLogger(name)
    return logger


def log_structured(logger: logging.Logger, event: str, payload: Mapping[str, Any], level: int = logging.INFO) -> None:
    """Emit one log line `event {json}` so reports stay machine-readable in plain log files."""
    try:
        body = json.dumps(dict(payload), ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        body = repr(dict(payload))
    logger.log(level, f"{event} {body}")


@contextmanager
def suppress_fds():
    """Context manager that redirects FD 1 and 2 to /dev/null.

    InsightFace/onnxruntime print model banners from C code; those writes bypass
    Python's sys.stdout/sys.stderr objects.
    """
    devnull = os.open(os.devnull, os.O_RDWR)
    old_stdout = os.dup(1)
    old_stderr = os.dup(2)
    try:
        os.dup2(devnull, 1)
        os.dup2(devnull, 2)
        yield
    finally:
        os.dup2(old_stdout, 1)
        os.dup2(old_stderr, 2)
        os.close(devnull)
        os.close(old_stdout)
        os.close(old_stderr)
