"""
Utility functions: config loading, logging setup, and helpers.
"""

import os
import re
import logging
import socket
import time as _time
import yaml
from datetime import datetime


LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "logs")

SYNC_MODES = ("off", "host", "slave")

_ENDPOINT_RE = re.compile(r"^https?://", re.IGNORECASE)


def get_worker_id() -> str:
    """Return a stable machine identifier (hostname) for agent identity."""
    return socket.gethostname()


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(_time.time() * 1000)


def setup_logging(name: str = "targetsync", log_prefix: str = "run") -> logging.Logger:
    """Configure and return a project logger (console INFO + file DEBUG)."""
    os.makedirs(LOG_DIR, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(LOG_DIR, f"{log_prefix}_{timestamp}.log")

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch_fmt = logging.Formatter("[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%H:%M:%S")
    ch.setFormatter(ch_fmt)

    # File handler
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh_fmt = logging.Formatter("[%(asctime)s] %(levelname)-8s %(name)s - %(message)s")
    fh.setFormatter(fh_fmt)

    logger.addHandler(ch)
    logger.addHandler(fh)

    logger.info(f"Log file: {log_file}")
    return logger


def is_valid_endpoint(url) -> bool:
    """True when the endpoint is an absolute http(s) URL."""
    return isinstance(url, str) and bool(_ENDPOINT_RE.match(url.strip()))


def normalize_sync_mode(value) -> str:
    """Map any user-supplied mode string onto off | host | slave."""
    mode = str(value or "").strip().lower()
    return mode if mode in SYNC_MODES else "off"


def load_config(config_path: str = None) -> dict:
    """Load and validate config.yaml, applying safe defaults for all keys."""
    if config_path is None:
        config_path = os.path.join(
            os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config.yaml"
        )

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Config file must contain a mapping, got: {type(config).__name__}")

    raw_mode = config.get("sync_mode", "off")
    mode = normalize_sync_mode(raw_mode)
    if raw_mode not in (None, "") and str(raw_mode).strip().lower() != mode:
        raise ValueError(
            f"Invalid sync_mode '{raw_mode}'. Must be 'off', 'host' or 'slave'."
        )
    config["sync_mode"] = mode

    # Endpoint settings
    config["sync_endpoint"] = str(config.get("sync_endpoint") or "").strip()
    config["sync_token"] = str(config.get("sync_token") or "").strip()
    config.setdefault("owner_label", get_worker_id())
    config.setdefault("local_state_file", "local_state.json")

    # Scheduler timings (seconds)
    pull = config.setdefault("pull_interval", 5)
    if not isinstance(pull, (int, float)) or pull < 2:
        raise ValueError(f"pull_interval must be a number >= 2, got: {pull!r}")

    for key, default in (("push_debounce", 0.7), ("activity_debounce", 1.0), ("http_timeout", 10)):
        value = config.setdefault(key, default)
        if not isinstance(value, (int, float)) or value <= 0:
            raise ValueError(f"{key} must be a positive number, got: {value!r}")

    # Activity buffer bounds
    batch = config.setdefault("activity_batch_size", 80)
    if not isinstance(batch, int) or batch < 1:
        raise ValueError(f"activity_batch_size must be int >= 1, got: {batch!r}")

    cap = config.setdefault("activity_max_queue", 1000)
    if not isinstance(cap, int) or cap < batch:
        raise ValueError(f"activity_max_queue must be int >= activity_batch_size, got: {cap!r}")

    # Scan plan defaults (milliseconds, clamped when used)
    config.setdefault("scan_delay_ms", 1000)
    config.setdefault("repeat_interval_ms", 60000)

    # Edit lock
    config.setdefault("edit_lock", False)
    config.setdefault("force_lock", False)
    config.setdefault("lock_ttl_ms", 120000)

    return config
