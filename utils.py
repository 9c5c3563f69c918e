"""Utility functions for API1 to API2 customer sync."""

import json
import os
import sys
import tempfile
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, Sequence, TypeVar

from loguru import logger

from models import SourceCustomer
from patterns import Patterns

T = TypeVar("T")

# File paths
CONFIG_FILE = "config.json"
STATE_FILE = "last_sync_date.json"

# Environment overrides: env var -> (section, key)
ENV_OVERRIDES = {
    "CUSTOMER_API_ENDPOINT": ("source", "endpoint"),
    "CUSTOMER_API_KEY": ("source", "api_key"),
    "CLIENT_API_ENDPOINT": ("destination", "endpoint"),
    "CLIENT_API_KEY": ("destination", "api_key"),
    "MAX_CONCURRENT_REQUESTS": ("sync", "max_concurrent_requests"),
    "LAST_SYNC_FILE": ("sync", "state_file"),
}


class PersistenceError(Exception):
    """The watermark could not be written."""


class LeaseUnavailable(Exception):
    """Another run holds the lock on the watermark file."""


# ============================================================================
# Config
# ============================================================================


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load config.json (if present) and apply environment overrides."""
    config: dict = {}
    if os.path.exists(path):
        with open(path) as f:
            config = json.load(f)

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config.setdefault(section, {})[key] = value

    return config


def validate_config(config: dict) -> list[str]:
    """Validate config structure and return list of error messages.

    Returns:
        Empty list if valid, otherwise list of error messages.
    """
    errors = []

    for section in ["source", "destination"]:
        if section not in config:
            errors.append(f"Missing section '{section}' in config.json")
            continue
        for key in ["endpoint", "api_key"]:
            if not config[section].get(key):
                errors.append(f"Missing {section}.{key}")

    limit = config.get("sync", {}).get("max_concurrent_requests")
    if limit is not None:
        try:
            if int(limit) < 1:
                errors.append("sync.max_concurrent_requests must be >= 1")
        except (TypeError, ValueError):
            errors.append(f"sync.max_concurrent_requests is not an integer: {limit!r}")

    return errors


def load_config_safe(path: str = CONFIG_FILE) -> dict | None:
    """Load config with user-friendly error messages.

    Returns:
        Config dict if valid, None if errors occurred.
    """
    try:
        config = load_config(path)
    except json.JSONDecodeError as e:
        print(f"[!] ERROR: {path} is not valid JSON!")
        print(f"    Line {e.lineno}, column {e.colno}: {e.msg}")
        print()
        print("    Check for missing commas, quotes, or brackets.")
        return None

    errors = validate_config(config)
    if errors:
        print(f"[!] ERROR: configuration is incomplete ({path} + environment):")
        for err in errors:
            print(f"    - {err}")
        print()
        print("    See config.example.json or set CUSTOMER_API_* / CLIENT_API_* variables.")
        return None

    return config


# ============================================================================
# Logging
# ============================================================================


def setup_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Route loguru output to stderr, optionally as JSON lines."""
    logger.remove()
    if json_logs:
        logger.add(sys.stderr, level=level.upper(), serialize=True)
    else:
        logger.add(
            sys.stderr,
            level=level.upper(),
            format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        )


# ============================================================================
# Timestamps & Watermark
# ============================================================================


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime, None if invalid."""
    if not isinstance(value, str) or not Patterns.ISO_TIMESTAMP.match(value.strip()):
        return None
    # fromisoformat on 3.10 wants 3 or 6 fraction digits and HH:MM offsets
    text = value.strip().replace("Z", "+00:00")
    text = Patterns.FRACTION.sub(lambda m: "." + m.group(1).ljust(6, "0"), text, count=1)
    text = Patterns.COMPACT_OFFSET.sub(r"\1:\2", text)
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def compute_next_watermark(
    customers: Iterable[SourceCustomer], previous: str | None
) -> str | None:
    """Return the greatest updatedAt strictly after `previous`.

    Customers without a parseable updatedAt are ignored. If nothing is newer
    than `previous`, `previous` is returned unchanged.
    """
    floor = parse_timestamp(previous)
    best_value = None
    best_dt = None

    for customer in customers:
        dt = parse_timestamp(customer.updated_at)
        if dt is None:
            continue
        if floor is not None and dt <= floor:
            continue
        if best_dt is None or dt > best_dt:
            best_dt = dt
            best_value = customer.updated_at

    if best_value is None:
        return previous
    return best_value


class WatermarkStore:
    """Persists the last successful sync timestamp in a small JSON file."""

    def __init__(self, path: str = STATE_FILE, *, lock_stale_s: float = 3600.0, log=logger):
        self.path = path
        self.lock_path = f"{path}.lock"
        self.lock_stale_s = lock_stale_s
        self.log = log

    def load(self) -> str | None:
        """Stored watermark, or None when missing/unreadable/corrupt."""
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            self.log.warning(f"Ignoring unreadable state file {self.path}: {e}")
            return None

        value = data.get("lastSyncDate") if isinstance(data, dict) else None
        if value is None:
            return None
        if parse_timestamp(value) is None:
            self.log.warning(f"Ignoring invalid lastSyncDate in {self.path}: {value!r}")
            return None
        return value

    def save(self, watermark: str | None) -> None:
        """Overwrite the stored watermark atomically."""
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=".last_sync_", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump({"lastSyncDate": watermark}, f)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to save last sync date to {self.path}: {e}") from e

    @contextmanager
    def lease(self) -> Iterator[None]:
        """Hold an exclusive lock file for the duration of a run."""
        token = self._acquire()
        try:
            yield
        finally:
            self._release(token)

    def _acquire(self) -> str:
        token = f"{os.getpid()} {uuid.uuid4().hex}"
        try:
            for _ in range(2):
                try:
                    fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                except FileExistsError:
                    try:
                        age = time.time() - os.path.getmtime(self.lock_path)
                    except FileNotFoundError:
                        continue
                    if age < self.lock_stale_s:
                        raise LeaseUnavailable(
                            f"{self.lock_path} is held by another run ({age:.0f}s old)"
                        )
                    self.log.warning(f"Removing stale lock {self.lock_path} ({age:.0f}s old)")
                    try:
                        os.unlink(self.lock_path)
                    except FileNotFoundError:
                        pass
                    continue
                with os.fdopen(fd, "w") as f:
                    f.write(f"{token}\n")
                return token
        except OSError as e:
            raise PersistenceError(f"Failed to create lock {self.lock_path}: {e}") from e
        raise LeaseUnavailable(f"Could not acquire {self.lock_path}")

    def _release(self, token: str) -> None:
        # A stale-lock takeover by another run means the file is no longer ours
        try:
            with open(self.lock_path) as f:
                owner = f.read().strip()
        except FileNotFoundError:
            return
        except OSError as e:
            self.log.warning(f"Could not read lock {self.lock_path}: {e}")
            return
        if owner != token:
            self.log.warning(f"Lock {self.lock_path} was taken over by another run; leaving it")
            return
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass


# ============================================================================
# Grouping
# ============================================================================


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive groups of at most `size` elements."""
    if size < 1:
        raise ValueError(f"Group size must be >= 1, got {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]
