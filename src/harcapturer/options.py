# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Capture configuration.

``CaptureOptions`` carries every recognised option. ``from_mapping`` accepts
both snake_case and camelCase names (``fetchContent``, ``onLoadDelay`` ...).
"""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import OptionsError

logger = logging.getLogger(__name__)

DEFAULT_HOST = os.environ.get("HARCAPTURER_HOST", "localhost")
DEFAULT_PORT = int(os.environ.get("HARCAPTURER_PORT", "9222"))

_CAMEL_ALIASES = {
    "fetchContent": "fetch_content",
    "onLoadDelay": "on_load_delay",
    "onLastResponseDelay": "on_last_response_delay",
    "giveUpTime": "give_up_time",
    "userAgent": "user_agent",
}


@dataclass(frozen=True)
class CaptureOptions:
    """Options for one capture run.

    Delays are milliseconds, give_up_time is seconds (None or 0 = wait forever).
    """

    fetch_content: bool = False  # capture response bodies
    on_load_delay: int = 0  # settle time after the first "finished" signal (ms)
    on_last_response_delay: int = 0  # debounce window re-armed on every "finished" signal (ms)
    force: bool = False  # ignore connection-cleanup script failures
    prepare: str | None = None  # script evaluated after the snapshot (awaitPromise)
    give_up_time: float | None = None  # seconds
    cache: bool = False  # keep the browser HTTP cache enabled
    user_agent: str | None = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    launch: bool = False  # launch a local headless Chromium instead of connecting

    def __post_init__(self) -> None:
        for name in ("on_load_delay", "on_last_response_delay"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int | float) or value < 0:
                raise OptionsError(f"{name} must be a non-negative number of milliseconds, got {value!r}")
        if self.give_up_time is not None:
            if isinstance(self.give_up_time, bool) or not isinstance(self.give_up_time, int | float):
                raise OptionsError(f"give_up_time must be a number of seconds, got {self.give_up_time!r}")
            if self.give_up_time < 0:
                raise OptionsError(f"give_up_time must be >= 0, got {self.give_up_time!r}")
        if not 0 < self.port < 65536:
            raise OptionsError(f"port out of range: {self.port}")
        if self.user_agent is not None and not isinstance(self.user_agent, str):
            raise OptionsError("user_agent must be a string")

    @property
    def give_up_seconds(self) -> float | None:
        """Effective give-up timeout; None when unlimited."""
        return self.give_up_time if self.give_up_time else None

    @property
    def endpoint_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def replace(self, **changes: Any) -> CaptureOptions:
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None) -> CaptureOptions:
        """Build options from a dict with snake_case or camelCase keys."""
        if not mapping:
            return cls()
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in mapping.items():
            name = _CAMEL_ALIASES.get(key, key)
            if name not in known:
                raise OptionsError(f"Unknown option: {key}")
            kwargs[name] = value
        # "prepare": "" means no prepare script
        if not kwargs.get("prepare"):
            kwargs.pop("prepare", None)
        try:
            return cls(**kwargs)
        except TypeError as exc:
            raise OptionsError(str(exc)) from exc


def load_config(path: str | Path) -> tuple[list[str], CaptureOptions]:
    """Load ``urls`` and ``options`` from a YAML config file."""
    import yaml

    config_path = Path(path)
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise OptionsError(f"Cannot read config {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise OptionsError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise OptionsError(f"Config {config_path} must be a mapping")

    urls = data.get("urls") or []
    if not isinstance(urls, list) or not all(isinstance(u, str) for u in urls):
        raise OptionsError("'urls' must be a list of strings")

    options = CaptureOptions.from_mapping(data.get("options"))
    logger.debug("Loaded config %s: %d urls", config_path, len(urls))
    return urls, options
