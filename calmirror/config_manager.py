from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from calmirror.errors import ConfigurationError
from calmirror.models import (
    DEFAULT_LOOKAHEAD_DAYS,
    AppConfig,
    FeedSettings,
    RemoteFeedConfig,
    default_app_config,
)


ENV_OVERRIDES: tuple[tuple[tuple[str, ...], tuple[str, str]], ...] = (
    (("CALMIRROR_ICS_URL", "ICS_URL", "GOOGLE_CAL_ICS_URL"), ("feed", "ics_url")),
    (("LOOKAHEAD_DAYS",), ("feed", "lookahead_days")),
    (("CALENDAR_CONFIG_ID",), ("feed", "remote_config_id")),
    (("TIMEZONE",), ("sync", "timezone")),
    (("SYNC_INTERVAL_SECONDS",), ("sync", "interval_seconds")),
    (("SHOPIFY_STORE_DOMAIN", "SHOP"), ("store", "shop_domain")),
    (("SHOPIFY_ADMIN_TOKEN", "ADMIN_TOKEN"), ("store", "access_token")),
    (("SHOPIFY_API_VERSION",), ("store", "api_version")),
    (("METAOBJECT_TYPE",), ("store", "metaobject_type")),
    (("SYNC_SECRET", "HMAC_SECRET"), ("server", "sync_secret")),
)

SECRET_PATHS = (("store", "access_token"), ("server", "sync_secret"))


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    merged = copy.deepcopy(data)
    for names, (section, key) in ENV_OVERRIDES:
        value = next((environ[name] for name in names if str(environ.get(name, "")).strip()), None)
        if value is None:
            continue
        target = merged.get(section)
        if not isinstance(target, dict):
            target = {}
            merged[section] = target
        target[key] = value.strip()
    return merged


def resolve_feed_settings(
    config: AppConfig,
    remote: RemoteFeedConfig | None = None,
    *,
    feed_url_override: str | None = None,
    lookahead_override: int | None = None,
) -> FeedSettings:
    remote = remote or RemoteFeedConfig()
    url_tiers = (
        ("override", feed_url_override),
        ("remote", remote.ics_url),
        ("local", config.feed.ics_url),
    )
    source, ics_url = next(
        ((name, str(value).strip()) for name, value in url_tiers if value and str(value).strip()),
        ("", ""),
    )
    if not ics_url:
        raise ConfigurationError(
            "ICS feed URL not configured (override, remote calendar_config, ICS_URL or config file)."
        )
    lookahead_candidates = (lookahead_override, remote.lookahead_days, config.feed.lookahead_days)
    lookahead = next(
        (int(value) for value in lookahead_candidates if value is not None and int(value) > 0),
        DEFAULT_LOOKAHEAD_DAYS,
    )
    return FeedSettings(ics_url=ics_url, lookahead_days=lookahead, source=source)


class ConfigManager:
    def __init__(
        self,
        config_path: str | os.PathLike[str],
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load_file(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def load(self) -> AppConfig:
        file_data = self.load_file().to_dict()
        return AppConfig.from_dict(apply_env_overrides(file_data, self.environ))

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    yaml.safe_dump(
                        config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False
                    )
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load_file().to_dict()
            config = AppConfig.from_dict(_deep_merge(current, payload))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_PATHS:
            if config.get(section, {}).get(key):
                config[section][key] = "***"
        return config
