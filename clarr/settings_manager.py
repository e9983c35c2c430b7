#!/usr/bin/env python3
"""
settings_manager.py — Settings Manager for clarr

settings.json is seeded from CLARR_* variables on first start and
validated before the service comes up (webhook secret, download dir,
Radarr/Sonarr credentials). Also owns logging setup (<config>/logs/).
"""

from __future__ import annotations

import json
import logging
import os
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional


class ConfigurationError(Exception):
    """Invalid or missing configuration. Fatal at startup."""


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(config_dir: str, debug: bool = False) -> logging.Logger:
    """Log DEBUG and up to <config_dir>/logs/clarr_YYYYMMDD.log, INFO and up to the console."""
    logs = Path(config_dir, "logs")
    logs.mkdir(parents=True, exist_ok=True)
    log_file = logs / f"clarr_{datetime.now():%Y%m%d}.log"

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if debug else logging.INFO)

    root = logging.getLogger("clarr")
    root.setLevel(logging.DEBUG)
    # re-running setup must not duplicate output
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in (file_handler, console):
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.info(f"Logging to {log_file}")
    return root


LOG = logging.getLogger("clarr.settings")


DEFAULT_SETTINGS = {
    "server": {
        "host": "0.0.0.0",
        "port": 8090,
    },
    "webhook": {
        "secret": "",
        "allow_unsigned": False,
        "signature_header": "X-Jellyfin-Signature",
        "workers": 4,
    },
    "radarr": {
        "url": "",
        "api_key": "",
        "timeout": 30,
        "retries": 2,
        "rescan_wait_seconds": 60,
    },
    "sonarr": {
        "url": "",
        "api_key": "",
        "timeout": 30,
        "retries": 2,
        "rescan_wait_seconds": 60,
    },
    "qbittorrent": {
        "enabled": False,
        "url": "",
        "username": "admin",
        "password": "",
        "path_mappings": [],
    },
    "cleaner": {
        "download_dir": "",
        "dry_run": True,
        "schedule": "0 3 * * *",
    },
    "web": {
        "auth_enabled": False,
        "username": "",
        "password": "",
    },
}

SECRET_FIELDS = {
    "webhook": ["secret"],
    "radarr": ["api_key"],
    "sonarr": ["api_key"],
    "qbittorrent": ["password"],
    "web": ["password"],
}


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_path_mappings(raw: str) -> List[Dict[str, str]]:
    """Parse 'qbit_path:local_path;qbit_path:local_path'."""
    mappings = []
    for mapping in raw.split(";"):
        mapping = mapping.strip()
        if ":" in mapping:
            qp, lp = mapping.split(":", 1)
            if qp and lp:
                mappings.append({"qbit_path": qp, "local_path": lp})
    return mappings


class SettingsManager:
    """settings.json under ``config_dir``, guarded by an RLock.

    The file is created from DEFAULT_SETTINGS plus CLARR_* variables on first
    start; afterwards it is the only source and new default keys are merged in.
    """

    def __init__(self, config_dir: str = "/config"):
        self.config_dir = Path(config_dir)
        self.settings_file = self.config_dir / "settings.json"
        self._lock = RLock()
        self._settings: Dict[str, Any] = {}
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if self.settings_file.exists():
                self._settings = self._read()
                if self._merge_defaults():
                    self._save()
            else:
                LOG.info(f"{self.settings_file} not found, seeding it from defaults and environment")
                self._settings = deepcopy(DEFAULT_SETTINGS)
                self._import_from_env()
                self._save()

    def _read(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.settings_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"cannot read {self.settings_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.settings_file} must contain a JSON object")
        LOG.info(f"Settings loaded from {self.settings_file}")
        return data

    def _save(self) -> bool:
        tmp = self.settings_file.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(self._settings, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, self.settings_file)
        except OSError as e:
            LOG.error(f"Could not write {self.settings_file}: {e}")
            return False
        LOG.debug(f"Settings written to {self.settings_file}")
        return True

    def _merge_defaults(self) -> bool:
        """Add sections/keys introduced since the file was written. True if anything was added."""
        added = False
        for section, defaults in DEFAULT_SETTINGS.items():
            current = self._settings.setdefault(section, {})
            if not isinstance(current, dict):
                raise ConfigurationError(f"settings section '{section}' must be an object")
            for key, value in defaults.items():
                if key not in current:
                    current[key] = deepcopy(value)
                    added = True
        return added

    def _import_from_env(self):
        LOG.info("Reading CLARR_* environment variables")
        env = os.environ

        srv = self._settings["server"]
        if env.get("CLARR_SERVER_HOST"):
            srv["host"] = env["CLARR_SERVER_HOST"]
        if env.get("CLARR_SERVER_PORT"):
            try:
                srv["port"] = int(env["CLARR_SERVER_PORT"])
            except ValueError as e:
                raise ConfigurationError(f"CLARR_SERVER_PORT must be an integer: {e}") from e

        wh = self._settings["webhook"]
        if env.get("CLARR_JELLYFIN_WEBHOOK_SECRET"):
            wh["secret"] = env["CLARR_JELLYFIN_WEBHOOK_SECRET"]
        if env.get("CLARR_WEBHOOK_ALLOW_UNSIGNED"):
            wh["allow_unsigned"] = _env_bool(env["CLARR_WEBHOOK_ALLOW_UNSIGNED"])

        for app_type in ("radarr", "sonarr"):
            prefix = f"CLARR_{app_type.upper()}"
            section = self._settings[app_type]
            if env.get(f"{prefix}_URL"):
                section["url"] = env[f"{prefix}_URL"]
            if env.get(f"{prefix}_API_KEY"):
                section["api_key"] = env[f"{prefix}_API_KEY"]

        qb = self._settings["qbittorrent"]
        if env.get("CLARR_QBITTORRENT_URL"):
            qb["enabled"] = True
            qb["url"] = env["CLARR_QBITTORRENT_URL"]
            qb["username"] = env.get("CLARR_QBITTORRENT_USERNAME", "admin")
            qb["password"] = env.get("CLARR_QBITTORRENT_PASSWORD", "")
            if env.get("CLARR_QBITTORRENT_PATH_MAP"):
                qb["path_mappings"] = parse_path_mappings(env["CLARR_QBITTORRENT_PATH_MAP"])

        cl = self._settings["cleaner"]
        if env.get("CLARR_CLEANER_DOWNLOAD_DIR"):
            cl["download_dir"] = env["CLARR_CLEANER_DOWNLOAD_DIR"]
        if env.get("CLARR_CLEANER_DRY_RUN"):
            cl["dry_run"] = _env_bool(env["CLARR_CLEANER_DRY_RUN"])
        if env.get("CLARR_CLEANER_SCHEDULE"):
            cl["schedule"] = env["CLARR_CLEANER_SCHEDULE"]

        # Web auth
        if env.get("CLARR_AUTH_USER") and env.get("CLARR_AUTH_PASS"):
            self._settings["web"]["auth_enabled"] = True
            self._settings["web"]["username"] = env["CLARR_AUTH_USER"]
            self._settings["web"]["password"] = env["CLARR_AUTH_PASS"]

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when valid)."""
        problems = []
        with self._lock:
            cfg = self._settings

            if not cfg["cleaner"].get("download_dir"):
                problems.append("cleaner.download_dir is required")
            if not str(cfg["cleaner"].get("schedule") or "").strip():
                problems.append("cleaner.schedule is required")

            for app_type in ("radarr", "sonarr"):
                section = cfg[app_type]
                if not section.get("url"):
                    problems.append(f"{app_type}.url is required")
                if not section.get("api_key"):
                    problems.append(f"{app_type}.api_key is required")

            wh = cfg["webhook"]
            if not wh.get("secret") and not wh.get("allow_unsigned"):
                problems.append("webhook.secret is required (set webhook.allow_unsigned to disable signature checks)")

            qb = cfg["qbittorrent"]
            if qb.get("enabled") and not qb.get("url"):
                problems.append("qbittorrent.url is required when qbittorrent is enabled")

            web = cfg["web"]
            if web.get("auth_enabled") and not (web.get("username") and web.get("password")):
                problems.append("web.username and web.password are required when auth is enabled")

        return problems

    def require_valid(self):
        problems = self.validate()
        if problems:
            raise ConfigurationError("; ".join(problems))

    def get_all(self) -> Dict[str, Any]:
        """Copy of all settings with secrets shortened to ``abcd...wxyz``."""
        masked = self.get_all_raw()
        for section, keys in SECRET_FIELDS.items():
            values = masked.get(section, {})
            for key in keys:
                secret = values.get(key)
                if secret:
                    values[key] = "********" if len(secret) <= 8 else f"{secret[:4]}...{secret[-4:]}"
        return masked

    def get_all_raw(self) -> Dict[str, Any]:
        with self._lock:
            return deepcopy(self._settings)

    def get(self, section: str, key: Optional[str] = None) -> Any:
        with self._lock:
            values = self._settings.get(section)
            if values is None:
                return None
            return deepcopy(values if key is None else values.get(key))


_manager: Optional[SettingsManager] = None


def get_settings_manager(config_dir: str = "/config") -> SettingsManager:
    """Process-wide SettingsManager; logging is set up on first use."""
    global _manager
    if _manager is None:
        setup_logging(config_dir)
        _manager = SettingsManager(config_dir)
    return _manager
