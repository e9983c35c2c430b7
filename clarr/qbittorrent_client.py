#!/usr/bin/env python3
"""
qbittorrent_client.py — qBittorrent WebUI API client for clarr

API Reference: https://github.com/qbittorrent/qBittorrent/wiki/WebUI-API-(qBittorrent-4.1)
- Login: POST /api/v2/auth/login with username/password form data
- Requires Referer/Origin headers matching the host (CSRF protection)
- Session is kept in the SID cookie
"""

from __future__ import annotations

import http.client
import http.cookiejar
import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Dict, List, Optional

LOG = logging.getLogger("clarr.qbittorrent")


class QBittorrentError(Exception):
    """A qBittorrent API call failed."""


@dataclass
class PathMapping:
    """Maps paths between the qBittorrent container and the local host."""
    qbit_path: str
    local_path: str

    @staticmethod
    def _swap(path: str, old: str, new: str) -> str:
        if not path_has_prefix(path, old):
            return path
        return new.rstrip("/") + path[len(old.rstrip("/")):]

    def to_qbit(self, path: str) -> str:
        return self._swap(path, self.local_path, self.qbit_path)

    def to_local(self, path: str) -> str:
        return self._swap(path, self.qbit_path, self.local_path)


@dataclass
class Torrent:
    hash: str
    name: str
    state: str = ""
    content_path: str = ""
    save_path: str = ""
    ratio: float = 0.0
    amount_left: int = 0
    completed: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "Torrent":
        return cls(
            hash=data.get("hash", ""),
            name=data.get("name", ""),
            state=data.get("state", ""),
            content_path=data.get("content_path", ""),
            save_path=data.get("save_path", ""),
            ratio=float(data.get("ratio", 0.0) or 0.0),
            amount_left=int(data.get("amount_left", 0) or 0),
            completed=int(data.get("completed", 0) or 0),
        )


def path_has_prefix(path: str, prefix: str) -> bool:
    """True if ``prefix`` names ``path`` itself or one of its parent directories."""
    if not prefix:
        return False
    prefix = prefix.rstrip("/\\")
    if not prefix:
        # filesystem root
        return True
    if path == prefix:
        return True
    return path.startswith(prefix + "/") or path.startswith(prefix + os.sep)


class QBittorrentClient:
    """qBittorrent API client with cookie-session authentication."""

    def __init__(self, url: str, username: str = "", password: str = "",
                 path_mappings: Optional[List[PathMapping]] = None, timeout: int = 15):
        self.base_url = url.rstrip("/")
        if not self.base_url.startswith("http"):
            self.base_url = f"http://{self.base_url}"
        self.username = username
        self.password = password
        self.path_mappings = path_mappings or []
        self.timeout = timeout
        self._logged_in = False

        # Setup cookie jar and opener
        self._cookie_jar = http.cookiejar.CookieJar()
        self._opener = urllib.request.build_opener(
            urllib.request.HTTPCookieProcessor(self._cookie_jar)
        )

    @classmethod
    def from_settings(cls, cfg: dict) -> "QBittorrentClient":
        mappings = [PathMapping(m.get("qbit_path", ""), m.get("local_path", ""))
                    for m in cfg.get("path_mappings", [])
                    if m.get("qbit_path") and m.get("local_path")]
        return cls(
            url=cfg.get("url", ""),
            username=cfg.get("username", ""),
            password=cfg.get("password", ""),
            path_mappings=mappings,
        )

    def _raw_request(self, endpoint: str, data: Optional[Dict] = None) -> str:
        url = f"{self.base_url}/api/v2/{endpoint}"

        # qBittorrent rejects requests without these headers (CSRF)
        headers = {
            "Referer": self.base_url,
            "Origin": self.base_url,
        }

        if data is not None:
            encoded = urllib.parse.urlencode(data).encode("utf-8")
            req = urllib.request.Request(url, data=encoded, headers=headers, method="POST")
        else:
            req = urllib.request.Request(url, headers=headers, method="GET")

        with self._opener.open(req, timeout=self.timeout) as resp:
            return resp.read().decode("utf-8")

    def _request(self, endpoint: str, data: Optional[Dict] = None) -> str:
        """Make an authenticated request, logging in again once on 403."""
        if not self._logged_in:
            self.login()
        try:
            return self._raw_request(endpoint, data)
        except urllib.error.HTTPError as e:
            if e.code == 403:
                LOG.debug("qBittorrent session expired, logging in again")
                self._logged_in = False
                self.login()
                try:
                    return self._raw_request(endpoint, data)
                except (OSError, http.client.HTTPException, ValueError) as retry_error:
                    raise QBittorrentError(f"qBittorrent {endpoint} failed: {retry_error}") from retry_error
            raise QBittorrentError(f"qBittorrent HTTP {e.code}: {e.reason} for {endpoint}") from e
        except urllib.error.URLError as e:
            raise QBittorrentError(f"qBittorrent connection failed: {e.reason}") from e
        except (OSError, http.client.HTTPException, ValueError) as e:
            # ValueError covers undecodable bodies
            raise QBittorrentError(f"qBittorrent {endpoint} failed: {e!r}") from e

    def login(self):
        """Authenticate with qBittorrent. Raises QBittorrentError on failure."""
        try:
            result = self._raw_request("auth/login", data={
                "username": self.username,
                "password": self.password,
            })
        except urllib.error.HTTPError as e:
            if e.code == 403:
                raise QBittorrentError("qBittorrent login forbidden - too many failed attempts or WebUI settings") from e
            raise QBittorrentError(f"qBittorrent login HTTP {e.code}: {e.reason}") from e
        except (OSError, http.client.HTTPException, ValueError) as e:
            raise QBittorrentError(f"qBittorrent login request failed: {e!r}") from e

        if result.strip().lower() != "ok.":
            raise QBittorrentError("qBittorrent login failed - check credentials")

        self._logged_in = True
        LOG.info("qBittorrent login successful")

    def get_torrents(self) -> List[Torrent]:
        result = self._request("torrents/info")
        try:
            data = json.loads(result) if result else []
            if not isinstance(data, list):
                raise TypeError(f"expected a list, got {type(data).__name__}")
            return [Torrent.from_dict(t) for t in data]
        except (AttributeError, TypeError, ValueError) as e:
            raise QBittorrentError(f"Failed to parse qBittorrent torrent list: {e}") from e

    def delete_torrent(self, torrent_hash: str, delete_files: bool = False):
        """Delete a torrent (optionally with files)."""
        self._request("torrents/delete", data={
            "hashes": torrent_hash,
            "deleteFiles": "true" if delete_files else "false",
        })

    def map_to_qbit(self, path: str) -> str:
        for pm in self.path_mappings:
            mapped = pm.to_qbit(path)
            if mapped != path:
                return mapped
        return path

    def find_torrent_for_path(self, path: str) -> Optional[Torrent]:
        """Find the torrent owning a local path.

        A content_path match wins. A save_path match is only accepted when
        exactly one torrent uses that save path, since category folders are
        usually shared by many torrents.
        """
        qbit_path = self.map_to_qbit(path)
        torrents = self.get_torrents()
        for t in torrents:
            if path_has_prefix(qbit_path, t.content_path):
                return t
        by_save_path = [t for t in torrents if path_has_prefix(qbit_path, t.save_path)]
        if len(by_save_path) == 1:
            return by_save_path[0]
        if by_save_path:
            LOG.warning(f"{len(by_save_path)} torrents share the save path of {path}, not removing any")
        return None

    def delete_by_content_path(self, path: str, delete_files: bool = False) -> Optional[Torrent]:
        """Remove the torrent owning ``path``. Returns it, or None when nothing matched."""
        torrent = self.find_torrent_for_path(path)
        if torrent is None:
            LOG.debug(f"No torrent found for {path}")
            return None
        self.delete_torrent(torrent.hash, delete_files=delete_files)
        LOG.info(f"Removed torrent '{torrent.name}' ({torrent.hash}) for {path}")
        return torrent
