#!/usr/bin/env python3
"""
servarr_client.py — Sonarr/Radarr API Client for clarr

Provides the catalog operations the reconciler needs:
- Trigger library rescans (and wait for the command to finish)
- List unreferenced items (movies without a file, series without episode files)
- Flip the monitored flag of a movie/series
- Delete a movie/series from the catalog

API Reference Documentation:
- Sonarr API v3/v4: https://sonarr.tv/docs/api/
  - GET  /api/v3/series            - All series
  - GET  /api/v3/series/{id}       - One series
  - PUT  /api/v3/series/{id}       - Update series (monitored flag)
  - POST /api/v3/command           - {"name": "RescanSeries"}

- Radarr API v3: https://radarr.video/docs/api/
  - GET  /api/v3/movie             - All movies
  - GET  /api/v3/movie/{id}        - One movie
  - PUT  /api/v3/movie/{id}        - Update movie (monitored flag)
  - POST /api/v3/command           - {"name": "RescanMovie"}
"""

from __future__ import annotations

import http.client
import json
import logging
import ssl
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

LOG = logging.getLogger("clarr.servarr")


# =============================================================================
# ENUMS AND ERRORS
# =============================================================================

class ServarrType(Enum):
    """Type of Servarr application."""
    SONARR = "sonarr"
    RADARR = "radarr"


class ServarrError(Exception):
    """A Sonarr/Radarr call failed after retries."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class CatalogItem:
    """Movie or series projection used by the reconciler."""
    id: int
    title: str
    has_local_file: bool
    monitored: bool
    path: str = ""

    @classmethod
    def from_movie(cls, data: dict) -> "CatalogItem":
        return cls(
            id=data.get("id", 0),
            title=data.get("title", "Unknown"),
            has_local_file=bool(data.get("hasFile", False)),
            monitored=bool(data.get("monitored", False)),
            path=data.get("path", ""),
        )

    @classmethod
    def from_series(cls, data: dict) -> "CatalogItem":
        stats = data.get("statistics") or {}
        return cls(
            id=data.get("id", 0),
            title=data.get("title", "Unknown"),
            has_local_file=stats.get("episodeFileCount", 0) > 0,
            monitored=bool(data.get("monitored", False)),
            path=data.get("path", ""),
        )


@dataclass
class ServarrInstance:
    """Configuration for a Sonarr/Radarr instance."""
    name: str
    url: str
    api_key: str
    app_type: ServarrType
    timeout: int = 30
    retries: int = 2
    rescan_wait_seconds: int = 60

    def __post_init__(self):
        self.url = self.url.rstrip("/")
        if not self.url.startswith("http"):
            self.url = f"http://{self.url}"

    @classmethod
    def from_dict(cls, data: dict, app_type: ServarrType) -> "ServarrInstance":
        return cls(
            name=data.get("name", app_type.value),
            url=data.get("url", ""),
            api_key=data.get("api_key", data.get("apikey", "")),
            app_type=app_type,
            timeout=int(data.get("timeout", 30)),
            retries=int(data.get("retries", 2)),
            rescan_wait_seconds=int(data.get("rescan_wait_seconds", 60)),
        )


# =============================================================================
# SERVARR CLIENT
# =============================================================================

class ServarrClient:
    """HTTP client for Sonarr/Radarr API with error handling and retries.

    Subclasses set ``resource`` (the catalog endpoint), ``rescan_command``
    and ``id_field`` and decide which items count as unreferenced.
    """

    resource = ""
    rescan_command = ""
    id_field = ""
    poll_interval = 2.0

    def __init__(self, instance: ServarrInstance):
        self.instance = instance
        self._ssl_ctx = ssl.create_default_context()
        self._ssl_ctx.check_hostname = False
        self._ssl_ctx.verify_mode = ssl.CERT_NONE

    @property
    def name(self) -> str:
        return self.instance.name

    def _request(self, endpoint: str, method: str = "GET",
                 data: Optional[Any] = None) -> Optional[Any]:
        url = f"{self.instance.url}/api/v3/{endpoint}"
        headers = {
            "X-Api-Key": self.instance.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        last_error = None
        for attempt in range(self.instance.retries + 1):
            try:
                body = json.dumps(data).encode("utf-8") if data is not None else None
                req = urllib.request.Request(url, data=body, headers=headers, method=method)
                ctx = self._ssl_ctx if url.startswith("https") else None

                with urllib.request.urlopen(req, timeout=self.instance.timeout, context=ctx) as response:
                    content = response.read()
                    if content:
                        return json.loads(content)
                    return None

            except urllib.error.HTTPError as e:
                # Client errors are not worth retrying
                if e.code in (400, 401, 403, 404):
                    reason = "Invalid API key" if e.code == 401 else e.reason
                    raise ServarrError(
                        f"[{self.name}] HTTP {e.code} on {method} {endpoint}: {reason}", status=e.code
                    ) from e
                last_error = ServarrError(f"[{self.name}] HTTP {e.code} on {method} {endpoint}: {e.reason}",
                                          status=e.code)

            except urllib.error.URLError as e:
                last_error = ServarrError(f"[{self.name}] Connection failed on {method} {endpoint}: {e.reason}")

            except http.client.HTTPException as e:
                # truncated or malformed responses (IncompleteRead, BadStatusLine)
                last_error = ServarrError(f"[{self.name}] Broken response on {method} {endpoint}: {e!r}")

            except ValueError as e:
                # JSONDecodeError and UnicodeDecodeError
                raise ServarrError(f"[{self.name}] Invalid JSON from {method} {endpoint}: {e}") from e

            except OSError as e:
                # socket timeouts surface here
                last_error = ServarrError(f"[{self.name}] {method} {endpoint} failed: {e}")

            if attempt < self.instance.retries:
                LOG.debug(f"[{self.name}] Retrying {method} {endpoint} ({attempt + 1}/{self.instance.retries})")
                time.sleep(1 * (attempt + 1))

        raise last_error or ServarrError(f"[{self.name}] {method} {endpoint} failed")

    # ----- catalog -----

    def _to_item(self, data: dict) -> CatalogItem:
        raise NotImplementedError

    def get_all(self) -> List[dict]:
        items = self._request(self.resource) or []
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            raise ServarrError(f"[{self.name}] unexpected {self.resource} list payload")
        return items

    def get_by_id(self, item_id: int) -> dict:
        item = self._request(f"{self.resource}/{item_id}")
        if not item:
            raise ServarrError(f"[{self.name}] {self.resource} {item_id} not found", status=404)
        if not isinstance(item, dict):
            raise ServarrError(f"[{self.name}] unexpected {self.resource} {item_id} payload")
        return item

    def list_items(self) -> List[CatalogItem]:
        try:
            return [self._to_item(d) for d in self.get_all()]
        except (AttributeError, TypeError, ValueError) as e:
            raise ServarrError(f"[{self.name}] malformed {self.resource} entry: {e}") from e

    def list_unreferenced(self) -> List[CatalogItem]:
        """Items with nothing on disk any more."""
        unreferenced = [item for item in self.list_items() if not item.has_local_file]
        LOG.info(f"[{self.name}] {len(unreferenced)} {self.resource} item(s) without local files")
        return unreferenced

    def set_monitored(self, item_id: int, monitored: bool):
        """Fetch, flip the monitored flag and PUT the full resource back."""
        item = self.get_by_id(item_id)
        item["monitored"] = monitored
        self._request(f"{self.resource}/{item_id}", method="PUT", data=item)

    def delete_item(self, item_id: int, delete_files: bool = False):
        query = urllib.parse.urlencode({
            "deleteFiles": "true" if delete_files else "false",
            "addImportExclusion": "false",
        })
        self._request(f"{self.resource}/{item_id}?{query}", method="DELETE")

    # ----- commands -----

    def _command(self, item_id: Optional[int] = None) -> dict:
        payload: Dict[str, Any] = {"name": self.rescan_command}
        if item_id is not None:
            payload[self.id_field] = item_id
        command = self._request("command", method="POST", data=payload) or {}
        if not isinstance(command, dict):
            raise ServarrError(f"[{self.name}] unexpected response to {self.rescan_command}")
        return command

    def rescan_item(self, item_id: int) -> dict:
        return self._command(item_id)

    def rescan_library(self, wait: bool = True) -> dict:
        """Trigger a full rescan; optionally wait for the command to finish."""
        command = self._command()
        LOG.info(f"[{self.name}] {self.rescan_command} queued (command id {command.get('id')})")
        if wait and command.get("id") and self.instance.rescan_wait_seconds > 0:
            command = self.wait_for_command(command["id"], self.instance.rescan_wait_seconds)
        return command

    def wait_for_command(self, command_id: int, timeout: float) -> dict:
        """Poll a command until it completes. Raises on failed/aborted commands."""
        deadline = time.monotonic() + timeout
        command: dict = {"id": command_id}
        while True:
            polled = self._request(f"command/{command_id}")
            if polled:
                if not isinstance(polled, dict):
                    raise ServarrError(f"[{self.name}] unexpected payload for command {command_id}")
                command = polled
            status = str(command.get("status", "")).lower()
            if status == "completed":
                return command
            if status in ("failed", "aborted", "cancelled"):
                message = command.get("message") or command.get("exception") or status
                raise ServarrError(f"[{self.name}] command {command_id} {status}: {message}")
            if time.monotonic() >= deadline:
                LOG.warning(f"[{self.name}] command {command_id} still {status or 'pending'} after {timeout}s, continuing")
                return command
            time.sleep(self.poll_interval)


class RadarrClient(ServarrClient):
    resource = "movie"
    rescan_command = "RescanMovie"
    id_field = "movieId"

    def _to_item(self, data: dict) -> CatalogItem:
        return CatalogItem.from_movie(data)


class SonarrClient(ServarrClient):
    resource = "series"
    rescan_command = "RescanSeries"
    id_field = "seriesId"

    def _to_item(self, data: dict) -> CatalogItem:
        return CatalogItem.from_series(data)


def create_client(config: dict, app_type: ServarrType) -> ServarrClient:
    """Build a Radarr/Sonarr client from a settings section."""
    instance = ServarrInstance.from_dict(config, app_type)
    if app_type == ServarrType.RADARR:
        return RadarrClient(instance)
    return SonarrClient(instance)
