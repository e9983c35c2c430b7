#!/usr/bin/env python3
"""
Unit tests for qbittorrent_client.py

Tests path matching, path mappings and torrent lookup with the HTTP layer mocked.
"""

import http.client
import io
import json
import unittest
import urllib.error
from unittest.mock import patch

from clarr.qbittorrent_client import (
    PathMapping,
    QBittorrentClient,
    QBittorrentError,
    Torrent,
    path_has_prefix,
)


def torrent(hash, content_path, save_path="/data/torrents"):
    return Torrent(hash=hash, name=hash, content_path=content_path, save_path=save_path)


class TestPathHasPrefix(unittest.TestCase):
    """Test component-aware prefix matching."""

    def test_same_path(self):
        self.assertTrue(path_has_prefix("/data/movie.mkv", "/data/movie.mkv"))

    def test_parent_dir(self):
        self.assertTrue(path_has_prefix("/data/Movie/movie.mkv", "/data/Movie"))
        self.assertTrue(path_has_prefix("/data/Movie/movie.mkv", "/data/Movie/"))

    def test_sibling_with_shared_prefix(self):
        """'/data/Movie 2' is not inside '/data/Movie'."""
        self.assertFalse(path_has_prefix("/data/Movie 2/movie.mkv", "/data/Movie"))

    def test_empty_prefix(self):
        self.assertFalse(path_has_prefix("/data/movie.mkv", ""))


class TestPathMapping(unittest.TestCase):
    """Test path mapping between qBittorrent and local paths."""

    def test_to_qbit(self):
        pm = PathMapping("/downloads", "/mnt/user/downloads")
        self.assertEqual(pm.to_qbit("/mnt/user/downloads/Movie/a.mkv"), "/downloads/Movie/a.mkv")

    def test_to_qbit_no_match(self):
        pm = PathMapping("/downloads", "/mnt/user/downloads")
        self.assertEqual(pm.to_qbit("/other/a.mkv"), "/other/a.mkv")

    def test_to_local(self):
        pm = PathMapping("/downloads", "/mnt/user/downloads")
        self.assertEqual(pm.to_local("/downloads/a.mkv"), "/mnt/user/downloads/a.mkv")

    def test_sibling_directory_is_not_mapped(self):
        """'/mnt/data2' shares a string prefix with '/mnt/data' but is another directory."""
        pm = PathMapping("/data", "/mnt/data")
        self.assertEqual(pm.to_qbit("/mnt/data2/x.mkv"), "/mnt/data2/x.mkv")
        self.assertEqual(pm.to_local("/data2/x.mkv"), "/data2/x.mkv")
        self.assertEqual(pm.to_qbit("/mnt/data/x.mkv"), "/data/x.mkv")
        self.assertEqual(pm.to_qbit("/mnt/data"), "/data")

    def test_trailing_slashes(self):
        pm = PathMapping("/downloads/", "/mnt/user/downloads/")
        self.assertEqual(pm.to_qbit("/mnt/user/downloads/a.mkv"), "/downloads/a.mkv")

    def test_from_settings_skips_incomplete_mappings(self):
        client = QBittorrentClient.from_settings({
            "url": "qbit:8080",
            "path_mappings": [
                {"qbit_path": "/downloads", "local_path": "/mnt/downloads"},
                {"qbit_path": "/broken"},
            ],
        })
        self.assertEqual(client.base_url, "http://qbit:8080")
        self.assertEqual(len(client.path_mappings), 1)
        self.assertEqual(client.map_to_qbit("/mnt/downloads/x"), "/downloads/x")


class TestTorrentLookup(unittest.TestCase):

    def setUp(self):
        self.client = QBittorrentClient(
            "http://qbit:8080", "admin", "pw",
            path_mappings=[PathMapping("/data/torrents", "/mnt/torrents")],
        )

    def test_content_path_match(self):
        torrents = [
            torrent("aaa", "/data/torrents/Other"),
            torrent("bbb", "/data/torrents/Heat (1995)"),
        ]
        with patch.object(self.client, "get_torrents", return_value=torrents):
            found = self.client.find_torrent_for_path("/mnt/torrents/Heat (1995)/heat.mkv")
        self.assertEqual(found.hash, "bbb")

    def test_single_file_torrent(self):
        torrents = [torrent("ccc", "/data/torrents/heat.mkv")]
        with patch.object(self.client, "get_torrents", return_value=torrents):
            found = self.client.find_torrent_for_path("/mnt/torrents/heat.mkv")
        self.assertEqual(found.hash, "ccc")

    def test_shared_save_path_is_ambiguous(self):
        torrents = [
            torrent("aaa", "/data/torrents/A", save_path="/data/torrents"),
            torrent("bbb", "/data/torrents/B", save_path="/data/torrents"),
        ]
        with patch.object(self.client, "get_torrents", return_value=torrents):
            found = self.client.find_torrent_for_path("/mnt/torrents/C/c.mkv")
        self.assertIsNone(found)

    def test_unique_save_path_match(self):
        torrents = [torrent("aaa", "/data/x/renamed", save_path="/data/torrents/movies")]
        with patch.object(self.client, "get_torrents", return_value=torrents):
            found = self.client.find_torrent_for_path("/mnt/torrents/movies/m.mkv")
        self.assertEqual(found.hash, "aaa")

    def test_delete_by_content_path_keeps_files(self):
        torrents = [torrent("bbb", "/data/torrents/Heat")]
        with patch.object(self.client, "get_torrents", return_value=torrents), \
                patch.object(self.client, "_request", return_value="") as req:
            removed = self.client.delete_by_content_path("/mnt/torrents/Heat/heat.mkv")

        self.assertEqual(removed.hash, "bbb")
        req.assert_called_once_with("torrents/delete", data={"hashes": "bbb", "deleteFiles": "false"})

    def test_delete_by_content_path_no_match(self):
        with patch.object(self.client, "get_torrents", return_value=[]), \
                patch.object(self.client, "delete_torrent") as delete:
            self.assertIsNone(self.client.delete_by_content_path("/mnt/torrents/x.mkv"))
        delete.assert_not_called()


class TestSession(unittest.TestCase):

    def setUp(self):
        self.client = QBittorrentClient("http://qbit:8080", "admin", "pw")

    def test_login_failure(self):
        with patch.object(self.client, "_raw_request", return_value="Fails."):
            with self.assertRaises(QBittorrentError):
                self.client.login()

    def test_get_torrents_logs_in_first(self):
        payload = json.dumps([{"hash": "abc", "name": "Heat", "content_path": "/data/Heat"}])
        with patch.object(self.client, "_raw_request", side_effect=["Ok.", payload]) as raw:
            torrents = self.client.get_torrents()

        self.assertEqual(raw.call_args_list[0].args[0], "auth/login")
        self.assertEqual(torrents[0].hash, "abc")
        self.assertEqual(torrents[0].content_path, "/data/Heat")

    def test_relogin_on_forbidden(self):
        forbidden = urllib.error.HTTPError("http://qbit:8080/api/v2/torrents/info", 403,
                                           "Forbidden", {}, io.BytesIO(b""))
        with patch.object(self.client, "_raw_request",
                          side_effect=["Ok.", forbidden, "Ok.", "[]"]) as raw:
            self.assertEqual(self.client.get_torrents(), [])
        self.assertEqual(raw.call_count, 4)

    def test_connection_error_is_wrapped(self):
        self.client._logged_in = True
        with patch.object(self.client, "_raw_request",
                          side_effect=urllib.error.URLError("refused")):
            with self.assertRaises(QBittorrentError):
                self.client.get_torrents()

    def test_truncated_response_is_wrapped(self):
        self.client._logged_in = True
        with patch.object(self.client, "_raw_request",
                          side_effect=http.client.IncompleteRead(b"[{\"hash\"")):
            with self.assertRaises(QBittorrentError):
                self.client.get_torrents()

    def test_non_list_torrent_info_is_wrapped(self):
        self.client._logged_in = True
        for body in ('{"a": 1}', '["abc"]', "not json"):
            with patch.object(self.client, "_raw_request", return_value=body):
                with self.assertRaises(QBittorrentError, msg=body):
                    self.client.get_torrents()


if __name__ == "__main__":
    unittest.main()
