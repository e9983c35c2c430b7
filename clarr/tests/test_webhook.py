#!/usr/bin/env python3
"""
Unit tests for webhook.py
"""

import json
import unittest

from clarr.webhook import (
    IngestStatus,
    MediaKind,
    WebhookAuthError,
    WebhookPayloadError,
    ingest,
    is_delete_event,
    parse_event,
    sign,
    verify_signature,
)

SECRET = "s3cret"


def body(**fields) -> bytes:
    return json.dumps(fields).encode("utf-8")


class TestSignature(unittest.TestCase):

    def test_sign_is_lowercase_hex_sha256(self):
        sig = sign(b"{}", SECRET)
        self.assertEqual(len(sig), 64)
        self.assertEqual(sig, sig.lower())

    def test_valid_signature_passes(self):
        raw = body(Event="item.deleted", ItemType="Movie", Title="Heat")
        verify_signature(raw, sign(raw, SECRET), SECRET)

    def test_surrounding_whitespace_is_ignored(self):
        raw = b"{}"
        verify_signature(raw, "  " + sign(raw, SECRET) + "\n", SECRET)

    def test_tampered_body_rejected(self):
        """Changing a single byte invalidates the signature."""
        raw = body(Event="item.deleted", ItemType="Movie", Title="Heat")
        sig = sign(raw, SECRET)
        tampered = raw.replace(b"Heat", b"Heap")
        with self.assertRaises(WebhookAuthError):
            verify_signature(tampered, sig, SECRET)

    def test_missing_signature_rejected(self):
        with self.assertRaises(WebhookAuthError):
            verify_signature(b"{}", None, SECRET)
        with self.assertRaises(WebhookAuthError):
            verify_signature(b"{}", "   ", SECRET)

    def test_wrong_secret_rejected(self):
        raw = b"{}"
        with self.assertRaises(WebhookAuthError):
            verify_signature(raw, sign(raw, "other"), SECRET)


class TestParseEvent(unittest.TestCase):

    def test_parse_full_event(self):
        event = parse_event(body(Event="item.deleted", Title="Pilot", ItemId="abc",
                                 ItemType="Episode", SeriesName="Lost", SeasonNumber=1,
                                 ServerName="jelly"))
        self.assertEqual(event.event, "item.deleted")
        self.assertEqual(event.series_name, "Lost")
        self.assertEqual(event.season_number, 1)

    def test_numeric_item_id(self):
        event = parse_event(body(Event="item.deleted", ItemId=42))
        self.assertEqual(event.item_id, "42")

    def test_invalid_json(self):
        with self.assertRaises(WebhookPayloadError):
            parse_event(b"{not json")

    def test_non_object_body(self):
        with self.assertRaises(WebhookPayloadError):
            parse_event(b"[1, 2, 3]")

    def test_empty_body(self):
        with self.assertRaises(WebhookPayloadError):
            parse_event(b"")


class TestClassification(unittest.TestCase):

    def test_delete_events(self):
        for name in ("library.deleted", "item.deleted", "playback.stop"):
            self.assertTrue(is_delete_event(name), name)

    def test_delete_events_case_insensitive(self):
        self.assertTrue(is_delete_event("Item.Deleted"))
        self.assertTrue(is_delete_event(" LIBRARY.DELETED "))

    def test_other_events(self):
        for name in ("subtitle.downloaded", "item.added", "", "playback.start"):
            self.assertFalse(is_delete_event(name), name)

    def test_media_kind(self):
        self.assertEqual(MediaKind.from_item_type("Movie"), MediaKind.MOVIE)
        self.assertEqual(MediaKind.from_item_type("episode"), MediaKind.EPISODE)
        self.assertEqual(MediaKind.from_item_type("Series"), MediaKind.SERIES)
        self.assertEqual(MediaKind.from_item_type("Audio"), MediaKind.UNKNOWN)
        self.assertEqual(MediaKind.from_item_type(None), MediaKind.UNKNOWN)


class TestIngest(unittest.TestCase):

    def test_movie_deletion_accepted(self):
        raw = body(Event="item.deleted", ItemType="Movie", Title="Heat", ItemId="m1")
        result = ingest(raw, sign(raw, SECRET), SECRET)

        self.assertEqual(result.status, IngestStatus.ACCEPTED)
        self.assertEqual(result.event.kind, MediaKind.MOVIE)
        self.assertEqual(result.event.title, "Heat")
        self.assertEqual(result.event.item_id, "m1")

    def test_episode_deletion_keeps_series_info(self):
        raw = body(Event="library.deleted", ItemType="Episode", Title="Pilot",
                   SeriesName="Lost", SeasonNumber=1)
        result = ingest(raw, sign(raw, SECRET), SECRET)

        self.assertEqual(result.event.kind, MediaKind.EPISODE)
        self.assertEqual(result.event.series_name, "Lost")
        self.assertEqual(result.event.season_number, 1)

    def test_unrelated_event_ignored(self):
        raw = body(Event="subtitle.downloaded", ItemType="Movie", Title="Heat")
        result = ingest(raw, sign(raw, SECRET), SECRET)

        self.assertEqual(result.status, IngestStatus.IGNORED)
        self.assertIsNone(result.event)
        self.assertEqual(result.event_name, "subtitle.downloaded")

    def test_unknown_type_still_accepted(self):
        raw = body(Event="item.deleted", ItemType="MusicAlbum", Title="Album")
        result = ingest(raw, sign(raw, SECRET), SECRET)

        self.assertEqual(result.status, IngestStatus.ACCEPTED)
        self.assertEqual(result.event.kind, MediaKind.UNKNOWN)

    def test_signature_checked_before_parsing(self):
        """A bad signature on a bad body is an auth error, not a payload error."""
        with self.assertRaises(WebhookAuthError):
            ingest(b"{not json", "deadbeef", SECRET)

    def test_bad_payload_with_valid_signature(self):
        raw = b"{not json"
        with self.assertRaises(WebhookPayloadError):
            ingest(raw, sign(raw, SECRET), SECRET)

    def test_no_secret_skips_verification(self):
        raw = body(Event="item.deleted", ItemType="Series", Title="Lost")
        result = ingest(raw, None, None)

        self.assertEqual(result.status, IngestStatus.ACCEPTED)
        self.assertEqual(result.event.kind, MediaKind.SERIES)


if __name__ == "__main__":
    unittest.main()
