#!/usr/bin/env python3
"""
webhook.py — Jellyfin deletion webhook: signature check and classification

Jellyfin's webhook plugin posts a JSON body; when a secret is configured the
sender signs the exact raw body with HMAC-SHA256 and puts the lowercase hex
digest in the X-Jellyfin-Signature header.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

LOG = logging.getLogger("clarr.webhook")

SIGNATURE_HEADER = "X-Jellyfin-Signature"

# Some emitters only send playback.stop when an item is removed
DELETE_EVENTS = frozenset({
    "library.deleted",
    "item.deleted",
    "playback.stop",
})


class WebhookAuthError(Exception):
    """Signature missing or not matching the body."""


class WebhookPayloadError(Exception):
    """Body is not a valid event."""


class MediaKind(str, Enum):
    MOVIE = "movie"
    EPISODE = "episode"
    SERIES = "series"
    UNKNOWN = "unknown"

    @classmethod
    def from_item_type(cls, item_type: Optional[str]) -> "MediaKind":
        value = (item_type or "").strip().lower()
        for kind in (cls.MOVIE, cls.EPISODE, cls.SERIES):
            if value == kind.value:
                return kind
        return cls.UNKNOWN


class IngestStatus(str, Enum):
    ACCEPTED = "processing"
    IGNORED = "ignored"


class JellyfinEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event: str = Field("", alias="Event")
    title: Optional[str] = Field(None, alias="Title")
    item_id: Optional[str] = Field(None, alias="ItemId")
    item_type: Optional[str] = Field(None, alias="ItemType")
    series_name: Optional[str] = Field(None, alias="SeriesName")
    season_number: Optional[int] = Field(None, alias="SeasonNumber")

    @field_validator("item_id", mode="before")
    @classmethod
    def _id_as_string(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


@dataclass(frozen=True)
class DeletionEvent:
    kind: MediaKind
    title: str
    item_id: str
    series_name: Optional[str] = None
    season_number: Optional[int] = None
    event_name: str = ""


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    event: Optional[DeletionEvent] = None
    event_name: str = ""


def sign(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str):
    """Raise WebhookAuthError unless ``signature`` is the HMAC of ``raw_body``."""
    if not signature or not signature.strip():
        raise WebhookAuthError(f"missing {SIGNATURE_HEADER} header")
    expected = sign(raw_body, secret)
    if not hmac.compare_digest(signature.strip().encode("utf-8"), expected.encode("utf-8")):
        raise WebhookAuthError("signature mismatch")


def is_delete_event(event_name: str) -> bool:
    return (event_name or "").strip().lower() in DELETE_EVENTS


def parse_event(raw_body: bytes) -> JellyfinEvent:
    try:
        return JellyfinEvent.model_validate_json(raw_body)
    except ValidationError as e:
        raise WebhookPayloadError(f"invalid payload: {e.error_count()} error(s), first: {e.errors()[0]['msg']}") from e


def ingest(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> IngestResult:
    """Authenticate, parse and classify one webhook call.

    ``secret`` empty/None disables signature checks; callers only pass that
    when unsigned webhooks were explicitly allowed.
    """
    if secret:
        verify_signature(raw_body, signature, secret)

    payload = parse_event(raw_body)

    LOG.info(f"Jellyfin event received: event={payload.event!r} type={payload.item_type!r} title={payload.title!r}")

    if not is_delete_event(payload.event):
        return IngestResult(status=IngestStatus.IGNORED, event_name=payload.event)

    event = DeletionEvent(
        kind=MediaKind.from_item_type(payload.item_type),
        title=payload.title or "",
        item_id=payload.item_id or "",
        series_name=payload.series_name,
        season_number=payload.season_number,
        event_name=payload.event,
    )
    return IngestResult(status=IngestStatus.ACCEPTED, event=event, event_name=payload.event)
