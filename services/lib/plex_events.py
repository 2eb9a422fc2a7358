# Plex Sensors
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Plex webhook payload decoding.

Plex posts webhooks as multipart/form-data: a ``payload`` part carrying the
JSON event, optionally followed by a binary ``thumb`` part (JPEG poster).
We don't run a real multipart parser - each part is scanned for the first
``{`` and the last ``}`` and whatever sits between them is tried as JSON.
Parts without an object (thumbnails, preambles) are skipped.

Decoded objects become one of two variants:

    PlaybackEvent  - media.play / media.pause / media.resume / media.stop
    Unrecognized   - anything else (other event types, missing fields)

Only PlaybackEvent instances leave ``decode_payload``.

Usage:
    boundary = boundary_from_content_type(request.headers.get("Content-Type"))
    for event in decode_payload(body_text, boundary):
        inbox.put_nowait(event)
"""

import json
import logging
from collections.abc import Iterator

log = logging.getLogger(__name__)

PLAY = "play"
PAUSE = "pause"
RESUME = "resume"
STOP = "stop"

# Plex event name -> playback kind
EVENT_KINDS = {
    "media.play": PLAY,
    "media.pause": PAUSE,
    "media.resume": RESUME,
    "media.stop": STOP,
}


class PlaybackEvent:
    """A recognized playback lifecycle event from one Plex player."""

    def __init__(self, kind: str, player_id: str, *, account: str | None = None,
                 player_title: str | None = None, media_type: str | None = None):
        self.kind = kind                  # play | pause | resume | stop
        self.player_id = player_id        # Player.uuid - stable session key
        self.account = account            # Account.title
        self.player_title = player_title  # Player.title (display name)
        self.media_type = media_type      # Metadata.type (movie, episode, track, ...)

    def __repr__(self):
        return (f"PlaybackEvent({self.kind!r}, player={self.player_id!r}, "
                f"account={self.account!r}, type={self.media_type!r})")

    def __eq__(self, other):
        if not isinstance(other, PlaybackEvent):
            return NotImplemented
        return (self.kind, self.player_id, self.account, self.player_title, self.media_type) == \
               (other.kind, other.player_id, other.account, other.player_title, other.media_type)


class Unrecognized:
    """A decoded object we don't act on. ``reason`` is for debug logging only."""

    def __init__(self, reason: str, event: str | None = None):
        self.reason = reason
        self.event = event

    def __repr__(self):
        return f"Unrecognized({self.reason!r}, event={self.event!r})"


def boundary_from_content_type(content_type: str | None) -> str | None:
    """Pull the multipart boundary out of a Content-Type header value.

    'multipart/form-data; boundary=------abc' -> '------abc'
    Returns None when the header carries no boundary.
    """
    if not content_type or "boundary=" not in content_type:
        return None
    boundary = content_type.split("boundary=", 1)[1]
    boundary = boundary.split(";", 1)[0].strip().strip('"')
    return boundary or None


def iter_json_fragments(body: str, boundary: str | None) -> Iterator[str]:
    """Yield the ``{...}`` substring of every part that has one.

    Without a boundary the whole body is treated as a single part, so a
    plain ``application/json`` post works too.
    """
    parts = body.split(boundary) if boundary else [body]
    for part in parts:
        start = part.find("{")
        end = part.rfind("}")
        if start == -1 or end == -1 or start >= end:
            continue
        yield part[start:end + 1]


def _title(obj, key: str) -> str | None:
    section = obj.get(key)
    if not isinstance(section, dict):
        return None
    value = section.get("title")
    return value if isinstance(value, str) else None


def decode_event(obj) -> PlaybackEvent | Unrecognized:
    """Turn a parsed webhook object into a PlaybackEvent or Unrecognized.

    Fails closed: wrong shapes and missing required fields (``event``,
    ``Player.uuid``) come back as Unrecognized instead of raising.
    """
    if not isinstance(obj, dict):
        return Unrecognized("not an object")

    event = obj.get("event")
    if not isinstance(event, str):
        return Unrecognized("missing event")

    kind = EVENT_KINDS.get(event)
    if kind is None:
        return Unrecognized("not a playback event", event)

    player = obj.get("Player")
    if not isinstance(player, dict):
        return Unrecognized("missing Player", event)
    player_id = player.get("uuid")
    if not isinstance(player_id, str) or not player_id:
        return Unrecognized("missing Player.uuid", event)

    metadata = obj.get("Metadata")
    media_type = metadata.get("type") if isinstance(metadata, dict) else None

    return PlaybackEvent(
        kind,
        player_id,
        account=_title(obj, "Account"),
        player_title=_title(obj, "Player"),
        media_type=media_type if isinstance(media_type, str) else None,
    )


def decode_payload(body: str, boundary: str | None) -> Iterator[PlaybackEvent]:
    """Lazily decode every playback event carried by a webhook body."""
    for fragment in iter_json_fragments(body, boundary):
        try:
            obj = json.loads(fragment)
        except ValueError:
            log.debug("Dropping unparsable webhook fragment (%d chars)", len(fragment))
            continue

        decoded = decode_event(obj)
        if isinstance(decoded, Unrecognized):
            log.debug("Ignoring webhook: %s (%s)", decoded.reason, decoded.event)
            continue
        yield decoded
