"""
Plain-text transcripts of messages for completion prompts.

Line format:
    [ID: 42] @alice (2025-01-01 10:00:00 in #general, top-level): "body"
    Reactions: 🔥, 👍
      [HAS_ATTACHMENT | LINK_PREVIEW: Link: "title" - description]
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping

from autofeed.storage.models import Message, Room

DEFAULT_REACTION = "👍"
_ELLIPSIS = "…"


def _thread_context(room: Room | None) -> str:
    if room is not None and room.is_thread and room.parent_message_id:
        return f"thread-reply-to-{room.parent_message_id}"
    return "top-level"


def _markers(message: Message, context_only: bool) -> str:
    markers: list[str] = []
    if message.attachment_name:
        markers.append("HAS_ATTACHMENT")
    if message.link_previews:
        previews = "; ".join(
            f'Link: "{p.title}" - {p.description}' for p in message.link_previews
        )
        markers.append(f"LINK_PREVIEW: {previews}")
    if context_only:
        markers.append("CONTEXT_ONLY")
    return f"\n  [{' | '.join(markers)}]" if markers else ""


def format_message(
    message: Message,
    room: Room | None,
    context_only: bool = False,
    with_location: bool = True,
) -> str:
    timestamp = message.created_at.strftime("%Y-%m-%d %H:%M:%S")
    speaker = message.creator_name or f"user-{message.creator_id}"
    if with_location:
        room_name = room.name if room is not None else f"room-{message.room_id}"
        location = f"{timestamp} in #{room_name}, {_thread_context(room)}"
    else:
        location = timestamp

    line = f'[ID: {message.id}] @{speaker} ({location}): "{message.body.strip()}"'
    if message.reactions:
        line += "\nReactions: " + ", ".join(r.content or DEFAULT_REACTION for r in message.reactions)
    return line + _markers(message, context_only)


def build_transcript(
    messages: Iterable[Message],
    rooms: Mapping[int, Room],
    context_only_ids: Collection[int] = (),
    with_location: bool = True,
) -> str:
    return "\n".join(
        format_message(m, rooms.get(m.room_id), m.id in context_only_ids, with_location)
        for m in messages
    )


def truncate_summary(text: str | None, max_chars: int) -> str:
    """Hard-cap a summary at ``max_chars``, cutting on a word boundary when possible."""
    summary = " ".join((text or "").split())
    if len(summary) <= max_chars:
        return summary

    cut = summary[: max_chars - len(_ELLIPSIS)]
    boundary = cut.rfind(" ")
    if boundary > max_chars // 2:
        cut = cut[:boundary]
    return cut.rstrip(" ,;:-") + _ELLIPSIS


def chronological(messages: Iterable[Message]) -> list[Message]:
    """De-duplicate by id and order by (created_at, id)."""
    unique = {m.id: m for m in messages}
    return sorted(unique.values(), key=lambda m: (m.created_at, m.id))
