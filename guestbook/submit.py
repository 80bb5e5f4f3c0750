"""
Guestbook write path: from a raw JSON body to a placed note.

    rate check → shape validation → shrink → profanity flags
               → atomic placement → cooldown

Every step but the last two may end the submission with a
``SubmissionError``.  Store failures surface as ``StoreError``.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from time import time

from guestbook.cooldown import COOLDOWN_SECONDS, CooldownError, cooldown_key
from guestbook.geometry import COL_MAX, COL_MIN, ROW_MAX, ROW_MIN
from guestbook.profanity import detect_profanity
from guestbook.shrink import shrink_bounds
from guestbook.store import PAGE_INDEX_MAX, Note, NoteDraft, NoteStore

log = logging.getLogger(__name__)

TEXT_MAX = 280
AUTHOR_MAX = 100
THANKS_MSG = (
    "Thank you for writing in my guest book, "
    "come back again later to write more!"
)


class SubmissionError(Exception):
    status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SubmissionError):
    status = 400


class PlacementConflict(SubmissionError):
    status = 409


class RateLimited(SubmissionError):
    status = 429


def _as_int(value) -> int | None:
    """*value* as an int if it is an integral JSON number, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _check_span(start, end, lo: int, hi: int) -> tuple[int, int] | None:
    s, e = _as_int(start), _as_int(end)
    if s is None or e is None or s < lo or e > hi or e <= s:
        return None
    return s, e


def validate_payload(body) -> NoteDraft:
    """
    Check the shape of a submission and return it as a draft.

    Raises ``ValidationError`` naming the first offending field group.
    """
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    text = body.get("text")
    if not isinstance(text, str) or not 1 <= len(text) <= TEXT_MAX:
        raise ValidationError(f"Text must be between 1 and {TEXT_MAX} characters")

    author = body.get("author")
    if not isinstance(author, str) or not 1 <= len(author) <= AUTHOR_MAX:
        raise ValidationError(
            f"Author must be between 1 and {AUTHOR_MAX} characters"
        )

    cols = _check_span(body.get("col_start"), body.get("col_end"), COL_MIN, COL_MAX)
    if cols is None:
        raise ValidationError(
            f"Invalid column bounds (integers {COL_MIN}-{COL_MAX}, end > start)"
        )

    rows = _check_span(body.get("row_start"), body.get("row_end"), ROW_MIN, ROW_MAX)
    if rows is None:
        raise ValidationError(
            f"Invalid row bounds (integers {ROW_MIN}-{ROW_MAX}, end > start)"
        )

    page_index = _as_int(body.get("page_index"))
    if page_index is None or not 0 <= page_index <= PAGE_INDEX_MAX:
        raise ValidationError("page_index must be a non-negative integer")

    return NoteDraft(
        page_index=page_index,
        row_start=rows[0],
        row_end=rows[1],
        col_start=cols[0],
        col_end=cols[1],
        text=text,
        author=author,
    )


def is_cooling_down(cooldown, identity: str) -> bool:
    try:
        return bool(cooldown.get(cooldown_key(identity)))
    except CooldownError:
        log.warning(
            "cooldown lookup failed; letting %s through", identity, exc_info=True
        )
        return False


def start_cooldown(cooldown, identity: str, ttl: int = COOLDOWN_SECONDS) -> None:
    try:
        cooldown.set(cooldown_key(identity), int(time() * 1000), ttl)
    except CooldownError:
        log.warning("could not start cooldown for %s", identity, exc_info=True)


def annotate(text: str, sticker_ids) -> tuple:
    try:
        return tuple(detect_profanity(text, sticker_ids))
    except Exception:
        # flags are decoration; never lose a note over them
        log.exception("profanity detection failed")
        return ()


def submit_note(
    body,
    *,
    identity: str,
    store: NoteStore,
    cooldown,
    sticker_ids=(),
    cooldown_seconds: int = COOLDOWN_SECONDS,
) -> Note:
    """
    Run one submission through the pipeline and return the stored note.

    *sticker_ids* may be a list or a zero-argument callable; the callable is
    only invoked once the submission got past validation.
    """
    # an empty identity cannot be keyed, so it is never rate limited
    if identity and is_cooling_down(cooldown, identity):
        raise RateLimited(THANKS_MSG)

    draft = validate_payload(body)

    shrunk = shrink_bounds(draft.text, draft.author, draft.bounds)

    pool = sticker_ids() if callable(sticker_ids) else sticker_ids
    flags = annotate(draft.text, pool)

    note = store.insert_if_no_overlap(
        replace(draft, **shrunk.to_dict(), profanity_flags=flags)
    )
    if note is None:
        raise PlacementConflict("This area overlaps with an existing note")

    if identity:
        start_cooldown(cooldown, identity, cooldown_seconds)
    log.info(
        "note %s placed on page %s at rows %s-%s cols %s-%s",
        note.id,
        note.page_index,
        note.row_start,
        note.row_end,
        note.col_start,
        note.col_end,
    )
    return note
