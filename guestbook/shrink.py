"""
Shrink a selected note area down to what its text actually needs.

The estimate mirrors how the note is drawn in the browser: a monospace
pixel font whose size depends on the row span only.  Fewer rows mean a
smaller font, and a smaller font fits more characters per column, so the
search walks row spans from small to large.
"""

from __future__ import annotations

import math

from guestbook.geometry import MIN_COL_SPAN, MIN_ROW_SPAN, Bounds

BASE_CHARS_PER_COL = 3  # at the largest font size
REFERENCE_FONT_SIZE = 0.85
MIN_FONT_SIZE = 0.65
FONT_SIZE_PER_ROW = 0.2
PADDING_CHARS = 1  # horizontal note padding eats about one column unit
ROW_HEIGHT_PX = 20
NOTE_PADDING_VERTICAL_PX = 8
SINGLE_ROW_PADDING_PX = 2
ROOT_FONT_SIZE_PX = 16
LINE_HEIGHT = 1.4


def font_size(row_span: int) -> float:
    """Font size in rem for a note spanning *row_span* rows."""
    return max(MIN_FONT_SIZE, min(REFERENCE_FONT_SIZE, row_span * FONT_SIZE_PER_ROW))


def chars_per_line(col_span: int, size: float) -> int:
    scaled = BASE_CHARS_PER_COL * (REFERENCE_FONT_SIZE / size)
    return max(1, math.floor(col_span * scaled - PADDING_CHARS))


def count_wrapped_lines(text: str, width: int) -> int:
    """
    Greedy word wrap of *text* into lines of *width* characters.

    Words longer than a line are broken anywhere, like CSS
    ``word-break: break-word``.
    """
    words = text.split()
    if not words:
        return 0

    lines = 1
    line_len = 0
    for word in words:
        if len(word) > width:
            if line_len > 0:
                lines += 1
            lines += math.ceil(len(word) / width) - 1
            line_len = len(word) % width or width
        elif line_len > 0 and line_len + 1 + len(word) > width:
            lines += 1
            line_len = len(word)
        else:
            line_len += (1 if line_len > 0 else 0) + len(word)
    return lines


def available_lines(row_span: int) -> int:
    line_height_px = font_size(row_span) * ROOT_FONT_SIZE_PX * LINE_HEIGHT
    padding = SINGLE_ROW_PADDING_PX if row_span <= 1 else NOTE_PADDING_VERTICAL_PX
    return math.floor((row_span * ROW_HEIGHT_PX - padding) / line_height_px)


def text_fits(text: str, author: str, row_span: int, col_span: int) -> bool:
    """True if *text* (plus the author line) fits a row_span x col_span note."""
    width = chars_per_line(col_span, font_size(row_span))
    needed = count_wrapped_lines(text, width)
    # a single-row note clips the author line
    if row_span > 1:
        needed += 1
    return needed <= available_lines(row_span)


def shrink_bounds(text: str, author: str, bounds: Bounds) -> Bounds:
    """
    Return the smallest area anchored at the top-left of *bounds* that
    still fits the note, or *bounds* itself when nothing smaller does.

    Row spans are tried first (smallest font wins), then column spans.
    This is greedy: it does not look for the global minimum area.
    """
    max_rows = bounds.row_span
    max_cols = bounds.col_span
    if max_rows <= MIN_ROW_SPAN and max_cols <= MIN_COL_SPAN:
        return bounds

    for row_span in range(MIN_ROW_SPAN, max_rows + 1):
        for col_span in range(MIN_COL_SPAN, max_cols + 1):
            if text_fits(text, author, row_span, col_span):
                return Bounds(
                    row_start=bounds.row_start,
                    row_end=bounds.row_start + row_span,
                    col_start=bounds.col_start,
                    col_end=bounds.col_start + col_span,
                )
    return bounds
