from __future__ import annotations

import html
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from chat_engine.core.constants import STEP_MARKER_PREFIX, STEP_MARKER_SUFFIX

_MARKER_RE = re.compile(re.escape(STEP_MARKER_PREFIX) + r"(.+?)" + re.escape(STEP_MARKER_SUFFIX))

PENDING_ICON = "◌"
FINISHED_ICON = "✔"


class StepState(str, Enum):
    PENDING = "pending"
    FINISHED = "finished"


@dataclass
class StepRecord:
    ordinal: int
    title: str
    state: StepState = StepState.PENDING

    @property
    def finished(self) -> bool:
        return self.state is StepState.FINISHED


def step_marker(title: str) -> str:
    """In-band token appended to the stream for a workflow step."""

    return f"\n{STEP_MARKER_PREFIX}{title}{STEP_MARKER_SUFFIX}\n"


def step_html(title: str, finished: bool = False) -> str:
    name = html.escape(title)
    if finished:
        return (
            f'<div class="start-step is-finished">{FINISHED_ICON}'
            f'<span class="step-name" title="{name}">{name}</span></div>'
        )
    return (
        f'<div class="start-step">{PENDING_ICON}'
        f'<span class="step-name" title="{name}">{name}</span></div>'
    )


class StepTracker:
    """Step records of one message, addressed by their ordinal position.

    State lives here rather than in rendered output, so re-rendering the
    message from scratch on every tick keeps finished steps finished.
    """

    def __init__(self) -> None:
        self._records: list[StepRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> tuple[StepRecord, ...]:
        return tuple(self._records)

    def open(self, title: str) -> StepRecord:
        record = StepRecord(ordinal=len(self._records), title=title)
        self._records.append(record)
        return record

    def finish(self, ordinal: int) -> bool:
        if ordinal < 0 or ordinal >= len(self._records):
            return False
        record = self._records[ordinal]
        if record.finished:
            return False
        record.state = StepState.FINISHED
        return True

    def seal_all(self) -> int:
        """Finish every pending step; returns how many changed."""

        return sum(1 for record in self._records if self.finish(record.ordinal))

    def pending(self) -> list[StepRecord]:
        return [record for record in self._records if not record.finished]

    def render(self, text: str, markdown: Callable[[str], str], *, in_flight: bool = False) -> str:
        """Render ``text`` with each complete step marker replaced by its step widget.

        Markers are paired with records in order by title. A marker with no
        record (step syntax typed into the answer itself) shows as pending
        only while the message is in flight.
        """

        if in_flight:
            text = _strip_partial_marker(text)

        parts: list[str] = []
        cursor = 0
        next_record = 0
        for match in _MARKER_RE.finditer(text):
            parts.append(_render_text(text[cursor : match.start()], markdown))
            title = match.group(1)
            if next_record < len(self._records) and self._records[next_record].title == title:
                finished = self._records[next_record].finished
                next_record += 1
            else:
                finished = not in_flight
            parts.append(step_html(title, finished=finished))
            cursor = match.end()
        parts.append(_render_text(text[cursor:], markdown))
        return "".join(parts)


def _render_text(chunk: str, markdown: Callable[[str], str]) -> str:
    if not chunk.strip():
        return ""
    return markdown(chunk)


def _strip_partial_marker(text: str) -> str:
    # Hide a marker that is only partly revealed so it never flashes as raw text.
    start = text.rfind(STEP_MARKER_PREFIX)
    body = start + len(STEP_MARKER_PREFIX)
    if start != -1 and STEP_MARKER_SUFFIX not in text[body:]:
        return text[:start]
    # Never trim into the closing "~~" of the last complete marker.
    floor = text.index(STEP_MARKER_SUFFIX, body) + len(STEP_MARKER_SUFFIX) if start != -1 else 0
    for size in range(min(len(STEP_MARKER_PREFIX) - 1, len(text) - floor), 0, -1):
        if STEP_MARKER_PREFIX.startswith(text[-size:]):
            return text[:-size]
    return text
