from __future__ import annotations

import sys
from typing import TextIO


def _annotation_escape(s: str) -> str:
    return s.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


class CIFailureChannel:
    """
    Marks the run as failed for a CI job.

    Each alert prints a workflow `::error::` annotation. `fired` and
    `titles` accumulate across every send of the run and are never reset;
    the entry point reads `fired` after a `--once` cycle to pick the exit code.
    """

    name = "ci"

    def __init__(self, *, stream: TextIO | None = None) -> None:
        self._stream = stream
        self.fired = False
        self.titles: list[str] = []

    async def send(self, title: str, message: str) -> None:
        self.fired = True
        self.titles.append(title)
        stream = self._stream or sys.stdout
        title_attr = _annotation_escape(title).replace(":", "%3A").replace(",", "%2C")
        stream.write(f"::error title={title_attr}::{_annotation_escape(message)}\n")
        stream.flush()
