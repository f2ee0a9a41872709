"""Hand-off of the finished snapshot to the reporting layer."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import IO, Optional, Protocol

from ..core.models import ResultAggregate

logger = logging.getLogger(__name__)


class OutputSink(Protocol):
    """Anything that accepts a finished aggregate for rendering."""

    def write(self, aggregate: ResultAggregate) -> None:
        """Consume the read-only snapshot."""


class JsonSink:
    """Serialise the aggregate as JSON to a file or stream (stdout by default)."""

    def __init__(self, path: Optional[Path] = None, stream: Optional[IO[str]] = None) -> None:
        self.path = Path(path) if path else None
        self.stream = stream

    def render(self, aggregate: ResultAggregate) -> str:
        return aggregate.model_dump_json(indent=2)

    def write(self, aggregate: ResultAggregate) -> None:
        payload = self.render(aggregate)
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(payload + "\n", encoding="utf-8")
            logger.info(
                "Wrote %d record(s) to %s", aggregate.manifest.total_records, self.path
            )
            return

        stream = self.stream or sys.stdout
        stream.write(payload + "\n")
        stream.flush()


__all__ = ["JsonSink", "OutputSink"]
