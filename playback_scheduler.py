"""Gapless playback scheduling for streamed model audio.

Segments arrive from the network in order but with jitter. Each one is started
at max(cursor, now) and the cursor advances by the segment's duration, so
segments never overlap and never leave gaps shorter than the jitter.
interrupt() flushes everything that is scheduled or playing.
"""

import logging

logger = logging.getLogger(__name__)


class PlaybackScheduler:
    """Schedules decoded segments on an output context.

    The context must provide `current_time` (seconds) and
    `create_source(buffer)` returning a handle with `start(when)`, `stop()`
    and an `on_ended` attribute.
    """

    def __init__(self, context):
        self._context = context
        self._cursor = 0.0
        self._active = set()

    @property
    def cursor(self) -> float:
        """Scheduled end time of the last enqueued segment."""
        return self._cursor

    @property
    def active(self) -> frozenset:
        return frozenset(self._active)

    def __len__(self) -> int:
        return len(self._active)

    def schedule(self, buffer):
        """Queue a segment to start right after the previous one.

        Returns the playback source handle.
        """
        start_at = max(self._cursor, self._context.current_time)
        source = self._context.create_source(buffer)
        source.on_ended = self._on_source_ended
        source.start(start_at)
        self._cursor = start_at + buffer.duration
        self._active.add(source)
        return source

    def _on_source_ended(self, source):
        self._active.discard(source)

    def interrupt(self):
        """Stop every scheduled segment and rewind the cursor."""
        if self._active:
            logger.debug("Flushing %d scheduled segments", len(self._active))
        for source in list(self._active):
            try:
                source.stop()
            except Exception as e:
                logger.debug("Failed to stop playback source: %s", e)
        self._active.clear()
        self._cursor = 0.0
