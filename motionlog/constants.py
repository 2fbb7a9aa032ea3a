"""Shared defaults for the motionlog logger.

Values here are the runtime defaults; ``config.py`` lets a deployment
override the tunable ones.
"""

from __future__ import annotations

TARGET_HZ_OPTIONS: tuple[int, ...] = (5, 50, 100)
"""Sampling rates the logger accepts."""

DEFAULT_TARGET_HZ: int = 50

FLUSH_EVERY_SAMPLES: int = 500
"""Buffered record count that triggers an immediate flush."""

FLUSH_INTERVAL_S: float = 3.0
"""Period of the flush timer."""

CHUNK_DURATION_S: float = 30 * 60
"""Wall-clock length of a chunk before it is finalized and rolled over."""

MAX_BUFFERED_SAMPLES: int = 20_000
"""Hard cap on unflushed records; sampling pauses once reached."""

ACHIEVED_RATE_WINDOW_MS: int = 2_000
"""Achieved-rate estimate restarts after this many milliseconds."""

MS_PER_SECOND: int = 1_000
