"""
Transfer progress accounting.

ProgressStats is shared between the thread copying bytes and a
ProgressReporter thread that renders a status line every 250ms. Every
access goes through a single lock.
"""

import sys
import threading
import time
from collections import deque
from typing import Callable, Optional, TextIO

from backstow.utils.formatting import format_duration, format_size


SAMPLE_WINDOW = 10.0


class ProgressStats:
    """
    Accumulates transferred byte counts and derives speed and ETA.

    Samples older than 10 seconds are evicted whenever a new sample is
    recorded; readers additionally ignore anything outside the requested
    window, so ``progressed_size`` keeps the full total while window speeds
    only see recent traffic.
    """

    def __init__(self, total_length: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.total_length = total_length
        self._clock = clock
        self._lock = threading.Lock()
        self._progressed_size = 0
        self._finished = False
        self._start_time = clock()
        self._samples = deque()

    @property
    def progressed_size(self) -> int:
        with self._lock:
            return self._progressed_size

    def record(self, size: int):
        """Add ``size`` transferred bytes."""
        if size < 0:
            raise ValueError("progress can not go backwards")

        with self._lock:
            self._append_sample(size)

    def set_progressed_size(self, size: int):
        """Set the absolute number of transferred bytes."""
        with self._lock:
            if size < self._progressed_size:
                raise ValueError(
                    f"progress can not go backwards ({size} < {self._progressed_size})"
                )
            self._append_sample(size - self._progressed_size)

    def _append_sample(self, size: int):
        now = self._clock()
        self._progressed_size += size
        self._samples.append((now, size))
        while self._samples and now - self._samples[0][0] > SAMPLE_WINDOW:
            self._samples.popleft()

    def set_finished(self):
        with self._lock:
            self._finished = True

    def is_finished(self) -> bool:
        with self._lock:
            return self._finished

    def get_runtime(self) -> float:
        """Seconds since the transfer started."""
        return self._clock() - self._start_time

    def get_progress_in_percentage(self) -> Optional[float]:
        with self._lock:
            return self._percentage()

    def _percentage(self) -> Optional[float]:
        if not self.total_length:
            return None
        return self._progressed_size * 100.0 / self.total_length

    def get_average_speed(self) -> int:
        """Average speed in bytes per second since the start."""
        runtime = self.get_runtime()
        with self._lock:
            if runtime <= 0:
                return self._progressed_size
            return int(self._progressed_size / runtime)

    def get_average_speed_for_last_second(self) -> int:
        return self._window_speed(1)

    def get_average_speed_for_last_10_seconds(self) -> int:
        return self._window_speed(10)

    def _window_speed(self, seconds: int) -> int:
        now = self._clock()
        progressed = 0
        first_time = None

        with self._lock:
            for sample_time, size in self._samples:
                if now - sample_time > seconds:
                    continue
                if first_time is None:
                    first_time = sample_time
                progressed += size

        if first_time is None:
            elapsed = seconds
        else:
            elapsed = max(int(now - first_time), 1)

        return progressed // elapsed

    def get_total_duration(self) -> Optional[float]:
        """Estimated total transfer time in seconds."""
        with self._lock:
            percentage = self._percentage()
        if not percentage:
            return None
        return self.get_runtime() * 100.0 / percentage

    def get_ete(self) -> Optional[float]:
        """Estimated seconds until the transfer completes."""
        total_duration = self.get_total_duration()
        if total_duration is None:
            return None
        return max(total_duration - self.get_runtime(), 0.0)

    def get_formatted_runtime(self) -> str:
        return format_duration(self.get_runtime())

    def get_formatted_ete(self) -> Optional[str]:
        ete = self.get_ete()
        if ete is None:
            return None
        return format_duration(ete)

    def render(self, label: str = 'downloading...') -> str:
        """Build the one-line status shown while transferring."""
        line = f"{label} {format_size(self.progressed_size)}"

        percentage = self.get_progress_in_percentage()
        if percentage is not None:
            line += f"/{format_size(self.total_length)} ({percentage:.2f}%)"

        line += f"; runtime: {self.get_formatted_runtime()}"

        formatted_ete = self.get_formatted_ete()
        if formatted_ete is not None:
            line += f"; ete: {formatted_ete}"

        line += f"; speed: {format_size(self.get_average_speed())}/s"
        line += f"; speed (<=1s): {format_size(self.get_average_speed_for_last_second())}/s"
        line += f"; speed (<=10s): {format_size(self.get_average_speed_for_last_10_seconds())}/s"

        return line


class ProgressReporter(threading.Thread):
    """
    Background thread printing a ProgressStats status line.

    Used as a context manager around a copy loop: leaving the block marks
    the stats finished and waits for the last line to be printed.
    """

    def __init__(self, stats: ProgressStats, interval: float = 0.25,
                 stream: Optional[TextIO] = None, label: str = 'downloading...'):
        super().__init__(name='backstow-progress', daemon=True)
        self.stats = stats
        self.interval = interval
        self.stream = stream or sys.stdout
        self.label = label

    def run(self):
        while True:
            finished = self.stats.is_finished()
            self.stream.write(f"\r\033[2K{self.stats.render(self.label)}")
            self.stream.flush()

            if finished:
                break

            time.sleep(self.interval)

        self.stream.write('\n')
        self.stream.flush()

    def __enter__(self):
        self.start()
        return self.stats

    def __exit__(self, exc_type, exc, tb):
        self.stats.set_finished()
        self.join()
        return False
