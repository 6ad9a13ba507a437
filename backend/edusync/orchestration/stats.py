"""
Rolling counters and stage timings for one voice pipeline instance.
"""

import math
from collections import Counter, deque
from typing import Deque, Iterable

from edusync.models import ErrorCount, PipelineErrorType, PipelineStats


def _average_ms(samples: Iterable[float]) -> int:
    """Mean rounded half-up to whole milliseconds, 0 without samples."""
    samples = list(samples)
    if not samples:
        return 0
    return int(math.floor(sum(samples) / len(samples) + 0.5))


class PipelineStatsAggregator:
    """
    Purely additive statistics.

    Timing lists keep the most recent `window_size` samples so a long-lived
    pipeline does not grow without bound.
    """

    TOP_ERRORS = 5

    def __init__(self, window_size: int = 1000):
        self.window_size = window_size
        self.reset()

    def reset(self) -> None:
        self.total_sessions = 0
        self.total_turns = 0
        self.total_errors = 0
        self.total_interruptions = 0
        self.transcription_times: Deque[float] = deque(maxlen=self.window_size)
        self.rag_times: Deque[float] = deque(maxlen=self.window_size)
        self.tts_times: Deque[float] = deque(maxlen=self.window_size)
        self.turn_times: Deque[float] = deque(maxlen=self.window_size)
        self.error_counts: Counter = Counter()

    def record_session(self) -> None:
        self.total_sessions += 1

    def record_turn(self, total_processing_time_ms: float) -> None:
        self.total_turns += 1
        self.turn_times.append(total_processing_time_ms)

    def record_interruption(self) -> None:
        self.total_interruptions += 1

    def record_error(self, error_type: PipelineErrorType) -> None:
        self.total_errors += 1
        self.error_counts[error_type] += 1

    def record_transcription_time(self, elapsed_ms: float) -> None:
        self.transcription_times.append(elapsed_ms)

    def record_rag_time(self, elapsed_ms: float) -> None:
        self.rag_times.append(elapsed_ms)

    def record_tts_time(self, elapsed_ms: float) -> None:
        self.tts_times.append(elapsed_ms)

    def snapshot(self) -> PipelineStats:
        """
        Derive averages and rates.

        Rates are relative to completed turns and are 0.0 before the first
        turn completes. Most frequent error types first, ties in first-seen order.
        """
        turns = self.total_turns
        return PipelineStats(
            total_sessions=self.total_sessions,
            total_turns=turns,
            total_errors=self.total_errors,
            total_interruptions=self.total_interruptions,
            avg_transcription_time_ms=_average_ms(self.transcription_times),
            avg_rag_response_time_ms=_average_ms(self.rag_times),
            avg_tts_synthesis_time_ms=_average_ms(self.tts_times),
            avg_total_turn_time_ms=_average_ms(self.turn_times),
            interruption_rate=self.total_interruptions / turns if turns else 0.0,
            error_rate=self.total_errors / turns if turns else 0.0,
            common_errors=[
                ErrorCount(type=error_type, count=count)
                for error_type, count in self.error_counts.most_common(self.TOP_ERRORS)
            ],
        )
