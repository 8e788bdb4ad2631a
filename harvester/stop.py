"""Stop-condition evaluation, run once at the end of every collection round."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .models import SessionConfig, StopReason

# Consecutive zero-yield rounds that end a smart-stop session
EMPTY_ROUND_THRESHOLD = 3


@dataclass(frozen=True, slots=True)
class StopDecision:
    stop: bool
    reason: Optional[StopReason] = None

    def __bool__(self) -> bool:
        return self.stop


CONTINUE = StopDecision(False)


class StopEvaluator:
    """Decide whether a session should end.

    Checks, first true wins: the scroll cap, the bottom of the feed, then (when
    smart stop is on) ``EMPTY_ROUND_THRESHOLD`` empty rounds in a row. The empty
    round counter is maintained every round regardless of smart stop, so status
    reporting stays meaningful.
    """

    def __init__(self, empty_round_threshold: int = EMPTY_ROUND_THRESHOLD) -> None:
        self.empty_round_threshold = empty_round_threshold
        self.consecutive_empty_rounds = 0

    def reset(self) -> None:
        self.consecutive_empty_rounds = 0

    def should_stop(
        self,
        scroll_count: int,
        accepted_this_round: int,
        config: SessionConfig,
        *,
        reached_bottom: bool = False,
    ) -> StopDecision:
        if accepted_this_round > 0:
            self.consecutive_empty_rounds = 0
        else:
            self.consecutive_empty_rounds += 1

        if scroll_count >= config.max_scrolls:
            return StopDecision(True, StopReason.MAX_SCROLLS)
        if reached_bottom:
            return StopDecision(True, StopReason.REACHED_BOTTOM)
        if config.smart_stop_enabled and self.consecutive_empty_rounds >= self.empty_round_threshold:
            return StopDecision(True, StopReason.NO_NEW_RECORDS)
        return CONTINUE
