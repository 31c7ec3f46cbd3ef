"""Loop runner and agent backends."""

from loopwork.runner.loop import LoopRunner, LoopSummary, StopReason, build_prompt

__all__ = ["LoopRunner", "LoopSummary", "StopReason", "build_prompt"]
