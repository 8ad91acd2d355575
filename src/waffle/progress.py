"""
Progress reporting for long-running reviews.

The review engine reports three kinds of events to an optional observer:
the start of a workflow step, progress within a step, and completion with
the results summary. ``TerminalProgressReporter`` renders them for a
terminal; any object with the same three methods can be passed instead.

Output example:
    ▶ Evaluate Questions
      Evaluating questions using Bedrock...
      [███████████████░░░░░░░░░░░░░░░] 50% - Evaluating question 5 of 10

Usage:
    from waffle.progress import TerminalProgressReporter

    engine.execute_review(session, progress=TerminalProgressReporter())
"""

import sys
from typing import Protocol, TextIO

from waffle.models import ResultsSummary

BAR_WIDTH = 30
FILLED = "█"
EMPTY = "░"


class ProgressReporter(Protocol):
    """Observer for review progress."""

    def report_step(self, step: str, message: str) -> None: ...

    def report_progress(self, current: int, total: int, message: str) -> None: ...

    def report_completion(self, summary: ResultsSummary) -> None: ...


def format_step_name(step: str) -> str:
    """
    Convert a snake_case step name to Title Case.

    Example:
        >>> format_step_name("evaluate_questions")
        'Evaluate Questions'
    """
    return " ".join(word[:1].upper() + word[1:] for word in step.split("_"))


def progress_bar(current: int, total: int, width: int = BAR_WIDTH) -> str:
    """Render a fixed-width bar; blank when ``total`` is 0."""
    if total <= 0:
        return " " * width
    filled = min(width, max(0, current * width // total))
    return FILLED * filled + EMPTY * (width - filled)


class TerminalProgressReporter:
    """
    Writes progress to a terminal stream.

    Attributes:
        stream: Output stream (stderr by default)
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream: TextIO = stream or sys.stderr

    def _write(self, text: str) -> None:
        _ = self.stream.write(text)
        self.stream.flush()

    def report_step(self, step: str, message: str) -> None:
        """Print a step header followed by an optional message line."""
        self._write(f"\n▶ {format_step_name(step)}\n")
        if message:
            self._write(f"  {message}\n")

    def report_progress(self, current: int, total: int, message: str) -> None:
        """Redraw the progress bar in place; end the line when complete."""
        if total <= 0:
            self._write(f"  {message}\n")
            return
        percentage = current * 100 // total
        self._write(f"\r  [{progress_bar(current, total)}] {percentage}% - {message}")
        if current >= total:
            self._write("\n")

    def report_completion(self, summary: ResultsSummary) -> None:
        """Print the completion banner and the results summary."""
        self._write(
            "\n✓ Review completed successfully!\n\n"
            "Summary:\n"
            f"  Questions evaluated: {summary.questions_evaluated}\n"
            f"  High risks: {summary.high_risks}\n"
            f"  Medium risks: {summary.medium_risks}\n"
            f"  Average confidence: {summary.average_confidence:.2f}\n"
            f"  Improvement plan items: {summary.improvement_plan_size}\n"
            "\n"
        )
