"""Weighted-phase progress calculation for course generation jobs.

Each phase owns a fixed, non-overlapping slice of the 0-100 scale. Overall
progress is the furthest point reached across phases rather than a sum, so
tasks that are created lazily (or out of naive order) can never pull the
displayed percentage backwards. The range 0-20 belongs to document ingest and
analysis, which happen upstream of this service.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
import math

from coursegen.generation.models import PhaseCounts, Task, TaskStatus, TaskType


@dataclass(frozen=True)
class ProgressPhase:
    name: str
    start_percent: float
    end_percent: float
    description: str
    task_types: frozenset[TaskType]
    required: bool = False

    @property
    def width(self) -> float:
        return self.end_percent - self.start_percent


COURSE_GENERATION_PHASES: tuple[ProgressPhase, ...] = (
    ProgressPhase(
        name="outline",
        start_percent=20,
        end_percent=30,
        description="Generating course outline and structure",
        task_types=frozenset({TaskType.OUTLINE}),
        required=True,
    ),
    ProgressPhase(
        name="paths",
        start_percent=30,
        end_percent=40,
        description="Creating learning paths and lessons",
        task_types=frozenset({TaskType.PATH, TaskType.LESSON}),
        required=True,
    ),
    ProgressPhase(
        name="sections",
        start_percent=40,
        end_percent=70,
        description="Generating lesson content sections",
        task_types=frozenset({TaskType.LESSON_SECTION}),
        required=True,
    ),
    ProgressPhase(
        name="assessments",
        start_percent=70,
        end_percent=80,
        description="Creating lesson assessments",
        task_types=frozenset({TaskType.LESSON_ASSESSMENT}),
    ),
    ProgressPhase(
        name="path_assessments",
        start_percent=80,
        end_percent=85,
        description="Generating path quizzes and final exam",
        task_types=frozenset({TaskType.PATH_QUIZ, TaskType.CLASS_EXAM}),
    ),
    ProgressPhase(
        name="media",
        start_percent=85,
        end_percent=100,
        description="Generating mind maps and audio content",
        task_types=frozenset({TaskType.MEDIA_MINDMAP, TaskType.MEDIA_AUDIO}),
    ),
)


class ProgressCalculator:
    """Maps per-phase completion counts to a single 0-100 percentage."""

    def __init__(self, phases: Iterable[ProgressPhase] = COURSE_GENERATION_PHASES):
        self.phases: tuple[ProgressPhase, ...] = tuple(phases)
        self._by_name = {phase.name: phase for phase in self.phases}
        self._by_type: dict[TaskType, ProgressPhase] = {}
        for phase in self.phases:
            for task_type in phase.task_types:
                if task_type in self._by_type:
                    raise ValueError(f"Task type {task_type.value} mapped to two phases")
                self._by_type[task_type] = phase

    @property
    def required_phases(self) -> tuple[ProgressPhase, ...]:
        return tuple(phase for phase in self.phases if phase.required)

    def phase_for(self, task_type: TaskType) -> ProgressPhase:
        return self._by_type[task_type]

    def phase_order(self, task_type: TaskType) -> int:
        return self.phases.index(self._by_type[task_type])

    def get_phase_progress(self, phase_name: str, completed: int, total: int) -> float:
        """Position on the overall scale reached by one phase (0 when not applicable)."""
        phase = self._by_name.get(phase_name)
        if phase is None or total <= 0:
            return 0.0
        fraction = min(max(completed, 0) / total, 1.0)
        return phase.start_percent + fraction * phase.width

    def calculate_overall_progress(self, breakdown: Mapping[str, PhaseCounts]) -> int:
        """Furthest phase endpoint reached, rounded and clamped to 0-100."""
        furthest = 0.0
        for phase in self.phases:
            counts = breakdown.get(phase.name)
            if counts is None:
                continue
            furthest = max(
                furthest,
                self.get_phase_progress(phase.name, counts.completed, counts.total),
            )
        return min(int(math.floor(furthest + 0.5)), 100)

    def build_phase_breakdown(self, tasks: Iterable[Task]) -> dict[str, PhaseCounts]:
        """Count completed/failed/total tasks per phase."""
        breakdown = {phase.name: PhaseCounts() for phase in self.phases}
        for task in tasks:
            counts = breakdown[self.phase_for(task.type).name]
            counts.total += 1
            if task.status == TaskStatus.COMPLETED:
                counts.completed += 1
            elif task.status == TaskStatus.FAILED:
                counts.failed += 1
        return breakdown

    def get_current_phase(self, progress_percent: float) -> ProgressPhase | None:
        """Phase whose range contains the given percentage."""
        if not self.phases:
            return None
        for phase in reversed(self.phases):
            if progress_percent >= phase.start_percent:
                return phase
        return self.phases[0]

    def describe(self, progress_percent: float, breakdown: Mapping[str, PhaseCounts]) -> str:
        """Human-readable message for a progress bar."""
        phase = self.get_current_phase(progress_percent)
        if phase is None:
            return ""
        counts = breakdown.get(phase.name)
        if counts and counts.total:
            return f"{phase.description} ({counts.completed}/{counts.total} completed)"
        return phase.description

    def estimate_time_remaining(
        self, progress_percent: float, started_at: datetime, now: datetime
    ) -> str:
        """Linear extrapolation of the remaining time from elapsed time."""
        if progress_percent <= 0:
            return "Calculating..."
        if progress_percent >= 100:
            return "Complete"

        elapsed = (now - started_at).total_seconds()
        remaining = elapsed / (progress_percent / 100) - elapsed
        remaining_minutes = math.ceil(remaining / 60)

        if remaining_minutes < 1:
            return "Less than 1 minute"
        if remaining_minutes < 60:
            return f"{remaining_minutes} minute{'s' if remaining_minutes > 1 else ''}"

        hours, minutes = divmod(remaining_minutes, 60)
        text = f"{hours} hour{'s' if hours > 1 else ''}"
        if minutes:
            text += f" {minutes} minute{'s' if minutes > 1 else ''}"
        return text


progress_calculator = ProgressCalculator()


def calculate_overall_progress(breakdown: Mapping[str, PhaseCounts]) -> int:
    return progress_calculator.calculate_overall_progress(breakdown)


def build_phase_breakdown(tasks: Iterable[Task]) -> dict[str, PhaseCounts]:
    return progress_calculator.build_phase_breakdown(tasks)
