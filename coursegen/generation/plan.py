"""Generation plan: the task graph for a course, expanded lazily.

The plan starts with a single outline task. Each later phase is only created
once the task it hangs off has completed, so a course whose outline fails
never commits work for hundreds of sections.

    outline -> path -> lesson -> sections -> assessment -> path quiz / exam
                                          -> mind map, audio
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import ValidationError
import structlog

from coursegen.generation.errors import PlanningError
from coursegen.generation.models import Job, Task, TaskStatus, TaskType
from coursegen.generation.progress import ProgressCalculator, progress_calculator
from coursegen.generation.schemas import CourseOutline, OutlineLesson

logger = structlog.get_logger(__name__)

MEDIA_TASK_TYPES = frozenset({TaskType.MEDIA_MINDMAP, TaskType.MEDIA_AUDIO})
# Besides the path task itself, these must settle before a path quiz is planned
PATH_SETTLING_TYPES = frozenset({TaskType.LESSON, TaskType.LESSON_ASSESSMENT})

OUTLINE_TASK_ID = "outline"
EXAM_TASK_ID = "exam"


def path_task_id(path_index: int) -> str:
    return f"path-{path_index}"


def lesson_task_id(path_index: int, lesson_index: int) -> str:
    return f"lesson-{path_index}-{lesson_index}"


def section_task_id(path_index: int, lesson_index: int, section_index: int) -> str:
    return f"section-{path_index}-{lesson_index}-{section_index}"


def assessment_task_id(path_index: int, lesson_index: int) -> str:
    return f"assessment-{path_index}-{lesson_index}"


def quiz_task_id(path_index: int) -> str:
    return f"quiz-{path_index}"


class GenerationPlanner:
    """Builds the initial task plan and expands it as tasks settle."""

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        media_max_attempts: int = 2,
        calculator: ProgressCalculator = progress_calculator,
    ) -> None:
        self._max_attempts = max_attempts
        self._media_max_attempts = media_max_attempts
        self._calculator = calculator

    def initial_tasks(self, job: Job, now: datetime) -> list[Task]:
        """Seed a job with its outline task."""
        request = job.request
        payload = {
            "path_count": request.path_count,
            "lessons_per_path": request.lessons_per_path,
            "sections_per_lesson": request.sections_per_lesson,
        }
        return self._add(job, [self._task(job, OUTLINE_TASK_ID, TaskType.OUTLINE, now, payload=payload)])

    def validate_result(self, task: Task, result: dict[str, Any]) -> dict[str, Any]:
        """Check a task's output is usable for expansion; returns the normalized result."""
        if not isinstance(result, dict):
            raise PlanningError(
                f"{task.type.value} output must be an object, got {type(result).__name__}",
                code="invalid_output",
            )
        if task.type == TaskType.PATH:
            _lessons_from(result, task.payload.get("lessons", []))
            return result
        if task.type == TaskType.LESSON:
            sections = result.get("sections")
            if sections is not None and not (
                isinstance(sections, list) and all(isinstance(s, str) and s for s in sections)
            ):
                raise PlanningError("Lesson output has malformed sections", code="invalid_lesson")
            return result
        if task.type != TaskType.OUTLINE:
            return result
        try:
            outline = CourseOutline.model_validate(result)
        except ValidationError as exc:
            raise PlanningError(
                f"Outline output is malformed: {exc.error_count()} validation errors",
                code="invalid_outline",
            ) from exc
        if not outline.paths:
            raise PlanningError("Outline contains no learning paths", code="empty_outline")
        return outline.model_dump()

    def expand(self, job: Job, task: Task, now: datetime) -> list[Task]:
        """
        Create the tasks unlocked by a settled task.

        Args:
            job: Job being expanded (mutated in place)
            task: Task that just completed or permanently failed
            now: Creation timestamp for new tasks

        Returns:
            Newly registered tasks (ids that already existed are skipped)
        """
        created: list[Task] = []
        if task.status == TaskStatus.COMPLETED:
            if task.type == TaskType.OUTLINE:
                created += self._expand_outline(job, task, now)
            elif task.type == TaskType.PATH:
                created += self._expand_path(job, task, now)
            elif task.type == TaskType.LESSON:
                created += self._expand_lesson(job, task, now)

        if task.type in PATH_SETTLING_TYPES | {TaskType.PATH} and task.is_settled:
            created += self._expand_path_assessments(job, task.payload["path_index"], now)

        if created:
            logger.debug(
                "Plan expanded",
                job_id=job.id,
                trigger=task.id,
                created=[t.id for t in created],
            )
        return created

    def _expand_outline(self, job: Job, task: Task, now: datetime) -> list[Task]:
        outline = CourseOutline.model_validate(task.result or {})
        tasks = [
            self._task(
                job,
                path_task_id(index),
                TaskType.PATH,
                now,
                depends_on={task.id},
                payload={
                    "path_index": index,
                    "title": path.title,
                    "description": path.description,
                    "lessons": [lesson.model_dump() for lesson in path.lessons],
                },
            )
            for index, path in enumerate(outline.paths)
        ]
        return self._add(job, tasks)

    def _expand_path(self, job: Job, task: Task, now: datetime) -> list[Task]:
        path_index = task.payload["path_index"]
        lessons = _lessons_from(task.result, task.payload.get("lessons", []))
        tasks = [
            self._task(
                job,
                lesson_task_id(path_index, index),
                TaskType.LESSON,
                now,
                depends_on={task.id},
                payload={
                    "path_index": path_index,
                    "lesson_index": index,
                    "title": lesson.title,
                    "path_title": task.payload["title"],
                    "sections": list(lesson.sections),
                },
            )
            for index, lesson in enumerate(lessons)
        ]
        return self._add(job, tasks)

    def _expand_lesson(self, job: Job, task: Task, now: datetime) -> list[Task]:
        request = job.request
        path_index = task.payload["path_index"]
        lesson_index = task.payload["lesson_index"]
        lesson_title = task.payload["title"]

        refined = (task.result or {}).get("sections")
        section_titles = list(refined) if refined else list(task.payload.get("sections", []))
        if not section_titles:
            logger.warning("Lesson has no sections", job_id=job.id, task_id=task.id)
            return []

        sections = [
            self._task(
                job,
                section_task_id(path_index, lesson_index, index),
                TaskType.LESSON_SECTION,
                now,
                depends_on={task.id},
                payload={
                    "path_index": path_index,
                    "lesson_index": lesson_index,
                    "section_index": index,
                    "title": title,
                    "lesson_title": lesson_title,
                },
            )
            for index, title in enumerate(section_titles)
        ]
        section_ids = {t.id for t in sections}
        lesson_context = {
            "path_index": path_index,
            "lesson_index": lesson_index,
            "lesson_title": lesson_title,
            "section_titles": section_titles,
        }

        followers: list[Task] = []
        if request.include_assessments:
            followers.append(
                self._task(
                    job,
                    assessment_task_id(path_index, lesson_index),
                    TaskType.LESSON_ASSESSMENT,
                    now,
                    depends_on=section_ids,
                    payload=dict(lesson_context),
                )
            )
        if request.include_media:
            for task_type, prefix in (
                (TaskType.MEDIA_MINDMAP, "mindmap"),
                (TaskType.MEDIA_AUDIO, "audio"),
            ):
                followers.append(
                    self._task(
                        job,
                        f"{prefix}-{path_index}-{lesson_index}",
                        task_type,
                        now,
                        depends_on=section_ids,
                        payload=dict(lesson_context),
                    )
                )
        return self._add(job, sections + followers)

    def _expand_path_assessments(self, job: Job, path_index: int, now: datetime) -> list[Task]:
        """
        Create the path quiz and class exam once their inputs can no longer change.

        A quiz waits until its path, the path's lessons and their assessments
        have all settled, and then draws on the assessments that completed.
        A failed assessment therefore leaves the quiz smaller rather than
        failing it too. The exam does the same across every path.
        """
        request = job.request
        tasks: list[Task] = []

        if request.include_path_quizzes and self._path_settled(job, path_index):
            assessments = self._completed_assessments(job, path_index)
            if assessments:
                path_task = job.tasks[path_task_id(path_index)]
                tasks.append(
                    self._task(
                        job,
                        quiz_task_id(path_index),
                        TaskType.PATH_QUIZ,
                        now,
                        depends_on={t.id for t in assessments},
                        payload={
                            "path_index": path_index,
                            "path_title": path_task.payload["title"],
                            "lesson_titles": [t.payload["lesson_title"] for t in assessments],
                        },
                    )
                )

        if request.include_final_exam and self._all_paths_settled(job):
            assessments = self._completed_assessments(job, None)
            if assessments:
                path_titles = [
                    t.payload["title"] for t in job.tasks.values() if t.type == TaskType.PATH
                ]
                tasks.append(
                    self._task(
                        job,
                        EXAM_TASK_ID,
                        TaskType.CLASS_EXAM,
                        now,
                        depends_on={t.id for t in assessments},
                        payload={"path_titles": path_titles},
                    )
                )
        return self._add(job, tasks)

    def _path_settled(self, job: Job, path_index: int) -> bool:
        path_task = job.tasks.get(path_task_id(path_index))
        if path_task is None or not path_task.is_settled:
            return False
        return all(
            t.is_settled
            for t in job.tasks.values()
            if t.type in PATH_SETTLING_TYPES and t.payload["path_index"] == path_index
        )

    def _all_paths_settled(self, job: Job) -> bool:
        path_indexes = [
            t.payload["path_index"] for t in job.tasks.values() if t.type == TaskType.PATH
        ]
        return bool(path_indexes) and all(self._path_settled(job, i) for i in path_indexes)

    def _completed_assessments(self, job: Job, path_index: int | None) -> list[Task]:
        return [
            t
            for t in job.tasks.values()
            if t.type == TaskType.LESSON_ASSESSMENT
            and t.status == TaskStatus.COMPLETED
            and (path_index is None or t.payload["path_index"] == path_index)
        ]

    def _task(
        self,
        job: Job,
        task_id: str,
        task_type: TaskType,
        now: datetime,
        *,
        depends_on: Iterable[str] = (),
        payload: dict[str, Any] | None = None,
    ) -> Task:
        return Task(
            id=task_id,
            job_id=job.id,
            type=task_type,
            created_at=now,
            last_activity_at=now,
            depends_on=frozenset(depends_on),
            payload=payload or {},
            priority=self._calculator.phase_order(task_type),
            max_attempts=(
                self._media_max_attempts if task_type in MEDIA_TASK_TYPES else self._max_attempts
            ),
        )

    @staticmethod
    def _add(job: Job, tasks: list[Task]) -> list[Task]:
        return [task for task in tasks if job.add_task(task)]


def _lessons_from(result: dict[str, Any] | None, fallback: list[dict[str, Any]]) -> list[OutlineLesson]:
    """Lessons for a path: the path output may refine the outline's list."""
    raw = (result or {}).get("lessons")
    source = raw if isinstance(raw, list) and raw else fallback
    try:
        return [OutlineLesson.model_validate(item) for item in source]
    except ValidationError as exc:
        raise PlanningError("Path output has malformed lessons", code="invalid_path") from exc
