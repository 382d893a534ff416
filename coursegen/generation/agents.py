"""pydantic-ai backed content generator."""

from __future__ import annotations

import json
from typing import Any

from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.models.openai import OpenAIResponsesModel
from pydantic_ai.providers.openai import OpenAIProvider
import structlog

from coursegen.generation.content import ContentRequest
from coursegen.generation.errors import ContentGenerationError, TransientGenerationError
from coursegen.generation.models import TaskType
from coursegen.generation.schemas import CourseOutline, GeneratedContent
from coursegen.utils.model_settings import build_openai_model_settings

logger = structlog.get_logger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})

OUTLINE_INSTRUCTIONS = """
You design the structure of an online course.

Rules:
- Produce roughly the requested number of learning paths, lessons per path and sections per lesson.
- Paths progress from fundamentals to advanced application; lessons within a path build on each other.
- Every lesson lists concrete, non-overlapping section titles.
- Titles are short and specific; never number them yourself.

Output must be valid JSON matching CourseOutline.
"""

CONTENT_INSTRUCTIONS = """
You write one piece of course material for the unit described in the context JSON.

Rules:
- Stay within the scope of the unit; the surrounding course structure is given for orientation only.
- Write the body in Markdown, pitched at the stated audience and grade level.
- Use the provided inputs (content already generated for prerequisite units) as the source of truth.
- Leave questions empty unless the unit is an assessment, quiz or exam.
- Only lesson units may return refined section titles in `sections`.
- Only path units may return a refined lesson list in `lessons`, each lesson with its section titles.
"""

TASK_GUIDANCE: dict[TaskType, str] = {
    TaskType.PATH: "Write an overview of this learning path and its learning objectives. You may refine its lessons.",
    TaskType.LESSON: "Write the lesson introduction and objectives. You may refine the section titles.",
    TaskType.LESSON_SECTION: "Write the full teaching content for this section with examples.",
    TaskType.LESSON_ASSESSMENT: "Write 5 multiple-choice questions covering the lesson's sections.",
    TaskType.PATH_QUIZ: "Write 10 multiple-choice questions spanning every lesson in this path.",
    TaskType.CLASS_EXAM: "Write a 20-question final exam spanning every learning path.",
    TaskType.MEDIA_MINDMAP: "Write a Markdown nested-list mind map of the lesson's concepts.",
    TaskType.MEDIA_AUDIO: "Write a conversational narration script for an audio summary of the lesson.",
}


class AgentContentGenerator:
    """Generates course content with OpenAI Responses models through pydantic-ai.

    Agents are built on first use so that importing the module does not
    require credentials.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        *,
        api_key: str | None = None,
        reasoning_effort: str | None = "low",
        timeout_seconds: float | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.reasoning_effort = reasoning_effort
        self.timeout_seconds = timeout_seconds
        self._outline_agent: Agent[None, CourseOutline] | None = None
        self._content_agent: Agent[None, GeneratedContent] | None = None

    def _build_model(self) -> OpenAIResponsesModel:
        if self.api_key:
            return OpenAIResponsesModel(self.model, provider=OpenAIProvider(api_key=self.api_key))
        return OpenAIResponsesModel(self.model)

    @property
    def outline_agent(self) -> Agent[None, CourseOutline]:
        if self._outline_agent is None:
            self._outline_agent = Agent(
                self._build_model(),
                output_type=CourseOutline,
                instructions=OUTLINE_INSTRUCTIONS,
                retries=2,
                model_settings=build_openai_model_settings(
                    self.model,
                    reasoning_effort=self.reasoning_effort,
                    timeout_seconds=self.timeout_seconds,
                ),
            )
            logger.info("Outline agent configured", model=self.model)
        return self._outline_agent

    @property
    def content_agent(self) -> Agent[None, GeneratedContent]:
        if self._content_agent is None:
            self._content_agent = Agent(
                self._build_model(),
                output_type=GeneratedContent,
                instructions=CONTENT_INSTRUCTIONS,
                retries=2,
                model_settings=build_openai_model_settings(
                    self.model,
                    reasoning_effort=self.reasoning_effort,
                    timeout_seconds=self.timeout_seconds,
                ),
            )
            logger.info("Content agent configured", model=self.model)
        return self._content_agent

    async def generate(self, request: ContentRequest) -> dict[str, Any]:
        agent = self.outline_agent if request.task_type == TaskType.OUTLINE else self.content_agent
        prompt = build_prompt(request)

        logger.debug(
            "Running content agent",
            job_id=request.job_id,
            task_id=request.task_id,
            task_type=request.task_type.value,
            prompt_chars=len(prompt),
        )
        try:
            result = await agent.run(prompt)
        except ModelHTTPError as exc:
            if exc.status_code in TRANSIENT_STATUS_CODES or exc.status_code >= 500:
                raise TransientGenerationError(
                    f"Model endpoint returned HTTP {exc.status_code}", code="model_unavailable"
                ) from exc
            raise ContentGenerationError(
                f"Model request rejected with HTTP {exc.status_code}", code="model_rejected"
            ) from exc
        except UnexpectedModelBehavior as exc:
            raise ContentGenerationError(
                f"Model returned unusable output: {exc.message}", code="invalid_model_output"
            ) from exc

        return result.output.model_dump()


def build_prompt(request: ContentRequest) -> str:
    """Render a content request as the user prompt for an agent."""
    if request.task_type == TaskType.OUTLINE:
        hints = request.context
        return (
            f"Design a course outline.\n\n"
            f"Course: {json.dumps(request.course, ensure_ascii=False)}\n"
            f"Target shape: {hints.get('path_count')} paths, "
            f"{hints.get('lessons_per_path')} lessons per path, "
            f"{hints.get('sections_per_lesson')} sections per lesson."
        )

    body = {
        "course": request.course,
        "unit_type": request.task_type.value,
        "unit": request.context,
        "inputs": request.inputs,
    }
    return (
        f"{TASK_GUIDANCE[request.task_type]}\n\n"
        f"Context JSON:\n{json.dumps(body, ensure_ascii=False, indent=2)}"
    )
