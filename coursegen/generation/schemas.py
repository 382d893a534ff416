"""Pydantic schemas for course requests and generated payloads."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class CourseRequest(BaseModel):
    """A validated "build me a course" request."""

    title: str = Field(..., min_length=3, max_length=200)
    description: str = Field("", max_length=4000)
    owner_id: str | None = Field(
        None, description="User the job belongs to; the API may fill this in"
    )
    audience: str | None = Field(None, description="Intended learner persona")
    grade_level: str | None = None
    path_count: int = Field(3, ge=1, le=12, description="Hint for the outline")
    lessons_per_path: int = Field(3, ge=1, le=12)
    sections_per_lesson: int = Field(3, ge=1, le=10)
    include_assessments: bool = True
    include_path_quizzes: bool = True
    include_final_exam: bool = True
    include_media: bool = True
    max_concurrency: int | None = Field(
        None, ge=1, description="Optional lower per-job concurrency cap"
    )

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Course title cannot be blank.")
        return value.strip()


class OutlineLesson(BaseModel):
    title: str = Field(..., min_length=1)
    sections: list[str] = Field(default_factory=list)


class OutlinePath(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    lessons: list[OutlineLesson] = Field(default_factory=list)


class CourseOutline(BaseModel):
    """Course structure produced by the outline task."""

    title: str
    description: str = ""
    paths: list[OutlinePath] = Field(default_factory=list)


class Question(BaseModel):
    prompt: str
    options: list[str] = Field(default_factory=list)
    answer: str | None = None


class GeneratedContent(BaseModel):
    """Generic generated content for every non-outline task."""

    title: str
    content: str = Field("", description="Markdown body")
    questions: list[Question] = Field(default_factory=list)
    sections: list[str] | None = Field(
        None, description="Lesson tasks may refine their section titles"
    )
    lessons: list[OutlineLesson] | None = Field(
        None, description="Path tasks may refine their lesson list"
    )
