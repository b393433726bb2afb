import typing

from pydantic import BaseModel, ConfigDict, Field, field_validator

from course_progress_backend.utils.base_types import (
    ChapterId,
    CourseId,
    IsoTimestamp,
    SectionId,
    UserId,
)


def _find_duplicates(ids: typing.Iterable[str]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for item_id in ids:
        if item_id in seen and item_id not in duplicates:
            duplicates.append(item_id)
        seen.add(item_id)
    return duplicates


class ChapterProgressModel(BaseModel):
    """Completion state of one chapter. Extra client fields are kept and merged shallowly."""

    model_config = ConfigDict(extra="allow")

    chapterId: ChapterId = Field(..., min_length=1)
    completed: bool = False


class SectionProgressModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    sectionId: SectionId = Field(..., min_length=1)
    chapters: list[ChapterProgressModel] = Field(default_factory=list)

    @field_validator("chapters")
    @classmethod
    def chapter_ids_unique(cls, chapters: list[ChapterProgressModel]) -> list[ChapterProgressModel]:
        duplicates = _find_duplicates(chapter.chapterId for chapter in chapters)
        if duplicates:
            raise ValueError(f"Duplicate chapterId values in section: {', '.join(duplicates)}")
        return chapters


class UpdateCourseProgressInputModel(BaseModel):
    """Request body of a progress update. A missing or null 'sections' means an empty update."""

    sections: list[SectionProgressModel] = Field(default_factory=list)

    @field_validator("sections", mode="before")
    @classmethod
    def null_sections_as_empty(cls, sections: typing.Any) -> typing.Any:
        return [] if sections is None else sections

    @field_validator("sections")
    @classmethod
    def section_ids_unique(cls, sections: list[SectionProgressModel]) -> list[SectionProgressModel]:
        duplicates = _find_duplicates(section.sectionId for section in sections)
        if duplicates:
            raise ValueError(f"Duplicate sectionId values in update: {', '.join(duplicates)}")
        return sections


class UserCourseProgressModel(BaseModel):
    """
    One user's progress through one course, as stored in DynamoDB.
    PK: userId, SK: courseId.
    """

    userId: UserId
    courseId: CourseId
    enrollmentDate: IsoTimestamp
    lastAccessedTimestamp: IsoTimestamp
    # derived from sections on every write, never taken from the client
    overallProgress: float = Field(0.0, ge=0.0, le=100.0)
    sections: list[SectionProgressModel] = Field(default_factory=list)
    # optimistic concurrency counter, bumped on every successful write
    version: int = Field(1, ge=1)

    @field_validator("sections")
    @classmethod
    def section_ids_unique(cls, sections: list[SectionProgressModel]) -> list[SectionProgressModel]:
        duplicates = _find_duplicates(section.sectionId for section in sections)
        if duplicates:
            raise ValueError(f"Duplicate sectionId values in progress record: {', '.join(duplicates)}")
        return sections
