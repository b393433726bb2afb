"""
Merges a client's partial course-progress update into stored progress and derives
the overall completion percentage.

All functions here are pure: they never mutate their arguments and always return
new model objects, so a read-merge-write cycle can be retried against a fresh read.
"""

import logging
import typing

from pydantic import BaseModel, TypeAdapter, ValidationError

from course_progress_backend.models.course_progress_models import (
    ChapterProgressModel,
    SectionProgressModel,
    UpdateCourseProgressInputModel,
)
from course_progress_backend.progress.progress_errors import ProgressValidationError
from course_progress_backend.utils.base_types import ChapterId, SectionId

_LOGGER = logging.getLogger(__name__)

SectionsInput = typing.Sequence[typing.Union[SectionProgressModel, dict[str, typing.Any]]]
ChaptersInput = typing.Sequence[typing.Union[ChapterProgressModel, dict[str, typing.Any]]]

_CHAPTERS_ADAPTER = TypeAdapter(list[ChapterProgressModel])


def validate_sections(sections: typing.Optional[SectionsInput]) -> list[SectionProgressModel]:
    """
    Turns a JSON-shaped (or already typed) list of sections into validated models.

    :raises ProgressValidationError: if a section or chapter lacks its id, has
        malformed fields, or ids repeat within the same level.
    """
    try:
        return UpdateCourseProgressInputModel.model_validate({"sections": list(sections or [])}).sections
    except ValidationError as e:
        _LOGGER.warning(f"Rejected invalid progress sections: {e.error_count()} error(s)")
        raise ProgressValidationError(
            "Invalid course progress sections.",
            details=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e


def _validate_chapters(chapters: typing.Optional[ChaptersInput]) -> list[ChapterProgressModel]:
    try:
        return _CHAPTERS_ADAPTER.validate_python(list(chapters or []))
    except ValidationError as e:
        _LOGGER.warning(f"Rejected invalid progress chapters: {e.error_count()} error(s)")
        raise ProgressValidationError(
            "Invalid course progress chapters.",
            details=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e


def _supplied_fields(model: BaseModel) -> dict[str, typing.Any]:
    """Fields the client actually sent, including extra ones."""
    supplied = model.model_dump(exclude_unset=True)
    supplied.update(model.model_extra or {})
    return supplied


def merge_chapters(existing: ChaptersInput, incoming: ChaptersInput) -> list[ChapterProgressModel]:
    """
    Shallow-merges incoming chapters into existing ones by chapterId.

    Incoming fields overwrite existing ones (including 'completed', which may go
    from True back to False). Chapters absent from the update are kept as they are.
    """
    existing_chapters = _validate_chapters(existing)
    incoming_chapters = _validate_chapters(incoming)

    merged: dict[ChapterId, ChapterProgressModel] = {chapter.chapterId: chapter for chapter in existing_chapters}
    for chapter in incoming_chapters:
        current = merged.get(chapter.chapterId)
        if current is None:
            merged[chapter.chapterId] = chapter.model_copy(deep=True)
        else:
            merged[chapter.chapterId] = ChapterProgressModel.model_validate(
                {**current.model_dump(), **_supplied_fields(chapter)}
            )

    return list(merged.values())


def merge_sections(existing: SectionsInput, incoming: SectionsInput) -> list[SectionProgressModel]:
    """
    Merges incoming sections into existing ones by sectionId.

    Known sections get their chapters merged and keep every other stored field;
    unknown sections are appended in the order they arrive. Result order is
    existing sections first, then new ones. Nothing is ever removed.
    """
    existing_sections = validate_sections(existing)
    incoming_sections = validate_sections(incoming)

    merged: dict[SectionId, SectionProgressModel] = {section.sectionId: section for section in existing_sections}
    for section in incoming_sections:
        current = merged.get(section.sectionId)
        if current is None:
            merged[section.sectionId] = section.model_copy(deep=True)
        else:
            merged[section.sectionId] = current.model_copy(
                update={"chapters": merge_chapters(current.chapters, section.chapters)}
            )

    return list(merged.values())


def calculate_overall_progress(sections: typing.Sequence[SectionProgressModel]) -> float:
    """Percentage (0-100) of completed chapters across all sections; 0 when there are none."""
    total_chapters = sum(len(section.chapters) for section in sections)
    completed_chapters = sum(1 for section in sections for chapter in section.chapters if chapter.completed)

    if total_chapters == 0:
        return 0.0
    return 100 * completed_chapters / total_chapters
