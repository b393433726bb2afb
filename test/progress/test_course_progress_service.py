from unittest.mock import Mock

import pytest

from course_progress_backend.models.course_progress_models import (
    ChapterProgressModel,
    SectionProgressModel,
    UserCourseProgressModel,
)
from course_progress_backend.progress.course_progress_service import CourseProgressService
from course_progress_backend.progress.progress_errors import (
    ProgressConflictError,
    ProgressNotFoundError,
    ProgressValidationError,
    StorageError,
)
from course_progress_backend.utils.base_types import (
    ChapterId,
    CourseId,
    IsoTimestamp,
    SectionId,
    UserId,
)

USER_ID = UserId("user_1")
COURSE_ID = CourseId("course_1")
ENROLLED_AT = IsoTimestamp("2025-01-01T00:00:00+00:00")
NOW = IsoTimestamp("2025-03-15T12:30:00+00:00")


def _fixed_clock() -> IsoTimestamp:
    return NOW


def _stored_progress(sections: list[dict], version: int = 1) -> UserCourseProgressModel:
    return UserCourseProgressModel(
        userId=USER_ID,
        courseId=COURSE_ID,
        enrollmentDate=ENROLLED_AT,
        lastAccessedTimestamp=ENROLLED_AT,
        overallProgress=0.0,
        sections=sections,
        version=version,
    )


def create_service(progress_table=None, max_write_attempts: int = 3) -> CourseProgressService:
    return CourseProgressService(
        progress_table=progress_table if progress_table is not None else Mock(),
        clock=_fixed_clock,
        max_write_attempts=max_write_attempts,
    )


def test_update_progress_creates_record_lazily():
    progress_table = Mock()
    progress_table.get_progress.return_value = None
    incoming = [
        {"sectionId": "s1", "chapters": [{"chapterId": "c1", "completed": True}, {"chapterId": "c2"}]},
    ]

    service = create_service(progress_table)
    result = service.update_progress(USER_ID, COURSE_ID, incoming)

    assert result.userId == USER_ID
    assert result.courseId == COURSE_ID
    assert result.enrollmentDate == NOW
    assert result.lastAccessedTimestamp == NOW
    assert result.overallProgress == 50
    assert result.version == 1
    assert [s.sectionId for s in result.sections] == ["s1"]
    assert [(c.chapterId, c.completed) for c in result.sections[0].chapters] == [("c1", True), ("c2", False)]
    progress_table.create_progress.assert_called_once_with(result)
    progress_table.replace_progress.assert_not_called()


def test_update_progress_creates_empty_record_when_no_sections():
    progress_table = Mock()
    progress_table.get_progress.return_value = None

    service = create_service(progress_table)
    result = service.update_progress(USER_ID, COURSE_ID, None)

    assert result.sections == []
    assert result.overallProgress == 0
    progress_table.create_progress.assert_called_once()


def test_update_progress_merges_into_existing_record():
    progress_table = Mock()
    progress_table.get_progress.return_value = _stored_progress(
        [{"sectionId": "s1", "chapters": [{"chapterId": "c1", "completed": False}, {"chapterId": "c2"}]}],
        version=4,
    )
    incoming = [
        SectionProgressModel(
            sectionId=SectionId("s1"),
            chapters=[ChapterProgressModel(chapterId=ChapterId("c1"), completed=True)],
        )
    ]

    service = create_service(progress_table)
    result = service.update_progress(USER_ID, COURSE_ID, incoming)

    assert result.enrollmentDate == ENROLLED_AT
    assert result.lastAccessedTimestamp == NOW
    assert result.overallProgress == 50
    assert result.version == 5
    assert {c.chapterId: c.completed for c in result.sections[0].chapters} == {"c1": True, "c2": False}
    progress_table.replace_progress.assert_called_once_with(result, expected_version=4)
    progress_table.create_progress.assert_not_called()


def test_update_progress_recomputes_stale_overall_progress():
    stored = _stored_progress([{"sectionId": "s1", "chapters": [{"chapterId": "c1", "completed": True}]}])
    stored.overallProgress = 12.5
    progress_table = Mock()
    progress_table.get_progress.return_value = stored

    result = create_service(progress_table).update_progress(USER_ID, COURSE_ID, [])

    assert result.overallProgress == 100


def test_update_progress_rejects_invalid_payload_before_reading():
    progress_table = Mock()

    service = create_service(progress_table)
    with pytest.raises(ProgressValidationError):
        service.update_progress(USER_ID, COURSE_ID, [{"chapters": []}])

    progress_table.get_progress.assert_not_called()
    progress_table.create_progress.assert_not_called()
    progress_table.replace_progress.assert_not_called()


def test_update_progress_retries_after_conflict_and_merges_fresh_state():
    first_read = _stored_progress(
        [{"sectionId": "s1", "chapters": [{"chapterId": "c1", "completed": False}]}],
        version=1,
    )
    # a concurrent writer completed c2 in the meantime
    second_read = _stored_progress(
        [
            {
                "sectionId": "s1",
                "chapters": [{"chapterId": "c1", "completed": False}, {"chapterId": "c2", "completed": True}],
            }
        ],
        version=2,
    )
    progress_table = Mock()
    progress_table.get_progress.side_effect = [first_read, second_read]
    progress_table.replace_progress.side_effect = [ProgressConflictError("lost"), None]

    service = create_service(progress_table)
    update = [{"sectionId": "s1", "chapters": [{"chapterId": "c1", "completed": True}]}]
    result = service.update_progress(USER_ID, COURSE_ID, update)

    assert progress_table.get_progress.call_count == 2
    assert progress_table.replace_progress.call_count == 2
    assert progress_table.replace_progress.call_args.kwargs["expected_version"] == 2
    assert result.version == 3
    assert {c.chapterId: c.completed for c in result.sections[0].chapters} == {"c1": True, "c2": True}
    assert result.overallProgress == 100


def test_update_progress_lost_creation_race_falls_back_to_merge():
    created_by_other_request = _stored_progress(
        [{"sectionId": "s1", "chapters": [{"chapterId": "c1", "completed": True}]}],
    )
    progress_table = Mock()
    progress_table.get_progress.side_effect = [None, created_by_other_request]
    progress_table.create_progress.side_effect = ProgressConflictError("exists")

    service = create_service(progress_table)
    result = service.update_progress(USER_ID, COURSE_ID, [{"sectionId": "s2", "chapters": [{"chapterId": "c2"}]}])

    assert result.enrollmentDate == ENROLLED_AT
    assert [s.sectionId for s in result.sections] == ["s1", "s2"]
    assert result.overallProgress == 50
    progress_table.replace_progress.assert_called_once_with(result, expected_version=1)


def test_update_progress_gives_up_after_max_attempts():
    progress_table = Mock()
    progress_table.get_progress.return_value = _stored_progress([])
    progress_table.replace_progress.side_effect = ProgressConflictError("lost")

    service = create_service(progress_table, max_write_attempts=2)
    with pytest.raises(ProgressConflictError):
        service.update_progress(USER_ID, COURSE_ID, [])

    assert progress_table.replace_progress.call_count == 2


def test_update_progress_does_not_retry_storage_errors():
    progress_table = Mock()
    progress_table.get_progress.return_value = _stored_progress([])
    progress_table.replace_progress.side_effect = StorageError("throttled")

    service = create_service(progress_table)
    with pytest.raises(StorageError):
        service.update_progress(USER_ID, COURSE_ID, [])

    assert progress_table.replace_progress.call_count == 1


def test_update_progress_propagates_read_failures():
    progress_table = Mock()
    progress_table.get_progress.side_effect = StorageError("unreachable")

    with pytest.raises(StorageError):
        create_service(progress_table).update_progress(USER_ID, COURSE_ID, [])


def test_get_progress_returns_record():
    stored = _stored_progress([])
    progress_table = Mock()
    progress_table.get_progress.return_value = stored

    assert create_service(progress_table).get_progress(USER_ID, COURSE_ID) == stored
    progress_table.get_progress.assert_called_once_with(USER_ID, COURSE_ID)


def test_get_progress_raises_not_found():
    progress_table = Mock()
    progress_table.get_progress.return_value = None

    with pytest.raises(ProgressNotFoundError) as exc_info:
        create_service(progress_table).get_progress(USER_ID, COURSE_ID)

    assert exc_info.value.user_id == USER_ID
    assert exc_info.value.course_id == COURSE_ID


def test_list_progress_for_user_delegates_to_table():
    progress_table = Mock()
    progress_table.get_all_progress_for_user.return_value = [_stored_progress([])]

    result = create_service(progress_table).list_progress_for_user(USER_ID)

    assert len(result) == 1
    progress_table.get_all_progress_for_user.assert_called_once_with(USER_ID)


def test_service_rejects_non_positive_attempts():
    with pytest.raises(ValueError):
        create_service(max_write_attempts=0)
