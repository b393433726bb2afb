import logging
import typing

from course_progress_backend.dynamodb.user_course_progress_table import UserCourseProgressTable
from course_progress_backend.models.course_progress_models import (
    SectionProgressModel,
    UserCourseProgressModel,
)
from course_progress_backend.progress.progress_errors import (
    ProgressConflictError,
    ProgressNotFoundError,
)
from course_progress_backend.progress.progress_merger import (
    SectionsInput,
    calculate_overall_progress,
    merge_sections,
    validate_sections,
)
from course_progress_backend.utils.aws_env_vars import DEFAULT_MAX_WRITE_ATTEMPTS
from course_progress_backend.utils.base_types import CourseId, IsoTimestamp, UserId
from course_progress_backend.utils.time_utils import utc_now_iso

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class CourseProgressService:
    """
    Runs the read-merge-write cycle for a user's course progress.

    Writes are conditional on the version that was read, so two concurrent updates
    for the same (userId, courseId) cannot silently overwrite each other: the loser
    re-reads and merges again, up to max_write_attempts times.
    """

    def __init__(
        self,
        progress_table: UserCourseProgressTable,
        clock: typing.Callable[[], IsoTimestamp] = utc_now_iso,
        max_write_attempts: int = DEFAULT_MAX_WRITE_ATTEMPTS,
    ) -> None:
        if max_write_attempts < 1:
            raise ValueError(f"max_write_attempts must be at least 1, got {max_write_attempts}")
        self.progress_table = progress_table
        self.clock = clock
        self.max_write_attempts = max_write_attempts

    def get_progress(self, user_id: UserId, course_id: CourseId) -> UserCourseProgressModel:
        progress = self.progress_table.get_progress(user_id, course_id)
        if progress is None:
            raise ProgressNotFoundError(user_id, course_id)
        return progress

    def list_progress_for_user(self, user_id: UserId) -> list[UserCourseProgressModel]:
        return self.progress_table.get_all_progress_for_user(user_id)

    def _new_progress(
        self,
        user_id: UserId,
        course_id: CourseId,
        sections: list[SectionProgressModel],
        now: IsoTimestamp,
    ) -> UserCourseProgressModel:
        return UserCourseProgressModel(
            userId=user_id,
            courseId=course_id,
            enrollmentDate=now,
            lastAccessedTimestamp=now,
            overallProgress=calculate_overall_progress(sections),
            sections=sections,
            version=1,
        )

    def _merged_progress(
        self,
        stored: UserCourseProgressModel,
        incoming: list[SectionProgressModel],
        now: IsoTimestamp,
    ) -> UserCourseProgressModel:
        merged_sections = merge_sections(stored.sections, incoming)
        return stored.model_copy(
            update={
                "sections": merged_sections,
                "overallProgress": calculate_overall_progress(merged_sections),
                "lastAccessedTimestamp": now,
                "version": stored.version + 1,
            }
        )

    def update_progress(
        self,
        user_id: UserId,
        course_id: CourseId,
        incoming_sections: typing.Optional[SectionsInput],
    ) -> UserCourseProgressModel:
        """
        Applies a partial sections update and returns the stored result.

        The first update for a (user, course) pair creates the record with the
        sections as given; later ones merge into what is stored.

        :raises ProgressValidationError: before any read, if the sections are malformed.
        :raises ProgressConflictError: if every attempt lost to a concurrent writer.
        :raises StorageError: on any other store failure (not retried).
        """
        sections = validate_sections(incoming_sections)

        for attempt in range(1, self.max_write_attempts + 1):
            stored = self.progress_table.get_progress(user_id, course_id)
            now = self.clock()
            try:
                if stored is None:
                    progress = self._new_progress(user_id, course_id, sections, now)
                    self.progress_table.create_progress(progress)
                    _LOGGER.info(f"Created progress for user {user_id}, course {course_id}")
                else:
                    progress = self._merged_progress(stored, sections, now)
                    self.progress_table.replace_progress(progress, expected_version=stored.version)
                    _LOGGER.info(
                        f"Merged progress for user {user_id}, course {course_id}: "
                        f"{progress.overallProgress:.1f}% (version {progress.version})"
                    )
                return progress
            except ProgressConflictError:
                if attempt == self.max_write_attempts:
                    _LOGGER.error(
                        f"Giving up on progress update for user {user_id}, course {course_id} "
                        f"after {attempt} conflicting attempts"
                    )
                    raise
                _LOGGER.warning(
                    f"Concurrent progress update for user {user_id}, course {course_id}; "
                    f"retrying (attempt {attempt + 1}/{self.max_write_attempts})"
                )

        # unreachable: the loop either returns or re-raises
        raise ProgressConflictError(f"Progress update for user {user_id}, course {course_id} did not complete")
