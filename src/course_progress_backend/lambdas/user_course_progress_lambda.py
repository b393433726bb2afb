import logging
import re
import typing

from pydantic import ValidationError

from course_progress_backend.cloudwatch.metrics import MetricsManager
from course_progress_backend.dynamodb.user_course_progress_table import UserCourseProgressTable
from course_progress_backend.models.course_progress_models import UpdateCourseProgressInputModel
from course_progress_backend.progress.course_progress_service import CourseProgressService
from course_progress_backend.progress.progress_errors import (
    ProgressConflictError,
    ProgressNotFoundError,
    ProgressValidationError,
    StorageError,
)
from course_progress_backend.utils.apig_utils import (
    ErrorCode,
    create_error_response,
    format_lambda_response,
    get_event_body,
    get_method,
    get_path,
    get_user_id_from_event,
)
from course_progress_backend.utils.aws_env_vars import (
    get_metrics_namespace,
    get_progress_max_write_attempts,
    get_user_course_progress_table_name,
)
from course_progress_backend.utils.base_types import CourseId, UserId

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

ENROLLED_COURSES_PATH = re.compile(r"^/users/course-progress/(?P<userId>[^/]+)/enrolled-courses/?$")
COURSE_PROGRESS_PATH = re.compile(r"^/users/course-progress/(?P<userId>[^/]+)/courses/(?P<courseId>[^/]+)/?$")


class UserCourseProgressApiHandler:
    def __init__(self, progress_service: CourseProgressService, metrics_manager: MetricsManager):
        self.progress_service = progress_service
        self.metrics_manager = metrics_manager

    def _handle_get_enrolled_courses(self, event: dict, user_id: UserId) -> dict:
        _LOGGER.info(f"Fetching enrolled courses for user_id: {user_id}")
        progress_items = self.progress_service.list_progress_for_user(user_id)
        return format_lambda_response(
            200,
            {
                "message": "User enrolled courses retrieved successfully",
                "data": [item.model_dump(by_alias=True) for item in progress_items],
            },
            event=event,
        )

    def _handle_get_progress(self, event: dict, user_id: UserId, course_id: CourseId) -> dict:
        _LOGGER.info(f"Fetching progress for user_id: {user_id}, course_id: {course_id}")
        progress = self.progress_service.get_progress(user_id, course_id)
        return format_lambda_response(
            200,
            {
                "message": "User course progress retrieved successfully",
                "data": progress.model_dump(by_alias=True),
            },
            event=event,
        )

    def _handle_put_progress(self, event: dict, user_id: UserId, course_id: CourseId) -> dict:
        _LOGGER.info(f"Updating progress for user_id: {user_id}, course_id: {course_id}")
        if not event.get("body"):
            _LOGGER.error("Request body is missing for progress update.")
            return create_error_response(ErrorCode.VALIDATION_ERROR, "Request body is missing.", event=event)

        try:
            update_input = UpdateCourseProgressInputModel.model_validate_json(get_event_body(event))
        except ValidationError as e:
            _LOGGER.error(f"Progress update request body validation error: {e.error_count()} error(s)", exc_info=True)
            self.metrics_manager.put_metric("ProgressValidationFailure", 1)
            return create_error_response(
                ErrorCode.VALIDATION_ERROR,
                "Invalid request for progress update.",
                details=e.errors(include_url=False, include_context=False, include_input=False),
                event=event,
            )

        progress = self.progress_service.update_progress(user_id, course_id, update_input.sections)
        self.metrics_manager.put_metric("ProgressCreated" if progress.version == 1 else "ProgressUpdated", 1)

        return format_lambda_response(
            200,
            {
                "message": "User course progress updated successfully",
                "data": progress.model_dump(by_alias=True),
            },
            event=event,
        )

    def _route(self, event: dict, user_id: UserId, http_method: str, path: str) -> dict:
        enrolled_match = ENROLLED_COURSES_PATH.match(path)
        progress_match = COURSE_PROGRESS_PATH.match(path)
        route_match = enrolled_match or progress_match
        if not route_match:
            _LOGGER.warning(f"Unsupported path for course progress: {http_method} {path}")
            return create_error_response(ErrorCode.RESOURCE_NOT_FOUND, event=event)

        # users may only read and write their own progress
        if route_match.group("userId") != user_id:
            _LOGGER.warning(f"User {user_id} attempted to access progress of {route_match.group('userId')}")
            return create_error_response(ErrorCode.AUTHORIZATION_FAILED, event=event)

        route_template = (
            "/users/course-progress/{userId}/enrolled-courses"
            if enrolled_match
            else "/users/course-progress/{userId}/courses/{courseId}"
        )
        self.metrics_manager.set_dimension("Route", f"{http_method} {route_template}")

        if enrolled_match and http_method == "GET":
            return self._handle_get_enrolled_courses(event, user_id)

        if progress_match:
            course_id = CourseId(progress_match.group("courseId"))
            if http_method == "GET":
                return self._handle_get_progress(event, user_id, course_id)
            if http_method == "PUT":
                return self._handle_put_progress(event, user_id, course_id)

        _LOGGER.warning(f"Unsupported method for course progress: {http_method} {path}")
        return create_error_response(ErrorCode.METHOD_NOT_ALLOWED, event=event)

    def handle(self, event: dict) -> dict:
        user_id = get_user_id_from_event(event)
        if not user_id:
            return create_error_response(ErrorCode.AUTHENTICATION_FAILED, event=event)

        http_method = get_method(event).upper()
        path = get_path(event)

        _LOGGER.info(f"UserCourseProgressApiHandler: {http_method} {path} for user: {user_id}")

        try:
            return self._route(event, user_id, http_method, path)

        except ProgressValidationError as ve:
            _LOGGER.error(f"Invalid progress payload for user {user_id}: {ve.message}")
            self.metrics_manager.put_metric("ProgressValidationFailure", 1)
            return create_error_response(
                ErrorCode.VALIDATION_ERROR, "Invalid request for progress update.", details=ve.details, event=event
            )
        except ProgressNotFoundError as nfe:
            _LOGGER.info(str(nfe))
            return create_error_response(ErrorCode.RESOURCE_NOT_FOUND, "User course progress not found", event=event)
        except ProgressConflictError as ce:
            _LOGGER.error(f"Progress update for user {user_id} kept conflicting: {str(ce)}")
            self.metrics_manager.put_metric("ProgressWriteConflict", 1)
            return create_error_response(ErrorCode.STORAGE_ERROR, event=event)
        except StorageError as se:
            _LOGGER.error(f"Storage error in UserCourseProgressApiHandler for user {user_id}: {str(se)}", exc_info=True)
            self.metrics_manager.put_metric("ProgressStorageFailure", 1)
            return create_error_response(ErrorCode.STORAGE_ERROR, event=event)
        except Exception as e:
            _LOGGER.error(f"Unexpected error in UserCourseProgressApiHandler for {user_id}: {str(e)}", exc_info=True)
            return create_error_response(ErrorCode.INTERNAL_ERROR, event=event)


def user_course_progress_lambda_handler(event: dict[str, typing.Any], context: typing.Any) -> dict[str, typing.Any]:
    _LOGGER.debug("Global user_course_progress_lambda_handler received event.")
    metrics_manager = MetricsManager(get_metrics_namespace())

    try:
        api_handler = UserCourseProgressApiHandler(
            progress_service=CourseProgressService(
                progress_table=UserCourseProgressTable(get_user_course_progress_table_name()),
                max_write_attempts=get_progress_max_write_attempts(),
            ),
            metrics_manager=metrics_manager,
        )
        return api_handler.handle(event)

    except ValueError as ve:
        _LOGGER.critical(f"Configuration error in user_course_progress_lambda_handler: {str(ve)}", exc_info=True)
        return create_error_response(ErrorCode.INTERNAL_ERROR, "Server configuration error")
    except Exception as e:
        _LOGGER.critical(f"Error during UserCourseProgressApiHandler: {str(e)}", exc_info=True)
        return create_error_response(ErrorCode.INTERNAL_ERROR)
    finally:
        metrics_manager.flush()
