import json
import logging
import typing
from decimal import Decimal

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from pydantic import ValidationError

from course_progress_backend.models.course_progress_models import UserCourseProgressModel
from course_progress_backend.progress.progress_errors import (
    ProgressConflictError,
    StorageError,
)
from course_progress_backend.utils.base_types import CourseId, UserId

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


def _from_dynamodb_value(value: typing.Any) -> typing.Any:
    """DynamoDB hands numbers back as Decimal; turn them into int/float for JSON and pydantic."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamodb_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamodb_value(v) for v in value]
    return value


def _to_dynamodb_item(progress: UserCourseProgressModel) -> dict[str, typing.Any]:
    # boto3 rejects float, so every number goes through Decimal
    return json.loads(progress.model_dump_json(by_alias=True), parse_float=Decimal)


class UserCourseProgressTable:
    """
    A wrapper class to abstract DynamoDB operations for the UserCourseProgress table.

    Table Schema:
      - PK: userId
      - SK: courseId
      - version: integer bumped on every write, used for conditional puts
    """

    def __init__(self, table_name: str) -> None:
        self.client = boto3.resource("dynamodb")
        self.table = self.client.Table(table_name)

    def _parse_item(self, item_data: dict[str, typing.Any]) -> UserCourseProgressModel:
        return UserCourseProgressModel.model_validate(_from_dynamodb_value(item_data))

    def get_progress(self, user_id: UserId, course_id: CourseId) -> typing.Optional[UserCourseProgressModel]:
        """
        Retrieves a user's progress for a specific course.

        :param user_id: The ID of the user.
        :param course_id: The ID of the course.
        :return: UserCourseProgressModel instance if found, else None.
        :raises StorageError: if DynamoDB fails or the stored item is corrupt.
        """
        _LOGGER.info(f"Fetching progress for user_id: {user_id}, course_id: {course_id}")
        try:
            response = self.table.get_item(Key={"userId": user_id, "courseId": course_id}, ConsistentRead=True)
        except ClientError as e:
            _LOGGER.error(f"Failed for user_id {user_id}, course_id {course_id}: {e.response['Error']['Message']}")
            raise StorageError(f"Failed to read progress for user {user_id}, course {course_id}") from e

        item_data = response.get("Item")
        if not item_data:
            _LOGGER.info(f"No progress found for user_id: {user_id}, course_id: {course_id}")
            return None

        try:
            return self._parse_item(item_data)
        except ValidationError as ve:
            _LOGGER.error(f"Stored progress for user_id {user_id}, course_id {course_id} is invalid: {ve}")
            raise StorageError(f"Corrupt progress record for user {user_id}, course {course_id}") from ve

    def get_all_progress_for_user(self, user_id: UserId) -> list[UserCourseProgressModel]:
        """
        Retrieves every course progress item for a user by querying on the partition key.
        Items that fail validation are skipped.
        """
        _LOGGER.info(f"Fetching all course progress for user_id: {user_id}")
        progress_items: list[UserCourseProgressModel] = []
        query_params: dict[str, typing.Any] = {"KeyConditionExpression": Key("userId").eq(user_id)}

        try:
            while True:
                response = self.table.query(**query_params)
                for item_data in response.get("Items", []):
                    try:
                        progress_items.append(self._parse_item(item_data))
                    except ValidationError as ve:
                        _LOGGER.warning(f"Skipping invalid progress item for user {user_id}: {item_data}. Error: {ve}")

                if "LastEvaluatedKey" not in response:
                    break
                _LOGGER.info(f"Fetching next page of course progress for user_id: {user_id}")
                query_params["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        except ClientError as e:
            _LOGGER.error(f"Failed to query course progress for user {user_id}: {e.response['Error']['Message']}")
            raise StorageError(f"Failed to list progress for user {user_id}") from e

        return progress_items

    def _conditional_put(
        self,
        progress: UserCourseProgressModel,
        condition_expression: str,
        expression_attribute_names: typing.Optional[dict[str, str]] = None,
        expression_attribute_values: typing.Optional[dict[str, typing.Any]] = None,
    ) -> None:
        put_params: dict[str, typing.Any] = {
            "Item": _to_dynamodb_item(progress),
            "ConditionExpression": condition_expression,
        }
        if expression_attribute_names:
            put_params["ExpressionAttributeNames"] = expression_attribute_names
        if expression_attribute_values:
            put_params["ExpressionAttributeValues"] = expression_attribute_values

        try:
            self.table.put_item(**put_params)
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                _LOGGER.info(
                    f"Conditional write lost for user {progress.userId}, course {progress.courseId} "
                    f"(version {progress.version})"
                )
                raise ProgressConflictError(
                    f"Concurrent update of progress for user {progress.userId}, course {progress.courseId}"
                ) from e
            _LOGGER.error(
                f"Failed to save progress for user {progress.userId}, course {progress.courseId}: "
                f"{e.response['Error']['Message']}"
            )
            raise StorageError(f"Failed to save progress for user {progress.userId}, course {progress.courseId}") from e

    def create_progress(self, progress: UserCourseProgressModel) -> None:
        """
        Writes a brand-new progress record. Fails with ProgressConflictError if one
        already exists for the same (userId, courseId).
        """
        _LOGGER.info(f"Creating progress for user {progress.userId}, course {progress.courseId}")
        self._conditional_put(
            progress,
            "attribute_not_exists(userId) AND attribute_not_exists(courseId)",
        )

    def replace_progress(self, progress: UserCourseProgressModel, expected_version: int) -> None:
        """
        Overwrites a progress record only if the stored version still equals
        expected_version. Records written before versioning count as version 1.
        """
        _LOGGER.info(
            f"Replacing progress for user {progress.userId}, course {progress.courseId} "
            f"(expected version {expected_version})"
        )
        condition = "#version = :expected_version"
        if expected_version == 1:
            condition = "attribute_not_exists(#version) OR " + condition

        self._conditional_put(
            progress,
            condition,
            expression_attribute_names={"#version": "version"},
            expression_attribute_values={":expected_version": expected_version},
        )
