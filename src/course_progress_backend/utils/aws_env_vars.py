import logging
import os

_LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_WRITE_ATTEMPTS = 3
DEFAULT_METRICS_NAMESPACE = "CourseMarketplace/Progress"


def _get_resource_by_env_var(env_var: str) -> str:
    table_name = os.environ.get(env_var)
    if not table_name:
        raise ValueError(f"Missing environment variable: {env_var}")
    return table_name


def get_user_course_progress_table_name() -> str:
    return _get_resource_by_env_var("USER_COURSE_PROGRESS_TABLE_NAME")


def get_progress_max_write_attempts() -> int:
    """
    Number of read-merge-write attempts before a conflicting update gives up.
    Defaults to DEFAULT_MAX_WRITE_ATTEMPTS if not set or invalid.
    """
    value = os.environ.get("PROGRESS_MAX_WRITE_ATTEMPTS")
    if not value:
        return DEFAULT_MAX_WRITE_ATTEMPTS
    try:
        attempts = int(value)
    except ValueError:
        _LOGGER.warning(f"Invalid PROGRESS_MAX_WRITE_ATTEMPTS value: {value}")
        return DEFAULT_MAX_WRITE_ATTEMPTS
    if attempts < 1:
        _LOGGER.warning(f"PROGRESS_MAX_WRITE_ATTEMPTS must be at least 1, got {attempts}")
        return DEFAULT_MAX_WRITE_ATTEMPTS
    return attempts


def get_metrics_namespace() -> str:
    return os.environ.get("METRICS_NAMESPACE", DEFAULT_METRICS_NAMESPACE)
