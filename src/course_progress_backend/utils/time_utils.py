from datetime import datetime, timezone

from course_progress_backend.utils.base_types import IsoTimestamp


def utc_now_iso() -> IsoTimestamp:
    return IsoTimestamp(datetime.now(timezone.utc).isoformat())
