import json
import logging
from datetime import UTC, datetime

from app.infrastructure.logging.context import get_request_id, get_schedule_id, get_user_id


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "request_id": get_request_id(),
            "user_id": get_user_id(),
            "logger": record.name,
        }
        schedule_id = get_schedule_id()
        if schedule_id is not None:
            payload["schedule_id"] = schedule_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)
