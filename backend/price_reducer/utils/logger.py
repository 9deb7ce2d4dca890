import logging
import sys
import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("price_reducer")

SENSITIVE_KEYS = (
    "client_secret",
    "access_token",
    "refresh_token",
    "authorization",
    "code",
    "code_verifier",
    "api_key",
    "key",
)


def mask_token(token: Optional[str], show_start: int = 6, show_end: int = 4) -> str:
    """Mask a token for display, keeping a few leading and trailing chars."""
    if not token:
        return "None"
    if len(token) <= show_start + show_end:
        return token[:2] + "***"
    return token[:show_start] + "***" + token[-show_end:]


def token_fingerprint(token: Optional[str]) -> Optional[str]:
    """Short sha256 fingerprint so two log lines can be matched without the secret."""
    if not token:
        return None
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


class MarketplaceEventLogger:
    """Logs eBay and Keepa interactions with secrets masked.

    Keeps a bounded in-memory tail so the HTTP layer can show recent
    connection events for a user while debugging OAuth issues.
    """

    def __init__(self, max_logs: int = 1000):
        self.logs = []
        self.max_logs = max_logs

    def log_event(
        self,
        event_type: str,
        description: str,
        user_id: Optional[str] = None,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "user_id": user_id,
            "description": description,
            "request_data": self._sanitize(request_data) if request_data else None,
            "response_data": self._sanitize(response_data) if response_data else None,
            "status": status,
            "error": error,
        }

        self.logs.append(log_entry)
        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        log_msg = f"[{event_type}] {description} user_id={user_id}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)

        return log_entry

    def _sanitize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        sanitized = dict(data)
        for key in SENSITIVE_KEYS:
            if key in sanitized and sanitized[key] is not None:
                sanitized[key] = mask_token(str(sanitized[key]))
        return sanitized

    def get_logs(self, user_id: Optional[str] = None, limit: Optional[int] = None) -> list:
        logs = self.logs
        if user_id is not None:
            logs = [entry for entry in logs if entry["user_id"] == user_id]
        if limit:
            return logs[-limit:]
        return list(logs)

    def clear_logs(self):
        self.logs = []
        logger.info("Cleared marketplace event logs")


marketplace_logger = MarketplaceEventLogger()
