import asyncio
import logging

import requests

from ..exceptions import NotificationError
from ..schemas.scheduler import RunLog

logger = logging.getLogger(__name__)


def build_failure_payload(log: RunLog, message: str) -> dict:
    """Slack-style blocks message for a failed run."""
    duration = f"{round(log.duration_ms / 1000)}s" if log.duration_ms else "N/A"
    return {
        "text": "Automatic market-data update failed",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "Automatic update failed"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Type:* {log.run_type.value}"},
                    {"type": "mrkdwn", "text": f"*Trigger:* {log.trigger.value}"},
                    {"type": "mrkdwn", "text": f"*Timestamp:* {log.timestamp.isoformat()}"},
                    {"type": "mrkdwn", "text": f"*Duration:* {duration}"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Error:* `{message}`"},
            },
        ],
    }


class WebhookNotifier:
    def __init__(self, url: str = "", timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def _post(self, payload: dict) -> None:
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(f"Webhook delivery failed: {e}") from e

    async def notify_failure(self, log: RunLog, message: str) -> bool:
        """Best effort; returns whether the webhook accepted the message."""
        if not self.url:
            logger.warning("error_webhook_url not configured, failure notification skipped")
            return False

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._post, build_failure_payload(log, message))
        except NotificationError as e:
            logger.error(str(e))
            return False
        logger.info(f"Failure notification sent for {log.run_type.value} run")
        return True
