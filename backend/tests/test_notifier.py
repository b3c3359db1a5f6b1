import asyncio
from unittest.mock import MagicMock, patch

import requests

from investing.schemas.market_data import IngestMode
from investing.schemas.scheduler import RunLog, RunTrigger, RunType
from investing.services.notifier import WebhookNotifier, build_failure_payload


def _failed_log():
    log = RunLog.started(RunType.DAILY, RunTrigger.TIME_SCHEDULED, IngestMode.HISTORICAL, 7)
    log.fail(duration_ms=4200, message="provider down")
    return log


def test_payload_lists_run_fields():
    payload = build_failure_payload(_failed_log(), "provider down")

    fields = [f["text"] for f in payload["blocks"][1]["fields"]]
    assert "*Type:* daily" in fields
    assert "*Duration:* 4s" in fields
    assert "provider down" in payload["blocks"][2]["text"]["text"]


def test_missing_url_skips_delivery():
    with patch("investing.services.notifier.requests.post") as post:
        sent = asyncio.run(WebhookNotifier("").notify_failure(_failed_log(), "boom"))

    assert sent is False
    post.assert_not_called()


def test_posts_to_webhook():
    response = MagicMock()
    with patch("investing.services.notifier.requests.post", return_value=response) as post:
        sent = asyncio.run(WebhookNotifier("https://hooks.example.com/x", timeout=3).notify_failure(_failed_log(), "boom"))

    assert sent is True
    _, kwargs = post.call_args
    assert kwargs["timeout"] == 3
    assert kwargs["json"]["blocks"][0]["type"] == "header"


def test_delivery_failure_is_swallowed():
    with patch("investing.services.notifier.requests.post", side_effect=requests.ConnectionError("refused")):
        sent = asyncio.run(WebhookNotifier("https://hooks.example.com/x").notify_failure(_failed_log(), "boom"))

    assert sent is False
