import json

import httpx
import pytest
import respx

from certwatch.alerts import AggregatedAlert, Alert
from certwatch.formatting import SlackTextFormatter
from certwatch.slack import SlackClient, SlackError

WEBHOOK = "http://hooks.example.com/webhook"


def create_test_alert(domain):
    return AggregatedAlert(alert=Alert(domain=domain), deduplicated_count=0)


@pytest.mark.asyncio
async def test_slack_client_send_batch_success():
    formatter = SlackTextFormatter()
    alerts = [create_test_alert("test.com")]
    expected_body = {"text": formatter.format_batch(alerts)}

    with respx.mock:
        route = respx.post(WEBHOOK).mock(return_value=httpx.Response(200))
        client = SlackClient(WEBHOOK, formatter)
        await client.send_batch(alerts)

    assert route.call_count == 1
    assert json.loads(route.calls.last.request.content) == expected_body


@pytest.mark.asyncio
async def test_slack_client_handles_server_error():
    alerts = [create_test_alert("test.com")]
    with respx.mock:
        respx.post(WEBHOOK).mock(return_value=httpx.Response(500, text="boom"))
        client = SlackClient(WEBHOOK, SlackTextFormatter())
        with pytest.raises(SlackError, match="status 500"):
            await client.send_batch(alerts)


@pytest.mark.asyncio
async def test_slack_client_handles_timeout():
    alerts = [create_test_alert("test.com")]
    with respx.mock:
        respx.post(WEBHOOK).mock(side_effect=httpx.ReadTimeout("timed out"))
        client = SlackClient(WEBHOOK, SlackTextFormatter(), timeout=0.5)
        with pytest.raises(SlackError) as info:
            await client.send_batch(alerts)
    assert isinstance(info.value.__cause__, httpx.TimeoutException)


@pytest.mark.asyncio
async def test_slack_client_skips_empty_batch():
    with respx.mock(assert_all_called=False):
        route = respx.post(WEBHOOK).mock(return_value=httpx.Response(200))
        client = SlackClient(WEBHOOK, SlackTextFormatter())
        await client.send_batch([])
    assert route.call_count == 0