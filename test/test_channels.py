import json
from datetime import date, datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from stageflow.channels import (
    EmailChannel,
    InMemoryContactDirectory,
    OrganizationContact,
    SmsChannel,
    render_body,
    render_subject,
)
from stageflow.errors import DeliveryFailed
from stageflow.models import DeliveryStatus, OrderStatus, TransitionEvent, make_event_id
from stageflow.stages import Stage

TS = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def _event(new_stage=Stage.CUTTING, **kwargs) -> TransitionEvent:
    return TransitionEvent(
        event_id=make_event_id("ord-1", new_stage, TS),
        order_id="ord-1",
        organization_id="acme-apparel",
        previous_stage=kwargs.pop("previous_stage", Stage.DESIGN_PROPOSAL),
        new_stage=new_stage,
        timestamp=TS,
        **kwargs,
    )


@pytest.fixture
def directory():
    return InMemoryContactDirectory({
        "acme-apparel": OrganizationContact(
            "acme-apparel", name="Acme", email="ops@acme.test", phone="+15550100", sms_enabled=True
        ),
    })


class Recorder:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"id": "msg-1"})


def _email(directory, handler) -> EmailChannel:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EmailChannel(
        directory, api_url="https://mail.test/emails", api_key="key-1", sender="orders@factory.test", client=client
    )


def _sms(directory, handler) -> SmsChannel:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SmsChannel(
        directory,
        api_base="https://sms.test/2010-04-01",
        account_sid="AC123",
        auth_token="secret",
        from_number="+15550199",
        client=client,
    )


def test_render_ship_date_change():
    event = _event(previous_ship_date=date(2025, 3, 1), new_ship_date=date(2025, 3, 15), reason="Fabric delay")
    assert render_subject(event) == "Order ord-1 is now in Cutting"
    body = render_body(event)
    assert "from Design Proposal to Cutting" in body
    assert "Ship date changed from 2025-03-01 to 2025-03-15." in body
    assert "Reason: Fabric delay" in body


def test_render_cancellation():
    event = _event(Stage.SEWING, previous_stage=Stage.SEWING, order_status=OrderStatus.CANCELLED)
    assert render_subject(event) == "Order ord-1 cancelled"


@pytest.mark.asyncio
async def test_email_sends_with_idempotency_key(directory):
    recorder = Recorder()
    event = _event()

    status = await _email(directory, recorder).send(event)

    assert status is DeliveryStatus.DELIVERED
    request = recorder.requests[0]
    assert request.url == "https://mail.test/emails"
    assert request.headers["Authorization"] == "Bearer key-1"
    assert request.headers["Idempotency-Key"] == f"{event.event_id}:email"
    payload = json.loads(request.content)
    assert payload["to"] == ["ops@acme.test"]
    assert payload["from"] == "orders@factory.test"
    assert payload["subject"] == "Order ord-1 is now in Cutting"


@pytest.mark.asyncio
async def test_email_skipped_without_recipient():
    recorder = Recorder()
    status = await _email(InMemoryContactDirectory(), recorder).send(_event())
    assert status is DeliveryStatus.SKIPPED
    assert recorder.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code,retryable", [(503, True), (429, True), (422, False), (401, False)])
async def test_email_provider_errors(directory, status_code, retryable):
    with pytest.raises(DeliveryFailed) as exc_info:
        await _email(directory, Recorder(status_code)).send(_event())
    assert exc_info.value.retryable is retryable
    assert exc_info.value.channel == "email"


@pytest.mark.asyncio
async def test_email_timeout_is_delivery_failure(directory):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(DeliveryFailed) as exc_info:
        await _email(directory, handler).send(_event())
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_sms_only_for_critical_events(directory):
    recorder = Recorder(201)
    channel = _sms(directory, recorder)

    assert await channel.send(_event(Stage.CUTTING)) is DeliveryStatus.SKIPPED
    assert recorder.requests == []

    event = _event(Stage.SHIP_ORDER)
    assert await channel.send(event) is DeliveryStatus.DELIVERED
    request = recorder.requests[0]
    assert request.url == "https://sms.test/2010-04-01/Accounts/AC123/Messages.json"
    assert request.headers["Authorization"].startswith("Basic ")
    assert request.headers["I-Twilio-Idempotency-Token"] == f"{event.event_id}:sms"
    form = parse_qs(request.content.decode())
    assert form["To"] == ["+15550100"]
    assert form["From"] == ["+15550199"]
    assert "Ship Order" in form["Body"][0]


@pytest.mark.asyncio
async def test_sms_ship_date_change_is_critical(directory):
    recorder = Recorder(201)
    event = _event(Stage.CUTTING, previous_ship_date=date(2025, 3, 1), new_ship_date=date(2025, 3, 15))

    assert SmsChannel.is_critical(event)
    assert await _sms(directory, recorder).send(event) is DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_sms_skipped_when_disabled():
    directory = InMemoryContactDirectory()
    directory.add(OrganizationContact("acme-apparel", phone="+15550100", sms_enabled=False))
    recorder = Recorder(201)

    assert await _sms(directory, recorder).send(_event(Stage.DELIVERY)) is DeliveryStatus.SKIPPED
    assert recorder.requests == []
