import json

import httpx
import pytest

from journey_engine.config import Settings
from journey_engine.models.deployments import TemplateContent
from journey_engine.services import ghl_client as ghl_client_module
from journey_engine.services.errors import ExternalApiError, PublisherNotConnectedError
from journey_engine.services.ghl_client import (
    DeliveryConfig,
    FixedDelayThrottle,
    GhlClient,
    NoDelayThrottle,
    template_content_from_record,
)


class RecordingThrottle:
    def __init__(self) -> None:
        self.calls = 0

    async def wait(self) -> None:
        self.calls += 1


def _welcome(body: str = "<p>Welcome!</p>") -> TemplateContent:
    return TemplateContent(name="Welcome", subject="Welcome home", body=body, preview_text="Say hi")


async def test_upsert_creates_when_no_template_matches(ghl_api, ghl_client):
    result = await ghl_client.upsert_by_name("email", _welcome())

    assert result.action == "created"
    assert result.external_id in ghl_api.emails
    post = ghl_api.mutations()[0]
    payload = json.loads(post.content)
    assert post.method == "POST"
    assert payload["builderVersion"] == "1"
    assert payload["locationId"] == "loc-1"
    assert payload["html"] == payload["body"] == "<p>Welcome!</p>"
    assert payload["metaDescription"] == "Say hi"


async def test_upsert_same_name_twice_updates_first_record(ghl_api, ghl_client):
    first = await ghl_client.upsert_by_name("email", _welcome())
    second = await ghl_client.upsert_by_name("email", _welcome("<p>Changed</p>"))

    assert first.action == "created"
    assert second.action == "updated"
    assert second.external_id == first.external_id
    assert len(ghl_api.emails) == 1
    assert ghl_api.emails[first.external_id]["html"] == "<p>Changed</p>"


async def test_name_match_is_exact_and_takes_first_duplicate(ghl_api, ghl_client):
    lower = ghl_api.seed_email("welcome", "lower", "<p>a</p>")
    first = ghl_api.seed_email("Welcome", "first", "<p>b</p>")
    ghl_api.seed_email("Welcome", "second", "<p>c</p>")

    result = await ghl_client.upsert_by_name("email", _welcome())

    assert result.external_id == first
    assert ghl_api.emails[first]["subject"] == "Welcome home"
    assert ghl_api.emails[lower]["subject"] == "lower"


async def test_upsert_with_external_id_skips_lookup(ghl_api, ghl_client):
    template_id = ghl_api.seed_email("Old name", "Old", "<p>old</p>")

    result = await ghl_client.upsert_by_name("email", _welcome(), external_id=template_id)

    assert result.external_id == template_id
    assert result.action == "updated"
    assert [request.method for request in ghl_api.requests] == ["PUT"]
    assert ghl_api.emails[template_id]["name"] == "Welcome"


async def test_stale_external_id_falls_back_to_name_lookup(ghl_api, ghl_client):
    result = await ghl_client.upsert_by_name("email", _welcome(), external_id="E-gone")

    assert result.action == "created"
    assert [request.method for request in ghl_api.requests] == ["PUT", "GET", "POST"]


async def test_error_response_raises_without_retry(ghl_api, ghl_client):
    ghl_api.fail_names.add("Welcome")

    with pytest.raises(ExternalApiError) as excinfo:
        await ghl_client.upsert_by_name("email", _welcome())

    assert excinfo.value.status == 500
    assert "Template Welcome rejected" in excinfo.value.body
    assert str(excinfo.value).startswith("GHL API Error: 500 - ")
    assert [request.method for request in ghl_api.requests] == ["GET", "POST"]


async def test_transport_error_is_wrapped(delivery_config):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = GhlClient(delivery_config, throttle=NoDelayThrottle(), transport=httpx.MockTransport(handler))

    with pytest.raises(ExternalApiError) as excinfo:
        await client.list_templates("email")

    assert excinfo.value.status is None
    assert "connection refused" in excinfo.value.body


async def test_requests_carry_auth_and_version_headers(ghl_api, ghl_client):
    await ghl_client.list_templates("email")

    request = ghl_api.requests[0]
    assert request.headers["Authorization"] == "Bearer test-key"
    assert request.headers["Version"] == "2021-07-28"
    assert request.url.params["locationId"] == "loc-1"
    assert request.url.params["limit"] == "100"


async def test_missing_credentials_raise_before_any_request(ghl_api):
    client = GhlClient(
        DeliveryConfig(api_key="", location_id="loc-1"),
        throttle=NoDelayThrottle(),
        transport=ghl_api.transport,
    )

    assert client.is_connected is False
    with pytest.raises(PublisherNotConnectedError):
        await client.list_templates("email")
    assert ghl_api.requests == []


async def test_throttle_waits_before_every_request(ghl_api, delivery_config):
    throttle = RecordingThrottle()
    client = GhlClient(delivery_config, throttle=throttle, transport=ghl_api.transport)

    await client.upsert_by_name("email", _welcome())
    await client.upsert_by_name("email", _welcome())

    assert throttle.calls == len(ghl_api.requests) == 4


async def test_fixed_delay_throttle_sleeps_configured_interval(monkeypatch):
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(ghl_client_module.asyncio, "sleep", fake_sleep)

    await FixedDelayThrottle(0.25).wait()
    await FixedDelayThrottle(0).wait()

    assert delays == [0.25]


async def test_sms_upsert_create_then_update(ghl_api, ghl_client):
    content = TemplateContent(name="Reminder", body="Tour tomorrow. Reply STOP to opt out.")

    created = await ghl_client.upsert_by_name("sms", content)
    updated = await ghl_client.upsert_by_name("sms", content.model_copy(update={"body": "Moved to 11am. STOP to end"}))

    assert created.action == "created"
    assert updated.action == "updated"
    assert updated.external_id == created.external_id
    assert ghl_api.sms[created.external_id]["body"] == "Moved to 11am. STOP to end"
    post = next(request for request in ghl_api.requests if request.method == "POST")
    assert post.url.path == "/locations/loc-1/templates"
    assert json.loads(post.content) == {"type": "sms", "name": "Reminder", "body": "Tour tomorrow. Reply STOP to opt out."}


async def test_get_sms_template_matches_by_id(ghl_api, ghl_client):
    template_id = ghl_api.seed_sms("Reminder", "Hi. STOP to end")

    record = await ghl_client.get_template("sms", template_id)

    assert record["body"] == "Hi. STOP to end"
    with pytest.raises(ExternalApiError) as excinfo:
        await ghl_client.get_template("sms", "S-missing")
    assert excinfo.value.status == 404


async def test_delete_templates(ghl_api, ghl_client):
    email_id = ghl_api.seed_email("Welcome", "Hi", "<p>x</p>")
    sms_id = ghl_api.seed_sms("Reminder", "STOP")

    await ghl_client.delete_template("email", email_id)
    await ghl_client.delete_template("sms", sms_id)

    assert ghl_api.emails == {}
    assert ghl_api.sms == {}
    assert ghl_api.requests[0].url.path == f"/emails/builder/loc-1/{email_id}"


def test_template_content_from_email_record():
    content = template_content_from_record(
        "email",
        {"name": "Welcome", "subject": "Hi", "html": "<p>x</p>", "body": "ignored", "metaDescription": "pre"},
    )

    assert content == TemplateContent(name="Welcome", subject="Hi", body="<p>x</p>", preview_text="pre")


def test_delivery_config_from_settings():
    settings = Settings(
        ghl_api_key="key",
        ghl_location_id="loc-9",
        ghl_request_timeout=5.0,
        _env_file=None,
    )

    config = DeliveryConfig.from_settings(settings)

    assert config.api_key == "key"
    assert config.location_id == "loc-9"
    assert config.timeout == 5.0
    assert config.is_complete is True
