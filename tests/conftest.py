import json
import re

import httpx
import pytest

from journey_engine.models.deployments import Touchpoint
from journey_engine.services.context import PublishContext
from journey_engine.services.deployment_tracker import DeploymentTracker, FileDeploymentStore
from journey_engine.services.ghl_client import DeliveryConfig, GhlClient, NoDelayThrottle

LOCATION_ID = "loc-1"
BASE_URL = "https://ghl.test"

_EMAIL_ITEM = re.compile(r"^/emails/builder/([^/]+)$")
_EMAIL_DELETE = re.compile(r"^/emails/builder/([^/]+)/([^/]+)$")
_SMS_LIST = re.compile(r"^/locations/([^/]+)/templates$")
_SMS_ITEM = re.compile(r"^/locations/([^/]+)/templates/([^/]+)$")


class FakeGhlApi:
    """In-memory stand-in for the GoHighLevel template endpoints."""

    def __init__(self) -> None:
        self.emails: dict[str, dict] = {}
        self.sms: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail_names: set[str] = set()
        self.fail_get_ids: set[str] = set()
        self._next_id = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}{self._next_id}"

    def seed_email(self, name: str, subject: str, html: str, preview_text: str = "") -> str:
        template_id = self.new_id("E")
        self.emails[template_id] = {
            "id": template_id,
            "name": name,
            "type": "html",
            "subject": subject,
            "html": html,
            "body": html,
            "metaDescription": preview_text,
        }
        return template_id

    def seed_sms(self, name: str, body: str) -> str:
        template_id = self.new_id("S")
        self.sms[template_id] = {"id": template_id, "name": name, "type": "sms", "body": body}
        return template_id

    def mutations(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.method != "GET"]

    def _error(self, status_code: int, message: str) -> httpx.Response:
        return httpx.Response(status_code, json={"statusCode": status_code, "message": message})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method
        body = json.loads(request.content) if request.content else {}

        if method in {"POST", "PUT"} and body.get("name") in self.fail_names:
            return self._error(500, f"Template {body.get('name')} rejected")

        if path == "/emails/builder":
            if method == "GET":
                return httpx.Response(
                    200,
                    json={"builders": [{"id": t["id"], "name": t["name"]} for t in self.emails.values()]},
                )
            if method == "POST":
                template_id = self.new_id("E")
                self.emails[template_id] = {
                    "id": template_id,
                    "name": body["name"],
                    "type": body["type"],
                    "subject": body["subject"],
                    "html": body["html"],
                    "body": body["body"],
                    "metaDescription": body["metaDescription"],
                }
                return httpx.Response(201, json={"redirect": template_id, "traceId": "trace-1"})

        match = _EMAIL_ITEM.match(path)
        if match:
            template_id = match.group(1)
            if method == "GET" and template_id in self.fail_get_ids:
                return self._error(500, "Internal error")
            if template_id not in self.emails:
                return self._error(404, "Template not found")
            if method == "GET":
                return httpx.Response(200, json=self.emails[template_id])
            if method == "PUT":
                self.emails[template_id].update(
                    name=body["name"],
                    subject=body["subject"],
                    html=body["html"],
                    body=body["body"],
                    metaDescription=body["metaDescription"],
                )
                return httpx.Response(200, json={"traceId": "trace-2"})

        match = _EMAIL_DELETE.match(path)
        if match and method == "DELETE":
            if self.emails.pop(match.group(2), None) is None:
                return self._error(404, "Template not found")
            return httpx.Response(200, json={"succeeded": True})

        match = _SMS_LIST.match(path)
        if match:
            if method == "GET":
                return httpx.Response(200, json={"templates": list(self.sms.values())})
            if method == "POST":
                template_id = self.new_id("S")
                self.sms[template_id] = {
                    "id": template_id,
                    "name": body["name"],
                    "type": "sms",
                    "body": body["body"],
                }
                return httpx.Response(201, json={"id": template_id})

        match = _SMS_ITEM.match(path)
        if match:
            template_id = match.group(2)
            if template_id not in self.sms:
                return self._error(404, "Template not found")
            if method == "PUT":
                self.sms[template_id].update(name=body["name"], body=body["body"])
                return httpx.Response(200, json={"id": template_id})
            if method == "DELETE":
                del self.sms[template_id]
                return httpx.Response(204)

        return self._error(404, f"No route for {method} {path}")


@pytest.fixture
def ghl_api() -> FakeGhlApi:
    return FakeGhlApi()


@pytest.fixture
def delivery_config() -> DeliveryConfig:
    return DeliveryConfig(api_key="test-key", location_id=LOCATION_ID, base_url=BASE_URL)


@pytest.fixture
def ghl_client(ghl_api, delivery_config) -> GhlClient:
    return GhlClient(delivery_config, throttle=NoDelayThrottle(), transport=ghl_api.transport)


@pytest.fixture
def tracker(tmp_path) -> DeploymentTracker:
    return DeploymentTracker(FileDeploymentStore(tmp_path / "deployments"))


@pytest.fixture
def publish_ctx(ghl_client, tracker) -> PublishContext:
    return PublishContext(client=ghl_client, tracker=tracker)


@pytest.fixture
def make_email():
    def _make(item_id: str, name: str | None = None, **content) -> Touchpoint:
        content.setdefault("subject", f"Subject for {item_id}")
        content.setdefault("body", '<p>Hello</p><a href="https://cameronestate.com/visit">Visit</a>')
        return Touchpoint(id=item_id, name=name or f"Email {item_id}", type="Email", content=content)

    return _make


@pytest.fixture
def make_sms():
    def _make(item_id: str, name: str | None = None, body: str = "See you Friday! Reply STOP to opt out.") -> Touchpoint:
        return Touchpoint(id=item_id, name=name or f"SMS {item_id}", type="SMS", content={"body": body})

    return _make
