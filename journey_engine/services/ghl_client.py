import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from journey_engine.config import Settings
from journey_engine.models.deployments import TemplateContent, TemplateKind, UpsertAction
from journey_engine.services.errors import ExternalApiError, PublisherNotConnectedError

logger = logging.getLogger(__name__)

TEMPLATE_LIST_LIMIT = 100


@dataclass(frozen=True)
class DeliveryConfig:
    api_key: str
    location_id: str
    base_url: str = "https://services.leadconnectorhq.com"
    api_version: str = "2021-07-28"
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeliveryConfig":
        return cls(
            api_key=settings.ghl_api_key,
            location_id=settings.ghl_location_id,
            base_url=settings.ghl_base_url,
            api_version=settings.ghl_api_version,
            timeout=settings.ghl_request_timeout,
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.api_key and self.location_id)


class Throttle(Protocol):
    async def wait(self) -> None: ...


class FixedDelayThrottle:
    """Sleeps a fixed interval before every request (0.25s keeps us under 4 req/s)."""

    def __init__(self, delay: float = 0.25) -> None:
        self.delay = delay

    async def wait(self) -> None:
        if self.delay > 0:
            await asyncio.sleep(self.delay)


class NoDelayThrottle:
    async def wait(self) -> None:
        return None


@dataclass(frozen=True)
class UpsertResult:
    external_id: str
    action: UpsertAction


def _error_body(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()
    return json.dumps(payload)


def _email_payload(location_id: str, content: TemplateContent, *, create: bool) -> dict:
    payload = {
        "locationId": location_id,
        "name": content.name,
        "type": "html",
        "subject": content.subject or "",
        "metaDescription": content.preview_text,
        "body": content.body,
        "html": content.body,
    }
    if create:
        payload["builderVersion"] = "1"
    return payload


def _sms_payload(content: TemplateContent) -> dict:
    return {"type": "sms", "name": content.name, "body": content.body}


def template_content_from_record(kind: TemplateKind, record: dict) -> TemplateContent:
    if kind == "sms":
        return TemplateContent(
            name=str(record.get("name") or ""),
            body=str(record.get("body") or record.get("content") or ""),
        )
    return TemplateContent(
        name=str(record.get("name") or ""),
        subject=str(record.get("subject") or ""),
        body=str(record.get("html") or record.get("body") or ""),
        preview_text=str(record.get("metaDescription") or ""),
    )


class GhlClient:
    """Template CRUD against the GoHighLevel API.

    Requests are strictly sequential per client instance, across every caller
    sharing it, and each one waits on the throttle first. Failures raise
    ExternalApiError and are never retried here.
    """

    def __init__(
        self,
        config: DeliveryConfig,
        throttle: Throttle | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.throttle = throttle or FixedDelayThrottle()
        self._transport = transport
        self._request_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.config.is_complete

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "Version": self.config.api_version,
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json_body: dict | None = None,
    ) -> dict:
        if not self.is_connected:
            raise PublisherNotConnectedError("GHL credentials not configured")

        url = f"{self.config.base_url.rstrip('/')}{path}"

        # Held across the delay and the call so concurrent batches cannot overlap.
        async with self._request_lock:
            await self.throttle.wait()
            try:
                async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
                    response = await client.request(
                        method,
                        url,
                        headers=self._headers(),
                        params=params,
                        json=json_body,
                    )
            except httpx.HTTPError as exc:
                raise ExternalApiError(None, str(exc) or exc.__class__.__name__) from exc

        if not 200 <= response.status_code < 300:
            raise ExternalApiError(response.status_code, _error_body(response))

        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalApiError(response.status_code, "Response body was not JSON") from exc
        return payload if isinstance(payload, dict) else {"data": payload}

    async def list_templates(self, kind: TemplateKind) -> list[dict]:
        location_id = self.config.location_id
        if kind == "sms":
            body = await self._request(
                "GET",
                f"/locations/{location_id}/templates",
                params={"type": "sms", "originId": location_id, "limit": TEMPLATE_LIST_LIMIT},
            )
            records = body.get("templates")
        else:
            body = await self._request(
                "GET",
                "/emails/builder",
                params={"locationId": location_id, "limit": TEMPLATE_LIST_LIMIT},
            )
            records = body.get("builders")
        if not isinstance(records, list):
            return []
        return [record for record in records if isinstance(record, dict)]

    async def get_template(self, kind: TemplateKind, external_id: str) -> dict:
        if kind == "sms":
            for record in await self.list_templates("sms"):
                if str(record.get("id")) == external_id:
                    return record
            raise ExternalApiError(404, f"SMS template {external_id} not found")
        return await self._request(
            "GET",
            f"/emails/builder/{external_id}",
            params={"locationId": self.config.location_id},
        )

    async def find_by_name(self, kind: TemplateKind, name: str) -> dict | None:
        for record in await self.list_templates(kind):
            if record.get("name") == name:
                return record
        return None

    async def create_template(self, kind: TemplateKind, content: TemplateContent) -> str:
        if kind == "sms":
            body = await self._request(
                "POST",
                f"/locations/{self.config.location_id}/templates",
                json_body=_sms_payload(content),
            )
        else:
            body = await self._request(
                "POST",
                "/emails/builder",
                json_body=_email_payload(self.config.location_id, content, create=True),
            )
        # The v1 email builder answers with the new id under "redirect".
        external_id = body.get("id") or body.get("redirect") or body.get("templateId")
        if not external_id:
            raise ExternalApiError(None, f"Create response for {content.name!r} carried no template id")
        return str(external_id)

    async def update_template(self, kind: TemplateKind, external_id: str, content: TemplateContent) -> str:
        if kind == "sms":
            body = await self._request(
                "PUT",
                f"/locations/{self.config.location_id}/templates/{external_id}",
                json_body=_sms_payload(content),
            )
        else:
            body = await self._request(
                "PUT",
                f"/emails/builder/{external_id}",
                json_body=_email_payload(self.config.location_id, content, create=False),
            )
        return str(body.get("id") or body.get("templateId") or external_id)

    async def delete_template(self, kind: TemplateKind, external_id: str) -> None:
        location_id = self.config.location_id
        if kind == "sms":
            await self._request("DELETE", f"/locations/{location_id}/templates/{external_id}")
        else:
            await self._request("DELETE", f"/emails/builder/{location_id}/{external_id}")

    async def upsert_by_name(
        self,
        kind: TemplateKind,
        content: TemplateContent,
        external_id: str | None = None,
    ) -> UpsertResult:
        if external_id:
            try:
                updated_id = await self.update_template(kind, external_id, content)
                return UpsertResult(external_id=updated_id, action="updated")
            except ExternalApiError as exc:
                if exc.status != 404:
                    raise
                logger.warning(
                    "Stored template id no longer exists, falling back to name lookup",
                    extra={"kind": kind, "external_id": external_id, "template_name": content.name},
                )

        existing = await self.find_by_name(kind, content.name)
        if existing is not None and existing.get("id"):
            updated_id = await self.update_template(kind, str(existing["id"]), content)
            return UpsertResult(external_id=updated_id, action="updated")

        created_id = await self.create_template(kind, content)
        return UpsertResult(external_id=created_id, action="created")
