"""
Notification channels: email through an HTTP email API and SMS through the Twilio REST API.
Recipients come from the organization's contact record; a missing address or a disabled
toggle skips the channel instead of failing it.
Channels send once per call. Retries and dedup belong to the dispatcher.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import asyncpg
import httpx

from stageflow.db import fetch_organization_contact
from stageflow.errors import DeliveryFailed
from stageflow.models import DeliveryStatus, OrderStatus, TransitionEvent
from stageflow.stages import Stage, display_name

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}
SMS_MAX_LENGTH = 320

# Stages worth a text message on their own; any ship-date change is always critical
SMS_CRITICAL_STAGES = {Stage.SHIP_ORDER, Stage.DELIVERY}


@dataclass(frozen=True)
class OrganizationContact:
    organization_id: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    email_enabled: bool = True
    sms_enabled: bool = False


class ContactDirectory(ABC):
    @abstractmethod
    async def get(self, organization_id: str) -> Optional[OrganizationContact]:
        ...


class InMemoryContactDirectory(ContactDirectory):
    """Fixed contacts for tests and single-process runs; production reads organization_contacts."""

    def __init__(self, contacts: Optional[Dict[str, OrganizationContact]] = None):
        self._contacts = dict(contacts or {})

    def add(self, contact: OrganizationContact) -> None:
        self._contacts[contact.organization_id] = contact

    async def get(self, organization_id: str) -> Optional[OrganizationContact]:
        return self._contacts.get(organization_id)


class PostgresContactDirectory(ContactDirectory):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def get(self, organization_id: str) -> Optional[OrganizationContact]:
        row = await fetch_organization_contact(self._pool, organization_id)
        if row is None:
            return None
        return OrganizationContact(
            organization_id=row["organization_id"],
            name=row["name"],
            email=row["email"],
            phone=row["phone"],
            email_enabled=row["email_enabled"],
            sms_enabled=row["sms_enabled"],
        )


def render_subject(event: TransitionEvent) -> str:
    if event.order_status is OrderStatus.CANCELLED:
        return f"Order {event.order_id} cancelled"
    if event.stage_changed:
        return f"Order {event.order_id} is now in {display_name(event.new_stage)}"
    if event.ship_date_changed:
        return f"Order {event.order_id}: ship date changed"
    return f"Order {event.order_id} updated"


def render_body(event: TransitionEvent) -> str:
    lines = []
    if event.order_status is OrderStatus.CANCELLED:
        lines.append(f"Order {event.order_id} has been cancelled.")
    elif event.stage_changed:
        verb = "was moved back" if event.is_correction else "moved"
        lines.append(
            f"Order {event.order_id} {verb} from {display_name(event.previous_stage)} "
            f"to {display_name(event.new_stage)}."
        )
    else:
        lines.append(f"Order {event.order_id} was updated in {display_name(event.new_stage)}.")
    if event.ship_date_changed:
        lines.append(
            f"Ship date changed from {event.previous_ship_date:%Y-%m-%d} to {event.new_ship_date:%Y-%m-%d}."
        )
    if event.reason:
        lines.append(f"Reason: {event.reason}")
    return "\n".join(lines)


def _check_response(response: httpx.Response, channel: str) -> None:
    if 200 <= response.status_code < 300:
        return
    raise DeliveryFailed(
        f"{channel} provider returned HTTP {response.status_code}: {response.text[:200]}",
        channel=channel,
        retryable=response.status_code in RETRYABLE_STATUSES,
    )


class NotificationChannel(ABC):
    name: str

    def __init__(self, directory: ContactDirectory, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._directory = directory
        self._timeout = timeout
        self._client = client

    @abstractmethod
    async def send(self, event: TransitionEvent) -> DeliveryStatus:
        """Deliver once. Returns DELIVERED or SKIPPED; raises DeliveryFailed."""

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.post(url, **kwargs)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.post(url, **kwargs)
        except httpx.TimeoutException:
            raise DeliveryFailed(f"{self.name} provider timed out", channel=self.name) from None
        except httpx.RequestError as e:
            raise DeliveryFailed(f"{self.name} connection error: {e.__class__.__name__}", channel=self.name) from e


class EmailChannel(NotificationChannel):
    name = "email"

    def __init__(
        self,
        directory: ContactDirectory,
        *,
        api_url: str,
        api_key: str,
        sender: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(directory, timeout, client)
        self._api_url = api_url
        self._api_key = api_key
        self._sender = sender

    async def send(self, event: TransitionEvent) -> DeliveryStatus:
        contact = await self._directory.get(event.organization_id)
        if contact is None or not contact.email or not contact.email_enabled:
            logger.info("No email recipient for org=%s, skipping event_id=%s", event.organization_id, event.event_id)
            return DeliveryStatus.SKIPPED
        response = await self._post(
            self._api_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                # Stable across retries and re-deliveries, so the provider dedups too
                "Idempotency-Key": f"{event.event_id}:{self.name}",
            },
            json={
                "from": self._sender,
                "to": [contact.email],
                "subject": render_subject(event),
                "text": render_body(event),
            },
        )
        _check_response(response, self.name)
        return DeliveryStatus.DELIVERED


class SmsChannel(NotificationChannel):
    """Text messages only for critical events: ship-date changes, shipping, delivery, cancellation."""

    name = "sms"

    def __init__(
        self,
        directory: ContactDirectory,
        *,
        api_base: str,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(directory, timeout, client)
        self._url = f"{api_base.rstrip('/')}/Accounts/{account_sid}/Messages.json"
        self._auth = (account_sid, auth_token)
        self._from_number = from_number

    @staticmethod
    def is_critical(event: TransitionEvent) -> bool:
        return (
            event.ship_date_changed
            or event.order_status is OrderStatus.CANCELLED
            or (event.stage_changed and event.new_stage in SMS_CRITICAL_STAGES)
        )

    async def send(self, event: TransitionEvent) -> DeliveryStatus:
        if not self.is_critical(event):
            return DeliveryStatus.SKIPPED
        contact = await self._directory.get(event.organization_id)
        if contact is None or not contact.phone or not contact.sms_enabled:
            logger.info("No SMS recipient for org=%s, skipping event_id=%s", event.organization_id, event.event_id)
            return DeliveryStatus.SKIPPED
        body = f"{render_subject(event)}. {render_body(event)}"[:SMS_MAX_LENGTH]
        response = await self._post(
            self._url,
            auth=self._auth,
            headers={"I-Twilio-Idempotency-Token": f"{event.event_id}:{self.name}"},
            data={"To": contact.phone, "From": self._from_number, "Body": body},
        )
        _check_response(response, self.name)
        return DeliveryStatus.DELIVERED
