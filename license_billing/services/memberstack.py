"""Memberstack identity provider integration."""

import hashlib
import hmac
import logging
import secrets
from typing import Any

import httpx
from sqlalchemy.orm import Session

from license_billing.config import Settings, settings
from license_billing.models.billing import WebhookEvent, WebhookEventStatus
from license_billing.services.accounts import AccountService
from license_billing.services.outcomes import OperationOutcome, OperationReport

logger = logging.getLogger(__name__)

MEMBERSTACK_BASE_URL = "https://api.memberstack.com/v1"


class MemberstackError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return (
            self.status_code is None
            or self.status_code == 429
            or self.status_code >= 500
        )


def _first_member(data: Any) -> dict[str, Any] | None:
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        inner = data.get("data")
        if isinstance(inner, list):
            return inner[0] if inner else None
        if isinstance(inner, dict):
            return inner
    return None


class MemberstackGateway:
    """Thin wrapper around the Memberstack admin REST API."""

    def __init__(self, secret_key: str | None = None) -> None:
        self._secret_key = (
            secret_key if secret_key is not None else settings.memberstack_secret_key
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if not self.is_configured():
            raise RuntimeError("Memberstack is not configured")
        try:
            with httpx.Client(timeout=30) as client:
                resp = client.request(
                    method,
                    f"{MEMBERSTACK_BASE_URL}{path}",
                    headers=self._headers(),
                    **kwargs,
                )
        except httpx.HTTPError as exc:
            raise MemberstackError(f"Memberstack {method} {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            logger.error(
                "Memberstack %s %s failed: %s %s", method, path, resp.status_code, resp.text
            )
            raise MemberstackError(
                f"Memberstack {method} {path} returned {resp.status_code}",
                resp.status_code,
            )
        return resp.json() if resp.content else {}

    def find_member(self, email: str) -> dict[str, Any] | None:
        return _first_member(self._request("GET", "/members", params={"email": email}))

    def create_member(self, email: str, password: str) -> dict[str, Any]:
        payload = {"email": email, "password": password}
        data = self._request("POST", "/members", json=payload)
        member = data.get("data", data) if isinstance(data, dict) else data
        logger.info("Created Memberstack member for %s", email)
        return member

    def assign_plan(self, member_id: str, plan_id: str) -> dict[str, Any]:
        return self._request("POST", f"/members/{member_id}/plans", json={"planId": plan_id})

    def send_magic_link(self, email: str, redirect_url: str) -> dict[str, Any]:
        return self._request(
            "POST", "/members/magic-link", json={"email": email, "redirect": redirect_url}
        )


memberstack_gateway = MemberstackGateway()


def _outcome_for(operation: str, exc: MemberstackError) -> OperationOutcome:
    if exc.retryable:
        return OperationOutcome.retryable(operation, exc.message)
    return OperationOutcome.fatal(operation, exc.message)


def ensure_member(
    email: str,
    gateway: MemberstackGateway | None = None,
    config: Settings | None = None,
) -> OperationReport:
    """Find or create the Memberstack member for ``email``.

    Never raises for provider failures; every step lands in the returned report.
    """
    gateway = gateway or memberstack_gateway
    config = config or settings
    report = OperationReport()
    if not gateway.is_configured():
        return report

    try:
        member = gateway.find_member(email)
    except MemberstackError as exc:
        # A failed lookup still allows a create attempt; a 409 there re-fetches.
        logger.warning("Memberstack lookup failed for %s: %s", email, exc.message)
        member = None

    if member:
        report.add(OperationOutcome.ok("memberstack.find_member", member.get("id")))
        return report

    try:
        member = gateway.create_member(email, secrets.token_urlsafe(24))
        report.add(OperationOutcome.ok("memberstack.create_member", member.get("id")))
    except MemberstackError as exc:
        if exc.status_code != 409:
            logger.error("Memberstack member creation failed for %s: %s", email, exc.message)
            report.add(_outcome_for("memberstack.create_member", exc))
            return report
        try:
            member = gateway.find_member(email)
        except MemberstackError as refetch_exc:
            report.add(_outcome_for("memberstack.find_member", refetch_exc))
            return report
        if not member:
            report.add(
                OperationOutcome.retryable(
                    "memberstack.find_member", "member exists but could not be fetched"
                )
            )
            return report
        report.add(OperationOutcome.ok("memberstack.find_member", member.get("id")))

    if config.memberstack_plan_id and member.get("id"):
        try:
            gateway.assign_plan(member["id"], config.memberstack_plan_id)
            report.add(OperationOutcome.ok("memberstack.assign_plan"))
        except MemberstackError as exc:
            report.add(_outcome_for("memberstack.assign_plan", exc))

    if config.memberstack_redirect_url:
        try:
            gateway.send_magic_link(email, config.memberstack_redirect_url)
            report.add(OperationOutcome.ok("memberstack.send_magic_link"))
        except MemberstackError as exc:
            report.add(_outcome_for("memberstack.send_magic_link", exc))
    return report


# ── Webhook ──────────────────────────────────────────


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Validate the hex HMAC-SHA256 of the raw body."""
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


def handle_member_event(db: Session, event: dict[str, Any]) -> dict[str, Any]:
    """Record a Memberstack event; ``member.created`` ensures a local user row."""
    event_type = event.get("event") or event.get("type") or ""
    data = event.get("payload") or event.get("data") or {}
    email = data.get("email") or (data.get("auth") or {}).get("email")

    status = WebhookEventStatus.ignored
    if event_type == "member.created" and email:
        _, created = AccountService(db).get_or_create_user(email.strip().lower())
        status = WebhookEventStatus.processed
        logger.info("Memberstack member.created for %s (new user: %s)", email, created)

    db.add(
        WebhookEvent(
            provider="memberstack",
            event_id=data.get("id"),
            event_type=event_type or "unknown",
            payload=event,
            status=status,
        )
    )
    db.flush()
    return {"status": "ok", "event": event_type, "handled": status == WebhookEventStatus.processed}
