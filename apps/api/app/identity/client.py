from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from opentelemetry import trace
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.config import get_settings
from app.identity.models import AuthIdentity
from app.metrics import observe_identity_call


logger = logging.getLogger("app.identity")
tracer = trace.get_tracer("app.identity.client")


class IdentityServiceError(Exception):
    """The identity service answered, but not with a usable result."""


class IdentityServiceUnavailable(IdentityServiceError):
    """The identity service could not be reached within the configured timeout."""


@dataclass(frozen=True, slots=True)
class IdentityRecord:
    id: uuid.UUID
    email: str
    already_existed: bool


class IdentityClient(Protocol):
    def create_identity(self, email: str, credential: str, metadata: dict[str, Any]) -> IdentityRecord: ...

    def delete_identity(self, identity_id: uuid.UUID) -> None: ...


def _hash_credential(credential: str) -> str:
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


class StubIdentityClient:
    """Identity backend kept in the relational store, for local runs and tests.

    Writes are flushed and committed immediately because the real service is
    never part of the caller's transaction.
    """

    def __init__(self, session: Session):
        self.session = session

    def create_identity(self, email: str, credential: str, metadata: dict[str, Any]) -> IdentityRecord:
        with tracer.start_as_current_span("identity.create_identity") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            normalized = email.strip().lower()
            existing = self.session.scalar(select(AuthIdentity).where(AuthIdentity.email == normalized))
            if existing is not None:
                span.set_attribute("identity_id", str(existing.id))
                span.set_attribute("already_existed", True)
                return IdentityRecord(id=existing.id, email=existing.email, already_existed=True)

            identity = AuthIdentity(
                email=normalized,
                credential_hash=_hash_credential(credential),
                user_metadata=dict(metadata),
            )
            self.session.add(identity)
            try:
                self.session.commit()
            except IntegrityError:
                # A concurrent conversion created the same login first.
                self.session.rollback()
                winner = self.session.scalar(select(AuthIdentity).where(AuthIdentity.email == normalized))
                if winner is None:
                    raise IdentityServiceError(f"identity for {normalized} could not be created")
                span.set_attribute("identity_id", str(winner.id))
                span.set_attribute("already_existed", True)
                return IdentityRecord(id=winner.id, email=winner.email, already_existed=True)
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.warning("identity.store_unavailable", extra={"error": str(exc)})
                raise IdentityServiceUnavailable("identity store unavailable") from exc
            span.set_attribute("identity_id", str(identity.id))
            span.set_attribute("already_existed", False)
            return IdentityRecord(id=identity.id, email=identity.email, already_existed=False)

    def delete_identity(self, identity_id: uuid.UUID) -> None:
        with tracer.start_as_current_span("identity.delete_identity") as span:
            span.set_attribute("identity_id", str(identity_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            result = self.session.execute(delete(AuthIdentity).where(AuthIdentity.id == identity_id))
            self.session.commit()
            if result.rowcount == 0:
                logger.info("identity.delete.not_found", extra={"identity_id": str(identity_id)})


class HttpIdentityClient:
    """Talks to the hosted `create-auth-user` / `delete-auth-user` functions."""

    create_path = "/functions/v1/create-auth-user"
    delete_path = "/functions/v1/delete-auth-user"

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = httpx.Timeout(timeout_seconds)
        self.transport = transport

    def create_identity(self, email: str, credential: str, metadata: dict[str, Any]) -> IdentityRecord:
        with tracer.start_as_current_span("identity.create_identity") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            response = self._post(
                self.create_path,
                {"email": email, "password": credential, "userMetadata": metadata},
            )
            body = self._json(response)
            already_existed = bool(body.get("alreadyExists"))
            if response.status_code >= 400 and not already_existed:
                raise IdentityServiceError(str(body.get("error") or f"identity create failed ({response.status_code})"))

            user = body.get("user") or {}
            raw_id = user.get("id") if isinstance(user, dict) else None
            if not raw_id:
                raise IdentityServiceError("identity service did not return a user id")
            try:
                identity_id = uuid.UUID(str(raw_id))
            except ValueError as exc:
                raise IdentityServiceError(f"identity service returned an invalid user id: {raw_id}") from exc

            span.set_attribute("identity_id", str(identity_id))
            span.set_attribute("already_existed", already_existed)
            return IdentityRecord(
                id=identity_id,
                email=str(user.get("email") or email),
                already_existed=already_existed,
            )

    def delete_identity(self, identity_id: uuid.UUID) -> None:
        with tracer.start_as_current_span("identity.delete_identity") as span:
            span.set_attribute("identity_id", str(identity_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            response = self._post(self.delete_path, {"userId": str(identity_id)})
            if response.status_code < 400:
                return
            body = self._json(response)
            message = str(body.get("message") or body.get("error") or "")
            if response.status_code == 404 or "not found" in message.lower():
                logger.info("identity.delete.not_found", extra={"identity_id": str(identity_id)})
                return
            raise IdentityServiceError(message or f"identity delete failed ({response.status_code})")

    def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id
        started = time.perf_counter()
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.post(path, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            observe_identity_call(path, "timeout", time.perf_counter() - started)
            logger.warning("identity.timeout", extra={"path": path, "error": str(exc)})
            raise IdentityServiceUnavailable(f"identity service timed out on {path}") from exc
        except httpx.TransportError as exc:
            observe_identity_call(path, "unreachable", time.perf_counter() - started)
            logger.warning("identity.unreachable", extra={"path": path, "error": str(exc)})
            raise IdentityServiceUnavailable(f"identity service unreachable on {path}") from exc
        observe_identity_call(path, f"{response.status_code // 100}xx", time.perf_counter() - started)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


def get_identity_client(session: Session) -> IdentityClient:
    settings = get_settings()
    if settings.identity_backend.lower() == "http":
        return HttpIdentityClient(
            base_url=settings.identity_service_url,
            service_key=settings.identity_service_key,
            timeout_seconds=settings.identity_timeout_seconds,
        )
    return StubIdentityClient(session)
