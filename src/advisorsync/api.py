"""Summary: FastAPI application for AdvisorSync.

Importance: Exposes the integration operations to the CRM frontend over HTTP.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from advisorsync.app import AppContext, AppServices, build_context
from advisorsync.config import AppConfig
from advisorsync.errors import (
    AuthenticationFailed,
    IntegrationError,
    IntegrationNotActive,
    InvalidRequest,
    NotFound,
    ProviderCatastrophicError,
    ProviderTransientError,
    SyncAlreadyInProgress,
    UnsupportedProvider,
)
from advisorsync.models import (
    Attendee,
    CalendarFilter,
    Connection,
    EmailAddress,
    EmailDraft,
    EmailFilter,
    EventDraft,
    EventUpdate,
)


logger = logging.getLogger(__name__)

ERROR_STATUS: list[tuple[type[IntegrationError], int]] = [
    (NotFound, 404),
    (UnsupportedProvider, 400),
    (InvalidRequest, 400),
    (AuthenticationFailed, 401),
    (IntegrationNotActive, 409),
    (SyncAlreadyInProgress, 409),
    (ProviderTransientError, 502),
    (ProviderCatastrophicError, 502),
]


class AuthorizationCompleteRequest(BaseModel):
    """Summary: Request payload for finishing an OAuth flow.

    Importance: Lets single-page clients post the code and state they received.
    Alternatives: Use only the redirect callback.
    """

    code: str
    state: str


class SyncRequest(BaseModel):
    sync_type: str = "full"
    since: datetime | None = None


class AttendeeModel(BaseModel):
    email: str
    name: str | None = None
    response: str = "none"
    is_organizer: bool = False


class AddressModel(BaseModel):
    email: str
    name: str | None = None


class EventCreateRequest(BaseModel):
    """Summary: Request payload for creating a calendar event.

    Importance: Carries everything needed for the provider push and the mirror.
    Alternatives: Accept provider-native event JSON.
    """

    subject: str
    start_time: datetime
    end_time: datetime
    body: str | None = None
    location: str | None = None
    is_all_day: bool = False
    attendees: list[AttendeeModel] = Field(default_factory=list)
    create_online_meeting: bool = False
    calendar_id: str | None = None
    linked_household_id: str | None = None
    linked_person_id: str | None = None


class EventUpdateRequest(BaseModel):
    subject: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    body: str | None = None
    location: str | None = None
    is_all_day: bool | None = None
    attendees: list[AttendeeModel] | None = None


class EventLinkRequest(BaseModel):
    household_id: str | None = None
    person_id: str | None = None


class EmailSendRequest(BaseModel):
    """Summary: Request payload for sending an email.

    Importance: Linked sends are recorded as client communication.
    Alternatives: Accept a raw MIME message.
    """

    subject: str
    body: str
    to: list[AddressModel]
    cc: list[AddressModel] = Field(default_factory=list)
    body_content_type: str = "html"
    importance: str = "normal"
    linked_household_id: str | None = None
    linked_person_id: str | None = None


class EmailLinkRequest(BaseModel):
    household_id: str | None = None
    person_id: str | None = None
    notes: str | None = None
    is_client_communication: bool | None = None


class ArchiveRequest(BaseModel):
    email_ids: list[str]


def create_app(config: AppConfig, context: AppContext | None = None) -> FastAPI:
    """Summary: Create a FastAPI app wired to AdvisorSync services.

    Importance: Ensures the API layer shares the same configuration, storage, and sync guard.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=config.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )
    app = FastAPI(title="AdvisorSync API", version="0.1.0")
    app.state.context = context or build_context(config)

    @app.exception_handler(IntegrationError)
    async def handle_integration_error(request: Request, exc: IntegrationError) -> JSONResponse:
        """Summary: Translate the error taxonomy into HTTP status codes.

        Importance: Callers get a stable status per failure class.
        Alternatives: Catch errors inside every route.
        """

        status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 500)
        if status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.__class__.__name__, "detail": str(exc)},
        )

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce API key authentication when configured.

        Importance: Adds a minimal security layer for local and private deployments.
        Alternatives: Use OAuth or session-based authentication.
        """

        if not config.api_key:
            return
        if x_api_key != config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    def user_services(
        x_user_id: str | None = Header(default=None), _: None = Depends(require_api_key)
    ) -> AppServices:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing X-User-Id header")
        return app.state.context.services_for_user(x_user_id)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Summary: Health check endpoint.

        Importance: Supports uptime checks in local and cloud deployments.
        Alternatives: Use a metrics endpoint only.
        """

        return {"status": "ok"}

    @app.get("/integrations")
    def list_connections(services: AppServices = Depends(user_services)) -> list[dict[str, Any]]:
        return [_connection_payload(item) for item in services.credentials.list_connections()]

    @app.get("/integrations/sync-logs")
    def list_sync_logs(
        provider: str | None = None, limit: int = 20, services: AppServices = Depends(user_services)
    ) -> list[dict[str, Any]]:
        return [asdict(item) for item in services.logs.list_logs(provider, limit)]

    @app.get("/integrations/sync-logs/{log_id}")
    def get_sync_log(log_id: str, services: AppServices = Depends(user_services)) -> dict[str, Any]:
        return asdict(services.logs.get_log(log_id))

    @app.get("/integrations/oauth/callback")
    def oauth_callback(code: str, state: str, _: None = Depends(require_api_key)) -> dict[str, Any]:
        """Summary: Handle the provider redirect and store the connection.

        Importance: The signed state identifies the user, so no user header is needed.
        Alternatives: Require a session cookie on the callback.
        """

        connection = app.state.context.complete_authorization(code, state)
        return _connection_payload(connection)

    @app.post("/integrations/oauth/complete")
    def complete_authorization(
        payload: AuthorizationCompleteRequest, services: AppServices = Depends(user_services)
    ) -> dict[str, Any]:
        connection = services.credentials.complete_authorization(payload.code, payload.state)
        return _connection_payload(connection)

    @app.get("/integrations/{provider}/authorize")
    def begin_authorization(provider: str, services: AppServices = Depends(user_services)) -> dict[str, str]:
        return {"url": services.credentials.begin_authorization(provider)}

    @app.get("/integrations/{provider}")
    def get_connection(provider: str, services: AppServices = Depends(user_services)) -> dict[str, Any]:
        return _connection_payload(services.credentials.get_connection(provider))

    @app.patch("/integrations/{provider}/settings")
    def update_settings(
        provider: str,
        payload: dict[str, Any] = Body(...),
        services: AppServices = Depends(user_services),
    ) -> dict[str, Any]:
        return _connection_payload(services.credentials.update_settings(provider, payload))

    @app.delete("/integrations/{provider}")
    def disconnect(provider: str, services: AppServices = Depends(user_services)) -> dict[str, Any]:
        return _connection_payload(services.credentials.disconnect(provider))

    @app.post("/integrations/{provider}/sync")
    def run_sync(
        provider: str, payload: SyncRequest, services: AppServices = Depends(user_services)
    ) -> dict[str, Any]:
        """Summary: Trigger a manual sync run.

        Importance: Item failures are reported in the returned log, not as HTTP errors.
        Alternatives: Enqueue the run and return immediately.
        """

        return asdict(services.sync.run_sync(provider, payload.sync_type, payload.since))

    @app.get("/calendar/events")
    def list_events(
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        linked_household_id: str | None = None,
        linked_person_id: str | None = None,
        include_deleted: bool = False,
        services: AppServices = Depends(user_services),
    ) -> list[dict[str, Any]]:
        criteria = CalendarFilter(
            start_date=start_date,
            end_date=end_date,
            linked_household_id=linked_household_id,
            linked_person_id=linked_person_id,
            include_deleted=include_deleted,
        )
        return [_event_payload(item) for item in services.calendar.list_events(criteria)]

    @app.get("/calendar/events/{event_id}")
    def get_event(event_id: str, services: AppServices = Depends(user_services)) -> dict[str, Any]:
        return _event_payload(services.calendar.get_event(event_id))

    @app.post("/calendar/{provider}/events", status_code=201)
    def create_event(
        provider: str, payload: EventCreateRequest, services: AppServices = Depends(user_services)
    ) -> dict[str, Any]:
        draft = EventDraft(
            subject=payload.subject,
            start_time=payload.start_time,
            end_time=payload.end_time,
            body=payload.body,
            location=payload.location,
            is_all_day=payload.is_all_day,
            attendees=[Attendee(**item.model_dump()) for item in payload.attendees],
            create_online_meeting=payload.create_online_meeting,
            calendar_id=payload.calendar_id,
            linked_household_id=payload.linked_household_id,
            linked_person_id=payload.linked_person_id,
        )
        return _event_payload(services.calendar.create_event(provider, draft))

    @app.patch("/calendar/events/{event_id}")
    def update_event(
        event_id: str, payload: EventUpdateRequest, services: AppServices = Depends(user_services)
    ) -> dict[str, Any]:
        changes = EventUpdate(
            subject=payload.subject,
            body=payload.body,
            location=payload.location,
            start_time=payload.start_time,
            end_time=payload.end_time,
            is_all_day=payload.is_all_day,
            attendees=(
                [Attendee(**item.model_dump()) for item in payload.attendees]
                if payload.attendees is not None
                else None
            ),
        )
        return _event_payload(services.calendar.update_event(event_id, changes))

    @app.delete("/calendar/events/{event_id}", status_code=204)
    def delete_event(event_id: str, services: AppServices = Depends(user_services)) -> None:
        services.calendar.delete_event(event_id)

    @app.post("/calendar/events/{event_id}/link")
    def link_event(
        event_id: str, payload: EventLinkRequest, services: AppServices = Depends(user_services)
    ) -> dict[str, Any]:
        event = services.linking.link_calendar_event(event_id, payload.household_id, payload.person_id)
        return _event_payload(event)

    @app.get("/emails")
    def list_emails(
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        folder: str | None = None,
        is_read: bool | None = None,
        has_attachments: bool | None = None,
        search: str | None = None,
        linked_household_id: str | None = None,
        linked_person_id: str | None = None,
        is_client_communication: bool | None = None,
        is_archived: bool | None = None,
        limit: int = 100,
        services: AppServices = Depends(user_services),
    ) -> list[dict[str, Any]]:
        criteria = EmailFilter(
            start_date=start_date,
            end_date=end_date,
            folder=folder,
            is_read=is_read,
            has_attachments=has_attachments,
            search=search,
            linked_household_id=linked_household_id,
            linked_person_id=linked_person_id,
            is_client_communication=is_client_communication,
            is_archived=is_archived,
            limit=max(1, min(limit, 500)),
        )
        return [asdict(item) for item in services.email.list_emails(criteria)]

    @app.get("/emails/threads")
    def list_threads(
        household_id: str | None = None, services: AppServices = Depends(user_services)
    ) -> list[dict[str, Any]]:
        return [asdict(item) for item in services.email.list_threads(household_id)]

    @app.get("/emails/threads/{conversation_id}")
    def get_thread(conversation_id: str, services: AppServices = Depends(user_services)) -> list[dict[str, Any]]:
        return [asdict(item) for item in services.email.get_thread(conversation_id)]

    @app.post("/emails/archive")
    def archive_emails(payload: ArchiveRequest, services: AppServices = Depends(user_services)) -> dict[str, int]:
        return {"archived": services.linking.archive_emails(payload.email_ids)}

    @app.post("/emails/auto-link")
    def auto_link(services: AppServices = Depends(user_services)) -> dict[str, int]:
        return asdict(services.linking.auto_link(services.directory))

    @app.post("/emails/{provider}/send", status_code=201)
    def send_email(
        provider: str, payload: EmailSendRequest, services: AppServices = Depends(user_services)
    ) -> dict[str, Any]:
        draft = EmailDraft(
            subject=payload.subject,
            body=payload.body,
            to=[EmailAddress(**item.model_dump()) for item in payload.to],
            cc=[EmailAddress(**item.model_dump()) for item in payload.cc],
            body_content_type=payload.body_content_type,
            importance=payload.importance,
            linked_household_id=payload.linked_household_id,
            linked_person_id=payload.linked_person_id,
        )
        return asdict(services.email.send_email(provider, draft))

    @app.get("/emails/{email_id}")
    def get_email(email_id: str, services: AppServices = Depends(user_services)) -> dict[str, Any]:
        return asdict(services.email.get_email(email_id))

    @app.post("/emails/{email_id}/link")
    def link_email(
        email_id: str, payload: EmailLinkRequest, services: AppServices = Depends(user_services)
    ) -> dict[str, Any]:
        email = services.linking.link_email(
            email_id,
            household_id=payload.household_id,
            person_id=payload.person_id,
            notes=payload.notes,
            is_client_communication=payload.is_client_communication,
        )
        return asdict(email)

    @app.get("/stats")
    def stats(services: AppServices = Depends(user_services)) -> dict[str, Any]:
        """Summary: Return integration rollups for the user.

        Importance: Backs the integrations dashboard tiles.
        Alternatives: Compute counts in the frontend.
        """

        return services.stats.snapshot()

    return app


def _connection_payload(connection: Connection) -> dict[str, Any]:
    payload = asdict(connection)
    payload.pop("access_token")
    payload.pop("refresh_token")
    payload["has_refresh_token"] = connection.refresh_token is not None
    return payload


def _event_payload(event: Any) -> dict[str, Any]:
    payload = asdict(event)
    payload.pop("raw_data")
    return payload
