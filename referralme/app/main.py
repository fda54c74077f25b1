from __future__ import annotations

import json
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    HTTPException,
    Request,
    Response,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from referralme.app.auth import AuthContext, require_roles
from referralme.app.models import (
    BookingResponse,
    ChangeEvent,
    Collection,
    DispatchResponse,
    GatewayOrderResponse,
    GatewayVerifyRequest,
    GatewayWebhookEvent,
    JobPostingCreateRequest,
    JobPostingRecord,
    MentorshipQuoteRequest,
    MentorshipSessionRecord,
    PlatformStats,
    ProfileUpsertRequest,
    QuoteResponse,
    ReferralAuditNote,
    ReferralParty,
    ReferralRequestRecord,
    ReferralStatus,
    ReferralSubmitRequest,
    ReferralTransitionRequest,
    SelfAttestedConfirmRequest,
    SelfAttestedStartResponse,
    SessionRatingRequest,
    UserProfileRecord,
    UserStats,
    WebhookEventResponse,
    WebhookProcessingStatus,
)
from referralme.app.observability import MetricsRegistry, configure_logging, observe_request
from referralme.app.persistence import SnapshotPersistence
from referralme.app.services.errors import LifecycleError
from referralme.app.services.gateway import (
    GatewayServiceError,
    SignatureVerificationError,
    build_gateway,
    verify_webhook_signature,
)
from referralme.app.services.notifications import NotificationDispatcher, build_sender
from referralme.app.services.payments import BookingWorkflow, PaymentConfirmationCoordinator
from referralme.app.services.referrals import ReferralLifecycleController, party_of
from referralme.app.services.stats import StatisticsAggregator
from referralme.app.settings import Settings, load_settings
from referralme.app.store import EventStore, StoreConflictError, StoreNotFoundError

WEBHOOK_CHANNEL = "razorpay"
CAPTURE_EVENTS = {"payment.captured", "order.paid"}

ERROR_STATUS = {
    "permission_denied": status.HTTP_403_FORBIDDEN,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "conflict": status.HTTP_409_CONFLICT,
    "payment_verification_failed": status.HTTP_400_BAD_REQUEST,
    "payment_timeout": status.HTTP_408_REQUEST_TIMEOUT,
    "slot_unavailable": status.HTTP_409_CONFLICT,
    "booking_invalid": status.HTTP_400_BAD_REQUEST,
}

DOMAIN_ERRORS = (LifecycleError, StoreNotFoundError, StoreConflictError)


def create_app() -> FastAPI:
    app = FastAPI(title="ReferralMe Lifecycle API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SnapshotPersistence(settings.database_url) if settings.persistence_enabled else None
    metrics = MetricsRegistry()
    store = EventStore(persistence=persistence)
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.store = store
    app.state.referrals = ReferralLifecycleController(store, metrics=metrics)
    app.state.payments = PaymentConfirmationCoordinator(
        store,
        build_gateway(settings),
        currency=settings.payment_currency,
        self_attested_timeout_seconds=settings.self_attested_timeout_seconds,
        gateway_attempt_ttl_seconds=settings.gateway_attempt_ttl_seconds,
        meeting_base_url=settings.meeting_base_url,
        metrics=metrics,
    )
    app.state.stats = StatisticsAggregator(store, metrics=metrics)
    app.state.stats.attach()
    app.state.dispatcher = NotificationDispatcher(
        store,
        build_sender(settings),
        max_attempts=settings.notify_max_attempts,
        backoff_seconds=settings.notify_retry_backoff_seconds,
        metrics=metrics,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> EventStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_referrals(request: Request) -> ReferralLifecycleController:
    return request.app.state.referrals


def get_payments(request: Request) -> PaymentConfirmationCoordinator:
    return request.app.state.payments


def get_stats(request: Request) -> StatisticsAggregator:
    return request.app.state.stats


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, StoreNotFoundError):
        code, status_code = "not_found", status.HTTP_404_NOT_FOUND
    elif isinstance(exc, StoreConflictError):
        code, status_code = "conflict", status.HTTP_409_CONFLICT
    else:
        code = getattr(exc, "code", "lifecycle_error")
        status_code = ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail={"code": code, "message": str(exc)})


def forbidden(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "permission_denied", "message": message},
    )


def booking_workflow(
    payments: PaymentConfirmationCoordinator,
    payload: MentorshipQuoteRequest,
    mentee_id: str,
) -> BookingWorkflow:
    workflow = payments.select_service(
        mentor_id=payload.mentor_id,
        mentee_id=mentee_id,
        service_id=payload.service_id,
    )
    return payments.schedule(workflow, payload.scheduled_at_utc)


def ensure_session_party(session: MentorshipSessionRecord, context: AuthContext) -> None:
    if context.is_admin or context.user_id in {session.mentor_id, session.mentee_id}:
        return
    raise forbidden(f"{context.user_id} is not a party to session {session.id}")


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    # Profiles

    @router.put("/users/{user_id}/profile", response_model=UserProfileRecord)
    def upsert_profile(
        user_id: str,
        payload: ProfileUpsertRequest,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> UserProfileRecord:
        if context.user_id != user_id and not context.is_admin:
            raise forbidden("profiles can only be edited by their owner")
        return get_store(request).upsert_profile(user_id, payload)

    @router.get("/users/{user_id}/profile", response_model=UserProfileRecord)
    def read_profile(
        user_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles()),
    ) -> UserProfileRecord:
        try:
            return get_store(request).get_profile(user_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc

    @router.post("/users/{user_id}/views", response_model=UserProfileRecord)
    def record_profile_view(
        user_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> UserProfileRecord:
        store = get_store(request)
        try:
            if context.user_id == user_id:
                return store.get_profile(user_id)
            return store.record_profile_view(user_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc

    # Job postings

    @router.post("/jobs", response_model=JobPostingRecord, status_code=status.HTTP_201_CREATED)
    def create_job_posting(
        payload: JobPostingCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("referrer", "admin")),
    ) -> JobPostingRecord:
        return get_store(request).create_job_posting(context.user_id, payload)

    @router.get("/jobs", response_model=list[JobPostingRecord])
    def list_job_postings(
        request: Request,
        owner_id: Optional[str] = None,
        active_only: bool = True,
        _: AuthContext = Depends(require_roles()),
    ) -> list[JobPostingRecord]:
        return get_store(request).list_job_postings(owner_id=owner_id, active_only=active_only)

    @router.get("/jobs/{job_id}", response_model=JobPostingRecord)
    def read_job_posting(
        job_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles()),
    ) -> JobPostingRecord:
        try:
            return get_store(request).get_job_posting(job_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc

    @router.post("/jobs/{job_id}/close", response_model=JobPostingRecord)
    def close_job_posting(
        job_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("referrer", "admin")),
    ) -> JobPostingRecord:
        store = get_store(request)
        try:
            job = store.get_job_posting(job_id)
            if job.owner_id != context.user_id and not context.is_admin:
                raise forbidden("only the posting owner can close it")
            return store.set_job_posting_active(job_id, False)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc

    # Referral requests

    @router.post(
        "/referrals",
        response_model=ReferralRequestRecord,
        status_code=status.HTTP_201_CREATED,
    )
    def submit_referral_request(
        payload: ReferralSubmitRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        context: AuthContext = Depends(require_roles("seeker", "admin")),
    ) -> ReferralRequestRecord:
        try:
            created = get_referrals(request).create_request(
                job_posting_id=payload.job_posting_id,
                seeker_id=context.user_id,
                application=payload.application,
            )
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        background_tasks.add_task(get_dispatcher(request).dispatch_quietly)
        return created

    @router.get("/referrals", response_model=list[ReferralRequestRecord])
    def list_referral_requests(
        request: Request,
        party: Optional[ReferralParty] = None,
        job_posting_id: Optional[str] = None,
        status_filter: Optional[ReferralStatus] = None,
        context: AuthContext = Depends(require_roles()),
    ) -> list[ReferralRequestRecord]:
        store = get_store(request)
        records: list[ReferralRequestRecord] = []
        if party in (None, ReferralParty.seeker):
            records.extend(
                store.list_referral_requests(
                    seeker_id=context.user_id,
                    job_posting_id=job_posting_id,
                    status=status_filter,
                )
            )
        if party in (None, ReferralParty.referrer):
            records.extend(
                store.list_referral_requests(
                    referrer_id=context.user_id,
                    job_posting_id=job_posting_id,
                    status=status_filter,
                )
            )
        records.sort(key=lambda item: item.created_at_utc, reverse=True)
        return records

    @router.get("/referrals/{request_id}", response_model=ReferralRequestRecord)
    def read_referral_request(
        request_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> ReferralRequestRecord:
        try:
            record = get_store(request).get_referral_request(request_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        if party_of(record, context.user_id) is None and not context.is_admin:
            raise forbidden(f"{context.user_id} is not a party to referral {request_id}")
        return record

    @router.get("/referrals/{request_id}/notes", response_model=list[ReferralAuditNote])
    def list_referral_notes(
        request_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> list[ReferralAuditNote]:
        store = get_store(request)
        try:
            record = store.get_referral_request(request_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        if party_of(record, context.user_id) is None and not context.is_admin:
            raise forbidden(f"{context.user_id} is not a party to referral {request_id}")
        return store.list_audit_notes(request_id)

    @router.post("/referrals/{request_id}/transition", response_model=ReferralRequestRecord)
    def transition_referral(
        request_id: str,
        payload: ReferralTransitionRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        context: AuthContext = Depends(require_roles()),
    ) -> ReferralRequestRecord:
        try:
            updated = get_referrals(request).transition(
                request_id,
                actor_id=context.user_id,
                target_status=payload.target_status,
                note=payload.note,
                evidence_ref=payload.evidence_ref,
                expected_status=payload.expected_status,
            )
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        background_tasks.add_task(get_dispatcher(request).dispatch_quietly)
        return updated

    # Mentorship booking and payment

    @router.post("/mentorship/quote", response_model=QuoteResponse)
    def quote_mentorship(
        payload: MentorshipQuoteRequest,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> QuoteResponse:
        payments = get_payments(request)
        try:
            quote = payments.quote(booking_workflow(payments, payload, context.user_id))
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        return QuoteResponse(
            mentor_id=quote.mentor_id,
            mentee_id=quote.mentee_id,
            service_id=quote.service_id,
            service_title=quote.service_title,
            duration_minutes=quote.duration_minutes,
            scheduled_at_utc=quote.scheduled_at_utc,
            amount=quote.amount,
            amount_minor=quote.amount_minor,
            currency=quote.currency,
        )

    @router.post("/mentorship/payments/gateway/orders", response_model=GatewayOrderResponse)
    def create_gateway_order(
        payload: MentorshipQuoteRequest,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> GatewayOrderResponse:
        payments = get_payments(request)
        try:
            checkout = payments.start_gateway_payment(
                booking_workflow(payments, payload, context.user_id)
            )
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        except GatewayServiceError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
        return GatewayOrderResponse(
            order_id=checkout.order.id,
            key_id=checkout.key_id,
            amount_minor=checkout.order.amount_minor,
            currency=checkout.order.currency,
            receipt=checkout.order.receipt,
        )

    @router.post("/mentorship/payments/gateway/verify", response_model=BookingResponse)
    def verify_gateway_payment(
        payload: GatewayVerifyRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        _: AuthContext = Depends(require_roles()),
    ) -> BookingResponse:
        try:
            result = get_payments(request).confirm_gateway_payment(
                order_id=payload.order_id,
                payment_id=payload.payment_id,
                signature=payload.signature,
            )
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        background_tasks.add_task(get_dispatcher(request).dispatch_quietly)
        return BookingResponse(session=result.session, duplicate=result.duplicate)

    @router.post("/webhooks/razorpay", response_model=WebhookEventResponse)
    async def razorpay_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
    ) -> WebhookEventResponse:
        store = get_store(request)
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            verify_webhook_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.razorpay_webhook_secret,
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            payload = GatewayWebhookEvent.model_validate(json.loads(raw_body.decode("utf-8")))
        except (json.JSONDecodeError, ValueError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc

        existing = store.ensure_webhook_delivery(channel=WEBHOOK_CHANNEL, event_id=payload.event_id)
        if existing.status == WebhookProcessingStatus.processed:
            return WebhookEventResponse(status="duplicate")

        if payload.event not in CAPTURE_EVENTS or not payload.order_id or not payload.payment_id:
            store.record_webhook_attempt(
                channel=WEBHOOK_CHANNEL, event_id=payload.event_id, success=True
            )
            return WebhookEventResponse(status="ignored", detail=payload.event)

        try:
            result = get_payments(request).handle_captured_payment(
                order_id=payload.order_id,
                payment_id=payload.payment_id,
            )
        except DOMAIN_ERRORS as exc:
            record = store.record_webhook_attempt(
                channel=WEBHOOK_CHANNEL,
                event_id=payload.event_id,
                success=False,
                error=str(exc),
            )
            return WebhookEventResponse(status=record.status.value, detail=record.last_error)

        store.record_webhook_attempt(channel=WEBHOOK_CHANNEL, event_id=payload.event_id, success=True)
        background_tasks.add_task(get_dispatcher(request).dispatch_quietly)
        return WebhookEventResponse(
            status="duplicate" if result.duplicate else "processed",
            detail=result.session.id,
        )

    @router.post("/mentorship/payments/self-attested", response_model=SelfAttestedStartResponse)
    def start_self_attested_payment(
        payload: MentorshipQuoteRequest,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> SelfAttestedStartResponse:
        payments = get_payments(request)
        try:
            started = payments.start_self_attested_payment(
                booking_workflow(payments, payload, context.user_id)
            )
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        return SelfAttestedStartResponse(
            attempt_id=started.attempt_id,
            payment_link=started.payment_link,
            payee_id=started.payee_id,
            payee_name=started.payee_name,
            amount=started.amount,
            currency=started.currency,
            note=started.note,
            expires_at_utc=started.expires_at_utc,
        )

    @router.post(
        "/mentorship/payments/self-attested/{attempt_id}/confirm",
        response_model=BookingResponse,
    )
    def confirm_self_attested_payment(
        attempt_id: str,
        payload: SelfAttestedConfirmRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        context: AuthContext = Depends(require_roles()),
    ) -> BookingResponse:
        try:
            result = get_payments(request).confirm_self_attested_payment(
                attempt_id,
                actor_id=context.user_id,
                transaction_id=payload.transaction_id,
            )
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        background_tasks.add_task(get_dispatcher(request).dispatch_quietly)
        return BookingResponse(session=result.session, duplicate=result.duplicate)

    @router.post("/mentorship/payments/self-attested/{attempt_id}/cancel")
    def cancel_self_attested_payment(
        attempt_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> dict[str, str]:
        try:
            attempt = get_payments(request).cancel_attempt(attempt_id, actor_id=context.user_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        return {"attempt_id": attempt.id, "state": attempt.state.value}

    # Mentorship sessions

    @router.get("/mentorship/sessions/{session_id}", response_model=MentorshipSessionRecord)
    def read_session(
        session_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> MentorshipSessionRecord:
        try:
            session = get_store(request).get_session(session_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        ensure_session_party(session, context)
        return session

    @router.post("/mentorship/sessions/{session_id}/start", response_model=MentorshipSessionRecord)
    def start_session(
        session_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> MentorshipSessionRecord:
        try:
            return get_payments(request).start_session(session_id, actor_id=context.user_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc

    @router.post(
        "/mentorship/sessions/{session_id}/complete",
        response_model=MentorshipSessionRecord,
    )
    def complete_session(
        session_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> MentorshipSessionRecord:
        try:
            return get_payments(request).complete_session(session_id, actor_id=context.user_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc

    @router.post("/mentorship/sessions/{session_id}/cancel", response_model=MentorshipSessionRecord)
    def cancel_session(
        session_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        context: AuthContext = Depends(require_roles()),
    ) -> MentorshipSessionRecord:
        try:
            updated = get_payments(request).cancel_session(session_id, actor_id=context.user_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc
        background_tasks.add_task(get_dispatcher(request).dispatch_quietly)
        return updated

    @router.post(
        "/mentorship/sessions/{session_id}/acknowledge-payment",
        response_model=MentorshipSessionRecord,
    )
    def acknowledge_session_payment(
        session_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> MentorshipSessionRecord:
        try:
            return get_payments(request).acknowledge_payment(session_id, actor_id=context.user_id)
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc

    @router.post("/mentorship/sessions/{session_id}/rate", response_model=MentorshipSessionRecord)
    def rate_session(
        session_id: str,
        payload: SessionRatingRequest,
        request: Request,
        context: AuthContext = Depends(require_roles()),
    ) -> MentorshipSessionRecord:
        try:
            return get_payments(request).rate_session(
                session_id,
                actor_id=context.user_id,
                rating=payload.rating,
                feedback=payload.feedback,
            )
        except DOMAIN_ERRORS as exc:
            raise http_error(exc) from exc

    # Derived stats and change feed

    @router.get("/stats/users/{user_id}", response_model=UserStats)
    def user_stats(
        user_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles()),
    ) -> UserStats:
        return get_stats(request).get_stats(user_id)

    @router.get("/stats/platform", response_model=PlatformStats)
    def platform_stats(request: Request) -> PlatformStats:
        return get_stats(request).platform_stats()

    @router.get("/changes", response_model=list[ChangeEvent])
    def list_changes(
        request: Request,
        since: int = 0,
        collection: Optional[Collection] = None,
        limit: int = 200,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> list[ChangeEvent]:
        return get_store(request).list_changes(since=since, collection=collection, limit=limit)

    @router.post("/notifications/dispatch", response_model=DispatchResponse)
    def dispatch_notifications(
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> DispatchResponse:
        result = get_dispatcher(request).dispatch_pending()
        return DispatchResponse(
            delivered=result.delivered,
            retry_pending=result.retry_pending,
            failed=result.failed,
        )

    return router


app = create_app()
