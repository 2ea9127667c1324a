# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

from datetime import datetime
from typing import Any, Dict, List, Optional

import stripe
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import crud
from database.models import IdentityKind, SubscriptionStatus, UserRecord
from database.initialize import init_database
from database.session import get_db
from svc import session_verifier, webhook_intake
from svc.errors import (
    ActivationDowngradeRejected,
    InternalError,
    MissingFields,
    ProviderUnavailable,
    ReconciliationError,
)
from svc.identity_resolver import normalize_email, resolve
from svc.reconciler import ProfileFields, ReconciliationRequest, reconcile
from utils.auth import AUTH0, AuthContext, get_auth_context
from utils.logger import setup_logger
from utils.payments import PaymentProvider, build_payment_provider, stripe_get
from utils.settings import Settings, load_settings

settings = load_settings()
logger = setup_logger(settings.log_level)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class UserResponse(CamelModel):
    id: int
    provider_id: Optional[str] = None
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: str
    profile_picture_url: Optional[str] = None
    subscription_status: str
    identity_degraded: bool
    created_at: datetime
    updated_at: datetime


class UpdateAfterPaymentRequest(CamelModel):
    session_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    profile_picture_url: Optional[str] = None


class EmailRequest(CamelModel):
    email: Optional[str] = None


class UpdateStatusRequest(CamelModel):
    provider_id: Optional[str] = None
    status: Optional[str] = None


class CheckoutRequest(CamelModel):
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


app = FastAPI(title="taskboard-billing", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    init_database()
    app.state.payment_provider = build_payment_provider(settings)


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


def get_payment_provider(request: Request) -> PaymentProvider:
    provider = getattr(request.app.state, "payment_provider", None)
    if provider is None:
        provider = build_payment_provider(settings)
        request.app.state.payment_provider = provider
    return provider


def get_settings() -> Settings:
    return settings


def _ensure_stripe_configured(provider: PaymentProvider) -> None:
    if not provider.configured:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe API key is not configured.",
        )


def _serialize_user(user: UserRecord) -> Dict[str, Any]:
    return UserResponse.model_validate(user).model_dump(by_alias=True, mode="json")


def _success_url(config: Settings, url: Optional[str]) -> str:
    base_url = url or f"{config.frontend_base_url}/success"
    if "{CHECKOUT_SESSION_ID}" not in base_url:
        separator = "&" if "?" in base_url else "?"
        base_url = f"{base_url}{separator}session_id={{CHECKOUT_SESSION_ID}}"
    return base_url


def _read_store(action: str, func: Any, *args: Any) -> Any:
    try:
        return func(*args)
    except SQLAlchemyError as exc:
        logger.error("User store failure while %s: %s", action, exc)
        raise InternalError("Internal server error.") from exc


@app.get("/health")
async def health_check(provider: PaymentProvider = Depends(get_payment_provider)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "stripe_configured": provider.configured,
        "webhook_configured": bool(provider.webhook_secret),
        "auth0_configured": AUTH0.configured,
        "webhook_signature_failures": webhook_intake.signature_failures.count,
    }


@app.post("/users/update-after-payment")
def update_after_payment(
    payload: UpdateAfterPaymentRequest,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> Dict[str, Any]:
    """Complete the profile of a user who has just paid on the success page."""
    if not (payload.session_id and payload.first_name and payload.last_name and payload.username):
        raise MissingFields("Session ID, first name, last name, and username are required.")
    _ensure_stripe_configured(provider)

    session = session_verifier.require_paid(session_verifier.verify(provider, payload.session_id))
    identity = resolve(session)
    profile = ProfileFields(
        first_name=payload.first_name,
        last_name=payload.last_name,
        username=payload.username,
        profile_picture_url=payload.profile_picture_url,
    )
    user = reconcile(db, ReconciliationRequest(identity=identity, profile=profile), activate=True)

    logger.info("Profile completed for user %s after checkout session %s", user.id, session.session_id)
    return {"success": True, "user": _serialize_user(user)}


@app.post("/payments/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> JSONResponse:
    raw_body = await request.body()
    outcome = webhook_intake.handle(db, provider, raw_body, request.headers.get("stripe-signature"))
    logger.debug("Stripe webhook %s handled: %s", outcome.event_type, outcome.action)
    return JSONResponse(status_code=200, content={"received": True})


@app.get("/payments/session")
def fetch_session_data(
    session_id: Optional[str] = None,
    provider: PaymentProvider = Depends(get_payment_provider),
) -> Dict[str, Any]:
    if not session_id:
        raise MissingFields("Session ID is required.")
    _ensure_stripe_configured(provider)

    identity = resolve(session_verifier.verify(provider, session_id))
    return {"identityCorrelationId": identity.key.value, "kind": identity.key.kind.value}


@app.post("/payments/subscription-status")
def check_subscription_status(
    payload: EmailRequest,
    provider: PaymentProvider = Depends(get_payment_provider),
) -> Dict[str, bool]:
    """Ask the payment provider whether ``email`` has an active subscription."""
    email = normalize_email(payload.email)
    if not email:
        raise MissingFields("Email is required.")
    _ensure_stripe_configured(provider)

    try:
        customers = provider.list_customers(email)
        if not customers:
            return {"hasSubscription": False}
        customer_id = stripe_get(customers[0], "id")
        subscriptions = provider.list_subscriptions(customer_id, status="active")
    except stripe.StripeError as exc:
        logger.error("Error checking subscription status for %s: %s", email, exc)
        raise ProviderUnavailable("Failed to check subscription status.") from exc

    return {"hasSubscription": len(subscriptions) > 0}


@app.post("/users/status")
def check_user_status(payload: EmailRequest, db: Session = Depends(get_db)) -> Dict[str, str]:
    email = normalize_email(payload.email)
    if not email:
        raise MissingFields("Email is required.")

    user = _read_store("checking user status", crud.get_by_email, db, email)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return {"subscriptionStatus": user.subscription_status}


@app.post("/users/update-status")
def update_user_status(payload: UpdateStatusRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Set a user's subscription status by identity provider id.

    Only activation is possible; requests to deactivate an active subscriber
    are refused.
    """
    if not payload.provider_id or not payload.status:
        raise MissingFields("Missing providerId or status")

    try:
        requested = SubscriptionStatus(payload.status)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown status") from exc

    user = _read_store("updating user status", crud.find_by_key, db, IdentityKind.PROVIDER_ID, payload.provider_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if requested is SubscriptionStatus.INACTIVE:
        if user.is_active:
            logger.warning("Refused to deactivate active user %s", user.id)
            raise ActivationDowngradeRejected("Active subscriptions cannot be deactivated here.")
    else:
        user = _read_store("activating user", crud.activate_user, db, user.id)

    return {"message": "User status updated successfully", "user": _serialize_user(user)}


@app.get("/users")
def get_users(db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    return [_serialize_user(user) for user in _read_store("listing users", crud.list_users, db)]


@app.get("/users/me")
def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    user = _read_store("loading current user", crud.find_by_key, db, IdentityKind.PROVIDER_ID, auth.sub)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return _serialize_user(user)


@app.get("/users/{provider_id}")
def get_user(provider_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    user = _read_store("loading user", crud.find_by_key, db, IdentityKind.PROVIDER_ID, provider_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return _serialize_user(user)


@app.post("/payments/checkout")
def create_checkout_session(
    payload: CheckoutRequest,
    auth: AuthContext = Depends(get_auth_context),
    provider: PaymentProvider = Depends(get_payment_provider),
    config: Settings = Depends(get_settings),
) -> Dict[str, str]:
    _ensure_stripe_configured(provider)
    if not config.stripe_price_id:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe price is not configured.",
        )

    if not auth.email:
        logger.warning("User %s has no email in the access token; checkout will ask for one", auth.sub)

    try:
        session = provider.create_checkout_session(
            price_id=config.stripe_price_id,
            client_reference_id=auth.sub,
            success_url=_success_url(config, payload.success_url),
            cancel_url=payload.cancel_url or f"{config.frontend_base_url}/",
            customer_email=auth.email,
        )
    except stripe.StripeError as exc:
        logger.error("Stripe checkout session creation failed: %s", exc)
        raise ProviderUnavailable("Unable to initiate checkout session with Stripe.") from exc

    session_id = stripe_get(session, "id")
    logger.info("Created Stripe checkout session %s for user %s", session_id, auth.sub)
    return {"sessionId": session_id, "checkoutUrl": stripe_get(session, "url") or ""}
