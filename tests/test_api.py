import logging

import stripe

from conftest import checkout_completed_event, count_users, sign_payload
from database import crud
from database.models import IdentityKind, SubscriptionStatus
from main import app, get_settings
from utils.auth import AuthContext, get_auth_context
from utils.settings import Settings

PROFILE = {"firstName": "Ada", "lastName": "Lovelace", "username": "ada"}


def _complete_profile(client, session_id="sess_1", **overrides):
    body = {"sessionId": session_id, **PROFILE, **overrides}
    return client.post("/users/update-after-payment", json=body)


def _deliver(client, body, signature=None):
    headers = {"Stripe-Signature": signature if signature is not None else sign_payload(body)}
    return client.post("/payments/webhook", content=body, headers=headers)


class TestUpdateAfterPayment:
    def test_scenario_a_creates_active_user_keyed_by_reference(self, client, provider, db_session):
        provider.add_session("sess_1", client_reference_id="u42")

        response = _complete_profile(client)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["user"]["providerId"] == "u42"
        assert data["user"]["firstName"] == "Ada"
        assert data["user"]["username"] == "ada"
        assert data["user"]["subscriptionStatus"] == "active"
        assert count_users(db_session) == 1

    def test_retried_submission_is_idempotent(self, client, provider, db_session):
        provider.add_session("sess_1", client_reference_id="u42", email="ada@example.com")

        first = _complete_profile(client).json()["user"]
        second = _complete_profile(client).json()["user"]

        first.pop("updatedAt")
        second.pop("updatedAt")
        assert first == second
        assert count_users(db_session) == 1

    def test_retry_without_customer_email_is_idempotent(self, client, provider, db_session):
        provider.add_session("sess_1", client_reference_id="u42")

        first = _complete_profile(client)
        second = _complete_profile(client)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["user"]["id"] == first.json()["user"]["id"]
        assert second.json()["user"]["email"] == first.json()["user"]["email"]
        assert count_users(db_session) == 1

    def test_scenario_c_unpaid_session_is_rejected(self, client, provider, db_session):
        provider.add_session("sess_unpaid", payment_status="unpaid", client_reference_id="u42")

        response = _complete_profile(client, session_id="sess_unpaid")

        assert response.status_code == 400
        assert response.json()["code"] == "InvalidSession"
        assert count_users(db_session) == 0

    def test_unknown_session_is_rejected(self, client, db_session):
        response = _complete_profile(client, session_id="sess_nope")

        assert response.status_code == 400
        assert response.json()["code"] == "SessionNotFound"

    def test_missing_fields_are_rejected_before_provider_call(self, client, provider):
        response = client.post("/users/update-after-payment", json={"sessionId": "sess_1", "firstName": "Ada"})

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert provider.retrieve_calls == []

    def test_provider_outage_is_a_server_error(self, client, provider, db_session):
        provider.error = stripe.APIConnectionError("timed out")

        response = _complete_profile(client)

        assert response.status_code == 502
        assert response.json()["code"] == "ProviderUnavailable"
        assert count_users(db_session) == 0

    def test_session_without_correlation_is_rejected(self, client, provider, db_session):
        provider.add_session("sess_1")

        response = _complete_profile(client)

        assert response.status_code == 400
        assert response.json()["code"] == "MissingCorrelation"
        assert count_users(db_session) == 0


class TestWebhook:
    def test_scenario_b_webhook_reaffirms_user_when_email_was_stored(self, client, provider, db_session):
        provider.add_session("sess_1", client_reference_id="u42", email="ada@example.com")
        user_id = _complete_profile(client).json()["user"]["id"]

        body = checkout_completed_event(email="ada@example.com")
        response = _deliver(client, body)

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert count_users(db_session) == 1
        user = crud.get_by_email(db_session, "ada@example.com")
        assert user.id == user_id
        assert user.provider_id == "u42"
        assert user.subscription_status == SubscriptionStatus.ACTIVE.value

    def test_scenario_b_without_stored_email_creates_email_keyed_record(self, client, provider, db_session):
        provider.add_session("sess_1", client_reference_id="u42")
        _complete_profile(client)

        _deliver(client, checkout_completed_event(email="ada@example.com"))

        assert count_users(db_session) == 2
        assert crud.get_by_email(db_session, "ada@example.com").identity_kind == IdentityKind.EMAIL.value

    def test_webhook_first_then_form_links_one_record(self, client, provider, db_session):
        _deliver(client, checkout_completed_event(email="ada@example.com"))
        provider.add_session("sess_1", client_reference_id="u42", email="ada@example.com")

        response = _complete_profile(client)

        assert response.status_code == 200
        assert response.json()["user"]["providerId"] == "u42"
        assert response.json()["user"]["identityDegraded"] is False
        assert count_users(db_session) == 1

    def test_scenario_d_malformed_event_is_acknowledged(self, client, db_session, caplog):
        response = _deliver(client, checkout_completed_event(email=None))

        assert response.status_code == 200
        assert count_users(db_session) == 0
        diagnostics = [r for r in caplog.records if r.levelno >= logging.WARNING]
        assert len(diagnostics) == 1
        assert "no customer email" in diagnostics[0].getMessage()

    def test_redelivered_event_is_acknowledged_twice(self, client, provider, db_session):
        provider.add_session("sess_1", client_reference_id="u42", email="ada@example.com")
        _complete_profile(client)
        body = checkout_completed_event(email="ada@example.com")
        signature = sign_payload(body)

        first = _deliver(client, body, signature=signature)
        second = _deliver(client, body, signature=signature)

        assert first.status_code == 200
        assert second.status_code == 200
        assert count_users(db_session) == 1
        assert crud.get_by_email(db_session, "ada@example.com").username == "ada"

    def test_invalid_signature_is_rejected_without_mutation(self, client, db_session):
        body = checkout_completed_event()

        response = _deliver(client, body, signature="t=1,v1=bad")

        assert response.status_code == 400
        assert response.json()["code"] == "SignatureInvalid"
        assert count_users(db_session) == 0

    def test_missing_signature_header_is_rejected(self, client, db_session):
        response = client.post("/payments/webhook", content=checkout_completed_event())

        assert response.status_code == 400
        assert count_users(db_session) == 0

    def test_unhandled_event_type_is_acknowledged(self, client, db_session):
        response = _deliver(client, checkout_completed_event(event_type="customer.created"))

        assert response.status_code == 200
        assert count_users(db_session) == 0


class TestSessionLookup:
    def test_returns_reference_id(self, client, provider):
        provider.add_session("sess_1", client_reference_id="u42", payment_status="unpaid")

        response = client.get("/payments/session", params={"session_id": "sess_1"})

        assert response.status_code == 200
        assert response.json()["identityCorrelationId"] == "u42"

    def test_requires_session_id(self, client):
        response = client.get("/payments/session")

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["code"] == "MissingFields"

    def test_unknown_session(self, client):
        assert client.get("/payments/session", params={"session_id": "nope"}).status_code == 400


class TestSubscriptionStatus:
    def test_active_subscription_found_at_provider(self, client, provider):
        provider.customers["ada@example.com"] = [{"id": "cus_1"}]
        provider.subscriptions["cus_1"] = [{"id": "sub_1", "status": "active"}]

        response = client.post("/payments/subscription-status", json={"email": "ada@example.com"})

        assert response.json() == {"hasSubscription": True}

    def test_unknown_customer_has_no_subscription(self, client):
        response = client.post("/payments/subscription-status", json={"email": "nobody@example.com"})

        assert response.json() == {"hasSubscription": False}

    def test_provider_failure(self, client, provider):
        provider.error = stripe.AuthenticationError("bad key")

        response = client.post("/payments/subscription-status", json={"email": "ada@example.com"})

        assert response.status_code == 502


class TestUserEndpoints:
    def _seed(self, provider, client):
        provider.add_session("sess_1", client_reference_id="u42", email="ada@example.com")
        return _complete_profile(client).json()["user"]

    def test_user_status_by_email(self, client, provider):
        self._seed(provider, client)

        response = client.post("/users/status", json={"email": "ADA@example.com"})

        assert response.json() == {"subscriptionStatus": "active"}

    def test_user_status_unknown_email(self, client):
        assert client.post("/users/status", json={"email": "x@example.com"}).status_code == 404

    def test_list_and_get_users(self, client, provider):
        seeded = self._seed(provider, client)

        assert [user["id"] for user in client.get("/users").json()] == [seeded["id"]]
        assert client.get("/users/u42").json()["email"] == "ada@example.com"
        assert client.get("/users/u404").status_code == 404

    def test_update_status_refuses_downgrade(self, client, provider, db_session):
        self._seed(provider, client)

        response = client.post("/users/update-status", json={"providerId": "u42", "status": "inactive"})

        assert response.status_code == 409
        assert crud.find_by_key(db_session, IdentityKind.PROVIDER_ID, "u42").is_active

    def test_update_status_activates(self, client, db_session):
        crud.upsert(
            db_session,
            IdentityKind.PROVIDER_ID,
            "u7",
            {"email": "u7@example.com", "username": "seven"},
            activate=False,
        )

        response = client.post("/users/update-status", json={"providerId": "u7", "status": "active"})

        assert response.status_code == 200
        assert response.json()["user"]["subscriptionStatus"] == "active"

    def test_update_status_validation(self, client):
        assert client.post("/users/update-status", json={"providerId": "u42"}).status_code == 400
        assert client.post("/users/update-status", json={"providerId": "u42", "status": "paused"}).status_code == 400
        assert client.post("/users/update-status", json={"providerId": "u42", "status": "active"}).status_code == 404


class TestAuthenticatedEndpoints:
    def test_checkout_carries_identity_provider_id(self, client, provider):
        app.dependency_overrides[get_auth_context] = lambda: AuthContext(
            token="t", sub="auth0|u42", email="ada@example.com"
        )
        app.dependency_overrides[get_settings] = lambda: Settings(stripe_price_id="price_123")

        response = client.post("/payments/checkout", json={})

        assert response.status_code == 200
        assert response.json()["sessionId"] == "cs_test_created"
        created = provider.sessions["cs_test_created"]
        assert created["client_reference_id"] == "auth0|u42"
        assert created["customer_email"] == "ada@example.com"
        assert "session_id={CHECKOUT_SESSION_ID}" in created["success_url"]

    def test_checkout_requires_price(self, client):
        app.dependency_overrides[get_auth_context] = lambda: AuthContext(token="t", sub="auth0|u42", email=None)
        app.dependency_overrides[get_settings] = lambda: Settings(stripe_price_id=None)

        assert client.post("/payments/checkout", json={}).status_code == 500

    def test_me_requires_bearer_token(self, client):
        assert client.get("/users/me").status_code == 401

    def test_me_returns_callers_record(self, client, provider):
        provider.add_session("sess_1", client_reference_id="auth0|u42", email="ada@example.com")
        _complete_profile(client)
        app.dependency_overrides[get_auth_context] = lambda: AuthContext(token="t", sub="auth0|u42", email=None)

        response = client.get("/users/me")

        assert response.status_code == 200
        assert response.json()["providerId"] == "auth0|u42"


def test_health_reports_configuration(client):
    data = client.get("/health").json()

    assert data["status"] == "ok"
    assert data["webhook_configured"] is True
