"""
Integration tests for the payment API endpoints.

Tests the full request/response cycle against the in-memory datastore with
the Stripe client mocked.
"""

import pytest

from billing_sync.domain.subscription import SubscriptionStatus, SubscriptionWrite
from billing_sync.infrastructure.payments.stripe_service import Found, NotFound, TransientError

TEST_USER_ID = "00000000-0000-0000-0000-000000000001"
OTHER_USER_ID = "00000000-0000-0000-0000-000000000002"


async def _seed(repo, external_id="sub_123", user_id=TEST_USER_ID, status=SubscriptionStatus.ACTIVE, plan_id="pro"):
    return await repo.upsert(SubscriptionWrite(
        external_subscription_id=external_id,
        user_id=user_id,
        plan_id=plan_id,
        status=status,
        current_period_start=1700000000,
        current_period_end=1702592000,
    ))


class TestHealthEndpoints:

    @pytest.mark.asyncio
    async def test_health_endpoint(self, async_client):
        response = await async_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "billing-sync"}


class TestCurrentSubscription:

    @pytest.mark.asyncio
    async def test_free_limits_without_subscription(self, async_client):
        response = await async_client.get("/api/payment/subscription")

        assert response.status_code == 200
        data = response.json()
        assert data["subscription"] is None
        assert data["plan_id"] == "free"
        assert data["max_funnels"] == 1

    @pytest.mark.asyncio
    async def test_active_subscription_with_plan_limits(self, async_client, subscription_repo):
        await _seed(subscription_repo)

        response = await async_client.get("/api/payment/subscription")

        data = response.json()
        assert data["plan_id"] == "pro"
        assert data["max_funnels"] == 6
        assert data["subscription"]["external_subscription_id"] == "sub_123"
        assert data["subscription"]["status"] == "active"

    @pytest.mark.asyncio
    async def test_canceled_subscription_is_not_current(self, async_client, subscription_repo):
        await _seed(subscription_repo, status=SubscriptionStatus.CANCELED)

        response = await async_client.get("/api/payment/subscription")

        assert response.json()["plan_id"] == "free"


class TestCancelSubscription:

    @pytest.mark.asyncio
    async def test_no_active_subscription(self, async_client):
        response = await async_client.post("/api/payment/cancel-subscription")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_immediately(self, async_client, subscription_repo, mock_provider):
        await _seed(subscription_repo)
        mock_provider.cancel_subscription.return_value = Found({"id": "sub_123", "status": "canceled"})

        response = await async_client.post("/api/payment/cancel-subscription")

        assert response.status_code == 200
        assert response.json()["message"] == "Subscription canceled"
        stored = await subscription_repo.find_by_external_id("sub_123")
        assert stored.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_cancel_succeeds_when_stripe_is_down(self, async_client, subscription_repo, mock_provider):
        await _seed(subscription_repo)
        mock_provider.cancel_subscription.return_value = TransientError("down", "cancel_subscription")

        response = await async_client.post("/api/payment/cancel-subscription")

        assert response.status_code == 200
        stored = await subscription_repo.find_by_external_id("sub_123")
        assert stored.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_cancel_at_period_end(self, async_client, subscription_repo, mock_provider):
        await _seed(subscription_repo)
        mock_provider.update_subscription.return_value = Found({"id": "sub_123"})

        response = await async_client.post(
            "/api/payment/cancel-subscription",
            json={"at_period_end": True},
        )

        assert response.status_code == 200
        assert "end of the current period" in response.json()["message"]
        stored = await subscription_repo.find_by_external_id("sub_123")
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.cancel_at_period_end is True


class TestAdminCancel:

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, async_client, subscription_repo):
        await _seed(subscription_repo, user_id=OTHER_USER_ID)

        response = await async_client.post(
            "/api/payment/admin/cancel-subscription",
            json={"subscription_id": "sub_123"},
        )

        assert response.status_code == 403
        stored = await subscription_repo.find_by_external_id("sub_123")
        assert stored.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_admin_cancels_by_user(self, async_client, subscription_repo, as_caller, mock_provider):
        as_caller(role="admin")
        await _seed(subscription_repo, "sub_a", user_id=OTHER_USER_ID)
        await _seed(subscription_repo, "sub_b", user_id=OTHER_USER_ID, status=SubscriptionStatus.PAST_DUE)

        response = await async_client.post(
            "/api/payment/admin/cancel-subscription",
            json={"user_id": OTHER_USER_ID},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Canceled 2 subscription(s)"
        mock_provider.cancel_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_admin_unknown_subscription(self, async_client, as_caller):
        as_caller(role="admin")

        response = await async_client.post(
            "/api/payment/admin/cancel-subscription",
            json={"subscription_id": "sub_unknown"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["message"] == "No matching subscription found"

    @pytest.mark.asyncio
    async def test_admin_requires_an_identifier(self, async_client, as_caller):
        as_caller(role="admin")

        response = await async_client.post("/api/payment/admin/cancel-subscription", json={})

        assert response.status_code == 400


class TestDiagnostic:

    @pytest.mark.asyncio
    async def test_own_subscription(self, async_client, subscription_repo, mock_provider, make_subscription):
        await _seed(subscription_repo)
        mock_provider.retrieve_subscription.return_value = Found(make_subscription())

        response = await async_client.get("/api/payment/subscription/diagnostic")

        assert response.status_code == 200
        assert response.json()["action"] == "none"

    @pytest.mark.asyncio
    async def test_other_users_subscription_is_hidden(self, async_client, subscription_repo):
        await _seed(subscription_repo, user_id=OTHER_USER_ID)

        response = await async_client.get(
            "/api/payment/subscription/diagnostic",
            params={"subscription_id": "sub_123"},
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_other_user_id_requires_admin(self, async_client):
        response = await async_client.get(
            "/api/payment/subscription/diagnostic",
            params={"user_id": OTHER_USER_ID},
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_repairs_other_user(self, async_client, subscription_repo, mock_provider, as_caller):
        as_caller(role="admin")
        await _seed(subscription_repo, user_id=OTHER_USER_ID)
        mock_provider.retrieve_subscription.return_value = NotFound("sub_123")

        response = await async_client.get(
            "/api/payment/subscription/diagnostic",
            params={"user_id": OTHER_USER_ID},
        )

        assert response.json()["action"] == "corrected"
        stored = await subscription_repo.find_by_external_id("sub_123")
        assert stored.status == SubscriptionStatus.CANCELED


class TestVerifySession:

    @pytest.mark.asyncio
    async def test_existing_subscription(self, async_client, subscription_repo, mock_provider):
        await _seed(subscription_repo)
        mock_provider.retrieve_checkout_session.return_value = Found({
            "id": "cs_123",
            "status": "complete",
            "subscription": "sub_123",
            "customer": "cus_123",
            "metadata": {"userId": TEST_USER_ID, "planId": "pro"},
        })

        response = await async_client.get("/api/payment/verify-session/cs_123")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["plan_id"] == "pro"

    @pytest.mark.asyncio
    async def test_session_of_another_user(self, async_client, mock_provider):
        mock_provider.retrieve_checkout_session.return_value = Found({
            "id": "cs_123",
            "status": "complete",
            "subscription": "sub_123",
            "metadata": {"userId": OTHER_USER_ID, "planId": "pro"},
        })

        response = await async_client.get("/api/payment/verify-session/cs_123")

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_stripe_unreachable(self, async_client, mock_provider):
        mock_provider.retrieve_checkout_session.return_value = TransientError("down")

        response = await async_client.get("/api/payment/verify-session/cs_123")

        assert response.status_code == 500
