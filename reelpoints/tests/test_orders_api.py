"""HTTP contract tests for order, points and health endpoints."""
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from reelpoints.core.config import settings
from reelpoints.core.database import FAMILY_TABLES
from reelpoints.main import app


@pytest.fixture
def client():
    return TestClient(app)


def auth(user_id):
    return {"X-User-Id": str(user_id)}


def bearer(user_id, **claims):
    payload = {"sub": str(user_id), **claims}
    return {"Authorization": f"Bearer {jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm='HS256')}"}


class TestChapterOrderStatus:
    def test_anonymous_free_chapter(self, client, seed):
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=0, video_url="https://cdn.example.com/free.mp4")

        resp = client.get(f"/shorts/{content_id}/chapters/{chapter_id}/order")

        assert resp.status_code == 200
        body = resp.json()
        assert body["hasPurchased"] is True
        assert body["isFree"] is True
        assert body["videoUrl"] == "https://cdn.example.com/free.mp4"
        assert "needsFreeOrder" not in body

    def test_logged_in_free_chapter_needs_free_order(self, client, seed):
        user_id = seed.user()
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=0)

        body = client.get(f"/shorts/{content_id}/chapters/{chapter_id}/order", headers=auth(user_id)).json()

        assert body["hasPurchased"] is False
        assert body["needsFreeOrder"] is True

    def test_required_bundle_reports_parent(self, client, seed):
        user_id = seed.user()
        content_id = seed.content(family="course")
        parent = seed.chapter(content_id, family="course", select_total_points=True, total_points=100)
        leaf = seed.chapter(content_id, family="course", parent_id=parent, points=20, video_url="secret.mp4")

        body = client.get(f"/courses/{content_id}/chapters/{leaf}/order", headers=auth(user_id)).json()

        assert body["hasPurchased"] is False
        assert body["points"] == 100
        assert body["scope"] == "parent"
        assert body["parentChapterId"] == parent
        assert body["message"]
        assert "videoUrl" not in body

    def test_status_check_never_writes(self, client, seed, db_session):
        user_id = seed.user()
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=0)

        client.get(f"/shorts/{content_id}/chapters/{chapter_id}/order", headers=auth(user_id))

        assert db_session.execute(FAMILY_TABLES["short"].entitlements.select()).fetchall() == []

    def test_unknown_family_is_404(self, client):
        resp = client.get("/movies/1/chapters/1/order")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_mismatched_chapter_is_404(self, client, seed):
        content_a = seed.content()
        content_b = seed.content()
        chapter_b = seed.chapter(content_b, points=10)

        resp = client.get(f"/shorts/{content_a}/chapters/{chapter_b}/order")

        assert resp.status_code == 404
        body = resp.json()
        assert body["error"]["request_id"] == resp.headers["x-request-id"]


class TestChapterPurchase:
    def test_purchase_flow(self, client, seed):
        user_id = seed.user(points=50)
        content_id = seed.content()
        chapter_a = seed.chapter(content_id, points=30, video_url="a.mp4")
        chapter_b = seed.chapter(content_id, points=30)
        url_a = f"/shorts/{content_id}/chapters/{chapter_a}/order"

        first = client.post(url_a, headers=auth(user_id))
        assert first.status_code == 200
        body = first.json()
        assert body["pointsCharged"] == 30
        assert body["alreadyOwned"] is False
        assert body["balance"] == 20
        assert body["scope"] == "leaf"
        assert body["videoUrl"] == "a.mp4"

        second = client.post(url_a, headers=auth(user_id)).json()
        assert second["orderId"] == body["orderId"]
        assert second["pointsCharged"] == 0
        assert second["alreadyOwned"] is True

        status = client.get(url_a, headers=auth(user_id)).json()
        assert status["hasPurchased"] is True
        assert status["videoUrl"] == "a.mp4"

        third = client.post(f"/shorts/{content_id}/chapters/{chapter_b}/order", headers=auth(user_id))
        assert third.status_code == 402
        error = third.json()["error"]
        assert error["code"] == "insufficient_points"
        assert error["details"] == {"required": 30, "balance": 20, "shortfall": 10}

    def test_purchase_requires_login(self, client, seed):
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=10)

        resp = client.post(f"/shorts/{content_id}/chapters/{chapter_id}/order")

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"

    def test_bearer_token_identity(self, client, seed):
        user_id = seed.user(points=40)
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=15)

        resp = client.post(f"/shorts/{content_id}/chapters/{chapter_id}/order", headers=bearer(user_id))

        assert resp.status_code == 200
        assert resp.json()["balance"] == 25

    def test_expired_token_rejected(self, client, seed):
        user_id = seed.user(points=40)
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=15)
        expired = datetime.now(timezone.utc) - timedelta(minutes=5)

        resp = client.post(
            f"/shorts/{content_id}/chapters/{chapter_id}/order",
            headers=bearer(user_id, exp=expired),
        )

        assert resp.status_code == 401

    def test_unknown_user_rejected(self, client, seed):
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=15)
        resp = client.post(f"/shorts/{content_id}/chapters/{chapter_id}/order", headers=auth(98765))
        assert resp.status_code == 401

    def test_header_auth_can_be_disabled(self, client, seed, monkeypatch):
        monkeypatch.setattr(settings, "ALLOW_HEADER_AUTH", False)
        user_id = seed.user(points=40)
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=15)

        resp = client.post(f"/shorts/{content_id}/chapters/{chapter_id}/order", headers=auth(user_id))

        assert resp.status_code == 401

    def test_owner_purchase_over_http(self, client, seed):
        owner_id = seed.user(points=0)
        content_id = seed.content(uploader_id=owner_id)
        chapter_id = seed.chapter(content_id, points=30)

        body = client.post(f"/shorts/{content_id}/chapters/{chapter_id}/order", headers=auth(owner_id)).json()

        assert body["pointsCharged"] == 0
        assert body["balance"] == 0


class TestContentOrder:
    def test_content_purchase(self, client, seed):
        user_id = seed.user(points=300)
        content_id = seed.content(family="course", one_time_payment=True, one_time_point=200)

        before = client.get(f"/courses/{content_id}/order", headers=auth(user_id)).json()
        assert before == {"hasPurchased": False, "oneTimePayment": True, "points": 200}

        bought = client.post(f"/courses/{content_id}/order", headers=auth(user_id))
        assert bought.status_code == 200
        assert bought.json()["scope"] == "content"
        assert bought.json()["balance"] == 100

        after = client.get(f"/courses/{content_id}/order", headers=auth(user_id)).json()
        assert after["hasPurchased"] is True

    def test_content_without_one_time_price(self, client, seed):
        user_id = seed.user(points=300)
        content_id = seed.content()

        resp = client.post(f"/shorts/{content_id}/order", headers=auth(user_id))

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_anonymous_status(self, client, seed):
        content_id = seed.content(one_time_payment=True, one_time_point=50)
        assert client.get(f"/shorts/{content_id}/order").json()["hasPurchased"] is False

    def test_missing_content(self, client):
        assert client.get("/shorts/999/order").status_code == 404

    def test_my_orders(self, client, seed):
        user_id = seed.user(points=100)
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=10)
        client.post(f"/shorts/{content_id}/chapters/{chapter_id}/order", headers=auth(user_id))

        body = client.get("/shorts/orders/me", headers=auth(user_id)).json()

        assert body["count"] == 1
        assert body["orders"][0]["chapterId"] == chapter_id
        assert body["orders"][0]["pointsCharged"] == 10
        assert client.get("/courses/orders/me", headers=auth(user_id)).json()["count"] == 0


class TestPoints:
    def test_my_points(self, client, seed):
        user_id = seed.user(points=100)
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=10)
        client.post(f"/shorts/{content_id}/chapters/{chapter_id}/order", headers=auth(user_id))

        body = client.get("/v1/points/me", headers=auth(user_id)).json()

        assert body["balance"] == 90
        assert body["count"] == 1
        assert body["entries"][0]["eventType"] == "SPEND"
        assert body["entries"][0]["amount"] == -10

    def test_admin_adjustment(self, client, seed):
        user_id = seed.user(points=10)

        resp = client.put(
            f"/admin/users/{user_id}/points",
            json={"change": 25, "reason": "support credit"},
            headers={"X-Admin-Key": "test-admin-key"},
        )

        assert resp.status_code == 200
        assert resp.json()["balance"] == 35

    def test_admin_adjustment_cannot_go_negative(self, client, seed):
        user_id = seed.user(points=10)

        resp = client.put(
            f"/admin/users/{user_id}/points",
            json={"change": -11, "reason": "clawback"},
            headers={"X-Admin-Key": "test-admin-key"},
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["details"] == {"balance": 10, "change": -11}

    def test_admin_key_required(self, client, seed):
        user_id = seed.user(points=10)

        resp = client.put(
            f"/admin/users/{user_id}/points",
            json={"change": 5, "reason": "x"},
            headers={"X-Admin-Key": "wrong"},
        )

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"


ADMIN = {"X-Admin-Key": "test-admin-key"}


class TestAdminOrders:
    def test_lists_all_users_with_total(self, client, seed):
        alice, bob = seed.user(), seed.user()
        content_id = seed.content()
        first = seed.chapter(content_id, points=10)
        second = seed.chapter(content_id, points=10)
        seed.entitlement(alice, content_id, first, points_charged=10)
        seed.entitlement(bob, content_id, first, points_charged=10)
        seed.entitlement(bob, content_id, second, points_charged=10)

        body = client.get("/admin/shorts/orders", headers=ADMIN).json()

        assert body["total"] == 3
        assert {order["userId"] for order in body["orders"]} == {alice, bob}
        assert client.get("/admin/courses/orders", headers=ADMIN).json()["total"] == 0

    def test_filters(self, client, seed):
        alice, bob = seed.user(), seed.user()
        content_id = seed.content()
        other_content = seed.content()
        first = seed.chapter(content_id, points=10)
        second = seed.chapter(content_id, points=10)
        seed.entitlement(alice, content_id, first)
        seed.entitlement(bob, content_id, first)
        seed.entitlement(bob, content_id, second)
        seed.entitlement(bob, other_content)

        by_user = client.get(f"/admin/shorts/orders?user_id={bob}", headers=ADMIN).json()
        by_content = client.get(f"/admin/shorts/orders?content_id={content_id}", headers=ADMIN).json()
        by_chapter = client.get(
            f"/admin/shorts/orders?content_id={content_id}&chapter_id={first}", headers=ADMIN
        ).json()

        assert by_user["total"] == 3
        assert by_content["total"] == 3
        assert by_chapter["total"] == 2
        assert {order["chapterId"] for order in by_chapter["orders"]} == {first}

    def test_pagination_keeps_total(self, client, seed):
        user_id = seed.user()
        content_id = seed.content()
        for _ in range(3):
            seed.entitlement(user_id, content_id, seed.chapter(content_id, points=5))

        body = client.get("/admin/shorts/orders?limit=2&offset=2", headers=ADMIN).json()

        assert body["total"] == 3
        assert len(body["orders"]) == 1
        assert (body["limit"], body["offset"]) == (2, 2)

    def test_requires_admin_key(self, client, seed):
        resp = client.get("/admin/shorts/orders", headers={"X-Admin-Key": "wrong"})

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert client.get("/admin/shorts/orders", headers=auth(seed.user())).status_code == 403


class TestOps:
    def test_healthz(self, client):
        assert client.get("/healthz").json() == {"status": "ok"}

    def test_readyz(self, client):
        assert client.get("/readyz").status_code == 200

    def test_metrics_export(self, client, seed):
        user_id = seed.user(points=100)
        content_id = seed.content()
        chapter_id = seed.chapter(content_id, points=10)
        client.post(f"/shorts/{content_id}/chapters/{chapter_id}/order", headers=auth(user_id))

        text = client.get("/metrics").text

        assert 'purchases_total{family="short",scope="leaf",outcome="charged"} 1.0' in text
        assert "http_requests_total" in text
