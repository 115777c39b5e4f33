import pytest
from fastapi.testclient import TestClient

from gateflow.services import coupon_reservations
from gateflow.services.coupon_reservations import CouponStorageError


def test_http_error_shape(client: TestClient) -> None:
    res = client.get("/api/does-not-exist")
    assert res.status_code == 404
    body = res.json()
    assert set(body.keys()) == {"detail", "code"}
    assert body["detail"] == "Not Found"


def test_validation_error_shape(client: TestClient) -> None:
    res = client.post("/api/coupons/verify", json={"code": "SAVE10"})
    assert res.status_code == 422
    body = res.json()
    assert body["code"] == "validation_error"
    assert any("productId" in err["loc"] for err in body["detail"])


def test_storage_outage_is_503(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    async def unavailable(session, **kwargs):
        raise CouponStorageError("verify")

    monkeypatch.setattr(coupon_reservations, "verify", unavailable)

    res = client.post("/api/coupons/verify", json={"code": "SAVE10", "productId": "prod-1", "email": "a@example.com"})

    assert res.status_code == 503
    assert res.json() == {"detail": "Coupon service temporarily unavailable", "code": "coupon_service_unavailable"}
