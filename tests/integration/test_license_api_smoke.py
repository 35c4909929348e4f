"""Smoke tests for the license service HTTP API.

Runs the real app with in-memory tables; only the upstream store and the OCR
backend are replaced.
"""

import json
from pathlib import Path
from unittest.mock import MagicMock
from urllib.parse import quote

import pytest
import yaml
from fastapi.testclient import TestClient

from iap_license import __version__
from iap_license.config import Config
from iap_license.main import create_app
from iap_license.models import SubscriptionLifecycle, VerifiedPurchase
from iap_license.repositories.quota_ledger import QuotaConsolidationError
from iap_license.services.purchase_verifier import PurchaseVerifier, UpstreamUnavailableError
from iap_license.services.receipt_scanner import CannedScanner
from iap_license.utils.clock import Clock

CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "license.yaml"
PACKAGE = "com.autoplus.divisibill"
TOKEN_HEADER = "divisibill-token"
PURCHASE_HEADER = "divisibill-android-purchase"
RECEIPT = b"\xff\xd8" + b"\x00" * 2048


def claim(order_id="GPA.1", product_id="ocr.calls", account_id="acct-1", token=None) -> dict:
    return {
        "packageName": PACKAGE,
        "orderId": order_id,
        "productId": product_id,
        "purchaseToken": token or f"play-token-{order_id}",
        "obfuscatedAccountId": account_id,
        "quantity": 1,
        "acknowledged": True,
    }


def purchase_header(body: dict) -> dict:
    return {PURCHASE_HEADER: quote(json.dumps(body))}


@pytest.fixture
def verifier():
    """Upstream store that confirms whatever order it is asked about."""
    verifier = MagicMock(spec=PurchaseVerifier)
    verifier.has_credential = False
    verifier.verify.side_effect = lambda package, product, token, is_sub, order_id=None: VerifiedPurchase(
        order_id=order_id,
        acknowledged=True,
        lifecycle_state=SubscriptionLifecycle.ACTIVE if is_sub else None,
        purchase_state=None if is_sub else 0,
    )
    return verifier


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def app(verifier, clock):
    return create_app(Config(str(CONFIG_PATH)), verifier=verifier, scanner=CannedScanner(), clock=clock)


@pytest.fixture
def client(app):
    return TestClient(app)


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Request-ID"]


def test_version(client, app):
    body = client.get("/version").json()

    assert body["version"] == __version__ == app.version
    assert body["package_name"] == PACKAGE
    assert body["play_credential"] == "Missing"
    assert body["scanner"] == "Present"


class TestVerify:
    """Test POST /verify."""

    def test_scan_license_verified_and_recorded(self, client, app):
        response = client.post("/verify", json=claim())

        assert response.status_code == 200
        assert response.json() == {"scans_left": 30, "order_id": "GPA.1"}
        assert TOKEN_HEADER not in response.headers
        assert app.state.ledger.find_record("GPA.1") is not None

    def test_pro_license_gets_token(self, client):
        response = client.post("/verify?subscription=1", json=claim(product_id="pro.subscription"))

        assert response.status_code == 200
        assert len(response.headers[TOKEN_HEADER]) == 50

    def test_wrong_package(self, client):
        body = {**claim(), "packageName": "com.example.other"}
        response = client.post("/verify", json=body)

        assert response.status_code == 400
        assert response.json()["detail"]["error"]["status"] == "INVALID_ARGUMENT"

    def test_upstream_unavailable(self, client, verifier):
        verifier.verify.side_effect = UpstreamUnavailableError("timed out")

        response = client.post("/verify", json=claim())

        assert response.status_code == 503
        assert response.json()["detail"]["error"]["message"] == "Not authorized: upstream_unavailable"

    def test_stolen_purchase_token(self, client):
        client.post("/verify", json=claim(order_id="GPA.1", token="play-token-real"))

        response = client.post("/verify", json=claim(order_id="GPA.1", token="play-token-other"))

        assert response.status_code == 403

    def test_second_purchase_consolidates_quota(self, client, app):
        client.post("/verify", json=claim(order_id="GPA.1"))
        response = client.post("/verify", json=claim(order_id="GPA.2"))

        assert response.json()["scans_left"] == 60
        assert app.state.ledger.find_record("GPA.1").scans_left == 0

    def test_integrity_error_is_500(self, client, app):
        app.state.authorizer = MagicMock()
        app.state.authorizer.verify_license.side_effect = QuotaConsolidationError("gave up")

        response = client.post("/verify", json=claim())

        assert response.status_code == 500
        assert response.json() == {
            "error": "ledger_integrity_error",
            "message": "gave up",
            "function": "verify",
        }


class TestRecordPurchase:
    def test_record(self, client):
        response = client.post("/recordpurchase", json=claim())
        assert response.json() == {"recorded": True, "order_id": "GPA.1"}

    def test_record_twice_rejected(self, client):
        client.post("/recordpurchase", json=claim())
        assert client.post("/recordpurchase", json=claim()).status_code == 400

    def test_account_id_required(self, client):
        assert client.post("/recordpurchase", json=claim(account_id=None)).status_code == 400


class TestDataWithToken:
    """Test per-user data routes authorized by a bearer token."""

    @pytest.fixture
    def token(self, client):
        response = client.post("/verify", json=claim(order_id="GPA.9", product_id="pro.upgrade"))
        return response.headers[TOKEN_HEADER]

    def test_no_credentials(self, client):
        assert client.get("/meal/20240301120000").status_code == 401

    def test_unknown_token(self, client):
        response = client.get("/meal/20240301120000", headers={TOKEN_HEADER: "x" * 50})
        assert response.status_code == 401

    def test_meal_round_trip(self, client, token, verifier):
        verifier.verify.reset_mock()
        headers = {TOKEN_HEADER: token}

        put = client.put(
            "/meal/20240301120000", data={"data": '{"venue":"Cafe"}', "summary": "Cafe"}, headers=headers
        )
        assert put.status_code == 200

        get = client.get("/meal/20240301120000", headers=headers)
        assert get.status_code == 200
        assert get.text == '{"venue":"Cafe"}'

        listed = client.get("/meals?top=10", headers=headers).json()
        assert listed == [
            {"name": "20240301120000", "data_length": 16, "summary": "Cafe", "has_remote_image": False}
        ]

        assert client.delete("/meal/20240301120000", headers=headers).status_code == 200
        assert client.get("/meal/20240301120000", headers=headers).status_code == 404
        verifier.verify.assert_not_called()

    def test_bad_item_name(self, client, token):
        response = client.put("/personlist/yesterday", data={"data": "[]"}, headers={TOKEN_HEADER: token})
        assert response.status_code == 400

    def test_meal_needs_summary(self, client, token):
        response = client.put("/meal/20240301120000", data={"data": "{}"}, headers={TOKEN_HEADER: token})
        assert response.status_code == 400

    def test_image_round_trip(self, client, token):
        headers = {TOKEN_HEADER: token}
        files = {"image": ("receipt.jpg", RECEIPT, "image/jpeg")}

        assert client.put("/image/20240301120000", files=files, headers=headers).status_code == 200

        got = client.get("/image/20240301120000", headers=headers)
        assert got.content == RECEIPT
        assert got.headers["content-type"] == "image/jpeg"

        assert client.delete("/image/20240301120000", headers=headers).status_code == 200
        assert client.delete("/image/20240301120000", headers=headers).status_code == 404

    def test_expired_token_rejected(self, client, token, clock):
        clock.advance(seconds=61)
        assert client.get("/venuelists?top=5", headers={TOKEN_HEADER: token}).status_code == 401


class TestDataWithPurchaseHeader:
    """Test per-user data routes authorized by a purchase claim header."""

    def test_pro_claim_authorizes_and_mints_token(self, client):
        response = client.get(
            "/personlists?top=5", headers=purchase_header(claim(product_id="pro.upgrade"))
        )

        assert response.status_code == 200
        assert response.json() == []
        assert len(response.headers[TOKEN_HEADER]) == 50

    def test_scan_license_not_accepted(self, client):
        response = client.get("/personlists?top=5", headers=purchase_header(claim()))
        assert response.status_code == 403

    def test_unparseable_header(self, client):
        response = client.get("/personlists?top=5", headers={PURCHASE_HEADER: "%7Bnot-json"})
        assert response.status_code == 400


class TestScan:
    """Test POST /scan."""

    def post_scan(self, client, body, option=0, image=RECEIPT):
        return client.post(
            f"/scan?option={option}",
            files={"image": ("receipt.jpg", image, "image/jpeg")},
            data={"license": json.dumps(body)},
        )

    def test_scan_uses_one_scan(self, client):
        response = self.post_scan(client, claim())

        assert response.status_code == 200
        bill = response.json()
        assert bill["scans_left"] == 29
        assert len(bill["order_lines"]) == 7

    def test_diagnostics_do_not_charge(self, client, app):
        response = self.post_scan(client, claim(), option=1)

        assert response.status_code == 200
        assert "orderId=GPA.1" in response.text
        assert app.state.ledger.find_record("GPA.1").scans_left == 30

    def test_canned_result(self, client):
        response = self.post_scan(client, claim(), option=2)
        assert response.json()["source_name"] == "Fake Scan From iap-license"
        assert response.json()["scans_left"] == 29

    def test_exhausted_license_gets_no_content(self, client):
        client.post("/verify", json=claim(order_id="GPA.1"))
        client.post("/verify", json=claim(order_id="GPA.2"))

        response = self.post_scan(client, claim(order_id="GPA.1"))

        assert response.status_code == 204

    def test_small_image_rejected(self, client):
        assert self.post_scan(client, claim(), image=b"tiny").status_code == 400

    def test_unknown_option_rejected(self, client):
        assert self.post_scan(client, claim(), option=7).status_code == 400

    def test_pro_license_cannot_scan(self, client):
        assert self.post_scan(client, claim(product_id="pro.upgrade")).status_code == 403


class TestSharedDatabase:
    """Two service instances on one SQL database act as one ledger."""

    @pytest.fixture
    def sql_config(self, tmp_path):
        settings = yaml.safe_load(CONFIG_PATH.read_text())
        settings["storage"] = {"backend": "sql", "url": f"sqlite:///{tmp_path / 'license.db'}"}
        path = tmp_path / "license.yaml"
        path.write_text(yaml.safe_dump(settings))
        return Config(str(path))

    @pytest.fixture
    def instances(self, sql_config, verifier, clock):
        apps = [
            create_app(sql_config, verifier=verifier, scanner=CannedScanner(), clock=clock) for _ in range(2)
        ]
        yield apps
        for app in apps:
            app.state.tables.dispose()

    def test_purchase_recorded_by_one_instance_is_seen_by_the_other(self, instances):
        first, second = (TestClient(app) for app in instances)

        assert first.post("/recordpurchase", json=claim(order_id="GPA.1")).status_code == 200
        assert second.post("/recordpurchase", json=claim(order_id="GPA.1")).status_code == 400

        response = second.post("/verify", json=claim(order_id="GPA.2"))
        assert response.json()["scans_left"] == 60
        assert instances[0].state.ledger.find_record("GPA.1").scans_left == 0

    def test_token_bound_on_one_instance_rejected_on_the_other(self, instances):
        first, second = (TestClient(app) for app in instances)
        first.post("/recordpurchase", json=claim(order_id="GPA.1", token="play-token-shared"))

        response = second.post("/recordpurchase", json=claim(order_id="GPA.2", token="play-token-shared"))

        assert response.status_code == 400
        assert instances[1].state.ledger.find_record("GPA.2") is None
