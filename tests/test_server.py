"""Tests for vaultix/app.py endpoints."""

import sys, os, json
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from starlette.testclient import TestClient
from crypto import sign_request_ed25519
from vaultix.app import create_app
from vaultix.auth import StaticAuth
from conftest import (
    signed_post, make_manager, TOKEN, CONTRACT,
    DEPOSITOR, RECIPIENT, TREASURY, STRANGER,
    DEPOSITOR_PRIV, RECIPIENT_PRIV, TREASURY_PRIV, STRANGER_PRIV,
)


SAMPLE_ESCROW = {
    "escrow_id": 1,
    "depositor": DEPOSITOR,
    "recipient": RECIPIENT,
    "milestones": [
        {"amount": 5000, "description": "Design"},
        {"amount": 3000, "description": "Build"},
        {"amount": 2000, "description": "Ship"},
    ],
    "token": TOKEN,
}


@pytest.fixture
def parts():
    """Manager, ledger and events behind the app. Nothing is proven outside a signed request."""
    return make_manager(auth=StaticAuth(), initialize=False)


@pytest.fixture
def app(parts):
    return create_app(parts[0])


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def ledger(parts):
    return parts[1]


def _init(client, fee_bps=None):
    body = {"treasury": TREASURY}
    if fee_bps is not None:
        body["fee_bps"] = fee_bps
    r = signed_post(client, "/initialize", body, TREASURY, TREASURY_PRIV)
    assert r.status_code == 200, r.text
    return r


def _create(client, data=None):
    r = signed_post(client, "/escrows", data or SAMPLE_ESCROW, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 200, r.text
    return r.json()


def _release(client, escrow_id, index, identity=DEPOSITOR, priv=DEPOSITOR_PRIV, token=TOKEN):
    return signed_post(client, f"/escrows/{escrow_id}/release",
                       {"milestone_index": index, "token_address": token}, identity, priv)


# --- Configuration ---

def test_initialize_and_get_config(client):
    r = _init(client)
    assert r.json() == {"treasury": TREASURY, "fee_bps": 50}
    assert client.get("/config").json() == {"treasury": TREASURY, "fee_bps": 50}


def test_get_config_before_initialize(client):
    r = client.get("/config")
    assert r.status_code == 503
    assert r.json()["error"] == "TreasuryNotInitialized"
    assert r.json()["code"] == 11


def test_initialize_requires_treasury_signature(client):
    r = signed_post(client, "/initialize", {"treasury": TREASURY}, STRANGER, STRANGER_PRIV)
    assert r.status_code == 401
    assert r.json()["error"] == "AuthorizationFailed"


def test_initialize_invalid_fee(client):
    r = signed_post(client, "/initialize", {"treasury": TREASURY, "fee_bps": 10001}, TREASURY, TREASURY_PRIV)
    assert r.status_code == 400
    assert r.json()["error"] == "InvalidFeeConfiguration"


def test_update_fee(client):
    _init(client)
    r = signed_post(client, "/config/fee", {"new_fee_bps": 100}, TREASURY, TREASURY_PRIV)
    assert r.status_code == 200
    assert client.get("/config").json()["fee_bps"] == 100


def test_update_fee_by_non_treasury(client):
    _init(client)
    r = signed_post(client, "/config/fee", {"new_fee_bps": 0}, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 401
    assert client.get("/config").json()["fee_bps"] == 50


# --- Signed requests ---

def test_unsigned_request_rejected(client):
    r = client.post("/escrows", json=SAMPLE_ESCROW)
    assert r.status_code == 401


def test_tampered_body_rejected(client):
    body = json.dumps(SAMPLE_ESCROW)
    headers = sign_request_ed25519(DEPOSITOR_PRIV, DEPOSITOR[3:], "POST", "/escrows", body)
    tampered = json.dumps({**SAMPLE_ESCROW, "recipient": STRANGER})
    r = client.post("/escrows", content=tampered,
                    headers={"Content-Type": "application/json", **headers})
    assert r.status_code == 401
    assert "invalid signature" in r.json()["detail"]


def test_replay_rejected(client):
    _init(client)
    body = json.dumps(SAMPLE_ESCROW)
    headers = {"Content-Type": "application/json",
               **sign_request_ed25519(DEPOSITOR_PRIV, DEPOSITOR[3:], "POST", "/escrows", body)}
    assert client.post("/escrows", content=body, headers=headers).status_code == 200
    r = client.post("/escrows", content=body, headers=headers)
    assert r.status_code == 401
    assert r.json()["detail"] == "Replay detected"


# --- Escrows ---

def test_create_and_get(client, ledger):
    data = _create(client)
    assert data["escrow_id"] == 1
    assert data["total_amount"] == 10000
    assert data["status"] == "active"
    assert [m["status"] for m in data["milestones"]] == ["pending"] * 3

    r = client.get("/escrows/1")
    assert r.status_code == 200
    assert r.json()["depositor"] == DEPOSITOR
    assert client.get("/escrows/1/state").json() == {"escrow_id": 1, "status": "active"}
    assert ledger.balance(TOKEN, CONTRACT) == 10000


def test_create_signed_by_other_party(client):
    r = signed_post(client, "/escrows", SAMPLE_ESCROW, STRANGER, STRANGER_PRIV)
    assert r.status_code == 401
    assert client.get("/escrows/1").status_code == 404


def _small_escrow(escrow_id, recipient=RECIPIENT):
    return {**SAMPLE_ESCROW, "escrow_id": escrow_id, "recipient": recipient,
            "milestones": [{"amount": 100, "description": "Work"}]}


def test_list_escrows(client):
    assert client.get("/escrows").json() == {"data": [], "total": 0, "page": 1, "limit": 20}
    for escrow_id in (3, 1, 2):
        _create(client, _small_escrow(escrow_id))

    r = client.get("/escrows", params={"page": 1, "limit": 2})
    assert r.status_code == 200
    body = r.json()
    assert [e["escrow_id"] for e in body["data"]] == [1, 2]
    assert body["total"] == 3
    assert (body["page"], body["limit"]) == (1, 2)
    assert body["data"][0]["depositor"] == DEPOSITOR
    assert body["data"][0]["milestones"][0]["status"] == "pending"

    body = client.get("/escrows", params={"page": 2, "limit": 2}).json()
    assert [e["escrow_id"] for e in body["data"]] == [3]


def test_list_escrows_filters(client):
    _create(client, _small_escrow(1))
    _create(client, _small_escrow(2, recipient=STRANGER))
    signed_post(client, "/escrows/1/cancel", {}, DEPOSITOR, DEPOSITOR_PRIV)

    body = client.get("/escrows", params={"status": "cancelled"}).json()
    assert [e["escrow_id"] for e in body["data"]] == [1]
    assert body["data"][0]["status"] == "cancelled"
    body = client.get("/escrows", params={"party": STRANGER}).json()
    assert [e["escrow_id"] for e in body["data"]] == [2]


def test_list_escrows_bad_query(client):
    assert client.get("/escrows", params={"status": "frozen"}).status_code == 400
    assert client.get("/escrows", params={"page": 0}).status_code == 400
    assert client.get("/escrows", params={"limit": 500}).status_code == 400


def test_create_self_dealing(client):
    r = signed_post(client, "/escrows", {**SAMPLE_ESCROW, "recipient": DEPOSITOR}, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 400
    assert r.json() == {"error": "SelfDealing", "code": 15, "detail": "SelfDealing"}


def test_create_duplicate(client):
    _create(client)
    r = signed_post(client, "/escrows", SAMPLE_ESCROW, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 409
    assert r.json()["error"] == "EscrowAlreadyExists"


def test_create_too_many_milestones(client):
    ms = [{"amount": 1, "description": f"M{i}"} for i in range(21)]
    r = signed_post(client, "/escrows", {**SAMPLE_ESCROW, "milestones": ms}, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 400
    assert r.json()["error"] == "VectorTooLarge"


def test_create_bad_description(client):
    ms = [{"amount": 10, "description": "not a symbol"}]
    r = signed_post(client, "/escrows", {**SAMPLE_ESCROW, "milestones": ms}, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 400
    assert r.json()["error"] == "InvalidArgument"


def test_create_underfunded(client, ledger):
    ms = [{"amount": 20000, "description": "Big"}]
    r = signed_post(client, "/escrows", {**SAMPLE_ESCROW, "milestones": ms}, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 402
    assert r.json()["error"] == "TransferFailed"
    assert client.get("/escrows/1").status_code == 404
    assert ledger.balance(TOKEN, DEPOSITOR) == 10000


def test_get_missing(client):
    r = client.get("/escrows/99")
    assert r.status_code == 404
    assert r.json()["error"] == "EscrowNotFound"
    assert r.json()["code"] == 1


def test_get_out_of_range_id(client):
    r = client.get(f"/escrows/{1 << 64}")
    assert r.status_code == 400


# --- Release engine ---

def test_release_milestone(client, ledger):
    _init(client)
    _create(client)
    r = _release(client, 1, 0)
    assert r.status_code == 200
    assert r.json() == {"amount": 5000, "fee": 25, "payout": 4975}
    assert ledger.balance(TOKEN, RECIPIENT) == 4975
    assert ledger.balance(TOKEN, TREASURY) == 25

    escrow = client.get("/escrows/1").json()
    assert escrow["total_released"] == 5000
    assert escrow["milestones"][0]["status"] == "released"


def test_release_before_initialize(client):
    _create(client)
    r = _release(client, 1, 0)
    assert r.status_code == 503
    assert r.json()["error"] == "TreasuryNotInitialized"


def test_release_by_recipient(client):
    _init(client)
    _create(client)
    r = _release(client, 1, 0, RECIPIENT, RECIPIENT_PRIV)
    assert r.status_code == 401


def test_double_release(client):
    _init(client)
    _create(client)
    assert _release(client, 1, 0).status_code == 200
    r = _release(client, 1, 0)
    assert r.status_code == 409
    assert r.json()["error"] == "MilestoneAlreadyReleased"


def test_release_missing_milestone(client):
    _init(client)
    _create(client)
    r = _release(client, 1, 3)
    assert r.status_code == 404
    assert r.json()["error"] == "MilestoneNotFound"


def test_confirm_delivery(client, ledger):
    _create(client)
    r = signed_post(client, "/escrows/1/confirm", {"milestone_index": 1, "buyer": DEPOSITOR},
                    DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 200
    assert r.json() == {"amount": 3000, "fee": 0, "payout": 3000}
    assert ledger.balance(TOKEN, RECIPIENT) == 3000


def test_confirm_by_non_depositor(client):
    _create(client)
    r = signed_post(client, "/escrows/1/confirm", {"milestone_index": 0, "buyer": STRANGER},
                    STRANGER, STRANGER_PRIV)
    assert r.status_code == 403
    assert r.json()["error"] == "UnauthorizedAccess"


def test_events(client):
    _init(client)
    _create(client)
    _release(client, 1, 0)
    events = client.get("/events").json()["events"]
    assert events == [
        {"topics": ["fee_coll", 1, 0], "data": [25, TREASURY]},
        {"topics": ["released", 1, 0], "data": [4975, RECIPIENT]},
    ]


# --- Lifecycle ---

def test_cancel(client):
    _create(client)
    r = signed_post(client, "/escrows/1/cancel", {}, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 200
    assert r.json() == {"escrow_id": 1, "status": "cancelled"}
    assert client.get("/escrows/1/state").json()["status"] == "cancelled"

    r = _release(client, 1, 0)
    assert r.status_code == 409
    assert r.json()["error"] == "EscrowNotActive"


def test_cancel_after_release(client):
    _init(client)
    _create(client)
    _release(client, 1, 0)
    r = signed_post(client, "/escrows/1/cancel", {}, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 409
    assert r.json()["error"] == "MilestoneAlreadyReleased"


def test_complete(client):
    _init(client)
    _create(client)
    r = signed_post(client, "/escrows/1/complete", {}, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 409
    assert r.json()["error"] == "EscrowNotActive"

    for i in range(3):
        assert _release(client, 1, i).status_code == 200
    r = signed_post(client, "/escrows/1/complete", {}, DEPOSITOR, DEPOSITOR_PRIV)
    assert r.status_code == 200
    assert r.json() == {"escrow_id": 1, "status": "completed"}
