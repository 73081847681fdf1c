import pytest

pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from choreblimey.webapp import create_app


@pytest.fixture()
def webapp_env(bank, make_household):
    home = make_household("ann", "ben")
    chore = bank.add_chore(home.family_id, "Empty bins", base_reward_pence=60)
    plain = bank.assign_chore(home.family_id, chore.id, child_id=home.children["ann"])
    contest = bank.assign_chore(home.family_id, chore.id, bidding_enabled=True)
    client = TestClient(create_app(bank))
    return client, home, plain, contest


def parent_headers(home) -> dict:
    return {"X-Family-Id": str(home.family_id), "X-Role": "parent_admin", "X-User-Id": "1"}


def child_headers(home, name: str) -> dict:
    return {"X-Family-Id": str(home.family_id), "X-Role": "child_player", "X-Child-Id": str(home.children[name])}


def test_completion_round_trip(webapp_env) -> None:
    client, home, plain, _contest = webapp_env

    created = client.post("/completions", json={"assignmentId": plain.id, "note": "done"}, headers=child_headers(home, "ann"))
    assert created.status_code == 200
    completion = created.json()["completion"]
    assert completion["status"] == "pending"

    listed = client.get("/completions", params={"status": "pending"}, headers=parent_headers(home))
    assert [item["id"] for item in listed.json()["completions"]] == [completion["id"]]

    approved = client.post(f"/completions/{completion['id']}/approve", headers=parent_headers(home))
    body = approved.json()
    assert approved.status_code == 200
    assert body["ok"] is True
    assert body["reward"] == {"rewardAmountPence": 60, "starsAwarded": 6, "baseRewardPence": 60, "rivalryBonus": False}
    assert body["wallet"]["balancePence"] == 60

    again = client.post(f"/completions/{completion['id']}/approve", headers=parent_headers(home))
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "RESOURCE_CONFLICT"

    wallet = client.get(f"/wallet/{home.children['ann']}", headers=child_headers(home, "ann")).json()["wallet"]
    assert wallet["balancePence"] == 60
    assert wallet["transactions"][0]["metaJson"]["completionId"] == completion["id"]


def test_reject_with_reason(webapp_env) -> None:
    client, home, plain, _contest = webapp_env
    completion = client.post("/completions", json={"assignmentId": plain.id}, headers=child_headers(home, "ann")).json()["completion"]
    rejected = client.post(
        f"/completions/{completion['id']}/reject", json={"reason": "bins still full"}, headers=parent_headers(home)
    )
    assert rejected.json()["completion"]["note"] == "Rejected: bins still full"


def test_identity_is_required(webapp_env) -> None:
    client, _home, _plain, _contest = webapp_env
    response = client.get("/completions")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_INVALID_CREDENTIALS"


def test_error_taxonomy_maps_to_statuses(webapp_env) -> None:
    client, home, plain, contest = webapp_env

    missing = client.post("/completions/999/approve", headers=parent_headers(home))
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "RESOURCE_NOT_FOUND"

    no_champion = client.post("/completions", json={"assignmentId": contest.id}, headers=child_headers(home, "ann"))
    assert no_champion.status_code == 403
    assert no_champion.json()["error"]["code"] == "BUSINESS_INVALID_OPERATION"

    client.post("/bids/compete", json={"assignmentId": contest.id, "amountPence": 40}, headers=child_headers(home, "ben"))
    locked = client.post("/completions", json={"assignmentId": contest.id}, headers=child_headers(home, "ann"))
    assert locked.status_code == 403
    assert locked.json()["error"]["code"] == "BUSINESS_CHALLENGE_LOCKED"
    assert locked.json()["error"]["championChildId"] == home.children["ben"]

    not_yours = client.post("/completions", json={"assignmentId": plain.id}, headers=child_headers(home, "ben"))
    assert not_yours.status_code == 403

    no_child = client.post("/completions", json={"assignmentId": plain.id}, headers=parent_headers(home))
    assert no_child.status_code == 422
    assert no_child.json()["error"]["code"] == "VALIDATION_INVALID_INPUT"

    broke = client.post("/wallet/buy-stars", json={"starsRequested": 5, "childId": home.children["ann"]}, headers=parent_headers(home))
    assert broke.status_code == 404

    client.post(f"/wallet/{home.children['ann']}/credit", json={"amountPence": 20}, headers=parent_headers(home))
    poor = client.post("/wallet/buy-stars", json={"starsRequested": 5}, headers=child_headers(home, "ann"))
    assert poor.status_code == 400
    assert poor.json()["error"]["code"] == "BUSINESS_INSUFFICIENT_FUNDS"

    overdraw = client.post(f"/wallet/{home.children['ann']}/debit", json={"amountPence": 50}, headers=parent_headers(home))
    assert overdraw.status_code == 400


def test_bidding_endpoints(webapp_env) -> None:
    client, home, _plain, contest = webapp_env
    client.post("/bids/compete", json={"assignmentId": contest.id, "amountPence": 80}, headers=child_headers(home, "ann"))
    bid = client.post(
        "/bids/compete",
        json={"assignmentId": contest.id, "amountPence": 5, "targetChildId": home.children["ann"]},
        headers=child_headers(home, "ben"),
    ).json()["bid"]
    assert bid["amountPence"] == 30

    bids = client.get("/bids", params={"assignmentId": contest.id}, headers=parent_headers(home)).json()
    assert [item["amountPence"] for item in bids["bids"]] == [30, 80]
    assert bids["championChildId"] == home.children["ben"]

    feed = client.get("/rivalry/feed", headers=parent_headers(home)).json()["feed"]
    assert [event["type"] for event in feed] == ["underbid", "underbid"]

    rejected = client.post("/bids/compete", json={"assignmentId": contest.id, "amountPence": 0}, headers=child_headers(home, "ann"))
    assert rejected.status_code == 422


def test_star_purchase_endpoints(webapp_env) -> None:
    client, home, _plain, _contest = webapp_env
    ann = home.children["ann"]
    credited = client.post(f"/wallet/{ann}/credit", json={"amountPence": 150, "note": "gran"}, headers=parent_headers(home))
    assert credited.json()["wallet"]["balancePence"] == 150

    requested = client.post("/wallet/buy-stars", json={"starsRequested": 10}, headers=child_headers(home, "ann")).json()
    assert requested["wallet"]["balancePence"] == 50
    purchase_id = requested["starPurchase"]["id"]

    listed = client.get("/wallet/buy-stars", params={"status": "pending"}, headers=parent_headers(home)).json()
    assert [item["id"] for item in listed["purchases"]] == [purchase_id]

    forbidden = client.post(f"/wallet/buy-stars/{purchase_id}/approve", headers=child_headers(home, "ann"))
    assert forbidden.status_code == 403

    approved = client.post(f"/wallet/buy-stars/{purchase_id}/approve", headers=parent_headers(home)).json()
    assert approved["starPurchase"]["status"] == "approved"
    wallet = client.get(f"/wallet/{ann}", headers=parent_headers(home)).json()["wallet"]
    assert (wallet["balancePence"], wallet["stars"]) == (50, 10)


def test_streaks_and_empty_wallet(webapp_env) -> None:
    client, home, plain, _contest = webapp_env
    ben = home.children["ben"]
    empty = client.get(f"/wallet/{ben}", headers=parent_headers(home)).json()["wallet"]
    assert empty == {"childId": ben, "balancePence": 0, "stars": 0, "transactions": []}

    client.post("/completions", json={"assignmentId": plain.id}, headers=child_headers(home, "ann"))
    stats = client.get(f"/streaks/{home.children['ann']}", headers=parent_headers(home)).json()["stats"]
    assert stats["currentStreak"] == 1
    assert stats["choreStreaks"][0]["current"] == 1
