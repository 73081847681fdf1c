import pytest

from choreblimey.config import Settings
from choreblimey.exceptions import AlreadyProcessedError, ForbiddenError, InsufficientFundsError, NotFoundError
from choreblimey.models import Caller, EventType, Role, StarPurchaseStatus
from choreblimey.service import ChoreBlimey


@pytest.fixture()
def saver(bank, make_household):
    home = make_household("ann", "ben")
    bank.credit_wallet(home.parent, home.children["ann"], 200, note="birthday")
    return home


def _wallet(bank, home, name="ann"):
    wallet, transactions = bank.wallet(home.parent, home.children[name])
    return wallet, transactions


def test_reject_refunds_exactly_the_reserved_money(bank, saver) -> None:
    purchase = bank.request_star_purchase(saver.child("ann"), 10)

    assert purchase.status == StarPurchaseStatus.PENDING.value
    assert purchase.amount_pence == 100
    assert purchase.conversion_rate_pence == 10
    wallet, transactions = _wallet(bank, saver)
    assert (wallet.balance_pence, wallet.balance_stars) == (100, 0)
    assert transactions[0].source == "buy_stars"
    assert transactions[0].meta_json["type"] == "buy_stars_request"
    assert transactions[0].meta_json["purchaseId"] == purchase.id

    rejected = bank.reject_star_purchase(saver.parent, purchase.id, "saving up instead")
    assert rejected.status == StarPurchaseStatus.REJECTED.value
    assert rejected.rejected_by == saver.parent.user_id
    wallet, transactions = _wallet(bank, saver)
    assert (wallet.balance_pence, wallet.balance_stars) == (200, 0)
    assert transactions[0].source == "buy_stars_refund"
    assert transactions[0].meta_json["reason"] == "saving up instead"


def test_approve_adds_stars_without_touching_money(bank, saver) -> None:
    purchase = bank.request_star_purchase(saver.child("ann"), 10)
    approved = bank.approve_star_purchase(saver.parent, purchase.id)

    assert approved.status == StarPurchaseStatus.APPROVED.value
    assert approved.approved_by == saver.parent.user_id
    wallet, transactions = _wallet(bank, saver)
    assert (wallet.balance_pence, wallet.balance_stars) == (100, 10)
    assert (transactions[0].amount_pence, transactions[0].stars_delta) == (0, 10)
    assert transactions[0].source == "buy_stars_approved"


def test_purchase_leaves_pending_exactly_once(bank, saver) -> None:
    purchase = bank.request_star_purchase(saver.child("ann"), 5)
    bank.approve_star_purchase(saver.parent, purchase.id)
    with pytest.raises(AlreadyProcessedError):
        bank.approve_star_purchase(saver.parent, purchase.id)
    with pytest.raises(AlreadyProcessedError):
        bank.reject_star_purchase(saver.parent, purchase.id)
    wallet, _ = _wallet(bank, saver)
    assert (wallet.balance_pence, wallet.balance_stars) == (150, 5)


def test_insufficient_funds_reserves_nothing(bank, saver) -> None:
    with pytest.raises(InsufficientFundsError):
        bank.request_star_purchase(saver.child("ann"), 21)
    wallet, transactions = _wallet(bank, saver)
    assert wallet.balance_pence == 200
    assert len(transactions) == 1
    assert bank.list_star_purchases(saver.parent) == []


def test_child_without_wallet(bank, saver) -> None:
    with pytest.raises(NotFoundError):
        bank.request_star_purchase(saver.child("ben"), 1)


def test_feature_can_be_disabled(bank, make_household) -> None:
    home = make_household("ann", buy_stars_enabled=False)
    bank.credit_wallet(home.parent, home.children["ann"], 500)
    with pytest.raises(ForbiddenError):
        bank.request_star_purchase(home.child("ann"), 1)


def test_family_rate_and_configured_default(store, clock, make_household, bank) -> None:
    home = make_household("ann", star_conversion_rate_pence=25)
    bank.credit_wallet(home.parent, home.children["ann"], 100)
    assert bank.request_star_purchase(home.child("ann"), 4).amount_pence == 100

    pricier = ChoreBlimey(store, settings=Settings(default_star_rate_pence=20), now=clock)
    other = pricier.create_family("Other")
    child = pricier.add_child(other.id, "Dot")
    parent = Caller(family_id=other.id, role=Role.PARENT_CO_PARENT.value, user_id=2)
    pricier.credit_wallet(parent, child.id, 100)
    purchase = pricier.request_star_purchase(parent, 5, child_id=child.id)
    assert (purchase.conversion_rate_pence, purchase.amount_pence) == (20, 100)


def test_only_parents_settle_and_children_see_their_own(bank, saver) -> None:
    purchase = bank.request_star_purchase(saver.child("ann"), 2)
    with pytest.raises(ForbiddenError):
        bank.approve_star_purchase(saver.child("ann"), purchase.id)
    with pytest.raises(ForbiddenError):
        bank.request_star_purchase(saver.child("ben"), 1, child_id=saver.children["ann"])

    assert [item.id for item in bank.list_star_purchases(saver.child("ann"))] == [purchase.id]
    assert bank.list_star_purchases(saver.child("ben")) == []
    assert bank.list_star_purchases(saver.parent, status="approved") == []
    assert [item.id for item in bank.list_star_purchases(saver.parent, status=StarPurchaseStatus.PENDING)] == [purchase.id]


def test_purchase_events(bank, saver) -> None:
    received = []
    bank.notifications.register(received.append)
    purchase = bank.request_star_purchase(saver.child("ann"), 3)
    bank.approve_star_purchase(saver.parent, purchase.id)
    assert [event.type for event in received] == [
        EventType.STAR_PURCHASE_REQUESTED,
        EventType.STAR_PURCHASE_APPROVED,
    ]
    assert received[-1].payload["wallet"]["stars"] == 3
