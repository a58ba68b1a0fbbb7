import pytest

from voucherpay.model import lifecycle as lc


def notice(status, bill_link_id=None):
    return lc.CallbackNotice(
        gateway_transaction_id="FT1", amount=25000, status=status,
        sender_email="a@example.com", bill_link_id=bill_link_id,
    )


@pytest.mark.parametrize("raw,event", [
    ("SUCCESSFUL", lc.EV_SUCCESS),
    ("successful", lc.EV_SUCCESS),
    ("cancelled", lc.EV_FAILURE),
    (" Failed ", lc.EV_FAILURE),
    ("EXPIRED", lc.EV_FAILURE),
    ("PENDING", lc.EV_UNKNOWN),
    ("", lc.EV_UNKNOWN),
    (None, lc.EV_UNKNOWN),
])
def test_classify_is_case_insensitive(raw, event):
    assert lc.classify(raw) == event


@pytest.mark.parametrize("current,event,action", [
    (lc.PENDING, lc.EV_SUCCESS, lc.FINALIZE),
    (lc.PENDING, lc.EV_FAILURE, lc.RELEASE),
    (lc.SUCCESSFUL, lc.EV_SUCCESS, lc.BACKFILL),
    (lc.SUCCESSFUL, lc.EV_FAILURE, lc.IGNORE),
    (lc.CANCELLED, lc.EV_SUCCESS, lc.IGNORE),
    (lc.EXPIRED, lc.EV_SUCCESS, lc.IGNORE),
    (lc.FAILED, lc.EV_FAILURE, lc.IGNORE),
    (None, lc.EV_SUCCESS, lc.CREATE_SUCCESSFUL),
    (None, lc.EV_FAILURE, lc.IGNORE),
    (lc.PENDING, lc.EV_UNKNOWN, lc.IGNORE),
    (None, lc.EV_UNKNOWN, lc.IGNORE),
])
def test_transition_table(current, event, action):
    assert lc.next_action(current, event) == action


def test_terminal_states_never_finalize_again():
    for state in lc.TERMINAL:
        assert lc.next_action(state, lc.EV_SUCCESS) in (lc.IGNORE, lc.BACKFILL)
        assert lc.next_action(state, lc.EV_FAILURE) == lc.IGNORE


def test_lookup_plan_for_failure_with_bill_link():
    assert lc.lookup_plan(notice("CANCELLED", "555")) == (
        lc.BY_GATEWAY_ID, lc.BY_BILL_LINK, lc.PENDING_BY_EMAIL_AMOUNT,
    )


def test_lookup_plan_for_success_only_matches_unlinked():
    assert lc.lookup_plan(notice("SUCCESSFUL")) == (
        lc.BY_GATEWAY_ID, lc.UNLINKED_PENDING_BY_EMAIL_AMOUNT,
    )


def test_lookup_plan_for_unknown_status_uses_ids_only():
    assert lc.lookup_plan(notice("PENDING", "9")) == (
        lc.BY_GATEWAY_ID, lc.BY_BILL_LINK,
    )
