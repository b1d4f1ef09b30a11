"""Every (current, next) pair in the status space against the transition table."""

import itertools

import pytest

from apps.orders.domain import ALLOWED_TRANSITIONS, OrderStatus, can_transition

EXPECTED = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped"},
    "shipped": {"delivered", "cancelled"},
    "delivered": {"returning"},
    "returning": {"returned"},
    "returned": {"refunded"},
    "cancelled": set(),
    "refunded": set(),
}


@pytest.mark.parametrize("current,nxt", list(itertools.product(OrderStatus, OrderStatus)))
def test_transition_decision_matches_table(current, nxt):
    assert can_transition(current, nxt) is (nxt.value in EXPECTED[current.value])


@pytest.mark.parametrize("status", list(OrderStatus))
def test_same_status_is_never_a_transition(status):
    assert can_transition(status, status) is False


def test_every_status_has_an_entry():
    assert set(ALLOWED_TRANSITIONS) == set(OrderStatus)


@pytest.mark.parametrize("terminal", [OrderStatus.CANCELLED, OrderStatus.REFUNDED])
def test_terminal_statuses_go_nowhere(terminal):
    assert not any(can_transition(terminal, s) for s in OrderStatus)
