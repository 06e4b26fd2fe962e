import pytest

from comms_dispatch import lifecycle


def test_send_path_transitions():
    assert lifecycle.can_transition("pending", "queued")
    assert lifecycle.can_transition("queued", "sending")
    assert lifecycle.can_transition("sending", "sent")
    assert lifecycle.can_transition("sending", "failed")
    assert lifecycle.can_transition("failed", "queued")
    assert lifecycle.can_transition("sent", "delivered")


@pytest.mark.parametrize(
    "current, target",
    [
        ("pending", "sent"),
        ("queued", "failed"),
        ("sent", "queued"),
        ("delivered", "sent"),
        ("delivered", "failed"),
        ("cancelled", "queued"),
        ("expired", "queued"),
        ("bounced", "delivered"),
    ],
)
def test_illegal_transitions(current, target):
    assert not lifecycle.can_transition(current, target)


def test_terminal_states_have_no_way_out():
    for status in lifecycle.TERMINAL:
        assert lifecycle.TRANSITIONS[status] == frozenset()


def test_failed_is_final_only_without_pending_retry():
    assert lifecycle.is_terminal("failed")
    assert not lifecycle.is_terminal("failed", retry_pending=True)
    assert lifecycle.is_terminal("delivered")
    assert not lifecycle.is_terminal("sending")


def test_regressions():
    assert lifecycle.is_regression("delivered", "failed")
    assert lifecycle.is_regression("sent", "queued")
    assert not lifecycle.is_regression("failed", "queued")
    assert not lifecycle.is_regression("queued", "delivered")
    assert not lifecycle.is_regression("sent", "sent")


def test_sources_for():
    assert lifecycle.sources_for("cancelled") == ["pending", "queued", "sending"]
    assert lifecycle.sources_for("failed") == ["sending", "sent"]
