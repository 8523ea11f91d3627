import pytest

from fire_dispatch.errors import InvalidTransition, NotPermitted
from fire_dispatch.lifecycle import (
    APPROVE,
    CANCEL,
    REJECT,
    RESOLVE,
    WITHDRAW,
    allowed_actions,
    is_legal_edge,
    plan_transition,
)
from fire_dispatch.models import (
    CANCELLED,
    CIVILIAN,
    DISPATCHER,
    FIREFIGHTER,
    IN_PROGRESS,
    PENDING,
    RESOLVED,
    Incident,
    Session,
)

NOW = "2026-10-18T10:00:00.000000"
STATION = Session(role=FIREFIGHTER, user_id="ff-1", station_id=1)
OTHER_STATION = Session(role=FIREFIGHTER, user_id="ff-9", station_id=2)
REPORTER = Session(role=CIVILIAN, user_id="civ-1")
DISPATCHER_7 = Session(role=DISPATCHER, user_id="7")


def _incident(status: str = PENDING, dispatcher_id=None) -> Incident:
    return Incident(
        id=1,
        incident_type="fire",
        description="Kitchen fire",
        station_id=1,
        reported_by="civ-1",
        status=status,
        latitude=5.6,
        longitude=-0.18,
        dispatcher_id=dispatcher_id,
    )


def test_approve_moves_pending_to_in_progress() -> None:
    transition = plan_transition(_incident(), APPROVE, STATION, NOW)

    assert transition.target == IN_PROGRESS
    assert transition.changes == {"status": IN_PROGRESS, "updated_at": NOW}


def test_reject_goes_straight_to_cancelled_with_timestamp() -> None:
    transition = plan_transition(_incident(), REJECT, STATION, NOW)

    assert transition.target == CANCELLED
    assert transition.changes["resolved_at"] == NOW
    assert transition.changes["dispatcher_id"] is None


def test_resolve_by_assigned_dispatcher() -> None:
    transition = plan_transition(_incident(IN_PROGRESS, dispatcher_id=7), RESOLVE, DISPATCHER_7, NOW)

    assert transition.target == RESOLVED
    assert transition.changes["resolved_at"] == NOW
    assert "dispatcher_id" not in transition.changes


def test_cancel_in_progress_clears_dispatcher() -> None:
    transition = plan_transition(_incident(IN_PROGRESS, dispatcher_id=7), CANCEL, STATION, NOW)

    assert transition.changes["dispatcher_id"] is None


def test_pending_cannot_be_resolved_directly() -> None:
    with pytest.raises(InvalidTransition):
        plan_transition(_incident(), RESOLVE, STATION, NOW)
    assert not is_legal_edge(PENDING, RESOLVED)


@pytest.mark.parametrize("status", [RESOLVED, CANCELLED])
def test_terminal_states_have_no_exits(status: str) -> None:
    for action in (APPROVE, REJECT, RESOLVE, CANCEL):
        with pytest.raises((InvalidTransition, NotPermitted)):
            plan_transition(_incident(status, dispatcher_id=7), action, STATION, NOW)


def test_actor_roles_are_enforced() -> None:
    with pytest.raises(NotPermitted):
        plan_transition(_incident(), APPROVE, REPORTER, NOW)
    with pytest.raises(NotPermitted):
        plan_transition(_incident(), APPROVE, OTHER_STATION, NOW)
    with pytest.raises(NotPermitted):
        plan_transition(_incident(IN_PROGRESS, dispatcher_id=8), RESOLVE, DISPATCHER_7, NOW)


def test_unknown_action_is_invalid() -> None:
    with pytest.raises(InvalidTransition):
        plan_transition(_incident(), "teleport", STATION, NOW)


def test_allowed_actions_per_role() -> None:
    assert allowed_actions(_incident(), STATION) == [APPROVE, REJECT]
    assert allowed_actions(_incident(), REPORTER) == [WITHDRAW]
    assert allowed_actions(_incident(IN_PROGRESS, dispatcher_id=7), DISPATCHER_7) == [RESOLVE]
    assert allowed_actions(_incident(RESOLVED), STATION) == []
