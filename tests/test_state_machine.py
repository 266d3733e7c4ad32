import pytest

from support_inbox.exceptions import InvalidTransitionError
from support_inbox.models.schemas import (
    ThreadState, TransitionContext, TransitionTrigger, VerificationResult, VerificationStatus
)
from support_inbox.workflows.state_machine import is_allowed

S = ThreadState
T = TransitionTrigger


@pytest.mark.parametrize("source", [S.NEW, S.AWAITING_INFO, S.IN_PROGRESS, S.HUMAN_HANDLING, S.RESOLVED])
def test_human_handling_only_reachable_from_escalated(source):
    for trigger in TransitionTrigger:
        assert not is_allowed(source, S.HUMAN_HANDLING, trigger)


def test_takeover_is_the_only_way_into_human_handling():
    allowed = [t for t in TransitionTrigger if is_allowed(S.ESCALATED, S.HUMAN_HANDLING, t)]
    assert allowed == [T.SUPERVISOR_TAKEOVER]


def test_resolved_is_terminal():
    for target in ThreadState:
        for trigger in TransitionTrigger:
            assert not is_allowed(S.RESOLVED, target, trigger)


async def test_disallowed_transition_raises(machine, make_thread):
    thread = make_thread(state=S.NEW)

    with pytest.raises(InvalidTransitionError):
        await machine.transition(thread.id, S.HUMAN_HANDLING, T.SUPERVISOR_TAKEOVER)


async def test_unknown_thread_raises(machine):
    with pytest.raises(InvalidTransitionError):
        await machine.transition("missing", S.AWAITING_INFO, T.NEEDS_INFO)


async def test_concurrent_writer_loses(machine, store, make_thread, monkeypatch):
    thread = make_thread(state=S.NEW)
    stale = store.get_thread(thread.id)
    store.compare_and_set_thread(thread.id, stale.version, {"state": S.AWAITING_INFO})

    # A writer still holding the old version must not overwrite
    monkeypatch.setattr(store, "get_thread", lambda thread_id: stale)
    with pytest.raises(InvalidTransitionError):
        await machine.transition(thread.id, S.IN_PROGRESS, T.INBOUND_MESSAGE)


async def test_escalation_sends_one_email(machine, store, make_thread, fake_channel):
    thread = make_thread(state=S.IN_PROGRESS, provider_thread_ref="gmail-thread-9")

    result = await machine.transition(thread.id, S.ESCALATED, T.ESCALATION_POLICY,
                                      reason="Chargeback threatened")

    assert result.escalation.sent
    assert len(fake_channel.sent) == 1
    assert fake_channel.labels == [("gmail-thread-9", "Escalated")]
    assert store.get_thread(thread.id).state == S.ESCALATED
    assert [e.event_type for e in store.list_events(thread.id)] == [
        "STATE_TRANSITION", "ESCALATION_EMAIL_SENT"
    ]


async def test_second_escalation_within_window_is_deduplicated(machine, store, make_thread, fake_channel):
    thread = make_thread(state=S.IN_PROGRESS)

    await machine.transition(thread.id, S.ESCALATED, T.ESCALATION_POLICY)
    await machine.transition(thread.id, S.HUMAN_HANDLING, T.SUPERVISOR_TAKEOVER)
    result = await machine.transition(thread.id, S.ESCALATED, T.ESCALATION_POLICY)

    assert result.escalation.deduplicated
    assert len(fake_channel.sent) == 1


async def test_failed_escalation_email_keeps_transition(machine, store, make_thread, fake_channel):
    fake_channel.fail = True
    thread = make_thread(state=S.NEW)

    result = await machine.transition(thread.id, S.ESCALATED, T.ESCALATION_POLICY)

    assert not result.escalation.sent
    assert "connection refused" in result.escalation.error
    assert store.get_thread(thread.id).state == S.ESCALATED
    assert store.list_escalation_emails(thread.id) == []


async def test_takeover_records_handler(machine, store, make_thread):
    thread = make_thread(state=S.ESCALATED)

    await machine.transition(thread.id, S.HUMAN_HANDLING, T.SUPERVISOR_TAKEOVER,
                             handler="lead@example.com")

    saved = store.get_thread(thread.id)
    assert saved.human_handling
    assert saved.human_handler == "lead@example.com"
    assert saved.human_handling_started_at is not None


async def test_resolution_clears_flag_and_schedules_learning_once(machine, store, make_thread):
    thread = make_thread(state=S.ESCALATED)
    await machine.transition(thread.id, S.HUMAN_HANDLING, T.SUPERVISOR_TAKEOVER)

    result = await machine.transition(thread.id, S.RESOLVED, T.SUPERVISOR_RESOLVE)
    await machine.wait_for_background()

    saved = store.get_thread(thread.id)
    assert result.learning_scheduled
    assert saved.state == S.RESOLVED
    assert not saved.human_handling
    assert saved.resolution_count == 1
    assert saved.resolved_at is not None
    assert not store.claim_learning_run(thread.id, 1)
    assert store.get_resolution_analysis(thread.id) is not None


async def test_reopen_resets_resolved_thread(machine, store, make_thread):
    thread = make_thread(state=S.IN_PROGRESS)
    await machine.transition(thread.id, S.RESOLVED, T.CUSTOMER_CLOSED)
    await machine.wait_for_background()

    reopened = await machine.reopen(thread.id)

    assert reopened.state == S.NEW
    assert reopened.resolution_count == 1
    assert store.list_events(thread.id, "THREAD_REOPENED")


def _context(**kwargs):
    kwargs.setdefault("current_state", S.NEW)
    return TransitionContext(**kwargs)


def test_decide_keeps_human_owned_threads(machine):
    for state in (S.ESCALATED, S.HUMAN_HANDLING):
        decision = machine.decide(_context(current_state=state, intent="CHARGEBACK_THREAT"))
        assert decision.target == state
        assert decision.trigger is None


@pytest.mark.parametrize("context,target,trigger", [
    (dict(intent="THANK_YOU_CLOSE"), S.RESOLVED, T.CUSTOMER_CLOSED),
    (dict(intent="CHARGEBACK_THREAT"), S.ESCALATED, T.ESCALATION_POLICY),
    (dict(intent="GENERAL_QUESTION", policy_blocked=True), S.ESCALATED, T.ESCALATION_POLICY),
    (dict(intent="GENERAL_QUESTION", confidence=0.1), S.ESCALATED, T.ESCALATION_POLICY),
    (dict(intent="ORDER_STATUS", missing_required_info=True), S.AWAITING_INFO, T.NEEDS_INFO),
    (dict(intent="GENERAL_QUESTION"), S.IN_PROGRESS, T.INBOUND_MESSAGE),
])
def test_decide_policy(machine, context, target, trigger):
    decision = machine.decide(_context(**context))
    assert (decision.target, decision.trigger) == (target, trigger)
    assert decision.reason


@pytest.mark.parametrize("status,target", [
    (VerificationStatus.FLAGGED, S.ESCALATED),
    (VerificationStatus.PENDING, S.AWAITING_INFO),
    (VerificationStatus.NOT_FOUND, S.AWAITING_INFO),
    (VerificationStatus.VERIFIED, S.IN_PROGRESS),
])
def test_decide_follows_verification(machine, status, target):
    verification = VerificationResult(status=status, flags=["customer_tag:fraud"]
                                      if status == VerificationStatus.FLAGGED else [])
    assert machine.next_state(_context(intent="ORDER_STATUS", verification=verification)) == target


def test_verification_error_escalates(machine):
    verification = VerificationResult(status=VerificationStatus.PENDING, error="Shopify API error")
    decision = machine.decide(_context(intent="ORDER_STATUS", verification=verification))
    assert decision.target == S.ESCALATED
    assert machine.transition_reason(_context(intent="ORDER_STATUS", verification=verification)) == \
        "Verification could not be completed"
