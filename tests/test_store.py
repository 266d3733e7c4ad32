from datetime import timedelta

from support_inbox.models.schemas import (
    EscalationEmail, LearningProposal, ProposalStatus, ProposalType, ResponseType,
    Thread, ThreadState, VerificationRecord, VerificationStatus, utc_now
)
from support_inbox.services.store import SupportStore, new_id


def _record(thread_id, status):
    return VerificationRecord(id=new_id(), thread_id=thread_id, status=status)


def _proposal(thread_id, title="Reset steps"):
    return LearningProposal(
        id=new_id(), thread_id=thread_id, type=ProposalType.KB_ARTICLE,
        title=title, proposed_content="Hold the reset button for ten seconds.",
        confidence=0.9
    )


def test_only_one_verified_record_per_thread(store, make_thread):
    thread = make_thread()

    assert store.insert_verification(_record(thread.id, VerificationStatus.PENDING))
    assert store.insert_verification(_record(thread.id, VerificationStatus.VERIFIED))
    assert not store.insert_verification(_record(thread.id, VerificationStatus.VERIFIED))
    assert store.insert_verification(_record(thread.id, VerificationStatus.PENDING))

    statuses = [r.status for r in store.list_verifications(thread.id)]
    assert statuses.count(VerificationStatus.VERIFIED) == 1
    assert len(statuses) == 3


def test_compare_and_set_rejects_stale_version(store, make_thread):
    thread = make_thread()

    assert store.compare_and_set_thread(thread.id, thread.version, {"state": ThreadState.IN_PROGRESS})
    assert not store.compare_and_set_thread(thread.id, thread.version, {"state": ThreadState.ESCALATED})

    current = store.get_thread(thread.id)
    assert current.state == ThreadState.IN_PROGRESS
    assert current.version == thread.version + 1


def test_escalation_reservation_respects_window(store, make_thread):
    thread = make_thread()
    window_start = utc_now() - timedelta(hours=24)

    def email():
        return EscalationEmail(id=new_id(), thread_id=thread.id, sent_to="lead@example.com",
                               subject="[Escalation] test")

    assert store.reserve_escalation_email(email(), window_start)
    assert not store.reserve_escalation_email(email(), window_start)
    assert store.reserve_escalation_email(email(), utc_now() + timedelta(seconds=1))


def test_escalation_reservation_shared_between_store_instances(tmp_path):
    database = str(tmp_path / "support.db")
    first, second = SupportStore(database), SupportStore(database)
    thread = first.create_thread(Thread(id=new_id(), subject="Broken hub",
                                        customer_email="jane@customer.com"))
    window_start = utc_now() - timedelta(hours=24)

    def email():
        return EscalationEmail(id=new_id(), thread_id=thread.id, sent_to="lead@example.com",
                               subject="[Escalation] test")

    try:
        assert first.reserve_escalation_email(email(), window_start)
        assert not second.reserve_escalation_email(email(), window_start)
        assert len(second.list_escalation_emails(thread.id)) == 1
    finally:
        first.close()
        second.close()


def test_escalation_response_claimed_once(store, make_thread):
    thread = make_thread()
    email = EscalationEmail(id=new_id(), thread_id=thread.id, sent_to="lead@example.com",
                            subject="[Escalation] test")
    store.reserve_escalation_email(email, utc_now() - timedelta(hours=24))

    assert store.claim_escalation_response(email.id, ResponseType.RELAY, "first")
    assert not store.claim_escalation_response(email.id, ResponseType.RESOLVE, "second")

    saved = store.get_escalation_email(email.id)
    assert saved.response_received
    assert saved.response_type == ResponseType.RELAY
    assert saved.response_content == "first"
    assert store.find_outstanding_escalation(thread.id) is None


def test_create_proposal_if_absent_is_idempotent(store, make_thread):
    thread = make_thread()

    first, created = store.create_proposal_if_absent(_proposal(thread.id))
    again, created_again = store.create_proposal_if_absent(_proposal(thread.id))

    assert created and not created_again
    assert again.id == first.id

    store.transition_proposal(first.id, [ProposalStatus.PENDING], ProposalStatus.REJECTED)
    _, created_after_reject = store.create_proposal_if_absent(_proposal(thread.id))
    assert created_after_reject


def test_learning_run_claimed_once_per_resolution(store, make_thread):
    thread = make_thread()

    assert store.claim_learning_run(thread.id, 1)
    assert not store.claim_learning_run(thread.id, 1)
    assert store.claim_learning_run(thread.id, 2)


def test_json_columns_round_trip(store, make_thread, add_message):
    thread = make_thread()
    message = add_message(thread.id, "Hello")
    store.add_event(thread.id, "CUSTOM", {"nested": {"values": [1, 2]}})

    assert store.list_messages(thread.id)[0].id == message.id
    assert store.list_events(thread.id, "CUSTOM")[0].payload == {"nested": {"values": [1, 2]}}
