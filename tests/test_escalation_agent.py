from support_inbox.models.schemas import (
    MessageRole, VerificationRecord, VerificationStatus
)
from support_inbox.services.store import new_id


def test_email_subject_and_sections(notifier, make_thread, add_message):
    thread = make_thread(subject="Broken charger", last_intent="PRODUCT_SUPPORT")
    add_message(thread.id, "This is ridiculous, I am so frustrated!! Call me at 555-123-4567")
    add_message(thread.id, "Sorry to hear that, we're checking.", role=MessageRole.AGENT)

    subject, html = notifier.build_email(thread, "Low classification confidence <0.20>")

    assert subject == "[Escalation] Broken charger - jane@customer.com"
    assert "Low classification confidence &lt;0.20&gt;" in html
    assert "Intent: PRODUCT_SUPPORT" in html
    assert "Frustration level: high" in html
    assert "Messages: 2" in html
    assert "[PHONE]" in html
    assert "555-123-4567" not in html
    for tag in ("[INSTRUCTION]", "[RESOLVE]", "[DRAFT]", "[KB]", "[TAKEOVER]"):
        assert tag in html


def test_flagged_profile_is_internal_only(notifier, store, make_thread):
    thread = make_thread()
    store.insert_verification(VerificationRecord(
        id=new_id(), thread_id=thread.id, order_number="12345",
        status=VerificationStatus.FLAGGED, flags=["customer_tag:fraud_risk"]
    ))

    _, html = notifier.build_email(thread, "Customer flagged")

    assert "Verification: flagged" in html
    assert "customer_tag:fraud_risk" in html
    assert "[FLAGGED]" in html


def test_frustration_levels(notifier):
    assert notifier.frustration_level("Thanks, all good") == "low"
    assert notifier.frustration_level("I'm disappointed with the delay") == "medium"
    assert notifier.frustration_level("Worst service, I'm angry") == "high"
    assert notifier.frustration_level("Where is it!! Hello!!") == "high"


async def test_notify_deduplicates_within_window(notifier, store, make_thread, fake_channel):
    thread = make_thread()

    first = await notifier.notify(thread.id, "Chargeback threatened")
    second = await notifier.notify(thread.id, "Chargeback threatened again")

    assert first.sent and first.provider_message_id == "<msg-1@test>"
    assert second.deduplicated and not second.sent
    assert len(fake_channel.sent) == 1
    assert fake_channel.sent[0]["to"] == "lead@example.com"
    saved = store.get_escalation_email(first.escalation_email_id)
    assert saved.provider_message_id == "<msg-1@test>"


async def test_failed_send_frees_the_window(notifier, store, make_thread, fake_channel):
    thread = make_thread()
    fake_channel.fail = True

    failed = await notifier.notify(thread.id, "Legal risk")
    fake_channel.fail = False
    retried = await notifier.notify(thread.id, "Legal risk")

    assert not failed.sent and failed.error
    assert retried.sent
    assert store.list_events(thread.id, "ESCALATION_EMAIL_FAILED")
    assert len(store.list_escalation_emails(thread.id)) == 1
