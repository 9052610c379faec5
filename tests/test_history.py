"""Tests for the conversation store."""

from __future__ import annotations

from sdr_agent.models import ConversationStatus

PHONE = "5511999990000"


def _turns(n):
    return [{"role": "user", "content": f"m{i}"} for i in range(n)]


class TestConversationStore:
    def test_unknown_phone(self, store):
        assert store.get(PHONE) is None
        assert store.load_history(PHONE) == []
        assert store.is_disabled(PHONE) is False

    def test_history_is_capped(self, store):
        store.append_messages(PHONE, _turns(4))
        store.append_messages(PHONE, _turns(4))
        history = store.load_history(PHONE)
        assert len(history) == 6
        assert history[0]["content"] == "m2"

    def test_name_and_instances(self, store):
        store.append_messages(PHONE, _turns(1), name="admin", instance="chat1")
        store.append_messages(PHONE, _turns(1), name="Maria", instance="chat2")
        store.append_messages(PHONE, _turns(1), name="Outro")

        conversation = store.get(PHONE)
        assert conversation.name == "Maria"
        assert conversation.first_contact_instance == "chat1"
        assert conversation.last_contact_instance == "chat2"

    def test_outbound_nudge_does_not_touch_contact_time(self, store):
        store.append_messages(PHONE, _turns(1))
        before = store.get(PHONE).last_contact_at
        store.append_messages(PHONE, [{"role": "assistant", "content": "Oi?"}], touch_contact=False)
        assert store.get(PHONE).last_contact_at == before

    def test_disable_toggle_creates_row(self, store):
        store.set_disabled(PHONE, True)
        assert store.is_disabled(PHONE)
        store.set_disabled(PHONE, False)
        assert not store.is_disabled(PHONE)

    def test_status_and_attempts(self, store):
        store.append_messages(PHONE, _turns(1))
        store.set_status(PHONE, ConversationStatus.DISCARDED, stage="objection", discard_reason="x")
        store.increment_attempts(PHONE)
        store.increment_attempts(PHONE)

        conversation = store.get(PHONE)
        assert conversation.reactivation_attempts == 2
        assert conversation.status == ConversationStatus.REACTIVATING
        assert conversation.stage == "objection"
        assert conversation.last_reactivation_at is not None

    def test_mark_responded_without_pending_items(self, store):
        store.append_messages(PHONE, _turns(1))
        store.set_status(PHONE, ConversationStatus.INACTIVE)
        assert store.mark_responded(PHONE) == 0
        assert store.get(PHONE).status == ConversationStatus.ACTIVE
