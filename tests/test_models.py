"""Tests for model helpers and message ordering."""

from datetime import datetime, timedelta, timezone

from chatsync.db.models import (
    Conversation,
    DeliveryStatus,
    Message,
    SyncStatus,
    advance_status,
    can_transition,
    compare_messages,
    ensure_utc,
    message_sort_key,
    to_epoch_ms,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make(id, local=T0, server=None, seq=None):
    return Message(
        id=id,
        conversation_id="c1",
        sender_id="alice",
        text=id,
        local_created_at=local,
        server_timestamp=server,
        sequence_number=seq,
    )


class TestCompareMessages:
    """Tests for the three-key ordering."""

    def test_local_time_orders_first(self):
        older = make("a", local=T0, server=T0 + timedelta(seconds=10))
        newer = make("b", local=T0 + timedelta(seconds=1), server=T0)
        assert compare_messages(older, newer) < 0

    def test_server_time_breaks_local_tie(self):
        first = make("b", server=T0)
        second = make("a", server=T0 + timedelta(seconds=1))
        assert sorted([second, first], key=message_sort_key) == [first, second]

    def test_missing_server_time_falls_through_to_sequence(self):
        first = make("b", server=None, seq=1)
        second = make("a", server=T0, seq=2)
        assert compare_messages(first, second) < 0

    def test_id_is_final_tie_break(self):
        assert compare_messages(make("a"), make("b")) < 0
        assert compare_messages(make("b"), make("b")) == 0

    def test_naive_and_aware_times_compare(self):
        naive = make("a", local=T0.replace(tzinfo=None))
        aware = make("b", local=T0 + timedelta(seconds=1))
        assert compare_messages(naive, aware) < 0


class TestStatusRules:
    """Tests for delivery and sync status rules."""

    def test_advance_status_never_regresses(self):
        assert advance_status(DeliveryStatus.SENT, DeliveryStatus.READ) == DeliveryStatus.READ
        assert advance_status(DeliveryStatus.READ, DeliveryStatus.DELIVERED) == DeliveryStatus.READ
        assert advance_status(DeliveryStatus.SENDING, DeliveryStatus.SENDING) == DeliveryStatus.SENDING

    def test_sync_transitions(self):
        assert can_transition(SyncStatus.PENDING, SyncStatus.SYNCED)
        assert can_transition(SyncStatus.PENDING, SyncStatus.FAILED)
        assert can_transition(SyncStatus.FAILED, SyncStatus.PENDING)
        assert can_transition(SyncStatus.FAILED, SyncStatus.SYNCED)
        assert not can_transition(SyncStatus.SYNCED, SyncStatus.PENDING)
        assert not can_transition(SyncStatus.SYNCED, SyncStatus.FAILED)


class TestDefaults:
    """Tests for model defaults and helpers."""

    def test_new_message_defaults(self):
        message = Message(conversation_id="c1", sender_id="alice", text="hi")
        assert message.id
        assert message.status == DeliveryStatus.SENDING
        assert message.sync_status == SyncStatus.PENDING
        assert message.retry_count == 0
        assert message.local_created_at.tzinfo is not None
        assert message.is_outbound

    def test_system_message_is_not_outbound(self):
        message = Message(conversation_id="c1", sender_id="system", text="x", is_system_message=True)
        assert not message.is_outbound

    def test_is_group(self):
        assert not Conversation(participant_ids=["a", "b"]).is_group
        assert Conversation(participant_ids=["a", "b", "c"]).is_group

    def test_epoch_ms(self):
        assert to_epoch_ms(datetime(1970, 1, 1, 0, 0, 1)) == 1000
        assert ensure_utc(None) is None
