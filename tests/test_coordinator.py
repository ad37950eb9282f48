"""Tests for the sync coordinator, end to end over the in-memory remote store."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from chatsync.connectivity import ConnectivityMonitor
from chatsync.coordinator import SyncCoordinator, SyncState
from chatsync.credentials import StaticCredentials
from chatsync.db.engine import init_db
from chatsync.db.models import Conversation, DeliveryStatus, Message, SyncStatus
from chatsync.queue import OutboundQueue, RetryPolicy
from chatsync.reconciliation import ReconciliationEngine
from chatsync.remote.memory import LocalRemoteClient
from chatsync.schemas.remote import MessagePayload
from chatsync.service import MessagingService
from chatsync.store import LocalStore


@pytest.mark.asyncio
class TestConnectivityDrivenDrain:
    """Tests for draining on connectivity changes."""

    async def test_offline_send_syncs_after_reconnect(self, store, service, coordinator, connectivity):
        """A message sent offline is visible at once and syncs when back online."""
        await coordinator.start()
        assert coordinator.state == SyncState.OFFLINE

        conversation = await service.create_conversation(["bob"])
        sent = await service.send_message(conversation.id, "hello")

        visible = await store.query(conversation.id)
        assert [m.id for m in visible] == [sent.id]
        assert visible[0].sync_status == SyncStatus.PENDING
        assert (await coordinator.snapshot()).pending_count == 1

        await connectivity.set_online(True)
        await coordinator.wait_idle()

        stored = await store.get(sent.id)
        assert stored.sync_status == SyncStatus.SYNCED
        assert stored.server_timestamp is not None
        assert coordinator.state == SyncState.IDLE

        snapshot = await coordinator.snapshot()
        assert snapshot.is_online
        assert not snapshot.is_draining
        assert snapshot.pending_count == 0

    async def test_new_pending_message_triggers_drain(self, store, service, coordinator, connectivity):
        await connectivity.set_online(True)
        await coordinator.start()
        conversation = await service.create_conversation(["bob"])
        await coordinator.wait_idle()

        sent = await service.send_message(conversation.id, "hi")
        await coordinator.wait_idle()

        assert (await store.get(sent.id)).sync_status == SyncStatus.SYNCED

    async def test_going_offline_mid_drain_leaves_rest_queued(
        self, store, service, coordinator, connectivity, remote, seed_conversation
    ):
        conversation = await seed_conversation()
        await coordinator.start()
        sent = [await service.send_message(conversation.id, f"m{i}") for i in range(3)]

        async def drop_connection(message):
            remote.reachable = False
            await connectivity.set_online(False)

        remote.before_send = drop_connection
        await connectivity.set_online(True)
        await coordinator.wait_idle()

        assert coordinator.state == SyncState.OFFLINE
        assert remote.sent == [sent[0].id]
        first = await store.get(sent[0].id)
        assert first.sync_status == SyncStatus.FAILED
        assert first.retry_count == 1
        for later in sent[1:]:
            assert (await store.get(later.id)).sync_status == SyncStatus.PENDING

        remote.before_send = None
        remote.reachable = True
        await connectivity.set_online(True)
        await coordinator.wait_idle()
        for message in sent:
            assert (await store.get(message.id)).sync_status == SyncStatus.SYNCED

    async def test_observers_see_state_changes(self, service, coordinator, connectivity, seed_conversation):
        conversation = await seed_conversation()
        await coordinator.start()
        await service.send_message(conversation.id, "hello")
        states = []
        coordinator.observe(lambda snapshot: states.append(snapshot.state))

        await connectivity.set_online(True)
        await coordinator.wait_idle()

        assert SyncState.DRAINING in states
        assert states[-1] == SyncState.IDLE

    async def test_retry_message_drains_again(self, store, service, coordinator, connectivity, remote, seed_conversation):
        conversation = await seed_conversation()
        await coordinator.start()
        sent = await service.send_message(conversation.id, "hello")
        remote.reachable = False
        await connectivity.set_online(True)
        await coordinator.wait_idle()
        assert (await coordinator.snapshot()).failed_count == 1

        remote.reachable = True
        await service.retry_message(sent.id)
        await coordinator.wait_idle()

        assert (await store.get(sent.id)).sync_status == SyncStatus.SYNCED
        assert (await coordinator.snapshot()).failed_count == 0

    async def test_discard_message(self, store, service, coordinator, seed_conversation):
        conversation = await seed_conversation()
        sent = await service.send_message(conversation.id, "oops")

        await coordinator.discard_message(sent.id)
        assert await store.get(sent.id) is None


@pytest.mark.asyncio
class TestNetworkConditions:
    """Tests for metered links and power-saving mode."""

    @pytest_asyncio.fixture
    async def held(self, store, queue, remote, reconciliation, connectivity):
        coordinator = SyncCoordinator(
            store, queue, remote, reconciliation, connectivity, allow_metered_sync=False
        )
        yield coordinator
        await coordinator.stop()

    async def test_metered_link_holds_automatic_drain(self, store, held, connectivity, remote, seed_conversation):
        conversation = await seed_conversation()
        await store.insert(Message(conversation_id=conversation.id, sender_id="alice", text="later"))
        await held.start()
        await connectivity.set_metered(True)

        await connectivity.set_online(True)
        await held.wait_idle()

        assert held.request_drain() is None
        assert remote.sent == []
        snapshot = await held.snapshot()
        assert snapshot.is_held
        assert snapshot.network_type == "metered"
        assert snapshot.pending_count == 1

    async def test_unmetered_link_releases_held_drain(self, store, held, connectivity, seed_conversation):
        conversation = await seed_conversation()
        queued = await store.insert(Message(conversation_id=conversation.id, sender_id="alice", text="later"))
        await connectivity.set_metered(True)
        await connectivity.set_online(True)
        await held.start()
        assert (await store.get(queued.id)).sync_status == SyncStatus.PENDING

        await connectivity.set_metered(False)
        await held.wait_idle()

        assert (await store.get(queued.id)).sync_status == SyncStatus.SYNCED
        assert not held.is_held

    async def test_user_retry_goes_out_on_metered_link(
        self, store, held, connectivity, seed_conversation
    ):
        conversation = await seed_conversation()
        failed = await store.insert(
            Message(
                conversation_id=conversation.id,
                sender_id="alice",
                text="stuck",
                sync_status=SyncStatus.FAILED,
                retry_count=3,
            )
        )
        await connectivity.set_metered(True)
        await connectivity.set_online(True)
        await held.start()

        await held.retry_message(failed.id)
        await held.wait_idle()

        assert (await store.get(failed.id)).sync_status == SyncStatus.SYNCED

    async def test_metered_sync_allowed_by_default(self, store, coordinator, connectivity, seed_conversation):
        conversation = await seed_conversation()
        queued = await store.insert(Message(conversation_id=conversation.id, sender_id="alice", text="now"))
        await connectivity.set_metered(True)
        await connectivity.set_online(True)

        await coordinator.start()
        await coordinator.wait_idle()

        assert (await store.get(queued.id)).sync_status == SyncStatus.SYNCED

    async def test_power_saving_delays_drain(
        self, store, queue, remote, reconciliation, connectivity, sleeps, seed_conversation
    ):
        conversation = await seed_conversation()
        queued = await store.insert(Message(conversation_id=conversation.id, sender_id="alice", text="slow"))
        connectivity.set_power_saving(True)
        await connectivity.set_online(True)
        coordinator = SyncCoordinator(
            store, queue, remote, reconciliation, connectivity, power_saving_delay=5.0, sleep=sleeps
        )
        try:
            await coordinator.start()
            await coordinator.wait_idle()
        finally:
            await coordinator.stop()

        assert sleeps.delays == [5.0]
        assert (await store.get(queued.id)).sync_status == SyncStatus.SYNCED


@pytest.mark.asyncio
class TestSubscriptions:
    """Tests for conversation subscriptions."""

    async def test_open_conversation_applies_remote_messages(
        self, store, coordinator, remote_store, seed_conversation, wait_until
    ):
        conversation = await seed_conversation()
        await coordinator.open_conversation(conversation.id)

        remote_store.upsert_message(
            MessagePayload(
                id="from-bob",
                conversation_id=conversation.id,
                sender_id="bob",
                text="hey alice",
                client_created_at=conversation.created_at,
            )
        )
        await wait_until(lambda: store.get("from-bob"))

        stored = await store.get("from-bob")
        assert stored.sync_status == SyncStatus.SYNCED
        assert (await store.get_conversation(conversation.id)).unread_count == 1

    async def test_status_updates_arrive_through_subscription(
        self, store, service, coordinator, connectivity, remote_store, seed_conversation, wait_until
    ):
        conversation = await seed_conversation()
        await connectivity.set_online(True)
        await coordinator.start()
        await coordinator.open_conversation(conversation.id)
        sent = await service.send_message(conversation.id, "hello")
        await coordinator.wait_idle()

        remote_store.mark_status(conversation.id, sent.id, DeliveryStatus.READ, reader_id="bob")

        async def read_by_bob():
            return "bob" in (await store.get(sent.id)).read_by

        await wait_until(read_by_bob)
        assert (await store.get(sent.id)).status == DeliveryStatus.READ

    async def test_close_conversation_cancels_subscription(
        self, store, coordinator, remote_store, seed_conversation
    ):
        conversation = await seed_conversation()
        subscription = await coordinator.open_conversation(conversation.id)

        coordinator.close_conversation(conversation.id)
        await subscription.wait_closed()

        assert not subscription.active
        assert not coordinator.is_open(conversation.id)
        remote_store.upsert_message(
            MessagePayload(
                id="late",
                conversation_id=conversation.id,
                sender_id="bob",
                text="anyone?",
                client_created_at=conversation.created_at,
            )
        )
        assert await store.get("late") is None

    async def test_closing_conversation_keeps_in_flight_sends(
        self, store, service, coordinator, connectivity, remote, seed_conversation
    ):
        conversation = await seed_conversation()
        await coordinator.start()
        await coordinator.open_conversation(conversation.id)
        sent = await service.send_message(conversation.id, "bye")

        async def close_view(message):
            coordinator.close_conversation(conversation.id)

        remote.before_send = close_view
        await connectivity.set_online(True)
        await coordinator.wait_idle()

        assert (await store.get(sent.id)).sync_status == SyncStatus.SYNCED


@pytest.mark.asyncio
class TestResync:
    """Tests for gap-triggered resync."""

    async def test_gap_triggers_resync(
        self, store, reconciliation, coordinator, connectivity, remote, remote_store, seed_conversation, wait_until
    ):
        conversation = await seed_conversation()
        for n in range(1, 4):
            remote_store.upsert_message(
                MessagePayload(
                    id=f"r{n}",
                    conversation_id=conversation.id,
                    sender_id="bob",
                    text=f"r{n}",
                    client_created_at=conversation.created_at,
                )
            )
        await connectivity.set_online(True)
        await coordinator.start()

        # Only the first and third messages arrive
        first, _, third = remote_store.messages(conversation.id)
        await reconciliation.apply_remote(first)
        await reconciliation.apply_remote(third)

        await wait_until(lambda: store.get("r2"))
        await wait_until(lambda: not reconciliation.has_gap(conversation.id))
        assert [m.sequence_number for m in await store.query(conversation.id)] == [1, 2, 3]

    async def test_manual_resync(self, store, coordinator, remote_store, seed_conversation):
        conversation = await seed_conversation()
        remote_store.upsert_message(
            MessagePayload(
                id="missed",
                conversation_id=conversation.id,
                sender_id="bob",
                text="you missed this",
                client_created_at=conversation.created_at,
            )
        )

        changed = await coordinator.resync(conversation.id)

        assert changed == 1
        assert await store.get("missed") is not None
        assert await coordinator.resync(conversation.id) == 0


@pytest_asyncio.fixture
async def second_device(remote_store):
    """A second client sharing the same remote store, signed in as bob."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await init_db(engine)
    store = LocalStore(engine)
    credentials = StaticCredentials("bob")
    remote = LocalRemoteClient(remote_store)
    reconciliation = ReconciliationEngine(store, credentials)
    queue = OutboundQueue(store, remote, reconciliation, policy=RetryPolicy(jitter=0.0))
    connectivity = ConnectivityMonitor(online=False)
    coordinator = SyncCoordinator(store, queue, remote, reconciliation, connectivity)
    service = MessagingService(store, coordinator, credentials)
    yield store, service, coordinator, connectivity
    await coordinator.stop()
    await engine.dispose()


@pytest.mark.asyncio
class TestTwoDevices:
    """Tests for concurrent writers on different devices."""

    async def test_simultaneous_offline_sends_both_survive(
        self, store, service, coordinator, connectivity, remote_store, seed_conversation, second_device
    ):
        conversation = await seed_conversation()
        bob_store, bob_service, bob_coordinator, bob_connectivity = second_device
        await bob_store.insert_conversation(
            Conversation(
                id=conversation.id,
                participant_ids=list(conversation.participant_ids),
                sync_status=SyncStatus.SYNCED,
            )
        )
        await coordinator.start()
        await bob_coordinator.start()

        from_alice = await service.send_message(conversation.id, "hi bob")
        from_bob = await bob_service.send_message(conversation.id, "hi alice")

        await connectivity.set_online(True)
        await bob_connectivity.set_online(True)
        await coordinator.wait_idle()
        await bob_coordinator.wait_idle()

        remote_messages = remote_store.messages(conversation.id)
        assert {m.id for m in remote_messages} == {from_alice.id, from_bob.id}
        assert remote_messages[0].server_timestamp != remote_messages[1].server_timestamp

        await coordinator.resync(conversation.id)
        await bob_coordinator.resync(conversation.id)
        for device_store in (store, bob_store):
            texts = {m.text for m in await device_store.query(conversation.id)}
            assert texts == {"hi bob", "hi alice"}
