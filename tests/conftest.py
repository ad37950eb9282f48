"""Shared test fixtures for pytest."""

import asyncio
import inspect

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from chatsync.connectivity import ConnectivityMonitor
from chatsync.coordinator import SyncCoordinator
from chatsync.credentials import StaticCredentials
from chatsync.db.engine import init_db
from chatsync.db.models import Conversation, SyncStatus
from chatsync.metrics import metrics
from chatsync.queue import OutboundQueue, RetryPolicy
from chatsync.reconciliation import ReconciliationEngine
from chatsync.remote.base import TransientRemoteError
from chatsync.remote.memory import InMemoryRemoteStore, LocalRemoteClient
from chatsync.schemas.remote import ConversationPayload
from chatsync.service import MessagingService
from chatsync.store import LocalStore


class ScriptedRemote(LocalRemoteClient):
    """LocalRemoteClient whose sends can be made to fail on cue."""

    def __init__(self, remote, latency=0.0):
        super().__init__(remote, latency)
        self.failures = []
        self.lost_acks = 0
        self.sent = []
        self.before_send = None

    async def send(self, message):
        self.sent.append(message.id)
        if self.before_send is not None:
            await self.before_send(message)
        if self.failures:
            raise self.failures.pop(0)
        ack = await super().send(message)
        if self.lost_acks:
            # Delivered, but the caller never hears back
            self.lost_acks -= 1
            raise TransientRemoteError("Connection reset after write")
        return ack


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with an empty metrics registry."""
    metrics.reset()
    yield
    metrics.reset()


@pytest_asyncio.fixture
async def engine():
    """A fresh in-memory database for each test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return LocalStore(engine)


@pytest.fixture
def remote_store():
    return InMemoryRemoteStore()


@pytest.fixture
def remote(remote_store):
    return ScriptedRemote(remote_store)


@pytest.fixture
def credentials():
    return StaticCredentials("alice")


@pytest.fixture
def reconciliation(store, credentials):
    return ReconciliationEngine(store, credentials)


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter=0.0)


@pytest.fixture
def queue(store, remote, reconciliation, policy, sleeps):
    return OutboundQueue(store, remote, reconciliation, policy=policy, send_timeout=1.0, sleep=sleeps)


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=False)


@pytest_asyncio.fixture
async def coordinator(store, queue, remote, reconciliation, connectivity):
    coordinator = SyncCoordinator(store, queue, remote, reconciliation, connectivity)
    yield coordinator
    await coordinator.stop()


@pytest.fixture
def service(store, coordinator, credentials):
    return MessagingService(store, coordinator, credentials)


@pytest.fixture
def seed_conversation(store, remote_store):
    """Factory for a conversation that already exists locally (and remotely if synced)."""

    async def seed(participants=("alice", "bob"), synced=True):
        conversation = Conversation(
            participant_ids=list(participants),
            sync_status=SyncStatus.SYNCED if synced else SyncStatus.PENDING,
        )
        await store.insert_conversation(conversation)
        if synced:
            remote_store.upsert_conversation(ConversationPayload.from_conversation(conversation))
        return conversation

    return seed


@pytest.fixture
def wait_until():
    """Poll a (possibly async) condition until it holds or time runs out."""

    async def wait(condition, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = condition()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return
            if loop.time() > deadline:
                raise AssertionError("Condition not met in time")
            await asyncio.sleep(0.01)

    return wait


@pytest.fixture
def emulator_app(remote_store):
    """The emulator app over the test's remote store."""
    from chatsync.emulator import create_app

    return create_app(remote_store)


@pytest.fixture
def client(emulator_app):
    """Synchronous test client for the emulator."""
    from fastapi.testclient import TestClient

    with TestClient(emulator_app) as test_client:
        yield test_client
