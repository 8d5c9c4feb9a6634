import os

os.environ["API_KEY"] = "test-key"
os.environ.setdefault("WORKER_EMBEDDED", "0")

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

import chatblast.models  # noqa: F401
from chatblast.core.dispatcher import ItemDispatcher
from chatblast.core.errors import ChannelUnavailableError
from chatblast.core.lifecycle import LifecycleController
from chatblast.models.job import JobItem
from chatblast.storage.db import Base, make_sessionmaker
from chatblast.storage.jobs import JobStore


class FakeChannel:
    """Канал-заглушка: запоминает отправки, падает на заданных получателях."""

    def __init__(self, *, available=True, fail_for=(), vanish_on=None):
        self.available = available
        self.fail_for = set(fail_for)
        self.vanish_on = vanish_on
        self.attempts = []
        self.sent = []

    async def is_available(self, device_id):
        return self.available

    async def send(self, device_id, recipient, payload):
        self.attempts.append(recipient)
        if recipient == self.vanish_on:
            raise ChannelUnavailableError(device_id, "session disconnected")
        if recipient in self.fail_for:
            raise RuntimeError(f"send failed for {recipient}")
        self.sent.append((device_id, recipient, payload))
        return f"msg-{len(self.sent)}"


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory, max_recipients=50, max_delay=60.0)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def dispatcher(store, channel, sleeper):
    return ItemDispatcher(store, channel, default_delay=3.0, max_delay=60.0, sleep=sleeper)


@pytest.fixture
def lifecycle(store):
    return LifecycleController(store)


@pytest.fixture
def make_job(store):
    async def _make(recipients=("111", "222", "333"), *, message="hi", user_id=1, device_id="dev-1", **data):
        payload = {"message": message} if message is not None else {}
        payload.update(data)
        return await store.create_job(
            user_id=user_id,
            device_id=device_id,
            type="send-text",
            data=payload,
            recipients=list(recipients),
        )

    return _make


async def items_by_recipient(store, job_id):
    return {i.recipient: i for i in await store.list_items(job_id)}


async def mark_sent(session_factory, job_id, recipients):
    """Имитация прошлого прогона: items уже sent (счётчики не трогаем)."""
    async with session_factory() as db:
        rows = (
            await db.execute(select(JobItem).where(JobItem.job_id == job_id, JobItem.recipient.in_(recipients)))
        ).scalars().all()
        for item in rows:
            item.status = "sent"
            item.message_id = f"old-{item.recipient}"
        await db.commit()
