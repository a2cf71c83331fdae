"""Shared test fixtures for quotecast."""
import random
from typing import Optional

import pytest

from channels.base import DeliveryClient
from config.settings import DispatchConfig, InboundConfig, LoggingConfig, Settings, DataConfig
from content.selector import ContentCatalog
from database.store_memory import InMemorySubscriberStore
from models.schemas import ContentItem, ReadyEvent, Subscriber
from utils.identity import canonical_identity


class FakeDeliveryClient(DeliveryClient):
    """
    Records every send. ``failures`` maps a canonical identity to a list of
    exceptions raised on successive attempts (``None`` means succeed).
    """

    channel_name = "fake"

    def __init__(self, failures: Optional[dict] = None, ready: bool = True):
        super().__init__()
        self.failures = failures or {}
        self.ready_on_init = ready
        self.media_sends: list[tuple[str, str, str]] = []
        self.text_sends: list[tuple[str, str]] = []
        self.text_error: Optional[Exception] = None
        self.on_send = None
        self.released = 0
        self.shutdown_calls = 0

    async def initialize(self) -> None:
        self._initialized = True
        if self.ready_on_init:
            self.emit(ReadyEvent())

    async def send_media(self, identity: str, media_ref: str, caption: str) -> str:
        self.media_sends.append((identity, media_ref, caption))
        if self.on_send is not None:
            await self.on_send(identity)
        script = self.failures.get(canonical_identity(identity))
        if script:
            error = script.pop(0)
            if error is not None:
                raise error
        return f"msg-{len(self.media_sends)}"

    async def send_text(self, identity: str, text: str) -> str:
        self.text_sends.append((identity, text))
        if self.text_error is not None:
            raise self.text_error
        return f"txt-{len(self.text_sends)}"

    async def release_media(self) -> None:
        self.released += 1

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        await super().shutdown()

    def sent_to(self) -> list[str]:
        return [identity for identity, _, _ in self.media_sends]


class SleepRecorder:
    """Async stand-in for asyncio.sleep that returns immediately."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_client() -> FakeDeliveryClient:
    return FakeDeliveryClient()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(7)


@pytest.fixture
def dispatch_config() -> DispatchConfig:
    return DispatchConfig()


@pytest.fixture
def inbound_config() -> InboundConfig:
    return InboundConfig()


@pytest.fixture
def subscribers() -> list[Subscriber]:
    return [
        Subscriber(display_name="Asha", identity="+91 98765 43210"),
        Subscriber(display_name="Ravi", identity="+1-555-0100"),
        Subscriber(display_name="Meera", identity="447700900123"),
    ]


@pytest.fixture
def store(subscribers) -> InMemorySubscriberStore:
    return InMemorySubscriberStore(subscribers)


@pytest.fixture
def quotes() -> list[ContentItem]:
    return [
        ContentItem(text="Be still.", image_ref="https://cdn.example.com/q0.jpg"),
        ContentItem(text="Breathe in.", image_ref="https://cdn.example.com/q1.jpg"),
        ContentItem(text="Let go.", image_ref="https://cdn.example.com/q2.jpg"),
    ]


@pytest.fixture
def catalog(quotes) -> ContentCatalog:
    return ContentCatalog.from_items(quotes)


@pytest.fixture
def settings(tmp_path) -> Settings:
    s = Settings()
    s.data = DataConfig(contacts_file="", quotes_file=str(tmp_path / "quotes.json"))
    s.logging = LoggingConfig(file="")
    s.dispatch = DispatchConfig(throttle_base_s=0.0, throttle_jitter_s=0.0, backoff_base_s=0.0)
    return s
