from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest

from voicenode.broker.services.commands import Command
from voicenode.result import Result
from voicenode.speech.services.errors import EngineStateError
from voicenode.speech.services.recognizer import CompilationResult, CompilationStatus, RecognizerState
from voicenode.speech.services.watchdog import RecognitionWatchdog


class FakeEngine:
    def __init__(self, locale: str, status: CompilationStatus, start_error: Optional[BaseException]):
        self.locale = locale
        self.timeouts = None
        self.constraints: List[Any] = []
        self.on_state_changed = None
        self.on_result = None
        self.state = RecognizerState.IDLE
        self.compiled = 0
        self.started = 0
        self.stopped = 0
        self.disposed = False
        self._status = status
        self._start_error = start_error

    def compile_constraints(self) -> CompilationResult:
        self.compiled += 1
        return CompilationResult(self._status)

    def start_continuous(self) -> None:
        if self._start_error is not None:
            raise self._start_error
        if self.state is not RecognizerState.IDLE:
            raise EngineStateError("already listening")
        self.started += 1
        self.state = RecognizerState.CAPTURING

    def stop(self) -> None:
        self.stopped += 1
        self.state = RecognizerState.IDLE

    def dispose(self) -> None:
        self.disposed = True


class FakeEngineFactory:
    def __init__(self) -> None:
        self.created: List[FakeEngine] = []
        self.compile_status = CompilationStatus.SUCCESS
        self.start_error: Optional[BaseException] = None

    def __call__(self, locale: str) -> FakeEngine:
        engine = FakeEngine(locale, self.compile_status, self.start_error)
        self.created.append(engine)
        return engine


class FakeBroker:
    def __init__(self) -> None:
        self.connected = True
        self.connect_result: Result[None] = Result.success()
        self.send_result: Result[None] = Result.success()
        self.connect_calls: List[Any] = []
        self.sent: List[Command] = []
        self.nowait: List[Command] = []
        self.subscriptions: Dict[str, Callable[[Dict[str, Any]], None]] = {}
        self.on_send: Optional[Callable[[Command], Awaitable[None]]] = None
        self.closed = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, address, credentials) -> Result[None]:
        self.connect_calls.append((address, credentials))
        return self.connect_result

    def subscribe(self, topic, handler) -> None:
        self.subscriptions[topic] = handler

    async def send_command(self, command: Command) -> Result[None]:
        self.sent.append(command)
        if self.on_send is not None:
            await self.on_send(command)
        return self.send_result

    def publish_nowait(self, command: Command) -> None:
        self.nowait.append(command)

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def fake_broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def engines() -> FakeEngineFactory:
    return FakeEngineFactory()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_watchdog(fake_broker, engines, clock):
    def _make(**cfg) -> RecognitionWatchdog:
        base: Dict[str, Any] = {"hotword": "Hallo Dims"}
        base.update(cfg)
        return RecognitionWatchdog(base, fake_broker, engines, clock=clock)

    return _make
