import asyncio
import base64
import json
from pathlib import Path

from threadline.assistant.dispatcher import Dispatcher
from threadline.assistant.registry import JsonThreadStore, ThreadRegistry
from threadline.assistant.stager import AttachmentStager
from threadline.assistant.watcher import RunWatcher
from threadline.bus.events import InboundMessage
from threadline.bus.queue import MessageBus
from threadline.channels.whatsapp import _base64_loader
from threadline.observability.metrics import MetricsStore


class _FakeBackend:
    def __init__(self, reply: str = "Hi there", statuses: list[str] | None = None):
        self.reply = reply
        self.statuses = statuses or ["completed"]
        self.threads: dict[str, list[dict]] = {}
        self.runs: list[dict] = []
        self.uploads: list[bytes] = []
        self.fail_create_thread = False
        self.fail_add_message = False
        self.fail_upload = False
        self._checks = 0

    async def create_thread(self, messages: list[dict]) -> str:
        if self.fail_create_thread:
            raise RuntimeError("backend down")
        thread_id = f"thread_{len(self.threads) + 1}"
        self.threads[thread_id] = list(messages)
        return thread_id

    async def add_message(self, thread_id: str, message: dict) -> str:
        if self.fail_add_message:
            raise RuntimeError("thread not found")
        self.threads.setdefault(thread_id, []).append(message)
        return f"msg_{len(self.threads[thread_id])}"

    async def create_run(self, thread_id: str, assistant_id: str, max_completion_tokens: int) -> str:
        self.runs.append(
            {
                "thread_id": thread_id,
                "assistant_id": assistant_id,
                "max_completion_tokens": max_completion_tokens,
            }
        )
        return f"run_{len(self.runs)}"

    async def get_run(self, thread_id: str, run_id: str) -> dict:
        status = self.statuses[min(self._checks, len(self.statuses) - 1)]
        self._checks += 1
        return {"id": run_id, "status": status}

    async def list_messages(self, thread_id: str, order: str = "desc", limit: int = 20) -> list[dict]:
        return [
            {"role": "assistant", "content": [{"type": "text", "text": {"value": self.reply}}]},
            *reversed(self.threads.get(thread_id, [])),
        ]

    async def upload_file(self, path: Path, purpose: str = "assistants") -> str:
        if self.fail_upload:
            raise RuntimeError("unsupported file")
        self.uploads.append(path.read_bytes())
        return f"file_{len(self.uploads)}"

    async def aclose(self) -> None:
        return None


async def _no_sleep(_seconds: float) -> None:
    return None


class _ReadOnlyStore:
    def load_all(self) -> dict[str, str]:
        return {}

    def save_all(self, mapping: dict[str, str]) -> None:
        raise OSError("read-only file system")


def _build(tmp_path, backend: _FakeBackend, metrics: MetricsStore | None = None, store=None):
    bus = MessageBus()
    registry = ThreadRegistry(store or JsonThreadStore(tmp_path / "threads.json"))
    dispatcher = Dispatcher(
        bus=bus,
        backend=backend,
        registry=registry,
        stager=AttachmentStager(backend, staging_dir=tmp_path / "staging"),
        watcher=RunWatcher(backend, "asst_1", sleep=_no_sleep),
        initial_budget=50,
        timeout_s=30.0,
        poll_interval_s=1.0,
        metrics=metrics,
    )
    return bus, registry, dispatcher


def _inbound(content: str, chat_id: str = "A", **kwargs) -> InboundMessage:
    return InboundMessage(channel="whatsapp", sender_id=chat_id, chat_id=chat_id, content=content, **kwargs)


def test_new_contact_gets_thread_and_reply(tmp_path):
    backend = _FakeBackend(reply="Hi there", statuses=["in_progress", "completed"])
    bus, registry, dispatcher = _build(tmp_path, backend)

    reply = asyncio.run(dispatcher.on_message(_inbound("Hello")))

    assert reply == "Hi there"
    assert registry.lookup("A") == "thread_1"
    assert json.loads((tmp_path / "threads.json").read_text(encoding="utf-8")) == {"A": "thread_1"}
    assert backend.threads["thread_1"] == [
        {"role": "user", "content": [{"type": "text", "text": "Hello"}]}
    ]
    assert backend.runs == [
        {"thread_id": "thread_1", "assistant_id": "asst_1", "max_completion_tokens": 50}
    ]

    outbound = bus.outbound.get_nowait()
    assert (outbound.channel, outbound.chat_id, outbound.content) == ("whatsapp", "A", "Hi there")


def test_known_contact_appends_to_existing_thread(tmp_path):
    backend = _FakeBackend()
    backend.threads["thread_9"] = []
    _, registry, dispatcher = _build(tmp_path, backend)
    registry.bind("A", "thread_9")

    asyncio.run(dispatcher.on_message(_inbound("again")))

    assert list(backend.threads) == ["thread_9"]
    assert backend.threads["thread_9"][0]["content"] == [{"type": "text", "text": "again"}]
    assert backend.runs[0]["thread_id"] == "thread_9"


def test_second_message_reuses_thread_created_by_first(tmp_path):
    backend = _FakeBackend()
    _, registry, dispatcher = _build(tmp_path, backend)

    async def run_case() -> None:
        await asyncio.gather(
            dispatcher.on_message(_inbound("one")),
            dispatcher.on_message(_inbound("two")),
        )

    asyncio.run(run_case())

    assert list(backend.threads) == ["thread_1"]
    texts = [m["content"][0]["text"] for m in backend.threads["thread_1"]]
    assert texts == ["one", "two"]
    assert dispatcher._contact_locks == {}
    assert dispatcher._lock_users == {}


def test_media_message_is_uploaded_and_referenced(tmp_path):
    backend = _FakeBackend()
    bus, _, dispatcher = _build(tmp_path, backend)
    encoded = base64.b64encode(b"\xff\xd8image").decode()
    msg = _inbound(
        "what is this?",
        media_loader=_base64_loader(encoded),
        metadata={"mime_type": "image/jpeg"},
    )

    asyncio.run(dispatcher.on_message(msg))

    assert backend.uploads == [b"\xff\xd8image"]
    assert backend.threads["thread_1"][0]["content"] == [
        {"type": "text", "text": "what is this?"},
        {"type": "image_file", "image_file": {"file_id": "file_1"}},
    ]
    assert list((tmp_path / "staging").iterdir()) == []
    assert bus.outbound_size == 1


def test_upload_failure_drops_message_without_reply(tmp_path):
    backend = _FakeBackend()
    backend.fail_upload = True
    bus, registry, dispatcher = _build(tmp_path, backend)
    msg = _inbound("", media_loader=_base64_loader(base64.b64encode(b"x").decode()))

    reply = asyncio.run(dispatcher.on_message(msg))

    assert reply is None
    assert backend.threads == {}
    assert registry.lookup("A") is None
    assert bus.outbound_size == 0


def test_thread_creation_failure_is_swallowed(tmp_path):
    backend = _FakeBackend()
    backend.fail_create_thread = True
    bus, registry, dispatcher = _build(tmp_path, backend)

    reply = asyncio.run(dispatcher.on_message(_inbound("Hello")))

    assert reply is None
    assert registry.lookup("A") is None
    assert backend.runs == []
    assert bus.outbound_size == 0


def test_append_failure_is_swallowed(tmp_path):
    backend = _FakeBackend()
    backend.fail_add_message = True
    bus, registry, dispatcher = _build(tmp_path, backend)
    registry.bind("A", "thread_9")

    reply = asyncio.run(dispatcher.on_message(_inbound("Hello")))

    assert reply is None
    assert backend.runs == []
    assert bus.outbound_size == 0


def test_failed_run_sends_nothing(tmp_path):
    backend = _FakeBackend(statuses=["failed"])
    bus, registry, dispatcher = _build(tmp_path, backend)

    reply = asyncio.run(dispatcher.on_message(_inbound("Hello")))

    assert reply is None
    assert registry.lookup("A") == "thread_1"
    assert bus.outbound_size == 0


def test_own_and_empty_messages_are_ignored(tmp_path):
    backend = _FakeBackend()
    bus, _, dispatcher = _build(tmp_path, backend)

    async def run_case() -> None:
        await dispatcher.on_message(_inbound("echo", metadata={"from_me": True}))
        await dispatcher.on_message(_inbound(""))

    asyncio.run(run_case())

    assert backend.threads == {}
    assert bus.outbound_size == 0


def test_relay_outcomes_are_recorded(tmp_path):
    backend = _FakeBackend()
    metrics = MetricsStore(tmp_path / "metrics" / "events.jsonl")
    _, _, dispatcher = _build(tmp_path, backend, metrics=metrics)
    msg = _inbound("look", media_loader=_base64_loader(base64.b64encode(b"img").decode()))

    asyncio.run(dispatcher.on_message(msg))

    snapshot = metrics.snapshot(hours=1)
    assert snapshot["relay"]["messages"] == 1
    assert snapshot["relay"]["delivered"] == 1
    assert snapshot["relay"]["new_threads"] == 1
    assert snapshot["relay"]["outcomes"] == [{"outcome": "completed", "count": 1}]
    assert snapshot["uploads"]["count"] == 1
    assert snapshot["uploads"]["success_rate"] == 100.0


def test_run_loop_consumes_bus_and_shutdown_flushes(tmp_path):
    backend = _FakeBackend(reply="pong")
    bus, registry, dispatcher = _build(tmp_path, backend)

    async def run_case() -> None:
        runner = asyncio.create_task(dispatcher.run())
        await bus.publish_inbound(_inbound("ping"))
        outbound = await asyncio.wait_for(bus.consume_outbound(), timeout=2.0)
        assert outbound.content == "pong"
        await dispatcher.shutdown()
        await asyncio.wait_for(runner, timeout=2.0)

    asyncio.run(run_case())

    assert registry.lookup("A") == "thread_1"
    assert dispatcher.in_flight == 0


def test_persist_failure_aborts_message_but_next_one_reuses_thread(tmp_path):
    backend = _FakeBackend(reply="Hi there")
    bus, registry, dispatcher = _build(tmp_path, backend, store=_ReadOnlyStore())

    async def run_case() -> tuple[str | None, list[dict], str | None]:
        first = await dispatcher.on_message(_inbound("one"))
        runs_after_first = list(backend.runs)
        second = await dispatcher.on_message(_inbound("two"))
        return first, runs_after_first, second

    first, runs_after_first, second = asyncio.run(run_case())

    assert first is None
    assert runs_after_first == []
    assert second == "Hi there"
    assert registry.lookup("A") == "thread_1"
    assert list(backend.threads) == ["thread_1"]
    assert [m["content"][0]["text"] for m in backend.threads["thread_1"]] == ["one", "two"]
    assert [run["thread_id"] for run in backend.runs] == ["thread_1"]
    assert bus.outbound_size == 1


class _PerContactBackend(_FakeBackend):
    """Parks or fails thread creation for one message text."""

    def __init__(self, slow_text: str = "", failing_text: str = ""):
        super().__init__(reply="Hi there")
        self.slow_text = slow_text
        self.failing_text = failing_text
        self.gate: asyncio.Event | None = None

    async def create_thread(self, messages: list[dict]) -> str:
        text = messages[0]["content"][0]["text"]
        if text == self.failing_text:
            raise RuntimeError("backend down")
        if text == self.slow_text and self.gate is not None:
            await self.gate.wait()
        return await super().create_thread(messages)


def test_stuck_contact_does_not_block_other_contacts(tmp_path):
    backend = _PerContactBackend(slow_text="slow")
    _, registry, dispatcher = _build(tmp_path, backend)

    async def run_case() -> None:
        backend.gate = asyncio.Event()
        slow = asyncio.create_task(dispatcher.on_message(_inbound("slow", chat_id="A")))
        await asyncio.sleep(0)

        fast_reply = await asyncio.wait_for(
            dispatcher.on_message(_inbound("fast", chat_id="B")), timeout=2
        )
        assert fast_reply == "Hi there"
        assert registry.lookup("B") == "thread_1"
        assert not slow.done()

        backend.gate.set()
        assert await asyncio.wait_for(slow, timeout=2) == "Hi there"

    asyncio.run(run_case())

    assert registry.lookup("A") == "thread_2"
    assert dispatcher._contact_locks == {}


def test_failing_contact_does_not_stop_other_contacts(tmp_path):
    backend = _PerContactBackend(failing_text="broken")
    bus, registry, dispatcher = _build(tmp_path, backend)

    async def run_case() -> list[str | None]:
        return await asyncio.gather(
            dispatcher.on_message(_inbound("broken", chat_id="A")),
            dispatcher.on_message(_inbound("fine", chat_id="B")),
        )

    reply_a, reply_b = asyncio.run(run_case())

    assert reply_a is None
    assert reply_b == "Hi there"
    assert registry.lookup("A") is None
    assert registry.lookup("B") == "thread_1"
    outbound = bus.outbound.get_nowait()
    assert (outbound.chat_id, outbound.content) == ("B", "Hi there")
    assert bus.outbound_size == 0
