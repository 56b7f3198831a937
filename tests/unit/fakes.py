"""In-memory stand-ins for the recognizer backend and the microphone recorder."""

import asyncio
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from voicenotes.errors import PermissionDeniedError
from voicenotes.voice.controller import LifecycleController
from voicenotes.voice.events import EventPubSub, EventType
from voicenotes.voice.recognition import RecognitionResult


class FakeStream:
    """Recognizer stream driven by the test"""

    def __init__(self, backend, config, auto_start=True, end_on_stop=True):
        self.backend = backend
        self.config = config
        self.auto_start = auto_start
        self.end_on_stop = end_on_stop
        self.sink = None
        self.started = False
        self.ended = False
        self.stop_calls = 0

    def start(self, sink):
        if self.backend.fail_stream_start:
            raise PermissionDeniedError("stream refused")
        self.sink = sink
        self.started = True
        self.backend.live += 1
        self.backend.max_live = max(self.backend.max_live, self.backend.live)
        if self.auto_start:
            sink.on_start()

    def stop(self):
        self.stop_calls += 1
        if self.end_on_stop:
            self.end()

    def end(self):
        if self.ended or not self.started:
            return
        self.ended = True
        self.backend.live -= 1
        self.sink.on_end()

    def final(self, text):
        self.sink.on_result([RecognitionResult((text,), is_final=True)], 0)

    def interim(self, text):
        self.sink.on_result([RecognitionResult((text,), is_final=False)], 0)

    def error(self, kind, message=""):
        self.sink.on_error(kind, message)


class FakeBackend:
    """Recognizer backend that hands out FakeStreams"""

    def __init__(self, supported=True, deny=False, **stream_options):
        self.supported = supported
        self.deny = deny
        self.fail_stream_start = False
        self.stream_options = stream_options
        self.streams = []
        self.mic_requests = 0
        self.live = 0
        self.max_live = 0

    def is_supported(self):
        return self.supported

    async def acquire_microphone(self):
        self.mic_requests += 1
        if self.deny:
            raise PermissionDeniedError("user dismissed the prompt")

    def create_stream(self, config):
        stream = FakeStream(self, config, **self.stream_options)
        self.streams.append(stream)
        return stream

    @property
    def last(self):
        return self.streams[-1]


class FakeRecorder:
    """
    Recorder emitting constant 100 ms chunks on demand

    With ``stop_delay`` the trailing chunk and the stop notification arrive
    later on the loop, after the recognizer has already ended.
    """

    sample_rate = 16000
    channels = 1

    def __init__(self, chunk_frames=1600, stop_delay=None):
        self.chunk_frames = chunk_frames
        self.stop_delay = stop_delay
        self.on_data = None
        self.on_stopped = None
        self.started = False
        self.stop_calls = 0

    def start(self, on_data, on_stopped):
        self.on_data = on_data
        self.on_stopped = on_stopped
        self.started = True

    def emit(self, count=1):
        for _ in range(count):
            self.on_data(np.full((self.chunk_frames, 1), 0.1, dtype=np.float32))

    def stop(self):
        self.stop_calls += 1
        if self.stop_delay is None:
            self.on_stopped()
            return

        def flush():
            self.emit()
            self.on_stopped()

        asyncio.get_running_loop().call_later(self.stop_delay, flush)


def make_controller(backend=None, recorder=None, hands_free=False, **kwargs):
    """Controller wired to fakes; must be called inside a running loop"""
    backend = backend or FakeBackend()
    pubsub = EventPubSub()
    kwargs.setdefault("restart_delay_s", 0.01)
    kwargs.setdefault("teardown_timeout_s", 0.5)
    recorder_factory = (lambda: recorder) if recorder is not None else None
    controller = LifecycleController(
        backend,
        pubsub=pubsub,
        recorder_factory=recorder_factory,
        hands_free=(hands_free if callable(hands_free) else (lambda: hands_free)),
        **kwargs,
    )
    return controller, backend, pubsub


def event_types(pubsub, *exclude):
    exclude = exclude or (EventType.STATUS_UPDATE,)
    return [event.type for event in pubsub.event_history if event.type not in exclude]


def statuses(pubsub):
    return [
        event.data["status"]
        for event in pubsub.event_history
        if event.type == EventType.STATUS_UPDATE
    ]


async def settle(delay=0.05):
    """Let spawned tasks and timers run"""
    await asyncio.sleep(delay)
