#!/usr/bin/env python3
"""Unit tests for the event bus."""

import asyncio
import sys
import threading
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from voicenotes.voice.events import Event, EventPubSub, EventType


class TestEventPubSub(unittest.TestCase):

    def test_listeners_receive_copies_in_order(self):
        pubsub = EventPubSub()
        seen = []
        pubsub.add_listener(seen.append)

        pubsub.publish_nowait(Event(EventType.DICTATION_UPDATE, {"transcript": "a"}))
        pubsub.publish_nowait(Event(EventType.DICTATION_FINALIZED, {"transcript": "a b"}))

        self.assertEqual([e.type for e in seen], [EventType.DICTATION_UPDATE, EventType.DICTATION_FINALIZED])
        seen[0].data["transcript"] = "changed"
        self.assertEqual(pubsub.event_history[0].data["transcript"], "a")

    def test_failing_listener_does_not_stop_others(self):
        pubsub = EventPubSub()
        seen = []

        def broken(_event):
            raise RuntimeError("boom")

        pubsub.add_listener(broken)
        pubsub.add_listener(seen.append)
        pubsub.publish_nowait(Event(EventType.STATUS_UPDATE, {"status": "ready"}))
        self.assertEqual(len(seen), 1)

    def test_history_is_bounded(self):
        pubsub = EventPubSub(max_history=3)
        for i in range(5):
            pubsub.publish_nowait(Event(EventType.DICTATION_UPDATE, {"i": i}))
        self.assertEqual([e.data["i"] for e in pubsub.event_history], [2, 3, 4])

    def test_events_of_filters(self):
        pubsub = EventPubSub()
        pubsub.publish_nowait(Event(EventType.STATUS_UPDATE))
        pubsub.publish_nowait(Event(EventType.COMMAND_ERROR))
        self.assertEqual(len(pubsub.events_of(EventType.COMMAND_ERROR)), 1)

    def test_poll_subscriber(self):
        async def scenario():
            pubsub = EventPubSub()
            received = []

            async def consume():
                async for event in pubsub.poll():
                    received.append(event)
                    if len(received) == 2:
                        break

            task = asyncio.create_task(consume())
            await asyncio.sleep(0)
            self.assertEqual(len(pubsub.subscribers), 1)

            pubsub.publish_nowait(Event(EventType.LISTENING_STARTED, {"mode": "dictation"}))
            pubsub.publish_nowait(Event(EventType.LISTENING_FINISHED, {"mode": "dictation"}))
            await asyncio.wait_for(task, 1.0)

            self.assertEqual([e.type for e in received],
                             [EventType.LISTENING_STARTED, EventType.LISTENING_FINISHED])

        asyncio.run(scenario())

    def test_foreign_thread_publish_is_marshalled(self):
        async def scenario():
            pubsub = EventPubSub()
            pubsub.set_event_loop(asyncio.get_running_loop())
            threads = []
            pubsub.add_listener(lambda _e: threads.append(threading.get_ident()))

            worker = threading.Thread(
                target=pubsub.publish_nowait,
                args=(Event(EventType.DICTATION_UPDATE),),
            )
            worker.start()
            worker.join()
            self.assertEqual(threads, [])

            await asyncio.sleep(0.01)
            self.assertEqual(threads, [threading.get_ident()])

        asyncio.run(scenario())

    def test_event_values_are_wire_names(self):
        self.assertEqual(EventType.STATUS_UPDATE.value, "command-status-update")
        self.assertEqual(EventType.LISTENING_FINISHED.value, "listening-finished")


if __name__ == '__main__':
    unittest.main()
