import threading
import time
import unittest
from unittest.mock import MagicMock, patch

from redis import exceptions as redis_exceptions

from socialape.queue import InMemoryEventQueue, RedisEventQueue


class InMemoryEventQueueTests(unittest.TestCase):
    def test_push_and_pop_in_order(self):
        queue = InMemoryEventQueue()
        queue.push(["a", "b"])
        queue.push(iter(["c"]))
        self.assertEqual([queue.pop(), queue.pop(), queue.pop()], ["a", "b", "c"])
        self.assertIsNone(queue.pop())

    def test_pop_gives_up_after_wait(self):
        queue = InMemoryEventQueue()
        started = time.monotonic()
        self.assertIsNone(queue.pop(wait_seconds=0.05))
        self.assertGreaterEqual(time.monotonic() - started, 0.04)

    def test_waiting_pop_wakes_on_push(self):
        queue = InMemoryEventQueue()
        pusher = threading.Timer(0.05, queue.push, args=(["evt-1"],))
        pusher.start()
        try:
            self.assertEqual(queue.pop(wait_seconds=5), "evt-1")
        finally:
            pusher.cancel()


@patch("socialape.queue.redis.Redis.from_url")
class RedisEventQueueTests(unittest.TestCase):
    def test_connects_with_decoded_responses(self, mock_from_url):
        RedisEventQueue(url="redis://localhost:6379/0")
        mock_from_url.assert_called_once_with(
            "redis://localhost:6379/0", decode_responses=True
        )

    def test_push_sends_one_rpush(self, mock_from_url):
        client = mock_from_url.return_value
        queue = RedisEventQueue(url="redis://localhost", queue_key="events")
        queue.push(["a", "b"])
        queue.push([])
        client.rpush.assert_called_once_with("events", "a", "b")

    def test_pop_without_wait_does_not_block(self, mock_from_url):
        client = mock_from_url.return_value
        client.lpop.return_value = "evt-1"
        queue = RedisEventQueue(url="redis://localhost", queue_key="events")
        self.assertEqual(queue.pop(), "evt-1")
        client.blpop.assert_not_called()

    def test_pop_passes_fractional_wait(self, mock_from_url):
        client = mock_from_url.return_value
        client.blpop.return_value = ("events", "evt-1")
        queue = RedisEventQueue(url="redis://localhost", queue_key="events")
        self.assertEqual(queue.pop(wait_seconds=0.5), "evt-1")
        client.blpop.assert_called_once_with(["events"], timeout=0.5)

    def test_pop_times_out(self, mock_from_url):
        mock_from_url.return_value.blpop.return_value = None
        queue = RedisEventQueue(url="redis://localhost")
        self.assertIsNone(queue.pop(wait_seconds=1))

    def test_reconnects_after_connection_error(self, mock_from_url):
        broken = MagicMock()
        broken.blpop.side_effect = redis_exceptions.ConnectionError("reset")
        fresh = MagicMock()
        mock_from_url.side_effect = [broken, fresh]

        queue = RedisEventQueue(url="redis://localhost")
        self.assertIsNone(queue.pop(wait_seconds=1))
        self.assertIs(queue.client, fresh)


if __name__ == "__main__":
    unittest.main()
