import unittest
from unittest.mock import MagicMock

from minder_resilience.core_logic.network_monitor import NetworkMonitor, NetworkState


class TestNetworkMonitor(unittest.IsolatedAsyncioTestCase):

    async def test_only_transitions_are_forwarded(self):
        monitor = NetworkMonitor(online=True)
        listener = MagicMock()
        monitor.subscribe(listener)

        self.assertFalse(monitor.set_online(True))
        self.assertTrue(monitor.set_online(False, "none"))
        self.assertFalse(monitor.set_online(False))
        self.assertTrue(monitor.set_online(True, "wifi"))

        states = [c.args[0] for c in listener.call_args_list]
        self.assertEqual(states, [NetworkState(False, "none"), NetworkState(True, "wifi")])
        self.assertEqual(monitor.state.connection_type, "wifi")

    async def test_coroutine_listeners_are_scheduled(self):
        monitor = NetworkMonitor(online=False)
        seen = []

        async def listener(state):
            seen.append(state.online)

        monitor.subscribe(listener)
        monitor.set_online(True)
        await monitor.wait_idle()
        self.assertEqual(seen, [True])

    async def test_unsubscribe_stops_notifications(self):
        monitor = NetworkMonitor()
        listener = MagicMock()
        unsubscribe = monitor.subscribe(listener)
        unsubscribe()
        monitor.set_online(False)
        listener.assert_not_called()

    async def test_failing_listener_is_isolated(self):
        monitor = NetworkMonitor()
        good = MagicMock()
        monitor.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        monitor.subscribe(good)

        async def failing(state):
            raise RuntimeError("async boom")

        monitor.subscribe(failing)
        monitor.set_online(False)
        await monitor.wait_idle()
        good.assert_called_once()
