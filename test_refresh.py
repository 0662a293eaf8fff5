"""Debounced refresh fan-out."""

from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase

from timeflow.refresh import RefreshCoordinator


class TestRefreshCoordinator(IsolatedAsyncioTestCase):
    async def test_triggers_within_window_coalesce(self):
        c = RefreshCoordinator(settlement_delay=0.05)
        calls = []
        c.subscribe(calls.append)

        for _ in range(5):
            c.trigger_refresh()
        self.assertTrue(c.pending)
        self.assertEqual(c.generation, 0)

        await asyncio.sleep(0.15)
        self.assertEqual(c.generation, 1)
        self.assertEqual(calls, [1])
        self.assertEqual(c.coalesced, 4)
        self.assertFalse(c.pending)

    async def test_separate_windows_each_bump_once(self):
        c = RefreshCoordinator(settlement_delay=0.01)
        c.trigger_refresh()
        await asyncio.sleep(0.05)
        c.trigger_refresh()
        await asyncio.sleep(0.05)
        self.assertEqual(c.generation, 2)

    async def test_failing_listener_does_not_block_others(self):
        c = RefreshCoordinator(settlement_delay=0.01)
        calls = []

        def broken(gen):
            raise RuntimeError("boom")

        c.subscribe(broken)
        c.subscribe(calls.append)
        c.trigger_refresh()
        await asyncio.sleep(0.05)
        self.assertEqual(calls, [1])

    async def test_unsubscribe_and_close(self):
        c = RefreshCoordinator(settlement_delay=0.01)
        calls = []
        unsubscribe = c.subscribe(calls.append)
        unsubscribe()
        unsubscribe()
        c.trigger_refresh()
        c.close()
        await asyncio.sleep(0.05)
        self.assertEqual(c.generation, 0)
        self.assertEqual(calls, [])
