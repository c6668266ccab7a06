"""
Tests for the background task runner and the reader/writer lock.
"""

import asyncio
import threading
import time

import pytest

from core.background import BackgroundTaskRunner
from utils.locks import ReadWriteLock


class TestBackgroundTaskRunner:
    @pytest.mark.asyncio
    async def test_counts_outcomes(self):
        runner = BackgroundTaskRunner("test")

        async def ok():
            return {"rows": 3}

        async def boom():
            raise RuntimeError("purge failed")

        runner.submit("ok", ok())
        runner.submit("boom", boom())
        assert await runner.drain(timeout=1)
        assert runner.stats() == {"submitted": 2, "succeeded": 1, "failed": 1, "pending": 0}

    @pytest.mark.asyncio
    async def test_drain_timeout_then_cancel(self):
        runner = BackgroundTaskRunner("test")
        runner.submit("slow", asyncio.sleep(10))

        assert await runner.drain(timeout=0.01) is False
        await runner.cancel_all()
        assert runner.pending == 0
        assert runner.failed == 1

    @pytest.mark.asyncio
    async def test_drain_with_nothing_pending(self):
        assert await BackgroundTaskRunner().drain(timeout=0) is True


class TestReadWriteLock:
    def test_readers_share(self):
        lock = ReadWriteLock()
        lock.acquire_read()
        acquired = threading.Event()

        def reader():
            with lock.read_locked():
                acquired.set()

        t = threading.Thread(target=reader)
        t.start()
        assert acquired.wait(1)
        t.join()
        lock.release_read()

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        order = []

        def reader():
            with lock.read_locked():
                order.append("read")

        with lock.write_locked():
            t = threading.Thread(target=reader)
            t.start()
            time.sleep(0.05)
            order.append("write-done")
        t.join()
        assert order == ["write-done", "read"]

    def test_waiting_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        order = []
        lock.acquire_read()

        def writer():
            with lock.write_locked():
                order.append("write")

        def late_reader():
            with lock.read_locked():
                order.append("read")

        w = threading.Thread(target=writer)
        w.start()
        time.sleep(0.05)
        r = threading.Thread(target=late_reader)
        r.start()
        time.sleep(0.05)
        lock.release_read()
        w.join()
        r.join()
        assert order == ["write", "read"]
