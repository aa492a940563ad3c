"""Tests for latest-wins task execution and debouncing."""

import threading
import time

import pytest

from sheet_animator.tasks import CancellationToken, Debouncer, LatestTaskRunner, OperationCancelled


class TestCancellationToken:
    """Tests for the cancellation flag."""

    def test_raise_only_after_cancel(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(OperationCancelled):
            token.raise_if_cancelled()


class TestLatestTaskRunner:
    """Tests for latest-wins semantics."""

    def test_single_task_delivers_result(self):
        """An uncontested task reports progress and delivers its result."""
        results, progress = [], []
        runner = LatestTaskRunner(on_result=results.append, on_progress=progress.append)
        try:

            def work(token, report):
                report(50)
                return "done"

            assert runner.submit(work).result(timeout=5) == "done"
            assert results == ["done"]
            assert progress == [50]
        finally:
            runner.shutdown()

    def test_superseded_task_is_discarded(self):
        """A task overtaken by a newer submission never reaches on_result."""
        results = []
        release = threading.Event()
        started = threading.Event()
        runner = LatestTaskRunner(on_result=results.append)
        try:

            def slow(token, report):
                started.set()
                release.wait(timeout=5)
                return "stale"

            def fast(token, report):
                return "fresh"

            first = runner.submit(slow)
            assert started.wait(timeout=5)
            second = runner.submit(fast)
            release.set()
            with pytest.raises(OperationCancelled):
                first.result(timeout=5)
            assert second.result(timeout=5) == "fresh"
            assert results == ["fresh"]
        finally:
            runner.shutdown()

    def test_superseded_token_is_cancelled(self):
        """Submitting again flips the previous task's token."""
        seen = []
        started = threading.Event()
        runner = LatestTaskRunner()
        try:

            def watch(token, report):
                started.set()
                for _ in range(500):
                    if token.cancelled:
                        seen.append("cancelled")
                        break
                    time.sleep(0.01)
                token.raise_if_cancelled()
                return "finished"

            first = runner.submit(watch)
            assert started.wait(timeout=5)
            runner.submit(lambda token, report: None)
            with pytest.raises(OperationCancelled):
                first.result(timeout=10)
            assert seen == ["cancelled"]
        finally:
            runner.shutdown()

    def test_generation_increments(self):
        runner = LatestTaskRunner()
        try:
            before = runner.generation
            runner.submit(lambda token, report: 1).result(timeout=5)
            assert runner.generation == before + 1
        finally:
            runner.shutdown()


class TestDebouncer:
    """Tests for call coalescing."""

    def test_burst_collapses_to_last_call(self):
        """Only the final arguments of a burst are delivered, once."""
        calls = []
        fired = threading.Event()

        def callback(value):
            calls.append(value)
            fired.set()

        debouncer = Debouncer(callback, delay=0.05)
        for value in range(5):
            debouncer.trigger(value)
        assert fired.wait(timeout=5)
        time.sleep(0.1)
        assert calls == [4]
        assert not debouncer.pending

    def test_flush_runs_pending_call_immediately(self):
        calls = []
        debouncer = Debouncer(calls.append, delay=10)
        debouncer.trigger("now")
        assert debouncer.pending
        assert debouncer.flush() is True
        assert calls == ["now"]
        assert debouncer.flush() is False

    def test_cancel_drops_pending_call(self):
        calls = []
        debouncer = Debouncer(calls.append, delay=0.02)
        debouncer.trigger("dropped")
        debouncer.cancel()
        time.sleep(0.1)
        assert calls == []
