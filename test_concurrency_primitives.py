"""
Tests for the structured-concurrency group and the factor stream.

Tests verify:
1. Joins: a group exits only after every task, nested and late-spawned ones included
2. Failures: first failure cancels siblings and surfaces once
3. Stream: blocking contract, idempotent close, terminal failure, cancellation
4. No loss or duplication with many concurrent producers
"""

import queue
import threading
import time
import traceback

import pytest

from concurrency_primitives import (
    ConcurrencyFailure,
    FactorStream,
    StreamClosedError,
    TaskGroup,
    run_in_group,
)


# ============================================================================
# PART 1: TASK GROUP TESTS
# ============================================================================

class TestTaskGroupJoin:
    """A group completes only after everything spawned in it."""

    def test_waits_for_all_tasks(self):
        done = []
        lock = threading.Lock()

        def work(i):
            time.sleep(0.01 * (i % 3))
            with lock:
                done.append(i)

        with TaskGroup() as group:
            for i in range(10):
                group.spawn(work, i)

        assert sorted(done) == list(range(10))

    def test_nested_groups_join_transitively(self):
        """Binary fork tree of depth 5: 32 leaves, all finished at the outer exit."""
        leaves = []
        lock = threading.Lock()

        def node(depth, parent):
            if depth == 0:
                time.sleep(0.001)
                with lock:
                    leaves.append(1)
                return
            with TaskGroup(parent=parent) as children:
                children.spawn(node, depth - 1, children)
                children.spawn(node, depth - 1, children)

        with TaskGroup() as root:
            root.spawn(node, 5, root)

        assert len(leaves) == 32

    def test_task_spawned_during_join(self):
        done = []

        def late(group):
            time.sleep(0.05)
            group.spawn(done.append, "late")

        with TaskGroup() as group:
            group.spawn(late, group)

        assert done == ["late"]

    def test_spawn_after_join_rejected(self):
        with TaskGroup() as group:
            pass
        with pytest.raises(RuntimeError):
            group.spawn(print)

    def test_run_in_group_returns_body_result(self):
        done = []

        def body(group):
            group.spawn(done.append, 1)
            group.spawn(done.append, 2)
            return "body"

        assert run_in_group(body) == "body"
        assert sorted(done) == [1, 2]


class TestTaskGroupFailures:
    """First failure cancels siblings and is raised once after the join."""

    def test_failure_raised_as_concurrency_failure(self):
        def boom():
            raise ValueError("boom")

        with pytest.raises(ConcurrencyFailure) as info:
            with TaskGroup() as group:
                group.spawn(boom)

        assert isinstance(info.value.__cause__, ValueError)

    def test_failure_cancels_sibling(self):
        started = threading.Event()
        observed = []

        def sibling(group):
            started.set()
            for _ in range(500):
                if group.cancelled:
                    observed.append("cancelled")
                    return
                time.sleep(0.01)

        def boom():
            started.wait()
            raise ValueError("boom")

        with pytest.raises(ConcurrencyFailure):
            with TaskGroup() as group:
                group.spawn(sibling, group)
                group.spawn(boom)

        assert observed == ["cancelled"]

    def test_base_exception_in_task_is_recorded(self):
        def leave():
            raise SystemExit(3)

        with pytest.raises(ConcurrencyFailure) as info:
            with TaskGroup() as group:
                group.spawn(leave)

        assert isinstance(info.value.__cause__, SystemExit)
        assert group.cancelled

    def test_nested_failure_not_wrapped_twice(self):
        def inner(parent):
            def boom():
                raise KeyError("leaf")
            with TaskGroup(parent=parent) as children:
                children.spawn(boom)

        with pytest.raises(ConcurrencyFailure) as info:
            with TaskGroup() as group:
                group.spawn(inner, group)

        assert isinstance(info.value.__cause__, KeyError)

    def test_cancellation_reaches_descendants(self):
        parent = TaskGroup()
        child = TaskGroup(parent=parent)
        grandchild = TaskGroup(parent=child)
        assert not grandchild.cancelled
        parent.cancel()
        assert child.cancelled and grandchild.cancelled

    def test_cancelled_group_skips_unstarted_tasks(self):
        ran = []
        with TaskGroup() as group:
            group.cancel()
            group.spawn(ran.append, 1)
        assert ran == []

    def test_body_exception_propagates_unchanged(self):
        with pytest.raises(ZeroDivisionError):
            with TaskGroup() as group:
                group.spawn(time.sleep, 0.01)
                1 / 0
        assert group.cancelled


# ============================================================================
# PART 2: FACTOR STREAM TESTS
# ============================================================================

class TestFactorStreamReads:
    """Blocking and non-blocking read contract."""

    def test_put_then_get(self):
        stream = FactorStream()
        stream.put(5)
        stream.put(7)
        assert stream.get() == 5
        assert stream.get(block=False) == 7

    def test_nonblocking_read_on_open_empty_stream(self):
        with pytest.raises(queue.Empty):
            FactorStream().get(block=False)

    def test_read_timeout(self):
        with pytest.raises(queue.Empty):
            FactorStream().get(timeout=0.05)

    def test_blocking_read_wakes_on_put(self):
        stream = FactorStream()
        threading.Timer(0.05, stream.put, args=(641,)).start()
        assert stream.get(timeout=5) == 641

    def test_blocking_read_wakes_on_close(self):
        stream = FactorStream()
        threading.Timer(0.05, stream.close).start()
        assert stream.get(timeout=5) is None

    def test_iteration_ends_at_close(self):
        stream = FactorStream()
        for value in (2, 2, 3):
            stream.put(value)
        stream.close()
        assert list(stream) == [2, 2, 3]
        assert list(stream) == []


class TestFactorStreamClose:
    """Close is idempotent, irreversible and guarded."""

    def test_close_is_idempotent(self):
        stream = FactorStream()
        stream.put(3)
        stream.close()
        stream.close()
        assert stream.closed
        assert stream.collect() == [3]
        assert stream.get() is None
        assert stream.get(block=False) is None

    def test_put_after_close_is_an_error(self):
        stream = FactorStream()
        stream.close()
        with pytest.raises(StreamClosedError):
            stream.put(2)

    def test_failure_after_buffered_values(self):
        stream = FactorStream()
        stream.put(5)
        failure = ConcurrencyFailure("lost")
        stream.fail(failure)
        assert stream.get() == 5
        for _ in range(2):
            with pytest.raises(ConcurrencyFailure) as info:
                stream.get()
            assert info.value is failure

    def test_repeated_failure_reads_do_not_grow_traceback(self):
        stream = FactorStream()
        stream.fail(ConcurrencyFailure("lost"))
        depths = []
        for _ in range(3):
            with pytest.raises(ConcurrencyFailure) as info:
                stream.get()
            depths.append(len(traceback.extract_tb(info.value.__traceback__)))
        assert depths[0] == depths[1] == depths[2]

    def test_fail_after_close_is_noop(self):
        stream = FactorStream()
        stream.close()
        stream.fail(ConcurrencyFailure("late"))
        assert stream.error is None
        assert stream.get() is None

    def test_wait(self):
        stream = FactorStream()
        assert not stream.wait(timeout=0.01)
        stream.close()
        assert stream.wait(timeout=0.01)


class TestFactorStreamCancel:
    """Consumer-side cancellation."""

    def test_cancel_runs_callbacks_and_drops_writes(self):
        stream = FactorStream()
        calls = []
        stream.on_cancel(lambda: calls.append("cancelled"))
        stream.cancel()
        stream.put(17)
        assert calls == ["cancelled"]
        assert stream.closed and stream.cancelled
        assert stream.get() is None

    def test_on_cancel_after_cancel_runs_immediately(self):
        stream = FactorStream()
        stream.cancel()
        calls = []
        stream.on_cancel(lambda: calls.append(1))
        assert calls == [1]

    def test_cancel_after_close_is_noop(self):
        stream = FactorStream()
        calls = []
        stream.on_cancel(lambda: calls.append(1))
        stream.close()
        stream.cancel()
        assert calls == []
        assert not stream.cancelled

    def test_context_manager_cancels_unfinished_stream(self):
        with FactorStream() as stream:
            stream.put(2)
            assert stream.get() == 2
        assert stream.cancelled


class TestFactorStreamConcurrency:
    """Many producers, bounded buffers."""

    def test_many_producers_no_loss_no_duplicates(self):
        stream = FactorStream()
        with TaskGroup() as group:
            for producer in range(8):
                group.spawn(lambda base: [stream.put(base * 1000 + i) for i in range(200)], producer)
        stream.close()

        values = stream.collect()
        assert len(values) == 1600
        assert sorted(values) == sorted(p * 1000 + i for p in range(8) for i in range(200))

    def test_bounded_stream_blocks_writer_when_full(self):
        stream = FactorStream(maxsize=1)
        stream.put(1)
        writer = threading.Thread(target=stream.put, args=(2,), daemon=True)
        writer.start()
        time.sleep(0.05)
        assert writer.is_alive()

        assert stream.get() == 1
        writer.join(timeout=5)
        assert not writer.is_alive()
        assert stream.get() == 2

    def test_bounded_stream_with_concurrent_consumer(self):
        stream = FactorStream(maxsize=2)
        received = []

        def consume():
            received.extend(stream)

        consumer = threading.Thread(target=consume, daemon=True)
        consumer.start()
        for i in range(100):
            stream.put(i)
        stream.close()
        consumer.join(timeout=5)

        assert received == list(range(100))
