"""Poll a predicate until it holds or a deadline passes.

`until` blocks the calling thread whereas `until_async` returns a
`concurrent.futures.Future` and re-evaluates the predicate on the shared
`DelayedExecutor`.

A predicate may return a plain `bool` or a `Probe`. If it raises, `until`
treats the exception as a transient "not ready" and logs it only once the
same error has shown up several times in a row.

"""
import heapq
import itertools
import logging
import threading
import time
import traceback
from concurrent.futures import Future, InvalidStateError
from typing import Callable, List, Tuple

from kubeframe.dtypes import Probe, ProbeState
from kubeframe.errors import ConvergenceTimeout

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("kubeframe")

# Number of worker threads in the shared executor.
MAX_WORKERS = 8

# Shared executor for all `until_async` calls (see `executor`).
_EXECUTOR: "DelayedExecutor | None" = None
_EXECUTOR_LOCK = threading.Lock()


def _mysleep(delay: float):
    """This trivial function exists to mock out the `sleep` call during tests."""
    time.sleep(delay)


def _sleep(delay: float, cancel: threading.Event | None) -> bool:
    """Sleep for `delay` seconds and return `True` if `cancel` was set."""
    if cancel is None:
        _mysleep(delay)
        return False
    return cancel.wait(delay)


def debounce_threshold(poll_interval: float, timeout: float) -> int:
    """Return how often a transient error must repeat before we log it."""
    if poll_interval >= 60:
        return 2
    return max(int((timeout / poll_interval) // 4), 2)


def as_probe(result: "bool | Probe") -> Probe:
    if isinstance(result, Probe):
        return result
    return Probe.ok() if result else Probe.pending()


def evaluate(ready: Callable[[], "bool | Probe"]) -> Tuple[Probe, str]:
    """Return the `Probe` of `ready` and the stack trace if it raised."""
    try:
        return as_probe(ready()), ""
    except Exception as err:
        msg = f"{type(err).__name__}: {err}"
        return Probe.transient(msg), traceback.format_exc()


def until(description: str,
          poll_interval: float,
          timeout: float,
          ready: Callable[[], "bool | Probe"],
          on_timeout: Callable[[], None] | None = None,
          cancel: threading.Event | None = None) -> None:
    """Block until `ready` holds.

    Evaluate `ready` at least once and then every `poll_interval` seconds
    until it returns `True` (or a READY `Probe`). Raise `ConvergenceTimeout`
    once `timeout` seconds have passed, after calling `on_timeout`.

    Return silently if the `cancel` event is set while we sleep.

    """
    logit.debug(f"Waiting for {description} (timeout {timeout}s)")
    deadline = time.monotonic() + timeout
    threshold = debounce_threshold(poll_interval, timeout)

    # Book keeping for the debounced error log.
    last_msg: str | None = None
    last_trace = ""
    repeats = 0
    reported: set = set()

    while True:
        probe, trace = evaluate(ready)
        if probe.ready:
            return

        if probe.state == ProbeState.TRANSIENT:
            if probe.message == last_msg:
                repeats += 1
            else:
                last_msg, repeats = probe.message, 1
            last_trace = trace or last_trace

            if repeats >= threshold and last_msg not in reported:
                reported.add(last_msg)
                logit.warning(
                    f"{description}: {last_msg} (seen {repeats} times)\n{last_trace}"
                )

        time_left = deadline - time.monotonic()
        if time_left <= 0:
            if last_msg is not None and repeats > 1:
                logit.error(f"Last error while waiting for {description}: {last_msg}")
            if on_timeout is not None:
                on_timeout()
            raise ConvergenceTimeout(description, timeout)

        if _sleep(min(poll_interval, time_left), cancel):
            logit.debug(f"Cancelled wait for {description}")
            return


def _resolve(future: Future, result=None, exc: BaseException | None = None):
    """Complete `future` unless somebody cancelled it in the meantime."""
    try:
        if exc is None:
            future.set_result(result)
        else:
            future.set_exception(exc)
    except InvalidStateError:
        logit.debug(f"Future {future} already done")


def until_async(description: str,
                poll_interval: float,
                timeout: float,
                ready: Callable[[], "bool | Probe"]) -> Future:
    """Return a future that resolves once `ready` holds.

    Every evaluation runs on the shared `DelayedExecutor`. The first one is
    due immediately and the others follow `poll_interval` seconds apart, so
    this function never blocks the caller. The future fails with
    `ConvergenceTimeout` once the deadline has passed and with the exception
    of `ready` if it raises.

    Cancel the future to stop the polling.

    """
    future: Future = Future()
    deadline = time.monotonic() + timeout

    def attempt():
        if future.done():
            return

        try:
            probe = as_probe(ready())
        except Exception as err:
            _resolve(future, exc=err)
            return

        if probe.ready:
            _resolve(future)
            return

        time_left = deadline - time.monotonic()
        if time_left <= 0:
            _resolve(future, exc=ConvergenceTimeout(description, timeout))
            return

        # Only reschedule if nobody cancelled the future while we were busy.
        if not future.done():
            executor().schedule(min(poll_interval, time_left), attempt)

    executor().schedule(0, attempt)
    return future


class DelayedExecutor:
    """Run callables after a delay on a bounded set of daemon threads.

    The threads are started on demand and never keep the interpreter alive.

    """
    def __init__(self, max_workers: int = MAX_WORKERS, name: str = "kubeframe-wait"):
        assert max_workers > 0
        self.max_workers = max_workers
        self.name = name

        self._cond = threading.Condition()
        self._queue: List[Tuple[float, int, Callable[[], None]]] = []
        self._counter = itertools.count()
        self._workers: List[threading.Thread] = []
        self._idle = 0

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def num_workers(self) -> int:
        return len(self._workers)

    def schedule(self, delay: float, fn: Callable[[], None]) -> None:
        """Run `fn` on a worker thread in `delay` seconds."""
        due = time.monotonic() + max(delay, 0)
        with self._cond:
            heapq.heappush(self._queue, (due, next(self._counter), fn))
            if self._idle == 0 and len(self._workers) < self.max_workers:
                thread = threading.Thread(
                    target=self._run,
                    name=f"{self.name}-{len(self._workers)}",
                    daemon=True,
                )
                self._workers.append(thread)
                thread.start()
            self._cond.notify_all()

    def _next(self) -> Callable[[], None]:
        """Block until the earliest task is due and return it."""
        with self._cond:
            self._idle += 1
            while True:
                if not self._queue:
                    self._cond.wait()
                    continue

                delay = self._queue[0][0] - time.monotonic()
                if delay <= 0:
                    break
                self._cond.wait(delay)

            _, _, fn = heapq.heappop(self._queue)
            self._idle -= 1
            return fn

    def _run(self):
        while True:
            fn = self._next()
            try:
                fn()
            except Exception:
                logit.exception(f"Delayed task {fn} failed")


def executor() -> DelayedExecutor:
    """Return the process wide `DelayedExecutor` (create it if necessary)."""
    global _EXECUTOR
    with _EXECUTOR_LOCK:
        if _EXECUTOR is None:
            _EXECUTOR = DelayedExecutor()
        return _EXECUTOR
