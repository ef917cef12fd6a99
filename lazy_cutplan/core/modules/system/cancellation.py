"""
Cooperative cancellation for lazy_cutplan.

A CancellationToken is shared by the search engine and the tool gateway:
- cancel() sets the flag and terminates every registered external process
- wait(seconds) sleeps on the flag, so retry backoff wakes up on cancellation
- Callbacks registered with on_cancel() run once, on the cancelling thread

Thread-safe; one token per search run.
"""

import signal
import subprocess
import threading
from typing import Callable, List, Optional, Set

from ....utils.logging import get_logger
from ..errors import SearchCancelled

logger = get_logger("cancellation")


class CancellationToken:
    """Cancellation flag plus the set of processes to kill when it trips."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._processes: Set[subprocess.Popen] = set()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        """Request cancellation and terminate in-flight processes."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            processes = list(self._processes)
            callbacks = list(self._callbacks)
        logger.warn(f"Cancellation requested, terminating {len(processes)} running tool(s)")
        for proc in processes:
            _terminate(proc)
        for callback in callbacks:
            try:
                callback()
            except Exception as e:  # a failing callback must not stop the others
                logger.error(f"Cancellation callback failed: {e}")

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise SearchCancelled("search cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if cancelled meanwhile."""
        return self._event.wait(timeout=max(0.0, seconds))

    def register(self, proc: subprocess.Popen) -> bool:
        """Track a running process. Returns False (and kills it) if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._processes.add(proc)
                return True
        _terminate(proc)
        return False

    def unregister(self, proc: subprocess.Popen):
        with self._lock:
            self._processes.discard(proc)

    def on_cancel(self, callback: Callable[[], None]):
        with self._lock:
            self._callbacks.append(callback)

    def running(self) -> int:
        with self._lock:
            return len(self._processes)


def _terminate(proc: subprocess.Popen, grace: float = 2.0):
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
    except OSError as e:
        logger.debug(f"Terminate failed for pid {proc.pid}: {e}")


def install_sigint_handler(token: CancellationToken) -> Optional[Callable]:
    """Route the first Ctrl+C to token.cancel(); the second one exits immediately.

    Returns the previous handler so the caller can restore it. Only valid on the
    main thread.
    """
    if threading.current_thread() is not threading.main_thread():
        return None
    original = signal.getsignal(signal.SIGINT)
    count = {"n": 0}

    def _handle(signum, frame):
        count["n"] += 1
        if count["n"] == 1:
            logger.info("Interrupt received. Cancelling search, press Ctrl+C again to exit now.")
            threading.Thread(target=token.cancel, daemon=True).start()
        else:
            signal.signal(signal.SIGINT, original)
            raise KeyboardInterrupt("Immediate exit requested")

    signal.signal(signal.SIGINT, _handle)
    return original
