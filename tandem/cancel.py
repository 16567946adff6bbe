"""Cooperative cancellation for one agent loop invocation."""

import threading

from .errors import Canceled

POLL_INTERVAL = 0.1


class CancelToken:
    """Resettable cancellation handle.

    Created once per session and reset at the start of each user-initiated
    loop. Blocking work polls it instead of being killed from outside.
    """

    def __init__(self):
        self._event = threading.Event()

    @property
    def is_canceled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def wait(self, timeout: float | None = None) -> bool:
        """Block up to ``timeout`` seconds; True if cancellation fired."""
        return self._event.wait(timeout)

    def check(self) -> None:
        if self._event.is_set():
            raise Canceled("operation canceled")


def run_cancellable(
    token: CancelToken | None,
    fn,
    *args,
    poll_interval: float = POLL_INTERVAL,
    **kwargs,
):
    """Run a blocking call on a worker thread, polling ``token`` while it runs.

    Returns the call's result or re-raises its exception. Raises Canceled as
    soon as the token fires; the worker is abandoned and its result dropped.
    """
    if token is None:
        return fn(*args, **kwargs)
    token.check()

    outcome: dict = {}
    done = threading.Event()

    def _worker():
        try:
            outcome["value"] = fn(*args, **kwargs)
        except BaseException as e:  # re-raised on the caller's thread
            outcome["error"] = e
        finally:
            done.set()

    worker = threading.Thread(target=_worker, daemon=True)
    worker.start()
    while not done.wait(poll_interval):
        if token.is_canceled:
            raise Canceled("operation canceled")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")
