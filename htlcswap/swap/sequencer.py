"""
Per-account transaction sequencing.

Two transactions sent concurrently from one signing account race for the
same sequence number. Every ledger write goes through a single worker
thread per (chain, account), so writes from one identity are strictly
ordered while different identities proceed in parallel.
"""

import queue
import logging
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Tuple, Optional

log = logging.getLogger(__name__)

_STOP = object()


class _AccountWorker:
    """Single-writer queue for one signing identity."""

    def __init__(self, chain: str, account: str):
        self.chain = chain
        self.account = account
        self.queue: "queue.Queue" = queue.Queue()
        self.thread = threading.Thread(
            target=self._run, name=f"seq-{chain}-{account}", daemon=True
        )
        self.thread.start()

    def _run(self):
        while True:
            item = self.queue.get()
            if item is _STOP:
                break
            future, fn, args, kwargs = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as e:
                future.set_exception(e)


class AccountSequencer:
    """Routes ledger writes through one worker per (chain, account)."""

    def __init__(self):
        self._workers: Dict[Tuple[str, str], _AccountWorker] = {}
        self._lock = threading.Lock()
        self._closed = False

    def _worker(self, chain: str, account: str) -> _AccountWorker:
        key = (chain, account)
        with self._lock:
            if self._closed:
                raise RuntimeError("sequencer is shut down")
            worker = self._workers.get(key)
            if worker is None:
                worker = _AccountWorker(chain, account)
                self._workers[key] = worker
                log.debug(f"Started sequencer for {chain}:{account}")
            return worker

    def submit(self, chain: str, account: Optional[str], fn: Callable, *args, **kwargs) -> Future:
        """Queue `fn(*args, **kwargs)` behind earlier writes from the same account."""
        future: Future = Future()
        self._worker(chain, account or "").queue.put((future, fn, args, kwargs))
        return future

    def call(self, chain: str, account: Optional[str], fn: Callable, *args, **kwargs):
        """Submit and wait. Exceptions raised by `fn` propagate to the caller."""
        return self.submit(chain, account, fn, *args, **kwargs).result()

    def shutdown(self, wait: bool = True):
        with self._lock:
            self._closed = True
            workers = list(self._workers.values())
            self._workers.clear()
        for worker in workers:
            worker.queue.put(_STOP)
        if wait:
            for worker in workers:
                worker.thread.join(timeout=5)
