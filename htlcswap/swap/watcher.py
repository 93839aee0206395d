"""
Swap watcher for htlcswap.

Runs one background thread per swap, each driving its swap through the
coordinator until it reaches a terminal state. On start it resumes every
non-terminal swap in the registry, reconciling its state with both
ledgers first.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..core import SwapState, TERMINAL_STATES
from .coordinator import Coordinator
from .registry import Swap

log = logging.getLogger(__name__)


@dataclass
class WatcherConfig:
    """Watcher configuration."""
    poll_interval: float = 5.0       # seconds between steps when nothing changed
    resume_on_start: bool = True     # pick up non-terminal swaps from the registry


class SwapWatcher:
    """
    Background driver for swaps.

    Events:
    - on_state_change(swap, old_state, new_state)
    - on_completed(swap)
    - on_refunded(swap)
    - on_stuck(swap): swap is stuck or halted and needs an operator
    """

    def __init__(self, coordinator: Coordinator, config: WatcherConfig = None):
        self.coordinator = coordinator
        self.registry = coordinator.registry
        self.config = config or WatcherConfig()

        # Callbacks
        self.on_state_change: Optional[Callable[[Swap, SwapState, SwapState], None]] = None
        self.on_completed: Optional[Callable[[Swap], None]] = None
        self.on_refunded: Optional[Callable[[Swap], None]] = None
        self.on_stuck: Optional[Callable[[Swap], None]] = None

        # State
        self._running = False
        self._stop = threading.Event()
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start watching; resumes every active swap in the registry."""
        if self._running:
            return

        self._running = True
        self._stop.clear()
        log.info("Swap watcher started")

        if self.config.resume_on_start:
            for swap in self.registry.list_active():
                try:
                    self.coordinator.reconcile(swap.swap_id)
                except Exception as e:
                    log.error(f"Swap {swap.swap_id}: reconcile failed: {e}")
                self.watch(swap.swap_id)

    def stop(self):
        """Stop all swap threads."""
        self._running = False
        self._stop.set()
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout=5)
        log.info("Swap watcher stopped")

    def watch(self, swap_id: str) -> bool:
        """Drive a swap in its own thread. Returns False if already watched."""
        if not self._running:
            raise RuntimeError("watcher is not running")
        with self._lock:
            thread = self._threads.get(swap_id)
            if thread is not None and thread.is_alive():
                return False
            thread = threading.Thread(
                target=self._watch_loop, args=(swap_id,), name=f"swap-{swap_id}", daemon=True
            )
            self._threads[swap_id] = thread
        thread.start()
        return True

    def wait(self, swap_id: str, timeout: Optional[float] = None) -> SwapState:
        """Block until the swap's thread exits. Returns the swap's state."""
        with self._lock:
            thread = self._threads.get(swap_id)
        if thread is not None:
            thread.join(timeout=timeout)
        return self.registry.require(swap_id).state

    def _watch_loop(self, swap_id: str):
        while not self._stop.is_set():
            swap = self.registry.get(swap_id)
            if swap is None or swap.state in TERMINAL_STATES:
                break

            old = swap.state
            try:
                new = self.coordinator.step(swap_id)
            except Exception as e:
                log.error(f"Swap {swap_id}: watcher stopped: {e}")
                break

            if new != old:
                self._emit(swap_id, old, new)
                continue

            self._stop.wait(self.config.poll_interval)

        with self._lock:
            if self._threads.get(swap_id) is threading.current_thread():
                del self._threads[swap_id]

    def _emit(self, swap_id: str, old: SwapState, new: SwapState):
        swap = self.registry.require(swap_id)
        handlers = [(self.on_state_change, (swap, old, new))]
        if new == SwapState.COMPLETED:
            handlers.append((self.on_completed, (swap,)))
        elif new == SwapState.REFUNDED:
            handlers.append((self.on_refunded, (swap,)))
        elif new in (SwapState.STUCK, SwapState.HALTED):
            handlers.append((self.on_stuck, (swap,)))

        for handler, args in handlers:
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception as e:
                log.error(f"Swap {swap_id}: callback {handler!r} failed: {e}")

    def watch_single_swap(self, swap_id: str, timeout: float = 3600) -> Swap:
        """
        Drive a single swap in the calling thread until it is terminal.

        Blocking call - use for CLI or testing.

        Raises:
            TimeoutError: if the swap is still active after `timeout` seconds
        """
        start = time.time()
        while time.time() - start < timeout:
            swap = self.registry.require(swap_id)
            if swap.state in TERMINAL_STATES:
                return swap
            old = swap.state
            new = self.coordinator.step(swap_id)
            if new != old:
                self._emit(swap_id, old, new)
            else:
                self.coordinator.clock.sleep(self.config.poll_interval)

        raise TimeoutError(f"Swap {swap_id} did not finish in {timeout}s")
