"""Thread, event and timer coordination for BLE operations."""

from threading import Event, RLock, Timer, current_thread
from typing import Callable, Dict, List, Optional

from meshproxy.interfaces.ble.constants import BLEConfig, logger
from meshproxy.interfaces.ble.errors import BLEErrorHandler


class ThreadCoordinator:
    """
    Centralized event and named-timer management for the proxy link.

    The transport and supervisor never sleep on the caller's thread; every delay
    (MTU fallback, service discovery pause, retry backoff, proxy discovery timeout)
    is a named single-shot timer owned by this coordinator so it can be cancelled
    as a unit on disconnect.

    Features:
        - Event coordination for blocking helpers
        - Named, replaceable, cancellable single-shot timers
        - Thread-safe operations with RLock
    """

    def __init__(self, timer_factory: Callable[..., Timer] = Timer):
        """
        Create a ThreadCoordinator.

        Parameters:
            timer_factory (Callable): Builds a timer object from ``(delay, function)``; must
                behave like threading.Timer (``start``, ``cancel``, ``is_alive``, ``join``, ``daemon``).
        """
        self._lock = RLock()
        self._events: Dict[str, Event] = {}
        self._timers: Dict[str, Timer] = {}
        self._timer_factory = timer_factory

    def create_event(self, name: str) -> Event:
        """Create and register an Event under the given name, replacing any previous one."""
        with self._lock:
            event = Event()
            self._events[name] = event
            return event

    def get_event(self, name: str) -> Optional[Event]:
        with self._lock:
            return self._events.get(name)

    def set_event(self, name: str):
        """Set a tracked event by name; unknown names are ignored."""
        with self._lock:
            if name in self._events:
                self._events[name].set()

    def clear_event(self, name: str):
        with self._lock:
            if name in self._events:
                self._events[name].clear()

    def wait_for_event(self, name: str, timeout: Optional[float] = None) -> bool:
        """
        Wait for the tracked event with the given name to become set or for the timeout to elapse.

        Returns:
            bool: True if the event was set before the timeout, False otherwise (including when the event is not tracked).
        """
        event = self.get_event(name)
        if event:
            return event.wait(timeout=timeout)
        return False

    def schedule_timer(self, name: str, delay: float, callback: Callable[[], None]):
        """
        Arm a single-shot timer under ``name``, replacing any timer already armed under it.

        The callback runs on the timer thread, outside the coordinator lock, and only if
        the timer was not cancelled or replaced before it fired.
        """
        holder: Dict[str, Timer] = {}

        def _fire():
            with self._lock:
                if self._timers.get(name) is not holder.get("timer"):
                    return
                del self._timers[name]
            BLEErrorHandler.safe_execute(
                callback, error_msg=f"Error in timer callback '{name}'"
            )

        timer = self._timer_factory(delay, _fire)
        timer.daemon = True
        holder["timer"] = timer
        with self._lock:
            previous = self._timers.pop(name, None)
            if previous is not None:
                previous.cancel()
            self._timers[name] = timer
        logger.debug("Scheduling timer %s in %.2fs", name, delay)
        timer.start()

    def cancel_timer(self, name: str) -> bool:
        """Cancel the named timer; returns True if one was pending."""
        with self._lock:
            timer = self._timers.pop(name, None)
        if timer is None:
            return False
        timer.cancel()
        logger.debug("Cancelled timer %s", name)
        return True

    def cancel_timers(self, *names: str):
        for name in names:
            self.cancel_timer(name)

    def cancel_all_timers(self) -> List[Timer]:
        """Cancel every pending timer and return them."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        return timers

    def has_pending_timer(self, name: str) -> bool:
        with self._lock:
            return name in self._timers

    def cleanup(self):
        """
        Cancel every timer, signal all tracked events and clear the registries.

        Cancelled timer threads are joined outside the lock with a short timeout so a
        timer callback touching the coordinator during shutdown cannot deadlock it.
        """
        timers = self.cancel_all_timers()
        with self._lock:
            for event in self._events.values():
                event.set()
            self._events.clear()

        current = current_thread()
        for timer in timers:
            if timer.is_alive() and timer is not current:
                timer.join(timeout=BLEConfig.TIMER_THREAD_JOIN_TIMEOUT)


__all__ = ["ThreadCoordinator"]
