import logging
import queue
import threading
from typing import Type, Callable, List, Dict, Any, Optional
from webmify.domain.events import (
    Event, ConversionStarted, ProgressUpdated, ConversionSucceeded,
    ConversionFailed, ConversionCancelled
)
from webmify.domain.listener import ConversionListener

logger = logging.getLogger(__name__)

class EventBus:
    """A simple synchronous event bus for decoupled communication."""

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[Event], callback: Callable[[Any], None]):
        """Subscribes a callback to a specific event type."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers."""
        with self._lock:
            callbacks = list(self._subscribers.get(type(event), []))
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                # A broken subscriber must not starve the others
                logger.exception(f"Subscriber failed handling {type(event).__name__}")


_STOP = object()

class EventDispatcher:
    """
    Serialises event delivery onto a single background thread.

    Producers on any thread call post(); the dispatcher thread drains the
    queue in FIFO order and publishes each event on the bus, so subscribers
    never see two events at the same time.
    """

    def __init__(self, bus: EventBus):
        self.bus = bus
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._pending = 0
        self._idle = threading.Condition()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self.bus.publish(item)
            finally:
                with self._idle:
                    self._pending -= 1
                    if self._pending == 0:
                        self._idle.notify_all()

    def start(self):
        """Starts the delivery thread."""
        if self.running:
            return
        self._thread = threading.Thread(target=self._run, name="webmify-events", daemon=True)
        self._thread.start()

    def post(self, event: Event):
        with self._idle:
            self._pending += 1
        self._queue.put(event)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Waits until everything posted so far has been delivered."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def stop(self, timeout: float = 1.0):
        """Delivers what is queued, then stops the thread."""
        if not self.running:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None


class ListenerAdapter:
    """Subscribes a ConversionListener to the bus."""

    def __init__(self, bus: EventBus, listener: ConversionListener):
        self.listener = listener
        bus.subscribe(ConversionStarted, self._on_started)
        bus.subscribe(ProgressUpdated, self._on_progress)
        bus.subscribe(ConversionSucceeded, self._on_succeeded)
        bus.subscribe(ConversionFailed, self._on_failed)
        bus.subscribe(ConversionCancelled, self._on_cancelled)

    def _on_started(self, event: ConversionStarted):
        self.listener.on_start(event.original_size, event.total_frames)

    def _on_progress(self, event: ProgressUpdated):
        self.listener.on_progress(event.percent, event.current_frame, event.total_frames)

    def _on_succeeded(self, event: ConversionSucceeded):
        self.listener.on_success(str(event.output_path), event.original_size, event.new_size)

    def _on_failed(self, event: ConversionFailed):
        self.listener.on_failure(event.error_message)

    def _on_cancelled(self, event: ConversionCancelled):
        self.listener.on_cancelled()
