"""
Notification bus: status events for the UI layer.

Purely a display channel. The orchestrator's control signals never pass
through here, so debouncing can not hide a real state transition.
"""

import asyncio
import sys
from collections import defaultdict
from typing import Any, Callable

AUDIO_SESSION_UPDATE = 'audio-session-update'
RECORDING_STATUS = 'recording-status'
ANALYSIS_STATUS = 'analysis-status'

# recording-status values
STARTED = 'started'
SAVED = 'saved'
ERROR = 'error'


class NotificationBus:
    """
    Channel -> subscribers, with optional trailing-edge debounce per channel.

    Subscriber failures are printed and swallowed: a broken UI listener must
    never take the recorder down.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop = None):
        self._loop = loop
        self._subscribers = defaultdict(list)
        self._pending = {}

    def subscribe(self, channel: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._subscribers[channel].append(callback)

        def unsubscribe():
            if callback in self._subscribers[channel]:
                self._subscribers[channel].remove(callback)

        return unsubscribe

    def publish(self, channel: str, payload: Any) -> None:
        """Deliver immediately to every subscriber of channel."""
        for callback in list(self._subscribers[channel]):
            try:
                callback(payload)
            except Exception as e:
                print(f"Failed to send {channel}: {e}", file=sys.stderr)

    def publish_debounced(self, channel: str, payload: Any, wait: float) -> None:
        """
        Deliver payload once no newer publish on channel arrived for `wait` seconds.

        Only the last payload of a burst is delivered.
        """
        handle = self._pending.pop(channel, None)
        if handle is not None:
            handle.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._pending[channel] = loop.call_later(wait, self._fire, channel, payload)

    def _fire(self, channel: str, payload: Any) -> None:
        self._pending.pop(channel, None)
        self.publish(channel, payload)

    def cancel_pending(self) -> None:
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
