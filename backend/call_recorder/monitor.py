"""
Session Monitor - detects when a watched process starts or stops playing audio.

A SessionMonitor reports (process_name, active) to its callback from a
background thread. The platform implementation polls a probe once per
second and only reports changes:
- Windows: pycaw audio sessions (the same sessions the volume mixer shows),
  polled from a thread that enters its own COM apartment
- Linux: PulseAudio/PipeWire streams listed by `pactl`
"""

import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .constants import MONITOR_POLL_INTERVAL_SECONDS
from .platform_utils import is_linux, is_windows

# IAudioSessionControl::GetState -> AudioSessionStateActive
AUDIO_SESSION_STATE_ACTIVE = 1


class SessionMonitor(ABC):
    """Watches one process and reports whether it has an active audio session."""

    @abstractmethod
    def start(self, process_name: str, callback: Callable[[bool], None]) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass


class PollingSessionMonitor(SessionMonitor):
    """
    Polls probe(process_name) on a daemon thread.

    The first observation is always reported, after that only changes.
    A failing probe keeps the last known state. on_thread_start and
    on_thread_stop run on the polling thread itself, around the loop
    (per-thread setup such as COM initialization).
    """

    def __init__(
        self,
        probe: Callable[[str], bool],
        interval: float = MONITOR_POLL_INTERVAL_SECONDS,
        on_thread_start: Optional[Callable[[], None]] = None,
        on_thread_stop: Optional[Callable[[], None]] = None
    ):
        self.probe = probe
        self.interval = interval
        self.on_thread_start = on_thread_start
        self.on_thread_stop = on_thread_stop
        self.process_name = None
        self._callback = None
        self._last = None
        self._stop_event = threading.Event()
        self._thread = None

    def start(self, process_name: str, callback: Callable[[bool], None]) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Monitor already watching {self.process_name}")
        self.process_name = process_name
        self._callback = callback
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"session-monitor-{process_name}",
            daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval * 2)

    def poll(self) -> Optional[bool]:
        """Probe once. Returns the new state if it changed, else None."""
        try:
            active = bool(self.probe(self.process_name))
        except Exception as e:
            print(f"Warning: audio session probe failed for {self.process_name}: {e}", file=sys.stderr)
            return None
        if active == self._last:
            return None
        self._last = active
        return active

    def _run(self) -> None:
        if self.on_thread_start is not None:
            try:
                self.on_thread_start()
            except Exception as e:
                print(f"ERROR: session monitor for {self.process_name} could not start: {e}", file=sys.stderr)
                return
        try:
            while not self._stop_event.is_set():
                changed = self.poll()
                if changed is not None:
                    try:
                        self._callback(changed)
                    except Exception as e:
                        print(f"Warning: session callback failed: {e}", file=sys.stderr)
                self._stop_event.wait(self.interval)
        finally:
            if self.on_thread_stop is not None:
                self.on_thread_stop()


def com_initialize() -> None:
    """Enter a COM apartment on the calling (polling) thread."""
    import comtypes
    comtypes.CoInitialize()


def com_uninitialize() -> None:
    import comtypes
    comtypes.CoUninitialize()


def pycaw_probe(process_name: str) -> bool:
    """True if process_name owns an active WASAPI audio session."""
    import psutil
    from pycaw.pycaw import AudioUtilities

    target = process_name.lower()
    for session in AudioUtilities.GetAllSessions():
        process = session.Process
        if process is None:
            continue
        try:
            name = process.name()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            # Exited between enumeration and lookup
            continue
        if name.lower() != target:
            continue
        if session.State == AUDIO_SESSION_STATE_ACTIVE:
            return True
    return False


def _binary_names(pactl_output: str) -> list:
    names = []
    for line in pactl_output.splitlines():
        line = line.strip()
        if line.startswith('application.process.binary'):
            _, _, value = line.partition('=')
            names.append(value.strip().strip('"').lower())
    return names


def pactl_probe(process_name: str) -> bool:
    """True if process_name is playing to a sink or recording from a source."""
    target = process_name.lower()
    if target.endswith('.exe'):
        target = target[:-4]

    for kind in ('sink-inputs', 'source-outputs'):
        try:
            result = subprocess.run(
                ['pactl', 'list', kind],
                capture_output=True,
                text=True,
                timeout=5
            )
        except subprocess.TimeoutExpired:
            print("Warning: pactl command timed out", file=sys.stderr)
            return False
        except FileNotFoundError:
            raise RuntimeError(
                "pactl not found. Is PulseAudio (or pipewire-pulse) installed?"
            )
        for name in _binary_names(result.stdout):
            if name == target or name.startswith(target):
                return True
    return False


def get_session_monitor_factory() -> Optional[Callable[[], SessionMonitor]]:
    """
    Factory for the current platform's monitor.

    Returns:
        Callable creating a SessionMonitor, or None if the platform has no probe
    """
    if is_windows():
        return lambda: PollingSessionMonitor(
            pycaw_probe,
            on_thread_start=com_initialize,
            on_thread_stop=com_uninitialize
        )
    if is_linux():
        return lambda: PollingSessionMonitor(pactl_probe)
    return None
