"""
Tests for session monitoring.
"""

import subprocess
import threading

import pytest

from call_recorder import monitor
from call_recorder.monitor import PollingSessionMonitor, pactl_probe

PACTL_SINK_INPUTS = """\
Sink Input #42
	Driver: protocol-native.c
	Corked: no
	Properties:
		application.name = "Microsoft Teams"
		application.process.binary = "ms-teams"
		application.process.id = "4242"
"""


def test_poll_reports_first_state_then_only_changes():
    states = iter([False, False, True, True, False])
    m = PollingSessionMonitor(lambda name: next(states))
    m.process_name = 'ms-teams.exe'

    assert [m.poll() for _ in range(5)] == [False, None, True, None, False]


def test_failing_probe_keeps_last_state():
    calls = []

    def probe(name):
        calls.append(name)
        if len(calls) == 2:
            raise OSError("audio service restarting")
        return True

    m = PollingSessionMonitor(probe)
    m.process_name = 'Zoom.exe'
    assert m.poll() is True
    assert m.poll() is None
    assert m.poll() is None


def test_monitor_thread_reports_changes():
    reported = []
    changed = threading.Event()

    def callback(active):
        reported.append(active)
        changed.set()

    m = PollingSessionMonitor(lambda name: name == 'ms-teams.exe', interval=0.01)
    m.start('ms-teams.exe', callback)
    assert changed.wait(2.0)
    m.stop()

    assert reported == [True]


def test_monitor_cannot_watch_twice():
    m = PollingSessionMonitor(lambda name: False, interval=0.01)
    m.start('ms-teams.exe', lambda active: None)
    with pytest.raises(RuntimeError):
        m.start('Zoom.exe', lambda active: None)
    m.stop()


def test_pactl_probe_matches_process_binary(monkeypatch):
    def run(cmd, **kwargs):
        output = PACTL_SINK_INPUTS if cmd[-1] == 'sink-inputs' else ''
        return subprocess.CompletedProcess(cmd, 0, stdout=output, stderr='')

    monkeypatch.setattr(monitor.subprocess, 'run', run)

    assert pactl_probe('ms-teams.exe')
    assert pactl_probe('MS-Teams')
    assert not pactl_probe('Zoom.exe')


def test_pactl_missing(monkeypatch):
    def run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(monitor.subprocess, 'run', run)
    with pytest.raises(RuntimeError):
        pactl_probe('ms-teams.exe')


def test_thread_hooks_run_on_the_polling_thread():
    seen = {}
    stopped = threading.Event()

    def on_start():
        seen['start'] = threading.current_thread()

    def on_stop():
        seen['stop'] = threading.current_thread()
        stopped.set()

    def probe(name):
        seen['probe'] = threading.current_thread()
        return False

    polled = threading.Event()
    m = PollingSessionMonitor(probe, interval=0.01, on_thread_start=on_start, on_thread_stop=on_stop)
    m.start('ms-teams.exe', lambda active: polled.set())
    thread = m._thread
    assert polled.wait(2.0)
    m.stop()

    assert stopped.wait(2.0)
    assert seen['start'] is thread
    assert seen['probe'] is thread
    assert seen['stop'] is thread
    assert thread is not threading.current_thread()


def test_every_monitor_thread_gets_its_own_setup():
    started = []
    reported = [threading.Event(), threading.Event()]

    monitors = [
        PollingSessionMonitor(
            lambda name: True,
            interval=0.01,
            on_thread_start=lambda: started.append(threading.current_thread().name)
        )
        for _ in range(2)
    ]
    monitors[0].start('ms-teams.exe', lambda active: reported[0].set())
    monitors[1].start('Zoom.exe', lambda active: reported[1].set())
    assert all(event.wait(2.0) for event in reported)
    for m in monitors:
        m.stop()

    assert sorted(started) == ['session-monitor-Zoom.exe', 'session-monitor-ms-teams.exe']


def test_failed_thread_setup_stops_polling():
    probed = []

    def on_start():
        raise OSError("CoInitialize failed")

    m = PollingSessionMonitor(lambda name: probed.append(name), interval=0.01, on_thread_start=on_start)
    m.start('ms-teams.exe', lambda active: None)
    m._thread.join(2.0)
    m.stop()

    assert probed == []


def test_windows_factory_initializes_com_per_thread(monkeypatch):
    monkeypatch.setattr(monitor, 'is_windows', lambda: True)

    created = monitor.get_session_monitor_factory()()

    assert created.probe is monitor.pycaw_probe
    assert created.on_thread_start is monitor.com_initialize
    assert created.on_thread_stop is monitor.com_uninitialize
