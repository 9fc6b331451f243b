"""
Host process for the desktop UI.

Reads one JSON command per line on stdin and writes one JSON message per
line on stdout. Diagnostics go to stderr.

Commands:
    {"command": "start-monitoring", "processNames": "ms-teams.exe,Zoom.exe"}
    {"command": "start-monitoring"}            (process derived from --platform)
    {"command": "stop-monitoring"}
    {"command": "end-call"}
    {"command": "list-recordings"}
    {"command": "shutdown"}

Messages:
    {"type": "audio-session-update", "payload": true}
    {"type": "recording-status", "payload": "started" | "saved" | "error"}
    {"type": "analysis-status", "payload": "saved" | "error"}
    {"type": "levels", "level": 0.42}
    {"type": "recordings", "recordings": [...]}
    {"type": "error", "code": "...", "message": "..."}
"""

import argparse
import asyncio
import functools
import json
import sys
import threading
from pathlib import Path
from typing import Callable

from . import get_stream_acquirer, notifications
from .analysis_client import AnalysisClient
from .config import Settings
from .delivery import ArtifactDelivery
from .encoder import CaptureRecorder
from .monitor import get_session_monitor_factory
from .orchestrator import RecordingOrchestrator
from .platform_utils import get_process_name
from .storage import RecordingStore

LEVEL_INTERVAL_SECONDS = 0.2

# Lock for thread-safe JSON output to stdout
_stdout_lock = threading.Lock()


def _send_json_message(message: dict):
    """Send a JSON message to stdout in a thread-safe manner."""
    with _stdout_lock:
        print(json.dumps(message), flush=True)


class CommandHost:
    """Translates host commands into orchestrator calls."""

    def __init__(
        self,
        orchestrator: RecordingOrchestrator,
        store: RecordingStore = None,
        send: Callable[[dict], None] = _send_json_message
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.send = send
        self.shutdown_requested = asyncio.Event()

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            print(f"Ignoring malformed command: {line[:80]} ({e})", file=sys.stderr)
            self.send({"type": "error", "code": "BAD_COMMAND", "message": f"Malformed command: {e}"})
            return
        if not isinstance(message, dict):
            self.send({"type": "error", "code": "BAD_COMMAND", "message": "Command must be a JSON object"})
            return
        self.handle(message)

    def handle(self, message: dict) -> None:
        command = message.get('command')
        orchestrator = self.orchestrator

        if command == 'start-monitoring':
            names = message.get('processNames')
            if names is not None and not isinstance(names, str):
                self.send({
                    "type": "error",
                    "code": "BAD_COMMAND",
                    "message": "processNames must be a comma-separated string"
                })
                return
            names = names or get_process_name(orchestrator.platform)
            if not names:
                print(f"No process known for platform {orchestrator.platform!r}, monitoring disabled", file=sys.stderr)
                self.send({
                    "type": "error",
                    "code": "NO_PROCESS",
                    "message": f"No call process configured for platform '{orchestrator.platform}'"
                })
                return
            orchestrator.start_monitoring(names)

        elif command == 'stop-monitoring':
            orchestrator.stop_monitoring()

        elif command == 'end-call':
            orchestrator.end_call()

        elif command == 'list-recordings':
            recordings = []
            if self.store is not None:
                recordings = self.store.list_recordings(orchestrator.platform, orchestrator.agent_id)
            self.send({"type": "recordings", "recordings": recordings})

        elif command == 'shutdown':
            self.shutdown_requested.set()

        else:
            print(f"Unknown command: {command!r}", file=sys.stderr)
            self.send({"type": "error", "code": "UNKNOWN_COMMAND", "message": f"Unknown command: {command}"})

    async def report_levels(self, interval: float = LEVEL_INTERVAL_SECONDS) -> None:
        """Send the mixed level while recording (5 updates per second)."""
        while True:
            if self.orchestrator.is_recording:
                self.send({"type": "levels", "level": round(self.orchestrator.level, 3)})
            await asyncio.sleep(interval)


def _forward(channel: str, payload) -> None:
    _send_json_message({"type": channel, "payload": payload})


def _start_input_listener(loop: asyncio.AbstractEventLoop, host: CommandHost) -> threading.Thread:
    def input_listener():
        """Forward stdin lines to the event loop; EOF means the UI went away."""
        try:
            for line in sys.stdin:
                loop.call_soon_threadsafe(host.handle_line, line)
        except Exception as e:
            print(f"Error in command listener: {e}", file=sys.stderr)
        loop.call_soon_threadsafe(host.shutdown_requested.set)

    thread = threading.Thread(target=input_listener, daemon=True)
    thread.start()
    return thread


async def run_host(args, settings: Settings) -> None:
    loop = asyncio.get_running_loop()
    bus = notifications.NotificationBus(loop)
    for channel in (
        notifications.AUDIO_SESSION_UPDATE,
        notifications.RECORDING_STATUS,
        notifications.ANALYSIS_STATUS,
    ):
        bus.subscribe(channel, functools.partial(_forward, channel))

    store = RecordingStore(settings.data_dir)
    client = None
    if settings.analysis_enabled:
        client = AnalysisClient(settings.analysis_url, timeout=settings.analysis_timeout)
    else:
        print("API_AUDIO_ANALYSIS not set, recordings will not be analysed", file=sys.stderr)

    acquirer = get_stream_acquirer()
    orchestrator = RecordingOrchestrator(
        acquirer,
        agent_id=args.agent_id,
        platform=args.platform,
        monitor_factory=get_session_monitor_factory(),
        recorder_factory=functools.partial(CaptureRecorder, ffmpeg=settings.ffmpeg),
        delivery=ArtifactDelivery(store, client, bus),
        bus=bus,
        stop_timeout=settings.stop_timeout,
        system_source_id=args.system_source,
    )
    orchestrator.start()

    host = CommandHost(orchestrator, store)
    _start_input_listener(loop, host)
    levels = asyncio.create_task(host.report_levels())

    print(f"Call recorder ready (agent {args.agent_id}, platform {args.platform})", file=sys.stderr)
    print(f"Data directory: {settings.data_dir}", file=sys.stderr)

    try:
        await host.shutdown_requested.wait()
    finally:
        levels.cancel()
        await orchestrator.shutdown()
        acquirer.close()
        print("Call recorder stopped", file=sys.stderr)


def main():
    parser = argparse.ArgumentParser(description="Call recorder host")
    parser.add_argument("--agent-id", required=True, help="Agent the recordings belong to")
    parser.add_argument("--platform", default="Teams", help="Call platform (Teams, Zoom)")
    parser.add_argument("--data-dir", help="Root directory for recordings and analysis")
    parser.add_argument("--analysis-url", help="Analysis endpoint (overrides API_AUDIO_ANALYSIS)")
    parser.add_argument("--system-source", help="System audio device id or name (default: loopback of default output)")
    parser.add_argument("--ffmpeg", help="ffmpeg executable")

    args = parser.parse_args()

    settings = Settings.from_env()
    if args.data_dir:
        settings.data_dir = Path(args.data_dir).expanduser()
    if args.analysis_url is not None:
        settings.analysis_url = args.analysis_url
    if args.ffmpeg:
        settings.ffmpeg = args.ffmpeg

    try:
        asyncio.run(run_host(args, settings))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)


if __name__ == "__main__":
    main()
