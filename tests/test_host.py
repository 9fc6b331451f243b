"""
Tests for the JSON-lines command host.
"""

import json

from call_recorder.host import CommandHost, _send_json_message


class StubOrchestrator:
    def __init__(self, platform='Teams', agent_id='agent-1'):
        self.platform = platform
        self.agent_id = agent_id
        self.calls = []
        self.is_recording = False
        self.level = 0.0

    def start_monitoring(self, names):
        self.calls.append(('start-monitoring', names))

    def stop_monitoring(self):
        self.calls.append(('stop-monitoring',))

    def end_call(self):
        self.calls.append(('end-call',))


class StubStore:
    def list_recordings(self, platform, agent_id):
        return [{'fileName': 'recording-x-5s.webm', 'platform': platform, 'agentId': agent_id}]


def make_host(**kwargs):
    sent = []
    orchestrator = StubOrchestrator(**kwargs)
    host = CommandHost(orchestrator, StubStore(), send=sent.append)
    return host, orchestrator, sent


def test_start_monitoring_with_names():
    host, orchestrator, sent = make_host()
    host.handle_line(json.dumps({'command': 'start-monitoring', 'processNames': 'ms-teams.exe,Zoom.exe'}))
    assert orchestrator.calls == [('start-monitoring', 'ms-teams.exe,Zoom.exe')]
    assert sent == []


def test_start_monitoring_derives_process_from_platform():
    host, orchestrator, sent = make_host(platform='Zoom')
    host.handle_line('{"command": "start-monitoring"}')
    assert orchestrator.calls == [('start-monitoring', 'Zoom.exe')]


def test_unmapped_platform_disables_monitoring():
    host, orchestrator, sent = make_host(platform='Webex')
    host.handle_line('{"command": "start-monitoring"}')
    assert orchestrator.calls == []
    assert sent[0]['code'] == 'NO_PROCESS'


def test_stop_and_end_call():
    host, orchestrator, sent = make_host()
    host.handle_line('{"command": "end-call"}')
    host.handle_line('{"command": "stop-monitoring"}')
    assert orchestrator.calls == [('end-call',), ('stop-monitoring',)]


def test_list_recordings():
    host, orchestrator, sent = make_host()
    host.handle_line('{"command": "list-recordings"}')
    assert sent == [{
        'type': 'recordings',
        'recordings': [{'fileName': 'recording-x-5s.webm', 'platform': 'Teams', 'agentId': 'agent-1'}],
    }]


def test_bad_input_is_reported_not_raised():
    host, orchestrator, sent = make_host()
    host.handle_line('')
    host.handle_line('not json')
    host.handle_line('[1, 2]')
    host.handle_line('{"command": "reboot"}')
    assert [m['code'] for m in sent] == ['BAD_COMMAND', 'BAD_COMMAND', 'UNKNOWN_COMMAND']
    assert orchestrator.calls == []


def test_process_names_must_be_a_string():
    host, orchestrator, sent = make_host()
    host.handle_line(json.dumps({'command': 'start-monitoring', 'processNames': ['ms-teams.exe', 'Zoom.exe']}))
    host.handle_line(json.dumps({'command': 'start-monitoring', 'processNames': 42}))
    assert [m['code'] for m in sent] == ['BAD_COMMAND', 'BAD_COMMAND']
    assert orchestrator.calls == []


def test_shutdown_command():
    host, orchestrator, sent = make_host()
    host.handle_line('{"command": "shutdown"}')
    assert host.shutdown_requested.is_set()


def test_json_messages_go_to_stdout(capsys):
    _send_json_message({'type': 'recording-status', 'payload': 'saved'})
    captured = capsys.readouterr()
    assert json.loads(captured.out) == {'type': 'recording-status', 'payload': 'saved'}
    assert captured.err == ''
