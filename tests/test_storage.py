"""
Tests for the recording store.
"""

import json
from datetime import datetime, timezone

import pytest

from call_recorder.artifact import finalize
from call_recorder.constants import PREFERRED_MIME_TYPE
from call_recorder.errors import PersistenceError
from call_recorder.storage import RecordingStore


def make_artifact(agent_id='agent-1', platform='Teams', minute=30):
    start = datetime(2024, 3, 5, 14, minute, 0, tzinfo=timezone.utc)
    end = datetime(2024, 3, 5, 14, minute + 1, 0, tzinfo=timezone.utc)
    return finalize([b'\x1a' * 64], PREFERRED_MIME_TYPE, 60.0, agent_id, platform, start, end, now=end)


def test_save_recording_writes_container_and_metadata(tmp_path):
    store = RecordingStore(tmp_path)
    artifact = make_artifact()

    record = store.save_recording(artifact)

    directory = tmp_path / 'recordings' / 'teams' / 'agent-1'
    audio = directory / artifact.file_name
    assert audio.read_bytes() == artifact.container_bytes

    metadata = json.loads(audio.with_suffix('.json').read_text(encoding='utf-8'))
    assert metadata == record
    assert metadata['fileName'] == artifact.file_name
    assert metadata['agentId'] == 'agent-1'
    assert metadata['platform'] == 'Teams'
    assert metadata['duration'] == 60.0
    assert metadata['fileSize'] == 64
    assert metadata['mimeType'] == PREFERRED_MIME_TYPE
    assert metadata['startTime'] == '2024-03-05T14:30:00.000Z'


def test_list_recordings_newest_first(tmp_path):
    store = RecordingStore(tmp_path)
    older = make_artifact(minute=10)
    newer = make_artifact(minute=40)
    store.save_recording(newer)
    store.save_recording(older)

    names = [r['fileName'] for r in store.list_recordings('Teams', 'agent-1')]
    assert names == [newer.file_name, older.file_name]
    assert store.list_recordings('Zoom', 'agent-1') == []


def test_saving_twice_does_not_duplicate_index_entry(tmp_path):
    store = RecordingStore(tmp_path)
    artifact = make_artifact()
    store.save_recording(artifact)
    store.save_recording(artifact)
    assert len(store.list_recordings('teams', 'agent-1')) == 1


def test_path_segments_are_sanitized(tmp_path):
    store = RecordingStore(tmp_path)
    store.save_recording(make_artifact(agent_id='../escape'))
    assert (tmp_path / 'recordings' / 'teams' / '.._escape').is_dir()


def test_save_analysis(tmp_path):
    store = RecordingStore(tmp_path)
    artifact = make_artifact()

    path = store.save_analysis(artifact, {'segments': [], 'keywords': ['pricing']})

    assert path.parent == tmp_path / 'analysis' / 'teams' / 'agent-1'
    assert path.name.endswith('_analysis.json')
    document = json.loads(path.read_text(encoding='utf-8'))
    assert document['keywords'] == ['pricing']
    assert document['fileName'] == artifact.file_name
    assert document['metadata']['duration'] == 60
    assert document['analysisTimestamp'].endswith('Z')


def test_write_failure_is_persistence_error(tmp_path):
    blocker = tmp_path / 'recordings'
    blocker.write_text('not a directory')
    store = RecordingStore(tmp_path)

    with pytest.raises(PersistenceError):
        store.save_recording(make_artifact())
