"""
Recording Store - persists finished recordings and their analysis.

Layout under the data directory:
    recordings/<platform>/<agentId>/<fileName>           container bytes
    recordings/<platform>/<agentId>/<stem>.json          metadata
    recordings/<platform>/<agentId>/recordings.json      index, newest first
    analysis/<platform>/<agentId>/<stem>_analysis.json   analysis result

The index is shared with other processes (the UI reads it), so updates are
done under a file lock.
"""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

import filelock

from .artifact import Artifact, isoformat
from .errors import PersistenceError

INDEX_FILE = 'recordings.json'
LOCK_TIMEOUT_SECONDS = 10


def _segment(value: str, fallback: str) -> str:
    """One safe path component."""
    value = (value or '').strip().replace('/', '_').replace('\\', '_')
    if value in ('', '.', '..'):
        return fallback
    return value


class RecordingStore:
    """Stores recordings per platform and agent, with a JSON index per agent."""

    def __init__(self, root):
        self.root = Path(root)
        self.recordings_dir = self.root / "recordings"
        self.analysis_dir = self.root / "analysis"

    def agent_dir(self, platform: str, agent_id: str) -> Path:
        return (
            self.recordings_dir
            / _segment(platform, 'unknown').lower()
            / _segment(agent_id, 'unknown')
        )

    def save_recording(self, artifact: Artifact) -> Dict:
        """
        Write the container and its metadata, then add it to the index.

        Returns:
            The metadata record that was written

        Raises:
            PersistenceError: if anything could not be written
        """
        meta = artifact.metadata
        directory = self.agent_dir(meta.platform, meta.agent_id)
        file_path = directory / artifact.file_name
        metadata_path = file_path.with_suffix('.json')

        record = {
            "fileName": artifact.file_name,
            "agentId": meta.agent_id,
            "platform": meta.platform,
            "duration": artifact.duration_seconds,
            "startTime": isoformat(meta.start_time),
            "endTime": isoformat(meta.end_time),
            "filePath": str(file_path.absolute()),
            "fileSize": artifact.size,
            "mimeType": artifact.mime_type,
        }

        try:
            directory.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(artifact.container_bytes)
            with open(metadata_path, 'w', encoding='utf-8') as f:
                json.dump(record, f, indent=2, ensure_ascii=False)
            self._add_to_index(directory, record)
        except (OSError, filelock.Timeout) as e:
            raise PersistenceError(f"Failed to save recording {artifact.file_name}: {e}") from e

        print(f"Recording saved: {file_path}", file=sys.stderr)
        return record

    def save_analysis(self, artifact: Artifact, analysis: Dict) -> Path:
        """Write an analysis result next to the other analyses of this agent."""
        meta = artifact.metadata
        directory = (
            self.analysis_dir
            / _segment(meta.platform, 'unknown').lower()
            / _segment(meta.agent_id, 'unknown')
        )
        path = directory / f"{Path(artifact.file_name).stem}_analysis.json"

        document = dict(analysis)
        document.update({
            "metadata": meta.analysis_payload(),
            "fileName": artifact.file_name,
            "analysisTimestamp": isoformat(datetime.now(timezone.utc)),
        })

        try:
            directory.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
        except OSError as e:
            raise PersistenceError(f"Failed to save analysis for {artifact.file_name}: {e}") from e

        print(f"Analysis saved: {path}", file=sys.stderr)
        return path

    def list_recordings(self, platform: str, agent_id: str) -> List[Dict]:
        """
        Recordings of one agent, newest first.

        Returns:
            List of metadata records (empty if there are none)
        """
        index = self.agent_dir(platform, agent_id) / INDEX_FILE
        try:
            with open(index, 'r', encoding='utf-8') as f:
                records = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return []
        records.sort(key=lambda r: r.get('startTime', ''), reverse=True)
        return records

    def _add_to_index(self, directory: Path, record: Dict) -> None:
        index = directory / INDEX_FILE
        lock = filelock.FileLock(str(index) + '.lock', timeout=LOCK_TIMEOUT_SECONDS)
        with lock:
            try:
                with open(index, 'r', encoding='utf-8') as f:
                    records = json.load(f)
            except (FileNotFoundError, json.JSONDecodeError):
                records = []

            records = [r for r in records if r.get('fileName') != record['fileName']]
            records.insert(0, record)

            with open(index, 'w', encoding='utf-8') as f:
                json.dump(records, f, indent=2, ensure_ascii=False)
