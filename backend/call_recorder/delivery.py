"""
Delivery of a finished recording to its collaborators.

Persistence and analysis are independent: a recording that could not be
saved is still analysed, and a failed analysis never affects the saved file.
Each reports on its own notification channel.
"""

import asyncio
import sys
from typing import Optional

from . import notifications
from .analysis_client import AnalysisClient, extract_transcript
from .artifact import Artifact
from .errors import AnalysisError, PersistenceError
from .storage import RecordingStore


class ArtifactDelivery:
    def __init__(
        self,
        store: Optional[RecordingStore] = None,
        analysis_client: Optional[AnalysisClient] = None,
        bus: Optional[notifications.NotificationBus] = None
    ):
        self.store = store
        self.analysis_client = analysis_client
        self.bus = bus

    async def deliver(self, artifact: Artifact) -> None:
        await self.persist(artifact)
        await self.analyze(artifact)

    async def persist(self, artifact: Artifact) -> bool:
        if self.store is None:
            return False
        try:
            await asyncio.to_thread(self.store.save_recording, artifact)
        except PersistenceError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            self._publish(notifications.RECORDING_STATUS, notifications.ERROR)
            return False
        self._publish(notifications.RECORDING_STATUS, notifications.SAVED)
        return True

    async def analyze(self, artifact: Artifact) -> Optional[dict]:
        if self.analysis_client is None:
            return None
        try:
            analysis = await self.analysis_client.analyze(artifact)
        except AnalysisError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            self._publish(notifications.ANALYSIS_STATUS, notifications.ERROR)
            return None

        transcript = extract_transcript(analysis)
        if transcript:
            print(f"Transcript ({len(transcript.splitlines())} segments) received", file=sys.stderr)

        if self.store is not None:
            try:
                await asyncio.to_thread(self.store.save_analysis, artifact, analysis)
            except PersistenceError as e:
                print(f"ERROR: {e}", file=sys.stderr)
                self._publish(notifications.ANALYSIS_STATUS, notifications.ERROR)
                return analysis

        self._publish(notifications.ANALYSIS_STATUS, notifications.SAVED)
        return analysis

    def _publish(self, channel: str, payload) -> None:
        if self.bus is not None:
            self.bus.publish(channel, payload)
