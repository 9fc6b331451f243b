"""
Client for the external audio analysis service.

The finished recording is posted as multipart/form-data with two parts:
'audio' (the container) and 'metadata' (JSON string). The service replies
with JSON whose 'object' member holds the analysis: transcript segments,
sentiment trends, keywords and recommendations.
"""

import json
import sys
from typing import Dict, Optional

import httpx

from .artifact import Artifact
from .constants import ANALYSIS_TIMEOUT_SECONDS, TRANSCRIPT_LANGUAGE
from .errors import AnalysisError


def extract_transcript(analysis: Dict, language: str = TRANSCRIPT_LANGUAGE) -> str:
    """Join segments[].transcript_<language> into one newline separated text."""
    key = f"transcript_{language}"
    lines = []
    for segment in analysis.get('segments') or []:
        text = segment.get(key)
        if text:
            lines.append(text)
    return '\n'.join(lines)


class AnalysisClient:
    """
    Posts recordings to the analysis endpoint.

    Args:
        url: analysis endpoint
        timeout: seconds to wait for a response
        transport: optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        url: str,
        timeout: float = ANALYSIS_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def analyze(self, artifact: Artifact) -> Dict:
        """
        Upload one recording.

        Returns:
            The analysis object of the response (segments, sentiment, keywords, ...)

        Raises:
            AnalysisError: on transport failure, non-2xx status, a non-JSON reply
                or a reply without an analysis object
        """
        files = {'audio': (artifact.file_name, artifact.container_bytes, artifact.mime_type)}
        data = {'metadata': json.dumps(artifact.metadata.analysis_payload())}

        print(f"Sending {artifact.file_name} for analysis ({artifact.size / 1024:.1f} KB)", file=sys.stderr)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, files=files, data=data)
        except httpx.HTTPError as e:
            raise AnalysisError(f"Analysis request failed: {e}") from e

        if not response.is_success:
            raise AnalysisError(
                f"Analysis service returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        try:
            result = response.json()
        except ValueError as e:
            raise AnalysisError(f"Analysis service returned invalid JSON: {e}", response.status_code) from e
        analysis = result.get('object') if isinstance(result, dict) else None
        if not isinstance(analysis, dict):
            raise AnalysisError("Analysis response has no analysis object", response.status_code)

        print("Analysis completed", file=sys.stderr)
        return analysis
