"""
Tests for the ffmpeg-backed chunked encoder.
"""

import asyncio
import os
import stat
import sys

import pytest

from call_recorder import encoder
from call_recorder.constants import FALLBACK_MIME_TYPE, PREFERRED_MIME_TYPE
from call_recorder.encoder import CaptureRecorder, build_ffmpeg_command
from call_recorder.errors import EncoderError


class PcmSource:
    """Mixed-stream stand-in that remembers everything it handed out."""

    sample_rate = 48000
    channels = 2

    def __init__(self):
        self.produced = bytearray()
        self.counter = 0

    def read(self):
        self.counter += 1
        data = bytes([self.counter % 256]) * 64
        self.produced.extend(data)
        return data


@pytest.fixture
def fake_ffmpeg(tmp_path):
    """An executable that copies stdin to stdout, whatever its arguments."""
    if os.name != 'posix':
        pytest.skip("fake ffmpeg needs a POSIX shebang")
    script = tmp_path / 'ffmpeg'
    script.write_text(
        f"#!{sys.executable}\n"
        "import sys\n"
        "while True:\n"
        "    data = sys.stdin.buffer.read1(4096)\n"
        "    if not data:\n"
        "        break\n"
        "    sys.stdout.buffer.write(data)\n"
        "    sys.stdout.buffer.flush()\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


def test_opus_command():
    cmd = build_ffmpeg_command('ffmpeg', PREFERRED_MIME_TYPE, 48000, 2, 256000, 1.0)
    assert cmd[0] == 'ffmpeg'
    assert cmd[cmd.index('-f') + 1] == 's16le'
    assert cmd[cmd.index('-ar') + 1] == '48000'
    assert cmd[cmd.index('-ac') + 1] == '2'
    assert cmd[cmd.index('-c:a') + 1] == 'libopus'
    assert cmd[cmd.index('-b:a') + 1] == '256k'
    assert cmd[cmd.index('-cluster_time_limit') + 1] == '1000'
    assert cmd[-1] == 'pipe:1'


def test_fallback_command_lets_ffmpeg_pick_codec():
    cmd = build_ffmpeg_command('ffmpeg', FALLBACK_MIME_TYPE, 44100, 2)
    assert '-c:a' not in cmd
    assert 'webm' in cmd


def test_negotiation(monkeypatch):
    monkeypatch.setattr(encoder, 'ffmpeg_encoders', lambda ffmpeg='ffmpeg': ' A..... libopus  libopus Opus')
    assert encoder.negotiate_mime_type() == PREFERRED_MIME_TYPE

    monkeypatch.setattr(encoder, 'ffmpeg_encoders', lambda ffmpeg='ffmpeg': ' A..... libvorbis')
    assert encoder.negotiate_mime_type() == FALLBACK_MIME_TYPE
    assert not encoder.is_type_supported(PREFERRED_MIME_TYPE)

    monkeypatch.setattr(encoder, 'ffmpeg_encoders', lambda ffmpeg='ffmpeg': '')
    assert not encoder.is_type_supported(FALLBACK_MIME_TYPE)


@pytest.mark.asyncio
async def test_start_without_ffmpeg_raises(monkeypatch):
    monkeypatch.setattr(encoder, 'ffmpeg_encoders', lambda ffmpeg='ffmpeg': '')
    recorder = CaptureRecorder(PcmSource(), ffmpeg='no-such-ffmpeg')
    with pytest.raises(EncoderError):
        await recorder.start(1.0)


@pytest.mark.asyncio
async def test_stop_before_start_acknowledges_once():
    stopped = []
    recorder = CaptureRecorder(PcmSource())
    recorder.on_stopped = lambda: stopped.append(True)

    await recorder.stop()
    await recorder.stop()
    recorder.abort()
    recorder.abort()

    assert stopped == [True]


@pytest.mark.asyncio
async def test_chunks_carry_everything_encoded(monkeypatch, fake_ffmpeg):
    monkeypatch.setattr(encoder, 'is_type_supported', lambda mime, ffmpeg='ffmpeg': True)
    source = PcmSource()
    events = []
    chunks = []

    recorder = CaptureRecorder(source, mime_type=PREFERRED_MIME_TYPE, ffmpeg=fake_ffmpeg)
    recorder.on_started = lambda: events.append('started')
    recorder.on_chunk = chunks.append
    recorder.on_stopped = lambda: events.append('stopped')
    recorder.on_error = lambda e: events.append(('error', e))

    await recorder.start(0.1)
    await asyncio.sleep(0.35)
    await recorder.stop()

    assert events == ['started', 'stopped']
    assert recorder.state == 'inactive'
    assert len(chunks) >= 2
    assert all(chunks)
    assert b''.join(chunks) == bytes(source.produced)


@pytest.mark.asyncio
async def test_abort_kills_encoder(monkeypatch, fake_ffmpeg):
    monkeypatch.setattr(encoder, 'is_type_supported', lambda mime, ffmpeg='ffmpeg': True)
    events = []
    recorder = CaptureRecorder(PcmSource(), mime_type=PREFERRED_MIME_TYPE, ffmpeg=fake_ffmpeg)
    recorder.on_stopped = lambda: events.append('stopped')
    recorder.on_error = lambda e: events.append('error')

    await recorder.start(0.1)
    recorder.abort()
    recorder.abort()
    await asyncio.sleep(0.1)

    assert recorder.state == 'inactive'
    assert events == []
