"""
Tests for stream acquisition helpers and device selection.
"""

import asyncio
import threading
import time

import pytest

from call_recorder.acquirer import (
    BaseStreamAcquirer,
    MIC_CONSTRAINTS,
    candidate_rates,
    classify_device_error,
    mic_settings,
)
from call_recorder.devices import is_loopback_name, select_device
from call_recorder.errors import AcquisitionError, AcquisitionFailure
from call_recorder.streams import AudioStream, AudioTrack, MICROPHONE, SYSTEM

DEVICES = [
    {'id': 3, 'name': 'Headset Microphone (USB)', 'channels': 1, 'sample_rate': 48000},
    {'id': 7, 'name': 'Monitor of Built-in Audio Analog Stereo', 'channels': 2, 'sample_rate': 44100},
]


class ThreadedAcquirer(BaseStreamAcquirer):
    def __init__(self):
        super().__init__()
        self.opened = []

    def _open(self, kind, source_id):
        self.opened.append((kind, source_id))
        return AudioStream(kind, [AudioTrack(kind, 48000, 2)], settings=mic_settings())


@pytest.mark.asyncio
async def test_acquire_opens_device_off_the_loop():
    acquirer = ThreadedAcquirer()
    stream = await acquirer.acquire(MICROPHONE)
    assert stream.active
    assert acquirer.opened == [(MICROPHONE, None)]


class SlowAcquirer(ThreadedAcquirer):
    def __init__(self):
        super().__init__()
        self.inside = 0
        self.max_inside = 0
        self.guard = threading.Lock()

    def _open(self, kind, source_id):
        with self.guard:
            self.inside += 1
            self.max_inside = max(self.max_inside, self.inside)
        time.sleep(0.05)
        with self.guard:
            self.inside -= 1
        return super()._open(kind, source_id)


@pytest.mark.asyncio
async def test_parallel_requests_open_devices_one_at_a_time():
    acquirer = SlowAcquirer()
    system, mic = await asyncio.gather(acquirer.acquire(SYSTEM), acquirer.acquire(MICROPHONE))

    assert system.kind == SYSTEM
    assert mic.kind == MICROPHONE
    assert acquirer.max_inside == 1
    assert sorted(acquirer.opened) == [(MICROPHONE, None), (SYSTEM, None)]


@pytest.mark.asyncio
async def test_acquire_rejects_unknown_kind():
    with pytest.raises(ValueError):
        await ThreadedAcquirer().acquire('camera')


def test_no_device_message_has_suggestions():
    error = ThreadedAcquirer()._no_device(SYSTEM, 'BlackHole')
    assert error.kind is AcquisitionFailure.DEVICE_UNAVAILABLE
    assert "'BlackHole'" in str(error)
    assert 'Suggestions' in str(error)


def test_classify_device_error():
    denied = classify_device_error(MICROPHONE, OSError("Access denied by the system"))
    assert denied.kind is AcquisitionFailure.PERMISSION_DENIED

    busy = classify_device_error(SYSTEM, OSError("Device unavailable [PaErrorCode -9985]"))
    assert busy.kind is AcquisitionFailure.DEVICE_UNAVAILABLE
    assert isinstance(busy, AcquisitionError)


def test_microphone_requests_voice_processing():
    assert MIC_CONSTRAINTS == {
        'echo_cancellation': True,
        'noise_suppression': True,
        'auto_gain_control': True,
    }
    settings = mic_settings()
    assert settings['requested'] == MIC_CONSTRAINTS
    assert settings['auto_gain_control'] is True


def test_candidate_rates_start_with_default():
    rates = candidate_rates(44100)
    assert rates[0] == 44100
    assert len(rates) == len(set(rates))
    assert 48000 in rates


def test_select_device():
    assert select_device([], None) is None
    assert select_device(DEVICES) is DEVICES[0]
    assert select_device(DEVICES, 7) is DEVICES[1]
    assert select_device(DEVICES, '7') is DEVICES[1]
    assert select_device(DEVICES, 'monitor of') is DEVICES[1]
    assert select_device(DEVICES, 99) is None
    assert select_device(DEVICES, 'blackhole') is None


def test_loopback_names():
    assert is_loopback_name('Monitor of Built-in Audio')
    assert is_loopback_name('BlackHole 2ch')
    assert is_loopback_name('Stereo Mix (Realtek Audio)')
    assert not is_loopback_name('MacBook Pro Microphone')
