"""
Audio Device Manager - Enumerates capture devices and resolves sources.

Platform-specific implementations:
- Windows: Uses pyaudiowpatch for WASAPI loopback support
- macOS / Linux: Uses sounddevice; loopback comes from a monitor or
  virtual device (PulseAudio "Monitor of ...", BlackHole, Stereo Mix)
"""

import json
import sys
from typing import Any, Dict, List, Optional

from .platform_utils import is_windows

# Input devices whose name contains one of these carry system audio
LOOPBACK_NAME_HINTS = ('monitor', 'loopback', 'blackhole', 'stereo mix', 'soundflower')

# System mappers/drivers which are usually duplicates
BLOCKED_DEVICE_NAMES = (
    'Microsoft Sound Mapper',
    'Primary Sound Capture Driver',
    'Primary Sound Driver',
)


def is_loopback_name(name: str) -> bool:
    lowered = name.lower()
    return any(hint in lowered for hint in LOOPBACK_NAME_HINTS)


def select_device(devices: List[Dict[str, Any]], source_id=None) -> Optional[Dict[str, Any]]:
    """
    Pick a device from an enumerated list.

    Args:
        devices: device dicts with 'id' and 'name'
        source_id: None (first device), an int id, or a name substring

    Returns:
        The matching device dict, or None
    """
    if not devices:
        return None
    if source_id is None or source_id == '':
        return devices[0]

    if isinstance(source_id, int) or str(source_id).isdigit():
        wanted = int(source_id)
        for device in devices:
            if device['id'] == wanted:
                return device
        return None

    needle = str(source_id).lower()
    for device in devices:
        if needle in device['name'].lower():
            return device
    return None


class DeviceManager:
    """Manages audio device enumeration and information retrieval."""

    def __init__(self):
        self.pa = None
        if is_windows():
            import pyaudiowpatch as pyaudio
            self.pa = pyaudio.PyAudio()

    def close(self):
        """Release the PyAudio instance (Windows)."""
        if self.pa is not None:
            self.pa.terminate()
            self.pa = None

    def list_all_devices(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Enumerate capture devices and categorize them.
        Filters duplicates and system virtual devices.

        Returns:
            Dictionary with 'input_devices' and 'loopback_devices'
        """
        if self.pa is not None:
            return self._list_devices_windows()
        return self._list_devices_sounddevice()

    def _list_devices_windows(self) -> Dict[str, List[Dict[str, Any]]]:
        """Windows-specific device enumeration using pyaudiowpatch."""
        # Map name -> device_data, keeping the higher sample rate on duplicates
        seen_inputs = {}
        seen_loopbacks = {}

        for i in range(self.pa.get_device_count()):
            try:
                device_info = self.pa.get_device_info_by_index(i)
            except Exception as e:
                print(f"Warning: Could not read device {i}: {e}", file=sys.stderr)
                continue

            name = device_info.get("name", "Unknown")
            if any(blocked in name for blocked in BLOCKED_DEVICE_NAMES):
                continue
            if device_info.get("maxInputChannels", 0) <= 0:
                continue

            device_data = {
                "id": i,
                "name": name,
                "channels": int(device_info.get("maxInputChannels", 0)),
                "sample_rate": int(device_info.get("defaultSampleRate", 44100)),
            }

            seen = seen_loopbacks if device_info.get("isLoopbackDevice", False) else seen_inputs
            if name not in seen or device_data["sample_rate"] > seen[name]["sample_rate"]:
                seen[name] = device_data

        return {
            "input_devices": sorted(seen_inputs.values(), key=lambda x: x['name']),
            "loopback_devices": sorted(seen_loopbacks.values(), key=lambda x: x['name']),
        }

    def _list_devices_sounddevice(self) -> Dict[str, List[Dict[str, Any]]]:
        """Enumeration using sounddevice (macOS, Linux)."""
        import sounddevice as sd

        input_devices = []
        loopback_devices = []

        for i, device in enumerate(sd.query_devices()):
            if device['max_input_channels'] == 0:
                continue

            device_data = {
                "id": i,
                "name": device['name'],
                "channels": int(device['max_input_channels']),
                "sample_rate": int(device['default_samplerate']),
            }

            if is_loopback_name(device['name']):
                loopback_devices.append(device_data)
            else:
                input_devices.append(device_data)

        return {
            "input_devices": input_devices,
            "loopback_devices": loopback_devices,
        }

    def get_default_input(self) -> Optional[Dict[str, Any]]:
        """Default microphone as a device dict, or None."""
        try:
            if self.pa is not None:
                info = self.pa.get_default_input_device_info()
                return {
                    "id": int(info["index"]),
                    "name": info.get("name", "Unknown"),
                    "channels": int(info.get("maxInputChannels", 1)),
                    "sample_rate": int(info.get("defaultSampleRate", 48000)),
                }

            import sounddevice as sd
            info = sd.query_devices(kind='input')
            return {
                "id": int(info['index']),
                "name": info['name'],
                "channels": int(info['max_input_channels']),
                "sample_rate": int(info['default_samplerate']),
            }
        except Exception as e:
            print(f"Warning: Could not get default input device: {e}", file=sys.stderr)
            return None

    def get_default_loopback(self) -> Optional[Dict[str, Any]]:
        """Loopback of the default output device, or the first loopback found."""
        if self.pa is not None:
            try:
                info = self.pa.get_default_wasapi_loopback()
                return {
                    "id": int(info["index"]),
                    "name": info.get("name", "Unknown"),
                    "channels": int(info.get("maxInputChannels", 2)),
                    "sample_rate": int(info.get("defaultSampleRate", 48000)),
                }
            except Exception as e:
                print(f"Warning: Could not get default WASAPI loopback: {e}", file=sys.stderr)

        return select_device(self.list_all_devices()["loopback_devices"])


def main():
    """
    Command-line interface for device enumeration.
    Outputs JSON to stdout for easy parsing by the host UI.
    """
    manager = DeviceManager()
    try:
        output = {
            **manager.list_all_devices(),
            "default_input": manager.get_default_input(),
            "default_loopback": manager.get_default_loopback(),
        }
    finally:
        manager.close()

    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
