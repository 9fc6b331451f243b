"""
Call session audio capture and recording.

Watches a call application for an active audio session, records the mixed
system + microphone audio while the call lasts, and hands the finished
recording to persistence and analysis.
"""

import platform


def get_stream_acquirer(*args, **kwargs):
    """
    Factory function to get the platform-specific stream acquirer.

    Returns:
        BaseStreamAcquirer: WASAPI loopback on Windows, sounddevice elsewhere
    """
    system = platform.system()

    if system == 'Windows':
        from .acquirer import WasapiStreamAcquirer
        return WasapiStreamAcquirer(*args, **kwargs)
    from .acquirer import SoundDeviceStreamAcquirer
    return SoundDeviceStreamAcquirer(*args, **kwargs)


__all__ = ['get_stream_acquirer']
