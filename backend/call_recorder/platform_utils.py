"""
Platform detection and call-platform helpers.
"""

import platform

from .constants import PLATFORM_PROCESS_NAMES


def is_windows():
    """Check if running on Windows."""
    return platform.system() == 'Windows'


def is_linux():
    """Check if running on Linux."""
    return platform.system() == 'Linux'


def get_process_name(platform_name: str) -> str:
    """
    Map an agent's call platform (e.g. 'Teams') to the process to watch.

    Returns:
        str: process name, or '' when the platform is not supported
             (monitoring stays disabled)
    """
    if not platform_name:
        return ''
    return PLATFORM_PROCESS_NAMES.get(platform_name.strip().lower(), '')


def parse_process_names(process_names: str) -> list:
    """
    Split a comma-separated process list, trimming and deduplicating.

    Order of first appearance is kept. Empty entries are dropped.
    """
    names = []
    for raw in (process_names or '').split(','):
        name = raw.strip()
        if name and name not in names:
            names.append(name)
    return names
