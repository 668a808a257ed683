"""Hwmon sysfs access: device discovery and integer attribute I/O.

Each hwmon directory exposes one value per file, e.g. ``pwm1`` or
``temp1_input``. Failures surface as HwmonError subclasses.
"""

from __future__ import annotations

import dataclasses
import glob
import logging
import pathlib

log = logging.getLogger("fan-daemon")

DEFAULT_GLOB = "/sys/class/hwmon/hwmon*"

NAME = "name"
PWM_ENABLE = "pwm1_enable"
PWM = "pwm1"
PWM_MIN = "pwm1_min"
PWM_MAX = "pwm1_max"
FAN_INPUT = "fan1_input"
TEMP_INPUT = "temp1_input"

FAN_MODE_MANUAL = 1


class HwmonError(Exception):
    """Base class for hwmon failures."""


class DeviceNotFoundError(HwmonError):
    """No hwmon directory matched the requested name."""


class AttributeIOError(HwmonError):
    """Attribute file could not be opened, read or written."""


class AttributeParseError(HwmonError):
    """Attribute file did not contain an integer."""


def read_int(path: pathlib.Path) -> int:
    """Read a single integer from a sysfs attribute."""
    try:
        text = path.read_text()
    except OSError as e:
        raise AttributeIOError("Failed to read %s: %s" % (path, e)) from e
    parts = text.split()
    if not parts:
        raise AttributeParseError("Empty attribute %s" % path)
    try:
        return int(parts[0])
    except ValueError as e:
        raise AttributeParseError(
            "Invalid integer in %s: %r" % (path, parts[0])
        ) from e


def write_int(path: pathlib.Path, value: int) -> None:
    """Write an integer to a sysfs attribute."""
    try:
        _ = path.write_text("%d" % value)
    except OSError as e:
        raise AttributeIOError("Failed to write %s: %s" % (path, e)) from e


@dataclasses.dataclass(frozen=True, slots=True)
class Device:
    """One hwmon device directory."""

    path: pathlib.Path

    def attr(self, name: str) -> pathlib.Path:
        return self.path / name

    def read(self, name: str) -> int:
        return read_int(self.attr(name))

    def write(self, name: str, value: int) -> None:
        write_int(self.attr(name), value)


def _candidates(pattern: str) -> list[pathlib.Path]:
    return sorted(pathlib.Path(p) for p in glob.glob(pattern))


def locate(
    gpu_name: str,
    ssd_name: str,
    pattern: str = DEFAULT_GLOB,
) -> tuple[Device, Device]:
    """Find the GPU and SSD hwmon directories by their name prefix.

    The first candidate (in sorted order) whose ``name`` starts with the
    identifier wins. Candidates with an unreadable ``name`` are skipped.

    Raises:
        DeviceNotFoundError: if either device is missing.
    """
    gpu: Device | None = None
    ssd: Device | None = None
    for hwmon in _candidates(pattern):
        if gpu is not None and ssd is not None:
            break
        try:
            name = (hwmon / NAME).read_text()
        except OSError:
            continue
        if gpu is None and name.startswith(gpu_name):
            gpu = Device(hwmon)
        if ssd is None and name.startswith(ssd_name):
            ssd = Device(hwmon)
    if gpu is None:
        raise DeviceNotFoundError("Can't detect GPU (%s) in %s" % (gpu_name, pattern))
    if ssd is None:
        raise DeviceNotFoundError("Can't detect SSD (%s) in %s" % (ssd_name, pattern))
    return gpu, ssd
