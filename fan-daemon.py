#!/usr/bin/env python3
"""
Fan daemon that drives a GPU fan from an NVMe SSD's temperature.

The GPU fan (amdgpu hwmon) is switched to manual mode and its PWM duty is
interpolated linearly between pwm1_min and pwm1_max as the SSD temperature
moves between --temp-min and --temp-max. PWM changes are limited to
--max-step per tick to avoid audible jumps.

Fail-safe: unreadable SSD temperature -> PWM max.
On SIGTERM/SIGINT/SIGQUIT/SIGHUP the original fan mode is restored.

Run with --help for configuration options.

Monitor logs:
    journalctl -u fan-daemon -f
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
import threading
from typing import Protocol, cast

import hwmon

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s",
)
log = logging.getLogger("fan-daemon")

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGQUIT, signal.SIGINT, signal.SIGHUP)


@dataclasses.dataclass(frozen=True, slots=True)
class PwmBounds:
    """PWM duty range reported by the fan controller."""

    min: int
    max: int

    def __post_init__(self) -> None:
        if self.min > self.max:
            raise ValueError("PWM min %d > max %d" % (self.min, self.max))


@dataclasses.dataclass(slots=True)
class ControllerState:
    """Last PWM value handed to the fan."""

    last_pwm: int


def compute_target_pwm(
    temperature: int | None,
    bounds: PwmBounds,
    temp_min: int,
    temp_max: int,
) -> int:
    """Map a temperature onto [bounds.min, bounds.max].

    None (sensor failure) maps to bounds.max.
    """
    if temperature is None:
        return bounds.max
    if temperature <= temp_min:
        return bounds.min
    if temperature >= temp_max:
        return bounds.max
    ratio = (temperature - temp_min) / (temp_max - temp_min)
    return bounds.min + int(ratio * (bounds.max - bounds.min))


def limit(target: int, state: ControllerState, max_step: int = 5) -> int:
    """Move at most max_step from the last PWM toward target, and remember it."""
    last = state.last_pwm
    if target > last:
        pwm = min(target, last + max_step)
    elif target < last:
        pwm = max(target, last - max_step)
    else:
        pwm = target
    state.last_pwm = pwm
    return pwm


@dataclasses.dataclass(slots=True, kw_only=True)
class Config:
    """Daemon configuration."""

    hwmon_glob: str = hwmon.DEFAULT_GLOB
    gpu_name: str = "amdgpu"
    ssd_name: str = "nvme"
    temp_min: int = 40000  # millidegrees
    temp_max: int = 60000
    max_step: int = 5
    interval_seconds: float = 5.0
    verbose: bool = False

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> Config:
        """Parse command-line arguments and return Config."""
        d = cls()
        p = argparse.ArgumentParser(
            description="GPU fan daemon following SSD temperature",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Temperatures are in hwmon units (millidegrees Celsius).
  PWM = pwm1_min                         below --temp-min
  PWM = pwm1_max                         above --temp-max
  PWM = linear interpolation             in between
PWM moves by at most --max-step per --interval.
""",
        )
        _ = p.add_argument(
            "--hwmon-glob",
            default=d.hwmon_glob,
            help="Glob of hwmon directories to scan.",
        )
        _ = p.add_argument(
            "--gpu-name",
            default=d.gpu_name,
            help="Prefix of the GPU hwmon name.",
        )
        _ = p.add_argument(
            "--ssd-name",
            default=d.ssd_name,
            help="Prefix of the SSD hwmon name.",
        )
        _ = p.add_argument(
            "--temp-min",
            type=int,
            default=d.temp_min,
            help="Temperature for min PWM (millidegrees).",
        )
        _ = p.add_argument(
            "--temp-max",
            type=int,
            default=d.temp_max,
            help="Temperature for max PWM (millidegrees).",
        )
        _ = p.add_argument(
            "--max-step",
            type=int,
            default=d.max_step,
            help="Max PWM change per tick.",
        )
        _ = p.add_argument(
            "--interval",
            type=float,
            default=d.interval_seconds,
            help="Tick interval (seconds).",
        )
        _ = p.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Log every tick.",
        )
        args = p.parse_args(argv)
        temp_min = cast(int, args.temp_min)
        temp_max = cast(int, args.temp_max)
        max_step = cast(int, args.max_step)
        interval = cast(float, args.interval)
        if temp_min >= temp_max:
            p.error("--temp-min must be less than --temp-max")
        if max_step < 1:
            p.error("--max-step must be >= 1")
        if interval <= 0:
            p.error("--interval must be > 0")
        return cls(
            hwmon_glob=cast(str, args.hwmon_glob),
            gpu_name=cast(str, args.gpu_name),
            ssd_name=cast(str, args.ssd_name),
            temp_min=temp_min,
            temp_max=temp_max,
            max_step=max_step,
            interval_seconds=interval,
            verbose=cast(bool, args.verbose),
        )


class Hardware(Protocol):
    """Hardware interface protocol."""

    def read_bounds(self) -> PwmBounds: ...
    def get_mode(self) -> int: ...
    def set_mode(self, mode: int) -> int: ...
    def set_pwm(self, pwm: int) -> int: ...
    def read_temp(self) -> int | None: ...
    def read_rpm(self) -> int | None: ...


class Fan:
    """GPU fan driven through hwmon, with the SSD as temperature source."""

    gpu: hwmon.Device
    ssd: hwmon.Device

    def __init__(self, gpu: hwmon.Device, ssd: hwmon.Device) -> None:
        self.gpu = gpu
        self.ssd = ssd

    def read_bounds(self) -> PwmBounds:
        return PwmBounds(
            min=self.gpu.read(hwmon.PWM_MIN),
            max=self.gpu.read(hwmon.PWM_MAX),
        )

    def get_mode(self) -> int:
        return self.gpu.read(hwmon.PWM_ENABLE)

    def set_mode(self, mode: int) -> int:
        """Set pwm1_enable. Returns the previous mode; no write if unchanged."""
        return self._set(hwmon.PWM_ENABLE, mode)

    def set_pwm(self, pwm: int) -> int:
        """Set pwm1. Returns the previous duty; no write if unchanged."""
        return self._set(hwmon.PWM, pwm)

    def read_temp(self) -> int | None:
        """Read SSD temperature. Returns None on failure."""
        try:
            return self.ssd.read(hwmon.TEMP_INPUT)
        except hwmon.HwmonError as e:
            log.warning("%s", e)
            return None

    def read_rpm(self) -> int | None:
        try:
            return self.gpu.read(hwmon.FAN_INPUT)
        except hwmon.HwmonError:
            return None

    def _set(self, name: str, value: int) -> int:
        previous = self.gpu.read(name)
        if previous != value:
            self.gpu.write(name, value)
        return previous


class FanDaemon:
    """Main fan control daemon."""

    config: Config
    hardware: Hardware
    bounds: PwmBounds | None
    state: ControllerState | None
    original_mode: int | None

    def __init__(self, config: Config, hardware: Hardware) -> None:
        self.config = config
        self.hardware = hardware
        self.bounds = None
        self.state = None
        self.original_mode = None
        self._stop = threading.Event()
        self._signalled = threading.Event()
        self._worker: threading.Thread | None = None

    def initialize(self) -> None:
        """Read bounds, record the mode, and apply the first PWM unlimited.

        Raises:
            hwmon.HwmonError: hardware state could not be established.
        """
        hw = self.hardware
        self.bounds = hw.read_bounds()
        self.original_mode = hw.get_mode()
        log.info(
            "PWM range %d-%d, fan mode %d",
            self.bounds.min,
            self.bounds.max,
            self.original_mode,
        )
        temp = hw.read_temp()
        pwm = self._target(temp)
        self.state = ControllerState(last_pwm=pwm)
        _ = hw.set_mode(hwmon.FAN_MODE_MANUAL)
        _ = hw.set_pwm(pwm)
        log.info("Initial %s -> pwm %d", _fmt_temp(temp), pwm)

    def control_loop(self) -> None:
        """Main control loop iteration."""
        if self.state is None:
            raise RuntimeError("control_loop() before initialize()")
        hw = self.hardware
        try:
            _ = hw.set_mode(hwmon.FAN_MODE_MANUAL)
        except hwmon.HwmonError as e:
            log.error("Can't set fan mode: %s", e)
            return
        temp = hw.read_temp()
        target = self._target(temp)
        pwm = limit(target, self.state, self.config.max_step)
        try:
            previous = hw.set_pwm(pwm)
        except hwmon.HwmonError as e:
            log.error("Can't set fan PWM: %s", e)
            return
        rpm = hw.read_rpm()
        level = logging.INFO if previous != pwm else logging.DEBUG
        log.log(
            level,
            "%s -> pwm %d->%d (target %d) [fan=%s]",
            _fmt_temp(temp),
            previous,
            pwm,
            target,
            "%drpm" % rpm if rpm is not None else "-",
        )

    def _target(self, temp: int | None) -> int:
        if self.bounds is None:
            raise RuntimeError("PWM bounds not read")
        cfg = self.config
        return compute_target_pwm(temp, self.bounds, cfg.temp_min, cfg.temp_max)

    def _work(self) -> None:
        # Event.wait() returns True once stop is set; a running tick finishes first.
        while not self._stop.wait(self.config.interval_seconds):
            try:
                self.control_loop()
            except Exception:
                log.exception("Control loop error")

    def start(self) -> None:
        self._worker = threading.Thread(target=self._work, name="fan-worker")
        self._worker.start()

    def stop(self) -> None:
        """Cancel the worker and wait until it has returned."""
        self._stop.set()
        if self._worker is not None:
            self._worker.join()
            self._worker = None

    def restore(self) -> None:
        """Put the fan back into the mode found at startup."""
        if self.original_mode is None:
            return
        try:
            _ = self.hardware.set_mode(self.original_mode)
            log.info("Restored fan mode %d", self.original_mode)
        except hwmon.HwmonError as e:
            log.error("Can't restore fan mode %d: %s", self.original_mode, e)

    def shutdown(
        self,
        signum: int | None = None,
        _frame: object = None,
    ) -> None:
        """Signal handler: wake the main flow."""
        log.info("Shutting down (signal %d)", signum or 0)
        self._signalled.set()

    def run(self) -> int:
        """Run until a shutdown signal. Returns the process exit status."""
        for sig in SHUTDOWN_SIGNALS:
            _ = signal.signal(sig, self.shutdown)

        try:
            self.initialize()
        except (hwmon.HwmonError, ValueError) as e:
            log.error("Initialization failed: %s", e)
            self.restore()
            return 1

        log.info(
            "Starting: temp %d-%d, step %d every %.1fs",
            self.config.temp_min,
            self.config.temp_max,
            self.config.max_step,
            self.config.interval_seconds,
        )
        self.start()
        try:
            _ = self._signalled.wait()
        finally:
            self.stop()
            self.restore()
        return 0


def _fmt_temp(temp: int | None) -> str:
    return "ssd=%.1fC" % (temp / 1000.0) if temp is not None else "ssd=?"


def main() -> None:
    config = Config.from_args()
    if config.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    try:
        gpu, ssd = hwmon.locate(config.gpu_name, config.ssd_name, config.hwmon_glob)
    except hwmon.DeviceNotFoundError as e:
        log.error("%s", e)
        sys.exit(1)
    log.info("GPU: %s", gpu.path)
    log.info("SSD: %s", ssd.path)
    daemon = FanDaemon(config, Fan(gpu, ssd))
    sys.exit(daemon.run())


if __name__ == "__main__":
    main()
