"""NVML access for GPU temperature telemetry and fan actuation."""

import logging

import pynvml

log = logging.getLogger(__name__)


class GpuError(OSError):
    """An NVML call failed. ``code`` holds the NVML return code, if known."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class GpuController:
    """Manages the NVML session and per-device fan operations.

    Every NVML failure is raised as GpuError so callers never depend on
    pynvml's exception classes. Use as a context manager to guarantee
    nvmlShutdown on every exit path.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or log
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def __enter__(self) -> "GpuController":
        self.open()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def _call(self, what: str, func, *args):
        if not self._open:
            raise GpuError("NVML not initialized")
        try:
            return func(*args)
        except pynvml.NVMLError as e:
            raise GpuError(f"{what}: {e}", getattr(e, "value", None)) from e

    def open(self) -> None:
        """Initialize NVML. Raises GpuError if the driver is unavailable."""
        if self._open:
            return
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            raise GpuError(
                f"Unable to initialize NVML: {e}", getattr(e, "value", None)
            ) from e
        self._open = True
        self._log.debug("NVML initialized")

    def close(self) -> None:
        """Shut NVML down. Failures are logged, never raised."""
        if not self._open:
            return
        self._open = False
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as e:
            self._log.error("Unable to shutdown NVML cleanly: %s", e)
            return
        self._log.debug("NVML shut down")

    def device_count(self) -> int:
        return self._call("Unable to get NVIDIA device count", pynvml.nvmlDeviceGetCount)

    def handle(self, index: int):
        return self._call(
            f"Unable to get handle for device {index}",
            pynvml.nvmlDeviceGetHandleByIndex, index,
        )

    def device_name(self, handle) -> str:
        name = self._call("Unable to get device name", pynvml.nvmlDeviceGetName, handle)
        if isinstance(name, bytes):
            return name.decode(errors="replace")
        return name

    def fan_count(self, handle) -> int:
        return self._call("Unable to get fan count", pynvml.nvmlDeviceGetNumFans, handle)

    def temperature(self, handle) -> int:
        """Current GPU core temperature in °C."""
        return int(self._call(
            "Unable to get temperature",
            pynvml.nvmlDeviceGetTemperature, handle, pynvml.NVML_TEMPERATURE_GPU,
        ))

    def fan_speed(self, handle, fan: int) -> int:
        """Current speed of one fan (0-100%).

        Drivers without per-fan queries only answer the legacy device-wide
        query, which is used for fan 0.
        """
        try:
            return int(self._call(
                f"Unable to get speed of fan {fan}",
                pynvml.nvmlDeviceGetFanSpeed_v2, handle, fan,
            ))
        except GpuError:
            if fan != 0:
                raise
        return int(self._call(
            "Unable to get fan speed", pynvml.nvmlDeviceGetFanSpeed, handle,
        ))

    def set_manual_policy(self, handle, fan: int) -> None:
        """Put a fan under manual control. Unsupported drivers are tolerated."""
        try:
            self._call(
                f"Failed to set manual policy for fan {fan}",
                pynvml.nvmlDeviceSetFanControlPolicy, handle, fan, pynvml.NVML_FAN_POLICY_MANUAL,
            )
        except GpuError as e:
            if e.code != pynvml.NVML_ERROR_NOT_SUPPORTED:
                raise
            self._log.debug("Fan %d: manual policy not supported, continuing", fan)

    def set_fan_speed(self, handle, fan: int, speed: int) -> None:
        self._call(
            f"Failed to set speed of fan {fan} to {speed}%",
            pynvml.nvmlDeviceSetFanSpeed_v2, handle, fan, speed,
        )

    def restore_default(self, handle, fan: int) -> None:
        """Hand a fan back to the driver's automatic control."""
        self._call(
            f"Failed to restore automatic control of fan {fan}",
            pynvml.nvmlDeviceSetDefaultFanSpeed_v2, handle, fan,
        )
