"""Temperature band policy, band resolution and per-device hysteresis."""

import logging
import math
from dataclasses import dataclass

log = logging.getLogger(__name__)

DEFAULT_SAMPLE_INTERVAL = 5.0


def _require_int(name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class TemperatureBand:
    """A temperature interval (°C, inclusive on both ends) mapped to a fan speed."""

    min_temperature: int
    max_temperature: int
    fan_speed: int   # 0-100%
    hysteresis: int  # degrees below min_temperature before stepping down

    def __post_init__(self) -> None:
        for name in ("min_temperature", "max_temperature", "fan_speed", "hysteresis"):
            _require_int(name, getattr(self, name))

        if self.min_temperature > self.max_temperature:
            raise ValueError(
                f"min_temperature ({self.min_temperature}) is above "
                f"max_temperature ({self.max_temperature})"
            )

        if not (0 <= self.fan_speed <= 100):
            raise ValueError(f"Fan speed must be 0-100, got {self.fan_speed}")

        if self.hysteresis < 0:
            raise ValueError(f"Hysteresis must not be negative, got {self.hysteresis}")

    def contains(self, temperature: int) -> bool:
        return self.min_temperature <= temperature <= self.max_temperature


@dataclass(frozen=True)
class PolicyTable:
    """Ordered temperature bands plus the control loop sampling interval."""

    bands: tuple[TemperatureBand, ...]
    sample_interval: float = DEFAULT_SAMPLE_INTERVAL

    def __post_init__(self) -> None:
        object.__setattr__(self, "bands", tuple(self.bands))

        if not self.bands:
            raise ValueError("Policy needs at least one temperature band")

        if not (math.isfinite(self.sample_interval) and self.sample_interval > 0):
            raise ValueError(f"Sample interval must be positive, got {self.sample_interval}")

        for prev, band in zip(self.bands, self.bands[1:]):
            if band.min_temperature < prev.min_temperature:
                raise ValueError(
                    f"Temperature bands must be in ascending order: "
                    f"{band.min_temperature} listed after {prev.min_temperature}"
                )

    def irregularities(self) -> list[str]:
        """Describe gaps and overlaps between neighbouring bands.

        Adjacent bands sharing a boundary value (max == next min) or touching
        (max + 1 == next min) are regular.
        """
        problems = []
        for prev, band in zip(self.bands, self.bands[1:]):
            if band.min_temperature > prev.max_temperature + 1:
                problems.append(
                    f"gap between {prev.max_temperature}°C and {band.min_temperature}°C"
                )
            elif band.min_temperature < prev.max_temperature:
                problems.append(
                    f"bands {prev.min_temperature}-{prev.max_temperature}°C and "
                    f"{band.min_temperature}-{band.max_temperature}°C overlap"
                )
        return problems


def resolve_band(temperature: int, table: PolicyTable) -> TemperatureBand | None:
    """Return the band containing ``temperature``, or None if no band does.

    Bands are scanned in ascending order and the first containing band wins,
    so a reading sitting exactly on a shared boundary belongs to the lower
    band (the one whose max_temperature equals it).
    """
    for band in table.bands:
        if band.contains(temperature):
            return band
    return None


@dataclass
class DeviceSession:
    """Live control state of one GPU."""

    device_id: int
    fan_count: int
    current_speeds: list[int]
    active_band: TemperatureBand | None = None
    name: str = ""

    def __post_init__(self) -> None:
        if self.fan_count <= 0:
            raise ValueError(f"Device {self.device_id} has no fans to control")
        if len(self.current_speeds) != self.fan_count:
            raise ValueError(
                f"Device {self.device_id}: expected {self.fan_count} fan speeds, "
                f"got {len(self.current_speeds)}"
            )

    @property
    def current_speed(self) -> int:
        """Representative speed: all fans of a device follow one target."""
        return self.current_speeds[0]


@dataclass(frozen=True)
class SpeedDecision:
    """Outcome of one hysteresis evaluation.

    ``band`` is the band to remember once the speed is in effect; it is None
    when the controller holds (no match, or a step down blocked by hysteresis).
    """

    speed: int
    band: TemperatureBand | None = None


class HysteresisController:
    """Chooses the fan speed for a device from its temperature.

    Speed goes up as soon as a hotter band matches. Going down waits until the
    temperature has dropped ``hysteresis`` degrees below the lower boundary of
    the band the device is currently in.
    """

    def __init__(self, table: PolicyTable, logger: logging.Logger | None = None) -> None:
        self._table = table
        self._log = logger or log

    @property
    def table(self) -> PolicyTable:
        return self._table

    @table.setter
    def table(self, value: PolicyTable) -> None:
        self._table = value

    def evaluate(self, session: DeviceSession, temperature: int) -> SpeedDecision:
        """Decide the speed for ``session`` at ``temperature`` without mutating it."""
        current = session.current_speed
        candidate = resolve_band(temperature, self._table)

        if candidate is None:
            self._log.debug(
                "GPU %d: %d°C is outside every band, holding %d%%",
                session.device_id, temperature, current,
            )
            return SpeedDecision(current)

        if candidate.fan_speed >= current:
            return SpeedDecision(candidate.fan_speed, candidate)

        active = session.active_band
        if active is None:
            return SpeedDecision(candidate.fan_speed, candidate)

        threshold = active.min_temperature - active.hysteresis
        if temperature <= threshold:
            return SpeedDecision(candidate.fan_speed, candidate)

        self._log.debug(
            "GPU %d: holding %d%% at %d°C (steps down at %d°C or below)",
            session.device_id, current, temperature, threshold,
        )
        return SpeedDecision(current)

    @staticmethod
    def commit(
        session: DeviceSession,
        decision: SpeedDecision,
        applied_fans: tuple[int, ...] = (),
    ) -> None:
        """Record a decision on the session.

        ``applied_fans`` lists the fans now running at ``decision.speed``. The
        active band only follows once the representative fan runs at the
        decided speed, so a failed write is retried against the old band.
        """
        for fan in applied_fans:
            session.current_speeds[fan] = decision.speed

        if decision.band is not None and session.current_speed == decision.speed:
            session.active_band = decision.band

    @staticmethod
    def reset(session: DeviceSession) -> None:
        """Forget the active band, e.g. after the policy table changed."""
        session.active_band = None
