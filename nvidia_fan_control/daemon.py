"""Main daemon entry point: GPU discovery and the periodic fan control loop."""

import logging
import signal
import sys
import time

from nvidia_fan_control.config import Config, load_policy
from nvidia_fan_control.controller import GpuController, GpuError
from nvidia_fan_control.policy import DeviceSession, HysteresisController, PolicyTable

log = logging.getLogger(__name__)


class Daemon:
    """Ties together NVML telemetry, the hysteresis controller and fan writes.

    Everything runs on one thread: a tick sweeps every device in index order,
    and ticks never overlap. Signal handlers only set flags that the loop
    acts on between ticks.
    """

    def __init__(
        self,
        config: Config,
        table: PolicyTable,
        gpu: GpuController,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._gpu = gpu
        self._log = logger or log
        self._hysteresis = HysteresisController(table, self._log)
        self._sessions: list[DeviceSession] = []
        self._running = True
        self._reload_requested = False

    @property
    def sessions(self) -> list[DeviceSession]:
        return self._sessions

    @property
    def table(self) -> PolicyTable:
        return self._hysteresis.table

    @property
    def interval(self) -> float:
        if self._config.poll_interval is not None:
            return self._config.poll_interval
        return self.table.sample_interval

    def discover(self) -> list[DeviceSession]:
        """Create a session for every GPU with controllable fans.

        Raises GpuError if the devices cannot be enumerated or none exist.
        Devices that fail to answer are skipped, so the result may be empty.
        """
        count = self._gpu.device_count()
        if count == 0:
            raise GpuError("No NVIDIA devices found")
        self._log.info("Found %d NVIDIA device(s)", count)

        sessions = []
        for index in range(count):
            session = self._init_device(index)
            if session is not None:
                sessions.append(session)

        self._sessions = sessions
        return sessions

    def _init_device(self, index: int) -> DeviceSession | None:
        try:
            handle = self._gpu.handle(index)
        except GpuError as e:
            self._log.warning("%s. Skipping.", e)
            return None

        try:
            fan_count = self._gpu.fan_count(handle)
        except GpuError as e:
            self._log.debug("GPU %d: %s", index, e)
            fan_count = 0
        if fan_count <= 0:
            self._log.info(
                "GPU %d reports 0 controllable fans or control not supported. Skipping.", index
            )
            return None

        speeds = []
        for fan in range(fan_count):
            try:
                speeds.append(self._gpu.fan_speed(handle, fan))
            except GpuError:
                self._log.warning(
                    "Failed to get initial speed for GPU %d fan %d. Using 0.", index, fan
                )
                speeds.append(0)

        try:
            name = self._gpu.device_name(handle)
        except GpuError:
            name = "unknown"

        try:
            temp: int | str = self._gpu.temperature(handle)
        except GpuError:
            temp = "n/a"

        self._log.info("Initialized GPU %d (%s): Temp=%s°C, FanSpeeds=%s%%", index, name, temp, speeds)
        return DeviceSession(device_id=index, fan_count=fan_count, current_speeds=speeds, name=name)

    def tick(self) -> None:
        """One sweep over all devices. Device failures are logged, never raised."""
        for session in self._sessions:
            try:
                self._update_device(session)
            except GpuError as e:
                self._log.error("GPU %d: %s. Skipping cycle.", session.device_id, e)
            except Exception:
                self._log.exception("GPU %d: unexpected error. Skipping cycle.", session.device_id)

    def _update_device(self, session: DeviceSession) -> None:
        handle = self._gpu.handle(session.device_id)
        temp = self._gpu.temperature(handle)
        self._log.debug("GPU %d temperature: %d°C", session.device_id, temp)

        decision = self._hysteresis.evaluate(session, temp)

        applied = []
        for fan in range(session.fan_count):
            if session.current_speeds[fan] == decision.speed:
                continue
            try:
                self._gpu.set_manual_policy(handle, fan)
                self._gpu.set_fan_speed(handle, fan, decision.speed)
            except GpuError as e:
                self._log.error("GPU %d: %s", session.device_id, e)
                continue
            applied.append(fan)

        self._hysteresis.commit(session, decision, tuple(applied))

        if applied:
            self._log.info(
                "Updated GPU %d: Fans %s: Temp=%d°C, NewSpeeds=%s%%",
                session.device_id,
                applied,
                temp,
                [session.current_speeds[fan] for fan in applied],
            )

    def reload(self) -> None:
        """Re-read the policy file; keep the current table if it is invalid."""
        try:
            table = load_policy(self._config.policy_path, self._log)
        except (OSError, ValueError) as e:
            self._log.error("Failed to reload configuration: %s", e)
            return

        self._hysteresis.table = table
        for session in self._sessions:
            self._hysteresis.reset(session)
        self._log.info("Configuration reloaded: %d temperature bands", len(table.bands))

    def restore(self) -> None:
        """Return every controlled fan to the driver's automatic mode."""
        for session in self._sessions:
            try:
                handle = self._gpu.handle(session.device_id)
                for fan in range(session.fan_count):
                    self._gpu.restore_default(handle, fan)
            except GpuError as e:
                self._log.warning("GPU %d: %s", session.device_id, e)
                continue
            self._log.info("GPU %d fans returned to automatic control", session.device_id)

    def stop(self) -> None:
        self._running = False

    def _on_shutdown(self, signum: int, _frame: object) -> None:
        sig_name = signal.Signals(signum).name
        self._log.info("Received %s, shutting down", sig_name)
        self._running = False

    def _on_reload(self, _signum: int, _frame: object) -> None:
        self._log.info("Received SIGHUP, reloading configuration")
        self._reload_requested = True

    def _wait(self, seconds: float) -> None:
        """Sleep in small increments so we can respond to signals promptly."""
        end = time.monotonic() + seconds
        while self._running and time.monotonic() < end:
            time.sleep(min(0.5, end - time.monotonic()))

    def run(self) -> None:
        """Main loop: one tick per interval until a shutdown signal arrives."""
        signal.signal(signal.SIGTERM, self._on_shutdown)
        signal.signal(signal.SIGINT, self._on_shutdown)
        signal.signal(signal.SIGHUP, self._on_reload)

        self._log.info(
            "Starting monitoring loop: %d device(s), interval=%.1fs",
            len(self._sessions), self.interval,
        )

        next_tick = time.monotonic()
        while self._running:
            if self._reload_requested:
                self._reload_requested = False
                self.reload()

            self.tick()

            interval = self.interval
            next_tick += interval
            now = time.monotonic()
            if now > next_tick:
                missed = int((now - next_tick) // interval) + 1
                self._log.warning(
                    "Sweep overran the %.1fs interval, skipping %d tick(s)", interval, missed
                )
                next_tick += missed * interval

            self._wait(next_tick - now)

        if self._config.restore_on_exit:
            self.restore()
        self._log.info("Daemon stopped")


def main(argv: list[str] | None = None) -> None:
    """Entry point."""
    try:
        config = Config.load(argv)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    config.setup_logging()

    try:
        table = load_policy(config.policy_path)
    except (OSError, ValueError) as e:
        log.critical("Failed to load config: %s", e)
        sys.exit(1)

    try:
        with GpuController() as gpu:
            daemon = Daemon(config, table, gpu)
            if not daemon.discover():
                log.info("No devices with controllable fans were found or initialized. Exiting.")
                return
            daemon.run()
    except GpuError as e:
        log.critical("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
