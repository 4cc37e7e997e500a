from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from .config_manager import ConfigManager
from .engine import LocationEngine
from .exceptions import ConfigError
from .mqtt_processor import MQTTDataProcessor
from .station_store import StationRegistry


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str | int = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def _load(args):
    config = ConfigManager(args.config)
    engine_config = config.get_engine_config()
    stations = StationRegistry.load(config)
    return config, engine_config, stations


def _report_stats(engine: LocationEngine, stop: threading.Event) -> None:
    while not stop.wait(engine.config.stats_interval_secs):
        engine.log_stats()


def run_mqtt(args) -> int:
    try:
        config, engine_config, stations = _load(args)
    except ConfigError as e:
        logger.error("Refusing to start: %s", e)
        return 2
    if args.log_level is None:
        setup_logging(config.get_logging_config().get("level", "INFO"))

    engine = LocationEngine(engine_config, stations)
    processor = MQTTDataProcessor(config, engine)
    engine.start()

    stop = threading.Event()
    reporter = threading.Thread(target=_report_stats, args=(engine, stop), name="stats", daemon=True)
    reporter.start()

    t = threading.Thread(target=processor.start_mqtt_client, name="mqtt", daemon=True)
    t.start()

    # graceful shutdown
    def handle_signal(sig, frame):
        logger.info("Received signal %s, shutting down", sig)
        stop.set()
        processor.stop_mqtt_client()
        engine.stop()
        engine.log_stats()
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    t.join()
    stop.set()
    engine.stop()
    return 1


def check_config(args) -> int:
    try:
        _, engine_config, stations = _load(args)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 2
    print(f"Configuration OK: {len(stations)} stations, min_stations={engine_config.min_stations}")
    for station in stations:
        print(
            f"  {station.id:<16} ({station.x:8.2f}, {station.y:8.2f})  "
            f"rssi@1m={station.rssi_at_1m:6.1f}  n={station.path_loss_exponent:.2f}  {station.label}"
        )
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="rssi-locator-server", description="RSSI locator server")
    parser.add_argument(
        "--config",
        default=None,
        help="config file, defaults to ./config/config.yaml or the LOCATOR_CONFIG environment variable",
    )
    parser.add_argument("--log-level", default=None, help="overrides logging.level from the config")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="run the MQTT position engine")
    p_run.set_defaults(func=run_mqtt)

    p_check = sub.add_parser("check", help="validate the configuration and list stations")
    p_check.set_defaults(func=check_config)

    args = parser.parse_args(argv)
    setup_logging(args.log_level or "INFO")
    # no subcommand starts the server
    if not hasattr(args, "func"):
        return run_mqtt(args)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
