# Main Entry Point - Command Line
#
#   threatline run     start the scheduler until interrupted
#   threatline poll    poll every enabled feed once
#   threatline sweep   run one age sweep
#   threatline scan    batch-scan a telemetry file, print detections
#   threatline status  print the pipeline / quality snapshot
#
# Secrets referenced by the config (credentials_ref) are read from the
# environment; a .env file in the working directory is loaded first.

import argparse
import json
import logging
import signal
import sys
import threading

from dotenv import load_dotenv

from . import __version__
from .core import ConfigError, PipelineConfig, load_config

logger = logging.getLogger("threatline")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threatline",
        description="Threatline - threat intelligence / IOC pipeline",
    )
    parser.add_argument(
        "-c", "--config",
        default="threatline.yaml",
        help="Configuration file, YAML or JSON (default: threatline.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"threatline {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Start scheduled polling, sweeps and archival")
    sub.add_parser("poll", help="Poll every enabled feed once")
    sub.add_parser("sweep", help="Run one indicator age sweep")
    scan = sub.add_parser("scan", help="Batch-scan a telemetry file (JSON lines or CSV)")
    scan.add_argument("telemetry", help="Telemetry file to scan")
    scan.add_argument(
        "--no-response",
        action="store_true",
        help="Report detections without triggering the response orchestrator",
    )
    sub.add_parser("status", help="Print the pipeline status snapshot")
    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    load_dotenv()

    try:
        config: PipelineConfig = load_config(args.config)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2

    # Imported late so --help and config errors stay fast
    from .pipeline import Pipeline

    pipeline = Pipeline(config, config_path=args.config)
    try:
        if args.command == "run":
            stop = threading.Event()
            signal.signal(signal.SIGINT, lambda *_: stop.set())
            signal.signal(signal.SIGTERM, lambda *_: stop.set())
            pipeline.start()
            print("Threatline running. Press Ctrl+C to stop.")
            stop.wait()
        elif args.command == "poll":
            _print_json(pipeline.poll_all().to_dict())
        elif args.command == "sweep":
            _print_json(pipeline.sweep().to_dict())
        elif args.command == "scan":
            if args.no_response:
                pipeline.detection.remove_listener(pipeline.response.handle)
            report = pipeline.scan(args.telemetry)
            for detection in report.detections:
                print(json.dumps(detection.to_siem_record()))
            print(json.dumps(report.to_dict()), file=sys.stderr)
        elif args.command == "status":
            _print_json(pipeline.status())
    finally:
        pipeline.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
