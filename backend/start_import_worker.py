#!/usr/bin/env python3
"""Start an import worker consuming one or more entity queues."""

import argparse
import logging
import signal
import sys

from app.core.config import get_settings
from app.ingestion.importers import entity_type_for_slug
from app.workers.broker import QUEUE_NAMES, BrokerConnection, BrokerUnavailableError
from app.workers.import_worker import ImportWorker


def parse_queues(value: str) -> list[str]:
    """Accept queue names or entity types, comma-separated."""
    queues = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        entity_type = entity_type_for_slug(item)
        if entity_type is None:
            raise argparse.ArgumentTypeError(f"Unknown queue or entity type: {item}")
        queues.append(entity_type.queue_name)
    return queues


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--queues",
        type=parse_queues,
        default=list(QUEUE_NAMES),
        help="Comma-separated queues to consume, e.g. student_import,teacher_import (default: all)",
    )
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    broker = BrokerConnection()
    worker = ImportWorker(broker, queue_names=args.queues)

    def handle_signal(signum, frame):
        logging.getLogger(__name__).info(f"Received signal {signum}, stopping worker")
        worker.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        worker.run()
    except BrokerUnavailableError as e:
        logging.getLogger(__name__).critical(f"Giving up: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
