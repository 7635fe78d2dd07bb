#!/usr/bin/env python3
"""Diagnostic script to check import queue topology and depths."""

import sys

from app.core.config import get_settings
from app.workers.broker import (
    DLX_EXCHANGE_NAME,
    QUEUE_NAMES,
    BrokerConnection,
    dead_letter_queue,
    work_queue,
)

settings = get_settings()

print("=" * 60)
print("Import Queue Diagnostic")
print("=" * 60)

print("\n1. Broker Configuration:")
print(f"   Dead-letter exchange: {DLX_EXCHANGE_NAME}")
print(f"   Prefetch count: {settings.broker_prefetch_count}")
print(f"   Max retries: {settings.import_max_retries}")

broker = BrokerConnection(reconnect_max_attempts=1)
try:
    channel = broker.acquire_channel()
    print("   Connected: yes")
except Exception as e:
    print(f"   Error connecting to broker: {e}")
    sys.exit(1)

print("\n2. Queue Depths (messages / consumers):")
try:
    for queue_name in QUEUE_NAMES:
        for queue in (work_queue(queue_name), dead_letter_queue(queue_name)):
            _, message_count, consumer_count = queue(channel).queue_declare(passive=True)
            print(f"   {queue.name:<24} {message_count:>6} / {consumer_count}")
finally:
    broker.shutdown()

print("\n" + "=" * 60)
print("Diagnostic Complete")
print("=" * 60)
