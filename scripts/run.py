#!/usr/bin/env python3
"""Main entrypoint — ingests JSON-lines samples and runs the alerting loop.

Each input line is a JSON object::

    {"metric": "error_rate", "value": 0.08, "timestamp": 1700000000000,
     "context": {"region": "eu"}}

``timestamp`` (epoch ms) and ``context`` are optional.

Usage::

    # Stream samples from another process
    producer | python scripts/run.py

    # Replay a file, evaluate once more at EOF and exit
    python scripts/run.py --input samples.jsonl --exit-on-eof

    # Custom config file, persisted state and log level
    python scripts/run.py --config config/settings.yaml --state state.json --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import AsyncIterator
from typing import IO

import structlog

from metricguard.core.config import load_settings
from metricguard.core.logging import setup_logging
from metricguard.core.types import now_ms
from metricguard.metrics.exceptions import InvalidSample
from metricguard.pipeline.engine import MetricGuard

logger = structlog.get_logger(__name__)


def _ingest_line(guard: MetricGuard, line: str) -> bool:
    """Parse and ingest one JSON line. Returns False if it was rejected."""
    line = line.strip()
    if not line:
        return True
    try:
        record = json.loads(line)
        timestamp = record.get("timestamp")
        guard.ingest(
            str(record["metric"]),
            float(record["value"]),
            int(timestamp) if timestamp is not None else now_ms(),
            {str(k): str(v) for k, v in (record.get("context") or {}).items()},
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
        logger.warning("sample_unparseable", line=line[:200], error=str(exc))
        return False
    except InvalidSample as exc:
        logger.warning("sample_rejected", error=str(exc))
        return False
    return True


async def _file_lines(stream: IO[str]) -> AsyncIterator[str]:
    """Lines of a regular file, yielding to the loop between lines."""
    for line in stream:
        yield line
        await asyncio.sleep(0)


async def _pipe_lines(stream: IO[str]) -> AsyncIterator[str]:
    """Lines of a pipe, socket or terminal read on the event loop.

    Regular files cannot be registered with the loop and are read with
    :func:`_file_lines` instead.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    try:
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), stream
        )
    except (ValueError, NotImplementedError):
        async for line in _file_lines(stream):
            yield line
        return
    try:
        while True:
            raw = await reader.readline()
            if not raw:
                return
            yield raw.decode("utf-8", errors="replace")
    finally:
        transport.close()


async def _pump(guard: MetricGuard, lines: AsyncIterator[str]) -> tuple[int, int]:
    """Feed ``lines`` until they run out. Returns (accepted, rejected)."""
    accepted = rejected = 0
    async for line in lines:
        if _ingest_line(guard, line):
            accepted += 1
        else:
            rejected += 1
    return accepted, rejected


async def run(args: argparse.Namespace) -> int:
    """Start the engine, pump samples and run until EOF or interrupted."""
    settings = load_settings(args.config)
    setup_logging(level=args.log_level)

    guard = MetricGuard(settings)
    if args.state:
        guard.load_state(args.state)

    logger.info("metricguard_starting", rules=len(guard.list_rules()))
    await guard.start()

    if args.input:
        stream: IO[str] = open(args.input)  # noqa: SIM115
        lines = _file_lines(stream)
    else:
        stream = sys.stdin
        lines = _pipe_lines(stream)
    pump = asyncio.create_task(_pump(guard, lines))

    # ── Wait for shutdown signal or end of input ─────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    stopper = asyncio.create_task(stop_event.wait())
    await asyncio.wait({pump, stopper}, return_when=asyncio.FIRST_COMPLETED)

    if pump.done():
        accepted, rejected = pump.result()
        logger.info("input_exhausted", accepted=accepted, rejected=rejected)
        if args.exit_on_eof:
            await guard.tick()
            await guard.escalations.run_due()
            await guard.dispatcher.drain()
        else:
            await stop_event.wait()
    stopper.cancel()

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("metricguard_shutting_down")
    await _cancel(pump)
    if args.state:
        guard.save_state(args.state)
    await guard.stop()
    if stream is not sys.stdin:
        stream.close()
    return 0


async def _cancel(task: asyncio.Task[tuple[int, int]]) -> None:
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the metric anomaly detection and alerting engine.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--input",
        default=None,
        help="JSON-lines sample file (default: stdin)",
    )
    parser.add_argument(
        "--state",
        default=None,
        help="JSON file to restore state from at start and save to at exit",
    )
    parser.add_argument(
        "--exit-on-eof",
        action="store_true",
        help="Evaluate once more and exit when the input ends",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    args = parser.parse_args()

    code = asyncio.run(run(args))
    sys.exit(code)


if __name__ == "__main__":
    main()
