import sys
import math
import time
import uuid
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable, Dict, Optional

import requests
from prometheus_client import Counter, Gauge, start_http_server

from .celocli import CeloCLI
from .config import load_config, node_urls, setup_logging
from .database import Database
from .errors import ConfigError
from .prober import ProbeResult, probe_endpoint
from .reconciler import DirectoryReconciler
from .resolver import EndpointResolver
from .rpc import SERVER_ERROR_STATUS, chain_block_number
from .runner import bounded_map, log_retry

logger = logging.getLogger(__name__)

# Metrics
CYCLES_COUNTER = Counter(
    "rpc_uptime_cycles_total",
    "Completed measurement cycles",
    ["network"],
)
CYCLE_DURATION_GAUGE = Gauge(
    "rpc_uptime_cycle_duration_seconds",
    "Duration of the last measurement cycle",
    ["network"],
)
VALIDATORS_MEASURED_GAUGE = Gauge(
    "rpc_uptime_validators_measured",
    "Validators measured in the last cycle",
    ["network"],
)
VALIDATORS_UP_GAUGE = Gauge(
    "rpc_uptime_validators_up",
    "Validators whose RPC endpoint answered eth_blockNumber in the last cycle",
    ["network"],
)
ENDPOINTS_RESOLVED_GAUGE = Gauge(
    "rpc_uptime_endpoints_resolved",
    "Validators with a resolved RPC URL in the last cycle",
    ["network"],
)
VALIDATOR_HEIGHT_GAUGE = Gauge(
    "rpc_uptime_validator_block_height",
    "Block height reported by a validator's RPC endpoint",
    ["validator", "network"],
)
COMMAND_RETRIES_COUNTER = Counter(
    "rpc_uptime_command_retries_total",
    "celocli command retries",
)
LAST_CYCLE_GAUGE = Gauge(
    "rpc_uptime_last_cycle_timestamp_seconds",
    "Unix time the last measurement cycle completed",
    ["network"],
)


def count_retry(attempt: int, error: Exception, delay: float):
    COMMAND_RETRIES_COUNTER.inc()
    log_retry(attempt, error, delay)


def next_interval_boundary(now_ms: float, interval_ms: int) -> int:
    """Next wall-clock multiple of the interval, at or after now."""
    return int(math.ceil(now_ms / interval_ms) * interval_ms)


def wait_for_migration_block(
    get_block_number: Callable[[], int],
    migration_block: int,
    poll_interval: float = 5,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Block until the chain reaches migration_block; returns the height seen."""
    if not migration_block:
        raise ConfigError("MIGRATION_BLOCK is not set")
    block_number = get_block_number()
    while block_number < migration_block:
        logger.info(
            f"Current block {block_number} is before migration block {migration_block}, waiting..."
        )
        sleep(poll_interval)
        block_number = get_block_number()
    return block_number


@dataclass
class CycleSummary:
    measurement_id: str
    header_id: int
    measured: int
    resolved: int
    up: int


class HealthState:
    """Tracks cycle completion for the /healthz endpoint."""

    def __init__(self, interval_s: float):
        self.interval_s = interval_s
        self.started_at = time.time()
        # Set once the migration block is reached and monitoring begins
        self.monitoring_since: Optional[float] = None
        self.last_cycle_at: Optional[float] = None
        self.lock = threading.Lock()

    def mark_started(self):
        with self.lock:
            self.monitoring_since = time.time()

    def mark_cycle(self):
        with self.lock:
            self.last_cycle_at = time.time()

    def is_healthy(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        with self.lock:
            if self.monitoring_since is None:
                # Still waiting for the migration block
                return True
            reference = self.last_cycle_at or self.monitoring_since
        return now - reference <= 2 * self.interval_s


class RPCIndexer:
    """
    Drives measurement cycles: reconcile the validator directory, resolve
    RPC URLs, probe endpoints and persist the results in one transaction.
    """

    def __init__(
        self,
        config: dict,
        db: Database,
        cli: CeloCLI,
        http: Optional[requests.Session] = None,
        health: Optional[HealthState] = None,
    ):
        self.config = config
        self.db = db
        self.cli = cli
        self.http = http or requests.Session()
        self.health = health or HealthState(config["rpc_timer_ms"] / 1000)
        self.nodes = node_urls(config)
        self.network_name = config["network_id"]
        self.width = config["resolve_batch_size"]
        self.json_rpc_timeout = config["json_rpc_timeout_ms"] / 1000
        self.network = None
        # Validators currently exported on the height gauge
        self.height_labels = set()

    @classmethod
    def from_config(cls, config: dict, health: Optional[HealthState] = None):
        db = Database(config["database_url"])
        cli = CeloCLI.from_config(config, node_urls(config), on_retry=count_retry)
        return cls(config, db, cli, health=health)

    def open(self):
        self.db.create_all()
        self.network = self.db.get_or_create_network(self.network_name)
        return self

    def close(self):
        self.http.close()
        self.db.close()

    def current_block_number(self) -> int:
        return chain_block_number(self.http, self.nodes, self.json_rpc_timeout)

    def wait_for_migration(self, sleep: Callable[[float], None] = time.sleep) -> int:
        block_number = wait_for_migration_block(
            self.current_block_number,
            self.config["migration_block"],
            self.config["migration_poll_ms"] / 1000,
            sleep,
        )
        self.health.mark_started()
        return block_number

    def probe_all(self, validators) -> Dict[int, ProbeResult]:
        """Probe every validator with a URL; the rest are left unreachable."""
        targets = [v for v in validators if v.rpc_url]
        skipped = len(validators) - len(targets)
        if skipped:
            logger.info(f"{skipped} validators have no RPC URL, recording them as down")

        def probe(validator):
            logger.debug(f"checking rpc {validator.rpc_url}...")
            return probe_endpoint(self.http, validator.rpc_url, self.json_rpc_timeout)

        def on_error(validator, exc):
            logger.error(f"Error probing {validator.rpc_url}: {exc}")
            return ProbeResult(status_code=SERVER_ERROR_STATUS)

        results = bounded_map(probe, targets, self.width, on_error=on_error)
        return {v.id: r for v, r in zip(targets, results)}

    def run_cycle(self) -> CycleSummary:
        start_time = time.time()
        network_id = self.network.id
        reconciler = DirectoryReconciler(self.db, network_id)
        resolver = EndpointResolver(
            self.cli,
            self.db,
            network_id,
            http=self.http,
            metadata_timeout=self.config["metadata_fetch_timeout_ms"] / 1000,
            width=self.width,
        )

        groups = self.cli.validator_groups()
        elected = self.cli.elected_validators()
        block_number = self.current_block_number()
        reconciler.reconcile(groups, elected, block_number)

        stored = self.db.get_validators_by_addresses(
            network_id, [v.address for v in elected]
        )

        resolved = resolver.resolve_all(elected)
        for validator in stored:
            rpc_url = (resolved.get(validator.address) or "").strip()
            if rpc_url and rpc_url != validator.rpc_url:
                self.db.update_validator_rpc_url(validator.id, rpc_url)
                validator.rpc_url = rpc_url

        executed_at = datetime.now(timezone.utc)
        probes = self.probe_all(stored)

        measurement_id = str(uuid.uuid4())
        header_id = self.db.persist_cycle(
            network_id, measurement_id, executed_at, stored, probes
        )

        summary = CycleSummary(
            measurement_id=measurement_id,
            header_id=header_id,
            measured=len(stored),
            resolved=sum(1 for v in stored if v.rpc_url),
            up=sum(1 for p in probes.values() if p.up),
        )
        self._record_metrics(stored, probes, summary, time.time() - start_time)
        return summary

    def _record_metrics(self, validators, probes, summary: CycleSummary, duration: float):
        network = self.network_name
        CYCLES_COUNTER.labels(network=network).inc()
        CYCLE_DURATION_GAUGE.labels(network=network).set(duration)
        VALIDATORS_MEASURED_GAUGE.labels(network=network).set(summary.measured)
        VALIDATORS_UP_GAUGE.labels(network=network).set(summary.up)
        ENDPOINTS_RESOLVED_GAUGE.labels(network=network).set(summary.resolved)
        LAST_CYCLE_GAUGE.labels(network=network).set(time.time())
        reported = set()
        for validator in validators:
            probe = probes.get(validator.id)
            if probe and probe.block_number is not None:
                VALIDATOR_HEIGHT_GAUGE.labels(
                    validator=validator.address, network=network
                ).set(probe.block_number)
                reported.add(validator.address)
        # Down or no longer elected
        for address in self.height_labels - reported:
            VALIDATOR_HEIGHT_GAUGE.remove(address, network)
        self.height_labels = reported
        self.health.mark_cycle()

    def run_forever(
        self,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        interval_ms = self.config["rpc_timer_ms"]
        while True:
            summary = self.run_cycle()
            now_ms = clock() * 1000
            sleep_ms = next_interval_boundary(now_ms, interval_ms) - now_ms
            logger.info(
                f"Completed monitoring cycle for {self.network_name}, measurementId: {summary.measurement_id}, "
                f"{summary.up}/{summary.measured} up, waiting {sleep_ms:.0f}ms until next interval..."
            )
            sleep(sleep_ms / 1000)


def run_healthz_server(health: HealthState, port=8001):
    class HealthzHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path != "/healthz":
                self.send_response(404)
                self.end_headers()
                return
            healthy = health.is_healthy()
            self.send_response(200 if healthy else 503)
            self.send_header("Content-type", "text/plain")
            self.end_headers()
            self.wfile.write(b"ok" if healthy else b"stale")

        def log_message(self, format, *args):
            return  # Silence default logging

    server = HTTPServer(("0.0.0.0", port), HealthzHandler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Validator RPC uptime indexer")
    parser.add_argument("--config", default=None, help="Optional YAML config file")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--healthz-port", type=int, default=8001)
    args = parser.parse_args(argv)

    indexer = None
    try:
        config = load_config(args.config)
        setup_logging(config["log_format"], config["log_level"])
        logger.info("RPC indexer initialize...")
        if not config["migration_block"]:
            raise ConfigError("MIGRATION_BLOCK is not set")

        start_http_server(args.port)
        logger.info(f"Metrics on :{args.port}/metrics")
        health = HealthState(config["rpc_timer_ms"] / 1000)
        run_healthz_server(health, args.healthz_port)
        logger.info(f"Health endpoint on :{args.healthz_port}/healthz")

        indexer = RPCIndexer.from_config(config, health=health).open()
        indexer.wait_for_migration()
        indexer.run_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception:
        logger.exception("RPC indexer stopped on an unrecoverable error")
        sys.exit(1)
    finally:
        if indexer is not None:
            indexer.close()


if __name__ == "__main__":
    main()
