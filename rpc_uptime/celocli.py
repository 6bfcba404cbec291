"""
Client for the celocli command-line tool, the authoritative source for the
elected validator set, validator groups and per-account metadata pointers.

Every call is made through exec_with_retry and tried against the primary
node first, then the external fallback node.
"""

import os
import re
import json
import shlex
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .errors import CLIOutputError, snippet
from .runner import exec_with_retry, log_retry

logger = logging.getLogger(__name__)

METADATA_URL_PATTERN = re.compile(r"metadataURL:\s*(.+)")


@dataclass(frozen=True)
class ElectedValidator:
    address: str
    name: str = ""
    affiliation: Optional[str] = None


@dataclass(frozen=True)
class ValidatorGroupInfo:
    address: str
    name: str = ""


def extract_json_array(stdout: str) -> list:
    """
    Parse the JSON array embedded in celocli output.

    celocli prints a banner (MOTD) around the JSON payload. The array ends at
    the last closing bracket; it starts at the first line opening with a
    bracket, or failing that the first bracket at all.
    """
    end = stdout.rfind("]")
    if end == -1:
        raise CLIOutputError("No closing bracket found in output")

    line_start = re.search(r"^\s*\[", stdout, re.MULTILINE)
    start = line_start.end() - 1 if line_start else stdout.find("[")
    if start == -1 or start > end:
        raise CLIOutputError("No opening bracket found in output")

    try:
        parsed = json.loads(stdout[start : end + 1])
    except json.JSONDecodeError as e:
        raise CLIOutputError(f"Invalid JSON in output: {e}")
    if not isinstance(parsed, list):
        raise CLIOutputError("Output is not a JSON array")
    return parsed


class CeloCLI:
    def __init__(
        self,
        nodes: List[str],
        command: str = "npx celocli",
        timeout: float = 20,
        max_retries: int = 3,
        base_delay: float = 2,
        max_delay: float = 20,
        metadata_max_retries: int = 1,
        on_retry: Optional[Callable] = None,
    ):
        if not nodes:
            raise ValueError("At least one node URL is required")
        self.nodes = list(nodes)
        self.command = command
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.metadata_max_retries = metadata_max_retries
        self.on_retry = on_retry or log_retry
        self.env = dict(os.environ, NO_SYNCCHECK="1")

    @classmethod
    def from_config(cls, config: dict, nodes: List[str], on_retry=None):
        return cls(
            nodes,
            command=config["celocli_command"],
            timeout=config["cli_timeout_ms"] / 1000,
            max_retries=config["cli_max_retries"],
            base_delay=config["cli_base_delay_ms"] / 1000,
            max_delay=config["cli_max_delay_ms"] / 1000,
            metadata_max_retries=config["metadata_max_retries"],
            on_retry=on_retry,
        )

    def run(self, args: str, node_url: str, max_retries: Optional[int] = None) -> str:
        result = exec_with_retry(
            f"{self.command} {args} --node {shlex.quote(node_url)}",
            timeout=self.timeout,
            max_retries=self.max_retries if max_retries is None else max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            on_retry=self.on_retry,
            env=self.env,
        )
        return result.stdout

    def with_node_fallback(self, description: str, operation: Callable[[str], object]):
        """Run operation(node_url) against each node in order until one succeeds."""
        last_error = None
        for node_url in self.nodes:
            try:
                logger.debug(f"{description} from {node_url}")
                return operation(node_url)
            except Exception as e:
                last_error = e
                logger.warning(f"Error {description} from {node_url}: {snippet(e)}")
        raise last_error

    def elected_validators(self) -> List[ElectedValidator]:
        def fetch(node_url):
            rows = extract_json_array(
                self.run("election:current --output json", node_url)
            )
            return [
                ElectedValidator(
                    address=row["address"],
                    name=row.get("name") or "",
                    affiliation=row.get("affiliation"),
                )
                for row in rows
            ]

        validators = self.with_node_fallback("getting current elected validators", fetch)
        logger.info(f"Parsed {len(validators)} elected validators")
        return validators

    def validator_groups(self) -> List[ValidatorGroupInfo]:
        def fetch(node_url):
            rows = extract_json_array(
                self.run("validatorgroup:list --output json", node_url)
            )
            return [
                ValidatorGroupInfo(address=row["address"], name=row.get("name") or "")
                for row in rows
            ]

        groups = self.with_node_fallback("getting validator groups", fetch)
        logger.info(f"Parsed {len(groups)} validator groups")
        return groups

    def metadata_url(self, address: str) -> Optional[str]:
        """Metadata pointer registered for an account, or None."""

        def fetch(node_url):
            stdout = self.run(
                f"account:show {shlex.quote(address)}",
                node_url,
                max_retries=self.metadata_max_retries,
            )
            match = METADATA_URL_PATTERN.search(stdout)
            url = match.group(1).strip() if match else None
            if url and url != "null":
                return url
            return None

        try:
            return self.with_node_fallback(f"getting metadata URL for {address}", fetch)
        except Exception as e:
            logger.warning(f"Error getting metadata URL for {address}: {snippet(e)}")
            return None
