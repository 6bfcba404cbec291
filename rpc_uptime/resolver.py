import logging
from typing import Dict, List, Optional

import requests

from . import __version__
from .celocli import CeloCLI, ElectedValidator
from .database import Database
from .errors import snippet
from .runner import bounded_map

logger = logging.getLogger(__name__)

USER_AGENT = f"rpc-uptime-indexer/{__version__}"
MAX_REDIRECTS = 5


def fetch_metadata(
    session: requests.Session, metadata_url: str, timeout: float = 15
) -> Optional[dict]:
    """Fetch a validator's metadata document; None on any failure."""
    try:
        logger.debug(f"Fetching metadata from {metadata_url}")
        resp = session.get(
            metadata_url,
            timeout=timeout,
            headers={
                "User-Agent": USER_AGENT,
                "Accept": "application/json, text/plain, */*",
            },
            allow_redirects=True,
        )
        resp.raise_for_status()
        data = resp.json()
    except requests.HTTPError as e:
        response = e.response
        logger.warning(
            f"Error fetching metadata from {metadata_url}: {e} | "
            f"HTTP Status: {response.status_code} | Response: {snippet(response.text)}"
        )
        return None
    except requests.RequestException as e:
        logger.warning(f"Error fetching metadata from {metadata_url}: {snippet(e)}")
        return None
    except ValueError as e:
        logger.warning(f"Invalid JSON in metadata from {metadata_url}: {snippet(e)}")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Metadata from {metadata_url} is not an object: {snippet(data)}")
        return None
    logger.debug(f"Fetched metadata from {metadata_url}: {snippet(data)}")
    return data


class EndpointResolver:
    """
    Resolves each validator's current RPC URL.

    Stages, first success wins:
      1. metadata pointer registered on-chain (celocli account:show)
      2. ``rpcUrl`` field of the metadata document behind that pointer
      3. the most recent URL in the validator's stored RPC history
    """

    def __init__(
        self,
        cli: CeloCLI,
        db: Database,
        network_id: int,
        http: Optional[requests.Session] = None,
        metadata_timeout: float = 15,
        width: int = 10,
    ):
        self.cli = cli
        self.db = db
        self.network_id = network_id
        self.http = http or requests.Session()
        self.http.max_redirects = MAX_REDIRECTS
        self.metadata_timeout = metadata_timeout
        self.width = width

    def resolve_from_metadata(self, validator: ElectedValidator) -> Optional[str]:
        label = f"{validator.name} ({validator.address})"
        metadata_url = self.cli.metadata_url(validator.address)
        if not metadata_url:
            logger.info(f"No metadata URL found for {label}, checking database...")
            return None

        metadata = fetch_metadata(self.http, metadata_url, self.metadata_timeout)
        if metadata is None:
            logger.info(
                f"Metadata fetch failed for {label} at {metadata_url}, checking database..."
            )
            return None

        rpc_url = metadata.get("rpcUrl")
        if not isinstance(rpc_url, str) or not rpc_url.strip():
            logger.info(f"Metadata has no rpcUrl for {label}, checking database...")
            return None
        return rpc_url.strip()

    def resolve(self, validator: ElectedValidator) -> Optional[str]:
        rpc_url = self.resolve_from_metadata(validator)
        if rpc_url:
            logger.info(
                f"Fetched RPC URL for {validator.name} ({validator.address}): {rpc_url}"
            )
            return rpc_url

        rpc_url = self.db.get_latest_rpc_url(self.network_id, validator.address)
        if rpc_url:
            logger.info(
                f"Using cached RPC URL from database for {validator.name} ({validator.address}): {rpc_url}"
            )
        else:
            logger.info(f"No RPC URL available for {validator.name} ({validator.address})")
        return rpc_url

    def resolve_all(self, validators: List[ElectedValidator]) -> Dict[str, Optional[str]]:
        logger.info(f"Resolving RPC URLs for {len(validators)} validators")

        def on_error(validator, exc):
            logger.error(f"Error resolving RPC URL for {validator.address}: {snippet(exc)}")
            return None

        urls = bounded_map(self.resolve, validators, self.width, on_error=on_error)
        resolved = {v.address: url for v, url in zip(validators, urls)}
        logger.info(
            f"Collected {sum(1 for url in resolved.values() if url)} RPC entries"
        )
        return resolved
