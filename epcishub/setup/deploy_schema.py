"""
Deploy the ClickHouse schema.

Creates the events, queries and subscriptions tables if they are missing.

Usage:
    python -m epcishub.setup.deploy_schema [path/to/epcis.yaml]
"""

import asyncio
import logging
from pathlib import Path
import sys

from epcishub.core.client import ClickHouseClient
from epcishub.core.config import EPCISConfig
from epcishub.core.exceptions import StoreError

logger = logging.getLogger(__name__)

GREEN = "\033[92m"
RED = "\033[91m"
RESET = "\033[0m"


def load_config(path: str | None = None) -> EPCISConfig:
    """Config from an explicit YAML path, else epcis.yaml if present, else the environment."""
    if path is not None:
        return EPCISConfig.from_yaml(Path(path))
    try:
        return EPCISConfig.from_yaml()
    except FileNotFoundError:
        return EPCISConfig()


async def deploy_schema(config: EPCISConfig) -> bool:
    """Create the tables through the store client. Returns True on success."""
    try:
        async with ClickHouseClient(config) as client:
            await client.ensure_schema()
        return True
    except StoreError as e:
        logger.error(f"Schema deployment failed: {e}")
        return False


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    config = load_config(argv[0] if argv else None)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if asyncio.run(deploy_schema(config)):
        print(f"{GREEN}Schema deployed to {config.clickhouse_url}/{config.clickhouse_database}{RESET}")
        return 0
    print(f"{RED}Schema deployment failed; see log output{RESET}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
