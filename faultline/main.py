"""
faultline Main Entry Point

Runs the leader failover scenario against a cluster given on the command
line, e.g.::

    python -m faultline.main --node 10.0.0.1:203.0.113.1 --node 10.0.0.2:203.0.113.2 ...
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import structlog

from faultline.cluster.node import build_cluster
from faultline.config import FaultlineConfig, get_config, set_config
from faultline.errors import FaultlineError
from faultline.failover import FailoverResult, run_failover
from faultline.log import configure_from

logger = structlog.get_logger(__name__)


def parse_node(value: str) -> Tuple[str, str]:
    """Parse ``private[:public]``; the public address defaults to the private one."""
    private, _, public = value.partition(":")
    if not private:
        raise ValueError(f"invalid node {value!r}, expected private[:public]")
    return private, public or private


async def run(
    addresses: Sequence[Tuple[str, str]],
    config: Optional[FaultlineConfig] = None,
) -> FailoverResult:
    """Build the cluster and run the failover scenario against it."""
    config = config or get_config()
    nodes = build_cluster(addresses, config)
    return await run_failover(nodes, config)


def main(argv: Optional[List[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="faultline - leader failover test")
    parser.add_argument(
        "--node",
        action="append",
        required=True,
        type=parse_node,
        help="Cluster member as private[:public] address, repeat per node",
    )
    parser.add_argument("--config", type=Path, help="JSON configuration file")
    parser.add_argument("--ssh-user", help="Override the ssh user")
    parser.add_argument("--ssh-key", type=Path, help="Override the ssh private key")
    args = parser.parse_args(argv)

    config = FaultlineConfig.from_file(args.config) if args.config else FaultlineConfig()
    if args.ssh_user:
        config.ssh.user = args.ssh_user
    if args.ssh_key:
        config.ssh.key_path = args.ssh_key
    set_config(config)
    configure_from(config.logging)

    try:
        result = asyncio.run(run(args.node, config))
    except FaultlineError as e:
        logger.error("faultline.failed", error=str(e))
        return 1

    print(json.dumps(result.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
