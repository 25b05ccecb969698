"""
faultline Command Distribution

Runs the same command on several nodes at once. Used for bulk actions
whose ordering does not matter; every node runs to completion and all
failures are reported together.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List, Mapping, Optional, Sequence

import structlog

from faultline.errors import AggregateError, TransportError

if TYPE_CHECKING:
    from faultline.cluster.node import ClusterNode

logger = structlog.get_logger(__name__)


async def distribute(
    command: str,
    nodes: Sequence["ClusterNode"],
    env: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """Run ``command`` on every node concurrently.

    Returns the outputs in node order.

    Raises:
        AggregateError: If any node failed; carries one error per failure.
    """
    logger.info("distribute.start", command=command, nodes=[str(n) for n in nodes])

    results = await asyncio.gather(
        *(node.run(command, env=env) for node in nodes),
        return_exceptions=True,
    )

    errors: List[BaseException] = []
    for node, result in zip(nodes, results):
        if isinstance(result, BaseException):
            logger.warning("distribute.failed", node=str(node), error=str(result))
            errors.append(TransportError(f"{node}: {result}", cause=result))
    if errors:
        raise AggregateError(errors)

    logger.info("distribute.completed", command=command, nodes=len(nodes))
    return [str(r) for r in results]
