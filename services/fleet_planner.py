"""Node discovery, instance-to-node mapping and batch sizing."""

from __future__ import annotations

from typing import Iterable, Protocol, Sequence

from core.fleet_models import BatchPlan, BatchStrategy, ManagedInstance, WorkerNode, ceil_div
from core.logging import logger as LOGGER


class NodeSource(Protocol):
    async def list_nodes(self, default_capacity: int = 4) -> list[WorkerNode]: ...


async def discover_nodes(
    source: NodeSource,
    fallback_nodes: Sequence[WorkerNode],
    default_capacity: int = 4,
) -> list[WorkerNode]:
    """Return worker nodes from the control plane, or the fallback list."""

    try:
        nodes = await source.list_nodes(default_capacity=default_capacity)
    except Exception as exc:  # noqa: BLE001 - discovery falls back to static nodes
        LOGGER.warning("[Planner] Node discovery failed, using fallback nodes: %s", exc)
        return list(fallback_nodes)
    if not nodes:
        LOGGER.warning("[Planner] No nodes discovered, using fallback nodes")
        return list(fallback_nodes)
    LOGGER.info("[Planner] Discovered %s node(s): %s", len(nodes), ", ".join(n.name for n in nodes))
    return nodes


def map_instances_to_nodes(
    instances: Sequence[ManagedInstance],
    nodes: Sequence[WorkerNode],
) -> dict[str, WorkerNode]:
    """Assign instances to nodes round-robin in input order."""

    if not nodes:
        return {}
    return {instance.id: nodes[index % len(nodes)] for index, instance in enumerate(instances)}


def group_by_node(
    batch: Iterable[ManagedInstance],
    mapping: dict[str, WorkerNode],
) -> dict[str, list[ManagedInstance]]:
    """Group a batch by assigned node id, preserving order inside each group."""

    groups: dict[str, list[ManagedInstance]] = {}
    for instance in batch:
        node = mapping.get(instance.id)
        node_id = node.id if node is not None else "unassigned"
        groups.setdefault(node_id, []).append(instance)
    return groups


def node_cap(node: WorkerNode | None, max_concurrent_per_node: int) -> int:
    """Concurrent reboots allowed on ``node``: its own capacity, capped by config."""

    limit = max(1, int(max_concurrent_per_node))
    if node is None or node.capacity <= 0:
        return limit
    return min(node.capacity, limit)


def plan_batches(
    nodes: Sequence[WorkerNode],
    queue_length: int,
    *,
    strategy: BatchStrategy = BatchStrategy.AUTO,
    max_batch_size: int = 12,
    max_concurrent_per_node: int = 4,
) -> BatchPlan:
    """Compute batch size and count for a queue of ``queue_length`` instances."""

    per_node = max(1, int(max_concurrent_per_node))
    total_capacity = sum(node_cap(node, per_node) for node in nodes)
    if strategy is BatchStrategy.FIXED:
        batch_size = max(1, int(max_batch_size))
    else:
        batch_size = min(queue_length, total_capacity)

    total_batches = ceil_div(queue_length, batch_size) if queue_length > 0 else 0
    return BatchPlan(
        strategy=strategy,
        batch_size=batch_size,
        total_batches=total_batches,
        nodes_used=len(nodes),
        max_per_node=per_node,
        total_capacity=total_capacity,
    )


def split_batches(queue: Sequence[ManagedInstance], plan: BatchPlan) -> list[list[ManagedInstance]]:
    if plan.batch_size <= 0:
        return []
    return [
        list(queue[start : start + plan.batch_size])
        for start in range(0, len(queue), plan.batch_size)
    ]


def chunk(items: Sequence[ManagedInstance], size: int) -> list[list[ManagedInstance]]:
    size = max(1, int(size))
    return [list(items[start : start + size]) for start in range(0, len(items), size)]
