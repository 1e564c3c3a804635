"""
DAG ordering for a single workflow frame.

ARCHITECTURAL DECISION: This module is intentionally SYNCHRONOUS.

Rationale:
- Pure in-memory graph algorithms (Kahn's topological sort, wave computation)
- No I/O operations or external calls
- Used eagerly by check_graph_integrity() (cycle detection per frame) and by
  the validate_workflow tool (static execution preview)

The run loop itself does not follow a precomputed order: it re-evaluates
eligibility after every completion (see scheduler.PathManager), because
branch decisions change the live path during the run.
"""

from collections import deque

from .load_result import LoadResult


class DAGResolver:
    """Resolves execution order for the blocks of one frame."""

    def __init__(self, blocks: list[str], dependencies: dict[str, list[str]]):
        """
        Initialize DAG resolver.

        Args:
            blocks: Block ids in declaration order
            dependencies: Dict mapping block id to the ids it depends on
        """
        self.blocks = blocks
        self.dependencies = dependencies

    def topological_sort(self) -> LoadResult[list[str]]:
        """
        Perform topological sort (declaration order breaks ties).

        Returns:
            Result containing ordered block ids or error if cyclic dependency
        """
        in_degree = {block: 0 for block in self.blocks}
        adj_list: dict[str, list[str]] = {block: [] for block in self.blocks}

        for block, deps in self.dependencies.items():
            if block not in in_degree:
                return LoadResult.failure(f"Block '{block}' in dependencies but not in blocks list")

            for dep in deps:
                if dep not in in_degree:
                    return LoadResult.failure(
                        f"Dependency '{dep}' for block '{block}' not found in blocks list"
                    )

                adj_list[dep].append(block)
                in_degree[block] += 1

        # Kahn's algorithm
        queue = deque([block for block in self.blocks if in_degree[block] == 0])
        result = []

        while queue:
            current = queue.popleft()
            result.append(current)

            for neighbor in adj_list[current]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if len(result) != len(self.blocks):
            stuck = sorted(block for block, degree in in_degree.items() if degree > 0)
            return LoadResult.failure(f"Cyclic dependency detected between: {', '.join(stuck)}")

        return LoadResult.success(result)

    def get_execution_waves(self) -> LoadResult[list[list[str]]]:
        """
        Group blocks into waves whose members have no path between them.

        Ignores branch decisions, so it is a static upper bound of what may
        run concurrently.

        Returns:
            Result containing list of waves (block ids in declaration order)
        """
        order = self.topological_sort()
        if not order.is_success:
            return LoadResult.failure(order.error or "Cyclic dependency detected")

        level: dict[str, int] = {}
        for block in order.unwrap():
            deps = self.dependencies.get(block, [])
            level[block] = max((level[dep] + 1 for dep in deps), default=0)

        waves: list[list[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for block in self.blocks:
            waves[level[block]].append(block)

        return LoadResult.success(waves)
