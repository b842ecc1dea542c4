# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import PipelineDefinitionError
from .model import Pipeline


def build_stage_graph(deps: Dict[str, List[str]]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from a stage -> dependencies mapping.

    Returns (adj, indeg) where adj maps a stage to the stages that depend on it.
    """
    name_set = set(deps)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for name, needs in deps.items():
        for dep in needs:
            if dep not in name_set:
                raise PipelineDefinitionError(
                    f"Stage '{name}' depends on missing stage '{dep}'. "
                    f"Known stages: {sorted(name_set)}"
                )
            if dep == name:
                raise PipelineDefinitionError(f"Stage '{name}' depends on itself")
            # edge dep -> name (dep must run before name)
            if name not in adj[dep]:
                adj[dep].add(name)
                indeg[name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological levels.
    Stages in one level have no dependencies on each other.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(sorted(level))

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise PipelineDefinitionError(f"Stage graph has a cycle. Stuck stages: {remaining}")

    return levels


def stage_levels(pipeline: Pipeline) -> List[List[str]]:
    names = [s.name for s in pipeline.stages]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise PipelineDefinitionError(f"Duplicate stage names found: {dupes}")

    adj, indeg = build_stage_graph(pipeline.resolved_dependencies())
    return topo_levels(adj, indeg)


def execution_order(pipeline: Pipeline) -> List[str]:
    return [name for level in stage_levels(pipeline) for name in level]
