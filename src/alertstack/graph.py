#!/usr/bin/env python3
"""alertstack.graph

A tiny deferred-computation graph.

Jobs build a description of the work for a shard (which layers to fetch,
how to fuse them, what to aggregate per year) without touching any data.
The pipeline then materializes each shard's graph in a worker thread.

    node = defer(aggregate, defer(load, "radd", 2021), zones, label="agg 2021")
    df = materialize(node)

Design notes:
- Building a graph never runs user functions.
- Any Deferred found in args/kwargs (also inside lists, tuples and dicts) is
  materialized first.
- materialize() memoizes per call: a node shared by several parents (e.g. the
  fused alert layer used by every year) is computed once per call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple


@dataclass(frozen=True, eq=False)
class Deferred:
    func: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    label: str = ""

    def __repr__(self) -> str:
        return f"Deferred({self.label or getattr(self.func, '__name__', 'fn')})"


def defer(func: Callable[..., Any], *args: Any, label: str = "", **kwargs: Any) -> Deferred:
    return Deferred(func=func, args=tuple(args), kwargs=dict(kwargs), label=label)


def _resolve(value: Any, memo: Dict[int, Any]) -> Any:
    if isinstance(value, Deferred):
        return _materialize(value, memo)
    if isinstance(value, list):
        return [_resolve(v, memo) for v in value]
    if isinstance(value, tuple):
        return tuple(_resolve(v, memo) for v in value)
    if isinstance(value, dict):
        return {k: _resolve(v, memo) for k, v in value.items()}
    return value


def _materialize(node: Deferred, memo: Dict[int, Any]) -> Any:
    key = id(node)
    if key in memo:
        return memo[key]
    args = _resolve(node.args, memo)
    kwargs = _resolve(node.kwargs, memo)
    result = node.func(*args, **kwargs)
    memo[key] = result
    return result


def materialize(node: Any) -> Any:
    """Evaluate a graph (or any structure containing Deferred nodes)."""
    return _resolve(node, {})


def describe(node: Any, indent: int = 0, seen: Optional[set] = None) -> List[str]:
    """Indented one-line-per-node listing, for --dry-run output."""
    seen = set() if seen is None else seen
    lines: List[str] = []
    if isinstance(node, Deferred):
        name = node.label or getattr(node.func, "__name__", "fn")
        if id(node) in seen:
            return ["  " * indent + f"{name} (shared)"]
        seen.add(id(node))
        lines.append("  " * indent + name)
        children = list(node.args) + list(node.kwargs.values())
        for child in children:
            lines.extend(describe(child, indent + 1, seen))
    elif isinstance(node, (list, tuple)):
        for child in node:
            lines.extend(describe(child, indent, seen))
    elif isinstance(node, dict):
        for child in node.values():
            lines.extend(describe(child, indent, seen))
    return lines
