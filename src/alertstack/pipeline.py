#!/usr/bin/env python3
"""alertstack.pipeline

Sharded export: split a job into (zone group x year range) shards, process
each shard end-to-end, and hand one table per shard to the export sink.

    shards = plan_shards(config.zone_groups, config.year_ranges)
    results = ShardedExportPipeline(job, context, sink).run(shards)

Per shard:
1. select the group's zones (read-only shared zone set)
2. build the shard's job graph (single-threaded, no data touched)
3. materialize it in a worker thread: one fragment per year
4. concatenate the fragments once, attach zone metadata, derive columns
5. write the table under the shard's stable description

Design notes:
- Shards don't share anything mutable; they can run in any order or in
  parallel (max_workers threads).
- A failing shard is retried on its own (tenacity, exponential wait) and,
  if it still fails, reported as ShardResult(status="failed"). Other shards
  are not affected.
- Descriptions depend only on the shard's parameters, so re-running a
  job writes to the same outputs.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd
from tenacity import Retrying, stop_after_attempt, wait_exponential

from alertstack.config import ConfigurationError
from alertstack.graph import describe, materialize
from alertstack.join import left_join
from alertstack.zones import KEY_FIELD, select_zones, unknown_parents, zone_metadata


# -----------------------------------------------------------------------------
# Shards
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Shard:
    group: str
    parents: Tuple[str, ...]
    start_year: int
    end_year: int

    @property
    def years(self) -> List[int]:
        return list(range(self.start_year, self.end_year + 1))

    @property
    def tag(self) -> str:
        return f"{self.group}_{self.start_year}_{self.end_year}"

    def description(self, prefix: str, suffix: str = "") -> str:
        return f"{prefix}_{self.tag}{suffix}"

    def file_prefix(self, prefix: str, suffix: str = "") -> str:
        return f"{prefix.lower()}_{self.tag}{suffix}"


def plan_shards(
    groups: Sequence[Tuple[str, Sequence[str]]],
    year_ranges: Sequence[Tuple[int, int]],
) -> List[Shard]:
    """Cartesian product of zone groups and year ranges, in config order."""
    if not groups:
        raise ConfigurationError("No zone groups to shard over")
    if not year_ranges:
        raise ConfigurationError("No year ranges to shard over")
    for start, end in year_ranges:
        if start > end:
            raise ConfigurationError(f"Non-monotonic year range: {start} > {end}")
    for (_, prev_end), (next_start, _) in zip(year_ranges, year_ranges[1:]):
        if next_start <= prev_end:
            raise ConfigurationError(f"Year ranges overlap or are out of order: {prev_end} >= {next_start}")
    names = [g for g, _ in groups]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Duplicate zone group names: {names}")
    return [
        Shard(group=str(g), parents=tuple(parents), start_year=int(s), end_year=int(e))
        for g, parents in groups
        for s, e in year_ranges
    ]


@dataclass
class ShardResult:
    shard: Shard
    description: str
    status: str  # "ok" | "failed" | "planned"
    rows: int = 0
    destination: Optional[Any] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status != "failed"


# -----------------------------------------------------------------------------
# Assembly
# -----------------------------------------------------------------------------

def assemble(
    fragments: Sequence[pd.DataFrame],
    meta: pd.DataFrame,
    columns: Sequence[str],
    key: str = KEY_FIELD,
    derive: Optional[Callable[[pd.DataFrame], pd.DataFrame]] = None,
) -> pd.DataFrame:
    """Concatenate per-year fragments, attach metadata, derive, order columns and rows."""
    frames = [f for f in fragments if f is not None and len(f.columns)]
    if frames:
        table = pd.concat(frames, ignore_index=True)
    else:
        table = pd.DataFrame({c: [] for c in [key, "year"]})
    table = left_join(table, meta, key)
    if derive is not None:
        table = derive(table)
    for c in columns:
        if c not in table.columns:
            table[c] = pd.NA
    table = table[list(columns)]
    return table.sort_values([key, "year"], kind="mergesort").reset_index(drop=True)


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------

@dataclass
class _Planned:
    shard: Shard
    description: str
    file_prefix: str
    graph: Any
    meta: pd.DataFrame


class ShardedExportPipeline:
    """Run an export job shard by shard.

    `job` is an alertstack.jobs.ExportJob, `context` its JobContext and
    `sink` anything with write(table, description, file_prefix).
    """

    def __init__(
        self,
        job,
        context,
        sink,
        *,
        max_workers: int = 1,
        retries: int = 0,
        wait=None,
    ):
        if max_workers < 1:
            raise ConfigurationError("max_workers must be >= 1")
        if retries < 0:
            raise ConfigurationError("retries must be >= 0")
        self.job = job
        self.context = context
        self.sink = sink
        self.max_workers = max_workers
        self.retries = retries
        self.wait = wait if wait is not None else wait_exponential(multiplier=1, min=2, max=10)

    # --- graph construction (single-threaded) ---

    def _plan(self, shard: Shard) -> _Planned:
        missing = unknown_parents(self.context.zones, shard.parents)
        if missing:
            print(f"[SHARD] {shard.tag}: no zones for parent region(s) {missing}")
        zones = select_zones(self.context.zones, shard.parents)
        return _Planned(
            shard=shard,
            description=shard.description(self.job.prefix(self.context.config), self.job.suffix(self.context.config)),
            file_prefix=shard.file_prefix(self.job.prefix(self.context.config), self.job.suffix(self.context.config)),
            graph=self.job.build(self.context, shard, zones),
            meta=zone_metadata(zones),
        )

    def plan(self, shards: Sequence[Shard]) -> List[_Planned]:
        return [self._plan(s) for s in shards]

    def describe(self, shards: Sequence[Shard]) -> List[ShardResult]:
        """Dry run: build every graph, print it, run nothing."""
        results = []
        for p in self.plan(shards):
            print(f"[dry-run] {p.description} ({len(p.meta)} zones) -> {p.file_prefix}")
            for line in describe(p.graph):
                print(f"    {line}")
            results.append(ShardResult(shard=p.shard, description=p.description, status="planned"))
        return results

    # --- materialization (worker threads) ---

    def _execute(self, p: _Planned) -> Tuple[pd.DataFrame, Any]:
        fragments = materialize(p.graph)
        table = assemble(
            fragments,
            p.meta,
            self.job.columns(self.context),
            derive=lambda t: self.job.finalize(self.context, t),
        )
        destination = self.sink.write(table, p.description, p.file_prefix)
        return table, destination

    def _run_one(self, p: _Planned) -> ShardResult:
        attempts = 0
        try:
            for attempt in Retrying(stop=stop_after_attempt(self.retries + 1), wait=self.wait, reraise=True):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        print(f"[SHARD] {p.description}: retry {attempts - 1}/{self.retries}")
                    table, destination = self._execute(p)
        except Exception as e:
            print(f"[SHARD] {p.description}: FAILED after {attempts} attempt(s): {e}")
            return ShardResult(
                shard=p.shard,
                description=p.description,
                status="failed",
                error=f"{type(e).__name__}: {e}",
                attempts=attempts,
            )
        print(f"[SHARD] {p.description}: ok ({len(table)} rows)")
        return ShardResult(
            shard=p.shard,
            description=p.description,
            status="ok",
            rows=len(table),
            destination=destination,
            attempts=attempts,
        )

    def run(self, shards: Sequence[Shard]) -> List[ShardResult]:
        """Process every shard; results come back in shard order."""
        planned = self.plan(shards)
        print(f"[SHARD] {self.job.name}: {len(planned)} shard(s), max_workers={self.max_workers}")
        if self.max_workers == 1:
            return [self._run_one(p) for p in planned]

        results: Dict[int, ShardResult] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as ex:
            futures = {ex.submit(self._run_one, p): i for i, p in enumerate(planned)}
            for f in as_completed(futures):
                results[futures[f]] = f.result()
        return [results[i] for i in range(len(planned))]
