#!/usr/bin/env python3
"""alertstack.sink

Export sinks: persist one named table per shard.

    sink.write(table, description, file_prefix) -> destination

CsvSink writes `<out_dir>/<file_prefix>.csv`; absent values are written as
empty cells. MemorySink keeps tables in a dict (tests, notebooks).
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, Optional

import pandas as pd


class CsvSink:
    def __init__(self, out_dir: Path, overwrite: bool = True):
        self.out_dir = Path(out_dir)
        self.overwrite = overwrite

    def path_for(self, file_prefix: str) -> Path:
        return self.out_dir / f"{file_prefix}.csv"

    def write(self, table: pd.DataFrame, description: str, file_prefix: str) -> Optional[Path]:
        out_path = self.path_for(file_prefix)
        if out_path.exists() and not self.overwrite:
            print(f"[SKIP] {out_path.name} exists (description={description})")
            return out_path
        out_path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename
        tmp = out_path.with_suffix(".csv.part")
        table.to_csv(tmp, index=False, na_rep="")
        tmp.replace(out_path)
        print(f"[EXPORT] {description}: {len(table)} rows -> {out_path}")
        return out_path


class MemorySink:
    def __init__(self):
        self.tables: Dict[str, pd.DataFrame] = {}
        self._lock = threading.Lock()

    def write(self, table: pd.DataFrame, description: str, file_prefix: str) -> str:
        with self._lock:
            self.tables[description] = table.copy()
        return description
