"""General IO helpers for configuration, tabular results, and run artifacts."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pandas as pd
import yaml


def load_yaml(path: str | Path) -> dict:
    """Load a YAML file into a dictionary (empty file -> empty dict)."""
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def save_yaml(obj: Any, path: str | Path) -> None:
    """Write a mapping as block-style YAML."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(obj, handle, sort_keys=False)


def save_json(obj: Any, path: str | Path) -> None:
    """Serialize an object to JSON with indentation."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(obj, handle, indent=2, default=str)


def save_csv(df_or_arr: Any, path: str | Path) -> None:
    """Persist a pandas DataFrame or array-like object as CSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if hasattr(df_or_arr, "to_csv"):
        index_label = getattr(getattr(df_or_arr, "index", None), "name", None)
        df_or_arr.to_csv(path, index=index_label is not None, index_label=index_label)
    else:
        pd.DataFrame(df_or_arr).to_csv(path, index=False)
