"""
Topology import: build a ``GraphStore`` from tabular node and edge data.

Node table columns: ``id``, ``type``, ``region`` (required), ``name``,
``x``, ``y`` (optional).  Edge table columns: ``source``, ``target``
(required), ``weight`` (optional).  Column names are normalised (stripped,
lower-cased) before validation.

Telemetry for imported nodes is sampled exactly as ``create_graph`` does,
from a Generator seeded with the caller's seed, so an import is as
reproducible as a synthetic grid.  Imported edges are used as given (no
component bridging); a disconnected result is reported with a warning.
"""

from __future__ import annotations

import warnings
from datetime import datetime
from pathlib import Path

import networkx as nx
import pandas as pd
from numpy.random import default_rng

from twin_engine.graph import (
    GraphStore,
    add_generation_dependencies,
    make_edge,
    make_node,
    region_centers,
    sample_position,
)
from twin_engine.model import REGIONS, NodeType, utcnow


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NODE_REQUIRED_COLUMNS = {"id", "type", "region"}
EDGE_REQUIRED_COLUMNS = {"source", "target"}


# ---------------------------------------------------------------------------
# CSV loading
# ---------------------------------------------------------------------------


def _read_table(csv_path: Path, required: set[str], what: str) -> pd.DataFrame:
    if not csv_path.exists():
        raise FileNotFoundError(f"Input CSV not found: {csv_path}")

    try:
        df = pd.read_csv(csv_path)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        raise ValueError(f"Failed to parse CSV '{csv_path}': {exc}") from exc

    if df.empty:
        raise ValueError(f"CSV '{csv_path}' contains no rows.")

    return normalise_table(df, required, what)


def normalise_table(df: pd.DataFrame, required: set[str], what: str) -> pd.DataFrame:
    """Normalise column names, check required columns and drop incomplete rows."""
    df = df.copy()
    df.columns = [str(c).strip().lower() for c in df.columns]

    missing = required - set(df.columns)
    if missing:
        raise ValueError(
            f"{what} table is missing required column(s): {sorted(missing)}. "
            f"Found: {sorted(df.columns.tolist())}."
        )

    before = len(df)
    df = df.dropna(subset=sorted(required))
    dropped = before - len(df)
    if dropped:
        warnings.warn(
            f"{what} table: dropped {dropped} row(s) with missing "
            f"{'/'.join(sorted(required))}.",
            UserWarning,
            stacklevel=3,
        )

    if df.empty:
        raise ValueError(f"No valid {what} rows remain after dropping NA rows.")

    df = df.reset_index(drop=True)
    for col in required:
        df[col] = df[col].astype(str).str.strip()
    return df


def load_node_table(csv_path: str | Path) -> pd.DataFrame:
    """Load and validate a node table CSV.

    Raises
    ------
    FileNotFoundError
        If the CSV file does not exist.
    ValueError
        If required columns are missing, or the file is empty / malformed.
    """
    return _read_table(Path(csv_path), NODE_REQUIRED_COLUMNS, "node")


def load_edge_table(csv_path: str | Path) -> pd.DataFrame:
    """Load and validate an edge list CSV (same rules as :func:`load_node_table`)."""
    return _read_table(Path(csv_path), EDGE_REQUIRED_COLUMNS, "edge")


# ---------------------------------------------------------------------------
# Store construction
# ---------------------------------------------------------------------------


def graph_from_topology(
    nodes_df: pd.DataFrame,
    edges_df: pd.DataFrame,
    seed: int,
    now: datetime | None = None,
) -> GraphStore:
    """Build a ``GraphStore`` from node and edge tables.

    Parameters
    ----------
    nodes_df, edges_df : pd.DataFrame
        Tables as returned by :func:`load_node_table` / :func:`load_edge_table`
        (raw DataFrames are normalised here as well).
    seed : int
        Seed for telemetry sampling, missing coordinates, missing edge
        weights and dependency wiring.
    now : datetime, optional
        Reference instant for timestamps.

    Returns
    -------
    GraphStore

    Raises
    ------
    ValueError
        On duplicate node ids, unknown node types or unknown regions.

    Notes
    -----
    Self-loops, duplicate edges (in either direction) and edges naming
    unknown nodes are dropped with a ``UserWarning``.
    """
    nodes_df = normalise_table(nodes_df, NODE_REQUIRED_COLUMNS, "node")
    edges_df = normalise_table(edges_df, EDGE_REQUIRED_COLUMNS, "edge")
    now = now or utcnow()
    rng = default_rng(seed)
    centers = region_centers()
    store = GraphStore()

    dup_ids = nodes_df["id"][nodes_df["id"].duplicated()].unique().tolist()
    if dup_ids:
        raise ValueError(f"Duplicate node id(s) in node table: {dup_ids[:10]}")

    valid_types = {t.value for t in NodeType}
    bad_types = sorted(set(nodes_df["type"].str.lower()) - valid_types)
    if bad_types:
        raise ValueError(
            f"Unknown node type(s) {bad_types}; expected one of {sorted(valid_types)}"
        )
    bad_regions = sorted(set(nodes_df["region"]) - set(REGIONS))
    if bad_regions:
        raise ValueError(f"Unknown region(s) {bad_regions}; expected one of {list(REGIONS)}")

    has_xy = {"x", "y"} <= set(nodes_df.columns)
    for row in nodes_df.itertuples(index=False):
        region = row.region
        if has_xy and pd.notna(row.x) and pd.notna(row.y):
            x, y = float(row.x), float(row.y)
        else:
            x, y = sample_position(rng, centers[region])
        name = getattr(row, "name", None)
        name = str(name) if name is not None and pd.notna(name) else None
        store.add_node(
            make_node(rng, row.id, NodeType(row.type.lower()), region, x, y, now, name=name)
        )

    has_weight = "weight" in edges_df.columns
    self_loops: list[str] = []
    unknown: list[tuple[str, str]] = []
    duplicates: list[tuple[str, str]] = []
    for row in edges_df.itertuples(index=False):
        a, b = row.source, row.target
        if a == b:
            self_loops.append(a)
            continue
        if a not in store or b not in store:
            unknown.append((a, b))
            continue
        weight = float(row.weight) if has_weight and pd.notna(row.weight) else None
        if not store.add_edge(make_edge(rng, store.get_node(a), store.get_node(b), weight)):
            duplicates.append((a, b))

    if self_loops:
        warnings.warn(
            f"graph_from_topology: {len(self_loops)} self-loop(s) dropped "
            f"(nodes: {self_loops[:10]}{'...' if len(self_loops) > 10 else ''}).",
            UserWarning,
            stacklevel=2,
        )
    if unknown:
        warnings.warn(
            f"graph_from_topology: {len(unknown)} edge(s) reference unknown node ids "
            f"and were dropped (first: {unknown[:5]}).",
            UserWarning,
            stacklevel=2,
        )
    if duplicates:
        warnings.warn(
            f"graph_from_topology: {len(duplicates)} duplicate edge(s) dropped "
            f"(first: {duplicates[:5]}).",
            UserWarning,
            stacklevel=2,
        )

    for node in store.nodes():
        add_generation_dependencies(store, node, rng)

    if len(store) > 1 and not nx.is_connected(store.graph):
        warnings.warn(
            f"graph_from_topology: imported topology has "
            f"{nx.number_connected_components(store.graph)} connected components.",
            UserWarning,
            stacklevel=2,
        )
    return store
