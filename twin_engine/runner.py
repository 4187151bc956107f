"""
Headless runner for the digital-twin engine.

Builds a twin from a JSON config, optionally deploys one threat, advances
the simulation for a number of ticks on a simulated clock (one tick =
``simulation.tick_interval_ms``), optionally triggers a cascade, runs a
prediction pass and writes the results.

Usage
-----
    twin-engine config.json [--output-dir results/] [--ticks 60]
                            [--threat overload --threat-target node_0005]
                            [--cascade-origin node_0000] [--auto-mitigate]

Outputs (all under ``--output-dir``)
    config_snapshot.json  merged config plus its SHA-256
    nodes.csv             final per-node telemetry
    region_summary.csv    per-region counts and means
    cascade_event.json    when --cascade-origin is given
    cascade_path.csv      when --cascade-origin is given
    predictions.json      final prediction pass
    summary.json          system state, health and signed snapshot digest
"""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path

import pandas as pd

from twin_engine.config import load_config
from twin_engine.engine import SimulationEngine
from twin_engine.model import CascadeEvent, InvalidParameterError, Node, ThreatType, utcnow
from twin_engine.patterns import region_frame
from twin_engine.risk import Prediction


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Digital-twin engine: headless simulation runner."
    )
    parser.add_argument("config", help="Path to JSON configuration file.")
    parser.add_argument(
        "--output-dir",
        default="results",
        help="Directory for output files (default: results/).",
    )
    parser.add_argument(
        "--ticks", type=int, default=60,
        help="Number of ticks to simulate (default: 60).",
    )
    parser.add_argument(
        "--threat", choices=[t.value for t in ThreatType],
        help="Deploy one threat of this type before the first tick.",
    )
    parser.add_argument("--threat-target", help="Target node id for --threat.")
    parser.add_argument(
        "--threat-severity", type=float, default=0.7,
        help="Severity in [0, 1] for --threat (default: 0.7).",
    )
    parser.add_argument(
        "--cascade-origin", help="Trigger a cascade from this node after the ticks."
    )
    parser.add_argument(
        "--cascade-severity", type=float, default=0.7,
        help="Severity in [0, 1] for --cascade-origin (default: 0.7).",
    )
    parser.add_argument(
        "--auto-mitigate", action="store_true",
        help="Enable auto-mitigation of critical nodes on every tick.",
    )
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Simulated time
# ---------------------------------------------------------------------------


class SteppedClock:
    """Clock that only moves when told to; one step per tick."""

    def __init__(self, start: datetime, step_s: float) -> None:
        self._now = start
        self._step = timedelta(seconds=step_s)

    def __call__(self) -> datetime:
        return self._now

    def advance(self) -> None:
        self._now += self._step


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def _ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _config_hash(cfg: dict) -> str:
    """SHA-256 of the JSON-serialised config."""
    serialised = json.dumps(cfg, sort_keys=True).encode("utf-8")
    return hashlib.sha256(serialised).hexdigest()


def _save_config_snapshot(output_dir: Path, cfg: dict) -> None:
    public = {k: v for k, v in cfg.items() if k != "integrity"}
    snapshot = {
        "config": public,
        "sha256": _config_hash(public),
    }
    (output_dir / "config_snapshot.json").write_text(json.dumps(snapshot, indent=2))


def _write_json(path: Path, data) -> None:
    path.write_text(json.dumps(data, indent=2))


def nodes_frame(nodes: list[Node]) -> pd.DataFrame:
    rows = []
    for n in nodes:
        row = n.to_dict()
        for key in ("connections", "dependencies", "dependents"):
            row[key] = ";".join(row[key])
        rows.append(row)
    return pd.DataFrame(rows)


def region_summary(nodes: list[Node]) -> pd.DataFrame:
    frame = region_frame(nodes)
    status = pd.crosstab(
        pd.Series([n.region for n in nodes], name="region"),
        pd.Series([n.status.value for n in nodes], name="status"),
    ).add_prefix("status_")
    return frame.join(status, how="left").fillna(0).reset_index()


def cascade_path_frame(event: CascadeEvent) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "source": step.source,
                "target": step.target,
                "depth": step.depth,
                "risk_transfer": step.risk_transfer,
            }
            for step in event.propagation_path
        ],
        columns=["source", "target", "depth", "risk_transfer"],
    )


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def _print_summary(engine: SimulationEngine, elapsed: float, ticks: int,
                   cascade: CascadeEvent | None, predictions: list[Prediction]) -> None:
    state = engine.system_state()
    sep = "-" * 58
    print(sep)
    print("  Digital-Twin Engine — Headless Run")
    print(sep)
    print(f"  Nodes                 : {state.total_nodes}")
    print(f"  Edges                 : {len(engine.store.get_edges())}")
    print(f"  Ticks                 : {ticks}")
    print(f"  Elapsed               : {elapsed:.2f}s")
    print()
    print("  Status")
    for status, count in state.status_counts.items():
        print(f"    {status:<10}: {count}")
    print(f"    compromised: {len(state.compromised_nodes)}")
    print()
    print(f"  Max risk              : {state.max_risk:.3f}")
    print(f"  Avg risk / health     : {state.avg_risk:.3f} / {state.avg_health:.3f}")
    print(f"  System health score   : {engine.system_health():.3f}")
    print(f"  Active threats        : {len(engine.active_threats())}")
    print(f"  Incidents             : {len(engine.get_incidents())}")
    print(f"  Predictions           : {len(predictions)}")
    print(f"  Alerts                : {len(engine.get_alerts())}")
    if cascade is not None:
        print()
        print(f"  Cascade from {cascade.origin_node} (severity {cascade.severity:.2f})")
        print(f"    Affected : {len(cascade.affected_nodes)} / {state.total_nodes}")
        print(f"    Impact   : {cascade.impact_score:.4f}")
        print(f"    Damage   : {cascade.total_damage:.4f}")
    print(sep)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    output_dir = Path(args.output_dir)
    _ensure_dir(output_dir)

    cfg = load_config(args.config)
    logging.basicConfig(
        level=cfg["logging"]["level"].upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _save_config_snapshot(output_dir, cfg)

    if args.ticks < 0:
        print(f"ERROR: --ticks must be >= 0, got {args.ticks}.")
        sys.exit(1)

    clock = SteppedClock(utcnow(), float(cfg["simulation"]["tick_interval_ms"]) / 1000.0)
    engine = SimulationEngine(cfg, clock=clock)
    if args.auto_mitigate:
        engine.set_auto_mitigation(True)

    t0 = time.perf_counter()
    if args.threat:
        try:
            threat = engine.deploy_threat(
                args.threat, args.threat_severity, target=args.threat_target
            )
        except InvalidParameterError as exc:
            print(f"ERROR: {exc}")
            sys.exit(1)
        if threat is None:
            print(f"ERROR: Unknown threat target {args.threat_target!r}.")
            sys.exit(1)

    for _ in range(args.ticks):
        clock.advance()
        engine.tick()

    cascade = None
    if args.cascade_origin:
        try:
            cascade = engine.trigger_cascade(args.cascade_origin, args.cascade_severity)
        except InvalidParameterError as exc:
            print(f"ERROR: {exc}")
            sys.exit(1)
        if cascade is None:
            print(f"ERROR: Unknown cascade origin {args.cascade_origin!r}.")
            sys.exit(1)
        _write_json(output_dir / "cascade_event.json", cascade.to_dict())
        cascade_path_frame(cascade).to_csv(output_dir / "cascade_path.csv", index=False)

    predictions = engine.run_predictions()
    elapsed = time.perf_counter() - t0

    nodes = engine.nodes()
    nodes_frame(nodes).to_csv(output_dir / "nodes.csv", index=False)
    region_summary(nodes).to_csv(output_dir / "region_summary.csv", index=False)
    _write_json(output_dir / "predictions.json", [p.to_dict() for p in predictions])

    snapshot = engine.snapshot()
    _write_json(
        output_dir / "summary.json",
        {
            "seed": cfg["simulation"]["seed"],
            "ticks": args.ticks,
            "elapsed_seconds": elapsed,
            "state": engine.system_state().to_dict(),
            "system_health": engine.system_health(),
            "active_threats": [t.to_dict() for t in engine.active_threats()],
            "incidents": [i.to_dict() for i in engine.get_incidents()],
            "patterns": [p.to_dict() for p in engine.patterns()],
            "alerts": [a.to_dict() for a in engine.get_alerts()],
            "mitigations": [r.to_dict() for r in engine.mitigation.history],
            "integrity": snapshot["integrity"],
        },
    )

    _print_summary(engine, elapsed, args.ticks, cascade, predictions)
    print(f"  Results saved to : {output_dir.resolve()}")


if __name__ == "__main__":
    main()
