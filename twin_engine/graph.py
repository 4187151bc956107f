"""
Graph store and seeded grid generation for the digital-twin engine.

Topology is held in NetworkX: an undirected ``nx.Graph`` for connections
(each edge carries its immutable ``Edge`` record under the ``"edge"``
attribute) and an ``nx.DiGraph`` for dependencies, with an arc
``provider -> dependent``.  The per-node ``connections`` / ``dependencies``
/ ``dependents`` lists are kept in sync so nodes serialise on their own.

Convention: node ids are ``node_0000``-style strings, zero-padded to four
digits, assigned in creation order.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Iterator

import networkx as nx
import numpy as np
from numpy.random import Generator, default_rng

from twin_engine.evolution import derive_cyber_status, derive_status
from twin_engine.model import (
    Category,
    CyberStatus,
    Edge,
    EdgeType,
    FREQUENCY_BAND,
    NODE_TYPE_SPECS,
    NODE_TYPE_WEIGHTS,
    NOMINAL_FREQUENCY,
    NOMINAL_VOLTAGE,
    Node,
    NodeStatus,
    NodeType,
    REGIONS,
    SystemState,
    VOLTAGE_BAND,
    edge_key,
    utcnow,
)
from twin_engine.utils import clamp


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class GraphStore:
    """Owns the node table and its topology.

    Lookups by id, neighbour, dependency, region and category are O(1) or
    O(degree); region and category membership is indexed at insert time.
    Status-based queries (critical, compromised) scan the node table since
    status changes on every tick.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._graph = nx.Graph()
        self._deps = nx.DiGraph()
        self._by_region: dict[str, list[str]] = {}
        self._by_category: dict[Category, list[str]] = {}

    # -- mutation -----------------------------------------------------------

    def add_node(self, node: Node) -> None:
        if node.id in self._nodes:
            raise ValueError(f"Duplicate node id {node.id!r}")
        self._nodes[node.id] = node
        self._graph.add_node(node.id)
        self._deps.add_node(node.id)
        self._by_region.setdefault(node.region, []).append(node.id)
        self._by_category.setdefault(node.category, []).append(node.id)

    def add_edge(self, edge: Edge) -> bool:
        """Insert an undirected edge; return False if it already exists."""
        a, b = edge.source, edge.target
        if a == b:
            raise ValueError(f"Self-loop on {a!r} is not allowed")
        if a not in self._nodes or b not in self._nodes:
            raise KeyError(f"Edge {a!r}-{b!r} references an unknown node")
        if self._graph.has_edge(a, b):
            return False
        self._graph.add_edge(a, b, edge=edge)
        self._nodes[a].connections.append(b)
        self._nodes[b].connections.append(a)
        return True

    def add_dependency(self, dependent: str, provider: str) -> bool:
        """Record that *dependent* relies on *provider*; False if already present."""
        if self._deps.has_edge(provider, dependent):
            return False
        self._deps.add_edge(provider, dependent)
        self._nodes[dependent].dependencies.append(provider)
        self._nodes[provider].dependents.append(dependent)
        return True

    def replace_node(self, node: Node) -> None:
        """Swap in an updated record for an existing node id."""
        if node.id not in self._nodes:
            raise KeyError(node.id)
        self._nodes[node.id] = node

    # -- basic queries ------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes.values())

    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def get_node(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def get_neighbors(self, node_id: str) -> list[Node]:
        node = self._nodes.get(node_id)
        if node is None:
            return []
        return [self._nodes[c] for c in node.connections]

    def get_dependencies(self, node_id: str) -> list[Node]:
        node = self._nodes.get(node_id)
        if node is None:
            return []
        return [self._nodes[d] for d in node.dependencies]

    def get_dependents(self, node_id: str) -> list[Node]:
        node = self._nodes.get(node_id)
        if node is None:
            return []
        return [self._nodes[d] for d in node.dependents]

    def get_nodes_by_region(self, region: str) -> list[Node]:
        return [self._nodes[i] for i in self._by_region.get(region, [])]

    def get_nodes_by_category(self, category: Category | str) -> list[Node]:
        return [self._nodes[i] for i in self._by_category.get(Category(category), [])]

    def regions(self) -> list[str]:
        return list(self._by_region)

    def get_critical_nodes(self) -> list[Node]:
        return [n for n in self._nodes.values() if n.status is NodeStatus.CRITICAL]

    def get_compromised_nodes(self) -> list[Node]:
        return [
            n for n in self._nodes.values() if n.cyber_status is CyberStatus.COMPROMISED
        ]

    # -- edges --------------------------------------------------------------

    def get_edges(self) -> list[Edge]:
        return [data["edge"] for _, _, data in self._graph.edges(data=True)]

    def has_edge(self, a: str, b: str) -> bool:
        return self._graph.has_edge(a, b)

    def get_edge(self, a: str, b: str) -> Edge | None:
        if not self._graph.has_edge(a, b):
            return None
        return self._graph.edges[a, b]["edge"]

    def edge_keys(self) -> set[tuple[str, str]]:
        return {edge_key(a, b) for a, b in self._graph.edges()}

    # -- graph-level views --------------------------------------------------

    @property
    def graph(self) -> nx.Graph:
        """Read-only view of the connection graph."""
        return self._graph.copy(as_view=True)

    @property
    def dependency_graph(self) -> nx.DiGraph:
        return self._deps.copy(as_view=True)

    def is_connected(self) -> bool:
        return len(self._nodes) > 0 and nx.is_connected(self._graph)

    def neighbour_risk_average(self, node_id: str) -> float:
        neighbours = self.get_neighbors(node_id)
        if not neighbours:
            return 0.0
        return sum(n.risk_score for n in neighbours) / len(neighbours)

    def system_state(self, now: datetime | None = None) -> SystemState:
        """Aggregate counts and averages over the current node table."""
        nodes = list(self._nodes.values())
        if not nodes:
            return SystemState(
                total_nodes=0,
                status_counts={s.value: 0 for s in NodeStatus},
                cyber_status_counts={s.value: 0 for s in CyberStatus},
                max_risk=0.0,
                avg_risk=0.0,
                avg_health=0.0,
                avg_load=0.0,
                critical_nodes=(),
                warning_nodes=(),
                compromised_nodes=(),
                timestamp=now or utcnow(),
            )
        risk = np.array([n.risk_score for n in nodes])
        status_counts = {s.value: 0 for s in NodeStatus}
        cyber_counts = {s.value: 0 for s in CyberStatus}
        for n in nodes:
            status_counts[n.status.value] += 1
            cyber_counts[n.cyber_status.value] += 1
        return SystemState(
            total_nodes=len(nodes),
            status_counts=status_counts,
            cyber_status_counts=cyber_counts,
            max_risk=float(risk.max()),
            avg_risk=float(risk.mean()),
            avg_health=float(np.mean([n.health for n in nodes])),
            avg_load=float(np.mean([n.load_ratio for n in nodes])),
            critical_nodes=tuple(
                n.id for n in nodes if n.risk_score > 0.8 or n.status is NodeStatus.CRITICAL
            ),
            warning_nodes=tuple(n.id for n in nodes if 0.6 < n.risk_score <= 0.8),
            compromised_nodes=tuple(
                n.id for n in nodes if n.cyber_status is CyberStatus.COMPROMISED
            ),
            timestamp=now or utcnow(),
        )


# ---------------------------------------------------------------------------
# Generation helpers
# ---------------------------------------------------------------------------


def region_centers(regions: tuple[str, ...] = REGIONS) -> dict[str, tuple[float, float]]:
    """Place region cluster centres evenly on a circle of radius 35 around (50, 50)."""
    out = {}
    for i, region in enumerate(regions):
        angle = i / len(regions) * 2 * math.pi
        out[region] = (50 + 35 * math.cos(angle), 50 + 35 * math.sin(angle))
    return out


def sample_node_type(rng: Generator) -> NodeType:
    types = list(NODE_TYPE_WEIGHTS)
    weights = np.array([NODE_TYPE_WEIGHTS[t] for t in types], dtype=float)
    return types[int(rng.choice(len(types), p=weights / weights.sum()))]


def sample_position(rng: Generator, center: tuple[float, float]) -> tuple[float, float]:
    x, y = rng.normal(center, 12.0)
    return clamp(x, 0.0, 100.0), clamp(y, 0.0, 100.0)


def make_node(
    rng: Generator,
    node_id: str,
    node_type: NodeType,
    region: str,
    x: float,
    y: float,
    now: datetime,
    name: str | None = None,
) -> Node:
    """Build a node with freshly sampled initial telemetry.

    The draw order is fixed so identical ``rng`` states always produce
    identical records.
    """
    category, capacity, thermal_limit = NODE_TYPE_SPECS[node_type]
    suffix = int(rng.integers(100, 1000))
    if name is None:
        name = f"{region} {node_type.value.replace('_', ' ')} {suffix}"

    risk = float(rng.uniform(0.05, 0.30))
    health = float(rng.uniform(0.85, 1.0))
    cyber_health = float(rng.uniform(0.9, 1.0))
    tamper = float(rng.uniform(0.0, 0.05))
    load_ratio = float(rng.uniform(0.3, 0.7))
    temperature = float(rng.uniform(35.0, 55.0))
    power_draw = float(rng.uniform(0.0, capacity * 0.7))
    voltage = clamp(NOMINAL_VOLTAGE + rng.normal(0.0, 5.0), *VOLTAGE_BAND)
    frequency = clamp(NOMINAL_FREQUENCY + rng.normal(0.0, 0.05), *FREQUENCY_BAND)
    current_load = float(rng.uniform(0.0, capacity * 0.6))
    packet_loss = float(rng.uniform(0.0, 0.02))
    latency = float(rng.uniform(10.0, 60.0))
    failed_auth = int(rng.integers(0, 3))
    auth_age_s = float(rng.uniform(0.0, 3600.0))
    return Node(
        id=node_id,
        name=name,
        type=node_type,
        category=category,
        region=region,
        x=x,
        y=y,
        risk_score=risk,
        health=health,
        load_ratio=load_ratio,
        temperature=temperature,
        power_draw=power_draw,
        voltage=voltage,
        frequency=frequency,
        rated_capacity=capacity,
        current_load=current_load,
        thermal_limit=thermal_limit,
        cyber_health=cyber_health,
        packet_loss=packet_loss,
        latency=latency,
        tamper_signal=tamper,
        failed_auth_count=failed_auth,
        last_auth_time=now - timedelta(seconds=auth_age_s),
        auth_age_s=auth_age_s,
        status=derive_status(risk, health),
        cyber_status=derive_cyber_status(cyber_health, tamper),
        last_seen=now,
    )


def edge_type_for(a: Category, b: Category) -> EdgeType:
    if Category.CONTROL in (a, b):
        return EdgeType.CONTROL
    if Category.TELECOM in (a, b):
        return EdgeType.DATA
    return EdgeType.POWER


def make_edge(rng: Generator, a: Node, b: Node, weight: float | None = None) -> Edge:
    if weight is None:
        weight = float(rng.uniform(0.5, 1.0))
    return Edge(
        source=a.id,
        target=b.id,
        type=edge_type_for(a.category, b.category),
        weight=float(weight),
        latency=float(rng.uniform(5.0, 35.0)),
        bandwidth=float(rng.uniform(100.0, 1000.0)),
    )


def add_generation_dependencies(store: GraphStore, node: Node, rng: Generator) -> None:
    """Wire a control/datacenter node onto 1-3 generation providers."""
    if node.category not in (Category.CONTROL, Category.DATACENTER):
        return
    generators = [n.id for n in store.get_nodes_by_category(Category.GENERATION)]
    if not generators:
        return
    dep_count = int(rng.integers(1, 4))
    for _ in range(min(dep_count, len(generators))):
        provider = generators[int(rng.integers(len(generators)))]
        store.add_dependency(node.id, provider)


def bridge_components(store: GraphStore, rng: Generator) -> int:
    """Join every connected component to the largest one.

    Each smaller component is linked through its lowest-id node to the
    spatially nearest node of the main component.  Returns the number of
    bridging edges added.
    """
    components = sorted(
        (sorted(c) for c in nx.connected_components(store.graph)),
        key=lambda c: (-len(c), c[0]),
    )
    if len(components) <= 1:
        return 0
    main = components[0]
    added = 0
    for comp in components[1:]:
        anchor = store.get_node(comp[0])
        nearest = min(
            main,
            key=lambda i: (
                (store.get_node(i).x - anchor.x) ** 2 + (store.get_node(i).y - anchor.y) ** 2,
                i,
            ),
        )
        store.add_edge(make_edge(rng, anchor, store.get_node(nearest)))
        main = main + comp
        added += 1
    return added


# ---------------------------------------------------------------------------
# Public generator
# ---------------------------------------------------------------------------


def create_graph(node_count: int, seed: int, now: datetime | None = None) -> GraphStore:
    """Generate a connected, regionally clustered synthetic grid.

    Each node gets a region (uniform over ``REGIONS``), a weighted-random
    type, a Gaussian position around its region centre and sampled
    telemetry.  Every node then opens 2-5 undirected connections, 70 % of
    them towards its own region, and control/datacenter nodes depend on
    1-3 generation nodes.  Remaining components are bridged so the result
    is connected.

    Parameters
    ----------
    node_count : int
        Number of nodes (>= 2).
    seed : int
        Seed for ``numpy.random.default_rng``.  Identical ``(node_count,
        seed)`` pairs give identical topology and telemetry, including the
        sampled ``auth_age_s`` of every node.
    now : datetime, optional
        Anchor for the ``last_seen`` / ``last_auth_time`` timestamps
        (``last_auth_time = now - auth_age_s``).  Defaults to the current
        UTC time; pass it for records that compare equal field by field.

    Returns
    -------
    GraphStore

    Raises
    ------
    ValueError
        If node_count < 2.
    """
    if node_count < 2:
        raise ValueError(f"node_count must be >= 2, got {node_count}")
    now = now or utcnow()
    rng = default_rng(seed)
    centers = region_centers()
    store = GraphStore()

    for i in range(node_count):
        region = REGIONS[int(rng.integers(len(REGIONS)))]
        node_type = sample_node_type(rng)
        x, y = sample_position(rng, centers[region])
        store.add_node(make_node(rng, f"node_{i:04d}", node_type, region, x, y, now))

    ids = store.node_ids()
    for node_id in ids:
        node = store.get_node(node_id)
        same = [n.id for n in store.get_nodes_by_region(node.region) if n.id != node_id]
        other = [i for i in ids if i != node_id and store.get_node(i).region != node.region]
        for _ in range(int(rng.integers(2, 6))):
            pool = same if rng.random() < 0.7 and same else other
            if not pool:
                continue
            target = pool[int(rng.integers(len(pool)))]
            if store.has_edge(node_id, target):
                continue
            store.add_edge(make_edge(rng, node, store.get_node(target)))
        add_generation_dependencies(store, node, rng)

    bridge_components(store, rng)
    return store
