"""Unit tests for tabular topology import."""

from __future__ import annotations
import sys, tempfile, unittest, warnings
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from twin_engine.model import Category, NodeType
from twin_engine.topology import graph_from_topology, load_edge_table, load_node_table

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

NODES = pd.DataFrame({
    "id": ["gen_a", "sub_b", "cc_c", "tower_d"],
    "type": ["generator", "substation", "control_center", "TELECOM_TOWER"],
    "region": ["North", "North", "Central", "Central"],
    "name": ["Plant A", None, "Control C", "Tower D"],
    "x": [10.0, 12.0, None, 60.0],
    "y": [20.0, 22.0, None, 55.0],
})
EDGES = pd.DataFrame({
    "source": ["gen_a", "sub_b", "cc_c"],
    "target": ["sub_b", "cc_c", "tower_d"],
    "weight": [0.9, None, 0.6],
})


def _write_csv(df):
    f = tempfile.NamedTemporaryFile(suffix=".csv", delete=False, mode="w")
    df.to_csv(f, index=False); f.close()
    return Path(f.name)


class TestGraphFromTopology(unittest.TestCase):

    def test_basic_import(self):
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            store = graph_from_topology(NODES, EDGES, seed=1, now=NOW)
        self.assertFalse(any(issubclass(x.category, UserWarning) for x in w))
        self.assertEqual(len(store), 4)
        self.assertEqual(len(store.get_edges()), 3)
        self.assertTrue(store.is_connected())
        self.assertIs(store.get_node("tower_d").type, NodeType.TELECOM_TOWER)
        self.assertEqual(store.get_node("gen_a").name, "Plant A")
        self.assertEqual((store.get_node("gen_a").x, store.get_node("gen_a").y), (10.0, 20.0))
        self.assertAlmostEqual(store.get_edge("gen_a", "sub_b").weight, 0.9)

    def test_control_depends_on_generation(self):
        store = graph_from_topology(NODES, EDGES, seed=1, now=NOW)
        deps = store.get_dependencies("cc_c")
        self.assertEqual([d.id for d in deps], ["gen_a"])
        self.assertIs(deps[0].category, Category.GENERATION)

    def test_reproducible(self):
        a = graph_from_topology(NODES, EDGES, seed=3, now=NOW)
        b = graph_from_topology(NODES, EDGES, seed=3, now=NOW)
        self.assertEqual([n.to_dict() for n in a.nodes()], [n.to_dict() for n in b.nodes()])

    def test_bad_edges_warn_and_drop(self):
        edges = pd.concat([EDGES, pd.DataFrame({
            "source": ["gen_a", "gen_a", "sub_b"],
            "target": ["gen_a", "ghost", "gen_a"],
            "weight": [0.5, 0.5, 0.5],
        })], ignore_index=True)
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            store = graph_from_topology(NODES, edges, seed=1, now=NOW)
        messages = " ".join(str(x.message) for x in w)
        self.assertIn("self-loop", messages)
        self.assertIn("unknown node", messages)
        self.assertIn("duplicate", messages)
        self.assertEqual(len(store.get_edges()), 3)

    def test_disconnected_warns(self):
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            store = graph_from_topology(NODES, EDGES.iloc[:1], seed=1, now=NOW)
        self.assertFalse(store.is_connected())
        self.assertTrue(any("connected components" in str(x.message) for x in w))

    def test_duplicate_ids_raise(self):
        nodes = pd.concat([NODES, NODES.iloc[:1]], ignore_index=True)
        with self.assertRaises(ValueError):
            graph_from_topology(nodes, EDGES, seed=1)

    def test_unknown_type_raises(self):
        nodes = NODES.copy()
        nodes.loc[0, "type"] = "fusion_reactor"
        with self.assertRaises(ValueError):
            graph_from_topology(nodes, EDGES, seed=1)

    def test_unknown_region_raises(self):
        nodes = NODES.copy()
        nodes.loc[0, "region"] = "Atlantis"
        with self.assertRaises(ValueError):
            graph_from_topology(nodes, EDGES, seed=1)

    def test_missing_column_raises(self):
        with self.assertRaises(ValueError):
            graph_from_topology(NODES.drop(columns=["region"]), EDGES, seed=1)

    def test_na_rows_dropped_with_warning(self):
        nodes = pd.concat([NODES, pd.DataFrame({"id": ["x"], "type": [None],
                                                "region": ["North"]})], ignore_index=True)
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            store = graph_from_topology(nodes, EDGES, seed=1, now=NOW)
        self.assertEqual(len(store), 4)
        self.assertTrue(any("dropped 1 row" in str(x.message) for x in w))


class TestCsvLoading(unittest.TestCase):

    def test_round_trip_through_csv(self):
        nodes = load_node_table(_write_csv(NODES))
        edges = load_edge_table(_write_csv(EDGES))
        store = graph_from_topology(nodes, edges, seed=1, now=NOW)
        self.assertEqual(len(store), 4)

    def test_column_names_normalised(self):
        df = NODES.rename(columns={"id": " ID ", "type": "Type"})
        nodes = load_node_table(_write_csv(df))
        self.assertIn("id", nodes.columns)
        self.assertIn("type", nodes.columns)

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_node_table("/nonexistent/nodes.csv")

    def test_missing_columns(self):
        with self.assertRaises(ValueError):
            load_edge_table(_write_csv(pd.DataFrame({"from": ["a"], "to": ["b"]})))

    def test_empty_file(self):
        f = tempfile.NamedTemporaryFile(suffix=".csv", delete=False, mode="w")
        f.write("id,type,region\n"); f.close()
        with self.assertRaises(ValueError):
            load_node_table(f.name)


if __name__ == "__main__":
    unittest.main()
