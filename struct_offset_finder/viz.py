"""
Inheritance graph PNG, coloured by drift (requires networkx + matplotlib).
"""

import logging
from pathlib import Path

try:
    import networkx as nx
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt
    VIZ_AVAILABLE = True
except ImportError:
    VIZ_AVAILABLE = False

from .layout import signed_hex
from .signatures import majority

logger = logging.getLogger(__name__)

STABLE_COLOR = '#3BA55C'
SHIFTED_COLOR = '#FAA61A'
EXTERNAL_COLOR = '#8E9297'


def struct_deltas(report):
    """Struct name -> dominant field delta, from a DriftReport."""
    deltas = {}
    for d in report.result.structs:
        shifts = [delta for _f, delta in d.offset_shifts()] if d.change == 'modified' else []
        if shifts:
            deltas[d.struct] = majority(shifts)[0]
    return deltas


def inheritance_depths(structs):
    """Name -> number of declared bases above it (cycles stop the walk)."""
    parents = {s.type: s.base for s in structs if s.type and s.base}
    names = {s.type for s in structs if s.type} | set(parents.values())
    depths = {}
    for name in names:
        depth, seen, cur = 0, {name}, name
        while cur in parents and parents[cur] not in seen:
            cur = parents[cur]
            seen.add(cur)
            depth += 1
        depths[name] = depth
    return depths


def build_graph(structs, deltas):
    """Base -> derived DiGraph; nodes carry color and layer, edges a delta label."""
    depths = inheritance_depths(structs)
    G = nx.DiGraph()
    for s in structs:
        color = SHIFTED_COLOR if s.type in deltas else STABLE_COLOR
        G.add_node(s.type, color=color, layer=depths[s.type])
    for s in structs:
        if not s.base:
            continue
        if s.base not in G:
            G.add_node(s.base, color=EXTERNAL_COLOR, layer=depths[s.base])
        label = signed_hex(deltas[s.type]) if s.type in deltas else ''
        G.add_edge(s.base, s.type, label=label)
    return G


def generate_viz_graph(structs, report, out_path):
    """Render the hierarchy graph to out_path; None when unavailable or empty."""
    if not VIZ_AVAILABLE:
        return None
    G = build_graph(structs, struct_deltas(report))
    if len(G.nodes) == 0:
        return None

    fig, ax = plt.subplots(figsize=(12, 8))
    try:
        # Roots on the top row, each derived level one row lower.
        pos = nx.multipartite_layout(G, subset_key='layer', align='horizontal')
        pos = {n: (x, -y) for n, (x, y) in pos.items()}
        nx.draw_networkx_nodes(G, pos, ax=ax, node_size=2200,
                               node_color=[G.nodes[n]['color'] for n in G.nodes()])
        nx.draw_networkx_edges(G, pos, ax=ax, arrows=True, arrowsize=12, edge_color='#4F545C')
        nx.draw_networkx_labels(G, pos, ax=ax, font_size=8)
        nx.draw_networkx_edge_labels(G, pos, ax=ax, font_size=7,
                                     edge_labels=nx.get_edge_attributes(G, 'label'))
        ax.set_title("Struct inheritance (shifted structs highlighted)")
        ax.axis('off')
        out_path = Path(out_path)
        fig.savefig(out_path, dpi=120, bbox_inches='tight')
        return out_path
    except (OSError, ValueError) as e:
        logger.warning("graph rendering failed: %s", e)
        return None
    finally:
        plt.close(fig)
