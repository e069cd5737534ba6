"""Pattern graph PNG: shift hypotheses linked to the structs they explain."""

from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import networkx as nx

from .model import VTABLE_SLOT

PATTERN_COLOR = '#5865F2'
VTABLE_COLOR = '#FEE75C'
STRUCT_COLOR = '#57F287'
CASCADE_COLOR = '#ED4245'


def pattern_label(p):
    if p.kind == VTABLE_SLOT:
        return f"vt {p.delta:+d} @{p.start_offset}"
    sign = '-' if p.delta < 0 else '+'
    return f"{sign}0x{abs(p.delta):X} @0x{p.start_offset:X}"


def build_pattern_graph(patterns, cascades=()):
    """DiGraph of pattern -> struct edges plus base -> derived cascade edges."""
    G = nx.DiGraph()
    for p in patterns:
        node = pattern_label(p)
        G.add_node(node, color=VTABLE_COLOR if p.kind == VTABLE_SLOT else PATTERN_COLOR)
        for s in p.affected:
            G.add_node(s, color=STRUCT_COLOR)
            G.add_edge(node, s, label=f"{p.confidence:.0%}")
    for c in cascades:
        G.add_node(c.source, color=CASCADE_COLOR)
        for child in c.affected:
            if child not in G:
                G.add_node(child, color=STRUCT_COLOR)
            G.add_edge(c.source, child, label=f"size {c.size_delta:+d}")
    return G


def generate_pattern_graph(patterns, out_path, cascades=()):
    """Render the pattern graph to ``out_path``.  None when there is nothing to draw."""
    G = build_pattern_graph(patterns, cascades)
    if len(G.nodes) == 0:
        return None

    out_path = Path(out_path)
    plt.figure(figsize=(14, 9))
    try:
        pos = nx.spring_layout(G, k=2.5, iterations=60, seed=42)
        colors = [G.nodes[n].get('color', '#99AAB5') for n in G.nodes()]
        nx.draw(G, pos, with_labels=True, node_color=colors, node_size=2800,
                font_size=7, font_weight='bold', arrows=True, edge_color='#72767D',
                arrowsize=15, edgecolors='#2C2F33', linewidths=1.5)
        edge_labels = nx.get_edge_attributes(G, 'label')
        nx.draw_networkx_edge_labels(G, pos, edge_labels, font_size=7, font_color='#B9BBBE')
        plt.title("Offset Shift Patterns", fontsize=14, fontweight='bold', color='#FFFFFF')
        plt.gca().set_facecolor('#36393F')
        plt.gcf().set_facecolor('#2C2F33')
        plt.axis('off')
        plt.savefig(out_path, dpi=150, bbox_inches='tight', facecolor='#2C2F33')
    finally:
        plt.close()
    return out_path
