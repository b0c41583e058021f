import json

import pytest

from struct_offset_finder import viz
from struct_offset_finder.drift import diff_with_suggestions
from struct_offset_finder.layout import layout_from_dict

from conftest import CHARACTER_DOC


@pytest.fixture
def snapshots():
    old = layout_from_dict(CHARACTER_DOC).structs
    new_doc = json.loads(json.dumps(CHARACTER_DOC))
    fields = new_doc['structs'][1]['fields']
    fields[0]['offset'] = '0x1A8'
    fields[1]['offset'] = '0x1AC'
    new_doc['structs'].append({"type": "Player", "base": "Character"})
    new = layout_from_dict(new_doc).structs
    return old, new


def test_struct_deltas_pick_dominant_shift(snapshots):
    old, new = snapshots
    deltas = viz.struct_deltas(diff_with_suggestions(old, new))
    assert deltas == {'Character': 0x8}


def test_inheritance_depths():
    structs = layout_from_dict({"structs": [
        {"type": "Mid", "base": "Root"},
        {"type": "Leaf", "base": "Mid"},
        {"type": "A", "base": "B"},
        {"type": "B", "base": "A"},
    ]}).structs
    depths = viz.inheritance_depths(structs)
    assert depths['Root'] == 0
    assert depths['Mid'] == 1
    assert depths['Leaf'] == 2
    assert {depths['A'], depths['B']} == {1}


def test_build_graph_colors_and_labels(snapshots):
    pytest.importorskip('networkx')
    old, new = snapshots
    G = viz.build_graph(new, viz.struct_deltas(diff_with_suggestions(old, new)))
    assert set(G.nodes) == {'GameObject', 'Character', 'Player'}
    assert G.nodes['Character']['color'] == viz.SHIFTED_COLOR
    assert G.nodes['GameObject']['color'] == viz.STABLE_COLOR
    assert G.nodes['Player']['layer'] == 2
    assert G.edges['GameObject', 'Character']['label'] == '+0x8'
    assert G.edges['Character', 'Player']['label'] == ''


def test_external_base_gets_its_own_node():
    pytest.importorskip('networkx')
    structs = layout_from_dict({"structs": [{"type": "Widget", "base": "EngineObject"}]}).structs
    G = viz.build_graph(structs, {})
    assert G.nodes['EngineObject']['color'] == viz.EXTERNAL_COLOR
    assert list(G.edges) == [('EngineObject', 'Widget')]


def test_generate_viz_graph_writes_png(snapshots, tmp_path):
    pytest.importorskip('networkx')
    pytest.importorskip('matplotlib')
    old, new = snapshots
    out = viz.generate_viz_graph(old, diff_with_suggestions(old, new), tmp_path / 'drift.png')
    assert out == tmp_path / 'drift.png'
    assert out.read_bytes()[:4] == b'\x89PNG'


def test_generate_viz_graph_skips_without_libraries(monkeypatch, snapshots, tmp_path):
    monkeypatch.setattr(viz, 'VIZ_AVAILABLE', False)
    old, new = snapshots
    assert viz.generate_viz_graph(old, diff_with_suggestions(old, new),
                                  tmp_path / 'drift.png') is None
