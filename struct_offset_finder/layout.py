"""
Declared struct layouts.

The hand-maintained catalogue is authored elsewhere; this module only holds
the in-memory model and a JSON loader that mirrors the declarative format:

    {"version": 1,
     "structs": [{"type": "Character", "base": "GameObject", "size": "0x2B0",
                  "fields": [{"name": "Health", "type": "int", "offset": "0x1A0"}],
                  "funcs":  [{"name": "Update", "ea": "0x1401234A0"}],
                  "vfuncs": [{"name": "Dtor", "id": 0}]}],
     "enums":   [{"type": "ObjectKind", "underlying": "byte",
                  "values": {"Pc": 1, "Npc": 2}}]}
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class LayoutError(ValueError):
    """Raised when a layout document cannot be interpreted."""


# region Offset Helpers

def parse_offset(value):
    """Parse 0x-prefixed hex, decimal strings or ints.  None parses as 0."""
    if value is None:
        return 0
    if isinstance(value, bool):
        raise LayoutError(f"Invalid offset: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    try:
        if text.lower().startswith(('0x', '-0x')):
            return int(text, 16)
        return int(text, 10)
    except ValueError:
        raise LayoutError(f"Invalid offset: {value!r}") from None


def to_hex(value, min_width=0):
    """0x-prefixed uppercase hex; negative values keep their sign."""
    sign = '-' if value < 0 else ''
    return f"{sign}0x{abs(value):0{min_width}X}"


def signed_hex(value):
    """Hex with an explicit sign, as used for deltas (+0x8, -0x10)."""
    return ('+' if value >= 0 else '') + to_hex(value)

# endregion Offset Helpers


# region Layout Model

@dataclass
class FieldDef:
    type: str
    name: Optional[str] = None
    offset: Optional[int] = None
    size: Optional[int] = None
    notes: Optional[str] = None

    @property
    def key(self):
        """Name used to match this field across versions."""
        return self.name or f"__offset_{self.offset or 0}"

    @property
    def display_name(self):
        return self.name or f"field_{to_hex(self.offset or 0)}"


@dataclass
class FuncDef:
    name: Optional[str] = None
    ea: Optional[int] = None
    signature: Optional[str] = None


@dataclass
class VFuncDef:
    name: Optional[str] = None
    id: Optional[int] = None
    signature: Optional[str] = None


@dataclass
class StructDef:
    type: str
    name: Optional[str] = None
    base: Optional[str] = None
    size: Optional[int] = None
    fields: List[FieldDef] = field(default_factory=list)
    funcs: List[FuncDef] = field(default_factory=list)
    vfuncs: List[VFuncDef] = field(default_factory=list)
    union: bool = False
    category: Optional[str] = None
    notes: Optional[str] = None

    def field_map(self):
        """display_name -> FieldDef, the naming signatures use."""
        return {f.display_name: f for f in self.fields}


@dataclass
class EnumDef:
    type: str
    underlying: Optional[str] = None
    values: Dict[str, Union[int, str]] = field(default_factory=dict)


@dataclass
class Layout:
    structs: List[StructDef] = field(default_factory=list)
    enums: List[EnumDef] = field(default_factory=list)
    version: Optional[int] = None
    source: Optional[str] = None

    def struct_map(self):
        return {s.type: s for s in self.structs}

# endregion Layout Model


# region Loading

def _optional_offset(value):
    return None if value is None else parse_offset(value)


def _field_from_dict(d):
    if 'type' not in d:
        raise LayoutError(f"Field without a type: {d!r}")
    return FieldDef(
        type=d['type'],
        name=d.get('name'),
        offset=_optional_offset(d.get('offset')),
        size=_optional_offset(d.get('size')),
        notes=d.get('notes'),
    )


def struct_from_dict(d):
    if not isinstance(d, dict) or not d.get('type'):
        raise LayoutError(f"Struct without a type: {d!r}")
    return StructDef(
        type=d['type'],
        name=d.get('name'),
        base=d.get('base'),
        size=_optional_offset(d.get('size')),
        fields=[_field_from_dict(f) for f in d.get('fields') or []],
        funcs=[FuncDef(name=f.get('name'), ea=_optional_offset(f.get('ea')),
                       signature=f.get('signature'))
               for f in d.get('funcs') or []],
        vfuncs=[VFuncDef(name=f.get('name'), id=_optional_offset(f.get('id')),
                         signature=f.get('signature'))
                for f in d.get('vfuncs') or []],
        union=bool(d.get('union', False)),
        category=d.get('category'),
        notes=d.get('notes'),
    )


def enum_from_dict(d):
    if not isinstance(d, dict) or not d.get('type'):
        raise LayoutError(f"Enum without a type: {d!r}")
    return EnumDef(type=d['type'], underlying=d.get('underlying'),
                   values=dict(d.get('values') or {}))


def layout_from_dict(doc, source=None):
    if not isinstance(doc, dict):
        raise LayoutError("Layout document must be an object")
    return Layout(
        structs=[struct_from_dict(s) for s in doc.get('structs') or []],
        enums=[enum_from_dict(e) for e in doc.get('enums') or []],
        version=doc.get('version'),
        source=source,
    )


def load_layout(path):
    """Load one JSON layout document."""
    path = Path(path)
    try:
        doc = json.loads(path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as e:
        raise LayoutError(f"{path}: {e}") from e
    layout = layout_from_dict(doc, source=str(path))
    logger.debug("loaded %d structs, %d enums from %s",
                 len(layout.structs), len(layout.enums), path)
    return layout


def load_layouts(paths):
    """Load and merge several layout documents (later files win on name clashes)."""
    merged = {}
    enums = {}
    for p in paths:
        layout = load_layout(p)
        for s in layout.structs:
            merged[s.type] = s
        for e in layout.enums:
            enums[e.type] = e
    return Layout(structs=list(merged.values()), enums=list(enums.values()))

# endregion Loading
