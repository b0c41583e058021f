"""
Struct Offset Finder
====================
Keeps a hand-maintained catalogue of game struct layouts in sync with a
frequently recompiled x86-64 PE executable.

Two independent evidence sources:
  - symbolic diff of two declared layout snapshots (drift)
  - byte signatures that reference a field at its old offset (scanner)
and a cross-verifier that reconciles them.

Optional: networkx + matplotlib (inheritance drift graph PNG)
"""

VERSION = "1.0"
