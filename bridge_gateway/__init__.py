"""Local gateway bridging CLI- and daemon-backed AI backends behind one HTTP contract."""

__version__ = "1.0.0"
