"""
Vehicle listing search across heterogeneous dealer and marketplace sites.

This package drives an external browser-automation command (playwright-cli)
and extracts listings from its accessibility-tree snapshots, with a clean
separation between the automation client (I/O), the snapshot protocol
(parsing) and the per-source strategies (site knowledge).
"""
