"""Setting Forge: streaming-to-tree world-building generation backend."""
