"""rocksbuild - native build orchestrator for RocksDB, Snappy and SPDK."""

__version__ = "0.1.0"
