"""CodeGraph Conductor: agent orchestration and hybrid retrieval over a code graph."""

__version__ = "0.4.0"
