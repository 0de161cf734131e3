"""Flowgate: a workflow execution engine with durable human review checkpoints."""

__version__ = "0.1.0"
