"""Run orchestration engine: gather, bundle, gate and publish DAG runs."""

__version__ = "0.1.0"
