"""Orchestration engine for multi-phase development pipelines.

This package sequences a specification through analysis, AI-assisted
refinement, human approval gates, per-task implementation, review and
documentation sync before release. It provides:
- A pipeline state machine with bounded retry/regeneration budgets
- Blocking human approval gates
- An ordered, fail-fast quality-gate runner
- Atomic per-task commits with required metadata
- An append-only audit log, pipeline events and Prometheus metrics
"""

__version__ = "0.1.0"
