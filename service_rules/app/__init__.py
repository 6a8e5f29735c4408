"""
Rules Service package for the RuleGate rule evaluation layer.

This package evaluates boolean decision rules against a runtime context to
gate automated transitions (for example, whether a workflow resource may
advance). It provides:

- app.rules: Rule model, condition evaluation, validation, store and engine.
- app.evaluators: Per-engine registry of custom evaluator functions.
- app.cache: In-memory TTL cache for evaluation results.
- app.persistence: Rule registry interface and an in-memory implementation.
- app.client: Advisory local evaluation for immediate feedback.

Guidelines:
- Only results from the engine are authoritative; mirror results must
  never gate an irreversible action.
- Keep evaluation deterministic and observable (metrics + logs).
- Package import must not perform IO.
"""
