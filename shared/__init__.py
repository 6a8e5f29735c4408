"""
Shared utilities for the RuleGate rule evaluation layer.

This package aggregates common building blocks consumed by the rules service:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators for collaborator calls
- test_helpers: Factories for rules and evaluation contexts used in tests

Do not import from service_* packages into shared/.
"""
