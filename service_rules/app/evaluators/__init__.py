"""
Custom evaluator package.

Holds the per-engine registry of named evaluator functions and runs them
under a timeout race. Registries are never shared between engines.
"""
