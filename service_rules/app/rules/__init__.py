"""
Rules engine package.

Defines the rule model and the evaluation engine used by the Rules Service.
Rules are leaf predicates over the evaluation context, textual expressions,
custom evaluators, or AND/OR/NOT composites of embedded child rules.

Modules of interest:
- models: Data classes for rules, contexts, results and request models.
- conditions: Field resolution and leaf predicates.
- script: Restricted expression interpreter for textual conditions.
- evaluator: Recursive tree evaluation with short-circuiting.
- validation: Structural errors and warnings for rule definitions.
- store: CRUD, dependency checks and listing over the rule registry.
- batch: Sequential and batched evaluation.
- builder: Helpers and preset rules.
- engine: Composition root tying the pieces together.
"""
