"""
Rules service for the RuleGate rule evaluation layer.
"""
