"""
Persistence package for the Rules Service.

Rule definitions live in an external registry reached through the
RuleRegistry interface. An in-memory implementation is provided for local
use and tests.
"""
