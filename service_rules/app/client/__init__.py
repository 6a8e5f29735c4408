"""
Client package.

Advisory, local evaluation of the safe subset of rule semantics for
immediate feedback. Results are never authoritative.
"""
