"""
Cache package for the Rules Service.

Provides an in-memory result cache keyed by rule name and a minute-quantized
fingerprint of the evaluation context, bounded by TTL and entry count.
"""
