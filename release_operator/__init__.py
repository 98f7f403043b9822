"""
Release Operator

Progressive delivery for services running two live revisions: shifts traffic
to a candidate revision step by step, promotes it, or rolls it back based on
its recent metrics.
"""

__version__ = "0.1.0"
