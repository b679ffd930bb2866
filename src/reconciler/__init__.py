"""Reconciliation engine for declarative infrastructure stacks.

Builds a resource graph from a stack, diffs it against stored state,
and walks the resulting plan to invoke provider create/update/delete
operations in dependency order.
"""
