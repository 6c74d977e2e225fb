"""Recursive research core.

One invocation consults the oracle, and either answers or fans out one child
invocation per decomposition request (depth - 1), waits for all of them, feeds
their answers back as tool results and consults again. The loop is written as an
explicit state machine (`Phase`) so the substrate can persist and resume it.
"""
