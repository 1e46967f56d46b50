"""Bundle discovery and evolution tracking for trajectory collections.

This package provides the building blocks to index trajectory edges, build
free-space reachability graphs for a fixed distance threshold, extract bundles
of similar subtrajectories, and track how those bundles are born and merge as
the threshold (epsilon) grows.
"""
