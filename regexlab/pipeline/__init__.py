"""
pipeline: the sequential pattern-transformation evaluator and the editing
workbench that recomputes it on every change.

Every stage is compiled, scanned and replaced in order; the output of one
stage is the input of the next.
"""
